"""Conversation memory: turn storage, rolling summaries and context assembly."""

from .models import (
    ConversationTurn,
    ConversationSummary,
    ConversationTotals,
    ContextAssembly,
    ContextMessage,
    ContextStrategy,
    TurnRole,
    TurnStatus,
)
from .token_estimator import BaseTokenEstimator, HeuristicTokenEstimator, estimate_tokens
from .sqlite_store import SQLiteMemoryStore
from .context_assembler import ContextAssembler
from .summarizer import SummaryRefresher
from .write_behind import WriteBehindTurnBuffer

__all__ = [
    "ConversationTurn",
    "ConversationSummary",
    "ConversationTotals",
    "ContextAssembly",
    "ContextMessage",
    "ContextStrategy",
    "TurnRole",
    "TurnStatus",
    "BaseTokenEstimator",
    "HeuristicTokenEstimator",
    "estimate_tokens",
    "SQLiteMemoryStore",
    "ContextAssembler",
    "SummaryRefresher",
    "WriteBehindTurnBuffer",
]
