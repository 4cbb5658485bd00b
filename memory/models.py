"""Memory data models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class TurnRole(str, Enum):
    """Who produced a turn."""
    USER = "user"
    ASSISTANT = "assistant"


class TurnStatus(str, Enum):
    """Persistence state of a turn held by the caller."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ContextStrategy(str, Enum):
    """Which assembly path produced a context payload."""
    FULL = "full"
    SUMMARIZED = "summarized"
    MINIMAL = "minimal"


class ConversationTurn(BaseModel):
    """A single turn in a conversation."""
    message_id: str
    conversation_id: str
    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    estimated_tokens: int = Field(0, ge=0)
    context_weight: float = 1.0  # Stored for summarization, not used by assembly
    image_references: List[str] = Field(default_factory=list)
    status: TurnStatus = TurnStatus.CONFIRMED


class ConversationTotals(BaseModel):
    """Running counters across a whole conversation."""
    conversation_id: str
    total_messages: int = 0
    total_tokens: int = 0


class ConversationSummary(BaseModel):
    """Rolling summary of a conversation for context compression."""
    conversation_id: str
    summary_text: str
    summary_token_count: int = Field(0, ge=0)
    total_messages: int = 0
    total_tokens: int = 0
    last_summary_update: datetime = Field(default_factory=utc_now)
    summarized_through: Optional[datetime] = None  # Timestamp of newest summarized turn


class ContextMessage(BaseModel):
    """A role/content pair sent to the language model."""
    role: TurnRole
    content: str
    image_references: List[str] = Field(default_factory=list)


class ContextAssembly(BaseModel):
    """Bounded context payload for a downstream LLM call."""
    system_memory: str = ""
    recent_messages: List[ContextMessage] = Field(default_factory=list)
    total_tokens_estimate: int = 0
    context_strategy: ContextStrategy = ContextStrategy.MINIMAL
    budget_exceeded: bool = False
