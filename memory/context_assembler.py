"""Conversation context assembly for LLM context window management."""

import logging
from typing import List, Dict, Any

from .sqlite_store import SQLiteMemoryStore
from .models import ContextAssembly, ContextMessage, ContextStrategy, ConversationTurn
from llm.base_client import Message

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Previous conversation context: "
MIN_TURNS_FOR_FULL = 3


class ContextAssembler:
    """Builds a token-bounded context payload from summary plus recent turns."""

    def __init__(self, store: SQLiteMemoryStore):
        """
        Initialize context assembler.

        Args:
            store: SQLite memory store holding turns and summaries
        """
        self.store = store

    def assemble_context(
        self,
        conversation_id: str,
        max_recent_turns: int,
        max_token_budget: int
    ) -> ContextAssembly:
        """
        Assemble context for an LLM call under a token budget.

        The summary is a fixed cost. Recent turns are then taken newest
        first while they fit; the first turn that would overflow ends the
        walk, so older turns are dropped before newer ones. A turn too
        large to fit even on its own is skipped instead of ending the walk.

        If the summary alone exceeds the budget it is still returned, with
        no recent messages and ``budget_exceeded`` set.

        Args:
            conversation_id: Conversation ID
            max_recent_turns: Maximum number of verbatim turns
            max_token_budget: Maximum estimated tokens for summary plus turns

        Returns:
            ContextAssembly

        Raises:
            ValueError: On negative limits
        """
        if max_recent_turns < 0:
            raise ValueError(f"max_recent_turns must be >= 0, got {max_recent_turns}")
        if max_token_budget < 0:
            raise ValueError(f"max_token_budget must be >= 0, got {max_token_budget}")

        summary = self.store.get_summary(conversation_id)
        system_memory = ""
        summary_tokens = 0
        if summary and summary.summary_text.strip():
            system_memory = summary.summary_text
            summary_tokens = summary.summary_token_count

        if summary_tokens > max_token_budget:
            logger.warning(
                f"Summary for {conversation_id} ({summary_tokens} tokens) exceeds "
                f"budget of {max_token_budget}; returning summary only"
            )
            return ContextAssembly(
                system_memory=system_memory,
                recent_messages=[],
                total_tokens_estimate=summary_tokens,
                context_strategy=ContextStrategy.SUMMARIZED,
                budget_exceeded=True,
            )

        turns = self.store.get_recent_turns(conversation_id, limit=max_recent_turns)
        included = self._select_turns(turns, max_token_budget - summary_tokens)

        recent_messages = [
            ContextMessage(
                role=turn.role,
                content=turn.content,
                image_references=turn.image_references,
            )
            for turn in included
        ]
        total_tokens = summary_tokens + sum(turn.estimated_tokens for turn in included)

        if system_memory:
            strategy = ContextStrategy.SUMMARIZED
        elif len(included) < MIN_TURNS_FOR_FULL or len(included) < len(turns):
            strategy = ContextStrategy.MINIMAL
        else:
            strategy = ContextStrategy.FULL

        logger.debug(
            f"Assembled context for {conversation_id}: {len(recent_messages)}/{len(turns)} turns, "
            f"{total_tokens} tokens, strategy={strategy.value}"
        )

        return ContextAssembly(
            system_memory=system_memory,
            recent_messages=recent_messages,
            total_tokens_estimate=total_tokens,
            context_strategy=strategy,
        )

    @staticmethod
    def _select_turns(turns: List[ConversationTurn], available: int) -> List[ConversationTurn]:
        """Pick turns newest first within the available tokens; return oldest first."""
        selected = []
        used = 0
        for turn in reversed(turns):
            if turn.estimated_tokens > available:
                continue
            if used + turn.estimated_tokens > available:
                break
            selected.append(turn)
            used += turn.estimated_tokens
        selected.reverse()
        return selected

    def to_messages(self, assembly: ContextAssembly) -> List[Message]:
        """
        Render an assembly as chat messages.

        The summary becomes a system message; image references are
        prefixed to their turn's content as ``[Image:<id>]`` markers.
        """
        messages = []

        if assembly.system_memory.strip():
            messages.append(Message(
                role="system",
                content=f"{SUMMARY_PREFIX}{assembly.system_memory.strip()}"
            ))

        for msg in assembly.recent_messages:
            content = msg.content
            if msg.image_references:
                refs = " ".join(f"[Image:{ref}]" for ref in msg.image_references)
                content = f"{refs} {content}".strip()
            messages.append(Message(role=msg.role.value, content=content))

        return messages

    def to_context_string(self, assembly: ContextAssembly) -> str:
        """
        Render an assembly as a single block of text.

        Useful for including in system prompts.
        """
        messages = self.to_messages(assembly)

        if not messages:
            return ""

        parts = ["=== Previous Conversation ==="]
        for msg in messages:
            if msg.role == "system":
                parts.append(f"[Context]: {msg.content}")
            else:
                parts.append(f"{msg.role.upper()}: {msg.content}")
        parts.append("=== End Previous Conversation ===")

        return "\n".join(parts)

    def get_context_stats(self, conversation_id: str, max_recent_turns: int) -> Dict[str, Any]:
        """Counters and window sizes for debugging a conversation's memory."""
        summary = self.store.get_summary(conversation_id)
        totals = self.store.get_totals(conversation_id)
        recent = self.store.get_recent_turns(conversation_id, limit=max_recent_turns)

        return {
            "conversation_id": conversation_id,
            "recent_turns": len(recent),
            "recent_tokens": sum(turn.estimated_tokens for turn in recent),
            "summary_token_count": summary.summary_token_count if summary else 0,
            "total_messages": totals.total_messages,
            "total_tokens": totals.total_tokens,
            "last_summary_update": summary.last_summary_update if summary else None,
        }
