"""LLM-backed regeneration of rolling conversation summaries."""

import logging
from typing import List, Optional, Tuple

from .sqlite_store import SQLiteMemoryStore
from .models import ConversationSummary, ConversationTurn, TurnRole
from llm.base_client import BaseLLMClient, Message

logger = logging.getLogger(__name__)


class SummaryRefresher:
    """Folds older turns into the conversation summary once the active window grows."""

    MAX_TURN_CHARS = 500  # Per-turn truncation inside the summary prompt
    ECHOED_PREFIXES = (
        "Here is a summary:",
        "Summary:",
        "Based on the conversation:",
        "The conversation summary:",
    )

    SYSTEM_PROMPT = (
        "You are a conversation summarizer. You maintain a running summary of a "
        "chat so that it can continue naturally after older messages are dropped."
    )

    def __init__(
        self,
        store: SQLiteMemoryStore,
        llm_client: BaseLLMClient,
        max_recent_turns: int = 8,
        max_tokens_before_summary: int = 2000,
        max_summary_tokens: int = 400,
        summary_overlap_turns: int = 2
    ):
        """
        Initialize summary refresher.

        Args:
            store: SQLite memory store
            llm_client: LLM client producing summary text
            max_recent_turns: Unsummarized turns allowed before a refresh
            max_tokens_before_summary: Unsummarized tokens allowed before a refresh
            max_summary_tokens: Cap on the stored summary length
            summary_overlap_turns: Extra turns folded in per refresh, leaving
                headroom before the next one
        """
        self.store = store
        self.llm_client = llm_client
        self.max_recent_turns = max_recent_turns
        self.max_tokens_before_summary = max_tokens_before_summary
        self.max_summary_tokens = max_summary_tokens
        self.summary_overlap_turns = summary_overlap_turns

    def _unsummarized(
        self, conversation_id: str
    ) -> Tuple[Optional[ConversationSummary], List[ConversationTurn]]:
        summary = self.store.get_summary(conversation_id)
        after = summary.summarized_through if summary else None
        return summary, self.store.get_turns_after(conversation_id, after)

    def _count_to_summarize(self, turns: List[ConversationTurn]) -> int:
        count = len(turns) - self.max_recent_turns + self.summary_overlap_turns
        tokens = sum(turn.estimated_tokens for turn in turns)
        if tokens > self.max_tokens_before_summary:
            count = max(count, len(turns) - self.summary_overlap_turns)
        return max(0, min(count, len(turns)))

    def _over_limits(self, turns: List[ConversationTurn]) -> bool:
        tokens = sum(turn.estimated_tokens for turn in turns)
        if len(turns) <= self.max_recent_turns and tokens <= self.max_tokens_before_summary:
            return False
        # A token-heavy window of only overlap turns has nothing to fold in
        return self._count_to_summarize(turns) > 0

    def needs_refresh(self, conversation_id: str) -> bool:
        """
        Check whether the unsummarized window has outgrown its limits.

        Args:
            conversation_id: Conversation ID

        Returns:
            True if a refresh should run
        """
        _, turns = self._unsummarized(conversation_id)
        return self._over_limits(turns)

    def maybe_refresh(self, conversation_id: str) -> bool:
        """Refresh the summary if the unsummarized window is over its limits."""
        summary, turns = self._unsummarized(conversation_id)
        if not self._over_limits(turns):
            return False
        return self._refresh(conversation_id, summary, turns)

    def refresh(self, conversation_id: str) -> bool:
        """
        Fold the oldest unsummarized turns into a new summary.

        A failed LLM call or a failed write leaves the previous summary in
        place.

        Args:
            conversation_id: Conversation ID

        Returns:
            True if a new summary was stored
        """
        summary, turns = self._unsummarized(conversation_id)
        return self._refresh(conversation_id, summary, turns)

    def _refresh(
        self,
        conversation_id: str,
        summary: Optional[ConversationSummary],
        turns: List[ConversationTurn]
    ) -> bool:
        count = self._count_to_summarize(turns)
        if count == 0:
            logger.debug(f"No turns need summarization for {conversation_id}")
            return False

        turns_to_summarize = turns[:count]
        existing = summary.summary_text if summary else ""

        messages = [
            Message(role="system", content=self.SYSTEM_PROMPT),
            Message(role="user", content=self._create_summary_prompt(existing, turns_to_summarize)),
        ]

        try:
            response = self.llm_client.chat(
                messages=messages,
                temperature=0.3,
                max_tokens=self.max_summary_tokens * 2
            )
        except Exception as e:
            logger.error(f"Failed to generate summary for {conversation_id}: {e}")
            return False

        new_summary = self._extract_summary(response.content)
        if not new_summary:
            logger.warning(f"Empty summary returned for {conversation_id}; keeping previous summary")
            return False

        totals = self.store.get_totals(conversation_id)
        stored = self.store.replace_summary(
            conversation_id=conversation_id,
            summary_text=new_summary,
            summary_token_count=self.store.estimator.estimate(new_summary),
            total_messages=totals.total_messages,
            total_tokens=totals.total_tokens,
            summarized_through=turns_to_summarize[-1].timestamp,
        )

        if stored:
            logger.info(
                f"Refreshed summary for {conversation_id}: folded {count} turns, "
                f"{len(turns) - count} remain unsummarized"
            )
        return stored

    def _create_summary_prompt(self, existing_summary: str, turns: List[ConversationTurn]) -> str:
        """Build the summarization request from the previous summary and new turns."""
        lines = [
            "Please create a concise summary that captures the key context and "
            "progression of this conversation.",
            "",
        ]

        if existing_summary.strip():
            lines.append(f"Previous context: {existing_summary.strip()}")
            lines.append("")

        lines.append("Recent conversation to incorporate:")
        for turn in turns:
            speaker = "User" if turn.role == TurnRole.USER else "Assistant"
            content = turn.content
            if len(content) > self.MAX_TURN_CHARS:
                content = content[:self.MAX_TURN_CHARS] + "..."
            lines.append(f"{speaker}: {content}")

        lines.append("")
        lines.append(
            "Provide a flowing narrative summary (max 300 words) that preserves:\n"
            "1. Key topics discussed and decisions made\n"
            "2. Important context about the user's situation or preferences\n"
            "3. The emotional tone and relationship dynamic\n"
            "4. Any ongoing tasks or plans mentioned\n"
            "\n"
            "Focus on what would be most helpful for continuing the conversation naturally."
        )

        return "\n".join(lines)

    def _extract_summary(self, response: str) -> str:
        """Strip echoed prefixes and cap the summary length."""
        summary = (response or "").strip()

        for prefix in self.ECHOED_PREFIXES:
            if summary.lower().startswith(prefix.lower()):
                summary = summary[len(prefix):].strip()
                break

        max_length = self.max_summary_tokens * 4
        if len(summary) > max_length:
            summary = summary[:max_length]
            # End on a sentence if that keeps most of the text
            last_sentence = summary.rfind(".")
            if last_sentence > max_length * 0.8:
                summary = summary[:last_sentence + 1]

        return summary
