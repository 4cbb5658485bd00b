"""Conversation memory service wiring storage, assembly and summary refresh."""

import logging
from typing import Optional, List

from config.settings import Settings

# LLM components
from llm.factory import create_llm_client, LLMProvider
from llm.base_client import BaseLLMClient, Message

# Memory components
from memory.models import ContextAssembly, ConversationTurn
from memory.sqlite_store import SQLiteMemoryStore
from memory.context_assembler import ContextAssembler
from memory.summarizer import SummaryRefresher
from memory.write_behind import WriteBehindTurnBuffer

logger = logging.getLogger(__name__)


class ConversationMemoryService:
    """Entry point for the chat-send flow: record turns, build LLM context."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm_client: Optional[BaseLLMClient] = None
    ):
        """
        Initialize memory service.

        Args:
            settings: Application settings
            llm_client: Optional LLM client for summaries (built from settings if omitted)
        """
        self.settings = settings or Settings()
        if self.settings.verbose:
            for name in ("memory", "llm", __name__):
                logging.getLogger(name).setLevel(logging.DEBUG)

        self.store = SQLiteMemoryStore(db_path=self.settings.db_path)
        self.assembler = ContextAssembler(store=self.store)
        self.buffer = WriteBehindTurnBuffer(
            store=self.store,
            max_confirmed_turns=self.settings.max_recent_turns
        )

        # Initialize LLM client
        self.llm_client: Optional[BaseLLMClient] = llm_client
        if self.llm_client is None and self.settings.summarization_enabled:
            self._init_llm_client()

        self.refresher: Optional[SummaryRefresher] = None
        if self.llm_client and self.settings.summarization_enabled:
            self.refresher = SummaryRefresher(
                store=self.store,
                llm_client=self.llm_client,
                max_recent_turns=self.settings.max_recent_turns,
                max_tokens_before_summary=self.settings.max_tokens_before_summary,
                max_summary_tokens=self.settings.max_summary_tokens,
                summary_overlap_turns=self.settings.summary_overlap_turns,
            )

    def _init_llm_client(self):
        """Initialize LLM client based on settings."""
        api_key = self.settings.get_llm_api_key()

        if not api_key:
            logger.warning(
                f"No API key for {self.settings.llm_provider}. "
                "Summary refresh will be disabled."
            )
            return

        try:
            provider = LLMProvider(self.settings.llm_provider)
            self.llm_client = create_llm_client(
                provider=provider,
                api_key=api_key,
                model=self.settings.llm_model
            )
            logger.info(
                f"LLM client initialized: {self.settings.llm_provider} "
                f"({self.llm_client.get_model_name()})"
            )
        except Exception as e:
            logger.error(f"Failed to initialize LLM client: {e}")
            self.llm_client = None

    def record_turn(
        self,
        conversation_id: str,
        role: str,
        content: str,
        image_references: Optional[List[str]] = None
    ) -> ConversationTurn:
        """
        Record a turn and refresh the summary when the window outgrows its limits.

        Args:
            conversation_id: Conversation ID
            role: "user" or "assistant"
            content: Message content
            image_references: Optional attachment identifiers

        Returns:
            The buffered turn (confirmed, or failed if storage was unavailable)
        """
        turn = self.buffer.add(conversation_id, role, content, image_references)
        if self.refresher:
            self.refresher.maybe_refresh(conversation_id)
        return turn

    def build_context(self, conversation_id: str) -> ContextAssembly:
        """Assemble context with the configured turn and token limits."""
        return self.assembler.assemble_context(
            conversation_id,
            max_recent_turns=self.settings.max_recent_turns,
            max_token_budget=self.settings.max_token_budget,
        )

    def build_messages(self, conversation_id: str) -> List[Message]:
        """Assemble context and render it as chat messages."""
        return self.assembler.to_messages(self.build_context(conversation_id))

    def get_context_stats(self, conversation_id: str) -> dict:
        return self.assembler.get_context_stats(conversation_id, self.settings.max_recent_turns)

    def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation from storage and from the in-memory buffer."""
        self.buffer.forget(conversation_id)
        return self.store.delete_conversation(conversation_id)
