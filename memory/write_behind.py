"""Write-behind buffer keeping the caller's view of a conversation authoritative."""

import logging
import uuid
from typing import Dict, List, Optional

from .sqlite_store import SQLiteMemoryStore
from .models import ConversationTurn, TurnStatus

logger = logging.getLogger(__name__)


class WriteBehindTurnBuffer:
    """
    In-memory conversation turns backed by a durable store.

    A turn is visible as ``pending`` as soon as it is added, then becomes
    ``confirmed`` (carrying the stored id and timestamp) or ``failed``.
    Failed turns stay in the buffer and can be retried; a retried turn is
    stored with a later timestamp than turns persisted in the meantime.

    Only the newest ``max_confirmed_turns`` confirmed turns of a conversation
    are kept in memory; the store already holds them durably. Pending and
    failed turns are never evicted.
    """

    def __init__(self, store: SQLiteMemoryStore, max_confirmed_turns: int = 8):
        if max_confirmed_turns < 0:
            raise ValueError(f"max_confirmed_turns must be non-negative, got {max_confirmed_turns}")
        self.store = store
        self.max_confirmed_turns = max_confirmed_turns
        self._turns: Dict[str, List[ConversationTurn]] = {}

    def add(
        self,
        conversation_id: str,
        role: str,
        content: str,
        image_references: Optional[List[str]] = None,
        context_weight: float = 1.0
    ) -> ConversationTurn:
        """
        Add a turn and persist it.

        Args:
            conversation_id: Conversation ID
            role: "user" or "assistant"
            content: Message content
            image_references: Optional attachment identifiers
            context_weight: Summarization priority hint

        Returns:
            The buffered turn, confirmed or failed

        Raises:
            ValueError: On an unknown role
        """
        pending = ConversationTurn(
            message_id=f"pending_{uuid.uuid4().hex}",
            conversation_id=conversation_id,
            role=role,
            content=content,
            estimated_tokens=self.store.estimator.estimate(content),
            context_weight=context_weight,
            image_references=list(image_references or []),
            status=TurnStatus.PENDING,
        )

        turns = self._turns.setdefault(conversation_id, [])
        turns.append(pending)
        turn = self._persist(conversation_id, len(turns) - 1)
        self._evict(conversation_id)
        return turn

    def _persist(self, conversation_id: str, index: int) -> ConversationTurn:
        turns = self._turns[conversation_id]
        turn = turns[index]

        stored = self.store.append_turn(
            conversation_id,
            turn.role,
            turn.content,
            image_references=turn.image_references,
            context_weight=turn.context_weight,
        )

        if stored:
            turns[index] = stored
        else:
            logger.warning(f"Turn {turn.message_id} in {conversation_id} not persisted")
            turns[index] = turn.model_copy(update={"status": TurnStatus.FAILED})
        return turns[index]

    def _evict(self, conversation_id: str):
        turns = self._turns.get(conversation_id)
        if turns is None:
            return

        confirmed = [i for i, t in enumerate(turns) if t.status == TurnStatus.CONFIRMED]
        excess = len(confirmed) - self.max_confirmed_turns
        if excess > 0:
            dropped = set(confirmed[:excess])
            turns[:] = [t for i, t in enumerate(turns) if i not in dropped]
        if not turns:
            del self._turns[conversation_id]

    def retry_failed(self, conversation_id: str) -> int:
        """
        Persist failed turns again.

        Returns:
            Number of turns confirmed by this retry
        """
        confirmed = 0
        for index, turn in enumerate(self._turns.get(conversation_id, [])):
            if turn.status != TurnStatus.FAILED:
                continue
            if self._persist(conversation_id, index).status == TurnStatus.CONFIRMED:
                confirmed += 1

        self._evict(conversation_id)
        if confirmed:
            logger.info(f"Retried {confirmed} failed turns for {conversation_id}")
        return confirmed

    def turns(self, conversation_id: str) -> List[ConversationTurn]:
        """Turns in the order they were added."""
        return list(self._turns.get(conversation_id, []))

    def failed_count(self, conversation_id: str) -> int:
        return sum(1 for t in self._turns.get(conversation_id, []) if t.status == TurnStatus.FAILED)

    def pending_count(self, conversation_id: str) -> int:
        return sum(1 for t in self._turns.get(conversation_id, []) if t.status == TurnStatus.PENDING)

    def release_confirmed(self, conversation_id: Optional[str] = None) -> int:
        """
        Drop confirmed turns from memory, keeping pending and failed ones.

        Args:
            conversation_id: Conversation to release, or None for all

        Returns:
            Number of turns released
        """
        ids = [conversation_id] if conversation_id is not None else list(self._turns)
        released = 0
        for cid in ids:
            turns = self._turns.get(cid)
            if turns is None:
                continue
            kept = [t for t in turns if t.status != TurnStatus.CONFIRMED]
            released += len(turns) - len(kept)
            if kept:
                self._turns[cid] = kept
            else:
                del self._turns[cid]

        if released:
            logger.debug(f"Released {released} confirmed turns from memory")
        return released

    def conversation_ids(self) -> List[str]:
        """Conversations that still hold turns in memory."""
        return list(self._turns)

    def forget(self, conversation_id: str):
        """Drop a conversation from memory without touching storage."""
        self._turns.pop(conversation_id, None)
