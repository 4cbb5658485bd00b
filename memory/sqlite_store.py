"""SQLite-based memory store for conversation turns and summaries."""

import sqlite3
import json
import logging
import uuid
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, List, Tuple

from .models import (
    ConversationTurn,
    ConversationSummary,
    ConversationTotals,
    TurnRole,
    utc_now,
)
from .token_estimator import BaseTokenEstimator, HeuristicTokenEstimator

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[str, Exception], None]


def _format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string so text order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _validate_role(role) -> TurnRole:
    try:
        return TurnRole(role)
    except ValueError:
        raise ValueError(
            f"Unknown turn role {role!r}; expected one of "
            f"{[r.value for r in TurnRole]}"
        ) from None


def _validate_count(name: str, value: int):
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value!r}")


class SQLiteMemoryStore:
    """
    SQLite-based persistent store for conversation memory.

    Holds three tables: append-only turns, one rolling summary per
    conversation, and per-conversation running counters. Read paths degrade
    to empty results on storage errors and write paths report failure as a
    falsy return value; both are logged and forwarded to ``on_error``.
    Invalid arguments raise ``ValueError``.
    """

    def __init__(
        self,
        db_path: str = "data/conversations.db",
        estimator: Optional[BaseTokenEstimator] = None,
        on_error: Optional[ErrorCallback] = None,
        timeout: float = 5.0
    ):
        """
        Initialize SQLite memory store.

        Args:
            db_path: Path to SQLite database file
            estimator: Token estimator applied to turns and summaries
            on_error: Optional callback receiving (operation, exception) for
                storage errors that were absorbed
            timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.estimator = estimator or HeuristicTokenEstimator()
        self.on_error = on_error
        self.timeout = timeout
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get an autocommit connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS turns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                estimated_tokens INTEGER NOT NULL CHECK(estimated_tokens >= 0),
                context_weight REAL NOT NULL DEFAULT 1.0,
                image_references TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS conversation_totals (
                conversation_id TEXT PRIMARY KEY,
                total_messages INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS summaries (
                conversation_id TEXT PRIMARY KEY,
                summary_text TEXT NOT NULL,
                summary_token_count INTEGER NOT NULL CHECK(summary_token_count >= 0),
                last_summary_update TEXT NOT NULL,
                summarized_through TEXT
            )
        """)

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_turns_conversation_time "
            "ON turns(conversation_id, timestamp)"
        )

        conn.close()
        logger.info(f"Database initialized at {self.db_path}")

    def _report_error(self, operation: str, error: Exception):
        logger.error(f"Storage error in {operation}: {error}")
        if self.on_error:
            self.on_error(operation, error)

    def _row_to_turn(self, row: sqlite3.Row) -> ConversationTurn:
        """Decode a stored row; raises ValueError on corrupt JSON or timestamps."""
        return ConversationTurn(
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            timestamp=_parse_timestamp(row["timestamp"]),
            estimated_tokens=row["estimated_tokens"],
            context_weight=row["context_weight"],
            image_references=json.loads(row["image_references"]) if row["image_references"] else [],
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def append_turn(
        self,
        conversation_id: str,
        role: str,
        content: str,
        image_references: Optional[List[str]] = None,
        context_weight: float = 1.0
    ) -> Optional[ConversationTurn]:
        """
        Append a turn to a conversation.

        Args:
            conversation_id: Conversation ID
            role: "user" or "assistant"
            content: Message content
            image_references: Optional attachment identifiers
            context_weight: Summarization priority hint

        Returns:
            Stored ConversationTurn, or None if persistence failed
        """
        result = self.append_turn_with_totals(
            conversation_id, role, content, image_references, context_weight
        )
        return result[0] if result else None

    def append_turn_with_totals(
        self,
        conversation_id: str,
        role: str,
        content: str,
        image_references: Optional[List[str]] = None,
        context_weight: float = 1.0
    ) -> Optional[Tuple[ConversationTurn, ConversationTotals]]:
        """
        Append a turn and return the post-increment conversation counters.

        The insert and the counter increment share one write transaction.
        Timestamps within a conversation are kept strictly increasing.

        Returns:
            (turn, totals), or None if persistence failed

        Raises:
            ValueError: On an unknown role or an invalid token estimate
        """
        turn_role = _validate_role(role)
        if not isinstance(content, str):
            raise ValueError(f"content must be a string, got {type(content).__name__}")
        estimated_tokens = self.estimator.estimate(content)
        _validate_count("estimated_tokens", estimated_tokens)
        references = list(image_references or [])

        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            self._report_error("append_turn", e)
            return None

        try:
            conn.execute("BEGIN IMMEDIATE")

            row = conn.execute(
                """
                SELECT timestamp FROM turns
                WHERE conversation_id = ?
                ORDER BY timestamp DESC
                LIMIT 1
                """,
                (conversation_id,)
            ).fetchone()

            now = utc_now()
            last = _parse_timestamp(row["timestamp"]) if row else None
            if last is not None and now <= last:
                now = last + timedelta(microseconds=1)

            message_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO turns (message_id, conversation_id, role, content, timestamp,
                                   estimated_tokens, context_weight, image_references)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    conversation_id,
                    turn_role.value,
                    content,
                    _format_timestamp(now),
                    estimated_tokens,
                    context_weight,
                    json.dumps(references) if references else None,
                )
            )

            conn.execute(
                """
                INSERT INTO conversation_totals (conversation_id, total_messages, total_tokens)
                VALUES (?, 1, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    total_messages = total_messages + 1,
                    total_tokens = total_tokens + excluded.total_tokens
                """,
                (conversation_id, estimated_tokens)
            )

            totals_row = conn.execute(
                "SELECT total_messages, total_tokens FROM conversation_totals WHERE conversation_id = ?",
                (conversation_id,)
            ).fetchone()

            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self._report_error("append_turn", e)
            return None
        finally:
            conn.close()

        turn = ConversationTurn(
            message_id=message_id,
            conversation_id=conversation_id,
            role=turn_role,
            content=content,
            timestamp=now,
            estimated_tokens=estimated_tokens,
            context_weight=context_weight,
            image_references=references,
        )
        totals = ConversationTotals(
            conversation_id=conversation_id,
            total_messages=totals_row["total_messages"],
            total_tokens=totals_row["total_tokens"],
        )
        logger.debug(
            f"Appended {turn_role.value} turn to {conversation_id} "
            f"({estimated_tokens} tokens, {totals.total_messages} messages total)"
        )
        return turn, totals

    def get_recent_turns(
        self,
        conversation_id: str,
        limit: int = 10,
        before_timestamp: Optional[datetime] = None
    ) -> List[ConversationTurn]:
        """
        Get the most recent turns from a conversation.

        Args:
            conversation_id: Conversation ID
            limit: Maximum number of turns to return
            before_timestamp: Only return turns strictly older than this

        Returns:
            Turns in chronological order (oldest first); empty on storage error
        """
        if limit <= 0:
            return []

        try:
            conn = self._get_connection()
            try:
                if before_timestamp is not None:
                    rows = conn.execute(
                        """
                        SELECT * FROM turns
                        WHERE conversation_id = ? AND timestamp < ?
                        ORDER BY timestamp DESC, id DESC
                        LIMIT ?
                        """,
                        (conversation_id, _format_timestamp(before_timestamp), limit)
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT * FROM turns
                        WHERE conversation_id = ?
                        ORDER BY timestamp DESC, id DESC
                        LIMIT ?
                        """,
                        (conversation_id, limit)
                    ).fetchall()
            finally:
                conn.close()
            return [self._row_to_turn(row) for row in reversed(rows)]
        except (sqlite3.Error, ValueError) as e:
            self._report_error("get_recent_turns", e)
            return []

    def get_turns_after(
        self,
        conversation_id: str,
        after_timestamp: Optional[datetime] = None
    ) -> List[ConversationTurn]:
        """
        Get every turn newer than a timestamp, oldest first.

        Args:
            conversation_id: Conversation ID
            after_timestamp: Exclusive lower bound; None returns all turns

        Returns:
            Turns in chronological order; empty on storage error
        """
        try:
            conn = self._get_connection()
            try:
                if after_timestamp is not None:
                    rows = conn.execute(
                        """
                        SELECT * FROM turns
                        WHERE conversation_id = ? AND timestamp > ?
                        ORDER BY timestamp, id
                        """,
                        (conversation_id, _format_timestamp(after_timestamp))
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM turns WHERE conversation_id = ? ORDER BY timestamp, id",
                        (conversation_id,)
                    ).fetchall()
            finally:
                conn.close()
            return [self._row_to_turn(row) for row in rows]
        except (sqlite3.Error, ValueError) as e:
            self._report_error("get_turns_after", e)
            return []

    def get_turn_count(self, conversation_id: str) -> int:
        """
        Get the number of stored turns in a conversation.

        Args:
            conversation_id: Conversation ID

        Returns:
            Number of turns (0 on storage error)
        """
        try:
            conn = self._get_connection()
            try:
                result = conn.execute(
                    "SELECT COUNT(*) FROM turns WHERE conversation_id = ?",
                    (conversation_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            self._report_error("get_turn_count", e)
            return 0

        return result[0] if result else 0

    def clear_conversation_turns(self, conversation_id: str) -> bool:
        """Delete all turns of a conversation, keeping its summary and counters."""
        try:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM turns WHERE conversation_id = ?", (conversation_id,))
            finally:
                conn.close()
        except sqlite3.Error as e:
            self._report_error("clear_conversation_turns", e)
            return False

        logger.info(f"Cleared turns for conversation {conversation_id}")
        return True

    # ------------------------------------------------------------------
    # Counters and summaries
    # ------------------------------------------------------------------

    def get_totals(self, conversation_id: str) -> ConversationTotals:
        """
        Get running counters for a conversation.

        Returns:
            ConversationTotals (zeros if nothing stored or on storage error)
        """
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT total_messages, total_tokens FROM conversation_totals WHERE conversation_id = ?",
                    (conversation_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            self._report_error("get_totals", e)
            row = None

        if not row:
            return ConversationTotals(conversation_id=conversation_id)

        return ConversationTotals(
            conversation_id=conversation_id,
            total_messages=row["total_messages"],
            total_tokens=row["total_tokens"],
        )

    def get_summary(self, conversation_id: str) -> Optional[ConversationSummary]:
        """
        Get conversation summary.

        Args:
            conversation_id: Conversation ID

        Returns:
            ConversationSummary, or None if never generated or on storage error
        """
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    """
                    SELECT s.conversation_id, s.summary_text, s.summary_token_count,
                           s.last_summary_update, s.summarized_through,
                           COALESCE(t.total_messages, 0) AS total_messages,
                           COALESCE(t.total_tokens, 0) AS total_tokens
                    FROM summaries s
                    LEFT JOIN conversation_totals t ON t.conversation_id = s.conversation_id
                    WHERE s.conversation_id = ?
                    """,
                    (conversation_id,)
                ).fetchone()
            finally:
                conn.close()

            if not row:
                return None

            return ConversationSummary(
                conversation_id=row["conversation_id"],
                summary_text=row["summary_text"],
                summary_token_count=row["summary_token_count"],
                total_messages=row["total_messages"],
                total_tokens=row["total_tokens"],
                last_summary_update=_parse_timestamp(row["last_summary_update"]),
                summarized_through=_parse_timestamp(row["summarized_through"]),
            )
        except (sqlite3.Error, ValueError) as e:
            self._report_error("get_summary", e)
            return None

    def replace_summary(
        self,
        conversation_id: str,
        summary_text: str,
        summary_token_count: int,
        total_messages: int,
        total_tokens: int,
        summarized_through: Optional[datetime] = None
    ) -> bool:
        """
        Replace or create the conversation summary.

        Replaying an identical call leaves the stored summary unchanged:
        ``last_summary_update`` only moves when the text changes, and the
        counters never move backwards.

        Args:
            conversation_id: Conversation ID
            summary_text: New summary text
            summary_token_count: Token estimate for summary_text
            total_messages: Messages in the conversation so far
            total_tokens: Tokens in the conversation so far
            summarized_through: Timestamp of the newest turn the summary covers;
                defaults to the newest stored turn when the text changes

        Returns:
            True on success, False on storage failure

        Raises:
            ValueError: On negative counts
        """
        for name, value in (
            ("summary_token_count", summary_token_count),
            ("total_messages", total_messages),
            ("total_tokens", total_tokens),
        ):
            _validate_count(name, value)

        recomputed = self.estimator.estimate(summary_text)
        if recomputed != summary_token_count:
            logger.warning(
                f"Summary token count {summary_token_count} for {conversation_id} "
                f"does not match estimate {recomputed}; storing estimate"
            )
            summary_token_count = recomputed

        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            self._report_error("replace_summary", e)
            return False

        try:
            conn.execute("BEGIN IMMEDIATE")

            through = summarized_through
            if through is None:
                row = conn.execute(
                    "SELECT MAX(timestamp) FROM turns WHERE conversation_id = ?",
                    (conversation_id,)
                ).fetchone()
                through = _parse_timestamp(row[0]) if row else None

            conn.execute(
                """
                INSERT INTO summaries (conversation_id, summary_text, summary_token_count,
                                       last_summary_update, summarized_through)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    last_summary_update = CASE
                        WHEN summaries.summary_text = excluded.summary_text
                        THEN summaries.last_summary_update
                        ELSE excluded.last_summary_update
                    END,
                    summary_text = excluded.summary_text,
                    summary_token_count = excluded.summary_token_count,
                    summarized_through = CASE
                        WHEN ? = 0 AND summaries.summary_text = excluded.summary_text
                        THEN summaries.summarized_through
                        ELSE COALESCE(excluded.summarized_through, summaries.summarized_through)
                    END
                """,
                (
                    conversation_id,
                    summary_text,
                    summary_token_count,
                    _format_timestamp(utc_now()),
                    _format_timestamp(through) if through else None,
                    1 if summarized_through is not None else 0,
                )
            )
            conn.execute(
                """
                INSERT INTO conversation_totals (conversation_id, total_messages, total_tokens)
                VALUES (?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    total_messages = MAX(total_messages, excluded.total_messages),
                    total_tokens = MAX(total_tokens, excluded.total_tokens)
                """,
                (conversation_id, total_messages, total_tokens)
            )
            conn.execute("COMMIT")
        except (sqlite3.Error, ValueError) as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self._report_error("replace_summary", e)
            return False
        finally:
            conn.close()

        logger.info(f"Stored summary for conversation {conversation_id} ({summary_token_count} tokens)")
        return True

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete turns, summary and counters of a conversation."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            self._report_error("delete_conversation", e)
            return False

        try:
            conn.execute("BEGIN IMMEDIATE")
            for table in ("turns", "summaries", "conversation_totals"):
                conn.execute(f"DELETE FROM {table} WHERE conversation_id = ?", (conversation_id,))
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self._report_error("delete_conversation", e)
            return False
        finally:
            conn.close()

        logger.info(f"Deleted conversation {conversation_id}")
        return True
