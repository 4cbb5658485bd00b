"""Tests for SQLiteMemoryStore turn and summary persistence."""

import shutil
import sqlite3
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
from memory.sqlite_store import SQLiteMemoryStore
from memory.token_estimator import BaseTokenEstimator, estimate_tokens
from memory.models import TurnRole, TurnStatus


class NegativeEstimator(BaseTokenEstimator):
    """Broken estimator used to check invariant enforcement."""

    def estimate(self, text: str) -> int:
        return -1


class LengthEstimator(BaseTokenEstimator):
    """One token per character."""

    def estimate(self, text: str) -> int:
        return len(text)


class TestTurnStore:
    """Test turn persistence and pagination."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = SQLiteMemoryStore(db_path=str(Path(self.temp_dir) / "memory.db"))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _seed(self, conversation_id: str, count: int):
        for i in range(count):
            role = "user" if i % 2 == 0 else "assistant"
            self.store.append_turn(conversation_id, role, f"message {i}")

    def test_append_turn(self):
        """Test appending a turn returns the stored turn."""
        turn = self.store.append_turn("conv-1", "user", "a" * 40, image_references=["img-1"])

        assert turn is not None
        assert turn.message_id
        assert turn.conversation_id == "conv-1"
        assert turn.role == TurnRole.USER
        assert turn.estimated_tokens == 10
        assert turn.context_weight == 1.0
        assert turn.image_references == ["img-1"]
        assert turn.status == TurnStatus.CONFIRMED

    def test_append_assigns_unique_ids(self):
        """Test that every append gets its own identifier."""
        first = self.store.append_turn("conv-1", "user", "hi")
        second = self.store.append_turn("conv-1", "user", "hi")
        assert first.message_id != second.message_id

    def test_unknown_role_raises(self):
        """Test that an unknown role fails fast."""
        with pytest.raises(ValueError, match="Unknown turn role"):
            self.store.append_turn("conv-1", "system", "hello")
        assert self.store.get_turn_count("conv-1") == 0

    def test_negative_estimate_raises(self):
        """Test that a broken estimator is treated as a programmer error."""
        store = SQLiteMemoryStore(
            db_path=str(Path(self.temp_dir) / "other.db"),
            estimator=NegativeEstimator()
        )
        with pytest.raises(ValueError, match="estimated_tokens"):
            store.append_turn("conv-1", "user", "hello")

    def test_custom_estimator(self):
        """Test that the estimator can be swapped."""
        store = SQLiteMemoryStore(
            db_path=str(Path(self.temp_dir) / "other.db"),
            estimator=LengthEstimator()
        )
        turn = store.append_turn("conv-1", "user", "hello")
        assert turn.estimated_tokens == 5

    def test_round_trip_fields(self):
        """Test that stored fields are read back unchanged."""
        self.store.append_turn(
            "conv-1", "assistant", "look at this", image_references=["a", "b"], context_weight=0.5
        )
        [turn] = self.store.get_recent_turns("conv-1", limit=5)

        assert turn.role == TurnRole.ASSISTANT
        assert turn.content == "look at this"
        assert turn.image_references == ["a", "b"]
        assert turn.context_weight == 0.5
        assert turn.timestamp.tzinfo is not None

    def test_recent_turns_oldest_first(self):
        """Test that recent turns come back in chronological order."""
        self._seed("conv-1", 6)
        turns = self.store.get_recent_turns("conv-1", limit=4)

        assert [t.content for t in turns] == ["message 2", "message 3", "message 4", "message 5"]
        timestamps = [t.timestamp for t in turns]
        assert timestamps == sorted(timestamps)

    def test_recent_turns_isolated_by_conversation(self):
        """Test that conversations do not leak into each other."""
        self._seed("conv-1", 3)
        self._seed("conv-2", 2)
        assert len(self.store.get_recent_turns("conv-1", limit=10)) == 3
        assert len(self.store.get_recent_turns("conv-2", limit=10)) == 2
        assert self.store.get_recent_turns("missing", limit=10) == []

    def test_zero_limit(self):
        """Test that a zero limit returns nothing."""
        self._seed("conv-1", 2)
        assert self.store.get_recent_turns("conv-1", limit=0) == []

    def test_pagination_non_overlapping(self):
        """Test that paging backwards yields disjoint, contiguous pages."""
        self._seed("conv-1", 9)

        first = self.store.get_recent_turns("conv-1", limit=3)
        second = self.store.get_recent_turns(
            "conv-1", limit=3, before_timestamp=first[0].timestamp
        )
        combined = self.store.get_recent_turns("conv-1", limit=6)

        first_ids = {t.message_id for t in first}
        second_ids = {t.message_id for t in second}
        assert first_ids.isdisjoint(second_ids)
        assert [t.message_id for t in second + first] == [t.message_id for t in combined]

    def test_timestamps_strictly_increase_with_frozen_clock(self):
        """Test that same-instant appends still get ordered timestamps."""
        frozen = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        with patch("memory.sqlite_store.utc_now", return_value=frozen):
            self._seed("conv-1", 4)

        turns = self.store.get_recent_turns("conv-1", limit=4)
        timestamps = [t.timestamp for t in turns]
        assert len(set(timestamps)) == 4
        assert timestamps == sorted(timestamps)
        assert [t.content for t in turns] == [f"message {i}" for i in range(4)]

        first = self.store.get_recent_turns("conv-1", limit=2)
        second = self.store.get_recent_turns("conv-1", limit=2, before_timestamp=first[0].timestamp)
        assert [t.content for t in second] == ["message 0", "message 1"]

    def test_totals_increment_with_appends(self):
        """Test that counters move with each append."""
        self.store.append_turn("conv-1", "user", "a" * 40)
        turn, totals = self.store.append_turn_with_totals("conv-1", "assistant", "b" * 80)

        assert turn.estimated_tokens == 20
        assert totals.total_messages == 2
        assert totals.total_tokens == 30
        assert self.store.get_totals("conv-1").total_tokens == 30

    def test_totals_for_unknown_conversation(self):
        """Test that counters default to zero."""
        totals = self.store.get_totals("missing")
        assert totals.total_messages == 0
        assert totals.total_tokens == 0

    def test_concurrent_appends_do_not_lose_updates(self):
        """Test that parallel appends keep the counters exact."""
        def append(i):
            return self.store.append_turn("conv-1", "user", "abcd")

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(append, range(40)))

        assert all(results)
        totals = self.store.get_totals("conv-1")
        assert totals.total_messages == 40
        assert totals.total_tokens == 40
        assert self.store.get_turn_count("conv-1") == 40

        timestamps = [t.timestamp for t in self.store.get_recent_turns("conv-1", limit=40)]
        assert len(set(timestamps)) == 40

    def test_get_turns_after(self):
        """Test fetching turns newer than a timestamp."""
        self._seed("conv-1", 5)
        all_turns = self.store.get_turns_after("conv-1")
        assert len(all_turns) == 5

        newer = self.store.get_turns_after("conv-1", all_turns[1].timestamp)
        assert [t.content for t in newer] == ["message 2", "message 3", "message 4"]

    def test_clear_conversation_turns(self):
        """Test clearing turns keeps the counters."""
        self._seed("conv-1", 3)
        assert self.store.clear_conversation_turns("conv-1") is True
        assert self.store.get_turn_count("conv-1") == 0
        assert self.store.get_totals("conv-1").total_messages == 3


class TestSummaryStore:
    """Test summary replacement and retrieval."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = SQLiteMemoryStore(db_path=str(Path(self.temp_dir) / "memory.db"))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_no_summary(self):
        """Test that a fresh conversation has no summary."""
        assert self.store.get_summary("conv-1") is None

    def test_replace_and_get(self):
        """Test storing a summary."""
        text = "They planned a hike for Saturday."
        assert self.store.replace_summary("conv-1", text, estimate_tokens(text), 12, 340) is True

        summary = self.store.get_summary("conv-1")
        assert summary.summary_text == text
        assert summary.summary_token_count == estimate_tokens(text)
        assert summary.total_messages == 12
        assert summary.total_tokens == 340
        assert summary.last_summary_update is not None

    def test_replace_is_idempotent(self):
        """Test that replaying the same replace leaves the same state."""
        text = "Talked about favourite books."
        args = ("conv-1", text, estimate_tokens(text), 4, 100)

        assert self.store.replace_summary(*args)
        first = self.store.get_summary("conv-1")
        assert self.store.replace_summary(*args)
        second = self.store.get_summary("conv-1")

        assert first == second

    def test_replace_overwrites_text(self):
        """Test that a new text replaces the old one and moves the timestamp."""
        old = "Old summary."
        new = "New summary with more detail."
        with patch("memory.sqlite_store.utc_now",
                   return_value=datetime(2020, 1, 1, tzinfo=timezone.utc)):
            self.store.replace_summary("conv-1", old, estimate_tokens(old), 2, 10)
        self.store.replace_summary("conv-1", new, estimate_tokens(new), 4, 20)

        summary = self.store.get_summary("conv-1")
        assert summary.summary_text == new
        assert summary.last_summary_update > datetime(2020, 1, 1, tzinfo=timezone.utc)

    def test_token_count_recomputed_from_text(self):
        """Test that a stale token count is replaced by the estimate."""
        text = "a" * 200
        self.store.replace_summary("conv-1", text, 3, 1, 50)
        assert self.store.get_summary("conv-1").summary_token_count == 50

    def test_total_messages_never_decrease(self):
        """Test that counters only move forwards."""
        self.store.append_turn("conv-1", "user", "a" * 40)
        self.store.append_turn("conv-1", "user", "a" * 40)
        text = "Summary."
        self.store.replace_summary("conv-1", text, estimate_tokens(text), 1, 5)

        summary = self.store.get_summary("conv-1")
        assert summary.total_messages == 2
        assert summary.total_tokens == 20

    def test_negative_counts_raise(self):
        """Test that negative counters are rejected."""
        with pytest.raises(ValueError):
            self.store.replace_summary("conv-1", "x", 1, -1, 0)

    def test_summarized_through_kept_when_omitted(self):
        """Test that the summarized-through marker survives a replace without one."""
        marker = datetime(2026, 3, 1, tzinfo=timezone.utc)
        self.store.replace_summary("conv-1", "One.", estimate_tokens("One."), 1, 1, summarized_through=marker)
        self.store.replace_summary("conv-1", "Two.", estimate_tokens("Two."), 2, 2)
        assert self.store.get_summary("conv-1").summarized_through == marker

    def test_summarized_through_defaults_to_newest_turn(self):
        """Test that a summary stored without a marker covers the turns so far."""
        self.store.append_turn("conv-1", "user", "first")
        newest = self.store.append_turn("conv-1", "assistant", "second")
        text = "They said hello."
        self.store.replace_summary("conv-1", text, estimate_tokens(text), 2, 4)
        first = self.store.get_summary("conv-1")
        assert first.summarized_through == newest.timestamp

        self.store.append_turn("conv-1", "user", "third")
        self.store.replace_summary("conv-1", text, estimate_tokens(text), 2, 4)
        assert self.store.get_summary("conv-1").summarized_through == newest.timestamp

    def test_delete_conversation_cascades(self):
        """Test that deleting a conversation removes everything."""
        self.store.append_turn("conv-1", "user", "hello")
        self.store.replace_summary("conv-1", "Hi.", estimate_tokens("Hi."), 1, 2)

        assert self.store.delete_conversation("conv-1") is True
        assert self.store.get_summary("conv-1") is None
        assert self.store.get_turn_count("conv-1") == 0
        assert self.store.get_totals("conv-1").total_messages == 0


class TestStorageFailures:
    """Test degraded behaviour when the database is unavailable."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.on_error = Mock()
        self.store = SQLiteMemoryStore(
            db_path=str(Path(self.temp_dir) / "memory.db"),
            on_error=self.on_error
        )
        self.store.append_turn("conv-1", "user", "hello")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _broken(self):
        return patch.object(
            self.store, "_get_connection", side_effect=sqlite3.OperationalError("disk I/O error")
        )

    def test_reads_degrade_to_empty(self):
        """Test that read errors are absorbed."""
        with self._broken():
            assert self.store.get_recent_turns("conv-1", limit=5) == []
            assert self.store.get_turns_after("conv-1") == []
            assert self.store.get_summary("conv-1") is None
            assert self.store.get_turn_count("conv-1") == 0
            assert self.store.get_totals("conv-1").total_messages == 0

    def test_writes_report_failure(self):
        """Test that write errors become falsy results."""
        with self._broken():
            assert self.store.append_turn("conv-1", "user", "again") is None
            assert self.store.replace_summary("conv-1", "x", 1, 1, 1) is False
            assert self.store.clear_conversation_turns("conv-1") is False
            assert self.store.delete_conversation("conv-1") is False

        assert self.store.get_turn_count("conv-1") == 1

    def test_errors_reach_callback(self):
        """Test that absorbed errors are forwarded to the error channel."""
        with self._broken():
            self.store.get_recent_turns("conv-1", limit=5)

        operation, error = self.on_error.call_args[0]
        assert operation == "get_recent_turns"
        assert isinstance(error, sqlite3.OperationalError)

    def test_corrupt_turn_row_degrades_to_empty(self):
        """Test that undecodable stored turns are treated as storage errors."""
        conn = sqlite3.connect(self.store.db_path)
        conn.execute("UPDATE turns SET image_references = '{not json'")
        conn.commit()
        conn.close()

        assert self.store.get_recent_turns("conv-1", limit=5) == []
        assert self.store.get_turns_after("conv-1") == []
        operation, error = self.on_error.call_args[0]
        assert operation == "get_turns_after"
        assert isinstance(error, ValueError)

    def test_corrupt_summary_timestamp_degrades_to_none(self):
        """Test that an unparseable summary timestamp yields no summary."""
        self.store.replace_summary("conv-1", "Hi.", estimate_tokens("Hi."), 1, 2)
        conn = sqlite3.connect(self.store.db_path)
        conn.execute("UPDATE summaries SET last_summary_update = 'yesterday'")
        conn.commit()
        conn.close()

        assert self.store.get_summary("conv-1") is None
        assert self.on_error.call_args[0][0] == "get_summary"
