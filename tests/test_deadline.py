"""
Tests for caller-supplied deadlines.
"""

import threading

import pytest

from carebrain.db import get_connection, transaction
from carebrain.deadline import Deadline, check
from carebrain.errors import DeadlineExceeded, ErrorKind
from carebrain.state_store import VersionedStateStore


class TestDeadline:
    def test_remaining_and_expiry(self):
        assert not Deadline.after(60).expired
        assert Deadline.after(-1).expired
        assert Deadline.after(-1).remaining() == 0.0

    def test_check_raises_with_operation(self):
        with pytest.raises(DeadlineExceeded) as exc_info:
            Deadline.after(-1).check("state.transition")
        error = exc_info.value.to_error()
        assert error.kind is ErrorKind.DEADLINE_EXCEEDED
        assert error.details == {"operation": "state.transition"}

    def test_optional_check(self):
        check(None, "anything")
        check(Deadline.after(60), "anything")

    def test_sqlite_timeout_is_bounded(self):
        assert Deadline.after(0.5).sqlite_timeout(5.0) <= 0.5
        assert Deadline.after(60).sqlite_timeout(5.0) == 5.0


class TestDeadlineOnStore:
    def test_expired_deadline_leaves_state_unchanged(self, db_path):
        store = VersionedStateStore(db_path)
        store.initialize("res-1", "resident", "onboarding")
        with pytest.raises(DeadlineExceeded):
            store.transition("res-1", 1, {"care_state": "ACUTE"}, "fall", "nurse-1", deadline=Deadline.after(-1))
        assert store.get("res-1").state_version == 1

    def test_lock_wait_bounded_by_deadline(self, db_path):
        import sqlite3

        store = VersionedStateStore(db_path)
        store.initialize("res-1", "resident", "onboarding")
        locked = threading.Event()
        release = threading.Event()

        def hold_write_lock():
            with get_connection(db_path) as conn:
                with transaction(conn):
                    locked.set()
                    release.wait(5)

        holder = threading.Thread(target=hold_write_lock)
        holder.start()
        locked.wait(5)
        try:
            with pytest.raises((DeadlineExceeded, sqlite3.OperationalError)):
                store.transition(
                    "res-1", 1, {"care_state": "ACUTE"}, "fall", "nurse-1", deadline=Deadline.after(0.2)
                )
        finally:
            release.set()
            holder.join()
        assert store.get("res-1").state_version == 1
