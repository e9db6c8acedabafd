"""
Versioned State Store.

One state row per subject (resident or system) guarded by optimistic
concurrency: every writer supplies the version it read, and a write lands
only if that version is still current. Accepted transitions bump the
version by exactly one and append an immutable history row holding the
full before/after snapshot of every tracked field.

There is no process-wide singleton. Callers hold a VersionedStateStore
bound to a database and, per subject, a SubjectState aggregate.

Usage:
    store = VersionedStateStore(db_path)
    store.initialize("res-1", "resident", actor_id="onboarding")
    result = store.transition("res-1", 1, {"care_state": "HEIGHTENED"}, "fall risk", "nurse-7")
    if result.error and result.error.kind is ErrorKind.VERSION_CONFLICT:
        ...  # re-read and retry with result.current_version
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from carebrain import clock
from carebrain.db import get_connection, transaction
from carebrain.deadline import Deadline
from carebrain.deadline import check as check_deadline
from carebrain.errors import CoreError, ErrorKind, InvalidInput
from carebrain.migrations import ensure_schema

logger = logging.getLogger(__name__)

# Tracked fields and the values each may take.
TRACKED_FIELDS: dict[str, tuple[str, ...]] = {
    "care_state": ("NORMAL", "HEIGHTENED", "ACUTE", "PALLIATIVE"),
    "emergency_state": ("NONE", "ACTIVE", "ACKNOWLEDGED", "RESOLVED"),
    "connectivity_state": ("ONLINE", "DEGRADED", "OFFLINE"),
}

DEFAULT_FIELDS: dict[str, str] = {
    "care_state": "NORMAL",
    "emergency_state": "NONE",
    "connectivity_state": "ONLINE",
}

SUBJECT_TYPES = ("resident", "system")


# ============================================================
# DATA STRUCTURES
# ============================================================


@dataclass
class StateSnapshot:
    subject_id: str
    subject_type: str
    fields: dict[str, str]
    state_version: int
    updated_by: str
    updated_at: str
    created_at: str

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "subject_type": self.subject_type,
            **self.fields,
            "state_version": self.state_version,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StateSnapshot":
        return cls(
            subject_id=row["subject_id"],
            subject_type=row["subject_type"],
            fields={name: row[name] for name in TRACKED_FIELDS},
            state_version=row["state_version"],
            updated_by=row["updated_by"],
            updated_at=row["updated_at"],
            created_at=row["created_at"],
        )


@dataclass
class HistoryEntry:
    id: str
    subject_id: str
    from_version: int
    to_version: int
    previous_state: dict | None
    new_state: dict
    reason: str
    actor_id: str
    transitioned_at: str

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "HistoryEntry":
        return cls(
            id=row["id"],
            subject_id=row["subject_id"],
            from_version=row["from_version"],
            to_version=row["to_version"],
            previous_state=json.loads(row["previous_state"]) if row["previous_state"] else None,
            new_state=json.loads(row["new_state"]),
            reason=row["reason"],
            actor_id=row["actor_id"],
            transitioned_at=row["transitioned_at"],
        )


@dataclass
class TransitionResult:
    """Outcome of initialize/transition. Conflicts are results, not exceptions."""

    success: bool
    current_version: int | None
    error: CoreError | None = None
    changed: bool = False
    history_id: str | None = None
    state: dict[str, str] | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "current_version": self.current_version,
            "changed": self.changed,
            "history_id": self.history_id,
            "state": self.state,
            "error": self.error.to_dict() if self.error else None,
        }


# ============================================================
# VALIDATION
# ============================================================


def validate_fields(updates: Mapping[str, Any]) -> dict[str, str]:
    """Check names and values of tracked fields; raise InvalidInput otherwise."""
    if not isinstance(updates, Mapping):
        raise InvalidInput("field_updates must be an object of field names to values")
    clean = {}
    for name, value in updates.items():
        allowed = TRACKED_FIELDS.get(name)
        if allowed is None:
            raise InvalidInput(f"Unknown state field: {name}", field=name, allowed=sorted(TRACKED_FIELDS))
        if value not in allowed:
            raise InvalidInput(f"Invalid value for {name}: {value!r}", field=name, value=value, allowed=list(allowed))
        clean[name] = value
    return clean


# ============================================================
# IN-TRANSACTION PRIMITIVES
# (used directly by the gateway and onboarding so their writes share one commit)
# ============================================================


def read_state(conn: sqlite3.Connection, subject_id: str) -> StateSnapshot | None:
    row = conn.execute("SELECT * FROM versioned_state WHERE subject_id = ?", (subject_id,)).fetchone()
    return StateSnapshot.from_row(row) if row else None


def _append_history(
    conn: sqlite3.Connection,
    subject_id: str,
    from_version: int,
    to_version: int,
    previous: dict | None,
    new: dict,
    reason: str,
    actor_id: str,
    now: str,
) -> str:
    history_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO state_transition_history
        (id, subject_id, from_version, to_version, previous_state, new_state, reason, actor_id, transitioned_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            history_id,
            subject_id,
            from_version,
            to_version,
            json.dumps(previous, sort_keys=True) if previous is not None else None,
            json.dumps(new, sort_keys=True),
            reason,
            actor_id,
            now,
        ),
    )
    return history_id


def apply_initialize(
    conn: sqlite3.Connection,
    subject_id: str,
    subject_type: str,
    actor_id: str,
    initial_fields: Mapping[str, Any] | None = None,
    reason: str = "initialized",
) -> TransitionResult:
    if subject_type not in SUBJECT_TYPES:
        raise InvalidInput(f"Invalid subject type: {subject_type!r}", allowed=list(SUBJECT_TYPES))
    fields = {**DEFAULT_FIELDS, **validate_fields(initial_fields or {})}

    existing = read_state(conn, subject_id)
    if existing is not None:
        return TransitionResult(
            success=False,
            current_version=existing.state_version,
            error=CoreError(
                ErrorKind.ALREADY_INITIALIZED,
                f"State for {subject_id} already exists",
                {"current_version": existing.state_version},
            ),
            state=existing.fields,
        )

    now = clock.to_iso(clock.utc_now())
    conn.execute(
        """
        INSERT INTO versioned_state
        (subject_id, subject_type, care_state, emergency_state, connectivity_state,
         state_version, updated_by, updated_at, created_at)
        VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
        """,
        (
            subject_id,
            subject_type,
            fields["care_state"],
            fields["emergency_state"],
            fields["connectivity_state"],
            actor_id,
            now,
            now,
        ),
    )
    history_id = _append_history(conn, subject_id, 0, 1, None, fields, reason, actor_id, now)
    return TransitionResult(success=True, current_version=1, changed=True, history_id=history_id, state=fields)


def apply_transition(
    conn: sqlite3.Connection,
    subject_id: str,
    expected_version: int,
    field_updates: Mapping[str, Any],
    reason: str,
    actor_id: str,
) -> TransitionResult:
    """
    Compare-and-swap inside the caller's (IMMEDIATE) transaction.

    The caller's write lock makes the read-compare-write atomic; the
    version predicate on the UPDATE guards it a second time.
    """
    updates = validate_fields(field_updates)
    if not reason:
        raise InvalidInput("Transition reason is required")
    if not actor_id:
        raise InvalidInput("Transition actor_id is required")

    current = read_state(conn, subject_id)
    if current is None:
        return TransitionResult(
            success=False,
            current_version=None,
            error=CoreError(ErrorKind.NOT_INITIALIZED, f"No state record for {subject_id}"),
        )

    if current.state_version != expected_version:
        return TransitionResult(
            success=False,
            current_version=current.state_version,
            error=CoreError(
                ErrorKind.VERSION_CONFLICT,
                f"Expected version {expected_version}, found {current.state_version}",
                {"current_version": current.state_version, "expected_version": expected_version},
            ),
            state=current.fields,
        )

    new_fields = {**current.fields, **updates}
    if new_fields == current.fields:
        return TransitionResult(
            success=True,
            current_version=current.state_version,
            changed=False,
            state=current.fields,
        )

    now = clock.to_iso(clock.utc_now())
    next_version = current.state_version + 1
    cursor = conn.execute(
        """
        UPDATE versioned_state
        SET care_state = ?, emergency_state = ?, connectivity_state = ?,
            state_version = ?, updated_by = ?, updated_at = ?
        WHERE subject_id = ? AND state_version = ?
        """,
        (
            new_fields["care_state"],
            new_fields["emergency_state"],
            new_fields["connectivity_state"],
            next_version,
            actor_id,
            now,
            subject_id,
            expected_version,
        ),
    )
    if cursor.rowcount != 1:
        raise sqlite3.IntegrityError(f"versioned_state row for {subject_id} changed under write lock")

    history_id = _append_history(
        conn, subject_id, current.state_version, next_version, current.fields, new_fields, reason, actor_id, now
    )
    return TransitionResult(
        success=True,
        current_version=next_version,
        changed=True,
        history_id=history_id,
        state=new_fields,
    )


# ============================================================
# STORE
# ============================================================


class VersionedStateStore:
    """Storage-backed state records, one per subject."""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path
        ensure_schema(db_path)

    def initialize(
        self,
        subject_id: str,
        subject_type: str,
        actor_id: str,
        initial_fields: Mapping[str, Any] | None = None,
        deadline: Deadline | None = None,
    ) -> TransitionResult:
        check_deadline(deadline, "state.initialize")
        with get_connection(self.db_path, deadline) as conn:
            with transaction(conn):
                result = apply_initialize(conn, subject_id, subject_type, actor_id, initial_fields)
                check_deadline(deadline, "state.initialize")
        if result.success:
            logger.info("State initialized", extra={"subject_id": subject_id, "state_version": 1})
        return result

    def get(self, subject_id: str) -> StateSnapshot | None:
        with get_connection(self.db_path) as conn:
            return read_state(conn, subject_id)

    def transition(
        self,
        subject_id: str,
        expected_version: int,
        new_fields: Mapping[str, Any],
        reason: str,
        actor_id: str,
        deadline: Deadline | None = None,
    ) -> TransitionResult:
        check_deadline(deadline, "state.transition")
        with get_connection(self.db_path, deadline) as conn:
            with transaction(conn):
                result = apply_transition(conn, subject_id, expected_version, new_fields, reason, actor_id)
                check_deadline(deadline, "state.transition")

        log_extra = {
            "subject_id": subject_id,
            "expected_version": expected_version,
            "current_version": result.current_version,
        }
        if result.success and result.changed:
            logger.info("State transition applied", extra=log_extra)
        elif result.success:
            logger.debug("State transition was a no-op", extra=log_extra)
        else:
            # Conflicts are routine outcomes for the caller to retry.
            logger.info("State transition rejected: %s", result.error.kind, extra=log_extra)
        return result

    def history(self, subject_id: str, limit: int = 100) -> list[HistoryEntry]:
        """Transitions for a subject, newest first."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM state_transition_history
                WHERE subject_id = ?
                ORDER BY to_version DESC
                LIMIT ?
                """,
                (subject_id, limit),
            ).fetchall()
        return [HistoryEntry.from_row(r) for r in rows]

    def aggregate(self, subject_id: str) -> "SubjectState":
        return SubjectState(self, subject_id)


# ============================================================
# AGGREGATE ROOT
# ============================================================


@dataclass
class SubjectState:
    """
    One subject's state as last read by this caller.

    Transitions are submitted against the remembered version; on conflict
    call refresh() and decide again with fresh data.
    """

    store: VersionedStateStore
    subject_id: str
    snapshot: StateSnapshot | None = field(default=None, init=False)

    def refresh(self) -> StateSnapshot | None:
        self.snapshot = self.store.get(self.subject_id)
        return self.snapshot

    @property
    def version(self) -> int | None:
        return self.snapshot.state_version if self.snapshot else None

    @property
    def fields(self) -> dict[str, str]:
        return dict(self.snapshot.fields) if self.snapshot else {}

    def transition(
        self,
        new_fields: Mapping[str, Any],
        reason: str,
        actor_id: str,
        deadline: Deadline | None = None,
    ) -> TransitionResult:
        if self.snapshot is None:
            self.refresh()
        if self.snapshot is None:
            return TransitionResult(
                success=False,
                current_version=None,
                error=CoreError(ErrorKind.NOT_INITIALIZED, f"No state record for {self.subject_id}"),
            )
        result = self.store.transition(
            self.subject_id, self.snapshot.state_version, new_fields, reason, actor_id, deadline
        )
        if result.success and result.changed:
            self.refresh()
        return result


def transition_with_retry(
    store: VersionedStateStore,
    subject_id: str,
    mutate: Callable[[dict[str, str]], Mapping[str, Any]],
    reason: str,
    actor_id: str,
    max_attempts: int = 3,
    deadline: Deadline | None = None,
) -> TransitionResult:
    """
    Read, compute updates with ``mutate(current_fields)``, and write; on
    VERSION_CONFLICT re-read and try again, up to max_attempts.
    """
    aggregate = store.aggregate(subject_id)
    result = None
    for attempt in range(1, max_attempts + 1):
        check_deadline(deadline, "state.transition_with_retry")
        if aggregate.refresh() is None:
            return TransitionResult(
                success=False,
                current_version=None,
                error=CoreError(ErrorKind.NOT_INITIALIZED, f"No state record for {subject_id}"),
            )
        result = aggregate.transition(mutate(aggregate.fields), reason, actor_id, deadline)
        if result.success or result.error.kind is not ErrorKind.VERSION_CONFLICT:
            return result
        logger.info(
            "Retrying state transition after conflict",
            extra={"subject_id": subject_id, "attempt": attempt, "current_version": result.current_version},
        )
    return result
