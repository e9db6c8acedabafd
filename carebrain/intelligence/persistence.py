"""
Compound intelligence event persistence.

Events and their signal contributions are written together inside the
engine's transaction. Contributions are point-in-time copies of the
contributing facts, so an event explains itself without reaching back
into source tables. Only the supervisor review columns of an event are
ever updated.
"""

import json
import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from carebrain import clock
from carebrain.audit import record_action
from carebrain.db import get_connection, transaction
from carebrain.errors import EventNotFound, InvalidInput
from carebrain.intelligence.rules import Severity
from carebrain.migrations import ensure_schema

logger = logging.getLogger(__name__)

SUPERVISOR_ACTIONS = ("ACKNOWLEDGED", "ESCALATED", "DISMISSED", "CARE_PLAN_UPDATED")


# ============================================================
# DATA STRUCTURES
# ============================================================


@dataclass
class SignalContribution:
    id: str
    signal_fact_id: str
    signal_source_table: str
    signal_source_id: str
    signal_type: str
    signal_timestamp: str
    signal_data: dict
    contribution_weight: float

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SignalContribution":
        return cls(
            id=row["id"],
            signal_fact_id=row["signal_fact_id"],
            signal_source_table=row["signal_source_table"],
            signal_source_id=row["signal_source_id"],
            signal_type=row["signal_type"],
            signal_timestamp=row["signal_timestamp"],
            signal_data=json.loads(row["signal_data"]),
            contribution_weight=row["contribution_weight"],
        )


@dataclass
class CompoundEvent:
    """Explainable output of one fired correlation rule."""

    id: str
    dedup_key: str
    resident_id: str
    agency_id: str
    correlation_type: str
    correlation_rule_id: str
    severity: Severity
    confidence_score: float
    reasoning_text: str
    reasoning_details: dict
    time_window_start: str
    time_window_end: str
    contributing_signals_count: int
    requires_human_action: bool
    contributions: list[SignalContribution] = field(default_factory=list)
    created_at: str | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    supervisor_action: str | None = None
    supervisor_notes: str | None = None
    # False when evaluation found this event already stored for the window.
    created: bool = field(default=True, compare=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dedup_key": self.dedup_key,
            "resident_id": self.resident_id,
            "agency_id": self.agency_id,
            "correlation_type": self.correlation_type,
            "correlation_rule_id": self.correlation_rule_id,
            "severity": self.severity.value,
            "confidence_score": self.confidence_score,
            "reasoning_text": self.reasoning_text,
            "reasoning_details": self.reasoning_details,
            "time_window_start": self.time_window_start,
            "time_window_end": self.time_window_end,
            "contributing_signals_count": self.contributing_signals_count,
            "requires_human_action": self.requires_human_action,
            "contributions": [c.to_dict() for c in self.contributions],
            "created_at": self.created_at,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at,
            "supervisor_action": self.supervisor_action,
            "supervisor_notes": self.supervisor_notes,
            "created": self.created,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any], contributions: list[SignalContribution]) -> "CompoundEvent":
        return cls(
            id=row["id"],
            dedup_key=row["dedup_key"],
            resident_id=row["resident_id"],
            agency_id=row["agency_id"],
            correlation_type=row["correlation_type"],
            correlation_rule_id=row["correlation_rule_id"],
            severity=Severity(row["severity"]),
            confidence_score=row["confidence_score"],
            reasoning_text=row["reasoning_text"],
            reasoning_details=json.loads(row["reasoning_details"]),
            time_window_start=row["time_window_start"],
            time_window_end=row["time_window_end"],
            contributing_signals_count=row["contributing_signals_count"],
            requires_human_action=bool(row["requires_human_action"]),
            contributions=contributions,
            created_at=row["created_at"],
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            supervisor_action=row["supervisor_action"],
            supervisor_notes=row["supervisor_notes"],
        )


# ============================================================
# STORE
# ============================================================


class CompoundEventStore:
    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path
        ensure_schema(db_path)

    # --- in-transaction primitives ---

    @staticmethod
    def insert(conn: sqlite3.Connection, event: CompoundEvent) -> None:
        """Write an event and all its contributions in the caller's transaction."""
        conn.execute(
            """
            INSERT INTO compound_intelligence_events
            (id, dedup_key, resident_id, agency_id, correlation_type, correlation_rule_id,
             severity, confidence_score, reasoning_text, reasoning_details,
             time_window_start, time_window_end, contributing_signals_count,
             requires_human_action, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.dedup_key,
                event.resident_id,
                event.agency_id,
                event.correlation_type,
                event.correlation_rule_id,
                event.severity.value,
                event.confidence_score,
                event.reasoning_text,
                json.dumps(event.reasoning_details, sort_keys=True, default=str),
                event.time_window_start,
                event.time_window_end,
                event.contributing_signals_count,
                1 if event.requires_human_action else 0,
                event.created_at,
            ),
        )
        conn.executemany(
            """
            INSERT INTO signal_contributions
            (id, compound_event_id, signal_fact_id, signal_source_table, signal_source_id,
             signal_type, signal_timestamp, signal_data, contribution_weight, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    c.id,
                    event.id,
                    c.signal_fact_id,
                    c.signal_source_table,
                    c.signal_source_id,
                    c.signal_type,
                    c.signal_timestamp,
                    json.dumps(c.signal_data, sort_keys=True, default=str),
                    c.contribution_weight,
                    event.created_at,
                )
                for c in event.contributions
            ],
        )

    @staticmethod
    def load(conn: sqlite3.Connection, event_id: str) -> CompoundEvent | None:
        row = conn.execute("SELECT * FROM compound_intelligence_events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            return None
        contributions = [
            SignalContribution.from_row(r)
            for r in conn.execute(
                "SELECT * FROM signal_contributions WHERE compound_event_id = ? ORDER BY signal_timestamp, signal_fact_id",
                (event_id,),
            ).fetchall()
        ]
        return CompoundEvent.from_row(row, contributions)

    @staticmethod
    def load_by_dedup_key(conn: sqlite3.Connection, dedup_key: str) -> CompoundEvent | None:
        row = conn.execute(
            "SELECT id FROM compound_intelligence_events WHERE dedup_key = ?", (dedup_key,)
        ).fetchone()
        return CompoundEventStore.load(conn, row["id"]) if row else None

    @staticmethod
    def count_firings(
        conn: sqlite3.Connection,
        rule_id: str,
        resident_id: str,
        since: str,
        before: str,
    ) -> int:
        """Events a rule produced for a resident with window end in [since, before)."""
        row = conn.execute(
            """
            SELECT COUNT(*) AS n FROM compound_intelligence_events
            WHERE correlation_rule_id = ? AND resident_id = ?
              AND time_window_end >= ? AND time_window_end < ?
            """,
            (rule_id, resident_id, since, before),
        ).fetchone()
        return row["n"]

    # --- public reads ---

    def get(self, event_id: str) -> CompoundEvent:
        with get_connection(self.db_path) as conn:
            event = self.load(conn, event_id)
        if event is None:
            raise EventNotFound(f"Compound event not found: {event_id}", event_id=event_id)
        event.created = False
        return event

    def list_for_resident(self, resident_id: str, limit: int = 50) -> list[CompoundEvent]:
        with get_connection(self.db_path) as conn:
            ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM compound_intelligence_events WHERE resident_id = ? "
                    "ORDER BY created_at DESC LIMIT ?",
                    (resident_id, limit),
                ).fetchall()
            ]
            events = [self.load(conn, i) for i in ids]
        for event in events:
            event.created = False
        return events

    def unreviewed(self, agency_id: str | None = None, limit: int = 100) -> list[CompoundEvent]:
        """Events awaiting supervisor review (requires_human_action, not yet reviewed)."""
        sql = "SELECT id FROM compound_intelligence_events WHERE reviewed_at IS NULL AND requires_human_action = 1"
        params: list[Any] = []
        if agency_id:
            sql += " AND agency_id = ?"
            params.append(agency_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with get_connection(self.db_path) as conn:
            events = [self.load(conn, r["id"]) for r in conn.execute(sql, params).fetchall()]
        for event in events:
            event.created = False
        return events

    # --- supervisor review ---

    def review_event(
        self,
        event_id: str,
        supervisor_id: str,
        action: str,
        notes: str | None = None,
    ) -> CompoundEvent:
        """Record a supervisor's review; the evidence itself stays untouched."""
        action = action.upper()
        if action not in SUPERVISOR_ACTIONS:
            raise InvalidInput(f"Unknown supervisor action: {action}", allowed=list(SUPERVISOR_ACTIONS))
        now = clock.to_iso(clock.utc_now())
        with get_connection(self.db_path) as conn:
            with transaction(conn):
                if self.load(conn, event_id) is None:
                    raise EventNotFound(f"Compound event not found: {event_id}", event_id=event_id)
                conn.execute(
                    """
                    UPDATE compound_intelligence_events
                    SET reviewed_by = ?, reviewed_at = ?, supervisor_action = ?, supervisor_notes = ?
                    WHERE id = ?
                    """,
                    (supervisor_id, now, action, notes, event_id),
                )
                record_action(
                    conn,
                    "compound_event_reviewed",
                    supervisor_id,
                    "compound_intelligence_events",
                    event_id,
                    new_state={"supervisor_action": action},
                    metadata={"notes": notes} if notes else {},
                )
                event = self.load(conn, event_id)
        logger.info(
            "Compound event reviewed",
            extra={"event_id": event_id, "supervisor_id": supervisor_id, "supervisor_action": action},
        )
        event.created = False
        return event
