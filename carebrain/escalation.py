"""
Escalation sink.

Compound events and trajectory projections that need a supervisor's
attention are written to escalation_queue. Publishing is idempotent per
(source_kind, source_id), so re-publishing a deduplicated event never
queues it twice. The engine and projector publish inside their own
transaction, so a queue entry exists only if its source was persisted.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from carebrain import clock, config
from carebrain.audit import record_action
from carebrain.db import get_connection, transaction
from carebrain.errors import EventNotFound
from carebrain.migrations import ensure_schema

logger = logging.getLogger(__name__)

COMPOUND_EVENT = "compound_event"
TRAJECTORY_PROJECTION = "trajectory_projection"

URGENT_SEVERITIES = ("HIGH", "CRITICAL")


@dataclass
class EscalationEntry:
    id: str
    source_kind: str
    source_id: str
    resident_id: str
    agency_id: str
    severity: str
    reason: str
    details: dict
    created_at: str
    acknowledged_at: str | None = None
    acknowledged_by: str | None = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EscalationEntry":
        return cls(
            id=row["id"],
            source_kind=row["source_kind"],
            source_id=row["source_id"],
            resident_id=row["resident_id"],
            agency_id=row["agency_id"],
            severity=row["severity"],
            reason=row["reason"],
            details=json.loads(row["details"]),
            created_at=row["created_at"],
            acknowledged_at=row["acknowledged_at"],
            acknowledged_by=row["acknowledged_by"],
        )


def _value(obj: Any) -> Any:
    return getattr(obj, "value", obj)


def event_escalation_reason(event) -> str | None:
    if event.requires_human_action:
        return f"{event.correlation_type} requires human action"
    if _value(event.severity) in URGENT_SEVERITIES:
        return f"{event.correlation_type} at {_value(event.severity)} severity"
    return None


def projection_escalation_reason(projection, horizon_hours: float) -> str | None:
    if projection.escalation_horizon_hours is None:
        return None
    if projection.projected_next_level == "CRITICAL":
        return f"{projection.risk_type} projected to reach CRITICAL in {projection.escalation_horizon_hours}h"
    if projection.escalation_horizon_hours <= horizon_hours:
        return (
            f"{projection.risk_type} projected to reach {projection.projected_next_level} "
            f"in {projection.escalation_horizon_hours}h"
        )
    return None


class EscalationSink:
    """Writes supervisor queue entries for events and projections."""

    def __init__(self, db_path: Path | str | None = None, horizon_hours: float | None = None):
        self.db_path = db_path
        self.horizon_hours = config.ESCALATION_HORIZON_HOURS if horizon_hours is None else horizon_hours
        ensure_schema(db_path)

    def publish_event(self, event, conn: sqlite3.Connection | None = None) -> EscalationEntry | None:
        reason = event_escalation_reason(event)
        if reason is None:
            return None
        details = {
            "correlation_type": event.correlation_type,
            "confidence_score": event.confidence_score,
            "reasoning_text": event.reasoning_text,
            "contributing_signals_count": event.contributing_signals_count,
        }
        return self._publish(
            conn, COMPOUND_EVENT, event.id, event.resident_id, event.agency_id, _value(event.severity), reason, details
        )

    def publish_projection(self, projection, conn: sqlite3.Connection | None = None) -> EscalationEntry | None:
        reason = projection_escalation_reason(projection, self.horizon_hours)
        if reason is None:
            return None
        details = {
            "risk_type": projection.risk_type,
            "current_risk_level": projection.current_risk_level,
            "projected_next_level": projection.projected_next_level,
            "escalation_horizon_hours": projection.escalation_horizon_hours,
            "projection_confidence": projection.projection_confidence,
            "rule_version_id": projection.rule_version_id,
        }
        return self._publish(
            conn,
            TRAJECTORY_PROJECTION,
            projection.id,
            projection.resident_id,
            projection.agency_id,
            projection.projected_next_level,
            reason,
            details,
        )

    def _publish(self, conn, source_kind, source_id, resident_id, agency_id, severity, reason, details):
        if conn is None:
            with get_connection(self.db_path) as own_conn:
                with transaction(own_conn):
                    return self._publish(
                        own_conn, source_kind, source_id, resident_id, agency_id, severity, reason, details
                    )

        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO escalation_queue
            (id, source_kind, source_id, resident_id, agency_id, severity, reason, details, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                source_kind,
                source_id,
                resident_id,
                agency_id,
                severity,
                reason,
                json.dumps(details, default=str),
                clock.to_iso(clock.utc_now()),
            ),
        )
        if cursor.rowcount == 1:
            logger.info(
                "Escalation queued",
                extra={"source_kind": source_kind, "source_id": source_id, "resident_id": resident_id},
            )
        row = conn.execute(
            "SELECT * FROM escalation_queue WHERE source_kind = ? AND source_id = ?",
            (source_kind, source_id),
        ).fetchone()
        return EscalationEntry.from_row(row)

    def pending(self, agency_id: str | None = None, limit: int = 100) -> list[EscalationEntry]:
        """Unacknowledged entries, most severe first, then newest."""
        sql = "SELECT * FROM escalation_queue WHERE acknowledged_at IS NULL"
        params: list[Any] = []
        if agency_id:
            sql += " AND agency_id = ?"
            params.append(agency_id)
        sql += (
            " ORDER BY CASE severity WHEN 'CRITICAL' THEN 0 WHEN 'HIGH' THEN 1 "
            "WHEN 'MODERATE' THEN 2 ELSE 3 END, created_at DESC LIMIT ?"
        )
        params.append(limit)
        with get_connection(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [EscalationEntry.from_row(r) for r in rows]

    def acknowledge(self, entry_id: str, actor_id: str) -> EscalationEntry:
        now = clock.to_iso(clock.utc_now())
        with get_connection(self.db_path) as conn:
            with transaction(conn):
                row = conn.execute("SELECT * FROM escalation_queue WHERE id = ?", (entry_id,)).fetchone()
                if row is None:
                    raise EventNotFound(f"Escalation entry not found: {entry_id}", entry_id=entry_id)
                if row["acknowledged_at"] is None:
                    conn.execute(
                        "UPDATE escalation_queue SET acknowledged_at = ?, acknowledged_by = ? WHERE id = ?",
                        (now, actor_id, entry_id),
                    )
                    record_action(conn, "escalation_acknowledged", actor_id, "escalation_queue", entry_id)
                row = conn.execute("SELECT * FROM escalation_queue WHERE id = ?", (entry_id,)).fetchone()
        return EscalationEntry.from_row(row)
