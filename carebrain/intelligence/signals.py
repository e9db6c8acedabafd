"""
Signal Normalizer.

Turns rows written by collaborator systems (medication administration,
vitals, task completion, family observation, device activity) into
uniform, immutable signal facts.

normalize() is a pure function of the source row and an AbnormalityPolicy:
the fact id is derived from the source pointer, so re-normalizing the same
row always yields an identical fact. SignalFactStore persists facts, with a
UNIQUE(source_table, source_id) constraint turning replays into no-ops.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from carebrain import clock
from carebrain.db import get_connection, transaction
from carebrain.deadline import Deadline
from carebrain.deadline import check as check_deadline
from carebrain.errors import ConfigError, InvalidInput
from carebrain.migrations import ensure_schema

logger = logging.getLogger(__name__)

POLICY_PATH = Path(__file__).parent / "abnormality_policy.yaml"

PAYLOAD_VERSION = 1

# Fixed namespace so fact ids are stable across processes and hosts.
FACT_NAMESPACE = uuid.UUID("6f1d2c9e-4a8b-5e37-9c01-3b7a2d5e8f40")


class SignalType(str, Enum):
    MEDICATION_ADMIN = "medication_admin"
    VITAL_SIGN = "vital_sign"
    TASK_COMPLETION = "task_completion"
    FAMILY_OBSERVATION = "family_observation"
    CARE_ACTIVITY = "care_activity"


class AbnormalityFlag(str, Enum):
    NORMAL = "NORMAL"
    ABNORMAL = "ABNORMAL"


SOURCE_TABLES: dict[str, SignalType] = {
    "medication_administration_log": SignalType.MEDICATION_ADMIN,
    "health_metrics": SignalType.VITAL_SIGN,
    "tasks": SignalType.TASK_COMPLETION,
    "family_observations": SignalType.FAMILY_OBSERVATION,
    "device_activity": SignalType.CARE_ACTIVITY,
}


# ============================================================
# ABNORMALITY POLICY
# ============================================================


@dataclass(frozen=True)
class AbnormalityPolicy:
    """Fixed thresholds deciding NORMAL vs ABNORMAL per signal type."""

    vital_bands: dict[str, tuple[float | None, float | None]]
    abnormal_medication_statuses: frozenset[str]
    late_tolerance_minutes: float
    abnormal_task_outcomes: frozenset[str]
    concern_keywords: tuple[str, ...]
    abnormal_concern_levels: frozenset[str]
    abnormal_activity_trends: frozenset[str]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AbnormalityPolicy":
        try:
            bands = {}
            for metric, bounds in (data.get("vital_bands") or {}).items():
                low, high = bounds
                bands[metric.lower()] = (
                    None if low is None else float(low),
                    None if high is None else float(high),
                )
            medication = data["medication"]
            task = data["task"]
            return cls(
                vital_bands=bands,
                abnormal_medication_statuses=frozenset(s.upper() for s in medication["abnormal_statuses"]),
                late_tolerance_minutes=float(medication["late_tolerance_minutes"]),
                abnormal_task_outcomes=frozenset(s.upper() for s in task["abnormal_outcomes"]),
                concern_keywords=tuple(k.lower() for k in task.get("concern_keywords") or ()),
                abnormal_concern_levels=frozenset(
                    s.upper() for s in data["family_observation"]["abnormal_concern_levels"]
                ),
                abnormal_activity_trends=frozenset(
                    s.upper() for s in data["care_activity"]["abnormal_trends"]
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Malformed abnormality policy: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "AbnormalityPolicy":
        policy_path = Path(path) if path else POLICY_PATH
        try:
            with open(policy_path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read abnormality policy {policy_path}: {e}", path=str(policy_path)) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Abnormality policy {policy_path} is empty", path=str(policy_path))
        return cls.from_dict(data)


_default_policy: AbnormalityPolicy | None = None


def default_policy() -> AbnormalityPolicy:
    global _default_policy
    if _default_policy is None:
        _default_policy = AbnormalityPolicy.load()
    return _default_policy


# ============================================================
# PAYLOADS (one schema-versioned struct per signal type)
# ============================================================


@dataclass(frozen=True)
class MedicationPayload:
    medication_id: str | None
    status: str
    scheduled_at: str | None
    administered_at: str | None
    minutes_late: float | None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class VitalPayload:
    metric_type: str
    value: float
    unit: str | None
    band_low: float | None
    band_high: float | None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TaskPayload:
    task_name: str | None
    state: str
    outcome: str | None
    notes: str | None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class FamilyObservationPayload:
    concern_level: str
    observation_text: str | None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CareActivityPayload:
    activity_trend: str
    activity_score: float | None
    device_id: str | None
    extra: dict = field(default_factory=dict)


Payload = MedicationPayload | VitalPayload | TaskPayload | FamilyObservationPayload | CareActivityPayload

PAYLOAD_TYPES: dict[SignalType, type] = {
    SignalType.MEDICATION_ADMIN: MedicationPayload,
    SignalType.VITAL_SIGN: VitalPayload,
    SignalType.TASK_COMPLETION: TaskPayload,
    SignalType.FAMILY_OBSERVATION: FamilyObservationPayload,
    SignalType.CARE_ACTIVITY: CareActivityPayload,
}


def payload_to_dict(payload: Payload) -> dict:
    data = {k: v for k, v in payload.__dict__.items() if k != "extra"}
    data["extra"] = dict(payload.extra)
    return data


def payload_from_dict(signal_type: SignalType, data: Mapping[str, Any]) -> Payload:
    """
    Rebuild a typed payload. Keys the struct does not know are kept in
    ``extra`` so newer writers never lose data through older readers.
    """
    payload_cls = PAYLOAD_TYPES[signal_type]
    known = set(payload_cls.__dataclass_fields__) - {"extra"}
    kwargs = {k: data.get(k) for k in known}
    extra = dict(data.get("extra") or {})
    extra.update({k: v for k, v in data.items() if k not in known and k != "extra"})
    return payload_cls(**kwargs, extra=extra)


# ============================================================
# SIGNAL FACT
# ============================================================


@dataclass(frozen=True)
class SignalFact:
    """A normalized, immutable record of one raw care event."""

    id: str
    resident_id: str
    signal_type: SignalType
    signal_timestamp: datetime
    source_table: str
    source_id: str
    abnormality_flag: AbnormalityFlag
    payload: Payload
    payload_version: int = PAYLOAD_VERSION

    @property
    def is_abnormal(self) -> bool:
        return self.abnormality_flag == AbnormalityFlag.ABNORMAL

    def payload_dict(self) -> dict:
        return payload_to_dict(self.payload)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resident_id": self.resident_id,
            "signal_type": self.signal_type.value,
            "signal_timestamp": clock.to_iso(self.signal_timestamp),
            "source_table": self.source_table,
            "source_id": self.source_id,
            "abnormality_flag": self.abnormality_flag.value,
            "payload": self.payload_dict(),
            "payload_version": self.payload_version,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SignalFact":
        signal_type = SignalType(row["signal_type"])
        return cls(
            id=row["id"],
            resident_id=row["resident_id"],
            signal_type=signal_type,
            signal_timestamp=clock.parse_ts(row["signal_timestamp"]),
            source_table=row["source_table"],
            source_id=row["source_id"],
            abnormality_flag=AbnormalityFlag(row["abnormality_flag"]),
            payload=payload_from_dict(signal_type, json.loads(row["payload"])),
            payload_version=row["payload_version"],
        )


def fact_id_for(source_table: str, source_id: str) -> str:
    return str(uuid.uuid5(FACT_NAMESPACE, f"{source_table}:{source_id}"))


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, default=str)


# ============================================================
# NORMALIZATION
# ============================================================


def _require(row: Mapping[str, Any], source_table: str, *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    raise InvalidInput(
        f"{source_table} row is missing {' / '.join(keys)}",
        source_table=source_table,
        missing=list(keys),
    )


def _upper(value: Any) -> str:
    return str(value).strip().upper() if value is not None else ""


def _extra(row: Mapping[str, Any], consumed: Iterable[str]) -> dict:
    skip = set(consumed) | {"id", "resident_id"}
    return {k: row[k] for k in sorted(row) if k not in skip}


def _timestamp(value: Any, source_table: str) -> datetime:
    try:
        return clock.parse_ts(value)
    except (AttributeError, TypeError, ValueError) as e:
        raise InvalidInput(f"{source_table} timestamp is not ISO-8601: {value!r}", source_table=source_table) from e


def _number(value: Any, source_table: str, column: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise InvalidInput(
            f"{source_table} {column} is not numeric: {value!r}", source_table=source_table, column=column
        ) from e


def _normalize_medication(row, policy):
    status = _upper(_require(row, "medication_administration_log", "status"))
    scheduled = row.get("scheduled_at") or row.get("scheduled_time")
    administered = row.get("administered_at")
    timestamp = _require(row, "medication_administration_log", "administered_at", "scheduled_at", "scheduled_time")

    scheduled_ts = _timestamp(scheduled, "medication_administration_log") if scheduled else None
    administered_ts = _timestamp(administered, "medication_administration_log") if administered else None

    minutes_late = None
    if scheduled_ts and administered_ts:
        minutes_late = (administered_ts - scheduled_ts).total_seconds() / 60.0

    abnormal = status in policy.abnormal_medication_statuses or (
        minutes_late is not None and minutes_late > policy.late_tolerance_minutes
    )
    payload = MedicationPayload(
        medication_id=None if row.get("medication_id") is None else str(row["medication_id"]),
        status=status,
        scheduled_at=clock.to_iso(scheduled_ts) if scheduled_ts else None,
        administered_at=clock.to_iso(administered_ts) if administered_ts else None,
        minutes_late=None if minutes_late is None else round(minutes_late, 2),
        extra=_extra(row, ("medication_id", "status", "scheduled_at", "scheduled_time", "administered_at")),
    )
    return timestamp, abnormal, payload


def _normalize_vital(row, policy):
    metric_type = str(_require(row, "health_metrics", "metric_type")).strip().lower()
    raw_value = _require(row, "health_metrics", "value_numeric", "value")
    value = _number(raw_value, "health_metrics", "value")
    timestamp = _require(row, "health_metrics", "recorded_at")

    low, high = policy.vital_bands.get(metric_type, (None, None))
    abnormal = (low is not None and value < low) or (high is not None and value > high)
    payload = VitalPayload(
        metric_type=metric_type,
        value=value,
        unit=row.get("unit"),
        band_low=low,
        band_high=high,
        extra=_extra(row, ("metric_type", "value_numeric", "value", "unit", "recorded_at")),
    )
    return timestamp, abnormal, payload


def _normalize_task(row, policy):
    state = str(_require(row, "tasks", "state")).strip().lower()
    if state != "completed":
        return None
    timestamp = _require(row, "tasks", "actual_end", "completed_at")
    outcome = _upper(row.get("outcome")) or None
    notes = row.get("notes")

    abnormal = outcome in policy.abnormal_task_outcomes
    if not abnormal and notes:
        lowered = str(notes).lower()
        abnormal = any(keyword in lowered for keyword in policy.concern_keywords)
    payload = TaskPayload(
        task_name=row.get("task_name"),
        state=state,
        outcome=outcome,
        notes=notes,
        extra=_extra(row, ("task_name", "state", "outcome", "notes", "actual_end", "completed_at")),
    )
    return timestamp, abnormal, payload


def _normalize_family(row, policy):
    concern_level = _upper(_require(row, "family_observations", "concern_level"))
    timestamp = _require(row, "family_observations", "submitted_at")
    payload = FamilyObservationPayload(
        concern_level=concern_level,
        observation_text=row.get("observation_text"),
        extra=_extra(row, ("concern_level", "observation_text", "submitted_at")),
    )
    return timestamp, concern_level in policy.abnormal_concern_levels, payload


def _normalize_activity(row, policy):
    trend = _upper(_require(row, "device_activity", "activity_trend"))
    timestamp = _require(row, "device_activity", "recorded_at")
    score = row.get("activity_score")
    payload = CareActivityPayload(
        activity_trend=trend,
        activity_score=None if score is None else _number(score, "device_activity", "activity_score"),
        device_id=None if row.get("device_id") is None else str(row["device_id"]),
        extra=_extra(row, ("activity_trend", "activity_score", "device_id", "recorded_at")),
    )
    return timestamp, trend in policy.abnormal_activity_trends, payload


_NORMALIZERS = {
    SignalType.MEDICATION_ADMIN: _normalize_medication,
    SignalType.VITAL_SIGN: _normalize_vital,
    SignalType.TASK_COMPLETION: _normalize_task,
    SignalType.FAMILY_OBSERVATION: _normalize_family,
    SignalType.CARE_ACTIVITY: _normalize_activity,
}


def normalize(
    source_table: str,
    row: Mapping[str, Any],
    policy: AbnormalityPolicy | None = None,
) -> SignalFact | None:
    """
    Normalize one collaborator row into a SignalFact.

    Returns None for rows that are not signals (a task write that is not a
    transition to "completed"). Raises InvalidInput for unknown source
    tables and rows missing required columns.
    """
    signal_type = SOURCE_TABLES.get(source_table) if isinstance(source_table, str) else None
    if signal_type is None:
        raise InvalidInput(f"Unknown source table: {source_table}", source_table=source_table)
    if not isinstance(row, Mapping):
        raise InvalidInput(f"{source_table} row must be an object", source_table=source_table)
    policy = policy or default_policy()

    source_id = str(_require(row, source_table, "id"))
    resident_id = str(_require(row, source_table, "resident_id"))

    normalized = _NORMALIZERS[signal_type](row, policy)
    if normalized is None:
        return None
    timestamp, abnormal, payload = normalized

    return SignalFact(
        id=fact_id_for(source_table, source_id),
        resident_id=resident_id,
        signal_type=signal_type,
        signal_timestamp=_timestamp(timestamp, source_table),
        source_table=source_table,
        source_id=source_id,
        abnormality_flag=AbnormalityFlag.ABNORMAL if abnormal else AbnormalityFlag.NORMAL,
        payload=payload,
    )


# ============================================================
# FACT STORE
# ============================================================


@dataclass
class IngestResult:
    """Outcome of ingesting one source row."""

    source_table: str
    source_id: str
    fact: SignalFact | None
    created: bool

    def to_dict(self) -> dict:
        return {
            "source_table": self.source_table,
            "source_id": self.source_id,
            "fact_id": self.fact.id if self.fact else None,
            "signal_type": self.fact.signal_type.value if self.fact else None,
            "abnormality_flag": self.fact.abnormality_flag.value if self.fact else None,
            "created": self.created,
        }


def insert_fact(conn: sqlite3.Connection, fact: SignalFact) -> bool:
    """Insert a fact inside the caller's transaction. False if it already exists."""
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO signal_facts
        (id, resident_id, signal_type, signal_timestamp, source_table, source_id,
         abnormality_flag, payload, payload_version, recorded_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            fact.id,
            fact.resident_id,
            fact.signal_type.value,
            clock.to_iso(fact.signal_timestamp),
            fact.source_table,
            fact.source_id,
            fact.abnormality_flag.value,
            canonical_json(fact.payload_dict()),
            fact.payload_version,
            clock.to_iso(clock.utc_now()),
        ),
    )
    return cursor.rowcount == 1


def ingest_rows(
    conn: sqlite3.Connection,
    source_table: str,
    rows: Iterable[Mapping[str, Any]],
    policy: AbnormalityPolicy | None = None,
) -> list[IngestResult]:
    """Normalize and insert rows inside the caller's transaction."""
    results = []
    for row in rows:
        fact = normalize(source_table, row, policy)
        created = insert_fact(conn, fact) if fact is not None else False
        results.append(
            IngestResult(
                source_table=source_table,
                source_id=str(row.get("id")),
                fact=fact,
                created=created,
            )
        )
        if fact is not None:
            logger.debug(
                "Signal fact %s",
                "recorded" if created else "already present",
                extra={"fact_id": fact.id, "resident_id": fact.resident_id, "source_table": source_table},
            )
    return results


class SignalFactStore:
    """Persistence for signal facts. Append-only; reads need no locking."""

    def __init__(self, db_path: Path | str | None = None, policy: AbnormalityPolicy | None = None):
        self.db_path = db_path
        self.policy = policy
        ensure_schema(db_path)

    def ingest(
        self,
        source_table: str,
        row: Mapping[str, Any],
        deadline: Deadline | None = None,
    ) -> IngestResult:
        return self.ingest_many(source_table, [row], deadline=deadline)[0]

    def ingest_many(
        self,
        source_table: str,
        rows: Iterable[Mapping[str, Any]],
        deadline: Deadline | None = None,
    ) -> list[IngestResult]:
        rows = list(rows)
        check_deadline(deadline, "signals.ingest")
        with get_connection(self.db_path, deadline) as conn:
            with transaction(conn):
                results = ingest_rows(conn, source_table, rows, self.policy)
                check_deadline(deadline, "signals.ingest")
        created = sum(1 for r in results if r.created)
        if created:
            logger.info(
                "Ingested %d new signal fact(s) from %s",
                created,
                source_table,
                extra={"source_table": source_table, "rows": len(rows)},
            )
        return results

    def get(self, fact_id: str) -> SignalFact | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM signal_facts WHERE id = ?", (fact_id,)).fetchone()
        return SignalFact.from_row(row) if row else None

    def facts_in_window(
        self,
        resident_id: str,
        start: datetime,
        end: datetime,
        signal_types: Iterable[SignalType | str] | None = None,
        abnormal_only: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> list[SignalFact]:
        """Facts for a resident with start <= signal_timestamp <= end, oldest first."""
        if conn is None:
            with get_connection(self.db_path) as own_conn:
                return self.facts_in_window(resident_id, start, end, signal_types, abnormal_only, own_conn)
        return query_facts(conn, resident_id, start, end, signal_types, abnormal_only)


def query_facts(
    conn: sqlite3.Connection,
    resident_id: str,
    start: datetime,
    end: datetime,
    signal_types: Iterable[SignalType | str] | None = None,
    abnormal_only: bool = False,
) -> list[SignalFact]:
    sql = "SELECT * FROM signal_facts WHERE resident_id = ? AND signal_timestamp >= ? AND signal_timestamp <= ?"
    params: list[Any] = [resident_id, clock.to_iso(start), clock.to_iso(end)]
    if signal_types is not None:
        types = [SignalType(t).value for t in signal_types]
        if not types:
            return []
        sql += f" AND signal_type IN ({','.join('?' * len(types))})"
        params.extend(types)
    if abnormal_only:
        sql += " AND abnormality_flag = 'ABNORMAL'"
    sql += " ORDER BY signal_timestamp, id"
    return [SignalFact.from_row(r) for r in conn.execute(sql, params).fetchall()]
