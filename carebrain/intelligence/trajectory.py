"""
Trajectory Projector.

Projects where a resident's risk is heading from the recent history of
signal facts, under a versioned projection rule set:

- Velocity: least-squares slope of the risk series, per day.
- Consistency: R² of that fit.
- Recency: exponential decay with the age of the newest data point.
- Confidence: w_dp·min(1, n/saturation) + w_cons·consistency + w_rec·recency.

Escalation is direction-aware: a series rising on the high side heads for
the next rising threshold, a series falling on the low side heads for the
next falling threshold, and a series moving back toward normal has no
escalation horizon. With fewer data points than the rule set's minimum the
projection is INSUFFICIENT and carries no horizon and no next level.

Every stored projection records the id of the rule version that produced
it and the ids of the facts it used, so reproduce() can recompute it
exactly after the live rule set has moved on.
"""

import json
import logging
import math
import sqlite3
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from carebrain import clock
from carebrain.db import get_connection, transaction
from carebrain.deadline import Deadline
from carebrain.deadline import check as check_deadline
from carebrain.errors import (
    CareBrainError,
    ConfigError,
    CoreError,
    ErrorKind,
    InvalidInput,
    ProjectionNotFound,
    RuleNotFound,
)
from carebrain.escalation import EscalationSink
from carebrain.intelligence.audit_trail import ComputationLog
from carebrain.intelligence.signals import SignalFact, SignalType, query_facts
from carebrain.migrations import ensure_schema
from carebrain.observability import RequestContext
from carebrain.residents import ResidentRegistry, require_resident

logger = logging.getLogger(__name__)

RULES_PATH = Path(__file__).parent / "projection_rules.yaml"

RISK_LEVELS = ("LOW", "MODERATE", "HIGH", "CRITICAL")

SERIES_KINDS = ("vital_metric", "daily_abnormal_count")

# Seed rule set applies to every computation time.
SEED_EFFECTIVE_FROM = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =====================================================================
# ENUMS
# =====================================================================


class DataSufficiency(str, Enum):
    SUFFICIENT = "SUFFICIENT"
    INSUFFICIENT = "INSUFFICIENT"


class TrendDirection(Enum):
    """Enumeration of trend directions."""

    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"
    INSUFFICIENT_DATA = "insufficient_data"

    def __str__(self) -> str:
        return self.value


# =====================================================================
# RULE SET
# =====================================================================


@dataclass(frozen=True)
class RiskTypeRule:
    risk_type: str
    series: str
    rising: tuple[float, ...]
    falling: tuple[float, ...] = ()
    metric_type: str | None = None
    signal_type: str | None = None

    def level_for(self, value: float) -> str:
        """Highest level whose threshold the value has reached on either side."""
        return RISK_LEVELS[max(self._rising_index(value), self._falling_index(value))]

    def _rising_index(self, value: float) -> int:
        return sum(1 for t in self.rising if value >= t)

    def _falling_index(self, value: float) -> int:
        return sum(1 for t in self.falling if value <= t)

    def on_high_side(self, value: float) -> bool:
        return self._rising_index(value) > 0

    def on_low_side(self, value: float) -> bool:
        return self._falling_index(value) > 0

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"series": self.series, "rising": list(self.rising)}
        if self.falling:
            data["falling"] = list(self.falling)
        if self.metric_type:
            data["metric_type"] = self.metric_type
        if self.signal_type:
            data["signal_type"] = self.signal_type
        return data

    @classmethod
    def from_dict(cls, risk_type: str, data: Mapping[str, Any]) -> "RiskTypeRule":
        series = data.get("series")
        if series not in SERIES_KINDS:
            raise InvalidInput(f"{risk_type}: unknown series kind {series!r}", allowed=list(SERIES_KINDS))
        rising = tuple(float(t) for t in data.get("rising") or ())
        falling = tuple(float(t) for t in data.get("falling") or ())
        if not rising and not falling:
            raise InvalidInput(f"{risk_type}: at least one threshold list is required")
        if len(rising) > 3 or len(falling) > 3:
            raise InvalidInput(f"{risk_type}: at most three thresholds per direction")
        if list(rising) != sorted(rising) or list(falling) != sorted(falling, reverse=True):
            raise InvalidInput(f"{risk_type}: rising thresholds must increase and falling thresholds decrease")
        if series == "vital_metric" and not data.get("metric_type"):
            raise InvalidInput(f"{risk_type}: vital_metric series needs metric_type")
        signal_type = data.get("signal_type")
        if series == "daily_abnormal_count":
            signal_type = SignalType(signal_type).value
        return cls(
            risk_type=risk_type,
            series=series,
            rising=rising,
            falling=falling,
            metric_type=data.get("metric_type"),
            signal_type=signal_type,
        )


@dataclass(frozen=True)
class RuleSet:
    minimum_data_points: int
    lookback_window_hours: int
    data_point_saturation: int
    recency_half_life_hours: float
    stable_velocity_epsilon: float
    confidence_weights: dict[str, float]
    risk_types: dict[str, RiskTypeRule]

    def risk_rule(self, risk_type: str) -> RiskTypeRule:
        rule = self.risk_types.get(risk_type)
        if rule is None:
            raise InvalidInput(f"Unknown risk type: {risk_type}", allowed=sorted(self.risk_types))
        return rule

    def to_dict(self) -> dict:
        return {
            "minimum_data_points": self.minimum_data_points,
            "lookback_window_hours": self.lookback_window_hours,
            "data_point_saturation": self.data_point_saturation,
            "recency_half_life_hours": self.recency_half_life_hours,
            "stable_velocity_epsilon": self.stable_velocity_epsilon,
            "confidence_weights": dict(self.confidence_weights),
            "risk_types": {name: rule.to_dict() for name, rule in self.risk_types.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuleSet":
        try:
            weights = {k: float(data["confidence_weights"][k]) for k in ("data_points", "consistency", "recency")}
            rule_set = cls(
                minimum_data_points=int(data["minimum_data_points"]),
                lookback_window_hours=int(data["lookback_window_hours"]),
                data_point_saturation=int(data.get("data_point_saturation", 10)),
                recency_half_life_hours=float(data.get("recency_half_life_hours", 24)),
                stable_velocity_epsilon=float(data.get("stable_velocity_epsilon", 0.01)),
                confidence_weights=weights,
                risk_types={
                    name: RiskTypeRule.from_dict(name, spec) for name, spec in data["risk_types"].items()
                },
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidInput(f"Invalid projection rule set: {e}") from e
        if rule_set.minimum_data_points < 2:
            raise InvalidInput("minimum_data_points must be at least 2")
        if rule_set.lookback_window_hours <= 0 or rule_set.data_point_saturation <= 0:
            raise InvalidInput("lookback_window_hours and data_point_saturation must be positive")
        if not math.isclose(sum(weights.values()), 1.0, abs_tol=1e-6):
            raise InvalidInput("confidence_weights must sum to 1.0")
        return rule_set


def load_seed_rule_set(path: Path | str | None = None) -> RuleSet:
    seed_path = Path(path) if path else RULES_PATH
    try:
        with open(seed_path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read projection rules {seed_path}: {e}", path=str(seed_path)) from e
    if not isinstance(data, dict):
        raise ConfigError(f"Projection rules file {seed_path} is empty", path=str(seed_path))
    try:
        return RuleSet.from_dict(data)
    except InvalidInput as e:
        raise ConfigError(f"Malformed projection rules {seed_path}: {e.message}", path=str(seed_path)) from e


@dataclass(frozen=True)
class ProjectionRuleVersion:
    id: str
    version_number: int
    rule_set: RuleSet
    effective_from: str
    effective_until: str | None
    created_by: str
    created_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version_number": self.version_number,
            "rule_set": self.rule_set.to_dict(),
            "effective_from": self.effective_from,
            "effective_until": self.effective_until,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProjectionRuleVersion":
        return cls(
            id=row["id"],
            version_number=row["version_number"],
            rule_set=RuleSet.from_dict(json.loads(row["rule_set"])),
            effective_from=row["effective_from"],
            effective_until=row["effective_until"],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )


class ProjectionRuleStore:
    """Immutable, time-bounded projection rule versions."""

    def __init__(self, db_path: Path | str | None = None, seed_path: Path | str | None = None):
        self.db_path = db_path
        self.seed_path = seed_path
        ensure_schema(db_path)

    def seed(self) -> ProjectionRuleVersion | None:
        """Store the seed rule set as version 1 if no version exists yet."""
        with get_connection(self.db_path) as conn:
            if conn.execute("SELECT 1 FROM projection_rule_versions LIMIT 1").fetchone():
                return None
        return self.publish(load_seed_rule_set(self.seed_path), created_by="seed", effective_from=SEED_EFFECTIVE_FROM)

    def publish(
        self,
        rule_set: RuleSet | Mapping[str, Any],
        created_by: str,
        effective_from: datetime | None = None,
    ) -> ProjectionRuleVersion:
        """Store a new version and close the currently open one at its start."""
        if not isinstance(rule_set, RuleSet):
            rule_set = RuleSet.from_dict(rule_set)
        now = clock.to_iso(clock.utc_now())
        starts = clock.to_iso(effective_from) if effective_from else now
        with get_connection(self.db_path) as conn:
            with transaction(conn):
                row = conn.execute("SELECT MAX(version_number) AS v FROM projection_rule_versions").fetchone()
                version_number = (row["v"] or 0) + 1
                conn.execute(
                    "UPDATE projection_rule_versions SET effective_until = ? WHERE effective_until IS NULL",
                    (starts,),
                )
                version = ProjectionRuleVersion(
                    id=str(uuid.uuid4()),
                    version_number=version_number,
                    rule_set=rule_set,
                    effective_from=starts,
                    effective_until=None,
                    created_by=created_by,
                    created_at=now,
                )
                conn.execute(
                    """
                    INSERT INTO projection_rule_versions
                    (id, version_number, rule_set, effective_from, effective_until, created_by, created_at)
                    VALUES (?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (
                        version.id,
                        version.version_number,
                        json.dumps(rule_set.to_dict(), sort_keys=True),
                        version.effective_from,
                        version.created_by,
                        version.created_at,
                    ),
                )
        logger.info(
            "Published projection rule version",
            extra={"rule_version_id": version.id, "version_number": version_number},
        )
        return version

    def get(self, version_id: str, conn: sqlite3.Connection | None = None) -> ProjectionRuleVersion:
        if conn is None:
            with get_connection(self.db_path) as own_conn:
                return self.get(version_id, own_conn)
        row = conn.execute("SELECT * FROM projection_rule_versions WHERE id = ?", (version_id,)).fetchone()
        if row is None:
            raise RuleNotFound(f"Projection rule version not found: {version_id}", rule_version_id=version_id)
        return ProjectionRuleVersion.from_row(row)

    def active_version(
        self,
        at: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> ProjectionRuleVersion:
        """The version in effect at ``at`` (default: the open version)."""
        if conn is None:
            with get_connection(self.db_path) as own_conn:
                return self.active_version(at, own_conn)
        if at is None:
            row = conn.execute(
                "SELECT * FROM projection_rule_versions WHERE effective_until IS NULL "
                "ORDER BY version_number DESC LIMIT 1"
            ).fetchone()
        else:
            ts = clock.to_iso(at)
            row = conn.execute(
                """
                SELECT * FROM projection_rule_versions
                WHERE effective_from <= ? AND (effective_until IS NULL OR effective_until > ?)
                ORDER BY version_number DESC LIMIT 1
                """,
                (ts, ts),
            ).fetchone()
        if row is None:
            raise RuleNotFound("No projection rule version in effect", at=clock.to_iso(at) if at else None)
        return ProjectionRuleVersion.from_row(row)


# =====================================================================
# MATH
# =====================================================================


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _linear_regression(xs: list[float], ys: list[float]) -> tuple[float, float, float]:
    """
    Least-squares fit y = mx + b.

    Returns: (slope, intercept, r_squared)
    """
    n = len(ys)
    if n < 2:
        return (0.0, ys[0] if ys else 0.0, 0.0)

    x_mean = _mean(xs)
    y_mean = _mean(ys)

    numerator = sum((xs[i] - x_mean) * (ys[i] - y_mean) for i in range(n))
    denominator = sum((xs[i] - x_mean) ** 2 for i in range(n))

    if denominator == 0:
        return (0.0, y_mean, 0.0)

    slope = numerator / denominator
    intercept = y_mean - slope * x_mean

    y_pred = [slope * x + intercept for x in xs]
    ss_res = sum((ys[i] - y_pred[i]) ** 2 for i in range(n))
    ss_tot = sum((ys[i] - y_mean) ** 2 for i in range(n))

    if ss_tot == 0:
        r_squared = 1.0 if ss_res == 0 else 0.0
    else:
        r_squared = max(0.0, 1.0 - (ss_res / ss_tot))

    return (slope, intercept, r_squared)


def recency_factor(age_hours: float, half_life_hours: float) -> float:
    return 2 ** (-max(0.0, age_hours) / half_life_hours)


def projection_confidence(n: int, consistency: float, recency: float, rule_set: RuleSet) -> float:
    w = rule_set.confidence_weights
    score = (
        w["data_points"] * min(1.0, n / rule_set.data_point_saturation)
        + w["consistency"] * consistency
        + w["recency"] * recency
    )
    return round(min(1.0, max(0.0, score)), 2)


def escalation_target(
    rule: RiskTypeRule,
    value: float,
    velocity_per_day: float,
    epsilon: float,
) -> tuple[TrendDirection, str | None, int | None]:
    """
    Next level the series is heading for and hours until it gets there.

    Returns (direction, projected_next_level, escalation_horizon_hours);
    the last two are None when the series is stable, improving, or already
    past the last threshold in its direction.
    """
    if abs(velocity_per_day) < epsilon:
        return TrendDirection.STABLE, None, None

    if velocity_per_day > 0:
        if rule.on_low_side(value):
            return TrendDirection.RISING, None, None
        for index, threshold in enumerate(rule.rising):
            if threshold > value:
                hours = (threshold - value) / velocity_per_day * 24
                return TrendDirection.RISING, RISK_LEVELS[index + 1], max(0, int(round(hours)))
        return TrendDirection.RISING, None, None

    if rule.on_high_side(value):
        return TrendDirection.FALLING, None, None
    for index, threshold in enumerate(rule.falling):
        if threshold < value:
            hours = (value - threshold) / abs(velocity_per_day) * 24
            return TrendDirection.FALLING, RISK_LEVELS[index + 1], max(0, int(round(hours)))
    return TrendDirection.FALLING, None, None


# =====================================================================
# SERIES
# =====================================================================


@dataclass
class Series:
    points: list[tuple[datetime, float]]  # (timestamp, value), oldest first
    facts: list[SignalFact]  # evidence, counted as data points

    @property
    def data_points(self) -> int:
        return len(self.facts)


def build_series(facts: list[SignalFact], rule: RiskTypeRule, now: datetime, lookback_hours: int) -> Series:
    if rule.series == "vital_metric":
        used = [
            f
            for f in facts
            if f.signal_type == SignalType.VITAL_SIGN and getattr(f.payload, "metric_type", None) == rule.metric_type
        ]
        return Series(points=[(f.signal_timestamp, float(f.payload.value)) for f in used], facts=used)

    # daily_abnormal_count: one point per day of the lookback
    used = [f for f in facts if f.signal_type.value == rule.signal_type]
    days = max(1, math.ceil(lookback_hours / 24))
    points = []
    for k in range(days):
        bucket_start = now - timedelta(hours=24 * (days - k))
        bucket_end = bucket_start + timedelta(hours=24)
        count = sum(
            1
            for f in used
            if f.is_abnormal
            and bucket_start <= f.signal_timestamp
            and (f.signal_timestamp < bucket_end or (k == days - 1 and f.signal_timestamp <= bucket_end))
        )
        points.append((bucket_start, float(count)))
    return Series(points=points, facts=used)


# =====================================================================
# DATA CLASSES
# =====================================================================


@dataclass
class Projection:
    """Forward-looking risk estimate for one resident and risk type."""

    id: str
    resident_id: str
    agency_id: str
    risk_type: str
    current_risk_level: str | None
    trend_velocity: float | None
    persistence_duration_hours: float | None
    escalation_horizon_hours: int | None
    projected_next_level: str | None
    projection_confidence: float
    data_sufficiency: DataSufficiency
    data_points_used: int
    lookback_window_hours: int
    assumptions: str
    rule_version_id: str
    source_fact_ids: list[str]
    velocity_details: dict
    computation_timestamp: str
    error: CoreError | None = field(default=None, compare=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resident_id": self.resident_id,
            "agency_id": self.agency_id,
            "risk_type": self.risk_type,
            "current_risk_level": self.current_risk_level,
            "trend_velocity": self.trend_velocity,
            "persistence_duration_hours": self.persistence_duration_hours,
            "escalation_horizon_hours": self.escalation_horizon_hours,
            "projected_next_level": self.projected_next_level,
            "projection_confidence": self.projection_confidence,
            "data_sufficiency": self.data_sufficiency.value,
            "data_points_used": self.data_points_used,
            "lookback_window_hours": self.lookback_window_hours,
            "assumptions": self.assumptions,
            "rule_version_id": self.rule_version_id,
            "source_fact_ids": list(self.source_fact_ids),
            "velocity_details": self.velocity_details,
            "computation_timestamp": self.computation_timestamp,
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Projection":
        sufficiency = DataSufficiency(row["data_sufficiency"])
        return cls(
            id=row["id"],
            resident_id=row["resident_id"],
            agency_id=row["agency_id"],
            risk_type=row["risk_type"],
            current_risk_level=row["current_risk_level"],
            trend_velocity=row["trend_velocity"],
            persistence_duration_hours=row["persistence_duration_hours"],
            escalation_horizon_hours=row["escalation_horizon_hours"],
            projected_next_level=row["projected_next_level"],
            projection_confidence=row["projection_confidence"],
            data_sufficiency=sufficiency,
            data_points_used=row["data_points_used"],
            lookback_window_hours=row["lookback_window_hours"],
            assumptions=row["assumptions"],
            rule_version_id=row["rule_version_id"],
            source_fact_ids=json.loads(row["source_fact_ids"]),
            velocity_details=json.loads(row["velocity_details"]),
            computation_timestamp=row["computation_timestamp"],
            error=_insufficient_error(row["data_points_used"], None)
            if sufficiency is DataSufficiency.INSUFFICIENT
            else None,
        )


@dataclass
class Reproduction:
    original: Projection
    recomputed: Projection

    @property
    def matches(self) -> bool:
        fields = (
            "current_risk_level",
            "trend_velocity",
            "persistence_duration_hours",
            "escalation_horizon_hours",
            "projected_next_level",
            "projection_confidence",
            "data_sufficiency",
            "data_points_used",
            "source_fact_ids",
        )
        return all(getattr(self.original, f) == getattr(self.recomputed, f) for f in fields)

    def to_dict(self) -> dict:
        return {
            "matches": self.matches,
            "original": self.original.to_dict(),
            "recomputed": self.recomputed.to_dict(),
        }


def _insufficient_error(n: int, minimum: int | None) -> CoreError:
    details: dict[str, Any] = {"data_points": n}
    if minimum is not None:
        details["minimum_data_points"] = minimum
    return CoreError(ErrorKind.INSUFFICIENT_DATA, "Too few data points to project a trajectory", details)


def compute_projection(
    facts: list[SignalFact],
    risk_type: str,
    version: ProjectionRuleVersion,
    now: datetime,
    resident_id: str,
    agency_id: str,
    projection_id: str | None = None,
) -> Projection:
    """Pure projection of one risk type from the facts in the lookback."""
    rule_set = version.rule_set
    rule = rule_set.risk_rule(risk_type)
    lookback = rule_set.lookback_window_hours
    series = build_series(facts, rule, now, lookback)
    n = series.data_points
    source_fact_ids = [f.id for f in series.facts]
    latest_value = series.points[-1][1] if series.points else None
    current_level = rule.level_for(latest_value) if latest_value is not None and n else None

    base = dict(
        id=projection_id or str(uuid.uuid4()),
        resident_id=resident_id,
        agency_id=agency_id,
        risk_type=risk_type,
        current_risk_level=current_level,
        data_points_used=n,
        lookback_window_hours=lookback,
        rule_version_id=version.id,
        source_fact_ids=source_fact_ids,
        computation_timestamp=clock.to_iso(now),
    )

    if n < rule_set.minimum_data_points:
        return Projection(
            **base,
            trend_velocity=None,
            persistence_duration_hours=None,
            escalation_horizon_hours=None,
            projected_next_level=None,
            projection_confidence=0.0,
            data_sufficiency=DataSufficiency.INSUFFICIENT,
            assumptions=(
                f"Only {n} data point(s) in the {lookback}h lookback; "
                f"{rule_set.minimum_data_points} required. No projection made."
            ),
            velocity_details={"direction": TrendDirection.INSUFFICIENT_DATA.value, "series": rule.series},
            error=_insufficient_error(n, rule_set.minimum_data_points),
        )

    origin = series.points[0][0]
    xs = [clock.hours_between(origin, ts) / 24 for ts, _ in series.points]
    ys = [value for _, value in series.points]
    slope, intercept, r_squared = _linear_regression(xs, ys)

    newest = max(f.signal_timestamp for f in series.facts)
    age_hours = clock.hours_between(newest, now)
    recency = recency_factor(age_hours, rule_set.recency_half_life_hours)
    confidence = projection_confidence(n, r_squared, recency, rule_set)

    direction, next_level, horizon = escalation_target(rule, latest_value, slope, rule_set.stable_velocity_epsilon)

    out_of_band = [ts for ts, value in series.points if rule.level_for(value) != "LOW"]
    persistence = round(clock.hours_between(out_of_band[0], now), 2) if out_of_band else 0.0

    mean_value = _mean(ys)
    velocity_details = {
        "series": rule.series,
        "direction": direction.value,
        "slope_per_day": slope,
        "intercept": intercept,
        "r_squared": round(r_squared, 6),
        "normalized_velocity": round(slope / abs(mean_value), 6) if mean_value else 0.0,
        "latest_value": latest_value,
        "newest_point_age_hours": round(age_hours, 2),
        "recency": round(recency, 6),
        "points": [[clock.to_iso(ts), value] for ts, value in series.points],
    }
    subject = rule.metric_type if rule.series == "vital_metric" else f"daily abnormal {rule.signal_type} count"
    assumptions = (
        f"Linear extrapolation of {subject} over a {lookback}h lookback; velocity assumed constant "
        f"until the next threshold; thresholds from projection rule version {version.version_number}."
    )
    return Projection(
        **base,
        trend_velocity=slope,
        persistence_duration_hours=persistence,
        escalation_horizon_hours=horizon,
        projected_next_level=next_level,
        projection_confidence=confidence,
        data_sufficiency=DataSufficiency.SUFFICIENT,
        assumptions=assumptions,
        velocity_details=velocity_details,
    )


# =====================================================================
# PROJECTOR
# =====================================================================


def _facts_for(conn: sqlite3.Connection, resident_id: str, rule: RiskTypeRule, start: datetime, end: datetime):
    signal_type = SignalType.VITAL_SIGN.value if rule.series == "vital_metric" else rule.signal_type
    return query_facts(conn, resident_id, start, end, [signal_type])


class TrajectoryProjector:
    """Projects risk trajectories and stores them immutably."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        rule_store: ProjectionRuleStore | None = None,
        sink: EscalationSink | None = None,
    ):
        self.db_path = db_path
        ensure_schema(db_path)
        if rule_store is None:
            rule_store = ProjectionRuleStore(db_path)
            rule_store.seed()
        self.rule_store = rule_store
        self.sink = sink
        self.computation_log = ComputationLog(db_path)

    def project(
        self,
        resident_id: str,
        risk_type: str,
        now: datetime | None = None,
        deadline: Deadline | None = None,
    ) -> Projection:
        """
        Project one risk type for a resident and persist the result.

        INSUFFICIENT projections are stored too, so dashboards can show
        that a projection was attempted and why it has no horizon.

        Raises:
            ResidentNotFound: resident is not registered.
            RuleNotFound: no projection rule version is in effect.
            DeadlineExceeded: budget ran out before commit.
        """
        now = clock.as_utc(now) if now else clock.utc_now()
        started = time.monotonic()
        with RequestContext(operation="trajectory.project"):
            check_deadline(deadline, "trajectory.project")
            try:
                with get_connection(self.db_path, deadline) as conn:
                    with transaction(conn):
                        resident = require_resident(conn, resident_id)
                        version = self.rule_store.active_version(now, conn)
                        rule = version.rule_set.risk_rule(risk_type)
                        start = now - timedelta(hours=version.rule_set.lookback_window_hours)
                        facts = _facts_for(conn, resident_id, rule, start, now)
                        projection = compute_projection(
                            facts, risk_type, version, now, resident_id, resident.agency_id
                        )
                        self._insert(conn, projection)
                        if self.sink is not None:
                            self.sink.publish_projection(projection, conn)
                        check_deadline(deadline, "trajectory.project")
            except sqlite3.Error as e:
                logger.error("Projection failed: %s", e, extra={"resident_id": resident_id, "risk_type": risk_type})
                self._log(resident_id, risk_type, now, started, None, "error", str(e))
                raise
            except CareBrainError as e:
                self._log(resident_id, risk_type, now, started, None, "error", e.message)
                raise

            log_extra = {
                "resident_id": resident_id,
                "risk_type": risk_type,
                "projection_id": projection.id,
                "rule_version_id": projection.rule_version_id,
            }
            if projection.data_sufficiency is DataSufficiency.INSUFFICIENT:
                logger.info("Projection has insufficient data", extra=log_extra)
                self._log(resident_id, risk_type, now, started, projection, "insufficient_data")
            else:
                logger.info("Projection stored", extra=log_extra)
                self._log(resident_id, risk_type, now, started, projection, "success")
            return projection

    def project_agency(
        self,
        agency_id: str,
        risk_type: str | None = None,
        now: datetime | None = None,
        deadline: Deadline | None = None,
    ) -> list[Projection]:
        """Project one (or every) risk type for each active resident of an agency."""
        now = clock.as_utc(now) if now else clock.utc_now()
        risk_types = [risk_type] if risk_type else sorted(self.rule_store.active_version(now).rule_set.risk_types)
        projections = []
        for resident in ResidentRegistry(self.db_path).list_for_agency(agency_id):
            for name in risk_types:
                projections.append(self.project(resident.resident_id, name, now, deadline))
        return projections

    def latest_projections(self, resident_id: str) -> list[Projection]:
        """Most recent projection per risk type."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM risk_trajectory_projections p
                WHERE p.resident_id = ?
                  AND p.computation_timestamp = (
                      SELECT MAX(q.computation_timestamp) FROM risk_trajectory_projections q
                      WHERE q.resident_id = p.resident_id AND q.risk_type = p.risk_type
                  )
                ORDER BY p.risk_type
                """,
                (resident_id,),
            ).fetchall()
        latest: dict[str, Projection] = {}
        for row in rows:
            latest.setdefault(row["risk_type"], Projection.from_row(row))
        return list(latest.values())

    def get(self, projection_id: str) -> Projection:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM risk_trajectory_projections WHERE id = ?", (projection_id,)).fetchone()
        if row is None:
            raise ProjectionNotFound(f"Projection not found: {projection_id}", projection_id=projection_id)
        return Projection.from_row(row)

    def reproduce(self, projection_id: str) -> Reproduction:
        """Recompute a stored projection from its rule version and source facts."""
        original = self.get(projection_id)
        with get_connection(self.db_path) as conn:
            version = self.rule_store.get(original.rule_version_id, conn)
            facts = []
            if original.source_fact_ids:
                placeholders = ",".join("?" * len(original.source_fact_ids))
                rows = conn.execute(
                    f"SELECT * FROM signal_facts WHERE id IN ({placeholders}) ORDER BY signal_timestamp, id",  # noqa: S608
                    original.source_fact_ids,
                ).fetchall()
                facts = [SignalFact.from_row(r) for r in rows]
        recomputed = compute_projection(
            facts,
            original.risk_type,
            version,
            clock.parse_ts(original.computation_timestamp),
            original.resident_id,
            original.agency_id,
            projection_id=original.id,
        )
        return Reproduction(original=original, recomputed=recomputed)

    # ------------------------------------------------------------------

    @staticmethod
    def _insert(conn: sqlite3.Connection, p: Projection) -> None:
        conn.execute(
            """
            INSERT INTO risk_trajectory_projections
            (id, resident_id, agency_id, risk_type, current_risk_level, trend_velocity,
             persistence_duration_hours, escalation_horizon_hours, projected_next_level,
             projection_confidence, data_sufficiency, data_points_used, lookback_window_hours,
             assumptions, rule_version_id, source_fact_ids, velocity_details, computation_timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                p.id,
                p.resident_id,
                p.agency_id,
                p.risk_type,
                p.current_risk_level,
                p.trend_velocity,
                p.persistence_duration_hours,
                p.escalation_horizon_hours,
                p.projected_next_level,
                p.projection_confidence,
                p.data_sufficiency.value,
                p.data_points_used,
                p.lookback_window_hours,
                p.assumptions,
                p.rule_version_id,
                json.dumps(p.source_fact_ids),
                json.dumps(p.velocity_details, default=str),
                p.computation_timestamp,
            ),
        )

    def _log(self, resident_id, risk_type, now, started, projection, status, error=None) -> None:
        self.computation_log.record(
            "trajectory",
            resident_id,
            (time.monotonic() - started) * 1000,
            status=status,
            rule_version_id=projection.rule_version_id if projection else None,
            request={"risk_type": risk_type, "computation_timestamp": clock.to_iso(now)},
            result=projection.to_dict() if projection else {},
            error=error,
        )
