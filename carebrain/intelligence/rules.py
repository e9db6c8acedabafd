"""
Correlation rule catalog.

A rule is a versioned predicate over abnormal signal-fact counts in a time
window. Rule definitions are immutable: every event stores the id of the
rule version that produced it, so explanations stay reproducible after a
rule is deactivated or superseded. Changing a rule means publishing a new
version (new id) and deactivating the old one.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from carebrain import clock
from carebrain.db import get_connection, transaction
from carebrain.errors import ConfigError, InvalidInput, RuleNotFound
from carebrain.intelligence.signals import SignalType
from carebrain.migrations import ensure_schema

logger = logging.getLogger(__name__)

RULES_PATH = Path(__file__).parent / "correlation_rules.yaml"

RULE_NAMESPACE = uuid.UUID("0b9e4c71-2f6a-5d18-8e3c-7a41f5d2c960")


class Severity(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


def rule_id_for(rule_name: str, rule_version: int) -> str:
    return str(uuid.uuid5(RULE_NAMESPACE, f"{rule_name}:v{rule_version}"))


class _Counts(dict):
    """Template values; signal types with no abnormal facts read as 0."""

    def __missing__(self, key):
        if key in {t.value for t in SignalType}:
            return 0
        raise KeyError(key)


@dataclass(frozen=True)
class CorrelationRule:
    id: str
    rule_name: str
    rule_version: int
    rule_description: str
    correlation_type: str
    thresholds: dict[str, int]
    time_window_hours: int
    minimum_signals_count: int
    severity: Severity
    confidence: float
    reasoning_template: str
    requires_human_action: bool
    is_active: bool = True
    created_at: str | None = None
    deactivated_at: str | None = None

    @property
    def required_signal_types(self) -> list[str]:
        return sorted(self.thresholds)

    def is_satisfied(self, counts: Mapping[str, int]) -> bool:
        """Every required type meets its threshold and the total meets the minimum."""
        if any(counts.get(t, 0) < minimum for t, minimum in self.thresholds.items()):
            return False
        total = sum(counts.get(t, 0) for t in self.thresholds)
        return total >= self.minimum_signals_count

    def render_reasoning(self, counts: Mapping[str, int], window_hours: float) -> str:
        values = _Counts(counts)
        values["window_hours"] = _format_hours(window_hours)
        values["total"] = sum(counts.get(t, 0) for t in self.thresholds)
        return self.reasoning_template.format_map(values)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_name": self.rule_name,
            "rule_version": self.rule_version,
            "rule_description": self.rule_description,
            "correlation_type": self.correlation_type,
            "required_signal_types": self.required_signal_types,
            "thresholds": dict(self.thresholds),
            "time_window_hours": self.time_window_hours,
            "minimum_signals_count": self.minimum_signals_count,
            "severity_output": self.severity.value,
            "confidence": self.confidence,
            "reasoning_template": self.reasoning_template,
            "requires_human_action": self.requires_human_action,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "deactivated_at": self.deactivated_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CorrelationRule":
        return cls(
            id=row["id"],
            rule_name=row["rule_name"],
            rule_version=row["rule_version"],
            rule_description=row["rule_description"],
            correlation_type=row["correlation_type"],
            thresholds=json.loads(row["thresholds"]),
            time_window_hours=row["time_window_hours"],
            minimum_signals_count=row["minimum_signals_count"],
            severity=Severity(row["severity_output"]),
            confidence=row["confidence"],
            reasoning_template=row["reasoning_template"],
            requires_human_action=bool(row["requires_human_action"]),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            deactivated_at=row["deactivated_at"],
        )

    @classmethod
    def from_definition(cls, data: Mapping[str, Any], rule_version: int = 1) -> "CorrelationRule":
        """Build and validate a rule from a YAML/dict definition."""
        try:
            rule_name = str(data["rule_name"])
            thresholds = {SignalType(t).value: int(n) for t, n in data["thresholds"].items()}
            rule = cls(
                id=rule_id_for(rule_name, rule_version),
                rule_name=rule_name,
                rule_version=rule_version,
                rule_description=str(data.get("rule_description", "")),
                correlation_type=str(data["correlation_type"]),
                thresholds=thresholds,
                time_window_hours=int(data["time_window_hours"]),
                minimum_signals_count=int(data.get("minimum_signals_count", 2)),
                severity=Severity(str(data["severity_output"]).upper()),
                confidence=float(data["confidence"]),
                reasoning_template=str(data["reasoning_template"]).strip(),
                requires_human_action=bool(data.get("requires_human_action", False)),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidInput(f"Invalid correlation rule definition: {e}", rule=data.get("rule_name")) from e
        rule.validate()
        return rule

    def validate(self) -> None:
        if not self.thresholds:
            raise InvalidInput(f"Rule {self.rule_name} requires at least one signal type")
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidInput(f"Rule {self.rule_name} confidence must be within [0, 1]")
        if self.time_window_hours <= 0:
            raise InvalidInput(f"Rule {self.rule_name} time window must be positive")
        try:
            self.render_reasoning({}, self.time_window_hours)
        except (KeyError, IndexError, ValueError) as e:
            raise InvalidInput(f"Rule {self.rule_name} has a bad reasoning template: {e}") from e


def _format_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else f"{hours:g}"


# ============================================================
# SEED FILE
# ============================================================


@dataclass
class RuleSeed:
    rules: list[CorrelationRule]
    contribution_weights: dict[str, float] = field(default_factory=dict)


def load_seed(path: Path | str | None = None) -> RuleSeed:
    seed_path = Path(path) if path else RULES_PATH
    try:
        with open(seed_path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read correlation rules {seed_path}: {e}", path=str(seed_path)) from e
    if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
        raise ConfigError(f"Correlation rules file {seed_path} has no rules list", path=str(seed_path))
    try:
        rules = [CorrelationRule.from_definition(d) for d in data["rules"]]
        weights = {SignalType(k).value: float(v) for k, v in (data.get("contribution_weights") or {}).items()}
    except (InvalidInput, ValueError) as e:
        raise ConfigError(f"Malformed correlation rules {seed_path}: {e}", path=str(seed_path)) from e
    return RuleSeed(rules=rules, contribution_weights=weights)


# ============================================================
# CATALOG
# ============================================================


def _insert_rule(conn: sqlite3.Connection, rule: CorrelationRule, now: str) -> bool:
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO correlation_rules
        (id, rule_name, rule_version, rule_description, correlation_type,
         required_signal_types, thresholds, time_window_hours, minimum_signals_count,
         severity_output, confidence, reasoning_template, requires_human_action,
         is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            rule.id,
            rule.rule_name,
            rule.rule_version,
            rule.rule_description,
            rule.correlation_type,
            json.dumps(rule.required_signal_types),
            json.dumps(rule.thresholds, sort_keys=True),
            rule.time_window_hours,
            rule.minimum_signals_count,
            rule.severity.value,
            rule.confidence,
            rule.reasoning_template,
            1 if rule.requires_human_action else 0,
            1 if rule.is_active else 0,
            now,
        ),
    )
    return cursor.rowcount == 1


class RuleCatalog:
    """Versioned correlation rules stored in SQLite."""

    def __init__(self, db_path: Path | str | None = None, seed_path: Path | str | None = None):
        self.db_path = db_path
        self.seed_path = seed_path
        self._weights: dict[str, float] | None = None
        ensure_schema(db_path)

    def seed(self) -> list[str]:
        """
        Store version 1 of every seed rule whose name is not yet known.
        Returns the names that were inserted.
        """
        seed = load_seed(self.seed_path)
        self._weights = seed.contribution_weights
        inserted = []
        now = clock.to_iso(clock.utc_now())
        with get_connection(self.db_path) as conn:
            with transaction(conn):
                for rule in seed.rules:
                    known = conn.execute(
                        "SELECT 1 FROM correlation_rules WHERE rule_name = ?", (rule.rule_name,)
                    ).fetchone()
                    if known is None and _insert_rule(conn, replace(rule, created_at=now), now):
                        inserted.append(rule.rule_name)
        if inserted:
            logger.info("Seeded correlation rules: %s", inserted)
        return inserted

    def contribution_weights(self) -> dict[str, float]:
        if self._weights is None:
            self._weights = load_seed(self.seed_path).contribution_weights
        return self._weights

    def active_rules(self, conn: sqlite3.Connection | None = None) -> list[CorrelationRule]:
        if conn is None:
            with get_connection(self.db_path) as own_conn:
                return self.active_rules(own_conn)
        rows = conn.execute(
            "SELECT * FROM correlation_rules WHERE is_active = 1 ORDER BY rule_name, rule_version"
        ).fetchall()
        return [CorrelationRule.from_row(r) for r in rows]

    def get(self, rule_id: str, conn: sqlite3.Connection | None = None) -> CorrelationRule:
        if conn is None:
            with get_connection(self.db_path) as own_conn:
                return self.get(rule_id, own_conn)
        row = conn.execute("SELECT * FROM correlation_rules WHERE id = ?", (rule_id,)).fetchone()
        if row is None:
            raise RuleNotFound(f"Correlation rule not found: {rule_id}", rule_id=rule_id)
        return CorrelationRule.from_row(row)

    def get_by_name(self, rule_name: str) -> CorrelationRule:
        """The active version of a named rule."""
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM correlation_rules WHERE rule_name = ? AND is_active = 1 "
                "ORDER BY rule_version DESC LIMIT 1",
                (rule_name,),
            ).fetchone()
        if row is None:
            raise RuleNotFound(f"No active rule named {rule_name}", rule_name=rule_name)
        return CorrelationRule.from_row(row)

    def publish_version(self, rule_name: str, **changes: Any) -> CorrelationRule:
        """
        Publish a new version of ``rule_name`` with ``changes`` applied to the
        latest version's definition, and deactivate every older version.
        """
        now = clock.to_iso(clock.utc_now())
        with get_connection(self.db_path) as conn:
            with transaction(conn):
                row = conn.execute(
                    "SELECT * FROM correlation_rules WHERE rule_name = ? ORDER BY rule_version DESC LIMIT 1",
                    (rule_name,),
                ).fetchone()
                if row is None:
                    raise RuleNotFound(f"No rule named {rule_name}", rule_name=rule_name)
                latest = CorrelationRule.from_row(row)
                definition = latest.to_dict()
                definition.update(changes)
                rule = replace(
                    CorrelationRule.from_definition(definition, rule_version=latest.rule_version + 1),
                    created_at=now,
                )
                conn.execute(
                    "UPDATE correlation_rules SET is_active = 0, deactivated_at = ? "
                    "WHERE rule_name = ? AND is_active = 1",
                    (now, rule_name),
                )
                _insert_rule(conn, rule, now)
        logger.info(
            "Published correlation rule version",
            extra={"rule_name": rule_name, "rule_version": rule.rule_version, "rule_id": rule.id},
        )
        return rule

    def deactivate(self, rule_id: str) -> CorrelationRule:
        now = clock.to_iso(clock.utc_now())
        with get_connection(self.db_path) as conn:
            with transaction(conn):
                rule = self.get(rule_id, conn)
                if rule.is_active:
                    conn.execute(
                        "UPDATE correlation_rules SET is_active = 0, deactivated_at = ? WHERE id = ?",
                        (now, rule_id),
                    )
                    rule = replace(rule, is_active=False, deactivated_at=now)
        logger.info("Deactivated correlation rule", extra={"rule_id": rule_id})
        return rule
