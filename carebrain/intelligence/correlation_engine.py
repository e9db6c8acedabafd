"""
Correlation Engine.

Evaluates every active correlation rule against a window of ABNORMAL
signal facts for one resident. A rule fires when each required signal
type meets its threshold and the total meets the rule's minimum; the
result is a compound intelligence event with templated reasoning, a
confidence score and weighted point-in-time copies of every contributing
fact.

Each evaluation is one transaction: all events of a run and their
contributions persist together or not at all. Events are keyed by
``rule_id:resident_id:window_start`` under a UNIQUE constraint, so
re-evaluating the same window returns the stored event instead of
writing a duplicate.

Usage:
    engine = CorrelationEngine(db_path)
    events = engine.evaluate("res-1", window_hours=168)
    for event in events:
        print(event.severity, event.reasoning_text)
"""

import logging
import sqlite3
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from carebrain import clock, config
from carebrain.db import get_connection, transaction
from carebrain.deadline import Deadline
from carebrain.deadline import check as check_deadline
from carebrain.errors import CareBrainError, InvalidInput
from carebrain.escalation import EscalationSink
from carebrain.intelligence.audit_trail import ComputationLog
from carebrain.intelligence.correlation_confidence import CorrelationConfidenceCalculator, SignalEvidence
from carebrain.intelligence.persistence import CompoundEvent, CompoundEventStore, SignalContribution
from carebrain.intelligence.rules import CorrelationRule, RuleCatalog
from carebrain.intelligence.signals import SignalFact, query_facts
from carebrain.migrations import ensure_schema
from carebrain.observability import RequestContext
from carebrain.residents import Resident, ResidentRegistry, require_resident

logger = logging.getLogger(__name__)

EVENT_NAMESPACE = uuid.UUID("3c5a8e12-94d7-5b60-a1f3-62e9d0b47c85")

CONFIDENCE_MODES = ("fixed", "evidence")


# ============================================================
# DATA STRUCTURES
# ============================================================


@dataclass
class AgencyEvaluation:
    """Summary of one agency-wide correlation run."""

    agency_id: str
    residents_evaluated: int
    events: list[CompoundEvent] = field(default_factory=list)

    @property
    def events_created(self) -> int:
        return sum(1 for e in self.events if e.created)

    def to_dict(self) -> dict:
        return {
            "agency_id": self.agency_id,
            "residents_evaluated": self.residents_evaluated,
            "events_created": self.events_created,
            "events_total": len(self.events),
            "events": [
                {
                    "event_id": e.id,
                    "resident_id": e.resident_id,
                    "correlation_type": e.correlation_type,
                    "severity": e.severity.value,
                    "created": e.created,
                }
                for e in self.events
            ],
        }


def dedup_key_for(rule_id: str, resident_id: str, window_start: datetime) -> str:
    return f"{rule_id}:{resident_id}:{clock.to_iso(window_start)}"


# ============================================================
# ENGINE
# ============================================================


class CorrelationEngine:
    """Rule-driven detection of multi-signal patterns per resident."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        catalog: RuleCatalog | None = None,
        sink: EscalationSink | None = None,
        confidence_mode: str | None = None,
    ):
        self.db_path = db_path
        ensure_schema(db_path)
        if catalog is None:
            catalog = RuleCatalog(db_path)
            catalog.seed()
        self.catalog = catalog
        self.events = CompoundEventStore(db_path)
        self.sink = sink
        self.computation_log = ComputationLog(db_path)
        self.confidence_mode = confidence_mode or config.CONFIDENCE_MODE
        if self.confidence_mode not in CONFIDENCE_MODES:
            raise InvalidInput(f"Unknown confidence mode: {self.confidence_mode}", allowed=list(CONFIDENCE_MODES))
        self.calculator = CorrelationConfidenceCalculator()

    def evaluate(
        self,
        resident_id: str,
        window_hours: float | None = None,
        now: datetime | None = None,
        deadline: Deadline | None = None,
    ) -> list[CompoundEvent]:
        """
        Evaluate all active rules for one resident.

        Args:
            resident_id: Registered resident to evaluate.
            window_hours: Window length for every rule; None uses each
                rule's own time_window_hours.
            now: Window end (defaults to the current time). A scheduler
                passing its tick time gets stable dedup keys.
            deadline: Optional budget; expiry rolls the run back.

        Returns:
            One event per fired rule, newly created or previously stored
            for the same window (``event.created`` tells them apart).

        Raises:
            ResidentNotFound: resident is not registered.
            DeadlineExceeded: budget ran out before commit.
        """
        if window_hours is not None and window_hours <= 0:
            raise InvalidInput("window_hours must be positive", window_hours=window_hours)
        now = clock.as_utc(now) if now else clock.utc_now()
        started = time.monotonic()

        with RequestContext(operation="correlation.evaluate"):
            check_deadline(deadline, "correlation.evaluate")
            try:
                with get_connection(self.db_path, deadline) as conn:
                    with transaction(conn):
                        resident = require_resident(conn, resident_id)
                        weights = self.catalog.contribution_weights()
                        rules = self.catalog.active_rules(conn)
                        events = []
                        for rule in rules:
                            check_deadline(deadline, "correlation.evaluate")
                            event = self._evaluate_rule(conn, rule, resident, window_hours, now, weights)
                            if event is not None:
                                events.append(event)
                        check_deadline(deadline, "correlation.evaluate")
            except sqlite3.Error as e:
                logger.error("Correlation run failed: %s", e, extra={"resident_id": resident_id})
                self._log_run(resident_id, window_hours, now, started, [], status="error", error=str(e))
                raise
            except CareBrainError as e:
                self._log_run(resident_id, window_hours, now, started, [], status="error", error=e.message)
                raise

            for event in events:
                logger.info(
                    "Correlation rule fired" if event.created else "Correlation event already recorded",
                    extra={
                        "resident_id": resident_id,
                        "rule_id": event.correlation_rule_id,
                        "event_id": event.id,
                        "severity": event.severity.value,
                    },
                )
            self._log_run(resident_id, window_hours, now, started, events, status="success")
            return events

    def evaluate_agency(
        self,
        agency_id: str,
        window_hours: float | None = None,
        now: datetime | None = None,
        deadline: Deadline | None = None,
    ) -> AgencyEvaluation:
        """Evaluate every active resident of an agency; None windows use each rule's own."""
        now = clock.as_utc(now) if now else clock.utc_now()
        residents = ResidentRegistry(self.db_path).list_for_agency(agency_id)
        summary = AgencyEvaluation(agency_id=agency_id, residents_evaluated=0)
        for resident in residents:
            summary.events.extend(self.evaluate(resident.resident_id, window_hours, now, deadline))
            summary.residents_evaluated += 1
        logger.info(
            "Agency correlation run complete",
            extra={
                "agency_id": agency_id,
                "residents_evaluated": summary.residents_evaluated,
                "events_created": summary.events_created,
            },
        )
        return summary

    # ------------------------------------------------------------------

    def _evaluate_rule(
        self,
        conn: sqlite3.Connection,
        rule: CorrelationRule,
        resident: Resident,
        window_hours: float | None,
        now: datetime,
        weights: dict[str, float],
    ) -> CompoundEvent | None:
        hours = rule.time_window_hours if window_hours is None else window_hours
        window_start = now - timedelta(hours=hours)
        facts = query_facts(
            conn, resident.resident_id, window_start, now, rule.required_signal_types, abnormal_only=True
        )
        counts = Counter(f.signal_type.value for f in facts)
        if not rule.is_satisfied(counts):
            return None

        dedup_key = dedup_key_for(rule.id, resident.resident_id, window_start)
        existing = self.events.load_by_dedup_key(conn, dedup_key)
        if existing is not None:
            existing.created = False
            return existing

        confidence, factors = self._confidence(conn, rule, facts, hours, now, resident.resident_id)
        reasoning_details = {
            "rule_id": rule.id,
            "rule_name": rule.rule_name,
            "rule_version": rule.rule_version,
            "signal_counts": {t: counts.get(t, 0) for t in rule.required_signal_types},
            "thresholds": dict(rule.thresholds),
            "minimum_signals_count": rule.minimum_signals_count,
            "time_window_hours": hours,
            "evaluation_timestamp": clock.to_iso(now),
            "confidence_method": self.confidence_mode,
        }
        if factors is not None:
            reasoning_details["confidence_factors"] = factors

        event_id = str(uuid.uuid5(EVENT_NAMESPACE, dedup_key))
        event = CompoundEvent(
            id=event_id,
            dedup_key=dedup_key,
            resident_id=resident.resident_id,
            agency_id=resident.agency_id,
            correlation_type=rule.correlation_type,
            correlation_rule_id=rule.id,
            severity=rule.severity,
            confidence_score=confidence,
            reasoning_text=rule.render_reasoning(counts, hours),
            reasoning_details=reasoning_details,
            time_window_start=clock.to_iso(window_start),
            time_window_end=clock.to_iso(now),
            contributing_signals_count=len(facts),
            requires_human_action=rule.requires_human_action,
            contributions=[self._contribution(event_id, fact, weights) for fact in facts],
            created_at=clock.to_iso(clock.utc_now()),
        )
        self.events.insert(conn, event)
        if self.sink is not None:
            self.sink.publish_event(event, conn)
        return event

    def _confidence(
        self,
        conn: sqlite3.Connection,
        rule: CorrelationRule,
        facts: list[SignalFact],
        hours: float,
        now: datetime,
        resident_id: str,
    ) -> tuple[float, dict | None]:
        if self.confidence_mode == "fixed":
            return rule.confidence, None
        lookback_start = now - timedelta(hours=hours * self.calculator.lookback_windows)
        prior = self.events.count_firings(
            conn, rule.id, resident_id, clock.to_iso(lookback_start), clock.to_iso(now)
        )
        factors = self.calculator.calculate(
            evidence=[SignalEvidence(f.id, f.signal_type.value, f.signal_timestamp) for f in facts],
            thresholds=rule.thresholds,
            minimum_signals_count=rule.minimum_signals_count,
            window_hours=hours,
            reference_time=now,
            prior_firings=prior,
        )
        return factors.final_confidence, factors.to_dict()

    @staticmethod
    def _contribution(event_id: str, fact: SignalFact, weights: dict[str, float]) -> SignalContribution:
        return SignalContribution(
            id=str(uuid.uuid5(EVENT_NAMESPACE, f"{event_id}:{fact.id}")),
            signal_fact_id=fact.id,
            signal_source_table=fact.source_table,
            signal_source_id=fact.source_id,
            signal_type=fact.signal_type.value,
            signal_timestamp=clock.to_iso(fact.signal_timestamp),
            signal_data=fact.payload_dict(),
            contribution_weight=weights.get(fact.signal_type.value, 1.0),
        )

    def _log_run(self, resident_id, window_hours, now, started, events, status, error=None) -> None:
        self.computation_log.record(
            "correlation",
            resident_id,
            (time.monotonic() - started) * 1000,
            status=status,
            request={
                "window_hours": window_hours,
                "window_end": clock.to_iso(now),
                "confidence_mode": self.confidence_mode,
            },
            result={
                "events": [e.id for e in events],
                "events_created": sum(1 for e in events if e.created),
            },
            error=error,
        )
