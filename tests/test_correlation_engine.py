"""
Tests for the correlation engine.

Covers:
- Rule firing with templated reasoning and contributions
- Deduplication per (rule, resident, window start)
- Per-rule and caller-supplied windows
- Agency-wide runs
- Evidence-based confidence mode
- Referential failures and deadline rollback
- Escalation publishing and computation logging
"""

import pytest

from carebrain.db import get_connection
from carebrain.errors import DeadlineExceeded, InvalidInput, ResidentNotFound
from carebrain.escalation import EscalationSink
from carebrain.intelligence import CorrelationEngine
from carebrain.intelligence.audit_trail import ComputationLog
from carebrain.intelligence.correlation_engine import dedup_key_for
from carebrain.intelligence.rules import RuleCatalog, Severity
from carebrain.intelligence.signals import SignalFactStore
from carebrain.residents import onboard
from tests.fixtures import (
    AGENCY,
    NOW,
    RESIDENT,
    activity_row,
    family_row,
    hours_ago,
    med_row,
    task_row,
    vital_row,
)

# =============================================================================
# HELPERS
# =============================================================================


def _seed_medication_pattern(db_path, resident_id=RESIDENT):
    """Three missed doses and two high systolic readings inside 48h."""
    store = SignalFactStore(db_path)
    store.ingest_many(
        "medication_administration_log",
        [med_row(hours_ago(h), resident_id=resident_id) for h in (30, 20, 10)],
    )
    store.ingest_many(
        "health_metrics",
        [vital_row(hours_ago(h), value=165, resident_id=resident_id) for h in (12, 6)],
    )


class _ExpiresAfter:
    """Deadline stand-in that expires on the n-th check."""

    def __init__(self, checks: int):
        self.remaining_checks = checks

    def check(self, operation: str) -> None:
        self.remaining_checks -= 1
        if self.remaining_checks <= 0:
            raise DeadlineExceeded(f"Deadline exceeded during {operation}", operation=operation)

    def sqlite_timeout(self, default: float) -> float:
        return default


def _event_count(db_path) -> int:
    with get_connection(db_path) as conn:
        return conn.execute("SELECT COUNT(*) AS n FROM compound_intelligence_events").fetchone()["n"]


@pytest.fixture
def engine(db_path, resident):
    return CorrelationEngine(db_path)


# =============================================================================
# FIRING
# =============================================================================


class TestRuleFiring:
    def test_medication_pattern_fires_one_event(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)

        assert event.correlation_type == "MEDICATION_STABILITY_RISK"
        assert event.severity is Severity.HIGH
        assert event.confidence_score == 0.85
        assert event.contributing_signals_count == 5
        assert event.requires_human_action
        assert event.created
        assert event.reasoning_text == (
            "Medication instability pattern detected: 3 late/missed medications "
            "and 2 abnormal vital sign readings in past 168 hours"
        )

    def test_event_is_explainable(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)

        details = event.reasoning_details
        assert details["signal_counts"] == {"medication_admin": 3, "vital_sign": 2}
        assert details["thresholds"] == {"medication_admin": 2, "vital_sign": 1}
        assert details["rule_version"] == 1
        assert details["confidence_method"] == "fixed"

        assert len(event.contributions) == 5
        weights = {c.signal_type: c.contribution_weight for c in event.contributions}
        assert weights == {"medication_admin": 1.0, "vital_sign": 0.9}
        vital = next(c for c in event.contributions if c.signal_type == "vital_sign")
        assert vital.signal_source_table == "health_metrics"
        assert vital.signal_data["value"] == 165

    def test_stored_event_matches_returned(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)
        assert engine.events.get(event.id) == event

    def test_below_threshold_fires_nothing(self, engine, db_path):
        store = SignalFactStore(db_path)
        store.ingest("medication_administration_log", med_row(hours_ago(5)))
        store.ingest("health_metrics", vital_row(hours_ago(4)))
        assert engine.evaluate(RESIDENT, now=NOW) == []

    def test_normal_facts_do_not_count(self, engine, db_path):
        store = SignalFactStore(db_path)
        store.ingest_many(
            "medication_administration_log", [med_row(hours_ago(h), status="GIVEN") for h in (30, 20, 10)]
        )
        store.ingest_many("health_metrics", [vital_row(hours_ago(h), value=120) for h in (12, 6)])
        assert engine.evaluate(RESIDENT, now=NOW) == []

    def test_multiple_rules_can_fire(self, engine, db_path):
        _seed_medication_pattern(db_path)
        store = SignalFactStore(db_path)
        store.ingest("family_observations", family_row(hours_ago(8)))
        store.ingest("tasks", task_row(hours_ago(7)))
        store.ingest("device_activity", activity_row(hours_ago(3)))

        events = engine.evaluate(RESIDENT, now=NOW)
        types = sorted(e.correlation_type for e in events)
        assert types == [
            "ACTIVITY_HEALTH_CORRELATION",
            "CROSS_OBSERVER_VALIDATION",
            "MEDICATION_STABILITY_RISK",
            "MULTI_DOMAIN_INSTABILITY",
        ]
        critical = next(e for e in events if e.correlation_type == "MULTI_DOMAIN_INSTABILITY")
        assert critical.severity is Severity.CRITICAL
        assert critical.confidence_score == 0.95


# =============================================================================
# WINDOWS AND DEDUPLICATION
# =============================================================================


class TestWindows:
    def test_per_rule_window_by_default(self, engine, db_path):
        store = SignalFactStore(db_path)
        # Outside the 48h family/task window, inside the 168h medication window
        store.ingest("family_observations", family_row(hours_ago(60)))
        store.ingest("tasks", task_row(hours_ago(59)))
        assert engine.evaluate(RESIDENT, now=NOW) == []
        [event] = engine.evaluate(RESIDENT, window_hours=72, now=NOW)
        assert event.correlation_type == "CROSS_OBSERVER_VALIDATION"
        assert event.reasoning_details["time_window_hours"] == 72

    def test_caller_window_excludes_old_facts(self, engine, db_path):
        _seed_medication_pattern(db_path)
        assert engine.evaluate(RESIDENT, window_hours=8, now=NOW) == []

    def test_non_positive_window_rejected(self, engine):
        with pytest.raises(InvalidInput):
            engine.evaluate(RESIDENT, window_hours=0, now=NOW)


class TestDeduplication:
    def test_same_window_returns_stored_event(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [first] = engine.evaluate(RESIDENT, now=NOW)
        [second] = engine.evaluate(RESIDENT, now=NOW)

        assert second.id == first.id
        assert second.created is False
        assert _event_count(db_path) == 1

    def test_dedup_key_shape(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)
        assert event.dedup_key == dedup_key_for(event.correlation_rule_id, RESIDENT, hours_ago(168))

    def test_new_window_creates_new_event(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [first] = engine.evaluate(RESIDENT, now=hours_ago(1))
        [second] = engine.evaluate(RESIDENT, now=NOW)
        assert first.id != second.id
        assert _event_count(db_path) == 2

    def test_events_reference_rule_version(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [first] = engine.evaluate(RESIDENT, now=hours_ago(1))

        catalog = RuleCatalog(db_path)
        catalog.publish_version("medication_adherence_vitals_pattern", confidence=0.9)
        engine.catalog = catalog

        [second] = engine.evaluate(RESIDENT, now=NOW)
        assert second.correlation_rule_id != first.correlation_rule_id
        assert second.confidence_score == 0.9
        # The superseded version still explains the old event
        assert catalog.get(first.correlation_rule_id).confidence == 0.85


# =============================================================================
# AGENCY RUNS
# =============================================================================


class TestEvaluateAgency:
    def test_evaluates_every_resident(self, engine, db_path):
        onboard("res-002", AGENCY, actor_id="test", db_path=db_path)
        onboard("res-101", "agency-south", actor_id="test", db_path=db_path)
        _seed_medication_pattern(db_path, RESIDENT)
        _seed_medication_pattern(db_path, "res-002")
        _seed_medication_pattern(db_path, "res-101")

        summary = engine.evaluate_agency(AGENCY, now=NOW)
        assert summary.residents_evaluated == 2
        assert summary.events_created == 2
        assert {e.resident_id for e in summary.events} == {RESIDENT, "res-002"}

        again = engine.evaluate_agency(AGENCY, now=NOW)
        assert again.events_created == 0
        assert again.to_dict()["events_total"] == 2

    def test_each_rule_keeps_its_own_window(self, engine, db_path):
        store = SignalFactStore(db_path)
        store.ingest("family_observations", family_row(hours_ago(100)))
        store.ingest("tasks", task_row(hours_ago(100)))

        assert engine.evaluate(RESIDENT, now=NOW) == []
        assert engine.evaluate_agency(AGENCY, now=NOW).events == []

        widened = engine.evaluate_agency(AGENCY, window_hours=168, now=NOW)
        assert [e.correlation_type for e in widened.events] == ["CROSS_OBSERVER_VALIDATION"]

    def test_unknown_agency_is_empty(self, engine):
        summary = engine.evaluate_agency("agency-nowhere", now=NOW)
        assert summary.residents_evaluated == 0
        assert summary.events == []


# =============================================================================
# CONFIDENCE MODES
# =============================================================================


class TestEvidenceConfidence:
    def test_evidence_mode_records_factors(self, db_path, resident):
        engine = CorrelationEngine(db_path, confidence_mode="evidence")
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)

        factors = event.reasoning_details["confidence_factors"]
        assert event.reasoning_details["confidence_method"] == "evidence"
        assert factors["component_completeness"] == 1.0
        assert factors["recurrence_factor"] == 0.0
        assert 0.0 < event.confidence_score < 1.0
        assert event.confidence_score == factors["final_confidence"]

    def test_unknown_mode_rejected(self, db_path):
        with pytest.raises(InvalidInput):
            CorrelationEngine(db_path, confidence_mode="vibes")


# =============================================================================
# FAILURES
# =============================================================================


class TestFailures:
    def test_unregistered_resident(self, engine):
        with pytest.raises(ResidentNotFound):
            engine.evaluate("res-ghost", now=NOW)

    def test_unregistered_resident_is_logged(self, engine, db_path):
        with pytest.raises(ResidentNotFound):
            engine.evaluate("res-ghost", now=NOW)
        [entry] = ComputationLog(db_path).runs(resident_id="res-ghost")
        assert entry.status == "error"

    def test_deadline_before_commit_rolls_back(self, engine, db_path):
        _seed_medication_pattern(db_path)
        checks = 1 + len(engine.catalog.active_rules()) + 1
        with pytest.raises(DeadlineExceeded):
            engine.evaluate(RESIDENT, now=NOW, deadline=_ExpiresAfter(checks))
        assert _event_count(db_path) == 0
        with get_connection(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) AS n FROM signal_contributions").fetchone()["n"] == 0

    def test_evidence_is_immutable(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)
        with get_connection(db_path) as conn:
            with pytest.raises(Exception, match="immutable"):
                conn.execute(
                    "UPDATE compound_intelligence_events SET confidence_score = 0.1 WHERE id = ?", (event.id,)
                )
            with pytest.raises(Exception, match="never deleted"):
                conn.execute("DELETE FROM compound_intelligence_events WHERE id = ?", (event.id,))


# =============================================================================
# INTEGRATION
# =============================================================================


class TestEscalationAndLogging:
    def test_fired_event_is_queued_once(self, db_path, resident):
        sink = EscalationSink(db_path)
        engine = CorrelationEngine(db_path, sink=sink)
        _seed_medication_pattern(db_path)

        [event] = engine.evaluate(RESIDENT, now=NOW)
        engine.evaluate(RESIDENT, now=NOW)

        [entry] = sink.pending(AGENCY)
        assert entry.source_id == event.id
        assert entry.severity == "HIGH"

    def test_run_is_logged(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)
        [entry] = ComputationLog(db_path).runs(resident_id=RESIDENT, operation="correlation")
        assert entry.status == "success"
        assert entry.result["events"] == [event.id]
        assert entry.result["events_created"] == 1


# =============================================================================
# SUPERVISOR REVIEW
# =============================================================================


class TestReview:
    def test_review_updates_only_review_columns(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)
        assert [e.id for e in engine.events.unreviewed(AGENCY)] == [event.id]

        reviewed = engine.events.review_event(event.id, "sup-1", "acknowledged", notes="Called GP")
        assert reviewed.supervisor_action == "ACKNOWLEDGED"
        assert reviewed.reviewed_by == "sup-1"
        assert reviewed.confidence_score == event.confidence_score
        assert reviewed.contributions == event.contributions
        assert engine.events.unreviewed(AGENCY) == []

    def test_review_is_audited(self, engine, db_path):
        from carebrain.audit import audit_entries

        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)
        engine.events.review_event(event.id, "sup-1", "DISMISSED")
        [entry] = audit_entries(db_path, "compound_intelligence_events", event.id)
        assert entry["action_type"] == "compound_event_reviewed"
        assert entry["actor_id"] == "sup-1"

    def test_unknown_action_rejected(self, engine, db_path):
        _seed_medication_pattern(db_path)
        [event] = engine.evaluate(RESIDENT, now=NOW)
        with pytest.raises(InvalidInput):
            engine.events.review_event(event.id, "sup-1", "IGNORED")
