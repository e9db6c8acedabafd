"""
Core Schema Migration (v1)

Creates the tables behind the intelligence core:
- residents: registry consulted for referential checks
- signal_facts: normalized, immutable care signals
- idempotency_records: write-once results per caller key
- versioned_state / state_transition_history: optimistic-concurrency state + audit
- correlation_rules / compound_intelligence_events / signal_contributions
- projection_rule_versions / risk_trajectory_projections
- computation_log, escalation_queue, audit_log

Immutability is enforced here with triggers, not by convention in callers.

Run: python -m carebrain.migrations.v1_core_schema
"""

import logging
import sqlite3
from pathlib import Path

from carebrain import paths

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
-- Residents: the subjects signals and events refer to
CREATE TABLE IF NOT EXISTS residents (
    resident_id TEXT PRIMARY KEY,
    agency_id TEXT NOT NULL,
    display_name TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_residents_agency
ON residents(agency_id);

-- Signal facts: one per collaborator source row, never mutated
CREATE TABLE IF NOT EXISTS signal_facts (
    id TEXT PRIMARY KEY,
    resident_id TEXT NOT NULL,
    signal_type TEXT NOT NULL,
    signal_timestamp TEXT NOT NULL,
    source_table TEXT NOT NULL,
    source_id TEXT NOT NULL,
    abnormality_flag TEXT NOT NULL CHECK (abnormality_flag IN ('NORMAL', 'ABNORMAL')),
    payload TEXT NOT NULL,             -- JSON, tagged per signal_type
    payload_version INTEGER NOT NULL DEFAULT 1,
    recorded_at TEXT NOT NULL,
    UNIQUE (source_table, source_id)
);

CREATE INDEX IF NOT EXISTS idx_signal_facts_window
ON signal_facts(resident_id, signal_type, abnormality_flag, signal_timestamp);

CREATE TRIGGER IF NOT EXISTS trg_signal_facts_no_update
BEFORE UPDATE ON signal_facts
BEGIN
    SELECT RAISE(ABORT, 'signal_facts are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_signal_facts_no_delete
BEFORE DELETE ON signal_facts
BEGIN
    SELECT RAISE(ABORT, 'signal_facts are immutable');
END;

-- Idempotency records: created once per key, never updated
CREATE TABLE IF NOT EXISTS idempotency_records (
    idempotency_key TEXT PRIMARY KEY,
    operation TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    result TEXT NOT NULL,              -- JSON result returned to every replay
    created_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS trg_idempotency_no_update
BEFORE UPDATE ON idempotency_records
BEGIN
    SELECT RAISE(ABORT, 'idempotency_records are write-once');
END;

-- Versioned state: one row per subject, never deleted
CREATE TABLE IF NOT EXISTS versioned_state (
    subject_id TEXT PRIMARY KEY,
    subject_type TEXT NOT NULL,
    care_state TEXT NOT NULL,
    emergency_state TEXT NOT NULL,
    connectivity_state TEXT NOT NULL,
    state_version INTEGER NOT NULL CHECK (state_version >= 1),
    updated_by TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS trg_versioned_state_no_delete
BEFORE DELETE ON versioned_state
BEGIN
    SELECT RAISE(ABORT, 'versioned_state rows are never deleted');
END;

-- Transition history: append-only
CREATE TABLE IF NOT EXISTS state_transition_history (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL REFERENCES versioned_state(subject_id),
    from_version INTEGER NOT NULL,
    to_version INTEGER NOT NULL,
    previous_state TEXT,               -- JSON snapshot of tracked fields, NULL at init
    new_state TEXT NOT NULL,           -- JSON snapshot of tracked fields
    reason TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    transitioned_at TEXT NOT NULL,
    UNIQUE (subject_id, to_version)
);

CREATE INDEX IF NOT EXISTS idx_state_history_subject
ON state_transition_history(subject_id, to_version DESC);

CREATE TRIGGER IF NOT EXISTS trg_state_history_no_update
BEFORE UPDATE ON state_transition_history
BEGIN
    SELECT RAISE(ABORT, 'state_transition_history is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_state_history_no_delete
BEFORE DELETE ON state_transition_history
BEGIN
    SELECT RAISE(ABORT, 'state_transition_history is append-only');
END;

-- Correlation rules: versioned; only activation may change
CREATE TABLE IF NOT EXISTS correlation_rules (
    id TEXT PRIMARY KEY,
    rule_name TEXT NOT NULL,
    rule_version INTEGER NOT NULL DEFAULT 1,
    rule_description TEXT NOT NULL,
    correlation_type TEXT NOT NULL,
    required_signal_types TEXT NOT NULL,   -- JSON array
    thresholds TEXT NOT NULL,              -- JSON {signal_type: min_abnormal_count}
    time_window_hours INTEGER NOT NULL,
    minimum_signals_count INTEGER NOT NULL DEFAULT 2,
    severity_output TEXT NOT NULL CHECK (severity_output IN ('LOW', 'MODERATE', 'HIGH', 'CRITICAL')),
    confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
    reasoning_template TEXT NOT NULL,
    requires_human_action INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    deactivated_at TEXT,
    UNIQUE (rule_name, rule_version)
);

CREATE INDEX IF NOT EXISTS idx_correlation_rules_active
ON correlation_rules(is_active) WHERE is_active = 1;

CREATE TRIGGER IF NOT EXISTS trg_correlation_rules_frozen
BEFORE UPDATE OF id, rule_name, rule_version, rule_description, correlation_type,
    required_signal_types, thresholds, time_window_hours, minimum_signals_count,
    severity_output, confidence, reasoning_template, requires_human_action
ON correlation_rules
BEGIN
    SELECT RAISE(ABORT, 'correlation rule definitions are immutable; publish a new version');
END;

CREATE TRIGGER IF NOT EXISTS trg_correlation_rules_no_delete
BEFORE DELETE ON correlation_rules
BEGIN
    SELECT RAISE(ABORT, 'correlation rules are referenced by events and never deleted');
END;

-- Compound intelligence events: only supervisor review columns may change
CREATE TABLE IF NOT EXISTS compound_intelligence_events (
    id TEXT PRIMARY KEY,
    dedup_key TEXT NOT NULL UNIQUE,        -- rule_id:resident_id:window_start
    resident_id TEXT NOT NULL REFERENCES residents(resident_id),
    agency_id TEXT NOT NULL,
    correlation_type TEXT NOT NULL,
    correlation_rule_id TEXT NOT NULL REFERENCES correlation_rules(id),
    severity TEXT NOT NULL CHECK (severity IN ('LOW', 'MODERATE', 'HIGH', 'CRITICAL')),
    confidence_score REAL NOT NULL CHECK (confidence_score >= 0 AND confidence_score <= 1),
    reasoning_text TEXT NOT NULL,
    reasoning_details TEXT NOT NULL,       -- JSON
    time_window_start TEXT NOT NULL,
    time_window_end TEXT NOT NULL,
    contributing_signals_count INTEGER NOT NULL,
    requires_human_action INTEGER NOT NULL DEFAULT 0,
    reviewed_by TEXT,
    reviewed_at TEXT,
    supervisor_action TEXT,
    supervisor_notes TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_compound_events_resident
ON compound_intelligence_events(resident_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_compound_events_unreviewed
ON compound_intelligence_events(reviewed_at)
WHERE reviewed_at IS NULL AND requires_human_action = 1;

CREATE TRIGGER IF NOT EXISTS trg_compound_events_frozen
BEFORE UPDATE OF id, dedup_key, resident_id, agency_id, correlation_type,
    correlation_rule_id, severity, confidence_score, reasoning_text, reasoning_details,
    time_window_start, time_window_end, contributing_signals_count, requires_human_action,
    created_at
ON compound_intelligence_events
BEGIN
    SELECT RAISE(ABORT, 'compound event evidence is immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_compound_events_no_delete
BEFORE DELETE ON compound_intelligence_events
BEGIN
    SELECT RAISE(ABORT, 'compound events are never deleted');
END;

-- Signal contributions: point-in-time evidence copies
CREATE TABLE IF NOT EXISTS signal_contributions (
    id TEXT PRIMARY KEY,
    compound_event_id TEXT NOT NULL REFERENCES compound_intelligence_events(id),
    signal_fact_id TEXT NOT NULL,
    signal_source_table TEXT NOT NULL,
    signal_source_id TEXT NOT NULL,
    signal_type TEXT NOT NULL,
    signal_timestamp TEXT NOT NULL,
    signal_data TEXT NOT NULL,             -- JSON payload snapshot
    contribution_weight REAL NOT NULL DEFAULT 1.0,
    created_at TEXT NOT NULL,
    UNIQUE (compound_event_id, signal_fact_id)
);

CREATE INDEX IF NOT EXISTS idx_signal_contrib_event
ON signal_contributions(compound_event_id);

CREATE INDEX IF NOT EXISTS idx_signal_contrib_source
ON signal_contributions(signal_source_table, signal_source_id);

CREATE TRIGGER IF NOT EXISTS trg_signal_contrib_no_update
BEFORE UPDATE ON signal_contributions
BEGIN
    SELECT RAISE(ABORT, 'signal_contributions are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_signal_contrib_no_delete
BEFORE DELETE ON signal_contributions
BEGIN
    SELECT RAISE(ABORT, 'signal_contributions are immutable');
END;

-- Projection rule versions: only effective_until may be set (once superseded)
CREATE TABLE IF NOT EXISTS projection_rule_versions (
    id TEXT PRIMARY KEY,
    version_number INTEGER NOT NULL UNIQUE,
    rule_set TEXT NOT NULL,                -- JSON ProjectionRuleSet
    effective_from TEXT NOT NULL,
    effective_until TEXT,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS trg_projection_rules_frozen
BEFORE UPDATE OF id, version_number, rule_set, effective_from, created_by, created_at
ON projection_rule_versions
BEGIN
    SELECT RAISE(ABORT, 'projection rule versions are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_projection_rules_no_delete
BEFORE DELETE ON projection_rule_versions
BEGIN
    SELECT RAISE(ABORT, 'projection rule versions are never deleted');
END;

-- Risk trajectory projections: immutable, traceable to a rule version
CREATE TABLE IF NOT EXISTS risk_trajectory_projections (
    id TEXT PRIMARY KEY,
    resident_id TEXT NOT NULL REFERENCES residents(resident_id),
    agency_id TEXT NOT NULL,
    risk_type TEXT NOT NULL,
    current_risk_level TEXT,
    trend_velocity REAL,
    persistence_duration_hours REAL,
    escalation_horizon_hours INTEGER,
    projected_next_level TEXT,
    projection_confidence REAL NOT NULL,
    data_sufficiency TEXT NOT NULL CHECK (data_sufficiency IN ('SUFFICIENT', 'INSUFFICIENT')),
    data_points_used INTEGER NOT NULL,
    lookback_window_hours INTEGER NOT NULL,
    assumptions TEXT NOT NULL,
    rule_version_id TEXT NOT NULL REFERENCES projection_rule_versions(id),
    source_fact_ids TEXT NOT NULL,         -- JSON array
    velocity_details TEXT NOT NULL,        -- JSON
    computation_timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_projections_resident
ON risk_trajectory_projections(resident_id, risk_type, computation_timestamp DESC);

CREATE TRIGGER IF NOT EXISTS trg_projections_no_update
BEFORE UPDATE ON risk_trajectory_projections
BEGIN
    SELECT RAISE(ABORT, 'risk_trajectory_projections are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_projections_no_delete
BEFORE DELETE ON risk_trajectory_projections
BEGIN
    SELECT RAISE(ABORT, 'risk_trajectory_projections are immutable');
END;

-- Computation log: one row per engine/projector run
CREATE TABLE IF NOT EXISTS computation_log (
    id TEXT PRIMARY KEY,
    operation TEXT NOT NULL CHECK (operation IN ('correlation', 'trajectory')),
    resident_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('success', 'insufficient_data', 'error')),
    rule_version_id TEXT,
    request_json TEXT NOT NULL DEFAULT '{}',
    result_json TEXT NOT NULL DEFAULT '{}',
    error TEXT,
    duration_ms REAL NOT NULL,
    started_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_computation_log_resident
ON computation_log(resident_id, operation, started_at DESC);

-- Escalation queue: supervisor work items fed by events and projections
CREATE TABLE IF NOT EXISTS escalation_queue (
    id TEXT PRIMARY KEY,
    source_kind TEXT NOT NULL,             -- 'compound_event' | 'trajectory_projection'
    source_id TEXT NOT NULL,
    resident_id TEXT NOT NULL,
    agency_id TEXT NOT NULL,
    severity TEXT NOT NULL,
    reason TEXT NOT NULL,
    details TEXT NOT NULL,                 -- JSON
    created_at TEXT NOT NULL,
    acknowledged_at TEXT,
    acknowledged_by TEXT,
    UNIQUE (source_kind, source_id)
);

CREATE INDEX IF NOT EXISTS idx_escalation_pending
ON escalation_queue(agency_id, created_at DESC)
WHERE acknowledged_at IS NULL;

-- Audit log for supervisor actions
CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    action_type TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    new_state TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_log_target
ON audit_log(target_type, target_id, created_at DESC);
"""


def run_migration(db_path: Path | None = None) -> dict:
    """
    Run the core schema migration.

    Safe to run multiple times (IF NOT EXISTS).
    """
    db = db_path or paths.db_path()
    result = {"tables_created": [], "errors": []}

    try:
        conn = sqlite3.connect(str(db))
        try:
            conn.execute("PRAGMA journal_mode=WAL")

            existing = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            }

            conn.executescript(SCHEMA)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

            after = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            }
        finally:
            conn.close()

        result["tables_created"] = sorted(after - existing)
        if result["tables_created"]:
            logger.info("v1 migration complete: created %s", result["tables_created"])

    except (sqlite3.Error, OSError) as e:
        logger.error("v1 migration failed: %s", e)
        result["errors"].append(str(e))

    return result


_converged: set[str] = set()


def ensure_schema(db_path: Path | str | None = None) -> None:
    """Converge the schema once per process per DB file; raise on failure."""
    db = Path(db_path) if db_path else paths.db_path()
    key = str(db)
    if key in _converged:
        return
    result = run_migration(db)
    if result["errors"]:
        raise sqlite3.OperationalError(f"Schema migration failed: {result['errors']}")
    _converged.add(key)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    result = run_migration()
    print(f"Migration result: {result}")
