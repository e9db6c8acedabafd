"""
Tests for signal normalization and the signal fact store.

Covers:
- Abnormality flags per signal type from the shipped policy
- Task rows that are not completions produce no fact
- Deterministic fact ids and preservation of unknown source fields
- Idempotent ingestion and window queries
- Policy file errors
"""

import sqlite3
from datetime import timedelta

import pytest

from carebrain.db import get_connection
from carebrain.errors import ConfigError, InvalidInput
from carebrain.intelligence.signals import (
    AbnormalityFlag,
    AbnormalityPolicy,
    SignalFact,
    SignalFactStore,
    SignalType,
    VitalPayload,
    fact_id_for,
    normalize,
)
from tests.fixtures import NOW, activity_row, family_row, hours_ago, med_row, task_row, vital_row

# =============================================================================
# NORMALIZATION
# =============================================================================


class TestMedicationNormalization:
    def test_missed_dose_is_abnormal(self):
        fact = normalize("medication_administration_log", med_row(NOW, status="missed"))
        assert fact.signal_type is SignalType.MEDICATION_ADMIN
        assert fact.abnormality_flag is AbnormalityFlag.ABNORMAL
        assert fact.payload.status == "MISSED"

    def test_on_time_dose_is_normal(self):
        row = med_row(NOW, status="GIVEN", administered_at=(NOW + timedelta(minutes=20)).isoformat())
        fact = normalize("medication_administration_log", row)
        assert fact.abnormality_flag is AbnormalityFlag.NORMAL
        assert fact.payload.minutes_late == 20.0
        # Administration time is the signal time when present
        assert fact.signal_timestamp == NOW + timedelta(minutes=20)

    def test_dose_beyond_late_tolerance_is_abnormal(self):
        row = med_row(NOW, status="GIVEN", administered_at=(NOW + timedelta(minutes=90)).isoformat())
        fact = normalize("medication_administration_log", row)
        assert fact.is_abnormal


class TestVitalNormalization:
    @pytest.mark.parametrize(
        "metric,value,flag",
        [
            ("blood_pressure_systolic", 165, AbnormalityFlag.ABNORMAL),
            ("blood_pressure_systolic", 120, AbnormalityFlag.NORMAL),
            ("blood_pressure_systolic", 85, AbnormalityFlag.ABNORMAL),
            ("heart_rate", 72, AbnormalityFlag.NORMAL),
            ("heart_rate", 118, AbnormalityFlag.ABNORMAL),
            ("oxygen_saturation", 95, AbnormalityFlag.NORMAL),
            ("oxygen_saturation", 89, AbnormalityFlag.ABNORMAL),
            ("temperature", 38.6, AbnormalityFlag.ABNORMAL),
        ],
    )
    def test_policy_bands(self, metric, value, flag):
        fact = normalize("health_metrics", vital_row(NOW, value=value, metric_type=metric))
        assert fact.abnormality_flag is flag

    def test_unknown_metric_is_normal(self):
        fact = normalize("health_metrics", vital_row(NOW, value=9999, metric_type="steps"))
        assert fact.abnormality_flag is AbnormalityFlag.NORMAL
        assert fact.payload.band_low is None

    def test_non_numeric_value_rejected(self):
        row = vital_row(NOW)
        row["value_numeric"] = "high"
        with pytest.raises(InvalidInput):
            normalize("health_metrics", row)

    def test_unknown_fields_preserved(self):
        fact = normalize("health_metrics", vital_row(NOW, device="cuff-3"))
        assert isinstance(fact.payload, VitalPayload)
        assert fact.payload.extra == {"device": "cuff-3"}


class TestTaskNormalization:
    def test_non_completion_produces_no_fact(self):
        assert normalize("tasks", task_row(NOW, state="in_progress")) is None

    def test_concern_outcome_is_abnormal(self):
        fact = normalize("tasks", task_row(NOW, outcome="CONCERN"))
        assert fact.is_abnormal

    def test_concern_keyword_in_notes_is_abnormal(self):
        fact = normalize("tasks", task_row(NOW, outcome=None, notes="Reported a Problem with appetite"))
        assert fact.is_abnormal

    def test_routine_completion_is_normal(self):
        fact = normalize("tasks", task_row(NOW, outcome="COMPLETED", notes="Ate well"))
        assert fact.abnormality_flag is AbnormalityFlag.NORMAL


class TestOtherSources:
    def test_family_concern_level(self):
        assert normalize("family_observations", family_row(NOW, "URGENT")).is_abnormal
        assert normalize("family_observations", family_row(NOW, "moderate")).is_abnormal
        assert not normalize("family_observations", family_row(NOW, "NONE")).is_abnormal

    def test_declining_activity(self):
        fact = normalize("device_activity", activity_row(NOW))
        assert fact.signal_type is SignalType.CARE_ACTIVITY
        assert fact.is_abnormal
        assert not normalize("device_activity", activity_row(NOW, trend="STABLE")).is_abnormal

    def test_unknown_table(self):
        with pytest.raises(InvalidInput):
            normalize("kitchen_orders", {"id": "1", "resident_id": "r"})

    def test_missing_resident(self):
        row = family_row(NOW)
        del row["resident_id"]
        with pytest.raises(InvalidInput):
            normalize("family_observations", row)


class TestMalformedRows:
    def test_unparseable_timestamp(self):
        with pytest.raises(InvalidInput, match="not ISO-8601"):
            normalize("health_metrics", {**vital_row(NOW), "recorded_at": "yesterday"})

    def test_non_string_timestamp(self):
        with pytest.raises(InvalidInput):
            normalize("family_observations", {**family_row(NOW), "submitted_at": 1700000000})

    @pytest.mark.parametrize("column", ["scheduled_at", "administered_at"])
    def test_unparseable_medication_times(self, column):
        row = med_row(NOW, status="GIVEN", administered_at=NOW.isoformat())
        row[column] = "after lunch"
        with pytest.raises(InvalidInput):
            normalize("medication_administration_log", row)

    def test_non_numeric_activity_score(self):
        with pytest.raises(InvalidInput, match="activity_score"):
            normalize("device_activity", {**activity_row(NOW), "activity_score": "low"})

    def test_row_must_be_an_object(self):
        with pytest.raises(InvalidInput):
            normalize("health_metrics", ["hm-1", "res-001"])


class TestDeterminism:
    def test_same_row_same_fact(self):
        row = vital_row(NOW)
        first = normalize("health_metrics", row)
        second = normalize("health_metrics", dict(row))
        assert first == second
        assert first.id == fact_id_for("health_metrics", row["id"])

    def test_fact_id_depends_on_source_table(self):
        assert fact_id_for("health_metrics", "1") != fact_id_for("tasks", "1")


# =============================================================================
# POLICY
# =============================================================================


class TestAbnormalityPolicy:
    def test_missing_file_is_config_error(self, tmp_path):
        with pytest.raises(ConfigError):
            AbnormalityPolicy.load(tmp_path / "nope.yaml")

    def test_malformed_file_is_config_error(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("vital_bands: {}\n")
        with pytest.raises(ConfigError):
            AbnormalityPolicy.load(path)

    def test_custom_policy_changes_flag(self):
        policy = AbnormalityPolicy.from_dict(
            {
                "vital_bands": {"heart_rate": [50, 130]},
                "medication": {"abnormal_statuses": ["MISSED"], "late_tolerance_minutes": 30},
                "task": {"abnormal_outcomes": ["CONCERN"]},
                "family_observation": {"abnormal_concern_levels": ["URGENT"]},
                "care_activity": {"abnormal_trends": ["DECLINING"]},
            }
        )
        fact = normalize("health_metrics", vital_row(NOW, value=118, metric_type="heart_rate"), policy)
        assert fact.abnormality_flag is AbnormalityFlag.NORMAL


# =============================================================================
# STORE
# =============================================================================


class TestSignalFactStore:
    def test_ingest_is_idempotent(self, db_path):
        store = SignalFactStore(db_path)
        row = med_row(hours_ago(2))
        first = store.ingest("medication_administration_log", row)
        second = store.ingest("medication_administration_log", row)
        assert first.created is True
        assert second.created is False
        assert first.fact.id == second.fact.id

        facts = store.facts_in_window("res-001", hours_ago(24), NOW)
        assert [f.id for f in facts] == [first.fact.id]

    def test_round_trip_through_storage(self, db_path):
        store = SignalFactStore(db_path)
        result = store.ingest("health_metrics", vital_row(hours_ago(1), device="cuff-3"))
        stored = store.get(result.fact.id)
        assert stored == result.fact

    def test_window_filters(self, db_path):
        store = SignalFactStore(db_path)
        store.ingest_many(
            "medication_administration_log",
            [med_row(hours_ago(5)), med_row(hours_ago(4), status="GIVEN"), med_row(hours_ago(200))],
        )
        store.ingest("health_metrics", vital_row(hours_ago(3)))

        window = store.facts_in_window("res-001", hours_ago(48), NOW)
        assert len(window) == 3
        assert [f.signal_timestamp for f in window] == sorted(f.signal_timestamp for f in window)

        abnormal_meds = store.facts_in_window(
            "res-001", hours_ago(48), NOW, signal_types=[SignalType.MEDICATION_ADMIN], abnormal_only=True
        )
        assert len(abnormal_meds) == 1

    def test_skipped_task_is_not_stored(self, db_path):
        store = SignalFactStore(db_path)
        result = store.ingest("tasks", task_row(NOW, state="assigned"))
        assert result.fact is None
        assert result.created is False

    def test_facts_are_immutable(self, db_path):
        store = SignalFactStore(db_path)
        fact = store.ingest("health_metrics", vital_row(hours_ago(1))).fact
        with get_connection(db_path) as conn:
            with pytest.raises(sqlite3.DatabaseError, match="immutable"):
                conn.execute("UPDATE signal_facts SET abnormality_flag = 'NORMAL' WHERE id = ?", (fact.id,))
            with pytest.raises(sqlite3.DatabaseError, match="immutable"):
                conn.execute("DELETE FROM signal_facts WHERE id = ?", (fact.id,))

    def test_from_row_keeps_unknown_payload_keys(self):
        row = {
            "id": "f1",
            "resident_id": "res-001",
            "signal_type": "vital_sign",
            "signal_timestamp": NOW.isoformat(),
            "source_table": "health_metrics",
            "source_id": "1",
            "abnormality_flag": "NORMAL",
            "payload": '{"metric_type": "heart_rate", "value": 70, "cuff_size": "L"}',
            "payload_version": 1,
        }
        fact = SignalFact.from_row(row)
        assert fact.payload.extra == {"cuff_size": "L"}
