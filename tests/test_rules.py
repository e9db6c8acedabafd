"""
Tests for the correlation rule catalog.
"""

import sqlite3

import pytest

from carebrain.db import get_connection
from carebrain.errors import ConfigError, InvalidInput, RuleNotFound
from carebrain.intelligence.rules import CorrelationRule, RuleCatalog, Severity, load_seed, rule_id_for

SEED_NAMES = [
    "device_vitals_activity_decline",
    "family_concern_caregiver_observation",
    "medication_adherence_vitals_pattern",
    "multi_domain_instability",
]


@pytest.fixture
def catalog(db_path):
    catalog = RuleCatalog(db_path)
    catalog.seed()
    return catalog


class TestSeed:
    def test_seed_stores_version_one(self, catalog):
        rules = catalog.active_rules()
        assert [r.rule_name for r in rules] == SEED_NAMES
        assert all(r.rule_version == 1 for r in rules)

    def test_seed_is_idempotent(self, catalog):
        assert catalog.seed() == []
        assert len(catalog.active_rules()) == 4

    def test_rule_ids_are_deterministic(self, catalog):
        rule = catalog.get_by_name("medication_adherence_vitals_pattern")
        assert rule.id == rule_id_for("medication_adherence_vitals_pattern", 1)

    def test_seed_weights(self):
        seed = load_seed()
        assert seed.contribution_weights["medication_admin"] == 1.0
        assert seed.contribution_weights["care_activity"] == 0.6

    def test_missing_seed_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_seed(tmp_path / "missing.yaml")

    def test_seed_without_rules_list(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules: nope\n")
        with pytest.raises(ConfigError):
            load_seed(path)


class TestRuleDefinition:
    def _definition(self, **overrides):
        definition = {
            "rule_name": "test_rule",
            "correlation_type": "TEST",
            "thresholds": {"vital_sign": 2},
            "time_window_hours": 24,
            "severity_output": "low",
            "confidence": 0.5,
            "reasoning_template": "{vital_sign} vitals in {window_hours}h ({total} total)",
        }
        definition.update(overrides)
        return definition

    def test_valid_definition(self):
        rule = CorrelationRule.from_definition(self._definition())
        assert rule.severity is Severity.LOW
        assert rule.minimum_signals_count == 2
        assert rule.render_reasoning({"vital_sign": 3}, 24) == "3 vitals in 24h (3 total)"

    def test_fractional_window_in_reasoning(self):
        rule = CorrelationRule.from_definition(self._definition())
        assert rule.render_reasoning({"vital_sign": 2}, 1.5) == "2 vitals in 1.5h (2 total)"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"thresholds": {"astrology": 1}},
            {"thresholds": {}},
            {"confidence": 1.5},
            {"time_window_hours": 0},
            {"severity_output": "APOCALYPTIC"},
            {"reasoning_template": "{unknown_placeholder}"},
        ],
    )
    def test_invalid_definitions(self, overrides):
        with pytest.raises(InvalidInput):
            CorrelationRule.from_definition(self._definition(**overrides))

    def test_is_satisfied_needs_thresholds_and_minimum(self):
        rule = CorrelationRule.from_definition(
            self._definition(thresholds={"vital_sign": 1, "medication_admin": 1}, minimum_signals_count=3)
        )
        assert not rule.is_satisfied({"vital_sign": 1, "medication_admin": 1})
        assert not rule.is_satisfied({"vital_sign": 3})
        assert rule.is_satisfied({"vital_sign": 2, "medication_admin": 1})


class TestVersioning:
    def test_publish_version_supersedes(self, catalog):
        old = catalog.get_by_name("family_concern_caregiver_observation")
        new = catalog.publish_version("family_concern_caregiver_observation", time_window_hours=72)

        assert new.rule_version == 2
        assert new.id != old.id
        assert new.time_window_hours == 72
        assert catalog.get_by_name("family_concern_caregiver_observation").id == new.id

        superseded = catalog.get(old.id)
        assert not superseded.is_active
        assert superseded.deactivated_at is not None
        assert superseded.time_window_hours == 48

    def test_publish_unknown_rule(self, catalog):
        with pytest.raises(RuleNotFound):
            catalog.publish_version("nope", confidence=0.1)

    def test_deactivate(self, catalog):
        rule = catalog.get_by_name("multi_domain_instability")
        deactivated = catalog.deactivate(rule.id)
        assert not deactivated.is_active
        assert "multi_domain_instability" not in [r.rule_name for r in catalog.active_rules()]
        with pytest.raises(RuleNotFound):
            catalog.get_by_name("multi_domain_instability")

    def test_get_unknown_rule(self, catalog):
        with pytest.raises(RuleNotFound):
            catalog.get("missing")

    def test_definitions_are_frozen(self, catalog, db_path):
        rule = catalog.get_by_name("multi_domain_instability")
        with get_connection(db_path) as conn:
            with pytest.raises(sqlite3.DatabaseError, match="immutable"):
                conn.execute("UPDATE correlation_rules SET confidence = 0.1 WHERE id = ?", (rule.id,))
            with pytest.raises(sqlite3.DatabaseError, match="never deleted"):
                conn.execute("DELETE FROM correlation_rules WHERE id = ?", (rule.id,))
