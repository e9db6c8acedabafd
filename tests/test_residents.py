"""
Tests for the resident registry and onboarding.
"""

import pytest

from carebrain.deadline import Deadline
from carebrain.errors import DeadlineExceeded, ErrorKind, InvalidInput, ResidentNotFound
from carebrain.residents import ResidentRegistry, onboard
from carebrain.state_store import VersionedStateStore
from tests.fixtures import AGENCY, ROSTER, create_fixture_db


class TestOnboard:
    def test_registers_and_initializes_state(self, db_path):
        result = onboard("res-9", AGENCY, actor_id="intake", display_name="Mary", db_path=db_path)
        assert result.resident.agency_id == AGENCY
        assert result.state.success
        assert result.state.current_version == 1

        snapshot = VersionedStateStore(db_path).get("res-9")
        assert snapshot.subject_type == "resident"
        assert snapshot.updated_by == "intake"

    def test_initial_fields(self, db_path):
        result = onboard("res-9", AGENCY, "intake", initial_fields={"care_state": "PALLIATIVE"}, db_path=db_path)
        assert result.state.state["care_state"] == "PALLIATIVE"

    def test_second_onboard_reports_already_initialized(self, db_path):
        onboard("res-9", AGENCY, "intake", db_path=db_path)
        again = onboard("res-9", AGENCY, "intake", db_path=db_path)
        assert again.state.error.kind is ErrorKind.ALREADY_INITIALIZED

    def test_agency_mismatch_rejected(self, db_path):
        onboard("res-9", AGENCY, "intake", db_path=db_path)
        with pytest.raises(InvalidInput):
            onboard("res-9", "agency-south", "intake", db_path=db_path)

    def test_invalid_state_rolls_back_registration(self, db_path):
        with pytest.raises(InvalidInput):
            onboard("res-9", AGENCY, "intake", initial_fields={"care_state": "UNKNOWN"}, db_path=db_path)
        assert not ResidentRegistry(db_path).exists("res-9")

    def test_expired_deadline(self, db_path):
        with pytest.raises(DeadlineExceeded):
            onboard("res-9", AGENCY, "intake", db_path=db_path, deadline=Deadline.after(-1))
        assert not ResidentRegistry(db_path).exists("res-9")


class TestRegistry:
    def test_fixture_roster(self, db_path):
        create_fixture_db(db_path)
        registry = ResidentRegistry(db_path)
        assert [r.resident_id for r in registry.list_for_agency("agency-north")] == ["res-001", "res-002"]
        assert registry.get("res-101").display_name == ROSTER[2][2]

    def test_register_is_idempotent(self, db_path):
        registry = ResidentRegistry(db_path)
        first = registry.register("res-9", AGENCY)
        second = registry.register("res-9", AGENCY)
        assert first.created_at == second.created_at

    def test_missing_ids_rejected(self, db_path):
        with pytest.raises(InvalidInput):
            ResidentRegistry(db_path).register("", AGENCY)

    def test_unknown_resident(self, db_path):
        with pytest.raises(ResidentNotFound):
            ResidentRegistry(db_path).get("res-ghost")
