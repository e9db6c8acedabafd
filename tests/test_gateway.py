"""
Tests for the idempotent event gateway.

Covers:
- At-most-once execution per key, identical replays
- Replays with a mismatched payload
- Unsuccessful handler results are not recorded
- Racing submissions with one key (real threads)
- Built-in operations and custom handlers
"""

import threading

import pytest

from carebrain.db import get_connection
from carebrain.errors import DeadlineExceeded, ErrorKind, InvalidInput
from carebrain.gateway import IdempotentGateway
from carebrain.state_store import VersionedStateStore
from tests.fixtures import NOW, hours_ago, med_row, task_row, vital_row

# =============================================================================
# HELPERS
# =============================================================================


def _fact_count(db_path) -> int:
    with get_connection(db_path) as conn:
        return conn.execute("SELECT COUNT(*) AS n FROM signal_facts").fetchone()["n"]


def _ingest_payload(row, source_table="health_metrics") -> dict:
    return {"operation": "signal_ingest", "source_table": source_table, "row": row}


@pytest.fixture
def gateway(db_path):
    return IdempotentGateway(db_path)


# =============================================================================
# IDEMPOTENCY
# =============================================================================


class TestIdempotency:
    def test_replay_returns_identical_result(self, gateway, db_path):
        payload = _ingest_payload(vital_row(hours_ago(1)))
        first = gateway.submit("carelog-1", payload)
        second = gateway.submit("carelog-1", payload)

        assert first.accepted and not first.duplicate
        assert second.accepted and second.duplicate
        assert second.result == first.result
        assert second.error.kind is ErrorKind.DUPLICATE_SUBMISSION
        assert _fact_count(db_path) == 1

    def test_replay_has_no_side_effects(self, gateway, db_path):
        store = VersionedStateStore(db_path)
        store.initialize("res-1", "resident", "onboarding")
        payload = {
            "operation": "state_transition",
            "subject_id": "res-1",
            "expected_version": 1,
            "field_updates": {"care_state": "ACUTE"},
            "reason": "fall",
            "actor_id": "nurse-1",
        }
        first = gateway.submit("tx-1", payload)
        second = gateway.submit("tx-1", payload)

        assert first.result["current_version"] == 2
        assert second.result == first.result
        assert store.get("res-1").state_version == 2
        assert len(store.history("res-1")) == 2

    def test_mismatched_payload_returns_stored_result(self, gateway, db_path, caplog):
        first = gateway.submit("carelog-2", _ingest_payload(vital_row(hours_ago(1))))
        with caplog.at_level("WARNING", logger="carebrain.gateway"):
            second = gateway.submit("carelog-2", _ingest_payload(vital_row(hours_ago(2))))
        assert second.duplicate
        assert second.result == first.result
        assert _fact_count(db_path) == 1
        assert any("different payload" in r.getMessage() for r in caplog.records)

    def test_no_key_always_executes(self, gateway, db_path):
        gateway.submit(None, _ingest_payload(vital_row(hours_ago(1))))
        gateway.submit(None, _ingest_payload(vital_row(hours_ago(2))))
        assert _fact_count(db_path) == 2

    def test_lookup(self, gateway):
        gateway.submit("carelog-3", _ingest_payload(vital_row(hours_ago(1))))
        record = gateway.lookup("carelog-3")
        assert record["operation"] == "signal_ingest"
        assert record["result"]["created"] is True
        assert gateway.lookup("missing") is None

    def test_records_are_write_once(self, gateway, db_path):
        gateway.submit("carelog-4", _ingest_payload(vital_row(hours_ago(1))))
        with get_connection(db_path) as conn:
            with pytest.raises(Exception, match="write-once"):
                conn.execute("UPDATE idempotency_records SET result = '{}' WHERE idempotency_key = 'carelog-4'")


class TestUnrecordedFailures:
    def test_version_conflict_is_not_recorded(self, gateway, db_path):
        store = VersionedStateStore(db_path)
        store.initialize("res-1", "resident", "onboarding")
        stale = {
            "operation": "state_transition",
            "subject_id": "res-1",
            "expected_version": 5,
            "field_updates": {"care_state": "ACUTE"},
            "reason": "fall",
            "actor_id": "nurse-1",
        }
        result = gateway.submit("tx-9", stale)
        assert not result.accepted
        assert result.result["error"]["kind"] == "VERSION_CONFLICT"
        assert gateway.lookup("tx-9") is None

        # Same key may be retried with a corrected version
        retry = gateway.submit("tx-9", {**stale, "expected_version": 1})
        assert retry.accepted and not retry.duplicate
        assert store.get("res-1").state_version == 2

    def test_handler_exception_rolls_back(self, gateway, db_path):
        def explode(conn, payload):
            conn.execute(
                "INSERT INTO residents (resident_id, agency_id, created_at) VALUES ('r', 'a', 'now')"
            )
            raise InvalidInput("bad row")

        gateway.register("explode", explode)
        with pytest.raises(InvalidInput):
            gateway.submit("k-1", {"operation": "explode"})
        assert gateway.lookup("k-1") is None
        with get_connection(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) AS n FROM residents").fetchone()["n"] == 0

    def test_expired_deadline_records_nothing(self, gateway, db_path):
        from carebrain.deadline import Deadline

        with pytest.raises(DeadlineExceeded):
            gateway.submit("k-2", _ingest_payload(vital_row(hours_ago(1))), deadline=Deadline.after(-1))
        assert gateway.lookup("k-2") is None
        assert _fact_count(db_path) == 0


# =============================================================================
# CONCURRENCY
# =============================================================================


class TestRacingSubmissions:
    def test_one_key_executes_once(self, db_path):
        executions = []
        lock = threading.Lock()

        def counting(conn, payload):
            with lock:
                executions.append(payload["n"])
            conn.execute(
                "INSERT INTO residents (resident_id, agency_id, created_at) VALUES (?, 'a', 'now')",
                (f"r-{payload['n']}",),
            )
            return {"success": True, "n": payload["n"]}

        gateway = IdempotentGateway(db_path)
        gateway.register("counting", counting)
        barrier = threading.Barrier(5)
        results = [None] * 5

        def submit(i):
            barrier.wait()
            results[i] = gateway.submit("same-key", {"operation": "counting", "n": i})

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(executions) == 1
        assert len({r.result["n"] for r in results}) == 1
        assert sum(1 for r in results if not r.duplicate) == 1
        with get_connection(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) AS n FROM residents").fetchone()["n"] == 1


# =============================================================================
# OPERATIONS
# =============================================================================


class TestOperations:
    def test_unknown_operation(self, gateway):
        with pytest.raises(InvalidInput):
            gateway.submit("k", {"operation": "teleport"})

    def test_missing_field(self, gateway):
        with pytest.raises(InvalidInput):
            gateway.submit("k", {"operation": "signal_ingest", "row": {}})

    def test_health_input_batch(self, gateway, db_path):
        payload = {
            "operation": "health_input_batch",
            "items": [
                {"source_table": "medication_administration_log", "row": med_row(hours_ago(3))},
                {"source_table": "health_metrics", "row": vital_row(hours_ago(2), value=120)},
                {"source_table": "tasks", "row": task_row(NOW, state="assigned")},
            ],
        }
        result = gateway.submit("batch-1", payload)
        assert result.result["ingested"] == 3
        assert result.result["created"] == 2
        flags = [r["abnormality_flag"] for r in result.result["results"]]
        assert flags == ["ABNORMAL", "NORMAL", None]
        assert _fact_count(db_path) == 2

    def test_batch_is_atomic(self, gateway, db_path):
        bad = vital_row(hours_ago(1))
        del bad["metric_type"]
        payload = {
            "operation": "health_input_batch",
            "items": [
                {"source_table": "health_metrics", "row": vital_row(hours_ago(2))},
                {"source_table": "health_metrics", "row": bad},
            ],
        }
        with pytest.raises(InvalidInput):
            gateway.submit("batch-2", payload)
        assert _fact_count(db_path) == 0

    def test_malformed_row_is_invalid_input(self, gateway, db_path):
        row = {**vital_row(hours_ago(1)), "recorded_at": "yesterday"}
        with pytest.raises(InvalidInput):
            gateway.submit("hm-bad", _ingest_payload(row))
        assert gateway.lookup("hm-bad") is None
        assert _fact_count(db_path) == 0

    @pytest.mark.parametrize("version", ["three", None, True, [1]])
    def test_malformed_expected_version(self, gateway, db_path, version):
        VersionedStateStore(db_path).initialize("res-1", "resident", "onboarding")
        payload = {
            "operation": "state_transition",
            "subject_id": "res-1",
            "expected_version": version,
            "field_updates": {"care_state": "ACUTE"},
            "reason": "fall",
            "actor_id": "nurse-1",
        }
        with pytest.raises(InvalidInput):
            gateway.submit("tx-bad", payload)
        assert gateway.lookup("tx-bad") is None

    def test_field_updates_must_be_an_object(self, gateway, db_path):
        VersionedStateStore(db_path).initialize("res-1", "resident", "onboarding")
        payload = {
            "operation": "state_transition",
            "subject_id": "res-1",
            "expected_version": 1,
            "field_updates": "ACUTE",
            "reason": "fall",
            "actor_id": "nurse-1",
        }
        with pytest.raises(InvalidInput):
            gateway.submit(None, payload)

    def test_batch_items_must_be_objects(self, gateway):
        with pytest.raises(InvalidInput):
            gateway.submit(None, {"operation": "health_input_batch", "items": ["hm-1"]})

    def test_operations_listing(self, gateway):
        assert gateway.operations == ["health_input_batch", "signal_ingest", "state_transition"]
