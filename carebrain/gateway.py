"""
Idempotent Event Gateway.

Inbound mutations (signal ingestion, health-input batches, state
transitions) are submitted with an optional caller-supplied idempotency
key. A key is processed at most once: the first successful submission
stores its result, and every later submission with that key gets the
stored result back without re-running side effects.

Handlers run inside the gateway's transaction, so their writes commit
together with the idempotency record or not at all. The PRIMARY KEY on
idempotency_records is the final arbiter when submissions race.

Usage:
    gateway = IdempotentGateway(db_path)
    result = gateway.submit(
        "carelog-8812",
        {"operation": "signal_ingest", "source_table": "health_metrics", "row": {...}},
    )
    result.duplicate   # True on replays
"""

import hashlib
import json
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from carebrain import clock
from carebrain.db import get_connection, transaction
from carebrain.deadline import Deadline
from carebrain.deadline import check as check_deadline
from carebrain.errors import CoreError, ErrorKind, InvalidInput
from carebrain.intelligence.signals import AbnormalityPolicy, canonical_json, ingest_rows
from carebrain.migrations import ensure_schema
from carebrain.state_store import apply_transition

logger = logging.getLogger(__name__)

Handler = Callable[[sqlite3.Connection, dict], dict]


class _Unrecorded(Exception):
    """Rolls back a handler whose result reports failure."""

    def __init__(self, result: dict):
        super().__init__(result.get("error"))
        self.result = result


@dataclass
class SubmissionResult:
    accepted: bool
    result: dict
    idempotency_key: str | None
    duplicate: bool = False
    error: CoreError | None = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "result": self.result,
            "idempotency_key": self.idempotency_key,
            "duplicate": self.duplicate,
            "error": self.error.to_dict() if self.error else None,
        }


def payload_hash(payload: dict) -> str:
    return hashlib.sha256(canonical_json(payload).encode()).hexdigest()


class IdempotentGateway:
    """At-most-once execution of registered operations per idempotency key."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        policy: AbnormalityPolicy | None = None,
        register_builtins: bool = True,
    ):
        self.db_path = db_path
        self.policy = policy
        self._handlers: dict[str, Handler] = {}
        ensure_schema(db_path)
        if register_builtins:
            self.register("signal_ingest", self._handle_signal_ingest)
            self.register("health_input_batch", self._handle_health_input_batch)
            self.register("state_transition", self._handle_state_transition)

    def register(self, operation: str, handler: Handler) -> None:
        self._handlers[operation] = handler

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    def submit(
        self,
        key: str | None,
        payload: dict,
        deadline: Deadline | None = None,
    ) -> SubmissionResult:
        """
        Execute ``payload["operation"]`` unless ``key`` was already processed.

        A handler result with ``success: False`` (e.g. a version conflict)
        is returned unrecorded, so the caller can retry under the same key.
        """
        operation = payload.get("operation")
        handler = self._handlers.get(operation) if isinstance(operation, str) else None
        if handler is None:
            raise InvalidInput(f"Unknown operation: {operation!r}", allowed=self.operations)

        digest = payload_hash(payload)
        check_deadline(deadline, "gateway.submit")

        with get_connection(self.db_path, deadline) as conn:
            try:
                with transaction(conn):
                    if key is not None:
                        stored = self._load(conn, key)
                        if stored is not None:
                            return self._replay(key, stored, digest)

                    result = handler(conn, payload)

                    if not result.get("success", True):
                        raise _Unrecorded(result)

                    check_deadline(deadline, "gateway.submit")
                    if key is not None:
                        conn.execute(
                            """
                            INSERT INTO idempotency_records
                            (idempotency_key, operation, payload_hash, result, created_at)
                            VALUES (?, ?, ?, ?, ?)
                            """,
                            (key, operation, digest, canonical_json(result), clock.to_iso(clock.utc_now())),
                        )
            except _Unrecorded as unrecorded:
                return SubmissionResult(accepted=False, result=unrecorded.result, idempotency_key=key)
            except sqlite3.IntegrityError:
                # Lost a race on the key: converge on the winner's result.
                stored = self._load(conn, key) if key is not None else None
                if stored is None:
                    raise
                return self._replay(key, stored, digest)

        logger.info(
            "Submission processed",
            extra={"idempotency_key": key, "submitted_operation": operation},
        )
        return SubmissionResult(accepted=True, result=json.loads(canonical_json(result)), idempotency_key=key)

    def lookup(self, key: str) -> dict | None:
        """Stored record for a key, if any."""
        with get_connection(self.db_path) as conn:
            stored = self._load(conn, key)
        if stored is None:
            return None
        return {**stored, "result": json.loads(stored["result"])}

    # ------------------------------------------------------------------

    @staticmethod
    def _load(conn: sqlite3.Connection, key: str) -> dict | None:
        row = conn.execute(
            "SELECT * FROM idempotency_records WHERE idempotency_key = ?", (key,)
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def _replay(key: str, stored: dict, digest: str) -> SubmissionResult:
        if stored["payload_hash"] != digest:
            logger.warning(
                "Idempotency key reused with a different payload; returning stored result",
                extra={"idempotency_key": key, "submitted_operation": stored["operation"]},
            )
        else:
            logger.info("Duplicate submission", extra={"idempotency_key": key})
        return SubmissionResult(
            accepted=True,
            result=json.loads(stored["result"]),
            idempotency_key=key,
            duplicate=True,
            error=CoreError(
                ErrorKind.DUPLICATE_SUBMISSION,
                "Idempotency key already processed",
                {"operation": stored["operation"], "recorded_at": stored["created_at"]},
            ),
        )

    # ============================================================
    # BUILT-IN OPERATIONS
    # ============================================================

    def _handle_signal_ingest(self, conn: sqlite3.Connection, payload: dict) -> dict:
        source_table, row = _field(payload, "source_table"), _field(payload, "row")
        [outcome] = ingest_rows(conn, source_table, [row], self.policy)
        return {"success": True, **outcome.to_dict()}

    def _handle_health_input_batch(self, conn: sqlite3.Connection, payload: dict) -> dict:
        items = _field(payload, "items")
        if not isinstance(items, list):
            raise InvalidInput("health_input_batch items must be a list")
        outcomes = []
        for item in items:
            outcomes.extend(ingest_rows(conn, _field(item, "source_table"), [_field(item, "row")], self.policy))
        return {
            "success": True,
            "ingested": len(outcomes),
            "created": sum(1 for o in outcomes if o.created),
            "results": [o.to_dict() for o in outcomes],
        }

    def _handle_state_transition(self, conn: sqlite3.Connection, payload: dict) -> dict:
        result = apply_transition(
            conn,
            subject_id=_field(payload, "subject_id"),
            expected_version=_version(_field(payload, "expected_version")),
            field_updates=_field(payload, "field_updates"),
            reason=_field(payload, "reason"),
            actor_id=_field(payload, "actor_id"),
        )
        return result.to_dict()


def _field(payload: dict, name: str) -> Any:
    if not isinstance(payload, dict):
        raise InvalidInput(f"Expected an object holding {name!r}", field=name)
    if name not in payload:
        raise InvalidInput(f"Payload is missing {name!r}", field=name)
    return payload[name]


def _version(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidInput(f"expected_version must be an integer: {value!r}", field="expected_version")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"expected_version must be an integer: {value!r}", field="expected_version") from e
