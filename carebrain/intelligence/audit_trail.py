"""
Computation log.

One row per correlation run or trajectory projection: what was asked,
what came out, which rule version answered and how long it took. Failed
runs are logged too, after their transaction has rolled back.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from carebrain import clock
from carebrain.db import get_connection, transaction
from carebrain.migrations import ensure_schema

logger = logging.getLogger(__name__)


@dataclass
class ComputationRun:
    id: str
    operation: str
    resident_id: str
    started_at: str
    duration_ms: float
    status: str = "success"
    rule_version_id: str | None = None
    request: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["duration_ms"] = round(self.duration_ms, 2)
        return data


class ComputationLog:
    """Append-only log of engine and projector runs."""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path
        ensure_schema(db_path)

    def record(
        self,
        operation: str,
        resident_id: str,
        duration_ms: float,
        *,
        status: str = "success",
        rule_version_id: str | None = None,
        request: dict[str, Any] | None = None,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ComputationRun:
        run = ComputationRun(
            id=str(uuid.uuid4()),
            operation=operation,
            resident_id=resident_id,
            started_at=clock.to_iso(clock.utc_now()),
            duration_ms=duration_ms,
            status=status,
            rule_version_id=rule_version_id,
            request=request or {},
            result=result or {},
            error=error,
        )
        with get_connection(self.db_path) as conn:
            with transaction(conn):
                conn.execute(
                    "INSERT INTO computation_log (id, operation, resident_id, status, rule_version_id,"
                    " request_json, result_json, error, duration_ms, started_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        run.id,
                        operation,
                        resident_id,
                        status,
                        rule_version_id,
                        json.dumps(run.request, default=str),
                        json.dumps(run.result, default=str),
                        error,
                        duration_ms,
                        run.started_at,
                    ),
                )
        if status == "error":
            logger.warning("%s run failed", operation, extra={"resident_id": resident_id, "error": error})
        return run

    def runs(
        self,
        resident_id: str | None = None,
        operation: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[ComputationRun]:
        """Newest first. Unset filters match everything."""
        filters = {"resident_id": resident_id, "operation": operation, "status": status}
        clauses = [f"{column} = ?" for column, value in filters.items() if value is not None]
        params: list[Any] = [value for value in filters.values() if value is not None]
        sql = "SELECT * FROM computation_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY started_at DESC LIMIT ?"
        with get_connection(self.db_path) as conn:
            rows = conn.execute(sql, [*params, limit]).fetchall()
        return [
            ComputationRun(
                id=row["id"],
                operation=row["operation"],
                resident_id=row["resident_id"],
                started_at=row["started_at"],
                duration_ms=row["duration_ms"],
                status=row["status"],
                rule_version_id=row["rule_version_id"],
                request=json.loads(row["request_json"]),
                result=json.loads(row["result_json"]),
                error=row["error"],
            )
            for row in rows
        ]
