"""
Supervisor audit log.

Event reviews and escalation acknowledgements are appended to audit_log
inside the transaction that performs them.
"""

import json
import sqlite3
import uuid
from pathlib import Path

from carebrain import clock
from carebrain.db import get_connection


def record_action(
    conn: sqlite3.Connection,
    action_type: str,
    actor_id: str,
    target_type: str,
    target_id: str,
    new_state: dict | None = None,
    metadata: dict | None = None,
) -> str:
    """Append a supervisor action to audit_log inside the caller's transaction."""
    entry_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO audit_log (id, action_type, actor_id, target_type, target_id, new_state, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry_id,
            action_type,
            actor_id,
            target_type,
            target_id,
            json.dumps(new_state or {}),
            json.dumps(metadata or {}),
            clock.to_iso(clock.utc_now()),
        ),
    )
    return entry_id


def audit_entries(db_path: Path | str | None, target_type: str, target_id: str) -> list[dict]:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM audit_log WHERE target_type = ? AND target_id = ? ORDER BY created_at",
            (target_type, target_id),
        ).fetchall()
    return [
        {**dict(r), "new_state": json.loads(r["new_state"]), "metadata": json.loads(r["metadata"])}
        for r in rows
    ]
