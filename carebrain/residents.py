"""
Resident registry.

The core consults this registry for referential checks; correlation and
projection against an unregistered resident fail with ResidentNotFound.
Onboarding registers the resident and creates its versioned state record
in one transaction.
"""

import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from carebrain import clock
from carebrain.db import get_connection, transaction
from carebrain.deadline import Deadline
from carebrain.deadline import check as check_deadline
from carebrain.errors import InvalidInput, ResidentNotFound
from carebrain.migrations import ensure_schema
from carebrain.state_store import TransitionResult, apply_initialize

logger = logging.getLogger(__name__)


@dataclass
class Resident:
    resident_id: str
    agency_id: str
    display_name: str | None
    status: str
    created_at: str

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Resident":
        return cls(
            resident_id=row["resident_id"],
            agency_id=row["agency_id"],
            display_name=row["display_name"],
            status=row["status"],
            created_at=row["created_at"],
        )


@dataclass
class OnboardResult:
    resident: Resident
    state: TransitionResult

    def to_dict(self) -> dict:
        return {"resident": self.resident.to_dict(), "state": self.state.to_dict()}


def load_resident(conn: sqlite3.Connection, resident_id: str) -> Resident | None:
    row = conn.execute("SELECT * FROM residents WHERE resident_id = ?", (resident_id,)).fetchone()
    return Resident.from_row(row) if row else None


def require_resident(conn: sqlite3.Connection, resident_id: str) -> Resident:
    resident = load_resident(conn, resident_id)
    if resident is None:
        raise ResidentNotFound(f"Resident not found: {resident_id}", resident_id=resident_id)
    return resident


def insert_resident(
    conn: sqlite3.Connection,
    resident_id: str,
    agency_id: str,
    display_name: str | None = None,
) -> Resident:
    """Register inside the caller's transaction. Re-registering is a no-op."""
    if not resident_id or not agency_id:
        raise InvalidInput("resident_id and agency_id are required")
    existing = load_resident(conn, resident_id)
    if existing is not None:
        if existing.agency_id != agency_id:
            raise InvalidInput(
                f"Resident {resident_id} belongs to agency {existing.agency_id}",
                resident_id=resident_id,
                agency_id=existing.agency_id,
            )
        return existing
    now = clock.to_iso(clock.utc_now())
    conn.execute(
        "INSERT INTO residents (resident_id, agency_id, display_name, status, created_at) VALUES (?, ?, ?, 'active', ?)",
        (resident_id, agency_id, display_name, now),
    )
    logger.info("Resident registered", extra={"resident_id": resident_id, "agency_id": agency_id})
    return Resident(resident_id, agency_id, display_name, "active", now)


class ResidentRegistry:
    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path
        ensure_schema(db_path)

    def register(
        self,
        resident_id: str,
        agency_id: str,
        display_name: str | None = None,
        deadline: Deadline | None = None,
    ) -> Resident:
        check_deadline(deadline, "residents.register")
        with get_connection(self.db_path, deadline) as conn:
            with transaction(conn):
                return insert_resident(conn, resident_id, agency_id, display_name)

    def exists(self, resident_id: str) -> bool:
        with get_connection(self.db_path) as conn:
            return load_resident(conn, resident_id) is not None

    def get(self, resident_id: str) -> Resident:
        with get_connection(self.db_path) as conn:
            return require_resident(conn, resident_id)

    def list_for_agency(self, agency_id: str) -> list[Resident]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM residents WHERE agency_id = ? AND status = 'active' ORDER BY resident_id",
                (agency_id,),
            ).fetchall()
        return [Resident.from_row(r) for r in rows]


def onboard(
    resident_id: str,
    agency_id: str,
    actor_id: str,
    display_name: str | None = None,
    initial_fields: Mapping[str, Any] | None = None,
    db_path: Path | str | None = None,
    deadline: Deadline | None = None,
) -> OnboardResult:
    """Register a resident and create its state record (version 1)."""
    ensure_schema(db_path)
    check_deadline(deadline, "residents.onboard")
    with get_connection(db_path, deadline) as conn:
        with transaction(conn):
            resident = insert_resident(conn, resident_id, agency_id, display_name)
            state = apply_initialize(conn, resident_id, "resident", actor_id, initial_fields, reason="onboarded")
            check_deadline(deadline, "residents.onboard")
    return OnboardResult(resident=resident, state=state)
