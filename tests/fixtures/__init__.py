"""
Test fixtures for deterministic testing.

This module provides:
- fixture_db: temp SQLite databases with seeded rules and a pinned roster
- source_rows: collaborator row factories and a fixed clock
"""

from .fixture_db import ROSTER, create_fixture_db, guard_no_live_db
from .source_rows import (
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

__all__ = [
    "AGENCY",
    "NOW",
    "RESIDENT",
    "ROSTER",
    "activity_row",
    "create_fixture_db",
    "family_row",
    "guard_no_live_db",
    "hours_ago",
    "med_row",
    "task_row",
    "vital_row",
]
