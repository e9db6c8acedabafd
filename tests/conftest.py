"""
Test configuration - repo root on sys.path, one temporary database per test.

CAREBRAIN_HOME and CAREBRAIN_DB are pointed at tmp_path for every test, so
nothing can reach a developer's ~/.carebrain database.
"""

import sys
from datetime import datetime
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from carebrain.residents import onboard  # noqa: E402
from tests.fixtures import AGENCY, NOW, RESIDENT, guard_no_live_db  # noqa: E402

# =============================================================================
# ISOLATION
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Route every default path into tmp_path."""
    monkeypatch.setenv("CAREBRAIN_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("CAREBRAIN_DB", str(tmp_path / "carebrain.db"))


@pytest.fixture
def db_path(tmp_path) -> Path:
    path = tmp_path / "carebrain.db"
    guard_no_live_db(path)
    return path


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def resident(db_path):
    """An onboarded resident at state version 1."""
    result = onboard(RESIDENT, AGENCY, actor_id="test-onboarding", display_name="Ada", db_path=db_path)
    return result.resident
