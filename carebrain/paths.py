from __future__ import annotations

import os
from pathlib import Path

APP_ENV_HOME = "CAREBRAIN_HOME"
APP_ENV_DB = "CAREBRAIN_DB"


def app_home() -> Path:
    """
    User-writable home for CareBrain.
    Override with CAREBRAIN_HOME.
    """
    if os.environ.get(APP_ENV_HOME):
        return Path(os.environ[APP_ENV_HOME]).expanduser().resolve()
    return (Path.home() / ".carebrain").resolve()


def data_dir() -> Path:
    d = app_home() / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def db_path() -> Path:
    """
    Canonical DB path for carebrain.

    Resolution order:
    1. CAREBRAIN_DB env var (explicit override)
    2. ~/.carebrain/data/carebrain.db (default)
    """
    if os.environ.get(APP_ENV_DB):
        return Path(os.environ[APP_ENV_DB]).expanduser().resolve()
    return data_dir() / "carebrain.db"
