"""
Centralized configuration for CareBrain.

All values that vary by deployment belong here.
Override via environment variables where marked.
"""

import os

# ============================================================
# Correlation
# ============================================================

CONFIDENCE_MODE: str = os.environ.get("CAREBRAIN_CONFIDENCE_MODE", "fixed")
"""'fixed' uses each rule's constant confidence; 'evidence' derives it from the signals."""

# ============================================================
# Storage
# ============================================================

SQLITE_TIMEOUT_SECONDS: float = float(os.environ.get("CAREBRAIN_SQLITE_TIMEOUT", "5.0"))
"""Busy timeout for a single transactional round trip."""

# ============================================================
# Escalation
# ============================================================

ESCALATION_HORIZON_HOURS: int = int(os.environ.get("CAREBRAIN_ESCALATION_HORIZON_HOURS", "72"))
"""Projections escalating sooner than this are routed to the supervisor queue."""

# ============================================================
# Logging
# ============================================================

LOG_LEVEL: str = os.environ.get("CAREBRAIN_LOG_LEVEL", "INFO")

_log_json = os.environ.get("CAREBRAIN_LOG_JSON")
LOG_JSON: bool | None = None if _log_json is None else _log_json.lower() in ("1", "true", "yes")
"""None means auto-detect: JSON when stderr is not a TTY."""
