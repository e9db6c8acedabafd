# CareBrain - eldercare intelligence core
"""
Signal normalization, idempotent ingestion, versioned resident state,
rule-driven correlation and risk trajectory projection over one SQLite store.
"""

__version__ = "1.0.0"
