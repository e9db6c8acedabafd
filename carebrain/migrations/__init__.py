"""Schema migrations for the CareBrain store."""

from .v1_core_schema import SCHEMA_VERSION, ensure_schema, run_migration

__all__ = ["SCHEMA_VERSION", "ensure_schema", "run_migration"]
