"""
Store bootstrap: schema, seed correlation rules, seed projection rule set.

Safe to run repeatedly; seeds are only written when missing.
"""

import logging
from pathlib import Path

from carebrain.intelligence.rules import RuleCatalog
from carebrain.intelligence.trajectory import ProjectionRuleStore
from carebrain.migrations import run_migration

logger = logging.getLogger(__name__)


def initialize_store(db_path: Path | str | None = None) -> dict:
    migration = run_migration(Path(db_path) if db_path else None)
    if migration["errors"]:
        return {"migration": migration, "rules_seeded": [], "projection_rule_version": None}

    rules_seeded = RuleCatalog(db_path).seed()
    rule_store = ProjectionRuleStore(db_path)
    rule_store.seed()
    version = rule_store.active_version()
    logger.info(
        "Store initialized",
        extra={"rules_seeded": rules_seeded, "projection_rule_version": version.version_number},
    )
    return {
        "migration": migration,
        "rules_seeded": rules_seeded,
        "projection_rule_version": version.version_number,
    }
