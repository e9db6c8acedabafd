"""
CareBrain API Server - REST surface for supervisor UIs, dashboards and schedulers.
"""
# ruff: noqa: S104
# S104: Development server binding (guarded by __name__ check)

import logging
import os

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.brain_router import brain_router
from api.response_models import HealthResponse
from carebrain import __version__, clock, config
from carebrain import db as db_module
from carebrain.bootstrap import initialize_store
from carebrain.migrations import SCHEMA_VERSION
from carebrain.observability import CorrelationIdMiddleware, configure_logging

logger = logging.getLogger(__name__)

# FastAPI app initialization
app = FastAPI(
    title="CareBrain API",
    description="Care intelligence core: signals, versioned state, correlation and trajectories",
    version=__version__,
)

# CORS middleware - configurable via CORS_ORIGINS env var
cors_origins_env = os.getenv("CORS_ORIGINS", "*")
cors_origins = (
    ["*"] if cors_origins_env == "*" else [o.strip() for o in cors_origins_env.split(",")]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(brain_router, prefix="/api/brain")


# ==== Startup ====
@app.on_event("startup")
async def initialize_on_startup():
    """Configure logging, converge the schema and seed rules."""
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)
    db_path = db_module.get_db_path()
    logger.info("=== CareBrain Startup ===")
    logger.info(f"DB path: {db_path}")
    result = initialize_store(db_path)
    if result["migration"]["errors"]:
        logger.error(f"Store initialization failed: {result['migration']['errors']}")
    else:
        logger.info(
            f"Store ready: rules seeded {result['rules_seeded']}, "
            f"projection rule version {result['projection_rule_version']}"
        )


# ==== Health ====
@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    return {
        "status": "healthy",
        "version": __version__,
        "schema_version": SCHEMA_VERSION,
        "timestamp": clock.to_iso(clock.utc_now()),
    }


if __name__ == "__main__":
    uvicorn.run(app, host=os.getenv("CAREBRAIN_HOST", "0.0.0.0"), port=int(os.getenv("CAREBRAIN_PORT", "8420")))
