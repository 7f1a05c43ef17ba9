"""
Vigil -- Application Entry Point

FastAPI application that loads the registry, starts the orchestration
core, and serves the status and override surface.

`uvicorn vigil.main:app` or `python -m vigil.main`
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

# Load .env file before any configuration is loaded
load_dotenv()

from vigil.api.routers.status import router as status_router
from vigil.config import VigilConfig, load_config
from vigil.systems.emergency.service import VigilService
from vigil.telemetry.logging import setup_logging

logger = structlog.get_logger("vigil.main")


def _config_path() -> str:
    return os.environ.get("VIGIL_CONFIG_PATH", "config/default.yaml")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup and shutdown sequence.

    A malformed registry raises RegistryConfigError here and aborts startup.
    """
    # ── 1. Load configuration ─────────────────────────────────
    config: VigilConfig = getattr(app.state, "config", None) or load_config(_config_path())
    app.state.config = config

    # ── 2. Set up logging ─────────────────────────────────────
    setup_logging(config.logging, instance_id=config.instance_id)
    logger.info("vigil_starting", instance_id=config.instance_id, systems=len(config.systems))

    # ── 3. Build and start the core ───────────────────────────
    vigil = VigilService(config)
    await vigil.start()
    app.state.vigil = vigil

    yield

    # ── Shutdown ──────────────────────────────────────────────
    logger.info("vigil_shutting_down")
    await vigil.stop()


# ─── FastAPI Application ─────────────────────────────────────────

app = FastAPI(
    title="Vigil",
    description="Health monitoring and threat response orchestrator",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(status_router)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Self health check."""
    vigil: VigilService | None = getattr(app.state, "vigil", None)
    if vigil is None:
        return {"status": "starting"}
    return await vigil.health()


def run() -> None:
    config = load_config(_config_path())
    uvicorn.run(
        "vigil.main:app",
        host=config.server.host,
        port=config.server.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
