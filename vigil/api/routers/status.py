"""
Vigil -- Status & Override REST Router

Read access to the unified status record, threats and recent events,
plus the manual override commands. Overrides are routed through the
same governor and circuit breaker gating as automated calls.

Endpoints:
  GET  /api/v1/status                          -- unified status record
  GET  /api/v1/threats                         -- open (and archived) threats
  GET  /api/v1/events                          -- recent structured events
  POST /api/v1/systems/{system_id}/repair      -- force a repair (409 while its tier is suspended)
  POST /api/v1/systems/{system_id}/circuit/reset -- reset a circuit
  POST /api/v1/threats/{threat_id}/acknowledge -- acknowledge (resolve) a threat
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from vigil.primitives.errors import UnknownSystemError, UnknownThreatError

logger = structlog.get_logger("vigil.api.status")

router = APIRouter()


def _not_found(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"status": "error", "error": str(exc)})


@router.get("/api/v1/status")
async def get_status(request: Request) -> dict[str, Any]:
    """Latest health snapshot, emergency state, circuits and open threats."""
    vigil = request.app.state.vigil
    return {"status": "ok", "data": vigil.status()}


@router.get("/api/v1/threats")
async def get_threats(
    request: Request,
    include_archived: bool = Query(default=False),
) -> dict[str, Any]:
    vigil = request.app.state.vigil
    threats = vigil.threats(include_archived=include_archived)
    return {"status": "ok", "data": {"count": len(threats), "threats": threats}}


@router.get("/api/v1/events")
async def get_events(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    vigil = request.app.state.vigil
    return {"status": "ok", "data": {"events": vigil.events(limit=limit)}}


@router.post("/api/v1/systems/{system_id}/repair", response_model=None)
async def force_repair(request: Request, system_id: str) -> dict[str, Any] | JSONResponse:
    vigil = request.app.state.vigil
    try:
        outcome = await vigil.force_repair(system_id)
    except UnknownSystemError as exc:
        return _not_found(exc)
    if outcome.error == "Suspended":
        return JSONResponse(
            status_code=409,
            content={
                "status": "error",
                "error": outcome.detail,
                "data": outcome.model_dump(mode="json"),
            },
        )
    return {"status": "ok", "data": outcome.model_dump(mode="json")}


@router.post("/api/v1/systems/{system_id}/circuit/reset", response_model=None)
async def reset_circuit(request: Request, system_id: str) -> dict[str, Any] | JSONResponse:
    vigil = request.app.state.vigil
    try:
        state = await vigil.reset_circuit(system_id)
    except UnknownSystemError as exc:
        return _not_found(exc)
    return {"status": "ok", "data": {"system_id": system_id, "circuit_state": state.value}}


@router.post("/api/v1/threats/{threat_id}/acknowledge", response_model=None)
async def acknowledge_threat(request: Request, threat_id: str) -> dict[str, Any] | JSONResponse:
    vigil = request.app.state.vigil
    try:
        record = await vigil.acknowledge_threat(threat_id)
    except UnknownThreatError as exc:
        return _not_found(exc)
    return {"status": "ok", "data": record.summary()}
