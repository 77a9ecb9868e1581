"""FastAPI service for Wallet Autopilot: wallet reads, delegation management, audit."""

from __future__ import annotations

import logging
from pathlib import Path

import pydantic
import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from wallet_autopilot import __version__
from wallet_autopilot.chain.authority import BaseAuthorityProvider
from wallet_autopilot.chain.indexer import IndexerClient
from wallet_autopilot.core.autopilot import Autopilot
from wallet_autopilot.errors import AutopilotError, ValidationError
from wallet_autopilot.storage.models import DelegationRequest, ExecutionStatus

logger = logging.getLogger("wallet_autopilot.api")

_app = FastAPI(title="Wallet Autopilot Agent", version=__version__)
_autopilot: Autopilot | None = None
_base_path: Path | None = None
_indexer: IndexerClient | None = None
_authority: BaseAuthorityProvider | None = None
_start_monitor: bool = True


def configure_app(
    base_path: Path | None = None,
    indexer: IndexerClient | None = None,
    authority: BaseAuthorityProvider | None = None,
    start_monitor: bool = True,
) -> FastAPI:
    """Set what the app loads on startup and return it."""
    global _base_path, _indexer, _authority, _start_monitor
    _base_path = base_path
    _indexer = indexer
    _authority = authority
    _start_monitor = start_monitor
    return _app


@_app.on_event("startup")
async def startup():
    global _autopilot
    _autopilot = await Autopilot.load(_base_path, indexer=_indexer, authority=_authority)
    if _start_monitor and _autopilot.config.monitor.enabled and _autopilot.monitor is not None:
        _autopilot.start_monitor()
    logger.info(f"Agent service started for '{_autopilot.config.name}' on {_autopilot.chain.name}")


@_app.on_event("shutdown")
async def shutdown():
    global _autopilot
    if _autopilot:
        await _autopilot.shutdown()
        _autopilot = None


@_app.exception_handler(AutopilotError)
async def autopilot_error_handler(request: Request, exc: AutopilotError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.as_dict()})


def _get() -> Autopilot:
    if _autopilot is None:
        raise HTTPException(status_code=503, detail="Agent not loaded")
    return _autopilot


# ------------------------------------------------------------------
# Service
# ------------------------------------------------------------------


@_app.get("/health")
async def health():
    monitor = _autopilot.monitor if _autopilot else None
    return {
        "status": "ok",
        "message": "Wallet Autopilot Agent is running",
        "monitor": bool(monitor and monitor.running),
    }


@_app.get("/api/monitor")
async def api_monitor():
    return _get().status()


# ------------------------------------------------------------------
# Wallet reads
# ------------------------------------------------------------------


@_app.get("/api/wallet/{address}/health")
async def api_wallet_health(address: str):
    health = await _get().wallet_health(address)
    if not health.indexed:
        raise HTTPException(status_code=404, detail="Wallet health not found")
    return health.model_dump(mode="json")


@_app.get("/api/wallet/{address}/approvals")
async def api_approvals(address: str):
    return [a.to_dict() for a in await _get().approvals(address)]


@_app.get("/api/wallet/{address}/approvals/risky")
async def api_risky_approvals(address: str):
    return [a.to_dict() for a in await _get().approvals(address, risky_only=True)]


# ------------------------------------------------------------------
# Delegations
# ------------------------------------------------------------------


@_app.post("/api/delegation/register")
async def api_register_delegation(body: dict):
    if "proofOfGrant" in body and "proof_of_grant" not in body:
        body = {**body, "proof_of_grant": body["proofOfGrant"]}
    try:
        request = DelegationRequest.model_validate(body)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Malformed delegation request.",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
    record = await _get().register_delegation(request)
    return {"success": True, "delegationId": record.id, "delegation": record.model_dump(mode="json")}


@_app.post("/api/delegation/revoke")
async def api_revoke_delegation(body: dict):
    delegation_id = body.get("delegationId") or body.get("delegation_id")
    if not delegation_id:
        raise ValidationError("'delegationId' is required.")
    await _get().revoke_delegation(delegation_id)
    return {"success": True}


@_app.delete("/api/delegation/{delegation_id}")
async def api_delete_delegation(delegation_id: str):
    await _get().revoke_delegation(delegation_id)
    return {"success": True}


@_app.post("/api/delegation/{delegation_id}/pause")
async def api_pause_delegation(delegation_id: str):
    record = await _get().pause_delegation(delegation_id)
    return record.model_dump(mode="json")


@_app.post("/api/delegation/{delegation_id}/resume")
async def api_resume_delegation(delegation_id: str):
    record = await _get().resume_delegation(delegation_id)
    return record.model_dump(mode="json")


@_app.get("/api/delegation/{address}")
async def api_delegations(address: str):
    return [d.model_dump(mode="json") for d in await _get().delegations_for(address)]


# ------------------------------------------------------------------
# Audit
# ------------------------------------------------------------------


@_app.get("/api/actions")
async def api_actions(
    delegation: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    if status is not None and status not in {s.value for s in ExecutionStatus}:
        raise ValidationError(f"Unknown execution status '{status}'.")
    records = await _get().list_actions(delegation_id=delegation, status=status, limit=limit)
    return [r.to_dict() for r in records]


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


def run_server(
    host: str = "127.0.0.1",
    port: int = 3001,
    base_path: Path | None = None,
    start_monitor: bool = True,
) -> None:
    configure_app(base_path, start_monitor=start_monitor)
    uvicorn.run(_app, host=host, port=port, log_level="info")
