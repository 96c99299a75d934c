"""Sync status + manual refresh API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request

from boardmetrics.db.poller import sync_poller
from boardmetrics.models import SyncRequest

logger = logging.getLogger("boardmetrics.api")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


async def _run_pass_in_background(sync_engine, trigger: str, operation_id: str) -> None:
    try:
        await sync_engine.run_pass(trigger=trigger, operation_id=operation_id)
    except Exception as e:
        logger.error(f"Background sync pass {operation_id} failed: {e}")


@sync_router.get("/status")
async def get_sync_status(request: Request):
    """Return sync engine + poller status, including live operations."""
    sync_engine = _get_sync_engine(request)
    observability = await sync_engine.get_observability_snapshot()
    watermark = await sync_engine.watermark_repo.get_raw()
    return {
        "status": "active",
        "sync_engine": "running" if sync_engine.is_running else "idle",
        "poller": "running" if sync_poller.is_running else "stopped",
        "sourceConfigured": bool(sync_engine.source.is_configured),
        "sinceUtc": watermark or "",
        "lastPass": sync_engine.last_pass,
        "operations": observability,
    }


@sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent sync passes."""
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@sync_router.get("/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    """Get one sync pass by ID."""
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@sync_router.post("")
async def trigger_sync(request: Request, background_tasks: BackgroundTasks, body: SyncRequest):
    """Run a pass now, outside the poller schedule."""
    sync_engine = _get_sync_engine(request)

    if body.background:
        operation_id = await sync_engine.start_operation("sync_pass", trigger=body.trigger)
        background_tasks.add_task(_run_pass_in_background, sync_engine, body.trigger, operation_id)
        return {
            "status": "ok",
            "mode": "background",
            "message": "Sync triggered in background",
            "operationId": operation_id,
        }

    try:
        stats = await sync_engine.run_pass(trigger=body.trigger)
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Sync pass failed: {e}") from e
    operation_id = str(stats.get("operation_id") or "")
    operation = await sync_engine.get_operation(operation_id) if operation_id else None
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": operation_id,
        "stats": stats,
        "operation": operation,
    }
