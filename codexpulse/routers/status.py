"""API router for the companion status."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from codexpulse import config
from codexpulse.models import StatusFile
from codexpulse.parsers.status_writer import read_status

status_router = APIRouter(prefix="/api", tags=["status"])


@status_router.get("/status", response_model=StatusFile, response_model_exclude_none=True)
async def get_status(request: Request):
    """Return the last published status."""
    publisher = getattr(request.app.state, "publisher", None)
    status_file = publisher.status_file if publisher is not None else config.STATUS_FILE
    status = await read_status(status_file)
    if status is None:
        raise HTTPException(status_code=404, detail="No status has been published yet")
    return status


@status_router.get("/health")
def health(request: Request):
    """Health check endpoint."""
    watcher = getattr(request.app.state, "watcher", None)
    session = watcher.current_session if watcher is not None else None
    return {
        "status": "ok",
        "watcher": watcher.state if watcher is not None else "stopped",
        "session": str(session) if session is not None else None,
    }
