"""Sync router - trigger pipeline runs and read session progress."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from omnisync.core.deps import get_current_user, get_db
from omnisync.core.errors import NotConnectedError
from omnisync.core.rate_limit import SYNC_TRIGGER_LIMIT, limiter
from omnisync.db.enums import SyncService
from omnisync.schemas.sync import SyncRequest, SyncSessionRead, SyncTriggerResponse
from omnisync.services import sync_service, sync_session_service

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("", response_model=SyncTriggerResponse)
@limiter.limit(SYNC_TRIGGER_LIMIT)
async def start_sync(
    request: Request,
    body: SyncRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """
    Start a sync for one service.

    Returns the session to observe. If a sync of the same service is still
    running, its session is returned instead of starting a new one.
    """
    try:
        return await sync_service.trigger_sync(
            db,
            user.id,
            body.service,
            preferences=body.preferences,
            incremental=body.incremental,
            overlap_hours=body.overlap_hours,
        )
    except NotConnectedError as e:
        raise HTTPException(status_code=409, detail={"code": e.code, "message": str(e)})


@router.get("/sessions", response_model=list[SyncSessionRead])
def list_sessions(
    service: SyncService | None = None,
    limit: int = 20,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Recent sync sessions, newest first."""
    sessions = sync_session_service.list_sessions(db, user.id, service=service, limit=min(limit, 100))
    return [sync_session_service.to_payload(s) for s in sessions]


@router.get("/sessions/{session_id}", response_model=SyncSessionRead)
def get_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    session = sync_session_service.get_session(db, session_id, user_id=user.id)
    if not session:
        raise HTTPException(status_code=404, detail="Sync session not found")
    return sync_session_service.to_payload(session)


@router.post("/sessions/{session_id}/cancel", response_model=SyncSessionRead)
async def cancel_session(
    session_id: UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Cancel a running sync. Cancelling a finished sync returns it unchanged."""
    session = sync_session_service.request_cancel(db, session_id, user.id)
    if not session:
        raise HTTPException(status_code=404, detail="Sync session not found")
    await sync_service.publish_session(session)
    return sync_session_service.to_payload(session)
