"""Approvals router - human review of AI-derived contacts and tasks."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from omnisync.core.deps import get_current_user, get_db
from omnisync.core.errors import ApprovalNotFoundError
from omnisync.db.enums import ArtifactType
from omnisync.db.models import Contact
from omnisync.schemas.approval import (
    ApprovalRead,
    ApproveRequest,
    ApproveResponse,
    ContactRead,
    RejectRequest,
    RejectResponse,
    TaskRead,
)
from omnisync.services import approval_service

router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get("", response_model=list[ApprovalRead])
def list_approvals(
    artifact_type: ArtifactType | None = None,
    batch_id: UUID | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Pending approvals, newest first."""
    return approval_service.list_pending(
        db,
        user.id,
        artifact_type=artifact_type,
        batch_id=batch_id,
        limit=min(limit, 200),
    )


@router.post("/{approval_id}/approve", response_model=ApproveResponse)
def approve(
    approval_id: UUID,
    body: ApproveRequest | None = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    try:
        entity = approval_service.approve(
            db, user.id, approval_id, edits=body.edits if body else None
        )
    except ApprovalNotFoundError:
        raise HTTPException(status_code=404, detail="Approval not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if isinstance(entity, Contact):
        return ApproveResponse(
            artifact_type=ArtifactType.CONTACT.value,
            contact=ContactRead.model_validate(entity),
        )
    return ApproveResponse(
        artifact_type=ArtifactType.TASK.value,
        task=TaskRead.model_validate(entity),
    )


@router.post("/{approval_id}/reject", response_model=RejectResponse)
def reject(
    approval_id: UUID,
    body: RejectRequest | None = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    body = body or RejectRequest()
    try:
        return approval_service.reject(
            db,
            user.id,
            approval_id,
            delete_associated=body.delete_associated,
            reason=body.reason,
        )
    except ApprovalNotFoundError:
        raise HTTPException(status_code=404, detail="Approval not found")
