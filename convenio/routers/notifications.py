"""Notifications router - in-app notifications for the caller."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from convenio.core.deps import get_current_session, get_db
from convenio.schemas.auth import UserSession
from convenio.schemas.notifications import MarkAllReadResponse, NotificationRead
from convenio.services import notification_service

router = APIRouter()


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return notification_service.list_notifications(
        db, session.user_id, unread_only=unread_only, limit=limit
    )


@router.patch("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: int,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return notification_service.mark_read(db, session.user_id, notification_id)


@router.post("/read-all", response_model=MarkAllReadResponse)
def mark_all_read(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return MarkAllReadResponse(updated=notification_service.mark_all_read(db, session.user_id))
