"""Admin router - system settings and scheduling access grants."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from convenio.core.deps import get_db, require_roles
from convenio.core.timeutils import as_utc
from convenio.db.enums import Role
from convenio.schemas.admin import (
    RevokeResponse,
    SchedulingAccessGrant,
    SchedulingAccessRow,
    SettingRead,
    SettingUpdate,
)
from convenio.schemas.auth import UserSession
from convenio.services import scheduling_access_service, settings_service

router = APIRouter()


# =============================================================================
# System settings
# =============================================================================

@router.get("/system-settings", response_model=list[SettingRead])
def list_settings(
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return settings_service.list_settings(db)


@router.put("/system-settings/{key}", response_model=SettingRead)
def update_setting(
    key: str,
    data: SettingUpdate,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Update a setting. Readers see the new value once the cache entry is dropped."""
    row = settings_service.set_setting(db, key, data.value, updated_by=session.user_id)
    return SettingRead(
        key=row.key,
        value=row.value,
        description=row.description,
        is_default=False,
        updated_at=as_utc(row.updated_at) if row.updated_at else None,
    )


# =============================================================================
# Scheduling access
# =============================================================================

@router.get("/scheduling-access", response_model=list[SchedulingAccessRow])
def list_scheduling_access(
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return scheduling_access_service.list_professionals(db)


@router.post("/scheduling-access", response_model=SchedulingAccessRow, status_code=201)
def grant_scheduling_access(
    data: SchedulingAccessGrant,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Grant access until `expires_at`, replacing any active grant."""
    access = scheduling_access_service.grant(
        db, data.professional_id, data.expires_at, session.user_id, data.reason
    )
    professional = scheduling_access_service.get_professional(db, data.professional_id)
    return SchedulingAccessRow(
        professional_id=professional.id,
        name=professional.name,
        has_access=True,
        expires_at=as_utc(access.expires_at),
        granted_by=access.granted_by,
        reason=access.reason,
    )


@router.delete("/scheduling-access/{professional_id}", response_model=RevokeResponse)
def revoke_scheduling_access(
    professional_id: int,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return RevokeResponse(
        revoked=scheduling_access_service.revoke(db, professional_id, session.user_id)
    )
