"""Reports router - professional revenue and cancelled consultations."""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from convenio.core.deps import get_db, require_roles
from convenio.db.enums import Role
from convenio.schemas.auth import UserSession
from convenio.schemas.reports import (
    CancelledConsultationRow,
    ProfessionalRevenueResponse,
    RevenueOverviewResponse,
)
from convenio.services import report_service

router = APIRouter()


def _scoped_professional(session: UserSession, professional_id: int | None) -> int | None:
    """Professionals only see their own rows; admins choose (or see all)."""
    if session.role == Role.PROFESSIONAL:
        return session.user_id
    return professional_id


@router.get("/professional-revenue", response_model=ProfessionalRevenueResponse)
def professional_revenue(
    start_date: date = Query(...),
    end_date: date = Query(...),
    professional_id: int | None = Query(None),
    session: UserSession = Depends(require_roles([Role.PROFESSIONAL, Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Completed consultations in the period and the amount owed to the convênio."""
    target = _scoped_professional(session, professional_id)
    if target is None:
        raise HTTPException(
            status_code=400,
            detail={"message": "professional_id é obrigatório", "code": "PROFESSIONAL_REQUIRED"},
        )
    return report_service.professional_revenue(db, target, start_date, end_date)


@router.get("/revenue", response_model=RevenueOverviewResponse)
def revenue_overview(
    start_date: date = Query(...),
    end_date: date = Query(...),
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return report_service.revenue_overview(db, start_date, end_date)


@router.get("/cancelled-consultations", response_model=list[CancelledConsultationRow])
def cancelled_consultations(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    professional_id: int | None = Query(None),
    session: UserSession = Depends(require_roles([Role.PROFESSIONAL, Role.ADMIN])),
    db: Session = Depends(get_db),
):
    return report_service.cancelled_consultations(
        db,
        start=start_date,
        end=end_date,
        professional_id=_scoped_professional(session, professional_id),
    )
