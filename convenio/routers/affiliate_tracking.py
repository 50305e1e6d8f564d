"""Affiliate tracking router - referral clicks, registration binding and reports."""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from convenio.core.deps import get_db, require_roles
from convenio.core.rate_limit import TRACKING_LIMIT, limiter
from convenio.db.enums import Role
from convenio.db.models import AffiliateReferral
from convenio.schemas.affiliates import (
    AffiliateSummary,
    AllReferralsResponse,
    ConvertRequest,
    ConvertResponse,
    LinkRequest,
    LinkResponse,
    MyReferralsResponse,
    ReferralRead,
    ReferralStats,
    TrackRequest,
    TrackResponse,
    VisitorCheckResponse,
)
from convenio.schemas.auth import UserSession
from convenio.services import affiliate_service

router = APIRouter()


def _referral_rows(db: Session, referrals: list[AffiliateReferral]) -> list[ReferralRead]:
    names = affiliate_service.user_names(
        db,
        {r.user_id for r in referrals if r.user_id is not None}
        | {r.affiliate_id for r in referrals},
    )
    return [
        ReferralRead(
            id=r.id,
            affiliate_id=r.affiliate_id,
            affiliate_name=names.get(r.affiliate_id),
            visitor_identifier=r.visitor_identifier,
            user_id=r.user_id,
            user_name=names.get(r.user_id) if r.user_id is not None else None,
            status=affiliate_service.referral_status(r),
            converted=r.converted,
            converted_at=r.converted_at,
            created_at=r.created_at,
        )
        for r in referrals
    ]


# =============================================================================
# Public
# =============================================================================

@router.post("/track", response_model=TrackResponse)
@limiter.limit(TRACKING_LIMIT)
def track(request: Request, data: TrackRequest, db: Session = Depends(get_db)):
    """Record a `?ref=` click. Repeat clicks keep the first touch."""
    metadata = data.model_dump(include={"user_agent", "referrer_url", "landing_page"})
    if metadata.get("user_agent") is None:
        metadata["user_agent"] = request.headers.get("user-agent")
    metadata["ip_address"] = request.client.host if request.client else None

    result = affiliate_service.track_click(
        db, data.referral_code, data.visitor_identifier, metadata
    )
    return TrackResponse(referral_id=result.referral.id, created=result.created)


@router.post("/link-user", response_model=LinkResponse)
@limiter.limit(TRACKING_LIMIT)
def link_user(request: Request, data: LinkRequest, db: Session = Depends(get_db)):
    """Bind a visitor's referral to the user that just registered."""
    referral = affiliate_service.link_user(db, data.user_id, data.visitor_identifier)
    if referral is None:
        return LinkResponse(linked=False)
    return LinkResponse(linked=True, affiliate_id=referral.affiliate_id)


@router.get("/check/{visitor_identifier}", response_model=VisitorCheckResponse)
@limiter.limit(TRACKING_LIMIT)
def check_visitor(request: Request, visitor_identifier: str, db: Session = Depends(get_db)):
    referral = affiliate_service.check_visitor(db, visitor_identifier)
    if referral is None:
        return VisitorCheckResponse(exists=False)
    return VisitorCheckResponse(
        exists=True,
        affiliate_id=referral.affiliate_id,
        linked=referral.user_id is not None,
    )


# =============================================================================
# Authenticated
# =============================================================================

@router.post("/convert", response_model=ConvertResponse)
def convert(
    data: ConvertRequest,
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Manually mark a user's referral as converted."""
    converted = affiliate_service.mark_converted(db, data.user_id)
    db.commit()
    return ConvertResponse(converted=converted)


@router.get("/my-referrals", response_model=MyReferralsResponse)
def my_referrals(
    affiliate_id: int | None = Query(None),
    session: UserSession = Depends(require_roles([Role.VENDEDOR, Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Vendedores see their own referrals; admins may filter by affiliate."""
    if session.role == Role.VENDEDOR:
        affiliate_id = session.user_id
    referrals = affiliate_service.list_referrals(db, affiliate_id)
    return MyReferralsResponse(
        referrals=_referral_rows(db, referrals),
        stats=ReferralStats(**affiliate_service.compute_stats(referrals)),
    )


@router.get("/all", response_model=AllReferralsResponse)
def all_referrals(
    session: UserSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    referrals = affiliate_service.list_referrals(db)
    grouped = affiliate_service.stats_by_affiliate(referrals)
    names = affiliate_service.user_names(db, set(grouped))
    return AllReferralsResponse(
        referrals=_referral_rows(db, referrals),
        stats=ReferralStats(**affiliate_service.compute_stats(referrals)),
        by_affiliate=[
            AffiliateSummary(
                affiliate_id=affiliate_id,
                affiliate_name=names.get(affiliate_id),
                stats=ReferralStats(**stats),
            )
            for affiliate_id, stats in sorted(grouped.items())
        ],
    )
