"""
Affiliate service - click tracking, visitor→user binding, conversion and reports.

Attribution is first-touch and never expires:
- one row per (affiliate, visitor); later clicks leave it untouched
- link_user binds only rows and users that are still unattributed
- mark_converted flips only unconverted rows bound to the user
All three use conditional writes so concurrent callers see no-ops.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convenio.core.errors import NotFoundError, ValidationError
from convenio.core.timeutils import utc_now
from convenio.db.enums import Role
from convenio.db.models import AffiliateReferral, User

logger = logging.getLogger(__name__)

MAX_VISITOR_ID_LENGTH = 64
METADATA_FIELDS = ("user_agent", "referrer_url", "landing_page", "ip_address")

# Derived per-row status
CLICK_ONLY = "click_only"
REGISTERED = "registered"
CONVERTED = "converted"


@dataclass(frozen=True)
class TrackResult:
    referral: AffiliateReferral
    created: bool


def _clean_visitor_identifier(visitor_identifier: str) -> str:
    value = (visitor_identifier or "").strip()
    if not value or len(value) > MAX_VISITOR_ID_LENGTH:
        raise ValidationError("Identificador de visitante inválido", code="INVALID_VISITOR_ID")
    return value


def _clean_metadata(metadata: dict | None) -> dict:
    metadata = metadata or {}
    return {
        key: str(metadata[key])[:1000]
        for key in METADATA_FIELDS
        if metadata.get(key) is not None
    }


def resolve_affiliate(db: Session, referral_code: str) -> User:
    """
    Resolve `?ref=<id>` to a user holding the vendedor role.

    Raises:
        NotFoundError: unknown id or user is not an affiliate
    """
    try:
        affiliate_id = int(str(referral_code).strip())
    except (TypeError, ValueError):
        raise NotFoundError("Afiliado não encontrado", code="AFFILIATE_NOT_FOUND")

    affiliate = db.query(User).filter(User.id == affiliate_id).first()
    if not affiliate or not affiliate.has_role(Role.VENDEDOR):
        raise NotFoundError("Afiliado não encontrado", code="AFFILIATE_NOT_FOUND")
    return affiliate


# =============================================================================
# Click tracking
# =============================================================================

def _find_referral(db: Session, affiliate_id: int, visitor_identifier: str) -> AffiliateReferral | None:
    return (
        db.query(AffiliateReferral)
        .filter(
            AffiliateReferral.affiliate_id == affiliate_id,
            AffiliateReferral.visitor_identifier == visitor_identifier,
        )
        .first()
    )


def track_click(
    db: Session,
    referral_code: str,
    visitor_identifier: str,
    metadata: dict | None = None,
) -> TrackResult:
    """
    Record a referral click (public).

    First touch wins: an existing (affiliate, visitor) row is returned untouched.
    """
    visitor_identifier = _clean_visitor_identifier(visitor_identifier)
    affiliate = resolve_affiliate(db, referral_code)

    existing = _find_referral(db, affiliate.id, visitor_identifier)
    if existing:
        return TrackResult(existing, False)

    referral = AffiliateReferral(
        affiliate_id=affiliate.id,
        visitor_identifier=visitor_identifier,
        referral_code=str(referral_code).strip(),
        converted=False,
        meta=_clean_metadata(metadata),
    )
    try:
        with db.begin_nested():
            db.add(referral)
    except IntegrityError:
        # Concurrent click from the same visitor
        existing = _find_referral(db, affiliate.id, visitor_identifier)
        if existing is None:
            raise
        return TrackResult(existing, False)

    db.commit()
    db.refresh(referral)
    logger.info("Referral click tracked: affiliate=%s referral=%s", affiliate.id, referral.id)
    return TrackResult(referral, True)


# =============================================================================
# Registration binding
# =============================================================================

def link_user(db: Session, user_id: int, visitor_identifier: str) -> AffiliateReferral | None:
    """
    Bind the visitor's most recent unbound referral to a newly registered user.

    Never overwrites an already attributed user or an already bound referral.
    Returns the bound referral, or None when nothing was linked.
    """
    visitor_identifier = _clean_visitor_identifier(visitor_identifier)

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("Usuário não encontrado", code="USER_NOT_FOUND")
    if user.referred_by_affiliate_id is not None:
        return None

    referral = (
        db.query(AffiliateReferral)
        .filter(
            AffiliateReferral.visitor_identifier == visitor_identifier,
            AffiliateReferral.user_id.is_(None),
            AffiliateReferral.affiliate_id != user_id,
        )
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .first()
    )
    if not referral:
        return None

    bound = (
        db.query(AffiliateReferral)
        .filter(AffiliateReferral.id == referral.id, AffiliateReferral.user_id.is_(None))
        .update({"user_id": user_id, "updated_at": utc_now()}, synchronize_session=False)
    )
    if bound != 1:
        db.rollback()
        return None

    attributed = (
        db.query(User)
        .filter(User.id == user_id, User.referred_by_affiliate_id.is_(None))
        .update(
            {
                "referred_by_affiliate_id": referral.affiliate_id,
                "affiliate_referral_id": referral.id,
            },
            synchronize_session=False,
        )
    )
    if attributed != 1:
        # Another referral won the race for this user
        db.rollback()
        return None

    db.commit()
    db.refresh(referral)
    logger.info("User %s linked to affiliate %s (referral %s)", user_id, referral.affiliate_id, referral.id)
    return referral


# =============================================================================
# Conversion
# =============================================================================

def mark_converted(db: Session, user_id: int) -> int:
    """
    Mark the user's referral as converted.

    Runs inside the caller's transaction (no commit). Idempotent; a user
    without a bound referral is a no-op. Returns rows updated.
    """
    updated = (
        db.query(AffiliateReferral)
        .filter(
            AffiliateReferral.user_id == user_id,
            AffiliateReferral.converted.is_(False),
        )
        .update(
            {"converted": True, "converted_at": utc_now(), "updated_at": utc_now()},
            synchronize_session=False,
        )
    )
    if updated:
        logger.info("Referral converted for user %s", user_id)
    return updated


# =============================================================================
# Reporting
# =============================================================================

def referral_status(referral: AffiliateReferral) -> str:
    if referral.converted:
        return CONVERTED
    if referral.user_id is not None:
        return REGISTERED
    return CLICK_ONLY


def compute_stats(referrals: list[AffiliateReferral]) -> dict:
    clicks = len(referrals)
    registrations = sum(1 for r in referrals if r.user_id is not None)
    conversions = sum(1 for r in referrals if r.converted)
    rate = Decimal("0.00")
    if clicks:
        rate = (Decimal(conversions) * 100 / Decimal(clicks)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    return {
        "total_clicks": clicks,
        "total_registrations": registrations,
        "total_conversions": conversions,
        "conversion_rate": rate,
    }


def list_referrals(db: Session, affiliate_id: int | None = None) -> list[AffiliateReferral]:
    """Referrals newest first; None lists every affiliate (admin)."""
    query = db.query(AffiliateReferral)
    if affiliate_id is not None:
        query = query.filter(AffiliateReferral.affiliate_id == affiliate_id)
    return query.order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc()).all()


def user_names(db: Session, user_ids: set[int]) -> dict[int, str]:
    if not user_ids:
        return {}
    rows = db.query(User.id, User.name).filter(User.id.in_(user_ids)).all()
    return {row.id: row.name for row in rows}


def stats_by_affiliate(referrals: list[AffiliateReferral]) -> dict[int, dict]:
    grouped: dict[int, list[AffiliateReferral]] = {}
    for referral in referrals:
        grouped.setdefault(referral.affiliate_id, []).append(referral)
    return {affiliate_id: compute_stats(rows) for affiliate_id, rows in grouped.items()}


def check_visitor(db: Session, visitor_identifier: str) -> AffiliateReferral | None:
    """Most recent referral for a visitor, if any."""
    visitor_identifier = _clean_visitor_identifier(visitor_identifier)
    return (
        db.query(AffiliateReferral)
        .filter(AffiliateReferral.visitor_identifier == visitor_identifier)
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .first()
    )
