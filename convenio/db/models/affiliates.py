"""SQLAlchemy ORM models for affiliate attribution."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from convenio.db.base import Base


class AffiliateReferral(Base):
    """
    A referral click from a visitor, later bound to a registered user and
    marked converted when that user's subscription is paid.

    One row per (affiliate, visitor): the first click wins and is never
    overwritten. The binding has no expiry.
    """

    __tablename__ = "affiliate_referrals"
    __table_args__ = (
        UniqueConstraint(
            "affiliate_id", "visitor_identifier", name="uq_affiliate_referral_visitor"
        ),
        Index("idx_affiliate_referrals_visitor", "visitor_identifier", "created_at"),
        Index("idx_affiliate_referrals_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    affiliate_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    visitor_identifier: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    referral_code: Mapped[str] = mapped_column(String(64), nullable=False)
    converted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )
    converted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # user_agent, referrer_url, landing_page, ip_address
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), onupdate=func.now(), nullable=False
    )
