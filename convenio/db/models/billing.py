"""SQLAlchemy ORM models for coupons, payments and gateway notifications."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from convenio.db.base import Base
from convenio.db.enums import DEFAULT_PAYMENT_STATUS


class Coupon(Base):
    """
    Discount coupon. `code` is stored upper-case and matched case-insensitively.

    Single-use coupons (`unlimited_use = false`) allow one usage per user.
    """

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("discount_value >= 0", name="ck_coupon_discount_non_negative"),
        CheckConstraint(
            "discount_type IN ('fixed', 'percentage')", name="ck_coupon_discount_type"
        ),
        CheckConstraint(
            "coupon_type IN ('titular', 'dependente')", name="ck_coupon_coupon_type"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    coupon_type: Mapped[str] = mapped_column(String(20), nullable=False)
    unlimited_use: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("TRUE"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optional validity window (inclusive dates)
    valid_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )


class CouponUsage(Base):
    """
    One application of a coupon to a paid (or free) activation.

    `(coupon_id, payment_reference)` is the idempotency key for webhook replays.
    """

    __tablename__ = "coupon_usages"
    __table_args__ = (
        UniqueConstraint("coupon_id", "payment_reference", name="uq_coupon_usage_payment"),
        Index("idx_coupon_usages_coupon_user", "coupon_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coupon_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("coupons.id", ondelete="RESTRICT"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    dependent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("dependents.id", ondelete="SET NULL"), nullable=True
    )
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    discount_applied: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    used_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )

    coupon: Mapped["Coupon"] = relationship()


class Payment(Base):
    """
    Ledger of gateway payments.

    Written once a preference exists (or for free activations), then updated
    by the webhook with the gateway payment id and status.
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_reference", "external_reference"),
        Index("idx_payments_user", "user_id", "created_at"),
        UniqueConstraint("mp_payment_id", name="uq_payments_mp_payment_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    preference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mp_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_PAYMENT_STATUS.value,
        server_default=text(f"'{DEFAULT_PAYMENT_STATUS.value}'"),
        nullable=False,
    )
    coupon_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), onupdate=func.now(), nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class PaymentNotification(Base):
    """
    Durable record of every gateway webhook delivery.

    Every delivery gets a row, since the same key arrives again on each status
    change. ``payment_status`` is the gateway status seen when the row was
    processed. Failed processing is replayed by the worker from this row.
    """

    __tablename__ = "payment_notifications"
    __table_args__ = (
        Index("idx_payment_notifications_delivery", "delivery_key"),
        Index("idx_payment_notifications_payment", "gateway_payment_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delivery_key: Mapped[str] = mapped_column(String(255), nullable=False)
    topic: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_payment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )
    payment_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
