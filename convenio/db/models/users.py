"""SQLAlchemy ORM models for accounts, sessions and dependents."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from convenio.db.base import Base
from convenio.db.enums import DEFAULT_SUBSCRIPTION_STATUS, Role


class User(Base):
    """
    A person with one or more roles (client, professional, vendedor, admin).

    `current_role` is not stored: the active role lives in the access token.
    `referred_by_affiliate_id` is a non-owning self reference to the vendedor
    credited with the registration.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_subscription_expiry", "subscription_status", "subscription_expiry"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cpf: Mapped[str] = mapped_column(String(11), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Contact
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    address_complement: Mapped[str | None] = mapped_column(String(255), nullable=True)
    neighborhood: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)

    roles: Mapped[list[str]] = mapped_column(
        JSON, default=lambda: [Role.CLIENT.value], nullable=False
    )

    # Subscription (titular)
    subscription_status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_SUBSCRIPTION_STATUS.value,
        server_default=text(f"'{DEFAULT_SUBSCRIPTION_STATUS.value}'"),
        nullable=False,
    )
    subscription_active: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )
    subscription_expiry: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Professional billing: share of each convênio consultation the professional keeps.
    # NULL means the system-wide default applies.
    professional_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    category_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Affiliate attribution (first touch wins)
    referred_by_affiliate_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    affiliate_referral_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("affiliate_referrals.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), onupdate=func.now(), nullable=False
    )

    # Relationships
    dependents: Mapped[list["Dependent"]] = relationship(back_populates="user")

    def has_role(self, role: Role | str) -> bool:
        value = role.value if isinstance(role, Role) else role
        return value in (self.roles or [])


class RefreshToken(Base):
    """
    Opaque refresh token, stored only as a salted hash.

    `selector` is the public half of the presented token and narrows the
    candidate rows; `token_hash` is the bcrypt hash of the secret half.
    Rotation flips `revoked` and inserts a new row in one transaction.
    """

    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("idx_refresh_tokens_user", "user_id", "revoked"),
        Index("idx_refresh_tokens_selector", "selector"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    selector: Mapped[str] = mapped_column(String(32), nullable=False)
    # Active role of the session this token belongs to
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    revoked: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )


class Dependent(Base):
    """A person covered under a titular's subscription, activated by separate payment."""

    __tablename__ = "dependents"
    __table_args__ = (
        Index("idx_dependents_user", "user_id"),
        Index("idx_dependents_subscription_expiry", "subscription_status", "subscription_expiry"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    cpf: Mapped[str] = mapped_column(String(11), unique=True, nullable=False)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    subscription_status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_SUBSCRIPTION_STATUS.value,
        server_default=text(f"'{DEFAULT_SUBSCRIPTION_STATUS.value}'"),
        nullable=False,
    )
    subscription_active: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("FALSE"), nullable=False
    )
    subscription_expiry: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="dependents")
