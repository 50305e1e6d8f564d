"""Auth-related enums."""

from enum import Enum


class Role(str, Enum):
    """
    User roles. A user may hold several; one is active per session.

    - CLIENT: Titular subscriber of the convênio
    - PROFESSIONAL: Registers consultations, owes the convênio share
    - VENDEDOR: Affiliate earning attribution on referrals
    - ADMIN: Catalog, coupons, settings and reports
    """

    CLIENT = "client"
    PROFESSIONAL = "professional"
    VENDEDOR = "vendedor"
    ADMIN = "admin"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


# Role picked when nothing else tells us which one the session is using
ROLE_PRIORITY: tuple[Role, ...] = (Role.CLIENT, Role.PROFESSIONAL, Role.VENDEDOR, Role.ADMIN)


class SubscriptionStatus(str, Enum):
    """
    Convênio subscription lifecycle (titular and dependents).

    Flow: pending → active → expired → active (renewal)
    """

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
