"""Payments router - checkout preferences for every payment intent."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from convenio.core.deps import get_current_session, get_db, require_roles
from convenio.db.enums import Role
from convenio.schemas.auth import UserSession
from convenio.schemas.payments import (
    AgendaCheckoutRequest,
    CheckoutResponse,
    DependentCheckoutRequest,
    PayoutCheckoutRequest,
    SubscriptionCheckoutRequest,
)
from convenio.services import subscription_service
from convenio.services.payment_gateway import PaymentGateway, get_payment_gateway

router = APIRouter()


@router.post("/create-subscription", response_model=CheckoutResponse, response_model_exclude_none=True)
async def create_subscription(
    data: SubscriptionCheckoutRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Start a titular subscription checkout.

    Returns one of:
    - {already_active: true}
    - {activated: true} when a coupon makes it free
    - {init_point, preference_id, external_reference, amount}
    """
    user_id = data.user_id if data.user_id is not None else session.user_id
    if user_id != session.user_id and session.role != Role.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"message": "Não autorizado", "code": "FORBIDDEN"},
        )
    return await subscription_service.create_subscription_preference(
        db, gateway, user_id, data.coupon_code
    )


@router.post(
    "/payment/create-dependent-payment",
    response_model=CheckoutResponse,
    response_model_exclude_none=True,
)
async def create_dependent_payment(
    data: DependentCheckoutRequest,
    session: UserSession = Depends(require_roles([Role.CLIENT])),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return await subscription_service.create_dependent_preference(
        db, gateway, session.user_id, data.dependent_id, data.coupon_code
    )


@router.post(
    "/professional/create-agenda-payment",
    response_model=CheckoutResponse,
    response_model_exclude_none=True,
)
async def create_agenda_payment(
    data: AgendaCheckoutRequest | None = None,
    session: UserSession = Depends(require_roles([Role.PROFESSIONAL])),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Buy scheduling access. Defaults to one access period."""
    duration_days = data.duration_days if data else None
    return await subscription_service.create_agenda_preference(
        db, gateway, session.user_id, duration_days
    )


@router.post(
    "/professional/create-payout-payment",
    response_model=CheckoutResponse,
    response_model_exclude_none=True,
)
async def create_payout_payment(
    data: PayoutCheckoutRequest,
    session: UserSession = Depends(require_roles([Role.PROFESSIONAL])),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Pay the convênio its share of consultations."""
    return await subscription_service.create_professional_payout_preference(
        db, gateway, session.user_id, data.amount
    )
