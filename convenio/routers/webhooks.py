"""Webhooks router - payment gateway notifications."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from convenio.core.deps import get_db
from convenio.core.rate_limit import WEBHOOK_LIMIT, limiter
from convenio.services.payment_gateway import PaymentGateway, get_payment_gateway
from convenio.services.webhooks.mercadopago import handle_payment_webhook

router = APIRouter()


@router.post("/payment-success")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Receive Mercado Pago payment notifications.

    Once a delivery is stored the answer is 200, even if processing fails:
    the failure is recorded and replayed by the worker.
    """
    return await handle_payment_webhook(request, db, gateway=gateway)
