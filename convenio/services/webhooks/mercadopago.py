"""Mercado Pago payment webhook handler."""

from __future__ import annotations

import json
import logging

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from convenio.core.config import settings
from convenio.core.timeutils import utc_now
from convenio.db.enums import JobType, PaymentStatus
from convenio.db.models import PaymentNotification
from convenio.services import job_service, subscription_service
from convenio.services.payment_gateway import (
    PAYMENT_TOPIC,
    PaymentGateway,
    get_payment_gateway,
    parse_notification,
    verify_signature,
)

logger = logging.getLogger(__name__)


async def _read_body_safe(request: Request) -> bytes:
    max_bytes = settings.MERCADOPAGO_WEBHOOK_MAX_PAYLOAD_BYTES
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > max_bytes:
                raise HTTPException(413, "Payload too large")
        except ValueError:
            pass

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        if not chunk:
            continue
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(413, "Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)


async def process_recorded_notification(
    db: Session,
    gateway: PaymentGateway,
    notification_id: int,
) -> dict:
    """
    Run a stored notification through the payment pipeline.

    Shared by the webhook (inline) and the replay job.
    """
    record = db.query(PaymentNotification).filter(PaymentNotification.id == notification_id).first()
    if not record:
        raise LookupError(f"Payment notification {notification_id} not found")
    if record.processed_at is not None:
        return {"payment_id": record.gateway_payment_id, "already_processed": True}

    payment_id = record.gateway_payment_id
    outcome = await subscription_service.handle_payment_notification(db, gateway, payment_id)

    db.query(PaymentNotification).filter(PaymentNotification.id == notification_id).update(
        {"processed_at": utc_now(), "payment_status": outcome.get("status"), "last_error": None},
        synchronize_session=False,
    )
    db.commit()
    return outcome


def already_settled(db: Session, delivery_key: str) -> bool:
    """True once a delivery with this key was processed as an approved payment."""
    return db.query(
        db.query(PaymentNotification)
        .filter(
            PaymentNotification.delivery_key == delivery_key,
            PaymentNotification.processed_at.is_not(None),
            PaymentNotification.payment_status == PaymentStatus.APPROVED.value,
        )
        .exists()
    ).scalar()


def record_failure(db: Session, notification_id: int, error: Exception) -> None:
    """Store the error and queue a replay job (once per notification)."""
    db.rollback()
    db.query(PaymentNotification).filter(PaymentNotification.id == notification_id).update(
        {"last_error": f"{type(error).__name__}: {error}"[:2000]}, synchronize_session=False
    )
    db.commit()
    job_service.schedule_job_once(
        db,
        JobType.PAYMENT_WEBHOOK,
        {"notification_id": notification_id},
        idempotency_key=f"payment_webhook:{notification_id}",
    )


async def handle_payment_webhook(request: Request, db: Session, gateway: PaymentGateway | None = None) -> dict:
    """
    Receive Mercado Pago payment notifications.

    Security:
    - Validates x-signature when MERCADOPAGO_WEBHOOK_SECRET is set
    - Limits payload size
    - Skips deliveries whose key already settled an approved payment; any
      earlier status is fetched again from the gateway

    Processing errors are recorded and replayed by the worker; the
    gateway always gets a 200 once the delivery is stored.
    """
    body = await _read_body_safe(request)

    payload: dict = {}
    if body.strip():
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(400, detail={"message": "Invalid JSON", "code": "INVALID_JSON"})
        if not isinstance(payload, dict):
            raise HTTPException(400, detail={"message": "Invalid payload", "code": "INVALID_JSON"})

    notification = parse_notification(payload, dict(request.query_params))
    if notification is None or notification.topic != PAYMENT_TOPIC:
        logger.info("Ignoring non-payment webhook (topic=%s)", notification.topic if notification else None)
        return {"received": True, "ignored": True}

    secret = settings.MERCADOPAGO_WEBHOOK_SECRET
    if secret and not verify_signature(
        request.headers.get("x-signature", ""),
        request.headers.get("x-request-id", ""),
        notification.payment_id,
        secret,
    ):
        logger.warning("Mercado Pago webhook invalid signature (payment=%s)", notification.payment_id)
        raise HTTPException(403, detail={"message": "Invalid signature", "code": "INVALID_SIGNATURE"})

    if already_settled(db, notification.delivery_key):
        logger.info("Duplicate Mercado Pago delivery %s", notification.delivery_key)
        return {"received": True, "duplicate": True}

    record = PaymentNotification(
        delivery_key=notification.delivery_key,
        topic=notification.topic,
        gateway_payment_id=notification.payment_id,
        payload=payload or dict(request.query_params),
    )
    db.add(record)
    db.commit()
    notification_id = record.id

    try:
        outcome = await process_recorded_notification(
            db, gateway or get_payment_gateway(), notification_id
        )
    except Exception as e:
        logger.exception(
            "Payment notification %s failed, queued for replay (payment=%s)",
            notification_id,
            notification.payment_id,
        )
        record_failure(db, notification_id, e)
        return {"received": True, "queued": True}

    return {"received": True, **outcome}
