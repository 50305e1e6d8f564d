"""Payment webhook replay job handlers."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


async def process_payment_webhook(db, job) -> None:
    """
    Replay a recorded gateway notification.

    Payload:
        - notification_id: PaymentNotification row to reprocess
    """
    from convenio.services.payment_gateway import get_payment_gateway
    from convenio.services.webhooks.mercadopago import process_recorded_notification

    notification_id = (job.payload or {}).get("notification_id")
    if not notification_id:
        logger.warning("Payment webhook job %s missing notification_id", job.id)
        return

    logger.info("Replaying payment notification %s (job %s)", notification_id, job.id)
    outcome = await process_recorded_notification(db, get_payment_gateway(), int(notification_id))
    logger.info(
        "Payment notification %s replayed: activated=%s",
        notification_id,
        outcome.get("activated", False),
    )
