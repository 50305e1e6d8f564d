"""
Payment gateway adapter (Mercado Pago).

- create_preference: hosted checkout session carrying our external_reference
- get_payment: authoritative payment status, fetched before trusting a webhook
- parse_notification / verify_signature: inbound webhook helpers

Every outbound call has a bounded timeout. Failures raise
PaymentGatewayError before any local state is written, so callers can retry.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol
from uuid import uuid4

import httpx

from convenio.core.config import settings
from convenio.core.errors import PaymentGatewayError
from convenio.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

PAYMENT_TOPIC = "payment"


# =============================================================================
# Data
# =============================================================================

@dataclass(frozen=True)
class PreferencePayer:
    name: str
    email: str | None = None
    cpf: str | None = None


@dataclass(frozen=True)
class PreferenceRequest:
    title: str
    amount: Decimal
    external_reference: str
    payer: PreferencePayer
    item_id: str = "convenio"
    back_path: str = "/pagamento"


@dataclass(frozen=True)
class PreferenceResult:
    preference_id: str
    init_point: str


@dataclass(frozen=True)
class GatewayPayment:
    payment_id: str
    status: str
    external_reference: str | None
    transaction_amount: Decimal | None = None
    raw: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class GatewayNotification:
    topic: str
    payment_id: str
    action: str | None = None

    @property
    def delivery_key(self) -> str:
        return f"{self.topic}:{self.payment_id}:{self.action or ''}"


class PaymentGateway(Protocol):
    async def create_preference(self, request: PreferenceRequest) -> PreferenceResult:
        """Create a hosted checkout preference."""

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch authoritative payment details."""


# =============================================================================
# Mercado Pago
# =============================================================================

class MercadoPagoGateway:
    """Mercado Pago REST client (Checkout Pro preferences + Payments API)."""

    def __init__(
        self,
        access_token: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        sandbox: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token if access_token is not None else settings.MERCADOPAGO_ACCESS_TOKEN
        self.api_base = (api_base or settings.MERCADOPAGO_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.MERCADOPAGO_TIMEOUT_SECONDS
        self.sandbox = settings.MERCADOPAGO_SANDBOX if sandbox is None else sandbox
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def build_preference_body(self, request: PreferenceRequest) -> dict:
        frontend = settings.FRONTEND_URL.rstrip("/")
        payer: dict = {"name": request.payer.name}
        if request.payer.email:
            payer["email"] = request.payer.email
        if request.payer.cpf:
            payer["identification"] = {"type": "CPF", "number": request.payer.cpf}

        return {
            "items": [
                {
                    "id": request.item_id,
                    "title": request.title,
                    "quantity": 1,
                    "unit_price": float(request.amount),
                    "currency_id": "BRL",
                }
            ],
            "payer": payer,
            "back_urls": {
                "success": f"{frontend}{request.back_path}/sucesso",
                "failure": f"{frontend}{request.back_path}/falha",
                "pending": f"{frontend}{request.back_path}/pendente",
            },
            "auto_return": "approved",
            "notification_url": f"{settings.API_URL.rstrip('/')}/api/webhooks/payment-success",
            "external_reference": request.external_reference,
            "statement_descriptor": settings.STATEMENT_DESCRIPTOR,
        }

    async def create_preference(self, request: PreferenceRequest) -> PreferenceResult:
        if not self.access_token:
            raise PaymentGatewayError(
                "Gateway de pagamento não configurado", code="PAYMENT_GATEWAY_NOT_CONFIGURED"
            )

        body = self.build_preference_body(request)
        url = f"{self.api_base}/checkout/preferences"
        # Same key on both attempts so a retried POST cannot create a second preference
        headers = {**self._headers(), "X-Idempotency-Key": f"{request.external_reference}:{uuid4().hex}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:

                async def request_fn() -> httpx.Response:
                    return await client.post(url, headers=headers, json=body)

                response = await request_with_retries(request_fn, max_attempts=2)
        except httpx.TimeoutException:
            logger.warning("Mercado Pago preference timeout (%s)", request.external_reference)
            raise PaymentGatewayError("Tempo esgotado ao contatar o gateway de pagamento")
        except httpx.HTTPError as e:
            logger.warning("Mercado Pago preference error: %s", type(e).__name__)
            raise PaymentGatewayError("Falha ao contatar o gateway de pagamento")

        if not 200 <= response.status_code < 300:
            logger.error(
                "Mercado Pago preference rejected: status=%s reference=%s",
                response.status_code,
                request.external_reference,
            )
            raise PaymentGatewayError("Gateway de pagamento recusou a solicitação")

        data = response.json()
        checkout_field = "sandbox_init_point" if self.sandbox else "init_point"
        init_point = data.get(checkout_field) or data.get("init_point")
        if not data.get("id") or not init_point:
            raise PaymentGatewayError("Resposta inválida do gateway de pagamento")

        logger.info(
            "Mercado Pago preference %s created (%s)", data["id"], request.external_reference
        )
        return PreferenceResult(preference_id=str(data["id"]), init_point=init_point)

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        url = f"{self.api_base}/v1/payments/{payment_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:

                async def request_fn() -> httpx.Response:
                    return await client.get(url, headers=self._headers())

                response = await request_with_retries(request_fn)
        except httpx.HTTPError as e:
            logger.warning("Mercado Pago payment fetch error: %s", type(e).__name__)
            raise PaymentGatewayError("Falha ao consultar pagamento no gateway")

        if not 200 <= response.status_code < 300:
            logger.error(
                "Mercado Pago payment %s fetch failed: status=%s", payment_id, response.status_code
            )
            raise PaymentGatewayError("Falha ao consultar pagamento no gateway")

        data = response.json()
        amount = data.get("transaction_amount")
        return GatewayPayment(
            payment_id=str(data.get("id", payment_id)),
            status=str(data.get("status", "")),
            external_reference=data.get("external_reference"),
            transaction_amount=Decimal(str(amount)) if amount is not None else None,
            raw=data,
        )


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway (overridden in tests)."""
    return MercadoPagoGateway()


# =============================================================================
# Inbound notifications
# =============================================================================

def parse_notification(payload: dict | None, query: dict | None = None) -> GatewayNotification | None:
    """
    Extract (topic, payment id, action) from a webhook.

    Supports the JSON body form (`type` + `data.id`) and the legacy IPN
    query form (`topic` + `id`). Returns None when no payment id is present.
    """
    payload = payload or {}
    query = query or {}

    topic = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    payment_id = data.get("id") or query.get("data.id") or query.get("id") or payload.get("id")

    # Legacy resource URL form: ".../v1/payments/123"
    resource = payload.get("resource")
    if not payment_id and isinstance(resource, str) and resource.rstrip("/").split("/")[-1].isdigit():
        payment_id = resource.rstrip("/").split("/")[-1]
        topic = topic or PAYMENT_TOPIC

    if not topic or not payment_id:
        return None
    return GatewayNotification(
        topic=str(topic),
        payment_id=str(payment_id),
        action=payload.get("action"),
    )


def verify_signature(
    signature_header: str,
    request_id: str,
    data_id: str,
    secret: str,
) -> bool:
    """
    Verify the Mercado Pago `x-signature` header.

    Header format: `ts=<ts>,v1=<hex>`; the signed manifest is
    `id:<data.id>;request-id:<x-request-id>;ts:<ts>;`.
    """
    parts = {}
    for chunk in (signature_header or "").split(","):
        key, _, value = chunk.strip().partition("=")
        if key and value:
            parts[key] = value
    ts = parts.get("ts")
    v1 = parts.get("v1")
    if not ts or not v1:
        return False

    manifest = f"id:{str(data_id).lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"
    expected = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, v1)
