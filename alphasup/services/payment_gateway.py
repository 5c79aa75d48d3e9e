import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe
from fastapi.concurrency import run_in_threadpool

from alphasup.config import settings
from alphasup.errors import GatewayError, SignatureError
from alphasup.metrics import GATEWAY_LATENCY
from alphasup.models.enums import RefundReason
from alphasup.redis_client import redis_client

logger = logging.getLogger(__name__)


@dataclass
class GatewayIntent:
    id: str
    status: str
    client_secret: Optional[str]
    amount: int
    currency: str
    metadata: Dict[str, str] = field(default_factory=dict)
    created: Optional[int] = None
    payment_method: Optional[Any] = None
    last_payment_error: Optional[Dict[str, Any]] = None


@dataclass
class GatewayRefund:
    id: str
    status: str


@dataclass
class GatewayCharge:
    id: str
    payment_intent: Optional[str]


class PaymentGateway(ABC):
    """Payment gateway consumed by the lifecycle services. Amounts are integer minor units."""

    provider_name: str = "base"

    @abstractmethod
    async def create_customer(self, metadata: Dict[str, str], idempotency_key: str) -> str:
        raise NotImplementedError()

    @abstractmethod
    async def create_payment_intent(self, params: Dict[str, Any], idempotency_key: str) -> GatewayIntent:
        raise NotImplementedError()

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> GatewayIntent:
        raise NotImplementedError()

    @abstractmethod
    async def retrieve_charge(self, charge_id: str) -> GatewayCharge:
        raise NotImplementedError()

    @abstractmethod
    async def create_refund(self, params: Dict[str, Any], idempotency_key: str) -> GatewayRefund:
        raise NotImplementedError()

    @abstractmethod
    async def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Return the parsed event, or raise SignatureError."""
        raise NotImplementedError()


def _plain(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def intent_from_payload(obj: Any) -> GatewayIntent:
    data = _plain(obj)
    return GatewayIntent(
        id=data["id"],
        status=data.get("status") or "",
        client_secret=data.get("client_secret"),
        amount=int(data.get("amount") or 0),
        currency=data.get("currency") or settings.PAYMENT_CURRENCY,
        metadata={k: str(v) for k, v in _plain(data.get("metadata")).items()},
        created=data.get("created"),
        payment_method=data.get("payment_method"),
        last_payment_error=_plain(data.get("last_payment_error")) or None,
    )


class StripeGateway(PaymentGateway):
    provider_name = "stripe"

    def __init__(self, api_key: str, webhook_secret: str, api_version: Optional[str] = None, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.tolerance = tolerance

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"api_key": self.api_key}
        if self.api_version:
            opts["stripe_version"] = self.api_version
        if idempotency_key:
            opts["idempotency_key"] = idempotency_key
        return opts

    async def _call(self, operation: str, fn, **kwargs):
        # the SDK is blocking; keep it off the event loop
        with GATEWAY_LATENCY.labels(operation=operation).time():
            try:
                return await run_in_threadpool(fn, **kwargs)
            except stripe.StripeError as exc:
                message = getattr(exc, "user_message", None) or str(exc)
                logger.error("Stripe %s failed: %s", operation, message)
                raise GatewayError(message) from exc

    async def create_customer(self, metadata: Dict[str, str], idempotency_key: str) -> str:
        customer = await self._call(
            "create_customer", stripe.Customer.create, metadata=metadata, **self._request_options(idempotency_key)
        )
        return customer["id"]

    async def create_payment_intent(self, params: Dict[str, Any], idempotency_key: str) -> GatewayIntent:
        intent = await self._call(
            "create_payment_intent", stripe.PaymentIntent.create, **params, **self._request_options(idempotency_key)
        )
        return intent_from_payload(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self._call(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            id=intent_id,
            expand=["payment_method"],
            **self._request_options(),
        )
        return intent_from_payload(intent)

    async def retrieve_charge(self, charge_id: str) -> GatewayCharge:
        charge = await self._call("retrieve_charge", stripe.Charge.retrieve, id=charge_id, **self._request_options())
        return GatewayCharge(id=charge["id"], payment_intent=charge.get("payment_intent"))

    async def create_refund(self, params: Dict[str, Any], idempotency_key: str) -> GatewayRefund:
        refund = await self._call(
            "create_refund", stripe.Refund.create, **params, **self._request_options(idempotency_key)
        )
        return GatewayRefund(id=refund["id"], status=refund.get("status") or "pending")

    async def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            # misconfiguration: let the gateway retry once it is fixed
            raise GatewayError("Webhook secret not configured")
        if not signature:
            raise SignatureError("Missing Stripe-Signature header")
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(f"Webhook signature validation failed: {exc}") from exc
        try:
            return json.loads(body)
        except ValueError as exc:
            raise SignatureError(f"Invalid webhook payload: {exc}") from exc


_default_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """FastAPI dependency; tests override it with a fake gateway."""
    global _default_gateway
    if _default_gateway is None:
        if not settings.STRIPE_SECRET_KEY:
            logger.warning("Stripe secret key not set. Gateway calls will fail until it is configured.")
        _default_gateway = StripeGateway(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            api_version=settings.STRIPE_API_VERSION,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    return _default_gateway


# ----- helpers shared by the orchestrators -----

def idempotency_key(*parts: Any) -> str:
    """Deterministic key so a retried request maps onto the same gateway operation."""
    return "-".join(str(p) for p in parts)


_REFUND_REASON_MAP = {
    RefundReason.FRAUDULENT: "fraudulent",
    RefundReason.DUPLICATE_CHARGE: "duplicate",
}


def map_refund_reason(reason: RefundReason) -> str:
    return _REFUND_REASON_MAP.get(RefundReason(reason), "requested_by_customer")


def allowed_payment_methods() -> List[str]:
    return list(settings.ALLOWED_PAYMENT_METHODS)


# ----- webhook event claims -----

IDEMPOTENCY_KEY_TPL = "payment_webhook:{provider}:{event_id}"


async def mark_event_processed(provider: str, event_id: str, ttl: int = None) -> bool:
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    # set NX to ensure we only process once
    added = await redis_client.set(key, "1", ex=ttl or settings.WEBHOOK_EVENT_TTL_SECONDS, nx=True)
    return bool(added)


async def release_event(provider: str, event_id: str) -> None:
    """Drop a claim so a redelivery of a failed event is processed again."""
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    await redis_client.delete(key)
