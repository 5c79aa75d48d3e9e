"""Payment intent orchestration: quote -> gateway intent -> local record.

Everything runs inside one transaction. The gateway calls happen before the
commit, so a gateway failure rolls back the customer mapping and the intent
record together and the caller sees a single ``IntentCreationError``. No
retry happens here; clients retry, and the deterministic idempotency key
keeps a retry from creating a second intent. The key carries the attempt
number (settled payments on the booking + 1), so the next payment on the same
booking never collides with an earlier one.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.config import settings
from alphasup.errors import AuthorizationError, GatewayError, IntentCreationError, NotFoundError, ValidationError
from alphasup.metrics import PAYMENT_INTENTS_CREATED
from alphasup.models.enums import BookingStatus
from alphasup.models.models import Booking, Customer, Payment, PaymentIntentRecord
from alphasup.services import pricing
from alphasup.services.audit import log_audit
from alphasup.services.auth import Principal
from alphasup.services.lifecycle import PAYABLE_BOOKING_STATUSES
from alphasup.services.payment_gateway import GatewayIntent, PaymentGateway, allowed_payment_methods, idempotency_key

logger = logging.getLogger(__name__)


@dataclass
class CreatedIntent:
    intent: GatewayIntent
    client_secret: str
    record: PaymentIntentRecord


def is_expired(record: PaymentIntentRecord, now: Optional[datetime] = None) -> bool:
    """Expiry is advisory: an expired intent is never reaped, only distrusted."""
    now = now or datetime.now(timezone.utc)
    expires_at = record.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return now >= expires_at


class PaymentIntentOrchestrator:
    def __init__(self, db: AsyncSession, gateway: PaymentGateway, pricing_config: Optional[pricing.PricingConfig] = None):
        self.db = db
        self.gateway = gateway
        self.pricing_config = pricing_config or pricing.PricingConfig.from_settings()

    async def create_payment_intent(
        self,
        booking_id: str,
        principal: Principal,
        amount: Decimal,
        deposit_only: bool = False,
        deposit_percentage: Optional[Decimal] = None,
        currency: Optional[str] = None,
        save_payment_method: bool = False,
    ) -> CreatedIntent:
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")
        if amount < settings.MINIMUM_PAYMENT_AMOUNT:
            raise ValidationError(f"Amount must be at least {settings.MINIMUM_PAYMENT_AMOUNT}")
        if not pricing.is_minor_unit_amount(amount):
            raise ValidationError("Amount cannot have more than 2 decimal places")

        async with self.db.begin():
            booking = await self.db.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError("Booking")
            if not principal.can_access(booking.customer_id):
                raise AuthorizationError("Access denied")
            if BookingStatus(booking.status) not in PAYABLE_BOOKING_STATUSES:
                raise ValidationError(f"Booking is {booking.status} and cannot take a payment")

            # admins pay on behalf of the booking's customer
            customer_id = booking.customer_id or principal.uid

            final_amount = (
                pricing.calculate_deposit_amount(amount, deposit_percentage, self.pricing_config) if deposit_only else amount
            )
            quote = pricing.calculate_total_with_fees(final_amount, self.pricing_config)
            gateway_amount = pricing.to_gateway_amount(quote.total)
            currency = (currency or booking.currency or settings.PAYMENT_CURRENCY).lower()
            # retries before the webhook lands share a key; the next leg does not
            attempt = await self._settled_payment_count(booking_id) + 1

            try:
                gateway_customer = await self._resolve_gateway_customer(customer_id, booking)
                params = {
                    "amount": gateway_amount,
                    "currency": currency,
                    "customer": gateway_customer,
                    "payment_method_types": allowed_payment_methods(),
                    "capture_method": "automatic",
                    "confirmation_method": "automatic",
                    "metadata": {
                        "bookingId": booking_id,
                        "customerId": customer_id,
                        "originalAmount": str(amount),
                        "depositOnly": "true" if deposit_only else "false",
                        "fees": str(quote.fees),
                        "customerName": booking.customer_name or "",
                        "customerPhone": booking.customer_phone or "",
                    },
                }
                if save_payment_method:
                    params["setup_future_usage"] = "off_session"
                intent = await self.gateway.create_payment_intent(
                    params, idempotency_key(booking_id, "create-intent", attempt, gateway_amount)
                )
            except GatewayError as exc:
                logger.error("Payment intent creation failed", extra={"booking_id": booking_id, "error": exc.message})
                raise IntentCreationError(exc.message) from exc
            if not intent.client_secret:
                raise IntentCreationError("gateway returned no client secret")

            expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.PAYMENT_INTENT_TIMEOUT_MINUTES)
            # an idempotent replay hands back the same intent id
            record = await self.db.get(PaymentIntentRecord, intent.id)
            if record is None:
                record = PaymentIntentRecord(id=intent.id)
                self.db.add(record)
            record.booking_id = booking_id
            record.customer_id = customer_id
            record.amount = quote.total
            record.fees = quote.fees
            record.currency = intent.currency
            record.status = intent.status
            record.client_secret = intent.client_secret
            record.payment_methods = allowed_payment_methods()
            record.capture_method = "automatic"
            record.meta = dict(intent.metadata)
            record.expires_at = expires_at

            booking.payment_intent_id = intent.id

            await log_audit(
                self.db,
                actor_id=principal.uid,
                action="PAYMENT_INTENT_CREATED",
                object_type="payment_intent",
                object_id=intent.id,
                detail={"bookingId": booking_id, "amount": str(quote.total), "depositOnly": deposit_only},
            )

        PAYMENT_INTENTS_CREATED.labels(deposit_only=str(deposit_only).lower()).inc()
        logger.info("Payment intent created", extra={"booking_id": booking_id, "payment_intent_id": intent.id})
        return CreatedIntent(intent=intent, client_secret=intent.client_secret, record=record)

    async def _settled_payment_count(self, booking_id: str) -> int:
        stmt = select(func.count()).select_from(Payment).where(Payment.booking_id == booking_id)
        return await self.db.scalar(stmt) or 0

    async def _resolve_gateway_customer(self, customer_id: str, booking: Booking) -> str:
        customer = await self.db.get(Customer, customer_id)
        if customer is not None and customer.stripe_customer_id:
            return customer.stripe_customer_id

        gateway_customer = await self.gateway.create_customer(
            {"alphasupCustomerId": customer_id}, idempotency_key(customer_id, "create-customer")
        )
        if customer is None:
            customer = Customer(
                id=customer_id,
                name=booking.customer_name,
                email=booking.customer_email,
                phone=booking.customer_phone,
            )
            self.db.add(customer)
        customer.stripe_customer_id = gateway_customer
        return gateway_customer

    async def refresh_payment_intent(self, intent_id: str, principal: Principal) -> PaymentIntentRecord:
        """On-demand retrieval: the only way besides webhooks to learn an intent's status."""
        async with self.db.begin():
            record = await self.db.get(PaymentIntentRecord, intent_id)
            if record is None:
                raise NotFoundError("Payment intent")
            if not principal.can_access(record.customer_id):
                raise AuthorizationError("Access denied")
            intent = await self.gateway.retrieve_payment_intent(intent_id)
            record.status = intent.status
        return record
