"""Gateway webhook reconciliation.

This is the only path that moves a booking/payment pair from "intent
created" to a terminal outcome. Deliveries may arrive late, out of order,
more than once, or concurrently. Two layers keep them idempotent:

* the event id is claimed in Redis (``SET NX``) before any work, and the claim
  is released again if processing fails so the gateway's retry is processed;
* the payment ledger has a unique ``(provider_transaction_id, outcome)``
  constraint, so two racing deliveries for the same intent cannot both insert
  a Payment. The loser hits ``IntegrityError`` and is treated as already
  applied.

Each handler writes inside a single transaction. Notifications run after the
commit and never fail the delivery.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select as sa_select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.errors import ProcessingError, SignatureError, ValidationError
from alphasup.metrics import PAYMENT_FAILURE, PAYMENT_SUCCESS, WEBHOOK_EVENTS
from alphasup.models.enums import (
    BookingPaymentStatus,
    BookingStatus,
    PaymentOutcome,
    PaymentStatus,
)
from alphasup.models.models import Booking, Payment
from alphasup.services import pricing
from alphasup.services.audit import log_audit
from alphasup.services.lifecycle import can_transition_booking, transition_booking
from alphasup.services.notification_service import PaymentNotifier, Recipient
from alphasup.services.payment_gateway import (
    GatewayIntent,
    PaymentGateway,
    intent_from_payload,
    mark_event_processed,
    release_event,
)

logger = logging.getLogger(__name__)

# acknowledged and logged only; there is no subscription billing
VESTIGIAL_EVENTS = frozenset(
    {
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "customer.subscription.deleted",
        "payment_method.attached",
        "setup_intent.succeeded",
    }
)


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str
    duplicate: bool = False


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def extract_payment_method(data: Dict[str, Any]) -> Dict[str, Any]:
    pm = data.get("payment_method")
    if isinstance(pm, dict) and pm.get("type") == "card":
        card = pm.get("card") or {}
        info = {
            "brand": card.get("brand") or "unknown",
            "last4": card.get("last4") or "0000",
            "expMonth": card.get("exp_month") or 0,
            "expYear": card.get("exp_year") or 0,
        }
        if card.get("country"):
            info["country"] = card["country"]
        return {"type": "card", "card": info}
    types = data.get("payment_method_types") or ["card"]
    return {"type": types[0]}


class WebhookReconciler:
    def __init__(self, db: AsyncSession, gateway: PaymentGateway, notifier: Optional[PaymentNotifier] = None):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or PaymentNotifier()
        self.provider = gateway.provider_name

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, claim and process one delivery.

        Raises SignatureError (400, no mutation) or ProcessingError (500, the
        gateway retries). A redelivery of an already processed event returns
        a ``duplicate`` result; a handler that rejects the event outright
        (ValidationError) rolls back and returns ``rejected`` so it is not
        redelivered forever.
        """
        try:
            event = await self.gateway.verify_webhook_signature(payload, signature)
        except SignatureError as exc:
            logger.warning("Webhook signature validation failed: %s", exc.message)
            WEBHOOK_EVENTS.labels(event_type="unknown", outcome="invalid_signature").inc()
            raise

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValidationError("Webhook event is missing id or type")

        try:
            claimed = await mark_event_processed(self.provider, event_id)
        except Exception as exc:
            logger.exception("Could not claim webhook event", extra={"event_id": event_id, "event_type": event_type})
            raise ProcessingError(f"Webhook processing failed: {exc}", event_id=event_id) from exc
        if not claimed:
            logger.info("Duplicate webhook delivery", extra={"event_id": event_id, "event_type": event_type})
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="duplicate").inc()
            return WebhookResult(event_id=event_id, event_type=event_type, outcome="duplicate", duplicate=True)

        try:
            outcome = await self.process_event(event)
        except ValidationError as exc:
            # a redelivery would fail the same way: acknowledge and keep the claim
            logger.error(
                "Webhook event rejected: %s",
                exc.message,
                extra={"event_id": event_id, "event_type": event_type, "reconciliation_required": True},
            )
            await self._audit_webhook(event_id, event_type, success=False, outcome="rejected", error=exc.message)
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="rejected").inc()
            return WebhookResult(event_id=event_id, event_type=event_type, outcome="rejected")
        except Exception as exc:
            logger.exception("Webhook processing failed", extra={"event_id": event_id, "event_type": event_type})
            try:
                await release_event(self.provider, event_id)
            except Exception:
                logger.exception("Could not release webhook claim", extra={"event_id": event_id})
            await self._audit_webhook(event_id, event_type, success=False, error=str(exc))
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="failed").inc()
            raise ProcessingError(f"Webhook processing failed: {exc}", event_id=event_id) from exc

        await self._audit_webhook(event_id, event_type, success=True, outcome=outcome)
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()
        logger.info("Webhook processed", extra={"event_id": event_id, "event_type": event_type, "outcome": outcome})
        return WebhookResult(event_id=event_id, event_type=event_type, outcome=outcome)

    async def process_event(self, event: Dict[str, Any]) -> str:
        event_type = event["type"]
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "payment_intent.succeeded":
            return await self.handle_intent_succeeded(obj)
        if event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            return await self.handle_intent_failed(obj, error.get("message") or "Payment failed")
        if event_type == "payment_intent.canceled":
            return await self.handle_intent_failed(obj, "Payment canceled")
        if event_type == "charge.dispute.created":
            return await self.handle_dispute_created(obj)
        if event_type in VESTIGIAL_EVENTS:
            logger.info("Acknowledged %s %s", event_type, obj.get("id"))
            return "acknowledged"
        logger.info("Unhandled event type: %s", event_type)
        return "unhandled"

    # ----- payment_intent.succeeded -----

    async def handle_intent_succeeded(self, obj: Dict[str, Any]) -> str:
        intent = intent_from_payload(obj)
        booking_id = intent.metadata.get("bookingId")
        customer_id = intent.metadata.get("customerId")
        if not booking_id or not customer_id:
            logger.warning("Payment intent without booking metadata", extra={"payment_intent_id": intent.id})
            return "ignored"

        amount = pricing.from_gateway_amount(intent.amount)
        fees = Decimal(intent.metadata.get("fees") or "0")
        now = datetime.now(timezone.utc)

        try:
            async with self.db.begin():
                if await self._find_payment(intent.id, PaymentOutcome.SUCCEEDED) is not None:
                    return "duplicate"
                booking = await self.db.get(Booking, booking_id, with_for_update=True)
                if booking is None:
                    logger.warning("Successful payment for missing booking", extra={"booking_id": booking_id, "payment_intent_id": intent.id})
                    return "ignored"

                payment = Payment(
                    provider=self.provider,
                    provider_transaction_id=intent.id,
                    outcome=PaymentOutcome.SUCCEEDED.value,
                    booking_id=booking_id,
                    customer_id=customer_id,
                    amount=amount,
                    currency=intent.currency,
                    payment_method=extract_payment_method(obj),
                    status=PaymentStatus.SUCCEEDED.value,
                    intent_status=intent.status,
                    processing_fee=fees,
                    platform_fee=Decimal("0"),
                    authorized_at=_from_epoch(intent.created) or now,
                    captured_at=now,
                    refundable_amount=amount,
                    receipt_sent=False,
                )
                self.db.add(payment)
                await self.db.flush()

                self._confirm_booking(booking, payment, fees)
                await log_audit(
                    self.db,
                    actor_id=customer_id,
                    action="PAYMENT_SUCCEEDED",
                    object_type="payment",
                    object_id=payment.id,
                    detail={"bookingId": booking_id, "amount": str(amount), "paymentMethod": payment.payment_method.get("type")},
                )
        except IntegrityError:
            logger.info("Payment already recorded by a concurrent delivery", extra={"payment_intent_id": intent.id})
            return "duplicate"

        PAYMENT_SUCCESS.labels(provider=self.provider).inc()
        logger.info("Payment processed successfully", extra={"payment_id": payment.id, "booking_id": booking_id})
        await self._send_receipt(booking, payment)
        # SMS side channel, best-effort
        await self.notifier.send_payment_confirmation_sms(intent.metadata, amount, intent.currency)
        return "succeeded"

    def _confirm_booking(self, booking: Booking, payment: Payment, fees: Decimal) -> None:
        reopenable = booking.payment_status == BookingPaymentStatus.FAILED.value
        if (booking.status == BookingStatus.CANCELLED.value and not reopenable) or not can_transition_booking(
            booking.status, BookingStatus.CONFIRMED
        ):
            # cancelled for another reason (e.g. refunded) or already completed:
            # keep the money on the ledger, flag it
            logger.critical(
                "Payment captured for a %s booking; manual reconciliation required",
                booking.status,
                extra={"booking_id": booking.id, "payment_id": payment.id, "reconciliation_required": True},
            )
            return
        transition_booking(booking, BookingStatus.CONFIRMED, BookingPaymentStatus.SUCCEEDED)
        booking.payment_id = payment.id
        credited = max(Decimal("0"), payment.amount - fees)
        total = Decimal(booking.total_amount)
        booking.paid_amount = min(total, Decimal(booking.paid_amount or 0) + credited)
        booking.remaining_amount = total - booking.paid_amount

    async def _send_receipt(self, booking: Booking, payment: Payment) -> None:
        sent = await self.notifier.send_payment_receipt(Recipient.from_booking(booking), booking.id, payment)
        if not sent:
            return
        try:
            async with self.db.begin():
                payment.receipt_sent = True
                payment.receipt_sent_at = datetime.now(timezone.utc)
        except Exception:
            logger.exception("Could not flag receipt as sent", extra={"payment_id": payment.id})

    # ----- payment_intent.payment_failed / payment_intent.canceled -----

    async def handle_intent_failed(self, obj: Dict[str, Any], reason: str) -> str:
        intent = intent_from_payload(obj)
        booking_id = intent.metadata.get("bookingId")
        customer_id = intent.metadata.get("customerId")
        if not booking_id or not customer_id:
            logger.warning("Payment intent without booking metadata", extra={"payment_intent_id": intent.id})
            return "ignored"
        error = intent.last_payment_error or {}

        try:
            async with self.db.begin():
                if await self._find_payment(intent.id, PaymentOutcome.SUCCEEDED) is not None:
                    # out-of-order delivery; success is terminal
                    logger.info("Ignoring stale failure for a succeeded intent", extra={"payment_intent_id": intent.id})
                    return "stale"
                if await self._find_payment(intent.id, PaymentOutcome.FAILED) is not None:
                    return "duplicate"
                booking = await self.db.get(Booking, booking_id, with_for_update=True)
                if booking is None:
                    logger.warning("Failed payment for missing booking", extra={"booking_id": booking_id, "payment_intent_id": intent.id})
                    return "ignored"

                payment = Payment(
                    provider=self.provider,
                    provider_transaction_id=intent.id,
                    outcome=PaymentOutcome.FAILED.value,
                    booking_id=booking_id,
                    customer_id=customer_id,
                    amount=pricing.from_gateway_amount(intent.amount),
                    currency=intent.currency,
                    payment_method=extract_payment_method(obj),
                    status=PaymentStatus.FAILED.value,
                    intent_status=intent.status,
                    processing_fee=Decimal("0"),
                    platform_fee=Decimal("0"),
                    failed_at=datetime.now(timezone.utc),
                    failure_reason=reason,
                    failure_code=error.get("code"),
                    refundable_amount=Decimal("0"),
                    receipt_sent=False,
                )
                self.db.add(payment)
                await self.db.flush()

                # narrower than "a failed intent cancels the booking": only a booking still
                # waiting for its first payment is cancelled, a confirmed one keeps its deposit
                if booking.status == BookingStatus.PENDING_PAYMENT.value:
                    transition_booking(booking, BookingStatus.CANCELLED, BookingPaymentStatus.FAILED)
                    booking.payment_id = payment.id
                else:
                    # e.g. the balance payment of a deposit-confirmed booking failed
                    logger.info("Failed payment leaves %s booking unchanged", booking.status, extra={"booking_id": booking_id})
                await log_audit(
                    self.db,
                    actor_id=customer_id,
                    action="PAYMENT_FAILED",
                    object_type="payment",
                    object_id=payment.id,
                    detail={"bookingId": booking_id, "amount": str(payment.amount), "failureReason": reason},
                )
        except IntegrityError:
            logger.info("Failure already recorded by a concurrent delivery", extra={"payment_intent_id": intent.id})
            return "duplicate"

        PAYMENT_FAILURE.labels(provider=self.provider).inc()
        logger.info("Payment failed", extra={"payment_id": payment.id, "booking_id": booking_id, "reason": reason})
        await self.notifier.send_payment_failed(Recipient.from_booking(booking), booking_id, reason)
        return "failed"

    # ----- charge.dispute.created -----

    async def handle_dispute_created(self, obj: Dict[str, Any]) -> str:
        dispute_id = obj.get("id")
        intent_id = obj.get("payment_intent")
        if not intent_id:
            charge = await self.gateway.retrieve_charge(obj["charge"])
            intent_id = charge.payment_intent
        intent: GatewayIntent = await self.gateway.retrieve_payment_intent(intent_id)
        booking_id = intent.metadata.get("bookingId")

        async with self.db.begin():
            payment = await self._find_payment(intent.id, PaymentOutcome.SUCCEEDED)
            if payment is None and booking_id:
                res = await self.db.execute(
                    sa_select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.created_at.desc()).limit(1)
                )
                payment = res.scalars().first()
            if payment is None:
                logger.warning("Dispute for unknown payment", extra={"dispute_id": dispute_id, "payment_intent_id": intent.id})
                return "ignored"
            logger.warning(
                "Dispute created for payment",
                extra={"dispute_id": dispute_id, "payment_id": payment.id, "booking_id": payment.booking_id, "reason": obj.get("reason")},
            )
            await log_audit(
                self.db,
                actor_id="system",
                action="PAYMENT_DISPUTED",
                object_type="payment",
                object_id=payment.id,
                detail={"disputeId": dispute_id, "disputeReason": obj.get("reason"), "disputeAmount": obj.get("amount")},
            )
        return "disputed"

    # ----- helpers -----

    async def _find_payment(self, transaction_id: str, outcome: PaymentOutcome) -> Optional[Payment]:
        res = await self.db.execute(
            sa_select(Payment).where(
                Payment.provider_transaction_id == transaction_id,
                Payment.outcome == outcome.value,
            )
        )
        return res.scalars().first()

    async def _audit_webhook(self, event_id: str, event_type: str, success: bool, outcome: str = None, error: str = None) -> None:
        # own transaction: survives the rollback of a failed handler
        try:
            if self.db.in_transaction():
                await self.db.rollback()
            async with self.db.begin():
                await log_audit(
                    self.db,
                    actor_id="system",
                    action="WEBHOOK_PROCESSED" if success else "WEBHOOK_FAILED",
                    object_type="webhook",
                    object_id=event_id,
                    detail={"eventType": event_type, "eventId": event_id, "outcome": outcome},
                    success=success,
                    error_message=error,
                )
        except Exception:
            logger.exception("Could not write webhook audit record", extra={"event_id": event_id})
