"""Admin-initiated refunds against a succeeded payment.

The payment row is locked for the whole operation so two concurrent refund
requests cannot both pass the ``amount <= refundable_amount`` check.
The gateway refund is requested before any local write. If the gateway
rejects it nothing changes locally. If the local write fails after the
gateway accepted, the money has moved and the mismatch is logged at
CRITICAL for manual reconciliation.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.errors import GatewayError, NotFoundError, RefundCreationError, ValidationError
from alphasup.metrics import REFUNDS_CREATED
from alphasup.models.enums import BookingPaymentStatus, BookingStatus, PaymentStatus, RefundReason, RefundStatus
from alphasup.models.models import Booking, Payment, Refund
from alphasup.services import pricing
from alphasup.services.audit import log_audit
from alphasup.services.lifecycle import REFUNDABLE_STATUSES, transition_booking, transition_payment
from alphasup.services.notification_service import PaymentNotifier, Recipient
from alphasup.services.payment_gateway import PaymentGateway, idempotency_key, map_refund_reason

logger = logging.getLogger(__name__)


@dataclass
class IssuedRefund:
    refund: Refund
    payment: Payment
    booking: Optional[Booking]

    @property
    def full(self) -> bool:
        return self.payment.refundable_amount == 0


class RefundOrchestrator:
    def __init__(self, db: AsyncSession, gateway: PaymentGateway, notifier: Optional[PaymentNotifier] = None):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or PaymentNotifier()

    async def create_refund(
        self,
        payment_id: str,
        amount: Decimal,
        reason: RefundReason,
        requested_by: str,
        admin_notes: Optional[str] = None,
    ) -> IssuedRefund:
        amount = Decimal(amount)
        reason = RefundReason(reason)
        gateway_refund = None
        try:
            async with self.db.begin():
                res = await self.db.execute(sa_select(Payment).where(Payment.id == payment_id).with_for_update())
                payment = res.scalars().first()
                if payment is None:
                    raise NotFoundError("Payment")
                if amount <= 0:
                    raise ValidationError("Refund amount must be greater than 0")
                if not pricing.is_minor_unit_amount(amount):
                    raise ValidationError("Refund amount cannot have more than 2 decimal places")
                # the ledger moves by exactly what the gateway is asked to refund
                gateway_amount = pricing.to_gateway_amount(amount)
                amount = pricing.from_gateway_amount(gateway_amount)
                if amount > payment.refundable_amount:
                    raise ValidationError(
                        "Refund amount exceeds refundable amount",
                        details={"refundableAmount": str(payment.refundable_amount)},
                    )
                if PaymentStatus(payment.status) not in REFUNDABLE_STATUSES:
                    raise ValidationError(f"Payment is {payment.status} and cannot be refunded")

                sequence = len(payment.refunds) + 1
                params = {
                    "payment_intent": payment.provider_transaction_id,
                    "amount": gateway_amount,
                    "reason": map_refund_reason(reason),
                    "metadata": {
                        "paymentId": payment.id,
                        "bookingId": payment.booking_id,
                        "refundReason": reason.value,
                        "requestedBy": requested_by,
                    },
                }
                try:
                    gateway_refund = await self.gateway.create_refund(
                        params, idempotency_key(payment.id, "refund", sequence)
                    )
                except GatewayError as exc:
                    logger.error("Refund creation failed", extra={"payment_id": payment_id, "error": exc.message})
                    raise RefundCreationError(exc.message) from exc

                refund = Refund(
                    payment_id=payment.id,
                    sequence=sequence,
                    gateway_refund_id=gateway_refund.id,
                    amount=amount,
                    currency=payment.currency,
                    status=RefundStatus.PENDING.value,
                    reason=reason.value,
                    requested_by=requested_by,
                    admin_notes=admin_notes,
                )
                self.db.add(refund)
                payment.refunds.append(refund)

                payment.refundable_amount = payment.refundable_amount - amount
                full = payment.refundable_amount == 0
                transition_payment(payment, PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED)

                booking = await self.db.get(Booking, payment.booking_id, with_for_update=True)
                if booking is not None:
                    if full:
                        transition_booking(booking, BookingStatus.CANCELLED, BookingPaymentStatus.REFUNDED)
                    else:
                        booking.payment_status = BookingPaymentStatus.PARTIALLY_REFUNDED.value
                    booking.paid_amount = max(Decimal("0"), Decimal(booking.paid_amount or 0) - amount)

                await log_audit(
                    self.db,
                    actor_id=requested_by,
                    action="REFUND_CREATED",
                    object_type="payment",
                    object_id=payment.id,
                    detail={
                        "refundId": gateway_refund.id,
                        "amount": str(amount),
                        "reason": reason.value,
                        "fullRefund": full,
                    },
                )
        except Exception:
            if gateway_refund is not None:
                logger.critical(
                    "Gateway refund issued but not recorded",
                    extra={"payment_id": payment_id, "gateway_refund_id": gateway_refund.id, "reconciliation_required": True},
                )
            raise

        REFUNDS_CREATED.labels(reason=reason.value, full=str(full).lower()).inc()
        logger.info("Refund created", extra={"payment_id": payment_id, "gateway_refund_id": gateway_refund.id, "amount": str(amount)})
        if booking is not None:
            await self.notifier.send_refund_notice(Recipient.from_booking(booking), booking.id, amount, payment.currency)
        return IssuedRefund(refund=refund, payment=payment, booking=booking)

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment")
        return payment

    async def get_payments_for_booking(self, booking_id: str) -> List[Payment]:
        res = await self.db.execute(
            sa_select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.created_at.desc())
        )
        return list(res.scalars().all())
