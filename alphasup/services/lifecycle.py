"""Transition tables for booking and payment state.

Only the payment lifecycle services move ``Booking.status``,
``Booking.payment_status`` and ``Payment.status``; they all go through
:func:`transition_booking` / :func:`transition_payment` so an illegal move is
rejected instead of silently overwriting a terminal state.
"""
from typing import Dict, FrozenSet, Optional

from alphasup.errors import ValidationError
from alphasup.models.enums import BookingPaymentStatus, BookingStatus, PaymentStatus


class InvalidTransition(ValidationError):
    code = "INVALID_STATE_TRANSITION"


BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING_PAYMENT: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    # confirmed -> confirmed covers a second (remaining balance) payment
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.COMPLETED}),
    # cancelled -> confirmed only when a failed intent is retried and succeeds
    BookingStatus.CANCELLED: frozenset({BookingStatus.CANCELLED, BookingStatus.CONFIRMED}),
    BookingStatus.COMPLETED: frozenset({BookingStatus.CANCELLED}),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# statuses from which a payment can still be refunded
REFUNDABLE_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED})

# booking statuses that still accept a new payment intent
PAYABLE_BOOKING_STATUSES = frozenset({BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED})


def can_transition_booking(current: str, target: BookingStatus) -> bool:
    return BookingStatus(target) in BOOKING_TRANSITIONS.get(BookingStatus(current), frozenset())


def transition_booking(booking, target: BookingStatus, payment_status: Optional[BookingPaymentStatus] = None) -> None:
    """Move a booking to ``target`` and optionally mirror the payment status onto it."""
    if not can_transition_booking(booking.status, target):
        raise InvalidTransition(
            f"Booking {booking.id} cannot move from {booking.status} to {BookingStatus(target).value}"
        )
    booking.status = BookingStatus(target).value
    if payment_status is not None:
        booking.payment_status = BookingPaymentStatus(payment_status).value


def transition_payment(payment, target: PaymentStatus) -> None:
    allowed = PAYMENT_TRANSITIONS.get(PaymentStatus(payment.status), frozenset())
    if PaymentStatus(target) not in allowed:
        raise InvalidTransition(
            f"Payment {payment.id} cannot move from {payment.status} to {PaymentStatus(target).value}"
        )
    payment.status = PaymentStatus(target).value
