from .models import *
from .enums import *

__all__ = [
    "Base",
    "Customer",
    "Booking",
    "PaymentIntentRecord",
    "Payment",
    "Refund",
    "AuditLog",
    "BookingStatus",
    "BookingPaymentStatus",
    "PaymentStatus",
    "PaymentOutcome",
    "IntentStatus",
    "RefundStatus",
    "RefundReason",
    "PaymentType",
]
