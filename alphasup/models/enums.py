import enum


class BookingStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class BookingPaymentStatus(str, enum.Enum):
    """Booking.payment_status: ``pending`` until the first terminal outcome, then mirrors the Payment."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class IntentStatus(str, enum.Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefundReason(str, enum.Enum):
    CUSTOMER_REQUEST = "customer_request"
    WEATHER_CANCELLATION = "weather_cancellation"
    EQUIPMENT_ISSUE = "equipment_issue"
    BUSINESS_CANCELLATION = "business_cancellation"
    DUPLICATE_CHARGE = "duplicate_charge"
    FRAUDULENT = "fraudulent"


class PaymentType(str, enum.Enum):
    FULL = "full"
    DEPOSIT = "deposit"
