from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from alphasup.models.enums import RefundReason

# amounts travel as JSON numbers, not strings
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class PaymentIntentCreateRequest(CamelModel):
    booking_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    deposit_only: bool = False
    deposit_percentage: Optional[Decimal] = Field(None, ge=1, le=100)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    save_payment_method: bool = False


class PaymentIntentCreateResponse(CamelModel):
    payment_intent_id: str
    client_secret: str
    amount: Money
    fees: Money
    currency: str
    expires_at: datetime


class PaymentIntentResponse(CamelModel):
    id: str
    booking_id: str
    customer_id: str
    amount: Money
    fees: Money
    currency: str
    status: str
    payment_methods: List[str]
    capture_method: str
    expires_at: datetime
    expired: bool


class WebhookAck(BaseModel):
    received: bool
    duplicate: Optional[bool] = None


class RefundCreateRequest(CamelModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reason: RefundReason
    admin_notes: Optional[str] = Field(None, max_length=2000)


class RefundResponse(CamelModel):
    id: str
    payment_id: str
    gateway_refund_id: str
    amount: Money
    currency: str
    status: str
    reason: str
    requested_by: str
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None


class FeeBreakdown(CamelModel):
    processing_fee: Money
    platform_fee: Money
    total_fees: Money


class PaymentResponse(CamelModel):
    id: str
    provider: str
    provider_transaction_id: str
    booking_id: str
    customer_id: str
    amount: Money
    currency: str
    payment_method: Optional[Dict[str, Any]] = None
    status: str
    intent_status: Optional[str] = None
    fees: FeeBreakdown
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refundable_amount: Money
    receipt_sent: bool
    refunds: List[RefundResponse] = []
    created_at: Optional[datetime] = None

    @classmethod
    def from_payment(cls, payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            provider=payment.provider,
            provider_transaction_id=payment.provider_transaction_id,
            booking_id=payment.booking_id,
            customer_id=payment.customer_id,
            amount=payment.amount,
            currency=payment.currency,
            payment_method=payment.payment_method,
            status=payment.status,
            intent_status=payment.intent_status,
            fees=FeeBreakdown(
                processing_fee=payment.processing_fee,
                platform_fee=payment.platform_fee,
                total_fees=payment.total_fees,
            ),
            authorized_at=payment.authorized_at,
            captured_at=payment.captured_at,
            failed_at=payment.failed_at,
            failure_reason=payment.failure_reason,
            refundable_amount=payment.refundable_amount,
            receipt_sent=payment.receipt_sent,
            refunds=[RefundResponse.model_validate(r) for r in payment.refunds],
            created_at=payment.created_at,
        )


class QuoteRequest(CamelModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    deposit_only: bool = False
    deposit_percentage: Optional[Decimal] = Field(None, ge=1, le=100)


class QuoteResponse(CamelModel):
    charge_amount: Money
    fees: Money
    total: Money
    gateway_amount: int
    deposit_amount: Optional[Money] = None
    remaining_amount: Optional[Money] = None


class PaymentConfigResponse(CamelModel):
    currency: str
    allowed_payment_methods: List[str]
    default_deposit_percentage: Money
    minimum_amount: Money
    processing_fee_percentage: Money
    fixed_fee: Money
    intent_timeout_minutes: int
