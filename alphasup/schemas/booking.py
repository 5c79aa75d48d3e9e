from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from alphasup.models.enums import PaymentType
from alphasup.schemas.payment import CamelModel, Money


class CustomerInfo(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)


class BookingCreateRequest(CamelModel):
    service_id: str = Field(..., min_length=1)
    customer: CustomerInfo
    participants: int = Field(..., ge=1)
    scheduled_date: date
    scheduled_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    total_amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    payment_type: PaymentType = PaymentType.FULL
    deposit_percentage: Optional[Decimal] = Field(None, ge=1, le=100)


class CustomerSnapshot(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class PaymentInfo(CamelModel):
    type: str
    amount: Money
    deposit_amount: Optional[Money] = None
    paid_amount: Money
    remaining_amount: Money
    due_date: Optional[datetime] = None


class BookingResponse(CamelModel):
    id: str
    service_id: str
    customer: CustomerSnapshot
    participants: int
    scheduled_date: str
    scheduled_time: str
    total_amount: Money
    currency: str
    status: str
    payment_status: str
    payment_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_info: PaymentInfo
    created_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            service_id=booking.service_id,
            customer=CustomerSnapshot(
                id=booking.customer_id,
                name=booking.customer_name,
                email=booking.customer_email,
                phone=booking.customer_phone,
            ),
            participants=booking.participants,
            scheduled_date=booking.scheduled_date,
            scheduled_time=booking.scheduled_time,
            total_amount=booking.total_amount,
            currency=booking.currency,
            status=booking.status,
            payment_status=booking.payment_status,
            payment_id=booking.payment_id,
            payment_intent_id=booking.payment_intent_id,
            payment_info=PaymentInfo(
                type=booking.payment_type,
                amount=booking.total_amount,
                deposit_amount=booking.deposit_amount,
                paid_amount=booking.paid_amount,
                remaining_amount=booking.remaining_amount,
                due_date=booking.payment_due_date,
            ),
            created_at=booking.created_at,
        )
