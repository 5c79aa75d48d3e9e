import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.config import settings
from alphasup.errors import NotFoundError
from alphasup.models.enums import BookingPaymentStatus, BookingStatus, PaymentType
from alphasup.models.models import Booking, Customer
from alphasup.schemas.booking import BookingCreateRequest
from alphasup.services import pricing
from alphasup.services.audit import log_audit

logger = logging.getLogger(__name__)


async def upsert_customer(db: AsyncSession, customer_id: str, name: str = None, email: str = None, phone: str = None) -> Customer:
    """Create the customer row on first sight, otherwise refresh its contact details. Caller owns the transaction."""
    customer = await db.get(Customer, customer_id)
    if customer is None:
        customer = Customer(id=customer_id, name=name, email=email, phone=phone)
        db.add(customer)
        return customer
    customer.name = name or customer.name
    customer.email = email or customer.email
    customer.phone = phone or customer.phone
    return customer


async def create_booking(db: AsyncSession, customer_id: str, req: BookingCreateRequest) -> Booking:
    """Persist a booking awaiting payment.

    ``paidAmount + remainingAmount == amount`` holds at creation; deposit
    bookings also record the deposit due now and its deadline.
    """
    total = Decimal(req.total_amount)
    deposit_amount = None
    due_date = None
    if req.payment_type == PaymentType.DEPOSIT:
        deposit_amount = pricing.calculate_deposit_amount(total, req.deposit_percentage)
        due_date = datetime.now(timezone.utc) + timedelta(hours=settings.DEPOSIT_DUE_HOURS)

    booking = Booking(
        service_id=req.service_id,
        customer_id=customer_id,
        customer_name=req.customer.name,
        customer_email=req.customer.email,
        customer_phone=req.customer.phone,
        participants=req.participants,
        scheduled_date=req.scheduled_date.isoformat(),
        scheduled_time=req.scheduled_time,
        total_amount=total,
        currency=(req.currency or settings.PAYMENT_CURRENCY).lower(),
        status=BookingStatus.PENDING_PAYMENT.value,
        payment_status=BookingPaymentStatus.PENDING.value,
        payment_type=req.payment_type.value,
        deposit_amount=deposit_amount,
        paid_amount=Decimal("0"),
        remaining_amount=total,
        payment_due_date=due_date,
    )
    async with db.begin():
        await upsert_customer(db, customer_id, req.customer.name, req.customer.email, req.customer.phone)
        db.add(booking)
        await db.flush()
        await log_audit(db, actor_id=customer_id, action="BOOKING_CREATED", object_type="booking", object_id=booking.id, detail={"total": str(total), "paymentType": booking.payment_type})
    logger.info("Booking created", extra={"booking_id": booking.id, "customer_id": customer_id})
    return booking


async def get_booking(db: AsyncSession, booking_id: str) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking")
    return booking
