from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    JSON,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from alphasup.db.base import Base
from alphasup.models.enums import (
    BookingPaymentStatus,
    BookingStatus,
    IntentStatus,
    PaymentType,
    RefundStatus,
)


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(Base):
    __tablename__ = "customers"
    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(32), nullable=True)
    # gateway customer mapping, written once by the intent orchestrator
    stripe_customer_id = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow)


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String(64), primary_key=True, default=_new_id)
    service_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(64), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    # customer snapshot at booking time
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(32), nullable=True)
    participants = Column(Integer, nullable=False, default=1)
    scheduled_date = Column(String(10), nullable=False)
    scheduled_time = Column(String(5), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="try")
    status = Column(String(32), nullable=False, default=BookingStatus.PENDING_PAYMENT.value, index=True)
    payment_status = Column(String(32), nullable=False, default=BookingPaymentStatus.PENDING.value, index=True)
    payment_id = Column(String(64), nullable=True)
    payment_intent_id = Column(String(255), nullable=True)
    # paymentInfo snapshot
    payment_type = Column(String(16), nullable=False, default=PaymentType.FULL.value)
    deposit_amount = Column(Numeric(12, 2), nullable=True)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    remaining_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_due_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow)


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"
    # gateway-issued id
    id = Column(String(255), primary_key=True)
    booking_id = Column(String(64), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    fees = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=False)
    status = Column(String(32), nullable=False, default=IntentStatus.REQUIRES_PAYMENT_METHOD.value)
    client_secret = Column(String(255), nullable=False)
    payment_methods = Column(JSON, nullable=False, default=list)
    capture_method = Column(String(16), nullable=False, default="automatic")
    meta = Column("metadata", JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(64), primary_key=True, default=_new_id)
    provider = Column(String(32), nullable=False, default="stripe")
    provider_transaction_id = Column(String(255), nullable=False, index=True)
    # immutable terminal outcome; status moves on with refunds
    outcome = Column(String(16), nullable=False)
    booking_id = Column(String(64), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    payment_method = Column(JSON, nullable=True)
    status = Column(String(32), nullable=False, index=True)
    intent_status = Column(String(32), nullable=True)
    processing_fee = Column(Numeric(12, 2), nullable=False, default=0)
    platform_fee = Column(Numeric(12, 2), nullable=False, default=0)
    authorized_at = Column(DateTime(timezone=True), nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(String(1024), nullable=True)
    failure_code = Column(String(128), nullable=True)
    refundable_amount = Column(Numeric(12, 2), nullable=False, default=0)
    receipt_sent = Column(Boolean, nullable=False, default=False)
    receipt_sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=_utcnow)

    refunds = relationship("Refund", back_populates="payment", order_by="Refund.sequence", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("provider_transaction_id", "outcome", name="uq_payment_transaction_outcome"),
    )

    @property
    def total_fees(self):
        return (self.processing_fee or 0) + (self.platform_fee or 0)


class Refund(Base):
    __tablename__ = "refunds"
    id = Column(String(64), primary_key=True, default=_new_id)
    payment_id = Column(String(64), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    gateway_refund_id = Column(String(255), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(String(16), nullable=False, default=RefundStatus.PENDING.value)
    reason = Column(String(64), nullable=False)
    requested_by = Column(String(128), nullable=False)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    payment = relationship("Payment", back_populates="refunds")

    __table_args__ = (UniqueConstraint("payment_id", "sequence", name="uq_refund_payment_sequence"),)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor_id = Column(String(128), nullable=True, index=True)
    action = Column(String(255), nullable=False)
    object_type = Column(String(128), nullable=True)
    object_id = Column(String(255), nullable=True)
    detail = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(String(1024), nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (Index("ix_audit_object", "object_type", "object_id"),)
