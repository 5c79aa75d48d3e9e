from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.auth.deps import ensure_owner_or_admin, get_current_principal, require_admin
from alphasup.config import settings
from alphasup.db.session import get_session
from alphasup.errors import NotFoundError
from alphasup.models.models import PaymentIntentRecord
from alphasup.schemas.payment import (
    PaymentConfigResponse,
    PaymentIntentCreateRequest,
    PaymentIntentCreateResponse,
    PaymentIntentResponse,
    PaymentResponse,
    QuoteRequest,
    QuoteResponse,
    RefundCreateRequest,
    RefundResponse,
    WebhookAck,
)
from alphasup.services import pricing
from alphasup.services.auth import Principal
from alphasup.services.bookings import get_booking
from alphasup.services.payment_gateway import PaymentGateway, allowed_payment_methods, get_gateway
from alphasup.services.payment_intents import PaymentIntentOrchestrator, is_expired
from alphasup.services.refunds import RefundOrchestrator
from alphasup.services.webhooks import WebhookReconciler

router = APIRouter()


@router.get("/config", response_model=PaymentConfigResponse)
async def payment_config():
    return PaymentConfigResponse(
        currency=settings.PAYMENT_CURRENCY,
        allowed_payment_methods=allowed_payment_methods(),
        default_deposit_percentage=settings.DEFAULT_DEPOSIT_PERCENTAGE,
        minimum_amount=settings.MINIMUM_PAYMENT_AMOUNT,
        processing_fee_percentage=settings.PROCESSING_FEE_PERCENTAGE,
        fixed_fee=settings.FIXED_FEE,
        intent_timeout_minutes=settings.PAYMENT_INTENT_TIMEOUT_MINUTES,
    )


@router.post("/quote", response_model=QuoteResponse)
async def quote(req: QuoteRequest):
    deposit = remaining = None
    charge = req.amount
    if req.deposit_only:
        deposit = pricing.calculate_deposit_amount(req.amount, req.deposit_percentage)
        remaining = pricing.calculate_remaining_amount(req.amount, deposit)
        charge = deposit
    totals = pricing.calculate_total_with_fees(charge)
    return QuoteResponse(
        charge_amount=charge,
        fees=totals.fees,
        total=totals.total,
        gateway_amount=pricing.to_gateway_amount(totals.total),
        deposit_amount=deposit,
        remaining_amount=remaining,
    )


@router.post("/create-intent", response_model=PaymentIntentCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_intent(
    req: PaymentIntentCreateRequest,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    principal: Principal = Depends(get_current_principal),
):
    created = await PaymentIntentOrchestrator(db, gateway).create_payment_intent(
        req.booking_id,
        principal,
        req.amount,
        deposit_only=req.deposit_only,
        deposit_percentage=req.deposit_percentage,
        currency=req.currency,
        save_payment_method=req.save_payment_method,
    )
    return PaymentIntentCreateResponse(
        payment_intent_id=created.intent.id,
        client_secret=created.client_secret,
        amount=created.record.amount,
        fees=created.record.fees,
        currency=created.record.currency,
        expires_at=created.record.expires_at,
    )


@router.get("/intents/{intent_id}", response_model=PaymentIntentResponse)
async def get_intent(
    intent_id: str,
    refresh: bool = True,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    principal: Principal = Depends(get_current_principal),
):
    if refresh:
        record = await PaymentIntentOrchestrator(db, gateway).refresh_payment_intent(intent_id, principal)
    else:
        record = await db.get(PaymentIntentRecord, intent_id)
        if record is None:
            raise NotFoundError("Payment intent")
        ensure_owner_or_admin(principal, record.customer_id)
    return PaymentIntentResponse(
        id=record.id,
        booking_id=record.booking_id,
        customer_id=record.customer_id,
        amount=record.amount,
        fees=record.fees,
        currency=record.currency,
        status=record.status,
        payment_methods=record.payment_methods or [],
        capture_method=record.capture_method,
        expires_at=record.expires_at,
        expired=is_expired(record),
    )


@router.post("/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
):
    # signature is computed over the raw bytes; do not parse before verifying
    body = await request.body()
    result = await WebhookReconciler(db, gateway).handle(body, request.headers.get("stripe-signature"))
    return WebhookAck(received=True, duplicate=True if result.duplicate else None)


@router.get("/booking/{booking_id}", response_model=List[PaymentResponse])
async def payments_for_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    principal: Principal = Depends(get_current_principal),
):
    booking = await get_booking(db, booking_id)
    ensure_owner_or_admin(principal, booking.customer_id)
    payments = await RefundOrchestrator(db, gateway).get_payments_for_booking(booking_id)
    return [PaymentResponse.from_payment(p) for p in payments]


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    principal: Principal = Depends(get_current_principal),
):
    payment = await RefundOrchestrator(db, gateway).get_payment(payment_id)
    ensure_owner_or_admin(principal, payment.customer_id)
    return PaymentResponse.from_payment(payment)


@router.post("/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: str,
    req: RefundCreateRequest,
    db: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: Principal = Depends(require_admin),
):
    issued = await RefundOrchestrator(db, gateway).create_refund(
        payment_id, req.amount, req.reason, requested_by=admin.uid, admin_notes=req.admin_notes
    )
    return RefundResponse.model_validate(issued.refund)
