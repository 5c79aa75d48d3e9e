import json
import logging
from decimal import Decimal

import pytest
from sqlalchemy import select

from alphasup.models import AuditLog, Booking, Payment
from alphasup.services.lifecycle import InvalidTransition
from alphasup.services.payment_gateway import GatewayIntent
from alphasup.services.webhooks import WebhookReconciler

from conftest import intent_event, post_event, reload, sign_payload


async def _payments(session_factory, booking_id):
    async with session_factory() as session:
        res = await session.execute(select(Payment).where(Payment.booking_id == booking_id))
        return list(res.scalars().all())


async def _audit_actions(session_factory):
    async with session_factory() as session:
        res = await session.execute(select(AuditLog).order_by(AuditLog.id))
        return [a.action for a in res.scalars().all()]


@pytest.mark.anyio
async def test_succeeded_event_confirms_booking(async_client, booking, session_factory, fake_redis):
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)
    resp = await post_event(async_client, event)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}

    payments = await _payments(session_factory, booking.id)
    assert len(payments) == 1
    payment = payments[0]
    assert payment.amount == Decimal("330.00")
    assert payment.refundable_amount == Decimal("330.00")
    assert payment.status == "succeeded"
    assert payment.provider_transaction_id == "pi_1"
    assert payment.payment_method == {
        "type": "card",
        "card": {"brand": "visa", "last4": "4242", "expMonth": 12, "expYear": 2030, "country": "TR"},
    }
    assert payment.receipt_sent is True

    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "confirmed"
    assert stored.payment_status == "succeeded"
    assert stored.payment_id == payment.id
    assert stored.paid_amount == Decimal("330")
    assert stored.remaining_amount == Decimal("670")

    assert f"payment_webhook:stripe:{event['id']}" in fake_redis.store
    actions = await _audit_actions(session_factory)
    assert "PAYMENT_SUCCEEDED" in actions
    assert actions[-1] == "WEBHOOK_PROCESSED"


@pytest.mark.anyio
async def test_paid_amount_is_net_of_fees(async_client, booking, session_factory):
    # deposit intent: 300 + 39 fees
    await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33900, booking.id, fees="39"))

    stored = await reload(session_factory, Booking, booking.id)
    assert stored.paid_amount == Decimal("300")
    assert stored.remaining_amount == Decimal("700")
    payment = (await _payments(session_factory, booking.id))[0]
    assert payment.processing_fee == Decimal("39")
    assert payment.amount == Decimal("339")


@pytest.mark.anyio
async def test_replayed_event_is_applied_once(async_client, booking, session_factory):
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)

    first = await post_event(async_client, event)
    second = await post_event(async_client, event)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == {"received": True, "duplicate": True}
    assert len(await _payments(session_factory, booking.id)) == 1
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "confirmed"
    assert stored.paid_amount == Decimal("330")


@pytest.mark.anyio
async def test_new_event_id_for_same_intent_is_a_no_op(async_client, booking, session_factory):
    await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id, event_id="evt_a"))
    resp = await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id, event_id="evt_b"))

    assert resp.status_code == 200
    assert len(await _payments(session_factory, booking.id)) == 1
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.paid_amount == Decimal("330")


@pytest.mark.anyio
async def test_concurrent_insert_loses_to_unique_constraint(db, gateway, booking, session_factory, monkeypatch):
    obj = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)["data"]["object"]
    reconciler = WebhookReconciler(db, gateway)
    assert await reconciler.handle_intent_succeeded(obj) == "succeeded"

    # the second delivery does not see the first one's row before inserting
    async def not_found(*args, **kwargs):
        return None

    monkeypatch.setattr(reconciler, "_find_payment", not_found)
    assert await reconciler.handle_intent_succeeded(obj) == "duplicate"
    assert len(await _payments(session_factory, booking.id)) == 1


@pytest.mark.anyio
async def test_tampered_payload_is_rejected(async_client, booking, session_factory, fake_redis):
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)
    signature = sign_payload(json.dumps(event))
    event["data"]["object"]["amount"] = 1

    resp = await post_event(async_client, event, signature=signature)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_SIGNATURE"
    assert await _payments(session_factory, booking.id) == []
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "pending_payment"
    assert fake_redis.store == {}
    assert await _audit_actions(session_factory) == ["BOOKING_CREATED"]


@pytest.mark.anyio
async def test_wrong_secret_is_rejected(async_client, booking, session_factory):
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)
    signature = sign_payload(json.dumps(event), secret="whsec_other")

    resp = await post_event(async_client, event, signature=signature)

    assert resp.status_code == 400
    assert await _payments(session_factory, booking.id) == []


@pytest.mark.anyio
async def test_missing_signature_header(async_client, booking):
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)
    resp = await async_client.post("/payments/webhook", content=json.dumps(event))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_SIGNATURE"


@pytest.mark.anyio
async def test_payment_failed_cancels_booking(async_client, booking, session_factory):
    event = intent_event(
        "payment_intent.payment_failed",
        "pi_1",
        33900,
        booking.id,
        last_payment_error={"message": "Your card has insufficient funds.", "code": "card_declined"},
    )
    resp = await post_event(async_client, event)
    assert resp.status_code == 200

    payment = (await _payments(session_factory, booking.id))[0]
    assert payment.status == "failed"
    assert payment.refundable_amount == Decimal("0")
    assert payment.failure_reason == "Your card has insufficient funds."
    assert payment.failure_code == "card_declined"

    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "cancelled"
    assert stored.payment_status == "failed"
    assert stored.paid_amount == Decimal("0")


@pytest.mark.anyio
async def test_payment_failed_without_error_message(async_client, booking, session_factory):
    await post_event(async_client, intent_event("payment_intent.payment_failed", "pi_1", 33900, booking.id))
    payment = (await _payments(session_factory, booking.id))[0]
    assert payment.failure_reason == "Payment failed"


@pytest.mark.anyio
async def test_canceled_intent_uses_fixed_reason(async_client, booking, session_factory):
    resp = await post_event(async_client, intent_event("payment_intent.canceled", "pi_1", 33900, booking.id))
    assert resp.status_code == 200

    payment = (await _payments(session_factory, booking.id))[0]
    assert payment.failure_reason == "Payment canceled"
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "cancelled"


@pytest.mark.anyio
async def test_late_failure_does_not_undo_success(async_client, booking, session_factory):
    await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id))
    resp = await post_event(async_client, intent_event("payment_intent.payment_failed", "pi_1", 33000, booking.id))

    assert resp.status_code == 200
    payments = await _payments(session_factory, booking.id)
    assert [p.status for p in payments] == ["succeeded"]
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "confirmed"
    assert stored.payment_status == "succeeded"


@pytest.mark.anyio
async def test_success_after_failed_attempt_reopens_booking(async_client, booking, session_factory):
    await post_event(async_client, intent_event("payment_intent.payment_failed", "pi_1", 33000, booking.id))
    await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id))

    payments = await _payments(session_factory, booking.id)
    assert sorted(p.outcome for p in payments) == ["failed", "succeeded"]
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "confirmed"
    assert stored.payment_status == "succeeded"


@pytest.mark.anyio
async def test_dispute_is_logged_and_audited(async_client, gateway, booking, session_factory):
    await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id))
    gateway.intents["pi_1"] = GatewayIntent(
        id="pi_1", status="succeeded", client_secret=None, amount=33000, currency="try", metadata={"bookingId": booking.id}
    )
    gateway.charges["ch_1"] = "pi_1"

    event = {
        "id": "evt_dispute",
        "type": "charge.dispute.created",
        "data": {"object": {"id": "dp_1", "charge": "ch_1", "reason": "fraudulent", "amount": 33000}},
    }
    resp = await post_event(async_client, event)
    assert resp.status_code == 200

    payment = (await _payments(session_factory, booking.id))[0]
    async with session_factory() as session:
        res = await session.execute(select(AuditLog).where(AuditLog.action == "PAYMENT_DISPUTED"))
        audit = res.scalars().one()
    assert audit.object_id == payment.id
    assert audit.detail["disputeId"] == "dp_1"
    # no state transition on disputes
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "confirmed"
    assert payment.status == "succeeded"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "event_type",
    ["invoice.payment_succeeded", "customer.subscription.deleted", "setup_intent.succeeded", "customer.created"],
)
async def test_other_events_are_acknowledged(async_client, booking, session_factory, event_type):
    event = {"id": f"evt_{event_type}", "type": event_type, "data": {"object": {"id": "obj_1"}}}
    resp = await post_event(async_client, event)

    assert resp.status_code == 200
    assert await _payments(session_factory, booking.id) == []
    assert (await _audit_actions(session_factory))[-1] == "WEBHOOK_PROCESSED"


@pytest.mark.anyio
async def test_intent_without_booking_metadata_is_ignored(async_client, booking, session_factory):
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)
    event["data"]["object"]["metadata"] = {}
    resp = await post_event(async_client, event)

    assert resp.status_code == 200
    assert await _payments(session_factory, booking.id) == []


@pytest.mark.anyio
async def test_processing_failure_returns_500_and_allows_redelivery(async_client, booking, session_factory, fake_redis, monkeypatch):
    calls = {"n": 0}
    original = WebhookReconciler.handle_intent_succeeded

    async def flaky(self, obj):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database unavailable")
        return await original(self, obj)

    monkeypatch.setattr(WebhookReconciler, "handle_intent_succeeded", flaky)
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)

    resp = await post_event(async_client, event)
    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "WEBHOOK_PROCESSING_FAILED"
    assert error["details"] == {"eventId": event["id"]}
    assert fake_redis.store == {}
    assert await _payments(session_factory, booking.id) == []
    async with session_factory() as session:
        res = await session.execute(select(AuditLog).where(AuditLog.action == "WEBHOOK_FAILED"))
        failed = res.scalars().one()
    assert failed.success is False
    assert failed.error_message == "database unavailable"
    assert failed.detail["eventType"] == "payment_intent.succeeded"

    retry = await post_event(async_client, event)
    assert retry.status_code == 200
    assert retry.json() == {"received": True}
    assert len(await _payments(session_factory, booking.id)) == 1


@pytest.mark.anyio
async def test_success_for_completed_booking_is_recorded_and_flagged(async_client, booking, session_factory, caplog):
    async with session_factory() as session:
        async with session.begin():
            stored = await session.get(Booking, booking.id)
            stored.status = "completed"

    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)
    with caplog.at_level(logging.CRITICAL, logger="alphasup.services.webhooks"):
        resp = await post_event(async_client, event)

    assert resp.status_code == 200
    payments = await _payments(session_factory, booking.id)
    assert [p.amount for p in payments] == [Decimal("330.00")]
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == "completed"
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert critical and critical[0].reconciliation_required is True


@pytest.mark.anyio
async def test_rejected_event_is_acknowledged_without_redelivery(async_client, booking, session_factory, fake_redis, monkeypatch):
    async def reject(self, obj):
        raise InvalidTransition("Booking b cannot move from completed to confirmed")

    monkeypatch.setattr(WebhookReconciler, "handle_intent_succeeded", reject)
    event = intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id)

    resp = await post_event(async_client, event)
    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    # claim kept: the gateway will not get a second chance at the same failure
    assert fake_redis.store
    async with session_factory() as session:
        res = await session.execute(select(AuditLog).where(AuditLog.action == "WEBHOOK_FAILED"))
        failed = res.scalars().one()
    assert failed.detail["outcome"] == "rejected"
    assert failed.error_message == "Booking b cannot move from completed to confirmed"

    again = await post_event(async_client, event)
    assert again.json() == {"received": True, "duplicate": True}
