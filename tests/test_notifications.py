import threading
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, Optional

import pytest

from alphasup.config import settings
from alphasup.notifications import tasks
from alphasup.services.notification_providers import LogProvider, NotificationProvider, NullProvider, get_provider, mask_recipient
from alphasup.services.notification_service import NotificationService, PaymentNotifier, Recipient

from conftest import intent_event, post_event


class RecordingProvider(NotificationProvider):
    def __init__(self, fail: bool = False):
        self.emails = []
        self.sms = []
        self.fail = fail

    async def send_email(self, to: str, subject: str, body: str, meta: Optional[Dict] = None) -> Dict:
        if self.fail:
            raise ConnectionError("smtp down")
        self.emails.append((to, subject, body))
        return {"status": "sent"}

    async def send_sms(self, to: str, body: str, meta: Optional[Dict] = None) -> Dict:
        if self.fail:
            raise ConnectionError("sms gateway down")
        self.sms.append((to, body))
        return {"status": "sent"}


RECIPIENT = Recipient(customer_id="cust_1", name="Ayşe", email="ayse@example.com", phone="+905551112233")

PAYMENT = SimpleNamespace(
    id="pay_1",
    amount=Decimal("339.00"),
    currency="try",
    total_fees=Decimal("39"),
    payment_method={"type": "card", "card": {"last4": "4242"}},
)


def test_render_falls_back_to_english():
    svc = NotificationService()
    text = svc.render("payment_receipt.txt", locale="de", context={"customer_name": "Hans", "booking_id": "b1", "amount": 10, "currency": "TRY"})
    assert "Hello Hans" in text


def test_render_turkish():
    text = NotificationService().render("refund_sms.txt", locale="tr", context={"booking_id": "b1", "amount": 100, "currency": "TRY", "refund_days": "3-7"})
    assert "iadeniz" in text


def test_provider_lookup(monkeypatch):
    assert isinstance(get_provider("LOG"), LogProvider)
    monkeypatch.setattr(settings, "NOTIFICATION_PROVIDER", "null")
    assert isinstance(get_provider(), NullProvider)
    with pytest.raises(ValueError):
        get_provider("carrier-pigeon")


def test_recipients_are_masked_in_logs():
    assert mask_recipient("ayse@example.com") == "a***@example.com"
    assert mask_recipient("+905551112233") == "***2233"
    assert mask_recipient("") == ""


@pytest.mark.anyio
async def test_null_provider_skips_delivery():
    result = await NotificationService(NullProvider()).send_sms("+90", "refund_sms.txt", {"booking_id": "b1"})
    assert result == {"status": "skipped", "provider": "null"}


@pytest.mark.anyio
async def test_receipt_is_email_only():
    provider = RecordingProvider()
    notifier = PaymentNotifier(NotificationService(provider), locale="en")

    assert await notifier.send_payment_receipt(RECIPIENT, "b1", PAYMENT) is True
    assert len(provider.emails) == 1
    to, _, body = provider.emails[0]
    assert to == "ayse@example.com"
    assert "339.00 TRY" in body
    assert "ending in 4242" in body
    assert provider.sms == []


@pytest.mark.anyio
async def test_receipt_without_email_is_not_sent():
    notifier = PaymentNotifier(NotificationService(RecordingProvider()))
    assert await notifier.send_payment_receipt(Recipient(customer_id="c", phone="+90"), "b1", PAYMENT) is False


@pytest.mark.anyio
async def test_delivery_errors_are_swallowed():
    notifier = PaymentNotifier(NotificationService(RecordingProvider(fail=True)))
    assert await notifier.send_payment_receipt(RECIPIENT, "b1", PAYMENT) is False
    assert await notifier.send_payment_failed(RECIPIENT, "b1", "declined") is False
    assert await notifier.send_refund_notice(RECIPIENT, "b1", Decimal("100"), "try") is False
    assert await notifier.send_payment_confirmation_sms(
        {"bookingId": "b1", "customerId": "c", "customerPhone": "+90"}, Decimal("10"), "try"
    ) is False


@pytest.mark.anyio
async def test_failure_and_refund_notices_use_both_channels():
    provider = RecordingProvider()
    notifier = PaymentNotifier(NotificationService(provider), locale="tr")

    assert await notifier.send_payment_failed(RECIPIENT, "b1", "Payment canceled") is True
    assert await notifier.send_refund_notice(RECIPIENT, "b1", Decimal("100"), "try") is True
    assert len(provider.emails) == 2
    assert len(provider.sms) == 2
    assert "Payment canceled" in provider.sms[0][1]


@pytest.mark.anyio
async def test_confirmation_sms_needs_metadata():
    provider = RecordingProvider()
    notifier = PaymentNotifier(NotificationService(provider))

    assert await notifier.send_payment_confirmation_sms({"bookingId": "b1"}, Decimal("10"), "try") is False
    assert await notifier.send_payment_confirmation_sms(
        {"bookingId": "b1", "customerId": "c", "customerPhone": "+905551112233"}, Decimal("330"), "try"
    ) is True
    assert provider.sms[0][0] == "+905551112233"
    assert "330 TRY" in provider.sms[0][1]


@pytest.mark.anyio
async def test_async_mode_enqueues_celery_task(monkeypatch):
    queued = []
    publishers = set()

    def delay(*args):
        publishers.add(threading.get_ident())
        queued.append(args)

    monkeypatch.setattr(settings, "NOTIFICATIONS_ASYNC", True)
    monkeypatch.setattr(tasks.send_notification_task, "delay", delay)

    notifier = PaymentNotifier(NotificationService(RecordingProvider()), locale="tr")
    assert await notifier.send_refund_notice(RECIPIENT, "b1", Decimal("100"), "try") is True

    channels = [args[0] for args in queued]
    assert channels == ["email", "sms"]
    assert queued[0][3]["amount"] == "100"
    assert queued[0][4] == "tr"
    # broker publish runs in a worker thread, not on the event loop
    assert threading.get_ident() not in publishers


@pytest.mark.anyio
async def test_webhook_sends_receipt_and_confirmation_sms(async_client, booking, monkeypatch):
    from alphasup.services import notification_service as module

    provider = RecordingProvider()
    monkeypatch.setattr(module.notification_service, "provider", provider)

    resp = await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id))

    assert resp.status_code == 200
    assert [to for to, _, _ in provider.emails] == ["ayse@example.com"]
    assert [to for to, _ in provider.sms] == ["+905551112233"]


@pytest.mark.anyio
async def test_notification_outage_does_not_fail_webhook(async_client, booking, monkeypatch, session_factory):
    from alphasup.models import Payment
    from alphasup.services import notification_service as module
    from conftest import reload

    monkeypatch.setattr(module.notification_service, "provider", RecordingProvider(fail=True))

    resp = await post_event(async_client, intent_event("payment_intent.succeeded", "pi_1", 33000, booking.id))
    assert resp.status_code == 200

    stored_booking = await reload(session_factory, type(booking), booking.id)
    assert stored_booking.status == "confirmed"
    payment = await reload(session_factory, Payment, stored_booking.payment_id)
    assert payment.receipt_sent is False


def test_dlq_push_after_retries(monkeypatch):
    pushed = []
    monkeypatch.setattr(tasks, "_push_to_dlq", pushed.append)
    monkeypatch.setattr(tasks, "get_provider", lambda name: RecordingProvider(fail=True))

    task = tasks.send_notification_task
    task.push_request(retries=task.max_retries)
    try:
        with pytest.raises(ConnectionError):
            task.run("sms", "+90", "refund_sms.txt", {"booking_id": "b1"}, "en")
    finally:
        task.pop_request()

    assert pushed == [{"channel": "sms", "to": "+90", "template": "refund_sms.txt", "context": {"booking_id": "b1"}, "locale": "en"}]
