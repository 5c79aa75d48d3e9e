from dataclasses import dataclass
from decimal import Decimal
from fastapi.concurrency import run_in_threadpool
from jinja2 import Environment, FileSystemLoader, select_autoescape, TemplateNotFound
from pathlib import Path
from typing import Dict, Optional
from alphasup.config import settings
from alphasup.services.notification_providers import NotificationProvider, get_provider
from prometheus_client import Counter
import logging

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "notifications" / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)

# metrics
NOTIF_COUNTER_SENT = Counter("alphasup_notifications_sent_total", "Total notifications sent", ["channel", "provider"])
NOTIF_COUNTER_FAILED = Counter("alphasup_notifications_failed_total", "Total notification failures", ["channel", "provider"])
NOTIF_COUNTER_RETRIED = Counter("alphasup_notifications_retried_total", "Total notification retries", ["channel", "provider"])


class NotificationService:
    def __init__(self, provider: Optional[NotificationProvider] = None):
        self.provider = provider or get_provider()

    @property
    def provider_label(self) -> str:
        return self.provider.__class__.__name__

    def render(self, template_name: str, locale: str = "en", context: Dict = None) -> str:
        ctx = context or {}
        # try locale-specific template, fallback to en
        for tpl in (f"{locale}/{template_name}", f"en/{template_name}"):
            try:
                return _env.get_template(tpl).render(**ctx)
            except TemplateNotFound:
                continue
        raise RuntimeError("Template not found: %s" % template_name)

    async def send_email(self, to: str, subject: str, template_name: str, context: Dict = None, locale: str = "en", meta: Dict = None):
        body = self.render(template_name, locale=locale, context=context)
        try:
            res = await self.provider.send_email(to=to, subject=subject, body=body, meta=meta)
            NOTIF_COUNTER_SENT.labels(channel="email", provider=self.provider_label).inc()
            return res
        except Exception:
            NOTIF_COUNTER_FAILED.labels(channel="email", provider=self.provider_label).inc()
            logger.exception("Email send failed")
            raise

    async def send_sms(self, to: str, template_name: str, context: Dict = None, locale: str = "en", meta: Dict = None):
        body = self.render(template_name, locale=locale, context=context)
        try:
            res = await self.provider.send_sms(to=to, body=body, meta=meta)
            NOTIF_COUNTER_SENT.labels(channel="sms", provider=self.provider_label).inc()
            return res
        except Exception:
            NOTIF_COUNTER_FAILED.labels(channel="sms", provider=self.provider_label).inc()
            logger.exception("SMS send failed")
            raise


notification_service = NotificationService()


@dataclass
class Recipient:
    customer_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_booking(cls, booking) -> "Recipient":
        return cls(
            customer_id=booking.customer_id,
            name=booking.customer_name,
            email=booking.customer_email,
            phone=booking.customer_phone,
        )


class PaymentNotifier:
    """Receipt, failure and refund messages for the payment lifecycle.

    Every public method is fire-and-forget from the caller's point of view:
    delivery errors are logged and reported as ``False``, never raised, so a
    notification problem cannot undo a state transition that already
    committed.
    """

    def __init__(self, service: Optional[NotificationService] = None, locale: Optional[str] = None):
        self.service = service or notification_service
        self.locale = locale or settings.NOTIFICATION_LOCALE

    async def _deliver(self, channel: str, to: str, template_name: str, context: Dict, subject: str = "") -> None:
        if settings.NOTIFICATIONS_ASYNC:
            from alphasup.notifications.tasks import send_notification_task

            payload = {k: str(v) if isinstance(v, Decimal) else v for k, v in context.items()}
            payload["subject"] = subject
            # broker publish blocks; keep it off the event loop
            await run_in_threadpool(send_notification_task.delay, channel, to, template_name, payload, self.locale)
            return
        if channel == "email":
            await self.service.send_email(to=to, subject=subject, template_name=template_name, context=context, locale=self.locale)
        else:
            await self.service.send_sms(to=to, template_name=template_name, context=context, locale=self.locale)

    async def send_payment_receipt(self, recipient: Recipient, booking_id: str, payment) -> bool:
        ctx = {
            "customer_name": recipient.name or "",
            "booking_id": booking_id,
            "payment_id": payment.id,
            "amount": payment.amount,
            "currency": (payment.currency or "").upper(),
            "fees": payment.total_fees,
            "payment_method": (payment.payment_method or {}).get("type", "card"),
            "card_last4": ((payment.payment_method or {}).get("card") or {}).get("last4"),
        }
        # the SMS leg goes through send_payment_confirmation_sms
        if not recipient.email:
            return False
        try:
            await self._deliver("email", recipient.email, "payment_receipt.txt", ctx, subject="Ödeme Makbuzu - AlphaSUP")
            return True
        except Exception:
            logger.exception("Failed to send payment receipt", extra={"booking_id": booking_id, "customer_id": recipient.customer_id})
            return False

    async def send_payment_failed(self, recipient: Recipient, booking_id: str, reason: Optional[str]) -> bool:
        ctx = {
            "customer_name": recipient.name or "",
            "booking_id": booking_id,
            "reason": reason or "Payment failed",
            "support_phone": settings.SUPPORT_PHONE,
        }
        try:
            if recipient.email:
                await self._deliver("email", recipient.email, "payment_failed.txt", ctx, subject="Ödeme Başarısız - AlphaSUP")
            if recipient.phone:
                await self._deliver("sms", recipient.phone, "payment_failed_sms.txt", ctx)
            return True
        except Exception:
            logger.exception("Failed to send payment failed notification", extra={"booking_id": booking_id, "customer_id": recipient.customer_id})
            return False

    async def send_refund_notice(self, recipient: Recipient, booking_id: str, amount: Decimal, currency: str = "") -> bool:
        ctx = {
            "customer_name": recipient.name or "",
            "booking_id": booking_id,
            "amount": amount,
            "currency": (currency or "").upper(),
            "refund_days": "3-7",
            "support_phone": settings.SUPPORT_PHONE,
        }
        try:
            if recipient.email:
                await self._deliver("email", recipient.email, "refund_notice.txt", ctx, subject="İade İşlemi - AlphaSUP")
            if recipient.phone:
                await self._deliver("sms", recipient.phone, "refund_sms.txt", ctx)
            return True
        except Exception:
            logger.exception("Failed to send refund notification", extra={"booking_id": booking_id, "customer_id": recipient.customer_id})
            return False

    async def send_payment_confirmation_sms(self, metadata: Dict[str, str], amount: Decimal, currency: str) -> bool:
        """SMS side channel driven purely by intent metadata."""
        phone = metadata.get("customerPhone")
        if not (metadata.get("bookingId") and metadata.get("customerId") and phone):
            return False
        ctx = {
            "customer_name": metadata.get("customerName") or "Müşteri",
            "booking_id": metadata["bookingId"],
            "amount": amount,
            "currency": (currency or "").upper(),
        }
        try:
            await self._deliver("sms", phone, "payment_confirmation_sms.txt", ctx)
            return True
        except Exception:
            logger.exception("Payment confirmation SMS failed", extra={"booking_id": metadata.get("bookingId")})
            return False
