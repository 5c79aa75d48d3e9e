from abc import ABC, abstractmethod
from typing import Dict, Optional
import logging

from alphasup.config import settings

logger = logging.getLogger(__name__)


def mask_recipient(to: str) -> str:
    """Keep only enough of an address or phone number to tell customers apart in logs."""
    if not to:
        return ""
    if "@" in to:
        local, _, domain = to.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{to[-4:]}"


class NotificationProvider(ABC):
    """Delivery backend for customer-facing payment messages."""

    name = "base"

    @abstractmethod
    async def send_email(self, to: str, subject: str, body: str, meta: Optional[Dict] = None) -> Dict:
        raise NotImplementedError()

    @abstractmethod
    async def send_sms(self, to: str, body: str, meta: Optional[Dict] = None) -> Dict:
        raise NotImplementedError()


class LogProvider(NotificationProvider):
    """Writes messages to the application log instead of delivering them."""

    name = "log"

    async def send_email(self, to: str, subject: str, body: str, meta: Optional[Dict] = None) -> Dict:
        logger.info("Payment email queued to %s subject=%s", mask_recipient(to), subject, extra={"meta": meta or {}})
        logger.debug("Email body: %s", body)
        return {"status": "sent", "provider": self.name}

    async def send_sms(self, to: str, body: str, meta: Optional[Dict] = None) -> Dict:
        logger.info("Payment SMS queued to %s", mask_recipient(to), extra={"meta": meta or {}})
        logger.debug("SMS body: %s", body)
        return {"status": "sent", "provider": self.name}


class NullProvider(NotificationProvider):
    """Drops every message; for environments where customers must not be contacted."""

    name = "null"

    async def send_email(self, to: str, subject: str, body: str, meta: Optional[Dict] = None) -> Dict:
        return {"status": "skipped", "provider": self.name}

    async def send_sms(self, to: str, body: str, meta: Optional[Dict] = None) -> Dict:
        return {"status": "skipped", "provider": self.name}


PROVIDERS = {
    LogProvider.name: LogProvider,
    NullProvider.name: NullProvider,
}


def get_provider(name: Optional[str] = None) -> NotificationProvider:
    name = (name or settings.NOTIFICATION_PROVIDER).lower()
    cls = PROVIDERS.get(name)
    if cls is None:
        raise ValueError(f"Unknown notification provider: {name}")
    return cls()
