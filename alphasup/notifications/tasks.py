from alphasup.celery_app import celery_app
from alphasup.config import settings
from celery.utils.log import get_task_logger
from alphasup.services.notification_service import NotificationService, NOTIF_COUNTER_RETRIED
from alphasup.services.notification_providers import get_provider
from typing import Optional
import asyncio
import json
import redis

logger = get_task_logger(__name__)

DLQ_KEY = "notification_dlq"


def _push_to_dlq(payload: dict) -> None:
    client = redis.Redis.from_url(settings.REDIS_URL)
    try:
        client.rpush(DLQ_KEY, json.dumps(payload, default=str))
    finally:
        client.close()


@celery_app.task(bind=True, retry_backoff=True, retry_backoff_max=600, retry_jitter=True, max_retries=3)
def send_notification_task(self, channel: str, to: str, template_name: str, context: dict = None, locale: str = "en", provider_name: Optional[str] = None):
    """Channel: 'email' or 'sms'. Retries with backoff; once retries are exhausted the message goes to the Redis DLQ."""
    context = context or {}
    svc = NotificationService(provider=get_provider(provider_name))

    async def _do():
        if channel == "email":
            await svc.send_email(to=to, subject=context.get("subject", ""), template_name=template_name, context=context, locale=locale)
        else:
            await svc.send_sms(to=to, template_name=template_name, context=context, locale=locale)

    try:
        asyncio.run(_do())
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Max retries exceeded for notification to %s; sending to DLQ", to)
            _push_to_dlq({"channel": channel, "to": to, "template": template_name, "context": context, "locale": locale})
            raise
        NOTIF_COUNTER_RETRIED.labels(channel=channel, provider=svc.provider_label).inc()
        logger.exception("Error sending notification: %s", exc)
        raise self.retry(exc=exc)
