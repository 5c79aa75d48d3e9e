from celery import Celery
from alphasup.config import settings


celery_app = Celery(
    "alphasup",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["alphasup.notifications.tasks"],
)

# payment notifications get their own queue so a backlog cannot delay other work
celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_expires=3600,
    task_routes={"alphasup.notifications.tasks.*": {"queue": "notifications"}},
    timezone="Europe/Istanbul",
    broker_connection_retry_on_startup=True,
)
