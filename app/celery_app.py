from celery import Celery
from app.config import settings


celery_app = Celery(
    "linkbus_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.sweeper.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    timezone="UTC",
    beat_schedule={
        "sweep-expired-bookings": {
            "task": "app.sweeper.tasks.sweep_expired_bookings",
            "schedule": settings.SWEEP_INTERVAL_SECONDS,
        },
    },
)
