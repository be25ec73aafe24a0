from celery import Celery

from dealflow.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "dealflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["dealflow.crm.tasks"],
)

if settings.rotten_sweep_enabled:
    celery_app.conf.beat_schedule = {
        "crm-sweep-rotten-deals": {
            "task": "crm.sweep_rotten_deals",
            "schedule": float(settings.rotten_sweep_interval_seconds),
        },
    }

