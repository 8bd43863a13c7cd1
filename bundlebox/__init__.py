from celery import Celery
import os

# Celery configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

celery_app = Celery(
    "bundle_box",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["bundlebox.cleanup"],
)

celery_app.conf.beat_schedule = {
    # Every 10 minutes drop expired, exhausted or deleted archives and orphaned blobs
    "cleanup-expired-archives": {
        "task": "bundlebox.cleanup.cleanup_expired",
        "schedule": 600.0,
    },
}
