from __future__ import annotations

from celery import Celery

from escrow_engine.core.config import settings

celery = Celery(
    "bounty_escrow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["escrow_engine.tasks.relay_tasks"],
)

celery.conf.update(
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=True,
    task_default_queue="default",
    beat_schedule={
        "relay-outbox": {
            "task": "relay_outbox",
            "schedule": settings.OUTBOX_POLL_INTERVAL_S,
        },
    },
)
