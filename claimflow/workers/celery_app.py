"""
Celery application for background compensation work.

Usage:
  # Start worker with the beat schedule embedded:
  celery -A claimflow.workers.celery_app worker -B --loglevel=info
"""

from __future__ import annotations

import logging

from celery import Celery

from claimflow.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "claimflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,        # ACK only after task completes (at-least-once)
    worker_prefetch_multiplier=1,
    result_expires=3600,
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "drain-compensations": {
            "task": "claimflow.drain_compensations",
            "schedule": settings.outbox_drain_interval_seconds,
        },
    },
)


def _get_db():
    from claimflow.core.database import SessionLocal
    return SessionLocal()


@celery_app.task(name="claimflow.drain_compensations")
def drain_compensations(limit: int | None = None):
    """Retry pending rows of the compensation outbox."""
    from claimflow.services.outbox import drain

    db = _get_db()
    try:
        report = drain(db, limit=limit)
        return report.to_dict()
    finally:
        db.close()
