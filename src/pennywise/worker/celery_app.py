from __future__ import annotations

from celery import Celery

from pennywise.core.config import settings


def make_celery() -> Celery:
    app = Celery("pennywise", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment in {"dev", "test"},
        task_eager_propagates=True,
        task_track_started=True,
        # One receipt at a time per worker process; the OCR engine is shared.
        worker_prefetch_multiplier=1,
    )
    app.autodiscover_tasks(["pennywise.worker.tasks"])
    return app


celery_app = make_celery()
