from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import pennywise.models  # noqa: F401
# isort: on

import time
from collections.abc import Callable
from typing import Any

from celery.signals import worker_process_shutdown

from pennywise.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from pennywise.worker.celery_app import celery_app

logger = get_logger(__name__)


def _run_logged(task: Any, task_name: str, fn: Callable[[], Any], **fields: Any) -> Any:
    task_id = getattr(task.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(logger, "celery.task.start", task_name=task_name, celery_task_id=task_id, **fields)
    try:
        out = fn()
        log_event(
            logger,
            "celery.task.finish",
            task_name=task_name,
            celery_task_id=task_id,
            duration_ms=monotonic_ms(start),
            **fields,
        )
        return out
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name=task_name,
            celery_task_id=task_id,
            duration_ms=monotonic_ms(start),
            **fields,
        )
        raise
    finally:
        reset_task_context(token)


def _summary(result: Any) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        "method": result.method,
        "overall_confidence": result.overall_confidence,
        "error": result.error,
    }


@celery_app.task(name="extract_receipt", bind=True)
def extract_receipt_task(self, receipt_id: str) -> dict[str, Any] | None:
    from pennywise.modules.extraction.service import process_receipt

    return _run_logged(
        self,
        "extract_receipt",
        lambda: _summary(process_receipt(receipt_id)),
        receipt_id=receipt_id,
    )


@celery_app.task(name="reprocess_receipt", bind=True)
def reprocess_receipt_task(self, receipt_id: str) -> dict[str, Any] | None:
    from pennywise.modules.extraction.service import reprocess_receipt

    return _run_logged(
        self,
        "reprocess_receipt",
        lambda: _summary(reprocess_receipt(receipt_id)),
        receipt_id=receipt_id,
    )


@celery_app.task(name="process_pending_receipts", bind=True)
def process_pending_receipts_task(self, limit: int | None = None) -> list[str]:
    from pennywise.modules.extraction.service import process_pending_receipts

    return _run_logged(
        self,
        "process_pending_receipts",
        lambda: [str(rid) for rid in process_pending_receipts(limit=limit)],
        limit=limit,
    )


@worker_process_shutdown.connect
def _shutdown_ocr(**_kwargs: Any) -> None:
    from pennywise.modules.extraction.ocr import shutdown_ocr_engine

    shutdown_ocr_engine()
