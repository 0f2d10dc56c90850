from __future__ import annotations

import logging
import time
import uuid
from datetime import date
from pathlib import Path

from pennywise.core.config import settings
from pennywise.core.db import SessionLocal
from pennywise.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_receipt_context,
    set_receipt_context,
)
from pennywise.modules.extraction.errors import UnsupportedInputError
from pennywise.modules.extraction.heuristics import extract_with_heuristics
from pennywise.modules.extraction.normalizer import NormalizedDocument, normalize
from pennywise.modules.extraction.ocr import OcrEngine
from pennywise.modules.extraction.schemas import ExtractionResult, empty_result
from pennywise.modules.extraction.vision import extract_with_vision, vision_available
from pennywise.modules.receipts.models import ReceiptStatus
from pennywise.modules.receipts.service import (
    attempts_exhausted,
    get_receipt,
    list_receipts_needing_processing,
    mark_failed,
    mark_processed,
    mark_processing,
    reset_for_reprocess,
)

logger = get_logger(__name__)

# Fields that carry an independent confidence score.
SCORED_FIELDS: tuple[str, ...] = ("merchant_name", "total_amount", "date", "suggested_category")


def overall_confidence(result: ExtractionResult) -> float:
    scores = [getattr(result, name).confidence for name in SCORED_FIELDS]
    nonzero = [s for s in scores if s > 0]
    if not nonzero:
        return 0.0
    return round(sum(nonzero) / len(nonzero), 4)


def validate_input(file_path: str | Path, mime_type: str) -> Path:
    mime = (mime_type or "").strip().lower()
    if mime not in settings.allowed_mime_types:
        raise UnsupportedInputError(f"Unsupported file type: {mime_type or 'unknown'}")
    path = Path(file_path)
    if not path.is_file():
        raise UnsupportedInputError(f"File not found: {path.name}")
    size = path.stat().st_size
    if size == 0:
        raise UnsupportedInputError("File is empty")
    if size > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        raise UnsupportedInputError(f"File exceeds the {limit_mb} MB size limit")
    return path


def _vision_selected() -> bool:
    return settings.extraction_method in {"vision", "hybrid"} and vision_available()


def _run_tiers(
    normalized: NormalizedDocument, *, engine: OcrEngine | None, today: date | None
) -> ExtractionResult:
    if _vision_selected():
        start = time.monotonic()
        try:
            vision_result = extract_with_vision(normalized.first_page)
        except Exception:  # noqa: BLE001
            log_exception(logger, "extraction.vision.error", duration_ms=monotonic_ms(start))
        else:
            score = overall_confidence(vision_result)
            accepted = score > settings.vision_acceptance_threshold
            log_event(
                logger,
                "extraction.vision.accepted" if accepted else "extraction.vision.rejected",
                overall_confidence=score,
                threshold=settings.vision_acceptance_threshold,
                duration_ms=monotonic_ms(start),
            )
            if accepted:
                return vision_result

    return extract_with_heuristics(normalized.pages, engine=engine, today=today)


def extract(
    file_path: str | Path,
    mime_type: str,
    *,
    engine: OcrEngine | None = None,
    today: date | None = None,
) -> ExtractionResult:
    """Produce a confidence-scored extraction for one receipt file.

    Always returns a result. Failures surface as `method="error"` with the
    message in `error`; low confidence is a normal outcome, not a failure.
    """
    start = time.monotonic()
    log_event(logger, "extraction.start", path=str(file_path), mime_type=mime_type)

    normalized: NormalizedDocument | None = None
    try:
        src = validate_input(file_path, mime_type)
        normalized = normalize(src, mime_type.strip().lower())
        result = _run_tiers(normalized, engine=engine, today=today)
        score = overall_confidence(result)
    except UnsupportedInputError as e:
        log_event(logger, "extraction.unsupported_input", level=logging.WARNING, reason=str(e))
        result = empty_result("error", error=str(e))
        score = 0.0
    except Exception as e:  # noqa: BLE001
        log_exception(logger, "extraction.error", path=str(file_path), mime_type=mime_type)
        result = empty_result("error", error=str(e) or e.__class__.__name__)
        score = 0.0
    finally:
        if normalized is not None:
            normalized.cleanup()

    result = result.model_copy(
        update={"overall_confidence": score, "processing_time_ms": monotonic_ms(start)}
    )
    log_event(
        logger,
        "extraction.finish",
        method=result.method,
        overall_confidence=result.overall_confidence,
        page_count=result.page_count,
        error=result.error,
        duration_ms=result.processing_time_ms,
    )
    return result


def process_receipt(
    receipt_id: uuid.UUID | str,
    *,
    manual: bool = False,
    engine: OcrEngine | None = None,
) -> ExtractionResult | None:
    """Run extraction for a stored receipt and record the lifecycle transition.

    Unattended runs (`manual=False`) are refused once the attempts cap is reached
    or the receipt is already processed. Returns None when nothing ran.
    """
    rid = receipt_id if isinstance(receipt_id, uuid.UUID) else uuid.UUID(str(receipt_id))
    token = set_receipt_context(str(rid))
    try:
        with SessionLocal() as session:
            receipt = get_receipt(session, receipt_id=rid)
            if not receipt or not receipt.is_active:
                log_event(logger, "extraction.skipped", reason="receipt_missing")
                return None

            if not manual:
                if receipt.status == ReceiptStatus.PROCESSED:
                    log_event(logger, "extraction.skipped", reason="already_processed")
                    return None
                if attempts_exhausted(receipt):
                    log_event(
                        logger,
                        "extraction.refused",
                        level=logging.WARNING,
                        reason="attempts_exhausted",
                        attempts=receipt.attempts,
                    )
                    return None

            mark_processing(session, receipt=receipt)
            try:
                result = extract(receipt.file_path, receipt.mime_type, engine=engine)
            except Exception as e:  # noqa: BLE001
                log_exception(logger, "extraction.pipeline.error")
                result = empty_result("error", error=str(e) or e.__class__.__name__)

            if result.method == "error":
                mark_failed(
                    session,
                    receipt=receipt,
                    message=result.error or "Extraction failed",
                    result=result,
                )
            else:
                mark_processed(session, receipt=receipt, result=result)
            return result
    finally:
        reset_receipt_context(token)


def reprocess_receipt(
    receipt_id: uuid.UUID | str, *, engine: OcrEngine | None = None
) -> ExtractionResult | None:
    rid = receipt_id if isinstance(receipt_id, uuid.UUID) else uuid.UUID(str(receipt_id))
    with SessionLocal() as session:
        receipt = get_receipt(session, receipt_id=rid)
        if not receipt or not receipt.is_active:
            return None
        reset_for_reprocess(session, receipt=receipt)
    return process_receipt(rid, manual=True, engine=engine)


def process_pending_receipts(
    *, limit: int | None = None, engine: OcrEngine | None = None
) -> list[uuid.UUID]:
    with SessionLocal() as session:
        pending = [r.id for r in list_receipts_needing_processing(session, limit=limit)]
    processed: list[uuid.UUID] = []
    for rid in pending:
        if process_receipt(rid, engine=engine) is not None:
            processed.append(rid)
    log_event(logger, "extraction.sweep", pending=len(pending), processed=len(processed))
    return processed
