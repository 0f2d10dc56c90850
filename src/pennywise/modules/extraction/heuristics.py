from __future__ import annotations

import time
from collections.abc import Sequence
from datetime import date

from pennywise.core.logging import get_logger, log_event, monotonic_ms
from pennywise.modules.extraction.normalizer import NormalizedPage
from pennywise.modules.extraction.ocr import OcrEngine, get_ocr_engine
from pennywise.modules.extraction.parsers.receipt_text import (
    extract_date,
    extract_line_items,
    extract_merchant_name,
    extract_payment_method,
    extract_tax_amount,
    extract_total_amount,
    suggest_category,
)
from pennywise.modules.extraction.schemas import ExtractionResult, empty_result

logger = get_logger(__name__)


def parse_receipt_text(text: str, *, today: date | None = None) -> ExtractionResult:
    """Run every field recognizer over recovered receipt text.

    Pure function of `text` and `today`: the same input always yields the same
    values and confidences.
    """
    if not text or not text.strip():
        return empty_result("heuristic", raw_text=text or "")

    return ExtractionResult(
        merchant_name=extract_merchant_name(text),
        total_amount=extract_total_amount(text),
        date=extract_date(text, today=today),
        items=extract_line_items(text),
        tax_amount=extract_tax_amount(text),
        suggested_category=suggest_category(text),
        payment_method=extract_payment_method(text),
        raw_text=text.strip(),
        method="heuristic",
    )


def extract_with_heuristics(
    pages: Sequence[NormalizedPage],
    *,
    engine: OcrEngine | None = None,
    today: date | None = None,
) -> ExtractionResult:
    engine = engine or get_ocr_engine()
    start = time.monotonic()

    texts: list[str] = []
    confidences: list[float] = []
    # Pages are recognized one at a time, in page order.
    with engine.session() as ocr:
        for page in sorted(pages, key=lambda p: p.page_number):
            result = ocr.recognize(page.path)
            texts.append(result.text)
            confidences.append(result.confidence)

    combined = "\n".join(texts).strip()
    tier_confidence = (sum(confidences) / len(confidences) / 100.0) if confidences else 0.0

    log_event(
        logger,
        "extraction.heuristic.ocr",
        page_count=len(texts),
        chars=len(combined),
        tier_confidence=round(tier_confidence, 3),
        duration_ms=monotonic_ms(start),
    )

    if not combined:
        return empty_result("heuristic").model_copy(update={"page_count": len(texts)})

    parsed = parse_receipt_text(combined, today=today)
    return parsed.model_copy(
        update={"tier_confidence": min(1.0, tier_confidence), "page_count": len(texts)}
    )
