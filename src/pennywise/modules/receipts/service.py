from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from pennywise.core.config import settings
from pennywise.core.logging import get_logger, log_event
from pennywise.modules.extraction.schemas import Correction, ExtractionResult, TransactionProposal
from pennywise.modules.receipts.models import Receipt, ReceiptStatus

logger = get_logger(__name__)

DEFAULT_DESCRIPTION = "Receipt Transaction"
DEFAULT_CATEGORY = "other"
DEFAULT_PAYMENT_METHOD = "other"


def create_receipt(
    session: Session,
    *,
    file_path: str | Path,
    mime_type: str,
    original_name: str | None = None,
    byte_size: int | None = None,
) -> Receipt:
    path = Path(file_path)
    if byte_size is None:
        byte_size = path.stat().st_size if path.exists() else 0

    receipt = Receipt(
        filename=path.name,
        original_name=original_name or path.name,
        file_path=str(path),
        mime_type=mime_type,
        byte_size=byte_size,
        status=ReceiptStatus.UPLOADED,
        attempts=0,
    )
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    log_event(
        logger,
        "receipt.created",
        receipt_id=str(receipt.id),
        filename=receipt.filename,
        mime_type=mime_type,
        byte_size=byte_size,
    )
    return receipt


def get_receipt(session: Session, *, receipt_id: uuid.UUID) -> Receipt | None:
    return session.scalar(select(Receipt).where(Receipt.id == receipt_id))


def list_receipts_needing_processing(session: Session, *, limit: int | None = None) -> list[Receipt]:
    stmt = (
        select(Receipt)
        .where(
            Receipt.status.in_((ReceiptStatus.UPLOADED, ReceiptStatus.PROCESSING)),
            Receipt.attempts < settings.max_processing_attempts,
            Receipt.is_active.is_(True),
        )
        .order_by(Receipt.created_at.asc())
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(session.scalars(stmt))


def attempts_exhausted(receipt: Receipt) -> bool:
    return receipt.attempts >= settings.max_processing_attempts


def _set_status(session: Session, receipt: Receipt, status: ReceiptStatus, *, reason: str) -> None:
    prev_status = receipt.status
    receipt.status = status
    session.add(receipt)
    if prev_status != status:
        log_event(
            logger,
            "receipt.status.changed",
            receipt_id=str(receipt.id),
            from_status=prev_status.value if prev_status else None,
            to_status=status.value,
            attempts=receipt.attempts,
            reason=reason,
        )


def mark_processing(session: Session, *, receipt: Receipt) -> None:
    _set_status(session, receipt, ReceiptStatus.PROCESSING, reason="extraction_start")
    session.commit()


def mark_processed(session: Session, *, receipt: Receipt, result: ExtractionResult) -> None:
    receipt.extraction_json = result.model_dump(mode="json")
    receipt.extraction_method = result.method
    receipt.overall_confidence = result.overall_confidence
    receipt.processed_at = datetime.now(UTC)
    _set_status(session, receipt, ReceiptStatus.PROCESSED, reason="extraction_complete")
    session.commit()


def mark_failed(
    session: Session,
    *,
    receipt: Receipt,
    message: str,
    result: ExtractionResult | None = None,
) -> None:
    if result is not None:
        receipt.extraction_json = result.model_dump(mode="json")
        receipt.extraction_method = result.method
        receipt.overall_confidence = result.overall_confidence
    receipt.attempts = min(receipt.attempts + 1, settings.max_processing_attempts)
    receipt.last_error_message = message or "Unknown error"
    receipt.last_error_at = datetime.now(UTC)
    _set_status(session, receipt, ReceiptStatus.FAILED, reason="extraction_error")
    session.commit()


def reset_for_reprocess(session: Session, *, receipt: Receipt) -> None:
    receipt.extraction_json = None
    receipt.extraction_method = None
    receipt.overall_confidence = 0.0
    receipt.processed_at = None
    receipt.attempts = 0
    receipt.last_error_message = None
    receipt.last_error_at = None
    _set_status(session, receipt, ReceiptStatus.UPLOADED, reason="reprocess_requested")
    session.commit()


def save_corrections(session: Session, *, receipt: Receipt, correction: Correction) -> Receipt:
    receipt.corrections_json = correction.model_dump(mode="json", exclude_none=True)
    session.add(receipt)
    session.commit()
    log_event(
        logger,
        "receipt.corrections.saved",
        receipt_id=str(receipt.id),
        fields=sorted(receipt.corrections_json),
    )
    return receipt


def propose_transaction(receipt: Receipt, *, today: date | None = None) -> TransactionProposal:
    """Fields for the transaction-creation step.

    Corrections win over extracted values regardless of confidence; extracted
    values with zero confidence are treated as absent.
    """
    result = receipt.extraction
    corrections = receipt.corrections or Correction()

    def _extracted(field_name: str):
        if result is None:
            return None
        field = getattr(result, field_name)
        return field.value if field.is_set else None

    amount = corrections.total_amount
    if amount is None:
        amount = _extracted("total_amount") or 0.0

    return TransactionProposal(
        amount=amount,
        description=corrections.merchant_name or _extracted("merchant_name") or DEFAULT_DESCRIPTION,
        date=corrections.date or _extracted("date") or today or date.today(),
        category=corrections.category or _extracted("suggested_category") or DEFAULT_CATEGORY,
        payment_method=(
            corrections.payment_method
            or _extracted("payment_method")
            or DEFAULT_PAYMENT_METHOD
        ),
        notes=corrections.notes or f"Imported from receipt: {receipt.original_name}",
        receipt_id=receipt.id,
    )
