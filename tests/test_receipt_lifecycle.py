from __future__ import annotations

from datetime import date

from PIL import Image

from pennywise.core.db import SessionLocal
from pennywise.modules.extraction.ocr import OcrEngine, OcrPage, set_ocr_engine
from pennywise.modules.extraction.schemas import Correction
from pennywise.modules.extraction.service import process_receipt, reprocess_receipt
from pennywise.modules.receipts.models import ReceiptStatus
from pennywise.modules.receipts.service import (
    create_receipt,
    get_receipt,
    list_receipts_needing_processing,
    propose_transaction,
    save_corrections,
)


class _StaticEngine(OcrEngine):
    def recognize(self, path):
        return OcrPage(text="STARBUCKS\nTOTAL $12.99\nVISA **** 4242", confidence=85.0)


def _create(path, mime_type="image/png"):
    with SessionLocal() as session:
        return create_receipt(session, file_path=path, mime_type=mime_type).id


def _load(receipt_id):
    with SessionLocal() as session:
        return get_receipt(session, receipt_id=receipt_id)


def test_successful_extraction_marks_processed(make_image):
    set_ocr_engine(_StaticEngine())
    receipt_id = _create(make_image())

    result = process_receipt(receipt_id)
    assert result is not None
    assert result.method == "heuristic"

    receipt = _load(receipt_id)
    assert receipt.status == ReceiptStatus.PROCESSED
    assert receipt.attempts == 0
    assert receipt.extraction_method == "heuristic"
    assert receipt.overall_confidence == result.overall_confidence
    assert receipt.processed_at is not None
    assert receipt.extraction.total_amount.value == 12.99


def test_failed_extraction_records_error_and_counts_attempt(tmp_path):
    empty = tmp_path / "empty.png"
    empty.write_bytes(b"")
    receipt_id = _create(empty)

    result = process_receipt(receipt_id)
    assert result.method == "error"

    receipt = _load(receipt_id)
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.attempts == 1
    assert receipt.last_error_message == "File is empty"
    assert receipt.last_error_at is not None
    assert receipt.extraction_method == "error"


def test_attempts_are_capped(tmp_path):
    empty = tmp_path / "empty.png"
    empty.write_bytes(b"")
    receipt_id = _create(empty)

    for _ in range(3):
        assert process_receipt(receipt_id) is not None

    # Unattended retries stop at the cap.
    assert process_receipt(receipt_id) is None
    receipt = _load(receipt_id)
    assert receipt.attempts == 3
    assert receipt.status == ReceiptStatus.FAILED


def test_reprocess_resets_and_reruns(tmp_path):
    set_ocr_engine(_StaticEngine())
    path = tmp_path / "late.png"
    path.write_bytes(b"")
    receipt_id = _create(path)
    for _ in range(3):
        process_receipt(receipt_id)
    assert _load(receipt_id).attempts == 3

    Image.new("RGB", (400, 600), color=(250, 250, 250)).save(path, format="PNG")
    result = reprocess_receipt(receipt_id)

    assert result is not None
    assert result.method == "heuristic"
    receipt = _load(receipt_id)
    assert receipt.status == ReceiptStatus.PROCESSED
    assert receipt.attempts == 0
    assert receipt.last_error_message is None


def test_processed_receipts_are_skipped_unless_manual(make_image):
    set_ocr_engine(_StaticEngine())
    receipt_id = _create(make_image())
    first = process_receipt(receipt_id)

    assert process_receipt(receipt_id) is None
    again = process_receipt(receipt_id, manual=True)
    assert again is not None
    assert again.total_amount == first.total_amount


def test_needing_processing_query(tmp_path, make_image):
    set_ocr_engine(_StaticEngine())
    pending_id = _create(make_image("pending.png"))
    done_id = _create(make_image("done.png"))
    process_receipt(done_id)

    with SessionLocal() as session:
        ids = [r.id for r in list_receipts_needing_processing(session)]
    assert ids == [pending_id]


def test_process_pending_receipts_sweeps_uploaded(make_image):
    from pennywise.modules.extraction.service import process_pending_receipts

    set_ocr_engine(_StaticEngine())
    first = _create(make_image("a.png"))
    second = _create(make_image("b.png"))

    processed = process_pending_receipts()
    assert sorted(processed) == sorted([first, second])
    assert _load(first).status == ReceiptStatus.PROCESSED


def test_missing_receipt_is_ignored():
    import uuid

    assert process_receipt(uuid.uuid4()) is None
    assert reprocess_receipt(str(uuid.uuid4())) is None


def test_corrections_take_precedence_in_proposal(make_image):
    set_ocr_engine(_StaticEngine())
    receipt_id = _create(make_image("coffee.png"))
    process_receipt(receipt_id)

    with SessionLocal() as session:
        receipt = get_receipt(session, receipt_id=receipt_id)
        save_corrections(
            session,
            receipt=receipt,
            correction=Correction(total_amount=15.0, category="shopping"),
        )

    receipt = _load(receipt_id)
    proposal = propose_transaction(receipt, today=date(2024, 2, 1))
    assert proposal.type == "expense"
    assert proposal.amount == 15.0
    assert proposal.category == "shopping"
    assert proposal.description == "STARBUCKS"
    assert proposal.payment_method == "credit_card"
    # The extracted date had zero confidence, so it is not trusted.
    assert proposal.date == date(2024, 2, 1)
    assert proposal.notes == "Imported from receipt: coffee.png"
    assert proposal.receipt_id == receipt_id

    # Corrections sit beside the extraction; they never overwrite it.
    assert receipt.extraction.total_amount.value == 12.99


def test_proposal_defaults_without_extraction(make_image):
    receipt_id = _create(make_image("unread.png"))

    proposal = propose_transaction(_load(receipt_id), today=date(2024, 3, 5))
    assert proposal.amount == 0.0
    assert proposal.description == "Receipt Transaction"
    assert proposal.category == "other"
    assert proposal.payment_method == "other"
    assert proposal.date == date(2024, 3, 5)
