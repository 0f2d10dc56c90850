from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pennywise.core.models import Base, Timestamped, UUIDPrimaryKey
from pennywise.modules.extraction.schemas import Correction, ExtractionResult


class ReceiptStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class Receipt(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "receipts_receipt"

    filename: Mapped[str] = mapped_column(String(512))
    original_name: Mapped[str] = mapped_column(String(512))
    file_path: Mapped[str] = mapped_column(String(1024))
    mime_type: Mapped[str] = mapped_column(String(100))
    byte_size: Mapped[int] = mapped_column(Integer)

    status: Mapped[ReceiptStatus] = mapped_column(
        Enum(ReceiptStatus, native_enum=False), index=True, default=ReceiptStatus.UPLOADED
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    extraction_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    extraction_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    overall_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    corrections_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    @property
    def extraction(self) -> ExtractionResult | None:
        if not self.extraction_json:
            return None
        return ExtractionResult.model_validate(self.extraction_json)

    @property
    def corrections(self) -> Correction | None:
        if not self.corrections_json:
            return None
        return Correction.model_validate(self.corrections_json)
