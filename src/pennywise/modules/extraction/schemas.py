from __future__ import annotations

import datetime as dt
import uuid
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")

ExtractionMethod = Literal["vision", "heuristic", "error"]

CATEGORY_LABELS: tuple[str, ...] = (
    "groceries",
    "food_dining",
    "transportation",
    "shopping",
    "healthcare",
    "entertainment",
    "utilities",
    "other",
)

PAYMENT_METHODS: tuple[str, ...] = (
    "cash",
    "credit_card",
    "debit_card",
    "digital_wallet",
    "other",
)


def clamp_confidence(raw: object) -> float:
    try:
        conf = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if conf != conf:  # NaN
        return 0.0
    if conf < 0.0:
        return 0.0
    if conf > 1.0:
        return 1.0
    return conf


class ExtractedField(BaseModel, Generic[T]):
    """A recognized value and how much it can be trusted.

    A confidence of 0 means the field is unset: consumers must not use the value
    without explicit user confirmation.
    """

    model_config = ConfigDict(frozen=True)

    value: T | None = None
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: object) -> float:
        return clamp_confidence(v)

    @property
    def is_set(self) -> bool:
        return self.confidence > 0.0


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    quantity: float | None = None
    unit_price: float | None = None
    total_price: float | None = None
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: object) -> float:
        return clamp_confidence(v)


class ExtractionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    merchant_name: ExtractedField[str] = Field(default_factory=ExtractedField[str])
    total_amount: ExtractedField[float] = Field(default_factory=ExtractedField[float])
    date: ExtractedField[dt.date] = Field(default_factory=ExtractedField[dt.date])
    items: list[LineItem] = Field(default_factory=list)
    tax_amount: ExtractedField[float] = Field(default_factory=ExtractedField[float])
    subtotal: ExtractedField[float] = Field(default_factory=ExtractedField[float])
    suggested_category: ExtractedField[str] = Field(
        default_factory=lambda: ExtractedField[str](value="other", confidence=0.0)
    )
    payment_method: ExtractedField[str] = Field(
        default_factory=lambda: ExtractedField[str](value="other", confidence=0.0)
    )

    raw_text: str = ""
    overall_confidence: float = 0.0
    tier_confidence: float = 0.0
    method: ExtractionMethod
    processing_time_ms: int = 0
    page_count: int = 0
    error: str | None = None

    @field_validator("overall_confidence", "tier_confidence", mode="before")
    @classmethod
    def _clamp(cls, v: object) -> float:
        return clamp_confidence(v)


def empty_result(
    method: ExtractionMethod, *, raw_text: str = "", error: str | None = None
) -> ExtractionResult:
    return ExtractionResult(method=method, raw_text=raw_text, error=error)


class Correction(BaseModel):
    """User overrides kept next to, never merged into, the extraction result."""

    merchant_name: str | None = None
    total_amount: float | None = None
    date: dt.date | None = None
    category: str | None = None
    payment_method: str | None = None
    notes: str | None = None


class TransactionProposal(BaseModel):
    type: Literal["expense"] = "expense"
    amount: float
    description: str
    date: dt.date
    category: str
    payment_method: str
    notes: str
    receipt_id: uuid.UUID
