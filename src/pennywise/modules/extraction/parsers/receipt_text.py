from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date

from pennywise.modules.extraction.schemas import ExtractedField, LineItem

MERCHANT_SCAN_LINES = 5
MAX_AMOUNT = 10_000.0
MAX_ITEM_PRICE = 1_000.0
MAX_TAX = 1_000.0
MAX_ITEMS = 20
TAX_CONFIDENCE = 0.8

# Order matters: earlier patterns are more specific and score higher.
# "subtotal" and "sub total" never count as the total keyword.
AMOUNT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?<!sub)(?<!sub )\btotal[:\s]*\$?\s*(\d[\d,]*\.?\d{0,2})", re.I),
    re.compile(r"amount[:\s]*\$?\s*(\d[\d,]*\.?\d{0,2})", re.I),
    re.compile(r"balance[:\s]*\$?\s*(\d[\d,]*\.?\d{0,2})", re.I),
    re.compile(r"\$\s*(\d[\d,]*\.\d{2})\s*$", re.M),
    re.compile(r"(\d[\d,]*\.\d{2})\s*$", re.M),
)

DATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(\d{1,2})[/\-](\d{1,2})[/\-](\d{4}|\d{2})\b"),
    re.compile(r"\b(\d{4})[/\-](\d{1,2})[/\-](\d{1,2})\b"),
    re.compile(
        r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+(\d{1,2}),?\s+(\d{4})\b",
        re.I,
    ),
)

# A trailing percent sign marks a rate, not an amount.
TAX_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"tax[:\s]*\$?\s*(\d+(?:\.\d{1,2})?)(?![\d.]*\s*%)", re.I),
    re.compile(r"hst[:\s]*\$?\s*(\d+(?:\.\d{1,2})?)(?![\d.]*\s*%)", re.I),
    re.compile(r"gst[:\s]*\$?\s*(\d+(?:\.\d{1,2})?)(?![\d.]*\s*%)", re.I),
)

ITEM_LINE_RE = re.compile(r"^(.+?)\s+\$?(\d+\.?\d{0,2})$")

CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("groceries", ("walmart", "target", "kroger", "safeway", "whole foods", "costco", "grocery")),
    ("food_dining", ("mcdonalds", "burger king", "starbucks", "restaurant", "cafe", "pizza")),
    ("transportation", ("shell", "exxon", "bp", "chevron", "gas", "fuel", "uber", "lyft")),
    ("shopping", ("amazon", "mall", "store", "retail")),
    ("healthcare", ("pharmacy", "cvs", "walgreens", "hospital", "clinic")),
)
CATEGORY_MATCH_CONFIDENCE = 0.7
CATEGORY_DEFAULT_CONFIDENCE = 0.3

PAYMENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("credit_card", ("credit", "visa", "mastercard", "amex")),
    ("debit_card", ("debit",)),
    ("cash", ("cash", "change")),
    ("digital_wallet", ("apple pay", "google pay", "paypal")),
)
PAYMENT_MATCH_CONFIDENCE = 0.6
PAYMENT_DEFAULT_CONFIDENCE = 0.1

_SUMMARY_WORDS = ("total", "amount", "subtotal", "tax", "balance")
_ADDRESS_RE = re.compile(r"^\d+\s+[a-z\s]+", re.I)
_DATE_LIKE_RE = re.compile(r"\d{1,4}[/\-]\d{1,4}[/\-]\d{1,4}")
_SUBTOTAL_RE = re.compile(r"sub\s?total")
_MONTHS = {name.lower(): idx for idx, name in enumerate(calendar.month_abbr) if name}


@dataclass(frozen=True)
class _Candidate:
    value: object
    confidence: float


def _best(candidates: list[_Candidate]) -> _Candidate | None:
    # max() keeps the first of equal scores, so earlier patterns win ties.
    if not candidates:
        return None
    return max(candidates, key=lambda c: c.confidence)


def _nonempty_lines(text: str) -> list[str]:
    return [ln.strip() for ln in text.splitlines() if ln.strip()]


def is_likely_merchant_name(line: str) -> bool:
    if not re.search(r"[A-Za-z]", line):
        return False
    if _ADDRESS_RE.search(line):
        return False
    if _DATE_LIKE_RE.search(line):
        return False
    return 3 <= len(line) <= 50


def merchant_confidence(name: str, position: int) -> float:
    confidence = 0.5
    if position < 3:
        confidence += 0.3
    if 5 <= len(name) <= 30:
        confidence += 0.2
    return round(min(confidence, 1.0), 2)


def extract_merchant_name(text: str) -> ExtractedField[str]:
    for idx, line in enumerate(_nonempty_lines(text)[:MERCHANT_SCAN_LINES]):
        if is_likely_merchant_name(line):
            return ExtractedField[str](value=line, confidence=merchant_confidence(line, idx))
    return ExtractedField[str](value=None, confidence=0.0)


def amount_confidence(context: str, pattern_index: int, amount: float) -> float:
    confidence = 0.3
    if pattern_index == 0:
        confidence += 0.4
    lowered = context.lower()
    if "total" in lowered and not _SUBTOTAL_RE.search(lowered):
        confidence += 0.3
    if 1 <= amount <= 500:
        confidence += 0.2
    return round(min(confidence, 1.0), 2)


def _to_amount(raw: str) -> float | None:
    try:
        return round(float(raw.replace(",", "")), 2)
    except ValueError:
        return None


def extract_total_amount(text: str) -> ExtractedField[float]:
    candidates: list[_Candidate] = []
    for idx, pattern in enumerate(AMOUNT_PATTERNS):
        for m in pattern.finditer(text):
            amount = _to_amount(m.group(1))
            if amount is None or not (0 < amount < MAX_AMOUNT):
                continue
            candidates.append(_Candidate(amount, amount_confidence(m.group(0), idx, amount)))

    best = _best(candidates)
    if best is None:
        return ExtractedField[float](value=None, confidence=0.0)
    return ExtractedField[float](value=best.value, confidence=best.confidence)


def _shift_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def is_reasonable_date(d: date, *, today: date) -> bool:
    return _shift_months(today, -12) <= d <= _shift_months(today, 1)


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _parse_date_match(m: re.Match[str], pattern_index: int, *, today: date) -> date | None:
    if pattern_index == 0:
        a, b, raw_year = int(m.group(1)), int(m.group(2)), m.group(3)
        year = int(raw_year)
        if len(raw_year) == 2:
            year += 2000
        # Month-first is the common retail layout; fall back to day-first.
        for month, day in ((a, b), (b, a)):
            d = _safe_date(year, month, day)
            if d and is_reasonable_date(d, today=today):
                return d
        return None
    if pattern_index == 1:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    month = _MONTHS.get(m.group(1).lower()[:3])
    if not month:
        return None
    return _safe_date(int(m.group(3)), month, int(m.group(2)))


def date_confidence(pattern_index: int) -> float:
    confidence = 0.4
    if pattern_index == 0:
        confidence += 0.3
    return round(min(confidence, 1.0), 2)


def extract_date(text: str, *, today: date | None = None) -> ExtractedField[date]:
    today = today or date.today()
    candidates: list[_Candidate] = []
    for idx, pattern in enumerate(DATE_PATTERNS):
        for m in pattern.finditer(text):
            d = _parse_date_match(m, idx, today=today)
            if d is None or not is_reasonable_date(d, today=today):
                continue
            candidates.append(_Candidate(d, date_confidence(idx)))

    best = _best(candidates)
    if best is None:
        return ExtractedField[date](value=today, confidence=0.0)
    return ExtractedField[date](value=best.value, confidence=best.confidence)


def is_likely_total_line(name: str) -> bool:
    lowered = name.lower()
    return any(word in lowered for word in _SUMMARY_WORDS)


def item_confidence(name: str, price: float) -> float:
    confidence = 0.3
    if 3 <= len(name) <= 30:
        confidence += 0.2
    if 0.5 <= price <= 100:
        confidence += 0.2
    return round(min(confidence, 1.0), 2)


def extract_line_items(text: str) -> list[LineItem]:
    items: list[LineItem] = []
    for line in text.splitlines():
        m = ITEM_LINE_RE.match(line.strip())
        if not m:
            continue
        name = m.group(1).strip()
        if not (2 < len(name) < 50):
            continue
        price = _to_amount(m.group(2))
        if price is None or is_likely_total_line(name) or not (0 < price < MAX_ITEM_PRICE):
            continue
        items.append(
            LineItem(
                name=name,
                quantity=1,
                unit_price=price,
                total_price=price,
                confidence=item_confidence(name, price),
            )
        )
        if len(items) >= MAX_ITEMS:
            break
    return items


def extract_tax_amount(text: str) -> ExtractedField[float]:
    for pattern in TAX_PATTERNS:
        m = pattern.search(text)
        if not m:
            continue
        amount = _to_amount(m.group(1))
        if amount is not None and 0 < amount < MAX_TAX:
            return ExtractedField[float](value=amount, confidence=TAX_CONFIDENCE)
    return ExtractedField[float](value=None, confidence=0.0)


def _lookup(
    text: str, table: tuple[tuple[str, tuple[str, ...]], ...]
) -> str | None:
    lowered = text.lower()
    for label, keywords in table:
        if any(k in lowered for k in keywords):
            return label
    return None


def suggest_category(text: str) -> ExtractedField[str]:
    label = _lookup(text, CATEGORY_KEYWORDS)
    if label is None:
        return ExtractedField[str](value="other", confidence=CATEGORY_DEFAULT_CONFIDENCE)
    return ExtractedField[str](value=label, confidence=CATEGORY_MATCH_CONFIDENCE)


def extract_payment_method(text: str) -> ExtractedField[str]:
    label = _lookup(text, PAYMENT_KEYWORDS)
    if label is None:
        return ExtractedField[str](value="other", confidence=PAYMENT_DEFAULT_CONFIDENCE)
    return ExtractedField[str](value=label, confidence=PAYMENT_MATCH_CONFIDENCE)
