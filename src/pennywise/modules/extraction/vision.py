from __future__ import annotations

import base64
import json
import re
import time
from datetime import date
from pathlib import Path
from typing import Any

import httpx

from pennywise.core.config import settings
from pennywise.core.logging import get_logger, log_event, monotonic_ms
from pennywise.modules.extraction.errors import VisionExtractionError
from pennywise.modules.extraction.normalizer import NormalizedPage
from pennywise.modules.extraction.schemas import (
    CATEGORY_LABELS,
    PAYMENT_METHODS,
    ExtractedField,
    ExtractionResult,
    LineItem,
    clamp_confidence,
    empty_result,
)

logger = get_logger(__name__)

VISION_PROMPT_VERSION = "receipt-fields/2"
MAX_VISION_ITEMS = 50
# Used when the model omits its own top-level score.
DEFAULT_MODEL_CONFIDENCE = 0.8

_CATEGORY_ALIASES = {
    "food & dining": "food_dining",
    "food and dining": "food_dining",
    "dining": "food_dining",
    "grocery": "groceries",
    "transport": "transportation",
}

_PAYMENT_ALIASES = {
    "credit": "credit_card",
    "card": "credit_card",
    "debit": "debit_card",
    "wallet": "digital_wallet",
    "mobile_wallet": "digital_wallet",
}

_SYSTEM_PROMPT = (
    "You extract structured data from photos and scans of retail receipts.\n"
    "Only use information visible on the receipt. Never guess.\n"
    "Return JSON only."
)

_USER_PROMPT = (
    "Analyze this receipt image and extract the following information. "
    "Return ONLY a valid JSON object with this exact structure:\n"
    "{\n"
    '  "merchantName": {"value": string|null, "confidence": number},\n'
    '  "totalAmount": {"value": number|null, "confidence": number},\n'
    '  "date": {"value": "YYYY-MM-DD"|null, "confidence": number},\n'
    '  "items": [{"name": string, "quantity": number|null, "unitPrice": number|null, '
    '"totalPrice": number|null, "confidence": number}],\n'
    '  "taxAmount": {"value": number|null, "confidence": number},\n'
    '  "subtotal": {"value": number|null, "confidence": number},\n'
    '  "category": {"suggested": one_of['
    + "|".join(CATEGORY_LABELS)
    + '], "confidence": number},\n'
    '  "paymentMethod": {"value": one_of['
    + "|".join(PAYMENT_METHODS)
    + '], "confidence": number},\n'
    '  "rawText": string,\n'
    '  "confidence": number\n'
    "}\n\n"
    "Rules:\n"
    "- Every confidence is a number between 0 and 1 reflecting text clarity and certainty.\n"
    "- totalAmount is the final amount charged, not a subtotal.\n"
    "- Convert dates to YYYY-MM-DD.\n"
    "- Suggest the category from the merchant and the purchased items.\n"
    "- If a field is unclear or missing, set its value to null and its confidence to 0.\n"
    "- rawText holds all text you can read on the receipt.\n"
    "- Return ONLY the JSON, no explanations or code fences."
)


def _scored(value_schema: dict[str, Any], *, key: str = "value") -> dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            key: {"anyOf": [value_schema, {"type": "null"}]},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        },
        "required": [key, "confidence"],
    }


_NULLABLE_NUMBER: dict[str, Any] = {"anyOf": [{"type": "number"}, {"type": "null"}]}

_RECEIPT_FIELDS_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "receipt_fields_extraction",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "merchantName": _scored({"type": "string"}),
                "totalAmount": _scored({"type": "number"}),
                "date": _scored({"type": "string"}),
                "items": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "name": {"type": "string"},
                            "quantity": _NULLABLE_NUMBER,
                            "unitPrice": _NULLABLE_NUMBER,
                            "totalPrice": _NULLABLE_NUMBER,
                            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        },
                        "required": ["name", "quantity", "unitPrice", "totalPrice", "confidence"],
                    },
                },
                "taxAmount": _scored({"type": "number"}),
                "subtotal": _scored({"type": "number"}),
                "category": _scored(
                    {"type": "string", "enum": list(CATEGORY_LABELS)}, key="suggested"
                ),
                "paymentMethod": _scored({"type": "string", "enum": list(PAYMENT_METHODS)}),
                "rawText": {"type": "string"},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": [
                "merchantName",
                "totalAmount",
                "date",
                "items",
                "taxAmount",
                "subtotal",
                "category",
                "paymentMethod",
                "rawText",
                "confidence",
            ],
        },
    },
}


def vision_available() -> bool:
    return bool(settings.receipt_ai_enabled and settings.openai_api_key)


def extract_with_vision(page: NormalizedPage) -> ExtractionResult:
    """Best-effort extraction of receipt fields from one image.

    Raises VisionExtractionError when the service cannot be reached or returns
    no usable reply; an unparseable reply yields an all-zero result instead.
    """
    if not vision_available():
        raise VisionExtractionError("Vision tier is not configured")

    start = time.monotonic()
    image_b64 = base64.b64encode(Path(page.path).read_bytes()).decode("ascii")
    payload = {
        "model": settings.openai_model,
        "temperature": 0,
        "max_tokens": settings.receipt_ai_max_tokens,
        "response_format": _RECEIPT_FIELDS_RESPONSE_FORMAT,
        "messages": [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": _USER_PROMPT},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{page.mime_type};base64,{image_b64}"},
                    },
                ],
            },
        ],
    }

    content = _post_chat_completion(payload)
    result = parse_vision_response(content)
    log_event(
        logger,
        "extraction.vision.response",
        model=settings.openai_model,
        prompt_version=VISION_PROMPT_VERSION,
        chars=len(content),
        tier_confidence=result.tier_confidence,
        duration_ms=monotonic_ms(start),
    )
    return result


def _post_chat_completion(payload: dict[str, Any]) -> str:
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    try:
        resp = _send(url, headers, payload)
    except httpx.HTTPStatusError as e:
        # Some models/endpoints don't support Structured Outputs; fall back to JSON mode.
        if e.response.status_code not in {400, 422}:
            raise VisionExtractionError(
                f"Vision request failed with HTTP {e.response.status_code}"
            ) from e
        log_event(logger, "extraction.vision.json_mode_fallback", status=e.response.status_code)
        try:
            resp = _send(url, headers, {**payload, "response_format": {"type": "json_object"}})
        except httpx.HTTPStatusError as retry_error:
            raise VisionExtractionError(
                f"Vision request failed with HTTP {retry_error.response.status_code}"
            ) from retry_error

    try:
        raw = resp.json()
        msg = raw["choices"][0]["message"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise VisionExtractionError("Vision response envelope is malformed") from e

    if isinstance(msg, dict) and msg.get("refusal"):
        raise VisionExtractionError("Vision model refused the request")
    content = msg.get("content") if isinstance(msg, dict) else None
    if not isinstance(content, str) or not content.strip():
        raise VisionExtractionError("Vision response is empty")
    return content


def _send(url: str, headers: dict[str, str], payload: dict[str, Any]) -> httpx.Response:
    try:
        resp = httpx.post(
            url,
            headers=headers,
            json=payload,
            timeout=float(settings.receipt_ai_timeout_seconds or 30.0),
            follow_redirects=True,
        )
    except httpx.TimeoutException as e:
        raise VisionExtractionError(f"Vision request timed out: {e}") from e
    except httpx.HTTPError as e:
        raise VisionExtractionError(f"Vision request failed: {e}") from e
    resp.raise_for_status()
    return resp


def parse_vision_response(content: str) -> ExtractionResult:
    obj = _parse_json_object(content)
    if not isinstance(obj, dict):
        log_event(logger, "extraction.vision.unparseable", chars=len(content or ""))
        return empty_result("vision", raw_text=content or "")
    return _sanitize_receipt_fields(obj)


def _strip_code_fences(content: str) -> str:
    c = re.sub(r"```(?:json|JSON)?[ \t]*\n?", "", content)
    return c.strip()


def _first_balanced_object(content: str) -> str | None:
    start = content.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(content)):
            ch = content[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return content[start : idx + 1]
        # Unbalanced from here; try the next opening brace.
        start = content.find("{", start + 1)
    return None


def _parse_json_object(content: str) -> Any:
    c = _strip_code_fences(content or "")
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    block = _first_balanced_object(c)
    if block is None:
        return None
    try:
        return json.loads(block)
    except ValueError:
        return None


def _field(obj: dict[str, Any], *names: str) -> dict[str, Any]:
    for name in names:
        val = obj.get(name)
        if isinstance(val, dict):
            return val
    return {}


def _coerce_amount(raw: Any) -> float | None:
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        amount = float(raw)
    elif isinstance(raw, str):
        s = re.sub(r"[^0-9.\-]", "", raw.replace(",", ""))
        if not s:
            return None
        try:
            amount = float(s)
        except ValueError:
            return None
    else:
        return None
    if amount != amount or amount <= 0:
        return None
    return round(amount, 2)


def _text_value(field: dict[str, Any], key: str = "value") -> ExtractedField[str]:
    raw = field.get(key)
    if not isinstance(raw, str) or not raw.strip():
        return ExtractedField[str]()
    return ExtractedField[str](value=raw.strip()[:100], confidence=field.get("confidence"))


def _amount_value(field: dict[str, Any]) -> ExtractedField[float]:
    amount = _coerce_amount(field.get("value"))
    if amount is None:
        return ExtractedField[float]()
    return ExtractedField[float](value=amount, confidence=field.get("confidence"))


def _date_value(field: dict[str, Any]) -> ExtractedField[date]:
    raw = field.get("value")
    if not isinstance(raw, str):
        return ExtractedField[date]()
    try:
        d = date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return ExtractedField[date]()
    return ExtractedField[date](value=d, confidence=field.get("confidence"))


def _label_value(
    field: dict[str, Any],
    *,
    keys: tuple[str, ...],
    allowed: tuple[str, ...],
    aliases: dict[str, str],
) -> ExtractedField[str]:
    raw = None
    for key in keys:
        if isinstance(field.get(key), str):
            raw = field[key]
            break
    if raw is None:
        return ExtractedField[str](value="other", confidence=0.0)
    label = raw.strip().lower()
    label = aliases.get(label, label).replace(" ", "_")
    if label not in allowed:
        return ExtractedField[str](value="other", confidence=0.0)
    return ExtractedField[str](value=label, confidence=field.get("confidence"))


def _items(raw: Any) -> list[LineItem]:
    if not isinstance(raw, list):
        return []
    items: list[LineItem] = []
    for entry in raw[:MAX_VISION_ITEMS]:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        total_price = _coerce_amount(entry.get("totalPrice", entry.get("price")))
        unit_price = _coerce_amount(entry.get("unitPrice"))
        quantity = _coerce_amount(entry.get("quantity"))
        items.append(
            LineItem(
                name=name.strip()[:100],
                quantity=quantity,
                unit_price=unit_price if unit_price is not None else total_price,
                total_price=total_price,
                confidence=entry.get("confidence"),
            )
        )
    return items


def _sanitize_receipt_fields(obj: dict[str, Any]) -> ExtractionResult:
    raw_text = obj.get("rawText")
    tier_conf = obj.get("confidence")
    return ExtractionResult(
        merchant_name=_text_value(_field(obj, "merchantName", "merchant_name")),
        total_amount=_amount_value(_field(obj, "totalAmount", "total_amount")),
        date=_date_value(_field(obj, "date")),
        items=_items(obj.get("items")),
        tax_amount=_amount_value(_field(obj, "taxAmount", "tax_amount")),
        subtotal=_amount_value(_field(obj, "subtotal")),
        suggested_category=_label_value(
            _field(obj, "category", "suggestedCategory"),
            keys=("suggested", "value"),
            allowed=CATEGORY_LABELS,
            aliases=_CATEGORY_ALIASES,
        ),
        payment_method=_label_value(
            _field(obj, "paymentMethod", "payment_method"),
            keys=("value",),
            allowed=PAYMENT_METHODS,
            aliases=_PAYMENT_ALIASES,
        ),
        raw_text=raw_text.strip() if isinstance(raw_text, str) else "",
        tier_confidence=(
            clamp_confidence(tier_conf) if tier_conf is not None else DEFAULT_MODEL_CONFIDENCE
        ),
        method="vision",
        page_count=1,
    )
