from __future__ import annotations

import json
from datetime import date

import httpx
import pytest

from pennywise.modules.extraction.errors import VisionExtractionError
from pennywise.modules.extraction.normalizer import NormalizedPage
from pennywise.modules.extraction.vision import parse_vision_response

FULL_REPLY = {
    "merchantName": {"value": "Cafe Luna", "confidence": 0.92},
    "totalAmount": {"value": "$1,234.50", "confidence": 0.88},
    "date": {"value": "2024-01-15", "confidence": 0.9},
    "items": [
        {"name": "Flat White", "quantity": 2, "unitPrice": 4.5, "totalPrice": 9.0, "confidence": 0.8},
        {"name": "", "totalPrice": 3.0},
        "not-an-item",
    ],
    "taxAmount": {"value": 0.75, "confidence": 0.7},
    "subtotal": {"value": 8.25, "confidence": 0.7},
    "category": {"suggested": "Food & Dining", "confidence": 0.85},
    "paymentMethod": {"value": "credit", "confidence": 1.7},
    "rawText": "  CAFE LUNA\nFlat White 9.00  ",
    "confidence": 0.9,
}


def test_parses_plain_json_reply():
    result = parse_vision_response(json.dumps(FULL_REPLY))

    assert result.method == "vision"
    assert result.merchant_name.value == "Cafe Luna"
    assert result.total_amount.value == 1234.5
    assert result.date.value == date(2024, 1, 15)
    assert result.tax_amount.value == 0.75
    assert result.subtotal.value == 8.25
    assert result.suggested_category.value == "food_dining"
    assert result.payment_method.value == "credit_card"
    # Model-reported scores are kept, only clamped into [0, 1].
    assert result.payment_method.confidence == 1.0
    assert result.merchant_name.confidence == 0.92
    assert result.raw_text == "CAFE LUNA\nFlat White 9.00"
    assert result.tier_confidence == 0.9

    assert len(result.items) == 1
    item = result.items[0]
    assert item.name == "Flat White"
    assert item.quantity == 2
    assert item.total_price == 9.0


def test_strips_code_fences():
    content = "```json\n" + json.dumps(FULL_REPLY) + "\n```"
    result = parse_vision_response(content)
    assert result.merchant_name.value == "Cafe Luna"


def test_finds_first_balanced_object_in_prose():
    content = (
        'Sure! Here is the data: {"merchantName": {"value": "Brace {Shop}", "confidence": 0.6}, '
        '"totalAmount": {"value": 12.99, "confidence": 0.8}} Let me know if you need more.'
    )
    result = parse_vision_response(content)
    assert result.merchant_name.value == "Brace {Shop}"
    assert result.total_amount.value == 12.99


def test_unparseable_reply_yields_empty_result():
    result = parse_vision_response("I'm sorry, I cannot read this receipt.")
    assert result.method == "vision"
    assert result.merchant_name.value is None
    assert result.merchant_name.confidence == 0.0
    assert result.total_amount.confidence == 0.0
    assert result.suggested_category.value == "other"
    assert result.raw_text.startswith("I'm sorry")


def test_missing_fields_are_coerced_to_zero_confidence():
    result = parse_vision_response('{"merchantName": {"value": "Cafe Luna", "confidence": 0.9}}')
    assert result.merchant_name.value == "Cafe Luna"
    assert result.total_amount.value is None
    assert result.total_amount.confidence == 0.0
    assert result.date.confidence == 0.0
    assert result.suggested_category.value == "other"
    assert result.suggested_category.confidence == 0.0
    assert result.items == []
    assert result.tier_confidence == 0.8


def test_invalid_values_are_dropped():
    reply = {
        "merchantName": {"value": "   ", "confidence": 0.9},
        "totalAmount": {"value": -5, "confidence": 0.9},
        "date": {"value": "15th of January", "confidence": 0.9},
        "category": {"suggested": "pets", "confidence": 0.9},
        "paymentMethod": {"value": "credit", "confidence": "-0.2"},
    }
    result = parse_vision_response(json.dumps(reply))
    assert result.merchant_name.confidence == 0.0
    assert result.total_amount.value is None
    assert result.date.value is None
    assert result.suggested_category.value == "other"
    assert result.suggested_category.confidence == 0.0
    assert result.payment_method.value == "credit_card"
    assert result.payment_method.confidence == 0.0


def test_unconfigured_tier_refuses_to_run(tmp_path):
    from pennywise.modules.extraction.vision import extract_with_vision, vision_available

    assert not vision_available()
    page = NormalizedPage(path=tmp_path / "x.png", mime_type="image/png", page_number=1)
    with pytest.raises(VisionExtractionError):
        extract_with_vision(page)


def _chat_response(status_code: int, body: dict) -> httpx.Response:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return httpx.Response(status_code, json=body, request=request)


def test_extract_with_vision_posts_image(monkeypatch, enable_vision, make_image):
    from pennywise.modules.extraction import vision

    calls: list[dict] = []

    def _post(url, **kwargs):
        calls.append({"url": url, **kwargs})
        content = "```json\n" + json.dumps(FULL_REPLY) + "\n```"
        return _chat_response(200, {"choices": [{"message": {"content": content}}]})

    monkeypatch.setattr(vision.httpx, "post", _post)

    page = NormalizedPage(path=make_image(), mime_type="image/png", page_number=1)
    result = vision.extract_with_vision(page)

    assert result.total_amount.value == 1234.5
    assert len(calls) == 1
    assert calls[0]["url"].endswith("/chat/completions")
    assert calls[0]["headers"]["Authorization"] == "Bearer sk-test"
    image_part = calls[0]["json"]["messages"][1]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/png;base64,")
    response_format = calls[0]["json"]["response_format"]
    assert response_format["type"] == "json_schema"
    assert response_format["json_schema"]["strict"] is True
    schema = response_format["json_schema"]["schema"]
    assert schema["additionalProperties"] is False
    assert {"merchantName", "totalAmount", "items", "confidence"} <= set(schema["required"])
    suggested = schema["properties"]["category"]["properties"]["suggested"]
    assert "food_dining" in suggested["anyOf"][0]["enum"]


@pytest.mark.parametrize("status_code", [400, 422])
def test_rejected_structured_output_retries_in_json_mode(
    monkeypatch, enable_vision, make_image, status_code
):
    from pennywise.modules.extraction import vision

    calls: list[dict] = []

    def _post(url, **kwargs):
        calls.append(kwargs["json"])
        if len(calls) == 1:
            return _chat_response(status_code, {"error": {"message": "response_format unsupported"}})
        return _chat_response(200, {"choices": [{"message": {"content": json.dumps(FULL_REPLY)}}]})

    monkeypatch.setattr(vision.httpx, "post", _post)

    page = NormalizedPage(path=make_image(), mime_type="image/png", page_number=1)
    result = vision.extract_with_vision(page)

    assert result.total_amount.value == 1234.5
    assert len(calls) == 2
    assert calls[0]["response_format"]["type"] == "json_schema"
    assert calls[1]["response_format"] == {"type": "json_object"}


def test_json_mode_retry_failure_raises(monkeypatch, enable_vision, make_image):
    from pennywise.modules.extraction import vision

    calls: list[dict] = []

    def _post(url, **kwargs):
        calls.append(kwargs["json"])
        return _chat_response(400, {"error": {"message": "bad request"}})

    monkeypatch.setattr(vision.httpx, "post", _post)

    page = NormalizedPage(path=make_image(), mime_type="image/png", page_number=1)
    with pytest.raises(VisionExtractionError, match="HTTP 400"):
        vision.extract_with_vision(page)
    assert len(calls) == 2


@pytest.mark.parametrize(
    "response",
    [
        _chat_response(429, {"error": {"message": "quota"}}),
        _chat_response(200, {"unexpected": True}),
        _chat_response(200, {"choices": [{"message": {"content": "", "refusal": None}}]}),
        _chat_response(200, {"choices": [{"message": {"content": None, "refusal": "no"}}]}),
    ],
)
def test_service_failures_raise(monkeypatch, enable_vision, make_image, response):
    from pennywise.modules.extraction import vision

    monkeypatch.setattr(vision.httpx, "post", lambda *_a, **_kw: response)

    page = NormalizedPage(path=make_image(), mime_type="image/png", page_number=1)
    with pytest.raises(VisionExtractionError):
        vision.extract_with_vision(page)


def test_timeout_raises(monkeypatch, enable_vision, make_image):
    from pennywise.modules.extraction import vision

    def _post(*_args, **_kwargs):
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(vision.httpx, "post", _post)

    page = NormalizedPage(path=make_image(), mime_type="image/png", page_number=1)
    with pytest.raises(VisionExtractionError, match="timed out"):
        vision.extract_with_vision(page)
