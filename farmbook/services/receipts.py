"""
Receipt Scanner - Reads date, total, store, items and a suggested expense
category from a receipt photo with a vision model, then matches the
suggestion to one of the user's expense categories.
"""

import base64
import binascii
import json
import re
from dataclasses import replace
from typing import Any

from structlog import get_logger

from farmbook.exceptions import ExternalErrorKind, ExternalServiceError, InvalidInputError
from farmbook.models.domain import ExpenseCategoryRef, ReceiptData
from farmbook.services.openai_service import OpenAIService

logger = get_logger(__name__)

# Offered to the model when the user has no categories of their own
DEFAULT_EXPENSE_CATEGORIES: tuple[str, ...] = (
    "販管費", "種苗費", "肥料費", "農薬費", "諸材料費", "労務費", "雑給", "法定福利費",
    "作業衣服費", "作業委託費", "貸借料", "農地賃借料", "共済仕掛け金", "修繕費",
    "動力光熱費", "消耗品", "車両費", "燃料費", "保険費", "機械等経費",
    "機械等減価償却費", "雑費", "租税公課", "土地改良費", "旅費交通費", "広告宣伝費",
    "支払い手数料", "荷造運賃", "梱包資材費",
)

DEFAULT_IMAGE_MEDIA_TYPE = "image/jpeg"
_DATA_URL = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.DOTALL)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

MAX_TOKENS = 300
TEMPERATURE = 0.1


def build_receipt_prompt(category_names: list[str]) -> str:
    """Extraction instructions listing the categories the model may choose from."""
    categories = ",".join(category_names or DEFAULT_EXPENSE_CATEGORIES)
    return (
        "Extract the following fields from this Japanese receipt image and reply with "
        "a single JSON object only, no explanation.\n"
        "- date: purchase date as YYYY-MM-DD, or null\n"
        "- amount: tax-inclusive total as a number, or null\n"
        "- store_name: store name, or null\n"
        "- items: up to five main items, comma separated, or null\n"
        "- category: the single best match from this list of farm expense categories\n"
        f"Categories: {categories}\n"
        "Hints: the total is usually next to 合計, 計 or TOTAL; the date is usually near "
        "the top. Read as much as possible even if the image is blurry.\n"
        'Example: {"date":"2024-01-15","amount":5000,"store_name":"○○農業資材店",'
        '"items":"肥料,培養土","category":"肥料費"}'
    )


def normalize_image(image_base64: str, max_bytes: int) -> str:
    """
    Validate a base64 image (raw or data: URL) and return it as a data URL.

    Raises:
        InvalidInputError: empty, not base64, or larger than max_bytes
    """
    value = image_base64.strip()
    if not value:
        raise InvalidInputError("image is empty")

    media_type = DEFAULT_IMAGE_MEDIA_TYPE
    payload = value
    if value.startswith("data:"):
        match = _DATA_URL.match(value)
        if match is None:
            raise InvalidInputError("image must be a base64 data URL of an image type")
        media_type, payload = match.group(1), match.group(2)

    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError("image is not valid base64") from exc

    if not decoded:
        raise InvalidInputError("image is empty")
    if len(decoded) > max_bytes:
        raise InvalidInputError(
            f"image is {len(decoded)} bytes; the limit is {max_bytes} bytes"
        )

    return f"data:{media_type};base64,{payload}"


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        value = ",".join(str(v) for v in value if v)
    text = str(value).strip()
    return text or None


def _amount(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value))
    digits = re.sub(r"[^\d.]", "", str(value))
    if not digits:
        return None
    try:
        return int(round(float(digits)))
    except ValueError:
        return None


def _unreadable() -> ExternalServiceError:
    return ExternalServiceError(
        "openai", ExternalErrorKind.TRANSIENT, "Could not read the receipt; try another photo."
    )


def parse_receipt_reply(reply: str) -> ReceiptData:
    """
    Pull the first JSON object out of the model's reply.

    Raises:
        ExternalServiceError: no parseable object in the reply
    """
    match = _JSON_OBJECT.search(reply)
    if match is None:
        raise _unreadable()
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise _unreadable() from exc
    if not isinstance(data, dict):
        raise _unreadable()

    return ReceiptData(
        date=_text(data.get("date")),
        amount=_amount(data.get("amount")),
        store_name=_text(data.get("store_name") or data.get("storeName")),
        items=_text(data.get("items")),
        category=_text(data.get("category")),
    )


def match_category(
    suggestion: str | None, categories: list[ExpenseCategoryRef]
) -> ExpenseCategoryRef | None:
    """
    Exact name match first, then the first category whose name contains the
    suggestion or is contained in it.
    """
    if not suggestion:
        return None
    for category in categories:
        if category.name == suggestion:
            return category
    for category in categories:
        if suggestion in category.name or category.name in suggestion:
            return category
    return None


class ReceiptScanner:
    """Vision-model receipt reader."""

    def __init__(self, openai_service: OpenAIService) -> None:
        self.openai_service = openai_service

    async def scan(self, image_data_url: str, categories: list[ExpenseCategoryRef]) -> ReceiptData:
        """Read a receipt and attach the matching expense category, if any."""
        prompt = build_receipt_prompt([c.name for c in categories])
        reply = await self.openai_service.complete(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_data_url}},
                    ],
                }
            ],
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
            operation="receipt_scan",
        )
        receipt = parse_receipt_reply(reply)
        matched = match_category(receipt.category, categories)
        if receipt.category and matched is None:
            logger.info("receipt_category_unmatched", suggestion=receipt.category)
        return replace(receipt, matched_category=matched)
