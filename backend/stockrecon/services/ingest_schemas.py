from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..errors import ValidationError
from stockrecon.time_utils import normalize_datetime

# Largest value a signed 64-bit INTEGER column holds
_MAX_STORED_INT = 2 ** 63 - 1


def _check_range(number: int) -> int:
    if abs(number) > _MAX_STORED_INT:
        raise ValueError(f"{number} is out of range")
    return number


def _to_float(value: Any, strip: str = ",") -> float | None:
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        for char in strip:
            text = text.replace(char, "")
        if not text:
            return None
        number = float(text)
    if not math.isfinite(number):
        raise ValueError(f"{value!r} is not a finite number")
    return number


def _to_int(value: Any) -> int | None:
    """Whole quantities only; 2.7 is rejected rather than truncated."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return _check_range(value)
    number = _to_float(value)
    if number is None:
        return None
    if not number.is_integer():
        raise ValueError(f"{value!r} is not a whole number")
    return _check_range(int(number))


def _to_cents(value: Any) -> int | None:
    """Money arrives in currency units (12.5, "$1,200.00"); stored as integer cents."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a money amount")
    if isinstance(value, int):
        return _check_range(value * 100)
    number = _to_float(value, strip="$,")
    if number is None:
        return None
    return _check_range(int(round(number * 100)))


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _field(payload: dict, *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] not in (None, ""):
            return payload[key]
    return None


@dataclass
class NormalizedLineItem:
    name: str
    quantity: int
    sku: str | None = None
    unit_price_cents: int | None = None
    line_total_cents: int | None = None

    @classmethod
    def from_payload(cls, raw: Any, index: int = 0) -> "NormalizedLineItem":
        if not isinstance(raw, dict):
            raise ValidationError(f"lineItems[{index}] must be an object")

        name = _to_text(_field(raw, "name", "itemName", "description"))
        if not name:
            raise ValidationError(f"lineItems[{index}].name is required")

        try:
            quantity = _to_int(_field(raw, "qty", "quantity"))
            unit_price = _to_cents(_field(raw, "unitPrice", "rate"))
            line_total = _to_cents(_field(raw, "lineTotal", "amount"))
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError(f"lineItems[{index}] has a non-numeric value: {exc}") from exc

        if quantity is None:
            quantity = 0
        if quantity < 0:
            raise ValidationError(f"lineItems[{index}].qty must not be negative")

        return cls(
            name=name,
            quantity=quantity,
            sku=_to_text(_field(raw, "sku", "itemSku")),
            unit_price_cents=unit_price,
            line_total_cents=line_total,
        )


@dataclass
class NormalizedRecord:
    """
    One invoice/order as delivered by an external source, validated.

    Payload keys (camelCase, as the fetchers emit them): externalId, number,
    date, counterpartyName, lineItems, subtotal, tax, total, status.
    """
    number: str
    external_id: str | None = None
    invoice_date: datetime | None = None
    counterparty_name: str | None = None
    status: str | None = None
    subtotal_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0
    line_items: list[NormalizedLineItem] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Any) -> "NormalizedRecord":
        if not isinstance(raw, dict):
            raise ValidationError("record payload must be an object")

        number = _to_text(_field(raw, "number", "invoiceNumber", "orderNumber"))
        if not number:
            raise ValidationError("number is required")

        try:
            invoice_date = normalize_datetime(_field(raw, "date", "invoiceDate", "orderDate"))
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError(f"invalid date for {number}: {exc}") from exc

        try:
            subtotal = _to_cents(_field(raw, "subtotal"))
            tax = _to_cents(_field(raw, "tax"))
            total = _to_cents(_field(raw, "total"))
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError(f"invalid amount for {number}: {exc}") from exc

        raw_lines = raw.get("lineItems") or raw.get("items") or []
        if not isinstance(raw_lines, list):
            raise ValidationError("lineItems must be a list")
        lines = [NormalizedLineItem.from_payload(item, i) for i, item in enumerate(raw_lines)]

        external_id = _field(raw, "externalId", "id")
        return cls(
            number=number,
            external_id=_to_text(external_id),
            invoice_date=invoice_date,
            counterparty_name=_to_text(_field(raw, "counterpartyName", "customer", "customerName", "vendor")),
            status=_to_text(_field(raw, "status")),
            subtotal_cents=subtotal or 0,
            tax_cents=tax or 0,
            total_cents=total if total is not None else (subtotal or 0) + (tax or 0),
            line_items=lines,
        )
