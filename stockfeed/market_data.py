from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stockfeed.errors import ValidationError
from stockfeed.events import Quote

CENT = Decimal("0.01")
PERCENT_PLACES = Decimal("0.0001")
ZERO = Decimal("0")


def normalize_price(value: Any) -> Optional[Decimal]:
    """Convert provider values to Decimal, mapping NaN/inf or invalid inputs to None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                return None
            return Decimal(str(value))
        number = Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        return None
    if not number.is_finite():
        return None
    return number


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuoteMessage(BaseModel):
    """Wire schema of a quote message. change/changePercent are optional on input."""

    symbol: str = Field(min_length=1, max_length=16)
    price: Decimal = Field(gt=0, allow_inf_nan=False)
    change: Optional[Decimal] = Field(default=None, allow_inf_nan=False)
    change_percent: Optional[Decimal] = Field(default=None, alias="changePercent", allow_inf_nan=False)
    timestamp: datetime

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("symbol")
    @classmethod
    def _upper(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("symbol is blank")
        return value

    @field_validator("price", "change", "change_percent", mode="before")
    @classmethod
    def _float_via_str(cls, value: Any) -> Any:
        # JSON numbers arrive as floats; go through repr so 175.05 stays 175.05.
        if isinstance(value, float):
            return str(value)
        return value

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return to_utc(value)


def parse_quote_message(raw: Union[bytes, str]) -> QuoteMessage:
    """Decode and validate one wire message; raise ValidationError on anything malformed."""
    try:
        return QuoteMessage.model_validate_json(raw)
    except pydantic.ValidationError as exc:
        errors = "; ".join(f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}" for e in exc.errors())
        raise ValidationError(errors) from exc


def derive_change(price: Decimal, previous: Optional[Quote]) -> tuple[Decimal, Decimal]:
    """change/changePercent against the previous accepted quote; zero without a baseline."""
    if previous is None:
        return ZERO, ZERO
    change = price - previous.price
    if previous.price == 0:
        return change, ZERO
    pct = (change / previous.price * 100).quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)
    return change, pct


def quote_from_message(msg: QuoteMessage, previous: Optional[Quote]) -> Quote:
    """Build the accepted Quote. Supplied change fields are kept only as a pair.

    When either of change/changePercent is missing, both are derived from
    ``previous`` so the two always agree.
    """
    if msg.change is not None and msg.change_percent is not None:
        change, pct = msg.change, msg.change_percent
    else:
        change, pct = derive_change(msg.price, previous)
    return Quote(symbol=msg.symbol, price=msg.price, change=change, change_percent=pct, ts=msg.timestamp)


def encode_quote(quote: Quote) -> bytes:
    payload = {
        "symbol": quote.symbol,
        "price": float(quote.price),
        "change": float(quote.change),
        "changePercent": float(quote.change_percent),
        "timestamp": to_utc(quote.ts).isoformat(),
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")
