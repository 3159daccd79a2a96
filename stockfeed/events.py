from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class Quote:
    symbol: str
    price: Decimal
    change: Decimal
    change_percent: Decimal
    ts: datetime  # UTC, tz-aware


@dataclass(frozen=True)
class ChannelMessage:
    key: str  # partition key (symbol)
    value: bytes
