from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class OrderStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Order:
    order_id: str
    symbol: str
    side: Side
    order_type: OrderType
    qty: int
    price: Decimal
    status: OrderStatus
    ts: datetime
    total: Decimal


@dataclass
class Position:
    symbol: str
    qty: int = 0
    avg_price: Decimal = Decimal("0")
    current_price: Optional[Decimal] = None


@dataclass(frozen=True)
class PositionValuation:
    symbol: str
    qty: int
    avg_price: Decimal
    current_price: Decimal
    total_value: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal


@dataclass(frozen=True)
class LedgerSnapshot:
    ts: datetime
    balance: Decimal
    positions: tuple[PositionValuation, ...]
    orders: tuple[Order, ...]
    holdings_value: Decimal = Decimal("0")
    equity: Decimal = Decimal("0")


@dataclass(frozen=True)
class BoardRow:
    symbol: str
    price: Decimal
    change: Decimal
    change_percent: Decimal
    ts: datetime
    placeholder: bool = False
    stale: bool = False


@dataclass
class ThrottleState:
    last_price: Decimal
    last_inserted_at: datetime
