from __future__ import annotations


class StockfeedError(Exception):
    pass


class FetchError(StockfeedError):
    """A quote could not be fetched for one symbol."""

    def __init__(self, symbol: str, reason: str) -> None:
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class PublishError(StockfeedError):
    pass


class ValidationError(StockfeedError):
    pass


class PersistenceError(StockfeedError):
    pass


class ChannelConnectionError(StockfeedError):
    pass


class ChannelClosed(StockfeedError):
    pass


class OrderRejected(StockfeedError):
    pass


class InvalidOrder(OrderRejected):
    pass


class PriceUnavailable(OrderRejected):
    pass


class InsufficientFunds(OrderRejected):
    def __init__(self, required, available) -> None:
        super().__init__(f"Insufficient funds: need {required}, have {available}")
        self.required = required
        self.available = available


class InsufficientShares(OrderRejected):
    def __init__(self, symbol: str, requested: int, held: int) -> None:
        super().__init__(f"Insufficient shares of {symbol}: requested {requested}, held {held}")
        self.symbol = symbol
        self.requested = requested
        self.held = held
