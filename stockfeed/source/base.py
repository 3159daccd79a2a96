from __future__ import annotations

from abc import ABC, abstractmethod

from stockfeed.events import Quote


class QuoteSource(ABC):
    @abstractmethod
    def fetch(self, symbol: str, timeout: float) -> Quote:
        """Fetch the current quote for one symbol. Raise FetchError on any failure."""
        raise NotImplementedError

    def close(self) -> None:
        return
