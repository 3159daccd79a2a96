from stockfeed.source.base import QuoteSource
from stockfeed.source.finnhub import FinnhubQuoteSource
from stockfeed.source.sim import SimQuoteSource

__all__ = ["QuoteSource", "FinnhubQuoteSource", "SimQuoteSource"]
