from stockfeed.ledger.ledger import Ledger, value_position
from stockfeed.ledger.valuation import ValuationPump

__all__ = ["Ledger", "ValuationPump", "value_position"]
