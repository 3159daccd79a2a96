from stockfeed.persistence.db import Database

__all__ = ["Database"]
