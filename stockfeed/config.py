from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


DEFAULT_SYMBOLS = ["AAPL", "TSLA", "MSFT", "GOOGL", "AMZN"]


def _float_to_str(value: Any) -> Any:
    # YAML floats: 0.1 must become Decimal("0.1"), not its binary expansion.
    return str(value) if isinstance(value, float) else value


class LogConfig(BaseModel):
    level: str = "INFO"
    json_logs: bool = Field(default=True, alias="json")
    file: str = "run/stockfeed.log"

    model_config = ConfigDict(populate_by_name=True)


class StorageConfig(BaseModel):
    sqlite_path: str = "run/stockfeed.sqlite"


class FeedConfig(BaseModel):
    symbols: list[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    interval_seconds: float = Field(default=15.0, gt=0)
    fetch_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("symbols")
    @classmethod
    def _normalize_symbols(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for raw in value:
            sym = str(raw).strip().upper()
            if sym and sym not in seen:
                seen.append(sym)
        if not seen:
            raise ValueError("feed.symbols must contain at least one symbol")
        return seen


class FinnhubConfig(BaseModel):
    base_url: str = "https://finnhub.io/api/v1"
    api_key: str = ""


class SimSourceConfig(BaseModel):
    seed: int = 7
    start_price: float = Field(default=150.0, gt=0)
    step: float = Field(default=0.5, ge=0)


class SourceConfig(BaseModel):
    type: Literal["sim", "finnhub"] = "sim"
    finnhub: FinnhubConfig = Field(default_factory=FinnhubConfig)
    sim: SimSourceConfig = Field(default_factory=SimSourceConfig)

    @model_validator(mode="after")
    def _api_key_from_env(self) -> "SourceConfig":
        if not self.finnhub.api_key:
            self.finnhub.api_key = os.environ.get("FINNHUB_API_KEY", "")
        if self.type == "finnhub" and not self.finnhub.api_key:
            raise ValueError("source.finnhub.api_key (or FINNHUB_API_KEY) is required for source.type=finnhub")
        return self


class ChannelConfig(BaseModel):
    maxsize: int = Field(default=1000, gt=0)
    publish_timeout_seconds: float = Field(default=1.0, ge=0)
    poll_seconds: float = Field(default=0.5, gt=0)
    connect_attempts: int = Field(default=5, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)


class ThrottleConfig(BaseModel):
    price_delta: Decimal = Field(default=Decimal("0.1"), ge=0)  # epsilon
    window_seconds: float = Field(default=60.0, ge=0)  # W

    @field_validator("price_delta", mode="before")
    @classmethod
    def _delta_from_float(cls, value: Any) -> Any:
        return _float_to_str(value)


class LedgerConfig(BaseModel):
    starting_balance: Decimal = Field(default=Decimal("45000"), ge=0)
    journal_orders: bool = True

    @field_validator("starting_balance", mode="before")
    @classmethod
    def _balance_from_float(cls, value: Any) -> Any:
        return _float_to_str(value)


class AppConfig(BaseModel):
    log: LogConfig = Field(default_factory=LogConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)


def load_config(path: str | Path) -> AppConfig:
    p = Path(path)
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return AppConfig.model_validate(data)
