# spotbot/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("spotbot.config")

MAINNET_URL = "https://api.binance.com"
TESTNET_URL = "https://testnet.binance.vision"

KLINE_INTERVALS = (
    "1s", "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
)


def _parse_list(v: Any, upper: bool = True) -> List[str]:
    """
    Accepts:
      - list: ["BTCUSDC","ETHUSDC"]
      - csv:  "BTCUSDC,ETHUSDC"
      - json: '["BTCUSDC","ETHUSDC"]'
    Returns trimmed items (uppercased unless upper=False).
    """
    if v is None:
        return []

    def norm(x: Any) -> str:
        s = str(x).strip()
        return s.upper() if upper else s

    if isinstance(v, (list, tuple)):
        return [norm(x) for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [norm(x) for x in arr if str(x).strip()]
        except Exception:
            # fall back to csv parse
            pass
    return [norm(p) for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding List fields
    # so the csv/json parsers below see the raw value.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange / API ---
    BINANCE_ENV: str = "mainnet"  # mainnet/testnet
    BINANCE_BASE_URL: str = MAINNET_URL
    BINANCE_RECV_WINDOW: int = 5000
    HTTP_TIMEOUT_SECONDS: float = 15.0
    HTTP_MAX_RETRIES: int = 3
    EXCHANGE_INFO_TTL_SECONDS: int = 300

    # --- Scheduler ---
    SCHEDULER_INTERVAL_SECONDS: int = 60
    FETCH_CONCURRENCY: int = 5

    # --- Strategy / risk constants ---
    MIN_ACTION_CONFIDENCE: float = 0.5
    DUPLICATE_BAND_PCT: float = 0.4
    SELL_CANDIDATE_RATIO: float = 0.995
    PROFIT_FLOOR_RATIO: float = 1.005
    DEFAULT_MIN_NOTIONAL: float = 5.0
    QUOTE_COMMISSION_ASSETS: List[str] = Field(default_factory=lambda: ["USDC", "USDT"])

    # --- Bot defaults (used when an activation omits a field) ---
    DEFAULT_TRADE_AMOUNT: float = 10.0
    DEFAULT_INTERVALS: List[str] = Field(default_factory=lambda: ["3m", "5m"])
    DEFAULT_CANDLE_LIMIT: int = 50
    DEFAULT_COOLDOWN_MINUTES: float = 3.0
    DEFAULT_MAX_INVESTMENT: float = 10.0
    SUPPORTED_SYMBOLS: List[str] = Field(
        default_factory=lambda: [
            "BTCUSDC",
            "ETHUSDC",
            "SOLUSDC",
            "ADAUSDC",
            "XRPUSDC",
            "BNBUSDC",
            "AVAXUSDC",
            "LINKUSDC",
            "DOGEUSDC",
            "PEPEUSDC",
        ]
    )

    # --- Storage ---
    DB_PATH: str = "data/spotbot.db"
    AUDIT_JSONL_PATH: str = "logs/spotbot_audit.jsonl"

    # --- Secrets ---
    ENCRYPTION_KEY: str = ""

    @field_validator("QUOTE_COMMISSION_ASSETS", "SUPPORTED_SYMBOLS", mode="before")
    @classmethod
    def parse_upper_lists(cls, v: Any) -> List[str]:
        return _parse_list(v)

    @field_validator("DEFAULT_INTERVALS", mode="before")
    @classmethod
    def parse_intervals(cls, v: Any) -> List[str]:
        # "1M" (month) and "1m" (minute) differ only by case
        return _parse_list(v, upper=False)

    def model_post_init(self, __context: Any) -> None:
        self.BINANCE_ENV = (self.BINANCE_ENV or "mainnet").lower().strip()

        # Keep base URL consistent with BINANCE_ENV unless explicitly overridden
        if self.BINANCE_ENV == "testnet" and self.BINANCE_BASE_URL.strip() == MAINNET_URL:
            self.BINANCE_BASE_URL = TESTNET_URL

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.BINANCE_ENV not in {"mainnet", "testnet"}:
            errors.append("BINANCE_ENV must be 'mainnet' or 'testnet'.")

        if self.BINANCE_BASE_URL.strip() == MAINNET_URL and self.BINANCE_ENV != "mainnet":
            errors.append(
                "BINANCE_ENV mismatch: base URL is mainnet but BINANCE_ENV is not 'mainnet'."
            )

        if self.SCHEDULER_INTERVAL_SECONDS <= 0:
            errors.append("SCHEDULER_INTERVAL_SECONDS must be > 0.")
        if self.FETCH_CONCURRENCY <= 0:
            errors.append("FETCH_CONCURRENCY must be > 0.")
        if self.HTTP_MAX_RETRIES < 0:
            errors.append("HTTP_MAX_RETRIES must be >= 0.")

        if not 0.0 < self.MIN_ACTION_CONFIDENCE <= 1.0:
            errors.append("MIN_ACTION_CONFIDENCE must be in (0, 1].")
        if self.DUPLICATE_BAND_PCT < 0:
            errors.append("DUPLICATE_BAND_PCT must be >= 0.")
        if self.SELL_CANDIDATE_RATIO > 1.0:
            errors.append("SELL_CANDIDATE_RATIO must be <= 1.")
        if self.PROFIT_FLOOR_RATIO < 1.0:
            errors.append("PROFIT_FLOOR_RATIO must be >= 1.")

        bad = [i for i in self.DEFAULT_INTERVALS if i not in KLINE_INTERVALS]
        if bad:
            errors.append(f"DEFAULT_INTERVALS contains unknown intervals: {bad}")

        if self.FETCH_CONCURRENCY > 10:
            warnings.append(
                f"FETCH_CONCURRENCY={self.FETCH_CONCURRENCY} may hit exchange rate limits."
            )

        if not self.ENCRYPTION_KEY:
            warnings.append(
                "ENCRYPTION_KEY is empty. Exchange credentials cannot be decrypted; "
                "every active bot will be skipped."
            )

        if self.BINANCE_ENV == "mainnet":
            warnings.append(
                "BINANCE_ENV=mainnet will trade REAL money for every activated bot."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
