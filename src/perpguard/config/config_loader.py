"""Configuration loading utilities."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from perpguard.exchange.errors import ConfigurationError

DEFAULT_CONFIG_FILE = "config.txt"

PAPER = "paper"
LIVE = "live"

DEFAULT_TESTNET_BASE_URL = "https://demo-fapi.binance.com"
DEFAULT_LIVE_BASE_URL = "https://fapi.binance.com"


def _load_kv_file(path: Path) -> Dict[str, str]:
    """Reads key=value pairs ignoring comments and blank lines."""
    data: Dict[str, str] = {}
    if not path.exists():
        return data

    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            data[key.strip()] = value.strip()
    return data


def _env(key: str) -> str:
    """Returns the first non-empty env var among KEY / PERPGUARD_KEY."""
    for env_key in (key.upper(), f"PERPGUARD_{key.upper()}"):
        val = os.getenv(env_key)
        if val is not None and str(val).strip() != "":
            return val
    return ""


def normalize_trading_mode(raw: str) -> str:
    """Accepts paper / dry-run / testnet / live. Anything but live is paper."""
    return LIVE if (raw or "").strip().lower() == LIVE else PAPER


@dataclass(frozen=True)
class RiskConfig:
    """Risk caps, loaded once per process."""

    trading_mode: str = PAPER
    max_position_size_usdt: float = 5000.0
    max_leverage: float = 30.0
    daily_loss_limit_percent: float = 20.0


@dataclass
class AppConfig:
    """In-memory configuration used by the execution engine."""

    trading_mode: str = PAPER
    binance_testnet_api_key: str = ""
    binance_testnet_api_secret: str = ""
    binance_live_api_key: str = ""
    binance_live_api_secret: str = ""
    binance_testnet_base_url: str = DEFAULT_TESTNET_BASE_URL
    binance_live_base_url: str = DEFAULT_LIVE_BASE_URL
    binance_http_proxy: str = ""
    binance_disable_proxy: bool = False

    max_leverage: float = 30.0
    max_position_size_usdt: float = 5000.0
    daily_loss_limit_percent: float = 20.0
    initial_capital: float = 20.0
    default_leverage: int = 10

    request_timeout: float = 60.0
    recv_window: int = 60_000
    performance_window_days: int = 7
    database_path: str = "perpguard.db"
    trades_log_path: str = "trades.csv"

    @classmethod
    def from_sources(cls, config_path: Optional[str] = None) -> "AppConfig":
        """
        Loads configuration with the following precedence:
        1) Environment variables (.env is loaded automatically)
        2) key=value file (default: config.txt or path passed)

        Environment vars accepted: TRADING_MODE, BINANCE_TESTNET_API_KEY,
        BINANCE_TESTNET_API_SECRET, BINANCE_LIVE_API_KEY, BINANCE_LIVE_API_SECRET,
        BINANCE_TESTNET_BASE_URL, BINANCE_LIVE_BASE_URL, BINANCE_HTTP_PROXY
        (falls back to HTTPS_PROXY / HTTP_PROXY), BINANCE_DISABLE_PROXY,
        MAX_LEVERAGE, MAX_POSITION_SIZE_USDT, DAILY_LOSS_LIMIT_PERCENT,
        INITIAL_CAPITAL, DEFAULT_LEVERAGE, REQUEST_TIMEOUT, RECV_WINDOW,
        PERFORMANCE_WINDOW_DAYS, DATABASE_PATH, TRADES_LOG_PATH.
        """
        load_dotenv()

        cfg_path = (
            Path(config_path)
            if config_path
            else Path(os.getenv("PERPGUARD_CONFIG") or DEFAULT_CONFIG_FILE)
        )
        file_data = _load_kv_file(cfg_path)

        def get_str(key: str, default: str = "") -> str:
            return _env(key) or file_data.get(key, default)

        def get_float(key: str, default: float) -> float:
            try:
                raw = get_str(key, default)
                return float(raw)
            except Exception:
                return default

        def get_int(key: str, default: int) -> int:
            try:
                raw = get_str(key, default)
                return int(raw)
            except Exception:
                return default

        def get_bool(key: str, default: bool) -> bool:
            raw = get_str(key, str(default)).lower()
            return raw in ("1", "true", "yes", "y", "on")

        proxy = get_str("binance_http_proxy") or os.getenv("HTTPS_PROXY", "") or os.getenv("HTTP_PROXY", "")

        return cls(
            trading_mode=normalize_trading_mode(get_str("trading_mode", PAPER)),
            binance_testnet_api_key=get_str("binance_testnet_api_key"),
            binance_testnet_api_secret=get_str("binance_testnet_api_secret"),
            binance_live_api_key=get_str("binance_live_api_key"),
            binance_live_api_secret=get_str("binance_live_api_secret"),
            binance_testnet_base_url=get_str("binance_testnet_base_url", DEFAULT_TESTNET_BASE_URL),
            binance_live_base_url=get_str("binance_live_base_url", DEFAULT_LIVE_BASE_URL),
            binance_http_proxy=proxy,
            binance_disable_proxy=get_bool("binance_disable_proxy", False),
            max_leverage=get_float("max_leverage", 30.0),
            max_position_size_usdt=get_float("max_position_size_usdt", 5000.0),
            daily_loss_limit_percent=get_float("daily_loss_limit_percent", 20.0),
            initial_capital=get_float("initial_capital", 20.0),
            default_leverage=get_int("default_leverage", 10),
            request_timeout=get_float("request_timeout", 60.0),
            recv_window=get_int("recv_window", 60_000),
            performance_window_days=get_int("performance_window_days", 7),
            database_path=get_str("database_path", "perpguard.db"),
            trades_log_path=get_str("trades_log_path", "trades.csv"),
        )

    @property
    def is_live(self) -> bool:
        return self.trading_mode == LIVE

    @property
    def base_url(self) -> str:
        url = self.binance_live_base_url if self.is_live else self.binance_testnet_base_url
        return url.rstrip("/")

    @property
    def proxy_url(self) -> Optional[str]:
        if self.binance_disable_proxy or not self.binance_http_proxy:
            return None
        return self.binance_http_proxy

    def credentials(self) -> Tuple[str, str]:
        """Returns the (key, secret) pair of the active trading mode."""
        if self.is_live:
            key, secret, label = self.binance_live_api_key, self.binance_live_api_secret, "LIVE"
        else:
            key, secret, label = self.binance_testnet_api_key, self.binance_testnet_api_secret, "TESTNET"

        if not key or not secret:
            raise ConfigurationError(
                f"BINANCE_{label}_API_KEY or BINANCE_{label}_API_SECRET not configured. "
                f"Please set them in .env file for {'live' if self.is_live else 'paper'} trading."
            )
        return key, secret

    def risk_config(self) -> RiskConfig:
        return RiskConfig(
            trading_mode=self.trading_mode,
            max_position_size_usdt=self.max_position_size_usdt,
            max_leverage=self.max_leverage,
            daily_loss_limit_percent=self.daily_loss_limit_percent,
        )
