# file: perpguard/data/data_handler.py

from typing import Optional

import pandas as pd

from perpguard.data.indicators import latest_atr
from perpguard.exchange.errors import MalformedResponseError
from perpguard.exchange.session import SessionManager
from perpguard.exchange.symbols import to_exchange_symbol
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

KLINE_COLUMNS = [
    "open_time", "open", "high", "low", "close", "volume",
    "close_time", "quote_asset_volume", "number_of_trades",
    "taker_buy_base_volume", "taker_buy_quote_volume", "ignore"
]


class MarketDataHandler:
    """Mark price e OHLCV de futuros (endpoints públicos)."""

    def __init__(self, sessions: SessionManager):
        self.sessions = sessions

    def get_mark_price(self, symbol: str) -> float:
        wire = to_exchange_symbol(symbol)
        data = self.sessions.acquire().public("futures_mark_price", symbol=wire)
        try:
            price = float(data["markPrice"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid mark price payload for {wire}: {e}") from e
        logger.debug(f"[DATA] Mark price {wire}: {price}")
        return price

    def get_ohlcv(self, symbol: str, interval: str = "4h", limit: int = 100) -> pd.DataFrame:
        wire = to_exchange_symbol(symbol)
        logger.info(f"[DATA] Baixando klines {wire} [{interval}] x{limit}")
        klines = self.sessions.acquire().public("futures_klines", symbol=wire, interval=interval, limit=limit)
        if not isinstance(klines, list):
            raise MalformedResponseError(f"Expected kline array for {wire}, got: {type(klines).__name__}")

        df = pd.DataFrame(klines, columns=KLINE_COLUMNS)
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms")

        df = df[["open_time", "open", "high", "low", "close", "volume"]].copy()
        df = df.rename(columns={"open_time": "datetime"})

        numeric_cols = ["open", "high", "low", "close", "volume"]
        for c in numeric_cols:
            df[c] = df[c].astype(float)

        df.set_index("datetime", inplace=True)
        return df

    def atr_percent(self, symbol: str, period: int = 14, interval: str = "4h",
                    reference_price: Optional[float] = None) -> Optional[float]:
        """ATR como % do preço de referência (último fechamento se não informado). None se indisponível."""
        df = self.get_ohlcv(symbol, interval=interval, limit=max(period * 4, 50))
        atr = latest_atr(df, period)
        if atr is None:
            return None

        ref = reference_price or (float(df["close"].iloc[-1]) if not df.empty else 0.0)
        if ref <= 0:
            return None
        return atr / ref * 100
