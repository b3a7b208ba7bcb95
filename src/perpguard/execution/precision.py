# file: perpguard/execution/precision.py
#
# Casas decimais aceitas pela Binance Futures por símbolo.
# Quantidade SEMPRE truncada para baixo (nunca acima da margem ou da posição).

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Optional

from perpguard.exchange.symbols import to_exchange_symbol
from perpguard.execution.order_model import RiskCheckResult


@dataclass(frozen=True)
class MarketPrecision:
    quantity_decimals: int
    price_decimals: int
    min_notional: float


DEFAULT_PRECISION = MarketPrecision(quantity_decimals=3, price_decimals=2, min_notional=5.0)

MARKET_PRECISION = {
    "BTCUSDT": MarketPrecision(3, 1, 5.0),
    "ETHUSDT": MarketPrecision(2, 2, 5.0),
    "BNBUSDT": MarketPrecision(1, 2, 5.0),
    "SOLUSDT": MarketPrecision(1, 3, 5.0),
    "ADAUSDT": MarketPrecision(0, 4, 5.0),
    "DOGEUSDT": MarketPrecision(0, 5, 5.0),
}


def get_precision(symbol: str) -> MarketPrecision:
    return MARKET_PRECISION.get(to_exchange_symbol(symbol), DEFAULT_PRECISION)


def _step(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def round_quantity(amount: float, symbol: str) -> float:
    """Trunca em direção a zero nas casas do símbolo. Idempotente; nunca excede a entrada."""
    decimals = get_precision(symbol).quantity_decimals
    return float(Decimal(str(amount)).quantize(_step(decimals), rounding=ROUND_DOWN))


def round_price(price: float, symbol: str) -> float:
    decimals = get_precision(symbol).price_decimals
    return float(Decimal(str(price)).quantize(_step(decimals), rounding=ROUND_HALF_UP))


def min_quantity(symbol: str) -> float:
    return float(_step(get_precision(symbol).quantity_decimals))


def format_quantity(amount: float, symbol: str) -> str:
    decimals = get_precision(symbol).quantity_decimals
    return f"{round_quantity(amount, symbol):.{decimals}f}"


def format_price(price: float, symbol: str) -> str:
    decimals = get_precision(symbol).price_decimals
    return f"{round_price(price, symbol):.{decimals}f}"


def check_min_notional(quantity: float, symbol: str, price: Optional[float] = None) -> RiskCheckResult:
    """Sem preço (ordem a mercado sem referência) a checagem é pulada."""
    if price is None:
        return RiskCheckResult(True)

    precision = get_precision(symbol)
    notional = quantity * price
    if notional < precision.min_notional:
        return RiskCheckResult(
            False,
            f"Order notional {notional:.2f} USDT is below the minimum of "
            f"{precision.min_notional:.2f} USDT for {to_exchange_symbol(symbol)}",
        )
    return RiskCheckResult(True)
