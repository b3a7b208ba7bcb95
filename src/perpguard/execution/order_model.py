# file: perpguard/execution/order_model.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

LONG = "long"
SHORT = "short"

BUY = "BUY"
SELL = "SELL"

MARKET = "MARKET"
LIMIT = "LIMIT"
STOP_MARKET = "STOP_MARKET"
TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"

ORDER_TYPES = (MARKET, LIMIT, STOP_MARKET, TAKE_PROFIT_MARKET)
PROTECTIVE_TYPES = (STOP_MARKET, TAKE_PROFIT_MARKET)

POSITION_SIDE_BOTH = "BOTH"
POSITION_SIDE_LONG = "LONG"
POSITION_SIDE_SHORT = "SHORT"

STOP_LOSS = "stop_loss"
TAKE_PROFIT = "take_profit"


class PositionMode(Enum):
    ONE_WAY = "one-way"
    DUAL_SIDE = "dual-side"


class ProtectionState(Enum):
    NONE = "none"
    CLEANING = "cleaning"
    ACTIVE = "active"
    TRIGGERED = "triggered"


def _fmt_number(value: float) -> str:
    # Binance rejeita notação científica (ex.: 1e-05)
    text = f"{value:.8f}".rstrip("0").rstrip(".")
    return text or "0"


@dataclass(frozen=True)
class Position:
    """Visão derivada de uma posição aberta. Sempre lida da exchange, nunca cacheada."""

    symbol: str
    side: str
    contracts: float
    signed_quantity: float
    entry_price: float
    mark_price: float
    leverage: float
    notional: float
    unrealized_pnl: float
    percentage: float
    margin_type: str
    liquidation_price: float
    initial_margin: float
    maintenance_margin: float
    position_side: str = POSITION_SIDE_BOTH

    @property
    def is_long(self) -> bool:
        return self.signed_quantity > 0

    @property
    def close_side(self) -> str:
        return SELL if self.is_long else BUY

    @property
    def hedge_side(self) -> str:
        """positionSide usado em modo dual-side."""
        return POSITION_SIDE_LONG if self.is_long else POSITION_SIDE_SHORT


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: str
    type: str
    quantity: Optional[float] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: Optional[str] = None

    def __post_init__(self):
        if self.side not in (BUY, SELL):
            raise ValueError(f"Invalid order side: {self.side}")
        if self.type not in ORDER_TYPES:
            raise ValueError(f"Invalid order type: {self.type}")
        if not self.close_position and (self.quantity is None or self.quantity <= 0):
            raise ValueError("Order quantity must be greater than 0")
        if self.type == LIMIT and self.price is None:
            raise ValueError("LIMIT orders require a price")
        if self.type in PROTECTIVE_TYPES and self.stop_price is None:
            raise ValueError(f"{self.type} orders require a stop price")

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"symbol": self.symbol, "side": self.side, "type": self.type}

        if self.close_position:
            params["closePosition"] = "true"
        elif self.quantity is not None:
            params["quantity"] = _fmt_number(self.quantity)

        if self.type == LIMIT:
            params["price"] = _fmt_number(self.price)
            params["timeInForce"] = "GTC"
        if self.stop_price is not None:
            params["stopPrice"] = _fmt_number(self.stop_price)
            params["workingType"] = "MARK_PRICE"

        # em modo dual-side a Binance rejeita reduceOnly; o positionSide já identifica a perna
        if self.position_side and self.position_side != POSITION_SIDE_BOTH:
            params["positionSide"] = self.position_side
        elif self.reduce_only and not self.close_position:
            params["reduceOnly"] = "true"

        return params


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    error: Optional[str] = None
    leverage: Optional[float] = None


@dataclass(frozen=True)
class ProtectionOrder:
    order_id: str
    kind: str
    trigger_price: float
    position_side: str = POSITION_SIDE_BOTH


@dataclass(frozen=True)
class ProtectionResult:
    success: bool
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    stop_loss_error: Optional[str] = None
    take_profit_error: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CancelResult:
    success: bool
    canceled: int = 0
    attempted: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class RiskCheckResult:
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class PerformanceStats:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    total_pnl: float = 0.0


@dataclass(frozen=True)
class RiskMultipliers:
    leverage_multiplier: float = 1.0
    size_multiplier: float = 1.0
    confidence_threshold: float = 0.6
    recommendation: str = ""


@dataclass
class ProtectionTracker:
    """Estado da proteção de uma perna (símbolo, lado da posição)."""

    state: ProtectionState = ProtectionState.NONE
    orders: Tuple[ProtectionOrder, ...] = field(default_factory=tuple)
