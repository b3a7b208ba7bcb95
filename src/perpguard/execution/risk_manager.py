# file: perpguard/execution/risk_manager.py

from typing import Optional, Tuple

from perpguard.config.config_loader import RiskConfig
from perpguard.execution.order_model import PerformanceStats, RiskCheckResult, RiskMultipliers
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

# margem exigida acima desta fração do saldo disponível é recusada (taxas / slippage)
MARGIN_SAFETY_RATIO = 0.98


def check_entry_risk(quantity: float, price: float, leverage: float,
                     available_balance: float, config: RiskConfig) -> RiskCheckResult:
    if leverage is None or leverage < 1:
        return RiskCheckResult(False, f"Leverage must be >= 1 (got {leverage})")
    if leverage > config.max_leverage:
        return RiskCheckResult(False, f"Leverage {leverage}x exceeds maximum allowed {config.max_leverage}x")

    position_value = quantity * price
    if position_value > config.max_position_size_usdt:
        return RiskCheckResult(
            False,
            f"Position size {position_value:.2f} USDT exceeds maximum allowed "
            f"{config.max_position_size_usdt:.2f} USDT",
        )

    required_margin = position_value / leverage
    if required_margin > available_balance * MARGIN_SAFETY_RATIO:
        return RiskCheckResult(
            False,
            f"Insufficient margin: required {required_margin:.2f} USDT, "
            f"available {available_balance:.2f} USDT",
        )

    return RiskCheckResult(True)


def check_daily_loss(today_pnl: float, initial_capital: float, config: RiskConfig) -> RiskCheckResult:
    """Bloqueia novas entradas quando a perda do dia atinge o limite (limite inclusivo)."""
    if today_pnl >= 0 or initial_capital <= 0:
        return RiskCheckResult(True)

    loss_percent = abs(today_pnl) / initial_capital * 100
    if loss_percent >= config.daily_loss_limit_percent:
        return RiskCheckResult(
            False,
            f"Daily loss limit reached: {loss_percent:.2f}% "
            f"(limit {config.daily_loss_limit_percent:.2f}%)",
        )
    return RiskCheckResult(True)


def derive_risk_multipliers(stats: PerformanceStats) -> RiskMultipliers:
    leverage_mult = 1.0
    size_mult = 1.0
    threshold = 0.6

    if stats.win_rate < 40:
        leverage_mult, size_mult, threshold = 0.5, 0.5, 0.75
    elif stats.win_rate < 50:
        leverage_mult, size_mult, threshold = 0.7, 0.7, 0.70
    elif stats.win_rate > 65:
        leverage_mult, size_mult, threshold = 1.2, 1.1, 0.55

    if stats.total_pnl < -10:
        leverage_mult *= 0.6
        size_mult *= 0.6
        threshold = max(threshold, 0.75)

    if leverage_mult < 0.8:
        recommendation = ("⚠️ RISK REDUCED: recent performance is poor, leverage and position "
                          "sizes are reduced. Favor smaller, high-quality trades.")
    elif leverage_mult > 1.1:
        recommendation = ("✅ RISK INCREASED: strong recent performance allows slightly larger "
                          "positions.")
    else:
        recommendation = "➡️ NORMAL RISK: standard position sizing and leverage."

    return RiskMultipliers(
        leverage_multiplier=leverage_mult,
        size_multiplier=size_mult,
        confidence_threshold=threshold,
        recommendation=recommendation,
    )


class RiskManager:
    """
    Política de risco com estado:
    - limites fixos (RiskConfig)
    - multiplicadores adaptativos derivados do histórico recente
    Os multiplicadores só valem para a PRÓXIMA ordem, nunca para ordens em andamento.
    """

    def __init__(self, config: RiskConfig, store=None, initial_capital: float = 20.0,
                 window_days: int = 7):
        self.config = config
        self.store = store
        self.initial_capital = initial_capital
        self.window_days = window_days
        self.current_multipliers = RiskMultipliers()

    def refresh_multipliers(self) -> RiskMultipliers:
        if self.store is None:
            return self.current_multipliers

        stats = self.store.recent_stats(self.window_days)
        self.current_multipliers = derive_risk_multipliers(stats)
        logger.info(
            f"[RISK] Win rate {stats.win_rate:.1f}% ({stats.total_trades} trades), "
            f"PnL {stats.total_pnl:.2f} -> leverage x{self.current_multipliers.leverage_multiplier:.2f}, "
            f"size x{self.current_multipliers.size_multiplier:.2f}, "
            f"confiança mínima {self.current_multipliers.confidence_threshold:.2f}"
        )
        return self.current_multipliers

    def size_entry(self, quantity: float, leverage: float) -> Tuple[float, int]:
        m = self.current_multipliers
        sized_qty = quantity * m.size_multiplier
        sized_lev = int(round(leverage * m.leverage_multiplier))
        sized_lev = max(1, min(sized_lev, int(self.config.max_leverage)))
        return sized_qty, sized_lev

    def confidence_allows(self, confidence: Optional[float]) -> bool:
        if confidence is None:
            return True
        return confidence >= self.current_multipliers.confidence_threshold

    def today_pnl(self) -> float:
        if self.store is None:
            return 0.0
        return self.store.today_pnl()

    def check_daily_loss(self, today_pnl: Optional[float] = None) -> RiskCheckResult:
        pnl = self.today_pnl() if today_pnl is None else today_pnl
        return check_daily_loss(pnl, self.initial_capital, self.config)

    def check_entry(self, quantity: float, price: float, leverage: float,
                    available_balance: float) -> RiskCheckResult:
        return check_entry_risk(quantity, price, leverage, available_balance, self.config)
