# file: perpguard/core/engine.py

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from perpguard.config.config_loader import AppConfig
from perpguard.data.data_handler import MarketDataHandler
from perpguard.exchange.errors import PerpGuardError
from perpguard.exchange.position_mode import PositionModeResolver
from perpguard.exchange.session import SessionManager
from perpguard.execution.order_model import LONG, OrderResult, Position, ProtectionResult
from perpguard.execution.positions import AccountReader, PositionReader
from perpguard.execution.protection import ProtectionManager
from perpguard.execution.risk_manager import RiskManager
from perpguard.execution.trade_executor import TradeExecutor
from perpguard.execution.trade_logger import TradeAuditLogger
from perpguard.storage.database import PerformanceStore
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

BUY_ACTION = "buy"
SELL_ACTION = "sell"
HOLD_ACTION = "hold"
ACTIONS = (BUY_ACTION, SELL_ACTION, HOLD_ACTION)

DEFAULT_LEVERAGE = 10


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) not in (None, ""):
            return data[key]
    return None


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class Decision:
    symbol: str
    action: str
    quantity: Optional[float] = None
    percentage: Optional[float] = None
    leverage: int = DEFAULT_LEVERAGE
    stop_loss_percent: Optional[float] = None
    take_profit_percent: Optional[float] = None
    confidence: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        """Aceita camelCase (fonte externa) e snake_case."""
        action = str(data.get("action") or "").strip().lower()
        if action not in ACTIONS:
            raise ValueError(f"Invalid action: {data.get('action')!r}")
        symbol = data.get("symbol")
        if not symbol:
            raise ValueError("Decision without symbol")

        confidence = _opt_float(data.get("confidence"))
        if confidence is not None and confidence > 1:
            # 0-100 -> 0-1
            confidence = confidence / 100

        leverage = _first(data, "leverage")
        return cls(
            symbol=str(symbol),
            action=action,
            quantity=_opt_float(_first(data, "quantity", "amount")),
            percentage=_opt_float(_first(data, "percentage")),
            leverage=int(leverage) if leverage is not None else DEFAULT_LEVERAGE,
            stop_loss_percent=_opt_float(_first(data, "stopLossPercent", "stop_loss_percent")),
            take_profit_percent=_opt_float(_first(data, "takeProfitPercent", "take_profit_percent")),
            confidence=confidence,
        )


@dataclass
class CycleResult:
    decision: Decision
    order: Optional[OrderResult] = None
    protection: Optional[ProtectionResult] = None
    positions: Optional[List[Position]] = None
    skipped_reason: Optional[str] = None
    mixed: bool = False

    @property
    def executed(self) -> bool:
        return self.order is not None and self.order.success


class TradingEngine:
    """
    Um ciclo de trading para UMA decisão:
    posições -> risco (tamanho) -> entrada -> SL/TP -> confirmação.
    Sem estado entre ciclos além do cache de sessão / modo de posição.
    """

    def __init__(
        self,
        cfg: AppConfig,
        positions: PositionReader,
        account: AccountReader,
        risk: RiskManager,
        executor: TradeExecutor,
        protection: ProtectionManager,
        market_data: MarketDataHandler,
    ):
        self.cfg = cfg
        self.positions = positions
        self.account = account
        self.risk = risk
        self.executor = executor
        self.protection = protection
        self.market_data = market_data

    @classmethod
    def from_config(cls, cfg: AppConfig, store: Optional[PerformanceStore] = None) -> "TradingEngine":
        sessions = SessionManager(cfg)
        mode_resolver = PositionModeResolver(sessions)
        positions = PositionReader(sessions)
        market_data = MarketDataHandler(sessions)
        store = store or PerformanceStore(cfg.database_path)
        risk = RiskManager(cfg.risk_config(), store, initial_capital=cfg.initial_capital,
                           window_days=cfg.performance_window_days)
        audit = TradeAuditLogger(cfg.trades_log_path)
        return cls(
            cfg=cfg,
            positions=positions,
            account=AccountReader(sessions),
            risk=risk,
            executor=TradeExecutor(sessions, mode_resolver, positions, audit=audit,
                                  max_leverage=cfg.max_leverage),
            protection=ProtectionManager(sessions, mode_resolver, positions, market_data=market_data),
            market_data=market_data,
        )

    # ========== CICLO ==========

    def execute_decision(self, decision: Decision, today_pnl: Optional[float] = None) -> CycleResult:
        logger.info(f"[ENGINE] Decisão: {decision.action.upper()} {decision.symbol}")

        if decision.action == HOLD_ACTION:
            return CycleResult(decision, skipped_reason="hold")
        if decision.action == SELL_ACTION:
            return self._execute_exit(decision)
        return self._execute_entry(decision, today_pnl)

    def _execute_exit(self, decision: Decision) -> CycleResult:
        order = self.executor.submit_exit(
            decision.symbol,
            percentage=decision.percentage if decision.percentage is not None else 100.0,
            quantity=decision.quantity,
        )
        if not order.success:
            logger.warning(f"[ENGINE] Saída de {decision.symbol} falhou: {order.error}")
        return CycleResult(decision, order=order, positions=self._confirm())

    def _execute_entry(self, decision: Decision, today_pnl: Optional[float]) -> CycleResult:
        daily = self.risk.check_daily_loss(today_pnl)
        if not daily.allowed:
            return self._skip(decision, daily.reason)

        self.risk.refresh_multipliers()
        if not self.risk.confidence_allows(decision.confidence):
            return self._skip(
                decision,
                f"Confidence {decision.confidence:.2f} below threshold "
                f"{self.risk.current_multipliers.confidence_threshold:.2f}",
            )

        if not decision.quantity or decision.quantity <= 0:
            return self._skip(decision, "Decision without quantity")

        quantity, leverage = self.risk.size_entry(decision.quantity, decision.leverage)

        try:
            price = self.market_data.get_mark_price(decision.symbol)
            balance = self.account.available_balance()
        except PerpGuardError as e:
            return self._skip(decision, f"Market/account data unavailable: {e.message}")

        check = self.risk.check_entry(quantity, price, leverage, balance)
        if not check.allowed:
            return self._skip(decision, check.reason)

        order = self.executor.submit_entry(decision.symbol, LONG, quantity, leverage)
        if not order.success:
            logger.warning(f"[ENGINE] Entrada em {decision.symbol} falhou: {order.error}")
            return CycleResult(decision, order=order, positions=self._confirm())

        protection = self.protection.protect_after_entry(
            decision.symbol,
            LONG,
            stop_loss_percent=decision.stop_loss_percent,
            take_profit_percent=decision.take_profit_percent,
        )
        result = CycleResult(decision, order=order, protection=protection, positions=self._confirm())
        if not protection.success:
            # entrada executada SEM proteção: precisa de atenção do operador
            result.mixed = True
            logger.error(f"[ENGINE] ⚠️ {decision.symbol} aberto SEM SL/TP: {protection.error}")
        return result

    # ========== HELPERS ==========

    def _skip(self, decision: Decision, reason: Optional[str]) -> CycleResult:
        logger.info(f"[ENGINE] ⏭️ {decision.symbol} ignorado: {reason}")
        return CycleResult(decision, skipped_reason=reason)

    def _confirm(self) -> Optional[List[Position]]:
        try:
            return self.positions.list_open_positions()
        except PerpGuardError as e:
            logger.warning(f"[ENGINE] Não foi possível confirmar posições: {e}")
            return None
