# file: perpguard/execution/protection.py

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from perpguard.data.data_handler import MarketDataHandler
from perpguard.exchange.errors import PerpGuardError
from perpguard.exchange.position_mode import PositionModeResolver
from perpguard.exchange.session import Session, SessionManager
from perpguard.exchange.symbols import is_valid_symbol, to_exchange_symbol
from perpguard.execution.order_model import (
    POSITION_SIDE_LONG,
    POSITION_SIDE_SHORT,
    PROTECTIVE_TYPES,
    STOP_LOSS,
    STOP_MARKET,
    TAKE_PROFIT,
    TAKE_PROFIT_MARKET,
    CancelResult,
    OrderRequest,
    Position,
    ProtectionOrder,
    ProtectionResult,
    ProtectionState,
    ProtectionTracker,
)
from perpguard.execution.positions import PositionReader
from perpguard.execution.precision import round_price
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

ATR_PERIOD = 14
ATR_INTERVAL = "4h"
ATR_STOP_MULTIPLIER = 1.5
TARGET_TO_STOP_RATIO = 3.0
FALLBACK_VOLATILITY_PERCENT = 2.5
DEFAULT_STOP_LOSS_PERCENT = 3.0
DEFAULT_TAKE_PROFIT_PERCENT = 10.0
DEFAULT_TRAILING_PERCENT = 2.0

# janelas máximas de espera (poll até a exchange refletir o estado)
SETTLE_TIMEOUT_SECONDS = 8.0
CLEANUP_TIMEOUT_SECONDS = 5.0
POLL_INTERVAL_SECONDS = 1.0

PROTECTION_ATTEMPTS = 3
PROTECTION_RETRY_DELAYS = (3, 5)


def validate_protection_prices(is_long: bool, reference: float, stop_loss: Optional[float],
                               take_profit: Optional[float]) -> Optional[str]:
    """Long: stop abaixo e alvo acima da referência. Short: o inverso. Retorna o erro ou None."""
    if stop_loss is not None:
        if stop_loss <= 0:
            return f"Stop loss price ({stop_loss}) must be greater than 0"
        if is_long and stop_loss >= reference:
            return f"Stop loss price ({stop_loss}) must be below {reference} for long position"
        if not is_long and stop_loss <= reference:
            return f"Stop loss price ({stop_loss}) must be above {reference} for short position"

    if take_profit is not None:
        if take_profit <= 0:
            return f"Take profit price ({take_profit}) must be greater than 0"
        if is_long and take_profit <= reference:
            return f"Take profit price ({take_profit}) must be above {reference} for long position"
        if not is_long and take_profit >= reference:
            return f"Take profit price ({take_profit}) must be below {reference} for short position"

    return None


def _hedge_side(side: str) -> str:
    return POSITION_SIDE_LONG if side.upper() in ("LONG", "BUY") else POSITION_SIDE_SHORT


def _position_side(side: Optional[str]) -> Optional[str]:
    return _hedge_side(side) if side else None


class ProtectionManager:
    """
    Stop-loss / take-profit nativos da exchange (STOP_MARKET / TAKE_PROFIT_MARKET, closePosition).

    Por (símbolo, lado da posição): NONE -> CLEANING -> ACTIVE -> TRIGGERED.
    Ordens antigas são canceladas e confirmadas como removidas ANTES de criar
    as novas: no máximo um stop e um alvo ativos por lado.
    """

    def __init__(
        self,
        sessions: SessionManager,
        mode_resolver: PositionModeResolver,
        positions: PositionReader,
        market_data: Optional[MarketDataHandler] = None,
        sleep: Callable[[float], None] = time.sleep,
        settle_timeout: float = SETTLE_TIMEOUT_SECONDS,
        cleanup_timeout: float = CLEANUP_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.sessions = sessions
        self.mode_resolver = mode_resolver
        self.positions = positions
        self.market_data = market_data
        self.sleep = sleep
        self.settle_timeout = settle_timeout
        self.cleanup_timeout = cleanup_timeout
        self.poll_interval = poll_interval

        self._lock = threading.Lock()
        self._trackers: Dict[Tuple[str, str], ProtectionTracker] = {}

    # ========== ESTADO ==========

    def _tracker(self, symbol: str, side: str) -> ProtectionTracker:
        key = (to_exchange_symbol(symbol), _hedge_side(side))
        with self._lock:
            return self._trackers.setdefault(key, ProtectionTracker())

    def state(self, symbol: str, side: str) -> ProtectionState:
        return self._tracker(symbol, side).state

    def tracked_orders(self, symbol: str, side: str) -> Tuple[ProtectionOrder, ...]:
        return self._tracker(symbol, side).orders

    def sync_state(self, symbol: str, side: str) -> ProtectionState:
        """Marca TRIGGERED quando uma ordem rastreada sumiu das ordens abertas."""
        tracker = self._tracker(symbol, side)
        if tracker.state is not ProtectionState.ACTIVE:
            return tracker.state

        wire = to_exchange_symbol(symbol)
        try:
            session = self.sessions.acquire()
            open_ids = {str(o.get("orderId")) for o in self._protective_orders(session, wire, None)}
        except PerpGuardError as e:
            logger.warning(f"[SLTP] Não foi possível sincronizar estado de {wire}: {e}")
            return tracker.state

        missing = [o for o in tracker.orders if o.order_id not in open_ids]
        if missing:
            kinds = ", ".join(o.kind for o in missing)
            logger.info(f"[SLTP] 🔔 {wire} {_hedge_side(side)}: ordem(ns) {kinds} não estão mais abertas -> TRIGGERED")
            tracker.state = ProtectionState.TRIGGERED
        return tracker.state

    # ========== API ==========

    def set_protection(
        self,
        symbol: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        stop_loss_percent: Optional[float] = None,
        take_profit_percent: Optional[float] = None,
        side: Optional[str] = None,
    ) -> ProtectionResult:
        if not is_valid_symbol(symbol):
            return ProtectionResult(False, error="Invalid symbol format. Use 'BTC/USDT'")

        wire = to_exchange_symbol(symbol)
        logger.info(f"[SLTP] 🔍 Buscando posição de {wire}...")
        try:
            position = self.positions.get_position(wire, _position_side(side))
        except PerpGuardError as e:
            return ProtectionResult(False, error=f"Failed to fetch position: {e.message}")
        if position is None:
            return ProtectionResult(False, error=f"No open position found for {symbol}")

        stop, target = self.derive_prices(position, stop_loss, take_profit,
                                          stop_loss_percent, take_profit_percent)
        return self._protect(position, stop, target, reference=position.entry_price)

    def update_trailing_stop(self, symbol: str,
                             trailing_percent: float = DEFAULT_TRAILING_PERCENT,
                             side: Optional[str] = None) -> ProtectionResult:
        """
        Só atua com PnL não realizado positivo. Substituição destrutiva: cancela
        TODAS as ordens de proteção da posição (do lado, em dual-side) e recria apenas o stop
        (mark * (1 -/+ trailing%)), validado contra o mark price.
        """
        if not is_valid_symbol(symbol):
            return ProtectionResult(False, error="Invalid symbol format. Use 'BTC/USDT'")
        if trailing_percent <= 0 or trailing_percent >= 100:
            return ProtectionResult(False, error="Trailing percent must be between 0 and 100")

        wire = to_exchange_symbol(symbol)
        try:
            position = self.positions.get_position(wire, _position_side(side))
        except PerpGuardError as e:
            return ProtectionResult(False, error=f"Failed to fetch position: {e.message}")
        if position is None:
            return ProtectionResult(False, error=f"No open position found for {symbol}")

        if position.unrealized_pnl <= 0:
            logger.info(f"[SLTP] ℹ️ {wire} ainda sem lucro, trailing stop não atualizado")
            return ProtectionResult(True)

        mark = position.mark_price
        new_stop = mark * (1 - trailing_percent / 100) if position.is_long else mark * (1 + trailing_percent / 100)
        new_stop = round_price(new_stop, wire)

        error = validate_protection_prices(position.is_long, mark, new_stop, None)
        if error:
            return ProtectionResult(False, stop_loss_price=new_stop, stop_loss_error=error, error=error)

        result = self._protect(position, new_stop, None, reference=mark)
        if result.success:
            logger.info(f"[SLTP] ✅ Trailing stop de {wire} atualizado para {new_stop}")
        return result

    def cancel_protection(self, symbol: str) -> CancelResult:
        """Cancela todas as ordens STOP_MARKET / TAKE_PROFIT_MARKET do símbolo."""
        wire = to_exchange_symbol(symbol)
        try:
            session = self.sessions.acquire()
            result = self._cancel_orders(session, wire, None)
        except PerpGuardError as e:
            logger.error(f"[SLTP] ❌ Falha ao listar ordens de {wire}: {e}")
            return CancelResult(False, error=e.message)

        with self._lock:
            for (sym, _), tracker in self._trackers.items():
                if sym == wire:
                    tracker.state = ProtectionState.NONE
                    tracker.orders = ()
        return result

    def protect_after_entry(
        self,
        symbol: str,
        side: str,
        stop_loss_percent: Optional[float] = None,
        take_profit_percent: Optional[float] = None,
    ) -> ProtectionResult:
        """Espera a posição aparecer no ledger e tenta proteger até 3 vezes (esperas 3s, 5s)."""
        wire = to_exchange_symbol(symbol)
        if not self._wait_for_position(wire, _hedge_side(side)):
            return ProtectionResult(
                False,
                error=f"Position for {wire} not visible after {self.settle_timeout:.0f}s",
            )

        result = ProtectionResult(False, error="Protection not attempted")
        for attempt in range(1, PROTECTION_ATTEMPTS + 1):
            logger.info(f"[SLTP] 📍 Tentativa {attempt}/{PROTECTION_ATTEMPTS} de proteger {wire}...")
            result = self.set_protection(symbol, stop_loss_percent=stop_loss_percent,
                                         take_profit_percent=take_profit_percent, side=side)
            if result.success:
                return result

            logger.warning(f"[SLTP] ⚠️ Tentativa {attempt} falhou: {result.error}")
            if attempt < PROTECTION_ATTEMPTS:
                delay = PROTECTION_RETRY_DELAYS[attempt - 1]
                logger.info(f"[SLTP] Aguardando {delay}s antes de tentar novamente...")
                self.sleep(delay)

        logger.error(f"[SLTP] ❌ Falha ao definir SL/TP de {wire} após {PROTECTION_ATTEMPTS} tentativas")
        return result

    def protect_all_positions(
        self,
        stop_loss_percent: float = DEFAULT_STOP_LOSS_PERCENT,
        take_profit_percent: float = DEFAULT_TAKE_PROFIT_PERCENT,
    ) -> Dict[Tuple[str, str], ProtectionResult]:
        """SL/TP percentuais para todas as posições abertas, chaveado por (símbolo, lado)."""
        results: Dict[Tuple[str, str], ProtectionResult] = {}
        for position in self.positions.list_open_positions():
            results[(position.symbol, position.hedge_side)] = self._protect(
                position,
                *self.derive_prices(position, None, None, stop_loss_percent, take_profit_percent),
                reference=position.entry_price,
            )
        ok = sum(1 for r in results.values() if r.success)
        logger.info(f"[SLTP] Auto SL/TP concluído: {ok}/{len(results)} com sucesso")
        return results

    # ========== PREÇOS ==========

    def derive_prices(
        self,
        position: Position,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        stop_loss_percent: Optional[float] = None,
        take_profit_percent: Optional[float] = None,
    ) -> Tuple[Optional[float], Optional[float]]:
        """Prioridade: preço explícito > percentual > ATR. Preços arredondados ao tick do símbolo."""
        if stop_loss is None and take_profit is None and not stop_loss_percent and not take_profit_percent:
            stop_loss_percent, take_profit_percent = self._atr_percents(position)

        entry = position.entry_price
        sign = 1 if position.is_long else -1

        if stop_loss is None and stop_loss_percent:
            stop_loss = entry * (1 - sign * stop_loss_percent / 100)
        if take_profit is None and take_profit_percent:
            take_profit = entry * (1 + sign * take_profit_percent / 100)

        stop_loss = round_price(stop_loss, position.symbol) if stop_loss is not None else None
        take_profit = round_price(take_profit, position.symbol) if take_profit is not None else None
        return stop_loss, take_profit

    def _atr_percents(self, position: Position) -> Tuple[float, float]:
        if self.market_data is None:
            return DEFAULT_STOP_LOSS_PERCENT, DEFAULT_TAKE_PROFIT_PERCENT

        try:
            reference = self.market_data.get_mark_price(position.symbol) or position.entry_price
            atr_pct = self.market_data.atr_percent(position.symbol, period=ATR_PERIOD,
                                                   interval=ATR_INTERVAL, reference_price=reference)
        except (PerpGuardError, KeyError, ValueError) as e:
            logger.warning(f"[SLTP] ⚠️ Falha ao calcular SL/TP via ATR: {e}. Usando padrão "
                           f"SL={DEFAULT_STOP_LOSS_PERCENT}% TP={DEFAULT_TAKE_PROFIT_PERCENT}%")
            return DEFAULT_STOP_LOSS_PERCENT, DEFAULT_TAKE_PROFIT_PERCENT

        volatility = atr_pct if atr_pct else FALLBACK_VOLATILITY_PERCENT
        stop_pct = volatility * ATR_STOP_MULTIPLIER
        target_pct = stop_pct * TARGET_TO_STOP_RATIO
        logger.info(f"[SLTP] 🧮 SL/TP dinâmico via ATR: vol%={volatility:.2f} -> "
                    f"SL={stop_pct:.2f}% TP={target_pct:.2f}%")
        return stop_pct, target_pct

    # ========== INTERNOS ==========

    def _protect(self, position: Position, stop_loss: Optional[float], take_profit: Optional[float],
                 reference: float) -> ProtectionResult:
        wire = position.symbol
        if stop_loss is None and take_profit is None:
            return ProtectionResult(False, error="No stop loss or take profit to set")

        error = validate_protection_prices(position.is_long, reference, stop_loss, take_profit)
        if error:
            logger.error(f"[SLTP] ❌ {error}")
            return ProtectionResult(False, stop_loss_price=stop_loss, take_profit_price=take_profit, error=error)

        session = self.sessions.acquire()
        dual = self.mode_resolver.is_dual()
        side_filter = position.hedge_side if dual else None
        tracker = self._tracker(wire, position.hedge_side)

        tracker.state = ProtectionState.CLEANING
        tracker.orders = ()
        logger.info(f"[SLTP] 🧹 Limpando SL/TP antigos de {wire} ({position.hedge_side if dual else 'ONE-WAY'})...")
        try:
            cleanup = self._cancel_orders(session, wire, side_filter)
            stale = self._wait_until_cleared(session, wire, side_filter) if cleanup.attempted else []
        except PerpGuardError as e:
            tracker.state = ProtectionState.NONE
            return ProtectionResult(False, stop_loss_price=stop_loss, take_profit_price=take_profit,
                                    error=f"Failed to clean up old protective orders: {e.message}")

        if stale:
            tracker.state = ProtectionState.NONE
            ids = ", ".join(str(o.get("orderId")) for o in stale)
            return ProtectionResult(False, stop_loss_price=stop_loss, take_profit_price=take_profit,
                                    error=f"Old protective orders still open after cleanup: {ids}")

        close_side = position.close_side
        position_side = position.hedge_side if dual else None
        created: List[ProtectionOrder] = []
        sl_id = tp_id = sl_error = tp_error = None

        if stop_loss is not None:
            logger.info(f"[SLTP] 🛑 Criando stop loss em {stop_loss}...")
            sl_id, sl_error = self._create_leg(session, wire, STOP_MARKET, close_side, stop_loss, position_side)
            if sl_id:
                created.append(ProtectionOrder(sl_id, STOP_LOSS, stop_loss, position.hedge_side))

        if take_profit is not None:
            logger.info(f"[SLTP] 🎯 Criando take profit em {take_profit}...")
            tp_id, tp_error = self._create_leg(session, wire, TAKE_PROFIT_MARKET, close_side, take_profit,
                                               position_side)
            if tp_id:
                created.append(ProtectionOrder(tp_id, TAKE_PROFIT, take_profit, position.hedge_side))

        tracker.orders = tuple(created)
        tracker.state = ProtectionState.ACTIVE if created else ProtectionState.NONE

        errors = [e for e in (sl_error, tp_error) if e]
        return ProtectionResult(
            success=not errors,
            stop_loss_order_id=sl_id,
            take_profit_order_id=tp_id,
            stop_loss_price=stop_loss,
            take_profit_price=take_profit,
            stop_loss_error=sl_error,
            take_profit_error=tp_error,
            error="; ".join(errors) or None,
        )

    def _create_leg(self, session: Session, wire: str, order_type: str, close_side: str,
                    trigger: float, position_side: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        request = OrderRequest(
            symbol=wire,
            side=close_side,
            type=order_type,
            stop_price=trigger,
            close_position=True,
            position_side=position_side,
        )
        label = "stop loss" if order_type == STOP_MARKET else "take profit"
        try:
            response = session.signed("futures_create_order", **request.to_params())
        except PerpGuardError as e:
            logger.error(f"[SLTP] ❌ Falha ao criar {label}: {e}")
            return None, f"Failed to create {label}: {e.message}"

        order_id = (response or {}).get("orderId")
        if order_id is None:
            return None, f"Failed to create {label}: no order id in response"
        logger.info(f"[SLTP] ✅ {label} criado: {order_id}")
        return str(order_id), None

    def _protective_orders(self, session: Session, wire: str, position_side: Optional[str]) -> List[dict]:
        orders = session.signed("futures_get_open_orders", symbol=wire) or []
        return [
            o for o in orders
            if o.get("type") in PROTECTIVE_TYPES
            and (position_side is None or o.get("positionSide") == position_side)
        ]

    def _cancel_orders(self, session: Session, wire: str, position_side: Optional[str]) -> CancelResult:
        orders = self._protective_orders(session, wire, position_side)
        logger.info(f"[SLTP] 📋 {len(orders)} ordem(ns) SL/TP encontradas em {wire}")

        canceled = 0
        for order in orders:
            try:
                session.signed("futures_cancel_order", symbol=wire, orderId=order.get("orderId"))
                canceled += 1
                logger.info(f"[SLTP]   ✔ Cancelada {order.get('type')} {order.get('orderId')} "
                            f"(stopPrice: {order.get('stopPrice', 'N/A')})")
            except PerpGuardError as e:
                logger.error(f"[SLTP]   ✖ Falha ao cancelar {order.get('orderId')}: {e}")

        return CancelResult(True, canceled=canceled, attempted=len(orders))

    def _wait_until_cleared(self, session: Session, wire: str, position_side: Optional[str]) -> List[dict]:
        """Poll até as ordens canceladas sumirem. Retorna as que continuam abertas."""
        polls = max(1, int(self.cleanup_timeout / self.poll_interval))
        remaining: List[dict] = []
        for _ in range(polls):
            self.sleep(self.poll_interval)
            remaining = self._protective_orders(session, wire, position_side)
            if not remaining:
                return []
        logger.warning(f"[SLTP] ⚠️ {len(remaining)} ordem(ns) antigas ainda abertas em {wire}")
        return remaining

    def _wait_for_position(self, wire: str, hedge_side: str) -> bool:
        polls = max(1, int(self.settle_timeout / self.poll_interval))
        for attempt in range(polls):
            try:
                position = self.positions.get_position(wire, hedge_side)
            except PerpGuardError as e:
                logger.warning(f"[SLTP] Leitura de posição falhou ({e}), aguardando...")
                position = None
            if position is not None:
                return True
            if attempt < polls - 1:
                self.sleep(self.poll_interval)
        return False
