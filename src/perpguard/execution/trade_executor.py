# file: perpguard/execution/trade_executor.py

import math
import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from perpguard.exchange.errors import PerpGuardError, ValidationError
from perpguard.exchange.position_mode import PositionModeResolver
from perpguard.exchange.session import SessionManager
from perpguard.exchange.symbols import is_valid_symbol, to_exchange_symbol
from perpguard.execution.order_model import (
    BUY,
    LIMIT,
    MARKET,
    POSITION_SIDE_LONG,
    POSITION_SIDE_SHORT,
    SELL,
    OrderRequest,
    OrderResult,
)
from perpguard.execution.positions import PositionReader
from perpguard.execution.precision import check_min_notional, min_quantity, round_quantity
from perpguard.execution.trade_logger import TradeAuditLogger
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

MIN_LEVERAGE = 1
MAX_LEVERAGE = 30
MAX_POSITION_MULTIPLIER = 20

ORDER_ATTEMPTS = 3
ENTRY_RETRY_DELAYS = (3, 6)
EXIT_RETRY_DELAYS = (2, 4)

_LONG_ALIASES = ("long", "buy")
_SHORT_ALIASES = ("short", "sell")


def scale_entry(quantity: float, leverage: int, symbol: str,
                max_leverage: float = MAX_LEVERAGE) -> Tuple[float, int, int]:
    """
    Ajusta uma entrada menor que um step de quantidade.
    Retorna (quantidade, alavancagem efetiva, multiplicador). Sem ajuste o multiplicador é 1.
    A alavancagem escalada é validada sem limitar antes contra min(30x, max_leverage).
    """
    adjusted = round_quantity(quantity, symbol)
    step = min_quantity(symbol)
    if adjusted >= step:
        return adjusted, leverage, 1

    # 0.001 / 0.0002 = 5.000000000000001 em float, precisa virar 5
    multiplier = math.ceil(step / quantity - 1e-9)
    scaled_leverage = leverage * multiplier
    cap = min(MAX_LEVERAGE, max_leverage)
    if scaled_leverage > cap or multiplier > MAX_POSITION_MULTIPLIER:
        raise ValidationError(
            f"Amount {quantity} too small. Minimum for {to_exchange_symbol(symbol)} is {step}. "
            f"Required leverage {scaled_leverage}x ({multiplier}x position) exceeds safe limit "
            f"{cap:g}x - signal too weak, skip this trade."
        )

    logger.info(f"[ORDER] Auto-ajuste: {quantity} -> {step} ({multiplier}x posição), "
                f"alavancagem {leverage}x -> {scaled_leverage}x")
    return step, scaled_leverage, multiplier


def _position_side(side: Optional[str]) -> Optional[str]:
    if not side:
        return None
    return POSITION_SIDE_LONG if side.lower() in _LONG_ALIASES else POSITION_SIDE_SHORT


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def order_result_from_response(response: Dict[str, Any], request: OrderRequest,
                               leverage: Optional[float] = None) -> OrderResult:
    """avgPrice/executedQty quando preenchidos (> 0); senão price/origQty; senão o pedido."""
    price = _to_float(response.get("avgPrice"))
    if price <= 0:
        price = _to_float(response.get("price"))
    if price <= 0:
        price = request.price or 0.0

    qty = _to_float(response.get("executedQty"))
    if qty <= 0:
        qty = _to_float(response.get("origQty"))
    if qty <= 0:
        qty = request.quantity or 0.0

    order_id = response.get("orderId")
    return OrderResult(
        success=True,
        order_id=str(order_id) if order_id is not None else None,
        price=price or None,
        quantity=qty,
        leverage=leverage,
    )


class TradeExecutor:
    """
    Envio de ordens de entrada e saída:
    - validação local antes de qualquer chamada de rede
    - precisão / auto-ajuste de ordens pequenas
    - retry com backoff linear (mesma ordem em todas as tentativas)
    - auditoria em CSV de toda ordem aceita
    """

    def __init__(
        self,
        sessions: SessionManager,
        mode_resolver: PositionModeResolver,
        positions: PositionReader,
        audit: Optional[TradeAuditLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_leverage: float = MAX_LEVERAGE,
    ):
        self.sessions = sessions
        self.max_leverage = min(MAX_LEVERAGE, max_leverage)
        self.mode_resolver = mode_resolver
        self.positions = positions
        self.audit = audit
        self.sleep = sleep

    # ========== ENTRADA ==========

    def submit_entry(self, symbol: str, side: str, quantity: float, leverage: int = 10,
                     price: Optional[float] = None) -> OrderResult:
        direction = (side or "").lower()
        if not is_valid_symbol(symbol):
            return OrderResult(False, error="Invalid symbol format. Use 'BTC/USDT'")
        if direction not in _LONG_ALIASES + _SHORT_ALIASES:
            return OrderResult(False, error=f"Invalid side: {side}")
        if quantity is None or quantity <= 0:
            return OrderResult(False, error="Amount must be greater than 0")
        if leverage < MIN_LEVERAGE or leverage > self.max_leverage:
            return OrderResult(False, error=f"Leverage must be between {MIN_LEVERAGE} and {self.max_leverage:g}")

        is_long = direction in _LONG_ALIASES
        wire = to_exchange_symbol(symbol)

        session = self.sessions.acquire()
        session.sync_clock()

        try:
            qty, effective_leverage, _ = scale_entry(quantity, int(leverage), wire, self.max_leverage)
        except ValidationError as e:
            logger.warning(f"[ORDER] {e.message}")
            return OrderResult(False, error=e.message)

        if price:
            notional = check_min_notional(qty, wire, price)
            if not notional.allowed:
                return OrderResult(False, error=notional.reason)

        try:
            logger.info(f"[ORDER] Definindo alavancagem {effective_leverage}x para {wire}...")
            session.signed("futures_change_leverage", symbol=wire, leverage=effective_leverage)
        except PerpGuardError as e:
            logger.warning(f"[ORDER] ⚠️ Falha ao definir alavancagem: {e}. Seguindo com a alavancagem atual")

        position_side = None
        if self.mode_resolver.is_dual():
            position_side = POSITION_SIDE_LONG if is_long else POSITION_SIDE_SHORT

        request = OrderRequest(
            symbol=wire,
            side=BUY if is_long else SELL,
            type=LIMIT if price else MARKET,
            quantity=qty,
            price=price or None,
            position_side=position_side,
        )

        label = "LONG" if is_long else "SHORT"
        logger.info(f"[ORDER] Abrindo {label} {wire}: {qty} @ {price or 'mercado'} com {effective_leverage}x")
        result = self._submit_with_retry(session, request, ENTRY_RETRY_DELAYS, leverage=effective_leverage)
        if result.success:
            self._audit("open", request, result)
        return result

    # ========== SAÍDA ==========

    def submit_exit(self, symbol: str, percentage: float = 100.0, quantity: Optional[float] = None,
                    price: Optional[float] = None, side: Optional[str] = None) -> OrderResult:
        """side (long/short) escolhe a perna a fechar quando as duas estão abertas em dual-side."""
        if not is_valid_symbol(symbol):
            return OrderResult(False, error="Invalid symbol format. Use 'BTC/USDT'")
        if quantity is None and (percentage is None or percentage <= 0 or percentage > 100):
            return OrderResult(False, error="Percentage must be between 0 and 100")
        if quantity is not None and quantity <= 0:
            return OrderResult(False, error="Amount must be greater than 0")

        wire = to_exchange_symbol(symbol)
        session = self.sessions.acquire()
        session.sync_clock()

        try:
            position = self.positions.get_position(wire, _position_side(side))
        except PerpGuardError as e:
            logger.error(f"[ORDER] Não foi possível ler a posição de {wire}: {e}")
            return OrderResult(False, error=f"Failed to fetch position: {e.message}")

        if position is None:
            return OrderResult(False, error=f"No open position for {symbol}")

        raw_qty = quantity if quantity is not None else position.contracts * percentage / 100
        qty = round_quantity(min(raw_qty, position.contracts), wire)
        if qty <= 0:
            return OrderResult(
                False,
                error=f"Close amount {raw_qty} rounds to zero (min: {min_quantity(wire)})",
            )

        dual = self.mode_resolver.is_dual()
        request = OrderRequest(
            symbol=wire,
            side=position.close_side,
            type=LIMIT if price else MARKET,
            quantity=qty,
            price=price or None,
            reduce_only=not dual,
            position_side=position.hedge_side if dual else None,
        )

        logger.info(f"[ORDER] Fechando {position.side.upper()} {wire}: {qty} de {position.contracts} "
                    f"@ {price or 'mercado'}")
        result = self._submit_with_retry(session, request, EXIT_RETRY_DELAYS, leverage=position.leverage)
        if result.success:
            self._audit("close", request, result)
        return result

    # ========== HELPERS ==========

    def _submit_with_retry(self, session, request: OrderRequest, delays: Sequence[float],
                           leverage: Optional[float] = None) -> OrderResult:
        last_error: Optional[PerpGuardError] = None

        for attempt in range(1, ORDER_ATTEMPTS + 1):
            try:
                logger.info(f"[ORDER] 🔄 Tentativa {attempt}/{ORDER_ATTEMPTS}...")
                response = session.signed("futures_create_order", **request.to_params())
                result = order_result_from_response(response or {}, request, leverage)
                logger.info(f"[ORDER] ✅ Ordem {result.order_id} criada na tentativa {attempt}: "
                            f"{result.quantity} @ {result.price}")
                return result
            except PerpGuardError as e:
                last_error = e
                logger.warning(f"[ORDER] ⚠️ Tentativa {attempt} falhou: {e}")
                if not e.retryable:
                    logger.error("[ORDER] Erro não recuperável, abortando novas tentativas")
                    break
                if attempt < ORDER_ATTEMPTS:
                    delay = delays[attempt - 1]
                    logger.info(f"[ORDER] Nova tentativa em {delay}s...")
                    self.sleep(delay)

        error = last_error.message if last_error and last_error.message else None
        return OrderResult(False, error=error or f"Failed to create order after {ORDER_ATTEMPTS} attempts")

    def _audit(self, action: str, request: OrderRequest, result: OrderResult) -> None:
        if self.audit is not None:
            self.audit.log_order(action, request, result)
