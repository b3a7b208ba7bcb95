# file: perpguard/execution/positions.py

from typing import Any, Dict, List, Optional

from perpguard.exchange.errors import MalformedResponseError, PerpGuardError, PositionFetchError
from perpguard.exchange.session import SessionManager
from perpguard.exchange.symbols import to_exchange_symbol
from perpguard.execution.order_model import LONG, POSITION_SIDE_BOTH, SHORT, Position
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

# Fallback quando a exchange não informa maintMargin. Simplificação: a taxa
# real depende do bracket de notional do símbolo.
MAINTENANCE_MARGIN_RATE = 0.004


def _f(raw: Dict[str, Any], key: str, default: float = 0.0) -> float:
    value = raw.get(key)
    if value is None or value == "":
        return default
    return float(value)


def parse_position(raw: Dict[str, Any]) -> Position:
    """Converte um item de positionRisk (v2 ou v3) em Position."""
    signed_qty = float(raw["positionAmt"])
    contracts = abs(signed_qty)
    entry = _f(raw, "entryPrice")
    mark = _f(raw, "markPrice")
    notional = abs(_f(raw, "notional", contracts * mark))

    leverage = _f(raw, "leverage")
    initial_margin = _f(raw, "initialMargin")
    if leverage <= 0 and initial_margin > 0:
        # v3 não traz leverage
        leverage = notional / initial_margin
    if leverage <= 0:
        leverage = 1.0
    if initial_margin <= 0:
        initial_margin = notional / leverage

    maintenance = _f(raw, "maintMargin") or notional * MAINTENANCE_MARGIN_RATE

    margin_type = raw.get("marginType")
    if not margin_type:
        margin_type = "isolated" if _f(raw, "isolatedMargin") > 0 else "cross"

    direction = 1 if signed_qty > 0 else -1
    percentage = ((mark - entry) / entry) * 100 * direction if entry > 0 else 0.0

    return Position(
        symbol=raw["symbol"],
        side=LONG if signed_qty > 0 else SHORT,
        contracts=contracts,
        signed_quantity=signed_qty,
        entry_price=entry,
        mark_price=mark,
        leverage=leverage,
        notional=notional,
        unrealized_pnl=_f(raw, "unRealizedProfit"),
        percentage=percentage,
        margin_type=str(margin_type).lower(),
        liquidation_price=_f(raw, "liquidationPrice"),
        initial_margin=initial_margin,
        maintenance_margin=maintenance,
        position_side=raw.get("positionSide") or POSITION_SIDE_BOTH,
    )


class PositionReader:
    """
    Leitura das posições abertas direto da exchange (fonte da verdade).
    Tentativa única: o chamador decide se tenta de novo. Falha de leitura
    NUNCA vira "sem posições".
    """

    def __init__(self, sessions: SessionManager):
        self.sessions = sessions

    def list_open_positions(self) -> List[Position]:
        session = self.sessions.acquire()

        try:
            body = session.signed("futures_position_information")
        except MalformedResponseError:
            raise
        except PerpGuardError as e:
            logger.error(f"[POSITIONS] Falha ao buscar posições: {e}")
            raise PositionFetchError(f"Failed to fetch positions: {e.message}", e.code) from e

        if body is None or body == "" or body == {}:
            raise MalformedResponseError("Empty response from server")
        if not isinstance(body, list):
            raise MalformedResponseError(f"Expected array response, got: {type(body).__name__}")

        positions = []
        try:
            for raw in body:
                if float(raw.get("positionAmt") or 0) == 0:
                    continue
                positions.append(parse_position(raw))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid position payload: {e}") from e

        logger.info(f"[POSITIONS] {len(positions)} posição(ões) aberta(s)")
        return positions

    def get_position(self, symbol: str, position_side: Optional[str] = None) -> Optional[Position]:
        """position_side (LONG/SHORT) escolhe a perna quando a conta está em modo dual-side."""
        wire = to_exchange_symbol(symbol)
        wanted = position_side.upper() if position_side else None
        for pos in self.list_open_positions():
            if pos.symbol == wire and (wanted is None or pos.hedge_side == wanted):
                return pos
        return None


class AccountReader:
    """Saldo da conta de futuros (margem disponível / carteira)."""

    def __init__(self, sessions: SessionManager):
        self.sessions = sessions

    def _account(self) -> Dict[str, Any]:
        body = self.sessions.acquire().signed("futures_account")
        if not isinstance(body, dict) or not body:
            raise MalformedResponseError("Empty account response")
        return body

    def available_balance(self) -> float:
        try:
            return float(self._account()["availableBalance"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid account payload: {e}") from e

    def wallet_balance(self) -> float:
        try:
            return float(self._account()["totalWalletBalance"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid account payload: {e}") from e
