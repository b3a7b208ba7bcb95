# file: perpguard/exchange/position_mode.py

import threading
from typing import Optional

from perpguard.exchange.errors import PerpGuardError
from perpguard.exchange.session import SessionManager
from perpguard.execution.order_model import PositionMode
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)


def _parse_dual_flag(data) -> Optional[bool]:
    if not isinstance(data, dict) or "dualSidePosition" not in data:
        return None
    flag = data["dualSidePosition"]
    if isinstance(flag, str):
        return flag.strip().lower() == "true"
    return bool(flag)


class PositionModeResolver:
    """
    Modo de posição da conta (one-way x hedge/dual-side).
    Cacheado após a primeira consulta bem-sucedida; reset() força nova consulta.
    Quando as duas consultas falham devolve ONE_WAY sem cachear.
    """

    def __init__(self, sessions: SessionManager):
        self.sessions = sessions
        self._lock = threading.Lock()
        self._mode: Optional[PositionMode] = None

    def get(self) -> PositionMode:
        with self._lock:
            if self._mode is None:
                mode = self._fetch()
                if mode is None:
                    logger.warning("[MODE] Não foi possível detectar o modo de posição. Assumindo ONE-WAY")
                    return PositionMode.ONE_WAY
                self._mode = mode
            return self._mode

    def is_dual(self) -> bool:
        return self.get() is PositionMode.DUAL_SIDE

    def reset(self) -> None:
        with self._lock:
            self._mode = None

    def _fetch(self) -> Optional[PositionMode]:
        session = self.sessions.acquire()

        try:
            dual = _parse_dual_flag(session.signed("futures_get_position_mode"))
            if dual is not None:
                return self._resolved(dual, "consulta direta")
        except PerpGuardError as e:
            logger.warning(f"[MODE] futures_get_position_mode falhou: {e}")

        try:
            dual = _parse_dual_flag(session.raw_signed("get", "positionSide/dual"))
            if dual is not None:
                return self._resolved(dual, "GET /fapi/v1/positionSide/dual")
        except PerpGuardError as e:
            logger.warning(f"[MODE] GET positionSide/dual falhou: {e}")

        return None

    @staticmethod
    def _resolved(dual: bool, source: str) -> PositionMode:
        mode = PositionMode.DUAL_SIDE if dual else PositionMode.ONE_WAY
        logger.info(f"[MODE] Modo de posição: {mode.value} ({source})")
        return mode
