# file: perpguard/exchange/session.py

import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from binance.client import Client

from perpguard.config.config_loader import AppConfig
from perpguard.exchange.errors import (
    EXCHANGE_EXCEPTIONS,
    ConfigurationError,
    SessionInitError,
    classify_exception,
)
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

CONNECT_ATTEMPTS = 5
CONNECT_BACKOFF_SECONDS = 5  # 5s, 10s, 15s, 20s

CLOCK_SYNC_ATTEMPTS = 3
CLOCK_SYNC_BACKOFF_SECONDS = 1  # 1s, 2s

ClientFactory = Callable[[str, str, Dict[str, Any]], Any]


def _default_client_factory(api_key: str, api_secret: str, requests_params: Dict[str, Any]) -> Client:
    # ping=False: a verificação de conectividade é feita pelo SessionManager (futures_ping)
    return Client(api_key, api_secret, requests_params=requests_params, ping=False)


def _local_ms() -> float:
    return time.time() * 1000


class Session:
    """
    Handle autenticado para a API de futuros.
    - Único caminho para chamadas assinadas (signed) e públicas
    - Mantém o offset de relógio local x servidor
    """

    def __init__(
        self,
        client,
        recv_window: int = 60_000,
        clock: Callable[[], float] = _local_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.recv_window = recv_window
        self.clock = clock
        self.sleep = sleep
        self.offset_ms = 0

    # ========== RELÓGIO ==========

    def adjusted_timestamp(self) -> int:
        return int(self.clock() + self.offset_ms)

    def _apply_offset(self, offset: int) -> None:
        self.offset_ms = offset
        # python-binance soma timestamp_offset em todo request assinado
        self.client.timestamp_offset = offset

    def sync_clock(self) -> int:
        """
        Mede o delta local x servidor descontando metade da latência:
            offset = serverTime - (local_no_recebimento + latência / 2)
        3 tentativas (espera 1s, 2s). Se todas falharem, offset = 0.
        """
        for attempt in range(1, CLOCK_SYNC_ATTEMPTS + 1):
            try:
                started = self.clock()
                data = self.client.futures_time()
                received = self.clock()
                latency = received - started
                offset = int(float(data["serverTime"]) - (received + latency / 2))
                self._apply_offset(offset)
                logger.info(f"[SESSION] Relógio sincronizado (tentativa {attempt}/{CLOCK_SYNC_ATTEMPTS}). "
                            f"Offset: {offset}ms, latência: {latency:.0f}ms")
                return offset
            except Exception as e:
                logger.warning(f"[SESSION] Sync de relógio {attempt}/{CLOCK_SYNC_ATTEMPTS} falhou: {e}")
                if attempt < CLOCK_SYNC_ATTEMPTS:
                    self.sleep(attempt * CLOCK_SYNC_BACKOFF_SECONDS)

        logger.error("[SESSION] Falha ao sincronizar relógio após 3 tentativas. Usando horário local (offset = 0)")
        self._apply_offset(0)
        return 0

    # ========== CHAMADAS ==========

    def signed(self, call: str, **params) -> Any:
        """Chamada privada: timestamp ajustado + recvWindow + assinatura HMAC-SHA256."""
        params.setdefault("recvWindow", self.recv_window)
        return self._invoke(call, params)

    def public(self, call: str, **params) -> Any:
        return self._invoke(call, params)

    def raw_signed(self, method: str, path: str, **params) -> Any:
        """Endpoint assinado sem método dedicado no client (ex.: positionSide/dual)."""
        params.setdefault("recvWindow", self.recv_window)
        try:
            return self.client._request_futures_api(method, path, True, data=params)
        except EXCHANGE_EXCEPTIONS as e:
            raise classify_exception(e) from e

    def _invoke(self, call: str, params: Dict[str, Any]) -> Any:
        fn = getattr(self.client, call)
        try:
            return fn(**params)
        except EXCHANGE_EXCEPTIONS as e:
            raise classify_exception(e) from e


class SessionManager:
    """
    Dono do handle de sessão (singleton explícito, injetado nos componentes).

    acquire() é single-flight: chamadores concorrentes durante a primeira
    inicialização esperam pela MESMA inicialização em andamento. Uma falha de
    inicialização é fatal e fica memorizada até reset().
    """

    def __init__(
        self,
        cfg: AppConfig,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = _local_ms,
    ):
        self.cfg = cfg
        self.client_factory = client_factory or _default_client_factory
        self.sleep = sleep
        self.clock = clock

        self._lock = threading.Lock()
        self._future: Optional[Future] = None

    def acquire(self) -> Session:
        with self._lock:
            future = self._future
            owner = future is None
            if owner:
                future = Future()
                self._future = future

        if owner:
            try:
                future.set_result(self._initialize())
            except Exception as e:
                future.set_exception(e)

        return future.result()

    def sync_clock(self) -> int:
        return self.acquire().sync_clock()

    def adjusted_timestamp(self) -> int:
        return self.acquire().adjusted_timestamp()

    def reset(self) -> None:
        """Descarta o handle (testes / teardown). Próximo acquire() reconecta."""
        with self._lock:
            self._future = None

    # ========== INICIALIZAÇÃO ==========

    def _requests_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"timeout": self.cfg.request_timeout}
        proxy = self.cfg.proxy_url
        if proxy:
            # https via proxy HTTP = túnel CONNECT do requests
            params["proxies"] = {"http": proxy, "https": proxy}
        return params

    def _initialize(self) -> Session:
        api_key, api_secret = self.cfg.credentials()
        base_url = self.cfg.base_url
        mode_label = "LIVE (dinheiro real)" if self.cfg.is_live else "PAPER (testnet)"

        logger.info(f"[SESSION] Modo de trading: {mode_label}")
        logger.info(f"[SESSION] Base URL: {base_url}")
        logger.info(f"[SESSION] API Key: {api_key[:10]}...")
        if self.cfg.proxy_url:
            logger.info(f"[SESSION] Usando proxy: {self.cfg.proxy_url}")

        try:
            client = self.client_factory(api_key, api_secret, self._requests_params())
        except ConfigurationError:
            raise
        except Exception as e:
            raise SessionInitError(f"Failed to create Binance client: {e}") from e

        client.FUTURES_URL = f"{base_url}/fapi"

        last_error: Optional[Exception] = None
        for attempt in range(1, CONNECT_ATTEMPTS + 1):
            try:
                logger.info(f"[SESSION] 🔌 Testando conexão (tentativa {attempt}/{CONNECT_ATTEMPTS})...")
                started = time.monotonic()
                client.futures_ping()
                logger.info(f"[SESSION] ✅ Conexão OK em {(time.monotonic() - started) * 1000:.0f}ms")

                session = Session(client, recv_window=self.cfg.recv_window, clock=self.clock, sleep=self.sleep)
                session.sync_clock()
                return session
            except Exception as e:
                last_error = classify_exception(e)
                logger.error(f"[SESSION] ⚠️ Tentativa {attempt} falhou: {last_error}")
                if attempt < CONNECT_ATTEMPTS:
                    delay = attempt * CONNECT_BACKOFF_SECONDS
                    logger.info(f"[SESSION] Nova tentativa em {delay}s...")
                    self.sleep(delay)

        logger.error(f"[SESSION] ❌ FATAL: falha ao inicializar Binance em {base_url}")
        raise SessionInitError(f"Failed to connect to Binance. Last error: {last_error}")
