import json
from unittest.mock import MagicMock

from binance.exceptions import BinanceAPIException

from perpguard.config.config_loader import AppConfig
from perpguard.exchange.session import SessionManager

SERVER_TIME_MS = 1_700_000_000_000


def api_error(code: int, msg: str, status: int = 400) -> BinanceAPIException:
    return BinanceAPIException(MagicMock(), status, json.dumps({"code": code, "msg": msg}))


def make_config(**overrides) -> AppConfig:
    values = {
        "binance_testnet_api_key": "test-key-123456",
        "binance_testnet_api_secret": "test-secret",
    }
    values.update(overrides)
    return AppConfig(**values)


def make_client(dual: bool = False) -> MagicMock:
    client = MagicMock()
    client.futures_ping.return_value = {}
    client.futures_time.return_value = {"serverTime": SERVER_TIME_MS}
    client.futures_get_position_mode.return_value = {"dualSidePosition": dual}
    client.futures_get_open_orders.return_value = []
    return client


def make_sessions(client=None, sleep=None, cfg=None):
    client = client if client is not None else make_client()
    sleep = sleep if sleep is not None else MagicMock()
    sessions = SessionManager(
        cfg or make_config(),
        client_factory=lambda key, secret, params: client,
        sleep=sleep,
        clock=lambda: float(SERVER_TIME_MS),
    )
    return sessions, client, sleep


def raw_position(symbol="BTCUSDT", amount="0.002", entry="60000", mark="61000", pnl="2.0",
                 leverage="3", position_side="BOTH", margin_type="cross"):
    notional = float(amount) * float(mark)
    return {
        "symbol": symbol,
        "positionAmt": amount,
        "entryPrice": entry,
        "markPrice": mark,
        "unRealizedProfit": pnl,
        "liquidationPrice": "40000",
        "leverage": leverage,
        "notional": str(notional),
        "marginType": margin_type,
        "isolatedMargin": "0",
        "positionSide": position_side,
    }
