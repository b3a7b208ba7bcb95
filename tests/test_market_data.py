import unittest

import pandas as pd

from perpguard.data.data_handler import MarketDataHandler
from perpguard.data.indicators import add_atr, latest_atr
from perpguard.exchange.errors import MalformedResponseError
from fakes import make_client, make_sessions


def kline(i, high, low, close):
    open_time = 1_700_000_000_000 + i * 14_400_000
    return [open_time, str(close), str(high), str(low), str(close), "10", open_time + 14_399_999,
            "1000", 50, "5", "500", "0"]


class IndicatorsTest(unittest.TestCase):
    def test_atr_of_constant_range(self):
        df = pd.DataFrame({
            "high": [102.0] * 20,
            "low": [98.0] * 20,
            "close": [100.0] * 20,
        })
        out = add_atr(df, period=14)
        self.assertTrue(pd.isna(out["atr"].iloc[12]))
        self.assertAlmostEqual(out["atr"].iloc[-1], 4.0)
        self.assertAlmostEqual(latest_atr(df, 14), 4.0)

    def test_not_enough_candles(self):
        df = pd.DataFrame({"high": [1.0] * 5, "low": [0.5] * 5, "close": [0.8] * 5})
        self.assertIsNone(latest_atr(df, 14))


class MarketDataHandlerTest(unittest.TestCase):
    def test_mark_price(self):
        client = make_client()
        client.futures_mark_price.return_value = {"symbol": "BTCUSDT", "markPrice": "60123.40"}
        sessions, _, _ = make_sessions(client)

        self.assertEqual(MarketDataHandler(sessions).get_mark_price("BTC/USDT"), 60123.4)
        client.futures_mark_price.assert_called_once_with(symbol="BTCUSDT")

    def test_ohlcv_and_atr_percent(self):
        client = make_client()
        client.futures_klines.return_value = [kline(i, 102, 98, 100) for i in range(60)]
        sessions, _, _ = make_sessions(client)
        handler = MarketDataHandler(sessions)

        df = handler.get_ohlcv("BTC/USDT", interval="4h", limit=60)
        self.assertEqual(list(df.columns), ["open", "high", "low", "close", "volume"])
        self.assertEqual(len(df), 60)
        self.assertEqual(df["close"].dtype, float)

        self.assertAlmostEqual(handler.atr_percent("BTC/USDT", reference_price=200.0), 2.0)
        self.assertAlmostEqual(handler.atr_percent("BTC/USDT"), 4.0)

    def test_non_list_klines_are_malformed(self):
        client = make_client()
        client.futures_klines.return_value = {"code": -1121, "msg": "Invalid symbol."}
        sessions, _, _ = make_sessions(client)

        with self.assertRaises(MalformedResponseError):
            MarketDataHandler(sessions).get_ohlcv("FOO/USDT")


if __name__ == "__main__":
    unittest.main()
