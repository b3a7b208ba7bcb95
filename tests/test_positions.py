import unittest

from perpguard.exchange.errors import MalformedResponseError, PositionFetchError
from perpguard.execution.positions import AccountReader, PositionReader
from fakes import api_error, make_client, make_sessions, raw_position


def build_reader(client):
    sessions, client, _ = make_sessions(client)
    return PositionReader(sessions)


class PositionReaderTest(unittest.TestCase):
    def test_maps_open_positions_and_skips_flat_ones(self):
        client = make_client()
        client.futures_position_information.return_value = [
            raw_position(amount="0.002", entry="60000", mark="61000", leverage="3"),
            raw_position(symbol="ETHUSDT", amount="0", entry="0", mark="3000"),
            raw_position(symbol="SOLUSDT", amount="-10", entry="100", mark="95", pnl="50",
                         leverage="5", margin_type="ISOLATED"),
        ]
        positions = build_reader(client).list_open_positions()

        self.assertEqual([p.symbol for p in positions], ["BTCUSDT", "SOLUSDT"])

        btc, sol = positions
        self.assertEqual(btc.side, "long")
        self.assertTrue(btc.is_long)
        self.assertEqual(btc.contracts, 0.002)
        self.assertAlmostEqual(btc.notional, 122.0)
        self.assertAlmostEqual(btc.initial_margin, 122.0 / 3)
        self.assertAlmostEqual(btc.maintenance_margin, 122.0 * 0.004)
        self.assertAlmostEqual(btc.percentage, (61000 - 60000) / 60000 * 100)

        self.assertEqual(sol.side, "short")
        self.assertFalse(sol.is_long)
        self.assertEqual(sol.contracts, 10)
        self.assertEqual(sol.margin_type, "isolated")
        self.assertAlmostEqual(sol.percentage, 5.0)

    def test_v3_payload_without_leverage(self):
        client = make_client()
        client.futures_position_information.return_value = [{
            "symbol": "BTCUSDT",
            "positionSide": "BOTH",
            "positionAmt": "0.002",
            "entryPrice": "60000",
            "markPrice": "60000",
            "unRealizedProfit": "0",
            "liquidationPrice": "0",
            "isolatedMargin": "0",
            "notional": "120",
            "initialMargin": "40",
            "maintMargin": "0.48",
        }]
        position = build_reader(client).list_open_positions()[0]

        self.assertAlmostEqual(position.leverage, 3)
        self.assertEqual(position.margin_type, "cross")
        self.assertAlmostEqual(position.maintenance_margin, 0.48)

    def test_empty_list_means_no_positions(self):
        client = make_client()
        client.futures_position_information.return_value = []
        self.assertEqual(build_reader(client).list_open_positions(), [])

    def test_malformed_bodies(self):
        for body in ("", None, {"code": -1, "msg": "?"}, [{"symbol": "BTCUSDT", "positionAmt": "abc"}]):
            with self.subTest(body=body):
                client = make_client()
                client.futures_position_information.return_value = body
                with self.assertRaises(MalformedResponseError):
                    build_reader(client).list_open_positions()

    def test_upstream_failure_is_not_an_empty_list(self):
        client = make_client()
        client.futures_position_information.side_effect = api_error(-1001, "Internal error", 500)

        with self.assertRaises(PositionFetchError):
            build_reader(client).list_open_positions()

    def test_get_position_accepts_both_symbol_forms(self):
        client = make_client()
        client.futures_position_information.return_value = [raw_position()]
        reader = build_reader(client)

        self.assertEqual(reader.get_position("BTC/USDT").symbol, "BTCUSDT")
        self.assertEqual(reader.get_position("BTCUSDT").symbol, "BTCUSDT")
        self.assertIsNone(reader.get_position("ETH/USDT"))

    def test_get_position_picks_the_requested_leg(self):
        client = make_client(dual=True)
        client.futures_position_information.return_value = [
            raw_position(amount="0.002", position_side="LONG"),
            raw_position(amount="-0.003", position_side="SHORT"),
        ]
        reader = build_reader(client)

        self.assertEqual(reader.get_position("BTC/USDT").position_side, "LONG")
        self.assertEqual(reader.get_position("BTC/USDT", "short").contracts, 0.003)
        self.assertEqual(reader.get_position("BTC/USDT", "LONG").contracts, 0.002)


class AccountReaderTest(unittest.TestCase):
    def test_balances(self):
        client = make_client()
        client.futures_account.return_value = {"availableBalance": "95.5", "totalWalletBalance": "120.25"}
        sessions, _, _ = make_sessions(client)
        account = AccountReader(sessions)

        self.assertEqual(account.available_balance(), 95.5)
        self.assertEqual(account.wallet_balance(), 120.25)

    def test_missing_field_is_malformed(self):
        client = make_client()
        client.futures_account.return_value = {"assets": []}
        sessions, _, _ = make_sessions(client)

        with self.assertRaises(MalformedResponseError):
            AccountReader(sessions).available_balance()


if __name__ == "__main__":
    unittest.main()
