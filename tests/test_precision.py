import unittest

from perpguard.execution.precision import (
    DEFAULT_PRECISION,
    check_min_notional,
    format_price,
    format_quantity,
    get_precision,
    min_quantity,
    round_price,
    round_quantity,
)


class PrecisionTest(unittest.TestCase):
    def test_known_and_unknown_symbols(self):
        self.assertEqual(get_precision("BTC/USDT").quantity_decimals, 3)
        self.assertEqual(get_precision("BTCUSDT").price_decimals, 1)
        self.assertEqual(get_precision("DOGEUSDT").quantity_decimals, 0)
        self.assertEqual(get_precision("XRPUSDT"), DEFAULT_PRECISION)

    def test_round_quantity_truncates_and_is_idempotent(self):
        samples = [
            ("BTCUSDT", 0.0025),
            ("BTCUSDT", 1.23456789),
            ("ETHUSDT", 0.019999),
            ("SOLUSDT", 12.99),
            ("ADAUSDT", 99.9),
            ("DOGEUSDT", 0.7),
            ("XRPUSDT", 3.14159),
        ]
        for symbol, amount in samples:
            with self.subTest(symbol=symbol, amount=amount):
                rounded = round_quantity(amount, symbol)
                self.assertLessEqual(rounded, amount)
                self.assertEqual(round_quantity(rounded, symbol), rounded)

        self.assertEqual(round_quantity(0.0025, "BTCUSDT"), 0.002)
        self.assertEqual(round_quantity(12.99, "SOLUSDT"), 12.9)
        self.assertEqual(round_quantity(0.7, "DOGEUSDT"), 0.0)

    def test_min_quantity_is_one_step(self):
        self.assertEqual(min_quantity("BTCUSDT"), 0.001)
        self.assertEqual(min_quantity("BNBUSDT"), 0.1)
        self.assertEqual(min_quantity("ADAUSDT"), 1.0)

    def test_round_price_uses_price_decimals(self):
        self.assertEqual(round_price(58234.567, "BTCUSDT"), 58234.6)
        self.assertEqual(round_price(0.123456, "DOGEUSDT"), 0.12346)
        self.assertEqual(format_price(60000, "ETHUSDT"), "60000.00")
        self.assertEqual(format_quantity(0.0029, "BTCUSDT"), "0.002")

    def test_min_notional(self):
        self.assertTrue(check_min_notional(0.001, "BTCUSDT", None).allowed)
        self.assertTrue(check_min_notional(0.001, "BTCUSDT", 60000).allowed)

        result = check_min_notional(1, "DOGEUSDT", 0.1)
        self.assertFalse(result.allowed)
        self.assertIn("below the minimum", result.reason)


if __name__ == "__main__":
    unittest.main()
