import unittest
from unittest.mock import MagicMock

from perpguard.execution.order_model import OrderResult
from perpguard.main import build_parser, run


class CliTest(unittest.TestCase):
    def test_invalid_decision_exits_with_usage_code(self):
        engine = MagicMock()

        for payload in ('{"symbol": "BTC/USDT", "action": ', '{"symbol": "BTC/USDT", "action": "short"}'):
            args = build_parser().parse_args(["decide", payload])
            self.assertEqual(run(args, engine), 2)

        engine.execute_decision.assert_not_called()

    def test_close_forwards_the_leg(self):
        engine = MagicMock()
        engine.executor.submit_exit.return_value = OrderResult(True, order_id="7", quantity=0.003)

        args = build_parser().parse_args(["close", "BTC/USDT", "--side", "short"])

        self.assertEqual(run(args, engine), 0)
        engine.executor.submit_exit.assert_called_once_with("BTC/USDT", percentage=100.0, quantity=None,
                                                            side="short")


if __name__ == "__main__":
    unittest.main()
