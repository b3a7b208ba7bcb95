import unittest

from perpguard.exchange.position_mode import PositionModeResolver
from perpguard.execution.order_model import PositionMode
from fakes import api_error, make_client, make_sessions


class PositionModeResolverTest(unittest.TestCase):
    def test_successful_lookup_is_cached_until_reset(self):
        client = make_client(dual=True)
        sessions, _, _ = make_sessions(client)
        resolver = PositionModeResolver(sessions)

        self.assertTrue(resolver.is_dual())
        self.assertTrue(resolver.is_dual())
        self.assertEqual(client.futures_get_position_mode.call_count, 1)

        resolver.reset()
        resolver.get()
        self.assertEqual(client.futures_get_position_mode.call_count, 2)

    def test_falls_back_to_raw_endpoint(self):
        client = make_client()
        client.futures_get_position_mode.side_effect = api_error(-1000, "Unknown error")
        client._request_futures_api.return_value = {"dualSidePosition": "true"}
        sessions, _, _ = make_sessions(client)

        self.assertIs(PositionModeResolver(sessions).get(), PositionMode.DUAL_SIDE)
        self.assertEqual(client._request_futures_api.call_args.args[:3], ("get", "positionSide/dual", True))

    def test_failed_lookup_is_not_cached(self):
        client = make_client()
        client.futures_get_position_mode.side_effect = [
            api_error(-1000, "Unknown error"),
            {"dualSidePosition": True},
        ]
        client._request_futures_api.side_effect = api_error(-1000, "Unknown error")
        sessions, _, _ = make_sessions(client)
        resolver = PositionModeResolver(sessions)

        self.assertIs(resolver.get(), PositionMode.ONE_WAY)
        self.assertIs(resolver.get(), PositionMode.DUAL_SIDE)
        self.assertTrue(resolver.is_dual())
        self.assertEqual(client.futures_get_position_mode.call_count, 2)


if __name__ == "__main__":
    unittest.main()
