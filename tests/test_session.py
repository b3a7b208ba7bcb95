import threading
import time
import unittest
from unittest.mock import MagicMock, call

import requests

from perpguard.exchange.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectivityError,
    ExchangeBusinessError,
    MalformedResponseError,
    SessionInitError,
    ValidationError,
    classify_exception,
)
from perpguard.exchange.session import Session, SessionManager
from fakes import SERVER_TIME_MS, api_error, make_client, make_config


class SessionManagerTest(unittest.TestCase):
    def test_concurrent_acquire_shares_one_initialization(self):
        client = make_client()
        created = []

        def factory(key, secret, params):
            created.append(key)
            time.sleep(0.05)
            return client

        manager = SessionManager(make_config(), client_factory=factory, sleep=MagicMock())
        sessions = []

        def worker():
            sessions.append(manager.acquire())

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(created), 1)
        self.assertEqual(len(sessions), 5)
        self.assertTrue(all(s is sessions[0] for s in sessions))
        client.futures_ping.assert_called_once()

    def test_ping_retried_with_linear_backoff(self):
        client = make_client()
        client.futures_ping.side_effect = [requests.exceptions.ConnectionError("down")] * 4 + [{}]
        sleep = MagicMock()
        manager = SessionManager(make_config(), client_factory=lambda *a: client, sleep=sleep)

        session = manager.acquire()

        self.assertIsInstance(session, Session)
        self.assertEqual(sleep.call_args_list, [call(5), call(10), call(15), call(20)])

    def test_exhausted_initialization_stays_failed_until_reset(self):
        client = make_client()
        client.futures_ping.side_effect = requests.exceptions.Timeout("timeout")
        factory = MagicMock(return_value=client)
        sleep = MagicMock()
        manager = SessionManager(make_config(), client_factory=factory, sleep=sleep)

        with self.assertRaises(SessionInitError) as ctx:
            manager.acquire()
        self.assertIn("Failed to connect to Binance", str(ctx.exception))
        self.assertEqual(client.futures_ping.call_count, 5)
        self.assertEqual(sleep.call_args_list, [call(5), call(10), call(15), call(20)])

        with self.assertRaises(SessionInitError):
            manager.acquire()
        self.assertEqual(factory.call_count, 1)

        client.futures_ping.side_effect = None
        manager.reset()
        self.assertIsInstance(manager.acquire(), Session)
        self.assertEqual(factory.call_count, 2)

    def test_missing_credentials_fail_without_connecting(self):
        factory = MagicMock()
        manager = SessionManager(make_config(binance_testnet_api_key=""), client_factory=factory)

        with self.assertRaises(ConfigurationError):
            manager.acquire()
        factory.assert_not_called()

    def test_endpoint_and_proxy_follow_configuration(self):
        client = make_client()
        factory = MagicMock(return_value=client)
        cfg = make_config(binance_http_proxy="http://proxy.local:3128", request_timeout=30)
        SessionManager(cfg, client_factory=factory, sleep=MagicMock()).acquire()

        key, secret, params = factory.call_args[0]
        self.assertEqual((key, secret), ("test-key-123456", "test-secret"))
        self.assertEqual(params["timeout"], 30)
        self.assertEqual(params["proxies"], {"http": "http://proxy.local:3128", "https": "http://proxy.local:3128"})
        self.assertEqual(client.FUTURES_URL, "https://demo-fapi.binance.com/fapi")


class ClockSyncTest(unittest.TestCase):
    def test_offset_discounts_half_the_latency(self):
        client = make_client()
        client.futures_time.return_value = {"serverTime": 5000}
        ticks = iter([1000.0, 1100.0, 2000.0])
        manager = SessionManager(make_config(), client_factory=lambda *a: client,
                                 sleep=MagicMock(), clock=lambda: next(ticks))

        session = manager.acquire()

        # 5000 - (1100 + 100 / 2)
        self.assertEqual(session.offset_ms, 3850)
        self.assertEqual(client.timestamp_offset, 3850)
        self.assertEqual(session.adjusted_timestamp(), 2000 + 3850)

    def test_failed_sync_falls_back_to_zero_offset(self):
        client = make_client()
        client.futures_time.side_effect = requests.exceptions.Timeout("slow")
        sleep = MagicMock()
        session = Session(client, clock=lambda: float(SERVER_TIME_MS), sleep=sleep)
        session.offset_ms = 999

        self.assertEqual(session.sync_clock(), 0)
        self.assertEqual(client.futures_time.call_count, 3)
        self.assertEqual(sleep.call_args_list, [call(1), call(2)])
        self.assertEqual(client.timestamp_offset, 0)


class SignedCallTest(unittest.TestCase):
    def test_signed_injects_recv_window(self):
        client = make_client()
        session = Session(client, recv_window=60_000)

        session.signed("futures_account")

        client.futures_account.assert_called_once_with(recvWindow=60_000)

    def test_exchange_errors_are_classified(self):
        client = make_client()
        client.futures_account.side_effect = api_error(-2015, "Invalid API-key, IP, or permissions for action.", 401)
        session = Session(client)

        with self.assertRaises(AuthenticationError) as ctx:
            session.signed("futures_account")
        self.assertEqual(ctx.exception.code, -2015)
        self.assertFalse(ctx.exception.retryable)


class ClassifyExceptionTest(unittest.TestCase):
    def test_taxonomy(self):
        self.assertIsInstance(classify_exception(api_error(-1022, "Signature invalid")), AuthenticationError)
        self.assertIsInstance(classify_exception(api_error(-1111, "Precision is over the maximum")), ValidationError)
        self.assertIsInstance(classify_exception(api_error(-1021, "Timestamp outside recvWindow")), ConnectivityError)
        self.assertIsInstance(classify_exception(api_error(-1001, "Internal error", 503)), ConnectivityError)
        self.assertIsInstance(classify_exception(requests.exceptions.ConnectionError("dns")), ConnectivityError)
        self.assertIsInstance(classify_exception(ValueError("bad json")), MalformedResponseError)

        margin = classify_exception(api_error(-2019, "Margin is insufficient."))
        self.assertIsInstance(margin, ExchangeBusinessError)
        self.assertTrue(margin.retryable)
        self.assertEqual(margin.message, "Margin is insufficient.")

        limited = classify_exception(api_error(-1003, "Too many requests", 429))
        self.assertIsInstance(limited, ExchangeBusinessError)
        self.assertTrue(limited.message.startswith("Rate limited"))


if __name__ == "__main__":
    unittest.main()
