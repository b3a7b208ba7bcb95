import os
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest
from unittest.mock import patch

from perpguard.config.config_loader import AppConfig, RiskConfig, normalize_trading_mode
from perpguard.exchange.errors import ConfigurationError


class ConfigLoaderTest(unittest.TestCase):
    def test_reads_key_value_file(self):
        with TemporaryDirectory() as tmp, patch.dict(os.environ, {}, clear=True):
            cfg_path = Path(tmp) / "config.txt"
            cfg_path.write_text(
                "\n".join(
                    [
                        "# credenciais",
                        "trading_mode=live",
                        "binance_live_api_key=FILE_KEY",
                        "binance_live_api_secret=FILE_SECRET",
                        "max_leverage=20",
                        "max_position_size_usdt=2500",
                        "daily_loss_limit_percent=15",
                        "initial_capital=100",
                        "recv_window=5000",
                    ]
                ),
                encoding="utf-8",
            )

            cfg = AppConfig.from_sources(str(cfg_path))

            self.assertTrue(cfg.is_live)
            self.assertEqual(cfg.credentials(), ("FILE_KEY", "FILE_SECRET"))
            self.assertEqual(cfg.base_url, "https://fapi.binance.com")
            self.assertAlmostEqual(cfg.max_leverage, 20)
            self.assertAlmostEqual(cfg.max_position_size_usdt, 2500)
            self.assertAlmostEqual(cfg.daily_loss_limit_percent, 15)
            self.assertAlmostEqual(cfg.initial_capital, 100)
            self.assertEqual(cfg.recv_window, 5000)
            self.assertEqual(cfg.request_timeout, 60.0)

    def test_environment_overrides_file(self):
        with TemporaryDirectory() as tmp, patch.dict(
            os.environ,
            {
                "BINANCE_TESTNET_API_KEY": "ENV_KEY",
                "PERPGUARD_MAX_LEVERAGE": "5",
                "HTTPS_PROXY": "http://proxy.local:3128",
            },
            clear=True,
        ):
            cfg_path = Path(tmp) / "config.txt"
            cfg_path.write_text(
                "\n".join(
                    [
                        "trading_mode=dry-run",
                        "binance_testnet_api_key=FILE_KEY",
                        "binance_testnet_api_secret=FILE_SECRET",
                        "max_leverage=25",
                    ]
                ),
                encoding="utf-8",
            )

            cfg = AppConfig.from_sources(str(cfg_path))

            self.assertFalse(cfg.is_live)
            self.assertEqual(cfg.credentials(), ("ENV_KEY", "FILE_SECRET"))
            self.assertEqual(cfg.base_url, "https://demo-fapi.binance.com")
            self.assertAlmostEqual(cfg.max_leverage, 5)
            self.assertEqual(cfg.proxy_url, "http://proxy.local:3128")

    def test_disable_proxy_wins_over_proxy_url(self):
        cfg = AppConfig(binance_http_proxy="http://proxy.local:3128", binance_disable_proxy=True)
        self.assertIsNone(cfg.proxy_url)

    def test_missing_credentials_raise_configuration_error(self):
        cfg = AppConfig(trading_mode="live", binance_testnet_api_key="k", binance_testnet_api_secret="s")
        with self.assertRaises(ConfigurationError) as ctx:
            cfg.credentials()
        self.assertIn("BINANCE_LIVE_API_KEY", str(ctx.exception))

    def test_trading_mode_normalization(self):
        self.assertEqual(normalize_trading_mode("LIVE"), "live")
        self.assertEqual(normalize_trading_mode("dry-run"), "paper")
        self.assertEqual(normalize_trading_mode(""), "paper")

    def test_risk_config_is_frozen_snapshot(self):
        cfg = AppConfig(max_leverage=12, max_position_size_usdt=800, daily_loss_limit_percent=10)
        risk = cfg.risk_config()
        self.assertEqual(risk, RiskConfig("paper", 800, 12, 10))
        with self.assertRaises(Exception):
            risk.max_leverage = 50


if __name__ == "__main__":
    unittest.main()
