# file: perpguard/main.py
import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from perpguard.config.config_loader import AppConfig
from perpguard.core.engine import Decision, TradingEngine
from perpguard.exchange.errors import ConfigurationError, PerpGuardError
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)


def _default_config_path() -> Path:
    """
    Resolve o caminho do config.txt:
    PERPGUARD_CONFIG, depois config.txt no CWD, por fim a raiz do repo (pai de src/).
    """
    env_path = os.getenv("PERPGUARD_CONFIG")
    if env_path:
        return Path(env_path)

    cwd_candidate = Path.cwd() / "config.txt"
    if cwd_candidate.exists():
        return cwd_candidate

    return Path(__file__).resolve().parents[2] / "config.txt"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="perpguard", description="Binance USDⓈ-M order execution & risk engine")
    parser.add_argument("--config", default=None, help="key=value config file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("positions", help="list open positions")

    close = sub.add_parser("close", help="close (part of) a position")
    close.add_argument("symbol")
    close.add_argument("--percentage", type=float, default=100.0)
    close.add_argument("--quantity", type=float, default=None)
    close.add_argument("--side", choices=["long", "short"], default=None, help="leg to close in dual-side mode")

    protect = sub.add_parser("protect", help="set stop-loss / take-profit")
    protect.add_argument("symbol", nargs="?", help="omit with --all to protect every position")
    protect.add_argument("--stop-loss", type=float, default=None)
    protect.add_argument("--take-profit", type=float, default=None)
    protect.add_argument("--stop-loss-percent", type=float, default=None)
    protect.add_argument("--take-profit-percent", type=float, default=None)
    protect.add_argument("--side", choices=["long", "short"], default=None, help="leg to protect in dual-side mode")
    protect.add_argument("--all", action="store_true")

    trail = sub.add_parser("trail", help="move the stop behind the mark price")
    trail.add_argument("symbol")
    trail.add_argument("--percent", type=float, default=2.0)
    trail.add_argument("--side", choices=["long", "short"], default=None, help="leg to trail in dual-side mode")

    cancel = sub.add_parser("cancel", help="cancel all protective orders of a symbol")
    cancel.add_argument("symbol")

    sub.add_parser("stats", help="recent performance and risk multipliers")

    decide = sub.add_parser("decide", help="run one trading cycle for a JSON decision")
    decide.add_argument("decision", help='e.g. \'{"symbol": "BTC/USDT", "action": "buy", "quantity": 0.002}\'')

    return parser


def run(args: argparse.Namespace, engine: TradingEngine) -> int:
    if args.command == "positions":
        positions = engine.positions.list_open_positions()
        if not positions:
            logger.info("Nenhuma posição aberta")
        for p in positions:
            logger.info(
                f"{p.symbol} {p.side.upper()} {p.contracts} @ {p.entry_price} | mark {p.mark_price} | "
                f"{p.leverage:.0f}x {p.margin_type} | PnL {p.unrealized_pnl:.2f} ({p.percentage:.2f}%) | "
                f"liq {p.liquidation_price}"
            )
        return 0

    if args.command == "close":
        result = engine.executor.submit_exit(args.symbol, percentage=args.percentage, quantity=args.quantity,
                                             side=args.side)
        logger.info(f"Resultado: {result}")
        return 0 if result.success else 1

    if args.command == "protect":
        if args.all:
            results = engine.protection.protect_all_positions(
                stop_loss_percent=args.stop_loss_percent or 3.0,
                take_profit_percent=args.take_profit_percent or 10.0,
            )
            return 0 if all(r.success for r in results.values()) else 1
        if not args.symbol:
            logger.error("Informe o símbolo ou use --all")
            return 2
        result = engine.protection.set_protection(
            args.symbol,
            stop_loss=args.stop_loss,
            take_profit=args.take_profit,
            stop_loss_percent=args.stop_loss_percent,
            take_profit_percent=args.take_profit_percent,
            side=args.side,
        )
        logger.info(f"Resultado: {result}")
        return 0 if result.success else 1

    if args.command == "trail":
        result = engine.protection.update_trailing_stop(args.symbol, trailing_percent=args.percent, side=args.side)
        logger.info(f"Resultado: {result}")
        return 0 if result.success else 1

    if args.command == "cancel":
        result = engine.protection.cancel_protection(args.symbol)
        logger.info(f"Resultado: {result}")
        return 0 if result.success else 1

    if args.command == "stats":
        stats = engine.risk.store.recent_stats(engine.risk.window_days)
        multipliers = engine.risk.refresh_multipliers()
        logger.info(
            f"Trades: {stats.total_trades} | win rate {stats.win_rate:.1f}% | PnL {stats.total_pnl:.2f} | "
            f"média ganho {stats.avg_win:.2f} / perda {stats.avg_loss:.2f}"
        )
        logger.info(f"PnL hoje: {engine.risk.today_pnl():.2f}")
        logger.info(multipliers.recommendation)
        return 0

    if args.command == "decide":
        try:
            decision = Decision.from_dict(json.loads(args.decision))
        except ValueError as e:
            logger.error(f"Decisão inválida: {e}")
            return 2
        result = engine.execute_decision(decision)
        logger.info(f"Ciclo: executado={result.executed} mixed={result.mixed} skipped={result.skipped_reason}")
        if result.order is not None and not result.order.success:
            return 1
        return 3 if result.mixed else 0

    return 2


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = AppConfig.from_sources(args.config or str(_default_config_path()))

    logger.info(f"Iniciando PerpGuard em modo: {cfg.trading_mode.upper()}")
    try:
        return run(args, TradingEngine.from_config(cfg))
    except ConfigurationError as e:
        logger.error(f"Configuração inválida: {e}")
        return 2
    except PerpGuardError as e:
        logger.error(f"Falha: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
