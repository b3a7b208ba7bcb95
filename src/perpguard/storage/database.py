# file: perpguard/storage/database.py

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

import pandas as pd

from perpguard.execution.order_model import PerformanceStats
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

RECENT_LESSONS_LIMIT = 50


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PerformanceStore:
    """Histórico de lições (trades encerrados) em SQLite."""

    def __init__(self, db_path: str = "perpguard.db", now=_utc_now):
        self.db_path = db_path
        self.now = now
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.Lock()
        self._create_tables()

    def _create_tables(self) -> None:
        cur = self.conn.cursor()

        cur.execute("""
        CREATE TABLE IF NOT EXISTS lessons (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT,
            side TEXT,
            entry_price REAL,
            exit_price REAL,
            quantity REAL,
            leverage REAL,
            pnl REAL,
            pnl_percent REAL,
            exit_reason TEXT,
            lesson TEXT,
            closed_at TEXT
        )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_lessons_closed_at ON lessons (closed_at)")

        self.conn.commit()

    def append_lesson(self, symbol: str, side: str, entry_price: float, exit_price: float,
                      quantity: float, pnl: float, leverage: float = 1.0,
                      pnl_percent: Optional[float] = None, exit_reason: str = "",
                      lesson: str = "", closed_at: Optional[datetime] = None) -> None:
        closed_at = closed_at or self.now()
        if pnl_percent is None:
            pnl_percent = (pnl / (entry_price * quantity) * 100) if entry_price and quantity else 0.0

        with self.lock:
            cur = self.conn.cursor()
            cur.execute(
                """INSERT INTO lessons
                (symbol, side, entry_price, exit_price, quantity, leverage, pnl,
                 pnl_percent, exit_reason, lesson, closed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (symbol, side, entry_price, exit_price, quantity, leverage, pnl,
                 pnl_percent, exit_reason, lesson, closed_at.isoformat())
            )
            self.conn.commit()
        logger.info(f"[DB] Lição registrada: {symbol} {side} PnL={pnl:.2f}")

    def recent_stats(self, window_days: int = 7) -> PerformanceStats:
        """Estatísticas das últimas 50 lições dentro da janela."""
        since = (self.now() - timedelta(days=window_days)).isoformat()
        with self.lock:
            df = pd.read_sql_query(
                "SELECT pnl FROM lessons WHERE closed_at >= ? ORDER BY closed_at DESC LIMIT ?",
                self.conn,
                params=(since, RECENT_LESSONS_LIMIT),
            )

        if df.empty:
            return PerformanceStats()

        pnl = df["pnl"].astype(float)
        wins = pnl[pnl > 0]
        losses = pnl[pnl <= 0]
        total = len(pnl)

        return PerformanceStats(
            total_trades=total,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / total * 100,
            avg_win=float(wins.mean()) if len(wins) else 0.0,
            avg_loss=float(losses.mean()) if len(losses) else 0.0,
            total_pnl=float(pnl.sum()),
        )

    def today_pnl(self) -> float:
        """PnL realizado desde 00:00 UTC."""
        start = self.now().replace(hour=0, minute=0, second=0, microsecond=0).isoformat()
        with self.lock:
            row = self.conn.execute(
                "SELECT COALESCE(SUM(pnl), 0) AS total FROM lessons WHERE closed_at >= ?",
                (start,),
            ).fetchone()
        return float(row["total"])

    def export_lessons_csv(self, path: str = "lessons.csv") -> None:
        with self.lock:
            df = pd.read_sql_query("SELECT * FROM lessons ORDER BY closed_at", self.conn)
        df.to_csv(path, index=False)
        logger.info(f"[DB] Lições exportadas para {path}")

    def close(self) -> None:
        self.conn.close()
