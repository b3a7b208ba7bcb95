# file: perpguard/execution/trade_logger.py

import csv
import os
from datetime import datetime, timezone
from typing import Optional

from perpguard.execution.order_model import OrderRequest, OrderResult
from perpguard.utils.logger import setup_logger

logger = setup_logger(__name__)

HEADER = [
    "id",
    "time",
    "symbol",
    "action",
    "side",
    "type",
    "position_side",
    "requested_quantity",
    "executed_quantity",
    "executed_price",
    "notional_usdt",
    "leverage",
    "order_id",
]


class TradeAuditLogger:
    """
    Trilha de auditoria das ordens enviadas:
    - trades.csv (histórico completo)
    - logs/trades_YYYY-MM-DD.csv (histórico diário)
    Falha de escrita é logada e nunca interrompe o engine.
    """

    def __init__(self, main_filename: str = "trades.csv", log_dir: Optional[str] = "logs") -> None:
        self.main_filename = main_filename
        self.log_dir = log_dir
        if self.log_dir:
            os.makedirs(self.log_dir, exist_ok=True)

        self._ensure_header(self.main_filename)
        self._counter = self._load_existing_count()

    # -----------------------------------------------------
    @staticmethod
    def _ensure_header(path: str) -> None:
        if os.path.exists(path):
            return
        try:
            with open(path, "w", newline="") as f:
                csv.writer(f).writerow(HEADER)
        except OSError as e:
            logger.warning(f"[CSV] Não foi possível criar {path}: {e}")

    # -----------------------------------------------------
    def _load_existing_count(self) -> int:
        try:
            with open(self.main_filename, "r") as f:
                total = sum(1 for _ in f) - 1  # header
                return max(total, 0)
        except OSError:
            return 0

    # -----------------------------------------------------
    def _daily_path(self, date_str: str) -> Optional[str]:
        if not self.log_dir:
            return None
        path = os.path.join(self.log_dir, f"trades_{date_str}.csv")
        self._ensure_header(path)
        return path

    # -----------------------------------------------------
    def log_order(self, action: str, request: OrderRequest, result: OrderResult,
                  when: Optional[datetime] = None) -> None:
        """Registra uma ordem aceita pela exchange (action: open / close)."""
        when = when or datetime.now(timezone.utc)
        self._counter += 1

        price = result.price or 0.0
        qty = result.quantity if result.quantity is not None else (request.quantity or 0.0)

        row = [
            self._counter,
            when.isoformat(),
            request.symbol,
            action,
            request.side,
            request.type,
            request.position_side or "",
            request.quantity if request.quantity is not None else "",
            qty,
            price,
            price * qty,
            result.leverage if result.leverage is not None else "",
            result.order_id or "",
        ]

        paths = [self.main_filename]
        daily = self._daily_path(when.strftime("%Y-%m-%d"))
        if daily:
            paths.append(daily)

        for path in paths:
            try:
                with open(path, "a", newline="") as f:
                    csv.writer(f).writerow(row)
            except OSError as e:
                logger.warning(f"[CSV] Erro ao salvar ordem em {path}: {e}")
