# trade_logger.py

import logging
import os
from logging.handlers import RotatingFileHandler

from data_models import AttemptRecord

CSV_HEADER = (
    "timestamp_utc,token_address,buy_from,sell_to,volume,profit,"
    "fee,incentive,take_home,status,reason,target_blocks"
)


class TradeLogger:
    """
    A dedicated logger to record every attempted candidate to a structured CSV file.
    """

    def __init__(self, filename: str = "attempts.csv"):
        self.filename = filename
        self.logger = self._setup_logger()
        self._write_header()

    def _setup_logger(self) -> logging.Logger:
        # One logger per ledger file so several ledgers never share a handler
        attempt_logger = logging.getLogger(f"attempt_ledger.{os.path.abspath(self.filename)}")
        attempt_logger.setLevel(logging.INFO)
        attempt_logger.propagate = False

        if not attempt_logger.handlers:
            handler = RotatingFileHandler(self.filename, maxBytes=5*1024*1024, backupCount=2)
            handler.setFormatter(logging.Formatter('%(message)s'))
            attempt_logger.addHandler(handler)

        return attempt_logger

    def _write_header(self):
        """Checks if the file is empty and writes a CSV header if needed."""
        try:
            with open(self.filename, 'r') as f:
                has_content = f.read(1)
        except FileNotFoundError:
            has_content = ""
        if not has_content:
            self.logger.info(CSV_HEADER)
            self.flush()

    @staticmethod
    def _fmt(value) -> str:
        return "" if value is None else str(value)

    def log_attempt(self, record: AttemptRecord):
        """
        Formats an AttemptRecord into a CSV row and logs it.
        """
        if not isinstance(record, AttemptRecord):
            self.logger.error("log_attempt received an object that was not an AttemptRecord.")
            return

        log_entry = ",".join([
            str(record.timestamp),
            record.token_address,
            record.buy_from,
            record.sell_to,
            self._fmt(record.volume),
            self._fmt(record.profit),
            self._fmt(record.fee),
            self._fmt(record.incentive),
            self._fmt(record.take_home),
            record.status,
            record.reason,
            "|".join(str(b) for b in record.target_blocks),
        ])
        self.logger.info(log_entry)
        self.flush()

    def flush(self):
        for handler in self.logger.handlers:
            handler.flush()
