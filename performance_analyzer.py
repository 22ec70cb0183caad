#performance_analyzer.py

import logging
import os
from typing import Any, Dict, Optional

import pandas as pd


class PerformanceAnalyzer:
    """
    Summarises the attempt ledger written by TradeLogger: how many candidates
    were attempted, why they were skipped, and what the submitted ones were
    expected to earn.
    """
    ATTEMPT_LOG_FILE = 'attempts.csv'

    def __init__(self, filename: Optional[str] = None):
        self.filename = filename or self.ATTEMPT_LOG_FILE
        self.attempts_df: Optional[pd.DataFrame] = None
        self.logger = logging.getLogger(__name__)

    def load_data(self) -> bool:
        """
        Loads the attempt ledger. Returns True on success, False on failure.
        """
        try:
            if not os.path.exists(self.filename):
                self.logger.warning(f"'{self.filename}' not found. No data to analyze.")
                return False

            self.attempts_df = pd.read_csv(self.filename, dtype={'reason': str, 'target_blocks': str})
            if self.attempts_df.empty:
                self.logger.warning(f"{self.filename} is empty. No data to analyze.")
                return False

            required_cols = ['status', 'reason', 'take_home', 'incentive', 'timestamp_utc']
            if not all(col in self.attempts_df.columns for col in required_cols):
                self.logger.error(f"{self.filename} is missing one or more required columns.")
                self.attempts_df = None
                return False

            self.attempts_df['reason'] = self.attempts_df['reason'].fillna('')
            self.attempts_df['timestamp_utc'] = pd.to_datetime(self.attempts_df['timestamp_utc'], unit='s')
            self.attempts_df = self.attempts_df.sort_values(by='timestamp_utc')
            return True
        except Exception as e:
            self.logger.error(f"Error loading or processing attempt data: {e}", exc_info=True)
            self.attempts_df = None
            return False

    def calculate_kpis(self) -> Dict[str, Any]:
        if self.attempts_df is None or self.attempts_df.empty:
            return {}

        attempts = self.attempts_df
        submitted = attempts[attempts['status'] == 'SUBMITTED']
        skipped = attempts[attempts['status'] == 'SKIPPED']

        total = len(attempts)
        submission_rate = (len(submitted) / total * 100) if total > 0 else 0.0
        take_home = pd.to_numeric(submitted['take_home'], errors='coerce').fillna(0.0)
        incentive = pd.to_numeric(submitted['incentive'], errors='coerce').fillna(0.0)

        return {
            "Total Attempts": total,
            "Submitted": len(submitted),
            "Skipped": len(skipped),
            "Submission Rate (%)": round(submission_rate, 2),
            "Skips By Reason": skipped.groupby('reason').size().to_dict(),
            "Total Take Home": float(take_home.sum()),
            "Mean Take Home": float(take_home.mean()) if not take_home.empty else 0.0,
            "Total Incentive Paid": float(incentive.sum()),
        }
