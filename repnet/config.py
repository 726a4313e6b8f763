"""
Engine configuration.

Defaults are tunable via environment:
- REPNET_DB_PATH: SQLite database file (default: reputation.sqlite3)
- REPNET_STORE_TIMEOUT: seconds a single store call may take (default: 5)
- REPNET_STORE_WORKERS: threads serving store calls (default: 4)
- REPNET_QUERY_WORKERS: threads used by query_many (default: 4)
- REPNET_RESOLUTION_DEADLINE: seconds per resolution, 0 = unbounded (default: 0)
"""

import math
import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_STORE_TIMEOUT = 5.0
DEFAULT_STORE_WORKERS = 4
DEFAULT_QUERY_WORKERS = 4


@dataclass
class EngineConfig:
    """Configuration for ReputationEngine and its store wrapper."""
    db_path: str = os.environ.get("REPNET_DB_PATH", "reputation.sqlite3")
    store_timeout_seconds: Optional[float] = float(
        os.environ.get("REPNET_STORE_TIMEOUT", str(DEFAULT_STORE_TIMEOUT)))
    store_workers: int = int(os.environ.get("REPNET_STORE_WORKERS", str(DEFAULT_STORE_WORKERS)))
    query_workers: int = int(os.environ.get("REPNET_QUERY_WORKERS", str(DEFAULT_QUERY_WORKERS)))
    resolution_deadline_seconds: Optional[float] = float(
        os.environ.get("REPNET_RESOLUTION_DEADLINE", "0"))

    def __post_init__(self):
        # None means "use the default"; a deadline of 0 means "no deadline"
        if self.store_timeout_seconds is None:
            self.store_timeout_seconds = DEFAULT_STORE_TIMEOUT
        self.store_timeout_seconds = float(self.store_timeout_seconds)
        if not math.isfinite(self.store_timeout_seconds) or self.store_timeout_seconds <= 0:
            raise ValueError("store_timeout_seconds must be a positive number")

        if not self.resolution_deadline_seconds:
            self.resolution_deadline_seconds = None
        else:
            self.resolution_deadline_seconds = float(self.resolution_deadline_seconds)
            if self.resolution_deadline_seconds < 0:
                raise ValueError("resolution_deadline_seconds must not be negative")

        if int(self.store_workers) < 1:
            raise ValueError("store_workers must be at least 1")
        if int(self.query_workers) < 1:
            raise ValueError("query_workers must be at least 1")
        self.store_workers = int(self.store_workers)
        self.query_workers = int(self.query_workers)
