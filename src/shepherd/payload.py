"""Default workload run by ``shepherd`` when no application entry is plugged in."""

from __future__ import annotations

import os
import threading
import time

from shepherd._internal.logging import get_logger

logger = get_logger("payload")

DEFAULT_ARGUMENT = 100


def heartbeat(num: int, interval: float = 60.0) -> None:
    """Log a line identifying this worker, then sleep, forever."""
    while True:
        logger.info("num=%d pid=%d tid=%d", num, os.getpid(), threading.get_native_id())
        time.sleep(interval)
