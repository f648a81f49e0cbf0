from __future__ import annotations

import time


def now_ms() -> float:
    """Return the monotonic clock in milliseconds, used for cache expiry."""
    return time.monotonic() * 1000.0


def epoch_ms() -> int:
    """Return wall-clock milliseconds since the epoch (JSON-RPC request ids)."""
    return int(time.time() * 1000)
