"""
Chronological identifiers.

Ids look like ``[PREFIX-]<timestamp>-<counter>`` where the timestamp is the
Unix time in milliseconds as 12 upper-case hex digits and the counter is a
process-wide 24-bit sequence as 6 hex digits. Both parts are fixed width, so
comparing two ids (with the same prefix) as strings compares them by creation
order.

Clock skew between processes is not corrected; ids from different hosts only
sort correctly if their clocks agree.
"""

import itertools
import random
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Optional

COUNTER_BITS = 24
COUNTER_MASK = (1 << COUNTER_BITS) - 1
TIMESTAMP_WIDTH = 12


class IdGenerator:
    """
    Thread-safe generator of lexicographically sortable ids.

    The counter is drawn from a shared ``itertools.count`` under a lock. If the
    clock goes backwards, the last seen timestamp is reused so ids never
    decrease; if the counter wraps inside one millisecond, the timestamp is
    advanced by one.
    """

    def __init__(self, clock=None):
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._lock = threading.Lock()
        self._counter = itertools.count(random.randint(0, COUNTER_MASK >> 1))
        self._last_ms = 0
        self._last_seq = -1

    def _next_parts(self):
        with self._lock:
            now_ms = max(self._clock(), self._last_ms)
            seq = next(self._counter) & COUNTER_MASK
            if now_ms == self._last_ms and seq <= self._last_seq:
                # Counter wrapped within the same millisecond
                now_ms += 1
            self._last_ms = now_ms
            self._last_seq = seq
            return now_ms, seq

    def generate(self, prefix: Optional[str] = None) -> str:
        now_ms, seq = self._next_parts()
        core = f"{now_ms:0{TIMESTAMP_WIDTH}X}-{seq:06X}"
        return f"{prefix}-{core}" if prefix else core

    def handle(self, category: str) -> str:
        """Opaque overflow handle of the form ``{category}-{timestamp}-{random}``."""
        now_ms, _ = self._next_parts()
        return f"{category}-{now_ms:0{TIMESTAMP_WIDTH}X}-{secrets.token_hex(4)}"


_default_generator = IdGenerator()


def generate(prefix: Optional[str] = None) -> str:
    """Generate a chronological id with an optional prefix."""
    return _default_generator.generate(prefix)


def generate_handle(category: str) -> str:
    """Generate an overflow handle."""
    return _default_generator.handle(category)


def get_timestamp(identifier: str) -> Optional[datetime]:
    """Extract the creation time encoded in an id, or None if it isn't one of ours."""
    parts = identifier.split('-')
    if len(parts) < 2:
        return None
    try:
        millis = int(parts[-2], 16)
    except ValueError:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
