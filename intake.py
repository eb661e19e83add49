import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

import config


class ProcessedMessageCache:
    """
    Remembers inbound WhatsApp message ids so webhook redeliveries are dropped.

    - Entries expire after `ttl_seconds`.
    - At most `max_size` ids are kept; the oldest are evicted first.
    """

    def __init__(self, ttl_seconds: float = config.PROCESSED_MESSAGE_TTL_SECONDS, max_size: int = 5000, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.clock = clock
        self._lock = threading.Lock()
        self._seen = OrderedDict()

    def seen(self, message_id: Optional[str]) -> bool:
        """
        True if the id was already processed; otherwise records it and returns False.
        """
        if not message_id:
            return False

        now = self.clock()
        with self._lock:
            self._prune_locked(now)
            if message_id in self._seen:
                return True
            self._seen[message_id] = now
            while len(self._seen) > self.max_size:
                self._seen.popitem(last=False)
            return False

    def prune(self, now: Optional[float] = None) -> int:
        """
        Drops expired ids. Returns how many were removed.
        """
        with self._lock:
            return self._prune_locked(self.clock() if now is None else now)

    def _prune_locked(self, now: float) -> int:
        removed = 0
        # Insertion order is arrival order, so expired ids sit at the front.
        while self._seen:
            oldest_id, seen_at = next(iter(self._seen.items()))
            if now - seen_at <= self.ttl_seconds:
                break
            del self._seen[oldest_id]
            removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
