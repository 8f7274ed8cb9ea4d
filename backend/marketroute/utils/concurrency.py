from __future__ import annotations

import logging
import random
import threading
import time
from contextlib import contextmanager
from typing import Callable, TypeVar

from marketroute.errors import Conflict
from marketroute.utils.settings import conflict_retry_attempts, conflict_retry_base_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """Mutex map: one re-entrant lock per key, dropped when nobody holds it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        key = str(key)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] <= 0:
                    self._locks.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


order_locks = KeyedLocks()
product_locks = KeyedLocks()
account_locks = KeyedLocks()
batch_locks = KeyedLocks()


def _backoff_seconds(attempt: int, base_ms: int) -> float:
    # Exponential backoff with cap and a little jitter.
    delay_ms = min(1000, base_ms * (2 ** max(0, attempt)))
    return (delay_ms + random.uniform(0, base_ms or 1)) / 1000.0


def retry_on_conflict(fn: Callable[[], T], *, attempts: int | None = None, label: str = "") -> T:
    """Run ``fn`` and retry it on ``Conflict`` with bounded backoff.

    Any other error propagates immediately. The last ``Conflict`` is re-raised
    once the attempt budget is spent.
    """
    budget = int(attempts or conflict_retry_attempts())
    base_ms = conflict_retry_base_ms()
    for attempt in range(budget):
        try:
            return fn()
        except Conflict:
            if attempt + 1 >= budget:
                logger.warning("conflict_retry_exhausted label=%s attempts=%s", label, budget)
                raise
            delay = _backoff_seconds(attempt, base_ms)
            logger.info("conflict_retry label=%s attempt=%s delay_s=%.3f", label, attempt + 1, delay)
            time.sleep(delay)
    raise Conflict(f"retry budget exhausted for {label or 'operation'}")
