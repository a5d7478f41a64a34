from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from orderdesk.core.config import get_settings
from orderdesk.dispatch.errors import ConflictError

logger = logging.getLogger(__name__)


class _OrderLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class OrderLockRegistry:
    """Exclusive allocation locks keyed by order id.

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the registry does not grow with the number of orders seen.
    """

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._locks: dict[str, _OrderLock] = {}

    def _checkout(self, order_id: str) -> _OrderLock:
        with self._guard:
            entry = self._locks.get(order_id)
            if entry is None:
                entry = _OrderLock()
                self._locks[order_id] = entry
            entry.holders += 1
            return entry

    def _checkin(self, order_id: str, entry: _OrderLock) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(order_id, None)

    @contextmanager
    def hold(self, order_id: str, timeout_seconds: float | None = None) -> Iterator[None]:
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        entry = self._checkout(order_id)
        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.warning("allocation lock timeout: order_id=%s timeout=%ss", order_id, timeout)
                raise ConflictError(f"order {order_id} is busy with another dispatch; retry after re-reading")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(order_id, entry)

    def active_orders(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


_registry: OrderLockRegistry | None = None
_registry_guard = threading.Lock()


def get_lock_registry() -> OrderLockRegistry:
    global _registry
    with _registry_guard:
        if _registry is None:
            _registry = OrderLockRegistry(timeout_seconds=get_settings().dispatch_lock_timeout_seconds)
        return _registry
