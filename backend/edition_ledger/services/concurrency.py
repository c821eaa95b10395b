# Overview: Service-layer operations for concurrency; retries, row locks and per-product mutexes.

from __future__ import annotations

import threading
import time
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import ConcurrencyConflict


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Rows already in the session are overwritten with the locked read.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The session is rolled back before each
    retry so func always starts from committed state.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


class KeyedLockRegistry:
    """
    Lazily created, reference-counted re-entrant locks keyed by string.

    A key's lock exists only while at least one caller holds or waits on it.
    Different keys never contend. Re-entrant so an operation that already
    holds a product's lock can call another operation that takes it again.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    def _checkout(self, key: str) -> list:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry

    def _checkin(self, key: str, entry: list) -> None:
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        entry = self._checkout(key)
        acquired = False
        try:
            acquired = entry[0].acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise ConcurrencyConflict(
                    f"Timed out waiting for lock on {key}",
                    details={"key": key, "timeout": timeout},
                )
            yield
        finally:
            if acquired:
                entry[0].release()
            self._checkin(key, entry)

    def active_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


_product_locks = KeyedLockRegistry()


def product_lock(product_id: str, timeout: float | None = None):
    """Serialize edition writes for one product; other products run in parallel."""
    return _product_locks.hold(str(product_id), timeout=timeout)


@contextmanager
def product_locks(product_ids: Iterable[str], timeout: float | None = None) -> Iterator[None]:
    """Hold several product locks, always acquired in sorted order."""
    keys = sorted({str(pid) for pid in product_ids if pid})
    with ExitStack() as stack:
        for key in keys:
            stack.enter_context(_product_locks.hold(key, timeout=timeout))
        yield


def held_product_locks() -> list[str]:
    return _product_locks.active_keys()
