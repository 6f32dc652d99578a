from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from hashlib import sha256
from typing import Generator

from sqlalchemy import event, text
from sqlalchemy.orm import Session, SessionTransaction

from edition_ledger.core.config import get_settings
from edition_ledger.persistence.pg import TransientIOError

logger = logging.getLogger(__name__)

_local_locks: dict[int, threading.Lock] = {}
_registry_guard = threading.Lock()
_HELD_KEY = "edition_ledger.local_locks"


def advisory_key(namespace: str, key: str) -> int:
    digest = sha256(f"{namespace}:{key}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _local_lock(lock_key: int) -> threading.Lock:
    with _registry_guard:
        lock = _local_locks.get(lock_key)
        if lock is None:
            lock = threading.Lock()
            _local_locks[lock_key] = lock
        return lock


@event.listens_for(Session, "after_transaction_end")
def _release_local_locks(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    for lock in session.info.pop(_HELD_KEY, {}).values():
        lock.release()


@contextmanager
def advisory_lock(session: Session, namespace: str, key: str) -> Generator[int, None, None]:
    """Serialize work on one key across workers until the transaction ends.

    PostgreSQL takes a transaction-scoped advisory lock. Other dialects fall
    back to an in-process lock with the same lifetime: it is released when the
    session's transaction commits or rolls back, and a session that already
    holds it may enter again.
    """
    lock_key = advisory_key(namespace, key)
    if session.get_bind().dialect.name.startswith("postgres"):
        session.execute(text("SELECT pg_advisory_xact_lock(:lock_key)"), {"lock_key": lock_key})
        yield lock_key
        return

    held = session.info.setdefault(_HELD_KEY, {})
    if lock_key not in held:
        # Bind the lock to a live transaction so its end releases it.
        session.connection()
        lock = _local_lock(lock_key)
        timeout = get_settings().lock_timeout_seconds
        if not lock.acquire(timeout=timeout):
            logger.warning("gave up waiting %.1fs for lock %s:%s", timeout, namespace, key)
            raise TransientIOError(f"timed out waiting for lock {namespace}:{key}")
        held[lock_key] = lock
    yield lock_key
