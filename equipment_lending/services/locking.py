"""Exclusive access to inventory records.

Every reservation-affecting operation runs as::

    run_with_retry(db, lambda: _work(...))

and ``_work`` opens ``inventory_lock(db, equipment_id)`` before reading any
quantity it validates against. The lock is two layers deep:

* an in-process mutex keyed by record id, which serializes workers of one
  server process even on databases without row locks (SQLite);
* ``SELECT ... FOR UPDATE`` on the record row, which serializes processes on
  databases that support it.

The row is always re-read with ``populate_existing`` once the lock is held, so a
caller that waited never validates against state it read before waiting.

``Equipment.Version`` is the optimistic fallback: an UPDATE that matches no row
because another writer bumped the version raises ``StaleDataError``, which is
reported as ``ConcurrentModification`` and retried here a bounded number of
times.
"""

from __future__ import annotations

import logging
import os
import threading
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.lending_models import Equipment
from services.errors import ConcurrentModification, LendingError, NotFound, StorageFailure

LOCK_LOGGER = logging.getLogger("equipment_lending.locking")

RESERVATION_MAX_RETRIES = max(1, int(os.environ.get("RESERVATION_MAX_RETRIES") or "3"))

T = TypeVar("T")


class RecordLockRegistry:
    """Per-key mutexes, created on first use.

    Entries are weak: a mutex lives only while some unit of work holds a
    reference to it, so lookups for ids that never existed leave nothing behind.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()

    def lock_for(self, record_id: str) -> threading.RLock:
        key = str(record_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_REGISTRY = RecordLockRegistry()

# Session.info key holding the record locks acquired by the current unit of work.
_HELD_LOCKS_KEY = "equipment_lending.held_locks"


def _held_locks(db: Session) -> list[threading.RLock]:
    return db.info.setdefault(_HELD_LOCKS_KEY, [])


def release_held_locks(db: Session) -> None:
    held = db.info.pop(_HELD_LOCKS_KEY, [])
    for lock in reversed(held):
        lock.release()


def _acquire(db: Session, key: str) -> None:
    lock = _REGISTRY.lock_for(key)
    lock.acquire()
    _held_locks(db).append(lock)


@contextmanager
def inventory_lock(db: Session, equipment_id: str, *, include_deleted: bool = False) -> Iterator[Equipment]:
    """Yield a freshly read, exclusively held inventory record.

    The mutex stays held after the block exits; ``run_with_retry`` releases it
    once the transaction has committed or rolled back.
    """
    _acquire(db, str(equipment_id))
    equipment = db.execute(
        select(Equipment)
        .where(Equipment.Id == str(equipment_id))
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if equipment is None or (equipment.IsDeleted and not include_deleted):
        raise NotFound("Equipment", str(equipment_id))
    yield equipment


@contextmanager
def name_lock(db: Session, name: str) -> Iterator[None]:
    """Serialize claims on an equipment name, compared case-insensitively.

    Held until ``run_with_retry`` finishes the transaction, like
    ``inventory_lock``. Take it after any record lock, never before.
    """
    _acquire(db, f"name:{name.strip().lower()}")
    yield


def run_with_retry(
    db: Session,
    operation: Callable[[], T],
    *,
    entity: str = "Equipment",
    entity_id: str = "",
    max_attempts: int | None = None,
) -> T:
    """Run ``operation`` as one committed unit of work.

    Any failure rolls the session back, so nothing is partially applied.
    ``ConcurrentModification`` is retried against fresh state; the last one
    propagates once the attempts are exhausted.
    """
    attempts = max(1, max_attempts or RESERVATION_MAX_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            try:
                result = operation()
                db.commit()
                return result
            except StaleDataError as exc:
                raise ConcurrentModification(entity, entity_id, attempts=attempt) from exc
            except LendingError:
                raise
            except SQLAlchemyError as exc:
                LOCK_LOGGER.exception("Storage failure on %s %s", entity, entity_id)
                raise StorageFailure(str(exc)) from exc
        except ConcurrentModification:
            db.rollback()
            if attempt >= attempts:
                LOCK_LOGGER.warning(
                    "Giving up on %s %s after %s conflicting attempts", entity, entity_id, attempt
                )
                raise
            LOCK_LOGGER.info("Concurrent modification on %s %s, retrying (%s/%s)", entity, entity_id, attempt, attempts)
        except BaseException:
            db.rollback()
            raise
        finally:
            release_held_locks(db)
