"""Namespaced key-value storage on top of the SQLAlchemy session scope."""

from __future__ import annotations

import threading
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, datetime
from typing import Callable, Dict, Iterator, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from slack_bugsnag_bridge.db import session_scope
from slack_bugsnag_bridge.models import KVEntry, OptimisticLockError, StoreError

SessionScope = Callable[[], AbstractContextManager[Session]]


class KVStore:
    """Get/set byte blobs under keys prefixed with a deployment namespace.

    ``get`` and ``set`` are plain reads and writes. Callers that need a safe
    read-modify-write use ``get_versioned`` together with ``compare_and_set``,
    which only writes when the stored version still matches.
    """

    def __init__(self, *, namespace: str = "", scope: SessionScope = session_scope) -> None:
        self._namespace = namespace.strip()
        self._scope = scope

    @property
    def namespace(self) -> str:
        return self._namespace

    def full_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> bytes | None:
        value, _ = self.get_versioned(key)
        return value

    def get_versioned(self, key: str) -> Tuple[bytes | None, int | None]:
        """Return the stored value and its version, or ``(None, None)`` when absent."""

        full_key = self.full_key(key)
        try:
            with self._scope() as session:
                entry = session.get(KVEntry, full_key)
                if entry is None:
                    return None, None
                return bytes(entry.value), entry.version
        except SQLAlchemyError as exc:
            raise StoreError(f"get {key}: {exc}") from exc

    def set(self, key: str, value: bytes) -> None:
        full_key = self.full_key(key)
        try:
            with self._scope() as session:
                entry = session.get(KVEntry, full_key)
                if entry is None:
                    session.add(KVEntry(key=full_key, value=value, version=1))
                    return
                entry.value = value
                entry.version = entry.version + 1
        except SQLAlchemyError as exc:
            raise StoreError(f"set {key}: {exc}") from exc

    def compare_and_set(self, key: str, value: bytes, expected_version: int | None) -> int:
        """Write *value* only if the stored version equals *expected_version*.

        ``expected_version=None`` means the key must not exist yet. Returns the
        new version; raises ``OptimisticLockError`` when another writer won.
        """

        full_key = self.full_key(key)
        try:
            with self._scope() as session:
                if expected_version is None:
                    session.add(KVEntry(key=full_key, value=value, version=1))
                    session.flush()
                    return 1

                stmt = (
                    update(KVEntry)
                    .where(KVEntry.key == full_key, KVEntry.version == expected_version)
                    .values(value=value, version=expected_version + 1, updated_at=datetime.now(UTC))
                )
                result = session.execute(stmt)
                if result.rowcount != 1:
                    raise OptimisticLockError(f"Key {key} was updated concurrently")
                return expected_version + 1
        except IntegrityError as exc:
            raise OptimisticLockError(f"Key {key} was created concurrently") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"compare-and-set {key}: {exc}") from exc


class KeyedLocks:
    """Hand out one in-process lock per key to serialise card read-modify-write.

    Entries are dropped once no thread holds or waits for them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)
