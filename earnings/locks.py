import threading
from collections.abc import Hashable
from contextlib import contextmanager
from typing import Iterator


class LockManager:
    """Keyed mutual exclusion for ledger records within one process.

    ``user(id)`` serializes every read-check-write on one user record.
    ``settings()`` serializes writes to the global settings record. Holders
    never take a second user lock while holding one. A key's lock is dropped
    from the registry once nobody holds or waits on it.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: dict[tuple[str, Hashable], list] = {}
        self._settings_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def _hold(self, namespace: str, key: Hashable) -> Iterator[None]:
        with self._registry_lock:
            entry = self._locks.get((namespace, key))
            if entry is None:
                entry = self._locks[(namespace, key)] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[(namespace, key)]

    def user(self, user_id: Hashable):
        return self._hold("user", user_id)

    def external_id(self, external_id: str):
        return self._hold("external_id", external_id)

    def withdrawal(self, request_id: Hashable):
        return self._hold("withdrawal", request_id)

    @contextmanager
    def settings(self) -> Iterator[None]:
        with self._settings_lock:
            yield
