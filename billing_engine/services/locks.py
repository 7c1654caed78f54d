import threading
from contextlib import contextmanager


class KeyedLock:
    """
    In-process mutual exclusion per key (single-node deployments).
    Entries are reference counted so idle keys do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


subscription_locks = KeyedLock()
purchase_locks = KeyedLock()
