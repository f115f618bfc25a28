import threading
from contextlib import contextmanager


class KeyedLock:
    """
    One threading.Lock per key (symbol, address, portfolio id).

    Entries live only while some thread holds or waits on the key.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders]
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
