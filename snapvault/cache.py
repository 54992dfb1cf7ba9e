import threading
from collections import OrderedDict

from loguru import logger

from .models import BackupResult


class BackupCache:
    """Bounded key -> BackupResult store.

    When full, the least recently inserted entry is evicted. Reads do not
    refresh an entry's position.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = max(capacity, 1)
        self._entries: OrderedDict[str, BackupResult] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> BackupResult | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, value: BackupResult) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = value

            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cached backup result for {evicted}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
