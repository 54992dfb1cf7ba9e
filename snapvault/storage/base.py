import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from ..models import UploadResult


@runtime_checkable
class StorageService(Protocol):
    """Content-addressed put/get/pin capability consumed by the orchestrator.

    Ids returned by ``put``/``put_file`` are opaque; callers never look inside
    them.
    """

    def put(self, payload: dict[str, Any], options: dict[str, Any] | None = None) -> UploadResult: ...

    def put_file(self, path: str | Path, options: dict[str, Any] | None = None) -> UploadResult: ...

    def get(self, content_id: str) -> dict[str, Any]: ...

    def get_metadata(self, content_id: str) -> dict[str, Any]: ...

    def is_pinned(self, content_id: str) -> bool: ...

    def unpin(self, content_id: str) -> bool: ...


class RateLimiter:
    """Keeps a minimum interval between calls made through one backend instance."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self.min_interval:
                    delay = self.min_interval - elapsed
                    logger.debug(f"Rate limit: sleeping {delay:.3f}s")
                    self._sleep(delay)
            self._last_call = self._clock()
