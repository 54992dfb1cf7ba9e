import hashlib
import json
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any

from loguru import logger

from ..errors import BackendError, NotFoundError, SnapshotValidationError
from ..models import UploadResult
from .base import RateLimiter

ID_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class LocalStorage:
    """Content-addressed store kept in a local directory.

    Objects live under ``<root>/objects/<sha256>`` and pins are empty marker
    files under ``<root>/pins/<sha256>``.
    """

    def __init__(self, root: str | Path, rate_limiter: RateLimiter | None = None):
        self.root = Path(root)
        self.objects_dir = self.root / "objects"
        self.pins_dir = self.root / "pins"
        self.rate_limiter = rate_limiter or RateLimiter(0.0)

        try:
            self.objects_dir.mkdir(parents=True, exist_ok=True)
            self.pins_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendError(f"Cannot initialize local storage at {self.root}: {e}") from e

    @property
    def endpoint(self) -> str:
        return self.root.resolve().as_uri()

    def _write_object(self, content: bytes) -> str:
        content_id = hashlib.sha256(content).hexdigest()
        target = self.objects_dir / content_id

        if not target.exists():
            fd, tmp_name = tempfile.mkstemp(dir=self.objects_dir, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                os.replace(tmp_name, target)
            except OSError as e:
                Path(tmp_name).unlink(missing_ok=True)
                raise BackendError(f"Failed to write object {content_id}: {e}") from e

        (self.pins_dir / content_id).touch()
        logger.debug(f"Stored object {content_id} ({len(content)} bytes)")
        return content_id

    def _object_path(self, content_id: str) -> Path:
        if not isinstance(content_id, str) or not ID_PATTERN.match(content_id):
            raise NotFoundError(f"Invalid content id: {content_id}")

        path = self.objects_dir / content_id
        if not path.exists():
            raise NotFoundError(f"Object not found: {content_id}")
        return path

    def put(self, payload: dict[str, Any], options: dict[str, Any] | None = None) -> UploadResult:
        self.rate_limiter.wait()
        content = json.dumps(payload, sort_keys=True).encode("utf-8")
        content_id = self._write_object(content)
        return UploadResult(
            id=content_id,
            metadata={
                "timestamp": int(time.time() * 1000),
                "size": len(content),
                "type": "json",
                "name": (options or {}).get("name"),
            },
        )

    def put_file(self, path: str | Path, options: dict[str, Any] | None = None) -> UploadResult:
        self.rate_limiter.wait()
        try:
            content = Path(path).read_bytes()
        except OSError as e:
            raise BackendError(f"File upload failed for {path}: {e}") from e

        content_id = self._write_object(content)
        return UploadResult(
            id=content_id,
            metadata={"timestamp": int(time.time() * 1000), "size": len(content), "type": "file"},
        )

    def get(self, content_id: str) -> dict[str, Any]:
        self.rate_limiter.wait()
        path = self._object_path(content_id)

        try:
            parsed = json.loads(path.read_bytes())
        except OSError as e:
            raise BackendError(f"Failed to read object {content_id}: {e}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SnapshotValidationError("Invalid data format: cannot parse JSON") from e

        if not isinstance(parsed, dict) or "data" not in parsed or "metadata" not in parsed:
            raise SnapshotValidationError("Invalid backup data structure")

        return parsed

    def get_metadata(self, content_id: str) -> dict[str, Any]:
        self.rate_limiter.wait()
        path = self._object_path(content_id)
        stat = path.stat()
        return {
            "size": stat.st_size,
            "timestamp": int(stat.st_mtime * 1000),
            "pinned": (self.pins_dir / content_id).exists(),
        }

    def is_pinned(self, content_id: str) -> bool:
        if not isinstance(content_id, str) or not ID_PATTERN.match(content_id):
            return False
        return (self.pins_dir / content_id).exists()

    def unpin(self, content_id: str) -> bool:
        if not self.is_pinned(content_id):
            return False

        self.rate_limiter.wait()
        try:
            (self.pins_dir / content_id).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise BackendError(f"Failed to unpin {content_id}: {e}") from e

        logger.info(f"Unpinned {content_id}")
        return True

    def pin(self, content_id: str) -> bool:
        self._object_path(content_id)
        (self.pins_dir / content_id).touch()
        return True
