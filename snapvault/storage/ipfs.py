import json
import time
from pathlib import Path
from typing import Any

import requests
from loguru import logger

from ..errors import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    NotFoundError,
    SnapshotValidationError,
)
from ..models import UploadResult
from .base import RateLimiter


class IpfsStorage:
    """Generic content-store backend using the IPFS (Kubo) HTTP RPC API."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        rate_limit_seconds: float = 0.2,
        timeout: float = 60.0,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        if not url:
            raise ConfigurationError("Invalid or missing IPFS URL")

        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(rate_limit_seconds)
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    @property
    def endpoint(self) -> str:
        return self.url

    def _rpc(self, command: str, params: dict[str, Any] | None = None, **kwargs) -> requests.Response:
        self.rate_limiter.wait()
        url = f"{self.url}/api/v0/{command}"
        logger.debug(f"IPFS RPC {command} {params or ''}")

        try:
            response = self.session.post(
                url, params=params, headers=self._headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise BackendError(f"IPFS request failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Authentication error with IPFS node at {self.url}")

        if response.status_code >= 400:
            message = self._error_message(response)
            lowered = message.lower()
            if "not pinned" in lowered or "not found" in lowered or "no link named" in lowered:
                raise NotFoundError(message)
            raise BackendError(f"IPFS {command} failed ({response.status_code}): {message}")

        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            return response.json().get("Message", response.text)
        except (ValueError, AttributeError):
            return response.text

    @staticmethod
    def _parse_add(response: requests.Response) -> dict[str, Any]:
        # add streams one JSON object per line, the last one describes the root
        lines = [line for line in response.text.strip().splitlines() if line.strip()]
        if not lines:
            raise BackendError("Empty response from IPFS add")
        try:
            return json.loads(lines[-1])
        except json.JSONDecodeError as e:
            raise BackendError(f"Invalid response from IPFS add: {e}") from e

    def put(self, payload: dict[str, Any], options: dict[str, Any] | None = None) -> UploadResult:
        content = json.dumps(payload).encode("utf-8")
        name = (options or {}).get("name") or "backup.json"

        try:
            response = self._rpc("add", {"pin": "true"}, files={"file": (name, content)})
        except BackendError as e:
            logger.error(f"JSON upload failed: {e}")
            raise

        result = self._parse_add(response)
        return UploadResult(
            id=result.get("Hash", ""),
            metadata={"timestamp": int(time.time() * 1000), "size": len(content), "type": "json"},
        )

    def put_file(self, path: str | Path, options: dict[str, Any] | None = None) -> UploadResult:
        path = Path(path)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise BackendError(f"File upload failed for {path}: {e}") from e

        try:
            response = self._rpc("add", {"pin": "true"}, files={"file": (path.name, content)})
        except BackendError as e:
            logger.error(f"File upload failed for {path}: {e}")
            raise

        result = self._parse_add(response)
        return UploadResult(
            id=result.get("Hash", ""),
            metadata={"timestamp": int(time.time() * 1000), "size": len(content), "type": "file"},
        )

    def get(self, content_id: str) -> dict[str, Any]:
        if not content_id or not isinstance(content_id, str):
            raise SnapshotValidationError("Invalid hash")

        try:
            response = self._rpc("cat", {"arg": content_id})
        except BackendError as e:
            logger.error(f"Failed to retrieve data for CID {content_id}: {e}")
            raise

        try:
            parsed = json.loads(response.content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SnapshotValidationError("Invalid data format: cannot parse JSON") from e

        if not isinstance(parsed, dict) or "data" not in parsed or "metadata" not in parsed:
            raise SnapshotValidationError("Invalid backup data structure")

        return parsed

    def get_metadata(self, content_id: str) -> dict[str, Any]:
        if not content_id or not isinstance(content_id, str):
            raise SnapshotValidationError("Invalid hash")

        stat = self._rpc("files/stat", {"arg": f"/ipfs/{content_id}"}).json()
        return {
            "size": stat.get("Size"),
            "cumulative_size": stat.get("CumulativeSize"),
            "blocks": stat.get("Blocks"),
            "type": stat.get("Type"),
        }

    def is_pinned(self, content_id: str) -> bool:
        if not content_id or not isinstance(content_id, str):
            return False

        try:
            response = self._rpc("pin/ls", {"arg": content_id, "type": "recursive"})
            keys = response.json().get("Keys") or {}
        except AuthenticationError:
            raise
        except NotFoundError:
            return False
        except (BackendError, ValueError, AttributeError) as e:
            logger.warning(f"isPinned check failed for {content_id}: {e}")
            return False

        return content_id in keys

    def unpin(self, content_id: str) -> bool:
        if not content_id or not isinstance(content_id, str):
            return False

        if not self.is_pinned(content_id):
            return False

        try:
            self._rpc("pin/rm", {"arg": content_id})
        except NotFoundError:
            return False
        except BackendError as e:
            logger.error(f"Failed to unpin {content_id}: {e}")
            raise

        return True

    def pin(self, content_id: str) -> bool:
        if not content_id or not isinstance(content_id, str):
            return False

        self._rpc("pin/add", {"arg": content_id})
        logger.info(f"Pinned {content_id}")
        return True
