import json
import re
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

PINATA_API_URL = "https://api.pinata.cloud"
DEFAULT_GATEWAY = "gateway.pinata.cloud"

# CIDv0 (base58, "Qm...") or CIDv1 (base32, "b...")
CID_PATTERN = re.compile(r"^(Qm[1-9A-HJ-NP-Za-km-z]{44,}|b[a-zA-Z0-9]{58,})")


class PinataStorage:
    """Pinning-service backend talking to the Pinata REST API."""

    def __init__(
        self,
        jwt: str,
        gateway: str = DEFAULT_GATEWAY,
        api_url: str = PINATA_API_URL,
        rate_limit_seconds: float = 0.5,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        if not jwt:
            raise ConfigurationError("Invalid or missing Pinata JWT token")

        self.api_url = api_url.rstrip("/")
        self.gateway = gateway or DEFAULT_GATEWAY
        self.timeout = timeout
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(rate_limit_seconds)
        self._auth_headers = {"Authorization": f"Bearer {jwt}"}

    @property
    def endpoint(self) -> str:
        if self.gateway.startswith(("http://", "https://")):
            return f"{self.gateway.rstrip('/')}/ipfs/"
        return f"https://{self.gateway}/ipfs/"

    def _request(self, method: str, url: str, authenticated: bool = True, **kwargs) -> requests.Response:
        self.rate_limiter.wait()
        headers = dict(self._auth_headers) if authenticated else {}

        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise BackendError(f"Pinata request failed: {e}") from e

        if response.status_code in (401, 403):
            error = AuthenticationError("Authentication error with Pinata: verify your JWT token")
            logger.error(f"{error} ({response.status_code})")
            raise error
        if response.status_code == 404:
            raise NotFoundError(f"Not found on Pinata: {url}")
        if response.status_code >= 400:
            raise BackendError(
                f"Pinata request failed with status {response.status_code}: {response.text[:200]}"
            )

        return response

    def put(self, payload: dict[str, Any], options: dict[str, Any] | None = None) -> UploadResult:
        body: dict[str, Any] = {"pinataContent": payload}
        if options and options.get("name"):
            body["pinataMetadata"] = {"name": options["name"]}

        try:
            response = self._request("POST", f"{self.api_url}/pinning/pinJSONToIPFS", json=body)
            result = response.json()
        except ValueError as e:
            raise BackendError(f"Invalid response from Pinata: {e}") from e
        except BackendError as e:
            logger.error(f"JSON upload failed: {e}")
            raise

        return UploadResult(
            id=result.get("IpfsHash", ""),
            metadata={
                "timestamp": int(time.time() * 1000),
                "size": len(json.dumps(payload)),
                "type": "json",
                **result,
            },
        )

    def put_file(self, path: str | Path, options: dict[str, Any] | None = None) -> UploadResult:
        path = Path(path)
        data = {}
        if options and options.get("name"):
            data["pinataMetadata"] = json.dumps({"name": options["name"]})

        try:
            with open(path, "rb") as f:
                response = self._request(
                    "POST",
                    f"{self.api_url}/pinning/pinFileToIPFS",
                    files={"file": (path.name, f, "application/octet-stream")},
                    data=data,
                )
            result = response.json()
        except OSError as e:
            raise BackendError(f"File upload failed for {path}: {e}") from e
        except ValueError as e:
            raise BackendError(f"Invalid response from Pinata: {e}") from e
        except BackendError as e:
            logger.error(f"File upload failed for {path}: {e}")
            raise

        return UploadResult(
            id=result.get("IpfsHash", ""),
            metadata={"timestamp": int(time.time() * 1000), "type": "file", **result},
        )

    def get(self, content_id: str) -> dict[str, Any]:
        if not content_id or not isinstance(content_id, str):
            raise SnapshotValidationError("Invalid hash")

        response = self._request("GET", f"{self.endpoint}{content_id}", authenticated=False)

        try:
            parsed = response.json()
        except ValueError as e:
            raise SnapshotValidationError("Invalid data format: cannot parse JSON") from e

        if not isinstance(parsed, dict) or "data" not in parsed or "metadata" not in parsed:
            raise SnapshotValidationError("Invalid backup data structure")

        return {"data": parsed["data"], "metadata": parsed["metadata"]}

    def _pin_rows(self, content_id: str) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"{self.api_url}/data/pinList",
            params={"hashContains": content_id, "status": "pinned"},
        )
        try:
            rows = response.json().get("rows", [])
        except (ValueError, AttributeError) as e:
            raise BackendError(f"Invalid pin list response from Pinata: {e}") from e
        return [row for row in rows if row.get("ipfs_pin_hash") == content_id]

    def get_metadata(self, content_id: str) -> dict[str, Any]:
        if not content_id or not isinstance(content_id, str):
            raise SnapshotValidationError("Invalid hash")

        rows = self._pin_rows(content_id)
        if not rows:
            raise NotFoundError(f"No pin found for {content_id}")
        return rows[0]

    def is_pinned(self, content_id: str) -> bool:
        if not content_id or not isinstance(content_id, str) or not CID_PATTERN.match(content_id):
            logger.warning(f"Invalid CID format: {content_id}")
            return False

        try:
            return bool(self._pin_rows(content_id))
        except AuthenticationError:
            raise
        except BackendError as e:
            logger.warning(f"isPinned check failed for {content_id}: {e}")
            return False

    def unpin(self, content_id: str) -> bool:
        if not content_id or not isinstance(content_id, str) or not CID_PATTERN.match(content_id):
            logger.warning(f"Invalid CID format: {content_id}")
            return False

        if not self.is_pinned(content_id):
            logger.info(f"CID not pinned, nothing to unpin: {content_id}")
            return False

        try:
            self._request("DELETE", f"{self.api_url}/pinning/unpin/{content_id}")
        except NotFoundError as e:
            logger.warning(f"Pin not found: {content_id} ({e})")
            return False
        except BackendError as e:
            logger.error(f"Unpin operation failed for {content_id}: {e}")
            raise

        logger.info(f"Unpinned {content_id}")
        return True
