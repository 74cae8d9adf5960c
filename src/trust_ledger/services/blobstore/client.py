# SPDX-License-Identifier: MPL-2.0
"""Client for the content-addressed blob store.

Uploads go to the publisher, reads come from the aggregator gateway. When no
publisher is configured, mock mode is forced, or the upload fails, the client
returns a result marked ``mock=True`` so registration can still complete.
Digests are always computed locally over the uploaded bytes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import aiohttp

from trust_ledger.core.crypto import digest_primary, digest_secondary
from trust_ledger.core.exceptions import BlobStoreError

logger = logging.getLogger(__name__)

MOCK_PREFIX = "blob-mock-"
UPLOAD_TIMEOUT = 60  # seconds
RETENTION = timedelta(days=30)


@dataclass(frozen=True)
class BlobStoreResult:
    """What the blob store returned for one upload."""

    blob_id: str
    integrity_root: str
    proof: str
    size_bytes: int
    expires_at: datetime
    sha256: str
    secondary: str
    mock: bool = False


class BlobStoreClient:
    """Store and locate dataset blobs."""

    def __init__(
        self,
        gateway: str,
        publisher: str = "",
        api_key: str = "",
        epochs: int = 1,
        force_mock: bool = False,
        timeout: float = UPLOAD_TIMEOUT,
    ):
        self.gateway = gateway.rstrip("/")
        self.publisher = publisher.rstrip("/")
        self.api_key = api_key
        self.epochs = epochs
        self.force_mock = force_mock
        self.timeout = timeout

    def read(self, blob_id: str) -> str:
        """Return a URL the blob can be fetched from."""
        return f"{self.gateway}/v1/blobs/{blob_id}"

    async def store(self, content: bytes, file_name: str = "dataset") -> BlobStoreResult:
        """Upload ``content``; never raises for store unavailability."""
        sha256 = digest_primary(content)
        secondary = digest_secondary(content)

        if self.force_mock:
            logger.info("Blob store mock mode forced, using mock blob id")
            return self._mock_result(content, sha256, secondary)
        if not self.publisher:
            logger.info("No blob publisher configured, using mock blob id")
            return self._mock_result(content, sha256, secondary)

        try:
            body = await self._upload(content)
            blob_id, integrity_root = self._parse_upload(body)
        except BlobStoreError as e:
            logger.warning(f"Blob upload of {file_name} failed, falling back to mock blob: {e}")
            return self._mock_result(content, sha256, secondary)

        return BlobStoreResult(
            blob_id=blob_id,
            integrity_root=integrity_root,
            proof=sha256,
            size_bytes=len(content),
            expires_at=datetime.now(timezone.utc) + RETENTION,
            sha256=sha256,
            secondary=secondary,
        )

    async def _upload(self, content: bytes) -> Dict[str, Any]:
        url = f"{self.publisher}/v1/blobs"
        headers = {"Content-Type": "application/octet-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.put(
                    url, params={"epochs": str(self.epochs)}, data=content, headers=headers
                ) as response:
                    if response.status >= 300:
                        text = await response.text()
                        raise BlobStoreError(f"HTTP {response.status}: {text[:200]}")
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise BlobStoreError(f"Upload to {url} failed: {e}") from e

    @staticmethod
    def _parse_upload(body: Any) -> tuple:
        """Extract ``(blob_id, integrity_root)`` from a publisher response."""
        result = body[0] if isinstance(body, list) and body else body
        if not isinstance(result, dict):
            raise BlobStoreError("Unexpected blob store response format")
        result = result.get("blobStoreResult", result)

        if "newlyCreated" in result:
            blob_object = result["newlyCreated"].get("blobObject", {})
            blob_id = blob_object.get("blobId")
            root = blob_object.get("id") or blob_id
        elif "alreadyCertified" in result:
            certified = result["alreadyCertified"]
            blob_id = certified.get("blobId")
            root = (certified.get("event") or {}).get("objectId") or blob_id
        else:
            raise BlobStoreError("Unexpected blob store response format")

        if not blob_id:
            raise BlobStoreError("Blob store response carries no blob id")
        return blob_id, root

    @staticmethod
    def _mock_result(content: bytes, sha256: str, secondary: str) -> BlobStoreResult:
        return BlobStoreResult(
            blob_id=f"{MOCK_PREFIX}{int(time.time() * 1000)}-{sha256[:8]}",
            integrity_root=sha256[:32],
            proof=sha256,
            size_bytes=len(content),
            expires_at=datetime.now(timezone.utc) + RETENTION,
            sha256=sha256,
            secondary=secondary,
            mock=True,
        )
