# SPDX-License-Identifier: MPL-2.0
"""Integrity Verifier

Downloads a dataset's blob through the gateway, recomputes both digests and
checks the integrity root. A failed check is data, not an exception: every
network problem yields an all-false :class:`IntegrityCheckResult` so the
scorer can still produce a score.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

import aiohttp

from trust_ledger.core.audit import AuditLogger, audit_logger
from trust_ledger.core.crypto import digest_primary, digest_secondary
from trust_ledger.core.exceptions import BlobStoreError
from trust_ledger.core.metrics import INTEGRITY_CHECKS, INTEGRITY_LATENCY
from trust_ledger.core.models import DatasetRecord, IntegrityCheckResult, RootStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0  # seconds, whole check


class IntegrityVerifier:
    """Recomputes a dataset's digests from the bytes the gateway serves."""

    def __init__(
        self,
        gateway: str,
        api_key: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        audit: AuditLogger = audit_logger,
    ):
        self.gateway = gateway.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session
        self.audit = audit

    @property
    def headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key} if self.api_key else {}

    def blob_url(self, blob_id: str) -> str:
        return f"{self.gateway}/v1/blobs/{blob_id}"

    def root_urls(self, integrity_root: str) -> List[str]:
        """Integrity-root lookup endpoints, in the order they are tried."""
        return [
            f"{self.gateway}/v1/integrity/{integrity_root}",
            f"{self.gateway}/integrity/{integrity_root}",
        ]

    async def verify(self, dataset: DatasetRecord) -> IntegrityCheckResult:
        """Verify ``dataset`` against its stored blob.

        The whole check, download and root probes included, is bounded by
        ``timeout``. Never raises for network or gateway failures.
        """
        blob_id = dataset.blob.blob_id
        if not blob_id:
            return self._failed(dataset, "Dataset has no blob reference", None)

        start = time.monotonic()
        try:
            result = await asyncio.wait_for(self._run(dataset, start), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._failed(dataset, f"Integrity check timed out after {self.timeout}s", start)
        except (aiohttp.ClientError, BlobStoreError, OSError) as e:
            return self._failed(dataset, str(e), start)

        INTEGRITY_LATENCY.observe(result.latency_ms or 0)
        INTEGRITY_CHECKS.labels(outcome="complete").inc()
        self.audit.info(
            "integrity_check_complete",
            "Blob integrity verification complete",
            dataset_id=dataset.id,
            blob_id=blob_id,
            sha256_match=result.sha256_match,
            secondary_match=result.secondary_match,
            integrity_root_valid=result.integrity_root_valid,
            root_status=result.root_status.value,
            latency_ms=result.latency_ms,
        )
        return result

    async def _run(self, dataset: DatasetRecord, start: float) -> IntegrityCheckResult:
        if self.session is not None:
            return await self._check(self.session, dataset, start)
        async with aiohttp.ClientSession() as session:
            return await self._check(session, dataset, start)

    async def _check(
        self, session: aiohttp.ClientSession, dataset: DatasetRecord, start: float
    ) -> IntegrityCheckResult:
        url = self.blob_url(dataset.blob.blob_id)
        async with session.get(url, headers=self.headers) as response:
            if response.status < 200 or response.status >= 300:
                raise BlobStoreError(f"Gateway responded with status {response.status} for {url}")
            content = await response.read()

        sha256_match = bool(dataset.hashes.sha256) and digest_primary(content) == dataset.hashes.sha256.lower()
        secondary_match = (
            bool(dataset.hashes.secondary) and digest_secondary(content) == dataset.hashes.secondary.lower()
        )
        root_valid, root_status = await self._probe_root(session, dataset.blob.integrity_root)

        return IntegrityCheckResult(
            sha256_match=sha256_match,
            secondary_match=secondary_match,
            integrity_root_valid=root_valid,
            root_status=root_status,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    async def _probe_root(self, session: aiohttp.ClientSession, integrity_root: str) -> Tuple[bool, RootStatus]:
        """Try each lookup endpoint; the first 2xx answer confirms the root.

        When no endpoint confirms, a recorded root is assumed valid and
        reported as ``ASSUMED`` so callers can tell the two apart.
        """
        if not integrity_root:
            return False, RootStatus.MISSING

        for url in self.root_urls(integrity_root):
            try:
                async with session.get(url, headers=self.headers) as response:
                    if 200 <= response.status < 300:
                        return True, RootStatus.VERIFIED
                    logger.debug(f"Integrity root lookup {url} answered {response.status}")
            except aiohttp.ClientError as e:
                self.audit.warn(
                    "integrity_root_lookup_failed",
                    "Failed to query integrity root endpoint",
                    integrity_root=integrity_root,
                    url=url,
                    error=str(e),
                )

        return True, RootStatus.ASSUMED

    def _failed(self, dataset: DatasetRecord, error: str, start: Optional[float]) -> IntegrityCheckResult:
        latency = int((time.monotonic() - start) * 1000) if start is not None else None
        if latency is not None:
            INTEGRITY_LATENCY.observe(latency)
        INTEGRITY_CHECKS.labels(outcome="failed").inc()
        self.audit.error(
            "integrity_check_failed",
            "Failed to verify blob integrity",
            dataset_id=dataset.id,
            blob_id=dataset.blob.blob_id,
            error=error,
        )
        return IntegrityCheckResult(root_status=RootStatus.UNCHECKED, latency_ms=latency, error=error)
