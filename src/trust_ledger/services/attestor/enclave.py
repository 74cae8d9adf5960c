# SPDX-License-Identifier: MPL-2.0
"""Enclave Attestor

Asks a remote trusted-execution enclave to re-hash a blob and sign the
result. The signed intent envelope is verified against a registered enclave
key, and its measurements against the expected PCR set, before any field of
it is used. Only a fully verified proof is ever merged into a trust score.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import aiohttp

from trust_ledger.core.audit import AuditLogger, audit_logger
from trust_ledger.core.crypto import EnclaveKeyRegistry, RegisteredEnclaveKey, normalize_hex, verify_intent
from trust_ledger.core.exceptions import (
    AttestationError,
    EnclaveUnavailableError,
    MeasurementMismatchError,
    SecurityError,
)
from trust_ledger.core.metrics import ATTESTATIONS
from trust_ledger.core.models import DatasetRecord, EnclaveProof, IntegrityCheckResult, RootStatus, TrustScore
from trust_ledger.core.scoring import compute_trust_score

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0  # seconds
PROCESS_DATA_INTENT = 0

_DATA_FIELDS = ("blob_id", "expected_sha256", "computed_sha256", "verified", "blob_size", "walrus_gateway")


class EnclaveAttestor:
    """Client for the enclave's ``process_data`` endpoint."""

    def __init__(
        self,
        server_url: str,
        key_registry: EnclaveKeyRegistry,
        gateway: str,
        expected_pcrs: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        audit: AuditLogger = audit_logger,
    ):
        self.server_url = server_url.rstrip("/")
        self.key_registry = key_registry
        self.gateway = gateway.rstrip("/")
        self.expected_pcrs = {str(k): normalize_hex(v) for k, v in (expected_pcrs or {}).items()}
        self.timeout = timeout
        self.session = session
        self.audit = audit

    async def request_attestation(self, dataset_id: str, blob_id: str, expected_sha256: str) -> EnclaveProof:
        """Request and verify a proof for ``blob_id``.

        Raises:
            EnclaveUnavailableError: The enclave could not be reached, timed
                out or answered with a non-success status.
            SecurityError: The proof failed signature, key or measurement
                checks, or does not answer the request that was made.
        """
        payload = {
            "payload": {
                "blob_id": blob_id,
                "expected_sha256": expected_sha256,
                "walrus_gateway": self.gateway,
            }
        }

        try:
            body = await asyncio.wait_for(self._post(payload), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._unavailable(dataset_id, blob_id, f"Enclave did not answer within {self.timeout}s")
            raise EnclaveUnavailableError(f"Enclave did not answer within {self.timeout}s") from e
        except aiohttp.ClientError as e:
            self._unavailable(dataset_id, blob_id, str(e))
            raise EnclaveUnavailableError(f"Failed to reach enclave: {e}") from e
        except EnclaveUnavailableError as e:
            self._unavailable(dataset_id, blob_id, e.message)
            raise

        try:
            proof = self.verify_response(body, blob_id, expected_sha256)
        except SecurityError as e:
            ATTESTATIONS.labels(outcome="rejected").inc()
            self.audit.error(
                "attestation_rejected",
                "Enclave proof rejected",
                dataset_id=dataset_id,
                blob_id=blob_id,
                reason=type(e).__name__,
                error=e.message,
            )
            raise

        ATTESTATIONS.labels(outcome="verified").inc()
        return proof

    async def _post(self, payload: Dict[str, Any]) -> Any:
        url = f"{self.server_url}/process_data"
        if self.session is not None:
            return await self._send(self.session, url, payload)
        async with aiohttp.ClientSession() as session:
            return await self._send(session, url, payload)

    @staticmethod
    async def _send(session: aiohttp.ClientSession, url: str, payload: Dict[str, Any]) -> Any:
        async with session.post(url, json=payload) as response:
            if response.status < 200 or response.status >= 300:
                text = await response.text()
                raise EnclaveUnavailableError(
                    f"Enclave responded with {response.status}: {text[:200]}", {"status": response.status}
                )
            try:
                return await response.json(content_type=None)
            except ValueError as e:
                raise AttestationError(f"Enclave response is not JSON: {e}") from e

    def verify_response(self, body: Any, blob_id: str, expected_sha256: str) -> EnclaveProof:
        """Check an enclave response and turn it into an :class:`EnclaveProof`.

        The signature is checked over the envelope exactly as received,
        before any of its fields are read.
        """
        if not isinstance(body, dict):
            raise AttestationError("Enclave response is not an object")
        envelope = body.get("response")
        signature = body.get("signature")
        if not isinstance(envelope, dict) or not isinstance(signature, str):
            raise AttestationError("Enclave response lacks a signed envelope")

        key = self._resolve_key(body.get("public_key"))
        verify_intent(key.public_key, envelope, signature)
        self._check_measurements(key, body.get("pcrs"))

        data = envelope.get("data")
        if envelope.get("intent") != PROCESS_DATA_INTENT or not isinstance(data, dict):
            raise AttestationError("Envelope is not a process_data result")
        missing = [name for name in _DATA_FIELDS if name not in data]
        if missing or "timestamp_ms" not in envelope:
            raise AttestationError("Envelope is missing fields", {"missing": missing})
        if data["blob_id"] != blob_id or str(data["expected_sha256"]).lower() != expected_sha256.lower():
            raise AttestationError(
                "Envelope does not answer this request",
                {"blob_id": data["blob_id"], "requested_blob_id": blob_id},
            )

        return EnclaveProof(
            blob_id=data["blob_id"],
            expected_sha256=str(data["expected_sha256"]),
            computed_sha256=str(data["computed_sha256"]),
            verified=bool(data["verified"]),
            blob_size=int(data["blob_size"]),
            gateway=str(data["walrus_gateway"]),
            timestamp_ms=int(envelope["timestamp_ms"]),
            signature=normalize_hex(signature),
            public_key=key.key_hex,
        )

    def _resolve_key(self, public_key: Any) -> RegisteredEnclaveKey:
        if public_key:
            return self.key_registry.get(str(public_key))
        return self.key_registry.default()

    def _check_measurements(self, key: RegisteredEnclaveKey, reported: Any) -> None:
        """Every expected PCR must match what was recorded and reported."""
        if not self.expected_pcrs:
            return

        sources = []
        if key.pcrs:
            sources.append(key.pcrs)
        if isinstance(reported, dict):
            sources.append({str(k): normalize_hex(str(v)) for k, v in reported.items()})
        if not sources:
            raise MeasurementMismatchError("Enclave reported no measurements")

        for measurements in sources:
            for index, expected in self.expected_pcrs.items():
                if measurements.get(index) != expected:
                    raise MeasurementMismatchError(
                        f"PCR{index} does not match the expected measurement",
                        {"pcr": index, "expected": expected, "actual": measurements.get(index)},
                    )

    def _unavailable(self, dataset_id: str, blob_id: str, error: str) -> None:
        ATTESTATIONS.labels(outcome="unavailable").inc()
        self.audit.error(
            "attestation_request_failed",
            "Failed to fetch proof from enclave",
            dataset_id=dataset_id,
            blob_id=blob_id,
            error=error,
        )


def merge_proof(dataset: DatasetRecord, proof: EnclaveProof, now: Optional[datetime] = None) -> TrustScore:
    """Score ``dataset`` with a verified enclave proof as integrity evidence.

    Integrity sub-checks the proof attests to become true; the score is
    flagged as enclave-verified when the proof reports ``verified``.
    """
    check = IntegrityCheckResult(
        sha256_match=proof.computed_sha256.lower() == proof.expected_sha256.lower(),
        secondary_match=proof.verified,
        integrity_root_valid=proof.verified,
        root_status=RootStatus.VERIFIED if proof.verified else RootStatus.UNCHECKED,
    )
    score = compute_trust_score(dataset, verified_by_enclave=proof.verified, integrity_check=check, now=now)
    return replace(score, enclave_proof=proof)
