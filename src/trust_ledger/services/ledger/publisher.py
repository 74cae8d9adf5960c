# SPDX-License-Identifier: MPL-2.0
"""Ledger Publisher

Submits state-changing facts to the ledger. Each ``submit`` builds one call,
checks that every capability and shared object it needs is real, and hands
it to the configured :class:`LedgerClient`.

Outcomes:

* missing capability or placeholder object: a simulated receipt, nothing sent;
* transport failure: a fallback receipt carrying the error, logged for retry;
* contract abort: :class:`TransactionRejectedError` propagates.

The publisher never deduplicates; every submission is a new transaction.
"""

import logging
from typing import Iterable, List, Optional

from trust_ledger.core.audit import AuditLogger, audit_logger
from trust_ledger.core.config import LedgerObjects
from trust_ledger.core.exceptions import InsufficientStakeError, LedgerTransportError, TokenGateError
from trust_ledger.core.metrics import LEDGER_SUBMISSIONS
from trust_ledger.core.models import (
    AccessPolicy,
    AccessType,
    DatasetRecord,
    EnclaveProof,
    Severity,
    TransactionReceipt,
    TrustScore,
)
from trust_ledger.services.ledger.capabilities import Capability, CapabilityKind, is_valid_object_id
from trust_ledger.services.ledger.client import LedgerClient, MoveCall, ObjectRef, simulated_receipt

logger = logging.getLogger(__name__)


def check_access_policy(
    policy: AccessPolicy, stake_amount: int, held_tokens: Optional[Iterable[str]] = None
) -> None:
    """Off-chain access gate.

    At least as strict as the ledger's own check: a stake below the minimum
    is refused for every policy type, not only stake-gated ones.

    Raises:
        InsufficientStakeError: ``stake_amount`` is below the minimum.
        TokenGateError: The policy is token-gated and no allowed token is held.
    """
    if stake_amount < 0:
        raise InsufficientStakeError("Stake cannot be negative", required=policy.min_stake, offered=stake_amount)
    if stake_amount < policy.min_stake:
        raise InsufficientStakeError(
            f"Stake {stake_amount} is below the minimum of {policy.min_stake}",
            required=policy.min_stake,
            offered=stake_amount,
        )
    if policy.type == AccessType.TOKEN_GATED:
        held = set(held_tokens or [])
        if not held.intersection(policy.allowed_tokens):
            raise TokenGateError(
                "Requester holds none of the allowed tokens", {"allowed_tokens": list(policy.allowed_tokens)}
            )


class LedgerPublisher:
    """Holds the capabilities and submits privileged writes."""

    def __init__(
        self,
        client: LedgerClient,
        objects: LedgerObjects,
        audit: AuditLogger = audit_logger,
    ):
        self.client = client
        self.objects = objects
        self.audit = audit
        self._access_cap = Capability(CapabilityKind.ACCESS_RECORDER, objects.access_recorder_cap)
        self._oracle_cap = Capability(CapabilityKind.ORACLE, objects.oracle_cap)

    @property
    def package_id(self) -> str:
        return self.objects.package_id

    async def mint_certificate(self, dataset: DatasetRecord) -> TransactionReceipt:
        call = MoveCall(
            self.package_id,
            "mint_certificate",
            (
                dataset.id,
                dataset.blob.blob_id,
                dataset.hashes.sha256,
                dataset.hashes.secondary,
                dataset.license,
                list(dataset.categories),
                dataset.access_policy.type.value,
                dataset.access_policy.min_stake,
            ),
        )
        return await self._submit(call, dataset.id, [])

    async def record_access(
        self,
        dataset: DatasetRecord,
        requester: str,
        purpose: str,
        stake_amount: int,
        held_tokens: Optional[Iterable[str]] = None,
    ) -> TransactionReceipt:
        """Record an access grant.

        The off-chain gate runs first; a refused request never reaches the
        ledger.
        """
        check_access_policy(dataset.access_policy, stake_amount, held_tokens)
        call = MoveCall(
            self.package_id,
            "record_access",
            (
                ObjectRef(self._access_cap.object_id),
                ObjectRef(self.objects.access_registry),
                ObjectRef(dataset.certificate_id or ""),
                requester,
                purpose,
                stake_amount,
            ),
        )
        required = [self._access_cap.object_id, self.objects.access_registry, dataset.certificate_id]
        return await self._submit(call, dataset.id, required)

    async def file_claim(
        self, dataset_id: str, severity: Severity, statement: str, evidence_uri: str = ""
    ) -> TransactionReceipt:
        call = MoveCall(
            self.package_id,
            "file_claim",
            (ObjectRef(self.objects.claim_registry), dataset_id, severity.code, statement, evidence_uri),
        )
        return await self._submit(call, dataset_id, [self.objects.claim_registry])

    async def update_trust_score(self, score: TrustScore) -> TransactionReceipt:
        call = MoveCall(
            self.package_id,
            "update_trust_score",
            (
                ObjectRef(self._oracle_cap.object_id),
                ObjectRef(self.objects.trust_oracle),
                score.dataset_id,
                *score.sub_scores(),
                score.verified_by_enclave,
            ),
        )
        receipt = await self._submit(
            call, score.dataset_id, [self._oracle_cap.object_id, self.objects.trust_oracle]
        )
        self._log_score(score, receipt)
        return receipt

    async def update_trust_score_with_proof(self, score: TrustScore, proof: EnclaveProof) -> TransactionReceipt:
        call = MoveCall(
            self.package_id,
            "update_trust_score_with_proof",
            (
                ObjectRef(self._oracle_cap.object_id),
                ObjectRef(self.objects.trust_oracle),
                ObjectRef(self.objects.enclave_verifier),
                score.dataset_id,
                *score.sub_scores(),
                proof.blob_id,
                proof.expected_sha256,
                proof.computed_sha256,
                proof.verified,
                proof.blob_size,
                proof.gateway,
                proof.timestamp_ms,
                proof.signature,
            ),
        )
        required = [self._oracle_cap.object_id, self.objects.trust_oracle, self.objects.enclave_verifier]
        receipt = await self._submit(call, score.dataset_id, required)
        self._log_score(score, receipt)
        return receipt

    async def _submit(self, call: MoveCall, dataset_id: str, required: List[Optional[str]]) -> TransactionReceipt:
        if self.client.simulated or not all(is_valid_object_id(object_id) for object_id in required):
            LEDGER_SUBMISSIONS.labels(action=call.function, mode="simulated").inc()
            logger.info(f"Simulating {call.function} for {dataset_id}: ledger objects not configured")
            return simulated_receipt(call.function, dataset_id)

        try:
            receipt = await self.client.execute(call)
        except LedgerTransportError as e:
            LEDGER_SUBMISSIONS.labels(action=call.function, mode="fallback").inc()
            self.audit.error(
                "ledger_submission_failed",
                f"Ledger {call.function} failed, returning unanchored receipt",
                dataset_id=dataset_id,
                action=call.function,
                error=e.message,
            )
            return simulated_receipt(call.function, dataset_id, error=e.message)

        LEDGER_SUBMISSIONS.labels(action=call.function, mode=self.client.mode).inc()
        logger.info(f"Ledger {call.function} for {dataset_id}: {receipt.digest}")
        return receipt

    def _log_score(self, score: TrustScore, receipt: TransactionReceipt) -> None:
        self.audit.info(
            "trust_score_published",
            "Trust score published to ledger",
            dataset_id=score.dataset_id,
            score=score.score,
            verified_by_enclave=score.verified_by_enclave,
            tx_digest=receipt.digest,
            simulated=receipt.simulated,
        )
