# SPDX-License-Identifier: MPL-2.0
"""Dataset registration, claims, access and scoring workflow.

This is the synchronous writer of the projection: every request-driven
change goes through :class:`DatasetService`, while ledger events observed
later go through the indexer. Both use the same idempotent appliers, so a
fact recorded here is not recorded again when its event arrives.
"""

import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from trust_ledger.core.audit import AuditLogger, audit_logger
from trust_ledger.core.cache import AttestationCache
from trust_ledger.core.config import Settings
from trust_ledger.core.crypto import EnclaveKeyRegistry
from trust_ledger.core.db import ProjectionDB
from trust_ledger.core.exceptions import (
    DatasetNotFoundError,
    TrustLedgerError,
    UploadSessionNotFoundError,
    ValidationError,
)
from trust_ledger.core.models import (
    AccessPolicy,
    BlobReference,
    Claim,
    ClaimRole,
    ContentHashes,
    DatasetRecord,
    DatasetStatus,
    EnclaveProof,
    Severity,
    TimelineEvent,
    TimelineEventType,
    TrustScore,
    utcnow,
)
from trust_ledger.core.scoring import compute_trust_score
from trust_ledger.services.attestor import EnclaveAttestor, merge_proof
from trust_ledger.services.blobstore import BlobStoreClient, BlobStoreResult
from trust_ledger.services.ledger import LedgerClient, LedgerPublisher, LocalLedger, create_ledger_client
from trust_ledger.services.verifier import IntegrityVerifier

logger = logging.getLogger(__name__)

# Allowed source statuses for each transition
CERTIFY_FROM = (DatasetStatus.DRAFT, DatasetStatus.PENDING)
DISPUTE_FROM = (DatasetStatus.CERTIFIED,)
RESTORE_FROM = (DatasetStatus.DISPUTED,)

LOOKUP_SCAN_LIMIT = 1000


@dataclass
class UploadSession:
    session_id: str
    file_name: str
    mime_type: str
    blob: BlobStoreResult


@dataclass
class RegisterInput:
    session_id: str
    owner: str
    title: str
    description: str = ""
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    license: str = ""
    access_policy: AccessPolicy = field(default_factory=AccessPolicy)


@dataclass
class ClaimInput:
    dataset_id: str
    role: ClaimRole
    severity: Severity
    statement: str
    evidence_uri: str = ""
    claimant: str = ""


@dataclass
class AccessRequest:
    dataset_id: str
    requester: str
    purpose: str
    stake_amount: int = 0
    token_holdings: List[str] = field(default_factory=list)


def _event(event_type: TimelineEventType, description: str, **metadata: Any) -> TimelineEvent:
    return TimelineEvent(
        id=f"evt-{secrets.token_hex(8)}",
        type=event_type,
        description=description,
        timestamp=utcnow(),
        metadata=metadata,
    )


def _matches_url(record: DatasetRecord, url: str) -> bool:
    if any(tag and (tag in url or url in tag) for tag in record.tags):
        return True
    if url in record.description:
        return True
    return bool(record.title) and record.title in url


class DatasetService:
    """Request-driven operations on datasets."""

    def __init__(
        self,
        db: ProjectionDB,
        blobstore: BlobStoreClient,
        publisher: LedgerPublisher,
        verifier: IntegrityVerifier,
        attestor: Optional[EnclaveAttestor] = None,
        cache: Optional[AttestationCache] = None,
        audit: AuditLogger = audit_logger,
    ):
        self.db = db
        self.blobstore = blobstore
        self.publisher = publisher
        self.verifier = verifier
        self.attestor = attestor
        self.cache = cache or AttestationCache(ttl_seconds=900)
        self.audit = audit
        self._sessions: Dict[str, UploadSession] = {}
        self._sessions_lock = threading.Lock()

    @property
    def ledger(self) -> LedgerClient:
        return self.publisher.client

    async def close(self) -> None:
        await self.publisher.client.close()
        self.db.close()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def create_upload_session(
        self, file_name: str, mime_type: str, content: bytes
    ) -> UploadSession:
        """Store ``content`` in the blob store and open a single-use session."""
        blob = await self.blobstore.store(content, file_name)
        session = UploadSession(
            session_id=f"session-{secrets.token_hex(6)}",
            file_name=file_name,
            mime_type=mime_type,
            blob=blob,
        )
        with self._sessions_lock:
            self._sessions[session.session_id] = session
        self.audit.info(
            "blob_upload",
            "Dataset uploaded to blob store",
            session_id=session.session_id,
            blob_id=blob.blob_id,
            mock=blob.mock,
        )
        return session

    async def register_dataset(self, data: RegisterInput) -> DatasetRecord:
        """Turn an upload session into a certified, scored dataset.

        Raises:
            UploadSessionNotFoundError: The session is unknown or already used.
        """
        with self._sessions_lock:
            session = self._sessions.pop(data.session_id, None)
        if session is None:
            raise UploadSessionNotFoundError("Upload session not found or expired", {"session_id": data.session_id})

        blob = session.blob
        record = DatasetRecord(
            id=f"dataset-{secrets.token_hex(6)}",
            owner=data.owner,
            title=data.title,
            description=data.description,
            categories=list(data.categories),
            tags=list(data.tags),
            license=data.license,
            blob=BlobReference(
                blob_id=blob.blob_id,
                integrity_root=blob.integrity_root,
                proof=blob.proof,
                size_bytes=blob.size_bytes,
                expires_at=blob.expires_at,
            ),
            hashes=ContentHashes(sha256=blob.sha256, secondary=blob.secondary),
            status=DatasetStatus.PENDING,
            access_policy=data.access_policy,
            timeline=[
                _event(TimelineEventType.UPLOAD, "Dataset uploaded to blob store", blob_id=blob.blob_id)
            ],
        )

        try:
            receipt = await self.publisher.mint_certificate(record)
        except TrustLedgerError:
            # The session stays usable if the ledger refused the mint.
            with self._sessions_lock:
                self._sessions[session.session_id] = session
            raise

        self.db.upsert_dataset(record)
        certificate_id = receipt.object_id or f"mock-{receipt.digest}"
        self.db.apply_certificate_minted(
            receipt.digest,
            None,
            dataset_id=record.id,
            certificate_id=certificate_id,
            owner=record.owner,
            blob_id=blob.blob_id,
        )
        await self._transition(record.id, DatasetStatus.CERTIFIED, CERTIFY_FROM, "Certificate minted")

        score = await self.score_dataset(record.id, perform_integrity_check=True)

        if self.attestor is not None:
            try:
                await self.attest_dataset(record.id, blob.blob_id)
            except TrustLedgerError as e:
                self.audit.warn(
                    "attestation_request_failed",
                    "Enclave verification after registration failed",
                    dataset_id=record.id,
                    error=e.message,
                )

        self.audit.info(
            "dataset_registered",
            "Dataset certified",
            dataset_id=record.id,
            certificate_id=certificate_id,
            trust_score=score.score,
            anchored=receipt.anchored,
        )
        return self.get_dataset(record.id)

    # ------------------------------------------------------------------
    # Claims, access and status
    # ------------------------------------------------------------------

    async def add_claim(self, data: ClaimInput) -> DatasetRecord:
        """File a claim on the ledger, then record it off-chain.

        Nothing is stored when the ledger rejects the claim.
        """
        self.get_dataset(data.dataset_id)
        claim = Claim(
            id=f"claim-{secrets.token_hex(6)}",
            role=data.role,
            severity=data.severity,
            statement=data.statement,
            evidence_uri=data.evidence_uri,
            claimant=data.claimant,
        )

        self.db.begin_claim_filing(data.dataset_id, claim)
        try:
            receipt = await self.publisher.file_claim(
                data.dataset_id, data.severity, data.statement, data.evidence_uri
            )
        except Exception:
            self.db.abandon_claim_filing(claim.id)
            raise

        claim.tx_digest = receipt.digest
        claim = self.db.add_claim(
            data.dataset_id,
            claim,
            _event(
                TimelineEventType.CLAIM_ADDED,
                f"{data.severity.value} claim filed by {data.role.value}",
                claim_id=claim.id,
            ),
        )

        self.audit.warn(
            "dataset_claim",
            "Claim filed against dataset",
            dataset_id=data.dataset_id,
            claim_id=claim.id,
            severity=data.severity.value,
            tx_digest=receipt.digest,
        )
        return self.get_dataset(data.dataset_id)

    def resolve_claim(self, dataset_id: str, claim_id: str) -> Claim:
        claim = self.db.resolve_claim(dataset_id, claim_id)
        self.audit.info("claim_resolved", "Claim resolved", dataset_id=dataset_id, claim_id=claim_id)
        return claim

    async def record_access(self, data: AccessRequest) -> Dict[str, Any]:
        """Grant access to a dataset.

        Raises:
            InsufficientStakeError: The stake is below the dataset minimum.
            TokenGateError: The requester holds no allowed token.
        """
        dataset = self.get_dataset(data.dataset_id)
        receipt = await self.publisher.record_access(
            dataset, data.requester, data.purpose, data.stake_amount, data.token_holdings
        )
        self.db.apply_access_granted(
            receipt.digest,
            None,
            dataset_id=dataset.id,
            requester=data.requester,
            purpose=data.purpose,
            stake_amount=data.stake_amount,
            blob_id=dataset.blob.blob_id,
        )
        self.audit.info(
            "dataset_access",
            "Access granted",
            dataset_id=dataset.id,
            requester=data.requester,
            tx_digest=receipt.digest,
        )
        return {
            "dataset_id": dataset.id,
            "download_url": self.blobstore.read(dataset.blob.blob_id),
            "certificate_id": dataset.certificate_id,
            "tx_digest": receipt.digest,
            "simulated": receipt.simulated,
        }

    async def certify(self, dataset_id: str, reason: str = "Dataset certified") -> DatasetRecord:
        return await self._transition(dataset_id, DatasetStatus.CERTIFIED, CERTIFY_FROM, reason)

    async def dispute(self, dataset_id: str, reason: str = "Dataset disputed") -> DatasetRecord:
        return await self._transition(dataset_id, DatasetStatus.DISPUTED, DISPUTE_FROM, reason)

    async def restore(self, dataset_id: str, reason: str = "Dispute resolved") -> DatasetRecord:
        return await self._transition(dataset_id, DatasetStatus.CERTIFIED, RESTORE_FROM, reason)

    async def _transition(
        self, dataset_id: str, target: DatasetStatus, allowed: Tuple[DatasetStatus, ...], reason: str
    ) -> DatasetRecord:
        previous = self.db.set_status(
            dataset_id,
            target,
            allowed,
            _event(TimelineEventType.STATUS_CHANGE, reason, to=target.value),
        )
        self.audit.info(
            "dataset_status_changed",
            reason,
            dataset_id=dataset_id,
            previous=previous.value,
            status=target.value,
        )
        return self.get_dataset(dataset_id)

    # ------------------------------------------------------------------
    # Scoring and attestation
    # ------------------------------------------------------------------

    def preview_score(self, dataset_id: str) -> TrustScore:
        """Compute a score without publishing or storing it."""
        return compute_trust_score(self.get_dataset(dataset_id))

    async def score_dataset(
        self, dataset_id: str, verified_by_enclave: bool = False, perform_integrity_check: bool = False
    ) -> TrustScore:
        """Compute, publish and store a fresh score."""
        dataset = self.get_dataset(dataset_id)
        check = await self.verifier.verify(dataset) if perform_integrity_check else None
        score = compute_trust_score(dataset, verified_by_enclave=verified_by_enclave, integrity_check=check)
        receipt = await self.publisher.update_trust_score(score)
        self.db.save_trust_score(score, receipt.digest, source="scoring")
        return score

    async def attest_dataset(self, dataset_id: str, blob_id: Optional[str] = None) -> Optional[TrustScore]:
        """Have the enclave verify the dataset's blob and score with its proof.

        Returns ``None`` when no enclave is configured. Transient and security
        failures propagate; a rejected proof never reaches the score.
        """
        if self.attestor is None:
            self.audit.warn(
                "attestation_not_configured", "No enclave configured; skipping verification", dataset_id=dataset_id
            )
            return None

        dataset = self.get_dataset(dataset_id)
        target_blob = blob_id or dataset.blob.blob_id
        if not target_blob:
            raise ValidationError(f"Dataset {dataset_id} has no blob id")
        if not dataset.hashes.sha256:
            raise ValidationError(f"Dataset {dataset_id} is missing its SHA-256 digest")

        proof = await self.attestor.request_attestation(dataset_id, target_blob, dataset.hashes.sha256)
        score = merge_proof(dataset, proof)
        receipt = await self.publisher.update_trust_score_with_proof(score, proof)
        self.db.save_trust_score(score, receipt.digest, source="attestation")
        self.cache.record(proof, score)

        self.audit.info(
            "attestation_complete",
            "Dataset verified via enclave",
            dataset_id=dataset_id,
            blob_id=proof.blob_id,
            verified=proof.verified,
            tx_digest=receipt.digest,
        )
        return score

    def latest_attestation(self, dataset_id: str) -> Optional[Tuple[EnclaveProof, TrustScore]]:
        """The latest verified proof and its score, hydrating the cache on a miss."""
        cached = self.cache.get(dataset_id)
        if cached is not None:
            return cached
        dataset = self.get_dataset(dataset_id)
        if dataset.trust is not None and dataset.trust.enclave_proof is not None:
            record = (dataset.trust.enclave_proof, dataset.trust)
            self.cache.put(dataset_id, record)
            return record
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_dataset(self, dataset_id: str) -> DatasetRecord:
        record = self.db.get_dataset(dataset_id)
        if record is None:
            raise DatasetNotFoundError(f"Dataset {dataset_id} not found", {"dataset_id": dataset_id})
        return record

    def list_datasets(self, status: Optional[DatasetStatus] = None, limit: int = 100) -> List[DatasetRecord]:
        return self.db.list_datasets(status=status, limit=limit)

    def lookup_dataset(self, url: str) -> DatasetRecord:
        """Find the dataset a source URL belongs to.

        A dataset matches when one of its tags contains the URL or is part
        of it, its description mentions the URL, or the URL contains its
        title. The newest match wins.
        """
        for record in self.db.list_datasets(limit=LOOKUP_SCAN_LIMIT):
            if _matches_url(record, url):
                return record
        raise DatasetNotFoundError(f"No certified dataset matches {url}", {"url": url})

    def trust_history(self, dataset_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        return self.db.get_trust_history(dataset_id, limit)


def create_service(settings: Settings) -> DatasetService:
    """Wire a :class:`DatasetService` from settings."""
    audit_logger.configure(settings.audit_log_path)

    enclave_keys = EnclaveKeyRegistry.from_hex_keys(settings.enclave_public_keys)
    client = create_ledger_client(settings, enclave_keys=enclave_keys)
    objects = client.objects if isinstance(client, LocalLedger) else settings.ledger_objects

    attestor = None
    if settings.enclave_url:
        attestor = EnclaveAttestor(
            settings.enclave_url,
            enclave_keys,
            gateway=settings.resolved_enclave_gateway,
            expected_pcrs=settings.enclave_expected_pcrs,
            timeout=settings.enclave_timeout,
        )

    return DatasetService(
        db=ProjectionDB(settings.database_path),
        blobstore=BlobStoreClient(
            settings.blob_gateway,
            publisher=settings.blob_publisher,
            api_key=settings.blob_api_key,
            epochs=settings.blob_epochs,
            force_mock=settings.blob_force_mock,
        ),
        publisher=LedgerPublisher(client, objects),
        verifier=IntegrityVerifier(
            settings.blob_gateway, api_key=settings.blob_api_key, timeout=settings.integrity_timeout
        ),
        attestor=attestor,
        cache=AttestationCache(settings.attestation_cache_ttl, settings.attestation_cache_size),
    )
