# SPDX-License-Identifier: MPL-2.0
"""Data models for the trust ledger."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) or pass a datetime through."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class DatasetStatus(str, Enum):
    """Lifecycle status of a dataset."""

    DRAFT = "draft"
    PENDING = "pending"
    CERTIFIED = "certified"
    DISPUTED = "disputed"


class AccessType(str, Enum):
    """Access policy type."""

    PUBLIC = "public"
    TOKEN_GATED = "token_gated"
    STAKE_GATED = "stake_gated"


class ClaimRole(str, Enum):
    AUDITOR = "auditor"
    BUYER = "buyer"
    CREATOR = "creator"


class Severity(str, Enum):
    """Claim severity.

    The integer codes are shared with the ledger's claim registry and the
    projection's ``claims.severity`` column.
    """

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def code(self) -> int:
        return _SEVERITY_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> Severity:
        for severity, value in _SEVERITY_CODES.items():
            if value == code:
                return severity
        raise ValueError(f"Unknown severity code: {code!r}")


_SEVERITY_CODES = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class TimelineEventType(str, Enum):
    UPLOAD = "upload"
    CERTIFICATE_MINTED = "certificate_minted"
    SEAL_POLICY_CREATED = "seal_policy_created"
    CLAIM_ADDED = "claim_added"
    STATUS_CHANGE = "status_change"
    ACCESS_REQUEST = "access_request"


class RootStatus(str, Enum):
    """How the integrity root was judged.

    ``ASSUMED`` means no lookup endpoint confirmed the root and the verifier
    fell back to "the root is recorded"; it is weaker than ``VERIFIED``.
    """

    VERIFIED = "verified"
    ASSUMED = "assumed"
    MISSING = "missing"
    UNCHECKED = "unchecked"


@dataclass
class TimelineEvent:
    """A provenance event in a dataset's append-only timeline."""

    id: str  # noqa: A003
    type: TimelineEventType  # noqa: A003
    description: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class BlobReference:
    """Where a dataset's bytes live in the blob store."""

    blob_id: str = ""
    integrity_root: str = ""
    proof: str = ""
    size_bytes: int = 0
    expires_at: Optional[datetime] = None


@dataclass
class ContentHashes:
    sha256: str = ""
    secondary: str = ""


@dataclass
class AccessPolicy:
    type: AccessType = AccessType.PUBLIC  # noqa: A003
    min_stake: int = 0
    allowed_tokens: list[str] = field(default_factory=list)


@dataclass
class Claim:
    """An allegation against a dataset. Immutable except for ``resolved``."""

    id: str  # noqa: A003
    role: ClaimRole
    severity: Severity
    statement: str
    evidence_uri: str = ""
    claimant: str = ""
    created_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    tx_digest: Optional[str] = None
    onchain_claim_id: Optional[str] = None


@dataclass
class DatasetMetrics:
    downloads: int = 0
    revenue: int = 0
    disputes: int = 0


@dataclass(frozen=True)
class AccessRecord:
    """A granted access event, created once per ledger transaction."""

    dataset_id: str
    requester: str
    purpose: str
    stake_amount: int
    tx_digest: str
    timestamp: datetime


@dataclass(frozen=True)
class IntegrityCheckResult:
    """Outcome of recomputing a blob's digests."""

    sha256_match: bool = False
    secondary_match: bool = False
    integrity_root_valid: bool = False
    root_status: RootStatus = RootStatus.UNCHECKED
    latency_ms: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> IntegrityCheckResult:
        return cls(root_status=RootStatus.UNCHECKED, error=error)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["root_status"] = self.root_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntegrityCheckResult:
        return cls(
            sha256_match=bool(data.get("sha256_match")),
            secondary_match=bool(data.get("secondary_match")),
            integrity_root_valid=bool(data.get("integrity_root_valid")),
            root_status=RootStatus(data.get("root_status", RootStatus.UNCHECKED.value)),
            latency_ms=data.get("latency_ms"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class EnclaveProof:
    """A verification result signed by the attestation enclave."""

    blob_id: str
    expected_sha256: str
    computed_sha256: str
    verified: bool
    blob_size: int
    gateway: str
    timestamp_ms: int
    signature: str
    public_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnclaveProof:
        return cls(
            blob_id=data["blob_id"],
            expected_sha256=data["expected_sha256"],
            computed_sha256=data["computed_sha256"],
            verified=bool(data["verified"]),
            blob_size=int(data["blob_size"]),
            gateway=data["gateway"],
            timestamp_ms=int(data["timestamp_ms"]),
            signature=data["signature"],
            public_key=data.get("public_key", ""),
        )


@dataclass(frozen=True)
class ProvenanceFactor:
    timeline_events: int
    score: int
    details: str


@dataclass(frozen=True)
class IntegrityFactor:
    sha256_verified: bool
    secondary_verified: bool
    integrity_root_valid: bool
    score: int
    details: str


@dataclass(frozen=True)
class AuditFactor:
    critical_claims: int
    warning_claims: int
    info_claims: int
    score: int
    details: str


@dataclass(frozen=True)
class UsageFactor:
    downloads: int
    score: int
    details: str


@dataclass(frozen=True)
class TrustFactors:
    provenance: ProvenanceFactor
    integrity: IntegrityFactor
    audit: AuditFactor
    usage: UsageFactor


@dataclass(frozen=True)
class TrustScore:
    """A point-in-time scoring snapshot.

    ``score`` is always the sum of the four sub-scores; construction fails
    otherwise.
    """

    dataset_id: str
    score: int
    provenance_score: int
    integrity_score: int
    audit_score: int
    usage_score: int
    factors: TrustFactors
    verified_by_enclave: bool = False
    integrity_check: Optional[IntegrityCheckResult] = None
    enclave_proof: Optional[EnclaveProof] = None
    last_updated: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        parts = (self.provenance_score, self.integrity_score, self.audit_score, self.usage_score)
        for part in parts:
            if not 0 <= part <= 25:
                raise ValueError(f"Sub-score {part} is outside [0, 25]")
        if self.score != sum(parts):
            raise ValueError(f"Total {self.score} is not the sum of its sub-scores {parts}")

    def sub_scores(self) -> tuple[int, int, int, int]:
        return (self.provenance_score, self.integrity_score, self.audit_score, self.usage_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "score": self.score,
            "provenance_score": self.provenance_score,
            "integrity_score": self.integrity_score,
            "audit_score": self.audit_score,
            "usage_score": self.usage_score,
            "verified_by_enclave": self.verified_by_enclave,
            "integrity_check": self.integrity_check.to_dict() if self.integrity_check else None,
            "enclave_proof": self.enclave_proof.to_dict() if self.enclave_proof else None,
            "factors": asdict(self.factors),
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrustScore:
        factors = data["factors"]
        integrity_check = data.get("integrity_check")
        enclave_proof = data.get("enclave_proof")
        return cls(
            dataset_id=data["dataset_id"],
            score=int(data["score"]),
            provenance_score=int(data["provenance_score"]),
            integrity_score=int(data["integrity_score"]),
            audit_score=int(data["audit_score"]),
            usage_score=int(data["usage_score"]),
            verified_by_enclave=bool(data.get("verified_by_enclave", False)),
            integrity_check=IntegrityCheckResult.from_dict(integrity_check) if integrity_check else None,
            enclave_proof=EnclaveProof.from_dict(enclave_proof) if enclave_proof else None,
            factors=TrustFactors(
                provenance=ProvenanceFactor(**factors["provenance"]),
                integrity=IntegrityFactor(**factors["integrity"]),
                audit=AuditFactor(**factors["audit"]),
                usage=UsageFactor(**factors["usage"]),
            ),
            last_updated=parse_timestamp(data["last_updated"]),
        )


@dataclass
class DatasetRecord:
    """The canonical evidence bundle for one dataset."""

    id: str  # noqa: A003
    owner: str
    title: str = ""
    description: str = ""
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    license: str = ""
    blob: BlobReference = field(default_factory=BlobReference)
    hashes: ContentHashes = field(default_factory=ContentHashes)
    status: DatasetStatus = DatasetStatus.PENDING
    access_policy: AccessPolicy = field(default_factory=AccessPolicy)
    certificate_id: Optional[str] = None
    timeline: list[TimelineEvent] = field(default_factory=list)
    claims: list[Claim] = field(default_factory=list)
    metrics: DatasetMetrics = field(default_factory=DatasetMetrics)
    trust: Optional[TrustScore] = None
    placeholder: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "title": self.title,
            "description": self.description,
            "categories": list(self.categories),
            "tags": list(self.tags),
            "license": self.license,
            "blob": {
                "blob_id": self.blob.blob_id,
                "integrity_root": self.blob.integrity_root,
                "proof": self.blob.proof,
                "size_bytes": self.blob.size_bytes,
                "expires_at": self.blob.expires_at.isoformat() if self.blob.expires_at else None,
            },
            "hashes": {"sha256": self.hashes.sha256, "secondary": self.hashes.secondary},
            "status": self.status.value,
            "access_policy": {
                "type": self.access_policy.type.value,
                "min_stake": self.access_policy.min_stake,
                "allowed_tokens": list(self.access_policy.allowed_tokens),
            },
            "certificate_id": self.certificate_id,
            "timeline": [event.to_dict() for event in self.timeline],
            "claims": [
                {
                    "id": c.id,
                    "role": c.role.value,
                    "severity": c.severity.value,
                    "statement": c.statement,
                    "evidence_uri": c.evidence_uri,
                    "claimant": c.claimant,
                    "created_at": c.created_at.isoformat(),
                    "resolved": c.resolved,
                    "tx_digest": c.tx_digest,
                    "onchain_claim_id": c.onchain_claim_id,
                }
                for c in self.claims
            ],
            "metrics": asdict(self.metrics),
            "trust": self.trust.to_dict() if self.trust else None,
            "placeholder": self.placeholder,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class TransactionReceipt:
    """What the ledger (or its stand-in) answered for one submission.

    ``simulated`` receipts were never anchored; ``error`` is set when a real
    submission was attempted and fell back.
    """

    action: str
    digest: str
    simulated: bool = False
    object_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def anchored(self) -> bool:
        return not self.simulated


__all__ = [
    "AccessPolicy",
    "AccessRecord",
    "AccessType",
    "AuditFactor",
    "BlobReference",
    "Claim",
    "ClaimRole",
    "ContentHashes",
    "DatasetMetrics",
    "DatasetRecord",
    "DatasetStatus",
    "EnclaveProof",
    "IntegrityCheckResult",
    "IntegrityFactor",
    "ProvenanceFactor",
    "RootStatus",
    "Severity",
    "TimelineEvent",
    "TimelineEventType",
    "TransactionReceipt",
    "TrustFactors",
    "TrustScore",
    "UsageFactor",
    "parse_timestamp",
    "utcnow",
]
