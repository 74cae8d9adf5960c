# SPDX-License-Identifier: MPL-2.0
"""In-process ledger with the dataset certificate contract's rules.

Used for development (``LEDGER_MODE=local``) and tests. It keeps the same
shared objects the deployed package has: a certificate table, an append-only
claim registry, an append-only access registry and a trust-oracle table keyed
by dataset id. Privileged writes require the capability objects issued once
at deployment, and the stake check on access is enforced here, independently
of any off-chain check.
"""

import asyncio
import hashlib
import itertools
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from trust_ledger.core.config import LedgerObjects
from trust_ledger.core.crypto import EnclaveKeyRegistry, verify_intent
from trust_ledger.core.exceptions import SecurityError, TransactionRejectedError
from trust_ledger.core.models import TransactionReceipt
from trust_ledger.services.ledger.capabilities import Capability, CapabilityKind
from trust_ledger.services.ledger.client import (
    ACCESS_GRANTED,
    CERTIFICATE_MINTED,
    CLAIM_RAISED,
    TRUST_SCORE_UPDATED,
    EventCursor,
    EventPage,
    LedgerClient,
    LedgerEvent,
    MoveCall,
    ObjectRef,
)

logger = logging.getLogger(__name__)

# Abort codes of the dataset certificate module
E_INSUFFICIENT_STAKE = 1
E_INVALID_SEVERITY = 2
E_INVALID_SCORE = 3
E_INVALID_PROOF = 4
E_UNAUTHORIZED = 5
E_UNKNOWN_OBJECT = 6
E_UNKNOWN_FUNCTION = 7

MAX_FACTOR_SCORE = 25


def _new_object_id() -> str:
    return "0x" + os.urandom(32).hex()


@dataclass
class Certificate:
    object_id: str
    dataset_id: str
    owner: str
    blob_id: str
    sha256: str
    secondary: str
    license: str
    categories: List[str]
    policy: str
    min_stake: int
    status: str = "certified"


@dataclass(frozen=True)
class AccessEntry:
    dataset_id: str
    requester: str
    purpose: str
    stake_amount: int
    timestamp_ms: int


@dataclass(frozen=True)
class ClaimEntry:
    claim_id: int
    dataset_id: str
    severity: int
    statement: str
    evidence_uri: str
    claimant: str


@dataclass(frozen=True)
class OracleEntry:
    provenance_score: int
    integrity_score: int
    audit_score: int
    usage_score: int
    verified_by_enclave: bool
    timestamp_ms: int

    @property
    def score(self) -> int:
        return self.provenance_score + self.integrity_score + self.audit_score + self.usage_score


@dataclass
class LocalLedger(LedgerClient):
    """A single-process ledger deployment."""

    package_id: str = field(default_factory=_new_object_id)
    sender: str = field(default_factory=_new_object_id)
    enclave_keys: Optional[EnclaveKeyRegistry] = None

    mode = "local"
    simulated = False

    def __post_init__(self) -> None:
        self.claim_registry_id = _new_object_id()
        self.access_registry_id = _new_object_id()
        self.trust_oracle_id = _new_object_id()
        self.enclave_verifier_id = _new_object_id()
        self.capabilities: Dict[CapabilityKind, Capability] = {
            kind: Capability(kind, _new_object_id()) for kind in CapabilityKind
        }
        self.certificates: Dict[str, Certificate] = {}
        self.access_registry: List[AccessEntry] = []
        self.claim_registry: List[ClaimEntry] = []
        self.trust_oracle: Dict[str, OracleEntry] = {}
        self.events: List[LedgerEvent] = []
        self._tx_counter = itertools.count(1)
        self._claim_counter = itertools.count(1)
        self._lock = asyncio.Lock()
        self._handlers: Dict[str, Callable[[Tuple[Any, ...]], Tuple[Optional[str], Optional[Tuple[str, Dict]]]]] = {
            "mint_certificate": self._mint_certificate,
            "record_access": self._record_access,
            "file_claim": self._file_claim,
            "update_trust_score": self._update_trust_score,
            "update_trust_score_with_proof": self._update_trust_score_with_proof,
        }

    @property
    def objects(self) -> LedgerObjects:
        """Object references for configuring a publisher against this ledger."""
        return LedgerObjects(
            package_id=self.package_id,
            claim_registry=self.claim_registry_id,
            access_registry=self.access_registry_id,
            access_recorder_cap=self.capabilities[CapabilityKind.ACCESS_RECORDER].object_id,
            trust_oracle=self.trust_oracle_id,
            oracle_cap=self.capabilities[CapabilityKind.ORACLE].object_id,
            enclave_verifier=self.enclave_verifier_id,
        )

    async def execute(self, call: MoveCall) -> TransactionReceipt:
        if call.package_id != self.package_id:
            raise TransactionRejectedError(f"Unknown package {call.package_id}", abort_code=E_UNKNOWN_OBJECT)
        handler = self._handlers.get(call.function)
        if handler is None:
            raise TransactionRejectedError(f"Unknown function {call.function}", abort_code=E_UNKNOWN_FUNCTION)

        async with self._lock:
            # Handlers validate everything before mutating, so an abort
            # leaves no partial state behind.
            created, emitted = handler(call.arguments)
            digest = self._digest(call)
            if emitted is not None:
                name, payload = emitted
                self.events.append(
                    LedgerEvent(
                        event_type=name,
                        tx_digest=digest,
                        event_seq=0,
                        payload=payload,
                        timestamp_ms=int(time.time() * 1000),
                    )
                )
        logger.debug(f"Local ledger executed {call.function} in {digest}")
        return TransactionReceipt(action=call.function, digest=digest, object_id=created)

    async def query_events(
        self, event_type: str, cursor: Optional[EventCursor] = None, limit: int = 50
    ) -> EventPage:
        matching = [event for event in self.events if event.event_type == event_type]
        start = 0
        if cursor is not None:
            for index, event in enumerate(matching):
                if event.cursor == cursor:
                    start = index + 1
                    break
        page = matching[start : start + limit]
        return EventPage(
            events=page,
            next_cursor=page[-1].cursor if page else cursor,
            has_next_page=start + limit < len(matching),
        )

    def _digest(self, call: MoveCall) -> str:
        seed = f"{next(self._tx_counter)}:{call.target}:{time.time_ns()}".encode()
        return "0x" + hashlib.sha256(seed).hexdigest()

    # ------------------------------------------------------------------
    # Contract functions
    # ------------------------------------------------------------------

    def _require_capability(self, arg: Any, kind: CapabilityKind) -> None:
        if not isinstance(arg, ObjectRef) or arg.object_id != self.capabilities[kind].object_id:
            raise TransactionRejectedError(f"{kind.value} required", abort_code=E_UNAUTHORIZED)

    @staticmethod
    def _require_object(arg: Any, object_id: str, name: str) -> None:
        if not isinstance(arg, ObjectRef) or arg.object_id != object_id:
            raise TransactionRejectedError(f"Expected the {name} object", abort_code=E_UNKNOWN_OBJECT)

    @staticmethod
    def _check_scores(scores: Tuple[Any, ...]) -> Tuple[int, int, int, int]:
        values = tuple(int(s) for s in scores)
        if any(value < 0 or value > MAX_FACTOR_SCORE for value in values):
            raise TransactionRejectedError("Sub-score out of range", abort_code=E_INVALID_SCORE)
        return values  # type: ignore[return-value]

    def _mint_certificate(self, args: Tuple[Any, ...]):
        dataset_id, blob_id, sha256, secondary, license_, categories, policy, min_stake = args
        certificate = Certificate(
            object_id=_new_object_id(),
            dataset_id=dataset_id,
            owner=self.sender,
            blob_id=blob_id,
            sha256=sha256,
            secondary=secondary,
            license=license_,
            categories=list(categories),
            policy=policy,
            min_stake=int(min_stake),
        )
        self.certificates[certificate.object_id] = certificate
        return certificate.object_id, (
            CERTIFICATE_MINTED,
            {
                "dataset_id": dataset_id,
                "certificate_id": certificate.object_id,
                "owner": self.sender,
                "blob_id": blob_id,
            },
        )

    def _record_access(self, args: Tuple[Any, ...]):
        cap, registry, certificate_ref, requester, purpose, stake_amount = args
        self._require_capability(cap, CapabilityKind.ACCESS_RECORDER)
        self._require_object(registry, self.access_registry_id, "access registry")
        certificate = self.certificates.get(getattr(certificate_ref, "object_id", ""))
        if certificate is None:
            raise TransactionRejectedError("Unknown certificate", abort_code=E_UNKNOWN_OBJECT)
        stake = int(stake_amount)
        if stake < certificate.min_stake:
            raise TransactionRejectedError(
                f"Stake {stake} below minimum {certificate.min_stake}", abort_code=E_INSUFFICIENT_STAKE
            )
        self.access_registry.append(
            AccessEntry(certificate.dataset_id, requester, purpose, stake, int(time.time() * 1000))
        )
        return None, (
            ACCESS_GRANTED,
            {
                "dataset_id": certificate.dataset_id,
                "requester": requester,
                "blob_id": certificate.blob_id,
                "purpose": purpose,
                "stake_amount": str(stake),
            },
        )

    def _file_claim(self, args: Tuple[Any, ...]):
        registry, dataset_id, severity, statement, evidence_uri = args
        self._require_object(registry, self.claim_registry_id, "claim registry")
        if severity not in (0, 1, 2):
            raise TransactionRejectedError(f"Invalid severity {severity!r}", abort_code=E_INVALID_SEVERITY)
        claim = ClaimEntry(next(self._claim_counter), dataset_id, severity, statement, evidence_uri, self.sender)
        self.claim_registry.append(claim)
        return None, (
            CLAIM_RAISED,
            {
                "dataset_id": dataset_id,
                "claim_id": str(claim.claim_id),
                "severity": severity,
                "claimant": self.sender,
            },
        )

    def _set_score(self, dataset_id: str, scores: Tuple[int, int, int, int], verified: bool):
        entry = OracleEntry(*scores, verified_by_enclave=bool(verified), timestamp_ms=int(time.time() * 1000))
        self.trust_oracle[dataset_id] = entry
        return None, (
            TRUST_SCORE_UPDATED,
            {
                "dataset_id": dataset_id,
                "score": entry.score,
                "provenance_score": entry.provenance_score,
                "integrity_score": entry.integrity_score,
                "audit_score": entry.audit_score,
                "usage_score": entry.usage_score,
                "verified_by_enclave": entry.verified_by_enclave,
            },
        )

    def _update_trust_score(self, args: Tuple[Any, ...]):
        cap, oracle, dataset_id, *rest = args
        self._require_capability(cap, CapabilityKind.ORACLE)
        self._require_object(oracle, self.trust_oracle_id, "trust oracle")
        scores = self._check_scores(tuple(rest[:4]))
        return self._set_score(dataset_id, scores, rest[4])

    def _update_trust_score_with_proof(self, args: Tuple[Any, ...]):
        cap, oracle, verifier, dataset_id, *rest = args
        self._require_capability(cap, CapabilityKind.ORACLE)
        self._require_object(oracle, self.trust_oracle_id, "trust oracle")
        self._require_object(verifier, self.enclave_verifier_id, "enclave verifier")
        scores = self._check_scores(tuple(rest[:4]))
        blob_id, expected, computed, verified, blob_size, gateway, timestamp_ms, signature = rest[4:]

        envelope = {
            "intent": 0,
            "timestamp_ms": int(timestamp_ms),
            "data": {
                "blob_id": blob_id,
                "expected_sha256": expected,
                "computed_sha256": computed,
                "verified": bool(verified),
                "blob_size": int(blob_size),
                "walrus_gateway": gateway,
            },
        }
        if self.enclave_keys is None:
            raise TransactionRejectedError("Enclave verifier has no registered key", abort_code=E_INVALID_PROOF)
        try:
            verify_intent(self.enclave_keys.default().public_key, envelope, signature)
        except SecurityError as e:
            raise TransactionRejectedError(f"Enclave proof rejected: {e.message}", abort_code=E_INVALID_PROOF) from e
        return self._set_score(dataset_id, scores, verified)
