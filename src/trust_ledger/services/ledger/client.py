# SPDX-License-Identifier: MPL-2.0
"""Ledger client capability.

One interface, chosen once at startup: a signer-backed JSON-RPC client, a
simulated client that never signs, or the in-process :class:`LocalLedger`.
Call sites never branch on which one they hold.
"""

import abc
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from trust_ledger.core.canonicalization import canonical_bytes
from trust_ledger.core.crypto import KeyPair
from trust_ledger.core.exceptions import LedgerTransportError, TransactionRejectedError
from trust_ledger.core.models import TransactionReceipt

logger = logging.getLogger(__name__)

MODULE = "dataset_certificate"

CERTIFICATE_MINTED = "CertificateMinted"
ACCESS_GRANTED = "AccessGranted"
CLAIM_RAISED = "ClaimRaised"
TRUST_SCORE_UPDATED = "TrustScoreUpdated"
EVENT_TYPES = (CERTIFICATE_MINTED, ACCESS_GRANTED, CLAIM_RAISED, TRUST_SCORE_UPDATED)

CERTIFICATE_TYPE = "DatasetCertificate"

# JSON-RPC error code the node uses for aborted transactions
MOVE_ABORT_CODE = -32010


def event_type_name(package_id: str, name: str) -> str:
    """Fully qualified event type, e.g. ``0xabc::dataset_certificate::AccessGranted``."""
    return f"{package_id}::{MODULE}::{name}"


@dataclass(frozen=True)
class ObjectRef:
    """A ledger object passed to a call by reference."""

    object_id: str


@dataclass(frozen=True)
class MoveCall:
    """One entry-function call on the dataset certificate module."""

    package_id: str
    function: str
    arguments: Tuple[Any, ...] = ()

    @property
    def target(self) -> str:
        return f"{self.package_id}::{MODULE}::{self.function}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "arguments": [
                {"object": arg.object_id} if isinstance(arg, ObjectRef) else {"pure": arg}
                for arg in self.arguments
            ],
        }


@dataclass(frozen=True)
class EventCursor:
    tx_digest: str
    event_seq: int

    def to_dict(self) -> Dict[str, Any]:
        return {"txDigest": self.tx_digest, "eventSeq": str(self.event_seq)}


@dataclass(frozen=True)
class LedgerEvent:
    """An event emitted by a ledger transaction."""

    event_type: str
    tx_digest: str
    event_seq: int
    payload: Dict[str, Any]
    timestamp_ms: Optional[int] = None

    @property
    def cursor(self) -> EventCursor:
        return EventCursor(self.tx_digest, self.event_seq)


@dataclass
class EventPage:
    events: List[LedgerEvent] = field(default_factory=list)
    next_cursor: Optional[EventCursor] = None
    has_next_page: bool = False


class LedgerClient(abc.ABC):
    """What the publisher and indexer need from a ledger."""

    mode = "abstract"
    simulated = False

    @abc.abstractmethod
    async def execute(self, call: MoveCall) -> TransactionReceipt:
        """Sign and submit ``call``.

        Raises:
            TransactionRejectedError: The ledger aborted the transaction.
            LedgerTransportError: The submission did not reach a verdict.
        """

    @abc.abstractmethod
    async def query_events(
        self, event_type: str, cursor: Optional[EventCursor] = None, limit: int = 50
    ) -> EventPage:
        """Events of ``event_type`` after ``cursor``, in ascending ledger order."""

    async def close(self) -> None:
        pass


def simulated_receipt(action: str, dataset_id: str = "", error: Optional[str] = None) -> TransactionReceipt:
    """A clearly-labelled receipt for a write that was never anchored."""
    stamp = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
    prefix = "0xmock_fallback" if error else "0xmock"
    object_id = f"{prefix}_cert_{dataset_id}_{stamp}" if action == "mint_certificate" else None
    return TransactionReceipt(
        action=action,
        digest=f"{prefix}_{action}_{stamp}",
        simulated=True,
        object_id=object_id,
        error=error,
    )


class SimulatedLedgerClient(LedgerClient):
    """Stand-in used when no signing key is configured."""

    mode = "simulated"
    simulated = True

    async def execute(self, call: MoveCall) -> TransactionReceipt:
        dataset_id = next((arg for arg in call.arguments if isinstance(arg, str)), "")
        logger.info(f"Simulated ledger: would call {call.target}")
        return simulated_receipt(call.function, dataset_id)

    async def query_events(
        self, event_type: str, cursor: Optional[EventCursor] = None, limit: int = 50
    ) -> EventPage:
        return EventPage(next_cursor=cursor)


class RpcLedgerClient(LedgerClient):
    """JSON-RPC client that signs every transaction with the publisher key."""

    mode = "rpc"

    def __init__(
        self,
        rpc_url: str,
        keypair: KeyPair,
        package_id: str,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rpc_url = rpc_url
        self.keypair = keypair
        self.package_id = package_id
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None
        self._request_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        request = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        session = await self._get_session()
        try:
            async with session.post(self.rpc_url, json=request) as response:
                if response.status != 200:
                    raise LedgerTransportError(f"Ledger node answered HTTP {response.status}")
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise LedgerTransportError(f"{method} failed: {e}") from e

        if not isinstance(body, dict):
            raise LedgerTransportError(f"{method} returned a malformed response")
        error = body.get("error")
        if error:
            data = error.get("data") or {}
            if error.get("code") == MOVE_ABORT_CODE or "abort_code" in data:
                raise TransactionRejectedError(
                    error.get("message", "Transaction aborted"), abort_code=data.get("abort_code")
                )
            raise LedgerTransportError(f"{method} error {error.get('code')}: {error.get('message')}")
        return body.get("result")

    async def execute(self, call: MoveCall) -> TransactionReceipt:
        transaction = {
            "sender": self.keypair.public_hex(),
            "call": call.to_dict(),
            "nonce": uuid.uuid4().hex,
            "timestamp_ms": int(time.time() * 1000),
        }
        signature = self.keypair.sign(canonical_bytes(transaction)).hex()
        result = await self._rpc(
            "ledger_executeTransaction",
            [transaction, signature, {"showEffects": True, "showObjectChanges": True}],
        )
        if not isinstance(result, dict) or not result.get("digest"):
            raise LedgerTransportError("Transaction result carries no digest")

        created = [
            change
            for change in result.get("objectChanges") or []
            if change.get("type") == "created" and CERTIFICATE_TYPE in str(change.get("objectType", ""))
        ]
        return TransactionReceipt(
            action=call.function,
            digest=result["digest"],
            object_id=created[0].get("objectId") if created else None,
        )

    async def query_events(
        self, event_type: str, cursor: Optional[EventCursor] = None, limit: int = 50
    ) -> EventPage:
        result = await self._rpc(
            "ledger_queryEvents",
            [
                {"MoveEventType": event_type_name(self.package_id, event_type)},
                cursor.to_dict() if cursor else None,
                limit,
                False,
            ],
        )
        if not isinstance(result, dict):
            raise LedgerTransportError("ledger_queryEvents returned a malformed page")

        events = []
        for raw in result.get("data") or []:
            try:
                event_id = raw["id"]
                events.append(
                    LedgerEvent(
                        event_type=event_type,
                        tx_digest=event_id["txDigest"],
                        event_seq=int(event_id["eventSeq"]),
                        payload=raw.get("parsedJson") or {},
                        timestamp_ms=int(raw["timestampMs"]) if raw.get("timestampMs") else None,
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise LedgerTransportError(f"Malformed event in page: {e}") from e

        next_cursor = result.get("nextCursor")
        return EventPage(
            events=events,
            next_cursor=EventCursor(next_cursor["txDigest"], int(next_cursor["eventSeq"])) if next_cursor else cursor,
            has_next_page=bool(result.get("hasNextPage")),
        )
