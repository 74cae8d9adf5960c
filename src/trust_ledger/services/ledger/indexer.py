# SPDX-License-Identifier: MPL-2.0
"""Ledger Indexer

Polls the ledger for dataset certificate events and reconciles them into the
projection database. On start it backfills every event category from its
persisted cursor, then polls at a fixed interval until stopped.

Each event is applied in its own transaction and the category cursor only
moves past events that were applied, recognized as duplicates or rejected as
malformed. A transient failure leaves the cursor on the last good event so
the failed one is retried on the next cycle.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

from trust_ledger.core.db import ProjectionDB
from trust_ledger.core.exceptions import MalformedEventError, TransientError
from trust_ledger.core.metrics import INDEXED_EVENTS
from trust_ledger.core.models import Severity
from trust_ledger.services.ledger.client import (
    ACCESS_GRANTED,
    CERTIFICATE_MINTED,
    CLAIM_RAISED,
    EVENT_TYPES,
    TRUST_SCORE_UPDATED,
    EventCursor,
    LedgerClient,
    LedgerEvent,
)
from trust_ledger.services.ledger.events import validate_payload

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0  # seconds
DEFAULT_PAGE_SIZE = 50
MAX_PAGES_PER_CYCLE = 20


@dataclass
class IndexStats:
    """Counts from one pass over the event categories."""

    applied: int = 0
    duplicates: int = 0
    rejected: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class LedgerIndexer:
    """Keeps the projection in step with ledger events."""

    def __init__(
        self,
        client: LedgerClient,
        db: ProjectionDB,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        page_size: int = DEFAULT_PAGE_SIZE,
        event_types: Sequence[str] = EVENT_TYPES,
    ):
        self.client = client
        self.db = db
        self.poll_interval = poll_interval
        self.page_size = page_size
        self.event_types = tuple(event_types)
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    async def start(self) -> None:
        """Backfill, then poll in the background."""
        if self.running:
            logger.warning("Ledger indexer is already running")
            return

        self.running = True
        self._wake = asyncio.Event()
        logger.info(f"Starting ledger indexer ({self.client.mode}), polling every {self.poll_interval}s")

        stats = await self.run_once()
        logger.info(
            f"Historical sync completed: {stats.applied} applied, "
            f"{stats.duplicates} duplicates, {stats.rejected} rejected"
        )
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop scheduling cycles; a cycle in progress finishes first."""
        self.running = False
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Ledger indexer stopped")

    async def _poll_loop(self) -> None:
        while self.running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            if not self.running:
                break
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in indexer poll cycle: {e}", exc_info=True)

    async def run_once(self) -> IndexStats:
        """One pass over every event category.

        A failure in one category is logged and the others still run.
        """
        stats = IndexStats()
        for event_type in self.event_types:
            try:
                await self.index_category(event_type, stats)
            except Exception as e:
                stats.errors[event_type] = str(e)
                logger.error(f"Error indexing {event_type} events: {e}", exc_info=True)
        return stats

    async def index_category(self, event_type: str, stats: Optional[IndexStats] = None) -> IndexStats:
        """Page through ``event_type`` from its cursor, applying each event."""
        stats = stats if stats is not None else IndexStats()
        stored = self.db.get_cursor(event_type)
        cursor = EventCursor(*stored) if stored else None

        for _ in range(MAX_PAGES_PER_CYCLE):
            page = await self.client.query_events(event_type, cursor, self.page_size)
            if page.events:
                logger.debug(f"Found {len(page.events)} {event_type} events")

            for event in page.events:
                try:
                    outcome = self.process_event(event)
                except TransientError as e:
                    # Leave the cursor here; the event is retried next cycle.
                    stats.failed += 1
                    stats.errors[event_type] = str(e)
                    INDEXED_EVENTS.labels(event_type=event_type, outcome="failed").inc()
                    logger.warning(f"Deferring {event_type} {event.tx_digest}: {e}")
                    return stats

                setattr(stats, outcome, getattr(stats, outcome) + 1)
                INDEXED_EVENTS.labels(event_type=event_type, outcome=outcome).inc()
                cursor = event.cursor
                self.db.set_cursor(event_type, cursor.tx_digest, cursor.event_seq)

            if not page.has_next_page or not page.events:
                break
        return stats

    def process_event(self, event: LedgerEvent) -> str:
        """Apply one event; returns ``applied``, ``duplicates`` or ``rejected``.

        Events whose data cannot be stored are rejected so they do not hold
        back the rest of their category. Transient and database failures
        propagate and the event is retried.
        """
        try:
            validate_payload(event.event_type, event.payload)
            applied = self._apply(event)
        except MalformedEventError as e:
            return self._reject(event, e.message)
        except (ValueError, TypeError, KeyError, OverflowError) as e:
            return self._reject(event, f"{type(e).__name__}: {e}")

        if applied:
            logger.info(f"Indexed {event.event_type} for {event.payload.get('dataset_id')} ({event.tx_digest})")
            return "applied"
        return "duplicates"

    def _reject(self, event: LedgerEvent, reason: str) -> str:
        logger.warning(f"Rejecting {event.event_type} event {event.tx_digest}: {reason}")
        self.db.record_rejected_event(event.tx_digest, event.event_seq, event.event_type, reason)
        return "rejected"

    def _apply(self, event: LedgerEvent) -> bool:
        data = event.payload
        when = _event_time(event)

        if event.event_type == CERTIFICATE_MINTED:
            return self.db.apply_certificate_minted(
                event.tx_digest,
                event.event_seq,
                dataset_id=data["dataset_id"],
                certificate_id=data["certificate_id"],
                owner=data["owner"],
                blob_id=data.get("blob_id", ""),
                timestamp=when,
            )

        if event.event_type == ACCESS_GRANTED:
            return self.db.apply_access_granted(
                event.tx_digest,
                event.event_seq,
                dataset_id=data["dataset_id"],
                requester=data["requester"],
                purpose=data["purpose"],
                stake_amount=int(data["stake_amount"]),
                blob_id=data.get("blob_id", ""),
                timestamp=when,
            )

        if event.event_type == CLAIM_RAISED:
            try:
                severity = Severity.from_code(int(data["severity"]))
            except ValueError as e:
                raise MalformedEventError(str(e)) from e
            return self.db.apply_claim_raised(
                event.tx_digest,
                event.event_seq,
                dataset_id=data["dataset_id"],
                onchain_claim_id=str(data["claim_id"]),
                severity=severity,
                claimant=data["claimant"],
                timestamp=when,
            )

        if event.event_type == TRUST_SCORE_UPDATED:
            sub_scores = (
                data["provenance_score"],
                data["integrity_score"],
                data["audit_score"],
                data["usage_score"],
            )
            if "score" in data and data["score"] != sum(sub_scores):
                raise MalformedEventError("Total score is not the sum of its sub-scores")
            return self.db.apply_trust_score_updated(
                event.tx_digest,
                event.event_seq,
                dataset_id=data["dataset_id"],
                sub_scores=sub_scores,
                verified_by_enclave=bool(data.get("verified_by_enclave", False)),
                timestamp=when,
            )

        raise MalformedEventError(f"Unknown event type {event.event_type}")


def _event_time(event: LedgerEvent) -> Optional[datetime]:
    if event.timestamp_ms is None:
        return None
    return datetime.fromtimestamp(event.timestamp_ms / 1000, tz=timezone.utc)
