# SPDX-License-Identifier: MPL-2.0
"""
Projection database for the trust ledger using SQLite.

This module holds the off-chain, queryable mirror of ledger facts: dataset
aggregates, their timelines, claims, access records and trust score history.
The registration workflow and the ledger indexer are its only writers.

Ledger events are applied through idempotent appliers. Each applier runs in a
single ``BEGIN IMMEDIATE`` transaction that checks transaction identity,
inserts the per-event row and bumps the parent aggregate's counters, so a
re-delivered event is a no-op and a failed one leaves nothing behind.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from trust_ledger.core.exceptions import (
    ClaimNotFoundError,
    DatabaseError,
    DatasetNotFoundError,
    InvalidTransitionError,
    TransientError,
)
from trust_ledger.core.models import (
    AccessPolicy,
    AccessRecord,
    AccessType,
    BlobReference,
    Claim,
    ClaimRole,
    ContentHashes,
    DatasetMetrics,
    DatasetRecord,
    DatasetStatus,
    Severity,
    TimelineEvent,
    TimelineEventType,
    TrustScore,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

# Database schema version
SCHEMA_VERSION = 1

# Indexer outcomes recorded in indexed_events
OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_REJECTED = "rejected"

# Largest value an INTEGER column holds
MAX_INTEGER = 2**63 - 1

# A claim filing older than this no longer holds back its ledger event
CLAIM_FILING_TIMEOUT = 300.0  # seconds

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS datasets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dataset_id TEXT NOT NULL UNIQUE,
        owner TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        categories TEXT NOT NULL DEFAULT '[]',
        tags TEXT NOT NULL DEFAULT '[]',
        license TEXT NOT NULL DEFAULT '',
        blob_id TEXT NOT NULL DEFAULT '',
        integrity_root TEXT NOT NULL DEFAULT '',
        blob_proof TEXT NOT NULL DEFAULT '',
        size_bytes INTEGER NOT NULL DEFAULT 0,
        expires_at TEXT,
        sha256 TEXT NOT NULL DEFAULT '',
        secondary_hash TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('draft', 'pending', 'certified', 'disputed')),
        access_type TEXT NOT NULL DEFAULT 'public'
            CHECK (access_type IN ('public', 'token_gated', 'stake_gated')),
        min_stake INTEGER NOT NULL DEFAULT 0 CHECK (min_stake >= 0),
        allowed_tokens TEXT NOT NULL DEFAULT '[]',
        certificate_id TEXT UNIQUE,
        downloads INTEGER NOT NULL DEFAULT 0 CHECK (downloads >= 0),
        revenue INTEGER NOT NULL DEFAULT 0 CHECK (revenue >= 0),
        disputes INTEGER NOT NULL DEFAULT 0 CHECK (disputes >= 0),
        trust_score INTEGER,
        trust_snapshot TEXT,
        placeholder INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_datasets_owner ON datasets(owner)",
    "CREATE INDEX IF NOT EXISTS idx_datasets_status ON datasets(status)",
    """
    CREATE TABLE IF NOT EXISTS timeline_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL UNIQUE,
        dataset_id INTEGER NOT NULL REFERENCES datasets(id),
        position INTEGER NOT NULL,
        type TEXT NOT NULL,
        description TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        UNIQUE(dataset_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS claims (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        claim_id TEXT NOT NULL UNIQUE,
        dataset_id INTEGER NOT NULL REFERENCES datasets(id),
        role TEXT NOT NULL,
        severity INTEGER NOT NULL CHECK (severity IN (0, 1, 2)),
        statement TEXT NOT NULL,
        evidence_uri TEXT NOT NULL DEFAULT '',
        claimant TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        tx_digest TEXT UNIQUE,
        onchain_claim_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_claims_dataset ON claims(dataset_id)",
    """
    CREATE TABLE IF NOT EXISTS access_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dataset_id INTEGER NOT NULL REFERENCES datasets(id),
        requester TEXT NOT NULL,
        purpose TEXT NOT NULL DEFAULT '',
        stake_amount INTEGER NOT NULL DEFAULT 0 CHECK (stake_amount >= 0),
        tx_digest TEXT NOT NULL UNIQUE,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_access_records_dataset ON access_records(dataset_id)",
    """
    CREATE TABLE IF NOT EXISTS trust_score_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dataset_id INTEGER NOT NULL REFERENCES datasets(id),
        score INTEGER NOT NULL,
        provenance_score INTEGER NOT NULL CHECK (provenance_score BETWEEN 0 AND 25),
        integrity_score INTEGER NOT NULL CHECK (integrity_score BETWEEN 0 AND 25),
        audit_score INTEGER NOT NULL CHECK (audit_score BETWEEN 0 AND 25),
        usage_score INTEGER NOT NULL CHECK (usage_score BETWEEN 0 AND 25),
        verified_by_enclave INTEGER NOT NULL DEFAULT 0,
        factors TEXT NOT NULL DEFAULT '{}',
        tx_digest TEXT UNIQUE,
        source TEXT NOT NULL,
        recorded_at TEXT NOT NULL,
        CHECK (score = provenance_score + integrity_score + audit_score + usage_score)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_trust_history_dataset
    ON trust_score_history(dataset_id, recorded_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS indexed_events (
        tx_digest TEXT NOT NULL,
        event_seq INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        outcome TEXT NOT NULL,
        detail TEXT,
        indexed_at TEXT NOT NULL,
        PRIMARY KEY (tx_digest, event_seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS indexer_cursors (
        event_type TEXT PRIMARY KEY,
        tx_digest TEXT NOT NULL,
        event_seq INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS claim_filings (
        claim_id TEXT PRIMARY KEY,
        dataset_id TEXT NOT NULL,
        severity INTEGER NOT NULL,
        started_at REAL NOT NULL
    )
    """,
]

TRIGGERS = [
    """
    CREATE TRIGGER IF NOT EXISTS datasets_no_delete
    BEFORE DELETE ON datasets
    BEGIN
        SELECT RAISE(ABORT, 'datasets are never deleted');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS timeline_no_update
    BEFORE UPDATE ON timeline_events
    BEGIN
        SELECT RAISE(ABORT, 'timeline events are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS timeline_no_delete
    BEFORE DELETE ON timeline_events
    BEGIN
        SELECT RAISE(ABORT, 'timeline events are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS claims_immutable
    BEFORE UPDATE ON claims
    WHEN NEW.claim_id IS NOT OLD.claim_id
        OR NEW.dataset_id IS NOT OLD.dataset_id
        OR NEW.role IS NOT OLD.role
        OR NEW.severity IS NOT OLD.severity
        OR NEW.statement IS NOT OLD.statement
        OR NEW.evidence_uri IS NOT OLD.evidence_uri
        OR NEW.claimant IS NOT OLD.claimant
        OR NEW.created_at IS NOT OLD.created_at
    BEGIN
        SELECT RAISE(ABORT, 'claims are immutable except for resolution and ledger linkage');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS claims_no_delete
    BEFORE DELETE ON claims
    BEGIN
        SELECT RAISE(ABORT, 'claims are never deleted');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS access_records_no_update
    BEFORE UPDATE ON access_records
    BEGIN
        SELECT RAISE(ABORT, 'access records are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS access_records_no_delete
    BEFORE DELETE ON access_records
    BEGIN
        SELECT RAISE(ABORT, 'access records are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trust_history_no_update
    BEFORE UPDATE ON trust_score_history
    BEGIN
        SELECT RAISE(ABORT, 'trust score history is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trust_history_no_delete
    BEFORE DELETE ON trust_score_history
    BEGIN
        SELECT RAISE(ABORT, 'trust score history is append-only');
    END
    """,
]


def _now() -> str:
    return utcnow().isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ProjectionDB:
    """
    Off-chain projection of the trust ledger.

    Every write runs in its own ``BEGIN IMMEDIATE`` transaction, which
    serializes writers and therefore all writes to a dataset aggregate.
    Counters are only ever incremented, never overwritten.

    Attributes:
        db_path: Path to the SQLite database file, or ``":memory:"``.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file, or ":memory:" for a
                private in-memory database that lives as long as this object.
        """
        self.db_path = str(db_path)
        self._keeper: Optional[sqlite3.Connection] = None
        if self.db_path == ":memory:":
            # A named shared-cache database survives across connections as
            # long as one connection stays open.
            self._uri = f"file:trust-ledger-{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._keeper = sqlite3.connect(self._uri, uri=True, check_same_thread=False)
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._uri = None
        self._init_db()

    def close(self) -> None:
        if self._keeper is not None:
            self._keeper.close()
            self._keeper = None

    def _init_db(self) -> None:
        """Initialize the database schema and ensure proper configuration."""
        with self._get_connection() as conn:
            if self._uri is None:
                conn.execute("PRAGMA journal_mode=WAL")

            for stmt in SCHEMA + TRIGGERS:
                try:
                    conn.execute(stmt)
                except sqlite3.OperationalError:
                    logger.error(f"Error executing SQL: {stmt}")
                    raise

            conn.execute(
                """
                INSERT INTO metadata (key, value) VALUES ('schema_version', ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                WHERE CAST(value AS INTEGER) < ?
                """,
                (str(SCHEMA_VERSION), SCHEMA_VERSION),
            )

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection in autocommit mode."""
        if self._uri is not None:
            conn = sqlite3.connect(self._uri, uri=True, isolation_level=None)
        else:
            conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in a ``BEGIN IMMEDIATE`` transaction.

        Domain errors raised inside the block roll back and propagate
        unchanged; SQLite failures are wrapped in :class:`DatabaseError`.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                logger.error(f"Database error: {e}")
                raise DatabaseError(str(e)) from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Dataset aggregates
    # ------------------------------------------------------------------

    def upsert_dataset(self, record: DatasetRecord) -> DatasetRecord:
        """Insert a dataset, or fill in a placeholder created by the indexer.

        Status, counters and certificate id of an existing row are left
        alone; they change only through transitions and ledger events.
        Timeline events and claims in ``record`` that are not yet stored are
        appended.
        """
        with self._transaction() as conn:
            now = _now()
            conn.execute(
                """
                INSERT INTO datasets (
                    dataset_id, owner, title, description, categories, tags, license,
                    blob_id, integrity_root, blob_proof, size_bytes, expires_at,
                    sha256, secondary_hash, status, access_type, min_stake,
                    allowed_tokens, placeholder, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(dataset_id) DO UPDATE SET
                    owner = excluded.owner,
                    title = excluded.title,
                    description = excluded.description,
                    categories = excluded.categories,
                    tags = excluded.tags,
                    license = excluded.license,
                    blob_id = excluded.blob_id,
                    integrity_root = excluded.integrity_root,
                    blob_proof = excluded.blob_proof,
                    size_bytes = excluded.size_bytes,
                    expires_at = excluded.expires_at,
                    sha256 = excluded.sha256,
                    secondary_hash = excluded.secondary_hash,
                    access_type = excluded.access_type,
                    min_stake = excluded.min_stake,
                    allowed_tokens = excluded.allowed_tokens,
                    placeholder = excluded.placeholder,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.owner,
                    record.title,
                    record.description,
                    json.dumps(list(record.categories)),
                    json.dumps(list(record.tags)),
                    record.license,
                    record.blob.blob_id,
                    record.blob.integrity_root,
                    record.blob.proof,
                    record.blob.size_bytes,
                    _iso(record.blob.expires_at),
                    record.hashes.sha256,
                    record.hashes.secondary,
                    record.status.value,
                    record.access_policy.type.value,
                    record.access_policy.min_stake,
                    json.dumps(list(record.access_policy.allowed_tokens)),
                    int(record.placeholder),
                    record.created_at.isoformat(),
                    now,
                ),
            )
            row_id = self._row_id(conn, record.id)
            for event in record.timeline:
                if not self._exists(conn, "timeline_events", "event_id", event.id):
                    self._insert_timeline(conn, row_id, event)
            for claim in record.claims:
                if not self._exists(conn, "claims", "claim_id", claim.id):
                    self._insert_claim(conn, row_id, claim)

        stored = self.get_dataset(record.id)
        assert stored is not None
        return stored

    def get_dataset(self, dataset_id: str) -> Optional[DatasetRecord]:
        """Load a dataset with its timeline and claims, or ``None``."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM datasets WHERE dataset_id = ?", (dataset_id,)).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, row)

    def list_datasets(
        self,
        status: Optional[DatasetStatus] = None,
        owner: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[DatasetRecord]:
        """List datasets, newest first."""
        query = "SELECT * FROM datasets"
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._hydrate(conn, row) for row in rows]

    def append_timeline(self, dataset_id: str, event: TimelineEvent) -> TimelineEvent:
        """Append ``event`` to the end of the dataset's timeline."""
        with self._transaction() as conn:
            self._insert_timeline(conn, self._require_row_id(conn, dataset_id), event)
        return event

    def set_status(
        self,
        dataset_id: str,
        new_status: DatasetStatus,
        allowed_from: Iterable[DatasetStatus],
        event: TimelineEvent,
    ) -> DatasetStatus:
        """Move a dataset to ``new_status`` and record the change.

        The current status is read and checked inside the write transaction.

        Returns:
            The previous status.

        Raises:
            DatasetNotFoundError: If the dataset does not exist.
            InvalidTransitionError: If the current status is not in
                ``allowed_from``.
        """
        allowed = {status.value for status in allowed_from}
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, status FROM datasets WHERE dataset_id = ?", (dataset_id,)
            ).fetchone()
            if row is None:
                raise DatasetNotFoundError(f"Dataset {dataset_id} not found")
            if row["status"] not in allowed:
                raise InvalidTransitionError(
                    f"Cannot move dataset {dataset_id} from {row['status']} to {new_status.value}",
                    {"from": row["status"], "to": new_status.value},
                )
            conn.execute(
                "UPDATE datasets SET status = ?, updated_at = ? WHERE id = ?",
                (new_status.value, _now(), row["id"]),
            )
            self._insert_timeline(conn, row["id"], event)
            return DatasetStatus(row["status"])

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def begin_claim_filing(self, dataset_id: str, claim: Claim) -> None:
        """Note that ``claim`` is being filed on the ledger.

        While the filing is open, a ``ClaimRaised`` event of the same
        severity for the dataset is deferred instead of backfilled.
        """
        with self._transaction() as conn:
            self._require_row_id(conn, dataset_id)
            conn.execute(
                "INSERT INTO claim_filings (claim_id, dataset_id, severity, started_at) VALUES (?, ?, ?, ?)",
                (claim.id, dataset_id, claim.severity.code, utcnow().timestamp()),
            )

    def abandon_claim_filing(self, claim_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM claim_filings WHERE claim_id = ?", (claim_id,))

    def add_claim(self, dataset_id: str, claim: Claim, event: Optional[TimelineEvent] = None) -> Claim:
        """Store a new claim, optionally with its timeline event.

        Closes the claim's filing. If the indexer already backfilled a claim
        for the same transaction, that row is kept and returned.
        """
        with self._transaction() as conn:
            row_id = self._require_row_id(conn, dataset_id)
            conn.execute("DELETE FROM claim_filings WHERE claim_id = ?", (claim.id,))
            if claim.tx_digest:
                row = conn.execute("SELECT * FROM claims WHERE tx_digest = ?", (claim.tx_digest,)).fetchone()
                if row is not None:
                    logger.info(f"Claim for {claim.tx_digest} was already indexed as {row['claim_id']}")
                    return self._claim_from_row(row)
            self._insert_claim(conn, row_id, claim)
            conn.execute(
                "UPDATE datasets SET disputes = disputes + 1, updated_at = ? WHERE id = ?",
                (_now(), row_id),
            )
            if event is not None:
                self._insert_timeline(conn, row_id, event)
        return claim

    def resolve_claim(self, dataset_id: str, claim_id: str) -> Claim:
        with self._transaction() as conn:
            row_id = self._require_row_id(conn, dataset_id)
            cursor = conn.execute(
                "UPDATE claims SET resolved = 1 WHERE claim_id = ? AND dataset_id = ?",
                (claim_id, row_id),
            )
            if cursor.rowcount == 0:
                raise ClaimNotFoundError(f"Claim {claim_id} not found on dataset {dataset_id}")
            row = conn.execute("SELECT * FROM claims WHERE claim_id = ?", (claim_id,)).fetchone()
            return self._claim_from_row(row)

    # ------------------------------------------------------------------
    # Trust scores
    # ------------------------------------------------------------------

    def save_trust_score(
        self, score: TrustScore, tx_digest: Optional[str] = None, source: str = "registration"
    ) -> bool:
        """Store ``score`` as the dataset's snapshot and append it to history.

        Both writes happen in one transaction. When ``tx_digest`` is already
        in the history the call is a no-op.

        Returns:
            True if the score was stored, False for a duplicate.
        """
        with self._transaction() as conn:
            row_id = self._require_row_id(conn, score.dataset_id)
            if tx_digest and self._exists(conn, "trust_score_history", "tx_digest", tx_digest):
                return False
            conn.execute(
                "UPDATE datasets SET trust_score = ?, trust_snapshot = ?, updated_at = ? WHERE id = ?",
                (score.score, json.dumps(score.to_dict(), sort_keys=True), _now(), row_id),
            )
            self._insert_history(conn, row_id, score.to_dict(), tx_digest, source, score.last_updated.isoformat())
            return True

    def get_trust_history(self, dataset_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Score history for a dataset, newest first."""
        with self._get_connection() as conn:
            row_id = self._require_row_id(conn, dataset_id)
            rows = conn.execute(
                """
                SELECT score, provenance_score, integrity_score, audit_score, usage_score,
                       verified_by_enclave, factors, tx_digest, source, recorded_at
                FROM trust_score_history
                WHERE dataset_id = ?
                ORDER BY recorded_at DESC, id DESC
                LIMIT ?
                """,
                (row_id, limit),
            ).fetchall()
        history = []
        for row in rows:
            entry = dict(row)
            entry["verified_by_enclave"] = bool(entry["verified_by_enclave"])
            entry["factors"] = json.loads(entry["factors"])
            history.append(entry)
        return history

    # ------------------------------------------------------------------
    # Ledger event appliers
    # ------------------------------------------------------------------

    def apply_certificate_minted(
        self,
        tx_digest: str,
        event_seq: Optional[int],
        dataset_id: str,
        certificate_id: str,
        owner: str,
        blob_id: str = "",
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Attach a minted certificate to its dataset.

        Returns:
            True if the mint was applied, False if it was already known.
        """
        with self._transaction() as conn:
            if self._seen(conn, tx_digest, event_seq):
                return False
            row_id = self._ensure_dataset(conn, dataset_id, owner, blob_id)
            current = conn.execute("SELECT certificate_id FROM datasets WHERE id = ?", (row_id,)).fetchone()
            if current["certificate_id"] == certificate_id:
                self._mark(conn, tx_digest, event_seq, "CertificateMinted", OUTCOME_DUPLICATE)
                return False
            conn.execute(
                """
                UPDATE datasets
                SET certificate_id = ?, owner = CASE WHEN owner = '' THEN ? ELSE owner END, updated_at = ?
                WHERE id = ?
                """,
                (certificate_id, owner, _now(), row_id),
            )
            self._insert_timeline(
                conn,
                row_id,
                TimelineEvent(
                    id=f"evt-{uuid.uuid4().hex}",
                    type=TimelineEventType.CERTIFICATE_MINTED,
                    description="Dataset certificate minted on ledger",
                    timestamp=timestamp or utcnow(),
                    metadata={"certificate_id": certificate_id, "tx_digest": tx_digest},
                ),
            )
            self._mark(conn, tx_digest, event_seq, "CertificateMinted", OUTCOME_APPLIED)
            return True

    def apply_access_granted(
        self,
        tx_digest: str,
        event_seq: Optional[int],
        dataset_id: str,
        requester: str,
        purpose: str,
        stake_amount: int,
        blob_id: str = "",
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Record one access grant and bump the dataset's counters.

        Deduplicated by ``tx_digest``: a grant whose transaction already has
        an access record changes nothing.

        Returns:
            True if a new access record was written.
        """
        with self._transaction() as conn:
            if self._seen(conn, tx_digest, event_seq):
                return False
            if self._exists(conn, "access_records", "tx_digest", tx_digest):
                self._mark(conn, tx_digest, event_seq, "AccessGranted", OUTCOME_DUPLICATE)
                return False
            when = timestamp or utcnow()
            row_id = self._ensure_dataset(conn, dataset_id, "", blob_id)
            conn.execute(
                """
                INSERT INTO access_records (dataset_id, requester, purpose, stake_amount, tx_digest, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (row_id, requester, purpose, stake_amount, tx_digest, when.isoformat()),
            )
            conn.execute(
                """
                UPDATE datasets
                SET downloads = downloads + 1, revenue = revenue + ?, updated_at = ?
                WHERE id = ?
                """,
                (stake_amount, _now(), row_id),
            )
            self._insert_timeline(
                conn,
                row_id,
                TimelineEvent(
                    id=f"evt-{uuid.uuid4().hex}",
                    type=TimelineEventType.ACCESS_REQUEST,
                    description=f"Access granted to {requester}",
                    timestamp=when,
                    metadata={"requester": requester, "purpose": purpose, "tx_digest": tx_digest},
                ),
            )
            self._mark(conn, tx_digest, event_seq, "AccessGranted", OUTCOME_APPLIED)
            return True

    def apply_claim_raised(
        self,
        tx_digest: str,
        event_seq: Optional[int],
        dataset_id: str,
        onchain_claim_id: str,
        severity: Severity,
        claimant: str,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Reconcile an on-chain claim with the projection.

        A claim filed off-chain by the same transaction is linked to its
        on-chain id. Otherwise the claim is backfilled from the event.

        Returns:
            True if a new claim row was written.

        Raises:
            TransientError: A claim of the same severity on the dataset is
                still being filed, so the event may belong to it.
        """
        with self._transaction() as conn:
            if self._seen(conn, tx_digest, event_seq):
                return False
            existing = conn.execute("SELECT id FROM claims WHERE tx_digest = ?", (tx_digest,)).fetchone()
            if existing is not None:
                conn.execute(
                    "UPDATE claims SET onchain_claim_id = COALESCE(onchain_claim_id, ?) WHERE id = ?",
                    (onchain_claim_id, existing["id"]),
                )
                self._mark(conn, tx_digest, event_seq, "ClaimRaised", OUTCOME_DUPLICATE)
                return False
            if self._claim_filing_open(conn, dataset_id, severity):
                raise TransientError(f"A {severity.value} claim on {dataset_id} is still being filed")

            when = timestamp or utcnow()
            row_id = self._ensure_dataset(conn, dataset_id, "", "")
            claim = Claim(
                id=f"claim-{uuid.uuid4().hex}",
                role=ClaimRole.AUDITOR,
                severity=severity,
                statement=f"Claim {onchain_claim_id} filed on ledger",
                claimant=claimant,
                created_at=when,
                tx_digest=tx_digest,
                onchain_claim_id=onchain_claim_id,
            )
            self._insert_claim(conn, row_id, claim)
            conn.execute(
                "UPDATE datasets SET disputes = disputes + 1, updated_at = ? WHERE id = ?",
                (_now(), row_id),
            )
            self._insert_timeline(
                conn,
                row_id,
                TimelineEvent(
                    id=f"evt-{uuid.uuid4().hex}",
                    type=TimelineEventType.CLAIM_ADDED,
                    description=f"{severity.value} claim indexed from ledger",
                    timestamp=when,
                    metadata={"claim_id": claim.id, "tx_digest": tx_digest},
                ),
            )
            self._mark(conn, tx_digest, event_seq, "ClaimRaised", OUTCOME_APPLIED)
            return True

    def apply_trust_score_updated(
        self,
        tx_digest: str,
        event_seq: Optional[int],
        dataset_id: str,
        sub_scores: Tuple[int, int, int, int],
        verified_by_enclave: bool = False,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Append a ledger-published score to the dataset's history.

        Scores the registration flow already saved under the same digest are
        not duplicated.

        Returns:
            True if a history row was written.
        """
        provenance, integrity, audit, usage = sub_scores
        with self._transaction() as conn:
            if self._seen(conn, tx_digest, event_seq):
                return False
            if self._exists(conn, "trust_score_history", "tx_digest", tx_digest):
                self._mark(conn, tx_digest, event_seq, "TrustScoreUpdated", OUTCOME_DUPLICATE)
                return False
            row_id = self._ensure_dataset(conn, dataset_id, "", "")
            entry = {
                "score": provenance + integrity + audit + usage,
                "provenance_score": provenance,
                "integrity_score": integrity,
                "audit_score": audit,
                "usage_score": usage,
                "verified_by_enclave": verified_by_enclave,
                "factors": {},
            }
            self._insert_history(conn, row_id, entry, tx_digest, "ledger", (timestamp or utcnow()).isoformat())
            self._mark(conn, tx_digest, event_seq, "TrustScoreUpdated", OUTCOME_APPLIED)
            return True

    def record_rejected_event(self, tx_digest: str, event_seq: int, event_type: str, reason: str) -> None:
        """Remember a malformed event so it is not retried forever."""
        with self._transaction() as conn:
            if not self._seen(conn, tx_digest, event_seq):
                self._mark(conn, tx_digest, event_seq, event_type, OUTCOME_REJECTED, reason)

    def is_event_indexed(self, tx_digest: str, event_seq: int) -> bool:
        with self._get_connection() as conn:
            return self._seen(conn, tx_digest, event_seq)

    def get_cursor(self, event_type: str) -> Optional[Tuple[str, int]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT tx_digest, event_seq FROM indexer_cursors WHERE event_type = ?", (event_type,)
            ).fetchone()
            return (row["tx_digest"], row["event_seq"]) if row else None

    def set_cursor(self, event_type: str, tx_digest: str, event_seq: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO indexer_cursors (event_type, tx_digest, event_seq, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(event_type) DO UPDATE SET
                    tx_digest = excluded.tx_digest,
                    event_seq = excluded.event_seq,
                    updated_at = excluded.updated_at
                """,
                (event_type, tx_digest, event_seq, _now()),
            )

    def count_access_records(self, dataset_id: Optional[str] = None) -> int:
        with self._get_connection() as conn:
            if dataset_id is None:
                row = conn.execute("SELECT COUNT(*) FROM access_records").fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT COUNT(*) FROM access_records a
                    JOIN datasets d ON d.id = a.dataset_id
                    WHERE d.dataset_id = ?
                    """,
                    (dataset_id,),
                ).fetchone()
            return int(row[0])

    def get_access_records(self, dataset_id: str) -> List[AccessRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT d.dataset_id, a.requester, a.purpose, a.stake_amount, a.tx_digest, a.timestamp
                FROM access_records a JOIN datasets d ON d.id = a.dataset_id
                WHERE d.dataset_id = ?
                ORDER BY a.id
                """,
                (dataset_id,),
            ).fetchall()
        return [
            AccessRecord(
                dataset_id=row["dataset_id"],
                requester=row["requester"],
                purpose=row["purpose"],
                stake_amount=row["stake_amount"],
                tx_digest=row["tx_digest"],
                timestamp=parse_timestamp(row["timestamp"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _exists(conn: sqlite3.Connection, table: str, column: str, value: Any) -> bool:
        return conn.execute(f"SELECT 1 FROM {table} WHERE {column} = ?", (value,)).fetchone() is not None

    @staticmethod
    def _row_id(conn: sqlite3.Connection, dataset_id: str) -> Optional[int]:
        row = conn.execute("SELECT id FROM datasets WHERE dataset_id = ?", (dataset_id,)).fetchone()
        return row["id"] if row else None

    def _require_row_id(self, conn: sqlite3.Connection, dataset_id: str) -> int:
        row_id = self._row_id(conn, dataset_id)
        if row_id is None:
            raise DatasetNotFoundError(f"Dataset {dataset_id} not found")
        return row_id

    def _ensure_dataset(self, conn: sqlite3.Connection, dataset_id: str, owner: str, blob_id: str) -> int:
        """Return the row id of ``dataset_id``, creating a placeholder if absent."""
        row_id = self._row_id(conn, dataset_id)
        if row_id is not None:
            return row_id
        now = _now()
        cursor = conn.execute(
            """
            INSERT INTO datasets (dataset_id, owner, title, description, blob_id, placeholder, created_at, updated_at)
            VALUES (?, ?, ?, 'Indexed from ledger', ?, 1, ?, ?)
            """,
            (dataset_id, owner, dataset_id, blob_id, now, now),
        )
        logger.info(f"Created placeholder dataset {dataset_id} from ledger event")
        return int(cursor.lastrowid)

    @staticmethod
    def _claim_filing_open(conn: sqlite3.Connection, dataset_id: str, severity: Severity) -> bool:
        cutoff = utcnow().timestamp() - CLAIM_FILING_TIMEOUT
        row = conn.execute(
            "SELECT 1 FROM claim_filings WHERE dataset_id = ? AND severity = ? AND started_at > ?",
            (dataset_id, severity.code, cutoff),
        ).fetchone()
        return row is not None

    @staticmethod
    def _seen(conn: sqlite3.Connection, tx_digest: str, event_seq: Optional[int]) -> bool:
        if event_seq is None:
            return False
        row = conn.execute(
            "SELECT 1 FROM indexed_events WHERE tx_digest = ? AND event_seq = ?", (tx_digest, event_seq)
        ).fetchone()
        return row is not None

    @staticmethod
    def _mark(
        conn: sqlite3.Connection,
        tx_digest: str,
        event_seq: Optional[int],
        event_type: str,
        outcome: str,
        detail: Optional[str] = None,
    ) -> None:
        # Grants applied straight from a receipt have no event sequence yet;
        # the indexer marks them when it sees the event.
        if event_seq is None:
            return
        conn.execute(
            """
            INSERT INTO indexed_events (tx_digest, event_seq, event_type, outcome, detail, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (tx_digest, event_seq, event_type, outcome, detail, _now()),
        )

    @staticmethod
    def _insert_timeline(conn: sqlite3.Connection, row_id: int, event: TimelineEvent) -> None:
        position = conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM timeline_events WHERE dataset_id = ?", (row_id,)
        ).fetchone()[0]
        conn.execute(
            """
            INSERT INTO timeline_events (event_id, dataset_id, position, type, description, timestamp, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                row_id,
                position,
                event.type.value,
                event.description,
                event.timestamp.isoformat(),
                json.dumps(event.metadata, default=str, sort_keys=True),
            ),
        )

    @staticmethod
    def _insert_claim(conn: sqlite3.Connection, row_id: int, claim: Claim) -> None:
        conn.execute(
            """
            INSERT INTO claims (
                claim_id, dataset_id, role, severity, statement, evidence_uri,
                claimant, created_at, resolved, tx_digest, onchain_claim_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                claim.id,
                row_id,
                claim.role.value,
                claim.severity.code,
                claim.statement,
                claim.evidence_uri,
                claim.claimant,
                claim.created_at.isoformat(),
                int(claim.resolved),
                claim.tx_digest,
                claim.onchain_claim_id,
            ),
        )

    @staticmethod
    def _insert_history(
        conn: sqlite3.Connection,
        row_id: int,
        entry: Dict[str, Any],
        tx_digest: Optional[str],
        source: str,
        recorded_at: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO trust_score_history (
                dataset_id, score, provenance_score, integrity_score, audit_score,
                usage_score, verified_by_enclave, factors, tx_digest, source, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row_id,
                entry["score"],
                entry["provenance_score"],
                entry["integrity_score"],
                entry["audit_score"],
                entry["usage_score"],
                int(bool(entry.get("verified_by_enclave"))),
                json.dumps(entry.get("factors", {}), sort_keys=True),
                tx_digest,
                source,
                recorded_at,
            ),
        )

    @staticmethod
    def _claim_from_row(row: sqlite3.Row) -> Claim:
        return Claim(
            id=row["claim_id"],
            role=ClaimRole(row["role"]),
            severity=Severity.from_code(row["severity"]),
            statement=row["statement"],
            evidence_uri=row["evidence_uri"],
            claimant=row["claimant"],
            created_at=parse_timestamp(row["created_at"]),
            resolved=bool(row["resolved"]),
            tx_digest=row["tx_digest"],
            onchain_claim_id=row["onchain_claim_id"],
        )

    def _hydrate(self, conn: sqlite3.Connection, row: sqlite3.Row) -> DatasetRecord:
        timeline_rows = conn.execute(
            "SELECT * FROM timeline_events WHERE dataset_id = ? ORDER BY position", (row["id"],)
        ).fetchall()
        claim_rows = conn.execute("SELECT * FROM claims WHERE dataset_id = ? ORDER BY id", (row["id"],)).fetchall()

        snapshot = json.loads(row["trust_snapshot"]) if row["trust_snapshot"] else None
        return DatasetRecord(
            id=row["dataset_id"],
            owner=row["owner"],
            title=row["title"],
            description=row["description"],
            categories=json.loads(row["categories"]),
            tags=json.loads(row["tags"]),
            license=row["license"],
            blob=BlobReference(
                blob_id=row["blob_id"],
                integrity_root=row["integrity_root"],
                proof=row["blob_proof"],
                size_bytes=row["size_bytes"],
                expires_at=parse_timestamp(row["expires_at"]) if row["expires_at"] else None,
            ),
            hashes=ContentHashes(sha256=row["sha256"], secondary=row["secondary_hash"]),
            status=DatasetStatus(row["status"]),
            access_policy=AccessPolicy(
                type=AccessType(row["access_type"]),
                min_stake=row["min_stake"],
                allowed_tokens=json.loads(row["allowed_tokens"]),
            ),
            certificate_id=row["certificate_id"],
            timeline=[
                TimelineEvent(
                    id=t["event_id"],
                    type=TimelineEventType(t["type"]),
                    description=t["description"],
                    timestamp=parse_timestamp(t["timestamp"]),
                    metadata=json.loads(t["metadata"]),
                )
                for t in timeline_rows
            ],
            claims=[self._claim_from_row(c) for c in claim_rows],
            metrics=DatasetMetrics(
                downloads=row["downloads"], revenue=row["revenue"], disputes=row["disputes"]
            ),
            trust=TrustScore.from_dict(snapshot) if snapshot else None,
            placeholder=bool(row["placeholder"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )
