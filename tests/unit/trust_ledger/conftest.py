"""Shared fixtures for trust ledger unit tests."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import pytest

from trust_ledger.core.crypto import digest_secondary
from trust_ledger.core.models import (
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
)

FIXED_NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
CONTENT = b"label,text\n1,hello\n0,world\n"


def make_event(index: int, event_type: TimelineEventType = TimelineEventType.UPLOAD) -> TimelineEvent:
    return TimelineEvent(
        id=f"evt-{index}",
        type=event_type,
        description=f"event {index}",
        timestamp=FIXED_NOW,
    )


def make_claim(index: int, severity: Severity) -> Claim:
    return Claim(
        id=f"claim-{index}",
        role=ClaimRole.AUDITOR,
        severity=severity,
        statement=f"finding {index}",
        created_at=FIXED_NOW,
    )


def _make_dataset(
    dataset_id: str = "dataset-1",
    events: int = 1,
    downloads: int = 0,
    claims: tuple = (),
    content: bytes = CONTENT,
    blob_id: str = "blob-1",
    status: DatasetStatus = DatasetStatus.PENDING,
) -> DatasetRecord:
    sha256 = hashlib.sha256(content).hexdigest()
    return DatasetRecord(
        id=dataset_id,
        owner="0xowner",
        title="Sentiment sample",
        description="Tiny labelled sample",
        categories=["nlp"],
        tags=["sentiment"],
        license="CC-BY-4.0",
        blob=BlobReference(blob_id=blob_id, integrity_root=sha256[:32], size_bytes=len(content)),
        hashes=ContentHashes(sha256=sha256, secondary=digest_secondary(content)),
        status=status,
        timeline=[make_event(i) for i in range(events)],
        claims=[make_claim(i, severity) for i, severity in enumerate(claims)],
        metrics=DatasetMetrics(downloads=downloads),
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
    )


@pytest.fixture
def make_dataset():
    """Factory for evidence bundles with a known blob content."""
    return _make_dataset


@pytest.fixture
def dataset() -> DatasetRecord:
    return _make_dataset()
