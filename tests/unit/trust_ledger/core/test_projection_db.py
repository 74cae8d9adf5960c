"""Tests for the SQLite projection database."""

import sqlite3
from dataclasses import replace

import pytest

from trust_ledger.core.db import ProjectionDB
from trust_ledger.core.exceptions import (
    ClaimNotFoundError,
    DatasetNotFoundError,
    InvalidTransitionError,
    TransientError,
)
from trust_ledger.core.models import (
    Claim,
    ClaimRole,
    DatasetStatus,
    Severity,
    TimelineEvent,
    TimelineEventType,
)
from trust_ledger.core.scoring import compute_trust_score


@pytest.fixture
def db():
    database = ProjectionDB()
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path):
    return ProjectionDB(tmp_path / "projection.db")


def _status_event(index: int) -> TimelineEvent:
    return TimelineEvent(id=f"status-{index}", type=TimelineEventType.STATUS_CHANGE, description="status")


def test_upsert_and_get_round_trip(db, dataset):
    stored = db.upsert_dataset(dataset)
    assert stored.id == dataset.id
    assert stored.hashes == dataset.hashes
    assert stored.blob.blob_id == "blob-1"
    assert stored.categories == ["nlp"]
    assert stored.status == DatasetStatus.PENDING
    assert [e.id for e in stored.timeline] == ["evt-0"]
    assert stored.placeholder is False
    assert db.get_dataset("missing") is None


def test_upsert_appends_only_new_timeline_events(db, make_dataset):
    db.upsert_dataset(make_dataset(events=2))
    stored = db.upsert_dataset(make_dataset(events=3))
    assert [e.id for e in stored.timeline] == ["evt-0", "evt-1", "evt-2"]


def test_append_timeline_keeps_order(db, dataset):
    db.upsert_dataset(dataset)
    db.append_timeline(dataset.id, _status_event(1))
    db.append_timeline(dataset.id, _status_event(2))

    assert [e.id for e in db.get_dataset(dataset.id).timeline] == ["evt-0", "status-1", "status-2"]
    with pytest.raises(DatasetNotFoundError):
        db.append_timeline("missing", _status_event(3))


def test_upsert_keeps_status_and_counters(db, dataset):
    db.upsert_dataset(dataset)
    db.set_status(dataset.id, DatasetStatus.CERTIFIED, [DatasetStatus.PENDING], _status_event(1))
    db.apply_access_granted("0xtx1", None, dataset.id, "0xbuyer", "research", 5)

    stored = db.upsert_dataset(replace(dataset, title="Renamed", status=DatasetStatus.DRAFT))
    assert stored.title == "Renamed"
    assert stored.status == DatasetStatus.CERTIFIED
    assert stored.metrics.downloads == 1


def test_list_datasets_filters(db, make_dataset):
    db.upsert_dataset(make_dataset("a"))
    db.upsert_dataset(make_dataset("b"))
    db.set_status("b", DatasetStatus.CERTIFIED, [DatasetStatus.PENDING], _status_event(1))

    assert {d.id for d in db.list_datasets()} == {"a", "b"}
    assert [d.id for d in db.list_datasets(status=DatasetStatus.CERTIFIED)] == ["b"]
    assert db.list_datasets(owner="nobody") == []
    assert len(db.list_datasets(limit=1)) == 1


def test_set_status_enforces_allowed_transitions(db, dataset):
    db.upsert_dataset(dataset)
    previous = db.set_status(dataset.id, DatasetStatus.CERTIFIED, [DatasetStatus.PENDING], _status_event(1))
    assert previous == DatasetStatus.PENDING

    with pytest.raises(InvalidTransitionError):
        db.set_status(dataset.id, DatasetStatus.CERTIFIED, [DatasetStatus.DISPUTED], _status_event(2))
    with pytest.raises(DatasetNotFoundError):
        db.set_status("missing", DatasetStatus.CERTIFIED, [DatasetStatus.PENDING], _status_event(3))

    stored = db.get_dataset(dataset.id)
    assert stored.status == DatasetStatus.CERTIFIED
    assert [e.id for e in stored.timeline] == ["evt-0", "status-1"]


def test_claims_add_resolve(db, dataset):
    db.upsert_dataset(dataset)
    claim = Claim(
        id="c1", role=ClaimRole.BUYER, severity=Severity.CRITICAL, statement="labels leaked", tx_digest="0xclaimtx"
    )
    db.add_claim(dataset.id, claim)

    resolved = db.resolve_claim(dataset.id, "c1")
    assert resolved.resolved is True
    assert resolved.tx_digest == "0xclaimtx"
    assert resolved.severity == Severity.CRITICAL

    stored = db.get_dataset(dataset.id)
    assert stored.metrics.disputes == 1
    assert stored.claims[0].resolved is True

    with pytest.raises(ClaimNotFoundError):
        db.resolve_claim(dataset.id, "nope")
    with pytest.raises(DatasetNotFoundError):
        db.begin_claim_filing("missing", claim)


def test_severity_stored_as_integer_code(file_db, dataset):
    file_db.upsert_dataset(dataset)
    for code, severity in enumerate((Severity.INFO, Severity.WARNING, Severity.CRITICAL)):
        file_db.add_claim(dataset.id, Claim(id=f"c{code}", role=ClaimRole.AUDITOR, severity=severity, statement="x"))

    conn = sqlite3.connect(file_db.db_path)
    try:
        codes = [row[0] for row in conn.execute("SELECT severity FROM claims ORDER BY id")]
    finally:
        conn.close()
    assert codes == [0, 1, 2]


@pytest.mark.parametrize(
    "statement",
    [
        "UPDATE timeline_events SET description = 'rewritten'",
        "DELETE FROM timeline_events",
        "UPDATE claims SET statement = 'softened'",
        "UPDATE claims SET severity = 0",
        "DELETE FROM claims",
        "UPDATE access_records SET stake_amount = 0",
        "DELETE FROM access_records",
        "UPDATE trust_score_history SET score = 100",
        "DELETE FROM trust_score_history",
        "DELETE FROM datasets",
    ],
)
def test_database_rejects_rewriting_history(file_db, dataset, statement):
    file_db.upsert_dataset(dataset)
    file_db.add_claim(dataset.id, Claim(id="c1", role=ClaimRole.AUDITOR, severity=Severity.WARNING, statement="x"))
    file_db.apply_access_granted("0xtx1", 0, dataset.id, "0xbuyer", "research", 5)
    file_db.save_trust_score(compute_trust_score(dataset))

    conn = sqlite3.connect(file_db.db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(statement)
    finally:
        conn.close()


def test_claim_resolution_allowed_by_trigger(file_db, dataset):
    file_db.upsert_dataset(dataset)
    file_db.add_claim(dataset.id, Claim(id="c1", role=ClaimRole.AUDITOR, severity=Severity.WARNING, statement="x"))
    conn = sqlite3.connect(file_db.db_path)
    try:
        conn.execute("UPDATE claims SET resolved = 1, onchain_claim_id = '7'")
        conn.commit()
    finally:
        conn.close()
    assert file_db.get_dataset(dataset.id).claims[0].onchain_claim_id == "7"


def test_history_rejects_inconsistent_total(file_db, dataset):
    file_db.upsert_dataset(dataset)
    conn = sqlite3.connect(file_db.db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO trust_score_history (
                    dataset_id, score, provenance_score, integrity_score, audit_score,
                    usage_score, source, recorded_at
                ) VALUES (1, 99, 10, 10, 10, 10, 'test', '2024-01-01')
                """
            )
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO trust_score_history (
                    dataset_id, score, provenance_score, integrity_score, audit_score,
                    usage_score, source, recorded_at
                ) VALUES (1, 30, 30, 0, 0, 0, 'test', '2024-01-01')
                """
            )
    finally:
        conn.close()


def test_save_trust_score_snapshot_and_history(db, dataset):
    db.upsert_dataset(dataset)
    first = compute_trust_score(dataset)
    assert db.save_trust_score(first, "0xscore1", source="registration")
    assert not db.save_trust_score(first, "0xscore1")
    second = compute_trust_score(dataset, verified_by_enclave=True)
    assert db.save_trust_score(second, "0xscore2", source="attestation")

    stored = db.get_dataset(dataset.id)
    assert stored.trust == second

    history = db.get_trust_history(dataset.id)
    assert len(history) == 2
    assert history[0]["tx_digest"] == "0xscore2"
    assert history[0]["verified_by_enclave"] is True
    assert history[0]["source"] == "attestation"
    assert history[1]["factors"]["provenance"]["timeline_events"] == 1
    assert len(db.get_trust_history(dataset.id, limit=1)) == 1

    with pytest.raises(DatasetNotFoundError):
        db.get_trust_history("missing")


def test_access_grant_is_idempotent_by_transaction(db, dataset):
    db.upsert_dataset(dataset)
    assert db.apply_access_granted("0xtx1", 0, dataset.id, "0xbuyer", "research", 7)
    assert not db.apply_access_granted("0xtx1", 0, dataset.id, "0xbuyer", "research", 7)

    stored = db.get_dataset(dataset.id)
    assert stored.metrics.downloads == 1
    assert stored.metrics.revenue == 7
    assert db.count_access_records(dataset.id) == 1
    assert [e.type for e in stored.timeline][-1] == TimelineEventType.ACCESS_REQUEST
    assert db.is_event_indexed("0xtx1", 0)


def test_access_grant_from_receipt_then_event(db, dataset):
    db.upsert_dataset(dataset)
    assert db.apply_access_granted("0xtx1", None, dataset.id, "0xbuyer", "research", 7)
    assert not db.is_event_indexed("0xtx1", 0)

    assert not db.apply_access_granted("0xtx1", 0, dataset.id, "0xbuyer", "research", 7)
    assert db.is_event_indexed("0xtx1", 0)
    assert db.count_access_records() == 1
    assert db.get_dataset(dataset.id).metrics.downloads == 1

    records = db.get_access_records(dataset.id)
    assert records[0].requester == "0xbuyer"
    assert records[0].stake_amount == 7


def test_access_grant_for_unknown_dataset_creates_placeholder(db):
    assert db.apply_access_granted("0xtx1", 0, "dataset-x", "0xbuyer", "research", 1, blob_id="blob-x")
    placeholder = db.get_dataset("dataset-x")
    assert placeholder.placeholder is True
    assert placeholder.description == "Indexed from ledger"
    assert placeholder.blob.blob_id == "blob-x"
    assert placeholder.metrics.downloads == 1
    assert placeholder.owner == ""

    db.apply_certificate_minted("0xmint", 0, "dataset-x", "0xcert", "0xowner")
    assert db.get_dataset("dataset-x").owner == "0xowner"
    db.apply_certificate_minted("0xmint2", 0, "dataset-x", "0xcert2", "0xsomeone")
    assert db.get_dataset("dataset-x").owner == "0xowner"


def test_claim_placeholder_has_no_owner(db):
    db.apply_claim_raised("0xclaim", 0, "dataset-y", "5", Severity.INFO, "0xauditor")
    assert db.get_dataset("dataset-y").owner == ""


def test_certificate_minted_is_idempotent(db, dataset):
    db.upsert_dataset(dataset)
    assert db.apply_certificate_minted("0xmint", None, dataset.id, "0xcert", "0xowner")
    assert not db.apply_certificate_minted("0xmint", 0, dataset.id, "0xcert", "0xowner")
    assert not db.apply_certificate_minted("0xmint", 0, dataset.id, "0xcert", "0xowner")

    stored = db.get_dataset(dataset.id)
    assert stored.certificate_id == "0xcert"
    assert [e.type for e in stored.timeline].count(TimelineEventType.CERTIFICATE_MINTED) == 1


def test_claim_raised_links_existing_claim(db, dataset):
    db.upsert_dataset(dataset)
    db.add_claim(
        dataset.id,
        Claim(id="c1", role=ClaimRole.BUYER, severity=Severity.WARNING, statement="x", tx_digest="0xclaimtx"),
    )

    assert not db.apply_claim_raised("0xclaimtx", 0, dataset.id, "42", Severity.WARNING, "0xbuyer")
    stored = db.get_dataset(dataset.id)
    assert len(stored.claims) == 1
    assert stored.claims[0].onchain_claim_id == "42"
    assert stored.metrics.disputes == 1


class TestClaimFiling:
    def _claim(self, severity=Severity.CRITICAL, tx_digest=None):
        return Claim(id="c1", role=ClaimRole.AUDITOR, severity=severity, statement="leak", tx_digest=tx_digest)

    def test_event_deferred_while_filing_is_open(self, db, dataset):
        db.upsert_dataset(dataset)
        db.begin_claim_filing(dataset.id, self._claim())

        with pytest.raises(TransientError):
            db.apply_claim_raised("0xclaimtx", 0, dataset.id, "1", Severity.CRITICAL, "0xauditor")
        assert not db.is_event_indexed("0xclaimtx", 0)
        assert db.get_dataset(dataset.id).claims == []

        db.add_claim(dataset.id, self._claim(tx_digest="0xclaimtx"))
        assert not db.apply_claim_raised("0xclaimtx", 0, dataset.id, "1", Severity.CRITICAL, "0xauditor")

        stored = db.get_dataset(dataset.id)
        assert len(stored.claims) == 1
        assert stored.claims[0].statement == "leak"
        assert stored.claims[0].onchain_claim_id == "1"
        assert stored.metrics.disputes == 1

    def test_other_severity_is_not_deferred(self, db, dataset):
        db.upsert_dataset(dataset)
        db.begin_claim_filing(dataset.id, self._claim(Severity.CRITICAL))
        assert db.apply_claim_raised("0xinfo", 0, dataset.id, "2", Severity.INFO, "0xother")

    def test_abandoned_filing_releases_events(self, db, dataset):
        db.upsert_dataset(dataset)
        db.begin_claim_filing(dataset.id, self._claim())
        db.abandon_claim_filing("c1")
        assert db.apply_claim_raised("0xclaimtx", 0, dataset.id, "1", Severity.CRITICAL, "0xauditor")

    def test_stale_filing_converges_on_indexed_claim(self, db, dataset, monkeypatch):
        monkeypatch.setattr("trust_ledger.core.db.CLAIM_FILING_TIMEOUT", -1.0)
        db.upsert_dataset(dataset)
        db.begin_claim_filing(dataset.id, self._claim())
        assert db.apply_claim_raised("0xclaimtx", 0, dataset.id, "1", Severity.CRITICAL, "0xauditor")

        stored_claim = db.add_claim(dataset.id, self._claim(tx_digest="0xclaimtx"))

        stored = db.get_dataset(dataset.id)
        assert len(stored.claims) == 1
        assert stored_claim.id == stored.claims[0].id
        assert stored.metrics.disputes == 1


def test_claim_raised_backfills_missing_claim(db, dataset):
    db.upsert_dataset(dataset)
    assert db.apply_claim_raised("0xother", 0, dataset.id, "43", Severity.CRITICAL, "0xauditor")
    assert not db.apply_claim_raised("0xother", 0, dataset.id, "43", Severity.CRITICAL, "0xauditor")

    stored = db.get_dataset(dataset.id)
    assert len(stored.claims) == 1
    assert stored.claims[0].severity == Severity.CRITICAL
    assert stored.claims[0].onchain_claim_id == "43"
    assert stored.claims[0].role == ClaimRole.AUDITOR
    assert stored.metrics.disputes == 1


def test_trust_score_updated_dedups_against_saved_score(db, dataset):
    db.upsert_dataset(dataset)
    score = compute_trust_score(dataset)
    db.save_trust_score(score, "0xscore")

    assert not db.apply_trust_score_updated("0xscore", 0, dataset.id, score.sub_scores())
    assert db.apply_trust_score_updated("0xremote", 0, dataset.id, (10, 10, 10, 10), verified_by_enclave=True)

    history = db.get_trust_history(dataset.id)
    assert len(history) == 2
    assert history[0]["score"] == 40
    assert history[0]["source"] == "ledger"


def test_rejected_events_are_remembered(db):
    db.record_rejected_event("0xbad", 3, "AccessGranted", "missing requester")
    assert db.is_event_indexed("0xbad", 3)
    db.record_rejected_event("0xbad", 3, "AccessGranted", "missing requester")


def test_cursors(db):
    assert db.get_cursor("AccessGranted") is None
    db.set_cursor("AccessGranted", "0xa", 1)
    db.set_cursor("AccessGranted", "0xb", 0)
    assert db.get_cursor("AccessGranted") == ("0xb", 0)


def test_file_database_survives_reopen(tmp_path, dataset):
    path = tmp_path / "nested" / "projection.db"
    ProjectionDB(path).upsert_dataset(dataset)
    assert ProjectionDB(path).get_dataset(dataset.id) is not None


def test_in_memory_databases_are_isolated(dataset):
    first, second = ProjectionDB(), ProjectionDB()
    first.upsert_dataset(dataset)
    assert second.get_dataset(dataset.id) is None
    first.close()
    second.close()
