"""Tests for the ledger publisher and the off-chain access gate."""

import json
from dataclasses import replace

import pytest

from trust_ledger.core.audit import AuditLogger
from trust_ledger.core.config import LedgerObjects
from trust_ledger.core.exceptions import (
    InsufficientStakeError,
    LedgerTransportError,
    TokenGateError,
    TransactionRejectedError,
)
from trust_ledger.core.models import AccessPolicy, AccessType, Severity, TransactionReceipt
from trust_ledger.core.scoring import compute_trust_score
from trust_ledger.services.ledger import LedgerClient, LedgerPublisher, LocalLedger
from trust_ledger.services.ledger.client import EventPage
from trust_ledger.services.ledger.publisher import check_access_policy

REAL_OBJECTS = LedgerObjects(
    package_id="0x" + "01" * 32,
    claim_registry="0x" + "02" * 32,
    access_registry="0x" + "03" * 32,
    access_recorder_cap="0x" + "04" * 32,
    trust_oracle="0x" + "05" * 32,
    oracle_cap="0x" + "06" * 32,
    enclave_verifier="0x" + "07" * 32,
)


class RecordingClient(LedgerClient):
    mode = "recording"

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def execute(self, call):
        self.calls.append(call)
        if self.error is not None:
            raise self.error
        return TransactionReceipt(action=call.function, digest=f"0xdigest{len(self.calls)}")

    async def query_events(self, event_type, cursor=None, limit=50):
        return EventPage()


def certified(dataset, min_stake=0, access_type=AccessType.STAKE_GATED, tokens=()):
    return replace(
        dataset,
        certificate_id="0x" + "0c" * 32,
        access_policy=AccessPolicy(type=access_type, min_stake=min_stake, allowed_tokens=list(tokens)),
    )


def test_stake_below_minimum_refused_for_every_policy_type():
    for access_type in AccessType:
        with pytest.raises(InsufficientStakeError) as excinfo:
            check_access_policy(AccessPolicy(type=access_type, min_stake=10), 9)
        assert excinfo.value.required == 10
        assert excinfo.value.offered == 9


def test_negative_stake_refused():
    with pytest.raises(InsufficientStakeError):
        check_access_policy(AccessPolicy(), -1)


def test_token_gate():
    policy = AccessPolicy(type=AccessType.TOKEN_GATED, allowed_tokens=["0xpass"])
    with pytest.raises(TokenGateError):
        check_access_policy(policy, 0, ["0xother"])
    check_access_policy(policy, 0, ["0xother", "0xpass"])


async def test_refused_access_never_reaches_ledger(dataset):
    client = RecordingClient()
    publisher = LedgerPublisher(client, REAL_OBJECTS)

    with pytest.raises(InsufficientStakeError):
        await publisher.record_access(certified(dataset, min_stake=100), "0xbuyer", "training", 50)
    assert client.calls == []


async def test_token_gated_access_without_token_never_reaches_ledger(dataset):
    client = RecordingClient()
    publisher = LedgerPublisher(client, REAL_OBJECTS)
    gated = certified(dataset, access_type=AccessType.TOKEN_GATED, tokens=["0xpass"])

    with pytest.raises(TokenGateError):
        await publisher.record_access(gated, "0xbuyer", "training", 0, held_tokens=[])
    assert client.calls == []


async def test_access_call_carries_capability_and_objects(dataset):
    client = RecordingClient()
    publisher = LedgerPublisher(client, REAL_OBJECTS)

    receipt = await publisher.record_access(certified(dataset, min_stake=5), "0xbuyer", "training", 5)

    assert receipt.anchored
    call = client.calls[0]
    assert call.function == "record_access"
    assert call.target == f"{REAL_OBJECTS.package_id}::dataset_certificate::record_access"
    cap, registry, certificate = call.arguments[:3]
    assert cap.object_id == REAL_OBJECTS.access_recorder_cap
    assert registry.object_id == REAL_OBJECTS.access_registry
    assert certificate.object_id == "0x" + "0c" * 32
    assert call.arguments[3:] == ("0xbuyer", "training", 5)


async def test_placeholder_objects_produce_simulated_receipts(dataset):
    client = RecordingClient()
    publisher = LedgerPublisher(client, LedgerObjects())

    access = await publisher.record_access(certified(dataset), "0xbuyer", "training", 0)
    claim = await publisher.file_claim(dataset.id, Severity.WARNING, "duplicates")
    score = await publisher.update_trust_score(compute_trust_score(dataset))

    assert client.calls == []
    for receipt in (access, claim, score):
        assert receipt.simulated
        assert not receipt.anchored
        assert receipt.digest.startswith("0xmock_")
        assert receipt.error is None


async def test_access_without_certificate_is_simulated(dataset):
    client = RecordingClient()
    publisher = LedgerPublisher(client, REAL_OBJECTS)

    receipt = await publisher.record_access(dataset, "0xbuyer", "training", 0)

    assert receipt.simulated
    assert client.calls == []


async def test_transport_failure_falls_back_and_is_audited(dataset, tmp_path):
    audit_path = tmp_path / "audit.jsonl"
    client = RecordingClient(error=LedgerTransportError("connection reset"))
    publisher = LedgerPublisher(client, REAL_OBJECTS, audit=AuditLogger(audit_path))

    receipt = await publisher.mint_certificate(dataset)

    assert receipt.simulated
    assert receipt.error == "connection reset"
    assert receipt.digest.startswith("0xmock_fallback_mint_certificate_")
    assert receipt.object_id.startswith(f"0xmock_fallback_cert_{dataset.id}_")
    entries = [json.loads(line) for line in audit_path.read_text().splitlines()]
    assert entries[0]["event"] == "ledger_submission_failed"
    assert entries[0]["level"] == "error"


async def test_contract_abort_propagates(dataset):
    client = RecordingClient(error=TransactionRejectedError("stake", abort_code=1))
    publisher = LedgerPublisher(client, REAL_OBJECTS)

    with pytest.raises(TransactionRejectedError):
        await publisher.record_access(certified(dataset), "0xbuyer", "training", 0)


async def test_every_submission_is_a_new_transaction(dataset):
    client = RecordingClient()
    publisher = LedgerPublisher(client, REAL_OBJECTS)

    first = await publisher.file_claim(dataset.id, Severity.INFO, "note")
    second = await publisher.file_claim(dataset.id, Severity.INFO, "note")

    assert len(client.calls) == 2
    assert first.digest != second.digest


async def test_end_to_end_against_local_ledger(make_dataset):
    ledger = LocalLedger()
    publisher = LedgerPublisher(ledger, ledger.objects)
    dataset = make_dataset(events=3)

    minted = await publisher.mint_certificate(dataset)
    assert minted.anchored
    dataset = replace(dataset, certificate_id=minted.object_id)

    await publisher.record_access(dataset, "0xbuyer", "training", 0)
    await publisher.file_claim(dataset.id, Severity.CRITICAL, "label leakage")
    score = compute_trust_score(dataset)
    await publisher.update_trust_score(score)

    assert len(ledger.access_registry) == 1
    assert ledger.claim_registry[0].severity == 2
    assert ledger.trust_oracle[dataset.id].score == score.score
