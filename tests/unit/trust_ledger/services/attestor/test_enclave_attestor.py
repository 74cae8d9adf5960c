"""Enclave attestor tests against a fake enclave."""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from cryptography.hazmat.primitives.asymmetric import ed25519

from trust_ledger.core.crypto import EnclaveKeyRegistry, sign_intent
from trust_ledger.core.exceptions import (
    AttestationError,
    EnclaveUnavailableError,
    MeasurementMismatchError,
    SignatureVerificationError,
    UnregisteredKeyError,
)
from trust_ledger.services.attestor import EnclaveAttestor, merge_proof

GATEWAY = "https://gw.example"


def signed_response(private_key, blob_id, expected, computed=None, verified=True, **extra):
    envelope = {
        "intent": 0,
        "timestamp_ms": 1700000000000,
        "data": {
            "blob_id": blob_id,
            "expected_sha256": expected,
            "computed_sha256": computed or expected,
            "verified": verified,
            "blob_size": 27,
            "walrus_gateway": GATEWAY,
        },
    }
    return {"response": envelope, "signature": sign_intent(private_key, envelope), **extra}


def tamper_signature(body):
    signature = bytearray.fromhex(body["signature"])
    signature[10] ^= 0xFF
    return {**body, "signature": signature.hex()}


class FakeEnclave:
    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/process_data", self.process_data)
        return app

    async def process_data(self, request: web.Request) -> web.StreamResponse:
        body = await request.json()
        self.requests.append(body)
        return await self.respond(body["payload"])


@pytest.fixture
def enclave_key():
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def registry(enclave_key):
    registry = EnclaveKeyRegistry()
    registry.register(enclave_key.public_key())
    return registry


async def _attest(respond, registry, dataset, **kwargs):
    enclave = FakeEnclave(respond)
    server = TestServer(enclave.app())
    await server.start_server()
    try:
        attestor = EnclaveAttestor(str(server.make_url("/")), registry, gateway=GATEWAY, **kwargs)
        proof = await attestor.request_attestation(dataset.id, dataset.blob.blob_id, dataset.hashes.sha256)
        return proof, enclave
    finally:
        await server.close()


async def test_verified_proof(enclave_key, registry, dataset):
    async def respond(payload):
        return web.json_response(signed_response(enclave_key, payload["blob_id"], payload["expected_sha256"]))

    proof, enclave = await _attest(respond, registry, dataset)

    assert proof.verified
    assert proof.blob_id == dataset.blob.blob_id
    assert proof.computed_sha256 == dataset.hashes.sha256
    assert proof.gateway == GATEWAY
    assert proof.timestamp_ms == 1700000000000
    assert enclave.requests == [
        {
            "payload": {
                "blob_id": dataset.blob.blob_id,
                "expected_sha256": dataset.hashes.sha256,
                "walrus_gateway": GATEWAY,
            }
        }
    ]


async def test_tampered_signature_rejected(enclave_key, registry, dataset):
    async def respond(payload):
        body = signed_response(enclave_key, payload["blob_id"], payload["expected_sha256"])
        return web.json_response(tamper_signature(body))

    with pytest.raises(SignatureVerificationError):
        await _attest(respond, registry, dataset)


async def test_unregistered_key_rejected(registry, dataset):
    rogue = ed25519.Ed25519PrivateKey.generate()

    async def respond(payload):
        return web.json_response(signed_response(rogue, payload["blob_id"], payload["expected_sha256"]))

    with pytest.raises(SignatureVerificationError):
        await _attest(respond, registry, dataset)


async def test_named_unregistered_key_rejected(registry, dataset):
    rogue = ed25519.Ed25519PrivateKey.generate()
    rogue_hex = rogue.public_key().public_bytes_raw().hex()

    async def respond(payload):
        body = signed_response(rogue, payload["blob_id"], payload["expected_sha256"], public_key=rogue_hex)
        return web.json_response(body)

    with pytest.raises(UnregisteredKeyError):
        await _attest(respond, registry, dataset)


async def test_measurement_mismatch_rejected(enclave_key, registry, dataset):
    async def respond(payload):
        body = signed_response(enclave_key, payload["blob_id"], payload["expected_sha256"], pcrs={"0": "bb"})
        return web.json_response(body)

    with pytest.raises(MeasurementMismatchError):
        await _attest(respond, registry, dataset, expected_pcrs={"0": "aa"})


async def test_missing_measurements_rejected_when_expected(enclave_key, registry, dataset):
    async def respond(payload):
        return web.json_response(signed_response(enclave_key, payload["blob_id"], payload["expected_sha256"]))

    with pytest.raises(MeasurementMismatchError):
        await _attest(respond, registry, dataset, expected_pcrs={"0": "aa"})


async def test_matching_measurements_accepted(enclave_key, registry, dataset):
    async def respond(payload):
        body = signed_response(enclave_key, payload["blob_id"], payload["expected_sha256"], pcrs={"0": "0xAA"})
        return web.json_response(body)

    proof, _ = await _attest(respond, registry, dataset, expected_pcrs={"0": "aa"})
    assert proof.verified


async def test_proof_for_another_blob_rejected(enclave_key, registry, dataset):
    async def respond(payload):
        return web.json_response(signed_response(enclave_key, "other-blob", payload["expected_sha256"]))

    with pytest.raises(AttestationError):
        await _attest(respond, registry, dataset)


async def test_enclave_error_status_is_unavailable(registry, dataset):
    async def respond(payload):
        return web.Response(status=500, text="boom")

    with pytest.raises(EnclaveUnavailableError):
        await _attest(respond, registry, dataset)


async def test_enclave_timeout_is_unavailable(registry, dataset):
    release = asyncio.Event()

    async def respond(payload):
        await release.wait()
        return web.json_response({})

    enclave = FakeEnclave(respond)
    server = TestServer(enclave.app())
    await server.start_server()
    try:
        attestor = EnclaveAttestor(str(server.make_url("/")), registry, gateway=GATEWAY, timeout=0.2)
        with pytest.raises(EnclaveUnavailableError):
            await attestor.request_attestation(dataset.id, dataset.blob.blob_id, dataset.hashes.sha256)
    finally:
        release.set()
        await server.close()


async def test_unreachable_enclave(registry, dataset):
    attestor = EnclaveAttestor("http://127.0.0.1:9", registry, gateway=GATEWAY, timeout=2)
    with pytest.raises(EnclaveUnavailableError):
        await attestor.request_attestation(dataset.id, dataset.blob.blob_id, dataset.hashes.sha256)


def test_verify_response_rejects_malformed_bodies(registry):
    attestor = EnclaveAttestor("http://enclave", registry, gateway=GATEWAY)
    for body in (None, [], {"response": "x", "signature": "00"}, {"response": {}}):
        with pytest.raises(AttestationError):
            attestor.verify_response(body, "blob-1", "aa")


def test_verify_response_rejects_wrong_intent(enclave_key, registry):
    envelope = {"intent": 1, "timestamp_ms": 1, "data": {}}
    body = {"response": envelope, "signature": sign_intent(enclave_key, envelope)}
    attestor = EnclaveAttestor("http://enclave", registry, gateway=GATEWAY)
    with pytest.raises(AttestationError):
        attestor.verify_response(body, "blob-1", "aa")


def test_merge_verified_proof(enclave_key, registry, make_dataset):
    dataset = make_dataset(events=5, downloads=4)
    attestor = EnclaveAttestor("http://enclave", registry, gateway=GATEWAY)
    body = signed_response(enclave_key, dataset.blob.blob_id, dataset.hashes.sha256)
    proof = attestor.verify_response(body, dataset.blob.blob_id, dataset.hashes.sha256)

    score = merge_proof(dataset, proof)
    assert score.verified_by_enclave
    assert score.enclave_proof == proof
    assert score.integrity_score == 25
    assert score.score == 80


def test_merge_unverified_proof(enclave_key, registry, dataset):
    attestor = EnclaveAttestor("http://enclave", registry, gateway=GATEWAY)
    body = signed_response(enclave_key, dataset.blob.blob_id, dataset.hashes.sha256, computed="ff" * 32, verified=False)
    proof = attestor.verify_response(body, dataset.blob.blob_id, dataset.hashes.sha256)

    score = merge_proof(dataset, proof)
    assert not score.verified_by_enclave
    assert score.integrity_score == 0
