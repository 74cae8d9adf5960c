"""JSON-RPC ledger client tests against a fake node."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from trust_ledger.core.canonicalization import canonical_bytes
from trust_ledger.core.config import LedgerObjects, Settings
from trust_ledger.core.crypto import KeyPair
from trust_ledger.core.exceptions import ConfigurationError, LedgerTransportError, TransactionRejectedError
from trust_ledger.services.ledger import (
    EventCursor,
    LocalLedger,
    MoveCall,
    ObjectRef,
    RpcLedgerClient,
    SimulatedLedgerClient,
    create_ledger_client,
)
from trust_ledger.services.ledger.client import ACCESS_GRANTED, MOVE_ABORT_CODE

PACKAGE = "0x" + "01" * 32


class FakeNode:
    def __init__(self):
        self.requests = []
        self.replies = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append(body)
        status, reply = self.replies.pop(0)
        if status != 200:
            return web.Response(status=status, text="unavailable")
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], **reply})


@pytest.fixture
async def node():
    fake = FakeNode()
    server = TestServer(fake.app())
    await server.start_server()
    fake.url = str(server.make_url("/"))
    yield fake
    await server.close()


@pytest.fixture
def keypair():
    return KeyPair.generate()


@pytest.fixture
async def client(node, keypair):
    rpc = RpcLedgerClient(node.url, keypair, PACKAGE, timeout=5)
    yield rpc
    await rpc.close()


async def test_execute_signs_transaction_and_reads_certificate(node, client, keypair):
    node.replies.append(
        (
            200,
            {
                "result": {
                    "digest": "0xtx1",
                    "objectChanges": [
                        {"type": "mutated", "objectId": "0xregistry", "objectType": f"{PACKAGE}::x::Registry"},
                        {
                            "type": "created",
                            "objectId": "0xcert",
                            "objectType": f"{PACKAGE}::dataset_certificate::DatasetCertificate",
                        },
                    ],
                }
            },
        )
    )
    call = MoveCall(PACKAGE, "mint_certificate", ("dataset-1", "blob-1"))

    receipt = await client.execute(call)

    assert receipt.digest == "0xtx1"
    assert receipt.object_id == "0xcert"
    assert receipt.anchored

    request = node.requests[0]
    assert request["method"] == "ledger_executeTransaction"
    transaction, signature, _options = request["params"]
    assert transaction["sender"] == keypair.public_hex()
    assert transaction["call"]["target"] == f"{PACKAGE}::dataset_certificate::mint_certificate"
    assert keypair.verify(canonical_bytes(transaction), bytes.fromhex(signature))


async def test_object_arguments_are_passed_by_reference(node, client):
    node.replies.append((200, {"result": {"digest": "0xtx2"}}))

    await client.execute(MoveCall(PACKAGE, "file_claim", (ObjectRef("0xregistry"), "dataset-1", 1)))

    arguments = node.requests[0]["params"][0]["call"]["arguments"]
    assert arguments == [{"object": "0xregistry"}, {"pure": "dataset-1"}, {"pure": 1}]


async def test_move_abort_is_rejection(node, client):
    node.replies.append(
        (200, {"error": {"code": MOVE_ABORT_CODE, "message": "MoveAbort", "data": {"abort_code": 1}}})
    )

    with pytest.raises(TransactionRejectedError) as excinfo:
        await client.execute(MoveCall(PACKAGE, "record_access"))
    assert excinfo.value.abort_code == 1


async def test_other_rpc_errors_are_transport_errors(node, client):
    node.replies.append((200, {"error": {"code": -32603, "message": "internal"}}))
    with pytest.raises(LedgerTransportError):
        await client.execute(MoveCall(PACKAGE, "record_access"))


async def test_http_failure_is_transport_error(node, client):
    node.replies.append((503, {}))
    with pytest.raises(LedgerTransportError):
        await client.execute(MoveCall(PACKAGE, "record_access"))


async def test_result_without_digest_is_transport_error(node, client):
    node.replies.append((200, {"result": {}}))
    with pytest.raises(LedgerTransportError):
        await client.execute(MoveCall(PACKAGE, "record_access"))


async def test_query_events_parses_page(node, client):
    node.replies.append(
        (
            200,
            {
                "result": {
                    "data": [
                        {
                            "id": {"txDigest": "0xa", "eventSeq": "0"},
                            "parsedJson": {"dataset_id": "dataset-1"},
                            "timestampMs": "1709294400000",
                        },
                        {"id": {"txDigest": "0xb", "eventSeq": "3"}, "parsedJson": {"dataset_id": "dataset-2"}},
                    ],
                    "nextCursor": {"txDigest": "0xb", "eventSeq": "3"},
                    "hasNextPage": True,
                }
            },
        )
    )

    page = await client.query_events(ACCESS_GRANTED, EventCursor("0x9", 1), 2)

    assert [e.tx_digest for e in page.events] == ["0xa", "0xb"]
    assert page.events[0].timestamp_ms == 1709294400000
    assert page.events[1].timestamp_ms is None
    assert page.events[1].event_seq == 3
    assert page.next_cursor == EventCursor("0xb", 3)
    assert page.has_next_page

    query, cursor, limit, descending = node.requests[0]["params"]
    assert query == {"MoveEventType": f"{PACKAGE}::dataset_certificate::AccessGranted"}
    assert cursor == {"txDigest": "0x9", "eventSeq": "1"}
    assert limit == 2
    assert descending is False


async def test_empty_page_keeps_cursor(node, client):
    node.replies.append((200, {"result": {"data": [], "nextCursor": None, "hasNextPage": False}}))
    cursor = EventCursor("0x9", 1)

    page = await client.query_events(ACCESS_GRANTED, cursor)

    assert page.events == []
    assert page.next_cursor == cursor


async def test_malformed_event_in_page_is_transport_error(node, client):
    node.replies.append((200, {"result": {"data": [{"parsedJson": {}}]}}))
    with pytest.raises(LedgerTransportError):
        await client.query_events(ACCESS_GRANTED)


async def test_simulated_client_never_anchors():
    client = SimulatedLedgerClient()
    receipt = await client.execute(MoveCall(PACKAGE, "mint_certificate", ("dataset-1",)))

    assert receipt.simulated
    assert receipt.object_id.startswith("0xmock_cert_dataset-1_")
    assert (await client.query_events(ACCESS_GRANTED)).events == []


def test_client_chosen_from_settings():
    assert isinstance(create_ledger_client(Settings()), SimulatedLedgerClient)
    assert isinstance(create_ledger_client(Settings(ledger_mode="local")), LocalLedger)

    keypair = KeyPair.generate()
    settings = Settings(ledger_private_key=keypair.private_hex(), ledger_objects=LedgerObjects(package_id=PACKAGE))
    client = create_ledger_client(settings)
    assert isinstance(client, RpcLedgerClient)
    assert client.keypair.public_hex() == keypair.public_hex()
    assert client.package_id == PACKAGE


def test_rpc_mode_with_bad_key_is_configuration_error():
    with pytest.raises(ConfigurationError):
        create_ledger_client(Settings(ledger_mode="rpc", ledger_private_key="not-hex"))
