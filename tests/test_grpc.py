import asyncio
import socket
from contextlib import asynccontextmanager

import grpc
import pytest

from thorofare.grpc import GrpcClient, GrpcConfig, GrpcError, SlotCollector
from thorofare.types import SlotStatus, calculate_capacity

SLOTS_REQUEST = b"\x12\x08\x0a\x00\x12\x04\x08\x00\x10\x01"
RICHAT_SLOTS_REQUEST = b"\x12\x06\x08\x01\x10\x01\x18\x01"
RICHAT_ACCOUNTS_REQUEST = b"\x12\x04\x10\x01\x18\x01"

PUBKEY = bytes(range(32))
SIGNATURE = bytes(range(64))


def _varint(value):
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _uint(number, value):
    return _varint(number << 3) + _varint(value)


def _ld(number, payload):
    return _varint(number << 3 | 2) + _varint(len(payload)) + payload


def slot_message(slot, status):
    return _ld(3, _uint(1, slot) + _uint(3, status))


def account_message(slot, pubkey, write_version, signature=None):
    info = _ld(1, pubkey) + _uint(7, write_version)
    if signature is not None:
        info += _ld(8, signature)
    return _ld(2, _ld(1, info) + _uint(2, slot))


PING_MESSAGE = _ld(6, b"")


class FakeGeyser:
    def __init__(self, slot_messages=(), account_messages=(), richat_messages=(), hang=False):
        self.slot_messages = list(slot_messages)
        self.account_messages = list(account_messages)
        self.richat_messages = list(richat_messages)
        self.hang = hang
        self.fail_subscribe = False
        self.wait_for_accounts = False
        self.accounts_sent = asyncio.Event()
        self.requests = []
        self.metadata = []
        self.version_calls = 0

    async def get_version(self, request, context):
        self.version_calls += 1
        self.metadata.append(dict(context.invocation_metadata()))
        return _ld(1, b"1.2.3")

    async def subscribe(self, request_iterator, context):
        request = b""
        async for request in request_iterator:
            break
        self.requests.append(request)
        if self.fail_subscribe:
            await context.abort(grpc.StatusCode.PERMISSION_DENIED, "denied")
        if request.startswith(b"\x0a"):
            for message in self.account_messages:
                yield message
            self.accounts_sent.set()
        else:
            if self.wait_for_accounts:
                await self.accounts_sent.wait()
                await asyncio.sleep(0.2)
            for message in self.slot_messages:
                yield message
        if self.hang:
            await asyncio.Event().wait()

    async def subscribe_richat(self, request, context):
        self.requests.append(request)
        for message in self.richat_messages:
            yield message


@asynccontextmanager
async def running(service):
    server = grpc.aio.server()
    handler = grpc.method_handlers_generic_handler(
        "geyser.Geyser",
        {
            "GetVersion": grpc.unary_unary_rpc_method_handler(service.get_version),
            "Subscribe": grpc.stream_stream_rpc_method_handler(service.subscribe),
            "SubscribeRichat": grpc.unary_stream_rpc_method_handler(service.subscribe_richat),
        },
    )
    server.add_generic_rpc_handlers((handler,))
    port = server.add_insecure_port("127.0.0.1:0")
    await server.start()
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        await server.stop(None)


def make_config(endpoint, **overrides):
    settings = {"connect_timeout": 3.0, "request_timeout": 3.0, "use_tls": False}
    settings.update(overrides)
    return GrpcConfig(endpoint=endpoint, **settings)


def drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_empty_endpoint_is_invalid_config():
    with pytest.raises(GrpcError) as excinfo:
        GrpcClient(GrpcConfig(endpoint=""))
    assert excinfo.value.kind is GrpcError.Kind.INVALID_CONFIG
    assert str(excinfo.value) == "Invalid configuration: Empty endpoint"


def test_channel_closed_message_has_no_detail():
    error = GrpcError(GrpcError.Kind.CHANNEL_CLOSED)
    assert str(error) == "Channel send failed - receiver dropped"


@pytest.mark.asyncio
async def test_get_version_sends_token():
    service = FakeGeyser()
    async with running(service) as endpoint:
        client = GrpcClient(make_config(endpoint, x_token="token"))
        version = await client.get_version()
    assert version == "1.2.3"
    assert service.metadata[0]["x-token"] == "token"


@pytest.mark.asyncio
async def test_get_version_richat():
    service = FakeGeyser()
    async with running(service) as endpoint:
        version = await GrpcClient(make_config(endpoint)).get_version_richat()
    assert version == "1.2.3"
    assert service.version_calls == 1


@pytest.mark.asyncio
async def test_measure_latency_returns_one_sample_per_request():
    service = FakeGeyser()
    async with running(service) as endpoint:
        client = GrpcClient(make_config(endpoint))
        latencies = await client.measure_latency(3)
        richat_latencies = await client.measure_latency_richat(2)
    assert len(latencies) == 3
    assert len(richat_latencies) == 2
    assert all(value >= 0 for value in latencies + richat_latencies)
    assert service.version_calls == 5


@pytest.mark.asyncio
async def test_measure_latency_zero_samples():
    service = FakeGeyser()
    async with running(service) as endpoint:
        latencies = await GrpcClient(make_config(endpoint)).measure_latency(0)
    assert latencies == []
    assert service.version_calls == 0


@pytest.mark.asyncio
async def test_subscribe_slots_request_and_updates():
    service = FakeGeyser(
        slot_messages=[slot_message(10, 3), PING_MESSAGE, slot_message(11, 99)]
    )
    queue = asyncio.Queue()
    async with running(service) as endpoint:
        await GrpcClient(make_config(endpoint)).subscribe_slots(queue)
    assert service.requests == [SLOTS_REQUEST]
    updates = drain(queue)
    assert [(u.slot, u.status) for u in updates] == [
        (10, SlotStatus.FIRST_SHRED_RECEIVED),
        (11, SlotStatus.DEAD),
    ]
    assert updates[0].instant <= updates[1].instant


@pytest.mark.asyncio
async def test_subscribe_slots_status_codes():
    service = FakeGeyser(slot_messages=[slot_message(5, code) for code in range(7)])
    queue = asyncio.Queue()
    async with running(service) as endpoint:
        await GrpcClient(make_config(endpoint)).subscribe_slots(queue)
    statuses = [update.status for update in drain(queue)]
    assert statuses == [SlotStatus.from_code(code) for code in range(7)]


@pytest.mark.asyncio
async def test_subscribe_accounts_decodes_and_defaults():
    owner = "11111111111111111111111111111111"
    service = FakeGeyser(
        account_messages=[
            account_message(7, PUBKEY, 3, SIGNATURE),
            account_message(8, b"short", 4),
            slot_message(9, 0),
        ]
    )
    queue = asyncio.Queue()
    async with running(service) as endpoint:
        client = GrpcClient(make_config(endpoint), with_accounts=True, account_owner=owner)
        await client.subscribe_accounts(queue)
    assert owner.encode() in service.requests[0]
    first, second = drain(queue)
    assert (first.slot, first.pubkey, first.write_version, first.tx_signature) == (
        7,
        PUBKEY,
        3,
        SIGNATURE,
    )
    assert (second.slot, second.write_version) == (8, 4)
    assert second.pubkey == bytes(32)
    assert second.tx_signature == bytes(64)


@pytest.mark.asyncio
async def test_subscribe_slots_richat_filters_out_accounts():
    service = FakeGeyser(
        richat_messages=[account_message(1, PUBKEY, 1, SIGNATURE), slot_message(2, 1)]
    )
    queue = asyncio.Queue()
    async with running(service) as endpoint:
        await GrpcClient(make_config(endpoint)).subscribe_slots_richat(queue)
    assert service.requests == [RICHAT_SLOTS_REQUEST]
    updates = drain(queue)
    assert [(u.slot, u.status) for u in updates] == [(2, SlotStatus.CONFIRMED)]


@pytest.mark.asyncio
async def test_subscribe_accounts_richat():
    service = FakeGeyser(
        richat_messages=[account_message(1, PUBKEY, 9, SIGNATURE), slot_message(2, 1)]
    )
    queue = asyncio.Queue()
    async with running(service) as endpoint:
        await GrpcClient(make_config(endpoint), with_accounts=True).subscribe_accounts_richat(queue)
    assert service.requests == [RICHAT_ACCOUNTS_REQUEST]
    updates = drain(queue)
    assert [(u.slot, u.pubkey, u.write_version) for u in updates] == [(1, PUBKEY, 9)]


@pytest.mark.asyncio
async def test_full_queue_reports_channel_closed():
    service = FakeGeyser(slot_messages=[slot_message(1, 0), slot_message(2, 0)])
    queue = asyncio.Queue(maxsize=1)
    async with running(service) as endpoint:
        with pytest.raises(GrpcError) as excinfo:
            await GrpcClient(make_config(endpoint)).subscribe_slots(queue)
    assert excinfo.value.kind is GrpcError.Kind.CHANNEL_CLOSED
    assert queue.get_nowait().slot == 1


@pytest.mark.asyncio
async def test_rejected_subscription_raises():
    service = FakeGeyser()
    service.fail_subscribe = True
    async with running(service) as endpoint:
        with pytest.raises(GrpcError) as excinfo:
            await GrpcClient(make_config(endpoint)).subscribe_slots(asyncio.Queue())
    assert excinfo.value.kind in {
        GrpcError.Kind.SUBSCRIPTION_FAILED,
        GrpcError.Kind.STREAM_ERROR,
    }
    assert "denied" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unreachable_endpoint_times_out():
    client = GrpcClient(make_config(f"http://127.0.0.1:{free_port()}", connect_timeout=0.3))
    with pytest.raises(GrpcError) as excinfo:
        await client.get_version()
    assert excinfo.value.kind is GrpcError.Kind.CONNECTION_FAILED


@pytest.mark.asyncio
async def test_unreachable_richat_endpoint_names_richat():
    client = GrpcClient(make_config(f"http://127.0.0.1:{free_port()}", connect_timeout=0.3))
    with pytest.raises(GrpcError) as excinfo:
        await client.get_version_richat()
    assert excinfo.value.kind is GrpcError.Kind.CONNECTION_FAILED
    assert "Richat client connection failed" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unsupported_scheme_fails_to_connect():
    with pytest.raises(GrpcError) as excinfo:
        await GrpcClient(make_config("ftp://example.com")).get_version()
    assert excinfo.value.kind is GrpcError.Kind.CONNECTION_FAILED


@pytest.mark.asyncio
async def test_https_without_tls_fails_to_connect():
    with pytest.raises(GrpcError) as excinfo:
        await GrpcClient(make_config("https://example.com", use_tls=False)).get_version()
    assert excinfo.value.kind is GrpcError.Kind.CONNECTION_FAILED


@pytest.mark.asyncio
async def test_slot_collector_create_measures_ping():
    service = FakeGeyser()
    async with running(service) as endpoint:
        collector = await SlotCollector.create(make_config(endpoint), 10, 0.1, 3, False, None, False)
    assert collector.version == "1.2.3"
    assert service.version_calls == 4
    assert collector.avg_ping >= 0.0
    assert collector.endpoint_data.endpoint == endpoint
    assert collector.endpoint_data.expected_updates == calculate_capacity(10, 0.1)


@pytest.mark.asyncio
async def test_slot_collector_create_without_samples():
    service = FakeGeyser()
    async with running(service) as endpoint:
        collector = await SlotCollector.create(make_config(endpoint), 5, 0.0, 0, False, None, True)
    assert collector.avg_ping == 0.0
    assert collector.richat is True
    assert service.version_calls == 1


@pytest.mark.asyncio
async def test_collect_stops_at_target():
    service = FakeGeyser(
        slot_messages=[slot_message(1, 3), slot_message(1, 4), slot_message(2, 3), slot_message(3, 3)],
        hang=True,
    )
    async with running(service) as endpoint:
        collector = await SlotCollector.create(make_config(endpoint), 2, 0.0, 1, False, None, False)
        data = await asyncio.wait_for(collector.collect(), 10)
    assert [u.slot for u in data.updates] == [1, 1, 2]
    assert data.account_updates == []


@pytest.mark.asyncio
async def test_collect_ends_when_stream_ends():
    service = FakeGeyser(slot_messages=[slot_message(1, 3)])
    async with running(service) as endpoint:
        collector = await SlotCollector.create(make_config(endpoint), 5, 0.0, 1, False, None, False)
        data = await asyncio.wait_for(collector.collect(), 10)
    assert [u.slot for u in data.updates] == [1]


@pytest.mark.asyncio
async def test_collect_with_accounts():
    service = FakeGeyser(
        slot_messages=[slot_message(1, 3), slot_message(2, 3)],
        account_messages=[account_message(1, PUBKEY, 1, SIGNATURE)],
        hang=True,
    )
    service.wait_for_accounts = True
    async with running(service) as endpoint:
        collector = await SlotCollector.create(make_config(endpoint), 2, 0.0, 1, True, None, False)
        data = await asyncio.wait_for(collector.collect(), 10)
    assert [u.slot for u in data.updates] == [1, 2]
    assert [(a.slot, a.pubkey) for a in data.account_updates] == [(1, PUBKEY)]