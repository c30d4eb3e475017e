"""gRPC clients for Yellowstone and Richat Geyser endpoints, and slot collection."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Iterator
from urllib.parse import urlsplit

import grpc

from thorofare.types import (
    PUBKEY_LENGTH,
    SIGNATURE_LENGTH,
    STATUSES_PER_SLOT,
    AccountUpdate,
    EndpointData,
    SlotStatus,
    SlotUpdate,
    calculate_capacity,
)

logger = logging.getLogger(__name__)

_GET_VERSION = "/geyser.Geyser/GetVersion"
_SUBSCRIBE = "/geyser.Geyser/Subscribe"
_SUBSCRIBE_RICHAT = "/geyser.Geyser/SubscribeRichat"

# Members of the SubscribeUpdate ``update_oneof``.
_ACCOUNT_FIELD = 2
_SLOT_FIELD = 3
_UPDATE_ONEOF = frozenset({2, 3, 4, 5, 6, 7, 8, 9, 10})

_U64_MASK = 2**64 - 1
_GRPC_INT_MAX = 2**31 - 1
_DONE = object()


class GrpcError(Exception):
    """A failure talking to an endpoint."""

    class Kind(Enum):
        CONNECTION_FAILED = "Connection failed"
        SUBSCRIPTION_FAILED = "Subscription failed"
        STREAM_ERROR = "Stream error"
        CHANNEL_CLOSED = "Channel send failed - receiver dropped"
        INVALID_CONFIG = "Invalid configuration"

    def __init__(self, kind: GrpcError.Kind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


@dataclass
class GrpcConfig:
    """Connection settings for one endpoint. Durations are in seconds."""

    endpoint: str
    x_token: str | None = None
    connect_timeout: float = 30.0
    request_timeout: float = 30.0
    max_message_size: int = 1024 * 1024
    use_tls: bool = True
    http2_adaptive_window: bool = False
    http2_keep_alive_interval: float | None = 30.0
    initial_connection_window_size: int | None = 65535
    initial_stream_window_size: int | None = 65535
    tcp_nodelay: bool = True
    tcp_keepalive: float | None = 60.0
    buffer_size: int | None = 64


# --- protobuf wire encoding -------------------------------------------------


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _uint_field(number: int, value: int) -> bytes:
    return _varint(number << 3) + _varint(value)


def _bytes_field(number: int, payload: bytes) -> bytes:
    return _varint(number << 3 | 2) + _varint(len(payload)) + payload


def _map_entry(number: int, key: str, value: bytes) -> bytes:
    return _bytes_field(number, _bytes_field(1, key.encode()) + _bytes_field(2, value))


def _slots_request() -> bytes:
    # filter_by_commitment = false, interslot_updates = true
    slots_filter = _uint_field(1, 0) + _uint_field(2, 1)
    return _map_entry(2, "", slots_filter)


def _accounts_request(owner: str | None) -> bytes:
    accounts_filter = _bytes_field(3, (owner or "").encode())
    return _map_entry(1, "", accounts_filter) + _uint_field(6, 0)  # commitment: processed


def _richat_request(*, disable_accounts: bool) -> bytes:
    flags = ((1, disable_accounts), (2, True), (3, True))
    richat_filter = b"".join(_uint_field(number, 1) for number, flag in flags if flag)
    return _bytes_field(2, richat_filter)


# --- protobuf wire decoding -------------------------------------------------


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint too long")


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise ValueError("truncated field")
    return bytes(data[pos:end]), end


def _fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire = key >> 3, key & 7
        value: int | bytes
        if wire == 0:
            value, pos = _read_varint(data, pos)
        elif wire == 1:
            raw, pos = _take(data, pos, 8)
            value = int.from_bytes(raw, "little")
        elif wire == 2:
            length, pos = _read_varint(data, pos)
            value, pos = _take(data, pos, length)
        elif wire == 5:
            raw, pos = _take(data, pos, 4)
            value = int.from_bytes(raw, "little")
        else:
            raise ValueError(f"unsupported wire type {wire}")
        yield number, wire, value


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 2**32 if value >= 2**31 else value


def _update_payload(message: bytes, wanted: int) -> bytes | None:
    chosen: tuple[int, int | bytes] | None = None
    for number, _, value in _fields(message):
        if number in _UPDATE_ONEOF:
            chosen = (number, value)
    if chosen is not None and chosen[0] == wanted and isinstance(chosen[1], bytes):
        return chosen[1]
    return None


def _decode_slot(payload: bytes) -> SlotUpdate:
    slot = status = 0
    for number, wire, value in _fields(payload):
        if wire != 0:
            continue
        if number == 1:
            slot = value & _U64_MASK
        elif number == 3:
            status = _int32(value)
    return SlotUpdate(
        slot=slot,
        status=SlotStatus.from_code(status),
        instant=time.monotonic(),
        system_time=time.time(),
    )


def _decode_account(payload: bytes) -> AccountUpdate:
    slot = 0
    info = b""
    for number, wire, value in _fields(payload):
        if number == 1 and wire == 2:
            info = value
        elif number == 2 and wire == 0:
            slot = value & _U64_MASK
    pubkey = b""
    write_version = 0
    signature: bytes | None = None
    for number, wire, value in _fields(info):
        if number == 1 and wire == 2:
            pubkey = value
        elif number == 7 and wire == 0:
            write_version = value & _U64_MASK
        elif number == 8 and wire == 2:
            signature = value
    return AccountUpdate(
        slot=slot,
        pubkey=pubkey if len(pubkey) == PUBKEY_LENGTH else bytes(PUBKEY_LENGTH),
        write_version=write_version,
        tx_signature=(
            signature
            if signature is not None and len(signature) == SIGNATURE_LENGTH
            else bytes(SIGNATURE_LENGTH)
        ),
        instant=time.monotonic(),
        system_time=time.time(),
    )


def _decode_version(message: bytes) -> str:
    version = ""
    for number, wire, value in _fields(message):
        if number == 1 and wire == 2:
            version = value.decode("utf-8", errors="replace")
    return version


def _describe(exc: grpc.aio.AioRpcError) -> str:
    return f"status: {exc.code().name}, message: {exc.details()!r}"


def _send(queue: asyncio.Queue, update: object) -> None:
    try:
        queue.put_nowait(update)
    except asyncio.QueueFull:
        raise GrpcError(GrpcError.Kind.CHANNEL_CLOSED) from None


# --- client -----------------------------------------------------------------


@dataclass
class GrpcClient:
    """Client for one endpoint speaking the Yellowstone or Richat interface."""

    config: GrpcConfig
    with_accounts: bool = False
    account_owner: str | None = None

    def __post_init__(self) -> None:
        if not self.config.endpoint:
            raise GrpcError(GrpcError.Kind.INVALID_CONFIG, "Empty endpoint")

    def _metadata(self) -> tuple[tuple[str, str], ...] | None:
        if self.config.x_token is None:
            return None
        return (("x-token", self.config.x_token),)

    def _options(self, richat: bool) -> list[tuple[str, int]]:
        cfg = self.config
        options = [
            ("grpc.max_receive_message_length", min(cfg.max_message_size, _GRPC_INT_MAX)),
            ("grpc.http2.bdp_probe", int(cfg.http2_adaptive_window)),
        ]
        if not richat and cfg.http2_keep_alive_interval is not None:
            options.append(("grpc.keepalive_time_ms", int(cfg.http2_keep_alive_interval * 1000)))
        if cfg.initial_stream_window_size is not None:
            options.append(("grpc.http2.lookahead_bytes", cfg.initial_stream_window_size))
        return options

    def _open(self, richat: bool, prefix: str) -> grpc.aio.Channel:
        endpoint = self.config.endpoint
        try:
            parts = urlsplit(endpoint)
            port = parts.port
        except ValueError as exc:
            raise GrpcError(GrpcError.Kind.CONNECTION_FAILED, f"{prefix}{exc}") from exc
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise GrpcError(
                GrpcError.Kind.CONNECTION_FAILED, f"{prefix}invalid endpoint {endpoint!r}"
            )
        secure = parts.scheme == "https"
        if secure and not richat and not self.config.use_tls:
            raise GrpcError(
                GrpcError.Kind.CONNECTION_FAILED,
                f"{prefix}https endpoint {endpoint!r} requires TLS",
            )
        host = parts.hostname
        if ":" in host:
            host = f"[{host}]"
        target = f"{host}:{port or (443 if secure else 80)}"
        options = self._options(richat)
        if secure:
            return grpc.aio.secure_channel(target, grpc.ssl_channel_credentials(), options)
        return grpc.aio.insecure_channel(target, options)

    @asynccontextmanager
    async def _channel(self, *, richat: bool = False, prefix: str = "") -> AsyncIterator[grpc.aio.Channel]:
        channel = self._open(richat, prefix)
        try:
            try:
                await asyncio.wait_for(channel.channel_ready(), self.config.connect_timeout)
            except asyncio.TimeoutError:
                raise GrpcError(
                    GrpcError.Kind.CONNECTION_FAILED,
                    f"{prefix}timed out connecting to {self.config.endpoint}",
                ) from None
            yield channel
        finally:
            await channel.close()

    async def _pump(self, call, queue: asyncio.Queue, wanted: int) -> None:
        try:
            await call.wait_for_connection()
        except grpc.aio.AioRpcError as exc:
            raise GrpcError(GrpcError.Kind.SUBSCRIPTION_FAILED, _describe(exc)) from exc
        decode = _decode_slot if wanted == _SLOT_FIELD else _decode_account
        try:
            async for message in call:
                try:
                    payload = _update_payload(message, wanted)
                    update = decode(payload) if payload is not None else None
                except ValueError as exc:
                    raise GrpcError(GrpcError.Kind.STREAM_ERROR, str(exc)) from exc
                if update is not None:
                    _send(queue, update)
        except grpc.aio.AioRpcError as exc:
            raise GrpcError(GrpcError.Kind.STREAM_ERROR, _describe(exc)) from exc

    async def _subscribe(self, request: bytes, queue: asyncio.Queue, wanted: int) -> None:
        async with self._channel() as channel:
            call = channel.stream_stream(_SUBSCRIBE)(iter([request]), metadata=self._metadata())
            await self._pump(call, queue, wanted)

    async def _subscribe_richat(self, request: bytes, queue: asyncio.Queue, wanted: int) -> None:
        async with self._channel(richat=True) as channel:
            call = channel.unary_stream(_SUBSCRIBE_RICHAT)(request, metadata=self._metadata())
            await self._pump(call, queue, wanted)

    async def subscribe_slots(self, queue: asyncio.Queue) -> None:
        """Stream every slot status update into ``queue`` until the stream ends."""
        await self._subscribe(_slots_request(), queue, _SLOT_FIELD)

    async def subscribe_accounts(self, queue: asyncio.Queue) -> None:
        """Stream processed account updates for the owner filter into ``queue``."""
        await self._subscribe(_accounts_request(self.account_owner), queue, _ACCOUNT_FIELD)

    async def subscribe_slots_richat(self, queue: asyncio.Queue) -> None:
        """Stream slot updates from a Richat endpoint into ``queue``."""
        await self._subscribe_richat(
            _richat_request(disable_accounts=True), queue, _SLOT_FIELD
        )

    async def subscribe_accounts_richat(self, queue: asyncio.Queue) -> None:
        """Stream account updates from a Richat endpoint into ``queue``."""
        await self._subscribe_richat(
            _richat_request(disable_accounts=False), queue, _ACCOUNT_FIELD
        )

    async def _version_call(self, channel: grpc.aio.Channel, prefix: str, timeout: float | None) -> str:
        try:
            response = await channel.unary_unary(_GET_VERSION)(
                b"", timeout=timeout, metadata=self._metadata()
            )
        except grpc.aio.AioRpcError as exc:
            raise GrpcError(GrpcError.Kind.CONNECTION_FAILED, f"{prefix}{_describe(exc)}") from exc
        try:
            return _decode_version(response)
        except ValueError as exc:
            raise GrpcError(GrpcError.Kind.CONNECTION_FAILED, f"{prefix}{exc}") from exc

    async def get_version(self) -> str:
        """The plugin version reported by a Yellowstone endpoint."""
        async with self._channel() as channel:
            return await self._version_call(
                channel, "Version request failed: ", self.config.request_timeout
            )

    async def get_version_richat(self) -> str:
        """The plugin version reported by a Richat endpoint."""
        async with self._channel(richat=True, prefix="Richat client connection failed: ") as channel:
            return await self._version_call(channel, "Version request failed: ", None)

    async def _measure(self, channel: grpc.aio.Channel, samples: int, timeout: float | None) -> list[float]:
        latencies = []
        for _ in range(samples):
            start = time.perf_counter()
            await self._version_call(channel, "Ping failed: ", timeout)
            latencies.append(time.perf_counter() - start)
        return latencies

    async def measure_latency(self, samples: int) -> list[float]:
        """Round-trip times in seconds of ``samples`` version requests."""
        async with self._channel() as channel:
            return await self._measure(channel, samples, self.config.request_timeout)

    async def measure_latency_richat(self, samples: int) -> list[float]:
        """Round-trip times in seconds of ``samples`` Richat version requests."""
        async with self._channel(richat=True, prefix="Richat client connection failed: ") as channel:
            return await self._measure(channel, samples, None)


# --- collection -------------------------------------------------------------


class SlotCollector:
    """Collects slot (and optionally account) updates from one endpoint."""

    def __init__(
        self,
        client: GrpcClient,
        endpoint_data: EndpointData,
        target_slots: int,
        buffer_percent: float,
        avg_ping: float,
        version: str,
        richat: bool,
    ) -> None:
        self.client = client
        self.endpoint_data = endpoint_data
        self.target_slots = target_slots
        self.buffer_percent = buffer_percent
        self.avg_ping = avg_ping
        self.version = version
        self.richat = richat

    @classmethod
    async def create(
        cls,
        config: GrpcConfig,
        target_slots: int,
        buffer_percent: float,
        latency_samples: int,
        with_accounts: bool,
        account_owner: str | None,
        richat: bool,
    ) -> SlotCollector:
        """Connect, read the endpoint version and measure its average ping."""
        endpoint = config.endpoint
        client = GrpcClient(config, with_accounts, account_owner)

        if richat:
            logger.info("Getting Richat version...")
            version = await client.get_version_richat()
        else:
            logger.info("Getting Yellowstone version...")
            version = await client.get_version()
        logger.info("%s: version %s", endpoint, version)

        avg_ping = 0.0
        if latency_samples > 0:
            if richat:
                logger.info("Measuring Richat latency with %d samples...", latency_samples)
                latencies = await client.measure_latency_richat(latency_samples)
            else:
                logger.info("Measuring Geyser latency with %d samples...", latency_samples)
                latencies = await client.measure_latency(latency_samples)
            avg_ping = sum(latencies) / len(latencies)
        logger.info("%s: avg ping %.2fms", endpoint, avg_ping * 1000.0)

        return cls(
            client=client,
            endpoint_data=EndpointData.create(endpoint, target_slots, buffer_percent),
            target_slots=target_slots,
            buffer_percent=buffer_percent,
            avg_ping=avg_ping,
            version=version,
            richat=richat,
        )

    async def _guarded(
        self, subscribe: Callable[[asyncio.Queue], Awaitable[None]], queue: asyncio.Queue, what: str
    ) -> None:
        try:
            await subscribe(queue)
        except GrpcError as exc:
            logger.error("%s %s subscription failed: %s", self.endpoint_data.endpoint, what, exc)
        finally:
            queue.put_nowait(_DONE)

    async def collect(self) -> EndpointData:
        """Gather updates until enough unique slots are seen or the streams end."""
        data = self.endpoint_data
        client = self.client
        queue: asyncio.Queue = asyncio.Queue()

        slot_source = client.subscribe_slots_richat if self.richat else client.subscribe_slots
        tasks = [asyncio.create_task(self._guarded(slot_source, queue, "slot"))]
        if client.with_accounts:
            account_source = (
                client.subscribe_accounts_richat if self.richat else client.subscribe_accounts
            )
            tasks.append(asyncio.create_task(self._guarded(account_source, queue, "account")))

        slots_and_buffer = self.target_slots * (1.0 + self.buffer_percent)
        target = calculate_capacity(self.target_slots, self.buffer_percent) // STATUSES_PER_SLOT
        seen: set[int] = set()
        last_logged_percent = 0
        finished = 0

        try:
            while finished < len(tasks):
                item = await queue.get()
                if item is _DONE:
                    finished += 1
                    continue
                if isinstance(item, AccountUpdate):
                    data.account_updates.append(item)
                    continue
                seen.add(item.slot)
                data.updates.append(item)
                if slots_and_buffer > 0:
                    percent = math.floor(len(seen) / slots_and_buffer * 100.0)
                    if percent >= last_logged_percent + 10:
                        logger.info(
                            "%s: %d%% of slots seen (%d unique slots)",
                            data.endpoint,
                            percent,
                            len(seen),
                        )
                        last_logged_percent = percent
                if len(seen) >= target:
                    break
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(
            "%s: %d slot updates, %d unique slots, %d account updates",
            data.endpoint,
            len(data.updates),
            len(seen),
            len(data.account_updates),
        )
        return data