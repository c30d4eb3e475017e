"""Synchronized collection from two endpoints."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from thorofare.config import Config
from thorofare.grpc import GrpcConfig, GrpcError, SlotCollector
from thorofare.processor import EndpointMetadata, GrpcConfigSummary
from thorofare.types import EndpointData

logger = logging.getLogger(__name__)

_NS_PER_MS = 1_000_000

CollectionResult = tuple[
    EndpointData, EndpointData, EndpointMetadata, EndpointMetadata, float, float
]


def _millis(seconds: float) -> int:
    return round(seconds * 1_000_000_000) // _NS_PER_MS


def _plugin_type(richat: bool) -> str:
    return "Richat" if richat else "Yellowstone"


@dataclass
class Collector:
    """Runs a benchmark collection against two endpoints at the same time."""

    config: Config = field(default_factory=Config)
    endpoint1: str = ""
    endpoint2: str = ""
    x_token1: str | None = None
    x_token2: str | None = None
    endpoint1_richat: bool = False
    endpoint2_richat: bool = False
    slot_count: int = 1000
    with_accounts: bool = False
    account_owner: str | None = None

    async def _slot_collector(self, endpoint: str, x_token: str | None, richat: bool) -> SlotCollector:
        bench = self.config.benchmark
        return await SlotCollector.create(
            self.make_grpc_config(endpoint, x_token),
            self.slot_count,
            bench.buffer_percentage,
            bench.latency_samples,
            self.with_accounts,
            self.account_owner,
            richat,
        )

    @staticmethod
    async def _collect_with_barrier(collector: SlotCollector, barrier: asyncio.Barrier) -> EndpointData:
        await barrier.wait()
        return await collector.collect()

    async def run(self) -> CollectionResult:
        """Collect from both endpoints.

        Returns (data1, data2, meta1, meta2, ping1, ping2) with pings in seconds.
        Raises GrpcError if either endpoint fails.
        """
        logger.info("Collecting endpoint versions and ping averages...")

        collector1 = await self._slot_collector(self.endpoint1, self.x_token1, self.endpoint1_richat)
        collector2 = await self._slot_collector(self.endpoint2, self.x_token2, self.endpoint2_richat)

        meta1 = EndpointMetadata(_plugin_type(self.endpoint1_richat), collector1.version)
        meta2 = EndpointMetadata(_plugin_type(self.endpoint2_richat), collector2.version)
        ping1, ping2 = collector1.avg_ping, collector2.avg_ping

        logger.info(
            "Starting synchronized collection%s",
            " with account updates" if self.with_accounts else "",
        )

        barrier = asyncio.Barrier(2)
        outcomes = await asyncio.gather(
            self._collect_with_barrier(collector1, barrier),
            self._collect_with_barrier(collector2, barrier),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        data1, data2 = outcomes

        if self.with_accounts:
            for data in (data1, data2):
                logger.info(
                    "Collected %d account updates from %s",
                    len(data.account_updates),
                    data.endpoint,
                )

        return data1, data2, meta1, meta2, ping1, ping2

    def grpc_config_summary(self) -> GrpcConfigSummary:
        """The gRPC settings as recorded in the report."""
        g = self.config.grpc
        return GrpcConfigSummary(
            connect_timeout_ms=_millis(g.connect_timeout),
            request_timeout_ms=_millis(g.request_timeout),
            max_message_size=g.max_message_size,
            use_tls=g.use_tls,
            http2_adaptive_window=g.http2_adaptive_window,
            initial_connection_window_size=g.initial_connection_window_size,
            initial_stream_window_size=g.initial_stream_window_size,
        )

    def make_grpc_config(self, endpoint: str, x_token: str | None) -> GrpcConfig:
        """Connection settings for one endpoint from the shared configuration."""
        g = self.config.grpc
        return GrpcConfig(
            endpoint=endpoint,
            x_token=x_token,
            connect_timeout=g.connect_timeout,
            request_timeout=g.request_timeout,
            max_message_size=g.max_message_size,
            use_tls=g.use_tls,
            http2_adaptive_window=g.http2_adaptive_window,
            http2_keep_alive_interval=g.http2_keep_alive_interval,
            initial_connection_window_size=g.initial_connection_window_size,
            initial_stream_window_size=g.initial_stream_window_size,
            tcp_nodelay=g.tcp_nodelay,
            tcp_keepalive=g.tcp_keepalive,
            buffer_size=g.buffer_size,
        )


__all__ = ["Collector", "CollectionResult", "GrpcError"]