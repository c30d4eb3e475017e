"""Comparison of two endpoints' collected data into a benchmark report."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from thorofare.accounts import (
    AccountUpdateDetail,
    build_account_details,
    build_account_match_map,
    group_accounts_by_slot,
    timestamp_ms,
)
from thorofare.types import EndpointData, SlotStatus, SlotUpdate

SlotMap = dict[tuple[int, SlotStatus], SlotUpdate]

REQUIRED_STATUSES = (
    SlotStatus.FIRST_SHRED_RECEIVED,
    SlotStatus.COMPLETED,
    SlotStatus.CREATED_BANK,
    SlotStatus.PROCESSED,
    SlotStatus.CONFIRMED,
    SlotStatus.FINALIZED,
)

# Status whose arrival is compared between endpoints, by delay name.
_DELAY_STATUSES = {
    "first_shred": SlotStatus.FIRST_SHRED_RECEIVED,
    "processing": SlotStatus.PROCESSED,
    "confirmation": SlotStatus.CONFIRMED,
    "finalization": SlotStatus.FINALIZED,
}

# Stage durations measured within one endpoint: (start status, end status).
_STAGES = {
    "download": (SlotStatus.FIRST_SHRED_RECEIVED, SlotStatus.COMPLETED),
    "replay": (SlotStatus.CREATED_BANK, SlotStatus.PROCESSED),
    "confirmation": (SlotStatus.PROCESSED, SlotStatus.CONFIRMED),
    "finalization": (SlotStatus.CONFIRMED, SlotStatus.FINALIZED),
}


@dataclass
class GrpcConfigSummary:
    """gRPC settings recorded in the report."""

    connect_timeout_ms: int
    request_timeout_ms: int
    max_message_size: int
    use_tls: bool
    http2_adaptive_window: bool
    initial_connection_window_size: int | None
    initial_stream_window_size: int | None


@dataclass
class EndpointMetadata:
    """Plugin type and version reported by an endpoint."""

    plugin_type: str
    plugin_version: str


@dataclass
class Percentiles:
    """p50, p90 and p99 of a sample, in milliseconds."""

    p50: float
    p90: float
    p99: float


@dataclass
class Transition:
    """A status change and its wall-clock time in milliseconds."""

    status: str
    timestamp: int


@dataclass
class StageDurations:
    """Time spent in each stage of a slot, in milliseconds."""

    download_ms: float
    replay_ms: float
    confirmation_ms: float
    finalization_ms: float


@dataclass
class SlotDetail:
    """One endpoint's view of a compared slot."""

    first_shred_delay_ms: float | None
    processing_delay_ms: float | None
    confirmation_delay_ms: float | None
    finalization_delay_ms: float | None
    transitions: list[Transition]
    durations: StageDurations
    account_updates: list[AccountUpdateDetail] = field(default_factory=list)


@dataclass
class SlotComparison:
    """A slot seen completely by both endpoints."""

    slot: int
    endpoint1: SlotDetail
    endpoint2: SlotDetail


@dataclass
class EndpointInfo:
    """Totals and identity of one endpoint."""

    endpoint: str
    plugin_type: str
    plugin_version: str
    avg_ping_ms: float
    total_updates: int
    unique_slots: int
    account_updates: int | None


@dataclass
class EndpointSummary:
    """Percentiles of every measured quantity for one endpoint."""

    first_shred_delay: Percentiles
    processing_delay: Percentiles
    confirmation_delay: Percentiles
    finalization_delay: Percentiles
    download_time: Percentiles
    replay_time: Percentiles
    confirmation_time: Percentiles
    finalization_time: Percentiles
    account_delay: Percentiles | None


@dataclass
class Metadata:
    """Counts and timing of the benchmark run."""

    total_slots_collected: int
    common_slots: int
    compared_slots: int
    dropped_slots: int
    duration_ms: int
    benchmark_start_time: int
    total_account_updates: tuple[int, int] | None


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


@dataclass
class BenchmarkResult:
    """The full benchmark report."""

    version: str
    with_accounts: bool
    account_owner: str | None
    grpc_config: GrpcConfigSummary
    metadata: Metadata
    endpoints: tuple[EndpointInfo, EndpointInfo]
    endpoint1_summary: EndpointSummary
    endpoint2_summary: EndpointSummary
    slots: list[SlotComparison]

    def to_dict(self) -> dict[str, Any]:
        """The report as plain JSON-compatible data."""
        return _plain(asdict(self))

    def to_json(self) -> str:
        """The report as pretty-printed JSON."""
        return json.dumps(self.to_dict(), indent=2)


def percentiles(values: list[float]) -> Percentiles:
    """p50/p90/p99 in milliseconds of durations given in seconds; zeros when empty."""
    ordered = sorted(values)
    if not ordered:
        return Percentiles(p50=0.0, p90=0.0, p99=0.0)
    count = len(ordered)

    def pick(percent: int) -> float:
        return ordered[min(count - 1, count * percent // 100)] * 1000.0

    return Percentiles(p50=pick(50), p90=pick(90), p99=pick(99))


def _ms(seconds: float | None) -> float | None:
    return None if seconds is None else seconds * 1000.0


def _build_map(updates: list[SlotUpdate]) -> SlotMap:
    return {(update.slot, update.status): update for update in updates}


def _is_complete(slot_map: SlotMap, slot: int) -> bool:
    return all((slot, status) in slot_map for status in REQUIRED_STATUSES)


def _delays(
    map1: SlotMap, map2: SlotMap, slot: int, status: SlotStatus
) -> tuple[float | None, float | None]:
    first = map1.get((slot, status))
    second = map2.get((slot, status))
    if first is None or second is None:
        return None, None
    if first.instant < second.instant:
        return 0.0, second.instant - first.instant
    if second.instant < first.instant:
        return first.instant - second.instant, 0.0
    return 0.0, 0.0


def _stage(slot_map: SlotMap, slot: int, stage: str) -> float:
    start, end = _STAGES[stage]
    return max(0.0, slot_map[(slot, end)].instant - slot_map[(slot, start)].instant)


@dataclass
class _Samples:
    delays: dict[str, list[float]] = field(
        default_factory=lambda: {kind: [] for kind in _DELAY_STATUSES}
    )
    stages: dict[str, list[float]] = field(
        default_factory=lambda: {stage: [] for stage in _STAGES}
    )
    account_delays: list[float] = field(default_factory=list)

    def summary(self, with_accounts: bool) -> EndpointSummary:
        return EndpointSummary(
            first_shred_delay=percentiles(self.delays["first_shred"]),
            processing_delay=percentiles(self.delays["processing"]),
            confirmation_delay=percentiles(self.delays["confirmation"]),
            finalization_delay=percentiles(self.delays["finalization"]),
            download_time=percentiles(self.stages["download"]),
            replay_time=percentiles(self.stages["replay"]),
            confirmation_time=percentiles(self.stages["confirmation"]),
            finalization_time=percentiles(self.stages["finalization"]),
            account_delay=(
                percentiles(self.account_delays)
                if with_accounts and self.account_delays
                else None
            ),
        )


def _slot_detail(
    slot_map: SlotMap,
    slot: int,
    delays: dict[str, float | None],
    account_updates: list[AccountUpdateDetail],
    samples: _Samples,
) -> SlotDetail:
    for kind, delay in delays.items():
        if delay is not None:
            samples.delays[kind].append(delay)
    stage_times = {stage: _stage(slot_map, slot, stage) for stage in _STAGES}
    for stage, seconds in stage_times.items():
        samples.stages[stage].append(seconds)
    for detail in account_updates:
        if detail.delay_ms is not None and detail.delay_ms > 0.0:
            samples.account_delays.append(detail.delay_ms / 1000.0)

    transitions = [
        Transition(status=status.value, timestamp=timestamp_ms(slot_map[(slot, status)].system_time))
        for status in REQUIRED_STATUSES
        if (slot, status) in slot_map
    ]
    return SlotDetail(
        first_shred_delay_ms=_ms(delays["first_shred"]),
        processing_delay_ms=_ms(delays["processing"]),
        confirmation_delay_ms=_ms(delays["confirmation"]),
        finalization_delay_ms=_ms(delays["finalization"]),
        transitions=transitions,
        durations=StageDurations(
            download_ms=stage_times["download"] * 1000.0,
            replay_ms=stage_times["replay"] * 1000.0,
            confirmation_ms=stage_times["confirmation"] * 1000.0,
            finalization_ms=stage_times["finalization"] * 1000.0,
        ),
        account_updates=account_updates,
    )


def process(
    version: str,
    with_accounts: bool,
    account_owner: str | None,
    grpc_config: GrpcConfigSummary,
    data1: EndpointData,
    data2: EndpointData,
    meta1: EndpointMetadata,
    meta2: EndpointMetadata,
    ping1: float,
    ping2: float,
    start_time: float,
) -> BenchmarkResult:
    """Compare two endpoints' data into a report.

    ``ping1``/``ping2`` are average pings in seconds and ``start_time`` is the
    ``time.monotonic()`` reading taken when the benchmark began.
    """
    duration_ms = int(max(0.0, time.monotonic() - start_time) * 1000)
    benchmark_start = int(time.time() * 1000) - duration_ms

    map1 = _build_map(data1.updates)
    map2 = _build_map(data2.updates)

    if with_accounts:
        accounts1 = group_accounts_by_slot(data1.account_updates)
        accounts2 = group_accounts_by_slot(data2.account_updates)
        match_map = build_account_match_map(data1.account_updates, data2.account_updates)
    else:
        accounts1, accounts2, match_map = {}, {}, {}

    slots1 = {slot for slot, _ in map1}
    slots2 = {slot for slot, _ in map2}
    common = sorted(slots1 & slots2)

    samples1, samples2 = _Samples(), _Samples()
    comparisons: list[SlotComparison] = []
    dropped = 0

    for slot in common:
        if (slot, SlotStatus.DEAD) in map1 or (slot, SlotStatus.DEAD) in map2:
            dropped += 1
            continue
        if not (_is_complete(map1, slot) and _is_complete(map2, slot)):
            dropped += 1
            continue
        if with_accounts and len(accounts1.get(slot, ())) != len(accounts2.get(slot, ())):
            dropped += 1
            continue

        pairs = {kind: _delays(map1, map2, slot, status) for kind, status in _DELAY_STATUSES.items()}
        details1 = build_account_details(accounts1.get(slot), match_map, 1) if with_accounts else []
        details2 = build_account_details(accounts2.get(slot), match_map, 2) if with_accounts else []

        comparisons.append(
            SlotComparison(
                slot=slot,
                endpoint1=_slot_detail(
                    map1, slot, {kind: pair[0] for kind, pair in pairs.items()}, details1, samples1
                ),
                endpoint2=_slot_detail(
                    map2, slot, {kind: pair[1] for kind, pair in pairs.items()}, details2, samples2
                ),
            )
        )

    account_counts = (len(data1.account_updates), len(data2.account_updates))

    def info(data: EndpointData, meta: EndpointMetadata, ping: float, slots: set[int], accounts: int):
        return EndpointInfo(
            endpoint=data.endpoint,
            plugin_type=meta.plugin_type,
            plugin_version=meta.plugin_version,
            avg_ping_ms=ping * 1000.0,
            total_updates=len(data.updates),
            unique_slots=len(slots),
            account_updates=accounts if with_accounts else None,
        )

    return BenchmarkResult(
        version=version,
        with_accounts=with_accounts,
        account_owner=account_owner,
        grpc_config=grpc_config,
        metadata=Metadata(
            total_slots_collected=len(slots1) + len(slots2),
            common_slots=len(common),
            compared_slots=len(comparisons),
            dropped_slots=dropped,
            duration_ms=duration_ms,
            benchmark_start_time=benchmark_start,
            total_account_updates=account_counts if with_accounts else None,
        ),
        endpoints=(
            info(data1, meta1, ping1, slots1, account_counts[0]),
            info(data2, meta2, ping2, slots2, account_counts[1]),
        ),
        endpoint1_summary=samples1.summary(with_accounts),
        endpoint2_summary=samples2.summary(with_accounts),
        slots=comparisons,
    )