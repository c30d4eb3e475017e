"""Benchmark configuration loaded from TOML."""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from typing import Any, Callable

_NS_PER_SECOND = 1_000_000_000
_SECONDS_PER_MONTH = 2_630_016
_SECONDS_PER_YEAR = 31_557_600
_U32_MAX = 2**32 - 1

_UNITS_NS = {
    **dict.fromkeys(("nanos", "nsec", "ns"), 1),
    **dict.fromkeys(("usec", "us", "µs"), 1_000),
    **dict.fromkeys(("millis", "msec", "ms"), 1_000_000),
    **dict.fromkeys(("seconds", "second", "secs", "sec", "s"), _NS_PER_SECOND),
    **dict.fromkeys(("minutes", "minute", "mins", "min", "m"), 60 * _NS_PER_SECOND),
    **dict.fromkeys(("hours", "hour", "hrs", "hr", "h"), 3600 * _NS_PER_SECOND),
    **dict.fromkeys(("days", "day", "d"), 86_400 * _NS_PER_SECOND),
    **dict.fromkeys(("weeks", "week", "w"), 604_800 * _NS_PER_SECOND),
    **dict.fromkeys(("months", "month", "M"), _SECONDS_PER_MONTH * _NS_PER_SECOND),
    **dict.fromkeys(("years", "year", "y"), _SECONDS_PER_YEAR * _NS_PER_SECOND),
}

_ITEM = r"(\d+)\s*([^\d\s]+)"
_ITEM_RE = re.compile(_ITEM)
_DURATION_RE = re.compile(rf"\s*(?:{_ITEM}\s*)+")


class ConfigError(Exception):
    """The configuration file could not be read or parsed."""


def parse_duration(text: str) -> float:
    """Parse a human-readable duration such as ``"1m 30s"`` into seconds."""
    if not text.strip():
        raise ValueError("value was empty")
    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"invalid duration {text!r}: time unit needed after each number")
    total_ns = 0
    for number, unit in _ITEM_RE.findall(text):
        try:
            total_ns += int(number) * _UNITS_NS[unit]
        except KeyError:
            raise ValueError(f"unknown time unit {unit!r}") from None
    return total_ns / _NS_PER_SECOND


def format_duration(seconds: float) -> str:
    """Format seconds as a human-readable duration, e.g. ``"1h 30m"``."""
    if seconds < 0:
        raise ValueError("duration must not be negative")
    total_ns = round(seconds * _NS_PER_SECOND)
    if total_ns == 0:
        return "0s"
    secs, nanos = divmod(total_ns, _NS_PER_SECOND)
    years, secs = divmod(secs, _SECONDS_PER_YEAR)
    months, secs = divmod(secs, _SECONDS_PER_MONTH)
    days, secs = divmod(secs, 86_400)
    hours, secs = divmod(secs, 3600)
    minutes, secs = divmod(secs, 60)
    millis, nanos = divmod(nanos, 1_000_000)
    micros, nanos = divmod(nanos, 1_000)

    parts = [
        f"{value}{name}{'s' if value > 1 else ''}"
        for value, name in ((years, "year"), (months, "month"), (days, "day"))
        if value
    ]
    parts += [
        f"{value}{name}"
        for value, name in (
            (hours, "h"),
            (minutes, "m"),
            (secs, "s"),
            (millis, "ms"),
            (micros, "us"),
            (nanos, "ns"),
        )
        if value
    ]
    return " ".join(parts)


@dataclass
class GrpcSettings:
    """Connection settings shared by both endpoints. Durations are in seconds."""

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


@dataclass
class BenchmarkSettings:
    """Parameters of the benchmark run."""

    buffer_percentage: float = 0.1
    latency_samples: int = 20


def _parse_error(message: str) -> ConfigError:
    return ConfigError(f"Failed to parse TOML: {message}")


def _as_duration(value: Any, key: str) -> float:
    if not isinstance(value, str):
        raise _parse_error(f"`{key}` must be a duration string")
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise _parse_error(f"`{key}`: {exc}") from exc


def _as_bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise _parse_error(f"`{key}` must be a boolean")
    return value


def _as_uint(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise _parse_error(f"`{key}` must be a non-negative integer")
    return value


def _as_u32(value: Any, key: str) -> int:
    number = _as_uint(value, key)
    if number > _U32_MAX:
        raise _parse_error(f"`{key}` is out of range")
    return number


def _as_float(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _parse_error(f"`{key}` must be a number")
    return float(value)


_Check = Callable[[Any, str], Any]


def _read_table(data: dict, section: str, spec: dict[str, tuple[_Check, bool]]) -> dict[str, Any]:
    table = data.get(section)
    if table is None:
        raise _parse_error(f"missing field `{section}`")
    if not isinstance(table, dict):
        raise _parse_error(f"`{section}` must be a table")
    values = {}
    for key, (check, required) in spec.items():
        if key in table:
            values[key] = check(table[key], key)
        elif required:
            raise _parse_error(f"missing field `{key}` in [{section}]")
        else:
            values[key] = None
    return values


_GRPC_SPEC: dict[str, tuple[_Check, bool]] = {
    "connect_timeout": (_as_duration, True),
    "request_timeout": (_as_duration, True),
    "max_message_size": (_as_uint, True),
    "use_tls": (_as_bool, True),
    "http2_adaptive_window": (_as_bool, True),
    "http2_keep_alive_interval": (_as_duration, False),
    "initial_connection_window_size": (_as_u32, False),
    "initial_stream_window_size": (_as_u32, False),
    "tcp_nodelay": (_as_bool, True),
    "tcp_keepalive": (_as_duration, False),
    "buffer_size": (_as_uint, False),
}

_BENCHMARK_SPEC: dict[str, tuple[_Check, bool]] = {
    "buffer_percentage": (_as_float, True),
    "latency_samples": (_as_uint, True),
}

_DURATION_KEYS = frozenset(
    key for key, (check, _) in _GRPC_SPEC.items() if check is _as_duration
)


@dataclass
class Config:
    """Complete benchmark configuration."""

    grpc: GrpcSettings = field(default_factory=GrpcSettings)
    benchmark: BenchmarkSettings = field(default_factory=BenchmarkSettings)

    @classmethod
    def load(cls, path: str) -> Config:
        """Read and parse a TOML configuration file."""
        try:
            with open(path, encoding="utf-8") as handle:
                content = handle.read()
        except OSError as exc:
            raise ConfigError(f"Failed to read config file: {exc}") from exc
        return cls.from_toml(content)

    @classmethod
    def from_toml(cls, text: str) -> Config:
        """Parse configuration from TOML text."""
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise _parse_error(str(exc)) from exc
        return cls(
            grpc=GrpcSettings(**_read_table(data, "grpc", _GRPC_SPEC)),
            benchmark=BenchmarkSettings(**_read_table(data, "benchmark", _BENCHMARK_SPEC)),
        )

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Serialise to the TOML layout; durations become strings, unset options are left out."""
        grpc = {}
        for key in _GRPC_SPEC:
            value = getattr(self.grpc, key)
            if value is None:
                continue
            grpc[key] = format_duration(value) if key in _DURATION_KEYS else value
        benchmark = {key: getattr(self.benchmark, key) for key in _BENCHMARK_SPEC}
        return {"grpc": grpc, "benchmark": benchmark}