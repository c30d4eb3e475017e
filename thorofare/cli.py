"""Command line entry point: benchmark two endpoints and write a JSON report."""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from pathlib import Path
from typing import Sequence

from thorofare.collector import Collector
from thorofare.config import Config, ConfigError
from thorofare.grpc import GrpcError
from thorofare.processor import BenchmarkResult, EndpointSummary, Percentiles, process
from thorofare.types import is_valid_pubkey

VERSION = "0.2.0"

logger = logging.getLogger("thorofare")

_LEVELS = {
    "off": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
    "0": logging.CRITICAL + 10,
    "1": logging.ERROR,
    "2": logging.WARNING,
    "3": logging.INFO,
    "4": logging.DEBUG,
    "5": logging.DEBUG,
}


def build_parser() -> argparse.ArgumentParser:
    """The command line parser."""
    parser = argparse.ArgumentParser(prog="grpc-bench", description="Benchmark gRPC endpoints")
    parser.add_argument("--endpoint1", required=True, help="First endpoint to benchmark")
    parser.add_argument("--endpoint2", required=True, help="Second endpoint to benchmark")
    parser.add_argument("--x-token1", help="X-Token for first endpoint")
    parser.add_argument("--x-token2", help="X-Token for second endpoint")
    parser.add_argument("--endpoint1-richat", action="store_true", help="Use Richat interface for endpoint1")
    parser.add_argument("--endpoint2-richat", action="store_true", help="Use Richat interface for endpoint2")
    parser.add_argument("-s", "--slots", type=int, default=1000, help="Number of slots to collect")
    parser.add_argument("-c", "--config", default="config.toml", help="Config file path")
    parser.add_argument("--output", default="benchmark_results.json", help="Output JSON file")
    parser.add_argument("--log-level", default="info", help="Log level")
    parser.add_argument(
        "--with-accounts", action="store_true", help="Collect all account updates for comparison"
    )
    parser.add_argument(
        "--account-owner",
        help="Filter accounts by owner pubkey (optional, requires --with-accounts)",
    )
    return parser


def validate_args(args: argparse.Namespace) -> None:
    """Raise ValueError if the account options are inconsistent or the owner is invalid."""
    if (args.account_owner is not None) != bool(args.with_accounts):
        raise ValueError("--with-accounts and --account-owner must be used together")
    if args.account_owner is not None and not is_valid_pubkey(args.account_owner):
        raise ValueError(f"Invalid account owner pubkey: {args.account_owner}")


def _line(name: str, values: Percentiles | None) -> str:
    p50, p90, p99 = (values.p50, values.p90, values.p99) if values else (0.0, 0.0, 0.0)
    return f"{name}: p50={p50:.2f}, p90={p90:.2f}, p99={p99:.2f}"


def _performance(title: str, summary: EndpointSummary) -> list[str]:
    return [
        f"\n=== {title} PERFORMANCE (ms) ===",
        _line("First Shred Delay", summary.first_shred_delay),
        _line("Processing Delay", summary.processing_delay),
        _line("Confirmation Delay", summary.confirmation_delay),
        _line("Finalization Delay", summary.finalization_delay),
        _line("Download Time", summary.download_time),
        _line("Replay Time", summary.replay_time),
        _line("Confirmation Time", summary.confirmation_time),
        _line("Finalization Time", summary.finalization_time),
        _line("Account Delay", summary.account_delay),
    ]


def format_summary(result: BenchmarkResult, version: str, with_accounts: bool) -> str:
    """Human-readable summary of a benchmark report."""
    meta = result.metadata
    lines = [
        "\n=== BENCHMARK SUMMARY ===",
        f"Tool version: {version}",
        f"With Accounts: {str(with_accounts).lower()}",
        f"Total slots collected: {meta.total_slots_collected}",
        f"Common slots: {meta.common_slots}",
        f"Compared slots: {meta.compared_slots}",
        f"Dropped slots: {meta.dropped_slots}",
        f"Duration: {meta.duration_ms}ms",
    ]
    for number, info in enumerate(result.endpoints, start=1):
        lines += [
            f"\nEndpoint {number}: {info.endpoint} ({info.plugin_type} v{info.plugin_version})"
            f" (ping: {info.avg_ping_ms:.2f}ms)",
            f"  Total updates: {info.total_updates}",
            f"  Unique slots: {info.unique_slots}",
        ]
    lines += _performance("ENDPOINT 1", result.endpoint1_summary)
    lines += _performance("ENDPOINT 2", result.endpoint2_summary)
    return "\n".join(lines)


def _configure_logging(level_name: str) -> None:
    level = _LEVELS.get(level_name.strip().lower(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s", force=True)


def _plugin(richat: bool) -> str:
    return "Richat" if richat else "Yellowstone"


def main(argv: Sequence[str] | None = None) -> int:
    """Run the benchmark; returns the process exit status."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)

    try:
        config = Config.load(args.config)
        logger.info("Loaded config from %s", args.config)
    except ConfigError:
        logger.info("Using default config")
        config = Config()

    logger.info("Starting Yellowstone-Thorofare v%s", VERSION)
    logger.info("With Accounts: %s", str(args.with_accounts).lower())
    try:
        validate_args(args)
    except ValueError as exc:
        logger.error("%s", exc)
        return 1
    if args.account_owner is not None:
        logger.info("Account Owner Filter: %s", args.account_owner)
    logger.info("Endpoint 1: %s (%s)", args.endpoint1, _plugin(args.endpoint1_richat))
    logger.info("Endpoint 2: %s (%s)", args.endpoint2, _plugin(args.endpoint2_richat))
    logger.info("Target slots: %d", args.slots)

    start_time = time.monotonic()
    collector = Collector(
        config,
        args.endpoint1,
        args.endpoint2,
        args.x_token1,
        args.x_token2,
        args.endpoint1_richat,
        args.endpoint2_richat,
        args.slots,
        args.with_accounts,
        args.account_owner,
    )

    logger.info("Starting data collection...")
    summary = collector.grpc_config_summary()

    try:
        data1, data2, meta1, meta2, ping1, ping2 = asyncio.run(collector.run())
    except GrpcError as exc:
        logger.error("Benchmark failed: %s", exc)
        return 1

    logger.info("Collection complete, processing results...")
    result = process(
        VERSION,
        args.with_accounts,
        args.account_owner,
        summary,
        data1,
        data2,
        meta1,
        meta2,
        ping1,
        ping2,
        start_time,
    )

    try:
        Path(args.output).write_text(result.to_json(), encoding="utf-8")
    except OSError as exc:
        logger.error("Unable to write output file: %s", exc)
        return 1
    logger.info("Results saved to %s", args.output)

    for line in format_summary(result, VERSION, args.with_accounts).split("\n"):
        logger.info("%s", line)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())