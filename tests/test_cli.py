import time

import pytest

from thorofare.cli import VERSION, build_parser, format_summary, main, validate_args
from thorofare.processor import EndpointMetadata, GrpcConfigSummary, process
from thorofare.types import EndpointData

OWNER = "11111111111111111111111111111111"


def _parse(*extra):
    return build_parser().parse_args(["--endpoint1", "http://one:1", "--endpoint2", "http://two:2", *extra])


def test_parser_defaults():
    args = _parse()
    assert args.endpoint1 == "http://one:1"
    assert args.endpoint2 == "http://two:2"
    assert args.slots == 1000
    assert args.config == "config.toml"
    assert args.output == "benchmark_results.json"
    assert args.log_level == "info"
    assert args.with_accounts is False
    assert args.account_owner is None
    assert args.x_token1 is None
    assert args.endpoint1_richat is False


def test_parser_options():
    args = _parse("--x-token1", "token", "--endpoint2-richat", "-s", "25", "-c", "other.toml",
                  "--with-accounts", "--account-owner", OWNER)
    assert args.x_token1 == "token"
    assert args.endpoint2_richat is True
    assert args.slots == 25
    assert args.config == "other.toml"
    assert args.with_accounts is True
    assert args.account_owner == OWNER


def test_parser_requires_endpoints():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--endpoint1", "http://one:1"])


def test_validate_with_accounts_without_owner():
    with pytest.raises(ValueError, match="must be used together"):
        validate_args(_parse("--with-accounts"))


def test_validate_owner_without_with_accounts():
    with pytest.raises(ValueError, match="must be used together"):
        validate_args(_parse("--account-owner", OWNER))


def test_validate_invalid_owner():
    with pytest.raises(ValueError, match="Invalid account owner pubkey: not0valid"):
        validate_args(_parse("--with-accounts", "--account-owner", "not0valid"))


def _result(with_accounts=False):
    summary = GrpcConfigSummary(30000, 30000, 1024, True, False, None, None)
    return process(
        VERSION,
        with_accounts,
        None,
        summary,
        EndpointData("http://one:1"),
        EndpointData("http://two:2"),
        EndpointMetadata("Yellowstone", "1.0"),
        EndpointMetadata("Richat", "2.0"),
        0.001,
        0.002,
        time.monotonic(),
    )


def test_format_summary_contents():
    text = format_summary(_result(), VERSION, False)
    lines = text.split("\n")
    assert "=== BENCHMARK SUMMARY ===" in lines
    assert f"Tool version: {VERSION}" in lines
    assert "Compared slots: 0" in lines
    assert "Endpoint 1: http://one:1 (Yellowstone v1.0) (ping: 1.00ms)" in lines
    assert "Endpoint 2: http://two:2 (Richat v2.0) (ping: 2.00ms)" in lines
    assert "Account Delay: p50=0.00, p90=0.00, p99=0.00" in lines


def test_format_summary_has_both_performance_sections():
    text = format_summary(_result(), VERSION, False)
    assert text.count("PERFORMANCE (ms) ===") == 2
    assert text.count("First Shred Delay:") == 2
    assert text.index("ENDPOINT 1 PERFORMANCE") < text.index("ENDPOINT 2 PERFORMANCE")


def test_main_rejects_inconsistent_account_options(tmp_path):
    output = tmp_path / "out.json"
    code = main([
        "--endpoint1", "http://one:1", "--endpoint2", "http://two:2",
        "--with-accounts", "--config", str(tmp_path / "missing.toml"), "--output", str(output),
    ])
    assert code == 1
    assert not output.exists()


def test_main_reports_connection_failure(tmp_path):
    output = tmp_path / "out.json"
    code = main([
        "--endpoint1", "ftp://one", "--endpoint2", "ftp://two",
        "--config", str(tmp_path / "missing.toml"), "--output", str(output),
    ])
    assert code == 1
    assert not output.exists()