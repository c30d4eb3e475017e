# thorofare

`thorofare` benchmarks two Solana Geyser gRPC endpoints against each other. Each
endpoint can be a Yellowstone or a Richat plugin. It subscribes to slot updates on both
endpoints at the same moment. For every slot that both endpoints saw completely, it
records when each status arrived: first shred received, completed, created bank,
processed, confirmed and finalized.

It reports two kinds of timing:

- **Delays**: how far one endpoint lagged behind the other for the same slot status
  (first shred, processed, confirmed, finalized).
- **Stage times**: download, replay, confirmation and finalization time on each endpoint.

Each is summarised as p50, p90 and p99 in milliseconds. It can also collect account
updates for one owner program and compare their arrival times.

A slot is dropped from the comparison if either endpoint reported it dead, if either
endpoint is missing one of the six statuses, or, when account updates are collected, if
the two endpoints received a different number of account updates for it.

## Installation

```
pip install .
```

## Usage

```
thorofare --endpoint1 https://first.example.com:443 \
          --endpoint2 https://second.example.com:443 \
          --slots 1000
```

Endpoints must be `http://` or `https://` URLs. An `https` endpoint is reached over TLS
with the system's root certificates; an `http` endpoint is reached without TLS.

### Options

| Option | Meaning | Default |
| --- | --- | --- |
| `--endpoint1`, `--endpoint2` | Endpoints to compare (required) | |
| `--x-token1`, `--x-token2` | X-Token sent to each endpoint | none |
| `--endpoint1-richat`, `--endpoint2-richat` | Use the Richat interface for that endpoint | off |
| `-s`, `--slots` | Number of slots to collect | `1000` |
| `-c`, `--config` | TOML configuration file | `config.toml` |
| `--output` | JSON results file | `benchmark_results.json` |
| `--log-level` | `off`, `error`, `warn`, `info`, `debug`, `trace` (or `0`–`5`); anything else means `info` | `info` |
| `--with-accounts` | Also collect account updates | off |
| `--account-owner` | Owner pubkey that filters account updates | none |

`--with-accounts` and `--account-owner` must be given together, and the owner must be a
base58 encoding of a 32-byte public key. Otherwise the command logs an error and exits
with status 1. It also exits with status 1 if collection from either endpoint fails or
the output file cannot be written.

Example with account updates:

```
thorofare --endpoint1 https://first.example.com:443 --x-token1 token \
          --endpoint2 https://second.example.com:443 --endpoint2-richat \
          --with-accounts --account-owner TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA
```

### Configuration

If the config file cannot be read or parsed, these defaults are used:

```toml
[grpc]
connect_timeout = "30s"
request_timeout = "30s"
max_message_size = 1048576
use_tls = true
http2_adaptive_window = false
http2_keep_alive_interval = "30s"
initial_connection_window_size = 65535
initial_stream_window_size = 65535
tcp_nodelay = true
tcp_keepalive = "1m"
buffer_size = 64

[benchmark]
buffer_percentage = 0.1
latency_samples = 20
```

Durations are written like `"1m 30s"`, `"500ms"` or `"2h"`. In a file, the
`http2_keep_alive_interval`, `initial_connection_window_size`,
`initial_stream_window_size`, `tcp_keepalive` and `buffer_size` keys may be left out; all
other keys are required.

`buffer_percentage` sets how many extra slots are collected beyond `--slots`, so that
slots which never finish can be dropped. `latency_samples` sets how many version
requests are timed to measure the average ping of each endpoint; with `0` the ping is
reported as zero.

`use_tls = false` makes an `https` Yellowstone endpoint fail to connect.

## Output

Results are written as pretty-printed JSON to the `--output` file. The file holds:

- the tool version, whether account updates were collected, and the owner filter;
- the gRPC settings used;
- counts of collected, common, compared and dropped slots, the run's duration and start time;
- plugin type, version, average ping and update counts for each endpoint;
- percentile summaries for each endpoint;
- per-slot detail, with transition timestamps, stage durations and, when enabled,
  account updates with their delay against the other endpoint.

A short summary is also logged at the end of the run.

## Library use

```python
from thorofare.config import Config
from thorofare.processor import percentiles

config = Config.load("config.toml")
print(percentiles([0.010, 0.020, 0.030]).p50)  # 20.0
```

The modules are:

- `thorofare.types`: `SlotStatus`, `SlotUpdate`, `AccountUpdate`, `EndpointData`, and
  base58 helpers `b58encode`, `b58decode`, `is_valid_pubkey`.
- `thorofare.config`: `Config`, `GrpcSettings`, `BenchmarkSettings`, `ConfigError`,
  `parse_duration`, `format_duration`.
- `thorofare.grpc`: `GrpcClient`, `GrpcConfig`, `GrpcError` and `SlotCollector`
  (async, built on `grpcio`).
- `thorofare.collector`: `Collector`, which runs both endpoints together.
- `thorofare.accounts`: matching of account updates between endpoints.
- `thorofare.processor`: `process`, `percentiles` and the report classes, with
  `BenchmarkResult.to_dict` and `BenchmarkResult.to_json`.
- `thorofare.cli`: the `thorofare` command (`main`).

## Limitations

- The `tcp_nodelay`, `tcp_keepalive`, `buffer_size` and
  `initial_connection_window_size` settings are read, checked and recorded in the report
  where applicable, but they are not applied to the gRPC connection.
- `http2_keep_alive_interval` is applied to Yellowstone endpoints only, and
  `request_timeout` bounds version requests to Yellowstone endpoints only.
- The tool only measures and reports; it keeps no history between runs and draws no charts.