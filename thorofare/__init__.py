"""Compare slot and account update timing between two Geyser gRPC endpoints."""

__version__ = "0.2.0"