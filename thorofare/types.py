"""Core data types for slot and account updates collected from an endpoint."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import Enum

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {ch: i for i, ch in enumerate(_B58_ALPHABET)}

PUBKEY_LENGTH = 32
SIGNATURE_LENGTH = 64
_MAX_PUBKEY_B58_LENGTH = 44

# Six slot statuses may arrive per slot (DEAD excluded).
STATUSES_PER_SLOT = 6


class SlotStatus(Enum):
    """Lifecycle stage of a slot as reported by the node."""

    FIRST_SHRED_RECEIVED = "FirstShredReceived"
    COMPLETED = "Completed"
    CREATED_BANK = "CreatedBank"
    PROCESSED = "Processed"
    CONFIRMED = "Confirmed"
    FINALIZED = "Finalized"
    DEAD = "Dead"

    @classmethod
    def from_code(cls, value: int) -> SlotStatus:
        """Map a wire status code to a status; unknown codes mean DEAD."""
        return _STATUS_CODES.get(value, cls.DEAD)


_STATUS_CODES = {
    0: SlotStatus.PROCESSED,
    1: SlotStatus.CONFIRMED,
    2: SlotStatus.FINALIZED,
    3: SlotStatus.FIRST_SHRED_RECEIVED,
    4: SlotStatus.COMPLETED,
    5: SlotStatus.CREATED_BANK,
    6: SlotStatus.DEAD,
}


@dataclass(slots=True)
class SlotUpdate:
    """A slot status change with the moment it was received.

    ``instant`` is a monotonic clock reading in seconds, used for deltas;
    ``system_time`` is wall-clock seconds since the epoch, used for display.
    """

    slot: int
    status: SlotStatus
    instant: float
    system_time: float


@dataclass(slots=True)
class AccountUpdate:
    """An account write observed in a slot, with the moment it was received."""

    slot: int
    pubkey: bytes
    write_version: int
    tx_signature: bytes
    instant: float
    system_time: float


def _f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def calculate_capacity(slot_count: int, buffer_percent: float) -> int:
    """Expected number of slot updates for ``slot_count`` slots plus the buffer."""
    slots_with_buffer = _f32(_f32(float(slot_count)) * _f32(1.0 + _f32(buffer_percent)))
    return int(slots_with_buffer) * STATUSES_PER_SLOT


@dataclass
class EndpointData:
    """Everything collected from one endpoint."""

    endpoint: str
    updates: list[SlotUpdate] = field(default_factory=list)
    account_updates: list[AccountUpdate] = field(default_factory=list)
    expected_updates: int = 0

    @classmethod
    def create(cls, endpoint: str, slot_count: int, buffer_percent: float) -> EndpointData:
        """Create empty endpoint data sized for the planned collection."""
        return cls(
            endpoint=endpoint,
            expected_updates=calculate_capacity(slot_count, buffer_percent),
        )


def b58encode(data: bytes) -> str:
    """Encode bytes with the Bitcoin base58 alphabet."""
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, remainder = divmod(number, 58)
        digits.append(_B58_ALPHABET[remainder])
    leading_zeros = len(data) - len(data.lstrip(b"\0"))
    return "1" * leading_zeros + "".join(reversed(digits))


def b58decode(text: str) -> bytes:
    """Decode a base58 string; raises ValueError on characters outside the alphabet."""
    number = 0
    for ch in text:
        try:
            number = number * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character {ch!r}") from None
    leading_ones = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\0" * leading_ones + body


def is_valid_pubkey(text: str) -> bool:
    """True if ``text`` is a base58 encoding of a 32-byte public key."""
    if len(text) > _MAX_PUBKEY_B58_LENGTH:
        return False
    try:
        return len(b58decode(text)) == PUBKEY_LENGTH
    except ValueError:
        return False