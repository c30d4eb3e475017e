import os

import pytest

from thorofare.types import (
    AccountUpdate,
    EndpointData,
    SlotStatus,
    SlotUpdate,
    b58decode,
    b58encode,
    calculate_capacity,
    is_valid_pubkey,
)


@pytest.mark.parametrize(
    "code, status",
    [
        (0, SlotStatus.PROCESSED),
        (1, SlotStatus.CONFIRMED),
        (2, SlotStatus.FINALIZED),
        (3, SlotStatus.FIRST_SHRED_RECEIVED),
        (4, SlotStatus.COMPLETED),
        (5, SlotStatus.CREATED_BANK),
        (6, SlotStatus.DEAD),
    ],
)
def test_from_code_known(code, status):
    assert SlotStatus.from_code(code) is status


@pytest.mark.parametrize("code", [7, 99, -1])
def test_from_code_unknown_is_dead(code):
    assert SlotStatus.from_code(code) is SlotStatus.DEAD


@pytest.mark.parametrize(
    "code, name",
    [
        (0, "Processed"),
        (3, "FirstShredReceived"),
        (5, "CreatedBank"),
        (6, "Dead"),
    ],
)
def test_status_names_match_display(code, name):
    assert SlotStatus.from_code(code).value == name


def test_slot_update_fields():
    update = SlotUpdate(slot=5, status=SlotStatus.COMPLETED, instant=1.0, system_time=2.0)
    assert update.slot == 5
    assert update.status is SlotStatus.COMPLETED


def test_account_update_fields():
    update = AccountUpdate(
        slot=9, pubkey=bytes(32), write_version=3, tx_signature=bytes(64), instant=1.0, system_time=2.0
    )
    assert update.write_version == 3
    assert len(update.tx_signature) == 64


def test_b58_zero_pubkey():
    assert b58encode(bytes(32)) == "1" * 32


def test_b58_known_vector():
    assert b58encode(b"hello world") == "StV1DL6CwTryKyV"


@pytest.mark.parametrize("data", [b"", b"\0", b"\0\0\x01", bytes(range(32)), os.urandom(64)])
def test_b58_round_trip(data):
    assert b58decode(b58encode(data)) == data


def test_b58_decode_invalid():
    with pytest.raises(ValueError):
        b58decode("0OIl")


def test_is_valid_pubkey():
    assert is_valid_pubkey(b58encode(bytes(range(32))))
    assert is_valid_pubkey(b58encode(bytes(32)))
    assert not is_valid_pubkey(b58encode(bytes(31)))
    assert not is_valid_pubkey(b58encode(bytes(range(1, 34))))
    assert not is_valid_pubkey("not-base58!")


def test_calculate_capacity_default_run():
    assert calculate_capacity(1000, 0.1) == 6600


@pytest.mark.parametrize("slots", [1, 7, 250, 1000])
def test_calculate_capacity_without_buffer(slots):
    assert calculate_capacity(slots, 0.0) == slots * 6


def test_calculate_capacity_grows_with_buffer():
    assert calculate_capacity(100, 0.5) > calculate_capacity(100, 0.1)


def test_endpoint_data_create():
    data = EndpointData.create("http://localhost:10000", 1000, 0.1)
    assert data.endpoint == "http://localhost:10000"
    assert data.updates == []
    assert data.account_updates == []
    assert data.expected_updates == calculate_capacity(1000, 0.1)