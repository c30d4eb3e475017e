"""Matching of account updates between two endpoints."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from thorofare.types import AccountUpdate, b58encode

AccountKey = tuple[int, str, str]
Arrivals = list[tuple[int, float]]
MatchMap = dict[AccountKey, tuple[Arrivals, Arrivals]]


@dataclass
class AccountUpdateDetail:
    """One account update as written to the report."""

    pubkey: str
    write_version: int
    tx_signature: str
    delay_ms: float | None
    timestamp: int


def timestamp_ms(system_time: float) -> int:
    """Milliseconds since the Unix epoch for a wall-clock time in seconds."""
    if system_time < 0:
        raise ValueError("time is before the Unix epoch")
    return int(system_time * 1000)


def _account_key(update: AccountUpdate) -> AccountKey:
    return (update.slot, b58encode(update.pubkey), b58encode(update.tx_signature))


def group_accounts_by_slot(updates: Iterable[AccountUpdate]) -> dict[int, list[AccountUpdate]]:
    """Group account updates by slot, keeping arrival order within each slot."""
    by_slot: dict[int, list[AccountUpdate]] = defaultdict(list)
    for update in updates:
        by_slot[update.slot].append(update)
    return dict(by_slot)


def build_account_match_map(
    updates1: Iterable[AccountUpdate], updates2: Iterable[AccountUpdate]
) -> MatchMap:
    """Index both endpoints' updates by (slot, pubkey, signature).

    Each side holds (write_version, instant) pairs sorted by write version.
    """
    match_map: MatchMap = {}
    for side, updates in enumerate((updates1, updates2)):
        for update in updates:
            arrivals = match_map.setdefault(_account_key(update), ([], []))
            arrivals[side].append((update.write_version, update.instant))
    for first, second in match_map.values():
        first.sort(key=lambda pair: pair[0])
        second.sort(key=lambda pair: pair[0])
    return match_map


def _delay_ms(arrivals: tuple[Arrivals, Arrivals], endpoint_num: int) -> float | None:
    first, second = arrivals
    if not first or not second:
        return None
    instant1, instant2 = first[0][1], second[0][1]
    own, other = (instant1, instant2) if endpoint_num == 1 else (instant2, instant1)
    if own < other:
        return 0.0
    return (own - other) * 1000.0


def build_account_details(
    updates: Iterable[AccountUpdate] | None, match_map: MatchMap, endpoint_num: int
) -> list[AccountUpdateDetail]:
    """Report entries for one endpoint's updates, with delay against the other endpoint."""
    if updates is None:
        return []
    details = []
    for update in updates:
        key = _account_key(update)
        arrivals = match_map.get(key)
        details.append(
            AccountUpdateDetail(
                pubkey=key[1],
                write_version=update.write_version,
                tx_signature=key[2],
                delay_ms=_delay_ms(arrivals, endpoint_num) if arrivals else None,
                timestamp=timestamp_ms(update.system_time),
            )
        )
    return details