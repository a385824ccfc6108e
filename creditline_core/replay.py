# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Ledger replay.

The ledger is the only source of truth for a user's credits. Replaying it:
- builds one lot per positive entry
- allocates every negative entry to lots still unexpired at that moment,
  soonest expiry first, non-expiring lots last, oldest first within a tie
- closes a lot when an expired offset names it via source_entry_id
- carries any unallocated spend as a deficit that later grants absorb

The result yields both the balance snapshot and the lots whose unused
remainder is past expiry and still needs an explicit offset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from creditline_core.ledger import LedgerEntry, LedgerEntryKind
from creditline_core.types import CreditBalance


@dataclass(slots=True)
class _Lot:
    entry: LedgerEntry
    remaining: int
    closed: bool = False


def _consumption_order(lot: _Lot) -> Tuple[bool, datetime | None]:
    expires_at = lot.entry.expires_at
    return (expires_at is None, expires_at)


@dataclass(frozen=True, slots=True)
class OutstandingExpiry:
    """Unused remainder of a lot that is past expiry and not yet offset."""
    entry: LedgerEntry
    remaining: int


@dataclass(frozen=True, slots=True)
class LedgerReplay:
    user_id: str
    as_of: datetime
    total_credits: int
    available_credits: int
    used_credits: int
    expired_credits: int
    deficit: int
    entry_count: int
    next_expiry_at: Optional[datetime] = None
    outstanding_expiries: Tuple[OutstandingExpiry, ...] = ()
    lot_remaining: Dict[str, int] = field(default_factory=dict)

    def to_balance(self, *, version: int | None = None) -> CreditBalance:
        return CreditBalance(
            user_id=self.user_id,
            total_credits=self.total_credits,
            available_credits=self.available_credits,
            used_credits=self.used_credits,
            expired_credits=self.expired_credits,
            last_updated=self.as_of,
            version=self.entry_count if version is None else version,
            next_expiry_at=self.next_expiry_at,
        )


def _allocate(lots: Iterable[_Lot], need: int) -> int:
    """Take up to `need` from lots in consumption order. Returns the shortfall."""
    for lot in sorted(lots, key=_consumption_order):
        if need <= 0:
            break
        take = min(lot.remaining, need)
        lot.remaining -= take
        need -= take
    return need


def replay_ledger(user_id: str, entries: Iterable[LedgerEntry], now: datetime) -> LedgerReplay:
    ordered = sorted(entries, key=lambda e: e.created_at)

    lots: List[_Lot] = []
    by_id: Dict[str, _Lot] = {}
    deficit = 0
    total = 0
    used = 0
    expired = 0

    for entry in ordered:
        if entry.kind == LedgerEntryKind.EXPIRED:
            magnitude = abs(entry.amount)
            expired += magnitude
            source = by_id.get(entry.source_entry_id or "")
            if source is not None:
                source.remaining -= min(source.remaining, magnitude)
                source.closed = True
            else:
                # Offset without a source: close against lots already past expiry.
                _allocate(
                    (lot for lot in lots if lot.remaining > 0 and lot.entry.is_expired_at(entry.created_at)),
                    magnitude,
                )
            continue

        total += entry.amount
        if entry.kind == LedgerEntryKind.USED:
            used += abs(entry.amount)

        if entry.amount > 0:
            lot = _Lot(entry=entry, remaining=entry.amount)
            if deficit:
                absorbed = min(deficit, lot.remaining)
                lot.remaining -= absorbed
                deficit -= absorbed
            lots.append(lot)
            by_id[entry.id] = lot
        elif entry.amount < 0:
            deficit += _allocate(
                (lot for lot in lots if lot.remaining > 0 and not lot.entry.is_expired_at(entry.created_at)),
                -entry.amount,
            )

    live_total = 0
    next_expiry: Optional[datetime] = None
    outstanding: List[OutstandingExpiry] = []
    for lot in lots:
        if lot.entry.is_expired_at(now):
            if lot.remaining > 0 and not lot.closed:
                outstanding.append(OutstandingExpiry(entry=lot.entry, remaining=lot.remaining))
            continue
        live_total += lot.remaining
        expires_at = lot.entry.expires_at
        if lot.remaining > 0 and expires_at is not None:
            if next_expiry is None or expires_at < next_expiry:
                next_expiry = expires_at

    return LedgerReplay(
        user_id=user_id,
        as_of=now,
        total_credits=total,
        available_credits=max(0, live_total - deficit),
        used_credits=used,
        expired_credits=expired,
        deficit=deficit,
        entry_count=len(ordered),
        next_expiry_at=next_expiry,
        outstanding_expiries=tuple(outstanding),
        lot_remaining={lot.entry.id: lot.remaining for lot in lots},
    )
