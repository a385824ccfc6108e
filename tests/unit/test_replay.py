# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for ledger replay."""

from datetime import datetime, timedelta, timezone

from creditline_core.ledger import LedgerEntry, LedgerEntryKind
from creditline_core.replay import replay_ledger

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _entry(entry_id, amount, kind, at, *, expires_at=None, source=None):
    return LedgerEntry(
        id=entry_id,
        user_id="u1",
        amount=amount,
        kind=LedgerEntryKind(kind),
        description=entry_id,
        created_at=at,
        expires_at=expires_at,
        source_entry_id=source,
    )


class TestReplayTotals:
    def test_empty_ledger(self):
        result = replay_ledger("u1", [], T0)
        assert result.total_credits == 0
        assert result.available_credits == 0
        assert result.entry_count == 0
        assert result.next_expiry_at is None

    def test_grant_and_debit(self):
        entries = [
            _entry("g1", 1000, "purchased", T0),
            _entry("d1", -300, "used", T0 + timedelta(hours=1)),
        ]
        result = replay_ledger("u1", entries, T0 + timedelta(days=1))
        assert result.total_credits == 700
        assert result.available_credits == 700
        assert result.used_credits == 300
        assert result.expired_credits == 0

    def test_expired_lot_is_not_available_before_sweep(self):
        entries = [_entry("g1", 500, "earned", T0, expires_at=T0 + timedelta(days=1))]
        result = replay_ledger("u1", entries, T0 + timedelta(days=2))
        assert result.available_credits == 0
        assert result.total_credits == 500
        assert [o.remaining for o in result.outstanding_expiries] == [500]

    def test_expiry_exactly_at_now_counts_as_expired(self):
        expires = T0 + timedelta(days=1)
        entries = [_entry("g1", 500, "earned", T0, expires_at=expires)]
        assert replay_ledger("u1", entries, expires).available_credits == 0


class TestPartialConsumption:
    def test_only_unused_remainder_is_outstanding(self):
        expires = T0 + timedelta(days=90)
        entries = [
            _entry("g1", 1000, "purchased", T0, expires_at=expires),
            _entry("d1", -400, "used", T0 + timedelta(days=1)),
        ]
        result = replay_ledger("u1", entries, T0 + timedelta(days=91))

        assert result.available_credits == 0
        assert len(result.outstanding_expiries) == 1
        assert result.outstanding_expiries[0].entry.id == "g1"
        assert result.outstanding_expiries[0].remaining == 600

    def test_offset_closes_the_lot(self):
        expires = T0 + timedelta(days=90)
        entries = [
            _entry("g1", 1000, "purchased", T0, expires_at=expires),
            _entry("d1", -400, "used", T0 + timedelta(days=1)),
            _entry("x1", -600, "expired", T0 + timedelta(days=91), source="g1"),
        ]
        result = replay_ledger("u1", entries, T0 + timedelta(days=92))

        assert result.outstanding_expiries == ()
        assert result.available_credits == 0
        assert result.expired_credits == 600
        assert result.total_credits == 600
        assert result.used_credits == 400

    def test_soonest_expiry_is_consumed_first(self):
        entries = [
            _entry("forever", 500, "purchased", T0),
            _entry("soon", 500, "earned", T0, expires_at=T0 + timedelta(days=10)),
            _entry("d1", -300, "used", T0 + timedelta(days=1)),
        ]
        result = replay_ledger("u1", entries, T0 + timedelta(days=2))
        assert result.lot_remaining == {"forever": 500, "soon": 200}
        assert result.next_expiry_at == T0 + timedelta(days=10)

        later = replay_ledger("u1", entries, T0 + timedelta(days=11))
        assert later.available_credits == 500
        assert [(o.entry.id, o.remaining) for o in later.outstanding_expiries] == [("soon", 200)]

    def test_permanent_balance_survives_expiry_of_promo_lot(self):
        expires = T0 + timedelta(days=1)
        entries = [
            _entry("permanent", 1000, "purchased", T0),
            _entry("promo", 500, "earned", T0, expires_at=expires),
            _entry("d1", -400, "used", T0 + timedelta(hours=1)),
        ]
        before = replay_ledger("u1", entries, T0 + timedelta(hours=2))
        assert before.available_credits == 1100
        assert before.lot_remaining == {"permanent": 1000, "promo": 100}

        after = replay_ledger("u1", entries, T0 + timedelta(days=2))
        assert after.available_credits == 1000
        assert [(o.entry.id, o.remaining) for o in after.outstanding_expiries] == [("promo", 100)]

        swept = entries + [_entry("x1", -100, "expired", T0 + timedelta(days=2), source="promo")]
        settled = replay_ledger("u1", swept, T0 + timedelta(days=3))
        assert settled.available_credits == 1000
        assert settled.used_credits == 400
        assert settled.expired_credits == 100

    def test_debit_after_expiry_skips_expired_lot(self):
        entries = [
            _entry("old", 100, "earned", T0, expires_at=T0 + timedelta(days=1)),
            _entry("new", 100, "purchased", T0),
            _entry("d1", -50, "used", T0 + timedelta(days=2)),
        ]
        result = replay_ledger("u1", entries, T0 + timedelta(days=3))
        assert result.lot_remaining == {"old": 100, "new": 50}
        assert result.available_credits == 50

    def test_fully_consumed_lot_has_nothing_outstanding(self):
        entries = [
            _entry("g1", 100, "earned", T0, expires_at=T0 + timedelta(days=1)),
            _entry("d1", -100, "used", T0 + timedelta(hours=1)),
        ]
        result = replay_ledger("u1", entries, T0 + timedelta(days=5))
        assert result.outstanding_expiries == ()
        assert result.next_expiry_at is None


class TestDeficit:
    def test_unfunded_negative_is_absorbed_by_later_grant(self):
        entries = [
            _entry("d1", -200, "used", T0),
            _entry("g1", 500, "purchased", T0 + timedelta(hours=1)),
        ]
        before = replay_ledger("u1", entries[:1], T0)
        assert before.available_credits == 0
        assert before.deficit == 200

        after = replay_ledger("u1", entries, T0 + timedelta(days=1))
        assert after.available_credits == 300
        assert after.deficit == 0

    def test_balance_snapshot_carries_version(self):
        entries = [_entry("g1", 10, "earned", T0), _entry("g2", 5, "earned", T0)]
        balance = replay_ledger("u1", entries, T0).to_balance()
        assert balance.version == 2
        assert balance.available_credits == 15
        assert balance.last_updated == T0
