# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for ExpirationSweeper."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from creditline_core.ledger import LedgerEntryKind, build_expiry_idempotency_key
from creditline_core.services.expiration import ExpirationSweeper
from creditline_core.services.ledger import LedgerService
from creditline_core.services.store import StoreUnavailableError


@pytest.fixture
def ledger(store, cfg, clock):
    return LedgerService(store, cfg, clock=clock, sleep=lambda _s: None)


@pytest.fixture
def sweeper(store, cfg, clock):
    return ExpirationSweeper(store, cfg, clock=clock, sleep=lambda _s: None)


class TestSweepExpired:
    def test_nothing_to_sweep(self, sweeper):
        report = sweeper.sweep_expired()
        assert report.expired_count == 0
        assert report.scanned_users == 0

    def test_unexpired_credits_untouched(self, ledger, sweeper, store, clock):
        ledger.grant("u1", 100, "earned", "promo", expires_at=clock() + timedelta(days=5))
        report = sweeper.sweep_expired()
        assert report.expired_count == 0
        assert len(store.list_entries("u1")) == 1

    def test_expires_only_unused_remainder(self, ledger, sweeper, store, clock):
        lot = ledger.grant("u1", 1000, "purchased", "pack", expires_at=clock() + timedelta(days=90))
        clock.advance(days=1)
        ledger.debit("u1", 400, "usage")
        clock.advance(days=90)

        report = sweeper.sweep_expired()

        assert report.expired_count == 1
        assert report.expired_amount == 600
        assert report.affected_users == 1
        offsets = [e for e in store.list_entries("u1") if e.kind == LedgerEntryKind.EXPIRED]
        assert len(offsets) == 1
        assert offsets[0].amount == -600
        assert offsets[0].source_entry_id == lot.id
        assert offsets[0].idempotency_key == build_expiry_idempotency_key(lot.id)

        balance = store.get_balance("u1")
        assert balance.available_credits == 0
        assert balance.expired_credits == 600
        assert balance.used_credits == 400

    def test_sweep_is_idempotent(self, ledger, sweeper, store, clock):
        ledger.grant("u1", 300, "earned", "promo", expires_at=clock() + timedelta(days=1))
        ledger.grant("u1", 200, "purchased", "pack")
        clock.advance(days=2)

        sweeper.sweep_expired()
        first = ledger.recompute_balance("u1", persist=False)
        count_after_first = len(store.list_entries("u1"))

        second_report = sweeper.sweep_expired()
        second = ledger.recompute_balance("u1", persist=False)

        assert second_report.expired_count == 0
        assert len(store.list_entries("u1")) == count_after_first
        assert first.same_amounts(second)
        assert second.available_credits == 200
        assert second.expired_credits == 300

    def test_fully_consumed_lot_not_expired(self, ledger, sweeper, store, clock):
        ledger.grant("u1", 100, "earned", "promo", expires_at=clock() + timedelta(days=1))
        ledger.debit("u1", 100, "spent")
        clock.advance(days=2)
        report = sweeper.sweep_expired()
        assert report.expired_count == 0
        assert all(e.kind != LedgerEntryKind.EXPIRED for e in store.list_entries("u1"))

    def test_failing_user_does_not_stop_sweep(self, ledger, sweeper, store, clock):
        ledger.grant("bad", 100, "earned", "promo", expires_at=clock() + timedelta(days=1))
        ledger.grant("good", 100, "earned", "promo", expires_at=clock() + timedelta(days=1))
        clock.advance(days=2)

        real_list = store.list_entries

        def flaky_list(user_id):
            if user_id == "bad":
                raise StoreUnavailableError("backend down")
            return real_list(user_id)

        with patch.object(store, "list_entries", side_effect=flaky_list):
            report = sweeper.sweep_expired()

        assert report.failed_users == ["bad"]
        assert report.expired_amount == 100
        assert report.affected_users == 1

    def test_small_batches_cover_every_user(self, ledger, store, clock):
        from creditline_core.config import EngineConfig

        cfg = EngineConfig(sweep_batch_size=2)
        sweeper = ExpirationSweeper(store, cfg, clock=clock)
        for i in range(5):
            ledger.grant(f"u{i}", 10, "earned", "promo", expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=2)
        report = sweeper.sweep_expired()
        assert report.scanned_users == 5
        assert report.expired_amount == 50
