# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for LedgerService."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from creditline_core.ledger import LedgerEntryKind
from creditline_core.services.ledger import LedgerService
from creditline_core.services.store import (
    ConcurrencyConflictError,
    InsufficientFundsError,
    RetriesExhaustedError,
)


@pytest.fixture
def ledger(store, cfg, clock):
    return LedgerService(store, cfg, clock=clock, sleep=lambda _s: None)


class TestAppendAndGrant:
    def test_append_is_pure_insert(self, ledger):
        entry = ledger.append_entry("u1", -50, "used", "manual correction")
        assert entry.amount == -50
        assert ledger.get_balance("u1").available_credits == 0

    def test_zero_amount_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.append_entry("u1", 0, "earned", "nothing")

    def test_grant_rejects_debit_kinds(self, ledger):
        with pytest.raises(ValueError):
            ledger.grant("u1", 100, LedgerEntryKind.USED, "nope")
        with pytest.raises(ValueError):
            ledger.grant("u1", 100, LedgerEntryKind.EXPIRED, "nope")

    def test_grant_rejects_non_positive(self, ledger):
        with pytest.raises(ValueError):
            ledger.grant("u1", -5, "earned", "nope")

    def test_blank_user_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.grant("  ", 5, "earned", "nope")

    def test_grant_refreshes_cache(self, ledger, store):
        ledger.grant("u1", 100, "purchased", "top-up")
        cached = store.get_balance("u1")
        assert cached is not None
        assert cached.available_credits == 100
        assert cached.version == 1

    def test_idempotent_grant_returns_first_entry(self, ledger, store):
        first = ledger.grant("u1", 100, "purchased", "order 1", idempotency_key="order:1")
        second = ledger.grant("u1", 100, "purchased", "order 1", idempotency_key="order:1")
        assert first.id == second.id
        assert len(store.list_entries("u1")) == 1
        assert ledger.get_balance("u1").available_credits == 100


class TestDebit:
    def test_debit_within_balance(self, ledger):
        ledger.grant("u1", 100, "purchased", "top-up")
        entry = ledger.debit("u1", 40, "ai generation")
        assert entry.amount == -40
        assert entry.kind == LedgerEntryKind.USED
        balance = ledger.get_balance("u1")
        assert balance.available_credits == 60
        assert balance.used_credits == 40

    def test_debit_exact_balance(self, ledger):
        ledger.grant("u1", 100, "purchased", "top-up")
        ledger.debit("u1", 100, "all of it")
        assert ledger.get_balance("u1").available_credits == 0

    def test_insufficient_funds(self, ledger, store):
        ledger.grant("u1", 10, "purchased", "top-up")
        with pytest.raises(InsufficientFundsError) as exc_info:
            ledger.debit("u1", 11, "too much")
        assert exc_info.value.available == 10
        assert exc_info.value.requested == 11
        assert len(store.list_entries("u1")) == 1

    def test_debit_ignores_expired_credits(self, ledger, clock):
        ledger.grant("u1", 100, "earned", "promo", expires_at=clock() + timedelta(days=1))
        clock.advance(days=2)
        with pytest.raises(InsufficientFundsError):
            ledger.debit("u1", 1, "after expiry")

    def test_cached_balance_matches_replay(self, ledger, store):
        ledger.grant("u1", 500, "purchased", "top-up")
        ledger.debit("u1", 120, "a")
        ledger.debit("u1", 80, "b")
        cached = store.get_balance("u1")
        fresh = ledger.recompute_balance("u1", persist=False)
        assert cached.same_amounts(fresh)
        assert cached.version == fresh.version == 3

    def test_idempotent_debit(self, ledger, store):
        ledger.grant("u1", 100, "purchased", "top-up")
        first = ledger.debit("u1", 30, "run", idempotency_key="run:7")
        second = ledger.debit("u1", 30, "run", idempotency_key="run:7")
        assert first.id == second.id
        assert ledger.get_balance("u1").available_credits == 70

    def test_stale_cache_falls_back_to_replay(self, ledger, store, clock):
        ledger.grant("u1", 100, "earned", "promo", expires_at=clock() + timedelta(hours=1))
        ledger.grant("u1", 50, "purchased", "top-up")
        clock.advance(hours=2)
        # Cache still says 150; next_expiry_at proves it stale.
        assert store.get_balance("u1").available_credits == 150
        assert ledger.get_balance("u1").available_credits == 50

    def test_conflict_is_retried(self, ledger, store):
        ledger.grant("u1", 100, "purchased", "top-up")
        real_append = store.append_entries
        calls = {"n": 0}

        def flaky_append(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConcurrencyConflictError("simulated")
            return real_append(*args, **kwargs)

        with patch.object(store, "append_entries", side_effect=flaky_append):
            ledger.debit("u1", 10, "retry me")
        assert calls["n"] == 2
        assert ledger.get_balance("u1").available_credits == 90

    def test_retries_exhausted(self, store, clock):
        from creditline_core.config import EngineConfig

        cfg = EngineConfig(max_conflict_retries=2, retry_base_delay_s=0.0, retry_max_delay_s=0.0)
        ledger = LedgerService(store, cfg, clock=clock, sleep=lambda _s: None)
        ledger.grant("u1", 100, "purchased", "top-up")
        with patch.object(store, "append_entries", side_effect=ConcurrencyConflictError("always")):
            with pytest.raises(RetriesExhaustedError):
                ledger.debit("u1", 10, "never lands")


class TestReads:
    def test_history_is_newest_first_and_limited(self, ledger, clock):
        for i in range(5):
            ledger.grant("u1", 10 + i, "earned", f"grant {i}")
            clock.advance(minutes=1)
        history = ledger.get_history("u1", limit=3)
        assert [e.amount for e in history] == [14, 13, 12]

    def test_expiring_credits_window(self, ledger, clock):
        now = clock()
        ledger.grant("u1", 10, "earned", "in 3 days", expires_at=now + timedelta(days=3))
        ledger.grant("u1", 20, "earned", "in 30 days", expires_at=now + timedelta(days=30))
        ledger.grant("u1", 30, "purchased", "never")
        expiring = ledger.get_expiring_credits("u1", days_ahead=7)
        assert [e.amount for e in expiring] == [10]

    def test_expiring_excludes_consumed_lots(self, ledger, clock):
        ledger.grant("u1", 10, "earned", "soon", expires_at=clock() + timedelta(days=2))
        ledger.debit("u1", 10, "spent it")
        assert ledger.get_expiring_credits("u1", days_ahead=7) == []

    @pytest.mark.parametrize("bad", [0, -1])
    def test_non_positive_windows_rejected(self, ledger, bad):
        with pytest.raises(ValueError):
            ledger.get_history("u1", limit=bad)
        with pytest.raises(ValueError):
            ledger.get_expiring_credits("u1", days_ahead=bad)

    def test_user_id_whitespace_is_one_account(self, ledger):
        ledger.grant(" u1 ", 40, "earned", "padded id")
        assert ledger.get_balance("u1").available_credits == 40

    def test_unknown_user_has_zero_balance(self, ledger, store):
        balance = ledger.get_balance("nobody")
        assert balance.available_credits == 0
        assert store.get_balance("nobody") is None
