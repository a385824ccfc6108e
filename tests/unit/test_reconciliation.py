# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for ReconciliationService."""

from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

import pytest

from creditline_core.services.store import StoreUnavailableError
from creditline_core.types import Subscription


def _strand_credit_redemption(engine, store):
    """Redemption committed, grant failed, rollback failed."""
    engine.create_coupon("BONUS", "Bonus", "credits", 300)
    with patch.object(engine.ledger, "grant", side_effect=StoreUnavailableError("ledger down")), patch.object(
        store, "rollback_redemption", side_effect=StoreUnavailableError("coupons down")
    ):
        with pytest.raises(StoreUnavailableError):
            engine.redeem_coupon("BONUS", "u1", discount_amount=0)
    return store.list_redemptions(user_id="u1")[0]


class TestGrantRollForward:
    def test_missing_grant_is_rolled_forward(self, engine, store, clock):
        redemption = _strand_credit_redemption(engine, store)
        clock.advance(seconds=engine.config.reconcile_grace_s + 1)

        report = engine.reconcile()

        assert report.grants_rolled_forward == [redemption.id]
        assert store.get_entry_by_key(redemption.granted_entry_key).amount == 300
        assert engine.get_credit_balance("u1").available_credits == 300

    def test_recent_redemption_left_alone(self, engine, store):
        _strand_credit_redemption(engine, store)
        report = engine.reconcile()
        assert report.grants_rolled_forward == []

    def test_roll_forward_is_idempotent(self, engine, store, clock):
        _strand_credit_redemption(engine, store)
        clock.advance(seconds=engine.config.reconcile_grace_s + 1)
        engine.reconcile()
        second = engine.reconcile()
        assert second.grants_rolled_forward == []
        assert engine.get_credit_balance("u1").available_credits == 300


class TestAggregateRepair:
    def test_usage_count_matches_rows(self, engine, store):
        engine.create_coupon("SAVE", "Save", "fixed_amount", 100)
        engine.redeem_coupon("SAVE", "u1", discount_amount=100)
        coupon = store.get_coupon("SAVE")
        store.update_coupon(replace(coupon, usage_count=5), expected_version=coupon.version)

        report = engine.reconcile()

        assert report.usage_counts_fixed == {"SAVE": 1}
        assert store.get_coupon("SAVE").usage_count == 1

    def test_drifted_balance_rewritten(self, engine, store):
        engine.grant_credits("u1", 100, "purchased", "top-up")
        cached = store.get_balance("u1")
        store.put_balance(replace(cached, available_credits=999, total_credits=999))

        report = engine.reconcile()

        assert report.balances_fixed == ["u1"]
        assert store.get_balance("u1").available_credits == 100

    def test_consistent_state_reports_nothing(self, engine, store):
        engine.grant_credits("u1", 100, "purchased", "top-up")
        engine.debit_credits("u1", 30, "use")
        report = engine.reconcile()
        assert report.repaired == 0
        assert report.failures == []

    def test_subscription_usage_recomputed(self, engine, store, clock):
        start = clock() - timedelta(days=1)
        store.create_subscription(
            Subscription(
                id="sub_1",
                user_id="u1",
                period_start=start,
                period_end=start + timedelta(days=30),
                usage_limit=100,
            )
        )
        engine.record_usage("u1", "api_call", 120, "requests")
        sub = store.get_subscription("sub_1")
        store.update_subscription(replace(sub, current_usage=3, overage=0), expected_version=sub.version)

        report = engine.reconcile()

        assert report.subscriptions_fixed == {"sub_1": 120}
        fixed = store.get_subscription("sub_1")
        assert fixed.current_usage == 120
        assert fixed.overage == 20
