# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for the pure coupon validation pipeline."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from creditline_core.services.coupons import compute_discount, validate_coupon
from creditline_core.types import Coupon, CouponInvalidReason, CouponType

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _coupon(**overrides):
    base = Coupon(
        id="cp_1",
        code="SAVE20",
        name="Save 20%",
        type=CouponType.PERCENTAGE,
        value=20,
        valid_from=NOW - timedelta(days=1),
    )
    return replace(base, **overrides)


class TestDiscount:
    def test_percentage_capped_by_max_discount(self):
        coupon = _coupon(value=20, max_discount=1000)
        result = validate_coupon(coupon, user_redemptions=0, now=NOW, order_amount=10000)
        assert result.valid
        assert result.discount_amount == 1000

    def test_percentage_without_cap(self):
        assert compute_discount(_coupon(value=20), 10000) == 2000

    def test_percentage_floors_fractions(self):
        assert compute_discount(_coupon(value=15), 999) == 149

    def test_fixed_amount_never_exceeds_order(self):
        coupon = _coupon(type=CouponType.FIXED_AMOUNT, value=500)
        result = validate_coupon(coupon, user_redemptions=0, now=NOW, order_amount=300)
        assert result.discount_amount == 300

    def test_fixed_amount_below_order(self):
        assert compute_discount(_coupon(type=CouponType.FIXED_AMOUNT, value=500), 2000) == 500

    def test_credits_coupon_grants_instead_of_discount(self):
        coupon = _coupon(type=CouponType.CREDITS, value=250)
        result = validate_coupon(coupon, user_redemptions=0, now=NOW, order_amount=10000)
        assert result.discount_amount == 0
        assert result.credit_grant == 250

    def test_no_order_amount_means_no_discount(self):
        result = validate_coupon(_coupon(), user_redemptions=0, now=NOW)
        assert result.valid
        assert result.discount_amount == 0


class TestValidationOrder:
    @pytest.mark.parametrize(
        "coupon, redemptions, order_amount, reason",
        [
            (None, 0, None, CouponInvalidReason.NOT_FOUND),
            (_coupon(is_active=False), 0, None, CouponInvalidReason.INACTIVE),
            (_coupon(valid_from=NOW + timedelta(hours=1)), 0, None, CouponInvalidReason.NOT_YET_VALID),
            (_coupon(valid_until=NOW - timedelta(seconds=1)), 0, None, CouponInvalidReason.EXPIRED),
            (_coupon(usage_limit=5, usage_count=5), 0, None, CouponInvalidReason.LIMIT_EXCEEDED),
            (_coupon(user_limit=1), 1, None, CouponInvalidReason.USER_LIMIT_EXCEEDED),
            (_coupon(min_amount=5000), 0, 4999, CouponInvalidReason.BELOW_MINIMUM),
        ],
    )
    def test_each_reason(self, coupon, redemptions, order_amount, reason):
        result = validate_coupon(coupon, user_redemptions=redemptions, now=NOW, order_amount=order_amount)
        assert not result.valid
        assert result.reason == reason
        assert result.to_dict() == {"valid": False, "reason": reason.value}

    def test_first_failure_wins(self):
        coupon = _coupon(is_active=False, valid_until=NOW - timedelta(days=1), usage_limit=1, usage_count=1)
        result = validate_coupon(coupon, user_redemptions=0, now=NOW)
        assert result.reason == CouponInvalidReason.INACTIVE

    def test_valid_until_is_inclusive(self):
        result = validate_coupon(_coupon(valid_until=NOW), user_redemptions=0, now=NOW)
        assert result.valid

    def test_valid_from_is_inclusive(self):
        result = validate_coupon(_coupon(valid_from=NOW), user_redemptions=0, now=NOW)
        assert result.valid

    def test_min_amount_ignored_without_order_amount(self):
        result = validate_coupon(_coupon(min_amount=5000), user_redemptions=0, now=NOW)
        assert result.valid

    def test_min_amount_boundary(self):
        result = validate_coupon(_coupon(min_amount=5000), user_redemptions=0, now=NOW, order_amount=5000)
        assert result.valid
        assert result.discount_amount == 1000
