# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Coupon validation, redemption and registry administration.

validate_coupon() is pure: it classifies a coupon against an order context
and never touches the store. CouponService.redeem() re-runs it against
freshly read state before every commit attempt.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from creditline_core.config import EngineConfig
from creditline_core.ledger import LedgerEntryKind, build_grant_idempotency_key
from creditline_core.services.ledger import LedgerService
from creditline_core.services.retry import run_with_retries
from creditline_core.services.store import (
    CouponInvalidError,
    CouponStore,
    EngineError,
    NotFoundError,
)
from creditline_core.types import (
    Coupon,
    CouponInvalidReason,
    CouponRedemption,
    CouponType,
    ValidationResult,
    ensure_utc,
    floor_units,
    normalize_code,
    normalize_user_id,
    positive_or_default,
    to_units,
    utcnow,
)

logger = logging.getLogger(__name__)

# Fields an operator may patch; usage_count is server-maintained.
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "value",
        "min_amount",
        "max_discount",
        "usage_limit",
        "user_limit",
        "valid_until",
        "is_active",
    }
)


def compute_discount(coupon: Coupon, order_amount: int) -> int:
    if coupon.type == CouponType.PERCENTAGE:
        discount = floor_units(Decimal(order_amount) * Decimal(coupon.value) / Decimal(100))
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
        return discount
    if coupon.type == CouponType.FIXED_AMOUNT:
        return min(coupon.value, order_amount)
    # Credits coupons grant ledger credits instead of discounting the order.
    return 0


def validate_coupon(
    coupon: Optional[Coupon],
    *,
    user_redemptions: int,
    now: datetime,
    order_amount: Optional[int] = None,
) -> ValidationResult:
    """
    Ordered checks, first failure wins:
    not_found, inactive, not_yet_valid, expired, limit_exceeded,
    user_limit_exceeded, below_minimum.
    """
    if coupon is None:
        return ValidationResult.invalid(CouponInvalidReason.NOT_FOUND)
    if not coupon.is_active:
        return ValidationResult.invalid(CouponInvalidReason.INACTIVE, coupon)
    if now < coupon.valid_from:
        return ValidationResult.invalid(CouponInvalidReason.NOT_YET_VALID, coupon)
    if coupon.valid_until is not None and now > coupon.valid_until:
        return ValidationResult.invalid(CouponInvalidReason.EXPIRED, coupon)
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return ValidationResult.invalid(CouponInvalidReason.LIMIT_EXCEEDED, coupon)
    if coupon.user_limit is not None and user_redemptions >= coupon.user_limit:
        return ValidationResult.invalid(CouponInvalidReason.USER_LIMIT_EXCEEDED, coupon)
    if order_amount is not None and coupon.min_amount is not None and order_amount < coupon.min_amount:
        return ValidationResult.invalid(CouponInvalidReason.BELOW_MINIMUM, coupon)

    discount = compute_discount(coupon, order_amount) if order_amount is not None else 0
    grant = coupon.value if coupon.type == CouponType.CREDITS else 0
    return ValidationResult(valid=True, discount_amount=discount, credit_grant=grant, coupon=coupon)


@dataclass(frozen=True, slots=True)
class RedemptionView:
    """A user's redemption joined with the coupon it applied."""
    redemption: CouponRedemption
    coupon_code: Optional[str]
    coupon_name: Optional[str]
    coupon_type: Optional[CouponType]

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.redemption.to_dict(),
            "coupon": {
                "code": self.coupon_code,
                "name": self.coupon_name,
                "type": self.coupon_type.value,
            }
            if self.coupon_code is not None
            else None,
        }


@dataclass(frozen=True, slots=True)
class CouponStats:
    coupon: Coupon
    total_redemptions: int
    total_discount: int
    unique_users: int
    remaining_uses: Optional[int]
    redemptions_by_date: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coupon": self.coupon.to_dict(),
            "total_redemptions": self.total_redemptions,
            "total_discount": self.total_discount,
            "unique_users": self.unique_users,
            "remaining_uses": self.remaining_uses,
            "redemptions_by_date": dict(self.redemptions_by_date),
        }


def _positive_or_none(name: str, value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    value = to_units(value)
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _check_coupon_rules(coupon: Coupon) -> None:
    if not coupon.code:
        raise ValueError("code is required")
    if coupon.value <= 0:
        raise ValueError("value must be positive")
    if coupon.type == CouponType.PERCENTAGE and coupon.value > 100:
        raise ValueError("percentage coupons cannot exceed 100")
    if coupon.valid_until is not None and coupon.valid_until < coupon.valid_from:
        raise ValueError("valid_until precedes valid_from")
    for name in ("min_amount", "max_discount", "usage_limit", "user_limit"):
        _positive_or_none(name, getattr(coupon, name))
    if coupon.usage_limit is not None and coupon.usage_count > coupon.usage_limit:
        raise ValueError("usage_limit is below the current usage_count")


class CouponService:
    """Coupon Registry, Redemption Log and redemption orchestration."""

    def __init__(
        self,
        store: CouponStore,
        ledger: LedgerService,
        cfg: EngineConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.cfg = cfg
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Validation & redemption
    # ------------------------------------------------------------------

    def validate(self, code: str, user_id: str, order_amount: int | None = None) -> ValidationResult:
        user_id = normalize_user_id(user_id)
        coupon = self.store.get_coupon(normalize_code(code))
        user_redemptions = 0
        if coupon is not None and coupon.user_limit is not None:
            user_redemptions = self.store.count_user_redemptions(coupon.id, user_id)
        return validate_coupon(
            coupon,
            user_redemptions=user_redemptions,
            now=self.clock(),
            order_amount=to_units(order_amount) if order_amount is not None else None,
        )

    def redeem(
        self,
        code: str,
        user_id: str,
        *,
        discount_amount: int,
        order_id: str | None = None,
        subscription_id: str | None = None,
        currency: str | None = None,
    ) -> CouponRedemption:
        """
        Redeem a coupon.

        Steps:
        1. Re-validate against freshly read coupon and redemption counts
        2. Append the redemption and increment usage_count under the coupon version
        3. For credits coupons, grant the credits (keyed by redemption id)
        4. If the grant fails, roll the redemption back and re-raise

        Raises:
            CouponInvalidError: validation failed (reason attached)
            RetriesExhaustedError: too many concurrent redemptions of this coupon
        """
        user_id = normalize_user_id(user_id)
        discount_amount = to_units(discount_amount)
        if discount_amount < 0:
            raise ValueError("discount_amount cannot be negative")
        normalized = normalize_code(code)

        def _attempt() -> tuple[Coupon, CouponRedemption]:
            result = self.validate(normalized, user_id)
            if not result.valid:
                raise CouponInvalidError(result.reason, normalized)
            coupon = result.coupon
            redemption_id = f"rd_{uuid.uuid4().hex[:24]}"
            redemption = CouponRedemption(
                id=redemption_id,
                user_id=user_id,
                coupon_id=coupon.id,
                discount_amount=discount_amount,
                used_at=self.clock(),
                order_id=order_id,
                subscription_id=subscription_id,
                currency=currency,
                granted_entry_key=build_grant_idempotency_key(redemption_id)
                if coupon.type == CouponType.CREDITS
                else None,
            )
            self.store.commit_redemption(redemption, expected_version=coupon.version)
            return coupon, redemption

        coupon, redemption = run_with_retries(
            _attempt, cfg=self.cfg, op_name=f"redeem[{normalized}]", sleep=self.sleep
        )

        if coupon.type == CouponType.CREDITS:
            self._grant_or_rollback(coupon, redemption)

        logger.info("coupon %s redeemed by %s (redemption %s)", normalized, user_id, redemption.id)
        return redemption

    def grant_for_redemption(self, coupon: Coupon, redemption: CouponRedemption):
        return self.ledger.grant(
            redemption.user_id,
            coupon.value,
            LedgerEntryKind.EARNED,
            f"Coupon applied: {coupon.name}",
            related_coupon_id=coupon.id,
            idempotency_key=redemption.granted_entry_key,
        )

    def _grant_or_rollback(self, coupon: Coupon, redemption: CouponRedemption) -> None:
        try:
            self.grant_for_redemption(coupon, redemption)
            return
        except EngineError:
            if self.ledger.store.get_entry_by_key(redemption.granted_entry_key) is not None:
                # The write landed even though the call failed.
                return
            logger.warning("credit grant for redemption %s failed, rolling back", redemption.id)
            try:
                self.store.rollback_redemption(redemption.id, voided_at=self.clock())
            except EngineError:
                logger.exception(
                    "rollback of redemption %s failed; reconciliation will complete the grant",
                    redemption.id,
                )
            raise

    # ------------------------------------------------------------------
    # Registry administration
    # ------------------------------------------------------------------

    def create_coupon(
        self,
        code: str,
        name: str,
        type: CouponType | str,
        value: int,
        *,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
        description: str | None = None,
        currency: str | None = None,
        min_amount: int | None = None,
        max_discount: int | None = None,
        usage_limit: int | None = None,
        user_limit: int | None = None,
    ) -> Coupon:
        now = self.clock()
        coupon = Coupon(
            id=f"cp_{uuid.uuid4().hex[:24]}",
            code=normalize_code(code),
            name=name,
            description=description,
            type=CouponType(type),
            value=to_units(value),
            currency=currency,
            min_amount=min_amount,
            max_discount=max_discount,
            usage_limit=usage_limit,
            usage_count=0,
            user_limit=user_limit,
            valid_from=ensure_utc(valid_from) if valid_from else now,
            valid_until=ensure_utc(valid_until) if valid_until else None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        _check_coupon_rules(coupon)
        stored = self.store.create_coupon(coupon)
        logger.info("coupon %s created (%s, value=%d)", stored.code, stored.type.value, stored.value)
        return stored

    def update_coupon(self, code: str, **changes: Any) -> Coupon:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        if changes.get("valid_until") is not None:
            changes["valid_until"] = ensure_utc(changes["valid_until"])
        normalized = normalize_code(code)

        def _attempt() -> Coupon:
            current = self.get_coupon(normalized)
            updated = replace(current, updated_at=self.clock(), **changes)
            _check_coupon_rules(updated)
            return self.store.update_coupon(updated, expected_version=current.version)

        return run_with_retries(_attempt, cfg=self.cfg, op_name=f"update_coupon[{normalized}]", sleep=self.sleep)

    def get_coupon(self, code: str) -> Coupon:
        coupon = self.store.get_coupon(normalize_code(code))
        if coupon is None:
            raise NotFoundError(f"coupon {normalize_code(code)} not found")
        return coupon

    def list_coupons(self, *, is_active: bool | None = None, limit: int | None = None) -> List[Coupon]:
        return self.store.list_coupons(
            is_active=is_active,
            limit=positive_or_default(limit, self.cfg.coupon_list_default_limit, "limit"),
        )

    # ------------------------------------------------------------------
    # Redemption analytics
    # ------------------------------------------------------------------

    def get_user_coupon_usages(self, user_id: str, limit: int | None = None) -> List[RedemptionView]:
        redemptions = self.store.list_redemptions(
            user_id=normalize_user_id(user_id),
            limit=positive_or_default(limit, self.cfg.coupon_usages_default_limit, "limit"),
        )
        coupons: Dict[str, Optional[Coupon]] = {}
        views = []
        for redemption in redemptions:
            if redemption.coupon_id not in coupons:
                coupons[redemption.coupon_id] = self.store.get_coupon_by_id(redemption.coupon_id)
            coupon = coupons[redemption.coupon_id]
            views.append(
                RedemptionView(
                    redemption=redemption,
                    coupon_code=coupon.code if coupon else None,
                    coupon_name=coupon.name if coupon else None,
                    coupon_type=coupon.type if coupon else None,
                )
            )
        return views

    def get_coupon_stats(self, code: str) -> CouponStats:
        coupon = self.get_coupon(code)
        redemptions = self.store.list_redemptions(coupon_id=coupon.id)
        by_date: Dict[str, int] = {}
        for redemption in redemptions:
            day = redemption.used_at.date().isoformat()
            by_date[day] = by_date.get(day, 0) + 1
        total = len(redemptions)
        return CouponStats(
            coupon=coupon,
            total_redemptions=total,
            total_discount=sum(r.discount_amount for r in redemptions),
            unique_users=len({r.user_id for r in redemptions}),
            remaining_uses=coupon.usage_limit - total if coupon.usage_limit is not None else None,
            redemptions_by_date=dict(sorted(by_date.items())),
        )
