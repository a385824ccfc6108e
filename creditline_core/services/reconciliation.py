# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Reconciliation.

Every aggregate in the engine is derivable from an append-only log. This job
re-derives them and repairs drift:
1. credits coupon redemptions whose grant never landed are rolled forward
2. coupon usage_count is reset to the number of redemption rows
3. cached balances are rewritten from a full ledger replay
4. subscription current_usage is rewritten from the period's usage records
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from creditline_core.config import EngineConfig
from creditline_core.services.coupons import CouponService
from creditline_core.services.ledger import LedgerService
from creditline_core.services.retry import run_with_retries
from creditline_core.services.store import EngineError, EngineStore
from creditline_core.services.usage import UsageMeter
from creditline_core.types import CouponType, SubscriptionStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    grants_rolled_forward: List[str] = field(default_factory=list)
    usage_counts_fixed: Dict[str, int] = field(default_factory=dict)
    balances_fixed: List[str] = field(default_factory=list)
    subscriptions_fixed: Dict[str, int] = field(default_factory=dict)
    failures: List[str] = field(default_factory=list)

    @property
    def repaired(self) -> int:
        return (
            len(self.grants_rolled_forward)
            + len(self.usage_counts_fixed)
            + len(self.balances_fixed)
            + len(self.subscriptions_fixed)
        )

    def to_dict(self) -> dict:
        return {
            "grants_rolled_forward": list(self.grants_rolled_forward),
            "usage_counts_fixed": dict(self.usage_counts_fixed),
            "balances_fixed": list(self.balances_fixed),
            "subscriptions_fixed": dict(self.subscriptions_fixed),
            "failures": list(self.failures),
        }


class ReconciliationService:
    def __init__(
        self,
        store: EngineStore,
        ledger: LedgerService,
        coupons: CouponService,
        usage: UsageMeter,
        cfg: EngineConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.coupons = coupons
        self.usage = usage
        self.cfg = cfg
        self.clock = clock
        self.sleep = sleep

    def reconcile(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Run every repair. One failing item is logged and skipped."""
        now = now or self.clock()
        report = ReconciliationReport()
        self.roll_forward_grants(now, report)
        self.fix_usage_counts(report)
        self.fix_balances(now, report)
        self.fix_subscription_usage(report)
        if report.repaired or report.failures:
            logger.warning(
                "reconciliation repaired %d item(s), %d failure(s)", report.repaired, len(report.failures)
            )
        else:
            logger.info("reconciliation found no drift")
        return report

    def roll_forward_grants(self, now: datetime, report: ReconciliationReport) -> None:
        cutoff = now - timedelta(seconds=self.cfg.reconcile_grace_s)
        for coupon in self.store.list_coupons():
            if coupon.type != CouponType.CREDITS:
                continue
            for redemption in self.store.list_redemptions(coupon_id=coupon.id):
                if not redemption.granted_entry_key or redemption.used_at > cutoff:
                    continue
                if self.store.get_entry_by_key(redemption.granted_entry_key) is not None:
                    continue
                try:
                    self.coupons.grant_for_redemption(coupon, redemption)
                except EngineError:
                    logger.exception("rolling forward grant for redemption %s failed", redemption.id)
                    report.failures.append(f"grant:{redemption.id}")
                    continue
                logger.warning("rolled forward missing credit grant for redemption %s", redemption.id)
                report.grants_rolled_forward.append(redemption.id)

    def fix_usage_counts(self, report: ReconciliationReport) -> None:
        for listed in self.store.list_coupons():

            def _attempt(coupon_id: str = listed.id) -> Optional[int]:
                # Coupon first: any redemption committed after this read moves its version.
                coupon = self.store.get_coupon_by_id(coupon_id)
                if coupon is None:
                    return None
                rows = len(self.store.list_redemptions(coupon_id=coupon.id))
                if rows == coupon.usage_count:
                    return None
                self.store.update_coupon(replace(coupon, usage_count=rows), expected_version=coupon.version)
                logger.warning("coupon %s usage_count %d -> %d", coupon.code, coupon.usage_count, rows)
                return rows

            try:
                fixed = run_with_retries(
                    _attempt, cfg=self.cfg, op_name=f"reconcile_usage_count[{listed.code}]", sleep=self.sleep
                )
            except EngineError:
                logger.exception("usage_count repair failed for coupon %s", listed.code)
                report.failures.append(f"coupon:{listed.code}")
                continue
            if fixed is not None:
                report.usage_counts_fixed[listed.code] = fixed

    def fix_balances(self, now: datetime, report: ReconciliationReport) -> None:
        for user_id in self.store.list_ledger_users():
            try:
                cached = self.store.get_balance(user_id)
                fresh = self.ledger.replay(user_id, now=now).to_balance()
                if cached is not None and cached.version == fresh.version and cached.same_amounts(fresh):
                    continue
                self.store.put_balance(fresh)
            except EngineError:
                logger.exception("balance repair failed for user %s", user_id)
                report.failures.append(f"balance:{user_id}")
                continue
            if cached is not None:
                logger.warning(
                    "balance cache for %s drifted (available %d -> %d)",
                    user_id,
                    cached.available_credits,
                    fresh.available_credits,
                )
            report.balances_fixed.append(user_id)

    def fix_subscription_usage(self, report: ReconciliationReport) -> None:
        for listed in self.store.list_subscriptions(status=SubscriptionStatus.ACTIVE):

            def _attempt(subscription_id: str = listed.id) -> Optional[int]:
                current = self.store.get_subscription(subscription_id)
                if current is None:
                    return None
                usage = self.usage.recompute_usage(current)
                overage = current.derive_overage(usage)
                if usage == current.current_usage and overage == current.overage:
                    return None
                self.store.update_subscription(
                    replace(current, current_usage=usage, overage=overage),
                    expected_version=current.version,
                )
                logger.warning(
                    "subscription %s current_usage %d -> %d", subscription_id, current.current_usage, usage
                )
                return usage

            try:
                fixed = run_with_retries(
                    _attempt, cfg=self.cfg, op_name=f"reconcile_usage[{listed.id}]", sleep=self.sleep
                )
            except EngineError:
                logger.exception("usage repair failed for subscription %s", listed.id)
                report.failures.append(f"subscription:{listed.id}")
                continue
            if fixed is not None:
                report.subscriptions_fixed[listed.id] = fixed
