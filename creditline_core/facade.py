# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, List, Optional

from creditline_core.config import EngineConfig
from creditline_core.ledger import LedgerEntry, LedgerEntryKind
from creditline_core.services.coupons import CouponService, CouponStats, RedemptionView
from creditline_core.services.expiration import ExpirationSweeper, SweepReport
from creditline_core.services.ledger import LedgerService
from creditline_core.services.reconciliation import ReconciliationReport, ReconciliationService
from creditline_core.services.store import EngineStore
from creditline_core.services.usage import RolloverReport, UsageMeter, UsageStats
from creditline_core.types import (
    Coupon,
    CouponType,
    CreditBalance,
    Subscription,
    UsageAlert,
    UsageSummary,
    ValidationResult,
    utcnow,
)


class CreditEngineFacade:
    """Operations exposed to checkout, cost-deduction, scheduling and webhook collaborators."""

    def __init__(
        self,
        *,
        store: EngineStore,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._config = config or EngineConfig()
        self.ledger = LedgerService(store, self._config, clock=clock, sleep=sleep)
        self.coupons = CouponService(store, self.ledger, self._config, clock=clock, sleep=sleep)
        self.usage = UsageMeter(store, self._config, clock=clock, sleep=sleep)
        self.sweeper = ExpirationSweeper(store, self._config, clock=clock, sleep=sleep)
        self.reconciler = ReconciliationService(
            store, self.ledger, self.coupons, self.usage, self._config, clock=clock, sleep=sleep
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def debit_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        *,
        related_order_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Returns the entry id. Raises InsufficientFundsError."""
        entry = self.ledger.debit(
            user_id,
            amount,
            description,
            related_order_id=related_order_id,
            idempotency_key=idempotency_key,
        )
        return entry.id

    def grant_credits(
        self,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind | str,
        description: str,
        expires_at: datetime | None = None,
        *,
        related_order_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        entry = self.ledger.grant(
            user_id,
            amount,
            kind,
            description,
            expires_at=expires_at,
            related_order_id=related_order_id,
            idempotency_key=idempotency_key,
        )
        return entry.id

    def get_credit_balance(self, user_id: str) -> CreditBalance:
        return self.ledger.get_balance(user_id)

    def recompute_balance(self, user_id: str) -> CreditBalance:
        return self.ledger.recompute_balance(user_id)

    def get_credit_history(self, user_id: str, limit: int | None = None) -> List[LedgerEntry]:
        return self.ledger.get_history(user_id, limit)

    def get_expiring_credits(self, user_id: str, days_ahead: int | None = None) -> List[LedgerEntry]:
        return self.ledger.get_expiring_credits(user_id, days_ahead)

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------

    def validate_coupon(self, code: str, user_id: str, order_amount: int | None = None) -> ValidationResult:
        return self.coupons.validate(code, user_id, order_amount)

    def redeem_coupon(
        self,
        code: str,
        user_id: str,
        *,
        discount_amount: int,
        order_id: str | None = None,
        currency: str | None = None,
        subscription_id: str | None = None,
    ) -> str:
        """Returns the redemption id. Raises CouponInvalidError."""
        redemption = self.coupons.redeem(
            code,
            user_id,
            discount_amount=discount_amount,
            order_id=order_id,
            subscription_id=subscription_id,
            currency=currency,
        )
        return redemption.id

    def create_coupon(self, code: str, name: str, type: CouponType | str, value: int, **options: Any) -> Coupon:
        return self.coupons.create_coupon(code, name, type, value, **options)

    def update_coupon(self, code: str, **changes: Any) -> Coupon:
        return self.coupons.update_coupon(code, **changes)

    def list_coupons(self, *, is_active: bool | None = None, limit: int | None = None) -> List[Coupon]:
        return self.coupons.list_coupons(is_active=is_active, limit=limit)

    def get_user_coupon_usages(self, user_id: str, limit: int | None = None) -> List[RedemptionView]:
        return self.coupons.get_user_coupon_usages(user_id, limit)

    def get_coupon_stats(self, code: str) -> CouponStats:
        return self.coupons.get_coupon_stats(code)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def record_usage(
        self,
        user_id: str,
        resource_type: str,
        amount: int,
        unit: str,
        description: str | None = None,
        *,
        subscription_id: str | None = None,
    ) -> str:
        record = self.usage.record_usage(
            user_id,
            resource_type,
            amount,
            unit,
            description,
            subscription_id=subscription_id,
        )
        return record.id

    def get_usage_summary(self, user_id: str) -> Optional[UsageSummary]:
        return self.usage.get_usage_summary(user_id)

    def check_usage_alerts(self, user_id: str) -> List[UsageAlert]:
        return self.usage.check_usage_alerts(user_id)

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        return self.usage.upsert_subscription(subscription)

    def reset_usage(self, user_id: str) -> Optional[Subscription]:
        return self.usage.reset_usage(user_id)

    def get_usage_stats(self, start: datetime | None = None, end: datetime | None = None) -> UsageStats:
        return self.usage.get_usage_stats(start, end)

    # ------------------------------------------------------------------
    # Scheduled passes
    # ------------------------------------------------------------------

    def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        return self.sweeper.sweep_expired(now)

    def rollover_periods(self, now: datetime | None = None) -> RolloverReport:
        return self.usage.rollover_periods(now)

    def reconcile(self, now: datetime | None = None) -> ReconciliationReport:
        return self.reconciler.reconcile(now)
