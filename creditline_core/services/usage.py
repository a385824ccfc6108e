# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Usage Meter.

Records resource consumption and keeps the active subscription's
current_usage / overage in step with the usage log:
- each record is appended together with a compare-and-swap of the
  subscription aggregate, so concurrent records never under-count
- overage = max(0, current_usage - usage_limit), 0 without a limit
- period rollover is a scheduled job, never a side effect of a read
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from creditline_core.config import EngineConfig
from creditline_core.services.retry import run_with_retries
from creditline_core.services.store import ConcurrencyConflictError, NotFoundError, UsageStore
from creditline_core.types import (
    AlertSeverity,
    AlertType,
    ResourceUsage,
    Subscription,
    SubscriptionStatus,
    UsageAlert,
    UsageRecord,
    UsageSummary,
    normalize_user_id,
    to_units,
    utcnow,
)

logger = logging.getLogger(__name__)


def calendar_month(now: datetime) -> Tuple[datetime, datetime]:
    """[first instant of the month, first instant of the next month)"""
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def check_usage_alerts(
    subscription: Optional[Subscription],
    *,
    near_limit_percent: int = 90,
    over_limit_percent: int = 100,
) -> List[UsageAlert]:
    """Pure threshold check. Compares integers so 89.99% never rounds up to 90%."""
    if subscription is None or not subscription.usage_limit:
        return []
    usage = subscription.current_usage
    limit = subscription.usage_limit
    percentage = usage * 100 / limit

    if usage * 100 >= limit * over_limit_percent:
        return [
            UsageAlert(
                type=AlertType.OVER_LIMIT,
                severity=AlertSeverity.ERROR,
                message="Usage has exceeded the plan limit.",
                usage=usage,
                limit=limit,
                percentage=percentage,
            )
        ]
    if usage * 100 >= limit * near_limit_percent:
        return [
            UsageAlert(
                type=AlertType.NEAR_LIMIT,
                severity=AlertSeverity.WARNING,
                message=f"Usage has reached {near_limit_percent}% of the plan limit.",
                usage=usage,
                limit=limit,
                percentage=percentage,
            )
        ]
    return []


def next_period(subscription: Subscription, now: datetime) -> Tuple[datetime, datetime]:
    """Advance by whole period lengths until the period contains now."""
    length = subscription.period_end - subscription.period_start
    if length <= timedelta(0):
        return calendar_month(now)
    start, end = subscription.period_start, subscription.period_end
    while end <= now:
        start, end = end, end + length
    return start, end


@dataclass(frozen=True, slots=True)
class RolloverReport:
    rolled_over: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"rolled_over": list(self.rolled_over), "failed": list(self.failed)}


@dataclass(frozen=True, slots=True)
class UsageStats:
    period_start: datetime
    period_end: datetime
    total_usage: int
    total_records: int
    active_users: int
    usage_by_type: Dict[str, int] = field(default_factory=dict)
    usage_by_date: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_usage": self.total_usage,
            "total_records": self.total_records,
            "active_users": self.active_users,
            "usage_by_type": dict(self.usage_by_type),
            "usage_by_date": dict(self.usage_by_date),
        }


class UsageMeter:
    """Service for metering subscription usage."""

    def __init__(
        self,
        store: UsageStore,
        cfg: EngineConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cfg = cfg
        self.clock = clock
        self.sleep = sleep

    def record_usage(
        self,
        user_id: str,
        resource_type: str,
        amount: int,
        unit: str,
        description: str | None = None,
        *,
        subscription_id: str | None = None,
    ) -> UsageRecord:
        """
        Append a usage record and bump the subscription counters.

        Without an active subscription the record is still kept, stamped
        with the calendar month, and no counter moves. An explicit
        subscription_id that is not active counts as no subscription.
        """
        user_id = normalize_user_id(user_id)
        if not resource_type:
            raise ValueError("resource_type is required")
        amount = to_units(amount)
        if amount <= 0:
            raise ValueError("usage amount must be positive")

        def _attempt() -> UsageRecord:
            now = self.clock()
            subscription = self._resolve_subscription(user_id, subscription_id)
            if subscription is not None:
                period_start, period_end = subscription.period_start, subscription.period_end
            else:
                period_start, period_end = calendar_month(now)

            record = UsageRecord(
                id=f"ur_{uuid.uuid4().hex[:24]}",
                user_id=user_id,
                subscription_id=subscription.id if subscription else None,
                resource_type=resource_type,
                amount=amount,
                unit=unit,
                description=description,
                recorded_at=now,
                period_start=period_start,
                period_end=period_end,
            )
            if subscription is None:
                self.store.append_usage(record)
                return record

            current = subscription.current_usage + amount
            updated = replace(
                subscription,
                current_usage=current,
                overage=subscription.derive_overage(current),
            )
            self.store.append_usage(record, subscription=updated, expected_version=subscription.version)
            return record

        return run_with_retries(_attempt, cfg=self.cfg, op_name=f"record_usage[{user_id}]", sleep=self.sleep)

    def _resolve_subscription(self, user_id: str, subscription_id: str | None) -> Optional[Subscription]:
        if subscription_id is None:
            return self.store.get_active_subscription(user_id)
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"subscription {subscription_id} not found")
        if subscription.user_id != user_id:
            raise ValueError(f"subscription {subscription_id} does not belong to {user_id}")
        if subscription.status != SubscriptionStatus.ACTIVE:
            return None
        return subscription

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def period_records(self, subscription: Subscription) -> List[UsageRecord]:
        """Records counted by current_usage: this period, after any operator reset."""
        records = self.store.list_usage_records(subscription_id=subscription.id)
        reset_at = subscription.reset_at
        return [
            r
            for r in records
            if r.period_start == subscription.period_start
            and (reset_at is None or reset_at < subscription.period_start or r.recorded_at >= reset_at)
        ]

    def recompute_usage(self, subscription: Subscription) -> int:
        """current_usage rebuilt from the usage log of the subscription's period."""
        return sum(r.amount for r in self.period_records(subscription))

    def get_usage_summary(self, user_id: str) -> Optional[UsageSummary]:
        subscription = self.store.get_active_subscription(normalize_user_id(user_id))
        if subscription is None:
            return None
        by_type: Dict[str, ResourceUsage] = {}
        for record in self.period_records(subscription):
            prev = by_type.get(record.resource_type)
            if prev is None:
                by_type[record.resource_type] = ResourceUsage(amount=record.amount, unit=record.unit, record_count=1)
            else:
                by_type[record.resource_type] = ResourceUsage(
                    amount=prev.amount + record.amount,
                    unit=prev.unit,
                    record_count=prev.record_count + 1,
                )
        return UsageSummary(
            subscription_id=subscription.id,
            current_usage=subscription.current_usage,
            usage_limit=subscription.usage_limit,
            overage=subscription.overage,
            period_start=subscription.period_start,
            period_end=subscription.period_end,
            usage_unit=subscription.usage_unit,
            overage_rate=subscription.overage_rate,
            usage_by_type=by_type,
        )

    def check_usage_alerts(self, user_id: str) -> List[UsageAlert]:
        return check_usage_alerts(
            self.store.get_active_subscription(normalize_user_id(user_id)),
            near_limit_percent=self.cfg.near_limit_percent,
            over_limit_percent=self.cfg.over_limit_percent,
        )

    def get_usage_stats(self, start: datetime | None = None, end: datetime | None = None) -> UsageStats:
        end = end or self.clock()
        start = start or end - timedelta(days=self.cfg.usage_stats_default_days)
        records = self.store.list_usage_records(start=start, end=end)
        by_type: Dict[str, int] = {}
        by_date: Dict[str, int] = {}
        for record in records:
            by_type[record.resource_type] = by_type.get(record.resource_type, 0) + record.amount
            day = record.recorded_at.date().isoformat()
            by_date[day] = by_date.get(day, 0) + record.amount
        return UsageStats(
            period_start=start,
            period_end=end,
            total_usage=sum(r.amount for r in records),
            total_records=len(records),
            active_users=len({r.user_id for r in records}),
            usage_by_type=by_type,
            usage_by_date=dict(sorted(by_date.items())),
        )

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        """
        Accept plan/period state from the payment side.

        current_usage is owned here: it is kept for the same period and
        rebuilt from the usage log when the period changes.
        """

        def _attempt() -> Subscription:
            existing = self.store.get_subscription(subscription.id)
            if existing is None:
                usage = self.recompute_usage(subscription)
                fresh = replace(
                    subscription,
                    current_usage=usage,
                    overage=subscription.derive_overage(usage),
                    version=0,
                )
                return self.store.create_subscription(fresh)

            merged = replace(subscription, reset_at=existing.reset_at, version=existing.version)
            if existing.period_start == subscription.period_start:
                usage = existing.current_usage
            else:
                usage = self.recompute_usage(merged)
            merged = replace(merged, current_usage=usage, overage=merged.derive_overage(usage))
            return self.store.update_subscription(merged, expected_version=existing.version)

        return run_with_retries(
            _attempt, cfg=self.cfg, op_name=f"upsert_subscription[{subscription.id}]", sleep=self.sleep
        )

    def rollover_periods(self, now: datetime | None = None) -> RolloverReport:
        """Start a new period for every active subscription whose period has ended."""
        now = now or self.clock()
        rolled: List[str] = []
        failed: List[str] = []
        for subscription in self.store.list_subscriptions(status=SubscriptionStatus.ACTIVE):
            if subscription.period_end > now:
                continue
            try:
                if self._rollover_one(subscription.id, now):
                    rolled.append(subscription.id)
            except ConcurrencyConflictError:
                logger.exception("period rollover failed for subscription %s", subscription.id)
                failed.append(subscription.id)
        if rolled or failed:
            logger.info("period rollover: %d rolled over, %d failed", len(rolled), len(failed))
        return RolloverReport(rolled_over=rolled, failed=failed)

    def _rollover_one(self, subscription_id: str, now: datetime) -> bool:
        def _attempt() -> bool:
            current = self.store.get_subscription(subscription_id)
            if current is None or current.period_end > now:
                return False
            start, end = next_period(current, now)
            updated = replace(
                current,
                period_start=start,
                period_end=end,
                current_usage=0,
                overage=0,
                reset_at=now,
            )
            self.store.update_subscription(updated, expected_version=current.version)
            return True

        return run_with_retries(_attempt, cfg=self.cfg, op_name=f"rollover[{subscription_id}]", sleep=self.sleep)

    def reset_usage(self, user_id: str) -> Optional[Subscription]:
        """Operator reset of the active subscription's counters within the current period."""
        user_id = normalize_user_id(user_id)

        def _attempt() -> Optional[Subscription]:
            current = self.store.get_active_subscription(user_id)
            if current is None:
                return None
            updated = replace(current, current_usage=0, overage=0, reset_at=self.clock())
            return self.store.update_subscription(updated, expected_version=current.version)

        return run_with_retries(_attempt, cfg=self.cfg, op_name=f"reset_usage[{user_id}]", sleep=self.sleep)
