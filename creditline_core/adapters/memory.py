# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from creditline_core.ledger import LedgerEntry
from creditline_core.services.store import (
    ConcurrencyConflictError,
    CouponInvalidError,
    DuplicateCouponError,
    DuplicateEntryError,
    EngineStore,
    NotFoundError,
)
from creditline_core.types import (
    Coupon,
    CouponInvalidReason,
    CouponRedemption,
    CreditBalance,
    Subscription,
    SubscriptionStatus,
    UsageRecord,
    effective_redemptions,
    void_redemption_id,
)


class InMemoryEngineStore(EngineStore):
    """Process-local store. Every method is atomic under one lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[str, List[LedgerEntry]] = {}
        self._entries_by_key: Dict[str, LedgerEntry] = {}
        self._balances: Dict[str, CreditBalance] = {}
        self._coupons: Dict[str, Coupon] = {}
        self._coupon_codes: Dict[str, str] = {}
        self._redemptions: Dict[str, CouponRedemption] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._usage: List[UsageRecord] = []

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def ledger_version(self, user_id: str) -> int:
        with self._lock:
            return len(self._entries.get(user_id, []))

    def list_entries(self, user_id: str) -> List[LedgerEntry]:
        with self._lock:
            return list(self._entries.get(user_id, []))

    def get_entry_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        with self._lock:
            return self._entries_by_key.get(idempotency_key)

    def append_entries(
        self,
        user_id: str,
        entries: Sequence[LedgerEntry],
        *,
        expected_version: int | None = None,
        balance: CreditBalance | None = None,
    ) -> int:
        with self._lock:
            ledger = self._entries.setdefault(user_id, [])
            if expected_version is not None and len(ledger) != expected_version:
                raise ConcurrencyConflictError(
                    f"ledger for {user_id} is at v{len(ledger)}, expected v{expected_version}"
                )
            seen = set()
            for entry in entries:
                if entry.user_id != user_id:
                    raise ValueError(f"entry {entry.id} belongs to {entry.user_id}, not {user_id}")
                key = entry.idempotency_key
                if key is None:
                    continue
                existing = self._entries_by_key.get(key)
                if existing is not None:
                    raise DuplicateEntryError(existing)
                if key in seen:
                    raise ValueError(f"idempotency key {key} repeated in one append")
                seen.add(key)

            ledger.extend(entries)
            for entry in entries:
                if entry.idempotency_key is not None:
                    self._entries_by_key[entry.idempotency_key] = entry
            if balance is not None:
                self._put_balance(balance)
            return len(ledger)

    def get_balance(self, user_id: str) -> CreditBalance | None:
        with self._lock:
            return self._balances.get(user_id)

    def put_balance(self, balance: CreditBalance) -> CreditBalance:
        with self._lock:
            return self._put_balance(balance)

    def _put_balance(self, balance: CreditBalance) -> CreditBalance:
        existing = self._balances.get(balance.user_id)
        if existing is not None and existing.version > balance.version:
            return existing
        self._balances[balance.user_id] = balance
        return balance

    def list_users_with_expired_lots(self, now: datetime) -> List[str]:
        with self._lock:
            return sorted(
                user_id
                for user_id, entries in self._entries.items()
                if any(e.is_lot and e.is_expired_at(now) for e in entries)
            )

    def list_ledger_users(self) -> List[str]:
        with self._lock:
            return sorted(user_id for user_id, entries in self._entries.items() if entries)

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------

    def get_coupon(self, code: str) -> Coupon | None:
        with self._lock:
            coupon_id = self._coupon_codes.get(code)
            return self._coupons.get(coupon_id) if coupon_id else None

    def get_coupon_by_id(self, coupon_id: str) -> Coupon | None:
        with self._lock:
            return self._coupons.get(coupon_id)

    def create_coupon(self, coupon: Coupon) -> Coupon:
        with self._lock:
            if coupon.code in self._coupon_codes:
                raise DuplicateCouponError(f"coupon code {coupon.code} already exists")
            stored = replace(coupon, version=0)
            self._coupons[stored.id] = stored
            self._coupon_codes[stored.code] = stored.id
            return stored

    def update_coupon(self, coupon: Coupon, *, expected_version: int) -> Coupon:
        with self._lock:
            current = self._coupons.get(coupon.id)
            if current is None:
                raise NotFoundError(f"coupon {coupon.code} not found")
            if current.version != expected_version:
                raise ConcurrencyConflictError(f"coupon {coupon.code} changed concurrently")
            stored = replace(coupon, code=current.code, version=expected_version + 1)
            self._coupons[stored.id] = stored
            return stored

    def list_coupons(self, *, is_active: bool | None = None, limit: int | None = None) -> List[Coupon]:
        with self._lock:
            coupons = [c for c in self._coupons.values() if is_active is None or c.is_active == is_active]
        coupons.sort(key=lambda c: c.created_at or c.valid_from, reverse=True)
        return coupons[:limit] if limit else coupons

    def count_user_redemptions(self, coupon_id: str, user_id: str) -> int:
        with self._lock:
            rows = [r for r in self._redemptions.values() if r.coupon_id == coupon_id and r.user_id == user_id]
            return len(effective_redemptions(rows))

    def commit_redemption(self, redemption: CouponRedemption, *, expected_version: int) -> Coupon:
        with self._lock:
            coupon = self._coupons.get(redemption.coupon_id)
            if coupon is None:
                raise CouponInvalidError(CouponInvalidReason.NOT_FOUND)
            if coupon.version != expected_version:
                raise ConcurrencyConflictError(f"coupon {coupon.code} changed concurrently")
            if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
                raise CouponInvalidError(CouponInvalidReason.LIMIT_EXCEEDED, coupon.code)
            if (
                coupon.user_limit is not None
                and self.count_user_redemptions(coupon.id, redemption.user_id) >= coupon.user_limit
            ):
                raise CouponInvalidError(CouponInvalidReason.USER_LIMIT_EXCEEDED, coupon.code)
            updated = replace(coupon, usage_count=coupon.usage_count + 1, version=coupon.version + 1)
            self._coupons[coupon.id] = updated
            self._redemptions[redemption.id] = redemption
            return updated

    def rollback_redemption(self, redemption_id: str, *, voided_at: datetime) -> Coupon:
        with self._lock:
            redemption = self._redemptions.get(redemption_id)
            if redemption is None or redemption.is_reversal:
                raise NotFoundError(f"redemption {redemption_id} not found")
            if void_redemption_id(redemption_id) in self._redemptions:
                raise NotFoundError(f"redemption {redemption_id} already voided")
            reversal = redemption.reversal(voided_at)
            self._redemptions[reversal.id] = reversal
            coupon = self._coupons[redemption.coupon_id]
            updated = replace(coupon, usage_count=max(0, coupon.usage_count - 1), version=coupon.version + 1)
            self._coupons[coupon.id] = updated
            return updated

    def list_redemptions(
        self,
        *,
        coupon_id: str | None = None,
        user_id: str | None = None,
        limit: int | None = None,
        include_voided: bool = False,
    ) -> List[CouponRedemption]:
        with self._lock:
            rows = [
                r
                for r in self._redemptions.values()
                if (coupon_id is None or r.coupon_id == coupon_id) and (user_id is None or r.user_id == user_id)
            ]
        if not include_voided:
            rows = effective_redemptions(rows)
        rows.sort(key=lambda r: r.used_at, reverse=True)
        return rows[:limit] if limit else rows

    # ------------------------------------------------------------------
    # Subscriptions & usage
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def get_active_subscription(self, user_id: str) -> Subscription | None:
        with self._lock:
            active = [
                s
                for s in self._subscriptions.values()
                if s.user_id == user_id and s.status == SubscriptionStatus.ACTIVE
            ]
        if not active:
            return None
        return max(active, key=lambda s: s.period_start)

    def create_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.id in self._subscriptions:
                raise ConcurrencyConflictError(f"subscription {subscription.id} already exists")
            stored = replace(subscription, version=0)
            self._subscriptions[stored.id] = stored
            return stored

    def update_subscription(self, subscription: Subscription, *, expected_version: int) -> Subscription:
        with self._lock:
            return self._swap_subscription(subscription, expected_version)

    def _swap_subscription(self, subscription: Subscription, expected_version: int) -> Subscription:
        current = self._subscriptions.get(subscription.id)
        if current is None:
            raise NotFoundError(f"subscription {subscription.id} not found")
        if current.version != expected_version:
            raise ConcurrencyConflictError(f"subscription {subscription.id} changed concurrently")
        stored = replace(subscription, version=expected_version + 1)
        self._subscriptions[stored.id] = stored
        return stored

    def list_subscriptions(self, *, status: SubscriptionStatus | None = None) -> List[Subscription]:
        with self._lock:
            return [s for s in self._subscriptions.values() if status is None or s.status == status]

    def append_usage(
        self,
        record: UsageRecord,
        *,
        subscription: Subscription | None = None,
        expected_version: int | None = None,
    ) -> Optional[Subscription]:
        with self._lock:
            stored = None
            if subscription is not None:
                version = subscription.version if expected_version is None else expected_version
                stored = self._swap_subscription(subscription, version)
            self._usage.append(record)
            return stored

    def list_usage_records(
        self,
        *,
        user_id: str | None = None,
        subscription_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[UsageRecord]:
        with self._lock:
            records = [
                r
                for r in self._usage
                if (user_id is None or r.user_id == user_id)
                and (subscription_id is None or r.subscription_id == subscription_id)
                and (start is None or r.recorded_at >= start)
                and (end is None or r.recorded_at <= end)
            ]
        records.sort(key=lambda r: r.recorded_at)
        return records
