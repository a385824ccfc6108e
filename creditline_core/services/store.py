# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from creditline_core.ledger import LedgerEntry
from creditline_core.types import (
    Coupon,
    CouponInvalidReason,
    CouponRedemption,
    CreditBalance,
    Subscription,
    SubscriptionStatus,
    UsageRecord,
)


class EngineError(RuntimeError):
    pass


class InsufficientFundsError(EngineError):
    def __init__(self, available: int, requested: int) -> None:
        super().__init__(f"Insufficient credits: available={available}, requested={requested}")
        self.available = available
        self.requested = requested


class CouponInvalidError(EngineError):
    def __init__(self, reason: CouponInvalidReason, code: str | None = None) -> None:
        label = f"Coupon {code}" if code else "Coupon"
        super().__init__(f"{label} is invalid: {reason.value}")
        self.reason = reason
        self.code = code


class ConcurrencyConflictError(EngineError):
    """A versioned write lost the race. Retried internally."""


class RetriesExhaustedError(ConcurrencyConflictError):
    pass


class StoreUnavailableError(EngineError):
    """Backend failure the caller may retry."""


class IdempotencyError(EngineError):
    pass


class DuplicateEntryError(IdempotencyError):
    def __init__(self, existing: LedgerEntry) -> None:
        super().__init__(f"Ledger entry already exists for idempotency key {existing.idempotency_key}")
        self.existing = existing


class NotFoundError(EngineError):
    pass


class DuplicateCouponError(EngineError):
    pass


@runtime_checkable
class LedgerStore(Protocol):
    def ledger_version(self, user_id: str) -> int:
        """Number of entries in the user's ledger. Bumped by every append."""
        ...

    def list_entries(self, user_id: str) -> List[LedgerEntry]:
        """All entries for the user, in append order."""
        ...

    def get_entry_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        ...

    def append_entries(
        self,
        user_id: str,
        entries: Sequence[LedgerEntry],
        *,
        expected_version: int | None = None,
        balance: CreditBalance | None = None,
    ) -> int:
        """
        Atomically append entries and optionally refresh the balance cache.

        Raises ConcurrencyConflictError when expected_version is given and the
        ledger moved, DuplicateEntryError when an idempotency key is taken.
        Returns the new ledger version.
        """
        ...

    def get_balance(self, user_id: str) -> CreditBalance | None:
        ...

    def put_balance(self, balance: CreditBalance) -> CreditBalance:
        """Write the cache unless a snapshot of a newer ledger version is stored."""
        ...

    def list_users_with_expired_lots(self, now: datetime) -> List[str]:
        """Users owning any positive entry with expires_at <= now."""
        ...

    def list_ledger_users(self) -> List[str]:
        ...


@runtime_checkable
class CouponStore(Protocol):
    def get_coupon(self, code: str) -> Coupon | None:
        ...

    def get_coupon_by_id(self, coupon_id: str) -> Coupon | None:
        ...

    def create_coupon(self, coupon: Coupon) -> Coupon:
        """Raises DuplicateCouponError when the code is taken."""
        ...

    def update_coupon(self, coupon: Coupon, *, expected_version: int) -> Coupon:
        """Compare-and-swap on the coupon version. Returns the stored coupon."""
        ...

    def list_coupons(self, *, is_active: bool | None = None, limit: int | None = None) -> List[Coupon]:
        ...

    def count_user_redemptions(self, coupon_id: str, user_id: str) -> int:
        """Redemptions that have not been voided."""
        ...

    def commit_redemption(self, redemption: CouponRedemption, *, expected_version: int) -> Coupon:
        """
        Atomically append the redemption and increment usage_count by one.

        Raises ConcurrencyConflictError when the coupon version moved and
        CouponInvalidError(LIMIT_EXCEEDED) when usage_limit would be passed.
        """
        ...

    def rollback_redemption(self, redemption_id: str, *, voided_at: datetime) -> Coupon:
        """
        Void a redemption whose grant failed: append its reversal row and
        decrement usage_count. The original row is kept.

        Raises NotFoundError when the redemption is missing or already voided.
        """
        ...

    def list_redemptions(
        self,
        *,
        coupon_id: str | None = None,
        user_id: str | None = None,
        limit: int | None = None,
        include_voided: bool = False,
    ) -> List[CouponRedemption]:
        """Newest first. Voided rows and their reversals only with include_voided."""
        ...


@runtime_checkable
class UsageStore(Protocol):
    def get_subscription(self, subscription_id: str) -> Subscription | None:
        ...

    def get_active_subscription(self, user_id: str) -> Subscription | None:
        ...

    def create_subscription(self, subscription: Subscription) -> Subscription:
        """Raises ConcurrencyConflictError when the id already exists."""
        ...

    def update_subscription(self, subscription: Subscription, *, expected_version: int) -> Subscription:
        ...

    def list_subscriptions(self, *, status: SubscriptionStatus | None = None) -> List[Subscription]:
        ...

    def append_usage(
        self,
        record: UsageRecord,
        *,
        subscription: Subscription | None = None,
        expected_version: int | None = None,
    ) -> Optional[Subscription]:
        """
        Atomically append the record and, when given, swap in the updated
        subscription aggregate. Raises ConcurrencyConflictError when the
        subscription version moved.
        """
        ...

    def list_usage_records(
        self,
        *,
        user_id: str | None = None,
        subscription_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[UsageRecord]:
        """Records with start <= recorded_at <= end, oldest first."""
        ...


@runtime_checkable
class EngineStore(LedgerStore, CouponStore, UsageStore, Protocol):
    pass
