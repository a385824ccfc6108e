# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import contextlib
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence

from firebase_admin import firestore
from google.api_core import exceptions as gexc

from creditline_core.config import EngineConfig
from creditline_core.ledger import LedgerEntry, entry_id_for_key
from creditline_core.services.store import (
    ConcurrencyConflictError,
    CouponInvalidError,
    DuplicateCouponError,
    DuplicateEntryError,
    EngineStore,
    NotFoundError,
    StoreUnavailableError,
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

logger = logging.getLogger(__name__)

# Field on the balance document counting appended ledger entries.
LEDGER_VERSION_FIELD = "ledger_version"


@contextlib.contextmanager
def _store_call(op: str) -> Iterator[None]:
    """Map backend failures onto engine errors."""
    try:
        yield
    except gexc.AlreadyExists:
        raise
    except gexc.Aborted as exc:
        raise ConcurrencyConflictError(f"{op}: transaction aborted") from exc
    except gexc.GoogleAPICallError as exc:
        logger.warning("firestore %s failed: %s", op, exc)
        raise StoreUnavailableError(f"{op}: {exc}") from exc


def _usage_to_dict(record: UsageRecord) -> dict[str, Any]:
    # Native timestamps so range queries on recorded_at work.
    data = record.to_dict()
    data.update(
        recorded_at=record.recorded_at,
        period_start=record.period_start,
        period_end=record.period_end,
    )
    return data


class FirestoreEngineStore(EngineStore):
    def __init__(self, db: firestore.Client, *, config: EngineConfig | None = None) -> None:
        self._db = db
        self._config = config or EngineConfig()
        self._ledger = self._db.collection(self._config.ledger_collection)
        self._balances = self._db.collection(self._config.balance_collection)
        self._coupons = self._db.collection(self._config.coupon_collection)
        self._redemptions = self._db.collection(self._config.redemption_collection)
        self._usage = self._db.collection(self._config.usage_collection)
        self._subscriptions = self._db.collection(self._config.subscription_collection)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def ledger_version(self, user_id: str) -> int:
        with _store_call("ledger_version"):
            snapshot = self._balances.document(user_id).get()
        if not snapshot.exists:
            return 0
        return int((snapshot.to_dict() or {}).get(LEDGER_VERSION_FIELD, 0))

    def list_entries(self, user_id: str) -> List[LedgerEntry]:
        with _store_call("list_entries"):
            docs = [d.to_dict() or {} for d in self._ledger.where("user_id", "==", user_id).stream()]
        docs.sort(key=lambda d: int(d.get("seq", 0)))
        return [LedgerEntry.from_dict(d) for d in docs]

    def get_entry_by_key(self, idempotency_key: str) -> LedgerEntry | None:
        with _store_call("get_entry_by_key"):
            snapshot = self._ledger.document(entry_id_for_key(idempotency_key)).get()
        if not snapshot.exists:
            return None
        entry = LedgerEntry.from_dict(snapshot.to_dict() or {})
        return entry if entry.idempotency_key == idempotency_key else None

    def append_entries(
        self,
        user_id: str,
        entries: Sequence[LedgerEntry],
        *,
        expected_version: int | None = None,
        balance: CreditBalance | None = None,
    ) -> int:
        for entry in entries:
            if entry.user_id != user_id:
                raise ValueError(f"entry {entry.id} belongs to {entry.user_id}, not {user_id}")
        transaction = self._db.transaction()

        @firestore.transactional
        def _append(transaction):  # type: ignore[no-untyped-def]
            head_ref = self._balances.document(user_id)
            head = head_ref.get(transaction=transaction)
            head_data = (head.to_dict() or {}) if head.exists else {}
            version = int(head_data.get(LEDGER_VERSION_FIELD, 0))
            if expected_version is not None and version != expected_version:
                raise ConcurrencyConflictError(f"ledger for {user_id} is at v{version}, expected v{expected_version}")

            refs = [self._ledger.document(entry.id) for entry in entries]
            for entry, ref in zip(entries, refs):
                snapshot = ref.get(transaction=transaction)
                if snapshot.exists:
                    raise DuplicateEntryError(LedgerEntry.from_dict(snapshot.to_dict() or {}))

            for i, (entry, ref) in enumerate(zip(entries, refs)):
                transaction.create(ref, {**entry.to_dict(), "seq": version + i})
            new_version = version + len(entries)
            head_update: dict[str, Any] = {LEDGER_VERSION_FIELD: new_version}
            if balance is not None and balance.version >= int(head_data.get("version", 0)):
                head_update.update(balance.to_dict())
            transaction.set(head_ref, head_update, merge=True)
            return new_version

        with _store_call("append_entries"):
            return _append(transaction)

    def get_balance(self, user_id: str) -> CreditBalance | None:
        with _store_call("get_balance"):
            snapshot = self._balances.document(user_id).get()
        data = (snapshot.to_dict() or {}) if snapshot.exists else {}
        if "total_credits" not in data:
            return None
        return CreditBalance.from_dict({**data, "user_id": user_id})

    def put_balance(self, balance: CreditBalance) -> CreditBalance:
        transaction = self._db.transaction()

        @firestore.transactional
        def _put(transaction):  # type: ignore[no-untyped-def]
            ref = self._balances.document(balance.user_id)
            snapshot = ref.get(transaction=transaction)
            data = (snapshot.to_dict() or {}) if snapshot.exists else {}
            if "total_credits" in data and int(data.get("version", 0)) > balance.version:
                return CreditBalance.from_dict({**data, "user_id": balance.user_id})
            transaction.set(ref, balance.to_dict(), merge=True)
            return balance

        with _store_call("put_balance"):
            return _put(transaction)

    def list_users_with_expired_lots(self, now: datetime) -> List[str]:
        with _store_call("list_users_with_expired_lots"):
            docs = [d.to_dict() or {} for d in self._ledger.where("expires_at", "<=", now).stream()]
        return sorted({d["user_id"] for d in docs if int(d.get("amount", 0)) > 0})

    def list_ledger_users(self) -> List[str]:
        with _store_call("list_ledger_users"):
            snapshots = list(self._balances.where(LEDGER_VERSION_FIELD, ">", 0).stream())
        return sorted(s.id for s in snapshots)

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------

    def get_coupon(self, code: str) -> Coupon | None:
        with _store_call("get_coupon"):
            snapshot = self._coupons.document(code).get()
        if not snapshot.exists:
            return None
        return Coupon.from_dict(snapshot.to_dict() or {})

    def get_coupon_by_id(self, coupon_id: str) -> Coupon | None:
        ref = self._coupon_ref_for_id(coupon_id)
        if ref is None:
            return None
        return self.get_coupon(ref.id)

    def _coupon_ref_for_id(self, coupon_id: str):  # type: ignore[no-untyped-def]
        with _store_call("coupon_by_id"):
            docs = list(self._coupons.where("id", "==", coupon_id).limit(1).stream())
        return docs[0].reference if docs else None

    def create_coupon(self, coupon: Coupon) -> Coupon:
        stored = replace(coupon, version=0)
        try:
            with _store_call("create_coupon"):
                self._coupons.document(coupon.code).create(stored.to_dict())
        except gexc.AlreadyExists as exc:
            raise DuplicateCouponError(f"coupon code {coupon.code} already exists") from exc
        return stored

    def update_coupon(self, coupon: Coupon, *, expected_version: int) -> Coupon:
        transaction = self._db.transaction()

        @firestore.transactional
        def _update(transaction):  # type: ignore[no-untyped-def]
            ref = self._coupons.document(coupon.code)
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"coupon {coupon.code} not found")
            current = Coupon.from_dict(snapshot.to_dict() or {})
            if current.version != expected_version:
                raise ConcurrencyConflictError(f"coupon {coupon.code} changed concurrently")
            stored = replace(coupon, version=expected_version + 1)
            transaction.set(ref, stored.to_dict())
            return stored

        with _store_call("update_coupon"):
            return _update(transaction)

    def list_coupons(self, *, is_active: bool | None = None, limit: int | None = None) -> List[Coupon]:
        query = self._coupons
        if is_active is not None:
            query = query.where("is_active", "==", is_active)
        with _store_call("list_coupons"):
            coupons = [Coupon.from_dict(d.to_dict() or {}) for d in query.stream()]
        coupons.sort(key=lambda c: c.created_at or c.valid_from, reverse=True)
        return coupons[:limit] if limit else coupons

    def _user_redemptions_query(self, coupon_id: str, user_id: str):  # type: ignore[no-untyped-def]
        return self._redemptions.where("coupon_id", "==", coupon_id).where("user_id", "==", user_id)

    def count_user_redemptions(self, coupon_id: str, user_id: str) -> int:
        with _store_call("count_user_redemptions"):
            rows = [
                CouponRedemption.from_dict(d.to_dict() or {})
                for d in self._user_redemptions_query(coupon_id, user_id).stream()
            ]
        return len(effective_redemptions(rows))

    def commit_redemption(self, redemption: CouponRedemption, *, expected_version: int) -> Coupon:
        coupon_ref = self._coupon_ref_for_id(redemption.coupon_id)
        if coupon_ref is None:
            raise CouponInvalidError(CouponInvalidReason.NOT_FOUND)
        transaction = self._db.transaction()

        @firestore.transactional
        def _commit(transaction):  # type: ignore[no-untyped-def]
            snapshot = coupon_ref.get(transaction=transaction)
            coupon = Coupon.from_dict(snapshot.to_dict() or {})
            if coupon.version != expected_version:
                raise ConcurrencyConflictError(f"coupon {coupon.code} changed concurrently")
            if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
                raise CouponInvalidError(CouponInvalidReason.LIMIT_EXCEEDED, coupon.code)
            if coupon.user_limit is not None:
                rows = [
                    CouponRedemption.from_dict(d.to_dict() or {})
                    for d in self._user_redemptions_query(coupon.id, redemption.user_id).stream(
                        transaction=transaction
                    )
                ]
                used = len(effective_redemptions(rows))
                if used >= coupon.user_limit:
                    raise CouponInvalidError(CouponInvalidReason.USER_LIMIT_EXCEEDED, coupon.code)

            updated = replace(coupon, usage_count=coupon.usage_count + 1, version=coupon.version + 1)
            transaction.create(self._redemptions.document(redemption.id), redemption.to_dict())
            transaction.set(coupon_ref, updated.to_dict())
            return updated

        with _store_call("commit_redemption"):
            return _commit(transaction)

    def rollback_redemption(self, redemption_id: str, *, voided_at: datetime) -> Coupon:
        redemption_ref = self._redemptions.document(redemption_id)
        void_ref = self._redemptions.document(void_redemption_id(redemption_id))
        with _store_call("rollback_redemption"):
            snapshot = redemption_ref.get()
        if not snapshot.exists:
            raise NotFoundError(f"redemption {redemption_id} not found")
        redemption = CouponRedemption.from_dict(snapshot.to_dict() or {})
        if redemption.is_reversal:
            raise NotFoundError(f"redemption {redemption_id} not found")
        coupon_ref = self._coupon_ref_for_id(redemption.coupon_id)
        if coupon_ref is None:
            raise NotFoundError(f"coupon {redemption.coupon_id} not found")
        transaction = self._db.transaction()

        @firestore.transactional
        def _rollback(transaction):  # type: ignore[no-untyped-def]
            row = redemption_ref.get(transaction=transaction)
            void_row = void_ref.get(transaction=transaction)
            coupon_snapshot = coupon_ref.get(transaction=transaction)
            if not row.exists:
                raise NotFoundError(f"redemption {redemption_id} not found")
            if void_row.exists:
                raise NotFoundError(f"redemption {redemption_id} already voided")
            coupon = Coupon.from_dict(coupon_snapshot.to_dict() or {})
            updated = replace(coupon, usage_count=max(0, coupon.usage_count - 1), version=coupon.version + 1)
            transaction.create(void_ref, redemption.reversal(voided_at).to_dict())
            transaction.set(coupon_ref, updated.to_dict())
            return updated

        with _store_call("rollback_redemption"):
            return _rollback(transaction)

    def list_redemptions(
        self,
        *,
        coupon_id: str | None = None,
        user_id: str | None = None,
        limit: int | None = None,
        include_voided: bool = False,
    ) -> List[CouponRedemption]:
        query = self._redemptions
        if coupon_id is not None:
            query = query.where("coupon_id", "==", coupon_id)
        if user_id is not None:
            query = query.where("user_id", "==", user_id)
        with _store_call("list_redemptions"):
            rows = [CouponRedemption.from_dict(d.to_dict() or {}) for d in query.stream()]
        if not include_voided:
            rows = effective_redemptions(rows)
        rows.sort(key=lambda r: r.used_at, reverse=True)
        return rows[:limit] if limit else rows

    # ------------------------------------------------------------------
    # Subscriptions & usage
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        with _store_call("get_subscription"):
            snapshot = self._subscriptions.document(subscription_id).get()
        if not snapshot.exists:
            return None
        return Subscription.from_dict(snapshot.to_dict() or {})

    def get_active_subscription(self, user_id: str) -> Subscription | None:
        query = self._subscriptions.where("user_id", "==", user_id).where(
            "status", "==", SubscriptionStatus.ACTIVE.value
        )
        with _store_call("get_active_subscription"):
            subs = [Subscription.from_dict(d.to_dict() or {}) for d in query.stream()]
        if not subs:
            return None
        return max(subs, key=lambda s: s.period_start)

    def create_subscription(self, subscription: Subscription) -> Subscription:
        stored = replace(subscription, version=0)
        try:
            with _store_call("create_subscription"):
                self._subscriptions.document(subscription.id).create(stored.to_dict())
        except gexc.AlreadyExists as exc:
            raise ConcurrencyConflictError(f"subscription {subscription.id} already exists") from exc
        return stored

    def _swap_subscription(self, transaction, subscription: Subscription, expected_version: int) -> Subscription:  # type: ignore[no-untyped-def]
        ref = self._subscriptions.document(subscription.id)
        snapshot = ref.get(transaction=transaction)
        if not snapshot.exists:
            raise NotFoundError(f"subscription {subscription.id} not found")
        current = Subscription.from_dict(snapshot.to_dict() or {})
        if current.version != expected_version:
            raise ConcurrencyConflictError(f"subscription {subscription.id} changed concurrently")
        return replace(subscription, version=expected_version + 1)

    def update_subscription(self, subscription: Subscription, *, expected_version: int) -> Subscription:
        transaction = self._db.transaction()

        @firestore.transactional
        def _update(transaction):  # type: ignore[no-untyped-def]
            stored = self._swap_subscription(transaction, subscription, expected_version)
            transaction.set(self._subscriptions.document(stored.id), stored.to_dict())
            return stored

        with _store_call("update_subscription"):
            return _update(transaction)

    def list_subscriptions(self, *, status: SubscriptionStatus | None = None) -> List[Subscription]:
        query = self._subscriptions
        if status is not None:
            query = query.where("status", "==", status.value)
        with _store_call("list_subscriptions"):
            return [Subscription.from_dict(d.to_dict() or {}) for d in query.stream()]

    def append_usage(
        self,
        record: UsageRecord,
        *,
        subscription: Subscription | None = None,
        expected_version: int | None = None,
    ) -> Optional[Subscription]:
        record_ref = self._usage.document(record.id)
        if subscription is None:
            with _store_call("append_usage"):
                record_ref.create(_usage_to_dict(record))
            return None
        version = subscription.version if expected_version is None else expected_version
        transaction = self._db.transaction()

        @firestore.transactional
        def _append(transaction):  # type: ignore[no-untyped-def]
            stored = self._swap_subscription(transaction, subscription, version)
            transaction.create(record_ref, _usage_to_dict(record))
            transaction.set(self._subscriptions.document(stored.id), stored.to_dict())
            return stored

        with _store_call("append_usage"):
            return _append(transaction)

    def list_usage_records(
        self,
        *,
        user_id: str | None = None,
        subscription_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[UsageRecord]:
        query = self._usage
        if user_id is not None:
            query = query.where("user_id", "==", user_id)
        if subscription_id is not None:
            query = query.where("subscription_id", "==", subscription_id)
        if start is not None:
            query = query.where("recorded_at", ">=", start)
        if end is not None:
            query = query.where("recorded_at", "<=", end)
        with _store_call("list_usage_records"):
            records = [UsageRecord.from_dict(d.to_dict() or {}) for d in query.stream()]
        records.sort(key=lambda r: r.recorded_at)
        return records
