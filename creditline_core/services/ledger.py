# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Ledger Service.

Append-only credit ledger plus the materialized balance cache:
- grants and raw appends are pure inserts
- debits are read-check-append under compare-and-swap on the user's
  ledger version, so two debits never spend the same credits
- the cached CreditBalance is only a memo of replay_ledger()
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, List

from creditline_core.config import EngineConfig
from creditline_core.ledger import (
    GRANT_KINDS,
    LedgerEntry,
    LedgerEntryKind,
    entry_id_for_key,
    new_entry_id,
)
from creditline_core.replay import LedgerReplay, replay_ledger
from creditline_core.services.retry import run_with_retries
from creditline_core.services.store import (
    DuplicateEntryError,
    EngineError,
    InsufficientFundsError,
    LedgerStore,
)
from creditline_core.types import (
    CreditBalance,
    ensure_utc,
    normalize_user_id,
    positive_or_default,
    to_units,
    utcnow,
)

logger = logging.getLogger(__name__)


class LedgerService:
    """Ledger Store operations and the Balance Aggregator fast path."""

    def __init__(
        self,
        store: LedgerStore,
        cfg: EngineConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cfg = cfg
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append_entry(
        self,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind | str,
        description: str,
        *,
        expires_at: datetime | None = None,
        related_coupon_id: str | None = None,
        related_order_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerEntry:
        """
        Insert a signed entry. Never checks funds.

        With an idempotency_key, a repeated call returns the entry written
        by the first one.
        """
        user_id = normalize_user_id(user_id)
        amount = to_units(amount)
        kind = LedgerEntryKind(kind)
        if amount == 0:
            raise ValueError("amount must be non-zero")
        if expires_at is not None and amount < 0:
            raise ValueError("expires_at is only meaningful for positive entries")

        entry = LedgerEntry(
            id=entry_id_for_key(idempotency_key) if idempotency_key else new_entry_id(),
            user_id=user_id,
            amount=amount,
            kind=kind,
            description=description,
            created_at=self.clock(),
            idempotency_key=idempotency_key,
            expires_at=ensure_utc(expires_at) if expires_at else None,
            related_coupon_id=related_coupon_id,
            related_order_id=related_order_id,
        )
        try:
            self.store.append_entries(user_id, [entry])
        except DuplicateEntryError as exc:
            logger.debug("append_entry: key %s already written, returning existing entry", idempotency_key)
            return exc.existing
        self._refresh_cache(user_id)
        return entry

    def grant(
        self,
        user_id: str,
        amount: int,
        kind: LedgerEntryKind | str,
        description: str,
        *,
        expires_at: datetime | None = None,
        related_coupon_id: str | None = None,
        related_order_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerEntry:
        """Add credits (earned, purchased, refunded)."""
        kind = LedgerEntryKind(kind)
        if kind not in GRANT_KINDS:
            raise ValueError(f"kind must be one of: {sorted(k.value for k in GRANT_KINDS)}")
        if to_units(amount) <= 0:
            raise ValueError("grant amount must be positive")
        return self.append_entry(
            user_id,
            amount,
            kind,
            description,
            expires_at=expires_at,
            related_coupon_id=related_coupon_id,
            related_order_id=related_order_id,
            idempotency_key=idempotency_key,
        )

    def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        *,
        related_order_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerEntry:
        """
        Spend credits.

        Steps (re-run from step 1 on every version conflict):
        1. Read the balance: cache if provably fresh, else full replay
        2. Refuse if available_credits < amount
        3. Append a `used` entry conditioned on the version read in step 1

        Raises:
            InsufficientFundsError: balance cannot cover the amount
            RetriesExhaustedError: too many concurrent writers on this user
        """
        user_id = normalize_user_id(user_id)
        amount = to_units(amount)
        if amount <= 0:
            raise ValueError("debit amount must be positive")

        if idempotency_key:
            existing = self.store.get_entry_by_key(idempotency_key)
            if existing is not None:
                return existing

        def _attempt() -> LedgerEntry:
            now = self.clock()
            balance = self._authoritative_balance(user_id, now)
            if balance.available_credits < amount:
                raise InsufficientFundsError(balance.available_credits, amount)

            entry = LedgerEntry(
                id=entry_id_for_key(idempotency_key) if idempotency_key else new_entry_id(),
                user_id=user_id,
                amount=-amount,
                kind=LedgerEntryKind.USED,
                description=description,
                created_at=now,
                idempotency_key=idempotency_key,
                related_order_id=related_order_id,
            )
            # A fundable debit only drains live lots, so the snapshot moves by
            # exactly `amount`; next_expiry_at can only stay or move later.
            after = CreditBalance(
                user_id=user_id,
                total_credits=balance.total_credits - amount,
                available_credits=balance.available_credits - amount,
                used_credits=balance.used_credits + amount,
                expired_credits=balance.expired_credits,
                last_updated=now,
                version=balance.version + 1,
                next_expiry_at=balance.next_expiry_at,
            )
            self.store.append_entries(
                user_id,
                [entry],
                expected_version=balance.version,
                balance=after,
            )
            return entry

        try:
            return run_with_retries(_attempt, cfg=self.cfg, op_name=f"debit[{user_id}]", sleep=self.sleep)
        except DuplicateEntryError as exc:
            return exc.existing

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def replay(self, user_id: str, *, now: datetime | None = None) -> LedgerReplay:
        user_id = normalize_user_id(user_id)
        now = now or self.clock()
        return replay_ledger(user_id, self.store.list_entries(user_id), now)

    def recompute_balance(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
        persist: bool = True,
    ) -> CreditBalance:
        """Ground truth: full replay of the user's ledger as of now."""
        user_id = normalize_user_id(user_id)
        result = self.replay(user_id, now=now)
        balance = result.to_balance()
        if persist and result.entry_count > 0:
            self.store.put_balance(balance)
        return balance

    def get_balance(self, user_id: str) -> CreditBalance:
        user_id = normalize_user_id(user_id)
        return self._authoritative_balance(user_id, self.clock())

    def get_history(self, user_id: str, limit: int | None = None) -> List[LedgerEntry]:
        """Entries newest first."""
        user_id = normalize_user_id(user_id)
        limit = positive_or_default(limit, self.cfg.history_default_limit, "limit")
        entries = self.store.list_entries(user_id)
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def get_expiring_credits(self, user_id: str, days_ahead: int | None = None) -> List[LedgerEntry]:
        """Lots with unused credits expiring within the next `days_ahead` days, soonest first."""
        user_id = normalize_user_id(user_id)
        days = positive_or_default(days_ahead, self.cfg.expiring_default_days, "days_ahead")
        now = self.clock()
        horizon = now + timedelta(days=days)
        entries = self.store.list_entries(user_id)
        result = replay_ledger(user_id, entries, now)
        expiring = [
            e
            for e in entries
            if e.is_lot
            and e.expires_at is not None
            and now < e.expires_at <= horizon
            and result.lot_remaining.get(e.id, 0) > 0
        ]
        expiring.sort(key=lambda e: e.expires_at)
        return expiring

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _authoritative_balance(self, user_id: str, now: datetime) -> CreditBalance:
        version = self.store.ledger_version(user_id)
        cached = self.store.get_balance(user_id)
        if cached is not None and not cached.is_stale(version, now):
            return cached
        if cached is not None:
            logger.debug(
                "balance cache for %s is stale (cached v%d, ledger v%d), replaying",
                user_id,
                cached.version,
                version,
            )
        return self.recompute_balance(user_id, now=now)

    def _refresh_cache(self, user_id: str) -> None:
        # The entry is already durable; a stale cache is detected by version on next read.
        try:
            self.recompute_balance(user_id)
        except EngineError:
            logger.warning("balance cache refresh failed for %s", user_id, exc_info=True)
