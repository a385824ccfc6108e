# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Expiration Sweeper.

Scheduled job that turns expired-but-unused credit into explicit `expired`
ledger entries:
1. Find users owning lots with expires_at <= now
2. Replay each user's ledger to get the unused remainder per lot
3. Append one offset per outstanding lot (keyed by the lot id, so a lot
   is closed once no matter how often the sweep runs)
4. Write the refreshed balance in the same conditional append
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Tuple

from creditline_core.config import EngineConfig
from creditline_core.ledger import (
    LedgerEntry,
    LedgerEntryKind,
    build_expiry_idempotency_key,
    entry_id_for_key,
)
from creditline_core.replay import replay_ledger
from creditline_core.services.retry import run_with_retries
from creditline_core.services.store import (
    ConcurrencyConflictError,
    DuplicateEntryError,
    EngineError,
    LedgerStore,
)
from creditline_core.types import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SweepReport:
    expired_count: int
    expired_amount: int
    affected_users: int
    scanned_users: int
    failed_users: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "expired_count": self.expired_count,
            "expired_amount": self.expired_amount,
            "affected_users": self.affected_users,
            "scanned_users": self.scanned_users,
            "failed_users": list(self.failed_users),
        }


class ExpirationSweeper:
    """Converts expired credit remainders into ledger offsets."""

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

    def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        """
        Run one sweep pass. Safe to re-run over the same ledger state.

        A user whose sweep fails is logged and reported in failed_users;
        the remaining users are still swept.
        """
        now = now or self.clock()
        user_ids = self.store.list_users_with_expired_lots(now)

        expired_count = 0
        expired_amount = 0
        affected = 0
        failed: List[str] = []

        for i in range(0, len(user_ids), self.cfg.sweep_batch_size):
            batch = user_ids[i : i + self.cfg.sweep_batch_size]
            for user_id in batch:
                try:
                    count, amount = self.sweep_user(user_id, now)
                except EngineError:
                    logger.exception("expiration sweep failed for user %s", user_id)
                    failed.append(user_id)
                    continue
                if count:
                    affected += 1
                    expired_count += count
                    expired_amount += amount

        report = SweepReport(
            expired_count=expired_count,
            expired_amount=expired_amount,
            affected_users=affected,
            scanned_users=len(user_ids),
            failed_users=failed,
        )
        logger.info(
            "expiration sweep done: %d offsets, %d credits, %d/%d users affected, %d failed",
            expired_count,
            expired_amount,
            affected,
            len(user_ids),
            len(failed),
        )
        return report

    def sweep_user(self, user_id: str, now: datetime) -> Tuple[int, int]:
        """Expire one user's outstanding lots. Returns (offsets written, credits expired)."""

        def _attempt() -> Tuple[int, int]:
            entries = self.store.list_entries(user_id)
            before = replay_ledger(user_id, entries, now)
            if not before.outstanding_expiries:
                if before.entry_count:
                    self.store.put_balance(before.to_balance())
                return 0, 0

            offsets = []
            for outstanding in before.outstanding_expiries:
                key = build_expiry_idempotency_key(outstanding.entry.id)
                offsets.append(
                    LedgerEntry(
                        id=entry_id_for_key(key),
                        user_id=user_id,
                        amount=-outstanding.remaining,
                        kind=LedgerEntryKind.EXPIRED,
                        description=f"Credits expired: {outstanding.entry.description}",
                        created_at=now,
                        idempotency_key=key,
                        source_entry_id=outstanding.entry.id,
                    )
                )
            after = replay_ledger(user_id, [*entries, *offsets], now)
            try:
                self.store.append_entries(
                    user_id,
                    offsets,
                    expected_version=before.entry_count,
                    balance=after.to_balance(),
                )
            except DuplicateEntryError as exc:
                # Closed by a concurrent sweep; re-read and see it as done.
                raise ConcurrencyConflictError(str(exc)) from exc
            return len(offsets), sum(-o.amount for o in offsets)

        return run_with_retries(_attempt, cfg=self.cfg, op_name=f"sweep[{user_id}]", sleep=self.sleep)
