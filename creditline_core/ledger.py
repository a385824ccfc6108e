# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from creditline_core.types import parse_datetime, utcnow


class LedgerEntryKind(str, Enum):
    EARNED = "earned"
    PURCHASED = "purchased"
    USED = "used"
    REFUNDED = "refunded"
    EXPIRED = "expired"


# Kinds a caller may grant through the public surface.
GRANT_KINDS = frozenset({LedgerEntryKind.EARNED, LedgerEntryKind.PURCHASED, LedgerEntryKind.REFUNDED})


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Immutable signed credit movement. Corrections are new offsetting entries."""
    id: str
    user_id: str
    amount: int
    kind: LedgerEntryKind
    description: str
    created_at: datetime = field(default_factory=utcnow)
    idempotency_key: str | None = None

    expires_at: Optional[datetime] = None      # positive entries only
    related_coupon_id: Optional[str] = None
    related_order_id: Optional[str] = None
    source_entry_id: Optional[str] = None      # expired offsets point at the lot they close

    @property
    def is_lot(self) -> bool:
        return self.amount > 0 and self.kind != LedgerEntryKind.EXPIRED

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for persistence."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "kind": self.kind.value,
            "description": self.description,
            "created_at": self.created_at,
            "idempotency_key": self.idempotency_key,
            "expires_at": self.expires_at,
            "related_coupon_id": self.related_coupon_id,
            "related_order_id": self.related_order_id,
            "source_entry_id": self.source_entry_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        """Load from dictionary."""
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            amount=int(data["amount"]),
            kind=LedgerEntryKind(data["kind"]),
            description=data.get("description", ""),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            idempotency_key=data.get("idempotency_key"),
            expires_at=parse_datetime(data.get("expires_at")),
            related_coupon_id=data.get("related_coupon_id"),
            related_order_id=data.get("related_order_id"),
            source_entry_id=data.get("source_entry_id"),
        )


def new_entry_id(prefix: str = "le") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


def build_idempotency_key(*parts: str) -> str:
    cleaned = [p.strip() for p in parts if p and p.strip()]
    return ":".join(cleaned)


def build_expiry_idempotency_key(source_entry_id: str) -> str:
    """
    Stable key for the expiration offset of one lot.
    A lot is closed at most once no matter how many sweeps run.
    """
    return build_idempotency_key("expire", source_entry_id)


def build_grant_idempotency_key(redemption_id: str) -> str:
    return build_idempotency_key("coupon", redemption_id, "grant")


def entry_id_for_key(idempotency_key: str) -> str:
    """Deterministic entry id, so a replayed write lands on the same document."""
    return "le_" + hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:24]
