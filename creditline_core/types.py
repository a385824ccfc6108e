# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

# -----------------------------------------------------------------------------
# Unit Helpers (integer minor units, no floats)
# -----------------------------------------------------------------------------


def to_units(value: Decimal | int | str) -> int:
    """Convert any exact numeric to an integer number of minor units."""
    if isinstance(value, bool):
        raise TypeError("Boolean is not a unit amount")
    if isinstance(value, int):
        return value
    dec = Decimal(str(value))
    if dec != dec.to_integral_value():
        raise ValueError(f"Amount must be a whole number of units: {value}")
    return int(dec)


def floor_units(value: Decimal) -> int:
    """Floor a Decimal to whole units."""
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def positive_or_default(value: int | None, default: int, name: str) -> int:
    """Query limits: None means the configured default, zero or less is rejected."""
    if value is None:
        return default
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_user_id(user_id: str) -> str:
    """One spelling per user across ledger, coupons and usage."""
    if not user_id or not user_id.strip():
        raise ValueError("user_id is required")
    return user_id.strip()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if hasattr(value, "to_datetime"):
        return ensure_utc(value.to_datetime())
    return ensure_utc(datetime.fromisoformat(str(value)))


# -----------------------------------------------------------------------------
# Credit Balance (materialized snapshot)
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CreditBalance:
    """Cached aggregate of a user's ledger. Always recomputable by replay."""
    user_id: str
    total_credits: int
    available_credits: int
    used_credits: int
    expired_credits: int
    last_updated: datetime
    version: int = 0                          # ledger length this snapshot was derived from
    next_expiry_at: Optional[datetime] = None  # snapshot is stale once now reaches this

    def is_stale(self, ledger_version: int, now: datetime) -> bool:
        if self.version != ledger_version:
            return True
        return self.next_expiry_at is not None and now >= self.next_expiry_at

    def same_amounts(self, other: "CreditBalance") -> bool:
        return (
            self.total_credits == other.total_credits
            and self.available_credits == other.available_credits
            and self.used_credits == other.used_credits
            and self.expired_credits == other.expired_credits
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_credits": self.total_credits,
            "available_credits": self.available_credits,
            "used_credits": self.used_credits,
            "expired_credits": self.expired_credits,
            "last_updated": self.last_updated.isoformat(),
            "version": self.version,
            "next_expiry_at": _iso(self.next_expiry_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CreditBalance":
        return cls(
            user_id=d["user_id"],
            total_credits=int(d.get("total_credits", 0)),
            available_credits=int(d.get("available_credits", 0)),
            used_credits=int(d.get("used_credits", 0)),
            expired_credits=int(d.get("expired_credits", 0)),
            last_updated=parse_datetime(d.get("last_updated")) or utcnow(),
            version=int(d.get("version", 0)),
            next_expiry_at=parse_datetime(d.get("next_expiry_at")),
        )


# -----------------------------------------------------------------------------
# Coupons
# -----------------------------------------------------------------------------


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    CREDITS = "credits"


class CouponInvalidReason(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    LIMIT_EXCEEDED = "limit_exceeded"
    USER_LIMIT_EXCEEDED = "user_limit_exceeded"
    BELOW_MINIMUM = "below_minimum"


def normalize_code(code: str) -> str:
    return code.strip().upper()


@dataclass(frozen=True, slots=True)
class Coupon:
    code: str
    name: str
    type: CouponType
    value: int
    valid_from: datetime
    id: str = ""
    description: Optional[str] = None
    currency: Optional[str] = None
    min_amount: Optional[int] = None
    max_discount: Optional[int] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    user_limit: Optional[int] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def remaining_uses(self) -> Optional[int]:
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - self.usage_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "value": self.value,
            "currency": self.currency,
            "min_amount": self.min_amount,
            "max_discount": self.max_discount,
            "usage_limit": self.usage_limit,
            "usage_count": self.usage_count,
            "user_limit": self.user_limit,
            "valid_from": self.valid_from.isoformat(),
            "valid_until": _iso(self.valid_until),
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Coupon":
        return cls(
            id=d.get("id", ""),
            code=d["code"],
            name=d.get("name", ""),
            description=d.get("description"),
            type=CouponType(d["type"]),
            value=int(d["value"]),
            currency=d.get("currency"),
            min_amount=d.get("min_amount"),
            max_discount=d.get("max_discount"),
            usage_limit=d.get("usage_limit"),
            usage_count=int(d.get("usage_count", 0)),
            user_limit=d.get("user_limit"),
            valid_from=parse_datetime(d["valid_from"]),
            valid_until=parse_datetime(d.get("valid_until")),
            is_active=bool(d.get("is_active", True)),
            created_at=parse_datetime(d.get("created_at")),
            updated_at=parse_datetime(d.get("updated_at")),
            version=int(d.get("version", 0)),
        )


@dataclass(frozen=True, slots=True)
class CouponRedemption:
    """Append-only record of one coupon application, or of its reversal."""
    id: str
    user_id: str
    coupon_id: str
    discount_amount: int
    used_at: datetime
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    currency: Optional[str] = None
    granted_entry_key: Optional[str] = None  # idempotency key of the credit grant, credits coupons only
    voids_redemption_id: Optional[str] = None  # set on reversal rows written by a rollback

    @property
    def is_reversal(self) -> bool:
        return self.voids_redemption_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "coupon_id": self.coupon_id,
            "discount_amount": self.discount_amount,
            "used_at": self.used_at.isoformat(),
            "order_id": self.order_id,
            "subscription_id": self.subscription_id,
            "currency": self.currency,
            "granted_entry_key": self.granted_entry_key,
            "voids_redemption_id": self.voids_redemption_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CouponRedemption":
        return cls(
            id=d["id"],
            user_id=d["user_id"],
            coupon_id=d["coupon_id"],
            discount_amount=int(d.get("discount_amount", 0)),
            used_at=parse_datetime(d["used_at"]),
            order_id=d.get("order_id"),
            subscription_id=d.get("subscription_id"),
            currency=d.get("currency"),
            granted_entry_key=d.get("granted_entry_key"),
            voids_redemption_id=d.get("voids_redemption_id"),
        )

    def reversal(self, voided_at: datetime) -> "CouponRedemption":
        """The row that cancels this redemption. Its id is fixed, so a redemption is voided at most once."""
        return CouponRedemption(
            id=void_redemption_id(self.id),
            user_id=self.user_id,
            coupon_id=self.coupon_id,
            discount_amount=-self.discount_amount,
            used_at=voided_at,
            order_id=self.order_id,
            subscription_id=self.subscription_id,
            currency=self.currency,
            voids_redemption_id=self.id,
        )


def void_redemption_id(redemption_id: str) -> str:
    return f"void_{redemption_id}"


def effective_redemptions(rows: Iterable[CouponRedemption]) -> List[CouponRedemption]:
    """Redemptions that still count: reversal rows and the rows they cancel are dropped."""
    rows = list(rows)
    voided = {r.voids_redemption_id for r in rows if r.is_reversal}
    return [r for r in rows if not r.is_reversal and r.id not in voided]


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    reason: Optional[CouponInvalidReason] = None
    discount_amount: int = 0
    credit_grant: int = 0
    coupon: Optional[Coupon] = None

    @classmethod
    def invalid(cls, reason: CouponInvalidReason, coupon: Optional[Coupon] = None) -> "ValidationResult":
        return cls(valid=False, reason=reason, coupon=coupon)

    def to_dict(self) -> Dict[str, Any]:
        if not self.valid:
            return {"valid": False, "reason": self.reason.value if self.reason else None}
        return {
            "valid": True,
            "discount_amount": self.discount_amount,
            "credit_grant": self.credit_grant,
            "coupon": self.coupon.to_dict() if self.coupon else None,
        }


# -----------------------------------------------------------------------------
# Subscriptions & Usage
# -----------------------------------------------------------------------------


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


@dataclass(frozen=True, slots=True)
class Subscription:
    """Usage-relevant slice of a subscription. Plan fields are owned upstream."""
    id: str
    user_id: str
    period_start: datetime
    period_end: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    plan_name: Optional[str] = None
    usage_limit: Optional[int] = None
    usage_unit: str = "requests"
    overage_rate: Optional[Decimal] = None
    current_usage: int = 0
    overage: int = 0
    reset_at: Optional[datetime] = None
    version: int = 0

    def derive_overage(self, current_usage: int) -> int:
        if self.usage_limit is None:
            return 0
        return max(0, current_usage - self.usage_limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "plan_name": self.plan_name,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "usage_limit": self.usage_limit,
            "usage_unit": self.usage_unit,
            "overage_rate": str(self.overage_rate) if self.overage_rate is not None else None,
            "current_usage": self.current_usage,
            "overage": self.overage,
            "reset_at": _iso(self.reset_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Subscription":
        rate = d.get("overage_rate")
        return cls(
            id=d["id"],
            user_id=d["user_id"],
            status=SubscriptionStatus(d.get("status", SubscriptionStatus.ACTIVE.value)),
            plan_name=d.get("plan_name"),
            period_start=parse_datetime(d["period_start"]),
            period_end=parse_datetime(d["period_end"]),
            usage_limit=d.get("usage_limit"),
            usage_unit=d.get("usage_unit", "requests"),
            overage_rate=Decimal(str(rate)) if rate is not None else None,
            current_usage=int(d.get("current_usage", 0)),
            overage=int(d.get("overage", 0)),
            reset_at=parse_datetime(d.get("reset_at")),
            version=int(d.get("version", 0)),
        )


@dataclass(frozen=True, slots=True)
class UsageRecord:
    id: str
    user_id: str
    resource_type: str
    amount: int
    unit: str
    recorded_at: datetime
    period_start: datetime
    period_end: datetime
    subscription_id: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "resource_type": self.resource_type,
            "amount": self.amount,
            "unit": self.unit,
            "description": self.description,
            "recorded_at": self.recorded_at.isoformat(),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UsageRecord":
        return cls(
            id=d["id"],
            user_id=d["user_id"],
            subscription_id=d.get("subscription_id"),
            resource_type=d["resource_type"],
            amount=int(d["amount"]),
            unit=d.get("unit", ""),
            description=d.get("description"),
            recorded_at=parse_datetime(d["recorded_at"]),
            period_start=parse_datetime(d["period_start"]),
            period_end=parse_datetime(d["period_end"]),
        )


class AlertType(str, Enum):
    OVER_LIMIT = "over_limit"
    NEAR_LIMIT = "near_limit"


class AlertSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class UsageAlert:
    type: AlertType
    severity: AlertSeverity
    message: str
    usage: int
    limit: int
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "usage": self.usage,
            "limit": self.limit,
            "percentage": self.percentage,
        }


@dataclass(frozen=True, slots=True)
class ResourceUsage:
    amount: int
    unit: str
    record_count: int = 0


@dataclass(frozen=True, slots=True)
class UsageSummary:
    subscription_id: str
    current_usage: int
    usage_limit: Optional[int]
    overage: int
    period_start: datetime
    period_end: datetime
    usage_unit: str = "requests"
    overage_rate: Optional[Decimal] = None
    usage_by_type: Dict[str, ResourceUsage] = field(default_factory=dict)

    @property
    def overage_charge(self) -> Optional[Decimal]:
        if self.overage_rate is None:
            return None
        return self.overage_rate * self.overage

    def to_dict(self) -> Dict[str, Any]:
        charge = self.overage_charge
        return {
            "subscription_id": self.subscription_id,
            "current_usage": self.current_usage,
            "usage_limit": self.usage_limit,
            "overage": self.overage,
            "overage_charge": str(charge) if charge is not None else None,
            "usage_unit": self.usage_unit,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "usage_by_type": {
                k: {"amount": v.amount, "unit": v.unit, "records": v.record_count}
                for k, v in self.usage_by_type.items()
            },
        }
