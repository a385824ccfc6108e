# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from creditline_core.config import EngineConfig
from creditline_core.config_loader import load_engine_config
from creditline_core.facade import CreditEngineFacade
from creditline_core.ledger import LedgerEntry, LedgerEntryKind
from creditline_core.replay import LedgerReplay, replay_ledger
from creditline_core.adapters.memory import InMemoryEngineStore
from creditline_core.services.store import (
    ConcurrencyConflictError,
    CouponInvalidError,
    EngineError,
    InsufficientFundsError,
    RetriesExhaustedError,
    StoreUnavailableError,
)
from creditline_core.types import (
    AlertSeverity,
    AlertType,
    Coupon,
    CouponInvalidReason,
    CouponRedemption,
    CouponType,
    CreditBalance,
    Subscription,
    SubscriptionStatus,
    UsageAlert,
    UsageRecord,
    UsageSummary,
    ValidationResult,
)

__all__ = [
    "EngineConfig",
    "load_engine_config",
    "CreditEngineFacade",
    "LedgerEntry",
    "LedgerEntryKind",
    "LedgerReplay",
    "replay_ledger",
    "InMemoryEngineStore",
    "EngineError",
    "InsufficientFundsError",
    "CouponInvalidError",
    "ConcurrencyConflictError",
    "RetriesExhaustedError",
    "StoreUnavailableError",
    "AlertSeverity",
    "AlertType",
    "Coupon",
    "CouponInvalidReason",
    "CouponRedemption",
    "CouponType",
    "CreditBalance",
    "Subscription",
    "SubscriptionStatus",
    "UsageAlert",
    "UsageRecord",
    "UsageSummary",
    "ValidationResult",
]
