# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from creditline_core.services.store import (
    ConcurrencyConflictError,
    CouponInvalidError,
    CouponStore,
    DuplicateCouponError,
    DuplicateEntryError,
    EngineError,
    EngineStore,
    IdempotencyError,
    InsufficientFundsError,
    LedgerStore,
    NotFoundError,
    RetriesExhaustedError,
    StoreUnavailableError,
    UsageStore,
)
from creditline_core.services.ledger import LedgerService
from creditline_core.services.expiration import ExpirationSweeper, SweepReport
from creditline_core.services.coupons import (
    CouponService,
    CouponStats,
    RedemptionView,
    compute_discount,
    validate_coupon,
)
from creditline_core.services.usage import (
    RolloverReport,
    UsageMeter,
    UsageStats,
    check_usage_alerts,
)
from creditline_core.services.reconciliation import ReconciliationReport, ReconciliationService

__all__ = [
    # Errors
    "EngineError",
    "InsufficientFundsError",
    "CouponInvalidError",
    "ConcurrencyConflictError",
    "RetriesExhaustedError",
    "StoreUnavailableError",
    "IdempotencyError",
    "DuplicateEntryError",
    "NotFoundError",
    "DuplicateCouponError",
    # Stores
    "LedgerStore",
    "CouponStore",
    "UsageStore",
    "EngineStore",
    # Services
    "LedgerService",
    "ExpirationSweeper",
    "SweepReport",
    "CouponService",
    "CouponStats",
    "RedemptionView",
    "compute_discount",
    "validate_coupon",
    "UsageMeter",
    "UsageStats",
    "RolloverReport",
    "check_usage_alerts",
    "ReconciliationService",
    "ReconciliationReport",
]
