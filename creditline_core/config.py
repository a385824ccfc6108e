# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from pydantic import BaseModel, ConfigDict, Field


class EngineConfig(BaseModel):
    """
    Configuration for the credit ledger and usage-metering engine.
    Decouples the engine from environment variables; see config_loader for overrides.
    """

    model_config = ConfigDict(frozen=True)

    # Store paths
    ledger_collection: str = Field("credit_ledger", description="Append-only ledger entries")
    balance_collection: str = Field("credit_balances", description="Materialized balance per user")
    coupon_collection: str = Field("coupons", description="Coupon registry keyed by code")
    redemption_collection: str = Field("coupon_redemptions", description="Append-only redemption log")
    usage_collection: str = Field("usage_records", description="Append-only usage records")
    subscription_collection: str = Field("subscriptions", description="Subscription usage aggregates")

    # Optimistic concurrency
    max_conflict_retries: int = Field(8, ge=0, description="Retries after a version conflict")
    retry_base_delay_s: float = Field(0.005, ge=0, description="First backoff delay")
    retry_max_delay_s: float = Field(0.25, ge=0, description="Backoff ceiling")

    # Query defaults
    history_default_limit: int = Field(50, gt=0)
    expiring_default_days: int = Field(7, gt=0)
    coupon_usages_default_limit: int = Field(20, gt=0)
    coupon_list_default_limit: int = Field(100, gt=0)
    usage_stats_default_days: int = Field(30, gt=0)

    # Sweeper
    sweep_batch_size: int = Field(500, gt=0, description="Users swept per batch")

    # Usage alerts (percent of usage_limit)
    near_limit_percent: int = Field(90, gt=0)
    over_limit_percent: int = Field(100, gt=0)

    # Background job intervals
    sweep_interval_s: float = Field(24 * 60 * 60, gt=0)
    rollover_interval_s: float = Field(60 * 60, gt=0)
    reconcile_interval_s: float = Field(60 * 60, gt=0)

    # Reconciliation leaves redemptions younger than this to the request that made them
    reconcile_grace_s: float = Field(5 * 60, ge=0)
