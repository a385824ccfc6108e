# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Basic Usage Example

This example demonstrates the simplest way to use Creditline Engine:
grant and spend credits, redeem a coupon, and meter usage against a plan.
Runs on the in-memory store; swap in FirestoreEngineStore for production.
"""

from datetime import timedelta

from creditline_core import CreditEngineFacade, InMemoryEngineStore, Subscription
from creditline_core.types import utcnow


def main():
    engine = CreditEngineFacade(store=InMemoryEngineStore())
    now = utcnow()

    # Credits
    engine.grant_credits("user_1", 1000, "purchased", "Starter pack", expires_at=now + timedelta(days=90))
    engine.debit_credits("user_1", 120, "Image generation", idempotency_key="job:42")

    engine.create_coupon("WELCOME", "Welcome bonus", "credits", 250, usage_limit=1000)
    engine.redeem_coupon("welcome", "user_1", discount_amount=0)

    balance = engine.get_credit_balance("user_1")
    print("\n" + "=" * 60)
    print("CREDIT BALANCE")
    print("=" * 60)
    print(f"  Available: {balance.available_credits}")
    print(f"  Used:      {balance.used_credits}")
    print(f"  Expired:   {balance.expired_credits}")

    # Usage metering
    engine.upsert_subscription(
        Subscription(
            id="sub_1",
            user_id="user_1",
            period_start=now,
            period_end=now + timedelta(days=30),
            plan_name="pro",
            usage_limit=1000,
        )
    )
    engine.record_usage("user_1", "ai_generation", 930, "requests")

    summary = engine.get_usage_summary("user_1")
    print(f"\n📊 Usage: {summary.current_usage}/{summary.usage_limit} {summary.usage_unit}")
    for alert in engine.check_usage_alerts("user_1"):
        print(f"  ⚠ {alert.message}")


if __name__ == "__main__":
    main()
