# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""
Creditline CLI Module

Operator commands for the scheduled passes and balance inspection.

Commands:
- sweep: Expire unused credits past their expiry
- rollover: Start new usage periods for ended subscriptions
- reconcile: Repair drifted aggregates and half-finished redemptions
- balance <user_id>: Show a user's balance (optionally recomputed)
- config: Print the effective engine configuration

Usage:
    python -m creditline_cli sweep
    python -m creditline_cli balance user-123 --recompute
    python -m creditline_cli --config engine.json config
"""

from creditline_cli.commands import main

__all__ = ["main"]
