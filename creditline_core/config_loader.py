# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Engine configuration loader."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from creditline_core.config import EngineConfig

ENV_PREFIX = "CREDITLINE_"

# field name -> parser applied to the raw environment string
_ENV_FIELDS = {
    "max_conflict_retries": int,
    "retry_base_delay_s": float,
    "retry_max_delay_s": float,
    "sweep_batch_size": int,
    "history_default_limit": int,
    "expiring_default_days": int,
    "sweep_interval_s": float,
    "rollover_interval_s": float,
    "reconcile_interval_s": float,
    "ledger_collection": str,
}


def load_engine_config(config_path: str | Path | None = None) -> EngineConfig:
    """
    Load engine configuration from JSON file with ENV overrides.

    Priority (highest to lowest):
    1. Environment variables (CREDITLINE_*)
    2. Provided config_path
    3. EngineConfig defaults

    Args:
        config_path: Optional path to a JSON config file

    Returns:
        EngineConfig instance

    Raises:
        pydantic.ValidationError: If a value is out of range or malformed
    """
    data: dict[str, Any] = {}
    if config_path:
        with open(config_path) as f:
            data = json.load(f)

    for name, parse in _ENV_FIELDS.items():
        raw = os.environ.get(ENV_PREFIX + name.upper())
        if raw is None or not raw.strip():
            continue
        data[name] = parse(raw.strip())

    return EngineConfig(**data)
