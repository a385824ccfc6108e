# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

import json

import pytest
from pydantic import ValidationError

from creditline_core.config import EngineConfig
from creditline_core.config_loader import load_engine_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("CREDITLINE_MAX_CONFLICT_RETRIES", "CREDITLINE_SWEEP_BATCH_SIZE", "CREDITLINE_LEDGER_COLLECTION"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_file():
    cfg = load_engine_config()
    assert cfg == EngineConfig()
    assert cfg.near_limit_percent == 90
    assert cfg.over_limit_percent == 100


def test_file_values(tmp_path):
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"sweep_batch_size": 25, "coupon_collection": "promo_codes"}))
    cfg = load_engine_config(path)
    assert cfg.sweep_batch_size == 25
    assert cfg.coupon_collection == "promo_codes"


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"max_conflict_retries": 3}))
    monkeypatch.setenv("CREDITLINE_MAX_CONFLICT_RETRIES", "12")
    monkeypatch.setenv("CREDITLINE_LEDGER_COLLECTION", " ledger_v2 ")
    cfg = load_engine_config(path)
    assert cfg.max_conflict_retries == 12
    assert cfg.ledger_collection == "ledger_v2"


def test_blank_env_ignored(monkeypatch):
    monkeypatch.setenv("CREDITLINE_SWEEP_BATCH_SIZE", "  ")
    assert load_engine_config().sweep_batch_size == EngineConfig().sweep_batch_size


def test_out_of_range_rejected(tmp_path):
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"sweep_batch_size": 0}))
    with pytest.raises(ValidationError):
        load_engine_config(path)


def test_config_is_frozen():
    cfg = EngineConfig()
    with pytest.raises(ValidationError):
        cfg.sweep_batch_size = 10
