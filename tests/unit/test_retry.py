# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

import pytest

from creditline_core.config import EngineConfig
from creditline_core.services.retry import backoff_delay, run_with_retries
from creditline_core.services.store import (
    ConcurrencyConflictError,
    RetriesExhaustedError,
    StoreUnavailableError,
)


def _flaky(conflicts, result="ok"):
    calls = {"n": 0}

    def operation():
        calls["n"] += 1
        if calls["n"] <= conflicts:
            raise ConcurrencyConflictError("version moved")
        return result

    return operation, calls


def test_succeeds_after_conflicts():
    sleeps = []
    operation, calls = _flaky(2)
    cfg = EngineConfig(max_conflict_retries=2)
    assert run_with_retries(operation, cfg=cfg, op_name="test", sleep=sleeps.append) == "ok"
    assert calls["n"] == 3
    assert len(sleeps) == 2


def test_gives_up_when_budget_spent():
    operation, calls = _flaky(10)
    cfg = EngineConfig(max_conflict_retries=2)
    with pytest.raises(RetriesExhaustedError):
        run_with_retries(operation, cfg=cfg, op_name="test", sleep=lambda _s: None)
    assert calls["n"] == 3


def test_other_errors_not_retried():
    calls = {"n": 0}

    def operation():
        calls["n"] += 1
        raise StoreUnavailableError("down")

    with pytest.raises(StoreUnavailableError):
        run_with_retries(operation, cfg=EngineConfig(), op_name="test", sleep=lambda _s: None)
    assert calls["n"] == 1


def test_nested_exhaustion_propagates_immediately():
    calls = {"n": 0}

    def operation():
        calls["n"] += 1
        raise RetriesExhaustedError("inner gave up")

    with pytest.raises(RetriesExhaustedError):
        run_with_retries(operation, cfg=EngineConfig(), op_name="test", sleep=lambda _s: None)
    assert calls["n"] == 1


@pytest.mark.parametrize("attempt, low, high", [(0, 0.005, 0.01), (1, 0.01, 0.02), (10, 0.025, 0.05)])
def test_backoff_bounds(attempt, low, high):
    cfg = EngineConfig(retry_base_delay_s=0.01, retry_max_delay_s=0.05)
    for _ in range(20):
        assert low <= backoff_delay(attempt, cfg) <= high
