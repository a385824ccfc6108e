# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from datetime import datetime, timedelta, timezone

import pytest

from creditline_core.adapters.memory import InMemoryEngineStore
from creditline_core.config import EngineConfig
from creditline_core.facade import CreditEngineFacade


class FakeClock:
    """Manually advanced UTC clock injected into services."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cfg():
    """Zero backoff so conflict retries do not slow the suite down."""
    return EngineConfig(retry_base_delay_s=0.0, retry_max_delay_s=0.0, max_conflict_retries=50)


@pytest.fixture
def store():
    return InMemoryEngineStore()


@pytest.fixture
def engine(store, cfg, clock):
    return CreditEngineFacade(store=store, config=cfg, clock=clock, sleep=no_sleep)
