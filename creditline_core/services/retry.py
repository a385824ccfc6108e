# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Bounded retry for optimistic-concurrency writes."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from creditline_core.config import EngineConfig
from creditline_core.services.store import ConcurrencyConflictError, RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, cfg: EngineConfig) -> float:
    """Exponential backoff with half-jitter."""
    ceiling = min(cfg.retry_max_delay_s, cfg.retry_base_delay_s * (2 ** attempt))
    return ceiling * (0.5 + random.random() / 2)


def run_with_retries(
    operation: Callable[[], T],
    *,
    cfg: EngineConfig,
    op_name: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `operation`, re-running it from scratch after each version conflict.

    The operation must re-read everything it depends on; a value read before a
    conflict is never reused.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except RetriesExhaustedError:
            raise
        except ConcurrencyConflictError as exc:
            if attempt >= cfg.max_conflict_retries:
                logger.warning("%s: giving up after %d conflicts", op_name, attempt + 1)
                raise RetriesExhaustedError(f"{op_name} failed after {attempt + 1} conflicting attempts") from exc
            delay = backoff_delay(attempt, cfg)
            logger.debug("%s: version conflict (attempt %d), retrying in %.4fs", op_name, attempt + 1, delay)
            sleep(delay)
            attempt += 1
