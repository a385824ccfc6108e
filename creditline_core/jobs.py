# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Creditline Engine.
#
# Creditline Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Background threads for the scheduled passes (sweep, rollover, reconcile).

Each pass is a plain callable; the thread only decides when to call it.
Hosts with their own scheduler can call the facade methods directly.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List

from creditline_core.facade import CreditEngineFacade

logger = logging.getLogger(__name__)


class PeriodicJob:
    def __init__(
        self,
        name: str,
        task: Callable[[], Any],
        interval_s: float,
        *,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.task = task
        self.interval_s = interval_s
        self.run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """One pass. A failing pass is logged; the schedule keeps going."""
        logger.info("%s starting", self.name)
        try:
            self.task()
        except Exception:  # noqa: BLE001
            logger.exception("%s failed", self.name)
            return False
        logger.info("%s completed", self.name)
        return True

    def _loop(self) -> None:
        logger.info("%s thread started (interval=%.0f seconds)", self.name, self.interval_s)
        try:
            if self.run_immediately:
                self.run_once()
            while not self._stop_event.wait(self.interval_s):
                self.run_once()
        finally:
            logger.info("%s thread stopped", self.name)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None


def build_background_jobs(engine: CreditEngineFacade) -> List[PeriodicJob]:
    cfg = engine.config
    return [
        PeriodicJob("expiration-sweep", engine.sweep_expired, cfg.sweep_interval_s),
        PeriodicJob("period-rollover", engine.rollover_periods, cfg.rollover_interval_s),
        PeriodicJob("reconciliation", engine.reconcile, cfg.reconcile_interval_s, run_immediately=False),
    ]


def start_background_jobs(engine: CreditEngineFacade) -> List[PeriodicJob]:
    """Start the sweep, rollover and reconciliation threads. Stop them with job.stop()."""
    jobs = build_background_jobs(engine)
    for job in jobs:
        job.start()
    return jobs


def stop_background_jobs(jobs: List[PeriodicJob]) -> None:
    for job in jobs:
        job.stop()
