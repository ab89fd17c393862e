from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.services.otp import OtpEngine
from app.services.otp_store import StoreError

LOGGER = logging.getLogger(__name__)

JOB_ID = "otp-expiry-reaper"


class OtpReaper:
    """Periodically deletes OTP entries whose ``expires_at`` has passed."""

    def __init__(self, engine: OtpEngine, interval_seconds: int) -> None:
        self._engine = engine
        self._interval_seconds = interval_seconds
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_once(self) -> int:
        try:
            return self._engine.purge_expired()
        except StoreError:
            LOGGER.exception("OTP reaper pass failed")
            return 0

    def start(self) -> None:
        if self._interval_seconds <= 0:
            LOGGER.info("OTP reaper disabled")
            return
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        LOGGER.info("OTP reaper started interval=%ss", self._interval_seconds)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        LOGGER.info("OTP reaper stopped")
