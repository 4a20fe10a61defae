"""Periodic cache warming driven by APScheduler."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .cache import AssetCache
from .errors import DropfolioError
from .logging import get_logger

JOB_ID = "dropfolio-refresh"

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(expression: str) -> int:
    """Convert ``"1h30m"``-style expressions to seconds."""

    pattern = re.compile(r"(\d+)([smhd])", re.IGNORECASE)
    text = expression.strip()
    total = 0
    pos = 0
    for match in pattern.finditer(text):
        if match.start() != pos:
            raise ValueError(f"Invalid interval expression: {expression}")
        total += int(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]
        pos = match.end()

    if pos != len(text) or total <= 0:
        raise ValueError(f"Invalid interval expression: {expression}")
    return total


def resolve_timezone(tz_name: str) -> Tuple[ZoneInfo, str]:
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC"), "UTC"
    return tz, tz.key


class RefreshScheduler:
    """Refresh every bucket on an interval, independent of request traffic."""

    def __init__(
        self,
        cache: AssetCache,
        interval: str,
        *,
        timezone: str = "UTC",
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self.cache = cache
        self.interval = interval
        self.interval_seconds = parse_interval(interval)
        self._configured_timezone = timezone
        self._timezone, self._timezone_source = resolve_timezone(timezone)
        self._logger = logger or get_logger("dropfolio.scheduler")
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self, *, immediate: bool = False) -> None:
        """Register the refresh job and start the scheduler on the running loop."""

        if self._timezone_source != self._configured_timezone:
            self._logger.warning(
                "scheduler.timezone_fallback",
                configured=self._configured_timezone,
                using=self._timezone_source,
            )

        trigger = IntervalTrigger(seconds=self.interval_seconds, timezone=self._timezone)
        # next_run_time=None would register the job paused.
        extra = {"next_run_time": datetime.now(self._timezone)} if immediate else {}
        self._scheduler.add_job(
            self.run_once,
            trigger=trigger,
            id=JOB_ID,
            name=f"refresh:{','.join(self.cache.names)}",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
            **extra,
        )
        self._scheduler.start()
        self._logger.info("scheduler.started", interval=self.interval, seconds=self.interval_seconds)

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # APScheduler 3.11 defers the stop to the next loop iteration.
            while self._scheduler.running:
                await asyncio.sleep(0)
            self._logger.info("scheduler.stopped", runs=self.runs, failures=self.failures)

    async def run_once(self) -> None:
        """Warm every bucket; failures are logged and the served snapshot kept."""

        self.runs += 1
        try:
            results = await self.cache.refresh()
        except DropfolioError as exc:
            self.failures += 1
            self._logger.error("scheduler.refresh_failed", error=str(exc), code=exc.code)
            return
        self._logger.info(
            "scheduler.refresh_completed",
            **{name: result.images for name, result in results.items()},
        )

    def snapshot(self) -> Dict[str, object]:
        job = self._scheduler.get_job(JOB_ID)
        next_run = job.next_run_time if job is not None else None
        return {
            "interval": self.interval,
            "running": self.running,
            "nextRun": next_run.isoformat() if next_run else None,
            "runs": self.runs,
            "failures": self.failures,
        }
