"""
Periodic and manual triggers for the media cleanup jobs.

The scheduled loop and the admin endpoints both go through
``run_media_cleanup`` / ``run_temp_cleanup`` so the two paths cannot drift.
"""

from __future__ import annotations

import argparse
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from storefront_media.janitor import TempCleanupResult, TempFileJanitor
from storefront_media.reconcile import MediaCleanupResult, ReconciliationEngine, utcnow

logger = logging.getLogger(__name__)

# Upper bound on a single wait so clock jumps are noticed.
MAX_SLEEP_SECONDS = 60.0


class Trigger(Protocol):
    def next_after(self, now: datetime) -> datetime:
        ...


@dataclass(frozen=True)
class DailyTrigger:
    hour: int
    minute: int = 0

    def next_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate


@dataclass(frozen=True)
class HourlyTrigger:
    minute: int = 0

    def next_after(self, now: datetime) -> datetime:
        candidate = now.replace(minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(hours=1)
        return candidate


@dataclass
class ScheduledJob:
    name: str
    trigger: Trigger
    action: Callable[[], object]
    next_run: Optional[datetime] = None


class MaintenanceScheduler:
    """
    Runs the media reconciliation daily and the staging cleanup hourly.

    Instantiate once at process start, then ``start()``/``stop()``. Tests can
    drive ``run_pending(now)`` directly instead of waiting on the clock.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        janitor: TempFileJanitor,
        *,
        media_trigger: Trigger = DailyTrigger(hour=3),
        temp_trigger: Trigger = HourlyTrigger(minute=0),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.janitor = janitor
        self.clock = clock
        self.jobs = [
            ScheduledJob("media-cleanup", media_trigger, self.run_media_cleanup),
            ScheduledJob("temp-cleanup", temp_trigger, self.run_temp_cleanup),
        ]
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()

    def run_media_cleanup(self) -> MediaCleanupResult:
        return self.engine.run()

    def run_temp_cleanup(self) -> TempCleanupResult:
        return self.janitor.run()

    @property
    def is_running(self) -> bool:
        return self._running

    def schedule(self, now: Optional[datetime] = None) -> None:
        now = now or self.clock()
        for job in self.jobs:
            job.next_run = job.trigger.next_after(now)

    def _fire(self, job: ScheduledJob) -> None:
        logger.info("Running scheduled %s", job.name)
        try:
            result = job.action()
        except Exception:
            logger.exception("Scheduled %s raised", job.name)
            return
        status = getattr(result, "status", None)
        logger.info("Scheduled %s finished with status %s", job.name, getattr(status, "value", status))

    def run_pending(self, now: Optional[datetime] = None, *, background: bool = False) -> list[str]:
        """
        Fire every job whose next run is due at ``now``.

        With ``background`` each job runs on its own thread so a long media
        run does not hold up the hourly staging cleanup.
        """
        now = now or self.clock()
        fired: list[str] = []
        for job in self.jobs:
            if job.next_run is None:
                job.next_run = job.trigger.next_after(now)
                continue
            if now < job.next_run:
                continue
            job.next_run = job.trigger.next_after(now)
            fired.append(job.name)
            if background:
                threading.Thread(target=self._fire, args=(job,), name=job.name, daemon=True).start()
            else:
                self._fire(job)
        return fired

    def seconds_until_next(self, now: Optional[datetime] = None) -> float:
        now = now or self.clock()
        pending = [job.next_run for job in self.jobs if job.next_run is not None]
        if not pending:
            return MAX_SLEEP_SECONDS
        return max(0.0, (min(pending) - now).total_seconds())

    def start(self) -> None:
        if self._running:
            return
        self.schedule()
        self._running = True
        self._wake.clear()
        self._thread = threading.Thread(target=self._run_loop, name="maintenance-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Maintenance scheduler started: %s",
            ", ".join(f"{job.name} at {job.next_run.isoformat()}" for job in self.jobs),
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("Maintenance scheduler stopped")

    def _run_loop(self) -> None:
        while self._running:
            try:
                self.run_pending(background=True)
            except Exception:
                logger.exception("Maintenance scheduler tick failed")
            timeout = min(max(self.seconds_until_next(), 1.0), MAX_SLEEP_SECONDS)
            self._wake.wait(timeout=timeout)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the storefront media maintenance jobs.")
    parser.add_argument(
        "--once",
        choices=["media", "temp"],
        help="Run a single job now and exit instead of starting the scheduler loop.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from storefront_media.dependencies import get_maintenance_scheduler

    scheduler = get_maintenance_scheduler()
    if args.once == "media":
        result = scheduler.run_media_cleanup()
        logger.info("Media cleanup result: %s", result.to_response())
        return 0 if result.ok else 1
    if args.once == "temp":
        result = scheduler.run_temp_cleanup()
        logger.info("Temporary file cleanup result: %s", result.to_response())
        return 0 if result.ok else 1

    scheduler.start()
    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
