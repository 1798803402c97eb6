from __future__ import annotations

import logging
import threading
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import CronSchedule
from .operation_log import OperationLog
from .utils import utc_now

logger = logging.getLogger(__name__)

TimerFactory = Callable[..., Any]


def next_occurrence(slot: str, tz: ZoneInfo, now: datetime) -> datetime:
    """Next wall-clock HH:MM in `tz` strictly after `now`."""
    hour, minute = CronSchedule.parse_slot(slot)
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), time(hour, minute), tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), time(hour, minute), tzinfo=tz)
    return candidate


class Scheduler:
    """
    Daily trigger for the pipeline entry point.

    Owns one cancellable timer per "HH:MM" slot. Lifecycle is
    configure -> start -> stop, with reconfigure doing all three.
    """

    def __init__(
        self,
        job: Callable[[], Any],
        oplog: Optional[OperationLog] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self._job = job
        self._oplog = oplog or OperationLog()
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._schedule: Optional[CronSchedule] = None
        self._tz: Optional[ZoneInfo] = None
        self._timers: Dict[str, Any] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def slots(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._timers)

    def configure(self, schedule: CronSchedule) -> None:
        with self._lock:
            if self._running:
                raise RuntimeError("Scheduler is running; use reconfigure().")
            for slot in schedule.times:
                CronSchedule.parse_slot(slot)
            try:
                tz = ZoneInfo(schedule.timezone)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"Unknown timezone: {schedule.timezone}") from exc
            self._schedule = schedule
            self._tz = tz

    def start(self) -> None:
        with self._lock:
            if self._schedule is None:
                raise RuntimeError("Scheduler is not configured.")
            if self._running:
                return
            self._running = True
            for slot in dict.fromkeys(self._schedule.times):
                self._arm(slot)
                self._oplog.info("cron_setup", f"Scheduled job for {slot} {self._schedule.timezone}")
        logger.info("Cron jobs configured: %s (%s)", ", ".join(self._schedule.times), self._schedule.timezone)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    def reconfigure(self, schedule: CronSchedule) -> None:
        with self._lock:
            self.stop()
            self.configure(schedule)
            self.start()

    def next_run(self, slot: str) -> datetime:
        if self._tz is None:
            raise RuntimeError("Scheduler is not configured.")
        return next_occurrence(slot, self._tz, self._clock())

    def _arm(self, slot: str) -> None:
        delay = max(0.0, (self.next_run(slot) - self._clock()).total_seconds())
        timer = self._timer_factory(delay, self._fire, args=(slot,))
        timer.daemon = True
        self._timers[slot] = timer
        timer.start()
        logger.debug("Armed slot %s in %.0fs", slot, delay)

    def _fire(self, slot: str) -> None:
        with self._lock:
            fired = self._timers.get(slot)
            if not self._running or fired is None:
                return
        self._oplog.info("cron_trigger", f"Scheduled job triggered at {slot}")
        try:
            self._job()
        except Exception as exc:  # noqa: BLE001
            self._oplog.error("cron_error", "Scheduled job failed", slot=slot, error=str(exc))
        finally:
            with self._lock:
                # A stop or reconfigure during the job replaced or dropped this handle.
                if self._running and self._timers.get(slot) is fired:
                    self._arm(slot)
