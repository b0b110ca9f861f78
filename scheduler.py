import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cache import TransactionCache
from config import get_settings
from persistence import DurableCacheStore


logger = logging.getLogger(__name__)

DEBOUNCE_JOB_ID = "cache_save_debounce"
PERIODIC_JOB_ID = "cache_save_periodic"


class SchedulerHost(Protocol):
    def schedule_once(
        self, job_id: str, delay_secs: float, func: Callable[[], Any]
    ) -> None: ...

    def schedule_interval(
        self, job_id: str, interval_secs: float, func: Callable[[], Any]
    ) -> None: ...

    def cancel(self, job_id: str) -> None: ...


class ApschedulerHost:
    def __init__(self, scheduler: Optional[BaseScheduler] = None) -> None:
        settings = get_settings()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=settings.timezone)

    def schedule_once(
        self, job_id: str, delay_secs: float, func: Callable[[], Any]
    ) -> None:
        run_date = datetime.now(self.scheduler.timezone) + timedelta(
            seconds=delay_secs
        )
        self.scheduler.add_job(
            func,
            DateTrigger(run_date=run_date),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=30,
        )

    def schedule_interval(
        self, job_id: str, interval_secs: float, func: Callable[[], Any]
    ) -> None:
        self.scheduler.add_job(
            func,
            IntervalTrigger(seconds=interval_secs),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=30,
            coalesce=True,
        )

    def cancel(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler host started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler host stopped")


class PersistenceScheduler:
    def __init__(
        self,
        cache: TransactionCache,
        store: DurableCacheStore,
        host: SchedulerHost,
        *,
        debounce_secs: float = 2.0,
        periodic_secs: float = 30.0,
    ) -> None:
        self.cache = cache
        self.store = store
        self.host = host
        self.debounce_secs = debounce_secs
        self.periodic_secs = periodic_secs
        self._pending = False
        self._started = False

    @property
    def pending(self) -> bool:
        return self._pending

    def request_save(self) -> None:
        # schedule_once replaces any job with the same id, restarting the wait.
        self._pending = True
        self.host.schedule_once(DEBOUNCE_JOB_ID, self.debounce_secs, self._on_idle)

    def start(self) -> None:
        if self._started:
            return
        self.host.schedule_interval(
            PERIODIC_JOB_ID, self.periodic_secs, self._on_interval_tick
        )
        self._started = True

    def flush(self) -> None:
        self.store.save(self.cache)

    def shutdown(self) -> None:
        self.host.cancel(DEBOUNCE_JOB_ID)
        self.host.cancel(PERIODIC_JOB_ID)
        self._pending = False
        self._started = False
        self.flush()
        logger.info("persistence_shutdown: final cache flush written")

    def _on_idle(self) -> None:
        self._pending = False
        self.flush()

    def _on_interval_tick(self) -> None:
        self.flush()
