import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from fx_rates import ExchangeRateService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.refresh_hour = settings.fx_refresh_hour
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def _refresh_rates(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: job=fx_refresh source={source}")
        with session_scope() as session:
            service = ExchangeRateService(session)
            stored = service.refresh_all()
            removed = service.cleanup_old()
        logger.info(
            f"scheduler_run: job=fx_refresh source={source} stored={stored} "
            f"removed={removed}"
        )
        return stored

    def _mark_stale(self, source: str = "manual") -> int:
        with session_scope() as session:
            marked = ExchangeRateService(session).mark_stale()
        logger.info(f"scheduler_run: job=fx_mark_stale source={source} marked={marked}")
        return marked

    def start(self) -> None:
        trigger = CronTrigger(hour=self.refresh_hour, minute=0)
        self.scheduler.add_job(
            self._refresh_rates,
            trigger,
            args=[f"daily_{self.refresh_hour:02d}:00"],
            id="fx_refresh_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._mark_stale,
            trigger,
            args=["hourly"],
            id="fx_mark_stale_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {self.refresh_hour:02d}:00 UTC rate refresh "
            "and hourly stale marking"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
