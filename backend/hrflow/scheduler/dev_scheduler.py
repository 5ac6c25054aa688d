"""Dev Scheduler - Drives the time-based side of the engine

Periodically scans for:
- Wait steps whose due date has passed (or whose condition now holds)
- Overdue steps that time out or escalate

Each hit goes through WorkflowAdvancer.handle_timer, which is idempotent,
so overlapping ticks or several servers scanning the same steps are safe.
"""
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..domain.enums import StepOutcome
from ..domain.errors import DomainError
from ..repositories.instance_repo import InstanceRepository
from ..engine.advancer import WorkflowAdvancer
from ..utils.logger import get_logger, set_correlation_id
from ..utils.idgen import generate_correlation_id
from ..utils.time import utc_now

logger = get_logger(__name__)


class DevScheduler:
    """
    In-process scheduler using APScheduler

    Responsibilities:
    - Complete wait steps that are due
    - Time out overdue steps that declare a timeout transition
    - Escalate overdue steps
    """

    def __init__(
        self,
        instance_repo: Optional[InstanceRepository] = None,
        advancer: Optional[WorkflowAdvancer] = None
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.instance_repo = instance_repo or InstanceRepository()
        self.advancer = advancer or WorkflowAdvancer(instance_repo=self.instance_repo)
        self._is_running = False

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._process_waits,
            trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
            id="process_wait_steps",
            name="Complete due wait steps",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.add_job(
            self._process_overdue,
            trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
            id="process_overdue_steps",
            name="Time out and escalate overdue steps",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Scheduler started",
            extra={"interval_seconds": settings.scheduler_interval_seconds}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self._is_running = False
            logger.info("Dev scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self._is_running

    # =========================================================================
    # Scans
    # =========================================================================

    def run_wait_scan(self) -> int:
        """Fire due_date_reached on due wait steps; returns how many advanced"""
        now = utc_now()
        candidates = self.instance_repo.find_due_wait_steps(now) + self.instance_repo.find_condition_wait_steps()

        fired = 0
        for step in candidates:
            if self._fire(step.step_instance_id, StepOutcome.DUE_DATE_REACHED):
                fired += 1
        return fired

    def run_overdue_scan(self) -> int:
        """Fire timeout, else escalation, on overdue steps; returns how many changed"""
        fired = 0
        for step in self.instance_repo.find_overdue_unescalated_steps(utc_now()):
            if self._fire(step.step_instance_id, StepOutcome.TIMEOUT):
                fired += 1
            elif self._fire(step.step_instance_id, StepOutcome.ESCALATION):
                fired += 1
        return fired

    def _fire(self, step_instance_id: str, trigger: StepOutcome) -> bool:
        try:
            return self.advancer.handle_timer(step_instance_id, trigger)
        except DomainError as e:
            # A conflicting user action won the race; the next tick re-reads
            logger.warning(
                f"Timer {trigger.value} failed for {step_instance_id}: {e.message}",
                extra={"step_instance_id": step_instance_id, "trigger": trigger.value, "error_code": e.error_code}
            )
            return False

    # =========================================================================
    # Jobs
    # =========================================================================

    async def _process_waits(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            fired = self.run_wait_scan()
            if fired:
                logger.info(f"Completed {fired} wait steps", extra={"action": "wait_scan"})
        except Exception as e:
            logger.error(f"Error in wait step job: {e}", exc_info=True)

    async def _process_overdue(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            fired = self.run_overdue_scan()
            if fired:
                logger.info(f"Handled {fired} overdue steps", extra={"action": "overdue_scan"})
        except Exception as e:
            logger.error(f"Error in overdue step job: {e}", exc_info=True)


# Global scheduler instance
_scheduler: Optional[DevScheduler] = None


def get_scheduler() -> DevScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = DevScheduler()
    return _scheduler


def start_scheduler() -> None:
    """Start the global scheduler"""
    scheduler = get_scheduler()
    scheduler.start()


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
