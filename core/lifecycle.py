import logging
from collections.abc import Callable
from config import PAUSE_MONITORING_IN_BACKGROUND
from core.tracker import Clock, utc_now
from datetime import datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class BackgroundTaskProvider(Protocol):
    """OS facility that grants a short period of extra execution time after backgrounding"""

    def begin_background_task(self, expiration_handler: Callable[[], None]) -> Any: ...

    def end_background_task(self, task_id: Any) -> None: ...


class LifecycleCoordinator:
    """Reacts to the app moving between background and foreground.

    Going to the background checkpoints the open session and records when it happened.
    Coming back credits the time spent away to the session's place, treating the whole
    interval as continued presence, and restarts or restores tracking where needed.
    """

    def __init__(
        self,
        service,
        clock: Clock = utc_now,
        background_tasks: BackgroundTaskProvider | None = None,
        pause_in_background: bool = PAUSE_MONITORING_IN_BACKGROUND,
    ):
        self.service = service
        self.clock = clock
        self.background_tasks = background_tasks
        self.pause_in_background = pause_in_background
        self.background_entered_at: datetime | None = None
        self._background_task_id: Any = None

    @property
    def is_in_background(self) -> bool:
        return self.background_entered_at is not None

    async def enter_background(self) -> None:
        logger.info("App is about to enter background, recording current time")
        tracker = self.service.tracker

        if self.pause_in_background:
            await self.service.stop_monitoring(preserve_state=True)
        elif tracker.is_tracking:
            await tracker.flush()
            logger.info("Updated stay duration before app entered background")

        self.background_entered_at = self.clock()
        self._begin_background_task()

    async def enter_foreground(self) -> None:
        logger.info("App returned to foreground")
        self._end_background_task()
        tracker = self.service.tracker
        sampler = self.service.sampler

        if self.background_entered_at is not None and tracker.is_tracking:
            await tracker.credit_offline(self.background_entered_at)
        self.background_entered_at = None

        if not self.service.is_monitoring and sampler.authorization_status.is_authorized:
            self.service.start_monitoring()
            logger.info("Restarted location monitoring after returning to foreground")

        if not tracker.is_tracking and sampler.last_fix is not None:
            await tracker.restore(sampler.last_fix.coordinate)

    def _begin_background_task(self) -> None:
        if self.background_tasks is None or self._background_task_id is not None:
            return
        self._background_task_id = self.background_tasks.begin_background_task(self._end_background_task)
        logger.debug(f"Started background task: {self._background_task_id}")

    def _end_background_task(self) -> None:
        if self.background_tasks is None or self._background_task_id is None:
            return
        self.background_tasks.end_background_task(self._background_task_id)
        logger.debug(f"Ended background task: {self._background_task_id}")
        self._background_task_id = None
