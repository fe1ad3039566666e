"""Visit tracking state machine.

The tracker is an actor: every state transition (significant-change events, checkpoint
ticks, lifecycle flushes, merges, stop requests) is a message on a single asyncio queue
consumed by one worker task, so two events can never interleave and double count a
flush. Durations are accumulated additively: each flush adds ``now - entry_time`` to the
place's stored stay duration and then moves ``entry_time`` to ``now``. ``entry_time``
only advances after the store accepted the write.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from config import (
    CHECKPOINT_INTERVAL_SECONDS,
    NEARBY_RADIUS_METERS,
    PERSISTENCE_RETRY_ATTEMPTS,
    PERSISTENCE_RETRY_WAIT_SECONDS,
)
from core.errors import PersistenceError, PlaceNotFoundError
from core.models import Coordinate, LocationFix, Place, PlaceType, Session, SignificantChange
from core.repository import PlaceRepository
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from typing import Any
from utils.geo import format_duration

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class CommandKind(Enum):
    CHANGE = 'change'
    TICK = 'tick'
    FLUSH = 'flush'
    CREDIT = 'credit'
    RESTORE = 'restore'
    SAVE = 'save'
    STOP = 'stop'
    MERGE = 'merge'


@dataclass
class Command:
    kind: CommandKind
    payload: Any = None
    reply: asyncio.Future | None = None


class VisitTracker:
    """Owns the single open visit session and all writes to stay durations"""

    def __init__(
        self,
        repository: PlaceRepository,
        clock: Clock = utc_now,
        nearby_radius: float = NEARBY_RADIUS_METERS,
        checkpoint_interval: float | None = CHECKPOINT_INTERVAL_SECONDS,
        retry_attempts: int = PERSISTENCE_RETRY_ATTEMPTS,
        retry_wait: float = PERSISTENCE_RETRY_WAIT_SECONDS,
    ):
        self.repository = repository
        self.clock = clock
        self.nearby_radius = nearby_radius
        self.checkpoint_interval = checkpoint_interval
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait
        self.session: Session | None = None
        self.last_fix: LocationFix | None = None
        self.pending_change: SignificantChange | None = None
        self.checkpoints_enabled = True
        self._queue: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def is_tracking(self) -> bool:
        return self.session is not None

    @property
    def current_place_id(self) -> str | None:
        return self.session.place_id if self.session else None

    # Lifecycle

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name='visit-tracker')
        if self.checkpoint_interval:
            self._ticker = asyncio.create_task(self._tick_periodically(), name='visit-tracker-checkpoints')
        logger.debug("Visit tracker started")

    async def close(self, preserve_state: bool = False) -> None:
        """Final flush, then stop the worker"""
        if not self.is_running:
            return
        if self._ticker is not None:
            self._ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ticker
            self._ticker = None

        await self.stop(preserve_state=preserve_state)
        await self._queue.put(None)
        await self._worker
        self._worker = None
        self._queue = None
        logger.debug("Visit tracker closed")

    async def __aenter__(self) -> 'VisitTracker':
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # Messages

    def submit(self, change: SignificantChange) -> None:
        """Enqueue a significant-change event without waiting. Safe to call from any thread."""
        if self._queue is None:
            logger.warning("Visit tracker is not running, dropping location change")
            return

        command = Command(CommandKind.CHANGE, change)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._queue.put_nowait(command)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, command)

    async def handle_change(self, change: SignificantChange) -> Session | None:
        return await self._call(CommandKind.CHANGE, change)

    async def checkpoint(self) -> Session | None:
        return await self._call(CommandKind.TICK)

    async def flush(self) -> Session | None:
        return await self._call(CommandKind.FLUSH)

    async def credit_offline(self, since: datetime) -> Session | None:
        """Credit time spent suspended (since the background entry) to the open session"""
        return await self._call(CommandKind.CREDIT, since)

    async def restore(self, coordinate: Coordinate) -> Place | None:
        """Re-adopt the nearest known place as the tracked one without creating a new place"""
        return await self._call(CommandKind.RESTORE, coordinate)

    async def save_current_location(self, coordinate: Coordinate) -> Place | None:
        return await self._call(CommandKind.SAVE, coordinate)

    async def stop(self, preserve_state: bool = False) -> None:
        await self._call(CommandKind.STOP, preserve_state)

    async def merge(self, merge_pass) -> Any:
        return await self._call(CommandKind.MERGE, merge_pass)

    def resume_checkpoints(self) -> None:
        self.checkpoints_enabled = True

    async def join(self) -> None:
        """Wait until every queued message has been processed"""
        if self._queue is not None:
            await self._queue.join()

    async def _call(self, kind: CommandKind, payload: Any = None) -> Any:
        if not self.is_running:
            raise RuntimeError("Visit tracker is not running")
        reply = self._loop.create_future()
        await self._queue.put(Command(kind, payload, reply))
        return await reply

    async def _run(self) -> None:
        handlers = {
            CommandKind.CHANGE: self._on_change,
            CommandKind.TICK: self._on_tick,
            CommandKind.FLUSH: self._on_flush,
            CommandKind.CREDIT: self._on_credit,
            CommandKind.RESTORE: self._on_restore,
            CommandKind.SAVE: self._on_save,
            CommandKind.STOP: self._on_stop,
            CommandKind.MERGE: self._on_merge,
        }
        while True:
            command = await self._queue.get()
            try:
                if command is None:
                    return
                result = await handlers[command.kind](command.payload)
            except Exception as e:
                logger.error(f"Visit tracker failed to process {command.kind.value}: {e}")
                if command.reply is not None and not command.reply.done():
                    command.reply.set_exception(e)
            else:
                if command.reply is not None and not command.reply.done():
                    command.reply.set_result(result)
            finally:
                self._queue.task_done()

    async def _tick_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.checkpoint_interval)
            if self.checkpoints_enabled and self._queue is not None and self._queue.empty():
                self._queue.put_nowait(Command(CommandKind.TICK))

    # Handlers (run on the worker task only)

    async def _on_change(self, change: SignificantChange) -> Session | None:
        now = self.clock()
        self.last_fix = change.fix
        coordinate = change.fix.coordinate
        logger.debug(f"Processing location change: {coordinate}, distance: {change.distance:.1f} meters")

        # A move blocked by a failed flush is retried by every later event, still-here included
        if self.session is not None and change.is_still_here and self.pending_change is None:
            await self._flush(now)
            return self.session

        nearby = self.repository.find_nearby(coordinate, self.nearby_radius)
        if nearby:
            nearest = nearby[0]
            if self.session is not None and self.session.place_id == nearest.id:
                logger.debug(f"User is still at the same location: {nearest.name}")
                self.pending_change = None
                await self._flush(now)
                return self.session

            if not await self._close_session(now):
                self.pending_change = change
                return self.session

            self.pending_change = None
            self.session = Session(nearest.id, now)
            logger.info(f"Started tracking location: {nearest.name}")
            return self.session

        if not await self._close_session(now):
            self.pending_change = change
            return self.session

        self.pending_change = None
        place = await self._create(Place.auto_location(coordinate, now))
        if place is not None:
            self.session = Session(place.id, now)
            logger.info(f"New location created and tracked: {coordinate}")
        return self.session

    async def _on_tick(self, _payload=None) -> Session | None:
        if self.pending_change is not None:
            logger.debug("Retrying blocked location change")
            return await self._on_change(SignificantChange(self.last_fix, self.pending_change.distance))
        if self.session is not None:
            await self._flush(self.clock())
        elif self.last_fix is not None:
            logger.debug("No current location being tracked, initializing with last known fix")
            return await self._on_change(SignificantChange(self.last_fix, 0.0))
        return self.session

    async def _on_flush(self, _payload=None) -> Session | None:
        if self.session is not None:
            await self._flush(self.clock())
        return self.session

    async def _on_credit(self, since: datetime) -> Session | None:
        if self.session is None:
            return None
        now = self.clock()
        offline = max(0.0, (now - since).total_seconds())
        logger.info(f"App offline time: {format_duration(offline)}")
        # Everything after entry_time is unsettled, so a flush credits the offline interval
        # without counting checkpoints that already ran in the background a second time.
        await self._flush(now)
        return self.session

    async def _on_restore(self, coordinate: Coordinate) -> Place | None:
        if self.session is not None:
            logger.debug("Location tracking already active, no need to restore")
            return self.repository.get(self.session.place_id)

        nearby = self.repository.find_nearby(coordinate, self.nearby_radius)
        if not nearby:
            logger.info("No known places nearby, unable to restore tracking")
            return None

        nearest = nearby[0]
        self.session = Session(nearest.id, self.clock())
        logger.info(f"Restored location tracking: {nearest.name}")
        return nearest

    async def _on_save(self, coordinate: Coordinate) -> Place | None:
        existing = [place for place in self.repository.find_nearby(coordinate, self.nearby_radius) if place.place_type == PlaceType.LOCATION]
        if existing:
            logger.info("A location place already exists near the current position")
            return None

        now = self.clock()
        if not await self._close_session(now):
            return None

        self.pending_change = None
        place = await self._create(Place.manual_location(coordinate, now))
        if place is not None:
            self.session = Session(place.id, now)
            logger.info(f"Manual location saved: {coordinate}")
        return place

    async def _on_stop(self, preserve_state: bool) -> None:
        self.checkpoints_enabled = False
        self.pending_change = None
        if self.session is None:
            return
        now = self.clock()
        if preserve_state:
            await self._flush(now)
        else:
            await self._close_session(now)
            self.session = None

    async def _on_merge(self, merge_pass) -> Any:
        if self.session is not None:
            await self._flush(self.clock())

        result = merge_pass.run()

        if self.session is not None and self.session.place_id in result.absorbed:
            survivor_id = result.absorbed[self.session.place_id]
            logger.info(f"Tracked place {self.session.place_id} merged into {survivor_id}")
            self.session = Session(survivor_id, self.session.entry_time)
        return result

    # Persistence helpers

    async def _flush(self, now: datetime) -> bool:
        """Add the session's unsettled time to its place. Returns False if the write kept failing."""
        session = self.session
        elapsed = max(0.0, (now - session.entry_time).total_seconds())

        try:
            place = await self._with_retry(self.repository.add_stay_duration, session.place_id, elapsed)
        except PlaceNotFoundError:
            logger.warning(f"Tracked place {session.place_id} no longer exists, dropping session")
            self.session = None
            return True
        except PersistenceError as e:
            logger.error(f"Failed to save stay duration for {session.place_id}, keeping {format_duration(elapsed)} pending: {e}")
            return False

        self.session = Session(session.place_id, now)
        logger.debug(f"Stay duration for {place.name}: +{format_duration(elapsed)}, total {format_duration(place.accumulated_duration)}")
        return True

    async def _close_session(self, now: datetime) -> bool:
        if self.session is None:
            return True
        if not await self._flush(now):
            return False
        if self.session is not None:
            place_id = self.session.place_id
            self.session = None
            logger.info(f"Left location {place_id}")
        return True

    async def _create(self, place: Place) -> Place | None:
        try:
            return await self._with_retry(self.repository.create, place)
        except PersistenceError as e:
            logger.error(f"Failed to create location point at {place.coordinate}: {e}")
            return None

    async def _with_retry(self, operation: Callable, *args) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.retry_attempts)),
            wait=wait_exponential(multiplier=self.retry_wait, max=30),
            retry=retry_if_exception_type(PersistenceError) & retry_if_not_exception_type(PlaceNotFoundError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = operation(*args)
        return result
