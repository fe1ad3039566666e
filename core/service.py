import asyncio
import logging
from config import (
    CHECKPOINT_INTERVAL_SECONDS,
    MERGE_INITIAL_DELAY_SECONDS,
    MERGE_INTERVAL_SECONDS,
    MONITORING_DISTANCE_METERS,
    NEARBY_RADIUS_METERS,
    SIGNIFICANT_STAY_THRESHOLD_SECONDS,
)
from core.detector import SignificantChangeDetector
from core.events import EventBus
from core.lifecycle import BackgroundTaskProvider, LifecycleCoordinator
from core.merge import MergePass, MergeScheduler
from core.models import Place
from core.photos import PhotoPlaceImporter
from core.repository import PlaceRepository
from core.sampler import LocationSampler, PositioningProvider
from core.tracker import Clock, VisitTracker, utc_now

logger = logging.getLogger(__name__)


class TrackingService:
    """Wires sampler -> detector -> tracker -> repository and owns their lifetimes"""

    def __init__(
        self,
        provider: PositioningProvider,
        repository: PlaceRepository,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
        background_tasks: BackgroundTaskProvider | None = None,
        photo_importer: PhotoPlaceImporter | None = None,
        monitoring_distance: float = MONITORING_DISTANCE_METERS,
        nearby_radius: float = NEARBY_RADIUS_METERS,
        checkpoint_interval: float | None = CHECKPOINT_INTERVAL_SECONDS,
        merge_initial_delay: float = MERGE_INITIAL_DELAY_SECONDS,
        merge_interval: float | None = MERGE_INTERVAL_SECONDS,
    ):
        self.bus = bus or repository.bus or EventBus()
        self.repository = repository
        self.clock = clock
        self.photo_importer = photo_importer

        self.sampler = LocationSampler(provider, self.bus)
        self.detector = SignificantChangeDetector(monitoring_distance)
        self.tracker = VisitTracker(repository, clock=clock, nearby_radius=nearby_radius, checkpoint_interval=checkpoint_interval)
        self.merge_pass = MergePass(repository, radius=nearby_radius)
        self.scheduler = MergeScheduler(
            self.merge_pass,
            tracker=self.tracker,
            initial_delay=merge_initial_delay,
            interval=merge_interval,
            after_first_run=self.restore_tracking,
        )
        self.lifecycle = LifecycleCoordinator(self, clock=clock, background_tasks=background_tasks)

        self.sampler.add_listener(self.detector.process)
        self.detector.add_listener(self.tracker.submit)

    @property
    def is_monitoring(self) -> bool:
        return self.detector.is_monitoring

    async def start(self) -> None:
        """Start the tracker, check authorization, begin monitoring and schedule merges"""
        self.sampler.bind_loop()
        await self.tracker.start()
        self.sampler.check_initial_authorization()
        if not self.sampler.location_access_disabled:
            self.start_monitoring()
        self.scheduler.start()
        logger.info("Tracking service started")

    async def close(self) -> None:
        await self.scheduler.close()
        self.detector.stop()
        self.sampler.stop_continuous_updates()
        await self.tracker.close()
        logger.info("Tracking service stopped")

    async def __aenter__(self) -> 'TrackingService':
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def start_monitoring(self, distance: float | None = None) -> None:
        if distance is not None:
            self.detector.set_monitoring_distance(distance)
        if self.sampler.location_access_disabled:
            logger.warning("Cannot monitor location changes: access denied")
            return
        self.detector.start()
        self.sampler.start_continuous_updates()
        self.tracker.resume_checkpoints()

    async def stop_monitoring(self, preserve_state: bool = False) -> None:
        self.detector.stop()
        self.sampler.stop_continuous_updates()
        if self.tracker.is_running:
            await self.tracker.stop(preserve_state=preserve_state)

    def set_monitoring_distance(self, distance: float) -> None:
        self.detector.set_monitoring_distance(distance)

    async def restore_tracking(self) -> Place | None:
        """Re-adopt a nearby place from the last known fix, if nothing is tracked"""
        fix = self.sampler.last_fix
        if fix is None or self.tracker.is_tracking:
            return None
        return await self.tracker.restore(fix.coordinate)

    async def save_current_location(self) -> Place | None:
        fix = await self.sampler.request_single_update()
        if fix is None:
            logger.warning("Unable to save current location: no fix available")
            return None
        return await self.tracker.save_current_location(fix.coordinate)

    def significant_places(self, min_seconds: float = SIGNIFICANT_STAY_THRESHOLD_SECONDS) -> list[Place]:
        return self.repository.fetch_significant(min_seconds)

    async def import_photos(self) -> list[Place]:
        if self.photo_importer is None:
            logger.warning("No photo source configured")
            return []
        return await asyncio.to_thread(self.photo_importer.import_places)
