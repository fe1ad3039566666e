import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from config import MERGE_INITIAL_DELAY_SECONDS, MERGE_INTERVAL_SECONDS, NEARBY_RADIUS_METERS
from core.errors import PersistenceError, PlaceNotFoundError
from core.models import Place, PlaceType
from core.repository import PlaceRepository
from dataclasses import dataclass, field
from typing import Any
from utils.geo import format_duration

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    clusters_merged: int = 0
    deleted_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    absorbed: dict[str, str] = field(default_factory=dict)  # donor id -> survivor id

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_ids)


class MergePass:
    """Merge auto-recorded location points that lie within the merge radius of each other.

    Clustering is a single greedy forward pass over places ordered by first visit: each
    unprocessed place collects every other unprocessed place closer than the radius to
    itself. Chains whose ends are farther apart than the radius may therefore survive as
    several clusters until a later pass.
    """

    def __init__(self, repository: PlaceRepository, radius: float = NEARBY_RADIUS_METERS):
        self.repository = repository
        self.radius = radius

    def find_clusters(self, places: list[Place]) -> list[list[Place]]:
        """Group places into clusters, survivor first. Singletons are not returned."""
        ordered = sorted(places, key=lambda place: (place.visit_date, place.id))
        processed: set[str] = set()
        clusters = []

        for place in ordered:
            if place.id in processed:
                continue
            processed.add(place.id)

            similar = [
                other
                for other in ordered
                if other.id not in processed and place.distance_to(other.coordinate) < self.radius
            ]
            if not similar:
                continue

            processed.update(other.id for other in similar)
            clusters.append([place, *similar])

        return clusters

    def run(self) -> MergeResult:
        logger.info("Checking and merging similar places")
        result = MergeResult()
        places = self.repository.fetch_by_type(PlaceType.LOCATION)

        for cluster in self.find_clusters(places):
            self._merge_cluster(cluster, result)

        if result.deleted_ids:
            logger.info(f"Deleted {result.deleted_count} duplicate locations")
        else:
            logger.info("No locations found that need to be merged")
        return result

    def _merge_cluster(self, cluster: list[Place], result: MergeResult) -> None:
        survivor, donors = cluster[0], cluster[1:]
        total = sum(place.accumulated_duration for place in cluster)
        logger.info(f"Found locations to merge: {survivor.name} and {len(donors)} nearby locations")

        try:
            self.repository.update(survivor.with_stay_duration(total))
        except PersistenceError as e:
            logger.error(f"Failed to update merge survivor {survivor.name}, skipping cluster: {e}")
            return

        result.clusters_merged += 1
        not_deleted = 0.0
        for donor in donors:
            try:
                self.repository.delete(donor.id)
            except PlaceNotFoundError:
                logger.debug(f"Duplicate location already gone: {donor.id}")
            except PersistenceError as e:
                logger.warning(f"Failed to delete duplicate location {donor.name}: {e}")
                result.failed_ids.append(donor.id)
                not_deleted += donor.accumulated_duration
                continue
            else:
                result.deleted_ids.append(donor.id)
                logger.info(f"Deleted duplicate location: {donor.name}")
            result.absorbed[donor.id] = survivor.id

        if not_deleted:
            # Donors that could not be deleted keep their own time for the next pass
            total -= not_deleted
            try:
                self.repository.update(survivor.with_stay_duration(total))
            except PersistenceError as e:
                logger.error(f"Failed to correct merged duration for {survivor.name}: {e}")

        logger.info(f"Merge complete! Location {survivor.name} now has total stay duration: {format_duration(total)}")


class MergeScheduler:
    """Runs the merge pass once after a start-up delay and then periodically.

    When a running tracker is supplied the pass executes inside the tracker's queue so it
    is serialized with duration flushes.
    """

    def __init__(
        self,
        merge_pass: MergePass,
        tracker=None,
        initial_delay: float = MERGE_INITIAL_DELAY_SECONDS,
        interval: float | None = MERGE_INTERVAL_SECONDS,
        after_first_run: Callable[[], Awaitable[Any]] | None = None,
    ):
        self.merge_pass = merge_pass
        self.tracker = tracker
        self.initial_delay = initial_delay
        self.interval = interval
        self.after_first_run = after_first_run
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name='merge-scheduler')

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> MergeResult:
        if self.tracker is not None and self.tracker.is_running:
            return await self.tracker.merge(self.merge_pass)
        return self.merge_pass.run()

    async def _run(self) -> None:
        await asyncio.sleep(self.initial_delay)
        first_run = True
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Merge pass failed: {e}")
            if first_run and self.after_first_run is not None:
                try:
                    await self.after_first_run()
                except Exception as e:
                    logger.error(f"Post-merge start-up step failed: {e}")
            first_run = False
            if not self.interval:
                return
            await asyncio.sleep(self.interval)
