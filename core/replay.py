"""Replay a recorded GPS track through the tracking pipeline.

Tracks are CSV files with ``latitude,longitude,timestamp[,accuracy]`` columns or JSON lists of
objects with the same keys. Timestamps may be ISO-8601 strings or epoch seconds. The replay
clock follows the fix timestamps, so stay durations reflect the recorded timeline.
"""

import csv
import json
import logging
from core.models import AuthorizationStatus, Coordinate, LocationFix
from core.service import TrackingService
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TrackSummary:
    rows_total: int
    rows_parsed: int
    rows_skipped: int


def _parse_row(row: dict) -> LocationFix | None:
    try:
        latitude = float(row['latitude'])
        longitude = float(row['longitude'])
    except (KeyError, TypeError, ValueError):
        return None

    timestamp = parse_timestamp(row.get('timestamp'))
    if timestamp is None:
        return None

    accuracy = row.get('accuracy')
    try:
        horizontal_accuracy = float(accuracy) if accuracy not in (None, '') else -1.0
    except (TypeError, ValueError):
        horizontal_accuracy = -1.0

    return LocationFix(Coordinate(latitude, longitude), timestamp, horizontal_accuracy)


def load_track(path: Path) -> tuple[list[LocationFix], TrackSummary]:
    """Load fixes from a CSV or JSON track, sorted by timestamp"""
    if path.suffix.lower() == '.json':
        with open(path) as f:
            rows = json.load(f)
    else:
        with open(path, encoding='utf-8', newline='') as f:
            rows = list(csv.DictReader(f))

    fixes = [fix for fix in (_parse_row(row) for row in rows) if fix is not None]
    fixes.sort(key=lambda fix: fix.timestamp)

    summary = TrackSummary(rows_total=len(rows), rows_parsed=len(fixes), rows_skipped=len(rows) - len(fixes))
    if summary.rows_skipped:
        logger.warning(f"Skipped {summary.rows_skipped} unparseable rows in {path}")
    return fixes, summary


class ReplayClock:
    """Clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance_to(self, moment: datetime) -> None:
        if moment > self.now:
            self.now = moment


class ReplayPositioningProvider:
    """Positioning provider that is always authorized and delivers fixes on demand"""

    def __init__(self):
        self.delegate = None
        self.desired_accuracy = 'best'
        self.distance_filter = 0.0
        self.activity_type = 'other'
        self.allows_background_updates = True
        self.is_updating = False

    def authorization_status(self) -> AuthorizationStatus:
        return AuthorizationStatus.AUTHORIZED_FULL

    def request_authorization(self) -> None:
        pass

    def start_updates(self) -> None:
        self.is_updating = True

    def stop_updates(self) -> None:
        self.is_updating = False

    def request_location(self) -> None:
        pass

    def deliver(self, fix: LocationFix) -> None:
        if self.is_updating and self.delegate is not None:
            self.delegate.did_update_locations([fix])


class TrackReplay:
    """Drives a TrackingService over recorded fixes without timers.

    Each fix advances the clock and is processed to completion before the next one. A merge
    pass runs once the track is exhausted and the final session is flushed on close.
    """

    def __init__(self, service: TrackingService, provider: ReplayPositioningProvider, clock: ReplayClock):
        self.service = service
        self.provider = provider
        self.clock = clock

    async def run(self, fixes: list[LocationFix], merge: bool = True):
        service = self.service
        service.sampler.bind_loop()
        await service.tracker.start()
        service.sampler.check_initial_authorization()
        service.start_monitoring()

        try:
            for fix in fixes:
                self.clock.advance_to(fix.timestamp)
                self.provider.deliver(fix)
                await service.tracker.join()
            return await service.scheduler.run_once() if merge else None
        finally:
            service.detector.stop()
            service.sampler.stop_continuous_updates()
            await service.tracker.close()
