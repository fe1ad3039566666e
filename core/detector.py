import logging
from collections.abc import Callable
from config import MONITORING_DISTANCE_METERS
from core.models import LocationFix, SignificantChange

logger = logging.getLogger(__name__)

ChangeListener = Callable[[SignificantChange], None]


class SignificantChangeDetector:
    """Turns raw fixes into significant-change events while monitoring is active.

    The first fix after start seeds the baseline and is emitted with distance 0. Fixes at
    least ``monitoring_distance`` meters from the baseline are emitted with their distance
    and become the new baseline. Anything closer is emitted as a "still here" event with
    distance 0 so the tracker can checkpoint the current session.
    """

    def __init__(self, monitoring_distance: float = MONITORING_DISTANCE_METERS):
        self.monitoring_distance = monitoring_distance
        self.is_monitoring = False
        self.last_emitted_fix: LocationFix | None = None
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def start(self, baseline: LocationFix | None = None) -> None:
        """Begin monitoring. Without a baseline the next fix seeds it."""
        self.is_monitoring = True
        self.last_emitted_fix = baseline
        logger.info(f"Started monitoring significant location changes (min distance: {self.monitoring_distance}m)")

    def stop(self) -> None:
        self.is_monitoring = False
        self.last_emitted_fix = None
        logger.info("Stopped monitoring significant location changes")

    def set_monitoring_distance(self, distance: float) -> None:
        self.monitoring_distance = distance
        logger.info(f"Location monitoring distance set to: {distance} meters")

    def process(self, fix: LocationFix) -> SignificantChange | None:
        """Classify a fix and notify listeners. Returns the emitted event, if any."""
        if not self.is_monitoring:
            return None

        if self.last_emitted_fix is None:
            self.last_emitted_fix = fix
            logger.debug(f"Set initial monitoring location: {fix.coordinate}")
            return self._emit(SignificantChange(fix, 0.0))

        distance = fix.coordinate.distance_to(self.last_emitted_fix.coordinate)
        logger.debug(f"Distance to last monitored location: {distance:.1f} meters")

        if distance >= self.monitoring_distance:
            logger.info(f"Detected significant location change: {distance:.1f} meters")
            self.last_emitted_fix = fix
            return self._emit(SignificantChange(fix, distance))

        return self._emit(SignificantChange(fix, 0.0))

    def _emit(self, change: SignificantChange) -> SignificantChange:
        for listener in list(self._listeners):
            listener(change)
        return change
