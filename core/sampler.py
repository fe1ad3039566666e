import asyncio
import logging
from collections.abc import Callable, Sequence
from config import DISTANCE_FILTER_METERS, SINGLE_UPDATE_TIMEOUT_SECONDS
from core.errors import TransientSampleFailure
from core.events import EventBus, Topic
from core.models import AuthorizationStatus, LocationFix
from typing import Protocol
from utils.geo import is_valid_coordinate

logger = logging.getLogger(__name__)

FixListener = Callable[[LocationFix], None]


class PositioningProvider(Protocol):
    """Platform positioning API.

    The provider reports back through its ``delegate`` (a LocationSampler) by calling
    ``did_update_locations``, ``did_fail`` and ``did_change_authorization``, possibly
    from a thread other than the event loop's.
    """

    delegate: 'LocationSampler | None'
    desired_accuracy: str
    distance_filter: float
    activity_type: str
    allows_background_updates: bool

    def authorization_status(self) -> AuthorizationStatus: ...

    def request_authorization(self) -> None: ...

    def start_updates(self) -> None: ...

    def stop_updates(self) -> None: ...

    def request_location(self) -> None: ...


class LocationSampler:
    """Wraps a positioning provider and exposes fixes, authorization and errors as observable state"""

    def __init__(
        self,
        provider: PositioningProvider,
        bus: EventBus | None = None,
        distance_filter: float = DISTANCE_FILTER_METERS,
        activity_type: str = 'other',
    ):
        self.provider = provider
        self.bus = bus
        self.authorization_status = AuthorizationStatus.NOT_DETERMINED
        self.last_fix: LocationFix | None = None
        self.error: Exception | None = None
        self.is_updating = False
        self.is_requesting_location = False
        self._pending_request: asyncio.Future | None = None
        self._listeners: list[FixListener] = []
        self._loop: asyncio.AbstractEventLoop | None = None

        provider.delegate = self
        provider.desired_accuracy = 'best'
        provider.distance_filter = distance_filter
        provider.activity_type = activity_type
        provider.allows_background_updates = True

    @property
    def location_access_disabled(self) -> bool:
        return self.authorization_status.is_denied

    def add_listener(self, listener: FixListener) -> Callable[[], None]:
        """Register a fix listener and return a callable that removes it"""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Remember the event loop that provider callbacks must be delivered on"""
        self._loop = loop or asyncio.get_running_loop()

    def check_initial_authorization(self) -> None:
        status = self.provider.authorization_status()
        logger.info(f"Initial authorization status: {status.value}")
        self.authorization_status = status

        if status == AuthorizationStatus.NOT_DETERMINED:
            self.request_permission()
        elif status.is_authorized:
            self.start_continuous_updates()
        else:
            logger.warning("Location access restricted or denied")

    def request_permission(self) -> None:
        logger.info("Requesting location permission")
        self.provider.request_authorization()

    def start_continuous_updates(self) -> None:
        if self.is_updating:
            return
        if self.location_access_disabled:
            logger.warning("Cannot start location updates: access denied")
            return
        logger.info("Starting location updates")
        self.provider.start_updates()
        self.is_updating = True

    def stop_continuous_updates(self) -> None:
        if not self.is_updating:
            return
        logger.info("Stopping location updates")
        self.provider.stop_updates()
        self.is_updating = False

    async def request_single_update(self, timeout: float = SINGLE_UPDATE_TIMEOUT_SECONDS) -> LocationFix | None:
        """Request one fix and wait for it.

        Concurrent callers share the request already in flight. Returns None when access is
        denied, the provider fails, or no fix arrives within timeout.
        """
        if self.location_access_disabled:
            logger.warning("Single location request skipped: access denied")
            return None

        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop

        if self._pending_request is None or self._pending_request.done():
            logger.debug("Requesting single location update")
            self._pending_request = loop.create_future()
            self.is_requesting_location = True
            self.provider.request_location()
        else:
            logger.debug("Location request already in flight, waiting for it")

        request = self._pending_request
        try:
            return await asyncio.wait_for(asyncio.shield(request), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No location fix within {timeout:.1f}s")
            self._resolve_request(None)
            return None

    # Provider delegate callbacks

    def did_update_locations(self, fixes: Sequence[LocationFix]) -> None:
        self._dispatch(self._handle_fixes, list(fixes))

    def did_fail(self, error: Exception) -> None:
        self._dispatch(self._handle_failure, error)

    def did_change_authorization(self, status: AuthorizationStatus) -> None:
        self._dispatch(self._handle_authorization, status)

    def _dispatch(self, handler: Callable, *args) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(handler, *args)
                return
        handler(*args)

    def _handle_fixes(self, fixes: list[LocationFix]) -> None:
        if not fixes:
            return
        fix = fixes[-1]
        if not is_valid_coordinate(fix.coordinate.latitude, fix.coordinate.longitude):
            self._handle_failure(TransientSampleFailure(f"Invalid coordinate: {fix.coordinate}"))
            return

        logger.debug(f"Location updated: {fix.coordinate}")
        self.last_fix = fix
        self.error = None
        self._resolve_request(fix)

        if self.bus is not None:
            self.bus.publish(Topic.LOCATION_UPDATED, fix)

        for listener in list(self._listeners):
            listener(fix)

    def _handle_failure(self, error: Exception) -> None:
        logger.warning(f"Location sampling failed: {error}")
        self.error = error
        self._resolve_request(None)
        if self.bus is not None:
            self.bus.publish(Topic.SAMPLE_ERROR, error)

    def _handle_authorization(self, status: AuthorizationStatus) -> None:
        logger.info(f"Authorization status changed to: {status.value}")
        self.authorization_status = status
        if self.bus is not None:
            self.bus.publish(Topic.AUTHORIZATION_CHANGED, status)

        if status.is_authorized:
            self.start_continuous_updates()
        elif status.is_denied:
            logger.warning("Location access denied after change")
            self.stop_continuous_updates()

    def _resolve_request(self, fix: LocationFix | None) -> None:
        self.is_requesting_location = False
        request = self._pending_request
        if request is not None and not request.done():
            request.set_result(fix)
