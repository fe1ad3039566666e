class TrackingError(Exception):
    """Base class for errors raised by the tracking core"""


class PermissionDeniedError(TrackingError):
    """Positioning or photo access was refused; only the user can change this"""


class TransientSampleFailure(TrackingError):
    """A location sample could not be produced (no signal, timeout, bad fix)"""


class PersistenceError(TrackingError):
    """A write or read against the place store failed"""


class PlaceNotFoundError(PersistenceError):
    """The place id does not exist in the store"""

    def __init__(self, place_id: str):
        super().__init__(f"Place not found: {place_id}")
        self.place_id = place_id
