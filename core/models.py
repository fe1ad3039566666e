from config import (
    AUTO_LOCATION_NAME,
    LOCATION_CATEGORY,
    MANUAL_LOCATION_NAME,
    PLACE_TIMESTAMP_FORMAT,
)
from dataclasses import dataclass, field, replace
from datetime import datetime
from dateutil.parser import parse as parse_date
from enum import Enum
from utils.geo import distance_meters
from uuid import uuid4


class PlaceType(str, Enum):
    """Origin of a place record. Photo-imported places carry no type."""

    LOCATION = 'location'
    PLACE = 'place'


class AuthorizationStatus(str, Enum):
    """Positioning authorization reported by the provider"""

    NOT_DETERMINED = 'not_determined'
    AUTHORIZED_LIMITED = 'authorized_limited'
    AUTHORIZED_FULL = 'authorized_full'
    DENIED = 'denied'
    RESTRICTED = 'restricted'

    @property
    def is_authorized(self) -> bool:
        return self in (AuthorizationStatus.AUTHORIZED_LIMITED, AuthorizationStatus.AUTHORIZED_FULL)

    @property
    def is_denied(self) -> bool:
        return self in (AuthorizationStatus.DENIED, AuthorizationStatus.RESTRICTED)


@dataclass(frozen=True, slots=True)
class Coordinate:
    latitude: float
    longitude: float

    def distance_to(self, other: 'Coordinate') -> float:
        """Great-circle distance in meters"""
        return distance_meters(self.latitude, self.longitude, other.latitude, other.longitude)

    def __str__(self) -> str:
        return f"{self.latitude:.6f}, {self.longitude:.6f}"


@dataclass(frozen=True, slots=True)
class LocationFix:
    """A raw sample from the positioning provider.

    Attributes:
        coordinate: Reported position.
        timestamp: When the provider took the sample.
        horizontal_accuracy: Radius of uncertainty in meters, -1.0 when unknown.
    """

    coordinate: Coordinate
    timestamp: datetime
    horizontal_accuracy: float = -1.0


@dataclass(frozen=True, slots=True)
class SignificantChange:
    """Output of the significant-change detector. A distance of 0 means "still here"."""

    fix: LocationFix
    distance: float = 0.0

    @property
    def is_still_here(self) -> bool:
        return self.distance == 0


@dataclass(frozen=True, slots=True)
class Session:
    """The open visit session: which place is occupied and since when time was last flushed"""

    place_id: str
    entry_time: datetime


@dataclass(frozen=True, slots=True)
class Place:
    """A persisted point of interest with its accumulated stay duration"""

    name: str
    coordinate: Coordinate
    visit_date: datetime
    id: str = field(default_factory=lambda: str(uuid4()))
    place_type: PlaceType | None = None
    stay_duration: float | None = None
    photo_asset_identifier: str | None = None
    description: str | None = None
    category: str | None = None
    address: str | None = None

    @property
    def accumulated_duration(self) -> float:
        return self.stay_duration or 0.0

    def with_stay_duration(self, seconds: float) -> 'Place':
        return replace(self, stay_duration=seconds)

    def distance_to(self, coordinate: Coordinate) -> float:
        return self.coordinate.distance_to(coordinate)

    @classmethod
    def auto_location(cls, coordinate: Coordinate, created_at: datetime) -> 'Place':
        """Build the record for an automatically recorded location point"""
        return cls(
            name=AUTO_LOCATION_NAME.format(timestamp=created_at.strftime(PLACE_TIMESTAMP_FORMAT)),
            coordinate=coordinate,
            visit_date=created_at,
            place_type=PlaceType.LOCATION,
            stay_duration=0.0,
            description=f"Automatically saved location at {coordinate}",
            category=LOCATION_CATEGORY,
        )

    @classmethod
    def manual_location(cls, coordinate: Coordinate, created_at: datetime) -> 'Place':
        """Build the record for a location the user saved explicitly"""
        return cls(
            name=MANUAL_LOCATION_NAME.format(timestamp=created_at.strftime(PLACE_TIMESTAMP_FORMAT)),
            coordinate=coordinate,
            visit_date=created_at,
            place_type=PlaceType.LOCATION,
            stay_duration=0.0,
            description=f"Manually saved location at {coordinate}",
            category=LOCATION_CATEGORY,
        )

    def to_record(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'latitude': self.coordinate.latitude,
            'longitude': self.coordinate.longitude,
            'visit_date': self.visit_date.isoformat(),
            'place_type': self.place_type.value if self.place_type else None,
            'stay_duration': self.stay_duration,
            'photo_asset_identifier': self.photo_asset_identifier,
            'description': self.description,
            'category': self.category,
            'address': self.address,
        }

    @classmethod
    def from_record(cls, record: dict) -> 'Place':
        place_type = record.get('place_type')
        stay_duration = record.get('stay_duration')
        return cls(
            id=record['id'],
            name=record['name'],
            coordinate=Coordinate(float(record['latitude']), float(record['longitude'])),
            visit_date=parse_date(record['visit_date']),
            place_type=PlaceType(place_type) if place_type else None,
            stay_duration=float(stay_duration) if stay_duration is not None else None,
            photo_asset_identifier=record.get('photo_asset_identifier'),
            description=record.get('description'),
            category=record.get('category'),
            address=record.get('address'),
        )
