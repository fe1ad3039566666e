import logging
import threading
from collections.abc import Iterator
from config import DATA_DIR, PLACES_DB_FILE
from contextlib import contextmanager
from core.errors import PersistenceError, PlaceNotFoundError
from core.events import EventBus, PlacesChanged, Topic
from core.models import Coordinate, Place, PlaceType
from pathlib import Path
from tinydb import Query, TinyDB
from tinydb.storages import MemoryStorage

logger = logging.getLogger(__name__)


class PlaceRepository:
    """Place store backed by a TinyDB table.

    All mutations are serialized with a process-local lock, so every write replaces a
    whole record at once and readers never observe partial updates. Each mutation
    publishes ``Topic.PLACES_CHANGED`` on the event bus.
    """

    def __init__(self, db: TinyDB, bus: EventBus | None = None, table_name: str = 'places'):
        self.db = db
        self.bus = bus
        self._table = db.table(table_name)
        self._lock = threading.RLock()

    @classmethod
    def open(cls, path: Path = DATA_DIR / PLACES_DB_FILE, bus: EventBus | None = None) -> 'PlaceRepository':
        """Open (or create) the JSON database file at path"""
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(TinyDB(path, indent=2), bus)

    @classmethod
    def in_memory(cls, bus: EventBus | None = None) -> 'PlaceRepository':
        return cls(TinyDB(storage=MemoryStorage), bus)

    def close(self):
        self.db.close()

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except PersistenceError:
                raise
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Place store failed to {action}: {e}")
                raise PersistenceError(f"Failed to {action}: {e}") from e

    # Reads

    def get(self, place_id: str) -> Place | None:
        with self._guard('read place'):
            record = self._table.get(Query().id == place_id)
            return Place.from_record(record) if record else None

    def fetch_all(self) -> list[Place]:
        with self._guard('read places'):
            return [Place.from_record(record) for record in self._table.all()]

    def fetch_by_type(self, place_type: PlaceType | None) -> list[Place]:
        value = place_type.value if place_type else None
        with self._guard('read places'):
            return [Place.from_record(record) for record in self._table.search(Query().place_type == value)]

    def find_by_asset_identifier(self, asset_identifier: str) -> Place | None:
        with self._guard('read place'):
            record = self._table.get(Query().photo_asset_identifier == asset_identifier)
            return Place.from_record(record) if record else None

    def find_nearby(self, coordinate: Coordinate, radius_meters: float) -> list[Place]:
        """Places strictly closer than radius_meters, nearest first"""
        nearby = []
        for place in self.fetch_all():
            distance = place.distance_to(coordinate)
            if distance < radius_meters:
                nearby.append((distance, place))

        nearby.sort(key=lambda pair: pair[0])
        return [place for _, place in nearby]

    def fetch_significant(self, min_seconds: float) -> list[Place]:
        """Places whose accumulated stay reaches min_seconds, longest first"""
        places = [place for place in self.fetch_all() if place.stay_duration is not None and place.stay_duration >= min_seconds]
        return sorted(places, key=lambda place: place.accumulated_duration, reverse=True)

    # Writes

    def create(self, place: Place) -> Place:
        with self._guard('create place'):
            if self._table.contains(Query().id == place.id):
                raise PersistenceError(f"Place already exists: {place.id}")
            self._table.insert(place.to_record())
        logger.debug(f"Created place: {place.name} (ID: {place.id})")
        self._notify('created', place.id)
        return place

    def update(self, place: Place) -> Place:
        with self._guard('update place'):
            updated = self._table.update(place.to_record(), Query().id == place.id)
            if not updated:
                raise PlaceNotFoundError(place.id)
        self._notify('updated', place.id)
        return place

    def add_stay_duration(self, place_id: str, seconds: float) -> Place:
        """Atomically add seconds to a place's stay duration and return the updated place"""

        def accumulate(record):
            record['stay_duration'] = (record.get('stay_duration') or 0.0) + seconds

        with self._guard('update stay duration'):
            updated = self._table.update(accumulate, Query().id == place_id)
            if not updated:
                raise PlaceNotFoundError(place_id)
            place = Place.from_record(self._table.get(Query().id == place_id))
        self._notify('duration', place_id)
        return place

    def delete(self, place_id: str) -> None:
        with self._guard('delete place'):
            removed = self._table.remove(Query().id == place_id)
            if not removed:
                raise PlaceNotFoundError(place_id)
        logger.debug(f"Deleted place with ID {place_id}")
        self._notify('deleted', place_id)

    def clear(self) -> int:
        with self._guard('clear places'):
            count = len(self._table)
            self._table.truncate()
        logger.info(f"Cleared {count} places")
        self._notify('cleared')
        return count

    def _notify(self, reason: str, *place_ids: str) -> None:
        if self.bus is not None:
            self.bus.publish(Topic.PLACES_CHANGED, PlacesChanged(reason, tuple(place_ids)))
