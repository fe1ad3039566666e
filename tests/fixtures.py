"""Test doubles and data fixtures for footprints tests"""

import json
from core.models import AuthorizationStatus, Coordinate, LocationFix, Place, PlaceType, SignificantChange
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=UTC)

# Roughly one meter of latitude in degrees
METER = 1 / 111_320


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakePositioningProvider:
    """Records calls from the sampler and lets tests push callbacks back into it"""

    def __init__(self, status: AuthorizationStatus = AuthorizationStatus.AUTHORIZED_FULL):
        self.status = status
        self.delegate = None
        self.desired_accuracy = None
        self.distance_filter = None
        self.activity_type = None
        self.allows_background_updates = False
        self.authorization_requests = 0
        self.start_calls = 0
        self.stop_calls = 0
        self.location_requests = 0

    def authorization_status(self) -> AuthorizationStatus:
        return self.status

    def request_authorization(self):
        self.authorization_requests += 1

    def start_updates(self):
        self.start_calls += 1

    def stop_updates(self):
        self.stop_calls += 1

    def request_location(self):
        self.location_requests += 1

    def emit(self, *fixes: LocationFix):
        self.delegate.did_update_locations(list(fixes))

    def fail(self, error: Exception):
        self.delegate.did_fail(error)

    def change_authorization(self, status: AuthorizationStatus):
        self.status = status
        self.delegate.did_change_authorization(status)


class FakeBackgroundTasks:
    def __init__(self):
        self.next_id = 1
        self.active: set[int] = set()
        self.ended: list[int] = []

    def begin_background_task(self, expiration_handler):
        task_id = self.next_id
        self.next_id += 1
        self.active.add(task_id)
        return task_id

    def end_background_task(self, task_id):
        self.active.discard(task_id)
        self.ended.append(task_id)


class TestDataFixtures:
    """Centralized test data fixtures"""

    @staticmethod
    def coordinate(north_meters: float = 0.0, latitude: float = 0.0, longitude: float = 0.0) -> Coordinate:
        """Coordinate roughly north_meters north of (latitude, longitude)"""
        return Coordinate(latitude + north_meters * METER, longitude)

    @staticmethod
    def fix(coordinate: Coordinate, at: datetime = T0, accuracy: float = 5.0) -> LocationFix:
        return LocationFix(coordinate, at, accuracy)

    @classmethod
    def change(cls, coordinate: Coordinate, distance: float = 0.0, at: datetime = T0) -> SignificantChange:
        return SignificantChange(cls.fix(coordinate, at), distance)

    @staticmethod
    def location(
        coordinate: Coordinate,
        stay_duration: float = 0.0,
        visit_date: datetime = T0,
        name: str = 'Test Location',
        place_id: str | None = None,
    ) -> Place:
        place = Place(
            id=place_id or str(uuid4()),
            name=name,
            coordinate=coordinate,
            visit_date=visit_date,
            place_type=PlaceType.LOCATION,
            stay_duration=stay_duration,
            category='Location',
        )
        return place

    @staticmethod
    def get_test_track_rows():
        """Sixty seconds at the origin, then a move of about 111 meters north"""
        return [
            {'latitude': 0.0, 'longitude': 0.0, 'timestamp': '2024-05-01T09:00:00Z', 'accuracy': 5.0},
            {'latitude': 0.0, 'longitude': 0.0, 'timestamp': '2024-05-01T09:01:00Z', 'accuracy': 5.0},
            {'latitude': 0.001, 'longitude': 0.0, 'timestamp': '2024-05-01T09:01:30Z', 'accuracy': 5.0},
            {'latitude': 0.001, 'longitude': 0.0, 'timestamp': '2024-05-01T09:02:30Z', 'accuracy': 5.0},
        ]

    @staticmethod
    def get_test_photo_metadata():
        return [
            {'asset_id': 'photo-1', 'latitude': 37.7749, 'longitude': -122.4194, 'timestamp': '2024-01-15T12:00:00Z'},
            {'asset_id': 'photo-2', 'latitude': 37.77491, 'longitude': -122.41941, 'timestamp': '2024-01-15T12:05:00Z'},
            {'asset_id': 'photo-3', 'latitude': 40.7128, 'longitude': -74.0060, 'timestamp': 1705400000},
            {'asset_id': 'photo-4', 'latitude': 'n/a', 'longitude': -74.0060},
        ]

    @classmethod
    def create_test_data_files(cls, test_dir: Path):
        """Create track and photo metadata files in the given directory"""
        test_dir.mkdir(exist_ok=True)

        with open(test_dir / 'track.json', 'w') as f:
            json.dump(cls.get_test_track_rows(), f, indent=2)

        with open(test_dir / 'photos.json', 'w') as f:
            json.dump(cls.get_test_photo_metadata(), f, indent=2)

        return True
