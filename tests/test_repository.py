import pytest
from core.errors import PersistenceError, PlaceNotFoundError
from core.events import EventBus, Topic
from core.models import Place, PlaceType
from core.repository import PlaceRepository
from tests.fixtures import T0, TestDataFixtures
from unittest.mock import patch

ORIGIN = TestDataFixtures.coordinate(0)


class TestPlaceRepository:
    """Test suite for PlaceRepository class"""

    @pytest.fixture
    def bus(self):
        return EventBus()

    @pytest.fixture
    def repository(self, bus):
        return PlaceRepository.in_memory(bus)

    def test_create_and_get(self, repository):
        place = repository.create(TestDataFixtures.location(ORIGIN, stay_duration=12.5, name='Home'))
        stored = repository.get(place.id)

        assert stored == place
        assert stored.visit_date == T0
        assert stored.place_type == PlaceType.LOCATION

    def test_get_missing_returns_none(self, repository):
        assert repository.get('missing') is None

    def test_create_duplicate_id_fails(self, repository):
        place = repository.create(TestDataFixtures.location(ORIGIN))
        with pytest.raises(PersistenceError):
            repository.create(place)

    def test_update_replaces_record(self, repository):
        place = repository.create(TestDataFixtures.location(ORIGIN))
        repository.update(place.with_stay_duration(99))
        assert repository.get(place.id).stay_duration == 99

    def test_update_missing_raises_not_found(self, repository):
        with pytest.raises(PlaceNotFoundError) as exc_info:
            repository.update(TestDataFixtures.location(ORIGIN, place_id='ghost'))
        assert exc_info.value.place_id == 'ghost'

    def test_add_stay_duration_accumulates(self, repository):
        """Test stay duration writes are additive"""
        place = repository.create(TestDataFixtures.location(ORIGIN, stay_duration=10))
        repository.add_stay_duration(place.id, 5)
        updated = repository.add_stay_duration(place.id, 7.5)

        assert updated.stay_duration == 22.5
        assert repository.get(place.id).stay_duration == 22.5

    def test_add_stay_duration_treats_missing_as_zero(self, repository):
        place = repository.create(Place(name='Photo', coordinate=ORIGIN, visit_date=T0))
        assert repository.add_stay_duration(place.id, 3).stay_duration == 3

    def test_add_stay_duration_missing_place(self, repository):
        with pytest.raises(PlaceNotFoundError):
            repository.add_stay_duration('missing', 1)

    def test_delete(self, repository):
        place = repository.create(TestDataFixtures.location(ORIGIN))
        repository.delete(place.id)

        assert repository.get(place.id) is None
        with pytest.raises(PlaceNotFoundError):
            repository.delete(place.id)

    def test_find_nearby_sorted_by_distance(self, repository):
        far = repository.create(TestDataFixtures.location(TestDataFixtures.coordinate(45), name='Far'))
        near = repository.create(TestDataFixtures.location(TestDataFixtures.coordinate(5), name='Near'))
        repository.create(TestDataFixtures.location(TestDataFixtures.coordinate(300), name='Away'))

        assert [place.id for place in repository.find_nearby(ORIGIN, 50)] == [near.id, far.id]

    def test_find_nearby_radius_is_exclusive(self, repository):
        """Test a place exactly at the radius is not nearby"""
        place = repository.create(TestDataFixtures.location(TestDataFixtures.coordinate(50)))
        radius = place.distance_to(ORIGIN)

        assert repository.find_nearby(ORIGIN, radius) == []
        assert repository.find_nearby(ORIGIN, radius + 0.001) == [place]

    def test_fetch_by_type(self, repository):
        location = repository.create(TestDataFixtures.location(ORIGIN))
        photo = repository.create(Place(name='Photo', coordinate=ORIGIN, visit_date=T0, photo_asset_identifier='a1'))

        assert repository.fetch_by_type(PlaceType.LOCATION) == [location]
        assert repository.fetch_by_type(None) == [photo]
        assert repository.find_by_asset_identifier('a1') == photo

    def test_fetch_significant(self, repository):
        """Test significant places filtered by threshold, longest first"""
        short = repository.create(TestDataFixtures.location(ORIGIN, stay_duration=60))
        long = repository.create(TestDataFixtures.location(ORIGIN, stay_duration=7200))
        medium = repository.create(TestDataFixtures.location(ORIGIN, stay_duration=900))

        significant = repository.fetch_significant(600)
        assert [place.id for place in significant] == [long.id, medium.id]
        assert short not in significant

    def test_clear(self, repository):
        repository.create(TestDataFixtures.location(ORIGIN))
        repository.create(TestDataFixtures.location(ORIGIN))

        assert repository.clear() == 2
        assert repository.fetch_all() == []

    def test_mutations_publish_places_changed(self, repository, bus):
        events = []
        bus.subscribe(Topic.PLACES_CHANGED, events.append)

        place = repository.create(TestDataFixtures.location(ORIGIN))
        repository.add_stay_duration(place.id, 1)
        repository.delete(place.id)

        assert [(event.reason, event.place_ids) for event in events] == [
            ('created', (place.id,)),
            ('duration', (place.id,)),
            ('deleted', (place.id,)),
        ]

    def test_storage_error_wrapped(self, repository):
        """Test storage failures surface as PersistenceError"""
        with patch.object(repository._table, 'insert', side_effect=OSError('disk full')):
            with pytest.raises(PersistenceError):
                repository.create(TestDataFixtures.location(ORIGIN))

    def test_persists_to_file(self, tmp_path):
        db_file = tmp_path / 'data' / 'places.json'
        repository = PlaceRepository.open(db_file)
        place = repository.create(TestDataFixtures.location(ORIGIN, stay_duration=30))
        repository.close()

        reopened = PlaceRepository.open(db_file)
        assert reopened.get(place.id) == place
        reopened.close()
