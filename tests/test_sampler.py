import asyncio
import pytest
from core.errors import TransientSampleFailure
from core.events import EventBus, Topic
from core.models import AuthorizationStatus, Coordinate, LocationFix
from core.sampler import LocationSampler
from tests.fixtures import T0, FakePositioningProvider, TestDataFixtures

ORIGIN = TestDataFixtures.coordinate(0)


class TestLocationSampler:
    """Test suite for LocationSampler class"""

    @pytest.fixture
    def provider(self):
        return FakePositioningProvider()

    @pytest.fixture
    def bus(self):
        return EventBus()

    @pytest.fixture
    def sampler(self, provider, bus):
        return LocationSampler(provider, bus, distance_filter=10.0)

    def test_configures_provider(self, sampler, provider):
        """Test the sampler registers itself and applies settings"""
        assert provider.delegate is sampler
        assert provider.desired_accuracy == 'best'
        assert provider.distance_filter == 10.0
        assert provider.activity_type == 'other'
        assert provider.allows_background_updates is True

    def test_initial_authorization_authorized_starts_updates(self, sampler, provider):
        sampler.check_initial_authorization()
        assert sampler.authorization_status == AuthorizationStatus.AUTHORIZED_FULL
        assert sampler.is_updating
        assert provider.start_calls == 1

    def test_initial_authorization_not_determined_requests_permission(self, provider):
        provider.status = AuthorizationStatus.NOT_DETERMINED
        sampler = LocationSampler(provider)
        sampler.check_initial_authorization()

        assert provider.authorization_requests == 1
        assert not sampler.is_updating

    def test_denied_refuses_updates(self, provider):
        """Test denial exposed as location_access_disabled"""
        provider.status = AuthorizationStatus.DENIED
        sampler = LocationSampler(provider)
        sampler.check_initial_authorization()
        sampler.start_continuous_updates()

        assert sampler.location_access_disabled
        assert provider.start_calls == 0

    def test_start_and_stop_are_idempotent(self, sampler, provider):
        sampler.start_continuous_updates()
        sampler.start_continuous_updates()
        sampler.stop_continuous_updates()
        sampler.stop_continuous_updates()

        assert provider.start_calls == 1
        assert provider.stop_calls == 1

    def test_fix_updates_state_and_listeners(self, sampler, provider, bus):
        """Test the newest fix of a batch being published"""
        received = []
        published = []
        sampler.add_listener(received.append)
        bus.subscribe(Topic.LOCATION_UPDATED, published.append)

        older = TestDataFixtures.fix(TestDataFixtures.coordinate(100), at=T0)
        newer = TestDataFixtures.fix(ORIGIN, at=T0)
        provider.emit(older, newer)

        assert sampler.last_fix == newer
        assert received == [newer]
        assert published == [newer]

    def test_invalid_coordinate_is_sample_failure(self, sampler, provider, bus):
        errors = []
        bus.subscribe(Topic.SAMPLE_ERROR, errors.append)
        provider.emit(LocationFix(Coordinate(91.0, 0.0), T0))

        assert sampler.last_fix is None
        assert isinstance(sampler.error, TransientSampleFailure)
        assert len(errors) == 1

    def test_failure_then_fix_clears_error(self, sampler, provider):
        provider.fail(TransientSampleFailure('no signal'))
        assert sampler.error is not None

        provider.emit(TestDataFixtures.fix(ORIGIN))
        assert sampler.error is None

    def test_authorization_change(self, provider, bus):
        """Test granting and revoking access toggling updates"""
        provider.status = AuthorizationStatus.NOT_DETERMINED
        sampler = LocationSampler(provider, bus)
        changes = []
        bus.subscribe(Topic.AUTHORIZATION_CHANGED, changes.append)

        provider.change_authorization(AuthorizationStatus.AUTHORIZED_LIMITED)
        assert sampler.is_updating

        provider.change_authorization(AuthorizationStatus.RESTRICTED)
        assert not sampler.is_updating
        assert sampler.location_access_disabled
        assert changes == [AuthorizationStatus.AUTHORIZED_LIMITED, AuthorizationStatus.RESTRICTED]

    @pytest.mark.asyncio
    async def test_single_update_resolves_with_fix(self, sampler, provider):
        fix = TestDataFixtures.fix(ORIGIN)
        request = asyncio.create_task(sampler.request_single_update(timeout=1.0))
        await asyncio.sleep(0)
        assert sampler.is_requesting_location

        provider.emit(fix)
        assert await request == fix
        assert not sampler.is_requesting_location

    @pytest.mark.asyncio
    async def test_concurrent_single_updates_share_request(self, sampler, provider):
        """Test a second caller waiting on the request already in flight"""
        fix = TestDataFixtures.fix(ORIGIN)
        first = asyncio.create_task(sampler.request_single_update(timeout=1.0))
        second = asyncio.create_task(sampler.request_single_update(timeout=1.0))
        await asyncio.sleep(0)

        provider.emit(fix)
        assert await first == fix
        assert await second == fix
        assert provider.location_requests == 1

    @pytest.mark.asyncio
    async def test_single_update_timeout(self, sampler):
        assert await sampler.request_single_update(timeout=0.01) is None
        assert not sampler.is_requesting_location

    @pytest.mark.asyncio
    async def test_single_update_failure(self, sampler, provider):
        request = asyncio.create_task(sampler.request_single_update(timeout=1.0))
        await asyncio.sleep(0)
        provider.fail(TransientSampleFailure('no signal'))
        assert await request is None

    @pytest.mark.asyncio
    async def test_single_update_denied(self, provider):
        provider.status = AuthorizationStatus.DENIED
        sampler = LocationSampler(provider)
        sampler.check_initial_authorization()

        assert await sampler.request_single_update(timeout=1.0) is None
        assert provider.location_requests == 0

    @pytest.mark.asyncio
    async def test_callbacks_from_other_thread(self, sampler, provider):
        """Test provider callbacks are marshalled onto the event loop"""
        sampler.bind_loop()
        received = []
        sampler.add_listener(received.append)

        fix = TestDataFixtures.fix(ORIGIN)
        await asyncio.to_thread(provider.emit, fix)
        await asyncio.sleep(0)

        assert received == [fix]
        assert sampler.last_fix == fix
