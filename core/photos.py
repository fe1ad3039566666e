import json
import logging
from config import PHOTO_DUPLICATE_RADIUS_METERS, PHOTO_LOCATION_NAME, PLACE_TIMESTAMP_FORMAT
from core.errors import PersistenceError
from core.models import Coordinate, Place
from core.repository import PlaceRepository
from core.tracker import Clock, utc_now
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol
from utils.geo import is_valid_coordinate
from utils.geocoding import GeocodeResult
from utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PhotoAsset:
    asset_id: str
    coordinate: Coordinate
    created_at: datetime | None = None


class PhotoSource(Protocol):
    def has_access(self) -> bool: ...

    def fetch_geotagged_assets(self) -> list[PhotoAsset]: ...


class Geocoder(Protocol):
    def reverse(self, latitude: float, longitude: float) -> GeocodeResult: ...


class JsonPhotoSource:
    """Photo metadata exported as a JSON list of {asset_id, latitude, longitude, timestamp}"""

    def __init__(self, metadata_file: Path):
        self.metadata_file = metadata_file

    def has_access(self) -> bool:
        return self.metadata_file.exists()

    def fetch_geotagged_assets(self) -> list[PhotoAsset]:
        with open(self.metadata_file) as f:
            records = json.load(f)

        assets = []
        for index, record in enumerate(records):
            try:
                latitude = float(record['latitude'])
                longitude = float(record['longitude'])
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping photo record {index} without coordinates")
                continue
            if not is_valid_coordinate(latitude, longitude):
                logger.warning(f"Skipping photo record {index} with invalid coordinates: {latitude}, {longitude}")
                continue

            assets.append(
                PhotoAsset(
                    asset_id=str(record.get('asset_id') or f"{self.metadata_file.name}#{index}"),
                    coordinate=Coordinate(latitude, longitude),
                    created_at=parse_timestamp(record.get('timestamp')),
                )
            )
        return assets


class PhotoPlaceImporter:
    """Creates places for geotagged photos that are not already represented in the store.

    A photo is skipped when its asset was imported before, or when it lies within the
    duplicate radius (100 m by default) of an existing place or of a photo imported earlier in the same batch.
    """

    def __init__(
        self,
        repository: PlaceRepository,
        source: PhotoSource,
        geocoder: Geocoder | None = None,
        radius: float = PHOTO_DUPLICATE_RADIUS_METERS,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.source = source
        self.geocoder = geocoder
        self.radius = radius
        self.clock = clock

    def import_places(self) -> list[Place]:
        if not self.source.has_access():
            logger.warning("Photo library access denied or unavailable")
            return []

        assets = self.source.fetch_geotagged_assets()
        known = self.repository.fetch_all()
        imported: list[Place] = []

        for asset in assets:
            if self._is_duplicate(asset, known + imported):
                continue

            place = self._build_place(asset)
            if place is None:
                continue

            try:
                self.repository.create(place)
            except PersistenceError as e:
                logger.error(f"Failed to save photo place {place.name}: {e}")
                continue
            imported.append(place)

        logger.info(f"Imported {len(imported)} places from {len(assets)} geotagged photos")
        return imported

    def _is_duplicate(self, asset: PhotoAsset, places: list[Place]) -> bool:
        for place in places:
            if place.photo_asset_identifier == asset.asset_id:
                return True
            if place.distance_to(asset.coordinate) < self.radius:
                return True
        return False

    def _build_place(self, asset: PhotoAsset) -> Place | None:
        taken_at = asset.created_at or self.clock()
        coordinate = asset.coordinate

        if self.geocoder is None:
            result = GeocodeResult(PHOTO_LOCATION_NAME.format(timestamp=taken_at.strftime(PLACE_TIMESTAMP_FORMAT)), None, None)
        else:
            result = self.geocoder.reverse(coordinate.latitude, coordinate.longitude)

        if not result.name:
            logger.debug(f"No name for photo {asset.asset_id} at {coordinate}, skipping")
            return None

        return Place(
            name=result.name,
            coordinate=coordinate,
            visit_date=taken_at,
            photo_asset_identifier=asset.asset_id,
            category=result.category,
            address=result.address,
        )
