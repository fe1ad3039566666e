#!/usr/bin/env python

"""
Footprints - Location Visit Tracker

Turns a stream of GPS fixes into a deduplicated set of places with accumulated stay
durations, and manages the resulting place store.

Usage:
    main.py [command] [options]

Commands:
    replay: Replay a recorded GPS track (CSV or JSON) through the visit tracker
    merge-places: Merge automatically recorded locations that lie within the merge radius
    list-places: List stored places with their stay durations
    significant-places: List places where the stay exceeded a threshold
    clear-places: Delete every stored place
    import-photos: Create places from geotagged photo metadata (JSON)
    cache-stats: Display geocoding cache statistics and clean expired entries
    cache-clear: Clear all geocoding cache entries

Options:
    --dry-run: Show what would be done without making changes
    --verbose: Enable verbose logging output
    --data-dir: Path to the data directory holding the place store (default: data)
    --track: Track file for 'replay'
    --monitoring-distance: Minimum movement in meters treated as a significant change
    --min-minutes: Threshold for 'significant-places'
    --metadata: Photo metadata file for 'import-photos'
    --no-geocode: Name imported photo places without reverse geocoding
"""

import argparse
import asyncio
import logging
import sys
from config import (
    DATA_DIR,
    GEOCODING_CACHE_FILE,
    MONITORING_DISTANCE_METERS,
    PLACES_DB_FILE,
    SIGNIFICANT_STAY_THRESHOLD_SECONDS,
)
from core.errors import PersistenceError
from core.merge import MergePass
from core.models import Place, PlaceType
from core.photos import JsonPhotoSource, PhotoPlaceImporter
from core.replay import ReplayClock, ReplayPositioningProvider, TrackReplay, load_track
from core.repository import PlaceRepository
from core.service import TrackingService
from pathlib import Path
from utils.geo import format_duration
from utils.geocoding import GeocodingCache, ReverseGeocoder

logger = logging.getLogger(__name__)


def print_places(places: list[Place]):
    if not places:
        print("No places stored")
        return

    for place in places:
        kind = place.place_type.value if place.place_type else 'photo'
        print(f"{place.name} [{kind}] {place.coordinate} - {format_duration(place.accumulated_duration)}")
        if place.address:
            print(f"    {place.address}")
    print(f"\nTotal: {len(places)} places")


def replay_track(repository: PlaceRepository, track_file: Path, monitoring_distance: float, dry_run: bool = False) -> bool:
    if not track_file.exists():
        logger.error(f"Track file not found: {track_file}")
        return False

    fixes, summary = load_track(track_file)
    logger.info(f"Loaded {summary.rows_parsed} of {summary.rows_total} fixes from {track_file}")
    if not fixes:
        logger.error("Track contains no usable fixes")
        return False

    if dry_run:
        logger.info(f"DRY RUN: Would replay {len(fixes)} fixes from {fixes[0].timestamp} to {fixes[-1].timestamp}")
        return True

    provider = ReplayPositioningProvider()
    clock = ReplayClock(fixes[0].timestamp)
    service = TrackingService(
        provider,
        repository,
        clock=clock,
        monitoring_distance=monitoring_distance,
        checkpoint_interval=None,
        merge_interval=None,
    )
    result = asyncio.run(TrackReplay(service, provider, clock).run(fixes))

    if result is not None and result.deleted_count:
        print(f"Merged {result.deleted_count} duplicate locations")
    print_places(repository.fetch_all())
    return True


def merge_places(repository: PlaceRepository, dry_run: bool = False) -> bool:
    merge_pass = MergePass(repository)

    if dry_run:
        clusters = merge_pass.find_clusters(repository.fetch_by_type(PlaceType.LOCATION))
        for cluster in clusters:
            print(f"Would merge {len(cluster) - 1} locations into {cluster[0].name}")
        logger.info(f"DRY RUN: Found {len(clusters)} clusters to merge")
        return True

    try:
        result = merge_pass.run()
    except PersistenceError as e:
        logger.error(f"Merge failed: {e}")
        return False

    print(f"Merged {result.clusters_merged} clusters, deleted {result.deleted_count} duplicate locations")
    if result.failed_ids:
        print(f"Failed to delete {len(result.failed_ids)} locations")
    return not result.failed_ids


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Footprints - Location Visit Tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument('command', nargs='?', default='list-places', help='Command to execute (default: list-places)')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be done without making changes')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging output')
    parser.add_argument('--data-dir', type=Path, default=DATA_DIR, help='Path to the data directory')

    # Replay options
    parser.add_argument('--track', type=Path, help='Track file (CSV or JSON) to replay')
    parser.add_argument(
        '--monitoring-distance',
        type=float,
        default=MONITORING_DISTANCE_METERS,
        help='Minimum movement in meters treated as a significant change',
    )

    # Query options
    parser.add_argument(
        '--min-minutes',
        type=float,
        default=SIGNIFICANT_STAY_THRESHOLD_SECONDS / 60,
        help='Minimum stay in minutes for significant-places',
    )

    # Photo import options
    parser.add_argument('--metadata', type=Path, help='Photo metadata JSON file')
    parser.add_argument('--no-geocode', action='store_true', help='Do not reverse geocode imported photo places')

    return parser.parse_args()


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s', force=True)


def run_command(args) -> bool:
    command = args.command
    data_dir = args.data_dir

    if command in ('cache-stats', 'cache-clear'):
        cache = GeocodingCache(data_dir / GEOCODING_CACHE_FILE)

        if command == 'cache-clear':
            if args.dry_run:
                logger.info(f"DRY RUN: Would clear {len(cache.cache_data['entries'])} cache entries")
                return True
            cache.clear()
            print("Cache cleared successfully")
            return True

        stats = cache.get_stats()
        print("\n=== Geocoding Cache Statistics ===")
        print(f"Total entries: {stats['total_entries']}")
        print(f"Cache hits: {stats['cache_hits']}")
        print(f"Cache misses: {stats['cache_misses']}")
        print(f"Hit ratio: {stats['hit_ratio_percent']}%")
        print(f"Expiration: {stats['expiration_days']} days")
        print(f"Created: {stats['created']}")
        print(f"Last updated: {stats['last_updated']}")

        if not args.dry_run:
            expired_count = cache.clean_expired()
            if expired_count > 0:
                print(f"Cleaned {expired_count} expired entries")
        return True

    try:
        repository = PlaceRepository.open(data_dir / PLACES_DB_FILE)
    except (OSError, ValueError) as e:
        logger.error(f"Could not open place store in {data_dir}: {e}")
        return False

    try:
        if command == 'replay':
            if args.track is None:
                logger.error("replay requires --track")
                return False
            return replay_track(repository, args.track, args.monitoring_distance, dry_run=args.dry_run)

        elif command == 'merge-places':
            return merge_places(repository, dry_run=args.dry_run)

        elif command == 'list-places':
            print_places(repository.fetch_all())
            return True

        elif command == 'significant-places':
            places = repository.fetch_significant(args.min_minutes * 60)
            print(f"\n=== Places visited for more than {args.min_minutes:g} minutes ===")
            print_places(places)
            return True

        elif command == 'clear-places':
            if args.dry_run:
                logger.info(f"DRY RUN: Would delete {len(repository.fetch_all())} places")
                return True
            count = repository.clear()
            print(f"Deleted {count} places")
            return True

        elif command == 'import-photos':
            if args.metadata is None or not args.metadata.exists():
                logger.error(f"Photo metadata file not found: {args.metadata}")
                return False
            source = JsonPhotoSource(args.metadata)
            if args.dry_run:
                logger.info(f"DRY RUN: Would import up to {len(source.fetch_geotagged_assets())} geotagged photos")
                return True
            geocoder = None if args.no_geocode else ReverseGeocoder(GeocodingCache(data_dir / GEOCODING_CACHE_FILE))
            imported = PhotoPlaceImporter(repository, source, geocoder).import_places()
            print_places(imported)
            return True

        print(__doc__.strip())
        return command == 'help'
    except PersistenceError as e:
        logger.error(f"{command} failed: {e}")
        return False
    finally:
        repository.close()


def main():
    args = parse_arguments()

    # Setup logging
    setup_logging(args.verbose)

    success = run_command(args)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
