#!/usr/bin/env python3
"""
Station database command line

Usage:
    stationdb manifest [-f] [-n]
    stationdb update markets.csv [--force-refresh] [--skip-enhancement]
    stationdb lineups lineups.txt [--stage DIR]
    stationdb integrate DIR
    stationdb merge a.json b.json -o all_stations_base.json
    stationdb check market USA 10001
    stationdb serve
"""

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .config import load_config
from .coverage import CoverageChecker
from .exceptions import StationDBError
from .history import ProcessingHistory
from .manifest import ManifestBuilder, load_manifest
from .storage import read_markets_csv
from .updater import StationDatabaseUpdater, merge_station_files, read_lineup_file

logger = logging.getLogger("stationdb")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # urllib3 is noisy at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='stationdb',
        description='Build and maintain the base station cache and its manifest',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the manifest for distribution
  stationdb manifest -f -v

  # Preview which markets would be fetched
  stationdb update new_markets.csv --dry-run

  # Process specific lineups into a staging directory, then integrate
  stationdb lineups my_lineups.txt --stage manual_lineup_output
  stationdb integrate manual_lineup_output
        """
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')
    parser.add_argument('--settings', help='JSON settings file')
    parser.add_argument('--base-cache', help='Base cache JSON file')
    parser.add_argument('--manifest', help='Manifest file')
    parser.add_argument('--csv', help='Markets CSV file')
    parser.add_argument('--cache-dir', help='Cache directory holding the processing history')
    parser.add_argument('--server', help='Channels DVR server URL')

    sub = parser.add_subparsers(dest='command', metavar='command')
    sub.required = True

    manifest = sub.add_parser('manifest', help='Create or update the base cache manifest')
    manifest.add_argument('-f', '--force', action='store_true', help='Force overwrite existing manifest')
    manifest.add_argument('-n', '--dry-run', action='store_true',
                          help='Show what would be done without creating the manifest')

    update = sub.add_parser('update', help='Fetch markets and merge their stations into the base cache')
    update.add_argument('markets_csv', help='CSV file containing markets (Country,ZIP)')
    _add_batch_options(update)

    lineups = sub.add_parser('lineups', help='Fetch specific lineup IDs')
    lineups.add_argument('lineup_file', help='File with one lineup ID per line (# comments allowed)')
    lineups.add_argument('--stage', metavar='DIR',
                         help='Write results to a staging directory instead of the base cache')
    _add_batch_options(lineups)

    integrate = sub.add_parser('integrate', help='Merge a staging directory into the base cache')
    integrate.add_argument('directory', help='Staging directory created by "lineups --stage"')

    merge = sub.add_parser('merge', help='Merge station files (later files win)')
    merge.add_argument('inputs', nargs='+', help='Station JSON files')
    merge.add_argument('-o', '--output', help='Output file (default: base cache)')
    merge.add_argument('--source', default='base', help='Source tag for merged records (default: base)')

    check = sub.add_parser('check', help='Check whether a market or lineup is already covered')
    check_sub = check.add_subparsers(dest='kind', metavar='kind')
    check_sub.required = True
    check_market = check_sub.add_parser('market', help='Check a market')
    check_market.add_argument('country')
    check_market.add_argument('zip')
    check_market.add_argument('--force', action='store_true', help='Always answer "not covered"')
    check_lineup = check_sub.add_parser('lineup', help='Check a lineup')
    check_lineup.add_argument('lineup_id')
    check_lineup.add_argument('--force', action='store_true', help='Always answer "not covered"')

    serve = sub.add_parser('serve', help='Run the read-only query API')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=9192)

    return parser


def _add_batch_options(parser: argparse.ArgumentParser):
    parser.add_argument('--force-refresh', action='store_true',
                        help='Process items even if already covered')
    parser.add_argument('--skip-enhancement', action='store_true',
                        help='Skip the station enhancement phase')
    parser.add_argument('-n', '--dry-run', action='store_true',
                        help='Show what would be processed without fetching or writing')
    parser.add_argument('--workers', type=int, help='Parallel enhancement workers')


# ============================================
# COMMANDS
# ============================================

def cmd_manifest(args, config) -> int:
    builder = ManifestBuilder(config)
    manifest = builder.build(force=args.force, dry_run=args.dry_run)
    if not args.dry_run:
        logger.info("=== Manifest Summary ===")
        for line in builder.summary(manifest):
            logger.info(line)
    return EXIT_OK


def _run_batch(updater: StationDatabaseUpdater, run) -> int:
    updater.install_signal_handlers()
    stats = run()
    if stats.interrupted:
        return EXIT_INTERRUPTED
    return EXIT_OK


def cmd_update(args, config) -> int:
    markets = read_markets_csv(Path(args.markets_csv))
    logger.info(f"Found {len(markets)} markets in {args.markets_csv}")
    updater = StationDatabaseUpdater(config)
    return _run_batch(updater, lambda: updater.process_markets(
        markets, force_refresh=args.force_refresh,
        skip_enhancement=args.skip_enhancement, dry_run=args.dry_run))


def cmd_lineups(args, config) -> int:
    lineup_ids = read_lineup_file(Path(args.lineup_file))
    logger.info(f"Found {len(lineup_ids)} lineup IDs to process")
    updater = StationDatabaseUpdater(config)

    if args.stage and not args.dry_run:
        return _run_batch(updater, lambda: updater.stage_lineups(
            lineup_ids, Path(args.stage), force_refresh=args.force_refresh,
            skip_enhancement=args.skip_enhancement))

    return _run_batch(updater, lambda: updater.process_lineups(
        lineup_ids, force_refresh=args.force_refresh,
        skip_enhancement=args.skip_enhancement, dry_run=args.dry_run))


def cmd_integrate(args, config) -> int:
    StationDatabaseUpdater(config).integrate(Path(args.directory))
    return EXIT_OK


def cmd_merge(args, config) -> int:
    output = Path(args.output) if args.output else config.base_stations
    merge_station_files([Path(p) for p in args.inputs], output, args.source, config.lock_path)
    return EXIT_OK


def cmd_check(args, config) -> int:
    manifest = load_manifest(config.manifest) if config.manifest.exists() else None
    if manifest is None:
        logger.warning(f"No manifest at {config.manifest}, using local history only")
    checker = CoverageChecker.from_sources(manifest, ProcessingHistory.from_config(config),
                                           force=args.force)

    if args.kind == 'market':
        covered = checker.is_market_covered(args.country, args.zip)
        label = f"{args.country.upper()}/{args.zip}"
    else:
        covered = checker.is_lineup_covered(args.lineup_id)
        label = args.lineup_id

    print(f"{label}: {'covered' if covered else 'not covered'}")
    return EXIT_OK if covered else EXIT_FAILURE


def cmd_serve(args, config) -> int:
    from .web import create_app

    app = create_app(config)
    app.run(host=args.host, port=args.port)
    return EXIT_OK


COMMANDS = {
    'manifest': cmd_manifest,
    'update': cmd_update,
    'lineups': cmd_lineups,
    'integrate': cmd_integrate,
    'merge': cmd_merge,
    'check': cmd_check,
    'serve': cmd_serve,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(
            args.settings,
            base_stations=args.base_cache,
            manifest=args.manifest,
            markets_csv=args.csv,
            cache_dir=args.cache_dir,
            channels_url=args.server,
            workers=getattr(args, 'workers', None),
        )
        logger.debug(f"Configuration: {config}")
        return COMMANDS[args.command](args, config)

    except StationDBError as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
