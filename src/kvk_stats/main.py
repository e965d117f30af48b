# src/kvk_stats/main.py
import argparse
import cProfile
import io
import logging
import pstats
import sys
from pathlib import Path

from . import analysis, plotting, sync, utils
from .aggregator import ScenarioAggregator

logger = logging.getLogger(__name__)

# --- Profiling Configuration ---
PROFILE_DIR = Path("profiles")
PROFILE_FILENAME = "kvk_stats.prof"
# Sort options: 'calls', 'cumulative', 'filename', 'pcalls', 'line', 'name', 'nfl', 'stdname', 'time'
PROFILE_SORT_BY = "cumulative"
PROFILE_PRINT_TOP = 30


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='kvk-stats',
        description="Ingest KovaaK's stats exports into per-scenario progress series.",
    )
    parser.add_argument('paths', nargs='*', type=Path,
                        help="CSV files or folders to ingest (default: the detected KovaaK's stats folder)")
    parser.add_argument('--scenario', help="Print the summary for this scenario only")
    parser.add_argument('--plot', type=Path, metavar='PATH', help="Save a progress chart for --scenario")
    parser.add_argument('--metric', choices=sorted(analysis.METRIC_COLUMNS), default='score')
    parser.add_argument('--ma-window', type=int, default=plotting.DEFAULT_MA_WINDOW)
    parser.add_argument('--workers', type=int, default=None, help="Parser worker count (1 = serial)")
    parser.add_argument('--processes', action='store_true', help="Parse in worker processes instead of threads")
    parser.add_argument('--sync', action='store_true',
                        help=f"Upload runs to the score store ({sync.STORE_URL_ENV}/{sync.STORE_KEY_ENV})")
    parser.add_argument('--user-id', help="User id attached to uploaded runs")
    parser.add_argument('--batch-size', type=int, default=sync.UPLOAD_BATCH_SIZE)
    parser.add_argument('--log-dir', type=Path, default=None, help="Also write a DEBUG log file here")
    parser.add_argument('--profile', action='store_true', help="Profile the run with cProfile")
    parser.add_argument('-v', '--verbose', action='store_true', help="DEBUG output on the console")
    return parser


def _print_summary(series, scenario_name):
    summary = analysis.get_scenario_summary(series, scenario_name)
    if summary is None:
        print(f"No runs for scenario '{scenario_name}'.")
        return
    print(f"\n--- {scenario_name} ---")
    for key, value in analysis.format_scenario_summary(summary).items():
        if key != 'Scenario Name':
            print(f"{key}: {value}")


def run(args) -> int:
    if args.plot and not args.scenario:
        logger.error("--plot needs --scenario.")
        return 2

    paths = list(args.paths)
    if not paths:
        default_path = utils.find_default_kovaaks_path()
        if default_path is None:
            logger.error("No input given and the KovaaK's stats folder could not be found.")
            return 2
        paths = [default_path]

    raw_files = utils.read_raw_files(paths)
    aggregator = ScenarioAggregator()
    result = aggregator.ingest(raw_files, max_workers=args.workers, use_processes=args.processes)
    print(result.summary())
    for report in result.skipped:
        row = f" row {report.row}" if report.row is not None else ""
        print(f"  skipped {report.file_name}{row}: {report.reason.value}")

    series = result.series
    scenarios = [args.scenario] if args.scenario else analysis.get_unique_scenarios(series)
    for scenario_name in scenarios:
        _print_summary(series, scenario_name)

    if args.plot:
        plotting.save_scenario_plot(series, args.scenario, args.plot, metric=args.metric, ma_window=args.ma_window)
        print(f"Chart saved to {args.plot}")

    if args.sync:
        try:
            client = sync.RestScoreStore.from_env()
        except ValueError as e:
            logger.error(str(e))
            return 2
        report = sync.sync_series(client, series, user_id=args.user_id, batch_size=args.batch_size)
        print(f"Synced {report.uploaded} run(s); {len(report.failures)} batch(es) failed.")
        if not report.ok:
            return 1
    return 0


def run_with_profiling(args) -> int:
    """Runs the command wrapped in cProfile and logs the top entries."""
    profiler = cProfile.Profile()
    profiler.enable()
    try:
        return run(args)
    finally:
        profiler.disable()
        PROFILE_DIR.mkdir(exist_ok=True)
        profile_path = PROFILE_DIR / PROFILE_FILENAME
        profiler.dump_stats(profile_path)
        s = io.StringIO()
        pstats.Stats(profiler, stream=s).sort_stats(PROFILE_SORT_BY).print_stats(PROFILE_PRINT_TOP)
        logger.info(f"--- Profiling Summary (Top {PROFILE_PRINT_TOP} by {PROFILE_SORT_BY}) ---")
        for line in s.getvalue().splitlines():
            logger.info(line.rstrip())
        logger.info(f"Raw profiling stats saved to: {profile_path}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    utils.configure_logging(args.log_dir, console_level=logging.DEBUG if args.verbose else logging.WARNING)
    return run_with_profiling(args) if args.profile else run(args)


if __name__ == "__main__":
    sys.exit(main())
