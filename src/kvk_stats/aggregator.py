# src/kvk_stats/aggregator.py
import concurrent.futures
import logging
import threading
import time
from functools import partial
from operator import attrgetter
from types import MappingProxyType
from typing import Iterable

from .data_handler import parse_raw_file
from .models import EMPTY_SERIES, IngestResult, NormalizedRecord, RawFile, ScenarioSeries, SkipReport

logger = logging.getLogger(__name__)


def merge_records(series: ScenarioSeries, records: Iterable[NormalizedRecord]) -> ScenarioSeries:
    """
    Returns a new read-only snapshot with the records added to their scenarios.
    Existing runs come first, new ones after, then a stable sort by timestamp,
    so equal timestamps keep their relative order. Nothing is deduplicated.
    """
    additions: dict[str, list[NormalizedRecord]] = {}
    for record in records:
        additions.setdefault(record.scenario_name, []).append(record)

    by_time = attrgetter('timestamp')
    if isinstance(series, MappingProxyType):
        merged = dict(series)
    else:
        # Caller-built mapping: copy into sorted tuples
        merged = {scenario_name: tuple(sorted(runs, key=by_time)) for scenario_name, runs in series.items()}
    for scenario_name, new_runs in additions.items():
        combined = list(merged.get(scenario_name, ())) + new_runs
        merged[scenario_name] = tuple(sorted(combined, key=by_time))
    return MappingProxyType(merged)


def _check_files(files) -> list[RawFile]:
    if isinstance(files, (str, bytes, RawFile)):
        raise TypeError("files must be an iterable of RawFile objects, not a single value")
    files = list(files)
    for item in files:
        if not isinstance(item, RawFile):
            raise TypeError(f"Expected RawFile, got {type(item).__name__}")
    return files


def extract_batch(files, max_workers: int | None = None, use_processes: bool = False,
                  now=None) -> tuple[list[NormalizedRecord], list[SkipReport]]:
    """
    Parses every file independently and collects all results before returning.

    Args:
        files: RawFile objects to parse.
        max_workers (int | None): Worker count. Defaults to the executor's default;
                                  1 parses serially in the calling thread.
        use_processes (bool): Use a ProcessPoolExecutor instead of threads.
        now (datetime | None): Fallback timestamp for files without any date.
    """
    files = _check_files(files)
    parse_func = partial(parse_raw_file, now=now)

    start_time = time.time()
    if max_workers == 1 or len(files) <= 1:
        results = [parse_func(raw_file) for raw_file in files]
    else:
        executor_cls = (concurrent.futures.ProcessPoolExecutor if use_processes
                        else concurrent.futures.ThreadPoolExecutor)
        with executor_cls(max_workers=max_workers) as executor:
            # map keeps submission order, so reports come back in input order
            results = list(executor.map(parse_func, files))

    records, skipped = [], []
    for file_records, file_skips in results:
        records.extend(file_records)
        skipped.extend(file_skips)

    for report in skipped:
        row = f" (row {report.row})" if report.row is not None else ""
        logger.warning(f"Skipped {report.file_name}{row}: {report.reason.value} - {report.detail}")
    logger.info(f"Finished parsing {len(files)} file(s) in {time.time() - start_time:.2f}s. "
                f"Records: {len(records)}, Skipped: {len(skipped)}")
    return records, skipped


def ingest(files, series: ScenarioSeries | None = None, max_workers: int | None = None,
           use_processes: bool = False, now=None) -> IngestResult:
    """
    Parses a batch of exports and merges them into a copy of `series`.
    Malformed content never raises; it shows up in `IngestResult.skipped`.
    """
    files = _check_files(files)
    records, skipped = extract_batch(files, max_workers=max_workers, use_processes=use_processes, now=now)
    merged = merge_records(series if series is not None else EMPTY_SERIES, records)
    return IngestResult(series=merged, skipped=tuple(skipped),
                        records_added=len(records), files_processed=len(files))


class ScenarioAggregator:
    """
    Holds the current scenario series. Batches are parsed outside the lock and
    merged under it, so a batch is either fully visible or not at all.
    """

    def __init__(self, series: ScenarioSeries | None = None):
        self._lock = threading.Lock()
        self._series: ScenarioSeries = EMPTY_SERIES if series is None else merge_records(series, ())

    @property
    def series(self) -> ScenarioSeries:
        return self._series

    def merge(self, records: Iterable[NormalizedRecord]) -> ScenarioSeries:
        records = list(records)
        with self._lock:
            self._series = merge_records(self._series, records)
            return self._series

    def ingest(self, files, max_workers: int | None = None, use_processes: bool = False,
               now=None) -> IngestResult:
        files = _check_files(files)
        records, skipped = extract_batch(files, max_workers=max_workers, use_processes=use_processes, now=now)
        series = self.merge(records)
        logger.info(f"Series now holds {len(series)} scenario(s), "
                    f"{sum(len(runs) for runs in series.values())} run(s).")
        return IngestResult(series=series, skipped=tuple(skipped),
                            records_added=len(records), files_processed=len(files))
