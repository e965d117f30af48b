"""KovaaK's stats export ingestion: format detection, normalization and per-scenario series."""
from .aggregator import ScenarioAggregator, extract_batch, ingest, merge_records
from .data_handler import classify_format, estimate_stamina, parse_raw_file, resolve_timestamp
from .errors import KvkStatsError, RemoteSyncError
from .models import (
    DateSource, FileFormat, IngestResult, NormalizedRecord, RawFile, ScenarioSeries, SkipReason, SkipReport,
)

__version__ = "0.2.0"
