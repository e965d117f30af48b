# src/kvk_stats/models.py
"""
Data containers shared by the parser, the aggregator and the sync layer.
"""
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class FileFormat(Enum):
    """The closed set of export layouts the classifier can return."""
    DETAILED_LOG = "detailed_log"
    SUMMARY_TABLE = "summary_table"
    UNRECOGNIZED = "unrecognized"


class SkipReason(Enum):
    UNRECOGNIZED_FORMAT = "UnrecognizedFormat"
    MISSING_SCENARIO = "MissingScenario"
    UNPARSABLE_SCORE = "UnparsableScore"


class DateSource(Enum):
    """Where a record's timestamp came from, best first."""
    FILENAME = "filename"
    CONTENT = "content"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RawFile:
    """A stats export as handed over by the file-selection layer."""
    name: str
    content: str | bytes

    @property
    def text(self) -> str:
        if isinstance(self.content, bytes):
            # utf-8-sig drops a leading BOM written by some exporters
            return self.content.decode('utf-8-sig', errors='ignore')
        return self.content.lstrip('\ufeff')


@dataclass(frozen=True)
class NormalizedRecord:
    """One performance session, independent of the export layout it came from."""
    scenario_name: str
    timestamp: datetime
    score: float = 0.0
    accuracy: float = 0.0
    avg_ttk: float = 0.0
    avg_fps: float = 0.0
    stamina_index: float = 0.0
    damage_done: float = 0.0
    kill_count: int = 0
    source_file: str = ''
    timestamp_source: DateSource = DateSource.FALLBACK
    # List-key token only; never part of equality or hashing
    identity: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)


@dataclass(frozen=True)
class KillEvents:
    """Per-kill columns pulled from the tabular part of a detailed log."""
    kill_times: tuple[float, ...] = ()
    ttks: tuple[float, ...] = ()
    accuracies: tuple[float, ...] = ()
    damage: tuple[float, ...] = ()

    @property
    def count(self) -> int:
        return max(len(self.kill_times), len(self.ttks), len(self.accuracies), len(self.damage))


@dataclass(frozen=True)
class SkipReport:
    file_name: str
    reason: SkipReason
    detail: str = ''
    row: int | None = None


ScenarioSeries = Mapping[str, tuple[NormalizedRecord, ...]]

EMPTY_SERIES: ScenarioSeries = MappingProxyType({})


@dataclass(frozen=True)
class IngestResult:
    series: ScenarioSeries
    skipped: tuple[SkipReport, ...] = ()
    records_added: int = 0
    files_processed: int = 0

    def skip_counts(self) -> dict[str, int]:
        return dict(Counter(report.reason.value for report in self.skipped))

    def summary(self) -> str:
        """Human readable one-liner for the calling UI."""
        text = (f"Processed {self.files_processed} file(s): {self.records_added} record(s) ingested, "
                f"{len(self.skipped)} skipped")
        counts = self.skip_counts()
        if counts:
            text += " (" + ", ".join(f"{reason}: {n}" for reason, n in sorted(counts.items())) + ")"
        return text
