# src/kvk_stats/sync.py
"""
Upload of normalized runs to a remote score store.

The store is only reached through an object with an ``insert(rows)`` method,
passed in by the caller. ``RestScoreStore`` is the bundled implementation for
a PostgREST-style endpoint (``POST {base_url}/rest/v1/{table}``).
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Protocol

import requests

from .errors import RemoteSyncError
from .models import ScenarioSeries

logger = logging.getLogger(__name__)

UPLOAD_BATCH_SIZE = 100     # Rows per insert, keeps payloads under the store's size limit
REQUEST_TIMEOUT = 30        # Seconds
STORE_URL_ENV = 'KVK_STORE_URL'
STORE_KEY_ENV = 'KVK_STORE_KEY'

# Upload record field -> column name in the hosted 'scores' table
DEFAULT_COLUMN_MAP = {
    'scenario': 'scenario',
    'score': 'score',
    'accuracy': 'accuracy',
    'time_to_kill': 'ttk',
    'frame_rate': 'fps',
    'stamina_index': 'fatigue',
    'timestamp': 'played_at',
    'user_id': 'user_id',
}


class ScoreStore(Protocol):
    def insert(self, rows: list[dict]) -> None:
        """Writes one batch; raises on failure."""


@dataclass(frozen=True)
class BatchResult:
    index: int
    size: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    batches: list[BatchResult] = field(default_factory=list)

    @property
    def uploaded(self) -> int:
        return sum(batch.size for batch in self.batches if batch.ok)

    @property
    def failures(self) -> list[BatchResult]:
        return [batch for batch in self.batches if not batch.ok]

    @property
    def ok(self) -> bool:
        return not self.failures


def build_upload_records(series: ScenarioSeries, user_id: str | None = None) -> list[dict]:
    """Flattens a series into upload rows, scenario by scenario in timestamp order."""
    records = []
    for runs in series.values():
        for run in runs:
            row = {
                'scenario': run.scenario_name,
                'score': run.score,
                'accuracy': run.accuracy,
                'time_to_kill': run.avg_ttk,
                'frame_rate': run.avg_fps,
                'stamina_index': run.stamina_index,
                'timestamp': run.timestamp.isoformat(),
            }
            if user_id is not None:
                row['user_id'] = user_id
            records.append(row)
    return records


def upload_records(client: ScoreStore, records: list[dict], batch_size: int = UPLOAD_BATCH_SIZE) -> SyncReport:
    """
    Sends records in fixed-size batches. A failed batch is logged and recorded
    in the report; the remaining batches are still sent.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    report = SyncReport()
    for index, start in enumerate(range(0, len(records), batch_size)):
        batch = records[start:start + batch_size]
        try:
            client.insert(batch)
        except Exception as e:
            logger.error(f"Upload batch {index + 1} ({len(batch)} rows) failed: {e}", exc_info=True)
            report.batches.append(BatchResult(index, len(batch), str(e)))
        else:
            logger.debug(f"Upload batch {index + 1} ({len(batch)} rows) stored.")
            report.batches.append(BatchResult(index, len(batch)))

    logger.info(f"Sync finished: {report.uploaded}/{len(records)} rows uploaded, "
                f"{len(report.failures)} failed batch(es).")
    return report


def sync_series(client: ScoreStore, series: ScenarioSeries, user_id: str | None = None,
                batch_size: int = UPLOAD_BATCH_SIZE) -> SyncReport:
    return upload_records(client, build_upload_records(series, user_id=user_id), batch_size=batch_size)


class RestScoreStore:
    """Inserts rows into a PostgREST table using an API key."""

    def __init__(self, base_url: str, api_key: str, table: str = 'scores',
                 session: requests.Session | None = None, timeout: float = REQUEST_TIMEOUT,
                 column_map: dict[str, str] | None = None):
        if not base_url or not api_key:
            raise ValueError("base_url and api_key are required")
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.table = table
        self.session = session or requests.Session()
        self.timeout = timeout
        self.column_map = DEFAULT_COLUMN_MAP if column_map is None else column_map

    @classmethod
    def from_env(cls, table: str = 'scores', **kwargs) -> 'RestScoreStore':
        base_url = os.environ.get(STORE_URL_ENV)
        api_key = os.environ.get(STORE_KEY_ENV)
        if not base_url or not api_key:
            raise ValueError(f"Set {STORE_URL_ENV} and {STORE_KEY_ENV} to sync with the score store")
        return cls(base_url, api_key, table=table, **kwargs)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def _to_columns(self, row: dict) -> dict:
        return {self.column_map.get(key, key): value for key, value in row.items()}

    def insert(self, rows: list[dict]) -> None:
        headers = {
            'apikey': self.api_key,
            'Authorization': f"Bearer {self.api_key}",
            'Content-Type': 'application/json',
            'Prefer': 'return=minimal',
        }
        payload = [self._to_columns(row) for row in rows]
        try:
            response = self.session.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteSyncError(f"Request to {self.endpoint} failed: {e}") from e
        if not response.ok:
            raise RemoteSyncError(
                f"Store rejected batch with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
