"""Tests for merging records into scenario series and batch ingestion."""
import threading
from datetime import datetime, timedelta
from types import MappingProxyType
from unittest.mock import patch

import pytest

from kvk_stats import aggregator
from kvk_stats.aggregator import ScenarioAggregator, extract_batch, ingest, merge_records
from kvk_stats.models import EMPTY_SERIES, RawFile, SkipReason


def _is_sorted(runs):
    return all(a.timestamp <= b.timestamp for a, b in zip(runs, runs[1:]))


class TestMergeRecords:
    """Tests for the pure merge step."""

    def test_groups_and_sorts(self, make_record):
        records = [
            make_record("A", datetime(2025, 1, 3)),
            make_record("B", datetime(2025, 1, 1)),
            make_record("A", datetime(2025, 1, 1)),
        ]
        series = merge_records(EMPTY_SERIES, records)
        assert set(series) == {"A", "B"}
        assert [r.timestamp.day for r in series["A"]] == [1, 3]

    def test_equal_timestamps_keep_existing_first(self, make_record):
        when = datetime(2025, 1, 1)
        old = make_record("A", when, score=1)
        new = make_record("A", when, score=2)
        series = merge_records(merge_records(EMPTY_SERIES, [old]), [new])
        assert [r.score for r in series["A"]] == [1, 2]

    def test_repeated_merge_duplicates_but_stays_sorted(self, make_record):
        batch = [make_record("A", datetime(2025, 1, d)) for d in (5, 2, 9)]
        series = merge_records(merge_records(EMPTY_SERIES, batch), batch)
        assert len(series["A"]) == 6
        assert _is_sorted(series["A"])

    def test_returns_new_read_only_snapshot(self, make_record):
        first = merge_records(EMPTY_SERIES, [make_record("A")])
        second = merge_records(first, [make_record("B")])
        assert "B" not in first
        assert second["A"] is first["A"]
        with pytest.raises(TypeError):
            second["C"] = ()

    def test_records_are_not_copied_or_mutated(self, make_record):
        record = make_record("A")
        series = merge_records(EMPTY_SERIES, [record])
        assert series["A"][0] is record

    def test_empty_batch_keeps_runs(self, make_record):
        series = merge_records(EMPTY_SERIES, [make_record("A")])
        unchanged = merge_records(series, [])
        assert dict(unchanged) == dict(series)
        assert unchanged["A"] is series["A"]

    def test_caller_mapping_is_copied_and_frozen(self, make_record):
        late, early = make_record("A", datetime(2025, 3, 1)), make_record("A", datetime(2025, 1, 1))
        plain = {"A": [late, early]}
        series = merge_records(plain, [])
        assert isinstance(series, MappingProxyType)
        assert series["A"] == (early, late)
        plain["B"] = []
        assert "B" not in series


class TestIngest:
    """Tests for the ingest entry point."""

    def test_mixed_batch(self, detailed_file, summary_file, now):
        junk = RawFile("junk.csv", "nothing to see\n")
        result = ingest([detailed_file, summary_file, junk], now=now, max_workers=1)
        assert result.files_processed == 3
        assert result.records_added == 3
        assert set(result.series) == {"1wall6targets TE", "Tile Frenzy", "Close Long Strafes"}
        reasons = [s.reason for s in result.skipped]
        assert reasons == [SkipReason.MISSING_SCENARIO, SkipReason.UNRECOGNIZED_FORMAT]

    def test_unrecognized_only(self, now):
        result = ingest([RawFile("a.csv", "foo,bar\n")], now=now)
        assert result.records_added == 0
        assert len(result.series) == 0
        assert [s.reason for s in result.skipped] == [SkipReason.UNRECOGNIZED_FORMAT]
        assert "UnrecognizedFormat: 1" in result.summary()

    def test_merges_into_given_series(self, detailed_file, make_record, now):
        existing = merge_records(EMPTY_SERIES, [make_record("1wall6targets TE", datetime(2030, 1, 1))])
        result = ingest([detailed_file], series=existing, now=now)
        runs = result.series["1wall6targets TE"]
        assert len(runs) == 2
        assert runs[-1].timestamp == datetime(2030, 1, 1)
        assert len(existing["1wall6targets TE"]) == 1

    def test_caller_series_is_not_handed_back(self, make_record, now):
        existing = {"Pasu": [make_record("Pasu")]}
        result = ingest([RawFile("a.csv", "foo,bar\n")], series=existing, now=now)
        assert result.series is not existing
        assert isinstance(result.series, MappingProxyType)
        assert isinstance(result.series["Pasu"], tuple)

    def test_summary_with_scenario_alias(self, now):
        result = ingest([RawFile("s.csv", "Scenario;Score\nPasu;12\n")], now=now)
        assert result.records_added == 1
        assert result.skipped == ()
        assert result.series["Pasu"][0].score == 12.0

    def test_thread_pool_matches_serial(self, detailed_log_factory, now):
        files = [
            RawFile(f"Pasu - 2025.01.{day:02d}-10.00.00 Stats.csv", detailed_log_factory(scenario="Pasu", score=str(day)))
            for day in (20, 3, 11, 7, 1, 15)
        ]
        serial = ingest(files, max_workers=1, now=now)
        threaded = ingest(files, max_workers=4, now=now)
        assert [r.score for r in threaded.series["Pasu"]] == [1, 3, 7, 11, 15, 20]
        assert [r.score for r in threaded.series["Pasu"]] == [r.score for r in serial.series["Pasu"]]

    def test_process_pool(self, detailed_file, summary_file, now):
        result = ingest([detailed_file, summary_file], max_workers=2, use_processes=True, now=now)
        assert result.records_added == 3

    @pytest.mark.parametrize("bad", ["file.csv", b"bytes", [object()], None])
    def test_invalid_arguments_raise(self, bad):
        with pytest.raises(TypeError):
            ingest(bad)

    def test_extract_batch_reports_in_input_order(self, now):
        files = [RawFile(f"{n}.csv", "x\n") for n in range(5)]
        _, skipped = extract_batch(files, max_workers=3, now=now)
        assert [s.file_name for s in skipped] == [f"{n}.csv" for n in range(5)]


class TestScenarioAggregator:
    """Tests for the stateful single-writer aggregator."""

    def test_accumulates_batches(self, detailed_file, summary_file, now):
        agg = ScenarioAggregator()
        agg.ingest([detailed_file], now=now)
        result = agg.ingest([summary_file], now=now)
        assert result.series is agg.series
        assert set(agg.series) == {"1wall6targets TE", "Tile Frenzy", "Close Long Strafes"}

    def test_failed_batch_leaves_snapshot_untouched(self, detailed_file, summary_file, now):
        agg = ScenarioAggregator()
        agg.ingest([detailed_file], now=now)
        before = agg.series

        real_parse = aggregator.parse_raw_file

        def flaky(raw_file, now=None):
            if raw_file.name == summary_file.name:
                raise RuntimeError("cancelled")
            return real_parse(raw_file, now=now)

        with patch.object(aggregator, 'parse_raw_file', side_effect=flaky):
            with pytest.raises(RuntimeError, match="cancelled"):
                agg.ingest([detailed_file, summary_file], max_workers=1, now=now)
        assert agg.series is before
        assert len(agg.series["1wall6targets TE"]) == 1

    def test_concurrent_batches_keep_order(self, make_record):
        agg = ScenarioAggregator()
        base = datetime(2025, 1, 1)

        def worker(offset):
            agg.merge([make_record("A", base + timedelta(minutes=offset + 7 * i)) for i in range(50)])

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(agg.series["A"]) == 400
        assert _is_sorted(agg.series["A"])

    def test_starts_from_existing_series(self, make_record):
        seed = {"A": (make_record("A"),)}
        agg = ScenarioAggregator(seed)
        assert agg.series["A"] == seed["A"]
        assert agg.series is not seed

    def test_seed_is_sorted_into_tuples(self, make_record):
        late, early = make_record("A", datetime(2025, 3, 1)), make_record("A", datetime(2025, 1, 1))
        agg = ScenarioAggregator({"A": [late, early]})
        assert agg.series["A"] == (early, late)
