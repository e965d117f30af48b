# src/kvk_stats/analysis.py
import logging

import numpy as np
import pandas as pd

from .models import ScenarioSeries

logger = logging.getLogger(__name__)

RECORD_COLUMNS = [
    'Scenario Name', 'Timestamp', 'Score', 'Accuracy', 'Avg TTK', 'Avg FPS',
    'Stamina', 'Damage Done', 'Kills', 'Source File', 'Date Source',
]

# Chartable metric name -> DataFrame column
METRIC_COLUMNS = {
    'score': 'Score',
    'accuracy': 'Accuracy',
    'ttk': 'Avg TTK',
    'fps': 'Avg FPS',
    'stamina': 'Stamina',
}


def series_to_dataframe(series: ScenarioSeries) -> pd.DataFrame:
    """Flattens a scenario series into one row per run, ordered by timestamp."""
    rows = [
        {
            'Scenario Name': run.scenario_name,
            'Timestamp': run.timestamp,
            'Score': run.score,
            'Accuracy': run.accuracy,
            'Avg TTK': run.avg_ttk,
            'Avg FPS': run.avg_fps,
            'Stamina': run.stamina_index,
            'Damage Done': run.damage_done,
            'Kills': run.kill_count,
            'Source File': run.source_file,
            'Date Source': run.timestamp_source.value,
        }
        for runs in series.values() for run in runs
    ]
    df = pd.DataFrame(rows, columns=RECORD_COLUMNS)
    if df.empty:
        return df
    df['Timestamp'] = pd.to_datetime(df['Timestamp'])
    df.sort_values(by='Timestamp', kind='stable', inplace=True)
    df.reset_index(drop=True, inplace=True)
    return df


def get_unique_scenarios(series: ScenarioSeries) -> list[str]:
    """Returns a sorted list of scenario names that have at least one run."""
    return sorted(name for name, runs in series.items() if runs)


def get_scenario_time_series(series: ScenarioSeries, scenario_name: str, ma_window: int | None = None) -> pd.DataFrame:
    """
    Time series for one scenario: Timestamp plus every chartable metric.
    With `ma_window`, adds a 'Score MA' moving average and a running 'Score PB'.
    """
    runs = series.get(scenario_name, ())
    df = series_to_dataframe({scenario_name: runs})
    cols_to_keep = ['Timestamp'] + list(METRIC_COLUMNS.values())
    time_series_df = df[cols_to_keep].copy()

    if ma_window and not time_series_df.empty:
        ma_window = max(2, int(ma_window))
        min_periods = max(1, min(len(time_series_df), ma_window))
        time_series_df['Score MA'] = time_series_df['Score'].rolling(window=ma_window, min_periods=min_periods).mean()
        time_series_df['Score PB'] = time_series_df['Score'].cummax()
    return time_series_df


def _mean_of_known(values: pd.Series) -> float | None:
    # 0 means "undetermined" for the derived metrics, so it is left out of averages
    known = values.replace(0, np.nan).dropna()
    return float(known.mean()) if not known.empty else None


def get_scenario_summary(series: ScenarioSeries, scenario_name: str) -> dict | None:
    """Calculates summary statistics for a specific scenario."""
    runs = series.get(scenario_name)
    if not runs:
        return None
    scenario_df = series_to_dataframe({scenario_name: runs})

    first_score = scenario_df['Score'].iloc[0]
    last_score = scenario_df['Score'].iloc[-1]
    improvement = (last_score - first_score) / first_score * 100.0 if first_score > 0 else None

    return {
        'Scenario Name': scenario_name,
        'PB Score': float(scenario_df['Score'].max()),
        'Average Score': float(scenario_df['Score'].mean()),
        'Average Accuracy': float(scenario_df['Accuracy'].mean()),
        'Number of Runs': len(scenario_df),
        'First Played': scenario_df['Timestamp'].min().to_pydatetime(),
        'Date Last Played': scenario_df['Timestamp'].max().to_pydatetime(),
        'Improvement': improvement,
        'Avg TTK': _mean_of_known(scenario_df['Avg TTK']),
        'Avg FPS': _mean_of_known(scenario_df['Avg FPS']),
        'Avg Stamina': _mean_of_known(scenario_df['Stamina']),
        'Avg Damage Done': _mean_of_known(scenario_df['Damage Done']),
    }


def format_scenario_summary(summary: dict) -> dict[str, str]:
    """String version of get_scenario_summary for display, 'N/A' for missing values."""
    def fmt(value, spec, suffix=''):
        return f"{value:{spec}}{suffix}" if value is not None and pd.notna(value) else 'N/A'

    return {
        'Scenario Name': summary['Scenario Name'],
        'PB Score': fmt(summary.get('PB Score'), '.2f'),
        'Average Score': fmt(summary.get('Average Score'), '.2f'),
        'Average Accuracy': fmt(summary['Average Accuracy'] * 100 if summary.get('Average Accuracy') is not None else None, '.1f', '%'),
        'Number of Runs': str(summary.get('Number of Runs', 0)),
        'First Played': summary['First Played'].strftime('%Y-%m-%d %H:%M') if summary.get('First Played') else 'N/A',
        'Date Last Played': summary['Date Last Played'].strftime('%Y-%m-%d %H:%M') if summary.get('Date Last Played') else 'N/A',
        'Improvement': fmt(summary.get('Improvement'), '+.1f', '%'),
        'Avg TTK': fmt(summary.get('Avg TTK'), '.3f', 's'),
        'Avg FPS': fmt(summary.get('Avg FPS'), '.0f'),
        'Avg Stamina': fmt(summary.get('Avg Stamina'), '.1f', '%'),
        'Avg Damage Done': fmt(summary.get('Avg Damage Done'), '.0f'),
    }
