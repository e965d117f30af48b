# src/kvk_stats/plotting.py
import logging
from pathlib import Path

import matplotlib
import pandas as pd
from matplotlib.dates import AutoDateFormatter, AutoDateLocator
from matplotlib.figure import Figure

from .analysis import METRIC_COLUMNS, get_scenario_time_series
from .models import ScenarioSeries

logger = logging.getLogger(__name__)

# --- Matplotlib Style Configuration ---
# Dark theme, applied per figure through rc_context
PLOT_STYLE = {
    "figure.facecolor": "#2b2b2b",
    "axes.facecolor": "#343638",
    "axes.edgecolor": "#DCE4EE",
    "axes.labelcolor": "#DCE4EE",
    "text.color": "#DCE4EE",
    "xtick.color": "#DCE4EE",
    "ytick.color": "#DCE4EE",
    "grid.color": "#565B5E",
    "figure.figsize": (8, 4.5),
    "lines.linewidth": 1.5,
    "lines.markersize": 4,
    "legend.facecolor": "#343638",
    "legend.edgecolor": "#565B5E",
    "legend.fontsize": "small",
}

METRIC_LABELS = {
    'score': 'Score',
    'accuracy': 'Accuracy (%)',
    'ttk': 'Avg TTK (s)',
    'fps': 'Avg FPS',
    'stamina': 'Stamina (%)',
}

DEFAULT_MA_WINDOW = 10


def _show_message(ax, message):
    ax.text(0.5, 0.5, message, ha='center', va='center', transform=ax.transAxes, fontsize=12)
    ax.set_xticks([])
    ax.set_yticks([])


def plot_scenario(series: ScenarioSeries, scenario_name: str, metric: str = 'score',
                  ma_window: int = DEFAULT_MA_WINDOW, show_pb: bool = True) -> Figure:
    """
    Draws one metric of a scenario over time with a moving average, plus the
    running personal best when plotting score.
    """
    if metric not in METRIC_COLUMNS:
        raise ValueError(f"Unknown metric '{metric}', expected one of {sorted(METRIC_COLUMNS)}")

    with matplotlib.rc_context(PLOT_STYLE):
        fig = Figure()
        ax = fig.add_subplot(111)

        time_series_df = get_scenario_time_series(series, scenario_name)
        if time_series_df.empty:
            logger.info(f"No runs to plot for scenario '{scenario_name}'.")
            _show_message(ax, "No run data for this scenario")
            return fig

        column = METRIC_COLUMNS[metric]
        x_data = time_series_df['Timestamp']
        y_data = time_series_df[column] * 100.0 if metric == 'accuracy' else time_series_df[column]

        ma_window = max(2, int(ma_window))
        min_periods = max(1, min(len(time_series_df), ma_window))
        y_ma = y_data.rolling(window=ma_window, min_periods=min_periods).mean()

        ax.plot(x_data, y_data, marker='o', linestyle='-', color='cyan', alpha=0.6, label=METRIC_LABELS[metric])
        ax.plot(x_data, y_ma, linestyle='-', color='orange', label=f"MA({ma_window})")
        if show_pb and metric == 'score':
            ax.plot(x_data, y_data.cummax(), linestyle='--', color='gold', label='PB')

        locator = AutoDateLocator(minticks=3, maxticks=7)
        ax.xaxis.set_major_locator(locator)
        ax.xaxis.set_major_formatter(AutoDateFormatter(locator))
        if len(time_series_df) > 1:
            ax.set_xlim(x_data.min(), x_data.max())

        ax.set_title(f"Progress: {scenario_name}")
        ax.set_xlabel("Date")
        ax.set_ylabel(METRIC_LABELS[metric])
        ax.grid(True, linestyle='--', linewidth=0.5)
        ax.legend(loc='best')
        fig.autofmt_xdate()
        fig.tight_layout()
    return fig


def save_scenario_plot(series: ScenarioSeries, scenario_name: str, path, **plot_kwargs) -> Path:
    """Renders plot_scenario to an image file; the format follows the file suffix."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig = plot_scenario(series, scenario_name, **plot_kwargs)
    fig.savefig(path, facecolor=PLOT_STYLE["figure.facecolor"])
    logger.info(f"Saved {scenario_name} plot to {path}")
    return path


def metric_frame(series: ScenarioSeries, scenario_name: str, metric: str) -> pd.DataFrame:
    """Timestamp/value pairs for one metric, as handed to external charting code."""
    if metric not in METRIC_COLUMNS:
        raise ValueError(f"Unknown metric '{metric}', expected one of {sorted(METRIC_COLUMNS)}")
    time_series_df = get_scenario_time_series(series, scenario_name)
    return time_series_df[['Timestamp', METRIC_COLUMNS[metric]]].rename(columns={METRIC_COLUMNS[metric]: 'Value'})
