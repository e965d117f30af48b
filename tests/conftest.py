"""Shared fixtures: synthetic KovaaK's exports in both layouts."""
import logging
from datetime import datetime, timedelta

import matplotlib
import pytest

matplotlib.use('Agg')

from kvk_stats.models import NormalizedRecord, RawFile  # noqa: E402

DETAILED_NAME = "1wall6targets TE - Challenge - 2025.11.03-20.05.18 Stats.csv"
KILL_HEADER_ROW = ("Kill #,Timestamp,Bot,Weapon,TTK,Shots,Hits,Accuracy,Damage Done,"
                   "Damage Possible,Efficiency,Cheated,OverShots")
SESSION_START = datetime(2025, 11, 3, 20, 4, 18)


def make_detailed_log(kill_offsets=range(0, 21, 2), scenario="1wall6targets TE", score="1234.5",
                      hits="80", misses="20", avg_ttk="0.534", avg_fps="239.8", banner=None,
                      footer_extra=()):
    """Builds a detailed log the way the game writes it: kill table, weapon table, footer."""
    lines = list(banner or [])
    lines.append(KILL_HEADER_ROW)
    for n, offset in enumerate(kill_offsets, start=1):
        clock = (SESSION_START + timedelta(seconds=offset)).strftime('%H:%M:%S.%f')[:-3]
        lines.append(f"{n},{clock},Target,Pistol,0.500s,2,2,1.000000,100.0,100.0,1.000000,false,0")
    lines += [
        "",
        "Weapon,Shots,Hits,Damage Done,Damage Possible,,,,,,,,,,",
        "Pistol,100,80,8000.0,10000.0,,,,,,,,",
        "",
        "Kills:,11",
        "Deaths:,0",
        "Fight Time:,60.0",
    ]
    if avg_ttk is not None:
        lines.append(f"Avg TTK:,{avg_ttk}")
    lines += ["Damage Done:,8000.0", "Damage Taken:,0.0", "Midairs:,0"]
    if hits is not None:
        lines.append(f"Hit Count:,{hits}")
    if misses is not None:
        lines.append(f"Miss Count:,{misses}")
    if score is not None:
        lines.append(f"Score:,{score}")
    if scenario is not None:
        lines.append(f"Scenario:,{scenario}")
    lines += ["Hash:,a1b2c3", "Game Version:,3.5.1"]
    if avg_fps is not None:
        lines.append(f"Avg FPS:,{avg_fps}")
    lines += list(footer_extra)
    return "\n".join(lines) + "\n"


SUMMARY_TABLE = (
    "Scenario Name,Score,Date and Time,Accuracy,Time To Kill,Avg FPS\n"
    "Tile Frenzy,1100.5,2025-10-01 18:00:00,0.91,0.41,240\n"
    ",999,2025-10-01 18:05:00,0.5,0.5,240\n"
    "Close Long Strafes,812,2025-10-02 19:30:00,77.5%,n/a,238.4\n"
)


@pytest.fixture
def now():
    return datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
def detailed_text():
    return make_detailed_log()


@pytest.fixture
def detailed_file(detailed_text):
    return RawFile(DETAILED_NAME, detailed_text.encode('utf-8'))


@pytest.fixture
def summary_file():
    return RawFile("session_summary.csv", SUMMARY_TABLE)


@pytest.fixture
def make_record():
    def _make(scenario="Tile Frenzy", when=datetime(2025, 1, 1), score=100.0, **kwargs):
        return NormalizedRecord(scenario_name=scenario, timestamp=when, score=score, **kwargs)
    return _make


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def detailed_log_factory():
    return make_detailed_log


@pytest.fixture
def summary_text():
    return SUMMARY_TABLE
