# src/kvk_stats/data_handler.py
import csv
import io
import logging
import math
import re
from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd

from .models import (
    DateSource, FileFormat, KillEvents, NormalizedRecord, RawFile, SkipReason, SkipReport,
)

logger = logging.getLogger(__name__)

# --- Parsing Configuration ---
KILL_HEADER = 'Kill #'
SUMMARY_HEADER = 'Scenario Name'
BANNER_SCAN_LINES = 20      # Non-empty lines searched for a 'Kill #' header behind banner rows
MIN_STAMINA_EVENTS = 5
MIN_STAMINA_DURATION = 10.0 # Seconds; shorter sessions get no stamina index
SECONDS_PER_DAY = 24 * 3600
CANDIDATE_DELIMITERS = (',', ';', '\t', '|')

# Footer keys of a detailed log. Longest first so 'Scenario' never shadows a longer key.
DETAILED_KEYS = ('Scenario', 'Score', 'Hit Count', 'Miss Count', 'Avg TTK', 'Avg FPS', 'Damage Done')
_KEY_PATTERN = '|'.join(re.escape(k) for k in sorted(DETAILED_KEYS, key=len, reverse=True))
_CANONICAL_KEYS = {k.lower(): k for k in DETAILED_KEYS}

# 'Score:,123.4' / 'Score: 123,4' / 'Score:;123'
_KV_STRICT = re.compile(rf'^\s*"?(?P<key>{_KEY_PATTERN})"?\s*:\s*[,;\t|]?\s*(?P<value>.*)$', re.IGNORECASE)
# 'Score,123.4' / 'Score    123.4' (no colon at all)
_KV_LOOSE = re.compile(rf'^\s*"?(?P<key>{_KEY_PATTERN})"?(?:\s*[,;\t|]\s*|\s+)(?P<value>.*)$', re.IGNORECASE)

# '2025.11.03-20.05.18' and the looser variants seen in renamed exports
_TIMESTAMP_TOKEN = re.compile(
    r'(?P<year>\d{4})[.\-_/](?P<month>\d{2})[.\-_/](?P<day>\d{2})'
    r'[-_ T](?P<hour>\d{2})[.\-_:](?P<minute>\d{2})[.\-_:](?P<second>\d{2})'
)

# Per-kill table columns: field -> aliases, primary alias first
KILL_COLUMNS = {
    'kill_time': ('timestamp', 'time'),
    'ttk': ('ttk', 'time to kill'),
    'accuracy': ('accuracy', 'acc'),
    'damage': ('damage done', 'damage'),
}

# Summary table columns: field -> aliases, primary alias first
SUMMARY_COLUMNS = {
    'scenario': ('scenario name', 'scenario'),
    'score': ('score',),
    'date': ('date and time', 'date', 'timestamp'),
    'accuracy': ('accuracy', 'avg accuracy'),
    'ttk': ('time to kill', 'avg ttk', 'ttk'),
    'fps': ('avg fps', 'fps'),
}


# --- Scalar Parsers ---
def parse_number(value) -> float | None:
    """
    Parses a loosely formatted number. Handles '%' suffixes, quotes, stray
    whitespace and a comma used as the decimal point ('1234,5' -> 1234.5).
    Returns None for anything unparsable, NaN or infinite.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).strip().strip('"\'').replace('%', '').replace('\u00a0', '').replace(' ', '')
    if not text:
        return None
    if ',' in text and '.' in text:
        # The later separator is the decimal point
        if text.rfind(',') > text.rfind('.'):
            text = text.replace('.', '').replace(',', '.')  # 1.234,5
        else:
            text = text.replace(',', '')  # 1,234.5
    elif text.count(',') == 1:
        text = text.replace(',', '.')  # 1234,5
    elif ',' in text:
        text = text.replace(',', '')  # 1,234,567
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def number_or_zero(value) -> float:
    """parse_number, clamped to the non-negative range, with 0 for unparsable input."""
    number = parse_number(value)
    if number is None or number < 0:
        return 0.0
    return number


def parse_seconds(value) -> float | None:
    """Parses a duration such as '0.523', '0,523' or '0.523s'."""
    if isinstance(value, str):
        value = value.strip().rstrip('sS')
    return parse_number(value)


def as_fraction(value) -> float:
    """Normalizes an accuracy cell to [0, 1]; '85%' and 85 both become 0.85."""
    number = parse_number(value)
    if number is None or number < 0:
        return 0.0
    if (isinstance(value, str) and '%' in value) or number > 1:
        number /= 100.0
    return min(number, 1.0)


def compute_accuracy(hits, misses) -> float:
    hits, misses = number_or_zero(hits), number_or_zero(misses)
    total_shots = hits + misses
    return hits / total_shots if total_shots > 0 else 0.0


def parse_clock_seconds(time_str) -> float | None:
    """Parses a clock time like '14:18:41.799' (or 'MM:SS.fff', or plain seconds) into seconds."""
    if not isinstance(time_str, str) or not time_str.strip():
        return None
    time_str = time_str.strip().replace(',', '.')
    parts = time_str.split(':')
    try:
        if len(parts) == 3:
            h, m, s = int(parts[0]), int(parts[1]), float(parts[2])
        elif len(parts) == 2:
            h, m, s = 0, int(parts[0]), float(parts[1])
        else:
            return parse_seconds(time_str)
    except ValueError:
        logger.debug(f"Could not parse time string '{time_str}'.")
        return None
    total_seconds = h * 3600 + m * 60 + s
    return total_seconds if math.isfinite(total_seconds) and total_seconds >= 0 else None


# --- Date Resolution ---
def parse_timestamp_token(text) -> datetime | None:
    """Finds the first valid 'YYYY.MM.DD-HH.MM.SS'-like token in text."""
    if not isinstance(text, str):
        return None
    for match in _TIMESTAMP_TOKEN.finditer(text):
        data = match.groupdict()
        try:
            return datetime(
                int(data['year']), int(data['month']), int(data['day']),
                int(data['hour']), int(data['minute']), int(data['second'])
            )
        except ValueError as e:
            logger.warning(f"Ignoring invalid timestamp token '{match.group(0)}': {e}")
    return None


def parse_content_date(value) -> datetime | None:
    """Parses an in-file date cell. Timezone-aware values are converted to naive UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    if _TIMESTAMP_TOKEN.fullmatch(value):
        token = parse_timestamp_token(value)
        if token:
            return token
    parsed = pd.to_datetime(value, errors='coerce')
    if pd.isna(parsed):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.tz_convert('UTC').tz_localize(None)
    return parsed.to_pydatetime()


def resolve_timestamp(file_name, content_date=None, now=None) -> tuple[datetime, DateSource]:
    """
    Picks the authoritative timestamp for a record: the file name token first,
    then the in-file date, then the processing time. Never fails.
    """
    from_name = parse_timestamp_token(Path(str(file_name)).name)
    if from_name is not None:
        if content_date:
            logger.debug(f"Filename timestamp overrides in-file date '{content_date}' for {file_name}")
        return from_name, DateSource.FILENAME

    from_content = parse_content_date(content_date)
    if from_content is not None:
        return from_content, DateSource.CONTENT

    logger.info(f"No usable timestamp for '{file_name}', falling back to processing time.")
    return (now or datetime.now()), DateSource.FALLBACK


# --- Row Helpers ---
def _non_empty_lines(text, limit=None):
    lines = []
    for line in text.splitlines():
        if line.strip():
            lines.append(line)
            if limit is not None and len(lines) >= limit:
                break
    return lines


def detect_delimiter(line: str) -> str:
    """Most frequent candidate delimiter in a header line, defaulting to a comma."""
    counts = {d: line.count(d) for d in CANDIDATE_DELIMITERS}
    best = max(counts, key=counts.get)
    return best if counts[best] > 0 else ','


def split_rows(text: str, delimiter: str) -> list[list[str]]:
    """Splits text into stripped cell lists, dropping blank rows."""
    try:
        rows = list(csv.reader(io.StringIO(text), delimiter=delimiter, skipinitialspace=True))
    except csv.Error as e:
        logger.debug(f"csv reader failed ({e}), splitting lines naively.")
        rows = [line.split(delimiter) for line in text.splitlines()]
    cleaned = []
    for row in rows:
        cells = [cell.strip() for cell in row]
        if any(cells):
            cleaned.append(cells)
    return cleaned


def _cell(row, index) -> str:
    if index is None or index >= len(row):
        return ''
    return row[index]


def resolve_columns(header, column_aliases) -> dict[str, int]:
    """Case-insensitive header lookup: exact alias matches first, then a substring match on the primary alias."""
    lowered = [cell.strip().strip('"').lower() for cell in header]
    columns = {}
    for field_name, aliases in column_aliases.items():
        for alias in aliases:
            if alias in lowered:
                columns[field_name] = lowered.index(alias)
                break
        else:
            primary = aliases[0]
            index = next((i for i, cell in enumerate(lowered) if primary in cell), None)
            if index is not None:
                columns[field_name] = index
    return columns


# --- Format Classifier ---
def classify_format(text: str) -> FileFormat:
    """Decides which export layout a file uses. Pure, never raises."""
    lines = _non_empty_lines(text, BANNER_SCAN_LINES)
    if not lines:
        return FileFormat.UNRECOGNIZED

    first_rows = split_rows(lines[0], detect_delimiter(lines[0]))
    first_cells = [cell.strip('"') for cell in first_rows[0]] if first_rows else []
    if first_cells and first_cells[0] == KILL_HEADER:
        return FileFormat.DETAILED_LOG
    if 'scenario' in resolve_columns(first_cells, {'scenario': SUMMARY_COLUMNS['scenario']}):
        return FileFormat.SUMMARY_TABLE
    # Some exports prepend banner rows before the kill table
    if any(KILL_HEADER in line for line in lines):
        return FileFormat.DETAILED_LOG
    return FileFormat.UNRECOGNIZED


# --- Detailed Log Extractor ---
def _clean_value(value: str) -> str:
    value = value.strip().rstrip(',;\t| ')
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1].strip()
    return value


def scan_key_values(text: str) -> dict[str, str]:
    """
    Collects the known footer fields of a detailed log. Lines with a colon
    after the key win over whitespace/comma separated ones; later lines win
    over earlier ones.
    """
    strict, loose = {}, {}
    for line in text.splitlines():
        match = _KV_STRICT.match(line)
        target = strict
        if not match:
            match = _KV_LOOSE.match(line)
            target = loose
        if match:
            key = _CANONICAL_KEYS[match.group('key').lower()]
            target[key] = _clean_value(match.group('value'))
    return {**loose, **strict}


def scan_kill_events(text: str) -> KillEvents:
    """
    Reads the per-kill table of a detailed log. Data stops at the first row
    whose first cell contains a colon (the start of the footer block).
    Clock timestamps become elapsed seconds, unwrapped across midnight.
    """
    lines = text.splitlines()
    header_index = next((i for i, line in enumerate(lines) if KILL_HEADER.lower() in line.lower()), None)
    if header_index is None:
        return KillEvents()

    rows = split_rows('\n'.join(lines[header_index:]), detect_delimiter(lines[header_index]))
    header, body = rows[0], rows[1:]
    columns = resolve_columns(header, KILL_COLUMNS)
    kill_col = next((i for i, cell in enumerate(header) if KILL_HEADER.lower() in cell.lower()), None)

    kill_times, ttks, accuracies, damage = [], [], [], []
    previous_raw, day_offset = None, 0.0
    for row in body:
        if ':' in row[0]:
            break
        if parse_number(_cell(row, kill_col)) is None:
            continue  # weapon table and other non-kill rows

        raw_time = parse_clock_seconds(_cell(row, columns.get('kill_time')))
        if raw_time is not None:
            # Only a drop of more than half a day is a midnight wrap
            if previous_raw is not None and previous_raw - raw_time > SECONDS_PER_DAY / 2:
                day_offset += SECONDS_PER_DAY
            previous_raw = raw_time
            kill_times.append(raw_time + day_offset)

        ttk = parse_seconds(_cell(row, columns.get('ttk')))
        if ttk is not None and ttk >= 0:
            ttks.append(ttk)
        if 'accuracy' in columns and parse_number(_cell(row, columns['accuracy'])) is not None:
            accuracies.append(as_fraction(_cell(row, columns['accuracy'])))
        dmg = parse_number(_cell(row, columns.get('damage')))
        if dmg is not None and dmg >= 0:
            damage.append(dmg)

    logger.debug(f"Kill table: {len(kill_times)} timestamps, {len(ttks)} TTKs, columns={columns}")
    return KillEvents(tuple(kill_times), tuple(ttks), tuple(accuracies), tuple(damage))


def extract_detailed_log(text: str, file_name: str, now=None) -> tuple[NormalizedRecord | None, SkipReport | None]:
    """Builds at most one record from a per-kill log."""
    fields = scan_key_values(text)

    scenario = fields.get('Scenario', '').strip()
    if not scenario:
        return None, SkipReport(file_name, SkipReason.MISSING_SCENARIO, "No 'Scenario' field found")
    score = parse_number(fields.get('Score'))
    if score is None:
        return None, SkipReport(file_name, SkipReason.UNPARSABLE_SCORE,
                                f"Score value {fields.get('Score')!r} is not a number")

    events = scan_kill_events(text)

    if 'Hit Count' in fields or 'Miss Count' in fields:
        accuracy = compute_accuracy(fields.get('Hit Count'), fields.get('Miss Count'))
    elif events.accuracies:
        accuracy = float(np.mean(events.accuracies))
    else:
        accuracy = 0.0

    avg_ttk = parse_seconds(fields.get('Avg TTK'))
    if avg_ttk is None and events.ttks:
        avg_ttk = float(np.mean(events.ttks))

    damage_done = parse_number(fields.get('Damage Done'))
    if damage_done is None and events.damage:
        damage_done = float(np.sum(events.damage))

    timestamp, source = resolve_timestamp(file_name, now=now)
    record = NormalizedRecord(
        scenario_name=scenario,
        timestamp=timestamp,
        score=number_or_zero(score),
        accuracy=min(accuracy, 1.0),
        avg_ttk=number_or_zero(avg_ttk),
        avg_fps=number_or_zero(fields.get('Avg FPS')),
        stamina_index=estimate_stamina(events.kill_times),
        damage_done=number_or_zero(damage_done),
        kill_count=events.count,
        source_file=file_name,
        timestamp_source=source,
    )
    logger.debug(f"Detailed log parsed: {file_name} -> '{scenario}' score={record.score}")
    return record, None


# --- Summary Table Extractor ---
def extract_summary_table(text: str, file_name: str, now=None) -> tuple[list[NormalizedRecord], list[SkipReport]]:
    """One record per data row that names a scenario. Row numbers count non-blank lines, header = 1."""
    lines = _non_empty_lines(text)
    if not lines:
        return [], []
    rows = split_rows(text, detect_delimiter(lines[0]))
    header, body = rows[0], rows[1:]
    columns = resolve_columns(header, SUMMARY_COLUMNS)

    records, skipped = [], []
    for row_number, row in enumerate(body, start=2):
        scenario = _cell(row, columns.get('scenario')).strip()
        if not scenario:
            skipped.append(SkipReport(file_name, SkipReason.MISSING_SCENARIO, "Empty scenario name", row=row_number))
            continue
        timestamp, source = resolve_timestamp(file_name, _cell(row, columns.get('date')), now=now)
        records.append(NormalizedRecord(
            scenario_name=scenario,
            timestamp=timestamp,
            score=number_or_zero(_cell(row, columns.get('score'))),
            accuracy=as_fraction(_cell(row, columns.get('accuracy'))),
            avg_ttk=number_or_zero(parse_seconds(_cell(row, columns.get('ttk')))),
            avg_fps=number_or_zero(_cell(row, columns.get('fps'))),
            source_file=file_name,
            timestamp_source=source,
        ))

    logger.debug(f"Summary table parsed: {file_name} -> {len(records)} rows, {len(skipped)} skipped")
    return records, skipped


# --- Stamina Estimator ---
def estimate_stamina(kill_times) -> float:
    """
    Second-half vs first-half kill rate as a percentage. 100 is even pacing,
    below 100 means the kill rate decayed. 0 when there is too little data.
    """
    times = np.asarray(kill_times, dtype=float)
    times = times[np.isfinite(times)]
    if times.size < MIN_STAMINA_EVENTS:
        return 0.0

    start, end = times[0], times[-1]
    duration = end - start
    if duration <= MIN_STAMINA_DURATION:
        return 0.0

    midpoint = start + duration / 2
    first_half = int(np.count_nonzero(times <= midpoint))
    second_half = times.size - first_half
    if first_half == 0:
        return 0.0
    return 100.0 * second_half / first_half


# --- Per-File Dispatch ---
def parse_raw_file(raw_file: RawFile, now=None) -> tuple[list[NormalizedRecord], list[SkipReport]]:
    """
    Classifies one export and runs the matching extractor. Module level so it
    can be shipped to worker processes.
    """
    text = raw_file.text
    file_format = classify_format(text)
    logger.debug(f"Worker processing file: {raw_file.name} ({file_format.value})")

    if file_format is FileFormat.DETAILED_LOG:
        record, skip = extract_detailed_log(text, raw_file.name, now=now)
        return ([record] if record else []), ([skip] if skip else [])
    if file_format is FileFormat.SUMMARY_TABLE:
        return extract_summary_table(text, raw_file.name, now=now)

    return [], [SkipReport(raw_file.name, SkipReason.UNRECOGNIZED_FORMAT,
                           f"Neither '{KILL_HEADER}' nor '{SUMMARY_HEADER}' header found")]
