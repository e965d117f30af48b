# src/kvk_stats/utils.py
import logging
import os
import sys
from pathlib import Path

from .models import RawFile

logger = logging.getLogger(__name__)

KOVAAKS_RELATIVE_PATH = Path("steamapps/common/FPSAimTrainer/FPSAimTrainer/stats")
LOG_FILE_NAME = "kvk_stats.log"
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - [%(funcName)s] %(message)s'
FILE_FORMAT = '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d - %(funcName)s] %(message)s'


def configure_logging(log_dir: Path | str | None = None, console_level=logging.INFO) -> Path | None:
    """
    Sets up the root logger: console at `console_level`, plus a DEBUG file
    handler in `log_dir` (append mode) when a directory is given.

    Returns:
        Path: The log file path, or None when file logging is off.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    # Clear existing handlers (important if re-running in same session)
    if root.hasHandlers():
        root.handlers.clear()

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(ch)

    if log_dir is None:
        return None
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = log_dir / LOG_FILE_NAME
    fh = logging.FileHandler(log_file_path, mode='a')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(FILE_FORMAT))
    root.addHandler(fh)
    return log_file_path


def _steam_library_paths(steam_root: Path) -> set[Path]:
    """Steam root plus any extra libraries listed in its libraryfolders.vdf."""
    paths = {steam_root}
    library_folders_vdf = steam_root / "steamapps" / "libraryfolders.vdf"
    if not library_folders_vdf.is_file():
        return paths
    logger.debug(f"Found libraryfolders.vdf at {library_folders_vdf}")
    try:
        with open(library_folders_vdf, 'r', encoding='utf-8', errors='ignore') as f:
            # Lines look like '"path"\t\t"X:\\SteamLibrary"'
            for line in f:
                line = line.strip()
                if line.startswith('"path"'):
                    parts = line.split('"')
                    if len(parts) >= 4:
                        lib_path = Path(parts[3].replace('\\\\', '\\'))
                        if lib_path.is_dir():
                            paths.add(lib_path)
                            logger.debug(f"Found potential library path: {lib_path}")
    except OSError as e:
        logger.warning(f"Could not read libraryfolders.vdf: {e}")
    return paths


def steam_roots() -> list[Path]:
    """Common Steam installation roots for the current platform."""
    home = Path.home()
    if sys.platform == "win32":
        program_files_x86 = Path(os.environ.get("ProgramFiles(x86)", "C:/Program Files (x86)"))
        program_files = Path(os.environ.get("ProgramFiles", "C:/Program Files"))
        return [program_files_x86 / "Steam", program_files / "Steam"]
    if sys.platform == "darwin":
        return [home / "Library/Application Support/Steam"]
    return [
        home / ".steam/steam",
        home / ".local/share/Steam",
        home / ".var/app/com.valvesoftware.Steam/.local/share/Steam",  # Flatpak
    ]


def find_default_kovaaks_path(roots: list[Path] | None = None) -> Path | None:
    """
    Attempts to find the KovaaK's stats directory in any known Steam library.

    Returns:
        Path: The stats directory if found, otherwise None.
    """
    logger.info("Attempting to find default KovaaK's stats path...")
    install_paths = set()
    for steam_root in (steam_roots() if roots is None else roots):
        if Path(steam_root).is_dir():
            install_paths |= _steam_library_paths(Path(steam_root))

    for install_path in sorted(install_paths):
        potential_path = install_path / KOVAAKS_RELATIVE_PATH
        logger.debug(f"Checking potential path: {potential_path}")
        if potential_path.is_dir():
            logger.info(f"Found KovaaK's stats path at: {potential_path}")
            return potential_path

    logger.warning("Could not automatically find KovaaK's stats path.")
    return None


def read_raw_files(paths) -> list[RawFile]:
    """
    Reads exports from disk. Directories contribute their *.csv files;
    unreadable files are logged and left out.
    """
    csv_files = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            csv_files.extend(sorted(path.glob('*.csv')))
        else:
            csv_files.append(path)

    raw_files = []
    for csv_file in csv_files:
        try:
            raw_files.append(RawFile(name=csv_file.name, content=csv_file.read_bytes()))
        except OSError as e:
            logger.error(f"Could not read {csv_file}: {e}")
    logger.info(f"Read {len(raw_files)} of {len(csv_files)} file(s).")
    return raw_files
