"""
Calibration CSV files.

TAG_CONFIG.csv: known tag positions

    NAME,POSITION_X,POSITION_Y
    Tag 1,14.090,18.134

INITIAL_ANTENNA_CONFIG.csv: initial antenna poses (ANGLE or ROTATION column)

    NAME,POSITION_X,POSITION_Y,ANGLE
    Antenna 1,14.500,8.000,90.0

Observation recordings (CLI input), one sample per row:

    ANTENNA_ID,TAG_ID,POSITION_X,POSITION_Y[,POSITION_Z,STRENGTH,LINE_OF_SIGHT,
    CONFIDENCE,ERROR_ESTIMATE,RSSI,TIMESTAMP]

Parse errors raise CSVFormatError carrying the 1-based line number.
"""

import csv
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from acal_core.errors import CSVFormatError
from acal_core.proto.calibration import CalibrationResult
from acal_core.proto.geometry import Point3D
from acal_core.proto.observation import ObservationPoint, SignalQuality


logger = logging.getLogger(__name__)


TAG_CONFIG_FILENAME = "TAG_CONFIG.csv"
ANTENNA_CONFIG_FILENAME = "INITIAL_ANTENNA_CONFIG.csv"

DEFAULT_TAG_POSITIONS = {
    "Tag 1": Point3D(14.090, 18.134, 0.0),
    "Tag 2": Point3D(15.260, 18.090, 0.0),
    "Tag 3": Point3D(14.592, 16.592, 0.0),
}


@dataclass(frozen=True)
class InitialAntennaConfig:
    """Initial antenna pose from INITIAL_ANTENNA_CONFIG.csv."""

    name: str
    position: Point3D
    rotation_deg: float


DEFAULT_ANTENNA_CONFIGS = {
    "Antenna 1": InitialAntennaConfig("Antenna 1", Point3D(14.5, 8.0, 0.0), 90.0),
}


def _read_rows(path: str) -> Tuple[List[str], List[Tuple[int, List[str]]]]:
    """
    Read a CSV file into (uppercased header, [(line_number, columns)]).

    Blank lines are skipped; line numbers are 1-based file lines.
    """
    source = os.path.basename(path)
    try:
        with open(path, 'r', newline='', encoding='utf-8') as f:
            rows = list(_numbered(csv.reader(f)))
    except UnicodeDecodeError:
        raise CSVFormatError("File is not valid UTF-8", source=source) from None

    if not rows:
        raise CSVFormatError("CSV file is empty", source=source)

    _, header = rows[0]
    header = [h.strip().upper() for h in header]
    if len(rows) < 2:
        raise CSVFormatError("CSV file has no data rows", source=source)
    return header, rows[1:]


def _numbered(reader) -> Iterable[Tuple[int, List[str]]]:
    for row in reader:
        if row and any(cell.strip() for cell in row):
            yield reader.line_num, row


def _parse_float(value: str, column: str, line: int, source: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        raise CSVFormatError(
            f"Invalid {column} value: '{value}'", line=line, source=source
        ) from None


def _require_header(header: List[str], expected: List[str], source: str):
    if len(header) < len(expected):
        raise CSVFormatError(
            f"Header needs columns {', '.join(expected)}", line=1, source=source
        )
    for idx, name in enumerate(expected):
        if name not in header[idx]:
            raise CSVFormatError(
                f"Column {idx + 1} must be {name}, got '{header[idx]}'", line=1, source=source
            )


def load_tag_config(path: str) -> Dict[str, Point3D]:
    """
    Load known tag positions from TAG_CONFIG.csv.

    Raises:
        FileNotFoundError: If path does not exist
        CSVFormatError: On a malformed header or row
    """
    source = os.path.basename(path)
    header, rows = _read_rows(path)
    _require_header(header, ["NAME", "POSITION_X", "POSITION_Y"], source)

    tags = {}
    for line, cols in rows:
        if len(cols) < 3:
            raise CSVFormatError(
                f"Expected at least 3 columns, got {len(cols)}", line=line, source=source
            )
        name = cols[0].strip()
        tags[name] = Point3D(
            _parse_float(cols[1], "POSITION_X", line, source),
            _parse_float(cols[2], "POSITION_Y", line, source),
            0.0,
        )

    logger.info("Loaded %d tag positions from %s", len(tags), source)
    return tags


def load_initial_antenna_config(path: str) -> Dict[str, InitialAntennaConfig]:
    """
    Load initial antenna poses from INITIAL_ANTENNA_CONFIG.csv.

    The angle column may be named ANGLE or ROTATION and may sit anywhere
    after the position columns.

    Raises:
        FileNotFoundError: If path does not exist
        CSVFormatError: On a malformed header or row
    """
    source = os.path.basename(path)
    header, rows = _read_rows(path)
    _require_header(header, ["NAME", "POSITION_X", "POSITION_Y"], source)

    angle_idx = next((i for i, h in enumerate(header) if h in ("ANGLE", "ROTATION")), None)
    if angle_idx is None:
        raise CSVFormatError("Missing ANGLE or ROTATION column", line=1, source=source)

    antennas = {}
    for line, cols in rows:
        if len(cols) <= angle_idx:
            raise CSVFormatError(
                f"Expected at least {angle_idx + 1} columns, got {len(cols)}",
                line=line, source=source,
            )
        name = cols[0].strip()
        antennas[name] = InitialAntennaConfig(
            name=name,
            position=Point3D(
                _parse_float(cols[1], "POSITION_X", line, source),
                _parse_float(cols[2], "POSITION_Y", line, source),
                0.0,
            ),
            rotation_deg=_parse_float(cols[angle_idx], header[angle_idx], line, source),
        )

    logger.info("Loaded %d antenna configs from %s", len(antennas), source)
    return antennas


def load_calibration_configs(
    directory: str,
) -> Tuple[Dict[str, Point3D], Dict[str, InitialAntennaConfig]]:
    """
    Load both config files from a directory, falling back to defaults for
    any file that is missing. Malformed files still raise.
    """
    tag_path = os.path.join(directory, TAG_CONFIG_FILENAME)
    antenna_path = os.path.join(directory, ANTENNA_CONFIG_FILENAME)

    if os.path.exists(tag_path):
        tags = load_tag_config(tag_path)
    else:
        logger.warning("%s not found in %s; using default tag positions", TAG_CONFIG_FILENAME, directory)
        tags = dict(DEFAULT_TAG_POSITIONS)

    if os.path.exists(antenna_path):
        antennas = load_initial_antenna_config(antenna_path)
    else:
        logger.warning(
            "%s not found in %s; using default antenna config", ANTENNA_CONFIG_FILENAME, directory
        )
        antennas = dict(DEFAULT_ANTENNA_CONFIGS)

    return tags, antennas


def _parse_bool(value: str, line: int, source: str) -> bool:
    text = value.strip().lower()
    if text in ("1", "true", "yes", "los"):
        return True
    if text in ("0", "false", "no", "nlos"):
        return False
    raise CSVFormatError(f"Invalid LINE_OF_SIGHT value: '{value}'", line=line, source=source)


def load_observations(path: str) -> List[Tuple[str, ObservationPoint]]:
    """
    Load a recorded observation file.

    Optional quality columns default to a clean line-of-sight sample.

    Returns:
        [(tag_id, observation)] in file order
    """
    source = os.path.basename(path)
    header, rows = _read_rows(path)

    required = ["ANTENNA_ID", "TAG_ID", "POSITION_X", "POSITION_Y"]
    missing = [name for name in required if name not in header]
    if missing:
        raise CSVFormatError(f"Missing columns: {', '.join(missing)}", line=1, source=source)
    index = {name: i for i, name in enumerate(header)}

    def column(cols: List[str], name: str) -> Optional[str]:
        i = index.get(name)
        if i is None or i >= len(cols) or not cols[i].strip():
            return None
        return cols[i]

    samples = []
    for line, cols in rows:
        if len(cols) < len(required):
            raise CSVFormatError(
                f"Expected at least {len(required)} columns, got {len(cols)}",
                line=line, source=source,
            )

        def number(name: str, default: Optional[float]) -> float:
            raw = column(cols, name)
            if raw is None:
                if default is None:
                    raise CSVFormatError(f"Missing {name} value", line=line, source=source)
                return default
            return _parse_float(raw, name, line, source)

        los_raw = column(cols, "LINE_OF_SIGHT")
        quality = SignalQuality(
            strength=number("STRENGTH", 1.0),
            is_line_of_sight=True if los_raw is None else _parse_bool(los_raw, line, source),
            confidence_level=number("CONFIDENCE", 1.0),
            error_estimate=number("ERROR_ESTIMATE", 0.0),
        )

        antenna_id = (column(cols, "ANTENNA_ID") or "").strip()
        tag_id = (column(cols, "TAG_ID") or "").strip()
        if not antenna_id or not tag_id:
            raise CSVFormatError("ANTENNA_ID and TAG_ID must not be empty", line=line, source=source)

        samples.append((tag_id, ObservationPoint(
            antenna_id=antenna_id,
            position=Point3D(
                number("POSITION_X", None),
                number("POSITION_Y", None),
                number("POSITION_Z", 0.0),
            ),
            timestamp=number("TIMESTAMP", 0.0),
            quality=quality,
            rssi=number("RSSI", 0.0),
        )))

    logger.info("Loaded %d observations from %s", len(samples), source)
    return samples


def write_antenna_config(path: str, results: Dict[str, CalibrationResult]) -> int:
    """
    Write successful results in INITIAL_ANTENNA_CONFIG.csv format.

    Returns:
        Number of rows written
    """
    rows = 0
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(["NAME", "POSITION_X", "POSITION_Y", "ANGLE"])
        for antenna_id, result in results.items():
            if not result.success or result.position is None:
                continue
            writer.writerow([
                antenna_id,
                f"{result.position.x:.3f}",
                f"{result.position.y:.3f}",
                f"{result.rotation_deg:.2f}",
            ])
            rows += 1
    return rows
