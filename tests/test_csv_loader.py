"""
Unit tests for the calibration CSV files.

Tests cover:
- TAG_CONFIG.csv and INITIAL_ANTENNA_CONFIG.csv parsing
- Header handling (case, ANGLE / ROTATION column)
- Errors carrying the offending line number
- Directory loading with default fallbacks
- Observation recordings with optional quality columns
- Writing calibrated poses back out
"""

import logging

import pytest

from acal_core.errors import CSVFormatError, InputError
from acal_core.io.csv_loader import (
    ANTENNA_CONFIG_FILENAME,
    DEFAULT_TAG_POSITIONS,
    TAG_CONFIG_FILENAME,
    load_calibration_configs,
    load_initial_antenna_config,
    load_observations,
    load_tag_config,
    write_antenna_config,
)
from acal_core.proto import CalibrationResult, Point3D


@pytest.fixture
def write_csv(tmp_path):
    """Write text to a file under tmp_path and return its path as str."""

    def _write(name: str, text: str) -> str:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write


# =============================================================================
# Tag / antenna config
# =============================================================================


class TestTagConfig:
    """Tests for TAG_CONFIG.csv."""

    def test_load(self, write_csv):
        path = write_csv(TAG_CONFIG_FILENAME, "NAME,POSITION_X,POSITION_Y\nTag 1,14.090,18.134\nTag 2,15.260,18.090\n")

        tags = load_tag_config(path)

        assert tags == {"Tag 1": Point3D(14.090, 18.134), "Tag 2": Point3D(15.260, 18.090)}

    def test_lowercase_header_and_blank_lines(self, write_csv):
        path = write_csv("tags.csv", "name,position_x,position_y\n\nTag 1, 1.5 , 2.5\n\n")

        assert load_tag_config(path) == {"Tag 1": Point3D(1.5, 2.5)}

    def test_bad_value_reports_line(self, write_csv):
        path = write_csv("tags.csv", "NAME,POSITION_X,POSITION_Y\nTag 1,1,2\n\nTag 2,abc,3\n")

        with pytest.raises(CSVFormatError, match="Invalid POSITION_X") as excinfo:
            load_tag_config(path)

        assert excinfo.value.line == 4
        assert excinfo.value.details == {'source': 'tags.csv', 'line': 4}
        assert isinstance(excinfo.value, InputError)

    def test_short_row(self, write_csv):
        path = write_csv("tags.csv", "NAME,POSITION_X,POSITION_Y\nTag 1,1\n")

        with pytest.raises(CSVFormatError) as excinfo:
            load_tag_config(path)

        assert excinfo.value.line == 2

    def test_wrong_header(self, write_csv):
        path = write_csv("tags.csv", "NAME,X,Y\nTag 1,1,2\n")

        with pytest.raises(CSVFormatError, match="Column 2 must be POSITION_X"):
            load_tag_config(path)

    @pytest.mark.parametrize("text,message", [
        ("", "empty"),
        ("\n\n", "empty"),
        ("NAME,POSITION_X,POSITION_Y\n", "no data rows"),
    ])
    def test_empty_files(self, write_csv, text, message):
        with pytest.raises(CSVFormatError, match=message):
            load_tag_config(write_csv("tags.csv", text))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_tag_config(str(tmp_path / "missing.csv"))

    def test_non_utf8_file(self, tmp_path):
        path = tmp_path / "tags.csv"
        path.write_bytes(b"NAME,POSITION_X,POSITION_Y\nTag \xff,1,2\n")

        with pytest.raises(CSVFormatError, match="not valid UTF-8") as excinfo:
            load_tag_config(str(path))

        assert excinfo.value.details == {'source': 'tags.csv'}


class TestAntennaConfig:
    """Tests for INITIAL_ANTENNA_CONFIG.csv."""

    def test_angle_column(self, write_csv):
        path = write_csv(ANTENNA_CONFIG_FILENAME, "NAME,POSITION_X,POSITION_Y,ANGLE\nAntenna 1,14.5,8.0,90\n")

        config = load_initial_antenna_config(path)["Antenna 1"]

        assert config.position == Point3D(14.5, 8.0)
        assert config.rotation_deg == 90.0

    def test_rotation_column_anywhere(self, write_csv):
        path = write_csv("antennas.csv", "NAME,POSITION_X,POSITION_Y,HEIGHT,rotation\nA,1,2,3.5,-45\n")

        assert load_initial_antenna_config(path)["A"].rotation_deg == -45.0

    def test_missing_angle_column(self, write_csv):
        path = write_csv("antennas.csv", "NAME,POSITION_X,POSITION_Y\nA,1,2\n")

        with pytest.raises(CSVFormatError, match="Missing ANGLE or ROTATION") as excinfo:
            load_initial_antenna_config(path)

        assert excinfo.value.line == 1

    def test_bad_angle(self, write_csv):
        path = write_csv("antennas.csv", "NAME,POSITION_X,POSITION_Y,ANGLE\nA,1,2,north\n")

        with pytest.raises(CSVFormatError, match="Invalid ANGLE"):
            load_initial_antenna_config(path)


class TestConfigDirectory:
    """load_calibration_configs() falls back per missing file."""

    def test_defaults_when_missing(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING):
            tags, antennas = load_calibration_configs(str(tmp_path))

        assert tags == DEFAULT_TAG_POSITIONS
        assert antennas["Antenna 1"].rotation_deg == 90.0
        assert TAG_CONFIG_FILENAME in caplog.text
        assert ANTENNA_CONFIG_FILENAME in caplog.text

    def test_file_overrides_default(self, write_csv, tmp_path):
        write_csv(TAG_CONFIG_FILENAME, "NAME,POSITION_X,POSITION_Y\nT,1,1\n")

        tags, antennas = load_calibration_configs(str(tmp_path))

        assert tags == {"T": Point3D(1, 1)}
        assert list(antennas) == ["Antenna 1"]

    def test_malformed_file_still_raises(self, write_csv, tmp_path):
        write_csv(TAG_CONFIG_FILENAME, "NAME,POSITION_X,POSITION_Y\nT,x,1\n")

        with pytest.raises(CSVFormatError):
            load_calibration_configs(str(tmp_path))


# =============================================================================
# Observations
# =============================================================================


class TestObservations:
    """Tests for observation recordings."""

    def test_minimal_columns_use_clean_defaults(self, write_csv):
        path = write_csv("obs.csv", "ANTENNA_ID,TAG_ID,POSITION_X,POSITION_Y\nantenna1,Tag 1,1.0,2.0\n")

        [(tag_id, obs)] = load_observations(path)

        assert tag_id == "Tag 1"
        assert obs.antenna_id == "antenna1"
        assert obs.position == Point3D(1.0, 2.0, 0.0)
        assert obs.quality.strength == 1.0
        assert obs.quality.is_line_of_sight
        assert obs.quality.confidence_level == 1.0
        assert obs.quality.error_estimate == 0.0

    def test_quality_columns_any_order(self, write_csv):
        path = write_csv(
            "obs.csv",
            "TIMESTAMP,TAG_ID,ANTENNA_ID,POSITION_Y,POSITION_X,LINE_OF_SIGHT,STRENGTH,RSSI,POSITION_Z\n"
            "12.5,Tag 2,antenna2,4,3,nlos,0.4,-71,1.2\n"
            "13.0,Tag 2,antenna2,4,3,,,,\n",
        )

        samples = load_observations(path)

        first = samples[0][1]
        assert first.position == Point3D(3.0, 4.0, 1.2)
        assert not first.quality.is_line_of_sight
        assert first.quality.strength == pytest.approx(0.4)
        assert first.rssi == -71.0
        assert first.timestamp == 12.5
        assert samples[1][1].quality.is_line_of_sight

    def test_missing_required_column(self, write_csv):
        path = write_csv("obs.csv", "ANTENNA_ID,POSITION_X,POSITION_Y\na,1,2\n")

        with pytest.raises(CSVFormatError, match="Missing columns: TAG_ID"):
            load_observations(path)

    @pytest.mark.parametrize("row,message", [
        (",Tag 1,1,2,", "must not be empty"),
        ("antenna1,Tag 1,,2,", "Missing POSITION_X"),
        ("antenna1,Tag 1,1,2,maybe", "Invalid LINE_OF_SIGHT"),
    ])
    def test_bad_rows(self, write_csv, row, message):
        path = write_csv("obs.csv", f"ANTENNA_ID,TAG_ID,POSITION_X,POSITION_Y,LINE_OF_SIGHT\n{row}\n")

        with pytest.raises(CSVFormatError, match=message) as excinfo:
            load_observations(path)

        assert excinfo.value.line == 2


# =============================================================================
# Writing
# =============================================================================


class TestWriteAntennaConfig:
    """Calibrated poses are written in the initial-config format."""

    def test_writes_successful_results_only(self, tmp_path):
        path = str(tmp_path / "out.csv")
        results = {
            "Antenna 1": CalibrationResult(
                antenna_id="Antenna 1", success=True, position=Point3D(14.5, 8.0), rotation_deg=89.987,
            ),
            "Antenna 2": CalibrationResult.failure("Antenna 2", "collinear"),
        }

        assert write_antenna_config(path, results) == 1

        text = (tmp_path / "out.csv").read_text(encoding="utf-8").splitlines()
        assert text == ["NAME,POSITION_X,POSITION_Y,ANGLE", "Antenna 1,14.500,8.000,89.99"]

        reloaded = load_initial_antenna_config(path)
        assert reloaded["Antenna 1"].rotation_deg == pytest.approx(89.99)
