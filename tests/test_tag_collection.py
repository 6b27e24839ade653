"""
Unit tests for asynchronous tag-by-tag collection.

Tests cover:
- Full collection hands every tag's samples to the calibration
- cancel() discards only the in-flight tag
- Task cancellation propagates and keeps completed tags
- Collection timing configuration
"""

import asyncio

import pytest

from acal_core.calibration.auto_calibration import AutoAntennaCalibration, AutoCalibrationConfig
from acal_core.calibration.sensor_processing import SensorDataProcessingConfig
from acal_core.calibration.tag_collection import CollectionConfig, TagPositionCollector
from acal_core.io.ranging_source import ReplayRangingSource
from acal_core.proto import Point3D


FAST = CollectionConfig(collection_window_s=0.05, settle_s=0.0, poll_interval_s=0.01)


@pytest.fixture
def calibration(tag_layout):
    auto = AutoAntennaCalibration(
        AutoCalibrationConfig(
            processing=SensorDataProcessingConfig(first_trim=0, end_trim=0, moving_average_window_size=1)
        )
    )
    auto.set_true_tag_positions(tag_layout)
    return auto


@pytest.fixture
def scripted(tag_layout, noisy_cluster):
    """prepare() hook that loads each tag's samples into the source (antenna frame == floor frame)."""

    def _scripted(source, antenna_ids, count=6, on_tag=None):
        async def prepare(tag_id):
            for antenna_id in antenna_ids:
                source.set_script(antenna_id, noisy_cluster(antenna_id, tag_layout[tag_id], count=count, spread=0.02))
            if on_tag is not None:
                await on_tag(tag_id)

        return prepare

    return _scripted


class TestTagCollection:
    """Tests for the collection sequence."""

    def test_collects_every_tag(self, calibration, tag_layout, scripted):
        source = ReplayRangingSource()
        collector = TagPositionCollector(calibration, source, FAST)
        prepare = scripted(source, ["antenna1", "antenna2"])

        report = asyncio.run(collector.collect(list(tag_layout), ["antenna1", "antenna2"], prepare))

        assert report.completed_tags == ["Tag 1", "Tag 2", "Tag 3"]
        assert not report.cancelled
        assert report.discarded_tag is None
        assert report.samples_per_tag["Tag 2"] == {"antenna1": 6, "antenna2": 6}
        assert calibration.data_statistics()["antenna2"] == {"Tag 1": 6, "Tag 2": 6, "Tag 3": 6}

        result = calibration.execute(["antenna1"])["antenna1"]
        assert result.success
        assert result.rotation_deg == pytest.approx(0.0, abs=2.0)

    def test_batched_source_drained_over_window(self, calibration, tag_layout, scripted):
        source = ReplayRangingSource(batch_size=2)
        config = CollectionConfig(collection_window_s=0.2, settle_s=0.0, poll_interval_s=0.01)
        collector = TagPositionCollector(calibration, source, config)

        report = asyncio.run(collector.collect(["Tag 1"], ["antenna1"], scripted(source, ["antenna1"], count=7)))

        assert report.samples_per_tag["Tag 1"]["antenna1"] == 7

    def test_cancel_discards_in_flight_tag(self, calibration, tag_layout, scripted):
        source = ReplayRangingSource()
        collector = TagPositionCollector(calibration, source, FAST)

        async def on_tag(tag_id):
            if tag_id == "Tag 2":
                collector.cancel()

        report = asyncio.run(collector.collect(list(tag_layout), ["antenna1"], scripted(source, ["antenna1"], on_tag=on_tag)))

        assert report.cancelled
        assert report.completed_tags == ["Tag 1"]
        assert report.discarded_tag == "Tag 2"
        assert calibration.data_statistics() == {"antenna1": {"Tag 1": 6}}
        assert collector.current_tag is None

    def test_task_cancellation_keeps_completed_tags(self, calibration, tag_layout, scripted):
        source = ReplayRangingSource()
        collector = TagPositionCollector(calibration, source, FAST)

        async def scenario():
            reached = asyncio.Event()

            async def on_tag(tag_id):
                if tag_id == "Tag 2":
                    # Long window so the task is cancelled mid-collection
                    collector.config = CollectionConfig(collection_window_s=5.0, settle_s=0.0, poll_interval_s=0.01)
                    reached.set()

            task = asyncio.ensure_future(
                collector.collect(list(tag_layout), ["antenna1"], scripted(source, ["antenna1"], on_tag=on_tag))
            )
            await reached.wait()
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert calibration.data_statistics() == {"antenna1": {"Tag 1": 6}}

    def test_rerun_resets_cancel_flag(self, calibration, scripted):
        source = ReplayRangingSource()
        collector = TagPositionCollector(calibration, source, FAST)
        collector.cancel()

        report = asyncio.run(collector.collect(["Tag 3"], ["antenna1"], scripted(source, ["antenna1"])))

        assert not report.cancelled
        assert not collector.cancel_requested
        assert report.completed_tags == ["Tag 3"]

    def test_config_validation(self):
        with pytest.raises(ValueError):
            CollectionConfig(collection_window_s=0)
        with pytest.raises(ValueError):
            CollectionConfig(settle_s=-1)
        with pytest.raises(ValueError):
            CollectionConfig(poll_interval_s=0)
