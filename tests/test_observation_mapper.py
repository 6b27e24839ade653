"""
Unit tests for observation-reference mapping and data quality.

Tests cover:
- Quality gate (strength, line of sight, finiteness)
- Nearest-reference matching and the match distance limit
- One mapping per (antenna, reference) with centroid / error / quality
- Only completed sessions contribute
- DataQualityMonitor evaluation and NLOS detection
"""

import pytest

from acal_core.calibration.data_quality import DataQualityConfig, DataQualityMonitor
from acal_core.calibration.observation_mapper import (
    MappingConfig,
    ObservationMapper,
    mapping_quality,
)
from acal_core.metrics import get_metrics
from acal_core.proto import ObservationSession, Point3D, ReferencePoint


def completed_session(antenna_id, observations):
    session = ObservationSession(antenna_id=antenna_id)
    for obs in observations:
        session.append(obs)
    session.complete()
    return session


@pytest.fixture
def references(reference_triangle):
    return [ReferencePoint(position=p, name=f"R{i + 1}") for i, p in enumerate(reference_triangle)]


# =============================================================================
# Quality formula
# =============================================================================


class TestMappingQuality:
    """Tests for the mapping quality score."""

    def test_perfect_match(self):
        assert mapping_quality(0.0, 1.0) == pytest.approx(1.0)

    def test_halves_at_scale(self):
        assert mapping_quality(0.5, 1.0, scale_m=0.5) == pytest.approx(0.5)

    def test_monotonic(self):
        assert mapping_quality(0.1, 0.9) > mapping_quality(0.4, 0.9)
        assert mapping_quality(0.1, 0.9) > mapping_quality(0.1, 0.5)

    def test_bounded(self):
        assert 0.0 <= mapping_quality(100.0, 2.0) <= 1.0
        assert mapping_quality(-1.0, 1.0) == pytest.approx(1.0)


# =============================================================================
# Mapper
# =============================================================================


class TestObservationMapper:
    """Tests for session-to-reference mapping."""

    def test_one_mapping_per_reference(self, references, noisy_cluster):
        samples = []
        for ref in references:
            samples.extend(noisy_cluster("antenna1", ref.position, count=5, spread=0.1))
        session = completed_session("antenna1", samples)

        outcome = ObservationMapper().map_sessions([session], references)

        assert len(outcome.mappings) == 3
        assert outcome.accepted_count == 15
        assert outcome.antenna_ids == ["antenna1"]
        for mapping in outcome.mappings:
            assert mapping.observation_count == 5
            assert mapping.position_error < 0.15
            assert 0.0 < mapping.mapping_quality <= 1.0
            assert mapping.centroid.distance_to(mapping.reference.position) == pytest.approx(
                mapping.position_error
            )

    def test_quality_gate_rejects(self, references, make_observation):
        ref = references[0].position
        session = completed_session("antenna1", [
            make_observation("antenna1", ref),
            make_observation("antenna1", ref, strength=0.3),
            make_observation("antenna1", ref, line_of_sight=False),
            make_observation("antenna1", Point3D(float('nan'), 0.0)),
        ])

        outcome = ObservationMapper().map_sessions([session], references)

        assert outcome.accepted_count == 1
        assert outcome.rejected_count == 3
        assert len(outcome.mappings) == 1
        metrics = get_metrics()
        assert metrics.get_drop_count('low_signal_strength') == 1
        assert metrics.get_drop_count('nlos_filtered') == 1
        assert metrics.get_drop_count('non_finite_position') == 1

    def test_nlos_accepted_when_not_required(self, references, make_observation):
        mapper = ObservationMapper(MappingConfig(require_line_of_sight=False))
        obs = make_observation("antenna1", references[0].position, line_of_sight=False)

        assert mapper.is_acceptable(obs)

    def test_unmatched_beyond_distance(self, references, make_observation):
        session = completed_session("antenna1", [make_observation("antenna1", Point3D(50, 50))])

        outcome = ObservationMapper().map_sessions([session], references)

        assert outcome.mappings == []
        assert outcome.unmatched_count == 1
        assert get_metrics().get_drop_count('unmatched_observation') == 1

    def test_nearest_reference_wins(self, references, make_observation):
        mapper = ObservationMapper()
        obs = make_observation("antenna1", Point3D(1.9, 1.05))

        index, distance = mapper.nearest_reference(obs, references)

        assert index == 1
        assert distance == pytest.approx(Point3D(1.9, 1.05).distance_to(references[1].position))

    def test_skips_active_sessions(self, references, make_observation):
        active = ObservationSession(antenna_id="antenna1")
        active.append(make_observation("antenna1", references[0].position))

        outcome = ObservationMapper().map_sessions([active], references)

        assert outcome.mappings == []
        assert outcome.accepted_count == 0

    def test_inputs_not_modified(self, references, make_observation):
        obs = make_observation("antenna1", references[0].position)
        session = completed_session("antenna1", [obs])

        ObservationMapper().map_sessions([session], references)

        assert session.observations == [obs]
        assert not any(ref.is_collected for ref in references)

    def test_per_antenna_grouping(self, references, make_observation):
        s1 = completed_session("antenna1", [make_observation("antenna1", references[0].position)])
        s2 = completed_session("antenna2", [make_observation("antenna2", references[0].position)])

        outcome = ObservationMapper().map_sessions([s1, s2], references)

        assert sorted(m.antenna_id for m in outcome.mappings) == ["antenna1", "antenna2"]
        assert outcome.antenna_ids == ["antenna1", "antenna2"]
        assert get_metrics().get_counter('mappings_created') == 2

    def test_config_validation(self):
        with pytest.raises(ValueError):
            MappingConfig(min_signal_strength=1.5)
        with pytest.raises(ValueError):
            MappingConfig(max_match_distance_m=0)


# =============================================================================
# Data quality
# =============================================================================


class TestDataQualityMonitor:
    """Tests for per-sample evaluation and NLOS detection."""

    def test_good_sample(self, make_observation):
        evaluation = DataQualityMonitor().evaluate(make_observation("antenna1", Point3D(0, 0)))

        assert evaluation.is_acceptable
        assert evaluation.issues == []
        assert evaluation.quality_score == pytest.approx(0.9)

    def test_unacceptable_issues(self, make_observation):
        obs = make_observation("antenna1", Point3D(0, 0), strength=0.3, confidence=0.4)

        evaluation = DataQualityMonitor().evaluate(obs)

        assert not evaluation.is_acceptable
        assert evaluation.issues == ['low_signal_strength', 'low_confidence']
        assert evaluation.recommendations
        assert get_metrics().get_counter('quality_rejections') == 1

    def test_advisories_keep_sample_acceptable(self, make_observation):
        obs = make_observation("antenna1", Point3D(0, 0), rssi=-90.0, error_estimate=4.0)

        evaluation = DataQualityMonitor().evaluate(obs)

        assert evaluation.is_acceptable
        assert evaluation.issues == ['low_rssi', 'high_error_estimate']

    def test_detect_nlos(self, make_observation):
        monitor = DataQualityMonitor()
        mostly_nlos = [make_observation("antenna1", Point3D(0, 0), line_of_sight=(i == 0)) for i in range(4)]
        mostly_los = [make_observation("antenna1", Point3D(0, 0), line_of_sight=(i != 0)) for i in range(4)]

        nlos = monitor.detect_nlos(mostly_nlos)
        los = monitor.detect_nlos(mostly_los)

        assert nlos.is_nlos_detected
        assert nlos.line_of_sight_percentage == pytest.approx(25.0)
        assert not los.is_nlos_detected
        assert los.average_signal_strength == pytest.approx(0.9)

    def test_empty_batch_flagged(self):
        assert DataQualityMonitor().detect_nlos([]).is_nlos_detected

    def test_acceptable_fraction(self, make_observation):
        monitor = DataQualityMonitor(DataQualityConfig(min_strength=0.5))
        batch = [
            make_observation("antenna1", Point3D(0, 0)),
            make_observation("antenna1", Point3D(0, 0), strength=0.2),
        ]

        assert monitor.acceptable_fraction(batch) == pytest.approx(0.5)
        assert monitor.acceptable_fraction([]) == 0.0
