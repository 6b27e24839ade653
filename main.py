"""
Antenna calibration command line.

Runs a calibration over recorded observations:

- auto:     per-tag sample means fitted against TAG_CONFIG.csv positions
            (AutoAntennaCalibration)
- workflow: tag positions used as workflow references, each antenna's
            samples recorded as one session (CalibrationWorkflow)

Usage:
    python main.py --observations samples.csv --config-dir ./cfg
    python main.py --observations samples.csv --mode workflow --json
"""

import sys
import json
import logging
import argparse
from collections import OrderedDict
from typing import Dict, List, Tuple

import config
from acal_core.calibration import (
    AutoAntennaCalibration,
    AutoCalibrationConfig,
    CalibrationWorkflow,
    DataQualityMonitor,
    MappingConfig,
    ObservationMapper,
    SensorDataProcessingConfig,
    WorkflowConfig,
)
from acal_core.calibration.auto_calibration import commit_results
from acal_core.calibration.workflow import create_workflow_processor
from acal_core.errors import CalibrationError
from acal_core.io import (
    InMemoryCalibrationRepository,
    load_calibration_configs,
    load_observations,
    load_tag_config,
    write_antenna_config,
)
from acal_core.metrics import get_metrics
from acal_core.proto import CalibrationResult, ObservationPoint, Point3D

# Logging setup
logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


def group_by_antenna(samples: List[Tuple[str, ObservationPoint]]) -> "OrderedDict[str, List[Tuple[str, ObservationPoint]]]":
    """Group (tag_id, observation) rows by antenna, keeping first-seen order."""
    grouped: "OrderedDict[str, List[Tuple[str, ObservationPoint]]]" = OrderedDict()
    for tag_id, obs in samples:
        grouped.setdefault(obs.antenna_id, []).append((tag_id, obs))
    return grouped


def report_quality(samples: List[Tuple[str, ObservationPoint]]):
    """Log per-antenna sample quality before calibrating."""
    monitor = DataQualityMonitor()
    for antenna_id, rows in group_by_antenna(samples).items():
        observations = [obs for _, obs in rows]
        nlos = monitor.detect_nlos(observations)
        logger.info(
            "Antenna %s: %d samples, %.0f%% acceptable, %.0f%% line of sight",
            antenna_id, len(observations), monitor.acceptable_fraction(observations) * 100.0,
            nlos.line_of_sight_percentage,
        )
        if nlos.is_nlos_detected:
            logger.warning("Antenna %s: %s", antenna_id, nlos.recommendation)


def run_auto(
    tags: Dict[str, Point3D],
    samples: List[Tuple[str, ObservationPoint]],
) -> Dict[str, CalibrationResult]:
    """Auto-antenna calibration over the recorded samples."""
    auto_config = AutoCalibrationConfig(
        processing=SensorDataProcessingConfig(**config.PROCESSING_CONFIG),
        **config.AUTO_CALIBRATION_CONFIG,
    )
    auto = AutoAntennaCalibration(auto_config)
    auto.set_true_tag_positions(tags)

    for tag_id, obs in samples:
        auto.add_measured_data(obs.antenna_id, tag_id, obs)

    antenna_ids = list(group_by_antenna(samples))
    return auto.execute(antenna_ids)


def run_workflow(
    tags: Dict[str, Point3D],
    samples: List[Tuple[str, ObservationPoint]],
) -> Dict[str, CalibrationResult]:
    """Reference/observation workflow over the recorded samples."""
    workflow = CalibrationWorkflow(
        config=WorkflowConfig(**config.WORKFLOW_CONFIG),
        mapper=ObservationMapper(MappingConfig(**config.MAPPING_CONFIG), create_workflow_processor()),
    )
    for name in sorted(tags):
        workflow.add_reference_point(tags[name], name=name, tag_id=name)

    for antenna_id, rows in group_by_antenna(samples).items():
        workflow.start_observation_data(antenna_id)
        workflow.record_observations(obs for _, obs in rows)
        workflow.stop_observation_data(antenna_id)

    report = workflow.validate_current_state()
    for issue in report.issues:
        logger.warning("Validation: %s", issue)
    for recommendation in report.recommendations:
        logger.info("Recommendation: %s", recommendation)

    workflow.map_observations_to_references()
    result = workflow.execute_calibration()
    if not result.success:
        logger.error("Workflow failed: %s", result.error_message)
    return result.results


def print_results(results: Dict[str, CalibrationResult]):
    """Print a result table."""
    print("\n" + "=" * 72)
    print(f"{'Antenna':<16}{'Status':<10}{'X (m)':>10}{'Y (m)':>10}{'Rot (deg)':>12}{'RMSE (m)':>12}")
    print("-" * 72)
    for antenna_id, result in results.items():
        if result.success and result.position is not None:
            print(
                f"{antenna_id:<16}{'OK':<10}{result.position.x:>10.3f}{result.position.y:>10.3f}"
                f"{result.rotation_deg:>12.2f}{result.rmse:>12.4f}"
            )
        else:
            print(f"{antenna_id:<16}{'FAILED':<10}  {result.error_message}")
    print("=" * 72)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='UWB antenna calibration')
    parser.add_argument('--observations', '-o', type=str, required=True,
                        help='Observation CSV (ANTENNA_ID,TAG_ID,POSITION_X,POSITION_Y,...)')
    parser.add_argument('--tags', '-t', type=str, default=None,
                        help='TAG_CONFIG.csv (overrides --config-dir)')
    parser.add_argument('--config-dir', '-c', type=str, default=config.FILES_CONFIG["config_dir"],
                        help='Directory holding TAG_CONFIG.csv / INITIAL_ANTENNA_CONFIG.csv')
    parser.add_argument('--mode', '-m', choices=['auto', 'workflow'], default='auto',
                        help='Calibration mode')
    parser.add_argument('--floor-map', type=str, default=config.FILES_CONFIG["floor_map_id"],
                        help='Floor map id results are committed to')
    parser.add_argument('--output', type=str, default=None,
                        help='Write results as INITIAL_ANTENNA_CONFIG.csv')
    parser.add_argument('--json', action='store_true',
                        help='Print results as JSON')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.tags:
            tags = load_tag_config(args.tags)
        else:
            tags, initial = load_calibration_configs(args.config_dir)
            for name, antenna in initial.items():
                logger.info(
                    "Initial %s: (%.3f, %.3f) rotation=%.1fdeg",
                    name, antenna.position.x, antenna.position.y, antenna.rotation_deg,
                )
        samples = load_observations(args.observations)
    except (OSError, CalibrationError) as e:
        logger.error("Failed to load input: %s", e)
        return 2

    report_quality(samples)

    try:
        if args.mode == 'auto':
            results = run_auto(tags, samples)
        else:
            results = run_workflow(tags, samples)
    except CalibrationError as e:
        logger.error("Calibration aborted: %s", e)
        return 1

    repository = InMemoryCalibrationRepository()
    for record in commit_results(results, args.floor_map, repository):
        logger.debug("Committed %s: %s", record.antenna_id, record.position)

    if args.output:
        rows = write_antenna_config(args.output, results)
        logger.info("Wrote %d antenna pose(s) to %s", rows, args.output)

    if args.json:
        print(json.dumps({k: v.to_dict() for k, v in results.items()}, indent=2))
    else:
        print_results(results)

    get_metrics().log_summary()
    return 0 if results and all(r.success for r in results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
