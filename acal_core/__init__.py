"""
Antenna Calibration (ACAL) Core Package.

Determines where each UWB antenna sits on a floor map, and how it is
rotated, from tag measurements taken at known reference positions.

Package structure:
- proto: Calibration data model (points, observations, transforms, results)
- calibration: Signal conditioning, mapping, affine/pose fitting, workflows
- io: Ranging data sources, calibration repository, CSV config files
- metrics: Diagnostics, counters, histograms
- errors: Exception hierarchy

Typical entry points:
- calibration.CalibrationWorkflow: interactive reference/observation workflow
- calibration.AutoAntennaCalibration: multi-antenna pose loop over known tags
"""

__version__ = "0.1.0"
__author__ = "HKSI UWB Team"
