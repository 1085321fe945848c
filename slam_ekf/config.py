#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SLAM-EKF Configuration Module
=============================

Handles YAML configuration loading and defines global constants for the
EKF estimation core and the bundled simulator.

Configuration Structure:
------------------------
The YAML config file contains:
- filter: numerical policy of the filter core
    * residual_convention: "predicted_minus_measured" (default) or
      "measured_minus_predicted"; selects the sign of the Kalman gain
    * check_inputs: validate dimensions/symmetry of caller inputs
    * symmetry_tol: relative tolerance for the symmetry check
    * check_psd / min_eigenvalue: eigenvalue lifting after corrections
    * check_finite: NaN/inf tripwire after every operation
- simulation: planar range-bearing simulator (run_slam_sim.py)
    * seed, steps, dt, velocity, yaw_rate
    * sigma_v, sigma_w: control noise (std)
    * sigma_range, sigma_bearing: measurement noise (std)
    * max_range, landmarks: [[x, y], ...]
    * use_stacked: flush per-step observations as one joint update
    * reparametrize_after: convert landmarks polar->cartesian after N steps

The loader flattens everything into UPPERCASE keys merged over
DEFAULT_CONFIG, the same dict shape every module accepts as global_config.

Author: SLAM-EKF project
"""

from typing import Any, Dict, Optional

import yaml

# ========================================
# Debug verbosity control
# ========================================
# Set to True for per-update debug output
VERBOSE_DEBUG = False

RESIDUAL_CONVENTIONS = ("predicted_minus_measured", "measured_minus_predicted")

DEFAULT_CONFIG: Dict[str, Any] = {
    # Filter core
    'RESIDUAL_CONVENTION': "predicted_minus_measured",
    'CHECK_INPUTS': True,
    'SYMMETRY_TOL': 1e-9,
    'CHECK_PSD': False,
    'MIN_EIGENVALUE': 1e-12,
    'CHECK_FINITE': True,
    # Simulator
    'SIM_SEED': 0,
    'SIM_STEPS': 200,
    'SIM_DT': 0.1,
    'SIM_VELOCITY': 1.0,
    'SIM_YAW_RATE': 0.1,
    'SIM_SIGMA_V': 0.05,
    'SIM_SIGMA_W': 0.01,
    'SIM_SIGMA_RANGE': 0.1,
    'SIM_SIGMA_BEARING': 0.01,
    'SIM_MAX_RANGE': 15.0,
    'SIM_LANDMARKS': [[5.0, 5.0], [-3.0, 8.0], [10.0, -2.0], [0.0, 12.0], [6.0, 14.0]],
    'SIM_USE_STACKED': True,
    'SIM_REPARAMETRIZE_AFTER': 5,
}


def resolve_config(global_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Merge a (possibly partial) global_config over DEFAULT_CONFIG.

    Raises:
        ValueError: if RESIDUAL_CONVENTION is unknown
    """
    result = dict(DEFAULT_CONFIG)
    if global_config:
        result.update(global_config)
    if result['RESIDUAL_CONVENTION'] not in RESIDUAL_CONVENTIONS:
        raise ValueError(f"Unknown residual convention {result['RESIDUAL_CONVENTION']!r}, "
                         f"expected one of {RESIDUAL_CONVENTIONS}")
    return result


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load YAML configuration file and convert to global config format.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Flat dictionary of UPPERCASE keys (see DEFAULT_CONFIG)

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed

    Example:
        >>> config = load_config("configs/slam_ekf_default.yaml")
        >>> config['RESIDUAL_CONVENTION']
        'predicted_minus_measured'
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    result = {}

    # ========================================
    # Filter core
    # ========================================
    flt = config.get('filter', {})
    if 'residual_convention' in flt:
        result['RESIDUAL_CONVENTION'] = str(flt['residual_convention'])
    if 'check_inputs' in flt:
        result['CHECK_INPUTS'] = bool(flt['check_inputs'])
    if 'symmetry_tol' in flt:
        result['SYMMETRY_TOL'] = float(flt['symmetry_tol'])
    if 'check_psd' in flt:
        result['CHECK_PSD'] = bool(flt['check_psd'])
    if 'min_eigenvalue' in flt:
        result['MIN_EIGENVALUE'] = float(flt['min_eigenvalue'])
    if 'check_finite' in flt:
        result['CHECK_FINITE'] = bool(flt['check_finite'])

    # ========================================
    # Simulator
    # ========================================
    sim = config.get('simulation', {})
    for key, cast in (('seed', int), ('steps', int), ('dt', float),
                      ('velocity', float), ('yaw_rate', float),
                      ('sigma_v', float), ('sigma_w', float),
                      ('sigma_range', float), ('sigma_bearing', float),
                      ('max_range', float), ('use_stacked', bool),
                      ('reparametrize_after', int)):
        if key in sim:
            result[f'SIM_{key.upper()}'] = cast(sim[key])
    if 'landmarks' in sim:
        result['SIM_LANDMARKS'] = [[float(v) for v in lm] for lm in sim['landmarks']]

    return resolve_config(result)
