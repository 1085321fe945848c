"""
SLAM-EKF Package

Estimation core of an EKF-based SLAM system: one growing state vector and
its full covariance, operated on through indirect arrays so that every
prediction, correction, initialization and reparametrization touches only
the sub-blocks that take part.

Version: 1.2.0

Changes in v1.2.0:
- NEW: remove_states() compaction and StateMap slot reuse
- NEW: cross-covariances between stacked corrections
- IMPROVED: residual convention selectable from YAML (filter.residual_convention)

Changes in v1.1.0:
- NEW: stacked corrections (stack_correction / correct_all_stacked)
- NEW: planar range-bearing simulator and run_slam_sim.py

Submodules:
- config: Configuration loading and global constants
- errors: Exception types
- indirect: Indirect arrays (ordered index sets) and block selection
- innovation: Innovation container (z, Z, INN_rsl, ia_rsl)
- stacked: Stacked correction buffer
- ekf: ExtendedKalmanFilterIndirect (state store + engines)
- state_map: Used/free state slot bookkeeping
- numerical_checks: Finite/symmetry/PSD checks
- simulation: Planar range-bearing robot and landmark simulator

Author: SLAM-EKF project

Usage:
    from slam_ekf.ekf import ExtendedKalmanFilterIndirect
    from slam_ekf.indirect import ia_range
    from slam_ekf.innovation import Innovation
    from slam_ekf.state_map import StateMap
    from slam_ekf.config import load_config
"""

__version__ = "1.2.0"

# Lazy module imports - access as slam_ekf.ekf, slam_ekf.config, etc.
import importlib

# Available submodules
_SUBMODULES = {
    "config", "errors", "indirect", "innovation", "stacked",
    "ekf", "state_map", "numerical_checks", "simulation",
}


def __getattr__(name):
    """Lazy module loading to avoid importing all dependencies at once."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module 'slam_ekf' has no attribute '{name}'")


def __dir__():
    """List available submodules."""
    return list(_SUBMODULES)


__all__ = list(_SUBMODULES)
