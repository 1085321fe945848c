#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SLAM-EKF Simulation Entry Point (run_slam_sim.py)

Runs the planar range-bearing simulator on top of the slam_ekf filter core
and prints the final robot/landmark errors.

Configuration Model:
--------------------
    YAML config is the single source of truth for filter and simulator
    settings. CLI provides only the config path and runtime flags.

Usage:
    python run_slam_sim.py --config configs/slam_ekf_default.yaml

    # Shorter run with per-update output:
    python run_slam_sim.py --config configs/slam_ekf_default.yaml --steps 50 --verbose

Author: SLAM-EKF project
"""

import argparse
import os
import sys

import numpy as np

# Add workspace to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="SLAM-EKF range-bearing simulation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_slam_sim.py --config configs/slam_ekf_default.yaml
  python run_slam_sim.py --config configs/slam_ekf_default.yaml --steps 50 --verbose
        """
    )
    parser.add_argument("--config", type=str,
                        default="configs/slam_ekf_default.yaml",
                        help="Path to YAML config file (single source of truth)")
    parser.add_argument("--steps", type=int, default=None,
                        help="Number of filter cycles (default: from YAML)")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable per-update debug output")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point - load YAML config and run the simulation."""
    args = parse_args(argv)

    print("=" * 70)
    print("SLAM-EKF Range-Bearing Simulation")
    print("=" * 70)

    from slam_ekf import __version__
    from slam_ekf import config as cfg
    from slam_ekf.simulation import RangeBearingSimulator

    print(f"Using slam_ekf package version: {__version__}")
    print(f"\nLoading config: {args.config}")
    config = cfg.load_config(args.config)
    if args.verbose:
        cfg.VERBOSE_DEBUG = True

    steps = config['SIM_STEPS'] if args.steps is None else args.steps
    print(f"  residual_convention: {config['RESIDUAL_CONVENTION']}")
    print(f"  use_stacked: {config['SIM_USE_STACKED']}")
    print(f"  reparametrize_after: {config['SIM_REPARAMETRIZE_AFTER']}")
    print(f"  landmarks: {len(config['SIM_LANDMARKS'])}, steps: {steps}")
    print("=" * 70)

    sim = RangeBearingSimulator(config)
    result = sim.run(steps)

    print("\n" + "=" * 70)
    print("Results:")
    print("=" * 70)
    print(f"  Final state size: {sim.kf.size}")
    if result.robot_errors:
        print(f"  Robot position error: final {result.robot_errors[-1]:.3f} m, "
              f"mean {np.mean(result.robot_errors):.3f} m")
    else:
        print("  No filter cycles run")
    for lid, err in sorted(result.landmark_errors.items()):
        print(f"  Landmark {lid}: error {err:.3f} m")
    print(f"  Max |P - P'|: {result.max_symmetry_error:.2e}")
    print(f"  Stats: {result.stats}")
    print("=" * 70)
    return result


if __name__ == "__main__":
    main()
