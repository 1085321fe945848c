#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Planar Range-Bearing Simulation
===============================

Reference collaborators for the filter core and a small simulator that
drives a complete SLAM cycle with them:

- Motion model: unicycle robot [x, y, θ] with control u = [v, ω]
      x' = x + v dt cos θ,  y' = y + v dt sin θ,  θ' = θ + ω dt
- Observation model: range and bearing to 2D point landmarks
      h = [ |l - p| ,  atan2(l_y - y, l_x - x) - θ ]
- Landmark parameterizations:
      "cartesian": [l_x, l_y]
      "polar"    : [ρ, φ] about the world origin, l = ρ [cos φ, sin φ]
  Polar landmarks are converted to cartesian in place after a configurable
  number of steps (reparametrization).

Each step: predict, gather observations, correct (immediately or through
the stacked buffer), initialize newly seen landmarks.

Author: SLAM-EKF project
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from . import config as cfg
from .ekf import ExtendedKalmanFilterIndirect
from .indirect import IndirectArray, ia_union
from .innovation import Innovation
from .state_map import StateMap


def wrap_angle(a):
    """Wrap angle(s) to [-pi, pi)."""
    return (np.asarray(a) + np.pi) % (2.0 * np.pi) - np.pi


# =============================================================================
# Motion model
# =============================================================================

def unicycle_motion(pose: np.ndarray, u: np.ndarray, dt: float
                    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Propagate pose and return Jacobians.

    Returns:
        (pose_new, F_v, F_u)
    """
    x, y, th = pose
    v, w = u
    c, s = np.cos(th), np.sin(th)
    pose_new = np.array([x + v * dt * c, y + v * dt * s, wrap_angle(th + w * dt)])
    F_v = np.array([
        [1.0, 0.0, -v * dt * s],
        [0.0, 1.0,  v * dt * c],
        [0.0, 0.0,  1.0],
    ])
    F_u = np.array([
        [dt * c, 0.0],
        [dt * s, 0.0],
        [0.0,    dt],
    ])
    return pose_new, F_v, F_u


# =============================================================================
# Observation model
# =============================================================================

def polar_to_cartesian(lp: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """[ρ, φ] -> [x, y] and its Jacobian."""
    rho, phi = lp
    c, s = np.cos(phi), np.sin(phi)
    return np.array([rho * c, rho * s]), np.array([[c, -rho * s], [s, rho * c]])


def cartesian_to_polar(l: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """[x, y] -> [ρ, φ] and its Jacobian."""
    x, y = l
    r2 = x * x + y * y
    r = np.sqrt(r2)
    return np.array([r, np.arctan2(y, x)]), np.array([[x / r, y / r], [-y / r2, x / r2]])


def range_bearing(pose: np.ndarray, l: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Predicted range-bearing measurement and its Jacobians.

    Returns:
        (h, H_pose [2×3], H_l [2×2])
    """
    dx, dy = l[0] - pose[0], l[1] - pose[1]
    q = dx * dx + dy * dy
    r = np.sqrt(q)
    h = np.array([r, wrap_angle(np.arctan2(dy, dx) - pose[2])])
    H_pose = np.array([
        [-dx / r, -dy / r,  0.0],
        [ dy / q, -dx / q, -1.0],
    ])
    H_l = np.array([
        [ dx / r, dy / r],
        [-dy / q, dx / q],
    ])
    return h, H_pose, H_l


def back_project(pose: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Inverse observation: landmark from pose and range-bearing measurement.

    Returns:
        (l, G_pose [2×3], G_y [2×2])
    """
    r, b = y
    a = pose[2] + b
    c, s = np.cos(a), np.sin(a)
    l = np.array([pose[0] + r * c, pose[1] + r * s])
    G_pose = np.array([
        [1.0, 0.0, -r * s],
        [0.0, 1.0,  r * c],
    ])
    G_y = np.array([
        [c, -r * s],
        [s,  r * c],
    ])
    return l, G_pose, G_y


@dataclass
class LandmarkTrack:
    """Filter-side record of one mapped landmark."""
    lid: int
    ia: IndirectArray
    kind: str = "cartesian"
    born_step: int = 0


def make_innovation(kf: ExtendedKalmanFilterIndirect, ia_robot: IndirectArray,
                    track: LandmarkTrack, y: np.ndarray, R: np.ndarray,
                    convention: str = "predicted_minus_measured") -> Innovation:
    """
    Innovation collaborator: residual, its covariance and the Jacobian wrt
    robot + landmark states.
    """
    pose = kf.x[ia_robot.indices]
    lp = kf.x[track.ia.indices]
    if track.kind == "polar":
        l, J = polar_to_cartesian(lp)
    else:
        l, J = lp, np.eye(2)
    h, H_pose, H_lc = range_bearing(pose, l)
    H = np.hstack((H_pose, H_lc @ J))
    ia_rsl = ia_union(ia_robot, track.ia)

    if convention == "predicted_minus_measured":
        z = h - y
    else:
        z = y - h
    z[1] = wrap_angle(z[1])

    P_rsl = kf.P[np.ix_(ia_rsl.indices, ia_rsl.indices)]
    Z = H @ P_rsl @ H.T + R
    return Innovation(z, 0.5 * (Z + Z.T), H, ia_rsl)


@dataclass
class SimulationResult:
    robot_errors: List[float] = field(default_factory=list)
    landmark_errors: Dict[int, float] = field(default_factory=dict)
    max_symmetry_error: float = 0.0
    state_sizes: List[int] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)


class RangeBearingSimulator:
    """
    Drives ExtendedKalmanFilterIndirect with a simulated robot.

    Args:
        global_config: Flat config dict (see config.DEFAULT_CONFIG)
    """

    def __init__(self, global_config: Optional[Dict[str, Any]] = None):
        self.config = cfg.resolve_config(global_config)
        c = self.config
        self.rng = np.random.default_rng(c['SIM_SEED'])
        self.dt = c['SIM_DT']
        self.u = np.array([c['SIM_VELOCITY'], c['SIM_YAW_RATE']])
        self.U = np.diag([c['SIM_SIGMA_V'] ** 2, c['SIM_SIGMA_W'] ** 2])
        self.R = np.diag([c['SIM_SIGMA_RANGE'] ** 2, c['SIM_SIGMA_BEARING'] ** 2])
        self.landmarks_true = np.array(c['SIM_LANDMARKS'], dtype=float).reshape(-1, 2)
        self.pose_true = np.zeros(3)

        self.kf = ExtendedKalmanFilterIndirect(0, global_config=c)
        self.smap = StateMap(self.kf)
        self.ia_robot = self.smap.reserve(3)
        self.kf.P[np.ix_(self.ia_robot.indices, self.ia_robot.indices)] = np.eye(3) * 1e-6

        self.tracks: Dict[int, LandmarkTrack] = {}
        self.step_idx = 0
        self.result = SimulationResult()

    # ------------------------------------------------------------------
    def _observe(self) -> List[Tuple[int, np.ndarray]]:
        obs = []
        for lid, l in enumerate(self.landmarks_true):
            h, _, _ = range_bearing(self.pose_true, l)
            if h[0] > self.config['SIM_MAX_RANGE']:
                continue
            noise = self.rng.normal(0.0, [self.config['SIM_SIGMA_RANGE'],
                                          self.config['SIM_SIGMA_BEARING']])
            y = h + noise
            y[1] = wrap_angle(y[1])
            obs.append((lid, y))
        return obs

    def _initialize_landmark(self, lid: int, y: np.ndarray):
        pose = self.kf.x[self.ia_robot.indices]
        l, G_pose, G_y = back_project(pose, y)
        kind = "polar" if self.config['SIM_REPARAMETRIZE_AFTER'] > 0 else "cartesian"
        if kind == "polar":
            l, J = cartesian_to_polar(l)
            G_pose, G_y = J @ G_pose, J @ G_y

        ia_l = self.smap.reserve(2)
        self.kf.initialize(self.smap.iax_without(ia_l), G_pose, self.ia_robot, ia_l,
                           G_y, self.R, x_l=l)
        self.tracks[lid] = LandmarkTrack(lid, ia_l, kind, self.step_idx)
        if cfg.VERBOSE_DEBUG:
            print(f"[SIM] step {self.step_idx}: landmark {lid} initialized ({kind}) at {ia_l}")

    def _reparametrize_due(self):
        after = self.config['SIM_REPARAMETRIZE_AFTER']
        for track in self.tracks.values():
            if track.kind == "polar" and self.step_idx - track.born_step >= after:
                l, J = polar_to_cartesian(self.kf.x[track.ia.indices])
                self.kf.reparametrize(self.smap.iax(), J, track.ia, track.ia, x_new=l)
                track.kind = "cartesian"
                if cfg.VERBOSE_DEBUG:
                    print(f"[SIM] step {self.step_idx}: landmark {track.lid} -> cartesian")

    def step(self):
        """One predict / correct / initialize cycle."""
        kf, c = self.kf, self.config

        u_true = self.u + self.rng.normal(0.0, [c['SIM_SIGMA_V'], c['SIM_SIGMA_W']])
        self.pose_true, _, _ = unicycle_motion(self.pose_true, u_true, self.dt)

        pose_pred, F_v, F_u = unicycle_motion(kf.x[self.ia_robot.indices], self.u, self.dt)
        kf.predict(self.smap.iax(), F_v, self.ia_robot, F_u=F_u, U=self.U, x_v=pose_pred)

        new = []
        for lid, y in self._observe():
            track = self.tracks.get(lid)
            if track is None:
                new.append((lid, y))
                continue
            inn = make_innovation(kf, self.ia_robot, track, y, self.R, c['RESIDUAL_CONVENTION'])
            if c['SIM_USE_STACKED']:
                kf.stack_correction(inn)
            else:
                kf.correct(self.smap.iax(), inn)
        if kf.stack:
            kf.correct_all_stacked(self.smap.iax())
        kf.x[self.ia_robot.indices[2]] = wrap_angle(kf.x[self.ia_robot.indices[2]])

        for lid, y in new:
            self._initialize_landmark(lid, y)
        self._reparametrize_due()

        self.step_idx += 1
        self._record()

    def _record(self):
        pose = self.kf.x[self.ia_robot.indices]
        self.result.robot_errors.append(float(np.linalg.norm(pose[:2] - self.pose_true[:2])))
        self.result.max_symmetry_error = max(self.result.max_symmetry_error,
                                             self.kf.symmetry_error())
        self.result.state_sizes.append(self.kf.size)

    def landmark_estimate(self, lid: int) -> np.ndarray:
        track = self.tracks[lid]
        lp = self.kf.x[track.ia.indices]
        return polar_to_cartesian(lp)[0] if track.kind == "polar" else lp.copy()

    def run(self, steps: Optional[int] = None) -> SimulationResult:
        steps = self.config['SIM_STEPS'] if steps is None else steps
        for _ in range(steps):
            self.step()
        for lid in self.tracks:
            err = np.linalg.norm(self.landmark_estimate(lid) - self.landmarks_true[lid])
            self.result.landmark_errors[lid] = float(err)
        self.result.stats = self.kf.get_stats()
        return self.result
