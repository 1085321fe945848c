#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Extended Kalman Filter Module

Indirect-indexed EKF for SLAM: a single growing state vector holding robot,
sensor and landmark parameters, with the full joint covariance.

Every operation receives indirect arrays naming the states that take part,
so its cost follows the size of the touched sub-block and not the size of
the map:

    predict        : [Pvv, Pvm; Pmv, Pmm] <- [F_v Pvv F_v' + Q_v, F_v Pvm; Pmv F_v', Pmm]
    correct        : K = -P(iax, ia_rsl) INN_rsl' Z^-1
                     x(iax) += K z
                     P(iax, iax) -= P(iax, ia_rsl) INN_rsl' Z^-1 INN_rsl P(ia_rsl, iax)
    initialize     : appends a landmark block and its cross-covariances
    reparametrize  : linear change of a landmark's representation

Residual convention (config RESIDUAL_CONVENTION):
    "predicted_minus_measured" (default): z = h(x) - y, K carries a minus sign
    "measured_minus_predicted"          : z = y - h(x), K carries a plus sign
In both cases INN_rsl is the Jacobian of the predicted measurement; the
covariance reduction does not depend on the convention.

State layout is owned by the caller; typical usage per filter cycle:

    kf.predict(iax, F_v, iav, F_u=F_u, U=U)
    for obs in observations:
        kf.stack_correction(inn, INN_rsl, ia_rsl)     # or kf.correct(...)
    kf.correct_all_stacked(iax)
    kf.initialize(iax, G_rs, ia_rs, ia_l, G_y, R, x_l=l)

Growth reallocates x and P: arrays obtained from kf.x / kf.P before an
initialize/grow/remove_states call are stale afterwards.
"""

from typing import Any, Dict, Optional, Tuple

import numpy as np
from filterpy.common import pretty_str

from . import config as cfg
from .errors import DimensionError, SingularInnovationError, StateGrowthError
from .indirect import IndexLike, IndirectArray, as_indirect, ia_complement, ia_range, ix
from .innovation import Innovation
from .numerical_checks import (
    assert_finite,
    check_shape,
    check_symmetric,
    ensure_covariance_valid,
    symmetrize_block,
)
from .stacked import StackedCorrectionBuffer


class ScratchBuffer:
    """
    Reusable working storage, viewed as a contiguous matrix of the shape the
    current operation needs. Grows on demand, never shrinks, and never holds
    data that matters after the call that filled it.
    """

    def __init__(self, name: str):
        self.name = name
        self._data = np.empty(0, dtype=float)

    @property
    def capacity(self) -> int:
        return self._data.size

    def view(self, rows: int, cols: int) -> np.ndarray:
        need = rows * cols
        if self._data.size < need:
            self._data = np.empty(max(need, 2 * self._data.size), dtype=float)
        return self._data[:need].reshape(rows, cols)


class ExtendedKalmanFilterIndirect:
    """
    EKF over a dense state (x, P) accessed through indirect arrays.

    State Store:
        kf.size        : state dimension n
        kf.x[i]        : scalar access, kf.x the full vector
        kf.P[i, j]     : scalar access, kf.P the full matrix

    Scratch buffers K and PHt_tmp are owned by the filter and reused by
    every correction.
    """

    def __init__(self, size: int, global_config: Optional[Dict[str, Any]] = None):
        """
        Initialize filter with zero mean and zero covariance.

        Args:
            size: Initial state dimension
            global_config: Optional config dict (see config.DEFAULT_CONFIG)
        """
        if size < 0:
            raise DimensionError(f"State size must be non-negative, got {size}")
        self.config = cfg.resolve_config(global_config)
        self._gain_sign = -1.0 if self.config['RESIDUAL_CONVENTION'] == "predicted_minus_measured" else 1.0

        try:
            self._x = np.zeros(size, dtype=float)
            self._P = np.zeros((size, size), dtype=float)
        except MemoryError as e:
            raise StateGrowthError(f"Unable to allocate state of size {size}") from e

        self.K = ScratchBuffer("K")
        self.PHt_tmp = ScratchBuffer("PHt_tmp")
        self.stack = StackedCorrectionBuffer()

        self.last_innovation: Optional[Innovation] = None
        self.last_failure: Optional[str] = None
        self._stats = {
            'predictions': 0,
            'corrections': 0,
            'rejected_singular': 0,
            'stacked_flushes': 0,
            'initializations': 0,
            'reparametrizations': 0,
            'removals': 0,
        }

    # ------------------------------------------------------------------
    # State Store
    # ------------------------------------------------------------------
    @property
    def size(self) -> int:
        return self._x.shape[0]

    @property
    def x(self) -> np.ndarray:
        return self._x

    @x.setter
    def x(self, value):
        value = np.asarray(value, dtype=float).reshape(-1)
        if value.shape[0] != self.size:
            raise DimensionError(f"x must have {self.size} elements, got {value.shape[0]}")
        self._x = value.copy()

    @property
    def P(self) -> np.ndarray:
        return self._P

    @P.setter
    def P(self, value):
        value = np.asarray(value, dtype=float)
        check_shape("P", value, self.size, self.size)
        self._P = value.copy()

    def marginal(self, ia: IndexLike) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of (x[ia], P[ia, ia])."""
        ia = self._in_range("ia", ia)
        return self._x[ia.indices].copy(), self._P[ix(ia)].copy()

    def grow(self, n_new: int) -> IndirectArray:
        """
        Append n_new zero states.

        Returns:
            Indirect array of the appended indices

        Raises:
            StateGrowthError: if the larger x/P cannot be allocated
        """
        if n_new < 0:
            raise DimensionError(f"Cannot grow by {n_new} states")
        old_n = self.size
        new_n = old_n + n_new
        if n_new == 0:
            return ia_range(old_n, old_n)
        try:
            new_x = np.zeros(new_n, dtype=float)
            new_P = np.zeros((new_n, new_n), dtype=float)
        except MemoryError as e:
            raise StateGrowthError(f"Unable to grow state from {old_n} to {new_n}") from e
        new_x[:old_n] = self._x
        new_P[:old_n, :old_n] = self._P
        self._x = new_x
        self._P = new_P
        if cfg.VERBOSE_DEBUG:
            print(f"[EKF] State grown {old_n} -> {new_n}")
        return ia_range(old_n, new_n)

    def symmetry_error(self) -> float:
        """max |P - P'| (diagnostic)."""
        if self.size == 0:
            return 0.0
        return float(np.max(np.abs(self._P - self._P.T)))

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # ------------------------------------------------------------------
    # Precondition helpers
    # ------------------------------------------------------------------
    def _in_range(self, name: str, ia: IndexLike) -> IndirectArray:
        ia = as_indirect(ia)
        if ia.max_index >= self.size:
            raise DimensionError(f"{name} index {ia.max_index} out of range for state size {self.size}")
        return ia

    def _subset(self, name: str, ia: IndirectArray, iax: IndirectArray, iax_name: str = "iax"):
        if not ia.is_subset_of(iax):
            raise DimensionError(f"{name} {ia.indices.tolist()} is not contained in {iax_name}")

    def _noise(self, name: str, M, n: int) -> np.ndarray:
        M = np.atleast_2d(np.asarray(M, dtype=float))
        check_shape(name, M, n, n)
        if self.config['CHECK_INPUTS']:
            check_symmetric(name, M, tol=self.config['SYMMETRY_TOL'])
        return M

    def _tripwire(self, label: str):
        if self.config['CHECK_FINITE']:
            assert_finite(f"x after {label}", self._x, raise_on_fail=True)
            assert_finite(f"P after {label}", self._P, raise_on_fail=True)

    # ------------------------------------------------------------------
    # Prediction Engine
    # ------------------------------------------------------------------
    def predict(self, iax: IndexLike, F_v, iav: IndexLike,
                F_u=None, U=None, Q=None, x_v=None):
        """
        Predict covariances matrix.

        Process noise is given either in control space (F_u, U) or already
        in state space (Q):

            Pvv <- F_v Pvv F_v' + F_u U F_u'    (or + Q)
            Pvm <- F_v Pvm,   Pmv <- Pvm'
            Pmm unchanged

        where v are the indices in iav and m the remaining indices of iax.

        Args:
            iax: Indirect array of all used states
            F_v: Jacobian of the process model (|iav| × |iav|)
            iav: Indirect array of the process model states
            F_u: Jacobian of the process model wrt the perturbation (|iav| × k)
            U: Perturbation covariance in control space (k × k)
            Q: Perturbation covariance in state space (|iav| × |iav|)
            x_v: Optional propagated mean written to x[iav]
        """
        iax = self._in_range("iax", iax)
        iav = self._in_range("iav", iav)
        self._subset("iav", iav, iax)
        nv = len(iav)

        F_v = np.atleast_2d(np.asarray(F_v, dtype=float))
        check_shape("F_v", F_v, nv, nv)

        if Q is not None:
            if F_u is not None or U is not None:
                raise DimensionError("Give either (F_u, U) or Q, not both")
            Q_v = self._noise("Q", Q, nv)
        else:
            if F_u is None or U is None:
                raise DimensionError("Control-space prediction needs both F_u and U")
            F_u = np.atleast_2d(np.asarray(F_u, dtype=float))
            if F_u.shape[0] != nv:
                raise DimensionError(f"F_u must have {nv} rows, got {F_u.shape[0]}")
            U = self._noise("U", U, F_u.shape[1])
            Q_v = F_u @ U @ F_u.T

        if x_v is not None:
            x_v = np.asarray(x_v, dtype=float).reshape(-1)
            if x_v.shape[0] != nv:
                raise DimensionError(f"x_v must have {nv} elements, got {x_v.shape[0]}")

        v = iav.indices
        m = ia_complement(iax, iav).indices

        self._P[np.ix_(v, v)] = F_v @ self._P[np.ix_(v, v)] @ F_v.T + Q_v
        symmetrize_block(self._P, v)
        if m.size:
            # cross block computed once, written to both halves
            Pvm = F_v @ self._P[np.ix_(v, m)]
            self._P[np.ix_(v, m)] = Pvm
            self._P[np.ix_(m, v)] = Pvm.T

        if x_v is not None:
            self._x[v] = x_v

        self._stats['predictions'] += 1
        self._tripwire("predict")

    # ------------------------------------------------------------------
    # Correction Engine
    # ------------------------------------------------------------------
    def correct(self, iax: IndexLike, inn: Innovation,
                INN_rsl=None, ia_rsl: Optional[IndexLike] = None) -> bool:
        """
        EKF correction.

        {z, Z} are read from the innovation; INN_rsl / ia_rsl default to the
        Jacobian and indices it carries.

            K = -P(iax, ia_rsl) * INN_rsl' * inv(Z)
            x(iax) = x(iax) + K * z
            P(iax, iax) = P(iax, iax) + K * (P(iax, ia_rsl) * INN_rsl')'

        Args:
            iax: Indirect array of used states
            inn: The Innovation
            INN_rsl: Jacobian wrt the states that contributed to the innovation
            ia_rsl: Indices of these states

        Returns:
            True if applied, False if Z was singular (x and P untouched)
        """
        iax = self._in_range("iax", iax)
        INN_rsl = inn.INN_rsl if INN_rsl is None else np.atleast_2d(np.asarray(INN_rsl, dtype=float))
        ia_rsl = inn.ia_rsl if ia_rsl is None else as_indirect(ia_rsl)
        if INN_rsl is None or ia_rsl is None:
            raise DimensionError("Correction needs a Jacobian INN_rsl and its indirect array ia_rsl")
        ia_rsl = self._in_range("ia_rsl", ia_rsl)
        self._subset("ia_rsl", ia_rsl, iax)
        check_shape("INN_rsl", INN_rsl, inn.size, len(ia_rsl))
        if not np.all(np.isfinite(INN_rsl)):
            raise DimensionError("INN_rsl contains inf/nan")
        if self.config['CHECK_INPUTS']:
            check_symmetric("Z", inn.Z, tol=self.config['SYMMETRY_TOL'])

        self.last_innovation = inn
        try:
            iZ = inn.inverse()
        except SingularInnovationError as e:
            self._stats['rejected_singular'] += 1
            self.last_failure = str(e)
            print(f"[EKF] WARNING: Singular innovation covariance, rejecting update ({e})")
            return False

        PHt, K = self._compute_k(iax, INN_rsl, ia_rsl, iZ)
        self._update_p(iax, inn, PHt, K)

        self._stats['corrections'] += 1
        if cfg.VERBOSE_DEBUG:
            print(f"[EKF] Correction applied: dim={inn.size}, |iax|={len(iax)}, "
                  f"mahalanobis={inn.mahalanobis:.3f}")
        self._tripwire("correct")
        return True

    def _compute_k(self, iax: IndirectArray, INN_rsl: np.ndarray, ia_rsl: IndirectArray,
                   iZ: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Fill the scratch buffers with P(iax, ia_rsl) INN_rsl' and the gain K."""
        na, m = len(iax), INN_rsl.shape[0]
        PHt = self.PHt_tmp.view(na, m)
        np.matmul(self._P[ix(iax, ia_rsl)], INN_rsl.T, out=PHt)
        K = self.K.view(na, m)
        np.matmul(PHt, iZ, out=K)
        K *= self._gain_sign
        return PHt, K

    def _update_p(self, iax: IndirectArray, inn: Innovation, PHt: np.ndarray, K: np.ndarray):
        """Apply the mean and covariance update over iax, then re-symmetrize."""
        a = iax.indices
        self._x[a] += K @ inn.z
        sel = np.ix_(a, a)
        P_aa = self._P[sel] - self._gain_sign * (K @ PHt.T)
        P_aa = 0.5 * (P_aa + P_aa.T)
        if self.config['CHECK_PSD']:
            P_aa = ensure_covariance_valid(P_aa, label="EKF-Update", symmetrize=False,
                                           check_psd=True,
                                           min_eigenvalue=self.config['MIN_EIGENVALUE'])
        self._P[sel] = P_aa

    # ------------------------------------------------------------------
    # Stacked corrections
    # ------------------------------------------------------------------
    def stack_correction(self, inn: Innovation, INN_rsl=None,
                         ia_rsl: Optional[IndexLike] = None) -> int:
        """
        Queue a correction for the joint update of this cycle.

        x and P are not touched until correct_all_stacked().

        Returns:
            Position of the entry in the stack
        """
        pos = self.stack.push(inn, INN_rsl, ia_rsl)
        if cfg.VERBOSE_DEBUG:
            print(f"[STACK] Queued correction #{pos} (dim={inn.size})")
        return pos

    def correct_all_stacked(self, iax: IndexLike, cross_covariances=None) -> bool:
        """
        Apply all stacked corrections as one joint EKF update.

        The joint Jacobian spans the union of all stacked indices. Entries
        were linearized against the current P (stacking does not touch it),
        so the joint Z couples them through INN_i P(ia_i, ia_j) INN_j';
        cross_covariances {(i, j): N_ij} add measurement-noise correlation.
        The stack is cleared whether or not the update succeeds.

        Returns:
            True if applied, False if the stack was empty or Z singular
        """
        if not self.stack:
            print("[STACK] WARNING: correct_all_stacked() called with an empty stack, nothing to do")
            return False
        n_entries = len(self.stack)
        try:
            joint = self.stack.build(cross_covariances, P=self._P)
            applied = self.correct(iax, joint)
        finally:
            self.stack.clear()
        if applied:
            self._stats['stacked_flushes'] += 1
            if cfg.VERBOSE_DEBUG:
                print(f"[STACK] Flushed {n_entries} corrections as one update (dim={joint.size})")
        return applied

    # ------------------------------------------------------------------
    # Initialization Engine
    # ------------------------------------------------------------------
    def initialize(self, iax: IndexLike, G_rs, ia_rs: IndexLike, ia_l: IndexLike,
                   G_y, R, G_n=None, N=None, x_l=None) -> IndirectArray:
        """
        EKF initialization of a new landmark.

        Fully observable (G_n, N omitted):
            P(l, l)   = G_rs P(rs, rs) G_rs' + G_y R G_y'
        Partially observable:
            P(l, l)   = G_rs P(rs, rs) G_rs' + G_y R G_y' + G_n N G_n'
        Both:
            P(l, iax) = G_rs P(rs, iax),  P(iax, l) = P(l, iax)'

        The state grows when ia_l reaches beyond the current size.

        Args:
            iax: Indirect array of used states (must not contain ia_l)
            G_rs: Jacobian of the back-projection wrt robot and sensor
            ia_rs: Indirect array of robot and sensor states
            ia_l: Indirect array of the landmark states
            G_y: Jacobian of the back-projection wrt the measurement
            R: Measurement noise covariance
            G_n: Jacobian of the back-projection wrt the non-measured prior
            N: Non-measured prior covariance
            x_l: Optional back-projected landmark mean

        Returns:
            ia_l
        """
        iax = self._in_range("iax", iax)
        ia_rs = self._in_range("ia_rs", ia_rs)
        ia_l = as_indirect(ia_l)
        self._subset("ia_rs", ia_rs, iax)
        if ia_l.intersects(iax):
            raise DimensionError(f"ia_l {ia_l.indices.tolist()} overlaps used states")
        nl, nrs = len(ia_l), len(ia_rs)

        G_rs = np.atleast_2d(np.asarray(G_rs, dtype=float))
        check_shape("G_rs", G_rs, nl, nrs)
        G_y = np.atleast_2d(np.asarray(G_y, dtype=float))
        if G_y.shape[0] != nl:
            raise DimensionError(f"G_y must have {nl} rows, got {G_y.shape[0]}")
        R = self._noise("R", R, G_y.shape[1])
        noise_ll = G_y @ R @ G_y.T

        if (G_n is None) != (N is None):
            raise DimensionError("Partially observable initialization needs both G_n and N")
        if G_n is not None:
            G_n = np.atleast_2d(np.asarray(G_n, dtype=float))
            if G_n.shape[0] != nl:
                raise DimensionError(f"G_n must have {nl} rows, got {G_n.shape[0]}")
            N = self._noise("N", N, G_n.shape[1])
            noise_ll = noise_ll + G_n @ N @ G_n.T

        if x_l is not None:
            x_l = np.asarray(x_l, dtype=float).reshape(-1)
            if x_l.shape[0] != nl:
                raise DimensionError(f"x_l must have {nl} elements, got {x_l.shape[0]}")

        if ia_l.max_index >= self.size:
            self.grow(ia_l.max_index + 1 - self.size)

        a, l = iax.indices, ia_l.indices
        P_lx = G_rs @ self._P[ix(ia_rs, iax)]
        P_ll = P_lx[:, ia_rs.positions_in(iax)] @ G_rs.T + noise_ll

        self._P[l, :] = 0.0
        self._P[:, l] = 0.0
        self._P[np.ix_(l, a)] = P_lx
        self._P[np.ix_(a, l)] = P_lx.T
        self._P[np.ix_(l, l)] = 0.5 * (P_ll + P_ll.T)
        if x_l is not None:
            self._x[l] = x_l

        self._stats['initializations'] += 1
        if cfg.VERBOSE_DEBUG:
            print(f"[EKF] Initialized landmark at {l.tolist()}, state size {self.size}")
        self._tripwire("initialize")
        return ia_l

    # ------------------------------------------------------------------
    # Reparametrization Engine
    # ------------------------------------------------------------------
    def reparametrize(self, iax: IndexLike, J_l, ia_old: IndexLike, ia_new: IndexLike,
                      x_new=None) -> IndirectArray:
        """
        EKF reparametrization of a landmark currently being filtered.

            P(new, new)  = J_l P(old, old) J_l'
            P(new, rest) = J_l P(old, rest),   rest = iax \\ ia_old
            P(new, old)  = J_l P(old, old)     for old states not reused by new

        ia_new may equal ia_old (in place), reuse part of it, or name fresh
        indices (the state grows if needed). The caller releases whatever
        remains of ia_old afterwards.

        Args:
            iax: Indirect array of used states
            J_l: Jacobian of reparametrization wrt old landmark (|new| × |old|)
            ia_old: Indices to old landmark parameters
            ia_new: Indices to new landmark parameters
            x_new: Optional new landmark mean

        Returns:
            ia_new
        """
        iax = self._in_range("iax", iax)
        ia_old = self._in_range("ia_old", ia_old)
        ia_new = as_indirect(ia_new)
        self._subset("ia_old", ia_old, iax)
        rest = ia_complement(iax, ia_old)
        if ia_new.intersects(rest):
            raise DimensionError(f"ia_new {ia_new.indices.tolist()} overlaps states outside ia_old")

        J_l = np.atleast_2d(np.asarray(J_l, dtype=float))
        check_shape("J_l", J_l, len(ia_new), len(ia_old))
        if x_new is not None:
            x_new = np.asarray(x_new, dtype=float).reshape(-1)
            if x_new.shape[0] != len(ia_new):
                raise DimensionError(f"x_new must have {len(ia_new)} elements, got {x_new.shape[0]}")

        if ia_new.max_index >= self.size:
            self.grow(ia_new.max_index + 1 - self.size)

        P_oo = self._P[ix(ia_old)]
        P_new_rest = J_l @ self._P[ix(ia_old, rest)]
        P_new_old = J_l @ P_oo
        P_nn = P_new_old @ J_l.T

        fresh = ia_complement(ia_new, ia_old).indices
        if fresh.size:
            self._P[fresh, :] = 0.0
            self._P[:, fresh] = 0.0

        n, r = ia_new.indices, rest.indices
        if r.size:
            self._P[np.ix_(n, r)] = P_new_rest
            self._P[np.ix_(r, n)] = P_new_rest.T
        old_only = ia_complement(ia_old, ia_new)
        if len(old_only):
            cols = old_only.positions_in(ia_old)
            self._P[np.ix_(n, old_only.indices)] = P_new_old[:, cols]
            self._P[np.ix_(old_only.indices, n)] = P_new_old[:, cols].T
        self._P[np.ix_(n, n)] = 0.5 * (P_nn + P_nn.T)
        if x_new is not None:
            self._x[n] = x_new

        self._stats['reparametrizations'] += 1
        self._tripwire("reparametrize")
        return ia_new

    # ------------------------------------------------------------------
    # Extension: state removal
    # ------------------------------------------------------------------
    def remove_states(self, ia: IndexLike) -> int:
        """
        Delete states by index-set compaction (rows/columns removed, later
        indices shift down). Every indirect array held by the caller must be
        re-derived afterwards.

        Returns:
            New state size
        """
        ia = self._in_range("ia", ia)
        if self.stack:
            print(f"[STACK] WARNING: dropping {len(self.stack)} stacked corrections, "
                  f"their indices are invalid after state removal")
            self.stack.clear()
        mask = np.ones(self.size, dtype=bool)
        mask[ia.indices] = False
        self._x = self._x[mask]
        self._P = self._P[np.ix_(mask, mask)]
        self._stats['removals'] += 1
        if cfg.VERBOSE_DEBUG:
            print(f"[EKF] Removed {len(ia)} states, state size {self.size}")
        return self.size

    def __repr__(self):
        return '\n'.join([
            'ExtendedKalmanFilterIndirect object',
            pretty_str('size', self.size),
            pretty_str('x', self._x),
            pretty_str('P', self._P),
            pretty_str('stacked', len(self.stack)),
            pretty_str('stats', self._stats),
        ])
