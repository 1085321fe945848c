#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Stacked Correction Buffer
=========================

Accumulates several partial corrections within one filter cycle and turns
them into a single joint innovation, so that every observation of the cycle
is linearized around the same estimate.

Joint innovation for entries k = 1..K:

    z      = [z_1; z_2; ...; z_K]
    Z_kk   = Z_k
    Z_ij   = INN_i P(ia_i, ia_j) INN_j'      (+ caller-supplied noise cross terms)
    ia     = ordered union of ia_k, duplicates removed
    INN    = rows of INN_k scattered into the columns of ia

Entries are appended with push() and never mutate x/P. The buffer is
append-only until the filter flushes it.

Author: SLAM-EKF project
"""

from typing import Dict, List, Optional, Tuple

import numpy as np
import scipy.linalg as linalg

from .errors import DimensionError
from .indirect import IndexLike, IndirectArray, as_indirect, ia_union, ix
from .innovation import Innovation


class StackedCorrectionBuffer:
    """Pending (INN_rsl, ia_rsl, z, Z) tuples of one filter cycle."""

    def __init__(self):
        self._entries: List[Tuple[Innovation, np.ndarray, IndirectArray]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    @property
    def measurement_size(self) -> int:
        """Total number of stacked residual rows."""
        return sum(inn.size for inn, _, _ in self._entries)

    def push(self, inn: Innovation, INN_rsl=None, ia_rsl: Optional[IndexLike] = None) -> int:
        """
        Append one partial correction.

        INN_rsl / ia_rsl default to the ones carried by the innovation.

        Returns:
            Position of the entry in the buffer (used to key cross terms)
        """
        INN_rsl = inn.INN_rsl if INN_rsl is None else np.atleast_2d(np.asarray(INN_rsl, dtype=float))
        ia_rsl = inn.ia_rsl if ia_rsl is None else as_indirect(ia_rsl)
        if INN_rsl is None or ia_rsl is None:
            raise DimensionError("Stacked correction needs a Jacobian and its indirect array")
        if INN_rsl.shape != (inn.size, len(ia_rsl)):
            raise DimensionError(f"INN_rsl must be {inn.size}x{len(ia_rsl)}, got {INN_rsl.shape}")
        if not np.all(np.isfinite(INN_rsl)):
            raise DimensionError("INN_rsl contains inf/nan")
        self._entries.append((inn, INN_rsl, ia_rsl))
        return len(self._entries) - 1

    def clear(self):
        self._entries.clear()

    def build(self, cross_covariances: Optional[Dict[Tuple[int, int], np.ndarray]] = None,
              P: Optional[np.ndarray] = None) -> Innovation:
        """
        Assemble the joint innovation over the union of stacked indices.

        Every Z_k already holds INN_k P INN_k' + R_k. Two entries share the
        prior P, so their residuals are correlated through
        INN_i P(ia_i, ia_j) INN_j' even when their measurement noises are
        independent.

        Args:
            cross_covariances: Optional {(i, j): N_ij} measurement-noise cross
                terms between entries i and j (m_i × m_j), added on top of
                the prior correlation.
            P: Covariance all entries were linearized against. Without it
                the entries are treated as uncorrelated.

        Returns:
            Innovation with joint z, Z, INN_rsl and ia_rsl
        """
        if not self._entries:
            raise DimensionError("Cannot build a joint innovation from an empty buffer")

        ia = ia_union(*[ia_k for _, _, ia_k in self._entries])
        sizes = [inn.size for inn, _, _ in self._entries]
        offsets = np.concatenate(([0], np.cumsum(sizes)))
        m = int(offsets[-1])

        z = np.concatenate([inn.z for inn, _, _ in self._entries])
        Z = linalg.block_diag(*[inn.Z for inn, _, _ in self._entries])
        H = np.zeros((m, len(ia)), dtype=float)

        for k, (inn, INN_k, ia_k) in enumerate(self._entries):
            rows = slice(offsets[k], offsets[k + 1])
            H[rows, ia_k.positions_in(ia)] = INN_k

        if P is not None:
            if ia.max_index >= P.shape[0]:
                raise DimensionError(f"Stacked index {ia.max_index} out of range for "
                                     f"covariance of size {P.shape[0]}")
            for i in range(len(self._entries)):
                _, INN_i, ia_i = self._entries[i]
                ri = slice(offsets[i], offsets[i + 1])
                for j in range(i + 1, len(self._entries)):
                    _, INN_j, ia_j = self._entries[j]
                    rj = slice(offsets[j], offsets[j + 1])
                    Z_ij = INN_i @ P[ix(ia_i, ia_j)] @ INN_j.T
                    Z[ri, rj] = Z_ij
                    Z[rj, ri] = Z_ij.T

        for (i, j), Z_ij in (cross_covariances or {}).items():
            if i == j or not (0 <= i < len(sizes) and 0 <= j < len(sizes)):
                raise DimensionError(f"Invalid cross-covariance key {(i, j)}")
            Z_ij = np.atleast_2d(np.asarray(Z_ij, dtype=float))
            if Z_ij.shape != (sizes[i], sizes[j]):
                raise DimensionError(f"Cross covariance {(i, j)} must be "
                                     f"{sizes[i]}x{sizes[j]}, got {Z_ij.shape}")
            ri = slice(offsets[i], offsets[i + 1])
            rj = slice(offsets[j], offsets[j + 1])
            Z[ri, rj] += Z_ij
            Z[rj, ri] += Z_ij.T

        return Innovation(z, Z, H, ia)
