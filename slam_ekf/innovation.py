#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Innovation container.

The innovation is computed outside the filter (observation collaborator):
it carries the residual mean z, its covariance Z, and optionally the
Jacobian INN_rsl of the residual w.r.t. the states named by ia_rsl.

Residual convention (default, see config.RESIDUAL_CONVENTION):
    z = predicted - measured
"""

from math import exp, sqrt
from typing import Optional

import numpy as np
import scipy.linalg as linalg
from filterpy.stats import logpdf

from .errors import DimensionError, SingularInnovationError
from .indirect import IndexLike, IndirectArray, as_indirect


class Innovation:
    """Residual mean/covariance pair plus the Jacobian tying it to the state."""

    def __init__(self, z, Z, INN_rsl=None, ia_rsl: Optional[IndexLike] = None):
        self.z = np.asarray(z, dtype=float).reshape(-1)
        self.Z = np.atleast_2d(np.asarray(Z, dtype=float))
        m = self.z.shape[0]
        if self.Z.shape != (m, m):
            raise DimensionError(f"Innovation covariance must be {m}x{m}, got {self.Z.shape}")

        self.INN_rsl = None if INN_rsl is None else np.atleast_2d(np.asarray(INN_rsl, dtype=float))
        self.ia_rsl: Optional[IndirectArray] = None if ia_rsl is None else as_indirect(ia_rsl)
        if not np.all(np.isfinite(self.z)):
            raise DimensionError(f"Innovation mean contains inf/nan: {self.z.tolist()}")
        if self.INN_rsl is not None and not np.all(np.isfinite(self.INN_rsl)):
            raise DimensionError("Innovation Jacobian INN_rsl contains inf/nan")
        if self.INN_rsl is not None and self.INN_rsl.shape[0] != m:
            raise DimensionError(f"INN_rsl must have {m} rows, got {self.INN_rsl.shape[0]}")
        if self.INN_rsl is not None and self.ia_rsl is not None \
                and self.INN_rsl.shape[1] != len(self.ia_rsl):
            raise DimensionError(f"INN_rsl has {self.INN_rsl.shape[1]} columns "
                                 f"but ia_rsl names {len(self.ia_rsl)} states")

        self._iZ = None
        self._log_likelihood = None
        self._mahalanobis = None

    @property
    def size(self) -> int:
        return self.z.shape[0]

    def inverse(self) -> np.ndarray:
        """
        inverse(Z) through a Cholesky factorization (cached).

        Raises:
            SingularInnovationError: Z is not positive-definite or not finite
        """
        if self._iZ is None:
            if not np.all(np.isfinite(self.Z)):
                raise SingularInnovationError("Innovation covariance contains inf/nan")
            try:
                c_and_lower = linalg.cho_factor(self.Z)
                iZ = linalg.cho_solve(c_and_lower, np.eye(self.size))
            except (np.linalg.LinAlgError, ValueError) as e:
                raise SingularInnovationError(f"Innovation covariance not invertible: {e}") from e
            self._iZ = 0.5 * (iZ + iZ.T)
        return self._iZ

    @property
    def mahalanobis(self):
        """Mahalanobis distance sqrt(z' Z^-1 z)."""
        if self._mahalanobis is None:
            self._mahalanobis = sqrt(float(self.z @ self.inverse() @ self.z))
        return self._mahalanobis

    @property
    def log_likelihood(self):
        """log N(z; 0, Z)."""
        if self._log_likelihood is None:
            self._log_likelihood = float(logpdf(x=self.z, cov=self.Z))
        return self._log_likelihood

    @property
    def likelihood(self):
        return exp(self.log_likelihood)

    def __repr__(self):
        return f"Innovation(size={self.size}, z={self.z.tolist()})"
