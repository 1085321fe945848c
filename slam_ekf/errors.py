#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Filter error types.

- DimensionError: caller handed in inconsistent indices/matrices (a bug in
  the collaborator, raised before anything is mutated)
- SingularInnovationError: innovation covariance could not be inverted; the
  filter skips that correction and reports it
- StateGrowthError: x/P could not be reallocated

Author: SLAM-EKF project
"""

import numpy as np


class FilterError(Exception):
    """Base class for all filter errors."""


class DimensionError(FilterError, ValueError):
    """Precondition violation: index or matrix dimensions do not agree."""


class SingularInnovationError(FilterError, np.linalg.LinAlgError):
    """Innovation covariance Z is not symmetric positive-definite."""


class StateGrowthError(FilterError, MemoryError):
    """Unable to allocate larger state vector / covariance."""
