#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
State Map

Bookkeeping of which filter states are in use. Slots can be reserved for a
new landmark, released when it is discarded (left allocated, inactive), and
reused later; the master indirect array iax lists the used ones.

    smap = StateMap(kf)
    ia_robot = smap.reserve(3)
    ia_l = smap.reserve(2)          # grows kf if no free slot
    kf.initialize(smap.iax_without(ia_l), G_rs, ia_robot, ia_l, G_y, R)
    ...
    smap.release(ia_l)              # slot kept, zeroed, available again

Author: SLAM-EKF project
"""

import numpy as np

from . import config as cfg
from .errors import DimensionError
from .indirect import IndexLike, IndirectArray, as_indirect, ia_complement


class StateMap:
    """Used/free flags over the state slots of one filter."""

    def __init__(self, kf, used=None):
        """
        Args:
            kf: ExtendedKalmanFilterIndirect whose states are tracked
            used: Optional indices already in use
        """
        self.kf = kf
        self._used = np.zeros(kf.size, dtype=bool)
        if used is not None:
            self._used[as_indirect(used).indices] = True

    def _sync(self):
        # filter may have grown through initialize()/reparametrize()
        if self._used.size < self.kf.size:
            self._used = np.concatenate(
                (self._used, np.zeros(self.kf.size - self._used.size, dtype=bool)))
        elif self._used.size > self.kf.size:
            raise DimensionError(f"StateMap tracks {self._used.size} slots but filter has "
                                 f"{self.kf.size}; rebuild the map after remove_states()")

    @property
    def used_size(self) -> int:
        self._sync()
        return int(np.count_nonzero(self._used))

    @property
    def free_size(self) -> int:
        self._sync()
        return int(self._used.size - np.count_nonzero(self._used))

    def iax(self) -> IndirectArray:
        """Master indirect array: all used states, ascending."""
        self._sync()
        return IndirectArray(np.flatnonzero(self._used))

    def iax_without(self, ia: IndexLike) -> IndirectArray:
        """iax minus `ia` (e.g. the landmark being initialized)."""
        return ia_complement(self.iax(), ia)

    def is_used(self, ia: IndexLike) -> bool:
        self._sync()
        ia = as_indirect(ia)
        if ia.max_index >= self._used.size:
            return False
        return bool(np.all(self._used[ia.indices]))

    def reserve(self, n: int) -> IndirectArray:
        """
        Mark the n lowest free slots as used, growing the filter if there
        are not enough.

        Returns:
            Indirect array of the reserved slots
        """
        if n <= 0:
            raise DimensionError(f"Cannot reserve {n} states")
        self._sync()
        free = np.flatnonzero(~self._used)
        if free.size < n:
            self.kf.grow(n - free.size)
            self._sync()
            free = np.flatnonzero(~self._used)
        slots = free[:n]
        self._used[slots] = True
        if cfg.VERBOSE_DEBUG:
            print(f"[MAP] Reserved {slots.tolist()}")
        return IndirectArray(slots)

    def release(self, ia: IndexLike):
        """
        Mark slots as free and zero their mean, rows and columns so that a
        later reuse starts clean.
        """
        self._sync()
        ia = as_indirect(ia)
        if not self.is_used(ia):
            raise DimensionError(f"Releasing states that are not in use: {ia.indices.tolist()}")
        idx = ia.indices
        self._used[idx] = False
        self.kf.x[idx] = 0.0
        self.kf.P[idx, :] = 0.0
        self.kf.P[:, idx] = 0.0
        if cfg.VERBOSE_DEBUG:
            print(f"[MAP] Released {idx.tolist()}")

    def __repr__(self):
        return f"StateMap(used={self.used_size}, free={self.free_size})"
