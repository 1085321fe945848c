#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Indirect Arrays
===============

An indirect array is an ordered list of unique global indices into the
state vector x and covariance P. Every filter operation is expressed in
terms of them so that only the participating sub-blocks are read or
written:

    x[ia]                 -> sub-vector
    P[np.ix_(ia, ia)]     -> diagonal block
    P[np.ix_(ia_a, ia_b)] -> cross block

Indices can be non-contiguous and in arbitrary order (landmarks are
interleaved with robot/sensor states in general). Storage stays dense; this
is only a description of which rows/columns take part.

Typical arrays:
    iax   : all states currently in use by the filter (master array)
    iav   : states touched by the motion model (robot, maybe sensor)
    ia_rs : robot + sensor states
    ia_l  : one landmark

Author: SLAM-EKF project
"""

from typing import Iterable, Union

import numpy as np

from .errors import DimensionError


IndexLike = Union["IndirectArray", Iterable[int], np.ndarray]


class IndirectArray:
    """
    Immutable ordered set of global state indices.

    Args:
        indices: Iterable of non-negative unique integers

    Raises:
        DimensionError: If indices are negative, duplicated or not 1-D
    """

    __slots__ = ("_idx",)

    def __init__(self, indices: IndexLike):
        if isinstance(indices, IndirectArray):
            idx = indices._idx
        else:
            idx = np.asarray(list(indices) if not isinstance(indices, np.ndarray) else indices)
            if idx.size == 0:
                idx = np.zeros(0, dtype=np.intp)
            if idx.ndim != 1:
                raise DimensionError(f"Indirect array must be 1-D, got shape {idx.shape}")
            if not np.issubdtype(idx.dtype, np.integer):
                raise DimensionError(f"Indirect array must hold integers, got {idx.dtype}")
            idx = idx.astype(np.intp)
            if idx.size and idx.min() < 0:
                raise DimensionError(f"Negative index in indirect array: {idx.min()}")
            if np.unique(idx).size != idx.size:
                raise DimensionError(f"Duplicate indices in indirect array: {idx.tolist()}")
            idx.setflags(write=False)
        self._idx = idx

    @property
    def indices(self) -> np.ndarray:
        """Read-only integer array usable directly as a numpy selector."""
        return self._idx

    def __array__(self, dtype=None, copy=None):
        if dtype is None:
            return self._idx
        return self._idx.astype(dtype)

    def __len__(self) -> int:
        return int(self._idx.size)

    def __iter__(self):
        return iter(self._idx.tolist())

    def __getitem__(self, item):
        if isinstance(item, slice):
            return IndirectArray(self._idx[item])
        return int(self._idx[item])

    def __contains__(self, i) -> bool:
        return bool(np.any(self._idx == i))

    def __eq__(self, other) -> bool:
        if not isinstance(other, IndirectArray):
            try:
                other = IndirectArray(other)
            except (DimensionError, TypeError, ValueError):
                return NotImplemented
        return np.array_equal(self._idx, other._idx)

    def __hash__(self):
        return hash(self._idx.tobytes())

    def __repr__(self):
        return f"IndirectArray({self._idx.tolist()})"

    @property
    def max_index(self) -> int:
        """Largest index, -1 if empty."""
        return int(self._idx.max()) if self._idx.size else -1

    def is_subset_of(self, other: IndexLike) -> bool:
        other = as_indirect(other)
        return bool(np.all(np.isin(self._idx, other._idx)))

    def intersects(self, other: IndexLike) -> bool:
        other = as_indirect(other)
        return bool(np.any(np.isin(self._idx, other._idx)))

    def positions_in(self, other: IndexLike) -> np.ndarray:
        """
        Positions of this array's indices inside `other`.

        Used to place a local Jacobian's columns into the columns of a
        larger joint Jacobian.
        """
        other = as_indirect(other)
        lookup = {g: k for k, g in enumerate(other._idx.tolist())}
        try:
            return np.array([lookup[g] for g in self._idx.tolist()], dtype=np.intp)
        except KeyError as e:
            raise DimensionError(f"Index {e.args[0]} not present in {other!r}") from None


def as_indirect(ia: IndexLike) -> IndirectArray:
    """Coerce lists, ranges and numpy arrays to IndirectArray."""
    if isinstance(ia, IndirectArray):
        return ia
    return IndirectArray(ia)


def ia_range(start: int, stop: int) -> IndirectArray:
    """Contiguous indirect array [start, stop)."""
    return IndirectArray(np.arange(start, stop, dtype=np.intp))


def ia_union(*arrays: IndexLike) -> IndirectArray:
    """
    Ordered union of several indirect arrays.

    Indices keep the order of their first appearance; later duplicates are
    dropped.
    """
    seen = set()
    out = []
    for ia in arrays:
        for g in as_indirect(ia):
            if g not in seen:
                seen.add(g)
                out.append(g)
    return IndirectArray(np.array(out, dtype=np.intp))


def ia_complement(iax: IndexLike, ia: IndexLike) -> IndirectArray:
    """Elements of `iax` not in `ia`, in `iax` order."""
    iax = as_indirect(iax)
    ia = as_indirect(ia)
    mask = ~np.isin(iax.indices, ia.indices)
    return IndirectArray(iax.indices[mask])


def ix(ia_a: IndexLike, ia_b: IndexLike = None):
    """np.ix_ selector for the block (ia_a, ia_b); square block if ia_b is None."""
    a = as_indirect(ia_a).indices
    b = a if ia_b is None else as_indirect(ia_b).indices
    return np.ix_(a, b)
