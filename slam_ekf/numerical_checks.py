#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Numerical Validation and Tripwire Module
=========================================

Checks used around the filter to catch bad inputs at the source and to keep
the covariance well-formed over thousands of sequential updates:

- assert_finite: NaN/inf tripwire with diagnostic dump
- check_symmetric: fail-fast check on caller-supplied noise matrices
- check_covariance_psd: symmetry + eigenvalue check (diagnostic only)
- symmetrize_block: in-place (A + A^T)/2 on an indexed block of P
- ensure_covariance_valid: symmetrize and optionally lift negative eigenvalues
"""

import numpy as np

from .errors import DimensionError


def assert_finite(name, M, extra_info=None, raise_on_fail=False):
    """
    Tripwire: check matrix/vector for inf/nan and dump diagnostics if found.

    Parameters:
    -----------
    name : str
        Descriptive name of the quantity being checked
    M : np.ndarray
        Matrix or vector to validate
    extra_info : dict, optional
        Additional diagnostic information to dump
    raise_on_fail : bool
        If True, raises ValueError on failure. If False, only prints warning.

    Returns:
    --------
    bool : True if finite, False if inf/nan detected
    """
    if M is None:
        print(f"[TRIPWIRE] {name}: is None!")
        return False

    M = np.asarray(M)
    if np.all(np.isfinite(M)):
        return True

    print(f"\n{'='*70}")
    print(f"[TRIPWIRE] NaN/inf DETECTED in {name}")
    print(f"{'='*70}")
    print(f"Matrix shape: {M.shape}")
    print(f"Has NaN: {np.any(np.isnan(M))}")
    print(f"Has inf: {np.any(np.isinf(M))}")

    if M.size <= 100:
        print(f"\nFull matrix:\n{M}")

    if np.any(np.isnan(M)):
        print(f"NaN locations (first 10): {np.argwhere(np.isnan(M))[:10].tolist()}")
    if np.any(np.isinf(M)):
        print(f"Inf locations (first 10): {np.argwhere(np.isinf(M))[:10].tolist()}")

    if extra_info:
        print(f"\nAdditional context:")
        for key, val in extra_info.items():
            if isinstance(val, np.ndarray) and val.size > 10:
                print(f"  {key}: shape={val.shape}, norm={np.linalg.norm(val):.6e}")
            else:
                print(f"  {key}: {val}")
    print(f"{'='*70}\n")

    if raise_on_fail:
        raise ValueError(f"NaN/inf detected in {name}")
    return False


def check_square(name, M, n=None):
    """Raise DimensionError unless M is square (and n×n when n is given)."""
    M = np.asarray(M)
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise DimensionError(f"{name} must be square, got shape {M.shape}")
    if n is not None and M.shape[0] != n:
        raise DimensionError(f"{name} must be {n}x{n}, got {M.shape[0]}x{M.shape[1]}")


def check_shape(name, M, rows, cols):
    """Raise DimensionError unless M is rows×cols."""
    M = np.asarray(M)
    if M.shape != (rows, cols):
        raise DimensionError(f"{name} must be {rows}x{cols}, got {M.shape}")


def check_symmetric(name, M, tol=1e-9):
    """
    Fail fast on a non-symmetric noise/covariance input.

    The tolerance is relative to the largest absolute entry.

    Raises:
        DimensionError: if M is not square or not symmetric
    """
    check_square(name, M)
    M = np.asarray(M, dtype=float)
    if M.size == 0:
        return
    scale = max(1.0, float(np.max(np.abs(M))))
    asym = float(np.max(np.abs(M - M.T)))
    if asym > tol * scale:
        raise DimensionError(f"{name} is not symmetric (max |M - M^T| = {asym:.3e})")


def check_covariance_psd(P, name="covariance", min_eigenvalue=1e-12):
    """
    Validate covariance matrix is symmetric positive semi-definite.

    Returns:
    --------
    is_valid : bool
    """
    if not assert_finite(name, P):
        return False

    if not np.allclose(P, P.T, rtol=1e-5):
        asymmetry = np.max(np.abs(P - P.T))
        print(f"[TRIPWIRE] {name}: not symmetric (max diff={asymmetry:.6e})")
        return False

    try:
        eigvals = np.linalg.eigvalsh(P)
    except np.linalg.LinAlgError:
        print(f"[TRIPWIRE] {name}: eigenvalue computation failed")
        return False

    if eigvals.size and eigvals[0] < -min_eigenvalue:
        print(f"[TRIPWIRE] {name}: negative eigenvalue ({eigvals[0]:.6e})")
        print(f"  Eigenvalue range: [{eigvals[0]:.6e}, {eigvals[-1]:.6e}]")
        return False
    return True


def symmetrize_block(P, ia):
    """In-place P[ia, ia] <- (P[ia, ia] + P[ia, ia]^T) / 2."""
    sel = np.ix_(ia, ia)
    block = P[sel]
    P[sel] = 0.5 * (block + block.T)


def ensure_covariance_valid(P: np.ndarray, label: str = "",
                            symmetrize: bool = True,
                            check_psd: bool = False,
                            min_eigenvalue: float = 1e-12) -> np.ndarray:
    """
    Ensure covariance matrix is valid (symmetric, optionally PSD).

    Args:
        P: Covariance matrix (n×n)
        label: Debug label for logging
        symmetrize: Force symmetry
        check_psd: Check and lift negative eigenvalues with diagonal jitter
        min_eigenvalue: Minimum allowed eigenvalue when check_psd is set

    Returns:
        P_valid: Fixed covariance matrix
    """
    n = P.shape[0]

    if symmetrize:
        asymmetry = np.linalg.norm(P - P.T, ord='fro')
        if asymmetry > 1e-6:
            print(f"[COV_CHECK] {label}: Asymmetry detected (||P - P^T|| = {asymmetry:.3e}), symmetrizing")
        P = (P + P.T) / 2.0

    if check_psd and n > 0:
        try:
            eigvals = np.linalg.eigvalsh(P)
            lambda_min = eigvals[0]
            if lambda_min < -min_eigenvalue:
                jitter = abs(lambda_min) + min_eigenvalue
                print(f"[COV_CHECK] {label}: Negative eigenvalue λ_min = {lambda_min:.3e}, "
                      f"adding jitter ε = {jitter:.3e}")
                P = P + jitter * np.eye(n, dtype=float)
        except np.linalg.LinAlgError as e:
            print(f"[COV_CHECK] {label}: Eigenvalue computation failed: {e}")

    return P
