"""
lpoly.py
========

Numerical primitives shared by the estimator, bandwidth selector and density
test: kernel weights, polynomial design matrices, the (X'WX)^{-1} inverse with
a rank check, input cleaning, and pooled covariate partialling-out.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy import linalg

from .errors import ConfigurationError, InsufficientDataError, SingularFitError

# Relative tolerance on the R diagonal of the column-equilibrated QR.
RANK_TOL = 1e-9


def kernel_weights(x: np.ndarray, h: float, kernel: str = "triangular") -> np.ndarray:
    """Kernel weights K(x/h)/h; zero outside the bandwidth."""
    if not np.isfinite(h) or h <= 0:
        raise InsufficientDataError(f"Bandwidth must be positive, got {h!r}")
    if kernel != "triangular":
        raise ValueError(f"Unsupported kernel {kernel!r}")
    u = np.abs(np.asarray(x, dtype=float)) / h
    return np.where(u <= 1.0, (1.0 - u) / h, 0.0)


def poly_design(x: np.ndarray, order: int) -> np.ndarray:
    """Columns x^0 .. x^order."""
    return np.vander(np.asarray(x, dtype=float), order + 1, increasing=True)


def xx_inverse(X: np.ndarray, w: np.ndarray | None = None) -> np.ndarray:
    """Return (X'WX)^{-1}, raising SingularFitError on a rank-deficient design."""
    A = X if w is None else X * np.sqrt(w)[:, None]
    n, k = A.shape
    if n < k:
        raise SingularFitError(f"Design has {n} rows for {k} columns")
    norms = np.sqrt(np.sum(A * A, axis=0))
    if np.any(norms == 0):
        raise SingularFitError("Design has an all-zero column")
    R = linalg.qr(A / norms, mode="economic")[1]
    d = np.abs(np.diag(R))
    if d.min() <= RANK_TOL * d.max():
        raise SingularFitError("Design matrix is rank-deficient within bandwidth")
    R_inv = linalg.solve_triangular(R, np.eye(k))
    inv = R_inv @ R_inv.T
    return inv / np.outer(norms, norms)


def clean_inputs(running, outcome, covariates=None, cluster=None):
    """Drop rows with a non-finite running value, outcome or covariate, or a missing cluster id."""
    x = np.asarray(running, dtype=float)
    y = np.asarray(outcome, dtype=float)
    if x.shape != y.shape or x.ndim != 1:
        raise ConfigurationError("running and outcome must be 1-D arrays of equal length")
    keep = np.isfinite(x) & np.isfinite(y)

    Z = None
    if covariates is not None:
        Z = np.asarray(covariates, dtype=float)
        if Z.ndim == 1:
            Z = Z[:, None]
        if Z.shape[0] != len(x):
            raise ConfigurationError("covariates must have one row per observation")
        if Z.shape[1] == 0:
            Z = None
        else:
            keep &= np.all(np.isfinite(Z), axis=1)

    C = None
    if cluster is not None:
        C = np.asarray(cluster)
        if C.shape[0] != len(x):
            raise ConfigurationError("cluster must have one entry per observation")
        keep &= ~pd.isna(C)

    x, y = x[keep], y[keep]
    Z = None if Z is None else Z[keep]
    C = None if C is None else C[keep]
    return x, y, Z, C


def pooled_gamma(
    sides: list[tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]],
    order: int,
) -> np.ndarray:
    """Common covariate coefficient after partialling out side-specific polynomials.

    `sides` holds one (x, y, Z, w) tuple per side of the cutoff. The
    coefficient is the same on both sides, so the discontinuity is
    estimated on `y - Z @ gamma`.
    """
    zwz = None
    zwy = None
    for x, y, Z, w in sides:
        keep = w > 0
        x, y, Z, w = x[keep], y[keep], Z[keep], w[keep]
        R = poly_design(x, order)
        inv_g = xx_inverse(R, w)
        D = np.column_stack([y, Z])
        U = (R * w[:, None]).T @ D
        ZWD = (Z * w[:, None]).T @ D
        UiGU = U[:, 1:].T @ inv_g @ U
        side_zwz = ZWD[:, 1:] - UiGU[:, 1:]
        side_zwy = ZWD[:, 0] - UiGU[:, 0]
        zwz = side_zwz if zwz is None else zwz + side_zwz
        zwy = side_zwy if zwy is None else zwy + side_zwy

    try:
        c, low = linalg.cho_factor(zwz)
    except linalg.LinAlgError as e:
        raise SingularFitError("Covariates are collinear within bandwidth") from e
    return linalg.cho_solve((c, low), zwy)
