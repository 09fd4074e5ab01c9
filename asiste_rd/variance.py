"""
variance.py
===========

Residual and sandwich variance estimation for local polynomial fits.

Residuals:
  nn   -- nearest-neighbour: sqrt(J/(J+1)) * (y_i - mean of the J closest
          running-variable neighbours), ties at the J-th distance included
  hc0  -- plug-in residuals from the fit
  hc1  -- plug-in residuals scaled by sqrt(n/(n-k))

Sandwich:
  V = G^{-1} M G^{-1},   M = sum_i psi_i psi_i',   psi_i = RX_i * e_i
with RX the kernel-weighted design (or the bias-corrected score matrix Q).
Clustered: scores summed within cluster, scaled by ((n-1)/(n-k)) * (g/(g-1)).
With fewer than `min_clusters` clusters in the window the unclustered
sandwich is used and the fallback is reported to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .config import RDConfig
from .errors import InsufficientDataError

logger = logging.getLogger(__name__)


def nn_residuals(x: np.ndarray, y: np.ndarray, matches: int = 3) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n = len(x)
    if n < 2:
        raise InsufficientDataError("Nearest-neighbour residuals need at least 2 observations")
    J = min(matches, n - 1)

    order = np.argsort(x, kind="mergesort")
    xs, ys = x[order], y[order]
    idx = np.arange(n)

    # Distance to the J-th nearest neighbour: the J nearest always lie within J positions.
    cand = []
    for k in range(1, J + 1):
        lo_ok = idx - k >= 0
        hi_ok = idx + k < n
        cand.append(np.where(lo_ok, xs - xs[np.where(lo_ok, idx - k, 0)], np.inf))
        cand.append(np.where(hi_ok, xs[np.where(hi_ok, idx + k, 0)] - xs, np.inf))
    dist = np.partition(np.column_stack(cand), J - 1, axis=1)[:, J - 1]
    dist = dist + 1e-10 * (np.abs(xs) + dist)

    lo = np.searchsorted(xs, xs - dist, side="left")
    hi = np.searchsorted(xs, xs + dist, side="right")
    csum = np.concatenate([[0.0], np.cumsum(ys)])
    n_nb = hi - lo - 1
    y_nb = (csum[hi] - csum[lo] - ys) / n_nb

    res_sorted = np.sqrt(n_nb / (n_nb + 1.0)) * (ys - y_nb)
    res = np.empty(n)
    res[order] = res_sorted
    return res


@dataclass(frozen=True)
class SandwichResult:
    V: np.ndarray
    n_clusters: int | None
    fallback: bool


class VarianceEstimator:
    """Residuals and (cluster-)robust sandwich variances, configured once."""

    def __init__(self, config: RDConfig):
        self.vce = config.vce
        self.nn_matches = config.nn_matches
        self.min_clusters = config.min_clusters

    def residuals(self, x: np.ndarray, y: np.ndarray, fitted: np.ndarray | None, n_params: int) -> np.ndarray:
        if self.vce == "nn":
            return nn_residuals(x, y, self.nn_matches)
        res = np.asarray(y, dtype=float) - np.asarray(fitted, dtype=float)
        if self.vce == "hc1":
            n = len(res)
            if n <= n_params:
                raise InsufficientDataError("hc1 residuals need more observations than parameters")
            res = np.sqrt(n / (n - n_params)) * res
        return res

    def meat(self, RX: np.ndarray, res: np.ndarray, cluster: np.ndarray | None = None) -> tuple[np.ndarray, int | None, bool]:
        scores = RX * res[:, None]
        if cluster is None:
            return scores.T @ scores, None, False

        codes, uniques = pd.factorize(np.asarray(cluster), sort=True)
        g = len(uniques)
        n, k = RX.shape
        if g < self.min_clusters or n <= k:
            return scores.T @ scores, g, True

        sums = np.zeros((g, k))
        np.add.at(sums, codes, scores)
        adj = ((n - 1) / (n - k)) * (g / (g - 1))
        return adj * (sums.T @ sums), g, False

    def sandwich(self, inv_g: np.ndarray, RX: np.ndarray, res: np.ndarray, cluster: np.ndarray | None = None) -> SandwichResult:
        M, g, fallback = self.meat(RX, res, cluster)
        if fallback:
            logger.warning("Only %s cluster(s) within bandwidth; using unclustered variance", g)
        return SandwichResult(V=inv_g @ M @ inv_g, n_clusters=g, fallback=fallback)
