"""
bandwidth.py
============

MSE-optimal bandwidth selection for local polynomial RD (triangular kernel).

Three plug-in stages, each balancing a variance constant V against a squared
bias constant B (plus a regularisation term R):

  d  -- curvature pilot:       order q+1 fit, bias from an order-(q+2) fit over the side
  b  -- bias-correction bw:    order q fit targeting derivative p+1, bias at d
  h  -- main bw:               order p fit targeting the intercept, bias at b

  bw = (V / (B^2 + R)) ^ (1 / (2*order + 3))

V carries the 1/n factor, so h scales as n^(-1/(2p+3)).
`mserd` pools both sides into one bandwidth (summed V over the squared bias
difference); `msetwo` keeps a separate bandwidth per side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .config import BW_METHODS, RDConfig
from .errors import ConfigurationError, InsufficientDataError
from .lpoly import clean_inputs, kernel_weights, poly_design, pooled_gamma, xx_inverse
from .variance import VarianceEstimator

logger = logging.getLogger(__name__)

# Pilot constant for the triangular kernel.
PILOT_CONSTANT = 2.576


@dataclass(frozen=True)
class BandwidthChoice:
    h_left: float
    h_right: float
    b_left: float
    b_right: float
    method: str
    pilot: float
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Terms:
    V: float
    B: float
    R: float
    rate: float


class BandwidthSelector:
    def __init__(self, config: RDConfig, variance: VarianceEstimator | None = None):
        self.config = config
        self.variance = variance or VarianceEstimator(config)

    def _terms(self, x, y, cluster, o, nu, o_b, h_v, h_b, scale) -> _Terms:
        kernel = self.config.kernel

        w = kernel_weights(x, h_v, kernel)
        ind = w > 0
        if int(ind.sum()) < o + 2:
            raise InsufficientDataError(f"{int(ind.sum())} observations within pilot bandwidth {h_v:.4g}; order {o} needs {o + 2}")
        ex, ey, ew = x[ind], y[ind], w[ind]
        ec = None if cluster is None else cluster[ind]
        R_v = poly_design(ex, o)
        inv_gv = xx_inverse(R_v, ew)
        RvW = R_v * ew[:, None]
        beta_v = inv_gv @ (RvW.T @ ey)
        res_v = self.variance.residuals(ex, ey, R_v @ beta_v, o + 1)
        M, _, _ = self.variance.meat(RvW, res_v, ec)
        V_v = (inv_gv @ M @ inv_gv)[nu, nu]
        v = RvW.T @ (ex / h_v) ** (o + 1)
        b_const = (h_v ** np.arange(o + 1) * (inv_gv @ v))[nu]

        w = kernel_weights(x, h_b, kernel)
        ind = w > 0
        if int(ind.sum()) < o_b + 2:
            raise InsufficientDataError(f"{int(ind.sum())} observations within bias bandwidth {h_b:.4g}; order {o_b} needs {o_b + 2}")
        ex, ey, ew = x[ind], y[ind], w[ind]
        ec = None if cluster is None else cluster[ind]
        R_b = poly_design(ex, o_b)
        inv_gb = xx_inverse(R_b, ew)
        RbW = R_b * ew[:, None]
        beta_b = inv_gb @ (RbW.T @ ey)

        bw_reg = 0.0
        if scale > 0:
            res_b = self.variance.residuals(ex, ey, R_b @ beta_b, o_b + 1)
            M, _, _ = self.variance.meat(RbW, res_b, ec)
            V_b = (inv_gb @ M @ inv_gb)[o + 1, o + 1]
            bw_reg = 3.0 * b_const ** 2 * V_b

        return _Terms(
            V=float((2 * nu + 1) * h_v ** (2 * nu + 1) * V_v),
            B=float(np.sqrt(2 * (o + 1 - nu)) * b_const * beta_b[o + 1]),
            R=float(scale * 2 * (o + 1 - nu) * bw_reg),
            rate=1.0 / (2 * o + 3),
        )

    @staticmethod
    def _ratio(num: float, den: float, rate: float) -> float | None:
        if not (np.isfinite(num) and np.isfinite(den)) or num <= 0 or den <= 0:
            return None
        return float((num / den) ** rate)

    def _bound(self, value, lo, hi, stage, warnings) -> float:
        if value is None:
            warnings.append(f"bandwidth_fallback:{stage}")
            logger.warning("Degenerate %s bandwidth ratio; using the running-variable range", stage)
            value = hi
        return float(min(max(value, lo), hi))

    def _bw_min(self, xs_abs: np.ndarray) -> float:
        if self.config.bwcheck is None:
            return 0.0
        uniq = np.unique(xs_abs)
        return float(uniq[min(self.config.bwcheck, len(uniq)) - 1])

    def select(
        self,
        running,
        outcome,
        p: int,
        method: str = "mserd",
        covariates=None,
        cluster=None,
    ) -> BandwidthChoice:
        if method not in BW_METHODS:
            raise ConfigurationError(f"Unknown bandwidth method {method!r}; expected one of {BW_METHODS}")

        x, y, Z, C = clean_inputs(running, outcome, covariates, cluster)
        x = x - self.config.cutoff

        left = x < 0
        right = ~left
        n = len(x)
        if left.sum() < 2 or right.sum() < 2:
            raise InsufficientDataError("Bandwidth selection needs observations on both sides of the cutoff")

        q = p + 1
        scale = self.config.scaleregul
        warnings: list[str] = []

        range_l = float(np.abs(x[left]).max())
        range_r = float(np.abs(x[right]).max())
        bw_max = max(range_l, range_r)
        bw_min_l = self._bw_min(np.abs(x[left]))
        bw_min_r = self._bw_min(np.abs(x[right]))
        bw_min = max(bw_min_l, bw_min_r)

        x_sd = float(np.std(x, ddof=1))
        x_iqr = float(np.subtract(*np.percentile(x, [75, 25])))
        spread = min(x_sd, x_iqr / 1.349) if x_iqr > 0 else x_sd
        c_bw = PILOT_CONSTANT * spread * n ** (-1.0 / 5.0)
        c_bw = min(max(c_bw, bw_min), bw_max)

        if Z is not None:
            sides = [
                (x[left], y[left], Z[left], kernel_weights(x[left], c_bw, self.config.kernel)),
                (x[right], y[right], Z[right], kernel_weights(x[right], c_bw, self.config.kernel)),
            ]
            y = y - Z @ pooled_gamma(sides, q)

        xl, yl = x[left], y[left]
        xr, yr = x[right], y[right]
        cl = None if C is None else C[left]
        cr = None if C is None else C[right]

        # Stage d: curvature pilot
        d_l = self._terms(xl, yl, cl, q + 1, q + 1, q + 2, c_bw, range_l + 1e-8, 0.0)
        d_r = self._terms(xr, yr, cr, q + 1, q + 1, q + 2, c_bw, range_r + 1e-8, 0.0)
        if method == "mserd":
            d = self._ratio(d_l.V + d_r.V, (d_r.B - d_l.B) ** 2, d_l.rate)
            d_bw_l = d_bw_r = self._bound(d, bw_min, bw_max, "d", warnings)
        else:
            d_bw_l = self._bound(self._ratio(d_l.V, d_l.B ** 2, d_l.rate), bw_min_l, range_l, "d_left", warnings)
            d_bw_r = self._bound(self._ratio(d_r.V, d_r.B ** 2, d_r.rate), bw_min_r, range_r, "d_right", warnings)

        # Stage b: bias-correction bandwidth
        b_l = self._terms(xl, yl, cl, q, p + 1, q + 1, c_bw, d_bw_l, scale)
        b_r = self._terms(xr, yr, cr, q, p + 1, q + 1, c_bw, d_bw_r, scale)
        if method == "mserd":
            b = self._ratio(b_l.V + b_r.V, (b_r.B - b_l.B) ** 2 + scale * (b_l.R + b_r.R), b_l.rate)
            b_bw_l = b_bw_r = self._bound(b, bw_min, bw_max, "b", warnings)
        else:
            b_bw_l = self._bound(self._ratio(b_l.V, b_l.B ** 2 + scale * b_l.R, b_l.rate), bw_min_l, range_l, "b_left", warnings)
            b_bw_r = self._bound(self._ratio(b_r.V, b_r.B ** 2 + scale * b_r.R, b_r.rate), bw_min_r, range_r, "b_right", warnings)

        # Stage h: main bandwidth
        h_l = self._terms(xl, yl, cl, p, 0, q, c_bw, b_bw_l, scale)
        h_r = self._terms(xr, yr, cr, p, 0, q, c_bw, b_bw_r, scale)
        if method == "mserd":
            h = self._ratio(h_l.V + h_r.V, (h_r.B - h_l.B) ** 2 + scale * (h_l.R + h_r.R), h_l.rate)
            h_bw_l = h_bw_r = self._bound(h, bw_min, bw_max, "h", warnings)
        else:
            h_bw_l = self._bound(self._ratio(h_l.V, h_l.B ** 2 + scale * h_l.R, h_l.rate), bw_min_l, range_l, "h_left", warnings)
            h_bw_r = self._bound(self._ratio(h_r.V, h_r.B ** 2 + scale * h_r.R, h_r.rate), bw_min_r, range_r, "h_right", warnings)

        return BandwidthChoice(
            h_left=h_bw_l,
            h_right=h_bw_r,
            b_left=b_bw_l,
            b_right=b_bw_r,
            method=method,
            pilot=float(c_bw),
            warnings=tuple(warnings),
        )
