"""
estimator.py
============

Local polynomial RD estimation with bias correction.

Per side of the cutoff (left: x < 0, right: x >= 0, x = running - cutoff):

  beta_p  = WLS of y on (1, x, .., x^p)      with weights K(x/h)/h
  beta_q  = WLS of y on (1, x, .., x^(p+1))  with weights K(x/b)/b
  beta_bc = beta_p - h^(p+1) * G_p^{-1} L * beta_q[p+1]
            L = sum_i K_h(x_i) r_p(x_i) (x_i/h)^(p+1)

Conventional limits come from beta_p[0], bias-corrected limits from
beta_bc[0]. The reported effect is oriented by the treated side:

  effect = limit(treated side) - limit(untreated side)

so with `treated_side="below"` the effect is left - right.

Covariates enter with one pooled coefficient (see `lpoly.pooled_gamma`) and
the fit runs on y - Z gamma.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

import numpy as np
from scipy.stats import norm

from .config import RDConfig
from .errors import ConfigurationError, InsufficientDataError
from .lpoly import clean_inputs, kernel_weights, poly_design, pooled_gamma, xx_inverse
from .variance import VarianceEstimator


@dataclass(frozen=True)
class SideFit:
    n: int
    n_h: int
    n_b: int
    limit_cl: float
    limit_bc: float
    var_cl: float
    var_rb: float
    cluster_fallback: bool


@dataclass(frozen=True)
class EstimationResult:
    # Sample sizes
    n_total: int
    n_left: int
    n_right: int
    n_h_left: int
    n_h_right: int
    n_b_left: int
    n_b_right: int
    # Design
    cutoff: float
    p: int
    q: int
    h_left: float
    h_right: float
    b_left: float
    b_right: float
    bwselect: str
    kernel: str
    vce: str
    treated_side: str
    # Point estimates (oriented) and side limits
    tau_cl: float
    tau_bc: float
    tau_cl_left: float
    tau_cl_right: float
    tau_bc_left: float
    tau_bc_right: float
    # Standard errors
    se_cl: float
    se_rb: float
    # Outcome means within bandwidth
    mean_below_h: float
    mean_above_h: float
    mean_below_b: float
    mean_above_b: float
    # Covariates / clustering
    covariates: tuple[str, ...] = ()
    n_clusters: int | None = None
    warnings: tuple[str, ...] = ()

    def _ci(self, est: float, se: float, level: float) -> tuple[float, float]:
        z = norm.ppf(0.5 + level / 200.0)
        return est - z * se, est + z * se

    def ci_conventional(self, level: float = 95.0) -> tuple[float, float]:
        return self._ci(self.tau_cl, self.se_cl, level)

    def ci_robust(self, level: float = 95.0) -> tuple[float, float]:
        return self._ci(self.tau_bc, self.se_rb, level)

    @property
    def pvalue_cl(self) -> float:
        return normal_pvalue(self.tau_cl, self.se_cl)

    @property
    def pvalue_rb(self) -> float:
        return normal_pvalue(self.tau_bc, self.se_rb)

    def to_row(self, level: float = 95.0) -> dict:
        row = asdict(self)
        row["covariates"] = ",".join(self.covariates)
        row["warnings"] = ";".join(self.warnings)
        row["n_clusters"] = np.nan if self.n_clusters is None else self.n_clusters
        row["ci_lower_cl"], row["ci_upper_cl"] = self.ci_conventional(level)
        row["ci_lower_rb"], row["ci_upper_rb"] = self.ci_robust(level)
        row["p_value_cl"] = self.pvalue_cl
        row["p_value_rb"] = self.pvalue_rb
        return row


def normal_pvalue(estimate: float, se: float) -> float:
    """Two-sided normal-approximation p-value; NaN when SE is missing or zero."""
    if se is None or not np.isfinite(se) or se <= 0 or not np.isfinite(estimate):
        return float("nan")
    return float(2.0 * norm.sf(abs(estimate / se)))


class LocalPolynomialEstimator:
    """Conventional and bias-corrected local polynomial RD estimates."""

    def __init__(self, config: RDConfig, variance: VarianceEstimator | None = None):
        self.config = config
        self.variance = variance or VarianceEstimator(config)

    def fit_side(self, x, y, h, b, p, cluster=None) -> SideFit:
        q = p + 1
        w_h = kernel_weights(x, h, self.config.kernel)
        w_b = kernel_weights(x, b, self.config.kernel)
        in_h = w_h > 0
        in_b = w_b > 0
        n_h, n_b = int(in_h.sum()), int(in_b.sum())
        if n_h < p + 2:
            raise InsufficientDataError(f"{n_h} observations within h={h:.4g}; order {p} needs {p + 2}")
        if n_b < q + 1:
            raise InsufficientDataError(f"{n_b} observations within b={b:.4g}; order {q} needs {q + 1}")

        ind = in_h | in_b
        ex, ey, wh, wb = x[ind], y[ind], w_h[ind], w_b[ind]
        ec = None if cluster is None else cluster[ind]

        R_q = poly_design(ex, q)
        R_p = R_q[:, : p + 1]
        inv_gp = xx_inverse(R_p[wh > 0], wh[wh > 0])
        inv_gq = xx_inverse(R_q[wb > 0], wb[wb > 0])

        RpW = R_p * wh[:, None]
        beta_p = inv_gp @ (RpW.T @ ey)
        beta_q = inv_gq @ ((R_q * wb[:, None]).T @ ey)

        L = RpW.T @ (ex / h) ** (p + 1)
        Q = RpW - h ** (p + 1) * np.outer(wb * (R_q @ inv_gq)[:, p + 1], L)
        beta_bc = inv_gp @ (Q.T @ ey)

        res_h = self.variance.residuals(ex, ey, R_p @ beta_p, p + 1)
        res_b = res_h if self.variance.vce == "nn" else self.variance.residuals(ex, ey, R_q @ beta_q, q + 1)
        v_cl = self.variance.sandwich(inv_gp, RpW, res_h, ec)
        v_rb = self.variance.sandwich(inv_gp, Q, res_b, ec)

        return SideFit(
            n=len(x),
            n_h=n_h,
            n_b=n_b,
            limit_cl=float(beta_p[0]),
            limit_bc=float(beta_bc[0]),
            var_cl=float(v_cl.V[0, 0]),
            var_rb=float(v_rb.V[0, 0]),
            cluster_fallback=v_cl.fallback or v_rb.fallback,
        )

    def covariate_gamma(self, x, y, Z, h_left, h_right, p) -> np.ndarray:
        left = x < 0
        right = ~left
        sides = [
            (x[left], y[left], Z[left], kernel_weights(x[left], h_left, self.config.kernel)),
            (x[right], y[right], Z[right], kernel_weights(x[right], h_right, self.config.kernel)),
        ]
        for *_, sw in sides:
            if int((sw > 0).sum()) < p + 2:
                raise InsufficientDataError("Too few observations within bandwidth to partial out covariates")
        return pooled_gamma(sides, p)

    def fit(
        self,
        running,
        outcome,
        *,
        p: int,
        h_left: float,
        h_right: float | None = None,
        b_left: float | None = None,
        b_right: float | None = None,
        covariates=None,
        covariate_names: tuple[str, ...] = (),
        cluster=None,
        bwselect: str = "manual",
        extra_warnings: tuple[str, ...] = (),
    ) -> EstimationResult:
        if p < 0:
            raise ConfigurationError("Polynomial order must be non-negative")
        h_right = h_left if h_right is None else h_right
        if b_right is None:
            b_right = h_right if b_left is None else b_left
        b_left = h_left if b_left is None else b_left

        x, y, Z, C = clean_inputs(running, outcome, covariates, cluster)
        x = x - self.config.cutoff
        left = x < 0
        right = ~left
        if left.sum() == 0 or right.sum() == 0:
            raise InsufficientDataError("Observations are needed on both sides of the cutoff")

        y_raw = y
        if Z is not None:
            gamma = self.covariate_gamma(x, y, Z, h_left, h_right, p)
            y = y - Z @ gamma

        fit_l = self.fit_side(x[left], y[left], h_left, b_left, p, None if C is None else C[left])
        fit_r = self.fit_side(x[right], y[right], h_right, b_right, p, None if C is None else C[right])

        # Conditional means are reported on the unadjusted outcome.
        mean_l_h, mean_l_b = _window_means(x[left], y_raw[left], h_left, b_left)
        mean_r_h, mean_r_b = _window_means(x[right], y_raw[right], h_right, b_right)

        sign = -1.0 if self.config.treated_side == "below" else 1.0
        tau_cl = sign * (fit_r.limit_cl - fit_l.limit_cl)
        tau_bc = sign * (fit_r.limit_bc - fit_l.limit_bc)

        warnings = list(extra_warnings)
        if fit_l.cluster_fallback or fit_r.cluster_fallback:
            warnings.append("cluster_fallback")

        n_clusters = None
        if C is not None:
            n_clusters = int(len(np.unique(C[(np.abs(x) <= max(h_left, h_right))].astype(str))))

        return EstimationResult(
            n_total=len(x),
            n_left=fit_l.n,
            n_right=fit_r.n,
            n_h_left=fit_l.n_h,
            n_h_right=fit_r.n_h,
            n_b_left=fit_l.n_b,
            n_b_right=fit_r.n_b,
            cutoff=float(self.config.cutoff),
            p=int(p),
            q=int(p + 1),
            h_left=float(h_left),
            h_right=float(h_right),
            b_left=float(b_left),
            b_right=float(b_right),
            bwselect=bwselect,
            kernel=self.config.kernel,
            vce=self.config.vce + ("-cluster" if C is not None else ""),
            treated_side=self.config.treated_side,
            tau_cl=float(tau_cl),
            tau_bc=float(tau_bc),
            tau_cl_left=fit_l.limit_cl,
            tau_cl_right=fit_r.limit_cl,
            tau_bc_left=fit_l.limit_bc,
            tau_bc_right=fit_r.limit_bc,
            se_cl=float(np.sqrt(fit_l.var_cl + fit_r.var_cl)),
            se_rb=float(np.sqrt(fit_l.var_rb + fit_r.var_rb)),
            mean_below_h=mean_l_h,
            mean_above_h=mean_r_h,
            mean_below_b=mean_l_b,
            mean_above_b=mean_r_b,
            covariates=tuple(covariate_names),
            n_clusters=n_clusters,
            warnings=tuple(warnings),
        )


def _window_means(x, y, h, b) -> tuple[float, float]:
    in_h = np.abs(x) < h
    in_b = np.abs(x) < b
    mean_h = float(y[in_h].mean()) if in_h.any() else float("nan")
    mean_b = float(y[in_b].mean()) if in_b.any() else float("nan")
    return mean_h, mean_b
