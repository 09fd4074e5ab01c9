"""
crosscheck.py
=============

Kernel-weighted local-linear RD as a plain regression, via pyfixest:

  y ~ treat + x + treat_x,   weights = K(x/h),   |x| < h

`treat` marks the treated side, so the coefficient on `treat` is the same
oriented effect the local polynomial estimator reports at p=1 with h = b.
Standard errors are heteroskedasticity-robust, or CRV1 by cluster.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
import pyfixest as pf

from .errors import InsufficientDataError
from .lpoly import clean_inputs, kernel_weights
from .running import is_eligible


@dataclass(frozen=True)
class CrosscheckResult:
    coefficient: float
    std_error: float
    p_value: float
    n_obs: int
    h: float
    vcov: str


def local_linear_check(
    running,
    outcome,
    h: float,
    cutoff: float = 0.0,
    cluster=None,
    treated_side: str = "below",
) -> CrosscheckResult:
    x, y, _, C = clean_inputs(running, outcome, None, cluster)
    x = x - cutoff
    k = kernel_weights(x, h)
    ind = k > 0
    treat = is_eligible(x, treated_side).astype(float)
    if treat[ind].sum() < 2 or (1 - treat[ind]).sum() < 2:
        raise InsufficientDataError(f"Need two observations per side within h={h:.4g}")

    df = pd.DataFrame({
        "y": y[ind],
        "treat": treat[ind],
        "x": x[ind],
        "k_weight": k[ind],
    })
    df["treat_x"] = df["treat"] * df["x"]
    if C is not None:
        df["cluster"] = C[ind]
        vcov = {"CRV1": "cluster"}
    else:
        vcov = "hetero"

    m = pf.feols("y ~ treat + x + treat_x", data=df, vcov=vcov, weights="k_weight")
    return CrosscheckResult(
        coefficient=float(m.coef().get("treat", np.nan)),
        std_error=float(m.se().get("treat", np.nan)),
        p_value=float(m.pvalue().get("treat", np.nan)),
        n_obs=int(len(df)),
        h=float(h),
        vcov=str(vcov),
    )
