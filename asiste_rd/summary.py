"""
summary.py
==========

Significance stars and the per-subgroup forest summary.

The forest table takes one specification column out of the result rows and
reports, per subgroup:

  Estimate, SE, CI_Width = z * SE, CI_Lower/CI_Upper = Estimate -/+ CI_Width,
  N (households with a defined outcome), Significance (stars from Estimate/SE)

Static RD defaults to the treated-minus-untreated difference of outcome means
within h with the conventional SE. DiDC defaults to the bias-corrected
estimate with the conventional SE.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from .estimator import normal_pvalue

COEFFICIENTS = {"conventional": "tau_cl", "bias_corrected": "tau_bc"}
# Treated minus untreated outcome mean within h; not a COEFFICIENTS column.
MEAN_DIFFERENCE = "mean_difference"
STANDARD_ERRORS = {"conventional": "se_cl", "robust": "se_rb"}

FOREST_COLUMNS = [
    "Group",
    "Category",
    "Estimate",
    "SE",
    "CI_Width",
    "CI_Lower",
    "CI_Upper",
    "N",
    "Significance",
]


def significance_stars(estimate, se) -> str:
    p = normal_pvalue(estimate, se)
    if np.isnan(p):
        return ""
    if p < 0.01:
        return "***"
    if p < 0.05:
        return "**"
    if p < 0.10:
        return "*"
    return ""


def _estimate(r, coefficient: str) -> float:
    if coefficient == MEAN_DIFFERENCE:
        diff = r["mean_below_h"] - r["mean_above_h"]
        if r.get("treated_side", "below") == "above":
            diff = -diff
        return float(diff) if pd.notna(diff) else np.nan
    col = COEFFICIENTS[coefficient]
    return float(r[col]) if pd.notna(r[col]) else np.nan


def forest_table(
    rows: pd.DataFrame | list[dict],
    spec_label: str = "Cluster With Controls",
    p: int = 1,
    outcome: str | None = None,
    coefficient: str | None = None,
    se: str = "conventional",
    z: float = 1.96,
) -> pd.DataFrame:
    df = pd.DataFrame(rows)
    if df.empty:
        return pd.DataFrame(columns=FOREST_COLUMNS)
    if coefficient is None:
        didc = "mode" in df.columns and (df["mode"] == "didc").all()
        coefficient = "bias_corrected" if didc else MEAN_DIFFERENCE
    if coefficient != MEAN_DIFFERENCE and coefficient not in COEFFICIENTS:
        raise ValueError(f"Unknown coefficient {coefficient!r}")
    se_col = STANDARD_ERRORS[se]

    sel = (df["spec_label"] == spec_label) & (df["p"] == p)
    if outcome is not None:
        sel &= df["outcome"] == outcome
    df = df.loc[sel].sort_values("subgroup", kind="mergesort")

    out = []
    for _, r in df.iterrows():
        est = _estimate(r, coefficient)
        s = float(r[se_col]) if pd.notna(r[se_col]) else np.nan
        width = z * s
        out.append({
            "Group": r["label"],
            "Category": r["category"],
            "Estimate": est,
            "SE": s,
            "CI_Width": width,
            "CI_Lower": est - width,
            "CI_Upper": est + width,
            "N": r["n_obs_original"],
            "Significance": significance_stars(est, s),
        })
    return pd.DataFrame(out, columns=FOREST_COLUMNS)
