"""
simulate.py
===========

Synthetic single-mother household survey microdata.

Two periods of person-level records. A share of households is re-interviewed
in the second period (`in_panel = 1`, same hh_id / person_id, ages + 1); the
rest are replaced by fresh households. Attendance jumps by `effect` for
members under 25 in households whose income is below the period threshold.

`bunching` moves that share of households to just below the threshold, to
exercise the manipulation test.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

DEFAULT_THRESHOLDS = {"2019": 89.0, "2020": 89.0}


def _households(rng, n, start_id, threshold, income_sd, n_regions, bunching):
    income = threshold + rng.normal(0, income_sd, n)
    bunched = rng.random(n) < bunching
    income[bunched] = threshold - rng.uniform(0, 0.05 * income_sd, bunched.sum())
    return pd.DataFrame({
        "hh_id": np.arange(start_id, start_id + n),
        "income": np.clip(income, 0, None).round(2),
        "urban": rng.binomial(1, 0.6, n),
        "region": rng.integers(1, n_regions + 1, n),
        "head_educ": rng.integers(0, 17, n),
        "weight": rng.uniform(50, 150, n).round(1),
        "n_members": 1 + rng.poisson(2.5, n),
    })


def _members(rng, hh):
    idx = np.repeat(np.arange(len(hh)), hh["n_members"].to_numpy())
    pos = pd.Series(idx).groupby(idx).cumcount().to_numpy()
    n = len(idx)
    head = pos == 0
    age = np.where(head, rng.integers(25, 56, n), rng.integers(0, 25, n))
    # Some 18-24 year olds are not children of the head (nieces, in-laws, ...)
    other = ~head & (age >= 18) & (rng.random(n) < 0.25)
    persons = pd.DataFrame({
        "hh_id": hh["hh_id"].to_numpy()[idx],
        "person_id": pos + 1,
        "age": age,
        "male": np.where(head, 0, rng.binomial(1, 0.5, n)),
        "head": head.astype(int),
        "child": (~head & ~other).astype(int),
    })
    for col in ("income", "urban", "region", "head_educ", "weight"):
        persons[col] = hh[col].to_numpy()[idx]
    return persons


def _attend_prob(age, running, effect):
    base = np.select([age < 6, age < 18, age < 25], [0.5, 0.9, 0.35], default=0.03)
    p = base + effect * ((running < 0) & (age < 25)) - 0.0005 * running
    return np.clip(p, 0.01, 0.99)


def simulate_survey(
    n_households: int = 2000,
    seed: int = 0,
    effect: float = 0.10,
    thresholds: dict[str, float] | None = None,
    income_sd: float = 40.0,
    panel_share: float = 0.7,
    persistence: float = 0.6,
    n_regions: int = 8,
    bunching: float = 0.0,
) -> pd.DataFrame:
    thresholds = dict(thresholds or DEFAULT_THRESHOLDS)
    if len(thresholds) != 2:
        raise ValueError("simulate_survey needs exactly two period thresholds")
    (p0, c0), (p1, c1) = sorted(thresholds.items())
    rng = np.random.default_rng(seed)

    # Baseline
    hh0 = _households(rng, n_households, 1, c0, income_sd, n_regions, bunching)
    in_panel = rng.random(n_households) < panel_share
    per0 = _members(rng, hh0)
    per0["attend"] = rng.binomial(1, _attend_prob(per0["age"].to_numpy(), per0["income"].to_numpy() - c0, effect))
    per0["in_panel"] = per0["hh_id"].map(dict(zip(hh0["hh_id"], in_panel.astype(int))))
    per0["year"] = p0

    # Follow-up: panel households re-interviewed, the rest replaced
    panel = per0.loc[per0["in_panel"] == 1].copy()
    hh_income1 = hh0.set_index("hh_id")["income"] + rng.normal(0, 0.25 * income_sd, n_households)
    panel["income"] = panel["hh_id"].map(hh_income1.clip(lower=0).round(2))
    panel["age"] = panel["age"] + 1
    fresh_draw = rng.binomial(1, _attend_prob(panel["age"].to_numpy(), panel["income"].to_numpy() - c1, effect))
    keep = rng.random(len(panel)) < persistence
    panel["attend"] = np.where(keep, panel["attend"].to_numpy(), fresh_draw)

    n_fresh = int((~in_panel).sum())
    hh1 = _households(rng, n_fresh, n_households + 1, c1, income_sd, n_regions, bunching)
    fresh = _members(rng, hh1)
    fresh["attend"] = rng.binomial(1, _attend_prob(fresh["age"].to_numpy(), fresh["income"].to_numpy() - c1, effect))
    fresh["in_panel"] = 0

    per1 = pd.concat([panel, fresh], ignore_index=True)
    per1["year"] = p1

    out = pd.concat([per0, per1], ignore_index=True)
    out["quarter"] = 4
    cols = [
        "hh_id", "person_id", "year", "quarter", "income", "attend", "age", "male",
        "head", "child", "urban", "head_educ", "region", "weight", "in_panel",
    ]
    return out[cols]
