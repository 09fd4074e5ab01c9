"""
households.py
=============

Subgroup definitions and household-level analysis frames.

Person-level survey records are collapsed to one row per household:

  - income / period / region / urban:  household values (first non-missing)
  - hh_size:                           number of members
  - prop_male:                         share of male members
  - head_educ:                         education of the household head
  - <outcome>:                         mean outcome over subgroup members
                                       (NaN when the household has none)

Panel frames (DiDC and attendance transitions) pair the members present in
both periods on (hh_id, person_id). Subgroup membership is taken at baseline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .config import ColumnMap, RDConfig
from .errors import ConfigurationError
from .running import RunningVariableBuilder

logger = logging.getLogger(__name__)

TRANSITIONS = ("start", "stop")


@dataclass(frozen=True)
class SubgroupDefinition:
    code: str
    name: str
    label: str
    category: str
    min_age: float | None
    age_below: float
    sex: str | None = None
    child_only: bool = False

    def mask(self, obs: pd.DataFrame, columns: ColumnMap) -> pd.Series:
        age = obs[columns.age]
        m = age.notna() & (age < self.age_below)
        if self.min_age is not None:
            m &= age >= self.min_age
        if self.sex == "male":
            m &= obs[columns.male] == 1
        elif self.sex == "female":
            m &= obs[columns.male] == 0
        if self.child_only:
            m &= obs[columns.child] == 1
        return m


SUBGROUPS: tuple[SubgroupDefinition, ...] = (
    SubgroupDefinition("01", "young_sons", "Young Sons (18-24)", "Young Adults", 18, 25, "male", True),
    SubgroupDefinition("02", "young_daughters", "Young Daughters (18-24)", "Young Adults", 18, 25, "female", True),
    SubgroupDefinition("03", "young_children", "Youth (18-24)", "Young Adults", 18, 25, None, True),
    SubgroupDefinition("04", "young_men", "Young Men (18-24)", "Young Adults", 18, 25, "male", False),
    SubgroupDefinition("05", "young_women", "Young Women (18-24)", "Young Adults", 18, 25, "female", False),
    SubgroupDefinition("06", "young_adults", "Young Adults (18-24)", "Young Adults", 18, 25, None, False),
    SubgroupDefinition("07", "boys", "Boys (<18)", "Children", None, 18, "male", True),
    SubgroupDefinition("08", "girls", "Girls (<18)", "Children", None, 18, "female", True),
    SubgroupDefinition("09", "kids", "Kids (<18)", "Children", None, 18, None, True),
)


def get_subgroup(key: str) -> SubgroupDefinition:
    """Look up a subgroup by code ("01") or name ("young_sons")."""
    for sg in SUBGROUPS:
        if key in (sg.code, sg.name):
            return sg
    raise ConfigurationError(f"Unknown subgroup {key!r}")


# ============================================================
# PERIODS
# ============================================================

def period_labels(years: pd.Series) -> pd.Series:
    """String period labels; numeric years become "2019" rather than "2019.0"."""
    numeric = pd.to_numeric(years, errors="coerce")
    if numeric.notna().all():
        return numeric.astype(int).astype(str)
    return years.astype(str)


def select_period(obs: pd.DataFrame, config: RDConfig, period: str | None) -> pd.DataFrame:
    cols = config.columns
    _require(obs, (cols.year,))
    labels = period_labels(obs[cols.year])
    if period is None:
        if labels.nunique() > 1:
            raise ConfigurationError(
                f"Data spans periods {sorted(labels.unique())}; choose one with `period`"
            )
        return obs
    out = obs.loc[labels == str(period)]
    if out.empty:
        raise ConfigurationError(f"No observations for period {period!r}")
    return out


def resolve_rd_period(obs: pd.DataFrame, config: RDConfig) -> str | None:
    if config.rd_period is not None:
        return config.rd_period
    labels = period_labels(obs[config.columns.year])
    if labels.nunique() <= 1:
        return None
    logger.info("Multiple periods in data; static RD uses period %s", config.didc_periods[0])
    return config.didc_periods[0]


# ============================================================
# HOUSEHOLD AGGREGATION
# ============================================================

def _require(frame: pd.DataFrame, names) -> None:
    missing = [n for n in names if n not in frame.columns]
    if missing:
        raise ConfigurationError(f"Missing required columns: {missing}")


def household_table(obs: pd.DataFrame, config: RDConfig) -> pd.DataFrame:
    """One row per household with income, period and household controls."""
    cols = config.columns
    _require(obs, (cols.hh_id, cols.income, cols.year, cols.age, cols.male, cols.head))

    work = obs.copy()
    if cols.head_educ in work.columns:
        work["_head_educ"] = work[cols.head_educ].where(work[cols.head] == 1)
    else:
        work["_head_educ"] = np.nan

    agg = {
        cols.income: (cols.income, "first"),
        cols.year: (cols.year, "first"),
        "hh_size": (cols.age, "size"),
        "prop_male": (cols.male, "mean"),
        "head_educ": ("_head_educ", "first"),
    }
    if cols.quarter in work.columns:
        agg[cols.quarter] = (cols.quarter, "first")
    if cols.urban in work.columns:
        agg["urban"] = (cols.urban, "first")
    if cols.region in work.columns:
        agg["region"] = (cols.region, "first")

    return work.groupby(cols.hh_id, sort=True).agg(**agg).reset_index()


def build_household_frame(
    obs: pd.DataFrame,
    subgroup: SubgroupDefinition,
    config: RDConfig,
    outcome: str = "attend",
    period: str | None = None,
) -> pd.DataFrame:
    """Static RD frame: household controls, subgroup outcome mean, running variable."""
    cols = config.columns
    obs = select_period(obs, config, period)
    _require(obs, (outcome,))

    members = subgroup.mask(obs, cols)
    by_hh = obs[cols.hh_id]
    means = obs[outcome].where(members).groupby(by_hh).mean()
    counts = members.groupby(by_hh).sum()

    hh = household_table(obs, config)
    hh[outcome] = hh[cols.hh_id].map(means)
    hh["n_members"] = hh[cols.hh_id].map(counts).fillna(0).astype(int)
    return RunningVariableBuilder(config).build(hh)


def _panel_pairs(obs: pd.DataFrame, subgroup: SubgroupDefinition, config: RDConfig, outcome: str):
    cols = config.columns
    _require(obs, (cols.person_id, outcome))
    if cols.in_panel in obs.columns:
        obs = obs.loc[obs[cols.in_panel].fillna(0).astype(bool)]

    t0, t1 = config.didc_periods
    base = select_period(obs, config, t0)
    follow = select_period(obs, config, t1)

    keys = [cols.hh_id, cols.person_id]
    at_base = base.loc[subgroup.mask(base, cols), keys + [outcome]]
    pairs = at_base.merge(
        follow[keys + [outcome]],
        on=keys,
        how="inner",
        suffixes=("_t0", "_t1"),
        validate="one_to_one",
    )
    return base, follow, pairs


def _baseline_controls(hh0: pd.DataFrame, config: RDConfig) -> pd.DataFrame:
    cols = config.columns
    return hh0.drop(columns=[cols.income, cols.year, cols.quarter], errors="ignore")


def build_panel_frame(
    obs: pd.DataFrame,
    subgroup: SubgroupDefinition,
    config: RDConfig,
    outcome: str = "attend",
) -> pd.DataFrame:
    """DiDC frame: delta running variable and mean member-level change in the outcome.

    Controls are measured at baseline. The outcome column is named
    ``delta_<outcome>``.
    """
    cols = config.columns
    base, follow, pairs = _panel_pairs(obs, subgroup, config, outcome)
    name = f"delta_{outcome}"
    pairs[name] = pairs[f"{outcome}_t1"] - pairs[f"{outcome}_t0"]
    delta = pairs.groupby(cols.hh_id)[name].mean()
    counts = pairs.groupby(cols.hh_id).size()

    hh0 = household_table(base, config)
    hh1 = household_table(follow, config)
    frame = RunningVariableBuilder(config).build_delta(hh0, hh1)
    frame = frame.merge(_baseline_controls(hh0, config), on=cols.hh_id, how="left", validate="one_to_one")
    frame[name] = frame[cols.hh_id].map(delta)
    frame["n_members"] = frame[cols.hh_id].map(counts).fillna(0).astype(int)
    return frame


def build_transition_frame(
    obs: pd.DataFrame,
    subgroup: SubgroupDefinition,
    config: RDConfig,
    kind: str = "start",
    outcome: str = "attend",
) -> pd.DataFrame:
    """Attendance transitions between the two panel periods.

    ``start``: share of members not attending at baseline who attend at
    follow-up. ``stop``: share of members attending at baseline who no
    longer attend. The running variable is the baseline one.
    """
    if kind not in TRANSITIONS:
        raise ConfigurationError(f"kind must be one of {TRANSITIONS}")
    cols = config.columns
    base, _, pairs = _panel_pairs(obs, subgroup, config, outcome)
    before, after = pairs[f"{outcome}_t0"], pairs[f"{outcome}_t1"]
    if kind == "start":
        at_risk, event = before == 0, after == 1
    else:
        at_risk, event = before == 1, after == 0

    name = f"{kind}_{outcome}"
    risk_hh = pairs.loc[at_risk, cols.hh_id]
    rate = event[at_risk].astype(float).groupby(risk_hh).mean()
    counts = risk_hh.value_counts()

    hh0 = household_table(base, config)
    frame = RunningVariableBuilder(config).build(hh0)
    frame[name] = frame[cols.hh_id].map(rate)
    frame["n_members"] = frame[cols.hh_id].map(counts).fillna(0).astype(int)
    return frame


def outcome_frame(
    obs: pd.DataFrame,
    subgroup: SubgroupDefinition,
    config: RDConfig,
    outcome: str,
    mode: str = "rd",
) -> pd.DataFrame:
    """Household frame for an outcome name.

    ``delta_<y>`` needs mode "didc"; ``start_<y>`` / ``stop_<y>`` are
    transitions; any other name is a static household mean of that column.
    """
    if mode == "didc":
        if not outcome.startswith("delta_"):
            raise ConfigurationError(f"DiDC outcomes are delta outcomes, got {outcome!r}")
        return build_panel_frame(obs, subgroup, config, outcome[len("delta_"):])
    if outcome.startswith("delta_"):
        raise ConfigurationError(f"{outcome!r} needs mode='didc'")
    kind, _, base = outcome.partition("_")
    if kind in TRANSITIONS and base:
        return build_transition_frame(obs, subgroup, config, kind, base)
    return build_household_frame(obs, subgroup, config, outcome, period=resolve_rd_period(obs, config))


# ============================================================
# COVARIATES
# ============================================================

def validate_covariates(frame: pd.DataFrame, candidates) -> tuple[str, ...]:
    """Keep candidates that are present, observed, non-constant and not collinear."""
    usable: list[str] = []
    for name in candidates:
        if name not in frame.columns:
            logger.warning("Covariate %s not in data; dropped", name)
            continue
        col = pd.to_numeric(frame[name], errors="coerce")
        if col.notna().sum() == 0:
            logger.warning("Covariate %s is all missing; dropped", name)
            continue
        if col.nunique(dropna=True) < 2:
            logger.warning("Covariate %s is constant; dropped", name)
            continue
        trial = frame[usable + [name]].apply(pd.to_numeric, errors="coerce").dropna()
        X = np.column_stack([np.ones(len(trial)), trial.to_numpy(dtype=float)])
        if len(trial) == 0 or np.linalg.matrix_rank(X) < X.shape[1]:
            logger.warning("Covariate %s is collinear with %s; dropped", name, usable or "the intercept")
            continue
        usable.append(name)
    return tuple(usable)
