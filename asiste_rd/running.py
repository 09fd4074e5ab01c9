"""
running.py
==========

Running-variable construction.

Static RD:   running = income - threshold(period)
DiDC:        running = (income_t1 - threshold_t1) - (income_t0 - threshold_t0)

The cutoff is 0 in both cases. Units with missing income are dropped, never
imputed. For DiDC the two period components are kept next to the delta so
they can be recovered exactly.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from .config import RDConfig
from .errors import ConfigurationError, MissingInputError

logger = logging.getLogger(__name__)


def _is_missing(value) -> bool:
    return value is None or (isinstance(value, (float, np.floating)) and np.isnan(value))


def running_variable(income, threshold) -> float:
    """Signed distance of a single unit's income from the threshold."""
    if _is_missing(income):
        raise MissingInputError("income is undefined for this unit")
    return float(income) - float(threshold)


def delta_running(income_t0, threshold_t0, income_t1, threshold_t1) -> float:
    """Period-over-period change in the running variable for one unit."""
    return running_variable(income_t1, threshold_t1) - running_variable(income_t0, threshold_t0)


def is_eligible(running, treated_side: str = "below"):
    """Eligibility indicator; `below` means running < 0 is treated."""
    r = np.asarray(running, dtype=float)
    if treated_side == "below":
        out = r < 0
    elif treated_side == "above":
        out = r >= 0
    else:
        raise ConfigurationError(f"Unknown treated_side {treated_side!r}")
    return out if out.ndim else bool(out)


class RunningVariableBuilder:
    """Adds running-variable columns to unit-level frames."""

    def __init__(self, config: RDConfig):
        self.config = config

    def thresholds(self, frame: pd.DataFrame) -> pd.Series:
        cols = self.config.columns
        if cols.year not in frame.columns:
            raise ConfigurationError(f"Missing period column {cols.year!r}")
        quarters = frame[cols.quarter] if cols.quarter in frame.columns else pd.Series(None, index=frame.index)
        values = [
            self.config.threshold_for(y, None if _is_missing(q) else q)
            for y, q in zip(frame[cols.year], quarters)
        ]
        return pd.Series(values, index=frame.index, dtype=float)

    def build(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Return a copy with `threshold`, `running` and `eligible` columns.

        Rows with missing income are excluded; the count is logged and kept
        in ``out.attrs["dropped_missing_income"]``.
        """
        cols = self.config.columns
        if cols.income not in frame.columns:
            raise ConfigurationError(f"Missing income column {cols.income!r}")

        missing = frame[cols.income].isna()
        n_dropped = int(missing.sum())
        if n_dropped:
            logger.warning("Dropping %d units with missing income", n_dropped)

        out = frame.loc[~missing].copy()
        out["threshold"] = self.thresholds(out)
        out["running"] = out[cols.income].astype(float) - out["threshold"]
        out["eligible"] = is_eligible(out["running"].to_numpy(), self.config.treated_side)
        out.attrs["dropped_missing_income"] = n_dropped
        return out

    def build_delta(self, frame_t0: pd.DataFrame, frame_t1: pd.DataFrame, on: str | None = None) -> pd.DataFrame:
        """Pair two period frames on the unit id and build the delta running variable.

        Units present in only one period, or with missing income in either,
        are dropped.
        """
        on = on or self.config.columns.hh_id
        r0 = self.build(frame_t0)[[on, "running"]].rename(columns={"running": "running_t0"})
        r1 = self.build(frame_t1)[[on, "running"]].rename(columns={"running": "running_t1"})
        if r0[on].duplicated().any() or r1[on].duplicated().any():
            raise ConfigurationError(f"Delta construction needs one row per {on!r} per period")

        paired = r0.merge(r1, on=on, how="inner", validate="one_to_one")
        paired["running"] = paired["running_t1"] - paired["running_t0"]
        paired["eligible"] = is_eligible(paired["running"].to_numpy(), self.config.treated_side)
        return paired

    @staticmethod
    def split_delta(frame: pd.DataFrame) -> tuple[pd.Series, pd.Series]:
        """Recover the period-specific running variables behind a delta frame."""
        for col in ("running_t0", "running_t1"):
            if col not in frame.columns:
                raise MissingInputError(f"Delta frame has no {col!r} component")
        return frame["running_t0"].copy(), frame["running_t1"].copy()
