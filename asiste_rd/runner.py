"""
runner.py
=========

Specification batch for RD / DiDC.

For every (subgroup, outcome, polynomial order) the canonical specification
table is run cell by cell:

  select bandwidths -> estimate -> result row (+ JSON payload)

Cells fail soft: data-driven failures become an all-missing row that carries
the reason and `error_details`. Configuration errors propagate. Subgroups with
fewer than `min_sample` households are skipped and reported.

Each cell is a pure function of its inputs (`run_cell`), so `workers > 1`
fans them out to a process pool; rows come back in submission order.
"""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, fields
from typing import Any

import numpy as np
import pandas as pd

from .bandwidth import BandwidthSelector
from .config import MODES, RDConfig, Specification, specifications_for
from .errors import CELL_ERRORS, ConfigurationError
from .estimator import EstimationResult, LocalPolynomialEstimator
from .households import SUBGROUPS, SubgroupDefinition, outcome_frame
from .payloads import (
    error_details_from_exception,
    make_failure_payload,
    make_success_payload,
    software_block,
    to_json,
)
from .summary import significance_stars

logger = logging.getLogger(__name__)

DEFAULT_OUTCOMES = {"rd": ("attend",), "didc": ("delta_attend",)}

# Result columns that are NaN on a failed cell (cell identifiers are kept).
_ESTIMATE_COLUMNS = [f.name for f in fields(EstimationResult)] + [
    "ci_lower_cl",
    "ci_upper_cl",
    "ci_lower_rb",
    "ci_upper_rb",
    "p_value_cl",
    "p_value_rb",
]


# ============================================================
# RUN SUMMARY
# ============================================================

@dataclass
class RunSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_cells: int = 0
    skipped_subgroups: list[str] = field(default_factory=list)
    failure_reasons: Counter = field(default_factory=Counter)

    def record(self, row: dict[str, Any]) -> None:
        self.attempted += 1
        if row["run_success"]:
            self.succeeded += 1
        else:
            self.failed += 1
            self.failure_reasons[row["error_type"]] += 1

    def skip(self, subgroup: str, outcome: str, n: int, cells: int) -> None:
        self.skipped_subgroups.append(f"{subgroup}:{outcome} (n={n})")
        self.skipped_cells += cells

    def merge(self, other: RunSummary) -> None:
        self.attempted += other.attempted
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped_cells += other.skipped_cells
        self.skipped_subgroups.extend(other.skipped_subgroups)
        self.failure_reasons.update(other.failure_reasons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped_cells": self.skipped_cells,
            "skipped_subgroups": list(self.skipped_subgroups),
            "failure_reasons": dict(self.failure_reasons),
        }

    def format(self) -> str:
        lines = [
            f"Cells attempted: {self.attempted}",
            f"  Succeeded: {self.succeeded}",
            f"  Failed: {self.failed}",
            f"  Skipped (small sample): {self.skipped_cells}",
        ]
        for reason, n in sorted(self.failure_reasons.items()):
            lines.append(f"    {reason}: {n}")
        if self.skipped_subgroups:
            lines.append("Skipped subgroups:")
            lines.extend(f"  {s}" for s in self.skipped_subgroups)
        return "\n".join(lines)


# ============================================================
# SINGLE CELL
# ============================================================

def _controls_desc(covs: tuple[str, ...]) -> str:
    return ", ".join(covs) if covs else "none"


def run_cell(
    frame: pd.DataFrame,
    outcome: str,
    p: int,
    spec: Specification,
    config: RDConfig,
    subgroup: SubgroupDefinition,
    mode: str = "rd",
    usable_covariates: tuple[str, ...] | None = None,
) -> dict[str, Any]:
    """Estimate one (subgroup, outcome, order, specification) cell and return its row."""
    covs = spec.covariates(config)
    if usable_covariates is not None:
        covs = tuple(c for c in covs if c in usable_covariates)
    missing = [c for c in covs if c not in frame.columns]
    if missing:
        raise ConfigurationError(f"Control columns not in household frame: {missing}")
    cluster_var = config.cluster_column if spec.cluster else ""
    if spec.cluster and cluster_var not in frame.columns:
        raise ConfigurationError(f"Clustering requested but column {cluster_var!r} is absent")
    if outcome not in frame.columns:
        raise ConfigurationError(f"Outcome {outcome!r} not in household frame")

    row: dict[str, Any] = {
        "subgroup": subgroup.code,
        "subgroup_name": subgroup.name,
        "label": subgroup.label,
        "category": subgroup.category,
        "mode": mode,
        "outcome": outcome,
        "p": int(p),
        "spec_label": spec.label,
        "bwselect": spec.bwselect,
        "controls_desc": _controls_desc(covs),
        "cluster_var": cluster_var,
        "n_obs_original": int(frame[outcome].notna().sum()),
    }
    blocks = {
        "specification": {
            "label": spec.label,
            "controls": list(covs),
            "cluster": cluster_var or None,
            "bwselect": spec.bwselect,
            "p": int(p),
        }
    }

    try:
        x = frame["running"].to_numpy(dtype=float)
        y = frame[outcome].to_numpy(dtype=float)
        Z = frame[list(covs)].to_numpy(dtype=float) if covs else None
        C = frame[cluster_var].to_numpy() if spec.cluster else None

        choice = BandwidthSelector(config).select(x, y, p, method=spec.bwselect, covariates=Z, cluster=C)
        result = LocalPolynomialEstimator(config).fit(
            x,
            y,
            p=p,
            h_left=choice.h_left,
            h_right=choice.h_right,
            b_left=choice.b_left,
            b_right=choice.b_right,
            covariates=Z,
            covariate_names=covs,
            cluster=C,
            bwselect=spec.bwselect,
            extra_warnings=choice.warnings,
        )
    except (*CELL_ERRORS, np.linalg.LinAlgError) as e:
        logger.warning("Cell %s/%s/p=%d/%s failed: %s", subgroup.code, outcome, p, spec.label, e)
        row.update({c: np.nan for c in _ESTIMATE_COLUMNS if c not in row})
        payload = make_failure_payload(
            error=str(e),
            error_details=error_details_from_exception(e, stage="rd_estimation"),
            software=software_block(),
            config_hash=config.hash,
            blocks=blocks,
        )
        row.update({
            "stars_cl": "",
            "stars_rb": "",
            "config_hash": config.hash,
            "coefficient_vector_json": to_json(payload),
            "run_success": 0,
            "run_error": str(e),
            "error_type": type(e).__name__,
        })
        return row

    row.update(result.to_row(config.level))
    blocks["bandwidths"] = {
        "h_left": result.h_left,
        "h_right": result.h_right,
        "b_left": result.b_left,
        "b_right": result.b_right,
        "pilot": choice.pilot,
    }
    blocks["sample"] = {
        "n_total": result.n_total,
        "n_h": result.n_h_left + result.n_h_right,
        "n_b": result.n_b_left + result.n_b_right,
    }
    payload = make_success_payload(
        coefficients={
            "conventional": result.tau_cl,
            "bias_corrected": result.tau_bc,
            "left_conventional": result.tau_cl_left,
            "right_conventional": result.tau_cl_right,
        },
        inference={
            "vce": result.vce,
            "se_conventional": result.se_cl,
            "se_robust": result.se_rb,
            "p_value_conventional": result.pvalue_cl,
            "p_value_robust": result.pvalue_rb,
            "n_clusters": result.n_clusters,
        },
        software=software_block(),
        config_hash=config.hash,
        blocks=blocks,
        warnings=list(result.warnings),
    )
    row.update({
        "stars_cl": significance_stars(result.tau_cl, result.se_cl),
        "stars_rb": significance_stars(result.tau_bc, result.se_rb),
        "config_hash": config.hash,
        "coefficient_vector_json": to_json(payload),
        "run_success": 1,
        "run_error": "",
        "error_type": "",
    })
    return row


def _run_cell_task(args) -> dict[str, Any]:
    return run_cell(*args)


# ============================================================
# BATCH
# ============================================================

class SpecificationRunner:
    def __init__(
        self,
        config: RDConfig,
        mode: str = "rd",
        workers: int = 1,
        usable_covariates: tuple[str, ...] | None = None,
    ):
        if mode not in MODES:
            raise ConfigurationError(f"mode must be one of {MODES}")
        self.config = config
        self.mode = mode
        self.workers = max(1, int(workers))
        self.usable_covariates = usable_covariates
        self.specifications = specifications_for(mode)

    def gate(self, frame: pd.DataFrame, outcome: str) -> tuple[pd.DataFrame, int]:
        """Apply the empty-household policy and return (estimation frame, gate count)."""
        defined = frame[outcome].notna()
        n_gate = int(defined.sum()) if self.config.empty_households == "before_gate" else len(frame)
        return frame.loc[defined], n_gate

    def _map(self, tasks: list[tuple]) -> list[dict[str, Any]]:
        if self.workers == 1 or len(tasks) < 2:
            return [_run_cell_task(t) for t in tasks]
        with ProcessPoolExecutor(max_workers=self.workers) as ex:
            return list(ex.map(_run_cell_task, tasks))

    def run_subgroup(
        self,
        obs: pd.DataFrame,
        subgroup: SubgroupDefinition,
        outcome: str,
        orders: tuple[int, ...] | None = None,
    ) -> tuple[list[dict[str, Any]], RunSummary]:
        orders = tuple(orders or self.config.polynomial_orders)
        summary = RunSummary()

        frame = outcome_frame(obs, subgroup, self.config, outcome, self.mode)
        frame, n_gate = self.gate(frame, outcome)
        if n_gate < self.config.min_sample:
            logger.warning(
                "Skipping %s (%s): %d households < %d",
                subgroup.code, outcome, n_gate, self.config.min_sample,
            )
            summary.skip(subgroup.code, outcome, n_gate, len(orders) * len(self.specifications))
            return [], summary

        tasks = [
            (frame, outcome, p, spec, self.config, subgroup, self.mode, self.usable_covariates)
            for p in orders
            for spec in self.specifications
        ]
        rows = self._map(tasks)
        for row in rows:
            summary.record(row)
        logger.info(
            "%s (%s): %d/%d cells succeeded",
            subgroup.code, outcome, summary.succeeded, summary.attempted,
        )
        return rows, summary

    def run(
        self,
        obs: pd.DataFrame,
        outcomes: tuple[str, ...] | None = None,
        orders: tuple[int, ...] | None = None,
        subgroups: tuple[SubgroupDefinition, ...] = SUBGROUPS,
    ) -> tuple[pd.DataFrame, RunSummary]:
        outcomes = tuple(outcomes or DEFAULT_OUTCOMES[self.mode])
        summary = RunSummary()
        rows: list[dict[str, Any]] = []
        for outcome in outcomes:
            for sg in subgroups:
                sg_rows, sg_summary = self.run_subgroup(obs, sg, outcome, orders)
                rows.extend(sg_rows)
                summary.merge(sg_summary)
        return pd.DataFrame(rows), summary
