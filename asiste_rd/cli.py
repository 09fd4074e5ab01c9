"""
cli.py
======

Command-line entry point.

Usage:
    python -m asiste_rd run --data survey.csv                  # static RD batch
    python -m asiste_rd run --simulate 3000 --mode didc        # DiDC on simulated data
    python -m asiste_rd run --data survey.csv --orders 1 --crosscheck
    python -m asiste_rd density --data survey.csv              # manipulation test only

Outputs (in --output-dir):
    rd_results.csv       one row per (subgroup, outcome, p, specification)
    density_test.csv     manipulation test record
    forest_summary.csv   per-subgroup summary of the clustered-with-controls column
    crosscheck.csv       pyfixest local-linear comparison (with --crosscheck)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import pandas as pd

from .config import config_from_dict, load_config
from .crosscheck import local_linear_check
from .density import ManipulationTester
from .errors import CELL_ERRORS, RDError
from .households import (
    SUBGROUPS,
    get_subgroup,
    household_table,
    outcome_frame,
    resolve_rd_period,
    select_period,
    validate_covariates,
)
from .runner import DEFAULT_OUTCOMES, SpecificationRunner
from .running import RunningVariableBuilder
from .simulate import simulate_survey
from .summary import forest_table

logger = logging.getLogger(__name__)


def _banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def _load_observations(args, config) -> pd.DataFrame:
    if args.data:
        path = Path(args.data)
        if not path.exists():
            raise SystemExit(f"Data file not found: {path}")
        obs = pd.read_csv(path)
        print(f"Loaded {len(obs):,} person records from {path}")
        return obs
    thresholds = {p: config.threshold_for(p) for p in config.didc_periods}
    obs = simulate_survey(args.simulate, seed=args.seed, thresholds=thresholds, bunching=args.bunching)
    print(f"Simulated {len(obs):,} person records ({args.simulate:,} households per period)")
    return obs


def _analysis_running(obs, config, mode) -> pd.Series:
    """Household running variable used for the manipulation test."""
    builder = RunningVariableBuilder(config)
    if mode == "didc":
        t0, t1 = config.didc_periods
        return builder.build_delta(
            household_table(select_period(obs, config, t0), config),
            household_table(select_period(obs, config, t1), config),
        )["running"]
    period = resolve_rd_period(obs, config)
    return builder.build(household_table(select_period(obs, config, period), config))["running"]


def _density(obs, config, mode) -> pd.DataFrame:
    running = _analysis_running(obs, config, mode)
    try:
        result = ManipulationTester(config).test(running.to_numpy())
    except CELL_ERRORS as e:
        logger.warning("Manipulation test failed: %s", e)
        return pd.DataFrame([{"mode": mode, "run_success": 0, "run_error": str(e)}])
    print(f"Manipulation test: T = {result.statistic:.3f}, p = {result.p_value:.4f} "
          f"(h = {result.h_left:.2f} / {result.h_right:.2f})")
    return pd.DataFrame([{"mode": mode, **result.to_row(), "run_success": 1, "run_error": ""}])


def _crosscheck(obs, results, config, mode) -> pd.DataFrame:
    rows = []
    sel = results.loc[(results["run_success"] == 1) & (results["p"] == 1)
                      & (results["spec_label"] == "No Controls")]
    for _, r in sel.iterrows():
        sg = get_subgroup(r["subgroup"])
        frame = outcome_frame(obs, sg, config, r["outcome"], mode)
        frame = frame.loc[frame[r["outcome"]].notna()]
        try:
            cc = local_linear_check(
                frame["running"], frame[r["outcome"]], h=r["h_left"],
                cutoff=config.cutoff, treated_side=config.treated_side,
            )
        except CELL_ERRORS as e:
            logger.warning("Cross-check failed for %s: %s", sg.code, e)
            continue
        rows.append({
            "subgroup": sg.code,
            "outcome": r["outcome"],
            "h": cc.h,
            "tau_cl": r["tau_cl"],
            "feols_coefficient": cc.coefficient,
            "feols_se": cc.std_error,
            "difference": cc.coefficient - r["tau_cl"],
        })
    return pd.DataFrame(rows)


def cmd_run(args) -> int:
    config = load_config(args.config)
    if args.orders:
        config = config_from_dict({"polynomial_orders": args.orders}, base=config)
    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    _banner(f"RD specification batch ({args.mode.upper()})")
    print(f"Config: {config.hash}")
    obs = _load_observations(args, config)

    base_period = config.didc_periods[0] if args.mode == "didc" else resolve_rd_period(obs, config)
    candidates = tuple(config.controls) + (config.education_control,)
    usable = validate_covariates(household_table(select_period(obs, config, base_period), config), candidates)
    print(f"Usable controls: {', '.join(usable) or 'none'}")

    runner = SpecificationRunner(config, mode=args.mode, workers=args.workers, usable_covariates=usable)
    outcomes = tuple(args.outcome) if args.outcome else DEFAULT_OUTCOMES[args.mode]
    subgroups = tuple(get_subgroup(s) for s in args.subgroups) if args.subgroups else SUBGROUPS
    results, summary = runner.run(obs, outcomes=outcomes, subgroups=subgroups)

    results.to_csv(out_dir / "rd_results.csv", index=False)
    print(f"\nWrote {len(results)} rows to {out_dir / 'rd_results.csv'}")

    _density(obs, config, args.mode).to_csv(out_dir / "density_test.csv", index=False)

    if not results.empty:
        forest = pd.concat(
            [forest_table(results, outcome=o).assign(Outcome=o) for o in outcomes],
            ignore_index=True,
        )
        forest.to_csv(out_dir / "forest_summary.csv", index=False)
        if args.crosscheck:
            _crosscheck(obs, results, config, args.mode).to_csv(out_dir / "crosscheck.csv", index=False)

    print()
    _banner("Run summary")
    print(summary.format())
    with open(out_dir / "run_summary.json", "w") as f:
        json.dump(summary.to_dict(), f, indent=2)
    return 0


def cmd_density(args) -> int:
    config = load_config(args.config)
    out_dir = Path(args.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    _banner(f"Manipulation test ({args.mode.upper()})")
    obs = _load_observations(args, config)
    _density(obs, config, args.mode).to_csv(out_dir / "density_test.csv", index=False)
    return 0


def _add_common(p: argparse.ArgumentParser) -> None:
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--data", help="Person-level microdata CSV")
    src.add_argument("--simulate", type=int, metavar="N", help="Simulate N households per period")
    p.add_argument("--seed", type=int, default=0, help="Seed for --simulate")
    p.add_argument("--bunching", type=float, default=0.0, help="Share of simulated households bunched below the threshold")
    p.add_argument("--mode", choices=["rd", "didc"], default="rd")
    p.add_argument("--config", help="JSON config merged over the defaults")
    p.add_argument("--output-dir", default="output", help="Directory for result tables")
    p.add_argument("-v", "--verbose", action="store_true", help="Log progress at INFO level")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="asiste-rd", description="RD / DiDC estimation batch for cash-transfer eligibility")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Run the specification batch")
    _add_common(p_run)
    p_run.add_argument("--outcome", nargs="+", help="Outcome names (default: attend / delta_attend)")
    p_run.add_argument("--orders", type=int, nargs="+", help="Polynomial orders (default from config)")
    p_run.add_argument("--subgroups", nargs="+", help="Subgroup codes or names (default: all nine)")
    p_run.add_argument("--workers", type=int, default=1, help="Worker processes for cells")
    p_run.add_argument("--crosscheck", action="store_true", help="Compare p=1 estimates against pyfixest")
    p_run.set_defaults(func=cmd_run)

    p_den = sub.add_parser("density", help="Run the manipulation test only")
    _add_common(p_den)
    p_den.set_defaults(func=cmd_density)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except RDError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
