import json

import numpy as np
import pandas as pd
import pytest

from asiste_rd.config import RDConfig, get_specification, specifications_for
from asiste_rd.errors import ConfigurationError
from asiste_rd.households import get_subgroup, outcome_frame
from asiste_rd.runner import RunSummary, SpecificationRunner, run_cell

KIDS = get_subgroup("kids")


def test_specification_tables():
    rd = specifications_for("rd")
    didc = specifications_for("didc")
    assert len(rd) == 10
    assert [s.label for s in didc] == [s.label for s in rd[:5]]
    assert rd[5].label == "No Controls (msetwo)"
    assert get_specification("Cluster With Controls + Education").education


def test_rd_batch_on_simulated_survey(survey, config):
    runner = SpecificationRunner(config, mode="rd")
    results, summary = runner.run(survey, orders=(1,), subgroups=(KIDS,))
    assert len(results) == 10
    assert results["spec_label"].tolist() == [s.label for s in specifications_for("rd")]
    assert (results["run_success"] == 1).all()
    assert summary.attempted == 10 and summary.succeeded == 10
    assert results["config_hash"].nunique() == 1
    assert (results["n_obs_original"] == results["n_total"]).loc[results["controls_desc"] == "none"].all()

    payload = json.loads(results["coefficient_vector_json"].iloc[0])
    assert set(payload) >= {"coefficients", "inference", "software", "config_hash"}

    clustered = results.loc[results["spec_label"] == "Cluster With Controls"].iloc[0]
    assert clustered["cluster_var"] == "region"
    assert clustered["controls_desc"] == "hh_size, urban, prop_male"
    assert clustered["vce"] == "nn-cluster"


def test_didc_batch_runs_five_specifications(survey, config):
    results, summary = SpecificationRunner(config, mode="didc").run(survey, orders=(1,), subgroups=(KIDS,))
    assert len(results) == 5
    assert set(results["outcome"]) == {"delta_attend"}
    assert summary.attempted == 5


def test_small_subgroup_is_skipped(survey):
    config = RDConfig(min_sample=10 ** 6)
    results, summary = SpecificationRunner(config).run(survey, orders=(1, 2), subgroups=(KIDS,))
    assert results.empty
    assert summary.attempted == 0
    assert summary.skipped_cells == 20
    assert summary.skipped_subgroups and summary.skipped_subgroups[0].startswith("09:attend")


def test_empty_household_policy(survey):
    young = get_subgroup("young_sons")
    before = SpecificationRunner(RDConfig(empty_households="before_gate"))
    after = SpecificationRunner(RDConfig(empty_households="after_gate"))

    frame = outcome_frame(survey, young, before.config, "attend")
    _, n_before = before.gate(frame, "attend")
    _, n_after = after.gate(frame, "attend")
    assert n_before == frame["attend"].notna().sum()
    assert n_after == len(frame)
    assert n_after > n_before


def _tiny_frame():
    return pd.DataFrame({
        "running": [-2.0, -1.0, 1.0, 2.0, 3.0],
        "attend": [0.0, 1.0, 1.0, 0.0, 1.0],
        "hh_size": [2, 3, 4, 2, 3],
        "urban": [0, 1, 1, 0, 1],
        "prop_male": [0.5, 0.2, 0.3, 0.1, 0.6],
        "head_educ": [3, 5, 7, 9, 11],
    })


def test_failed_cell_becomes_missing_row(config):
    row = run_cell(_tiny_frame(), "attend", 1, get_specification("No Controls"), config, KIDS)
    assert row["run_success"] == 0
    assert row["error_type"] == "InsufficientDataError"
    assert np.isnan(row["tau_cl"]) and np.isnan(row["se_rb"])
    assert row["stars_cl"] == ""
    assert row["p"] == 1 and row["bwselect"] == "mserd"
    payload = json.loads(row["coefficient_vector_json"])
    assert payload["error_details"]["exception_type"] == "InsufficientDataError"
    assert payload["error_details"]["stage"] == "rd_estimation"


def test_clustering_without_column_aborts(config):
    with pytest.raises(ConfigurationError):
        run_cell(_tiny_frame(), "attend", 1, get_specification("Cluster No Controls"), config, KIDS)


def test_unknown_control_aborts():
    config = RDConfig(controls=("hh_size", "missing_control"))
    with pytest.raises(ConfigurationError):
        run_cell(_tiny_frame(), "attend", 1, get_specification("With Controls"), config, KIDS)


def test_usable_covariates_filter_controls(config):
    row = run_cell(
        _tiny_frame(), "attend", 1, get_specification("With Controls"), config, KIDS,
        usable_covariates=("hh_size",),
    )
    assert row["controls_desc"] == "hh_size"


def test_parallel_matches_serial(survey, config):
    serial, _ = SpecificationRunner(config, workers=1).run(survey, orders=(1,), subgroups=(KIDS,))
    parallel, _ = SpecificationRunner(config, workers=2).run(survey, orders=(1,), subgroups=(KIDS,))
    pd.testing.assert_frame_equal(serial, parallel)


def test_run_summary_format():
    s = RunSummary()
    s.record({"run_success": 1, "error_type": ""})
    s.record({"run_success": 0, "error_type": "SingularFitError"})
    s.skip("02", "attend", 12, 10)
    text = s.format()
    assert "Cells attempted: 2" in text
    assert "SingularFitError: 1" in text
    assert "02:attend (n=12)" in text
    assert s.to_dict()["failure_reasons"] == {"SingularFitError": 1}
