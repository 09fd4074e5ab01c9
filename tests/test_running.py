import numpy as np
import pandas as pd
import pytest

from asiste_rd.config import RDConfig
from asiste_rd.errors import ConfigurationError, MissingInputError
from asiste_rd.running import (
    RunningVariableBuilder,
    delta_running,
    is_eligible,
    running_variable,
)


def test_running_variable_is_signed_distance():
    assert running_variable(100.0, 89.0) == 11.0
    assert running_variable(80, 89) == -9.0


@pytest.mark.parametrize("income", [None, float("nan")])
def test_missing_income_raises(income):
    with pytest.raises(MissingInputError):
        running_variable(income, 89.0)


def test_delta_running():
    assert delta_running(80.0, 89.0, 100.0, 95.0) == pytest.approx(5.0 - (-9.0))


def test_eligibility_sides():
    r = np.array([-1.0, 0.0, 2.0])
    assert is_eligible(r, "below").tolist() == [True, False, False]
    assert is_eligible(r, "above").tolist() == [False, True, True]
    assert is_eligible(-0.5) is True
    with pytest.raises(ConfigurationError):
        is_eligible(r, "left")


def test_build_drops_missing_income():
    frame = pd.DataFrame({
        "hh_id": [1, 2, 3],
        "year": [2019, 2019, 2019],
        "income": [50.0, np.nan, 100.0],
    })
    out = RunningVariableBuilder(RDConfig()).build(frame)
    assert out["hh_id"].tolist() == [1, 3]
    assert out["running"].tolist() == [-39.0, 11.0]
    assert out["eligible"].tolist() == [True, False]
    assert out.attrs["dropped_missing_income"] == 1


def test_quarter_threshold_overrides_year():
    config = RDConfig(thresholds={"2019": 89.0, "2019Q4": 100.0})
    frame = pd.DataFrame({
        "hh_id": [1, 2],
        "year": [2019, 2019],
        "quarter": [3, 4],
        "income": [95.0, 95.0],
    })
    out = RunningVariableBuilder(config).build(frame)
    assert out["threshold"].tolist() == [89.0, 100.0]
    assert out["eligible"].tolist() == [False, True]


def test_unknown_period_threshold():
    frame = pd.DataFrame({"hh_id": [1], "year": [2031], "income": [10.0]})
    with pytest.raises(ConfigurationError):
        RunningVariableBuilder(RDConfig()).build(frame)


def test_delta_round_trip_is_exact():
    config = RDConfig(thresholds={"2019": 89.0, "2020": 93.5})
    rng = np.random.default_rng(3)
    t0 = pd.DataFrame({"hh_id": np.arange(200), "year": 2019, "income": rng.uniform(0, 200, 200)})
    t1 = pd.DataFrame({"hh_id": np.arange(50, 250), "year": 2020, "income": rng.uniform(0, 200, 200)})

    builder = RunningVariableBuilder(config)
    paired = builder.build_delta(t0, t1)
    assert len(paired) == 150

    r0, r1 = builder.split_delta(paired)
    expected0 = builder.build(t0).set_index("hh_id")["running"].loc[paired["hh_id"]].to_numpy()
    expected1 = builder.build(t1).set_index("hh_id")["running"].loc[paired["hh_id"]].to_numpy()
    assert np.array_equal(r0.to_numpy(), expected0)
    assert np.array_equal(r1.to_numpy(), expected1)
    assert np.array_equal((r1 - r0).to_numpy(), paired["running"].to_numpy())


def test_split_delta_needs_components():
    with pytest.raises(MissingInputError):
        RunningVariableBuilder.split_delta(pd.DataFrame({"running": [1.0]}))


def test_delta_rejects_duplicate_units():
    t0 = pd.DataFrame({"hh_id": [1, 1], "year": 2019, "income": [10.0, 20.0]})
    t1 = pd.DataFrame({"hh_id": [1], "year": 2020, "income": [30.0]})
    with pytest.raises(ConfigurationError):
        RunningVariableBuilder(RDConfig()).build_delta(t0, t1)
