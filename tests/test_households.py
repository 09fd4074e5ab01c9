import numpy as np
import pandas as pd
import pytest

from asiste_rd.config import RDConfig
from asiste_rd.errors import ConfigurationError
from asiste_rd.households import (
    SUBGROUPS,
    build_household_frame,
    build_panel_frame,
    build_transition_frame,
    get_subgroup,
    outcome_frame,
    validate_covariates,
)


@pytest.fixture
def panel_obs():
    rows = [
        # hh, person, year, income, attend, age, male, head, child, in_panel
        (1, 1, 2019, 80.0, 0, 35, 0, 1, 0, 1),
        (1, 2, 2019, 80.0, 0, 10, 1, 0, 1, 1),
        (1, 3, 2019, 80.0, 1, 12, 0, 0, 1, 1),
        (2, 1, 2019, 100.0, 0, 40, 0, 1, 0, 1),
        (2, 2, 2019, 100.0, 1, 9, 1, 0, 1, 1),
        (3, 1, 2019, 60.0, 0, 30, 0, 1, 0, 0),
        (3, 2, 2019, 60.0, 1, 7, 0, 0, 1, 0),
        (1, 1, 2020, 85.0, 0, 36, 0, 1, 0, 1),
        (1, 2, 2020, 85.0, 1, 11, 1, 0, 1, 1),
        (1, 3, 2020, 85.0, 1, 13, 0, 0, 1, 1),
        (2, 1, 2020, 90.0, 0, 41, 0, 1, 0, 1),
        (2, 2, 2020, 90.0, 0, 10, 1, 0, 1, 1),
    ]
    cols = ["hh_id", "person_id", "year", "income", "attend", "age", "male", "head", "child", "in_panel"]
    return pd.DataFrame(rows, columns=cols)


def test_nine_subgroups():
    assert [sg.code for sg in SUBGROUPS] == [f"{i:02d}" for i in range(1, 10)]
    assert {sg.category for sg in SUBGROUPS} == {"Young Adults", "Children"}
    assert get_subgroup("kids") is get_subgroup("09")
    with pytest.raises(ConfigurationError):
        get_subgroup("10")


def test_subgroup_masks(small_obs, config):
    cols = config.columns
    assert get_subgroup("kids").mask(small_obs, cols).tolist() == [False, True, False, False, True, False, True, True]
    assert get_subgroup("boys").mask(small_obs, cols).tolist() == [False, True, False, False, False, False, True, False]
    assert get_subgroup("young_children").mask(small_obs, cols).tolist() == [False, False, True] + [False] * 5
    assert get_subgroup("young_women").mask(small_obs, cols).sum() == 0


def test_household_frame(small_obs, config):
    frame = build_household_frame(small_obs, get_subgroup("kids"), config)
    assert frame["hh_id"].tolist() == [1, 2, 3]
    assert frame["attend"].tolist() == [1.0, 1.0, 0.5]
    assert frame["hh_size"].tolist() == [3, 2, 3]
    assert frame["prop_male"].to_numpy() == pytest.approx([2 / 3, 0.0, 1 / 3])
    assert frame["head_educ"].tolist() == [12, 6, 16]
    assert frame["running"].tolist() == [-39.0, 31.0, 0.0]
    assert frame["eligible"].tolist() == [True, False, False]
    assert frame["region"].tolist() == [1, 2, 3]


def test_household_without_members_has_missing_outcome(small_obs, config):
    frame = build_household_frame(small_obs, get_subgroup("young_children"), config)
    assert frame["attend"].iloc[0] == 0.0
    assert frame["attend"].iloc[1:].isna().all()
    assert frame["n_members"].tolist() == [1, 0, 0]


def test_multiple_periods_need_a_period(panel_obs, config):
    with pytest.raises(ConfigurationError):
        build_household_frame(panel_obs, get_subgroup("kids"), config)
    frame = build_household_frame(panel_obs, get_subgroup("kids"), config, period="2020")
    assert frame["hh_id"].tolist() == [1, 2]


def test_panel_frame(panel_obs, config):
    frame = build_panel_frame(panel_obs, get_subgroup("kids"), config)
    frame = frame.set_index("hh_id")
    assert frame.index.tolist() == [1, 2]
    assert frame.loc[1, "delta_attend"] == 0.5
    assert frame.loc[2, "delta_attend"] == -1.0
    assert frame["running_t0"].tolist() == [-9.0, 11.0]
    assert frame["running_t1"].tolist() == [-4.0, 1.0]
    assert frame["running"].tolist() == [5.0, -10.0]
    assert frame["hh_size"].tolist() == [3, 2]


def test_transition_frames(panel_obs, config):
    start = build_transition_frame(panel_obs, get_subgroup("kids"), config, "start").set_index("hh_id")
    stop = build_transition_frame(panel_obs, get_subgroup("kids"), config, "stop").set_index("hh_id")
    assert start.loc[1, "start_attend"] == 1.0
    assert np.isnan(start.loc[2, "start_attend"])
    assert stop.loc[1, "stop_attend"] == 0.0
    assert stop.loc[2, "stop_attend"] == 1.0
    assert start["running"].tolist() == [-9.0, 11.0]


def test_outcome_frame_dispatch(panel_obs, config):
    kids = get_subgroup("kids")
    assert "delta_attend" in outcome_frame(panel_obs, kids, config, "delta_attend", "didc").columns
    assert "stop_attend" in outcome_frame(panel_obs, kids, config, "stop_attend", "rd").columns
    static = outcome_frame(panel_obs, kids, config, "attend", "rd")
    assert static["running"].tolist() == [-9.0, 11.0, -29.0]
    with pytest.raises(ConfigurationError):
        outcome_frame(panel_obs, kids, config, "delta_attend", "rd")
    with pytest.raises(ConfigurationError):
        outcome_frame(panel_obs, kids, config, "attend", "didc")


def test_rd_period_override(panel_obs):
    config = RDConfig(rd_period="2020")
    frame = outcome_frame(panel_obs, get_subgroup("kids"), config, "attend", "rd")
    assert frame["running"].tolist() == [-4.0, 1.0]


def test_validate_covariates():
    rng = np.random.default_rng(0)
    a = rng.normal(size=50)
    frame = pd.DataFrame({
        "a": a,
        "b": 1.0,
        "c": np.nan,
        "d": 2 * a + 1,
        "f": rng.normal(size=50),
    })
    assert validate_covariates(frame, ["a", "b", "c", "d", "e", "f"]) == ("a", "f")
