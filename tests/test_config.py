import json

import pytest

from asiste_rd.config import RDConfig, config_from_dict, load_config
from asiste_rd.errors import ConfigurationError


def test_hash_is_stable_and_sensitive():
    assert RDConfig().hash == RDConfig().hash
    assert RDConfig().hash.startswith("sha256:")
    assert RDConfig(vce="hc1").hash != RDConfig().hash


@pytest.mark.parametrize(
    "kwargs",
    [
        {"kernel": "epanechnikov"},
        {"vce": "hc3"},
        {"treated_side": "left"},
        {"empty_households": "never"},
        {"min_clusters": 1},
        {"polynomial_orders": ()},
        {"didc_periods": ("2019",)},
    ],
)
def test_invalid_options(kwargs):
    with pytest.raises(ConfigurationError):
        RDConfig(**kwargs)


def test_threshold_lookup():
    config = RDConfig(thresholds={"2019": 89.0, "2020Q1": 95.0, "2020": 90.0})
    assert config.threshold_for(2019) == 89.0
    assert config.threshold_for("2020", 1) == 95.0
    assert config.threshold_for(2020, 2) == 90.0
    with pytest.raises(ConfigurationError):
        config.threshold_for(2018)


def test_config_from_dict():
    config = config_from_dict({
        "thresholds": {2019: 100},
        "polynomial_orders": [1],
        "columns": {"income": "ingreso"},
        "rd_period": 2019,
    })
    assert config.thresholds == {"2019": 100.0}
    assert config.polynomial_orders == (1,)
    assert config.columns.income == "ingreso"
    assert config.columns.hh_id == "hh_id"
    assert config.rd_period == "2019"
    with pytest.raises(ConfigurationError):
        config_from_dict({"bandwidth": 3})
    with pytest.raises(ConfigurationError):
        config_from_dict({"columns": {"salary": "x"}})


def test_load_config(tmp_path):
    assert load_config(None) == RDConfig()
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"vce": "hc1", "min_sample": 30}))
    config = load_config(path)
    assert config.vce == "hc1" and config.min_sample == 30
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.json")
