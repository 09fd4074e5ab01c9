import numpy as np
import pandas as pd
import pytest

from asiste_rd.config import RDConfig
from asiste_rd.simulate import simulate_survey


@pytest.fixture
def config():
    return RDConfig()


@pytest.fixture
def uniform_jump():
    """Uniform running variable on [-50, 50] with a 0.10 jump below the cutoff."""
    rng = np.random.default_rng(42)
    x = rng.uniform(-50, 50, 2000)
    y = 0.3 + 0.10 * (x < 0) + rng.normal(0, 0.05, len(x))
    return x, y


@pytest.fixture(scope="session")
def survey():
    return simulate_survey(1500, seed=1)


@pytest.fixture
def small_obs():
    """Three households in one period, hand-built."""
    return pd.DataFrame({
        "hh_id":     [1, 1, 1, 2, 2, 3, 3, 3],
        "person_id": [1, 2, 3, 1, 2, 1, 2, 3],
        "year":      [2019] * 8,
        "quarter":   [4] * 8,
        "income":    [50.0, 50.0, 50.0, 120.0, 120.0, 89.0, 89.0, 89.0],
        "attend":    [0, 1, 0, 0, 1, 0, 1, 0],
        "age":       [40, 10, 20, 35, 15, 45, 12, 8],
        "male":      [0, 1, 1, 0, 0, 0, 1, 0],
        "head":      [1, 0, 0, 1, 0, 1, 0, 0],
        "child":     [0, 1, 1, 0, 1, 0, 1, 1],
        "urban":     [1, 1, 1, 0, 0, 1, 1, 1],
        "head_educ": [12, 5, 9, 6, 3, 16, 2, 1],
        "region":    [1, 1, 1, 2, 2, 3, 3, 3],
    })
