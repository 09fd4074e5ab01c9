import numpy as np
import pytest
from rdrobust import rdrobust

from asiste_rd.bandwidth import BandwidthSelector
from asiste_rd.config import RDConfig
from asiste_rd.estimator import LocalPolynomialEstimator

# rdrobust treats x >= c as treated and has no bwcheck floor by default.
REFERENCE_CONFIG = RDConfig(treated_side="above", bwcheck=None)


def draw(seed, n=1500):
    rng = np.random.default_rng(seed)
    x = rng.normal(0, 30, n)
    z = rng.normal(0, 1, (n, 2))
    y = (
        0.4
        - 0.12 * (x >= 0)
        + 0.003 * x
        + 0.00005 * x ** 2 * (x >= 0)
        + z @ [0.15, -0.05]
        + rng.normal(0, 0.2, n)
    )
    return x, y, z


def fit_both(x, y, p, method, z=None):
    bw = BandwidthSelector(REFERENCE_CONFIG).select(x, y, p, method=method, covariates=z)
    ours = LocalPolynomialEstimator(REFERENCE_CONFIG).fit(
        x, y, p=p,
        h_left=bw.h_left, h_right=bw.h_right, b_left=bw.b_left, b_right=bw.b_right,
        covariates=z, bwselect=method,
    )
    kwargs = dict(p=p, bwselect=method, vce="nn")
    if z is not None:
        kwargs["covs"] = z
    ref = rdrobust(y, x, **kwargs)
    return ours, ref


@pytest.mark.parametrize("p", [1, 2])
@pytest.mark.parametrize("method", ["mserd", "msetwo"])
def test_matches_rdrobust(p, method):
    x, y, _ = draw(11)
    ours, ref = fit_both(x, y, p, method)

    assert ours.h_left == pytest.approx(float(ref.bws.iloc[0, 0]), rel=1e-4)
    assert ours.h_right == pytest.approx(float(ref.bws.iloc[0, 1]), rel=1e-4)
    assert ours.b_left == pytest.approx(float(ref.bws.iloc[1, 0]), rel=1e-4)
    assert ours.b_right == pytest.approx(float(ref.bws.iloc[1, 1]), rel=1e-4)

    assert ours.tau_cl == pytest.approx(float(ref.coef.iloc[0]), rel=1e-4)
    assert ours.tau_bc == pytest.approx(float(ref.coef.iloc[1]), rel=1e-4)
    assert ours.se_cl == pytest.approx(float(ref.se.iloc[0]), rel=1e-4)
    assert ours.se_rb == pytest.approx(float(ref.se.iloc[2]), rel=1e-4)


@pytest.mark.parametrize("p", [1, 2])
def test_matches_rdrobust_with_covariates(p):
    x, y, z = draw(12)
    ours, ref = fit_both(x, y, p, "mserd", z)

    assert ours.h_left == pytest.approx(float(ref.bws.iloc[0, 0]), rel=1e-4)
    assert ours.b_left == pytest.approx(float(ref.bws.iloc[1, 0]), rel=1e-4)
    assert ours.tau_cl == pytest.approx(float(ref.coef.iloc[0]), rel=1e-4)
    assert ours.tau_bc == pytest.approx(float(ref.coef.iloc[1]), rel=1e-4)
    assert ours.se_cl == pytest.approx(float(ref.se.iloc[0]), rel=1e-4)
    assert ours.se_rb == pytest.approx(float(ref.se.iloc[2]), rel=1e-4)
