"""RD and difference-in-discontinuities estimation for cash-transfer eligibility cutoffs."""

from .bandwidth import BandwidthChoice, BandwidthSelector
from .config import SPECIFICATIONS, RDConfig, Specification, load_config
from .density import DensityTestResult, ManipulationTester
from .errors import (
    ConfigurationError,
    InsufficientDataError,
    MissingInputError,
    RDError,
    SingularFitError,
)
from .estimator import EstimationResult, LocalPolynomialEstimator
from .households import SUBGROUPS, SubgroupDefinition, validate_covariates
from .runner import RunSummary, SpecificationRunner, run_cell
from .running import RunningVariableBuilder
from .variance import VarianceEstimator

__version__ = "0.1.0"
