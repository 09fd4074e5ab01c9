"""
config.py
=========

Immutable configuration for the RD / DiDC pipeline.

`RDConfig` is built once (defaults, optionally merged with a JSON file) and
passed into every component. Its canonical JSON form is hashed and stamped
into each result row, so two result tables can be compared by config hash.

The specification table replaces numbered option combinations: each
`Specification` names its controls / clustering / education / bandwidth
method explicitly.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .payloads import config_hash as _hash_dict

KERNELS = ("triangular",)
VCE_TYPES = ("nn", "hc0", "hc1")
BW_METHODS = ("mserd", "msetwo")
TREATED_SIDES = ("below", "above")
EMPTY_HOUSEHOLD_POLICIES = ("before_gate", "after_gate")
MODES = ("rd", "didc")


@dataclass(frozen=True)
class ColumnMap:
    """Names of the microdata columns consumed from the ingestion layer."""
    hh_id: str = "hh_id"
    person_id: str = "person_id"
    year: str = "year"
    quarter: str = "quarter"
    income: str = "income"
    attend: str = "attend"
    age: str = "age"
    male: str = "male"
    head: str = "head"
    child: str = "child"
    urban: str = "urban"
    head_educ: str = "head_educ"
    region: str = "region"
    weight: str = "weight"
    in_panel: str = "in_panel"


@dataclass(frozen=True)
class RDConfig:
    # Eligibility thresholds keyed by period ("2019", or "2019Q4" to override a quarter)
    thresholds: dict[str, float] = field(default_factory=lambda: {"2019": 89.0, "2020": 89.0})
    cutoff: float = 0.0
    treated_side: str = "below"
    didc_periods: tuple[str, str] = ("2019", "2020")
    # Period used by static RD on multi-period data; None means the first DiDC period
    rd_period: str | None = None

    kernel: str = "triangular"
    vce: str = "nn"
    nn_matches: int = 3
    bwcheck: int | None = 10
    scaleregul: float = 1.0
    level: float = 95.0
    min_clusters: int = 2

    polynomial_orders: tuple[int, ...] = (1, 2)
    density_order: int = 2
    min_sample: int = 50
    empty_households: str = "before_gate"

    controls: tuple[str, ...] = ("hh_size", "urban", "prop_male")
    education_control: str = "head_educ"
    cluster_column: str = "region"

    columns: ColumnMap = field(default_factory=ColumnMap)

    def __post_init__(self):
        if self.kernel not in KERNELS:
            raise ConfigurationError(f"Unsupported kernel {self.kernel!r}; expected one of {KERNELS}")
        if self.vce not in VCE_TYPES:
            raise ConfigurationError(f"Unsupported vce {self.vce!r}; expected one of {VCE_TYPES}")
        if self.treated_side not in TREATED_SIDES:
            raise ConfigurationError(f"treated_side must be one of {TREATED_SIDES}")
        if self.empty_households not in EMPTY_HOUSEHOLD_POLICIES:
            raise ConfigurationError(f"empty_households must be one of {EMPTY_HOUSEHOLD_POLICIES}")
        if self.nn_matches < 1:
            raise ConfigurationError("nn_matches must be >= 1")
        if self.bwcheck is not None and self.bwcheck < 1:
            raise ConfigurationError("bwcheck must be >= 1 or None")
        if not 0 < self.level < 100:
            raise ConfigurationError("level must be in (0, 100)")
        if self.min_clusters < 2:
            raise ConfigurationError("min_clusters must be >= 2")
        if not self.polynomial_orders or any(int(p) < 0 for p in self.polynomial_orders):
            raise ConfigurationError("polynomial_orders must be non-empty and non-negative")
        if self.density_order < 1:
            raise ConfigurationError("density_order must be >= 1")
        if len(self.didc_periods) != 2:
            raise ConfigurationError("didc_periods must name exactly two periods")

    def threshold_for(self, year, quarter=None) -> float:
        """Threshold for a period; a quarter-specific key wins over the year key."""
        if quarter is not None:
            key = f"{int(year)}Q{int(quarter)}"
            if key in self.thresholds:
                return float(self.thresholds[key])
        key = str(int(year)) if not isinstance(year, str) else year
        if key not in self.thresholds:
            raise ConfigurationError(f"No eligibility threshold configured for period {key!r}")
        return float(self.thresholds[key])

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["didc_periods"] = list(self.didc_periods)
        d["polynomial_orders"] = list(self.polynomial_orders)
        d["controls"] = list(self.controls)
        return d

    @property
    def hash(self) -> str:
        return _hash_dict(self.to_dict())


@dataclass(frozen=True)
class Specification:
    label: str
    controls: bool
    cluster: bool
    education: bool
    bwselect: str

    def covariates(self, config: RDConfig) -> tuple[str, ...]:
        if not self.controls:
            return ()
        covs = tuple(config.controls)
        if self.education:
            covs = covs + (config.education_control,)
        return covs


_BASE_SPECS = (
    ("No Controls", False, False, False),
    ("With Controls", True, False, False),
    ("Cluster No Controls", False, True, False),
    ("Cluster With Controls", True, True, False),
    ("Cluster With Controls + Education", True, True, True),
)

SPECIFICATIONS: tuple[Specification, ...] = tuple(
    Specification(label, controls, cluster, education, "mserd")
    for label, controls, cluster, education in _BASE_SPECS
) + tuple(
    Specification(f"{label} (msetwo)", controls, cluster, education, "msetwo")
    for label, controls, cluster, education in _BASE_SPECS
)


def specifications_for(mode: str) -> tuple[Specification, ...]:
    if mode not in MODES:
        raise ConfigurationError(f"mode must be one of {MODES}")
    return SPECIFICATIONS if mode == "rd" else SPECIFICATIONS[:5]


def get_specification(label: str) -> Specification:
    for spec in SPECIFICATIONS:
        if spec.label == label:
            return spec
    raise ConfigurationError(f"Unknown specification {label!r}")


def config_from_dict(overrides: dict[str, Any], base: RDConfig | None = None) -> RDConfig:
    base = base or RDConfig()
    known = {f.name for f in fields(RDConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigurationError(f"Unknown config keys: {unknown}")

    kwargs: dict[str, Any] = {}
    for key, value in overrides.items():
        if key == "columns":
            col_known = {f.name for f in fields(ColumnMap)}
            bad = sorted(set(value) - col_known)
            if bad:
                raise ConfigurationError(f"Unknown column keys: {bad}")
            value = replace(base.columns, **value)
        elif key == "thresholds":
            value = {str(k): float(v) for k, v in value.items()}
        elif key == "didc_periods":
            value = tuple(str(v) for v in value)
        elif key == "rd_period" and value is not None:
            value = str(value)
        elif key in ("polynomial_orders", "controls"):
            value = tuple(value)
        kwargs[key] = value
    return replace(base, **kwargs)


def load_config(path: Path | str | None) -> RDConfig:
    """Load a JSON config file merged over the defaults (defaults if path is None)."""
    if path is None:
        return RDConfig()
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    with open(path) as f:
        overrides = json.load(f)
    if not isinstance(overrides, dict):
        raise ConfigurationError("Config file must contain a JSON object")
    return config_from_dict(overrides)
