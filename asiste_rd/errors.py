"""
errors.py
=========

Exception types raised by the estimation core.

Per-cell failures (`MissingInputError`, `InsufficientDataError`,
`SingularFitError`) are caught by the specification runner and turned into
NA result rows. `ConfigurationError` signals a caller bug and is allowed to
propagate.
"""

from __future__ import annotations


class RDError(Exception):
    """Base class for all estimation errors."""


class MissingInputError(RDError):
    """A required field is absent for a unit."""


class InsufficientDataError(RDError):
    """Fewer observations than a fit requires within the bandwidth."""


class SingularFitError(RDError):
    """The (weighted) design matrix is rank-deficient."""


class ConfigurationError(RDError):
    """Invalid combination of options."""


# Failures that mark a single cell as unavailable without aborting the batch.
CELL_ERRORS: tuple[type[RDError], ...] = (
    MissingInputError,
    InsufficientDataError,
    SingularFitError,
)
