"""Error taxonomy for the zelig2 package.

Every error raised for bad caller input or an unresolvable model state
derives from :class:`Zelig2Error` *and* from the builtin exception a
caller would naturally expect (``ValueError`` or ``TypeError``), so both
``except Zelig2Error`` and ``except ValueError`` work.

None of these are fatal to the process.  Situations that can be
meaningfully degraded (an unknown fixed-effect level, bootstrap
requested for a fixed-effects fit) emit a ``UserWarning`` instead.
"""

from __future__ import annotations


class Zelig2Error(Exception):
    """Base class for all zelig2 errors."""


# ------------------------------------------------------------------ #
# Input validation (raised at zelig2() entry)
# ------------------------------------------------------------------ #


class InvalidFormulaError(Zelig2Error, ValueError):
    """The model formula is missing, not a string, or malformed."""


class InvalidDataError(Zelig2Error, TypeError):
    """The data argument is not a tabular structure."""


class ModelNotFoundError(Zelig2Error, ValueError):
    """A model name is absent from the registry."""


class InvalidModelNameError(ModelNotFoundError):
    """An unknown or malformed model name was passed to ``zelig2()``."""


# ------------------------------------------------------------------ #
# Estimation configuration
# ------------------------------------------------------------------ #


class UnsupportedFixedEffectsError(Zelig2Error, ValueError):
    """Fixed effects were combined with a family that cannot absorb them."""


class MissingClusterError(Zelig2Error, ValueError):
    """``vcov_type="cluster"`` was requested without a cluster variable."""


class UnknownVcovTypeError(Zelig2Error, ValueError):
    """The requested variance-covariance estimator is not recognised."""


class InvalidWeightSpecError(Zelig2Error, ValueError):
    """Weights are of an unsupported shape or name a missing column."""


class InvalidSurveyDesignError(Zelig2Error, ValueError):
    """A survey design is of the wrong type or internally inconsistent."""


# ------------------------------------------------------------------ #
# Scenarios and simulation
# ------------------------------------------------------------------ #


class NoScenarioError(Zelig2Error, ValueError):
    """``sim()`` was called before ``setx()``."""


class MultipleRangeVariablesError(Zelig2Error, ValueError):
    """More than one covariate was given a range of values."""


class UnknownCategoricalLevelError(Zelig2Error, ValueError):
    """A scenario value lies outside the levels seen at estimation time."""
