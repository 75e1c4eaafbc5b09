"""Typed result objects: fitted models, scenarios and simulation output.

Frozen dataclasses that provide:

* **Attribute access** — ``model.coefficients``, ``out.ev``, etc.
* **Dict-like access** — ``out["ev"]``, ``model.get("vcov_type")``,
  ``"fd" in out`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with NumPy and pandas types converted to native Python.

Updates are copy-on-write: ``setx``, ``setx1`` and ``sim`` return a new
:class:`FittedModel` via :func:`dataclasses.replace`, leaving the
original untouched, so many scenario explorations can fan out from one
estimate.

Configuration-specific state lives in a single ``extension`` slot:
:class:`FixedEffectsExtension` for fixed-effects fits,
:class:`SurveyExtension` for survey-weighted fits, ``None`` otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar, Union

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from ._backends import BackendFit
    from .registry import ModelSpec
    from .survey import SurveyDesign

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy/pandas values to Python-native types.

    Handles nested dicts, lists, ``np.ndarray``, ``pd.Series``,
    ``pd.DataFrame``, ``np.integer`` and ``np.floating`` so that
    :meth:`to_dict` returns a JSON-serialisable structure.
    """
    if isinstance(obj, pd.DataFrame):
        return {str(k): _numpy_to_python(v) for k, v in obj.to_dict("list").items()}
    if isinstance(obj, pd.Series):
        return {str(k): _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports ``obj["key"]`` (``KeyError`` on miss), ``obj.get(key, d)``
    and ``"key" in obj``.  Subclasses may set ``_SERIALIZERS`` to
    convert non-primitive fields and ``_EXCLUDE_FROM_DICT`` to skip
    fields in :meth:`to_dict`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key) and getattr(self, key) is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary of native Python values."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# Scenario
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Scenario(_DictAccessMixin):
    """A covariate profile turned into model-matrix rows.

    Attributes:
        x_matrix: ``(n_rows, p)`` model-matrix rows labelled by the
            coefficient names.  One row for a point scenario, one per
            range value otherwise.
        user_values: Covariate values the caller set explicitly.
        is_range: Whether one covariate varies across rows.
        range_variable: Name of the varying covariate.
        range_values: The varying values, in input order.
        fe_contribution: Offset added to every row's linear predictor.
        fe_levels: Fixed-effect levels requested by the caller.
    """

    x_matrix: pd.DataFrame
    user_values: dict[str, Any] = field(default_factory=dict)
    is_range: bool = False
    range_variable: str | None = None
    range_values: list[Any] | None = None
    fe_contribution: float = 0.0
    fe_levels: dict[str, Any] = field(default_factory=dict)

    @property
    def n_rows(self) -> int:
        return int(self.x_matrix.shape[0])


# ------------------------------------------------------------------ #
# SimulationOutput
# ------------------------------------------------------------------ #

QuantityArray = Union[np.ndarray, pd.DataFrame]


@dataclass(frozen=True)
class SimulationOutput(_DictAccessMixin):
    """Simulated quantities of interest.

    Point scenarios give 1-D arrays of length ``num``; range scenarios
    give ``num × k`` DataFrames whose columns are the range values.

    Attributes:
        ev: Expected values at the primary scenario.
        pv: Predicted values at the primary scenario.
        ev1: Expected values at the contrast scenario.
        pv1: Predicted values at the contrast scenario.
        fd: First differences ``ev1 - ev``.
        rr: Risk ratios ``ev1 / ev`` (binary and count models only).
        num: Number of parameter draws.
        scenario: The primary scenario.
        scenario1: The contrast scenario.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "scenario": lambda s: None if s is None else s.user_values,
        "scenario1": lambda s: None if s is None else s.user_values,
    }

    ev: QuantityArray
    pv: QuantityArray
    num: int
    scenario: Scenario = field(repr=False)
    ev1: QuantityArray | None = None
    pv1: QuantityArray | None = None
    fd: QuantityArray | None = None
    rr: QuantityArray | None = None
    scenario1: Scenario | None = field(default=None, repr=False)


# ------------------------------------------------------------------ #
# Extensions
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FixedEffectsExtension:
    """Fixed-effects metadata of a fitted model."""

    fe_variable_names: list[str]
    full_formula: str


@dataclass(frozen=True)
class SurveyExtension:
    """Survey-design metadata of a fitted model."""

    design: SurveyDesign = field(repr=False)


Extension = Union[FixedEffectsExtension, SurveyExtension, None]


# ------------------------------------------------------------------ #
# FittedModel
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FittedModel(_DictAccessMixin):
    """An estimated model plus its scenarios and simulations.

    Returned by :func:`zelig2.zelig2` and :func:`zelig2.to_zelig2`.

    Attributes:
        formula: Model formula (the covariate part for fixed-effects
            fits).
        model_name: Registry key of the model family.
        model_spec: The registry entry.
        underlying_fit: Backend fit handle.
        coefficients: Named coefficient estimates.
        vcov: Coefficient covariance, labelled like *coefficients*.
        data: Factorized complete-case copy of the estimation data.
        vcov_type: Estimator used for *vcov*.
        categorical_variable_levels: Levels of every categorical
            predictor, used to validate scenario values.
        num: Default number of simulation draws.
        weights_column: Column holding prior weights, if any.
        extension: Fixed-effects or survey metadata.
        scenario: Primary scenario (``setx``).
        scenario1: Contrast scenario (``setx1``).
        simulation_output: Result of the last ``sim``.
    """

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset(
        {"model_spec", "underlying_fit", "data", "extension", "simulation_output"}
    )
    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "scenario": lambda s: None if s is None else s.user_values,
        "scenario1": lambda s: None if s is None else s.user_values,
    }

    formula: str
    model_name: str
    model_spec: ModelSpec = field(repr=False)
    underlying_fit: BackendFit = field(repr=False)
    coefficients: pd.Series = field(repr=False)
    vcov: pd.DataFrame = field(repr=False)
    data: pd.DataFrame = field(repr=False)
    vcov_type: str = "default"
    categorical_variable_levels: dict[str, list] = field(
        default_factory=dict, repr=False
    )
    num: int = 1000
    weights_column: str | None = None
    extension: Extension = None
    scenario: Scenario | None = field(default=None, repr=False)
    scenario1: Scenario | None = field(default=None, repr=False)
    simulation_output: SimulationOutput | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        names = list(self.coefficients.index)
        if list(self.vcov.index) != names or list(self.vcov.columns) != names:
            msg = (
                "Coefficient and covariance labels do not align: "
                f"{names} vs {list(self.vcov.index)}."
            )
            raise ValueError(msg)

    # ---- Derived properties ----

    @property
    def category(self) -> str:
        return self.model_spec.category

    @property
    def description(self) -> str:
        return self.model_spec.description

    @property
    def nobs(self) -> int:
        return int(len(self.data))

    @property
    def is_fixed_effects(self) -> bool:
        return isinstance(self.extension, FixedEffectsExtension)

    @property
    def is_survey(self) -> bool:
        return isinstance(self.extension, SurveyExtension)

    @property
    def fe_variable_names(self) -> list[str]:
        if isinstance(self.extension, FixedEffectsExtension):
            return list(self.extension.fe_variable_names)
        return []

    @property
    def full_formula(self) -> str:
        if isinstance(self.extension, FixedEffectsExtension):
            return self.extension.full_formula
        return self.formula

    @property
    def survey_design(self) -> SurveyDesign | None:
        if isinstance(self.extension, SurveyExtension):
            return self.extension.design
        return None

    # ---- Accessors ----

    def coef(self) -> pd.Series:
        """Coefficient estimates (a copy)."""
        return self.coefficients.copy()

    def get_vcov(self) -> pd.DataFrame:
        """Coefficient covariance matrix (a copy)."""
        return self.vcov.copy()

    def std_errors(self) -> pd.Series:
        """Standard errors from the covariance diagonal."""
        return pd.Series(
            np.sqrt(np.diag(self.vcov.to_numpy())), index=self.coefficients.index
        )

    def __repr__(self) -> str:
        extras = []
        if self.is_fixed_effects:
            extras.append(f"fixed_effects={self.fe_variable_names}")
        if self.is_survey:
            extras.append("survey=True")
        if self.scenario is not None:
            extras.append("scenario=set")
        if self.simulation_output is not None:
            extras.append(f"simulated={self.simulation_output.num}")
        tail = ", ".join(extras)
        return (
            f"FittedModel(model={self.model_name!r}, formula={self.full_formula!r}, "
            f"n={self.nobs}, vcov_type={self.vcov_type!r}"
            + (f", {tail}" if tail else "")
            + ")"
        )
