"""Scenario builder: ``setx`` and ``setx1``.

A scenario is the covariate profile at which quantities of interest are
simulated.  Covariates the caller does not set take a default: the
sample median for numeric columns (or ``fn`` applied to the column when
given), the most frequent value for categorical, text and boolean
columns.

Passing a sequence for exactly one covariate makes a *range* scenario:
one model-matrix row per value, every other covariate held at its
default or override.  For fixed-effects models, fixed-effect variables
name the group whose intercept enters the linear predictor; they never
appear in the model-matrix row.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from dataclasses import replace
from typing import Any

import numpy as np
import pandas as pd

from ._results import FittedModel, Scenario
from .exceptions import MultipleRangeVariablesError, UnknownCategoricalLevelError
from .fixed_effects import compute_fe_contribution
from .formula import build_rows, predictor_variables

logger = logging.getLogger(__name__)

_REDUCTIONS: dict[str, Callable[[np.ndarray], Any]] = {
    "mean": np.mean,
    "median": np.median,
    "min": np.min,
    "max": np.max,
}

_SEQUENCE_TYPES = (list, tuple, range, np.ndarray, pd.Series, pd.Index)


# ------------------------------------------------------------------ #
# Defaults
# ------------------------------------------------------------------ #


def _resolve_fn(fn: Any) -> Callable[[np.ndarray], Any] | None:
    if fn is None or callable(fn):
        return fn
    if isinstance(fn, str) and fn in _REDUCTIONS:
        return _REDUCTIONS[fn]
    msg = (
        f"'fn' must be a callable or one of {', '.join(_REDUCTIONS)}, "
        f"got {fn!r}."
    )
    raise ValueError(msg)


def _mode(series: pd.Series) -> Any:
    """Most frequent value; ties go to the value seen first."""
    values = np.asarray(series.dropna(), dtype=object)
    codes, uniques = pd.factorize(values, sort=False)
    counts = np.bincount(codes)
    return uniques[int(np.argmax(counts))]


def default_value(
    series: pd.Series, fn: Callable[[np.ndarray], Any] | None = None
) -> Any:
    """Default scenario value of one data column."""
    if (
        isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_bool_dtype(series)
        or not pd.api.types.is_numeric_dtype(series)
    ):
        return _mode(series)
    if fn is not None:
        return fn(series.dropna().to_numpy())
    return float(series.median())


# ------------------------------------------------------------------ #
# Scenario construction
# ------------------------------------------------------------------ #


def _is_sequence(value: Any) -> bool:
    return isinstance(value, _SEQUENCE_TYPES) and np.ndim(value) > 0


def _check_levels(name: str, values: list[Any], levels: list[Any]) -> None:
    for value in values:
        if value not in levels:
            msg = (
                f"Value {value!r} is not a level of '{name}' seen at "
                f"estimation time. Valid levels: {', '.join(map(str, levels))}"
            )
            raise UnknownCategoricalLevelError(msg)


def _column(series: pd.Series, values: list[Any]) -> Any:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return pd.Categorical(values, categories=series.cat.categories)
    return values


def build_scenario(
    model: FittedModel,
    values: dict[str, Any] | None = None,
    fn: Any = None,
) -> Scenario:
    """Turn covariate overrides into model-matrix rows.

    Args:
        model: A fitted model.
        values: Covariate overrides.  A sequence value makes a range
            scenario; fixed-effect variables select group intercepts.
        fn: Default for numeric covariates that are not overridden: a
            callable or one of ``"mean"``, ``"median"``, ``"min"``,
            ``"max"``.

    Raises:
        MultipleRangeVariablesError: If more than one covariate is a
            sequence.
        UnknownCategoricalLevelError: If a categorical value was not
            seen at estimation time.
    """
    if not isinstance(model, FittedModel):
        msg = f"Expected a FittedModel from zelig2(), got {type(model).__name__}."
        raise TypeError(msg)
    default_fn = _resolve_fn(fn)
    overrides = dict(values or {})
    data = model.data
    predictors = predictor_variables(model.formula, data.columns)

    fe_levels: dict[str, Any] = {}
    for name in model.fe_variable_names:
        if name in overrides:
            level = overrides.pop(name)
            if _is_sequence(level):
                msg = f"Fixed effect '{name}' takes a single level, got {level!r}."
                raise ValueError(msg)
            fe_levels[name] = level

    unknown = [name for name in overrides if name not in predictors]
    if unknown:
        warnings.warn(
            f"{', '.join(unknown)} not among the model's predictors "
            f"({', '.join(predictors) or 'none'}); ignored.",
            UserWarning,
            stacklevel=3,
        )
        for name in unknown:
            del overrides[name]

    for name, value in overrides.items():
        if _is_sequence(value) and len(value) == 0:
            msg = f"Covariate '{name}' was given an empty sequence."
            raise ValueError(msg)
    ranges = [
        name
        for name, value in overrides.items()
        if _is_sequence(value) and len(value) > 1
    ]
    if len(ranges) > 1:
        msg = (
            f"Only one covariate may take a range of values, got "
            f"{', '.join(ranges)}."
        )
        raise MultipleRangeVariablesError(msg)
    range_variable = ranges[0] if ranges else None
    range_values = list(overrides[range_variable]) if range_variable else None
    for name, value in overrides.items():
        if name != range_variable and _is_sequence(value):
            overrides[name] = list(value)[0]

    for name, value in overrides.items():
        if name in model.categorical_variable_levels:
            checked = range_values if name == range_variable else [value]
            _check_levels(name, checked, model.categorical_variable_levels[name])

    n_rows = len(range_values) if range_values is not None else 1
    columns: dict[str, Any] = {}
    for name in predictors:
        if name == range_variable:
            column = range_values
        elif name in overrides:
            column = [overrides[name]] * n_rows
        else:
            column = [default_value(data[name], default_fn)] * n_rows
        columns[name] = _column(data[name], column)
    frame = pd.DataFrame(columns, index=pd.RangeIndex(n_rows))

    fit = model.underlying_fit
    coef_names = list(model.coefficients.index)
    if predictors:
        rows = build_rows(fit.design_info, frame)
    else:
        rows = pd.DataFrame(1.0, index=frame.index, columns=["Intercept"])
    if rows.shape[0] != n_rows:
        msg = "Scenario values contain missing entries."
        raise ValueError(msg)
    x_matrix = rows.reindex(columns=coef_names, fill_value=0.0).astype(float)

    fe_contribution = compute_fe_contribution(model, fe_levels)
    logger.debug(
        "Built scenario: %d row(s), range variable=%s", n_rows, range_variable
    )
    return Scenario(
        x_matrix=x_matrix,
        user_values={k: v for k, v in (values or {}).items() if k in predictors},
        is_range=range_variable is not None,
        range_variable=range_variable,
        range_values=range_values,
        fe_contribution=fe_contribution,
        fe_levels=fe_levels,
    )


def setx(model: FittedModel, fn: Any = None, **values: Any) -> FittedModel:
    """Set the primary scenario.

    Example::

        z = setx(z, hp=150, wt=3)                 # point scenario
        z = setx(z, hp=range(50, 301, 50))        # range scenario
        z = setx(z, fn="mean")                    # means as defaults

    Returns:
        A copy of *model* with ``scenario`` set and any simulation
        output cleared.
    """
    scenario = build_scenario(model, values, fn=fn)
    return replace(model, scenario=scenario, simulation_output=None)


def setx1(model: FittedModel, fn: Any = None, **values: Any) -> FittedModel:
    """Set the contrast scenario used for first differences and risk ratios.

    Returns:
        A copy of *model* with ``scenario1`` set and any simulation
        output cleared.
    """
    scenario = build_scenario(model, values, fn=fn)
    return replace(model, scenario1=scenario, simulation_output=None)
