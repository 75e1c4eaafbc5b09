"""Simulation engine: ``sim`` and ``qi_to_df``.

:func:`sim` draws ``num`` coefficient vectors from the estimated
sampling distribution and pushes each one through the family's inverse
link and outcome noise at every scenario row.  With a contrast scenario
it also reports first differences (``ev1 - ev``) and, for binary and
count models, risk ratios (``ev1 / ev``).

Point scenarios produce 1-D arrays of length ``num``; range scenarios
produce ``num × k`` DataFrames whose columns are the range values.
"""

from __future__ import annotations

import logging
import operator
from collections.abc import Callable
from dataclasses import replace
from typing import Any

import numpy as np
import pandas as pd

from ._results import FittedModel, QuantityArray, Scenario, SimulationOutput
from ._typing import RandomState
from .exceptions import NoScenarioError

logger = logging.getLogger(__name__)

_RATIO_CATEGORIES = ("binary", "count")


def _simulate_at(
    model: FittedModel,
    params: np.ndarray,
    scenario: Scenario,
    rng: np.random.Generator,
) -> tuple[QuantityArray, QuantityArray]:
    """Expected and predicted values at every row of *scenario*."""
    spec = model.model_spec
    x = scenario.x_matrix.to_numpy(dtype=float)
    offset = scenario.fe_contribution
    if not scenario.is_range:
        qi = spec.quantities_of_interest(params, x[0], model, fe_offset=offset, rng=rng)
        return np.asarray(qi["ev"]), np.asarray(qi["pv"])

    ev_cols: list[np.ndarray] = []
    pv_cols: list[np.ndarray] = []
    for row in x:
        qi = spec.quantities_of_interest(params, row, model, fe_offset=offset, rng=rng)
        ev_cols.append(np.asarray(qi["ev"]))
        pv_cols.append(np.asarray(qi["pv"]))
    columns = list(scenario.range_values)
    ev = pd.DataFrame(np.column_stack(ev_cols), columns=columns)
    pv = pd.DataFrame(np.column_stack(pv_cols), columns=columns)
    return ev, pv


def _contrast(
    ev: QuantityArray,
    ev1: QuantityArray,
    op: Callable[[Any, Any], Any],
) -> QuantityArray:
    """Elementwise ``op(ev1, ev)``, broadcasting a point against a range."""
    with np.errstate(divide="ignore", invalid="ignore"):
        if isinstance(ev1, pd.DataFrame) and isinstance(ev, pd.DataFrame):
            if ev1.shape != ev.shape:
                msg = (
                    "The primary and contrast range scenarios have "
                    f"{ev.shape[1]} and {ev1.shape[1]} values; they must match."
                )
                raise ValueError(msg)
            return pd.DataFrame(
                op(ev1.to_numpy(), ev.to_numpy()), columns=ev1.columns
            )
        if isinstance(ev1, pd.DataFrame):
            return pd.DataFrame(
                op(ev1.to_numpy(), np.asarray(ev)[:, np.newaxis]),
                columns=ev1.columns,
            )
        if isinstance(ev, pd.DataFrame):
            return pd.DataFrame(
                op(np.asarray(ev1)[:, np.newaxis], ev.to_numpy()),
                columns=ev.columns,
            )
        return op(np.asarray(ev1), np.asarray(ev))


def sim(
    model: FittedModel,
    num: int | None = None,
    random_state: RandomState = None,
) -> FittedModel:
    """Simulate quantities of interest at the stored scenarios.

    Args:
        model: A fitted model with a primary scenario (see
            :func:`~zelig2.setx`).
        num: Number of parameter draws; defaults to ``model.num``.
        random_state: Seed or ``numpy.random.Generator``.

    Returns:
        A copy of *model* whose ``simulation_output`` holds ``ev`` and
        ``pv`` and, with a contrast scenario, ``ev1``, ``pv1``, ``fd``
        and (binary and count models) ``rr``.

    Raises:
        NoScenarioError: If no primary scenario is set.
        ValueError: If *num* is not a positive integer.
    """
    if not isinstance(model, FittedModel):
        msg = f"Expected a FittedModel from zelig2(), got {type(model).__name__}."
        raise TypeError(msg)
    if model.scenario is None:
        msg = "No scenario set. Call setx() before sim()."
        raise NoScenarioError(msg)
    num = model.num if num is None else num
    if isinstance(num, bool) or not isinstance(num, (int, np.integer)) or num < 1:
        msg = f"'num' must be a positive integer, got {num!r}."
        raise ValueError(msg)
    num = int(num)

    rng = np.random.default_rng(random_state)
    spec = model.model_spec
    params = spec.draw_parameters(model.coefficients, model.vcov, num, rng)
    logger.debug("Simulating %d draws for model '%s'", num, spec.name)

    ev, pv = _simulate_at(model, params, model.scenario, rng)
    ev1 = pv1 = fd = rr = None
    if model.scenario1 is not None:
        ev1, pv1 = _simulate_at(model, params, model.scenario1, rng)
        fd = _contrast(ev, ev1, operator.sub)
        if spec.category in _RATIO_CATEGORIES:
            rr = _contrast(ev, ev1, operator.truediv)

    output = SimulationOutput(
        ev=ev,
        pv=pv,
        num=num,
        scenario=model.scenario,
        ev1=ev1,
        pv1=pv1,
        fd=fd,
        rr=rr,
        scenario1=model.scenario1,
    )
    return replace(model, simulation_output=output)


def qi_to_df(model: FittedModel | SimulationOutput) -> pd.DataFrame:
    """Simulated quantities as a tidy DataFrame.

    Point scenarios give one row per draw with a column per quantity
    (``ev``, ``pv`` and, when present, ``ev1``, ``pv1``, ``fd``,
    ``rr``).  Range scenarios give long format: one row per draw and
    range value, with the range variable as a column.

    Raises:
        ValueError: If *model* has not been simulated.
    """
    output = model.simulation_output if isinstance(model, FittedModel) else model
    if output is None:
        msg = "No simulation output. Call setx() and sim() first."
        raise ValueError(msg)

    quantities = {
        name: getattr(output, name)
        for name in ("ev", "pv", "ev1", "pv1", "fd", "rr")
        if getattr(output, name) is not None
    }
    if not any(isinstance(q, pd.DataFrame) for q in quantities.values()):
        frame = pd.DataFrame({k: np.asarray(v) for k, v in quantities.items()})
        frame.insert(0, "draw", np.arange(output.num))
        return frame

    ranged = output.scenario if output.scenario.is_range else output.scenario1
    variable = ranged.range_variable
    values = list(ranged.range_values)
    long: dict[str, Any] = {
        "draw": np.repeat(np.arange(output.num), len(values)),
        variable: np.tile(np.asarray(values, dtype=object), output.num),
    }
    for name, q in quantities.items():
        if isinstance(q, pd.DataFrame):
            long[name] = q.to_numpy().ravel()
        else:
            long[name] = np.repeat(np.asarray(q), len(values))
    return pd.DataFrame(long)
