"""Formatted ASCII tables for fitted models and simulation output.

The layout follows the statsmodels summary style: a header panel with
the model description, formula and sample information, then a
coefficient table whose standard errors come from the model's stored
covariance (so they reflect the chosen ``vcov_type``), then, once
:func:`~zelig2.sim` has run, a panel summarising each simulated
quantity by its mean, standard deviation and central interval.
"""

from __future__ import annotations

import textwrap
from typing import Any

import numpy as np
import pandas as pd
from scipy import stats as _sp_stats

from ._results import FittedModel

_QUANTITY_LABELS = {
    "ev": "Expected Values",
    "pv": "Predicted Values",
    "ev1": "Expected Values (contrast)",
    "pv1": "Predicted Values (contrast)",
    "fd": "First Differences",
    "rr": "Risk Ratios",
}


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _check_ci(ci: float) -> None:
    if not 0 < ci < 1:
        msg = f"'ci' must lie strictly between 0 and 1, got {ci!r}."
        raise ValueError(msg)


# ------------------------------------------------------------------ #
# Tables
# ------------------------------------------------------------------ #


def coef_table(model: FittedModel) -> pd.DataFrame:
    """Estimates with standard errors, z values and two-sided p-values.

    Standard errors are the square roots of the covariance diagonal, so
    they follow the estimator chosen by ``vcov_type``.
    """
    coefs = model.coefficients.astype(float)
    se = model.std_errors()
    with np.errstate(divide="ignore", invalid="ignore"):
        z = coefs / se
    p = pd.Series(2 * _sp_stats.norm.sf(np.abs(z)), index=coefs.index)
    return pd.DataFrame(
        {"Estimate": coefs, "Std. Error": se, "z value": z, "Pr(>|z|)": p}
    )


def _summarise(values: np.ndarray, ci: float) -> dict[str, float]:
    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]
    lo, hi = (1 - ci) / 2, 1 - (1 - ci) / 2
    if values.size == 0:
        return {"mean": np.nan, "sd": np.nan, "lower": np.nan, "upper": np.nan}
    return {
        "mean": float(values.mean()),
        "sd": float(values.std(ddof=1)) if values.size > 1 else np.nan,
        "lower": float(np.quantile(values, lo)),
        "upper": float(np.quantile(values, hi)),
    }


def simulation_table(model: FittedModel, ci: float = 0.95) -> pd.DataFrame:
    """Mean, standard deviation and central *ci* interval of each quantity.

    Point scenarios give one row per quantity; range scenarios give one
    row per quantity and range value (a two-level index).

    Raises:
        ValueError: If *model* has not been simulated, or *ci* is not in
            ``(0, 1)``.
    """
    _check_ci(ci)
    output = model.simulation_output
    if output is None:
        msg = "No simulation output. Call setx() and sim() first."
        raise ValueError(msg)
    records: list[dict[str, Any]] = []
    for name in _QUANTITY_LABELS:
        q = getattr(output, name)
        if q is None:
            continue
        if isinstance(q, pd.DataFrame):
            for position, column in enumerate(q.columns):
                stats = _summarise(q.iloc[:, position].to_numpy(), ci)
                records.append({"quantity": name, "value": column, **stats})
        else:
            records.append({"quantity": name, "value": None, **_summarise(q, ci)})
    table = pd.DataFrame.from_records(records)
    ranged = table["value"].notna().any()
    table = table.set_index(["quantity", "value"] if ranged else ["quantity"])
    if not ranged:
        table = table.drop(columns="value")
    return table


# ------------------------------------------------------------------ #
# Printing
# ------------------------------------------------------------------ #


def _print_header(model: FittedModel, title: str) -> None:
    print("=" * 80)
    for line in textwrap.wrap(title, width=78):
        print(f"{line:^80}")
    print("=" * 80)
    col1 = 40
    col2 = 38
    print(
        f"{'Model:':<16}{_truncate(model.model_name, col1 - 16):<{col1 - 16}}"
        f"{'No. Observations:':>{col2 - 11}} {model.nobs:>10}"
    )
    print(
        f"{'Category:':<16}{model.category:<{col1 - 16}}"
        f"{'Vcov Type:':>{col2 - 11}} {model.vcov_type:>10}"
    )
    print(f"{'Formula:':<16}{_truncate(model.full_formula, 80 - 16)}")
    if model.is_fixed_effects:
        print(f"{'Fixed Effects:':<16}{', '.join(model.fe_variable_names)}")
    if model.is_survey:
        design = model.survey_design
        print(
            f"{'Survey:':<16}{design.n_psu} PSUs in {design.n_strata} "
            "strata (design-based SEs)"
        )


def _print_coefficients(model: FittedModel, with_inference: bool) -> None:
    fc = 28
    print("-" * 80)
    if with_inference:
        print(
            f"{'':<{fc}}{'Estimate':>13}{'Std. Error':>13}"
            f"{'z value':>13}{'Pr(>|z|)':>13}"
        )
    else:
        print(f"{'':<{fc}}{'Estimate':>13}")
    print("-" * 80)
    table = coef_table(model)
    for name, row in table.iterrows():
        label = _truncate(str(name), fc - 1)
        if with_inference:
            print(
                f"{label:<{fc}}{row['Estimate']:>13.4f}{row['Std. Error']:>13.4f}"
                f"{row['z value']:>13.3f}{row['Pr(>|z|)']:>13.4f}"
            )
        else:
            print(f"{label:<{fc}}{row['Estimate']:>13.4f}")


def print_model(model: FittedModel) -> None:
    """Print a concise overview: header and coefficient estimates."""
    _print_header(model, f"zelig2: {model.description}")
    _print_coefficients(model, with_inference=False)
    print("=" * 80)
    if model.simulation_output is not None:
        print(
            f"Simulation results available ({model.simulation_output.num} draws)."
        )
    print()


def print_summary(model: FittedModel, ci: float = 0.95) -> None:
    """Print the coefficient table and, if simulated, the QI summary.

    Args:
        model: A fitted model.
        ci: Width of the central interval reported for simulated
            quantities (default 0.95).
    """
    _check_ci(ci)
    _print_header(model, f"zelig2: {model.description}")
    _print_coefficients(model, with_inference=True)
    output = model.simulation_output
    if output is not None:
        lo = f"{100 * (1 - ci) / 2:g}%"
        hi = f"{100 * (1 - (1 - ci) / 2):g}%"
        print("=" * 80)
        title = f"Simulated Quantities of Interest ({output.num} draws)"
        print(f"{title:^80}")
        print("-" * 80)
        print(f"{'':<28}{'Mean':>13}{'SD':>13}{lo:>13}{hi:>13}")
        table = simulation_table(model, ci=ci)
        for name, label in _QUANTITY_LABELS.items():
            if getattr(output, name) is None:
                continue
            print(label)
            rows = table.loc[[name]]
            for key, row in rows.iterrows():
                value = key[1] if isinstance(key, tuple) else None
                if value is None or pd.isna(value):
                    prefix = "  "
                else:
                    prefix = f"  {_range_label(output, name)}={value}"
                print(
                    f"{_truncate(prefix, 27):<28}{row['mean']:>13.4f}"
                    f"{row['sd']:>13.4f}{row['lower']:>13.4f}{row['upper']:>13.4f}"
                )
    print("=" * 80)
    print()


def _range_label(output: Any, name: str) -> str:
    scenario = output.scenario1 if name in ("ev1", "pv1") else output.scenario
    if not scenario.is_range and output.scenario1 is not None:
        scenario = output.scenario1 if output.scenario1.is_range else scenario
    return str(scenario.range_variable)
