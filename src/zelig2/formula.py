"""Formula handling and design-matrix construction.

Formulas are patsy strings (``"mpg ~ hp + wt"``), optionally followed by
a fixed-effects part (``"mpg ~ hp | cyl"``, see
:mod:`zelig2.fixed_effects`).  Model matrices are built with patsy so
that the column naming, categorical coding and stateful transforms
(``center(x)``, ``C(cyl)``, ``np.log(x)``) seen at estimation time are
replayed exactly when scenario rows are built later.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import patsy

from .exceptions import InvalidFormulaError

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_QUOTED = re.compile(r"""Q\(\s*(['"])(.+?)\1\s*\)""")
_CATEGORICAL_CALL = re.compile(r"^\s*C\(\s*([A-Za-z_][A-Za-z0-9_]*)")

# Names visible to formula expressions such as "np.log(x)".
_EVAL_ENV = patsy.EvalEnvironment([{"np": np, "numpy": np}])


@dataclass(frozen=True)
class Design:
    """Outcome vector, model matrix and the patsy recipe that built them."""

    endog: pd.Series
    exog: pd.DataFrame
    design_info: Any

    @property
    def endog_name(self) -> str:
        return str(self.endog.name)


def validate_formula(formula: Any) -> str:
    """Check that *formula* is a two-sided formula string.

    Raises:
        InvalidFormulaError: If *formula* is not a string, has no ``~``,
            or has an empty side.
    """
    if not isinstance(formula, str):
        msg = (
            f"'formula' must be a formula string such as 'y ~ x1 + x2', "
            f"got {type(formula).__name__}."
        )
        raise InvalidFormulaError(msg)
    if formula.count("~") != 1:
        msg = (
            f"Formula '{formula}' must contain exactly one '~' separating "
            "the outcome from the predictors, e.g. 'y ~ x1 + x2'."
        )
        raise InvalidFormulaError(msg)
    lhs, rhs = formula.split("~")
    if not lhs.strip() or not rhs.strip():
        msg = (
            f"Formula '{formula}' needs both an outcome and a right-hand "
            "side. Use 'y ~ 1' for an intercept-only model."
        )
        raise InvalidFormulaError(msg)
    return formula


def split_formula(formula: str) -> tuple[str, str]:
    """Return the stripped ``(lhs, rhs)`` halves of a formula."""
    lhs, rhs = formula.split("~", 1)
    return lhs.strip(), rhs.strip()


def formula_variables(text: str, columns: Any) -> list[str]:
    """Names in *text* that are columns of the data, in order of appearance.

    Both bare identifiers and patsy's ``Q("odd name")`` quoting are
    recognised.  Function names (``np``, ``log``, ``C``) are ignored
    unless they happen to be column names.
    """
    available = set(columns)
    found: list[str] = []
    for match in _QUOTED.finditer(text):
        name = match.group(2)
        if name in available and name not in found:
            found.append(name)
    stripped = _QUOTED.sub(" ", text)
    for token in _IDENTIFIER.findall(stripped):
        if token in available and token not in found:
            found.append(token)
    return found


def predictor_variables(formula: str, columns: Any) -> list[str]:
    """Data columns referenced on the right-hand side of *formula*."""
    _, rhs = split_formula(formula)
    return formula_variables(rhs, columns)


# ------------------------------------------------------------------ #
# Data preparation
# ------------------------------------------------------------------ #


def auto_factorize(data: pd.DataFrame) -> pd.DataFrame:
    """Convert text columns to pandas Categoricals with sorted levels.

    Columns that are already categorical are left untouched.  Returns a
    new DataFrame; *data* is not modified.
    """
    out = data.copy()
    for col in out.columns:
        series = out[col]
        if isinstance(series.dtype, pd.CategoricalDtype):
            continue
        if pd.api.types.is_object_dtype(series) or pd.api.types.is_string_dtype(
            series
        ):
            out[col] = series.astype("category")
    return out


def categorical_levels(data: pd.DataFrame, variables: list[str]) -> dict[str, list]:
    """Levels of every categorical column among *variables*."""
    levels: dict[str, list] = {}
    for var in variables:
        if var in data.columns and isinstance(data[var].dtype, pd.CategoricalDtype):
            levels[var] = list(data[var].cat.categories)
    return levels


def design_categorical_levels(design_info: Any) -> dict[str, list]:
    """Levels patsy memorised for ``C(var)`` and bare categorical factors."""
    levels: dict[str, list] = {}
    for factor, info in design_info.factor_infos.items():
        if info.type != "categorical":
            continue
        code = factor.code.strip()
        match = _CATEGORICAL_CALL.match(code)
        name = match.group(1) if match else code
        if _IDENTIFIER.fullmatch(name):
            levels[name] = list(info.categories)
    return levels


# ------------------------------------------------------------------ #
# Model matrices
# ------------------------------------------------------------------ #


def build_design(formula: str, data: pd.DataFrame, binary: bool = False) -> Design:
    """Build the outcome vector and model matrix for *formula*.

    Rows with missing values in any referenced variable are dropped by
    patsy; the returned objects keep the surviving index.  A boolean
    outcome is coded 0/1.  With *binary*, a two-level categorical or
    text outcome is coded 0 for its first level and 1 for its second.

    Raises:
        InvalidFormulaError: If patsy cannot evaluate the formula, or
            the outcome expands to more than one column.
    """
    lhs, _ = split_formula(formula)
    if lhs in data.columns and pd.api.types.is_bool_dtype(data[lhs]):
        data = data.assign(**{lhs: data[lhs].astype(int)})
    try:
        y, X = patsy.dmatrices(
            formula, data, NA_action="drop", return_type="dataframe", eval_env=_EVAL_ENV
        )
    except patsy.PatsyError as exc:
        msg = f"Could not build the model matrix for '{formula}': {exc}"
        raise InvalidFormulaError(msg) from exc
    if binary and y.shape[1] == 2:
        y = y.iloc[:, [1]].set_axis([lhs], axis=1)
    if y.shape[1] != 1:
        msg = (
            f"The outcome '{lhs}' expands to {y.shape[1]} columns "
            f"({list(y.columns)}). Code it as a single numeric column."
        )
        raise InvalidFormulaError(msg)
    return Design(endog=y.iloc[:, 0], exog=X, design_info=X.design_info)


def build_rows(design_info: Any, frame: pd.DataFrame) -> pd.DataFrame:
    """Replay the estimation-time recipe on new covariate rows."""
    (rows,) = patsy.build_design_matrices(
        [design_info], frame, return_type="dataframe"
    )
    return rows


def hat_values(exog: Any) -> np.ndarray:
    """Unweighted leverages ``diag(X (X'X)^-1 X')``."""
    X = np.asarray(exog, dtype=float)
    if X.shape[1] == 0:
        return np.zeros(X.shape[0])
    xtx_inv = np.linalg.pinv(X.T @ X)
    return np.einsum("ij,jk,ik->i", X, xtx_inv, X)
