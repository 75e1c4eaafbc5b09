"""Fixed-effects adapter.

Fixed effects are written after a ``|`` in the formula
(``"mpg ~ hp + wt | cyl"``, ``"y ~ x | firm + year"``) or passed
separately through ``fixef`` (``"~cyl"``, ``"cyl"`` or a list of
names).  Both forms normalise to a :class:`ParsedFormula`.

Supported families are fitted with the group intercepts absorbed by
weighted demeaning (see :mod:`zelig2._backends._fixed`); ``tobit`` and
``quantile`` cannot absorb fixed effects.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ._backends._fixed import (
    FixedEffectsFit,
    fit_fixed_effects_glm,
    fit_fixed_effects_negbin,
)
from .exceptions import InvalidFormulaError, UnsupportedFixedEffectsError
from .formula import formula_variables, validate_formula
from .vcov import (
    HC_TYPES,
    align_vcov,
    resolve_cluster,
    sandwich_cluster,
    sandwich_hc,
    validate_vcov_type,
)

if TYPE_CHECKING:
    from ._results import FittedModel

logger = logging.getLogger(__name__)

FE_SEPARATOR = "|"

# Model name → statsmodels family factory for the GLM-based FE fits.
_FE_GLM_FAMILIES: dict[str, Any] = {
    "ls": lambda: sm.families.Gaussian(),
    "logit": lambda: sm.families.Binomial(),
    "probit": lambda: sm.families.Binomial(link=sm.families.links.Probit()),
    "poisson": lambda: sm.families.Poisson(),
    "gamma": lambda: sm.families.Gamma(),
}

SUPPORTED_FE_MODELS: tuple[str, ...] = (
    "ls",
    "logit",
    "probit",
    "poisson",
    "negbin",
    "gamma",
)


@dataclass(frozen=True)
class ParsedFormula:
    """A fixed-effects formula split into its parts.

    Attributes:
        full_formula: ``"<linear> | <fe1> + <fe2>"``.
        linear_formula: The covariate part, e.g. ``"mpg ~ hp + wt"``.
        fe_variable_names: Fixed-effect variables in order.
    """

    full_formula: str
    linear_formula: str
    fe_variable_names: list[str]


def has_fixed_effects(formula: str, fixef: Any = None) -> bool:
    """Whether *formula* or *fixef* specifies fixed effects."""
    if fixef is not None:
        return True
    return isinstance(formula, str) and FE_SEPARATOR in formula


def _fe_names_from(spec: Any) -> list[str]:
    if isinstance(spec, str):
        text = spec.strip().lstrip("~")
        names = [part.strip() for part in text.split("+")]
    else:
        names = [str(part).strip() for part in spec]
    names = [name for name in names if name]
    if not names:
        msg = f"No fixed-effect variables found in {spec!r}."
        raise InvalidFormulaError(msg)
    return names


def parse_fe_formula(formula: str, fixef: Any = None) -> ParsedFormula:
    """Split a fixed-effects formula into linear part and FE names.

    Args:
        formula: ``"y ~ x | fe"`` or, with *fixef*, a plain formula.
        fixef: Out-of-band FE specification: ``"~a + b"``, ``"a"`` or
            a list of names.

    Raises:
        InvalidFormulaError: If the formula has more than one ``|`` or
            no FE variables can be found.
    """
    if fixef is not None:
        linear = formula.split(FE_SEPARATOR, 1)[0].strip()
        fe_names = _fe_names_from(fixef)
    else:
        parts = formula.split(FE_SEPARATOR)
        if len(parts) != 2:
            msg = (
                f"Formula '{formula}' must contain a single '|' separating "
                "covariates from fixed effects, e.g. 'y ~ x | group'."
            )
            raise InvalidFormulaError(msg)
        linear = parts[0].strip()
        fe_names = _fe_names_from(parts[1])
    validate_formula(linear)
    full = f"{linear} | {' + '.join(fe_names)}"
    return ParsedFormula(
        full_formula=full, linear_formula=linear, fe_variable_names=fe_names
    )


def fe_formula_variables(parsed: ParsedFormula, columns: Any) -> list[str]:
    """Every data column a fixed-effects formula uses."""
    names = formula_variables(parsed.linear_formula, columns)
    for fe in parsed.fe_variable_names:
        if fe not in names:
            names.append(fe)
    return names


def fit_fixed_effects(
    model_name: str,
    parsed: ParsedFormula,
    data: pd.DataFrame,
    weights_column: str | None = None,
) -> FixedEffectsFit:
    """Fit *model_name* with the fixed effects of *parsed*.

    Raises:
        UnsupportedFixedEffectsError: For families other than
            ``ls, logit, probit, poisson, negbin, gamma``.
        InvalidFormulaError: If a fixed-effect column is missing.
    """
    if model_name not in SUPPORTED_FE_MODELS:
        msg = (
            f"Fixed effects are not supported for model '{model_name}'. "
            f"Supported models: {', '.join(SUPPORTED_FE_MODELS)}"
        )
        raise UnsupportedFixedEffectsError(msg)
    missing = [fe for fe in parsed.fe_variable_names if fe not in data.columns]
    if missing:
        msg = f"Fixed-effect variable(s) not found in data: {', '.join(missing)}"
        raise InvalidFormulaError(msg)

    logger.debug(
        "Fitting '%s' with fixed effects %s", model_name, parsed.fe_variable_names
    )
    if model_name == "negbin":
        if weights_column is not None:
            warnings.warn(
                "Weights are not supported for negative binomial fixed-effects "
                "fits; they are ignored.",
                UserWarning,
                stacklevel=2,
            )
        return fit_fixed_effects_negbin(
            parsed.linear_formula, parsed.fe_variable_names, data
        )
    return fit_fixed_effects_glm(
        parsed.linear_formula,
        parsed.fe_variable_names,
        data,
        _FE_GLM_FAMILIES[model_name](),
        weights_column=weights_column,
    )


def compute_vcov_fixed_effects(
    fit: FixedEffectsFit,
    vcov_type: str = "default",
    cluster: Any = None,
    data: pd.DataFrame | None = None,
) -> pd.DataFrame:
    """Covariance of the slopes of a fixed-effects fit.

    * ``"default"`` — the unclustered, model-based covariance (the slope
      block of the inverse information, times the dispersion).  It is
      not clustered on any fixed-effect dimension; ask for
      ``"cluster"`` for that.
    * ``"robust"`` / ``"HC0"``–``"HC4"`` — sandwich whose small-sample
      corrections count the absorbed intercepts as parameters.
    * ``"cluster"`` — cluster by *cluster* if given, else by the first
      fixed-effect dimension.
    * ``"bootstrap"`` — not available: warns and returns the default.

    The result is aligned to the slope names.
    """
    vcov_type = validate_vcov_type(vcov_type)
    if vcov_type == "bootstrap":
        warnings.warn(
            "Bootstrap covariance is not supported for fixed-effects models; "
            "using the default covariance instead.",
            UserWarning,
            stacklevel=3,
        )
        vcov_type = "default"

    if vcov_type == "default":
        full = fit.vcov()
    elif vcov_type == "robust" or vcov_type in HC_TYPES:
        hc_type = "HC1" if vcov_type == "robust" else vcov_type
        parts = fit.sandwich_parts()
        full = pd.DataFrame(
            sandwich_hc(parts, hc_type), index=parts.names, columns=parts.names
        )
    else:
        if cluster is None:
            groups = fit.fe_labels[fit.fe_names[0]].to_numpy()
            logger.debug("Clustering fixed-effects vcov by '%s'", fit.fe_names[0])
        else:
            groups = resolve_cluster(cluster, data, index=fit.design.exog.index)
        parts = fit.sandwich_parts()
        full = pd.DataFrame(
            sandwich_cluster(parts, groups), index=parts.names, columns=parts.names
        )
    return align_vcov(fit.coefficients(), full)


# ------------------------------------------------------------------ #
# Fixed-effect contribution
# ------------------------------------------------------------------ #


def _match_level(value: Any, levels: list[str]) -> str | None:
    candidates = [str(value)]
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(
        value, bool
    ):
        number = float(value)
        candidates.append(str(number))
        if number.is_integer():
            candidates.append(str(int(number)))
    for candidate in candidates:
        if candidate in levels:
            return candidate
    return None


def compute_fe_contribution(
    model: FittedModel | FixedEffectsFit,
    fe_levels: dict[str, Any] | None = None,
) -> float:
    """Sum of the fixed-effect intercepts for a scenario.

    For each fixed-effect dimension the intercept of the requested
    level is used; an unknown level warns and falls back to the mean
    intercept across levels, as does a dimension with no request.

    Args:
        model: A fitted model (or bare fixed-effects fit).
        fe_levels: Requested level per fixed-effect variable.

    Returns:
        The additive offset for the linear predictor; ``0.0`` for models
        without fixed effects.
    """
    fit = getattr(model, "underlying_fit", model)
    if not isinstance(fit, FixedEffectsFit):
        return 0.0
    fe_levels = fe_levels or {}
    total = 0.0
    for name, intercepts in fit.fixef().items():
        if name in fe_levels:
            level = _match_level(fe_levels[name], list(intercepts.index))
            if level is not None:
                total += float(intercepts[level])
                continue
            warnings.warn(
                f"Level '{fe_levels[name]}' not found for fixed effect "
                f"'{name}'; using the mean across levels.",
                UserWarning,
                stacklevel=2,
            )
        total += float(intercepts.mean())
    return total
