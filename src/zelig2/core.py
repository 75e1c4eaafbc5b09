"""Estimation orchestrator.

:func:`zelig2` is the package's entry point: it validates the inputs,
prepares an owned copy of the data, chooses between the fixed-effects
path and the standard path, fits the model through the registry,
computes the requested covariance and assembles a :class:`FittedModel`.

:func:`to_zelig2` wraps a model that was already fitted with
statsmodels; :func:`from_zelig2_model` returns the backend fit of a
:class:`FittedModel`.

Example::

    from zelig2 import zelig2, setx, setx1, sim

    z = zelig2("mpg ~ hp + wt", model="ls", data=mtcars)
    z = setx(z, hp=100)
    z = setx1(z, hp=200)
    z = sim(z, random_state=1)
    z.simulation_output.fd.mean()
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from statsmodels.genmod.generalized_linear_model import GLM
from statsmodels.regression.linear_model import WLS
from statsmodels.regression.quantile_regression import QuantReg

from ._backends import BackendFit, GLMFit, is_binary_family
from ._backends._fixed import FixedEffectsFit
from ._backends._quantile import QuantileFit
from ._backends._tobit import TobitFit
from ._compat import DataFrameLike, _ensure_pandas_df
from ._config import get_option
from ._results import FittedModel, FixedEffectsExtension, SurveyExtension
from ._typing import RandomState, VariableRef
from .exceptions import InvalidDataError, InvalidFormulaError, InvalidModelNameError
from .fixed_effects import (
    fe_formula_variables,
    fit_fixed_effects,
    has_fixed_effects,
    parse_fe_formula,
)
from .formula import (
    Design,
    auto_factorize,
    build_design,
    categorical_levels,
    design_categorical_levels,
    formula_variables,
    predictor_variables,
    validate_formula,
)
from .registry import ModelSpec, get_model_spec, list_models
from .survey import (
    RawValues,
    resolve_survey_design,
    to_weight_spec,
    weight_column,
)
from .vcov import align_vcov, compute_vcov, validate_vcov_type

logger = logging.getLogger(__name__)

CLUSTER_COLUMN = ".zelig2_cluster"


# ------------------------------------------------------------------ #
# Validation helpers
# ------------------------------------------------------------------ #


def _resolve_model(model: Any) -> ModelSpec:
    if not isinstance(model, str) or not model:
        msg = (
            f"'model' must be a model name string, got {model!r}. "
            f"Available models: {', '.join(list_models())}"
        )
        raise InvalidModelNameError(msg)
    if model not in list_models():
        msg = (
            f"Unknown model '{model}'. "
            f"Available models: {', '.join(list_models())}"
        )
        raise InvalidModelNameError(msg)
    return get_model_spec(model)


def _validate_data(data: Any) -> pd.DataFrame:
    if data is None:
        msg = "'data' is required: pass the pandas DataFrame holding the variables."
        raise InvalidDataError(msg)
    frame = _ensure_pandas_df(data, name="data")
    if frame.shape[0] == 0:
        msg = "'data' has no rows."
        raise InvalidDataError(msg)
    return frame


def _check_outcome(formula: str, data: pd.DataFrame) -> None:
    lhs = formula.split("~", 1)[0]
    if not formula_variables(lhs, data.columns):
        msg = (
            f"The outcome in '{formula}' does not name a column of the data. "
            f"Available columns: {', '.join(map(str, data.columns))}"
        )
        raise InvalidFormulaError(msg)


def _as_raw_vector(value: Any) -> bool:
    return isinstance(value, (np.ndarray, pd.Series, list, tuple))


def _referenced_columns(spec: Any, columns: Any) -> list[str]:
    """Columns named by a formula (``"~a + b"``) or column-name string."""
    if not isinstance(spec, str):
        return []
    if spec in columns:
        return [spec]
    return formula_variables(spec.strip().lstrip("~"), columns)


def _complete_cases(data: pd.DataFrame, columns: list[str]) -> pd.Series:
    present = [c for c in columns if c in data.columns]
    if not present:
        return pd.Series(True, index=data.index)
    return data[present].notna().all(axis=1)


# ------------------------------------------------------------------ #
# zelig2
# ------------------------------------------------------------------ #


def zelig2(
    formula: str,
    model: str,
    data: DataFrameLike,
    *,
    weights: VariableRef = None,
    survey_design: Any = None,
    ids: VariableRef = None,
    strata: VariableRef = None,
    fpc: VariableRef = None,
    nest: bool = False,
    fixef: Any = None,
    vcov_type: str = "default",
    cluster: VariableRef = None,
    bootstrap_n: int | None = None,
    num: int | None = None,
    random_state: RandomState = None,
    **kwargs: Any,
) -> FittedModel:
    """Fit a model and prepare it for scenario simulation.

    Args:
        formula: Patsy formula, optionally with fixed effects after a
            ``|`` (``"mpg ~ hp + wt | cyl"``).
        model: Registered model name: ``"ls"``, ``"logit"``,
            ``"probit"``, ``"poisson"``, ``"negbin"``, ``"gamma"``,
            ``"tobit"`` or ``"quantile"``.
        data: pandas (or Polars) DataFrame.  Never modified.
        weights: Survey weights as a formula (``"~w"``), a column name
            or a numeric vector.
        survey_design: A pre-built :class:`~zelig2.survey.SurveyDesign`.
        ids: PSU identifiers (``"~psu"``).
        strata: Strata (``"~stratum"``).
        fpc: Finite-population correction (``"~fpc"``).
        nest: Whether PSU identifiers are nested within strata.
        fixef: Fixed effects given separately from *formula*
            (``"~cyl"``, ``"cyl"`` or a list).
        vcov_type: ``"default"``, ``"robust"``, ``"HC0"``–``"HC4"``,
            ``"cluster"`` or ``"bootstrap"``.
        cluster: Cluster variable for ``"cluster"``: formula, column
            name or a vector with one entry per row of *data*.
        bootstrap_n: Bootstrap replicates (default from the
            ``"bootstrap_n"`` option).
        num: Default simulation draws (default from the ``"num"``
            option).
        random_state: Seed for the bootstrap.
        **kwargs: Family-specific arguments (``tau`` for quantile,
            ``left`` for tobit).

    Returns:
        A :class:`FittedModel` without scenarios.

    Raises:
        InvalidFormulaError: For a malformed formula.
        InvalidDataError: If *data* is not a DataFrame.
        InvalidModelNameError: For an unknown model name.
        UnsupportedFixedEffectsError: For fixed effects with ``tobit``
            or ``quantile``.
        UnknownVcovTypeError: For an unrecognised *vcov_type*.
        MissingClusterError: For ``"cluster"`` without *cluster*.
        InvalidWeightSpecError: For malformed weights.
    """
    # ---- Eager validation ----
    if not isinstance(formula, str):
        validate_formula(formula)
    fe_path = has_fixed_effects(formula, fixef)
    parsed = parse_fe_formula(formula, fixef) if fe_path else None
    linear_formula = parsed.linear_formula if parsed else validate_formula(formula)
    frame = _validate_data(data)
    spec = _resolve_model(model)
    vcov_type = validate_vcov_type(vcov_type)
    num = get_option("num") if num is None else int(num)
    bootstrap_n = get_option("bootstrap_n") if bootstrap_n is None else int(bootstrap_n)

    # ---- Owned, factorized copy ----
    work = auto_factorize(frame)
    if _as_raw_vector(cluster):
        values = np.asarray(cluster)
        if values.shape[0] != len(work):
            msg = (
                f"'cluster' has {values.shape[0]} values but the data has "
                f"{len(work)} rows."
            )
            raise ValueError(msg)
        work[CLUSTER_COLUMN] = values
        cluster = CLUSTER_COLUMN

    weights_column: str | None = None
    weight_spec = to_weight_spec(weights)
    if isinstance(weight_spec, RawValues):
        weights_column, work = weight_column(weight_spec, work)
        weights = weights_column

    if parsed is not None:
        variables = fe_formula_variables(parsed, work.columns)
    else:
        variables = formula_variables(linear_formula, work.columns)
    _check_outcome(linear_formula, work)

    used = list(variables)
    for extra in (weights, cluster, ids, strata, fpc):
        used.extend(_referenced_columns(extra, work.columns))
    keep = _complete_cases(work, used)
    if not keep.all():
        logger.debug("Dropping %d incomplete rows", int((~keep).sum()))
        work = work.loc[keep]
        if survey_design is not None and hasattr(survey_design, "subset"):
            survey_design = survey_design.subset(keep.to_numpy())

    levels = categorical_levels(work, predictor_variables(linear_formula, work.columns))

    # ---- Fixed-effects path ----
    if parsed is not None:
        if kwargs:
            msg = (
                f"Unexpected argument(s) for a fixed-effects '{spec.name}' model: "
                f"{', '.join(sorted(kwargs))}."
            )
            raise TypeError(msg)
        if any(part is not None for part in (survey_design, ids, strata, fpc)):
            warnings.warn(
                "Survey designs cannot be combined with fixed effects; ids, "
                "strata, fpc and survey_design are ignored.",
                UserWarning,
                stacklevel=2,
            )
        fe_weights = None
        if weights is not None:
            fe_weights, work = weight_column(to_weight_spec(weights), work)
        fit = fit_fixed_effects(spec.name, parsed, work, weights_column=fe_weights)
        levels = {**design_categorical_levels(fit.design_info), **levels}
        vcov = compute_vcov(fit, vcov_type, cluster=cluster, data=work)
        coefficients = fit.coefficients()
        return FittedModel(
            formula=parsed.linear_formula,
            model_name=spec.name,
            model_spec=spec,
            underlying_fit=fit,
            coefficients=coefficients,
            vcov=align_vcov(coefficients, vcov),
            data=work,
            vcov_type=vcov_type,
            categorical_variable_levels=levels,
            num=num,
            weights_column=fe_weights,
            extension=FixedEffectsExtension(
                fe_variable_names=list(parsed.fe_variable_names),
                full_formula=parsed.full_formula,
            ),
        )

    # ---- Standard path ----
    design, work = resolve_survey_design(
        work,
        weights=weights,
        survey_design=survey_design,
        ids=ids,
        strata=strata,
        fpc=fpc,
        nest=nest,
    )
    is_survey = design is not None and spec.supports_survey
    logger.debug(
        "Fitting '%s' on %d rows (survey=%s)", spec.name, len(work), is_survey
    )
    fit = spec.fit(linear_formula, work, survey_design=design, **kwargs)
    levels = {**design_categorical_levels(fit.design_info), **levels}

    def refit(sample: pd.DataFrame) -> BackendFit:
        return spec.fit(linear_formula, sample, **kwargs)

    vcov = compute_vcov(
        fit,
        vcov_type,
        cluster=cluster,
        data=work,
        bootstrap_n=bootstrap_n,
        is_survey=is_survey,
        refit=refit,
        random_state=random_state,
    )
    coefficients = fit.coefficients()
    return FittedModel(
        formula=linear_formula,
        model_name=spec.name,
        model_spec=spec,
        underlying_fit=fit,
        coefficients=coefficients,
        vcov=align_vcov(coefficients, vcov),
        data=work,
        vcov_type=vcov_type,
        categorical_variable_levels=levels,
        num=num,
        weights_column=None,
        extension=SurveyExtension(design=design) if is_survey else None,
    )


# ------------------------------------------------------------------ #
# Wrapping existing fits
# ------------------------------------------------------------------ #


def _formula_design(model: Any, frame: pd.DataFrame, binary: bool) -> Design:
    """Outcome, model matrix and patsy recipe of a formula-fitted model.

    statsmodels releases that build formulas with patsy keep the recipe
    on ``model.data.design_info``; otherwise the design is rebuilt from
    ``model.formula`` and *frame* and checked against the fitted matrix.
    """
    model_data = getattr(model, "data", None)
    design_info = getattr(model_data, "design_info", None)
    if isinstance(design_info, patsy.DesignInfo):
        index = model_data.row_labels
        exog = pd.DataFrame(
            np.asarray(model.exog), index=index, columns=design_info.column_names
        )
        endog = pd.Series(
            np.asarray(model.endog), index=index, name=str(model.endog_names)
        )
        return Design(endog=endog, exog=exog, design_info=design_info)
    formula = getattr(model, "formula", None)
    if not isinstance(formula, str):
        msg = (
            "to_zelig2() needs a model fitted from a formula, e.g. "
            "statsmodels.formula.api.glm('y ~ x', data).fit()."
        )
        raise TypeError(msg)
    design = build_design(formula, frame, binary=binary)
    fitted = np.asarray(model.exog, dtype=float)
    if design.exog.shape != fitted.shape or not np.allclose(
        design.exog.to_numpy(dtype=float), fitted
    ):
        msg = (
            f"Could not rebuild the model matrix of '{formula}' from 'data'. "
            "Pass the data the model was fitted on."
        )
        raise TypeError(msg)
    return design


def _wrap_statsmodels(
    fit: Any, frame: pd.DataFrame, tau: float | None = None
) -> tuple[BackendFit, str | None]:
    model = getattr(fit, "model", None)
    if not isinstance(model, (GLM, WLS, QuantReg)):
        msg = (
            f"to_zelig2() supports statsmodels GLM, OLS/WLS and QuantReg "
            f"results, got {type(fit).__name__}."
        )
        raise TypeError(msg)
    binary = isinstance(model, GLM) and is_binary_family(model.family)
    design = _formula_design(model, frame, binary)
    formula = getattr(model, "formula", None)
    if isinstance(model, QuantReg):
        if tau is None:
            tau = getattr(fit, "q", None)
        if tau is None:
            warnings.warn(
                "The quantile level of the wrapped QuantReg fit is unknown; "
                "assuming tau = 0.5. Pass tau= to to_zelig2().",
                UserWarning,
                stacklevel=3,
            )
            tau = 0.5
        tau = float(tau)
        return QuantileFit(results=fit, design=design, tau=tau), formula
    if isinstance(model, WLS):
        # Least squares is the Gaussian GLM: same estimates, scale and
        # covariance, plus the GLM quantities the sandwich needs.
        weights = np.asarray(model.weights, dtype=float)
        var_weights = weights if weights.ndim == 1 else None
        results = sm.GLM(
            design.endog,
            design.exog,
            family=sm.families.Gaussian(),
            var_weights=var_weights,
        ).fit()
        return GLMFit(results=results, design=design), formula
    alpha = getattr(model.family, "alpha", None)
    if not isinstance(model.family, sm.families.NegativeBinomial):
        alpha = None
    return GLMFit(results=fit, design=design, alpha=alpha), formula


def to_zelig2(
    fit: Any,
    model: str,
    data: DataFrameLike,
    vcov_type: str = "default",
    cluster: VariableRef = None,
    num: int | None = None,
    tau: float | None = None,
) -> FittedModel:
    """Wrap an already-fitted model as a :class:`FittedModel`.

    Example::

        import statsmodels.formula.api as smf

        res = smf.glm("am ~ hp + wt", mtcars, family=sm.families.Binomial()).fit()
        z = to_zelig2(res, model="logit", data=mtcars)

    Args:
        fit: A formula-based statsmodels ``GLM``, ``OLS``/``WLS`` or
            ``QuantReg`` result, or a :class:`~zelig2._backends.BackendFit`.
            Least-squares results are wrapped as a Gaussian GLM.
        model: Registered model name describing *fit*.
        data: The data the model was fitted on.
        vcov_type: Covariance estimator.  ``"bootstrap"`` refits through
            the registered model's fit function.
        cluster: Cluster variable for ``"cluster"``.
        num: Default simulation draws.
        tau: Quantile level of a wrapped ``QuantReg`` fit, when the
            results object does not record it.

    Raises:
        InvalidModelNameError: For an unknown model name.
        TypeError: For an unsupported fit object.
    """
    spec = _resolve_model(model)
    frame = auto_factorize(_validate_data(data))
    vcov_type = validate_vcov_type(vcov_type)
    formula = None
    if isinstance(fit, BackendFit):
        backend = fit
    else:
        backend, formula = _wrap_statsmodels(fit, frame, tau=tau)
    if formula is None:
        formula = f"{backend.endog_name} ~ {backend.design_info.describe()}"

    rows = frame.loc[frame.index.intersection(backend.design.exog.index)]
    if len(rows) != backend.nobs:
        rows = frame
    if _as_raw_vector(cluster):
        rows = rows.assign(**{CLUSTER_COLUMN: np.asarray(cluster)})
        cluster = CLUSTER_COLUMN

    extra: dict[str, Any] = {}
    if isinstance(backend, QuantileFit):
        extra["tau"] = backend.tau
    elif isinstance(backend, TobitFit):
        extra["left"] = backend.left

    def refit(sample: pd.DataFrame) -> BackendFit:
        return spec.fit(formula, sample, **extra)

    vcov = compute_vcov(
        backend,
        vcov_type,
        cluster=cluster,
        data=rows,
        bootstrap_n=get_option("bootstrap_n"),
        refit=refit,
    )
    coefficients = backend.coefficients()
    extension = None
    if isinstance(backend, FixedEffectsFit):
        extension = FixedEffectsExtension(
            fe_variable_names=list(backend.fe_names),
            full_formula=f"{formula} | {' + '.join(backend.fe_names)}",
        )
    levels = categorical_levels(rows, predictor_variables(formula, rows.columns))
    levels = {**design_categorical_levels(backend.design_info), **levels}
    logger.debug("Wrapped %s as '%s'", type(backend).__name__, spec.name)
    return FittedModel(
        formula=formula,
        model_name=spec.name,
        model_spec=spec,
        underlying_fit=backend,
        coefficients=coefficients,
        vcov=align_vcov(coefficients, vcov),
        data=rows,
        vcov_type=vcov_type,
        categorical_variable_levels=levels,
        num=get_option("num") if num is None else int(num),
        extension=extension,
    )


def from_zelig2_model(model: FittedModel) -> BackendFit:
    """Return the backend fit held by *model*."""
    return model.underlying_fit
