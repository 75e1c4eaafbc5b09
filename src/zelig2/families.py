"""Model families: fitting, inverse links and outcome noise.

The ``ModelFamily`` protocol gathers everything that differs between
the eight built-in models.  Each family owns

* its outcome **category** (``"continuous"``, ``"binary"``, ``"count"``),
* its **fit** function (a statsmodels backend, see :mod:`zelig2._backends`),
* its **inverse link**, mapping the linear predictor to the expected value,
* its **outcome noise**, drawing predicted values around an expected value.

The quantity-of-interest function is shared: it evaluates the linear
predictor for every parameter draw at once, applies the family's
inverse link and then the family's outcome noise.  No code path
branches on the category string.

Each concrete family is a frozen ``@dataclass`` with no mutable state.
:func:`register_builtin_models` registers one instance of each under
its model name; it runs once when the package is imported.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import special, stats
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SmConvergenceWarning,
)

from ._backends import BackendFit, fit_glm, fit_survey_glm
from ._backends._quantile import fit_quantile
from ._backends._tobit import fit_tobit
from .formula import build_design
from .registry import ModelSpec, register_model
from .vcov import align_vcov

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# ModelFamily protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class ModelFamily(Protocol):
    """Interface that every registered model family implements.

    Attributes:
        name: Registry key (e.g. ``"ls"``, ``"logit"``).
        category: ``"continuous"``, ``"binary"`` or ``"count"``.
        description: Display label.
        supports_fixed_effects: Whether ``y ~ x | fe`` is accepted.
        supports_survey: Whether a survey design changes the fit.
    """

    @property
    def name(self) -> str: ...

    @property
    def category(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def supports_fixed_effects(self) -> bool: ...

    @property
    def supports_survey(self) -> bool: ...

    def fit(
        self,
        formula: str,
        data: pd.DataFrame,
        survey_design: Any = None,
        weights_column: str | None = None,
        **extra: Any,
    ) -> BackendFit:
        """Fit the model and return a backend handle."""
        ...

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        """Map the linear predictor to the expected outcome."""
        ...

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        """Draw one predicted outcome per expected value."""
        ...

    def draw_parameters(
        self,
        coefficients: pd.Series,
        vcov: pd.DataFrame,
        num: int,
        rng: Any = None,
    ) -> np.ndarray:
        """Sample ``num`` coefficient vectors."""
        ...

    def quantities_of_interest(
        self,
        params: np.ndarray,
        x_row: Any,
        fitted_model: Any,
        fe_offset: float = 0.0,
        rng: Any = None,
    ) -> dict[str, np.ndarray]:
        """Expected and predicted values at one scenario row."""
        ...


# ------------------------------------------------------------------ #
# Shared helpers
# ------------------------------------------------------------------ #


def draw_mvn(
    coefficients: pd.Series,
    vcov: pd.DataFrame,
    num: int,
    rng: Any = None,
) -> np.ndarray:
    """Draw ``num`` coefficient vectors from ``N(coefficients, vcov)``.

    The covariance is first aligned to the coefficient names, so
    nuisance rows (a tobit ``Log(scale)``, a negative-binomial
    ``alpha``) are dropped before sampling.

    Returns:
        Array of shape ``(num, len(coefficients))``.
    """
    coef = pd.Series(coefficients)
    rng = np.random.default_rng(rng)
    if coef.size == 0:
        return np.empty((num, 0))
    cov = align_vcov(coef, vcov)
    return rng.multivariate_normal(
        coef.to_numpy(dtype=float),
        cov.to_numpy(dtype=float),
        size=num,
        method="eigh",
    )


def _backend_of(fitted_model: Any) -> BackendFit:
    return getattr(fitted_model, "underlying_fit", fitted_model)


def _reject_extra(name: str, extra: dict[str, Any]) -> None:
    if extra:
        msg = (
            f"Unexpected argument(s) for model '{name}': "
            f"{', '.join(sorted(extra))}."
        )
        raise TypeError(msg)


def _warn_survey_ignored(name: str) -> None:
    warnings.warn(
        f"Survey designs are not supported for model '{name}'; the design "
        "is ignored and the model is fitted unweighted.",
        UserWarning,
        stacklevel=3,
    )


@dataclass(frozen=True)
class _FamilyBase:
    """Parameter sampling and QI evaluation shared by every family."""

    @property
    def supports_fixed_effects(self) -> bool:
        return True

    @property
    def supports_survey(self) -> bool:
        return True

    def draw_parameters(
        self,
        coefficients: pd.Series,
        vcov: pd.DataFrame,
        num: int,
        rng: Any = None,
    ) -> np.ndarray:
        return draw_mvn(coefficients, vcov, num, rng)

    def quantities_of_interest(
        self,
        params: np.ndarray,
        x_row: Any,
        fitted_model: Any,
        fe_offset: float = 0.0,
        rng: Any = None,
    ) -> dict[str, np.ndarray]:
        """Expected and predicted values for every parameter draw.

        Args:
            params: ``(num, p)`` parameter draws.
            x_row: One model-matrix row of length ``p``.
            fitted_model: A ``FittedModel`` (or bare ``BackendFit``)
                supplying scale and dispersion parameters.
            fe_offset: Fixed-effect contribution added to the linear
                predictor.
            rng: Seed or ``numpy.random.Generator``.

        Returns:
            ``{"ev": (num,), "pv": (num,)}``.
        """
        rng = np.random.default_rng(rng)
        x = np.asarray(x_row, dtype=float).ravel()
        draws = np.atleast_2d(np.asarray(params, dtype=float))
        eta = draws[:, : x.size] @ x + fe_offset
        ev = self.inverse_link(eta)
        pv = self.draw_outcome(ev, _backend_of(fitted_model), rng)
        return {"ev": ev, "pv": pv}


@dataclass(frozen=True)
class _GLMFamilyBase(_FamilyBase):
    """Families fitted as statsmodels GLMs (with or without a design)."""

    def sm_family(self) -> Any:
        raise NotImplementedError

    def fit(
        self,
        formula: str,
        data: pd.DataFrame,
        survey_design: Any = None,
        weights_column: str | None = None,
        **extra: Any,
    ) -> BackendFit:
        _reject_extra(self.name, extra)  # type: ignore[attr-defined]
        if survey_design is not None:
            return fit_survey_glm(formula, data, self.sm_family(), survey_design)
        return fit_glm(formula, data, self.sm_family(), weights_column)


# ------------------------------------------------------------------ #
# Continuous
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class LeastSquaresFamily(_GLMFamilyBase):
    """Linear regression with Gaussian noise at the residual scale."""

    @property
    def name(self) -> str:
        return "ls"

    @property
    def category(self) -> str:
        return "continuous"

    @property
    def description(self) -> str:
        return "Least Squares Regression"

    def sm_family(self) -> Any:
        return sm.families.Gaussian()

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        return eta

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        return rng.normal(ev, fit.sigma)


@dataclass(frozen=True)
class GammaFamily(_GLMFamilyBase):
    """Gamma regression with the canonical inverse link.

    Predicted values are Gamma draws with shape ``1/phi`` and scale
    ``ev * phi``, ``phi`` being the estimated dispersion.  A
    non-positive expected value has no Gamma counterpart and yields
    ``nan``.
    """

    @property
    def name(self) -> str:
        return "gamma"

    @property
    def category(self) -> str:
        return "continuous"

    @property
    def description(self) -> str:
        return "Gamma Regression"

    def sm_family(self) -> Any:
        return sm.families.Gamma()

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        return 1.0 / eta

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        dispersion = fit.dispersion
        pv = np.full(ev.shape, np.nan)
        positive = ev > 0
        pv[positive] = rng.gamma(1.0 / dispersion, ev[positive] * dispersion)
        return pv


# ------------------------------------------------------------------ #
# Binary
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _BinaryFamilyBase(_GLMFamilyBase):
    @property
    def category(self) -> str:
        return "binary"

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        return rng.binomial(1, np.clip(ev, 0.0, 1.0))


@dataclass(frozen=True)
class LogitFamily(_BinaryFamilyBase):
    """Logistic regression."""

    @property
    def name(self) -> str:
        return "logit"

    @property
    def description(self) -> str:
        return "Logistic Regression"

    def sm_family(self) -> Any:
        return sm.families.Binomial()

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        return special.expit(eta)


@dataclass(frozen=True)
class ProbitFamily(_BinaryFamilyBase):
    """Probit regression."""

    @property
    def name(self) -> str:
        return "probit"

    @property
    def description(self) -> str:
        return "Probit Regression"

    def sm_family(self) -> Any:
        return sm.families.Binomial(link=sm.families.links.Probit())

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        return stats.norm.cdf(eta)


# ------------------------------------------------------------------ #
# Count
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class PoissonFamily(_GLMFamilyBase):
    """Poisson regression with a log link."""

    @property
    def name(self) -> str:
        return "poisson"

    @property
    def category(self) -> str:
        return "count"

    @property
    def description(self) -> str:
        return "Poisson Regression"

    def sm_family(self) -> Any:
        return sm.families.Poisson()

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        return np.exp(eta)

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        return rng.poisson(ev)


@dataclass(frozen=True)
class NegativeBinomialFamily(PoissonFamily):
    """NB2 negative binomial regression.

    The dispersion ``alpha`` is estimated by joint maximum likelihood
    (``sm.NegativeBinomial``); the coefficients are then taken from a
    negative-binomial GLM at that ``alpha``, so every sandwich and
    survey computation is the GLM one.  Predicted values use size
    ``theta = 1/alpha``.

    Under a survey design the model is fitted as quasi-Poisson and no
    ``theta`` is available; predicted values then fall back to
    ``theta = 1`` with a warning.
    """

    @property
    def name(self) -> str:
        return "negbin"

    @property
    def description(self) -> str:
        return "Negative Binomial Regression"

    def fit(
        self,
        formula: str,
        data: pd.DataFrame,
        survey_design: Any = None,
        weights_column: str | None = None,
        **extra: Any,
    ) -> BackendFit:
        _reject_extra(self.name, extra)
        if survey_design is not None:
            logger.debug("negbin under a survey design: fitting quasi-Poisson")
            return fit_survey_glm(formula, data, sm.families.Poisson(), survey_design)
        alpha = self.calibrate(formula, data)
        return fit_glm(
            formula,
            data,
            sm.families.NegativeBinomial(alpha=alpha),
            weights_column,
            alpha=alpha,
        )

    def calibrate(self, formula: str, data: pd.DataFrame) -> float:
        """Maximum-likelihood NB2 dispersion ``alpha``."""
        design = build_design(formula, data)
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=SmConvergenceWarning)
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            nb_model = sm.NegativeBinomial(design.endog, design.exog).fit(
                disp=0, maxiter=200
            )
        alpha_hat = float(np.exp(nb_model.lnalpha))
        logger.debug("Calibrated NB2 dispersion alpha=%.4f", alpha_hat)
        return alpha_hat

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        theta = fit.theta
        if theta is None:
            warnings.warn(
                "The fitted model reports no negative binomial dispersion "
                "(theta); predicted values use theta = 1.",
                UserWarning,
                stacklevel=2,
            )
            theta = 1.0
        return rng.negative_binomial(theta, theta / (theta + ev))


# ------------------------------------------------------------------ #
# Censored and quantile regression
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class TobitFamily(_FamilyBase):
    """Linear regression left-censored at ``left`` (default 0).

    Expected values are on the latent scale; predicted values are
    latent Gaussian draws censored at ``left``.
    """

    @property
    def name(self) -> str:
        return "tobit"

    @property
    def category(self) -> str:
        return "continuous"

    @property
    def description(self) -> str:
        return "Tobit Regression (censored)"

    @property
    def supports_fixed_effects(self) -> bool:
        return False

    @property
    def supports_survey(self) -> bool:
        return False

    def fit(
        self,
        formula: str,
        data: pd.DataFrame,
        survey_design: Any = None,
        weights_column: str | None = None,
        left: float = 0.0,
        **extra: Any,
    ) -> BackendFit:
        _reject_extra(self.name, extra)
        if survey_design is not None:
            _warn_survey_ignored(self.name)
        return fit_tobit(formula, data, left=left, weights_column=weights_column)

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        return eta

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        left = getattr(fit, "left", 0.0)
        return np.maximum(rng.normal(ev, fit.sigma), left)


@dataclass(frozen=True)
class QuantileFamily(_FamilyBase):
    """Linear conditional-quantile regression (``tau`` default 0.5).

    There is no outcome distribution, so predicted values equal the
    expected (fitted-quantile) values.
    """

    @property
    def name(self) -> str:
        return "quantile"

    @property
    def category(self) -> str:
        return "continuous"

    @property
    def description(self) -> str:
        return "Quantile Regression"

    @property
    def supports_fixed_effects(self) -> bool:
        return False

    @property
    def supports_survey(self) -> bool:
        return False

    def fit(
        self,
        formula: str,
        data: pd.DataFrame,
        survey_design: Any = None,
        weights_column: str | None = None,
        tau: float = 0.5,
        **extra: Any,
    ) -> BackendFit:
        _reject_extra(self.name, extra)
        if survey_design is not None:
            _warn_survey_ignored(self.name)
        if weights_column is not None:
            warnings.warn(
                "Quantile regression does not support weights; they are "
                "ignored.",
                UserWarning,
                stacklevel=2,
            )
        return fit_quantile(formula, data, tau=tau)

    def inverse_link(self, eta: np.ndarray) -> np.ndarray:
        return eta

    def draw_outcome(
        self, ev: np.ndarray, fit: BackendFit, rng: np.random.Generator
    ) -> np.ndarray:
        return np.array(ev, dtype=float, copy=True)


# ------------------------------------------------------------------ #
# Registration
# ------------------------------------------------------------------ #

BUILTIN_FAMILIES: tuple[ModelFamily, ...] = (
    LeastSquaresFamily(),
    LogitFamily(),
    ProbitFamily(),
    PoissonFamily(),
    NegativeBinomialFamily(),
    GammaFamily(),
    TobitFamily(),
    QuantileFamily(),
)


def register_family(family: ModelFamily) -> ModelSpec:
    """Register a ``ModelFamily`` instance under its own name.

    Raises:
        TypeError: If *family* does not implement the protocol.
    """
    if not isinstance(family, ModelFamily):
        msg = f"{family!r} does not implement the ModelFamily protocol."
        raise TypeError(msg)
    return register_model(
        family.name,
        fit=family.fit,
        draw_parameters=family.draw_parameters,
        quantities_of_interest=family.quantities_of_interest,
        category=family.category,
        description=family.description,
        supports_fixed_effects=family.supports_fixed_effects,
        supports_survey=family.supports_survey,
        family=family,
    )


def register_builtin_models() -> None:
    """Register the eight built-in families."""
    for family in BUILTIN_FAMILIES:
        register_family(family)


register_builtin_models()
