"""Fitting backends: the narrow contract between zelig2 and statsmodels.

Every family's ``fit`` returns a :class:`BackendFit`.  The rest of the
package only talks to that contract:

* ``coefficients()`` — named coefficient vector (nuisance parameters
  such as a log-scale or a dispersion excluded).
* ``vcov()`` — the covariance reported by the backend, labelled, and
  possibly carrying extra nuisance rows/columns.
* ``sandwich_parts()`` — per-observation score contributions, the
  inverse information and leverages, from which every
  heteroskedasticity- and cluster-robust estimator is assembled.
* ``sigma`` / ``dispersion`` / ``theta`` — outcome-scale parameters
  used when drawing predicted values.

Concrete backends:

* :class:`GLMFit` — ``statsmodels`` GLM (ls, logit, probit, poisson,
  gamma and the negative-binomial GLM at the ML dispersion).
* :class:`SurveyGLMFit` — a GLM with sampling weights whose default
  covariance is design-based.
* :class:`~zelig2._backends._tobit.TobitFit` — censored regression.
* :class:`~zelig2._backends._quantile.QuantileFit` — ``QuantReg``.
* :class:`~zelig2._backends._fixed.FixedEffectsFit` — fixed effects
  absorbed by weighted demeaning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ..formula import Design, build_design

if TYPE_CHECKING:
    from ..survey import SurveyDesign

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandwichParts:
    """Ingredients of ``A M A`` sandwich covariance estimators.

    Attributes:
        estfun: ``(n, k)`` per-observation score contributions.
        bread: ``(k, k)`` inverse information on the same scale, so
            that ``bread @ estfun.T @ estfun @ bread`` is HC0.
        leverage: ``(n,)`` hat values for HC2–HC4.
        names: Parameter labels of the ``k`` columns.
        n_params: Number of estimated parameters used in small-sample
            corrections, when it exceeds ``k`` (absorbed intercepts).
    """

    estfun: np.ndarray
    bread: np.ndarray
    leverage: np.ndarray
    names: list[str]
    n_params: int | None = None

    @property
    def nobs(self) -> int:
        return self.estfun.shape[0]

    @property
    def rank(self) -> int:
        if self.n_params is None:
            return self.estfun.shape[1]
        return self.n_params

    def influence(self) -> np.ndarray:
        """Per-observation influence on the estimates, ``estfun @ bread``."""
        return self.estfun @ self.bread


@dataclass(eq=False)
class BackendFit:
    """Base fitted-model handle.

    Attributes:
        results: The statsmodels results object.
        design: Outcome, model matrix and patsy recipe used for the fit.
    """

    kind: ClassVar[str] = "base"

    results: Any = field(repr=False)
    design: Design = field(repr=False)

    # ---- Naming ----

    @property
    def endog_name(self) -> str:
        return self.design.endog_name

    @property
    def design_info(self) -> Any:
        return self.design.design_info

    @property
    def coef_names(self) -> list[str]:
        return list(self.design.exog.columns)

    @property
    def param_names(self) -> list[str]:
        """Labels of every parameter the backend estimates."""
        return self.coef_names

    # ---- Estimates ----

    def params(self) -> pd.Series:
        return pd.Series(np.asarray(self.results.params), index=self.param_names)

    def coefficients(self) -> pd.Series:
        return self.params()[self.coef_names]

    def vcov(self) -> pd.DataFrame:
        names = self.param_names
        return pd.DataFrame(
            np.asarray(self.results.cov_params()), index=names, columns=names
        )

    @property
    def nobs(self) -> int:
        return int(self.design.exog.shape[0])

    def sandwich_parts(self) -> SandwichParts:
        raise NotImplementedError(
            f"{type(self).__name__} does not provide sandwich ingredients."
        )

    # ---- Outcome-scale parameters ----

    @property
    def sigma(self) -> float | None:
        return None

    @property
    def dispersion(self) -> float | None:
        return None

    @property
    def theta(self) -> float | None:
        return None


# ------------------------------------------------------------------ #
# GLM
# ------------------------------------------------------------------ #

def is_binary_family(family: Any) -> bool:
    """Whether *family* models a 0/1 outcome."""
    return isinstance(family, sm.families.Binomial)



def glm_sandwich_parts(
    exog: Any,
    endog: Any,
    mu: np.ndarray,
    family: Any,
    names: list[str],
    iweights: np.ndarray | None = None,
) -> SandwichParts:
    """Sandwich ingredients of a GLM from its IRLS quantities.

    With working weights ``w_i = iw_i / (V(mu_i) g'(mu_i)^2)`` the score
    contribution is ``x_i iw_i (y_i - mu_i) / (V(mu_i) g'(mu_i))`` and
    the bread is ``(X' W X)^-1``.  The dispersion cancels between the
    two and is omitted.

    Args:
        exog: ``(n, k)`` model matrix.
        endog: ``(n,)`` outcome.
        mu: ``(n,)`` fitted means.
        family: A statsmodels family (supplies link and variance).
        names: Column labels.
        iweights: Prior/variance weights, or ``None`` for unit weights.
    """
    X = np.asarray(exog, dtype=float)
    y = np.asarray(endog, dtype=float)
    mu = np.asarray(mu, dtype=float)
    iw = np.ones_like(y) if iweights is None else np.asarray(iweights, dtype=float)

    deriv = family.link.deriv(mu)
    variance = family.variance(mu)
    working_weights = iw / (variance * deriv**2)
    estfun = X * (iw * (y - mu) / (variance * deriv))[:, np.newaxis]
    bread = np.linalg.inv((X * working_weights[:, np.newaxis]).T @ X)
    leverage = working_weights * np.einsum("ij,jk,ik->i", X, bread, X)
    return SandwichParts(estfun=estfun, bread=bread, leverage=leverage, names=names)


@dataclass(eq=False)
class GLMFit(BackendFit):
    """A statsmodels GLM fit.

    Attributes:
        alpha: NB2 dispersion for negative-binomial GLMs, else ``None``.
    """

    kind: ClassVar[str] = "glm"

    alpha: float | None = None

    @property
    def family(self) -> Any:
        return self.results.model.family

    def sandwich_parts(self) -> SandwichParts:
        return glm_sandwich_parts(
            self.design.exog,
            self.design.endog,
            self.results.mu,
            self.family,
            self.coef_names,
            iweights=self.results.model.iweights,
        )

    @property
    def sigma(self) -> float | None:
        return float(np.sqrt(self.results.scale))

    @property
    def dispersion(self) -> float | None:
        return float(self.results.scale)

    @property
    def theta(self) -> float | None:
        if self.alpha is None or self.alpha <= 0:
            return None
        return 1.0 / self.alpha


@dataclass(eq=False)
class SurveyGLMFit(GLMFit):
    """A GLM weighted by a survey design.

    Point estimates solve the probability-weighted estimating equations;
    :meth:`vcov` is the Taylor-linearization covariance of the design.
    """

    kind: ClassVar[str] = "survey_glm"

    survey_design: SurveyDesign | None = field(default=None, repr=False)

    def vcov(self) -> pd.DataFrame:
        parts = self.sandwich_parts()
        cov = self.survey_design.variance(parts.influence())
        return pd.DataFrame(cov, index=parts.names, columns=parts.names)

    def _weighted_pearson_dispersion(self) -> float:
        y = np.asarray(self.design.endog, dtype=float)
        mu = np.asarray(self.results.mu, dtype=float)
        pearson = (y - mu) / np.sqrt(self.family.variance(mu))
        w = self.survey_design.weights
        return float(np.sum(w * pearson**2) / np.sum(w))

    @property
    def sigma(self) -> float | None:
        return float(np.sqrt(self._weighted_pearson_dispersion()))

    @property
    def dispersion(self) -> float | None:
        return self._weighted_pearson_dispersion()


def fit_glm(
    formula: str,
    data: pd.DataFrame,
    family: Any,
    weights_column: str | None = None,
    alpha: float | None = None,
) -> GLMFit:
    """Fit a GLM through statsmodels on a patsy design.

    Args:
        formula: Two-sided formula.
        data: Complete-case data.
        family: A ``statsmodels.genmod.families`` instance.
        weights_column: Column holding prior (variance) weights.
        alpha: Recorded NB2 dispersion for negative-binomial families.
    """
    design = build_design(formula, data, binary=is_binary_family(family))
    var_weights = None
    if weights_column is not None:
        var_weights = np.asarray(data.loc[design.exog.index, weights_column], float)
    model = sm.GLM(design.endog, design.exog, family=family, var_weights=var_weights)
    results = model.fit()
    logger.debug(
        "Fitted GLM %s (%s link) on %d rows",
        type(family).__name__,
        type(family.link).__name__,
        design.exog.shape[0],
    )
    return GLMFit(results=results, design=design, alpha=alpha)


def fit_survey_glm(
    formula: str,
    data: pd.DataFrame,
    family: Any,
    survey_design: SurveyDesign,
    alpha: float | None = None,
) -> SurveyGLMFit:
    """Fit a GLM with the design's sampling weights as variance weights."""
    design = build_design(formula, data, binary=is_binary_family(family))
    if len(survey_design.weights) != len(data):
        msg = (
            f"Survey design has {len(survey_design.weights)} rows but the "
            f"data has {len(data)}."
        )
        raise ValueError(msg)
    if design.exog.shape[0] != len(data):
        # patsy dropped rows: keep the design rows that survived.
        keep = data.index.isin(design.exog.index)
        survey_design = survey_design.subset(keep)
    model = sm.GLM(
        design.endog,
        design.exog,
        family=family,
        var_weights=survey_design.weights,
    )
    results = model.fit()
    logger.debug(
        "Fitted survey-weighted GLM %s on %d rows",
        type(family).__name__,
        design.exog.shape[0],
    )
    return SurveyGLMFit(
        results=results, design=design, alpha=alpha, survey_design=survey_design
    )


__all__ = [
    "BackendFit",
    "GLMFit",
    "SandwichParts",
    "SurveyGLMFit",
    "fit_glm",
    "fit_survey_glm",
    "glm_sandwich_parts",
    "is_binary_family",
]
