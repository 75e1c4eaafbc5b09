"""Fixed-effects fits that absorb group intercepts by weighted demeaning.

Group intercepts are never expanded into indicator columns.  Every IRLS
step demeans the working response and the slope columns within the
fixed-effect groups (alternating projections; a single dimension is
exact after one sweep) and solves the small slope system, which gives
the slopes of the indicator regression.  Memory therefore grows with
the number of rows and slopes, not with the number of levels.

Per-level intercepts are recovered afterwards from the absorbed part of
the linear predictor: the first dimension absorbs the constant and every
further dimension is zero at its first level.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, ClassVar

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import optimize
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from ..formula import Design, build_design
from . import BackendFit, SandwichParts, glm_sandwich_parts, is_binary_family

logger = logging.getLogger(__name__)

DEMEAN_TOL = 1e-12
DEMEAN_MAXITER = 10_000
IRLS_TOL = 1e-10
IRLS_MAXITER = 100

# Search interval for the NB2 dispersion; equidispersed counts end at
# the lower bound, i.e. (numerically) the Poisson fit.
NB_ALPHA_BOUNDS = (1e-8, 1e4)
NB_MAXITER = 25
NB_ALPHA_TOL = 1e-4

# Families whose dispersion is fixed at one.
_UNIT_SCALE_FAMILIES = (
    sm.families.Binomial,
    sm.families.Poisson,
    sm.families.NegativeBinomial,
)


def fe_level_labels(series: pd.Series) -> tuple[pd.Series, list[str]]:
    """String labels of a fixed-effect column and its ordered levels.

    Categorical columns keep their category order (unused categories
    dropped); other columns are sorted by value.
    """
    if isinstance(series.dtype, pd.CategoricalDtype):
        series = series.cat.remove_unused_categories()
        levels = [str(c) for c in series.cat.categories]
    else:
        levels = [str(v) for v in sorted(series.dropna().unique())]
    return series.astype(str), levels


def encode_fixed_effects(
    data: pd.DataFrame, fe_names: list[str]
) -> tuple[dict[str, np.ndarray], dict[str, list[str]], pd.DataFrame]:
    """Integer group codes for every fixed-effect dimension.

    Returns:
        ``(codes, levels, labels)``: per-dimension codes into the
        ordered levels, the levels themselves, and the per-row string
        labels (used as default clusters).
    """
    codes: dict[str, np.ndarray] = {}
    levels: dict[str, list[str]] = {}
    labels: dict[str, pd.Series] = {}
    for name in fe_names:
        lab, lev = fe_level_labels(data[name])
        levels[name] = lev
        labels[name] = lab
        codes[name] = pd.Categorical(lab, categories=lev).codes.astype(np.int64)
    return codes, levels, pd.DataFrame(labels, index=data.index)


# ------------------------------------------------------------------ #
# Demeaning
# ------------------------------------------------------------------ #


def _group_means(
    values: np.ndarray, codes: np.ndarray, weights: np.ndarray, n_groups: int
) -> np.ndarray:
    totals = np.bincount(codes, weights=weights, minlength=n_groups)
    totals = np.where(totals > 0, totals, 1.0)
    sums = np.empty((n_groups, values.shape[1]))
    for j in range(values.shape[1]):
        sums[:, j] = np.bincount(
            codes, weights=weights * values[:, j], minlength=n_groups
        )
    return sums / totals[:, np.newaxis]


def demean(
    values: Any,
    codes: list[np.ndarray],
    weights: Any = None,
    tol: float = DEMEAN_TOL,
    maxiter: int = DEMEAN_MAXITER,
) -> np.ndarray:
    """Weighted residuals of *values* after projecting out the groups.

    Each sweep subtracts the weighted group means of every dimension in
    turn until the largest correction falls below *tol* (relative to
    the magnitude of *values*).

    Args:
        values: ``(n,)`` or ``(n, k)`` array.
        codes: One integer code array per fixed-effect dimension.
        weights: ``(n,)`` positive weights; unit weights when ``None``.

    Returns:
        An array of the same shape as *values*.
    """
    arr = np.asarray(values, dtype=float)
    out = arr.reshape(arr.shape[0], -1).copy()
    w = np.ones(out.shape[0]) if weights is None else np.asarray(weights, float)
    if out.size == 0 or not codes:
        return out.reshape(arr.shape)
    sizes = [int(c.max()) + 1 for c in codes]
    magnitude = max(float(np.abs(out).max()), 1.0)
    for _ in range(maxiter):
        change = 0.0
        for c, size in zip(codes, sizes):
            means = _group_means(out, c, w, size)
            out -= means[c]
            change = max(change, float(np.abs(means).max()))
        if len(codes) == 1 or change <= tol * magnitude:
            break
    else:
        warnings.warn(
            f"Fixed-effect demeaning did not converge in {maxiter} sweeps.",
            ConvergenceWarning,
            stacklevel=2,
        )
    return out.reshape(arr.shape)


def _split_absorbed(
    absorbed: np.ndarray, codes: list[np.ndarray]
) -> list[np.ndarray]:
    """Per-level intercepts whose sum over dimensions is *absorbed*."""
    sizes = [int(c.max()) + 1 for c in codes]
    counts = [np.bincount(c, minlength=s) for c, s in zip(codes, sizes)]
    effects = [np.zeros(s) for s in sizes]
    remainder = np.asarray(absorbed, dtype=float).copy()
    magnitude = max(float(np.abs(remainder).max()), 1.0)
    for _ in range(DEMEAN_MAXITER):
        change = 0.0
        for j, c in enumerate(codes):
            step = np.bincount(c, weights=remainder, minlength=sizes[j]) / counts[j]
            effects[j] += step
            remainder -= step[c]
            change = max(change, float(np.abs(step).max()))
        if len(codes) == 1 or change <= DEMEAN_TOL * magnitude:
            break
    for j in range(1, len(effects)):
        shift = effects[j][0]
        effects[j] -= shift
        effects[0] += shift
    return effects


def absorbed_leverage(codes: list[np.ndarray], weights: np.ndarray) -> np.ndarray:
    """Weighted hat values of the fixed-effect indicators.

    The dimension with the most levels is handled in closed form
    (``w_i / sum of w in the group``); the indicators of the remaining
    dimensions are demeaned against it and added as a dense block.
    """
    sizes = [int(c.max()) + 1 for c in codes]
    order = sorted(range(len(codes)), key=lambda j: -sizes[j])
    first = codes[order[0]]
    totals = np.bincount(first, weights=weights, minlength=sizes[order[0]])
    leverage = weights / totals[first]
    if len(order) > 1:
        blocks = [
            (codes[j][:, np.newaxis] == np.arange(1, sizes[j])).astype(float)
            for j in order[1:]
        ]
        rest = demean(np.hstack(blocks), [first], weights)
        gram = (rest * weights[:, np.newaxis]).T @ rest
        leverage = leverage + weights * np.einsum(
            "ij,jk,ik->i", rest, np.linalg.pinv(gram), rest
        )
    return leverage


# ------------------------------------------------------------------ #
# IRLS on demeaned quantities
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class AbsorbedResults:
    """Estimates of a GLM whose group intercepts were absorbed.

    Attributes:
        params: Slope estimates.
        bread: ``(X~' W X~)^-1`` on the demeaned slopes.
        scale: Dispersion (Pearson chi-squared over residual degrees of
            freedom, or one for binomial and count families).
        mu: Fitted means.
        eta: Linear predictor including the group intercepts.
        working_weights: IRLS weights at *mu*.
        prior_weights: Variance weights, or ``None``.
        demeaned_exog: Slope columns demeaned under *working_weights*.
        n_absorbed: Number of identified group intercepts.
        df_resid: Residual degrees of freedom.
        deviance: Final deviance.
        iterations: IRLS iterations used.
        converged: Whether the deviance criterion was met.
    """

    params: np.ndarray
    bread: np.ndarray
    scale: float
    mu: np.ndarray
    eta: np.ndarray
    working_weights: np.ndarray
    prior_weights: np.ndarray | None
    demeaned_exog: np.ndarray
    n_absorbed: int
    df_resid: int
    deviance: float
    iterations: int
    converged: bool

    def cov_params(self) -> np.ndarray:
        return self.scale * self.bread


def _inverse(gram: np.ndarray) -> np.ndarray:
    if gram.size == 0:
        return np.zeros_like(gram)
    return np.linalg.inv(gram)


def _solve_slopes(X_t: np.ndarray, z_t: np.ndarray, w: np.ndarray) -> np.ndarray:
    if X_t.shape[1] == 0:
        return np.zeros(0)
    weighted = X_t * w[:, np.newaxis]
    return np.linalg.solve(weighted.T @ X_t, weighted.T @ z_t)


def fit_absorbed_glm(
    endog: Any,
    exog: Any,
    codes: list[np.ndarray],
    family: Any,
    prior_weights: Any = None,
) -> AbsorbedResults:
    """IRLS for a GLM with group intercepts absorbed by demeaning.

    Args:
        endog: ``(n,)`` outcome.
        exog: ``(n, k)`` slope columns, without an intercept.
        codes: Group codes, one array per fixed-effect dimension.
        family: A statsmodels family (supplies link and variance).
        prior_weights: Variance weights, or ``None``.

    Raises:
        ValueError: If the intercepts and slopes leave no residual
            degrees of freedom.
    """
    y = np.asarray(endog, dtype=float)
    X = np.asarray(exog, dtype=float)
    n, k = X.shape
    w0 = None if prior_weights is None else np.asarray(prior_weights, float)
    unit = np.ones(n) if w0 is None else w0

    sizes = [int(c.max()) + 1 for c in codes]
    n_absorbed = sizes[0] + sum(s - 1 for s in sizes[1:])
    df_resid = n - k - n_absorbed
    if df_resid <= 0:
        msg = (
            f"{n} observations cannot identify {k} slopes and "
            f"{n_absorbed} fixed-effect intercepts."
        )
        raise ValueError(msg)

    mu = family.starting_mu(y)
    eta = family.link(mu)
    deviance = np.inf
    converged = False
    iteration = 0
    for iteration in range(1, IRLS_MAXITER + 1):
        deriv = family.link.deriv(mu)
        weights = unit / (family.variance(mu) * deriv**2)
        working = eta + (y - mu) * deriv
        stacked = demean(np.column_stack([working, X]), codes, weights)
        z_t, X_t = stacked[:, 0], stacked[:, 1:]
        beta = _solve_slopes(X_t, z_t, weights)
        eta = working - (z_t - X_t @ beta)
        mu = family.link.inverse(eta)
        previous, deviance = deviance, float(family.deviance(y, mu, var_weights=unit))
        if abs(deviance - previous) <= IRLS_TOL * (abs(deviance) + 0.1):
            converged = True
            break
    if not converged:
        warnings.warn(
            f"Fixed-effects IRLS did not converge in {IRLS_MAXITER} iterations.",
            ConvergenceWarning,
            stacklevel=3,
        )

    deriv = family.link.deriv(mu)
    weights = unit / (family.variance(mu) * deriv**2)
    X_t = demean(X, codes, weights).reshape(n, k)
    bread = _inverse((X_t * weights[:, np.newaxis]).T @ X_t)
    if isinstance(family, _UNIT_SCALE_FAMILIES):
        scale = 1.0
    else:
        scale = float(np.sum(unit * (y - mu) ** 2 / family.variance(mu)) / df_resid)
    return AbsorbedResults(
        params=beta,
        bread=bread,
        scale=scale,
        mu=mu,
        eta=eta,
        working_weights=weights,
        prior_weights=w0,
        demeaned_exog=X_t,
        n_absorbed=n_absorbed,
        df_resid=df_resid,
        deviance=deviance,
        iterations=iteration,
        converged=converged,
    )


# ------------------------------------------------------------------ #
# Fit handle
# ------------------------------------------------------------------ #


@dataclass(eq=False)
class FixedEffectsFit(BackendFit):
    """A fit whose coefficients are slopes net of absorbed group intercepts.

    ``design.exog`` holds the slope columns; ``results`` is an
    :class:`AbsorbedResults`.

    Attributes:
        fe_names: Fixed-effect variables, in formula order.
        fe_levels: Ordered string levels of each variable.
        fe_labels: Per-row string labels of each variable.
        fe_codes: Per-row integer codes into ``fe_levels``.
        sm_family: statsmodels family of the fit.
        alpha: NB2 dispersion when the family is negative binomial.
    """

    kind: ClassVar[str] = "fixed_effects"

    fe_names: list[str] = field(default_factory=list)
    fe_levels: dict[str, list[str]] = field(default_factory=dict)
    fe_labels: pd.DataFrame | None = field(default=None, repr=False)
    fe_codes: dict[str, np.ndarray] = field(default_factory=dict, repr=False)
    sm_family: Any = field(default=None, repr=False)
    alpha: float | None = None

    @property
    def n_absorbed(self) -> int:
        return self.results.n_absorbed

    def _code_list(self) -> list[np.ndarray]:
        return [self.fe_codes[name] for name in self.fe_names]

    def fixef(self) -> dict[str, pd.Series]:
        """Per-level intercepts of every fixed-effect dimension."""
        slopes = np.asarray(self.design.exog, dtype=float) @ self.results.params
        effects = _split_absorbed(self.results.eta - slopes, self._code_list())
        return {
            name: pd.Series(values, index=self.fe_levels[name], name=name)
            for name, values in zip(self.fe_names, effects)
        }

    def sandwich_parts(self) -> SandwichParts:
        results = self.results
        parts = glm_sandwich_parts(
            results.demeaned_exog,
            self.design.endog,
            results.mu,
            self.sm_family,
            self.coef_names,
            iweights=results.prior_weights,
        )
        leverage = parts.leverage + absorbed_leverage(
            self._code_list(), results.working_weights
        )
        return SandwichParts(
            estfun=parts.estfun,
            bread=parts.bread,
            leverage=leverage,
            names=parts.names,
            n_params=len(parts.names) + results.n_absorbed,
        )

    @property
    def sigma(self) -> float | None:
        if self.alpha is not None:
            return None
        return float(np.sqrt(self.results.scale))

    @property
    def dispersion(self) -> float | None:
        if self.alpha is not None:
            return None
        return float(self.results.scale)

    @property
    def theta(self) -> float | None:
        if self.alpha is None or self.alpha <= 0:
            return None
        return 1.0 / self.alpha


def _absorbed_design(
    linear_formula: str, fe_names: list[str], data: pd.DataFrame, binary: bool
) -> tuple[Design, dict[str, np.ndarray], dict[str, list[str]], pd.DataFrame]:
    linear = build_design(linear_formula, data, binary=binary)
    slopes = linear.exog.drop(columns="Intercept", errors="ignore")
    codes, levels, labels = encode_fixed_effects(data.loc[slopes.index], fe_names)
    design = Design(endog=linear.endog, exog=slopes, design_info=linear.design_info)
    return design, codes, levels, labels


def fit_fixed_effects_glm(
    linear_formula: str,
    fe_names: list[str],
    data: pd.DataFrame,
    family: Any,
    weights_column: str | None = None,
) -> FixedEffectsFit:
    """Fit a GLM with absorbed fixed effects."""
    design, codes, levels, labels = _absorbed_design(
        linear_formula, fe_names, data, is_binary_family(family)
    )
    prior_weights = None
    if weights_column is not None:
        prior_weights = np.asarray(data.loc[design.exog.index, weights_column], float)
    results = fit_absorbed_glm(
        design.endog,
        design.exog,
        [codes[name] for name in fe_names],
        family,
        prior_weights=prior_weights,
    )
    logger.debug(
        "Fitted fixed-effects GLM %s: %d slopes, %d absorbed intercepts, "
        "%d iterations",
        type(family).__name__,
        design.exog.shape[1],
        results.n_absorbed,
        results.iterations,
    )
    return FixedEffectsFit(
        results=results,
        design=design,
        fe_names=list(fe_names),
        fe_levels=levels,
        fe_labels=labels,
        fe_codes=codes,
        sm_family=family,
    )


def nb_alpha(endog: Any, mu: Any) -> float:
    """Maximum-likelihood NB2 dispersion for fixed means *mu*."""
    y = np.asarray(endog, dtype=float)

    def objective(log_alpha: float) -> float:
        family = sm.families.NegativeBinomial(alpha=float(np.exp(log_alpha)))
        return -float(family.loglike(y, mu))

    lower, upper = np.log(NB_ALPHA_BOUNDS[0]), np.log(NB_ALPHA_BOUNDS[1])
    result = optimize.minimize_scalar(
        objective, bounds=(lower, upper), method="bounded"
    )
    return float(np.exp(result.x))


def fit_fixed_effects_negbin(
    linear_formula: str,
    fe_names: list[str],
    data: pd.DataFrame,
) -> FixedEffectsFit:
    """Fit an NB2 model with absorbed fixed effects.

    Starting from the Poisson fit, the dispersion ``alpha`` is estimated
    by maximum likelihood given the fitted means and the NB GLM is
    refitted at that ``alpha``, until ``alpha`` settles.  Equidispersed
    counts drive ``alpha`` to the lower end of its search interval
    rather than to a singular joint information matrix.  The reported
    covariance is that of the slopes at the final ``alpha``.
    """
    design, codes, levels, labels = _absorbed_design(
        linear_formula, fe_names, data, binary=False
    )
    code_list = [codes[name] for name in fe_names]
    results = fit_absorbed_glm(
        design.endog, design.exog, code_list, sm.families.Poisson()
    )
    alpha = None
    family = None
    for _ in range(NB_MAXITER):
        updated = nb_alpha(design.endog, results.mu)
        family = sm.families.NegativeBinomial(alpha=updated)
        results = fit_absorbed_glm(design.endog, design.exog, code_list, family)
        settled = alpha is not None and abs(np.log(updated / alpha)) < NB_ALPHA_TOL
        alpha = updated
        if settled:
            break
    logger.debug("Fitted fixed-effects negative binomial, alpha=%.4g", alpha)
    return FixedEffectsFit(
        results=results,
        design=design,
        fe_names=list(fe_names),
        fe_levels=levels,
        fe_labels=labels,
        fe_codes=codes,
        sm_family=family,
        alpha=alpha,
    )
