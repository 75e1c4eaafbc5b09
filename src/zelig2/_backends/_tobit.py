"""Left-censored (tobit) regression by maximum likelihood.

The latent outcome is ``y* = x'b + e`` with ``e ~ N(0, s^2)``; the
observed outcome is ``y = max(y*, left)``.  The scale enters the
likelihood as ``Log(scale)`` so the optimiser works on an unbounded
parameter, and the reported covariance carries that extra row/column.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.base.model import GenericLikelihoodModel

from ..formula import build_design, hat_values
from . import BackendFit, SandwichParts

logger = logging.getLogger(__name__)

SCALE_NAME = "Log(scale)"


class Tobit(GenericLikelihoodModel):
    """Gaussian regression left-censored at *left*.

    Args:
        endog: Observed outcome.
        exog: Model matrix.
        left: Censoring point.
        weights: Optional case weights multiplying each log-likelihood
            contribution.
    """

    def __init__(
        self,
        endog: Any,
        exog: Any,
        left: float = 0.0,
        weights: np.ndarray | None = None,
        **kwds: Any,
    ) -> None:
        super().__init__(endog, exog, extra_params_names=[SCALE_NAME], **kwds)
        self.left = float(left)
        self.case_weights = (
            np.ones(self.endog.shape[0])
            if weights is None
            else np.asarray(weights, dtype=float)
        )

    def loglikeobs(self, params: np.ndarray) -> np.ndarray:
        beta, log_scale = params[:-1], params[-1]
        scale = np.exp(log_scale)
        xb = self.exog @ beta
        censored = self.endog <= self.left
        ll = np.where(
            censored,
            stats.norm.logcdf((self.left - xb) / scale),
            stats.norm.logpdf((self.endog - xb) / scale) - log_scale,
        )
        return self.case_weights * ll

    def start_values(self) -> np.ndarray:
        """OLS coefficients and the log residual standard deviation."""
        beta, *_ = np.linalg.lstsq(self.exog, self.endog, rcond=None)
        resid = self.endog - self.exog @ beta
        return np.append(beta, np.log(max(np.std(resid), 1e-8)))

    def fit(self, start_params=None, method="bfgs", maxiter=2000, **kwds):
        if start_params is None:
            start_params = self.start_values()
        return super().fit(
            start_params=start_params,
            method=method,
            maxiter=maxiter,
            disp=0,
            **kwds,
        )


@dataclass(eq=False)
class TobitFit(BackendFit):
    """Tobit fit; ``vcov()`` includes the ``Log(scale)`` entry."""

    kind: ClassVar[str] = "tobit"

    left: float = 0.0

    @property
    def param_names(self) -> list[str]:
        return self.coef_names + [SCALE_NAME]

    def sandwich_parts(self) -> SandwichParts:
        model = self.results.model
        params = np.asarray(self.results.params)
        estfun = np.asarray(model.score_obs(params))
        bread = np.linalg.inv(-np.asarray(model.hessian(params)))
        return SandwichParts(
            estfun=estfun,
            bread=bread,
            leverage=hat_values(self.design.exog),
            names=self.param_names,
        )

    @property
    def sigma(self) -> float | None:
        return float(np.exp(self.params()[SCALE_NAME]))


def fit_tobit(
    formula: str,
    data: pd.DataFrame,
    left: float = 0.0,
    weights_column: str | None = None,
) -> TobitFit:
    """Fit a tobit model left-censored at *left*."""
    design = build_design(formula, data)
    weights = None
    if weights_column is not None:
        weights = np.asarray(data.loc[design.exog.index, weights_column], float)
    model = Tobit(design.endog, design.exog, left=left, weights=weights)
    results = model.fit()
    logger.debug(
        "Fitted tobit (left=%g) on %d rows, %d censored",
        left,
        design.exog.shape[0],
        int(np.sum(np.asarray(design.endog) <= left)),
    )
    return TobitFit(results=results, design=design, left=float(left))
