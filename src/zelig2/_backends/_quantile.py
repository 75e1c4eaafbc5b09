"""Conditional-quantile regression through ``statsmodels.QuantReg``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import ClassVar

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from statsmodels.regression.quantile_regression import hall_sheather

from ..formula import build_design, hat_values
from . import BackendFit, SandwichParts

logger = logging.getLogger(__name__)


def _epanechnikov(u: np.ndarray) -> np.ndarray:
    return np.where(np.abs(u) <= 1, 0.75 * (1 - u**2), 0.0)


@dataclass(eq=False)
class QuantileFit(BackendFit):
    """``QuantReg`` fit at quantile *tau*.

    ``vcov()`` is the backend's kernel-based robust covariance.  The
    sandwich parts reproduce it: scores ``x_i (tau - 1[r_i <= 0]) / f``
    with ``f`` the Epanechnikov residual density at zero under the
    Hall–Sheather bandwidth, and bread ``(X'X)^-1``.
    """

    kind: ClassVar[str] = "quantile"

    tau: float = 0.5

    def _residual_density(self, resid: np.ndarray) -> float:
        endog = np.asarray(self.design.endog, dtype=float)
        n = resid.shape[0]
        iqr = np.percentile(resid, 75) - np.percentile(resid, 25)
        h = hall_sheather(n, self.tau)
        h = min(np.std(endog), iqr / 1.34) * (
            stats.norm.ppf(self.tau + h) - stats.norm.ppf(self.tau - h)
        )
        return float(np.sum(_epanechnikov(resid / h)) / (n * h))

    def sandwich_parts(self) -> SandwichParts:
        X = np.asarray(self.design.exog, dtype=float)
        resid = np.asarray(self.results.resid, dtype=float)
        psi = np.where(resid > 0, self.tau, self.tau - 1.0)
        fhat = self._residual_density(resid)
        return SandwichParts(
            estfun=X * (psi / fhat)[:, np.newaxis],
            bread=np.linalg.pinv(X.T @ X),
            leverage=hat_values(X),
            names=self.coef_names,
        )


def fit_quantile(formula: str, data: pd.DataFrame, tau: float = 0.5) -> QuantileFit:
    """Fit the *tau*-th conditional quantile.

    Raises:
        ValueError: If *tau* is not strictly between 0 and 1.
    """
    if not 0 < tau < 1:
        msg = f"'tau' must lie strictly between 0 and 1, got {tau}."
        raise ValueError(msg)
    design = build_design(formula, data)
    results = sm.QuantReg(design.endog, design.exog).fit(q=tau)
    logger.debug("Fitted QuantReg (tau=%g) on %d rows", tau, design.exog.shape[0])
    return QuantileFit(results=results, design=design, tau=float(tau))
