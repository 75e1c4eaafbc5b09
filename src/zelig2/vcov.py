"""Variance-covariance resolver.

:func:`compute_vcov` turns a backend fit and a requested estimator into
a labelled coefficient covariance matrix.  Dispatch, first match wins:

1. fixed-effects fits → :func:`zelig2.fixed_effects.compute_vcov_fixed_effects`;
2. quantile fits with ``"default"`` (or under a survey design) → the
   backend's kernel-based covariance;
3. ``"default"`` or a survey fit → the backend's own covariance
   (design-based for survey fits);
4. ``"HC0"``–``"HC4"`` and ``"robust"`` (an alias of ``"HC1"``) →
   heteroskedasticity-consistent sandwich;
5. ``"cluster"`` → cluster-robust sandwich;
6. ``"bootstrap"`` → empirical covariance of refit coefficients.

Every robust estimator is assembled from the
:class:`~zelig2._backends.SandwichParts` of the fit, ``A M A`` with
``A`` the inverse information and ``M`` a weighted sum of score
outer products.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from typing import Any

import numpy as np
import pandas as pd

from ._backends import BackendFit, SandwichParts
from ._backends._fixed import FixedEffectsFit
from ._backends._quantile import QuantileFit
from .exceptions import MissingClusterError, UnknownVcovTypeError
from .formula import formula_variables

logger = logging.getLogger(__name__)

HC_TYPES: tuple[str, ...] = ("HC0", "HC1", "HC2", "HC3", "HC4")
VCOV_TYPES: tuple[str, ...] = ("default", "robust", *HC_TYPES, "cluster", "bootstrap")


def validate_vcov_type(vcov_type: Any) -> str:
    """Normalise *vcov_type* (``"hc1"`` → ``"HC1"``) and check it.

    Raises:
        UnknownVcovTypeError: If *vcov_type* is not recognised.
    """
    if isinstance(vcov_type, str):
        if vcov_type.upper() in HC_TYPES:
            return vcov_type.upper()
        if vcov_type.lower() in VCOV_TYPES:
            return vcov_type.lower()
    msg = f"Unknown vcov_type {vcov_type!r}. Choose from: {', '.join(VCOV_TYPES)}"
    raise UnknownVcovTypeError(msg)


# ------------------------------------------------------------------ #
# Alignment
# ------------------------------------------------------------------ #


def align_vcov(coefficients: pd.Series, vcov: Any) -> pd.DataFrame:
    """Subset *vcov* to exactly the coefficient names.

    Backends may report nuisance parameters (``Log(scale)``, ``alpha``)
    next to the coefficients.  When every
    coefficient name is a row and column label the matrix is subset by
    name; otherwise the leading ``p × p`` block is taken positionally.

    Raises:
        ValueError: If *vcov* has fewer rows than there are
            coefficients.
    """
    names = list(coefficients.index)
    frame = vcov if isinstance(vcov, pd.DataFrame) else pd.DataFrame(np.asarray(vcov))
    if set(names) <= set(frame.index) and set(names) <= set(frame.columns):
        return frame.loc[names, names].astype(float)
    k = len(names)
    if frame.shape[0] < k or frame.shape[1] < k:
        msg = (
            f"Covariance matrix of shape {frame.shape} cannot cover "
            f"{k} coefficients."
        )
        raise ValueError(msg)
    logger.debug("Aligning vcov to coefficients by position")
    return pd.DataFrame(
        np.asarray(frame, dtype=float)[:k, :k], index=names, columns=names
    )


# ------------------------------------------------------------------ #
# Cluster resolution
# ------------------------------------------------------------------ #


def resolve_cluster(
    cluster: Any, data: pd.DataFrame | None, index: pd.Index | None = None
) -> np.ndarray:
    """Turn a cluster specification into one group label per fitted row.

    Args:
        cluster: ``"~g"`` (several terms, ``"~a + b"``, cluster on
            their combination), a column name, or a raw vector with one
            entry per fitted row.
        data: Data the columns are looked up in.
        index: Rows of *data* that entered the fit.

    Raises:
        MissingClusterError: If a named column is absent.
    """
    if isinstance(cluster, str):
        if data is None:
            msg = f"Cluster '{cluster}' refers to columns but no data was given."
            raise MissingClusterError(msg)
        text = cluster.strip()
        if text.startswith("~"):
            columns = formula_variables(text[1:], data.columns)
            if not columns:
                msg = (
                    f"Cluster formula '{cluster}' names no column of the data. "
                    f"Available columns: {', '.join(map(str, data.columns))}"
                )
                raise MissingClusterError(msg)
        elif text in data.columns:
            columns = [text]
        else:
            msg = (
                f"Cluster variable '{cluster}' not found in data. "
                f"Available columns: {', '.join(map(str, data.columns))}"
            )
            raise MissingClusterError(msg)
        rows = data if index is None else data.loc[index]
        if len(columns) == 1:
            return rows[columns[0]].to_numpy()
        return rows[columns].astype(str).agg("|".join, axis=1).to_numpy()
    return np.asarray(cluster)


# ------------------------------------------------------------------ #
# Sandwich estimators
# ------------------------------------------------------------------ #


def sandwich_hc(parts: SandwichParts, hc_type: str = "HC0") -> np.ndarray:
    """Heteroskedasticity-consistent covariance of type *hc_type*."""
    u = parts.estfun
    n, k = u.shape[0], parts.rank
    h = parts.leverage
    if hc_type == "HC0":
        omega = np.ones(n)
    elif hc_type == "HC1":
        omega = np.full(n, n / (n - k))
    elif hc_type == "HC2":
        omega = 1.0 / (1.0 - h)
    elif hc_type == "HC3":
        omega = 1.0 / (1.0 - h) ** 2
    elif hc_type == "HC4":
        delta = np.minimum(4.0, n * h / k)
        omega = 1.0 / (1.0 - h) ** delta
    else:
        msg = f"Unknown HC type {hc_type!r}. Choose from: {', '.join(HC_TYPES)}"
        raise UnknownVcovTypeError(msg)
    meat = (u * omega[:, np.newaxis]).T @ u
    return parts.bread @ meat @ parts.bread


def sandwich_cluster(parts: SandwichParts, groups: Any) -> np.ndarray:
    """Cluster-robust covariance with the ``G/(G-1)·(n-1)/(n-k)`` correction.

    Raises:
        ValueError: If *groups* has the wrong length, contains missing
            values, or defines fewer than two clusters.
    """
    u = parts.estfun
    n, k = u.shape[0], parts.rank
    groups = np.asarray(groups)
    if groups.shape[0] != n:
        msg = (
            f"Cluster variable has {groups.shape[0]} entries but the fit has "
            f"{n} rows."
        )
        raise ValueError(msg)
    codes, uniques = pd.factorize(pd.Series(groups), use_na_sentinel=True)
    if np.any(codes < 0):
        msg = "Cluster variable contains missing values."
        raise ValueError(msg)
    n_groups = len(uniques)
    if n_groups < 2:
        msg = f"Cluster-robust covariance needs at least 2 clusters, got {n_groups}."
        raise ValueError(msg)
    totals = np.zeros((n_groups, u.shape[1]))
    np.add.at(totals, codes, u)
    meat = totals.T @ totals
    adjustment = (n_groups / (n_groups - 1)) * ((n - 1) / (n - k))
    logger.debug("Cluster-robust vcov over %d clusters", n_groups)
    return adjustment * (parts.bread @ meat @ parts.bread)


def bootstrap_vcov(
    refit: Callable[[pd.DataFrame], BackendFit],
    data: pd.DataFrame,
    coef_names: list[str],
    replicates: int = 500,
    random_state: Any = None,
) -> pd.DataFrame:
    """Nonparametric bootstrap covariance of the coefficients.

    Rows are resampled with replacement and the model is refitted
    *replicates* times.  Replicates whose refit fails are dropped; the
    covariance is computed pairwise over the successful ones.

    Raises:
        ValueError: If fewer than two replicates succeed.
    """
    rng = np.random.default_rng(random_state)
    n = len(data)
    draws: list[pd.Series] = []
    failures = 0
    for _ in range(replicates):
        idx = rng.integers(0, n, size=n)
        sample = data.iloc[idx].reset_index(drop=True)
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                coefs = refit(sample).coefficients()
        except (np.linalg.LinAlgError, ValueError) as exc:
            failures += 1
            logger.debug("Bootstrap replicate failed: %s", exc)
            continue
        draws.append(coefs.reindex(coef_names))
    if failures:
        warnings.warn(
            f"{failures} of {replicates} bootstrap replicates failed to fit "
            "and were dropped.",
            UserWarning,
            stacklevel=2,
        )
    if len(draws) < 2:
        msg = "Bootstrap covariance needs at least 2 successful replicates."
        raise ValueError(msg)
    return pd.DataFrame(draws).cov().loc[coef_names, coef_names]


# ------------------------------------------------------------------ #
# Dispatch
# ------------------------------------------------------------------ #


def compute_vcov(
    fit: BackendFit,
    vcov_type: str = "default",
    cluster: Any = None,
    data: pd.DataFrame | None = None,
    bootstrap_n: int = 500,
    is_survey: bool = False,
    refit: Callable[[pd.DataFrame], BackendFit] | None = None,
    random_state: Any = None,
) -> pd.DataFrame:
    """Coefficient covariance of *fit* under the requested estimator.

    Args:
        fit: Backend fit.
        vcov_type: One of :data:`VCOV_TYPES`.
        cluster: Cluster specification for ``"cluster"``.
        data: Data the fit was computed on (cluster lookup and
            bootstrap resampling).
        bootstrap_n: Bootstrap replicates.
        is_survey: Whether the fit is survey-weighted; its
            design-based covariance is then always returned.
        refit: ``refit(sample) -> BackendFit`` used by the bootstrap.
        random_state: Seed for the bootstrap.

    Returns:
        A labelled square covariance matrix.  It may carry nuisance
        rows; see :func:`align_vcov`.

    Raises:
        UnknownVcovTypeError: For an unrecognised *vcov_type*.
        MissingClusterError: For ``"cluster"`` without *cluster*.
    """
    vcov_type = validate_vcov_type(vcov_type)

    if isinstance(fit, FixedEffectsFit):
        # Deferred import: the fixed-effects adapter imports this module.
        from .fixed_effects import compute_vcov_fixed_effects

        return compute_vcov_fixed_effects(fit, vcov_type, cluster=cluster, data=data)

    if isinstance(fit, QuantileFit) and (vcov_type == "default" or is_survey):
        return fit.vcov()

    if is_survey or vcov_type == "default":
        return fit.vcov()

    if vcov_type == "robust" or vcov_type in HC_TYPES:
        hc_type = "HC1" if vcov_type == "robust" else vcov_type
        parts = fit.sandwich_parts()
        logger.debug("Computing %s sandwich covariance", hc_type)
        return pd.DataFrame(
            sandwich_hc(parts, hc_type), index=parts.names, columns=parts.names
        )

    if vcov_type == "cluster":
        if cluster is None:
            msg = (
                "vcov_type='cluster' requires a cluster variable, e.g. "
                "cluster='~group' or cluster='group'."
            )
            raise MissingClusterError(msg)
        groups = resolve_cluster(cluster, data, index=fit.design.exog.index)
        parts = fit.sandwich_parts()
        return pd.DataFrame(
            sandwich_cluster(parts, groups), index=parts.names, columns=parts.names
        )

    # vcov_type == "bootstrap"
    if refit is None or data is None:
        msg = "vcov_type='bootstrap' requires the data and a refit function."
        raise ValueError(msg)
    logger.debug("Bootstrapping vcov with %d replicates", bootstrap_n)
    return bootstrap_vcov(
        refit, data, fit.coef_names, replicates=bootstrap_n, random_state=random_state
    )
