"""Survey designs: weights, clusters, strata and finite-population corrections.

Weights arrive in three shapes, normalised once by
:func:`to_weight_spec` into a :data:`WeightSpec`:

* :class:`RawValues` — a numeric vector, one weight per row;
* :class:`ColumnRef` — the name of a data column;
* :class:`DesignFormula` — a one-sided formula such as ``"~pw"``.

:func:`resolve_survey_design` turns the weight, cluster (``ids``),
stratum and finite-population-correction inputs into a
:class:`SurveyDesign`, or passes a caller-supplied design through.

Design-based variances use Taylor linearization with
with-replacement sampling of primary sampling units (PSUs) inside each
stratum, scaled by the finite-population correction.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Union

import numpy as np
import pandas as pd

from .exceptions import InvalidSurveyDesignError, InvalidWeightSpecError
from .formula import formula_variables

logger = logging.getLogger(__name__)

WEIGHTS_COLUMN = ".zelig2_weights"


# ------------------------------------------------------------------ #
# WeightSpec
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RawValues:
    """Weights given directly, one per row."""

    values: np.ndarray = field(repr=False)


@dataclass(frozen=True)
class ColumnRef:
    """Weights held in a named data column."""

    name: str


@dataclass(frozen=True)
class DesignFormula:
    """Weights named by a one-sided formula, e.g. ``"~pw"``."""

    expr: str


WeightSpec = Union[RawValues, ColumnRef, DesignFormula]


def to_weight_spec(weights: Any) -> WeightSpec | None:
    """Normalise a user weight argument.

    Raises:
        InvalidWeightSpecError: If *weights* is none of a formula
            string, a column-name string or a numeric vector.
    """
    if weights is None:
        return None
    if isinstance(weights, (RawValues, ColumnRef, DesignFormula)):
        return weights
    if isinstance(weights, str):
        if weights.strip().startswith("~"):
            return DesignFormula(weights.strip())
        return ColumnRef(weights)
    if isinstance(weights, (np.ndarray, pd.Series, list, tuple)):
        values = np.asarray(weights)
        if values.ndim == 1 and np.issubdtype(values.dtype, np.number):
            return RawValues(values.astype(float))
    msg = (
        "'weights' must be a formula ('~w'), a column name ('w') or a "
        f"numeric vector, got {type(weights).__name__}."
    )
    raise InvalidWeightSpecError(msg)


def weight_column(spec: WeightSpec, data: pd.DataFrame) -> tuple[str, pd.DataFrame]:
    """Column holding the weights of *spec*, materialising raw values.

    Returns:
        ``(column_name, data)`` where *data* gains the hidden column
        ``.zelig2_weights`` for :class:`RawValues`.

    Raises:
        InvalidWeightSpecError: If the column does not exist, or raw
            values do not match the number of rows.
    """
    if isinstance(spec, RawValues):
        if spec.values.shape[0] != len(data):
            msg = (
                f"'weights' has {spec.values.shape[0]} values but the data "
                f"has {len(data)} rows."
            )
            raise InvalidWeightSpecError(msg)
        return WEIGHTS_COLUMN, data.assign(**{WEIGHTS_COLUMN: spec.values})
    if isinstance(spec, DesignFormula):
        names = formula_variables(spec.expr.lstrip()[1:], data.columns)
        if len(names) != 1:
            msg = (
                f"Weight formula '{spec.expr}' must name exactly one column "
                f"of the data. Available columns: {', '.join(map(str, data.columns))}"
            )
            raise InvalidWeightSpecError(msg)
        return names[0], data
    if spec.name not in data.columns:
        msg = (
            f"Weight column '{spec.name}' not found in data. "
            f"Available columns: {', '.join(map(str, data.columns))}"
        )
        raise InvalidWeightSpecError(msg)
    return spec.name, data


# ------------------------------------------------------------------ #
# SurveyDesign
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class SurveyDesign:
    """A one-stage stratified cluster design.

    Attributes:
        weights: ``(n,)`` sampling weights.
        psu: ``(n,)`` PSU identifiers (unique within the design).
        strata: ``(n,)`` stratum identifiers.
        fpc: ``(n,)`` sampling fraction of each row's stratum, or
            ``None`` for sampling with replacement.
        nest: Whether PSU identifiers were relabelled within strata.
        description: Human-readable summary of the inputs.
    """

    weights: np.ndarray = field(repr=False)
    psu: np.ndarray = field(repr=False)
    strata: np.ndarray = field(repr=False)
    fpc: np.ndarray | None = field(default=None, repr=False)
    nest: bool = False
    description: str = ""

    def __len__(self) -> int:
        return int(self.weights.shape[0])

    @property
    def n_strata(self) -> int:
        return int(pd.unique(self.strata).shape[0])

    @property
    def n_psu(self) -> int:
        return int(pd.unique(self.psu).shape[0])

    def subset(self, mask: Any) -> SurveyDesign:
        """Restrict the design to the rows where *mask* is true."""
        keep = np.asarray(mask, dtype=bool)
        return SurveyDesign(
            weights=self.weights[keep],
            psu=self.psu[keep],
            strata=self.strata[keep],
            fpc=None if self.fpc is None else self.fpc[keep],
            nest=self.nest,
            description=self.description,
        )

    def variance(self, influence: np.ndarray) -> np.ndarray:
        """Taylor-linearization covariance of a total of *influence* rows.

        For each stratum ``h`` with ``n_h`` PSUs whose influence totals
        are ``z_hc``, adds
        ``(1 - f_h) · n_h / (n_h - 1) · Σ_c (z_hc - z̄_h)(z_hc - z̄_h)'``.
        Strata with a single PSU contribute nothing and trigger a
        warning.
        """
        influence = np.asarray(influence, dtype=float)
        k = influence.shape[1]
        cov = np.zeros((k, k))
        lonely: list[Any] = []
        for stratum in pd.unique(self.strata):
            rows = self.strata == stratum
            codes, uniques = pd.factorize(self.psu[rows])
            n_h = len(uniques)
            if n_h < 2:
                lonely.append(stratum)
                continue
            totals = np.zeros((n_h, k))
            np.add.at(totals, codes, influence[rows])
            centered = totals - totals.mean(axis=0)
            f_h = 0.0 if self.fpc is None else float(self.fpc[rows][0])
            cov += (1.0 - f_h) * n_h / (n_h - 1) * (centered.T @ centered)
        if lonely:
            warnings.warn(
                f"{len(lonely)} stratum/strata contain a single PSU and "
                "contribute no variance.",
                UserWarning,
                stacklevel=2,
            )
        return cov


def _design_columns(spec: Any, data: pd.DataFrame, role: str) -> list[str]:
    if isinstance(spec, str):
        text = spec.strip()
        if text.startswith("~"):
            if text[1:].strip() in ("1", "0"):
                return []
            names = formula_variables(text[1:], data.columns)
            if not names:
                msg = f"{role} formula '{spec}' names no column of the data."
                raise InvalidSurveyDesignError(msg)
            return names
        if text in data.columns:
            return [text]
        msg = f"{role} column '{spec}' not found in data."
        raise InvalidSurveyDesignError(msg)
    msg = f"{role} must be a formula or a column name, got {type(spec).__name__}."
    raise InvalidSurveyDesignError(msg)


def make_survey_design(
    data: pd.DataFrame,
    ids: Any = None,
    strata: Any = None,
    fpc: Any = None,
    weights: Any = None,
    nest: bool = False,
) -> SurveyDesign:
    """Build a :class:`SurveyDesign` over the rows of *data*.

    Args:
        data: Data the design describes.
        ids: PSU identifiers (``"~psu"``, ``"psu"``); ``None`` or
            ``"~1"`` makes every row its own PSU.  Only the first stage
            of a multi-stage formula is used.
        strata: Stratum identifiers; ``None`` for a single stratum.
        fpc: Finite-population correction: values above 1 are
            population sizes (PSUs per stratum), values in ``(0, 1]``
            are sampling fractions.
        weights: A weight specification (see :func:`to_weight_spec`);
            unit weights when omitted.
        nest: Relabel PSUs within strata.  Without it, a PSU identifier
            appearing in two strata is an error.

    Raises:
        InvalidSurveyDesignError: For missing columns, non-nested PSUs
            or invalid weights.
        InvalidWeightSpecError: For malformed weights.
    """
    n = len(data)
    spec = to_weight_spec(weights)
    if spec is None:
        logger.debug("No survey weights supplied; assuming equal probability")
        w = np.ones(n)
        weight_label = "equal"
    else:
        column, data = weight_column(spec, data)
        w = data[column].to_numpy(dtype=float)
        weight_label = column
    if np.any(~np.isfinite(w)) or np.any(w <= 0):
        msg = "Survey weights must be finite and strictly positive."
        raise InvalidSurveyDesignError(msg)

    id_cols = [] if ids is None else _design_columns(ids, data, "ids")
    psu = np.arange(n) if not id_cols else data[id_cols[0]].to_numpy()

    strata_cols = [] if strata is None else _design_columns(strata, data, "strata")
    if strata_cols:
        stratum = data[strata_cols].astype(str).agg("|".join, axis=1).to_numpy()
    else:
        stratum = np.zeros(n, dtype=int)

    psu_frame = pd.DataFrame({"psu": psu, "stratum": stratum})
    if nest:
        psu = psu_frame.astype(str).agg("|".join, axis=1).to_numpy()
    elif id_cols and (psu_frame.groupby("psu")["stratum"].nunique() > 1).any():
        msg = (
            "Clusters are not nested in strata: a PSU identifier appears in "
            "more than one stratum. Pass nest=True if identifiers are only "
            "unique within strata."
        )
        raise InvalidSurveyDesignError(msg)

    fraction = None
    if fpc is not None:
        fpc_cols = _design_columns(fpc, data, "fpc")
        values = data[fpc_cols[0]].to_numpy(dtype=float)
        if np.all(values <= 1):
            fraction = values
        else:
            psu_counts = (
                pd.DataFrame({"psu": psu, "stratum": stratum})
                .groupby("stratum")["psu"]
                .transform("nunique")
                .to_numpy(dtype=float)
            )
            fraction = psu_counts / values

    description = (
        f"ids={ids or '~1'}, strata={strata or 'none'}, "
        f"weights={weight_label}, fpc={fpc or 'none'}"
    )
    return SurveyDesign(
        weights=w,
        psu=np.asarray(psu),
        strata=np.asarray(stratum),
        fpc=fraction,
        nest=nest,
        description=description,
    )


def resolve_survey_design(
    data: pd.DataFrame,
    weights: Any = None,
    survey_design: Any = None,
    ids: Any = None,
    strata: Any = None,
    fpc: Any = None,
    nest: bool = False,
) -> tuple[SurveyDesign | None, pd.DataFrame]:
    """Resolve survey inputs into a design, or ``None`` for none.

    Returns:
        ``(design, data)``; *data* gains the hidden weights column when
        raw weight values are given.

    Raises:
        InvalidSurveyDesignError: If *survey_design* is not a
            :class:`SurveyDesign` or does not match the data.
        InvalidWeightSpecError: For malformed weights.
    """
    if survey_design is not None:
        if not isinstance(survey_design, SurveyDesign):
            msg = (
                "'survey_design' must be a SurveyDesign (see "
                f"make_survey_design()), got {type(survey_design).__name__}."
            )
            raise InvalidSurveyDesignError(msg)
        if len(survey_design) != len(data):
            msg = (
                f"'survey_design' describes {len(survey_design)} rows but the "
                f"data has {len(data)}."
            )
            raise InvalidSurveyDesignError(msg)
        return survey_design, data

    if weights is None and ids is None and strata is None and fpc is None:
        return None, data

    spec = to_weight_spec(weights)
    if spec is not None:
        column, data = weight_column(spec, data)
        spec = ColumnRef(column)
    design = make_survey_design(
        data, ids=ids, strata=strata, fpc=fpc, weights=spec, nest=nest
    )
    logger.debug(
        "Resolved survey design: %d rows, %d PSUs, %d strata",
        len(design),
        design.n_psu,
        design.n_strata,
    )
    return design, data
