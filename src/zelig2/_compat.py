"""Optional Polars input for the estimation entry points.

Formulas are evaluated by patsy and models fitted by statsmodels, both
of which need pandas.  ``zelig2()`` therefore converts a Polars frame
to pandas once, at the boundary, and works on pandas from then on.
Polars itself is an optional extra (``pip install zelig2[polars]``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeAlias

import pandas as pd

from .exceptions import InvalidDataError

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _polars_to_pandas(obj: object) -> pd.DataFrame | None:
    """Pandas copy of a Polars frame, or ``None`` for anything else."""
    if not _HAS_POLARS:
        return None
    if isinstance(obj, pl.LazyFrame):
        obj = obj.collect()
    if isinstance(obj, pl.DataFrame):
        return obj.to_pandas()
    return None


def _ensure_pandas_df(obj: DataFrameLike, *, name: str = "data") -> pd.DataFrame:
    """Return *obj* as a :class:`pandas.DataFrame`.

    pandas input is returned unchanged (the orchestrator copies it
    later); Polars frames and lazy frames are materialised and
    converted.

    Raises:
        InvalidDataError: If *obj* is not a pandas or Polars frame.
    """
    if isinstance(obj, pd.DataFrame):
        return obj
    converted = _polars_to_pandas(obj)
    if converted is not None:
        return converted
    accepted = "a pandas DataFrame"
    if _HAS_POLARS:
        accepted += " or a Polars DataFrame/LazyFrame"
    msg = (
        f"'{name}' must be {accepted}, got {type(obj).__name__}. "
        "Wrap arrays with pandas.DataFrame(...) and name the columns used "
        "in the formula."
    )
    raise InvalidDataError(msg)
