"""Frame conversion at the grid boundary.

:class:`~transition_fit.grid.FrameGrid` stores a pandas DataFrame and
pulls NumPy columns out of it.  Callers may hand it a
``polars.DataFrame`` or ``polars.LazyFrame`` instead; those are narrowed
to the columns the grid can use (the two status columns and the
regressors of the family) *before* conversion, so a wide Polars table
is never copied into pandas in full.  A lazy query is collected after
the projection, which lets Polars push it down to the scan.

Polars is optional (``pip install transition-fit[polars]``).
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, TypeAlias

import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    TransitionFrame: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    TransitionFrame: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _project(names: Iterable[str], wanted: Iterable[str] | None) -> list[str] | None:
    if wanted is None:
        return None
    available = set(names)
    return [c for c in dict.fromkeys(wanted) if c in available]


def to_transition_frame(
    obj: TransitionFrame,
    columns: Iterable[str] | None = None,
) -> pd.DataFrame:
    """Return *obj* as a pandas DataFrame holding at most *columns*.

    A pandas frame is returned unchanged; its columns are looked up
    lazily by the grid.  Polars frames keep only the listed columns
    that exist (order of *columns*, duplicates dropped); ``None`` keeps
    everything.

    Raises:
        TypeError: If *obj* is neither a pandas nor a Polars frame.
    """
    if isinstance(obj, pd.DataFrame):
        return obj

    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            keep = _project(obj.collect_schema().names(), columns)
            lazy = obj if keep is None else obj.select(keep)
            return lazy.collect().to_pandas()
        if isinstance(obj, pl.DataFrame):
            keep = _project(obj.columns, columns)
            frame = obj if keep is None else obj.select(keep)
            return frame.to_pandas()

    accepted = "a pandas DataFrame"
    if _HAS_POLARS:
        accepted += " or a Polars DataFrame/LazyFrame"
    msg = f"Transition rows must be {accepted}, got {type(obj).__name__}."
    raise TypeError(msg)
