"""Training grids: the row source the evaluator reads from.

Two layers:

1. :class:`TrainingGrid` — the protocol a data-loading layer
   implements.  Rows carry a from-status, an optional next-status and
   one numeric value per regressor.  :class:`FrameGrid` is the
   DataFrame-backed implementation shipped with the package.
2. :class:`FittingGrid` — the evaluator-facing view for one origin
   status.  It keeps only rows that start in that status and have an
   observed, reachable outcome, precomputes the observed-bucket mask
   over the reachable statuses, and caches regressor columns as
   contiguous float64 arrays.

Columns must be loaded (:meth:`FittingGrid.ensure_columns`) on the
driving thread before block evaluation starts; worker threads only
read the cache.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd

from ._compat import TransitionFrame, to_transition_frame
from .families import CategoryFamily, Member, StatusFamily

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# TrainingGrid protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class TrainingGrid(Protocol):
    """Row-oriented transition data.

    Status columns hold ordinals of :attr:`status_family`; a missing
    next status is encoded as ``-1``.
    """

    @property
    def status_family(self) -> StatusFamily: ...

    def size(self) -> int:
        """Number of rows."""
        ...

    def get_from_status(self, row: int) -> Member: ...

    def get_next_status(self, row: int) -> Member:
        """Observed next status; raises ``ValueError`` when absent."""
        ...

    def has_next_status(self, row: int) -> bool: ...

    def get_regressor_value(self, row: int, field: Member) -> float: ...

    def from_status_column(self) -> np.ndarray:
        """From-status ordinals, shape ``(size,)``."""
        ...

    def next_status_column(self) -> np.ndarray:
        """Next-status ordinals (``-1`` when absent), shape ``(size,)``."""
        ...

    def regressor_column(self, field: Member) -> np.ndarray:
        """Float64 values of *field*, shape ``(size,)``."""
        ...


# ------------------------------------------------------------------ #
# FrameGrid
# ------------------------------------------------------------------ #


class FrameGrid:
    """:class:`TrainingGrid` over a pandas (or Polars) DataFrame.

    Args:
        frame: One row per observation.  The status columns hold
            status *names*; a null next status marks an unobserved
            outcome.  Every regressor is a numeric column named after
            its member.
        statuses: Status family the names belong to.
        regressors: Regressor family; used to validate lookups.
        from_column: Name of the from-status column.
        next_column: Name of the next-status column.

    Raises:
        ValueError: If a status column is missing, a from-status is
            null, or a status name is unknown.
    """

    def __init__(
        self,
        frame: TransitionFrame,
        statuses: StatusFamily,
        regressors: CategoryFamily,
        *,
        from_column: str = "from_status",
        next_column: str = "next_status",
    ) -> None:
        df = to_transition_frame(
            frame, [from_column, next_column, *regressors.names]
        )
        for column in (from_column, next_column):
            if column not in df.columns:
                msg = f"Status column '{column}' not found in frame."
                raise ValueError(msg)

        self._frame = df.reset_index(drop=True)
        self._statuses = statuses
        self._regressors = regressors
        self._from = self._encode(self._frame[from_column], from_column)
        self._next = self._encode(self._frame[next_column], next_column)
        if (self._from < 0).any():
            msg = f"Column '{from_column}' contains missing statuses."
            raise ValueError(msg)
        self._columns: dict[Member, np.ndarray] = {}

    def _encode(self, values: pd.Series, column: str) -> np.ndarray:
        codes = pd.Categorical(values, categories=list(self._statuses.names)).codes
        unknown = (codes < 0) & values.notna().to_numpy()
        if unknown.any():
            bad = sorted({str(v) for v in values[unknown]})
            msg = f"Column '{column}' contains unknown statuses: {bad}."
            raise ValueError(msg)
        return codes.astype(np.int64)

    @property
    def status_family(self) -> StatusFamily:
        return self._statuses

    @property
    def regressor_family(self) -> CategoryFamily:
        return self._regressors

    def size(self) -> int:
        return len(self._from)

    def get_from_status(self, row: int) -> Member:
        return self._statuses.member(int(self._from[row]))

    def get_next_status(self, row: int) -> Member:
        code = int(self._next[row])
        if code < 0:
            msg = f"Row {row} has no next status."
            raise ValueError(msg)
        return self._statuses.member(code)

    def has_next_status(self, row: int) -> bool:
        return bool(self._next[row] >= 0)

    def get_regressor_value(self, row: int, field: Member) -> float:
        return float(self.regressor_column(field)[row])

    def from_status_column(self) -> np.ndarray:
        return self._from

    def next_status_column(self) -> np.ndarray:
        return self._next

    def regressor_column(self, field: Member) -> np.ndarray:
        cached = self._columns.get(field)
        if cached is not None:
            return cached
        self._regressors.member(field)
        if field.name not in self._frame.columns:
            msg = f"Regressor column '{field.name}' not found in frame."
            raise ValueError(msg)
        values = self._frame[field.name].to_numpy(dtype=np.float64)
        values.setflags(write=False)
        self._columns[field] = values
        return values


# ------------------------------------------------------------------ #
# FittingGrid
# ------------------------------------------------------------------ #


class FittingGrid:
    """Rows of a :class:`TrainingGrid` relevant to one origin status.

    Attributes:
        from_status: The origin status.
        reachable: Reachable statuses in model order.
        observed_mask: Boolean ``(size, len(reachable))`` array; row
            ``n`` flags the reachable statuses indistinguishable from
            the observed outcome of that row.
    """

    def __init__(self, grid: TrainingGrid, from_status: Member | str | int) -> None:
        statuses = grid.status_family
        origin = statuses.member(from_status)
        reachable = statuses.reachable(origin)

        from_codes = np.asarray(grid.from_status_column())
        next_codes = np.asarray(grid.next_status_column())
        if from_codes.shape != next_codes.shape:
            msg = (
                f"Status columns differ in length: {from_codes.shape[0]} "
                f"vs {next_codes.shape[0]}."
            )
            raise ValueError(msg)

        candidate = np.flatnonzero((from_codes == origin.ordinal) & (next_codes >= 0))

        # lookup[next_ordinal, k]: reachable k shares the label of next_ordinal
        lookup = np.zeros((statuses.size, len(reachable)), dtype=bool)
        for status in statuses:
            group = statuses.indistinguishable(status)
            for k, target in enumerate(reachable):
                lookup[status.ordinal, k] = target in group

        mask = lookup[next_codes[candidate]]
        usable = mask.any(axis=1)
        dropped = int((~usable).sum())
        if dropped:
            logger.debug(
                "Dropping %d row(s) from '%s' with unreachable outcomes.",
                dropped,
                origin.name,
            )

        self._grid = grid
        self.from_status = origin
        self.reachable = reachable
        self._rows = candidate[usable]
        self.observed_mask = mask[usable]
        self.observed_mask.setflags(write=False)
        self._columns: dict[Member, np.ndarray] = {}

    @property
    def size(self) -> int:
        return len(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def rows(self) -> np.ndarray:
        """Indices into the underlying training grid."""
        return self._rows

    def ensure_columns(self, fields: Iterable[Member]) -> None:
        """Load and cache the columns of *fields*."""
        for field in fields:
            self.column(field)

    def column(self, field: Member) -> np.ndarray:
        """Values of *field* on the fitting rows (cached)."""
        cached = self._columns.get(field)
        if cached is None:
            cached = np.ascontiguousarray(
                self._grid.regressor_column(field)[self._rows], dtype=np.float64
            )
            cached.setflags(write=False)
            self._columns[field] = cached
        return cached

    def column_stats(self, field: Member) -> tuple[float, float]:
        """Mean and standard deviation of the finite values of *field*."""
        values = self.column(field)
        values = values[np.isfinite(values)]
        if values.size == 0:
            msg = f"Regressor '{field.name}' has no finite values."
            raise ValueError(msg)
        return float(values.mean()), float(values.std())

    def column_quantiles(self, field: Member, probs: Iterable[float]) -> np.ndarray:
        """Quantiles of the finite values of *field*."""
        values = self.column(field)
        values = values[np.isfinite(values)]
        if values.size == 0:
            msg = f"Regressor '{field.name}' has no finite values."
            raise ValueError(msg)
        return np.quantile(values, list(probs))
