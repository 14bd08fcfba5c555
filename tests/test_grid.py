"""Tests for training grids and the per-status fitting view."""

import numpy as np
import pandas as pd
import pytest
from _synthetic import REGRESSORS, STATUSES, X1, X2, A, make_transition_frame

from transition_fit.families import StatusFamily
from transition_fit.grid import FittingGrid, FrameGrid, TrainingGrid


def _small_frame():
    return pd.DataFrame(
        {
            "from_status": ["A", "A", "B", "A", "C"],
            "next_status": ["B", None, "A", "C", "C"],
            "x1": [0.1, 0.2, 0.3, 0.4, 0.5],
            "x2": [1.0, 2.0, 3.0, 4.0, 5.0],
        }
    )


class TestFrameGrid:
    def test_protocol(self):
        grid = FrameGrid(_small_frame(), STATUSES, REGRESSORS)
        assert isinstance(grid, TrainingGrid)
        assert grid.size() == 5

    def test_row_access(self):
        grid = FrameGrid(_small_frame(), STATUSES, REGRESSORS)
        assert grid.get_from_status(2).name == "B"
        assert grid.get_next_status(0).name == "B"
        assert not grid.has_next_status(1)
        assert grid.get_regressor_value(3, X1) == pytest.approx(0.4)
        np.testing.assert_array_equal(grid.next_status_column(), [1, -1, 0, 2, 2])

    def test_missing_next_status(self):
        grid = FrameGrid(_small_frame(), STATUSES, REGRESSORS)
        with pytest.raises(ValueError, match="no next status"):
            grid.get_next_status(1)

    def test_unknown_status_name(self):
        frame = _small_frame()
        frame.loc[0, "next_status"] = "Z"
        with pytest.raises(ValueError, match="unknown statuses: \\['Z'\\]"):
            FrameGrid(frame, STATUSES, REGRESSORS)

    def test_missing_from_status(self):
        frame = _small_frame()
        frame.loc[0, "from_status"] = None
        with pytest.raises(ValueError, match="missing statuses"):
            FrameGrid(frame, STATUSES, REGRESSORS)

    def test_missing_status_column(self):
        with pytest.raises(ValueError, match="'state' not found"):
            FrameGrid(_small_frame(), STATUSES, REGRESSORS, from_column="state")

    def test_missing_regressor_column(self):
        grid = FrameGrid(_small_frame(), STATUSES, REGRESSORS)
        with pytest.raises(ValueError, match="'x3' not found"):
            grid.regressor_column(REGRESSORS.member("x3"))


class TestFittingGrid:
    def test_selects_origin_rows_with_outcomes(self):
        grid = FittingGrid(FrameGrid(_small_frame(), STATUSES, REGRESSORS), A)
        np.testing.assert_array_equal(grid.rows, [0, 3])
        assert grid.size == len(grid) == 2
        np.testing.assert_array_equal(grid.column(X1), [0.1, 0.4])
        np.testing.assert_array_equal(
            grid.observed_mask, [[False, True, False], [False, False, True]]
        )

    def test_columns_are_cached_and_read_only(self):
        grid = FittingGrid(FrameGrid(_small_frame(), STATUSES, REGRESSORS), "A")
        grid.ensure_columns([X1, X2])
        column = grid.column(X2)
        assert column is grid.column(X2)
        assert not column.flags.writeable

    def test_unreachable_outcomes_dropped(self):
        statuses = StatusFamily("s4", ["A", "B", "C"], reachable={"A": ["A", "B"]})
        grid = FittingGrid(FrameGrid(_small_frame(), statuses, REGRESSORS), "A")
        np.testing.assert_array_equal(grid.rows, [0])

    def test_indistinguishable_mask(self):
        statuses = StatusFamily(
            "s5",
            ["A", "B", "C"],
            indistinguishable={"B": ["B", "C"], "C": ["B", "C"]},
        )
        grid = FittingGrid(FrameGrid(_small_frame(), statuses, REGRESSORS), "A")
        np.testing.assert_array_equal(
            grid.observed_mask, [[False, True, True], [False, True, True]]
        )

    def test_column_statistics(self):
        frame = make_transition_frame(n=2_000)
        grid = FittingGrid(FrameGrid(frame, STATUSES, REGRESSORS), A)
        mean, std = grid.column_stats(X2)
        assert mean == pytest.approx(frame["x2"].mean())
        assert std == pytest.approx(frame["x2"].std(ddof=0))
        q = grid.column_quantiles(X2, [0.25, 0.5, 0.75])
        np.testing.assert_allclose(q, frame["x2"].quantile([0.25, 0.5, 0.75]).to_numpy())
