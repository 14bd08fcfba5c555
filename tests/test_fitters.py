"""Tests for the fitting orchestrators.

The plain multinomial fits are checked against statsmodels' MNLogit;
structure search is checked on data with a known logistic effect.
"""

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm
from _synthetic import (
    INTERCEPT,
    MERGED,
    ONES,
    REGRESSORS,
    X1,
    X2,
    X3,
    B,
    make_grid,
    make_noise_frame,
    make_transition_frame,
    starting_params,
)

import transition_fit.fitters as fitters_module
from transition_fit._config import FitSettings
from transition_fit._results import FitStatus
from transition_fit.curves import CurveType
from transition_fit.fitters import BaseFitter, ModelFitter
from transition_fit.grid import FrameGrid
from transition_fit.optimize import ConvergenceError
from transition_fit.packed import PackedParameters
from transition_fit.params import EntryFilter, ModelEntry, ModelParameters

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture(scope="module")
def plain_frame():
    return make_transition_frame()


@pytest.fixture(scope="module")
def plain_fitter():
    return ModelFitter(starting_params(), make_grid(), FitSettings())


@pytest.fixture(scope="module")
def plain_fit(plain_fitter):
    initial = plain_fitter.generate_initial_model()
    with_x1 = plain_fitter.add_direct_regressors(initial, [X1])
    return plain_fitter.fit_all_parameters(with_x1)


@pytest.fixture(scope="module")
def curve_fitter():
    grid = make_grid(x1_effect=(0.0, 0.0), curve_effect=2.5)
    return ModelFitter(
        starting_params(), grid, FitSettings(), curve_types=(CurveType.LOGISTIC,)
    )


# ------------------------------------------------------------------ #
# Plain multinomial fits
# ------------------------------------------------------------------ #


class TestPlainFit:
    def test_initial_model_matches_frequencies(self, plain_fitter, plain_frame):
        initial = plain_fitter.generate_initial_model()
        counts = plain_frame["next_status"].value_counts()
        expected = [np.log(counts["B"] / counts["A"]), np.log(counts["C"] / counts["A"])]
        np.testing.assert_allclose(initial.params.betas[:, 0], expected, atol=1e-6)
        assert initial.status is FitStatus.IMPROVED

    def test_matches_statsmodels_mnlogit(self, plain_fit, plain_frame):
        y = pd.Categorical(plain_frame["next_status"], categories=["A", "B", "C"]).codes
        exog = sm.add_constant(plain_frame[["x1"]].to_numpy())
        reference = sm.MNLogit(y, exog).fit(disp=0, method="newton", maxiter=100)
        np.testing.assert_allclose(
            plain_fit.params.betas, np.asarray(reference.params).T, atol=1e-4
        )
        assert plain_fit.entropy == pytest.approx(-reference.llf / len(y), rel=1e-8)

    def test_recovers_true_coefficients(self, plain_fit):
        np.testing.assert_allclose(
            plain_fit.params.betas, [[0.5, 1.0], [-0.3, -0.8]], atol=0.1
        )

    def test_fit_is_chained(self, plain_fit):
        history = list(plain_fit.history())
        assert len(history) >= 3
        assert all(r.aic <= r.prev.aic + 1e-6 for r in history[:-1] if not r.is_vacuous)

    def test_direct_regressors_already_present(self, plain_fitter, plain_fit):
        again = plain_fitter.add_direct_regressors(plain_fit, [X1])
        assert again.is_vacuous
        assert again.params is plain_fit.params

    def test_fit_betas_keeps_optimum(self, plain_fitter, plain_fit):
        refit = plain_fitter.fit_betas(plain_fit)
        assert refit.entropy <= plain_fit.entropy + 1e-12
        np.testing.assert_allclose(refit.params.betas, plain_fit.params.betas, atol=1e-6)

    def test_fit_entries(self, plain_fitter, plain_fit):
        refit = plain_fitter.fit_entries(plain_fit, [1])
        assert refit.entropy <= plain_fit.entropy + 1e-12

    def test_fit_entries_rejects_empty_selection(self, plain_fitter, plain_fit):
        with pytest.raises(ValueError, match="Invalid entry list"):
            plain_fitter.fit_entries(plain_fit, [])

    def test_fit_entries_rejects_bad_index(self, plain_fitter, plain_fit):
        with pytest.raises(IndexError):
            plain_fitter.fit_entries(plain_fit, [7])


# ------------------------------------------------------------------ #
# AIC gate and failure mapping
# ------------------------------------------------------------------ #


class TestBaseFitter:
    def _redundant_packed(self, plain_fit):
        # A constant column duplicates the intercept: nothing to gain.
        candidate = plain_fit.params.add_beta(ONES)
        return PackedParameters.generate(candidate, EntryFilter([candidate.entry_count - 1]))

    def test_worse_aic_returns_identical_params(self, plain_fitter, plain_fit):
        base = BaseFitter(plain_fitter.evaluator, FitSettings(aic_slack=0.0))
        result = base.do_fit(self._redundant_packed(plain_fit), plain_fit)
        assert result.status is FitStatus.UNCHANGED
        assert result.params is plain_fit.params
        assert result.entropy == plain_fit.entropy
        assert result.prev is plain_fit

    def test_skip_worse_disabled(self, plain_fitter, plain_fit):
        base = BaseFitter(plain_fitter.evaluator, FitSettings(aic_slack=0.0))
        result = base.do_fit(self._redundant_packed(plain_fit), plain_fit, skip_worse=False)
        assert result.status is FitStatus.IMPROVED
        assert result.effective_param_count == plain_fit.effective_param_count + 2
        assert result.aic_diff == pytest.approx(4.0, abs=1e-3)

    def test_convergence_error_becomes_failed(self, plain_fitter, plain_fit, monkeypatch):
        def broken(objective, x0, settings=None):
            raise ConvergenceError("line search failed")

        monkeypatch.setattr(fitters_module, "minimize", broken)
        result = plain_fitter.fit_all_parameters(plain_fit)
        assert result.status is FitStatus.FAILED
        assert result.reason == "line search failed"
        assert result.params is plain_fit.params

    def test_empty_packed(self, plain_fitter, plain_fit):
        base = BaseFitter(plain_fitter.evaluator)
        with pytest.raises(ValueError, match="nothing to fit"):
            base.do_fit(PackedParameters(plain_fit.params, ()), plain_fit)


# ------------------------------------------------------------------ #
# Trimming
# ------------------------------------------------------------------ #


class TestTrim:
    def test_removes_harmful_restricted_entry(self, plain_fitter, plain_fit):
        fitted = plain_fit.params
        params = (
            starting_params()
            .add_entry(ModelEntry(X3, None, B), {B: 9.0})
            .add_beta(X1)
        )
        params = params.updated(
            [(0, s, fitted.beta(s, 0)) for s in fitted.beta_statuses]
            + [(2, s, fitted.beta(s, 1)) for s in fitted.beta_statuses]
        )
        start = plain_fitter.evaluator.compute_fit_result(params)
        trimmed = plain_fitter.trim(start)
        assert not trimmed.is_vacuous
        assert trimmed.params.regressors == (INTERCEPT, X1)
        assert trimmed.aic < start.aic

    def test_keeps_useful_entries(self, plain_fitter, plain_fit):
        trimmed = plain_fitter.trim(plain_fit)
        assert trimmed.is_vacuous
        assert trimmed.params is plain_fit.params

    def test_trim_is_idempotent(self, plain_fitter, plain_fit):
        once = plain_fitter.trim(plain_fit)
        twice = plain_fitter.trim(once)
        assert twice.is_vacuous
        assert twice.params == once.params

    def test_intercept_only_model(self, plain_fitter):
        initial = plain_fitter.generate_initial_model()
        assert plain_fitter.trim(initial).is_vacuous

    def test_records_steps(self, plain_fitter, plain_fit):
        plain_fitter.trim(plain_fit)
        assert plain_fitter.ctx.steps[-1].stage == "trim"
        assert not plain_fitter.ctx.steps[-1].accepted


# ------------------------------------------------------------------ #
# Curve search
# ------------------------------------------------------------------ #


class TestCurveSearch:
    def test_find_best_recovers_logistic(self, curve_fitter):
        initial = curve_fitter.generate_initial_model()
        best = curve_fitter.curve_fitter.find_best([X2], initial)
        assert best is not None
        assert best.entry.regressor == X2
        assert best.entry.curve is not None
        assert best.entry.curve.curve_type is CurveType.LOGISTIC
        assert best.to_status == B
        assert best.entry.curve.params[0] == pytest.approx(0.5, abs=0.1)
        assert best.aic_diff < -5.0
        assert best.entropy < initial.entropy
        assert best.starting_entropy == initial.entropy

    def test_no_fields(self, curve_fitter):
        initial = curve_fitter.generate_initial_model()
        assert curve_fitter.curve_fitter.find_best([], initial) is None
        expanded = curve_fitter.expand_model(initial, [])
        assert expanded.params.entries == initial.params.entries
        assert expanded.aic <= initial.aic

    def test_intercept_field_ignored(self, curve_fitter):
        initial = curve_fitter.generate_initial_model()
        assert curve_fitter.curve_fitter.find_best([INTERCEPT], initial) is None

    def test_full_fit(self, curve_fitter):
        result = curve_fitter.fit(curve_fields=[X2], max_param_count=5)
        curves = [e for e in result.params.entries if e.curve is not None]
        assert len(curves) == 1
        assert curves[0].regressor == X2
        assert curves[0].to_status == B
        assert result.effective_param_count <= 5

        stages = [s.stage for s in curve_fitter.ctx.steps]
        assert "initial" in stages
        assert "curve_search" in stages
        assert "trim" in stages
        initial_aic = next(s.aic for s in curve_fitter.ctx.steps if s.stage == "initial")
        assert result.aic < initial_aic - 5.0

    def test_parameter_cap_blocks_expansion(self, curve_fitter):
        initial = curve_fitter.generate_initial_model()
        capped = curve_fitter.expand_model(initial, [X2], max_param_count=2)
        assert capped.is_vacuous
        assert capped.params is initial.params


# ------------------------------------------------------------------ #
# Expansion and full-run acceptance
# ------------------------------------------------------------------ #


def _accepted_aics(fitter):
    return [s.aic for s in fitter.ctx.steps if s.accepted]


class TestExpansionKeepsRefit:
    def test_better_refit_returned_without_new_entries(self, plain_fitter):
        unfitted = starting_params().add_beta(X1)
        start = plain_fitter.evaluator.compute_fit_result(unfitted)
        expanded = plain_fitter.expand_model(start, [])
        assert not expanded.is_vacuous
        assert expanded.params.entries == unfitted.entries
        assert expanded.aic < start.aic
        refit = plain_fitter.fit_all_parameters(start)
        assert expanded.aic == pytest.approx(refit.aic, rel=1e-9)
        assert plain_fitter.ctx.steps[-1].stage == "refit"

    def test_vacuous_when_nothing_improves(self, plain_fitter, plain_fit):
        capped = plain_fitter.expand_model(
            plain_fit, [X2], max_param_count=plain_fit.effective_param_count
        )
        assert capped.is_vacuous
        assert capped.params is plain_fit.params


class TestFitNeverReturnsWorse:
    def test_trim_raising_aic_is_discarded(self, monkeypatch):
        fitter = ModelFitter(starting_params(), make_grid(n=2_000), FitSettings())

        def drop_last(prev):
            params = prev.params.drop_entry(prev.params.entry_count - 1)
            return fitter.evaluator.compute_fit_result(params, prev)

        monkeypatch.setattr(fitter, "trim", drop_last)
        result = fitter.fit(direct_regressors=[X1])
        assert result.params.regressors == (INTERCEPT, X1)
        assert result.aic <= min(_accepted_aics(fitter))

    def test_final_model_beats_every_accepted_step(self):
        frame = make_noise_frame("A", MERGED, n=500)
        starting = ModelParameters(MERGED, "A", INTERCEPT)
        fitter = ModelFitter(starting, FrameGrid(frame, MERGED, REGRESSORS), FitSettings())
        result = fitter.fit(curve_fields=[X1], max_param_count=12)
        assert result.aic <= min(_accepted_aics(fitter)) + 1e-9
        assert result.effective_param_count <= 12
