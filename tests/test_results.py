"""Tests for fit result types and the fitting context."""

import json
import math

import pytest
from _synthetic import X1, X2, B, starting_params

from transition_fit._context import FitContext
from transition_fit._results import CurveFitResult, FitResult, FitStatus, compute_aic
from transition_fit.curves import generate_curve
from transition_fit.params import ModelEntry


class TestFitResult:
    def test_aic(self):
        result = FitResult(starting_params(), 0.9, 1000)
        assert result.aic == pytest.approx(2 * (900 + 2))
        assert result.aic == compute_aic(0.9, 1000, 2)

    def test_aic_diff_without_prev(self):
        result = FitResult(starting_params(), 0.9, 1000)
        assert result.aic_diff == result.aic

    def test_aic_diff_includes_parameter_cost(self):
        base = FitResult(starting_params(), 0.9, 1000)
        bigger = FitResult(starting_params().add_beta(X1), 0.9, 1000, base)
        assert bigger.aic_diff == pytest.approx(4.0)

    def test_vacuous_copies_prev(self):
        base = FitResult(starting_params(), 0.9, 1000)
        same = FitResult.vacuous(base, reason="nothing")
        assert same.params is base.params
        assert same.entropy == base.entropy
        assert same.status is FitStatus.UNCHANGED
        assert same.is_vacuous
        assert same.aic_diff == 0.0
        failed = FitResult.vacuous(base, failed=True)
        assert failed.status is FitStatus.FAILED

    def test_rejects_bad_entropy(self):
        with pytest.raises(ValueError, match="finite and non-negative"):
            FitResult(starting_params(), math.nan, 10)
        with pytest.raises(ValueError, match="Row count"):
            FitResult(starting_params(), 0.5, 0)

    def test_history(self):
        a = FitResult(starting_params(), 1.0, 10)
        b = FitResult.vacuous(a)
        c = FitResult(starting_params(), 0.8, 10, b)
        assert list(c.history()) == [c, b, a]

    def test_to_dict_is_json_serialisable(self):
        base = FitResult(starting_params(), 0.9, 1000)
        out = FitResult(starting_params().add_beta(X1), 0.8, 1000, base).to_dict()
        assert "prev" not in out
        assert out["status"] == "improved"
        assert out["effective_param_count"] == 4
        json.dumps(out)

    def test_dict_access(self):
        result = FitResult(starting_params(), 0.9, 1000)
        assert result["entropy"] == 0.9
        assert "aic" in result
        with pytest.raises(KeyError):
            result["nope"]


class TestCurveFitResult:
    def test_properties(self):
        base = FitResult(starting_params(), 0.9, 1000)
        entry = ModelEntry(X2, generate_curve("logistic", [0.5, 1.0]), B)
        fitted = FitResult(starting_params().add_entry(entry), 0.85, 1000, base)
        result = CurveFitResult(fitted, entry, base.entropy)
        assert result.to_status == B
        assert result.entropy == 0.85
        assert result.aic_diff == pytest.approx(2 * (-50 + 3))
        assert result.to_dict()["entry"] == "logistic(x2)->B"


class TestFitContext:
    def test_record_and_frame(self):
        ctx = FitContext()
        base = FitResult(starting_params(), 0.9, 1000)
        ctx.record("initial", base, accepted=True)
        ctx.record("trim", FitResult.vacuous(base, reason="none"), accepted=False)
        assert len(ctx.steps) == 2
        assert [s.stage for s in ctx.accepted_steps] == ["initial"]
        frame = ctx.to_frame()
        assert list(frame["stage"]) == ["initial", "trim"]
        assert frame.loc[1, "detail"] == "none"
        assert frame.loc[1, "status"] == "unchanged"
