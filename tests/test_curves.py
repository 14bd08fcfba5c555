"""Tests for the basis curve library."""

import math

import numpy as np
import pytest

from transition_fit.curves import (
    Curve,
    CurveType,
    fill_starting_parameters,
    generate_curve,
)

_X = np.linspace(-1.5, 2.5, 41)


def _fd_gradient(curve, x, h=1e-6):
    out = np.empty(x.shape + (curve.param_count,))
    for i in range(curve.param_count):
        up = list(curve.params)
        down = list(curve.params)
        up[i] += h
        down[i] -= h
        out[..., i] = (curve.with_params(up).transform(x) - curve.with_params(down).transform(x)) / (2 * h)
    return out


def _fd_hessian(curve, x, h=1e-5):
    p = curve.param_count
    out = np.empty(x.shape + (p, p))
    for j in range(p):
        up = list(curve.params)
        down = list(curve.params)
        up[j] += h
        down[j] -= h
        out[..., :, j] = (curve.with_params(up).gradient(x) - curve.with_params(down).gradient(x)) / (2 * h)
    return out


class TestTransform:
    def test_logistic_center_is_half(self):
        assert generate_curve(CurveType.LOGISTIC, [0.5, 3.0]).transform(0.5) == 0.5

    def test_gaussian_peak_is_one(self):
        assert generate_curve(CurveType.GAUSSIAN, [0.5, 3.0]).transform(0.5) == 1.0

    def test_logistic_values(self):
        curve = generate_curve("logistic", [0.0, 2.0])
        expected = 1.0 / (1.0 + np.exp(-4.0 * _X))
        np.testing.assert_allclose(curve.transform(_X), expected, rtol=1e-12)

    def test_gaussian_values(self):
        curve = generate_curve("gaussian", [1.0, 0.5])
        expected = np.exp(-((_X - 1.0) ** 2) / (2 * (0.25 + 1e-10)))
        np.testing.assert_allclose(curve.transform(_X), expected, rtol=1e-12)

    def test_scalar_in_scalar_out(self):
        value = generate_curve("logistic", [0.0, 1.0]).transform(1.0)
        assert np.ndim(value) == 0

    def test_degenerate_gaussian_is_finite(self):
        curve = generate_curve("gaussian", [0.0, 0.0])
        assert np.all(np.isfinite(curve.transform(_X)))


class TestDerivatives:
    @pytest.mark.parametrize(
        ("curve_type", "params"),
        [
            (CurveType.LOGISTIC, [0.3, 1.7]),
            (CurveType.LOGISTIC, [-0.5, 0.8]),
            (CurveType.GAUSSIAN, [0.4, 0.9]),
            (CurveType.GAUSSIAN, [1.2, 1.5]),
        ],
    )
    def test_gradient_matches_finite_differences(self, curve_type, params):
        curve = generate_curve(curve_type, params)
        np.testing.assert_allclose(curve.gradient(_X), _fd_gradient(curve, _X), atol=1e-7)

    @pytest.mark.parametrize(
        ("curve_type", "params"),
        [
            (CurveType.LOGISTIC, [0.3, 1.7]),
            (CurveType.GAUSSIAN, [0.4, 0.9]),
        ],
    )
    def test_hessian_matches_finite_differences(self, curve_type, params):
        curve = generate_curve(curve_type, params)
        hess = curve.hessian(_X)
        np.testing.assert_allclose(hess, _fd_hessian(curve, _X), atol=1e-6)
        np.testing.assert_allclose(hess, np.swapaxes(hess, -1, -2))

    def test_indexed_accessors(self):
        curve = generate_curve("gaussian", [0.4, 0.9])
        assert curve.derivative(1, 0.7) == pytest.approx(curve.gradient(0.7)[1])
        assert curve.second_derivative(0, 1, 0.7) == pytest.approx(curve.hessian(0.7)[0, 1])

    def test_index_out_of_range(self):
        curve = generate_curve("logistic", [0.0, 1.0])
        with pytest.raises(IndexError, match="out of range"):
            curve.derivative(2, 0.0)


class TestIdentity:
    def test_equality_is_structural(self):
        a = generate_curve(CurveType.LOGISTIC, [0.5, 3.0])
        b = generate_curve("logistic", (0.5, 3.0))
        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1

    def test_type_and_params_distinguish(self):
        a = generate_curve(CurveType.LOGISTIC, [0.5, 3.0])
        assert a != generate_curve(CurveType.GAUSSIAN, [0.5, 3.0])
        assert a != generate_curve(CurveType.LOGISTIC, [0.5, 3.0000001])

    def test_with_params_keeps_type(self):
        curve = generate_curve("gaussian", [0.0, 1.0]).with_params([1.0, 2.0])
        assert curve.curve_type is CurveType.GAUSSIAN
        assert curve.params == (1.0, 2.0)

    def test_wrong_param_count(self):
        with pytest.raises(ValueError, match="take 2 parameters"):
            Curve(CurveType.LOGISTIC, [1.0])

    def test_unknown_type_name(self):
        with pytest.raises(ValueError, match="Unknown curve type"):
            generate_curve("spline", [0.0, 1.0])

    def test_catalog(self):
        assert [t.ordinal for t in CurveType] == [0, 1]
        assert all(t.param_count == 2 for t in CurveType)


class TestStartingParameters:
    def test_logistic(self):
        assert fill_starting_parameters(CurveType.LOGISTIC, 2.0, 4.0) == [2.0, 0.5]

    def test_gaussian(self):
        assert fill_starting_parameters(CurveType.GAUSSIAN, 2.0, -4.0) == [2.0, 4.0]

    def test_constant_regressor(self):
        center, slope = fill_starting_parameters(CurveType.LOGISTIC, 0.0, 0.0)
        assert center == 0.0
        assert math.isfinite(slope) and slope > 0.0

    def test_rejects_non_finite(self):
        with pytest.raises(ValueError, match="must be finite"):
            fill_starting_parameters(CurveType.GAUSSIAN, float("nan"), 1.0)
