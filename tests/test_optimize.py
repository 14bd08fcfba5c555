"""Tests for the generic minimiser."""

import numpy as np
import pytest

from transition_fit._config import FitSettings
from transition_fit.optimize import ConvergenceError, ObjectiveValue, minimize

_A = np.array([[3.0, 1.0], [1.0, 2.0]])
_B = np.array([1.0, -1.0])


def _quadratic(x, order):
    value = 0.5 * x @ _A @ x - _B @ x
    grad = _A @ x - _B if order >= 1 else None
    hess = _A if order >= 2 else None
    return ObjectiveValue(float(value), grad, hess)


def _rosenbrock(x, order):
    a, b = x
    value = (1 - a) ** 2 + 100 * (b - a * a) ** 2
    grad = None
    hess = None
    if order >= 1:
        grad = np.array([-2 * (1 - a) - 400 * a * (b - a * a), 200 * (b - a * a)])
    if order >= 2:
        hess = np.array([[2 - 400 * b + 1200 * a * a, -400 * a], [-400 * a, 200.0]])
    return ObjectiveValue(float(value), grad, hess)


class TestNewton:
    def test_quadratic(self):
        result = minimize(_quadratic, np.zeros(2), FitSettings())
        assert result.converged
        np.testing.assert_allclose(result.x, np.linalg.solve(_A, _B), atol=1e-10)
        assert result.value < result.start_value

    def test_rosenbrock(self):
        result = minimize(_rosenbrock, np.array([-1.2, 1.0]), FitSettings())
        assert result.converged
        np.testing.assert_allclose(result.x, [1.0, 1.0], atol=1e-3)

    def test_indefinite_start(self):
        # Hessian of the Rosenbrock function is indefinite here.
        x0 = np.array([0.0, 1.0])
        assert np.linalg.eigvalsh(_rosenbrock(x0, 2).hessian).min() < 0
        result = minimize(_rosenbrock, x0, FitSettings())
        np.testing.assert_allclose(result.x, [1.0, 1.0], atol=1e-3)

    def test_iteration_budget(self):
        result = minimize(_rosenbrock, np.array([-1.2, 1.0]), FitSettings(max_iterations=1))
        assert not result.converged
        assert result.iterations == 1
        assert result.value < result.start_value

    def test_requires_hessian(self):
        def gradient_only(x, order):
            return ObjectiveValue(float(x @ x), 2 * x, None)

        with pytest.raises(ValueError, match="requires gradient and Hessian"):
            minimize(gradient_only, np.ones(2), FitSettings())


class TestLbfgs:
    def test_quadratic(self):
        result = minimize(_quadratic, np.zeros(2), FitSettings(optimizer="lbfgs"))
        np.testing.assert_allclose(result.x, np.linalg.solve(_A, _B), atol=1e-6)


class TestFailures:
    def test_non_finite_start(self):
        def broken(x, order):
            return ObjectiveValue(float("nan"), np.zeros_like(x), np.eye(len(x)))

        with pytest.raises(ConvergenceError, match="not finite at the starting point"):
            minimize(broken, np.zeros(2), FitSettings())

    def test_non_finite_start_lbfgs(self):
        def broken(x, order):
            return ObjectiveValue(float("inf"), np.zeros_like(x))

        with pytest.raises(ConvergenceError):
            minimize(broken, np.zeros(2), FitSettings(optimizer="lbfgs"))

    def test_bad_start_shape(self):
        with pytest.raises(ValueError, match="one-dimensional"):
            minimize(_quadratic, np.zeros((2, 2)), FitSettings())
