r"""Generic derivative-aware multivariate minimisation.

The optimizer knows nothing about transition models.  It minimises an
*objective* — a callable ``objective(x, order)`` returning an
:class:`ObjectiveValue` whose gradient is filled for ``order >= 1``
and whose Hessian is filled for ``order >= 2``.  The evaluator builds
such callables over packed parameter vectors, so each call is one
blocked pass over the fitting rows.

Methods
~~~~~~~
``"newton"`` — damped Newton–Raphson with a backtracking line search.

* The Hessian is damped by :math:`\lambda I` with
  :math:`\lambda` starting at ``_MIN_DAMPING`` and growing ×10 until
  the Cholesky factorisation succeeds.  The step is then always a
  descent direction, even where the objective is not convex (curve
  parameters).
* The line search halves the step until the Armijo condition holds,
  evaluating the objective value only.
* Convergence is checked via three criteria (OR), gated on finite
  parameters:

  - **Gradient criterion** — :math:`\|g\|_\infty < \tau`
  - **Step criterion** — :math:`\|\Delta x\|_\infty < \tau`
  - **Relative change** — :math:`|\Delta f| / \max(|f|, 1) < \tau`

``"lbfgs"`` — :func:`scipy.optimize.minimize` with ``L-BFGS-B`` and
the analytic gradient.

Failure semantics
~~~~~~~~~~~~~~~~~
Running out of iterations is not an error: the result comes back with
``converged=False`` and the best point found.  :class:`ConvergenceError`
is raised only when the objective is unusable — non-finite at the
starting point, or no step along a descent direction decreases it.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.optimize import minimize as scipy_minimize

from ._config import FitSettings, resolve_settings

logger = logging.getLogger(__name__)

_MIN_DAMPING = 1e-8
_MAX_DAMPING = 1e12
_ARMIJO = 1e-4
_MIN_STEP = 1e-10


class ConvergenceError(RuntimeError):
    """The objective cannot be minimised any further."""


@dataclass(frozen=True)
class ObjectiveValue:
    """Objective value and (optionally) its derivatives at a point."""

    value: float
    gradient: np.ndarray | None = None
    hessian: np.ndarray | None = None


Objective = Callable[[np.ndarray, int], ObjectiveValue]


@dataclass(frozen=True)
class OptimizerResult:
    """Outcome of :func:`minimize`."""

    x: np.ndarray
    """Best point found."""

    value: float
    """Objective value at :attr:`x`."""

    start_value: float
    """Objective value at the starting point."""

    iterations: int
    """Iterations performed."""

    converged: bool
    """Whether a convergence criterion was met."""


def minimize(
    objective: Objective,
    x0: np.ndarray,
    settings: FitSettings | None = None,
) -> OptimizerResult:
    """Minimise *objective* starting at *x0*.

    Args:
        objective: ``(x, order) -> ObjectiveValue``.
        x0: Starting point of shape ``(d,)``.
        settings: Supplies ``optimizer``, ``max_iterations`` and
            ``tolerance``; defaults to the active settings.

    Returns:
        An :class:`OptimizerResult`; ``converged`` is ``False`` when the
        iteration budget ran out.

    Raises:
        ConvergenceError: If the objective is unusable.
    """
    settings = resolve_settings(settings)
    x0 = np.array(x0, dtype=np.float64)
    if x0.ndim != 1:
        msg = f"x0 must be one-dimensional, got shape {x0.shape}."
        raise ValueError(msg)
    if settings.optimizer == "lbfgs":
        return _minimize_lbfgs(objective, x0, settings.max_iterations, settings.tolerance)
    return _minimize_newton(objective, x0, settings.max_iterations, settings.tolerance)


# ------------------------------------------------------------------ #
# Damped Newton
# ------------------------------------------------------------------ #


def _damped_newton_step(hessian: np.ndarray, gradient: np.ndarray) -> np.ndarray:
    """Solve ``(H + λI) p = g`` with the smallest λ that is positive definite."""
    n_params = gradient.shape[0]
    identity = np.eye(n_params)
    scale = max(1.0, float(np.max(np.abs(np.diag(hessian)))) if n_params else 1.0)
    damping = _MIN_DAMPING
    while damping <= _MAX_DAMPING * scale:
        try:
            factor = cho_factor(hessian + damping * identity)
        except LinAlgError:
            damping *= 10.0
            continue
        step = cho_solve(factor, gradient)
        if np.all(np.isfinite(step)):
            return step
        damping *= 10.0
    msg = "Hessian could not be regularised into a positive-definite matrix."
    raise ConvergenceError(msg)


def _minimize_newton(
    objective: Objective, x0: np.ndarray, max_iter: int, tol: float
) -> OptimizerResult:
    current = objective(x0, 2)
    if not math.isfinite(current.value):
        msg = f"Objective is not finite at the starting point ({current.value})."
        raise ConvergenceError(msg)

    start_value = current.value
    x = x0
    converged = False
    iteration = 0

    for iteration in range(1, max_iter + 1):
        g = current.gradient
        H = current.hessian
        if g is None or H is None:
            msg = "Newton optimisation requires gradient and Hessian."
            raise ValueError(msg)
        if not (np.all(np.isfinite(g)) and np.all(np.isfinite(H))):
            msg = "Objective derivatives are not finite."
            raise ConvergenceError(msg)

        if np.max(np.abs(g), initial=0.0) < tol:
            converged = True
            break

        step = _damped_newton_step(H, g)
        slope = -float(g @ step)
        if not slope < 0.0:
            msg = f"Newton step is not a descent direction (slope {slope})."
            raise ConvergenceError(msg)

        # Backtracking line search on the value only.
        t = 1.0
        accepted = None
        while t >= _MIN_STEP:
            candidate = x - t * step
            if np.all(np.isfinite(candidate)):
                trial = objective(candidate, 0)
                if math.isfinite(trial.value) and (
                    trial.value <= current.value + _ARMIJO * t * slope
                ):
                    accepted = candidate, trial.value
                    break
            t *= 0.5

        if accepted is None:
            # Only round-off separates us from the optimum.
            scale = max(abs(current.value), 1.0)
            if -slope < tol * scale:
                converged = True
                break
            msg = (
                f"Line search failed after {iteration} iteration(s); "
                f"predicted decrease {-slope:.3e} not achieved."
            )
            raise ConvergenceError(msg)

        x_new, value_new = accepted
        step_small = np.max(np.abs(x_new - x), initial=0.0) < tol
        rel_change = abs(value_new - current.value) / max(
            abs(current.value), abs(value_new), 1.0
        )
        x = x_new
        current = objective(x, 2)
        if (step_small or rel_change < tol) and np.all(np.isfinite(x)):
            converged = True
            break

    logger.debug(
        "Newton finished after %d iteration(s): %.10g -> %.10g (converged=%s)",
        iteration,
        start_value,
        current.value,
        converged,
    )
    return OptimizerResult(
        x=x,
        value=current.value,
        start_value=start_value,
        iterations=iteration,
        converged=converged,
    )


# ------------------------------------------------------------------ #
# L-BFGS-B (scipy)
# ------------------------------------------------------------------ #


def _minimize_lbfgs(
    objective: Objective, x0: np.ndarray, max_iter: int, tol: float
) -> OptimizerResult:
    start = objective(x0, 0)
    if not math.isfinite(start.value):
        msg = f"Objective is not finite at the starting point ({start.value})."
        raise ConvergenceError(msg)

    def fun(x: np.ndarray) -> tuple[float, np.ndarray]:
        result = objective(x, 1)
        if result.gradient is None:
            msg = "L-BFGS optimisation requires a gradient."
            raise ValueError(msg)
        return result.value, result.gradient

    res = scipy_minimize(
        fun,
        x0,
        jac=True,
        method="L-BFGS-B",
        options={"maxiter": max_iter, "gtol": tol, "ftol": tol},
    )
    if not (math.isfinite(float(res.fun)) and np.all(np.isfinite(res.x))):
        msg = f"L-BFGS-B produced a non-finite result: {res.message}"
        raise ConvergenceError(msg)
    if float(res.fun) > start.value:
        msg = f"L-BFGS-B made no progress: {res.message}"
        raise ConvergenceError(msg)
    return OptimizerResult(
        x=np.asarray(res.x, dtype=np.float64),
        value=float(res.fun),
        start_value=start.value,
        iterations=int(res.nit),
        converged=bool(res.success),
    )
