"""Basis curves: parametric scalar transforms applied to regressors.

The catalog is closed.  :class:`CurveType` enumerates every curve
kind and every method of :class:`Curve` branches exhaustively over it;
adding a kind means extending the enum and each branch.

Catalog
~~~~~~~
``LOGISTIC`` — parameters ``(c, s)``:

    f(x) = expit(s² (x − c))

The slope parameter enters squared so the curve is always upward
sloping without an ``abs`` (which would not be differentiable at 0).
``f(c) == 0.5`` exactly.

``GAUSSIAN`` — parameters ``(m, σ)``:

    f(x) = exp(−(x − m)² / (2 (σ² + ε))),   ε = 1e-10

The variance floor keeps the curve finite as σ → 0.  ``f(m) == 1.0``
exactly.

All methods accept scalars or NumPy arrays.  Derivatives are closed
form; :meth:`Curve.gradient` and :meth:`Curve.hessian` stack them as
``(n, p)`` and ``(n, p, p)`` arrays for the evaluator.

Identity
~~~~~~~~
Equality and hashing compare the curve type and the raw float64 bit
pattern of the parameters, so two curves built from the same bits are
interchangeable no matter how they were constructed (and ``-0.0`` is
distinct from ``0.0``).
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from enum import Enum
from typing import Any

import numpy as np
from scipy.special import expit

from ._typing import ArrayOrScalar

_GAUSSIAN_VARIANCE_FLOOR = 1.0e-10


class CurveType(Enum):
    """Closed catalog of curve kinds."""

    LOGISTIC = "logistic"
    GAUSSIAN = "gaussian"

    @property
    def param_count(self) -> int:
        return 2

    @property
    def ordinal(self) -> int:
        return list(CurveType).index(self)


# ------------------------------------------------------------------ #
# Curve
# ------------------------------------------------------------------ #


class Curve:
    """Immutable curve instance: a :class:`CurveType` plus parameters.

    Use :func:`generate_curve` to build one.
    """

    __slots__ = ("_curve_type", "_params", "_key")

    def __init__(self, curve_type: CurveType, params: Sequence[float]) -> None:
        if not isinstance(curve_type, CurveType):
            msg = f"curve_type must be a CurveType, got {type(curve_type).__name__}."
            raise TypeError(msg)
        values = tuple(float(p) for p in params)
        if len(values) != curve_type.param_count:
            msg = (
                f"{curve_type.name} curves take {curve_type.param_count} "
                f"parameters, got {len(values)}."
            )
            raise ValueError(msg)
        self._curve_type = curve_type
        self._params = values
        self._key = (curve_type, np.asarray(values, dtype=np.float64).tobytes())

    @property
    def curve_type(self) -> CurveType:
        return self._curve_type

    @property
    def params(self) -> tuple[float, ...]:
        return self._params

    @property
    def param_count(self) -> int:
        return len(self._params)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Curve):
            return NotImplemented
        return self._key == other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __repr__(self) -> str:
        args = ", ".join(repr(p) for p in self._params)
        return f"Curve({self._curve_type.name}, [{args}])"

    def with_params(self, params: Sequence[float]) -> Curve:
        """Return a curve of the same type with new parameters."""
        return Curve(self._curve_type, params)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self._curve_type.value, "params": list(self._params)}

    # ---- Evaluation ----------------------------------------------

    def transform(self, x: ArrayOrScalar) -> ArrayOrScalar:
        """Curve value at *x*."""
        if self._curve_type is CurveType.LOGISTIC:
            center, slope = self._params
            return expit(slope * slope * (np.asarray(x, dtype=np.float64) - center))[()]
        if self._curve_type is CurveType.GAUSSIAN:
            mean, std_dev = self._params
            dev = np.asarray(x, dtype=np.float64) - mean
            variance = std_dev * std_dev + _GAUSSIAN_VARIANCE_FLOOR
            return np.exp(-(dev * dev) / (2.0 * variance))[()]
        raise AssertionError(self._curve_type)

    def derivative(self, index: int, x: ArrayOrScalar) -> ArrayOrScalar:
        """First derivative of the value w.r.t. parameter *index*."""
        self._check_index(index)
        return self.gradient(x)[..., index][()]

    def second_derivative(self, i: int, j: int, x: ArrayOrScalar) -> ArrayOrScalar:
        """Second derivative w.r.t. parameters *i* and *j* (symmetric)."""
        self._check_index(i)
        self._check_index(j)
        return self.hessian(x)[..., i, j][()]

    def gradient(self, x: ArrayOrScalar) -> np.ndarray:
        """Parameter gradient, shape ``x.shape + (param_count,)``."""
        x = np.asarray(x, dtype=np.float64)
        if self._curve_type is CurveType.LOGISTIC:
            center, slope = self._params
            dev = x - center
            f = expit(slope * slope * dev)
            df = f * (1.0 - f)
            return np.stack([-slope * slope * df, 2.0 * slope * dev * df], axis=-1)
        if self._curve_type is CurveType.GAUSSIAN:
            mean, std_dev = self._params
            dev = x - mean
            variance = std_dev * std_dev + _GAUSSIAN_VARIANCE_FLOOR
            f = np.exp(-(dev * dev) / (2.0 * variance))
            d_mean = f * dev / variance
            d_std = f * dev * dev * std_dev / (variance * variance)
            return np.stack([d_mean, d_std], axis=-1)
        raise AssertionError(self._curve_type)

    def hessian(self, x: ArrayOrScalar) -> np.ndarray:
        """Parameter Hessian, shape ``x.shape + (p, p)``."""
        x = np.asarray(x, dtype=np.float64)
        if self._curve_type is CurveType.LOGISTIC:
            center, slope = self._params
            a = slope * slope
            dev = x - center
            f = expit(a * dev)
            df = f * (1.0 - f)
            d2f = df * (1.0 - 2.0 * f)
            cc = a * a * d2f
            cs = -2.0 * slope * df - 2.0 * a * slope * dev * d2f
            ss = 2.0 * dev * df + 4.0 * a * dev * dev * d2f
        elif self._curve_type is CurveType.GAUSSIAN:
            mean, std_dev = self._params
            v = std_dev * std_dev + _GAUSSIAN_VARIANCE_FLOOR
            dev = x - mean
            d2 = dev * dev
            f = np.exp(-d2 / (2.0 * v))
            cc = f * (d2 / (v * v) - 1.0 / v)
            cs = f * dev * std_dev * (d2 / (v * v * v) - 2.0 / (v * v))
            ss = f * d2 * (
                std_dev * std_dev * d2 / (v**4) + 1.0 / (v * v)
                - 4.0 * std_dev * std_dev / (v**3)
            )
        else:
            raise AssertionError(self._curve_type)
        return np.stack(
            [np.stack([cc, cs], axis=-1), np.stack([cs, ss], axis=-1)], axis=-2
        )

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._params):
            msg = (
                f"Parameter index {index} out of range for "
                f"{self._curve_type.name} curve."
            )
            raise IndexError(msg)


# ------------------------------------------------------------------ #
# Factory functions
# ------------------------------------------------------------------ #


def generate_curve(curve_type: CurveType | str, params: Sequence[float]) -> Curve:
    """Build a curve from its type (enum or value string) and parameters."""
    if isinstance(curve_type, str):
        try:
            curve_type = CurveType(curve_type.lower())
        except ValueError:
            available = ", ".join(t.value for t in CurveType)
            msg = f"Unknown curve type {curve_type!r}.  Available: {available}."
            raise ValueError(msg) from None
    return Curve(curve_type, params)


def fill_starting_parameters(
    curve_type: CurveType, mean: float, std_dev: float
) -> list[float]:
    """Seed curve parameters from a regressor's mean and std. dev.

    Both curves are centred on the mean.  The logistic slope is chosen
    so one unit of ``s²`` spans one standard deviation; the Gaussian
    width is the standard deviation.  A tiny floor guards against a
    degenerate (constant) regressor.
    """
    if not (math.isfinite(mean) and math.isfinite(std_dev)):
        msg = f"Starting statistics must be finite, got mean={mean}, std_dev={std_dev}."
        raise ValueError(msg)
    min_dev = 1.0e-10 + abs(mean) * 1.0e-10
    dev = max(abs(std_dev), min_dev)
    if curve_type is CurveType.LOGISTIC:
        return [mean, math.sqrt(1.0 / dev)]
    if curve_type is CurveType.GAUSSIAN:
        return [mean, dev]
    raise AssertionError(curve_type)
