"""Typed result objects for model fitting.

Frozen dataclasses that provide:

* **Attribute access** — ``result.entropy``, ``result.aic``, etc.
* **Dict-like access** — ``result["entropy"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

:class:`FitResult` is one link of a chain: every result points at the
result it was derived from, so the AIC difference of a step is a
subtraction rather than a recomputation.  Its :attr:`~FitResult.status`
is an explicit variant — :class:`FitStatus` — that fitting code
branches on instead of catching exceptions:

* ``IMPROVED`` — the step produced a new parameter set (whether it is
  *accepted* is still decided by :attr:`~FitResult.aic_diff`),
* ``UNCHANGED`` — the step was abandoned; parameters and entropy are
  copied from the predecessor,
* ``FAILED`` — like ``UNCHANGED`` but caused by a numerical failure,
  described in :attr:`~FitResult.reason`.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

if TYPE_CHECKING:
    from .families import Member
    from .params import ModelEntry, ModelParameters

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, np.ndarray, np.integer, and
    np.floating so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports ``result["key"]`` (``KeyError`` on miss),
    ``result.get(key, default)`` and ``"key" in result``.

    Subclasses register per-field conversions in ``_SERIALIZERS`` and
    list fields that must not be serialised in ``_EXCLUDE_FROM_DICT``.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary.

        Applies per-field serializers from ``_SERIALIZERS``, then runs
        :func:`_numpy_to_python` on every value so the returned dict
        is fully JSON-serialisable.
        """
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# FitStatus
# ------------------------------------------------------------------ #


class FitStatus(Enum):
    """Outcome variant of a fitting step."""

    IMPROVED = "improved"
    UNCHANGED = "unchanged"
    FAILED = "failed"


# ------------------------------------------------------------------ #
# FitResult
# ------------------------------------------------------------------ #


def compute_aic(entropy: float, row_count: int, param_count: int) -> float:
    """``2 × (entropy × N + k)`` with *entropy* the mean negative log-likelihood."""
    return 2.0 * (entropy * row_count + param_count)


@dataclass(frozen=True, eq=False)
class FitResult(_DictAccessMixin):
    """A fitted parameter set and its in-sample entropy.

    Raises:
        ValueError: If *entropy* is not finite and non-negative or
            *row_count* is not positive.
    """

    params: ModelParameters
    """The model parameters this result describes."""

    entropy: float
    """Mean negative log-likelihood per fitting row."""

    row_count: int
    """Number of fitting rows the entropy was averaged over."""

    prev: FitResult | None = field(default=None, repr=False)
    """The result this one was derived from, if any."""

    status: FitStatus = FitStatus.IMPROVED
    """Outcome variant of the step that produced this result."""

    reason: str | None = None
    """Why the step failed or was abandoned, when known."""

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "params": lambda p: p.to_dict(),
        "status": lambda s: s.value,
    }

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"prev"})

    def __post_init__(self) -> None:
        if not (math.isfinite(self.entropy) and self.entropy >= 0.0):
            msg = f"Entropy must be finite and non-negative, got {self.entropy}."
            raise ValueError(msg)
        if self.row_count < 1:
            msg = f"Row count must be positive: {self.row_count}."
            raise ValueError(msg)

    @classmethod
    def vacuous(
        cls,
        prev: FitResult,
        *,
        failed: bool = False,
        reason: str | None = None,
    ) -> FitResult:
        """A result that keeps *prev*'s parameters and entropy exactly."""
        return cls(
            params=prev.params,
            entropy=prev.entropy,
            row_count=prev.row_count,
            prev=prev,
            status=FitStatus.FAILED if failed else FitStatus.UNCHANGED,
            reason=reason,
        )

    @property
    def effective_param_count(self) -> int:
        return self.params.effective_param_count

    @property
    def aic(self) -> float:
        """``2 × (entropy × N + effective_param_count)``."""
        return compute_aic(self.entropy, self.row_count, self.effective_param_count)

    @property
    def aic_diff(self) -> float:
        """AIC change relative to :attr:`prev` (the AIC itself without one)."""
        if self.prev is None:
            return self.aic
        return self.aic - self.prev.aic

    @property
    def is_vacuous(self) -> bool:
        return self.status is not FitStatus.IMPROVED

    def history(self) -> Iterator[FitResult]:
        """This result followed by its predecessors, newest first."""
        current: FitResult | None = self
        while current is not None:
            yield current
            current = current.prev

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["aic"] = self.aic
        out["aic_diff"] = self.aic_diff
        out["effective_param_count"] = self.effective_param_count
        return out


# ------------------------------------------------------------------ #
# CurveFitResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class CurveFitResult(_DictAccessMixin):
    """Best candidate produced by a forward curve search step."""

    fit_result: FitResult
    """Fit of the model with the candidate entry added."""

    entry: ModelEntry
    """The added basis entry (with its fitted curve, if any)."""

    starting_entropy: float
    """Entropy of the model the search started from."""

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "fit_result": lambda r: r.to_dict(),
        "entry": lambda e: e.label,
    }

    @property
    def aic_diff(self) -> float:
        return self.fit_result.aic_diff

    @property
    def entropy(self) -> float:
        return self.fit_result.entropy

    @property
    def to_status(self) -> Member | None:
        return self.entry.to_status
