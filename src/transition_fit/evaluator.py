r"""Blocked likelihood, gradient and Hessian of a transition model.

Model
~~~~~
For a row with entry values :math:`w_e` (``1`` for the intercept, the
raw regressor, or a curve of it), the linear predictor of reachable
status :math:`k` is

.. math::

    z_k = \sum_e \beta_{k e} w_e ,  \qquad z_{\text{baseline}} = 0

and the transition probabilities are :math:`p = \operatorname{softmax}(z)`.
Scores are shifted by their row maximum and floored at
``MIN_POWER_SCORE`` before exponentiation.

Likelihood
~~~~~~~~~~
The observed outcome selects a *bucket*: the reachable statuses that
are indistinguishable from it (mask :math:`m`).  Its probability is
:math:`P = \sum_k m_k p_k` and the row contributes
:math:`h = -\log P`, clipped at ``LOG_CUTOFF`` — a row with
:math:`P \le e^{-14}` contributes exactly ``14`` and nothing to the
derivatives.

Derivatives
~~~~~~~~~~~
With :math:`u_k = m_k p_k / P` (the posterior within the bucket):

.. math::

    \frac{\partial h}{\partial z_k} = p_k - u_k ,\qquad
    \frac{\partial^2 h}{\partial z_k \partial z_l}
        = \delta_{kl}(p_k - u_k) - p_k p_l + u_k u_l

Without indistinguishable statuses :math:`u` is the one-hot outcome and
these reduce to the familiar :math:`p - y` and
:math:`\operatorname{diag}(p) - p p^\top`.  Both are pushed through the
Jacobian of :math:`z` w.r.t. the packed vector; curve parameters add
the curve's own second derivatives times :math:`\partial h / \partial z`.

Blocks
~~~~~~
Rows are cut into contiguous blocks of ``FitSettings.block_size``.
Every block produces a :class:`BlockResult` from a read-only snapshot
of the parameters; blocks run on a ``joblib`` thread pool when
``n_jobs != 1`` (NumPy releases the GIL inside the heavy array
kernels) and are merged by addition on the calling thread.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
from joblib import Parallel, delayed

from ._config import FitSettings, resolve_settings
from ._results import FitResult
from .optimize import Objective, ObjectiveValue
from .packed import PackedParameters, ParameterSlot

if TYPE_CHECKING:
    from .grid import FittingGrid
    from .params import ModelEntry, ModelParameters

logger = logging.getLogger(__name__)

MIN_POWER_SCORE = -30.0
LOG_CUTOFF = 14.0
_PROB_CUTOFF = math.exp(-LOG_CUTOFF)

# Just above machine epsilon.
ICE_EPSILON = float(np.spacing(4.0))

# ------------------------------------------------------------------ #
# BlockResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class BlockResult:
    """Partial sums over a contiguous range of fitting rows.

    All array fields are *sums* over the rows; divide by :attr:`size`
    for means.
    """

    row_start: int
    row_end: int
    entropy_sum: float
    entropy_sq_sum: float
    gradient: np.ndarray | None = None
    derivative_squared: np.ndarray | None = None
    hessian: np.ndarray | None = None

    @property
    def size(self) -> int:
        return self.row_end - self.row_start

    @property
    def entropy_mean(self) -> float:
        return self.entropy_sum / self.size

    @property
    def entropy_variance(self) -> float:
        mean = self.entropy_mean
        return max(self.entropy_sq_sum / self.size - mean * mean, 0.0)

    @property
    def entropy_std_error(self) -> float:
        return math.sqrt(self.entropy_variance / self.size)

    @property
    def gradient_mean(self) -> np.ndarray:
        if self.gradient is None:
            msg = "Block was evaluated without a gradient."
            raise ValueError(msg)
        return self.gradient / self.size

    @property
    def hessian_mean(self) -> np.ndarray:
        if self.hessian is None:
            msg = "Block was evaluated without a Hessian."
            raise ValueError(msg)
        return self.hessian / self.size

    @property
    def j_diag(self) -> np.ndarray:
        """Mean diagonal of the Hessian (the ICE "J" terms)."""
        return np.diag(self.hessian_mean).copy()

    @property
    def i_terms(self) -> np.ndarray:
        """Mean squared per-row gradient (the ICE "I" terms)."""
        if self.derivative_squared is None:
            msg = "Block was evaluated without a gradient."
            raise ValueError(msg)
        return self.derivative_squared / self.size

    @classmethod
    def merge(cls, results: Sequence[BlockResult]) -> BlockResult:
        """Sum partial results covering one contiguous row range.

        Raises:
            ValueError: If *results* is empty or the row ranges leave
                gaps or overlap.
        """
        if not results:
            msg = "Cannot merge an empty list of block results."
            raise ValueError(msg)
        ordered = sorted(results, key=lambda r: r.row_start)
        for left, right in zip(ordered, ordered[1:]):
            if left.row_end != right.row_start:
                msg = (
                    f"Block results are not contiguous: [{left.row_start}, "
                    f"{left.row_end}) followed by [{right.row_start}, "
                    f"{right.row_end})."
                )
                raise ValueError(msg)

        def _sum(name: str) -> np.ndarray | None:
            parts = [getattr(r, name) for r in ordered]
            if any(p is None for p in parts):
                return None
            return np.sum(parts, axis=0)

        return cls(
            row_start=ordered[0].row_start,
            row_end=ordered[-1].row_end,
            entropy_sum=math.fsum(r.entropy_sum for r in ordered),
            entropy_sq_sum=math.fsum(r.entropy_sq_sum for r in ordered),
            gradient=_sum("gradient"),
            derivative_squared=_sum("derivative_squared"),
            hessian=_sum("hessian"),
        )


# ------------------------------------------------------------------ #
# ICE terms
# ------------------------------------------------------------------ #


def ice_sum(i_terms: np.ndarray, j_diag: np.ndarray) -> float:
    """Diagonal approximation of ``tr(J⁻¹ I)``.

    Terms whose ``I`` is below ``max(I) × ε`` carry no information
    and are skipped.
    """
    i_terms = np.asarray(i_terms, dtype=np.float64)
    cutoff = float(np.max(np.abs(i_terms), initial=0.0)) * ICE_EPSILON
    if cutoff == 0.0:
        return 0.0
    keep = i_terms >= cutoff
    return float(np.sum(i_terms[keep] / np.asarray(j_diag)[keep]))


def ice2_sum(
    i_terms: np.ndarray, j_diag: np.ndarray, row_count: int, reachable_count: int
) -> float:
    """Balanced ICE sum, robust to non-positive ``J`` terms.

    Each denominator blends ``|J|`` with ``I`` using the weight
    ``1 / (N log K)``, the entropy of a uniform model over ``K``
    reachable statuses.
    """
    i_terms = np.asarray(i_terms, dtype=np.float64)
    cutoff = float(np.max(np.abs(i_terms), initial=0.0)) * ICE_EPSILON
    if cutoff == 0.0:
        return 0.0
    balance = 1.0 / (math.log(max(reachable_count, 2)) * row_count)
    keep = i_terms >= cutoff
    i_kept = i_terms[keep]
    j_kept = np.abs(np.asarray(j_diag)[keep])
    return float(np.sum(i_kept / (j_kept * (1.0 - balance) + i_kept * balance)))


# ------------------------------------------------------------------ #
# Block kernel
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _Snapshot:
    """Read-only state shared by every block of one evaluation."""

    betas: np.ndarray
    entries: tuple[ModelEntry, ...]
    slots: tuple[ParameterSlot, ...]
    baseline_index: int
    mask: np.ndarray
    columns: dict[int, np.ndarray]
    curve_entries: frozenset[int]


def _entry_values(
    snap: _Snapshot, start: int, end: int, order: int
) -> tuple[np.ndarray, dict[int, np.ndarray], dict[int, np.ndarray]]:
    n = end - start
    weights = np.empty((n, len(snap.entries)), dtype=np.float64)
    grads: dict[int, np.ndarray] = {}
    hessians: dict[int, np.ndarray] = {}
    for e, entry in enumerate(snap.entries):
        if e == 0:
            weights[:, 0] = 1.0
            continue
        column = snap.columns[e][start:end]
        if entry.curve is None:
            weights[:, e] = column
            continue
        weights[:, e] = entry.curve.transform(column)
        if e in snap.curve_entries:
            if order >= 1:
                grads[e] = entry.curve.gradient(column)
            if order >= 2:
                hessians[e] = entry.curve.hessian(column)
    return weights, grads, hessians


def _jacobian(
    snap: _Snapshot, weights: np.ndarray, grads: dict[int, np.ndarray]
) -> np.ndarray:
    """``dz / dx`` with shape ``(rows, coefficient rows, packed size)``."""
    n = weights.shape[0]
    jac = np.zeros((n, snap.betas.shape[0], len(snap.slots)), dtype=np.float64)
    for a, slot in enumerate(snap.slots):
        if slot.is_beta:
            jac[:, slot.row, a] = weights[:, slot.entry]
        else:
            dw = grads[slot.entry][:, slot.curve_index]
            jac[:, :, a] = dw[:, None] * snap.betas[:, slot.entry][None, :]
    return jac


def _softmax(weights: np.ndarray, betas: np.ndarray, baseline_index: int) -> np.ndarray:
    """Transition probabilities, one column per reachable status."""
    scores = weights @ betas.T
    scores = np.insert(scores, baseline_index, 0.0, axis=1)
    scores -= scores.max(axis=1, keepdims=True)
    np.maximum(scores, MIN_POWER_SCORE, out=scores)
    probs = np.exp(scores)
    probs /= probs.sum(axis=1, keepdims=True)
    return probs


def _probability_block(snap: _Snapshot, start: int, end: int) -> np.ndarray:
    weights, _, _ = _entry_values(snap, start, end, 0)
    return _softmax(weights, snap.betas, snap.baseline_index)


def _compute_block(snap: _Snapshot, start: int, end: int, order: int) -> BlockResult:
    weights, grads, hessians = _entry_values(snap, start, end, order)
    mask = snap.mask[start:end]
    b = snap.baseline_index
    probs = _softmax(weights, snap.betas, b)

    bucket = (probs * mask).sum(axis=1)
    live = bucket > _PROB_CUTOFF
    safe_bucket = np.where(live, bucket, 1.0)
    entropy = np.where(live, -np.log(safe_bucket), LOG_CUTOFF)

    entropy_sum = math.fsum(entropy)
    entropy_sq_sum = math.fsum(entropy * entropy)
    if order == 0:
        return BlockResult(start, end, entropy_sum, entropy_sq_sum)

    live_col = live[:, None]
    posterior = np.where(live_col, probs * mask / safe_bucket[:, None], 0.0)
    p_live = np.where(live_col, probs, 0.0)
    dz = np.delete(p_live - posterior, b, axis=1)

    jac = _jacobian(snap, weights, grads)
    row_grad = np.einsum("nl,nla->na", dz, jac)
    gradient = row_grad.sum(axis=0)
    derivative_squared = (row_grad * row_grad).sum(axis=0)
    if order == 1:
        return BlockResult(
            start, end, entropy_sum, entropy_sq_sum, gradient, derivative_squared
        )

    p_b = np.delete(p_live, b, axis=1)
    u_b = np.delete(posterior, b, axis=1)
    hz = np.einsum("nl,nm->nlm", u_b, u_b) - np.einsum("nl,nm->nlm", p_b, p_b)
    diag = np.arange(p_b.shape[1])
    hz[:, diag, diag] += p_b - u_b

    hessian = np.einsum("nla,nlm,nmb->ab", jac, hz, jac, optimize=True)

    # Curve second-derivative terms.
    for a, slot_a in enumerate(snap.slots):
        if slot_a.is_beta:
            continue
        e = slot_a.entry
        dw = grads[e][:, slot_a.curve_index]
        for c, slot_c in enumerate(snap.slots):
            if slot_c.entry != e:
                continue
            if slot_c.is_beta:
                term = float(dz[:, slot_c.row] @ dw)
                hessian[a, c] += term
                hessian[c, a] += term
            elif c >= a:
                d2w = hessians[e][:, slot_a.curve_index, slot_c.curve_index]
                term = float((dz @ snap.betas[:, e]) @ d2w)
                hessian[a, c] += term
                if c != a:
                    hessian[c, a] += term

    return BlockResult(
        start,
        end,
        entropy_sum,
        entropy_sq_sum,
        gradient,
        derivative_squared,
        hessian,
    )


def _block_ranges(size: int, block_size: int) -> list[tuple[int, int]]:
    return [(s, min(s + block_size, size)) for s in range(0, size, block_size)]


# ------------------------------------------------------------------ #
# Evaluator
# ------------------------------------------------------------------ #


class Evaluator:
    """Entropy and derivatives of models over one :class:`FittingGrid`.

    Args:
        grid: Fitting rows of the origin status being modelled.
        settings: Supplies ``block_size`` and ``n_jobs``.

    Raises:
        ValueError: If the grid holds no rows.
    """

    def __init__(self, grid: FittingGrid, settings: FitSettings | None = None) -> None:
        if grid.size == 0:
            msg = f"No fitting rows start in status '{grid.from_status.name}'."
            raise ValueError(msg)
        self._grid = grid
        self._settings = resolve_settings(settings)

    @property
    def grid(self) -> FittingGrid:
        return self._grid

    @property
    def settings(self) -> FitSettings:
        return self._settings

    @property
    def size(self) -> int:
        return self._grid.size

    def _snapshot(
        self, params: ModelParameters, slots: tuple[ParameterSlot, ...]
    ) -> _Snapshot:
        if params.from_status != self._grid.from_status:
            msg = (
                f"Parameters model status '{params.from_status.name}' but the "
                f"grid holds rows of '{self._grid.from_status.name}'."
            )
            raise ValueError(msg)
        # Columns are loaded here, on the calling thread.
        columns = {
            e: self._grid.column(entry.regressor)
            for e, entry in enumerate(params.entries)
            if e != params.intercept_index
        }
        return _Snapshot(
            betas=params.betas,
            entries=params.entries,
            slots=slots,
            baseline_index=params.baseline_index,
            mask=self._grid.observed_mask,
            columns=columns,
            curve_entries=frozenset(s.entry for s in slots if not s.is_beta),
        )

    def evaluate(
        self,
        packed: PackedParameters,
        x: np.ndarray | None = None,
        *,
        order: int = 2,
        block_size: int | None = None,
    ) -> BlockResult:
        """Entropy (and derivatives up to *order*) at packed point *x*.

        Args:
            packed: Defines which quantities the derivatives cover.
            x: Packed values; defaults to the current values.
            order: ``0`` entropy only, ``1`` adds the gradient, ``2``
                adds the Hessian.
            block_size: Overrides ``settings.block_size``.

        Returns:
            The merged :class:`BlockResult` over all fitting rows.
        """
        if order not in (0, 1, 2):
            msg = f"order must be 0, 1 or 2, got {order}."
            raise ValueError(msg)
        params = packed.params if x is None else packed.generate_params(x)
        snap = self._snapshot(params, packed.slots)
        ranges = _block_ranges(self.size, block_size or self._settings.block_size)

        return BlockResult.merge(self._map_blocks(_compute_block, snap, ranges, order))

    def _map_blocks(
        self,
        kernel: Callable[..., Any],
        snap: _Snapshot,
        ranges: list[tuple[int, int]],
        *args: Any,
    ) -> list[Any]:
        """Run *kernel* over every row range, in row order."""
        n_jobs = self._settings.n_jobs
        if n_jobs == 1 or len(ranges) == 1:
            return [kernel(snap, s, e, *args) for s, e in ranges]
        logger.debug(
            "Dispatching %d block(s) of %s to %s thread(s).",
            len(ranges),
            kernel.__name__,
            n_jobs,
        )
        return Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(kernel)(snap, s, e, *args) for s, e in ranges
        )

    def evaluate_params(self, params: ModelParameters, *, order: int = 0) -> BlockResult:
        """Evaluate *params* with derivatives over all free quantities."""
        return self.evaluate(PackedParameters.generate(params), order=order)

    def compute_fit_result(
        self, params: ModelParameters, prev: FitResult | None = None
    ) -> FitResult:
        """Authoritative entropy of *params* over every fitting row."""
        block = self.evaluate(PackedParameters(params, ()), order=0)
        return FitResult(params, block.entropy_mean, block.size, prev)

    def transition_probabilities(
        self, params: ModelParameters, *, block_size: int | None = None
    ) -> np.ndarray:
        """Transition probabilities of *params* on every fitting row.

        Returns:
            Array of shape ``(size, len(params.reachable))``; column
            ``k`` is the probability of moving to ``params.reachable[k]``
            and every row sums to one.  Rows are in the order of
            :attr:`FittingGrid.rows`.
        """
        snap = self._snapshot(params, ())
        ranges = _block_ranges(self.size, block_size or self._settings.block_size)
        return np.vstack(self._map_blocks(_probability_block, snap, ranges))

    def objective(self, packed: PackedParameters) -> Objective:
        """Mean-entropy objective over *packed* for :func:`~transition_fit.optimize.minimize`."""

        def _objective(x: np.ndarray, order: int) -> ObjectiveValue:
            block = self.evaluate(packed, x, order=order)
            return ObjectiveValue(
                value=block.entropy_mean,
                gradient=None if block.gradient is None else block.gradient_mean,
                hessian=None if block.hessian is None else block.hessian_mean,
            )

        return _objective

    def ice_terms(self, params: ModelParameters) -> tuple[float, float]:
        """``(ice_sum, ice2_sum)`` over every free quantity of *params*."""
        block = self.evaluate_params(params, order=2)
        i_terms = block.i_terms
        j_diag = block.j_diag
        return (
            ice_sum(i_terms, j_diag),
            ice2_sum(i_terms, j_diag, block.size, len(params.reachable)),
        )
