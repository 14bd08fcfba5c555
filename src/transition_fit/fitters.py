"""Fitting orchestrators: refits, curve search and trimming.

State machine driven by :meth:`ModelFitter.fit`::

    Initial ──▶ BetaFit ──▶ ┬─▶ CurveSearch ─┬─▶ Stable
                            └─◀── Trim ◀─────┘

* :class:`BaseFitter` — optimise one packed vector and gate the result
  on AIC.  Every other fitter funnels through :meth:`BaseFitter.do_fit`,
  the only place a :class:`~transition_fit.optimize.ConvergenceError`
  is caught; from there on failure is a ``FAILED`` result variant.
* :class:`BetaFitter` — coefficient-only refits under filters.
* :class:`CurveFitter` — forward search for the best new basis entry.
* :class:`ModelFitter` — initial fit, direct regressors, expansion and
  trimming for one origin status.

Acceptance rule
~~~~~~~~~~~~~~~
AIC comparisons are the only gate.  A refit whose AIC is worse than
its predecessor's by ``FitSettings.aic_slack`` or more is abandoned
(unless ``skip_worse=False``); a curve is added only when its AIC
difference is below ``FitSettings.aic_cutoff`` and the entropy
strictly improves; an entry is trimmed when dropping it gives an AIC
difference below ``-aic_cutoff``.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence

import numpy as np

from ._config import FitSettings, resolve_settings
from ._context import FitContext
from ._results import CurveFitResult, FitResult, compute_aic
from .curves import CurveType, fill_starting_parameters, generate_curve
from .evaluator import Evaluator
from .families import Member
from .grid import FittingGrid, TrainingGrid
from .optimize import ConvergenceError, minimize
from .packed import PackedParameters
from .params import (
    BetaOnlyFilter,
    CurveEntryFilter,
    EntryFilter,
    ModelEntry,
    ModelParameters,
    ParamFilter,
)

logger = logging.getLogger(__name__)

# Restricted coefficients above this size shift the intercept before
# a trial drop.
_LARGE_BETA = 8.0

# ------------------------------------------------------------------ #
# BaseFitter
# ------------------------------------------------------------------ #


class BaseFitter:
    """Optimise packed parameters and wrap the outcome in a :class:`FitResult`."""

    def __init__(self, evaluator: Evaluator, settings: FitSettings | None = None) -> None:
        self._evaluator = evaluator
        self._settings = resolve_settings(settings)

    @property
    def evaluator(self) -> Evaluator:
        return self._evaluator

    @property
    def settings(self) -> FitSettings:
        return self._settings

    def do_fit(
        self,
        packed: PackedParameters,
        prev: FitResult,
        *,
        skip_worse: bool = True,
    ) -> FitResult:
        """Optimise *packed* starting from its current values.

        Args:
            packed: Quantities to optimise; everything else keeps the
                value it has in ``packed.params``.
            prev: Result the new one is chained to and compared with.
            skip_worse: Abandon the fit when its AIC is at least
                ``aic_slack`` above ``prev.aic``.

        Returns:
            A fresh result on success; a vacuous ``UNCHANGED`` result
            when the AIC gate rejects the fit; a vacuous ``FAILED``
            result when the optimizer raised a convergence error.

        Raises:
            ValueError: If *packed* is empty.
        """
        if packed.size == 0:
            msg = "Packed parameters are empty; nothing to fit."
            raise ValueError(msg)

        objective = self._evaluator.objective(packed)
        try:
            result = minimize(objective, packed.values(), self._settings)
        except ConvergenceError as exc:
            logger.info("Convergence failure, keeping previous model: %s", exc)
            return FitResult.vacuous(prev, failed=True, reason=str(exc))

        if not result.converged:
            logger.info(
                "Optimizer stopped after %d iterations before convergence, moving on.",
                result.iterations,
            )

        new_aic = compute_aic(
            result.value, self._evaluator.size, packed.params.effective_param_count
        )
        if skip_worse and new_aic >= prev.aic + self._settings.aic_slack:
            logger.debug(
                "Abandoning fit: AIC %.4f vs previous %.4f.", new_aic, prev.aic
            )
            return FitResult.vacuous(
                prev,
                reason=f"AIC {new_aic:.4f} exceeds previous {prev.aic:.4f} by the slack.",
            )

        params = packed.generate_params(result.x)
        return self._evaluator.compute_fit_result(params, prev)


# ------------------------------------------------------------------ #
# BetaFitter
# ------------------------------------------------------------------ #


class BetaFitter:
    """Coefficient-only refits."""

    def __init__(self, base: BaseFitter) -> None:
        self._base = base

    def fit_betas(self, params: ModelParameters, prev: FitResult) -> FitResult:
        """Refit every non-frozen coefficient of *params*; curves stay put."""
        return self.fit_filtered(params, prev, BetaOnlyFilter())

    def fit_filtered(
        self,
        params: ModelParameters,
        prev: FitResult,
        *filters: ParamFilter,
        skip_worse: bool = True,
    ) -> FitResult:
        """Refit the quantities of *params* no filter freezes."""
        packed = PackedParameters.generate(params, *filters)
        return self._base.do_fit(packed, prev, skip_worse=skip_worse)


# ------------------------------------------------------------------ #
# CurveFitter
# ------------------------------------------------------------------ #


class CurveFitter:
    """Forward step: find the best basis entry to add.

    Candidates for every field are a plain entry (when the field is
    not already a plain term) and one curve per curve type and
    non-baseline to-status, seeded from the field's mean and standard
    deviation.
    """

    def __init__(
        self,
        base: BaseFitter,
        curve_types: Sequence[CurveType] | None = None,
    ) -> None:
        self._base = base
        self._betas = BetaFitter(base)
        self._curve_types = tuple(curve_types) if curve_types is not None else tuple(CurveType)

    def _seeds(self, field: Member, curve_type: CurveType) -> list[list[float]]:
        grid = self._base.evaluator.grid
        mean, std_dev = grid.column_stats(field)
        seeds = [fill_starting_parameters(curve_type, mean, std_dev)]
        extra = self._base.settings.curve_starts - 1
        if extra > 0:
            probs = np.linspace(0.0, 1.0, extra + 2)[1:-1]
            for center in grid.column_quantiles(field, probs):
                seed = fill_starting_parameters(curve_type, float(center), std_dev)
                if seed not in seeds:
                    seeds.append(seed)
        return seeds

    def _fit_plain(self, field: Member, prev: FitResult) -> FitResult | None:
        candidate = prev.params.add_beta(field)
        new_index = candidate.entry_count - 1
        result = self._betas.fit_filtered(
            candidate,
            prev,
            EntryFilter([candidate.intercept_index, new_index], include_curves=False),
        )
        return None if result.is_vacuous else result

    def _fit_curve(self, entry: ModelEntry, prev: FitResult) -> FitResult | None:
        assert entry.to_status is not None
        candidate = prev.params.add_entry(entry)
        new_index = candidate.entry_count - 1

        # Coefficient and offset first, then the curve joins in.
        anchored = self._betas.fit_filtered(
            candidate,
            prev,
            CurveEntryFilter(new_index, entry.to_status, include_curve=False),
            skip_worse=False,
        )
        if anchored.is_vacuous:
            return None
        calibrated = self._betas.fit_filtered(
            anchored.params,
            prev,
            CurveEntryFilter(new_index, entry.to_status),
        )
        if calibrated.is_vacuous:
            return None
        return calibrated

    def find_best(
        self, fields: Iterable[Member], prev: FitResult
    ) -> CurveFitResult | None:
        """Best candidate entry over *fields*, or ``None``.

        The winner has the lowest AIC difference versus *prev*; ties
        go to the candidate with fewer effective parameters.  No AIC
        threshold is applied here.
        """
        params = prev.params
        best: FitResult | None = None

        def better(result: FitResult) -> bool:
            if best is None:
                return True
            key = (result.aic_diff, result.effective_param_count)
            return key < (best.aic_diff, best.effective_param_count)

        for field in fields:
            if field == params.intercept:
                continue

            if field not in params.flag_set():
                result = self._fit_plain(field, prev)
                if result is not None and better(result):
                    logger.debug("New best: %s (%.4f)", field.name, result.aic_diff)
                    best = result

            for to_status in params.beta_statuses:
                for curve_type in self._curve_types:
                    for seed in self._seeds(field, curve_type):
                        entry = ModelEntry(field, generate_curve(curve_type, seed), to_status)
                        if params.curve_is_forbidden(entry):
                            continue
                        result = self._fit_curve(entry, prev)
                        if result is None:
                            continue
                        if better(result):
                            logger.debug(
                                "New best: %s (%.4f)",
                                result.params.entries[-1].label,
                                result.aic_diff,
                            )
                            best = result

        if best is None:
            return None
        return CurveFitResult(
            fit_result=best,
            entry=best.params.entries[-1],
            starting_entropy=prev.entropy,
        )


# ------------------------------------------------------------------ #
# ModelFitter
# ------------------------------------------------------------------ #


class ModelFitter:
    """Stepwise fitting of a transition model for one origin status.

    Args:
        starting: Initial parameters (at least the intercept).
        grid: Training rows; a :class:`FittingGrid` is built for the
            origin status of *starting* unless one is passed.
        settings: Fitting settings; defaults to the active settings.
        curve_types: Curve kinds the forward search may use.
        ctx: Optional :class:`FitContext` collecting the steps.
    """

    def __init__(
        self,
        starting: ModelParameters,
        grid: TrainingGrid | FittingGrid,
        settings: FitSettings | None = None,
        *,
        curve_types: Sequence[CurveType] | None = None,
        ctx: FitContext | None = None,
    ) -> None:
        self._settings = resolve_settings(settings)
        if not isinstance(grid, FittingGrid):
            grid = FittingGrid(grid, starting.from_status)
        self._starting = starting
        self._evaluator = Evaluator(grid, self._settings)
        self._base = BaseFitter(self._evaluator, self._settings)
        self._beta_fitter = BetaFitter(self._base)
        self._curve_fitter = CurveFitter(self._base, curve_types)
        self.ctx: FitContext = ctx if ctx is not None else FitContext()

    @property
    def evaluator(self) -> Evaluator:
        return self._evaluator

    @property
    def settings(self) -> FitSettings:
        return self._settings

    @property
    def curve_fitter(self) -> CurveFitter:
        return self._curve_fitter

    # ---- Single steps --------------------------------------------

    def generate_initial_model(self) -> FitResult:
        """Evaluate the starting parameters, then refit all of them."""
        start = self._evaluator.compute_fit_result(self._starting, None)
        calibrated = self.fit_all_parameters(start)
        self.ctx.record("initial", calibrated, accepted=not calibrated.is_vacuous)
        return calibrated

    def fit_all_parameters(self, prev: FitResult) -> FitResult:
        """Refit every free quantity, without the AIC short-circuit."""
        packed = PackedParameters.generate(prev.params)
        return self._base.do_fit(packed, prev, skip_worse=False)

    def fit_entries(self, prev: FitResult, entries: Sequence[int]) -> FitResult:
        """Refit only the listed entries (coefficients and curves).

        Raises:
            ValueError: If the entries select no free quantity.
            IndexError: If an entry index is out of range.
        """
        for index in entries:
            prev.params.entry(index)
        packed = PackedParameters.generate(prev.params, EntryFilter(entries))
        if packed.size == 0:
            msg = f"Invalid entry list {list(entries)}: nothing to fit."
            raise ValueError(msg)
        return self._base.do_fit(packed, prev)

    def fit_betas(self, prev: FitResult) -> FitResult:
        """Refit every coefficient, keeping curves fixed."""
        return self._beta_fitter.fit_betas(prev.params, prev)

    def add_direct_regressors(
        self, prev: FitResult, regressors: Iterable[Member]
    ) -> FitResult:
        """Add plain entries for *regressors* not yet plain terms, then refit betas."""
        params = prev.params
        flags = params.flag_set()
        added = []
        for field in regressors:
            if field in flags or field in added:
                continue
            params = params.add_beta(field)
            added.append(field)

        if not added:
            result = FitResult.vacuous(prev, reason="No new direct regressors.")
        else:
            result = self._beta_fitter.fit_betas(params, prev)
        self.ctx.record(
            "direct_regressors",
            result,
            accepted=not result.is_vacuous,
            detail=", ".join(f.name for f in added) or None,
        )
        return result

    def trim(self, prev: FitResult) -> FitResult:
        """Drop entries whose removal costs less than ``-aic_cutoff`` AIC.

        After a removal the same index is examined again, since the
        following entries shift down.
        """
        threshold = -self._settings.aic_cutoff
        current = prev
        gradient: np.ndarray | None = None
        index = 1
        while index < current.params.entry_count:
            base = current.params
            label = base.entries[index].label
            reduced = base.drop_entry(index)

            restrict = base.entry_status_restrict(index)
            if restrict is not None:
                row = base.status_row(restrict)
                drop_beta = float(base.betas[row, index])
                if abs(drop_beta) > _LARGE_BETA:
                    base_packed = PackedParameters.generate(base)
                    if gradient is None:
                        gradient = self._evaluator.evaluate(base_packed, order=1).gradient_mean
                    g_beta = gradient[base_packed.find_beta_index(row, index)]
                    g_intercept = gradient[base_packed.find_beta_index(row, base.intercept_index)]
                    shift = -drop_beta * g_beta / g_intercept if g_intercept != 0.0 else 0.0
                    if math.isfinite(shift) and shift != 0.0:
                        intercept = reduced.beta(restrict, reduced.intercept_index)
                        adjusted = reduced.updated(
                            [(reduced.intercept_index, restrict, intercept - shift)]
                        )
                        # Start from whichever intercept evaluates better.
                        if self._evaluator.compute_fit_result(adjusted).entropy < (
                            self._evaluator.compute_fit_result(reduced).entropy
                        ):
                            reduced = adjusted

            refit = self._base.do_fit(
                PackedParameters.generate(reduced), current, skip_worse=False
            )
            if not refit.is_vacuous and refit.aic_diff < threshold:
                logger.info("Trimming entry[%d] %s (AIC diff %.4f)", index, label, refit.aic_diff)
                current = refit
                gradient = None
                continue
            index += 1

        result = current if current is not prev else FitResult.vacuous(
            prev, reason="No removable entries."
        )
        self.ctx.record("trim", result, accepted=not result.is_vacuous)
        return result

    def expand_model(
        self,
        prev: FitResult,
        curve_fields: Iterable[Member],
        max_param_count: int | None = None,
    ) -> FitResult:
        """Add entries greedily while the AIC gate accepts them.

        Each round refits all parameters (kept when the AIC improves),
        then runs a curve search over *curve_fields*.  The round's
        winner is accepted when its AIC difference is below
        ``aic_cutoff``, its entropy is strictly lower and the model
        stays within *max_param_count* effective parameters.  A refit
        that lowered the AIC is returned even when no entry is added;
        the result is vacuous only when nothing improved.
        """
        fields = list(curve_fields)
        cutoff = self._settings.aic_cutoff
        best = prev
        while max_param_count is None or best.effective_param_count < max_param_count:
            recalibrated = self.fit_all_parameters(best)
            if not recalibrated.is_vacuous and recalibrated.aic < best.aic:
                self.ctx.record("refit", recalibrated, accepted=True)
                best = recalibrated

            curve_fit = self._curve_fitter.find_best(fields, best)
            if curve_fit is None:
                break
            step = curve_fit.fit_result
            accepted = (
                curve_fit.aic_diff < cutoff
                and curve_fit.entropy < best.entropy
                and (
                    max_param_count is None
                    or step.effective_param_count <= max_param_count
                )
            )
            self.ctx.record(
                "curve_search", step, accepted=accepted, detail=curve_fit.entry.label
            )
            if not accepted:
                break
            logger.info(
                "Added %s (AIC diff %.4f, entropy %.6f -> %.6f)",
                curve_fit.entry.label,
                curve_fit.aic_diff,
                curve_fit.starting_entropy,
                curve_fit.entropy,
            )
            best = step

        if best is prev:
            return FitResult.vacuous(prev, reason="No acceptable expansion.")
        return best

    # ---- Full run ------------------------------------------------

    def fit(
        self,
        direct_regressors: Iterable[Member] = (),
        curve_fields: Iterable[Member] = (),
        max_param_count: int | None = None,
        *,
        max_rounds: int = 10,
    ) -> FitResult:
        """Run ``Initial → BetaFit → (CurveSearch | Trim)* → Stable``.

        Each round expands the model, then trims it.  A step is kept
        only when it lowers the AIC of the model it started from, so
        the returned model is never worse than one already reached.
        Rounds repeat until one changes nothing, at most *max_rounds*
        times.
        """
        fields = list(curve_fields)
        result = self.generate_initial_model()

        direct = list(direct_regressors)
        if direct:
            step = self.add_direct_regressors(result, direct)
            if not step.is_vacuous:
                result = step

        for _ in range(max_rounds):
            candidate = result
            expanded = self.expand_model(candidate, fields, max_param_count)
            if not expanded.is_vacuous and expanded.aic < candidate.aic:
                candidate = expanded
            trimmed = self.trim(candidate)
            if not trimmed.is_vacuous and trimmed.aic < candidate.aic:
                candidate = trimmed
            elif not trimmed.is_vacuous:
                logger.debug(
                    "Discarding trim: AIC %.4f vs %.4f.", trimmed.aic, candidate.aic
                )
            if candidate is result:
                break
            result = candidate

        logger.info(
            "Finished fitting '%s': %d entries, AIC %.4f",
            result.params.from_status.name,
            result.params.entry_count,
            result.aic,
        )
        return result


__all__ = ["BaseFitter", "BetaFitter", "CurveFitter", "ModelFitter"]
