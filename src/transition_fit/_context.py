"""Fitting context — mutable accumulator for the steps of a fit.

A :class:`FitContext` travels through :class:`~transition_fit.fitters.ModelFitter`,
collecting one :class:`FitStep` per orchestration step at the point
where the step's outcome is known.  Consumers (logging, notebooks,
benchmarks) read the history instead of re-deriving it from the
:class:`~transition_fit._results.FitResult` chain.

The context is **not** part of the serialised parameter blob.

Lifecycle::

    ┌───────────────────────────────────────────────────┐
    │  ModelFitter(params, grid, ctx=ctx)               │
    │  ├─ generate_initial_model()                      │
    │  │   └─ ctx.record("initial", …)                  │
    │  ├─ add_direct_regressors(…)                      │
    │  │   └─ ctx.record("direct_regressors", …)        │
    │  ├─ expand_model(…)                               │
    │  │   ├─ ctx.record("refit", …)                    │
    │  │   └─ ctx.record("curve_search", …)             │
    │  └─ trim(…)                                       │
    │      └─ ctx.record("trim", …)                     │
    └───────────────────────────────────────────────────┘

    # Later
    ctx.to_frame()
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING

import pandas as pd

if TYPE_CHECKING:
    from ._results import FitResult


@dataclass(frozen=True)
class FitStep:
    """Summary of one orchestration step."""

    stage: str
    status: str
    accepted: bool
    aic: float
    aic_diff: float
    entropy: float
    param_count: int
    detail: str | None = None


@dataclass
class FitContext:
    """Mutable accumulator of :class:`FitStep` records.

    Every field defaults to an empty container so the context can be
    created empty and populated as the fit proceeds.
    """

    steps: list[FitStep] = field(default_factory=list)

    def record(
        self,
        stage: str,
        result: FitResult,
        *,
        accepted: bool,
        detail: str | None = None,
    ) -> FitStep:
        """Append a step built from *result* and return it."""
        step = FitStep(
            stage=stage,
            status=result.status.value,
            accepted=accepted,
            aic=result.aic,
            aic_diff=result.aic_diff,
            entropy=result.entropy,
            param_count=result.effective_param_count,
            detail=detail if detail is not None else result.reason,
        )
        self.steps.append(step)
        return step

    @property
    def accepted_steps(self) -> list[FitStep]:
        return [s for s in self.steps if s.accepted]

    def to_frame(self) -> pd.DataFrame:
        """One row per recorded step."""
        columns = [f for f in FitStep.__dataclass_fields__]
        return pd.DataFrame([asdict(s) for s in self.steps], columns=columns)


__all__ = ["FitContext", "FitStep"]
