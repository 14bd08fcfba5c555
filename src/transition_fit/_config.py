"""Fitting configuration for the transition_fit package.

Every orchestrator, the evaluator and the optimizer read their tuning
constants from a single :class:`FitSettings` instance.  Callers may
pass one explicitly; when they do not, :func:`get_settings` resolves
the active settings.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_settings`.
    2. ``TRANSITION_FIT_*`` environment variables applied on top of
       the defaults.
    3. The defaults of :class:`FitSettings`.

Recognised environment variables:

* ``TRANSITION_FIT_N_JOBS`` — worker threads for block evaluation.
* ``TRANSITION_FIT_BLOCK_SIZE`` — rows per evaluator block.
* ``TRANSITION_FIT_OPTIMIZER`` — ``"newton"`` or ``"lbfgs"``
  (case-insensitive).

Examples:
    Evaluate blocks on four threads from the shell::

        export TRANSITION_FIT_N_JOBS=4

    Switch optimizer programmatically::

        import transition_fit
        transition_fit.set_settings(transition_fit.FitSettings(optimizer="lbfgs"))

    Restore the default resolution order::

        transition_fit.set_settings(None)
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass

_VALID_OPTIMIZERS = {"newton", "lbfgs"}


@dataclass(frozen=True)
class FitSettings:
    """Tuning constants for model fitting.

    The AIC slack and cutoff are plain configuration: the defaults
    (``5.0`` and ``-5.0``) are conventional values, not derived ones.
    """

    aic_cutoff: float = -5.0
    """Curve additions are kept only when their AIC difference is
    below this value.  Trimming removes an entry when dropping it
    yields an AIC difference below ``-aic_cutoff``."""

    aic_slack: float = 5.0
    """A refit whose AIC exceeds the previous AIC by at least this
    much is abandoned before the authoritative recomputation."""

    block_size: int = 10_000
    """Rows per evaluator block."""

    n_jobs: int = 1
    """Worker threads for block evaluation (``-1`` = all cores)."""

    max_iterations: int = 100
    """Optimizer iteration budget."""

    tolerance: float = 1e-8
    """Convergence threshold on gradient, step and relative change."""

    optimizer: str = "newton"
    """``"newton"`` (damped Newton with line search) or ``"lbfgs"``."""

    curve_starts: int = 3
    """Starting centres tried for every curve candidate."""

    def __post_init__(self) -> None:
        if self.optimizer not in _VALID_OPTIMIZERS:
            msg = (
                f"Unknown optimizer '{self.optimizer}'. "
                f"Choose from: {sorted(_VALID_OPTIMIZERS)}"
            )
            raise ValueError(msg)
        if self.block_size < 1:
            msg = f"block_size must be positive, got {self.block_size}."
            raise ValueError(msg)
        if self.n_jobs == 0:
            msg = "n_jobs must be non-zero (use -1 for all cores)."
            raise ValueError(msg)
        if self.max_iterations < 1:
            msg = f"max_iterations must be positive, got {self.max_iterations}."
            raise ValueError(msg)
        if not self.tolerance > 0.0:
            msg = f"tolerance must be positive, got {self.tolerance}."
            raise ValueError(msg)
        if self.aic_slack < 0.0:
            msg = f"aic_slack must be non-negative, got {self.aic_slack}."
            raise ValueError(msg)
        if self.curve_starts < 1:
            msg = f"curve_starts must be positive, got {self.curve_starts}."
            raise ValueError(msg)

    def replace(self, **changes: object) -> FitSettings:
        """Return a copy with *changes* applied (validated again)."""
        return dataclasses.replace(self, **changes)  # type: ignore[arg-type]


# Sentinel indicating "no programmatic override has been set".
_settings_override: FitSettings | None = None


def _int_from_env(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        msg = f"Environment variable {name} must be an integer, got '{raw}'."
        raise ValueError(msg) from None


def get_settings() -> FitSettings:
    """Return the active :class:`FitSettings`.

    Resolution order:
        1. Value set by :func:`set_settings`.
        2. ``TRANSITION_FIT_*`` environment variables over the defaults.
        3. ``FitSettings()``.

    Returns:
        The resolved settings.

    Raises:
        ValueError: If an environment variable holds an invalid value.
    """
    # 1. Programmatic override
    if _settings_override is not None:
        return _settings_override

    # 2. Environment variables
    changes: dict[str, object] = {}
    n_jobs = _int_from_env("TRANSITION_FIT_N_JOBS")
    if n_jobs is not None:
        changes["n_jobs"] = n_jobs
    block_size = _int_from_env("TRANSITION_FIT_BLOCK_SIZE")
    if block_size is not None:
        changes["block_size"] = block_size
    optimizer = os.environ.get("TRANSITION_FIT_OPTIMIZER", "").strip().lower()
    if optimizer:
        changes["optimizer"] = optimizer

    # 3. Defaults
    return FitSettings(**changes)  # type: ignore[arg-type]


def set_settings(settings: FitSettings | None) -> None:
    """Override the settings returned by :func:`get_settings`.

    Args:
        settings: A :class:`FitSettings` instance, or ``None`` to
            restore the default resolution order.

    Raises:
        TypeError: If *settings* is neither ``None`` nor a
            :class:`FitSettings`.
    """
    global _settings_override
    if settings is not None and not isinstance(settings, FitSettings):
        msg = f"Expected FitSettings or None, got {type(settings).__name__}."
        raise TypeError(msg)
    _settings_override = settings


def resolve_settings(settings: FitSettings | None) -> FitSettings:
    """Return *settings* when given, else the active settings."""
    return settings if settings is not None else get_settings()
