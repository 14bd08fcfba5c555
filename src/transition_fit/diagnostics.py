"""Post-fit diagnostics for transition models.

* **Coefficient table** — every free quantity of a model with a
  Wald-type standard error taken from the inverse observed information
  (the summed Hessian of the negative log-likelihood), its z-score and
  a two-sided normal p-value.  Curve parameters are reported alongside
  the coefficients; their normal approximation is rougher, since the
  likelihood is not concave in them.

* **Information criteria** — AIC together with the Takeuchi-style
  correction built from the ICE terms:

  - ``ice_sum`` = Σ I_j / J_j over the diagonal, skipping terms whose
    I is negligible;
  - ``ice2_sum`` = the balanced variant, finite even when some J_j is
    not positive;
  - ``tic`` = 2 · (N · entropy + ice_sum).

  For a correctly specified model I ≈ J and ``ice_sum`` approaches the
  parameter count, so ``tic`` ≈ ``aic``.  A large gap flags
  misspecification or an over-fitted curve.

* **Reference fit** — for models made only of unrestricted raw
  regressors, the same multinomial logit fitted by statsmodels'
  ``MNLogit``, handy for cross-checking coefficients and standard
  errors against an independent implementation.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats

from .evaluator import Evaluator
from .packed import PackedParameters

if TYPE_CHECKING:
    from .fitters import ModelFitter
    from .params import ModelParameters

logger = logging.getLogger(__name__)


def _evaluator_of(source: Evaluator | ModelFitter) -> Evaluator:
    if isinstance(source, Evaluator):
        return source
    evaluator = getattr(source, "evaluator", None)
    if not isinstance(evaluator, Evaluator):
        msg = f"Expected an Evaluator or ModelFitter, got {type(source).__name__}."
        raise TypeError(msg)
    return evaluator


def coefficient_table(
    source: Evaluator | ModelFitter,
    params: ModelParameters,
) -> pd.DataFrame:
    """Estimates, standard errors and p-values of every free quantity.

    Args:
        source: Evaluator (or model fitter) over the fitting rows.
        params: The fitted parameters.

    Returns:
        DataFrame with one row per packed quantity and columns
        ``to_status``, ``entry``, ``kind``, ``estimate``, ``std_error``,
        ``z``, ``p_value``.  Quantities whose information is not
        positive get ``NaN`` statistics.
    """
    evaluator = _evaluator_of(source)
    packed = PackedParameters.generate(params)
    block = evaluator.evaluate(packed, order=2)
    assert block.hessian is not None

    # Observed information is the summed Hessian, not the mean.
    covariance = np.linalg.pinv(block.hessian)
    variance = np.diag(covariance)
    with np.errstate(invalid="ignore", divide="ignore"):
        std_error = np.where(variance > 0.0, np.sqrt(np.abs(variance)), np.nan)
        estimate = packed.values()
        z = estimate / std_error
    p_value = 2.0 * stats.norm.sf(np.abs(z))

    bad = int(np.sum(~(variance > 0.0)))
    if bad:
        logger.debug("%d quantity(ies) without positive information.", bad)

    records: list[dict[str, Any]] = []
    for i, slot in enumerate(packed.slots):
        entry = params.entries[slot.entry]
        if slot.is_beta:
            status = slot.to_status
            kind = "beta"
        else:
            status = entry.to_status
            kind = f"curve[{slot.curve_index}]"
        records.append(
            {
                "to_status": None if status is None else status.name,
                "entry": entry.label,
                "kind": kind,
                "estimate": float(estimate[i]),
                "std_error": float(std_error[i]),
                "z": float(z[i]),
                "p_value": float(p_value[i]),
            }
        )
    columns = ["to_status", "entry", "kind", "estimate", "std_error", "z", "p_value"]
    return pd.DataFrame.from_records(records, columns=columns)


def information_criteria(
    source: Evaluator | ModelFitter,
    params: ModelParameters,
) -> dict[str, float]:
    """AIC, TIC and the ICE sums of *params*.

    Returns:
        Dictionary with keys ``aic``, ``tic``, ``ice_sum`` and
        ``ice2_sum``.
    """
    evaluator = _evaluator_of(source)
    fit = evaluator.compute_fit_result(params)
    ice, ice2 = evaluator.ice_terms(params)
    return {
        "aic": fit.aic,
        "tic": 2.0 * (fit.entropy * fit.row_count + ice),
        "ice_sum": ice,
        "ice2_sum": ice2,
    }


def mnlogit_reference(
    source: Evaluator | ModelFitter,
    params: ModelParameters,
    *,
    maxiter: int = 100,
) -> Any:
    """Fit the multinomial logit of *params* with statsmodels.

    Only models whose non-intercept entries are plain regressors have a
    statsmodels counterpart, and every fitting row must map to exactly
    one reachable status.  Outcome codes follow the coefficient rows:
    the baseline is code 0 and ``beta_statuses`` follow in order, so
    ``result.params`` transposed lines up with ``params.betas``.

    Returns:
        The fitted ``MNLogitResults``.

    Raises:
        ValueError: If the model has curve or restricted entries, or if
            some row's outcome is ambiguous.
    """
    evaluator = _evaluator_of(source)
    grid = evaluator.grid
    special = [e.label for e in params.entries[1:] if not e.is_plain]
    if special:
        msg = (
            "MNLogit reference requires plain regressor entries; "
            f"got {', '.join(special)}."
        )
        raise ValueError(msg)
    if params.from_status != grid.from_status:
        msg = (
            f"Parameters start from '{params.from_status.name}' but the "
            f"grid holds rows of '{grid.from_status.name}'."
        )
        raise ValueError(msg)

    mask = grid.observed_mask
    if not np.all(mask.sum(axis=1) == 1):
        msg = "MNLogit reference requires distinguishable outcomes."
        raise ValueError(msg)

    order = [params.baseline, *params.beta_statuses]
    codes = np.array([order.index(s) for s in params.reachable])
    endog = codes[np.argmax(mask, axis=1)]

    exog = np.column_stack(
        [np.ones(grid.size)] + [grid.column(e.regressor) for e in params.entries[1:]]
    )
    logger.debug(
        "Fitting MNLogit reference on %d row(s), %d column(s).", grid.size, exog.shape[1]
    )
    return sm.MNLogit(endog, exog).fit(disp=0, method="newton", maxiter=maxiter)
