"""transition_fit — Stepwise multinomial state-transition models.

Fits, for each originating status, a multinomial logit over the
statuses reachable from it.  Linear predictors are built from basis
entries (raw regressors or logistic / Gaussian curves of them), the
likelihood tolerates outcomes observed only up to a group of
indistinguishable statuses, and the model structure is grown by a
forward curve search and pruned by backward trimming, both gated on
AIC.  Likelihood, gradient and Hessian are evaluated in row blocks on
a joblib thread pool.

Public API:
    .. autosummary::
        ModelFitter
        BaseFitter
        BetaFitter
        CurveFitter
        Evaluator
        BlockResult
        FitResult
        CurveFitResult
        FitStatus
        FitContext
        FitSettings
        get_settings
        set_settings
        ModelParameters
        ModelEntry
        ParametersBuilder
        PackedParameters
        BetaOnlyFilter
        CurveEntryFilter
        EntryFilter
        UniqueBetaFilter
        Curve
        CurveType
        generate_curve
        fill_starting_parameters
        CategoryFamily
        StatusFamily
        FamilyRegistry
        Member
        TrainingGrid
        FrameGrid
        FittingGrid
        ConvergenceError
        minimize
        coefficient_table
        information_criteria
        mnlogit_reference
"""

from ._config import FitSettings, get_settings, set_settings
from ._context import FitContext, FitStep
from ._results import CurveFitResult, FitResult, FitStatus
from .curves import Curve, CurveType, fill_starting_parameters, generate_curve
from .diagnostics import coefficient_table, information_criteria, mnlogit_reference
from .evaluator import BlockResult, Evaluator
from .families import CategoryFamily, FamilyRegistry, Member, StatusFamily
from .fitters import BaseFitter, BetaFitter, CurveFitter, ModelFitter
from .grid import FittingGrid, FrameGrid, TrainingGrid
from .optimize import ConvergenceError, minimize
from .packed import PackedParameters, ParameterSlot
from .params import (
    BetaOnlyFilter,
    CurveEntryFilter,
    EntryFilter,
    ModelEntry,
    ModelParameters,
    ParametersBuilder,
    ParamFilter,
    UniqueBetaFilter,
)

__all__ = [
    "FitResult",
    "CurveFitResult",
    "FitStatus",
    "FitContext",
    "FitStep",
    "FitSettings",
    "get_settings",
    "set_settings",
    "ModelFitter",
    "BaseFitter",
    "BetaFitter",
    "CurveFitter",
    "Evaluator",
    "BlockResult",
    "ModelParameters",
    "ModelEntry",
    "ParametersBuilder",
    "ParamFilter",
    "PackedParameters",
    "ParameterSlot",
    "BetaOnlyFilter",
    "CurveEntryFilter",
    "EntryFilter",
    "UniqueBetaFilter",
    "Curve",
    "CurveType",
    "generate_curve",
    "fill_starting_parameters",
    "CategoryFamily",
    "StatusFamily",
    "FamilyRegistry",
    "Member",
    "TrainingGrid",
    "FrameGrid",
    "FittingGrid",
    "ConvergenceError",
    "minimize",
    "coefficient_table",
    "information_criteria",
    "mnlogit_reference",
]

__version__ = "0.1.0"
