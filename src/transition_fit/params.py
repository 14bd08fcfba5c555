"""Model parameters: basis entries plus the per-status coefficient matrix.

A transition model for one originating status is a multinomial logit
over the statuses reachable from it.  Every reachable status except
the *baseline* owns one row of linear-predictor coefficients; the
baseline's predictor is pinned at zero.

Layout::

                 entry 0      entry 1     entry 2 …
                 intercept    x1          logistic(x2)→B
    row 0 (B)    β[0, 0]      β[0, 1]     β[0, 2]
    row 1 (C)    β[1, 0]      β[1, 1]     0 (frozen)

Entry 0 is always the intercept.  An entry restricted to a to-status
owns a single free cell; the other cells of its column are frozen at
zero by :class:`UniqueBetaFilter`.

Immutability
~~~~~~~~~~~~
:class:`ModelParameters` is never edited in place.  Structural edits
(:meth:`~ModelParameters.add_entry`, :meth:`~ModelParameters.drop_entry`,
…) return new instances, and coefficient updates go through
:class:`ParametersBuilder`, which takes ``(entry, to_status, value)``
triples and hands back a fresh instance.  The coefficient matrix is
exposed only as a read-only array.

Serialisation
~~~~~~~~~~~~~
:meth:`~ModelParameters.dumps` produces an opaque blob (gzip-compressed
JSON).  Members are stored by family id and name and resolved through
an explicit :class:`~transition_fit.families.FamilyRegistry` on
:meth:`~ModelParameters.loads`.
"""

from __future__ import annotations

import gzip
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np

from .curves import Curve, generate_curve
from .families import FamilyRegistry, Member, StatusFamily

# ------------------------------------------------------------------ #
# ModelEntry
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ModelEntry:
    """A basis term of the linear predictor.

    Depth 1 when *curve* is ``None`` (the raw regressor), depth 2 when
    the regressor is passed through *curve*.  *to_status* restricts the
    entry to a single coefficient row.
    """

    regressor: Member
    curve: Curve | None = None
    to_status: Member | None = None

    @property
    def depth(self) -> int:
        return 1 if self.curve is None else 2

    @property
    def is_plain(self) -> bool:
        """Unrestricted raw regressor."""
        return self.curve is None and self.to_status is None

    @property
    def curve_param_count(self) -> int:
        return 0 if self.curve is None else self.curve.param_count

    @property
    def label(self) -> str:
        base = self.regressor.name
        if self.curve is not None:
            base = f"{self.curve.curve_type.value}({base})"
        if self.to_status is not None:
            base = f"{base}->{self.to_status.name}"
        return base


# ------------------------------------------------------------------ #
# ModelParameters
# ------------------------------------------------------------------ #


class ModelParameters:
    """Immutable snapshot of a transition model for one origin status.

    Args:
        statuses: The status family.
        from_status: Originating status (member, name or ordinal).
        intercept: Regressor member standing for the constant term.

    Raises:
        ValueError: If the origin reaches fewer than two statuses.
    """

    def __init__(
        self,
        statuses: StatusFamily,
        from_status: Member | str | int,
        intercept: Member,
    ) -> None:
        origin = statuses.member(from_status)
        reachable = statuses.reachable(origin)
        if len(reachable) < 2:
            msg = (
                f"Status '{origin.name}' reaches {len(reachable)} status(es); "
                "a transition model needs at least two."
            )
            raise ValueError(msg)
        self._init(
            statuses,
            origin,
            intercept,
            (ModelEntry(intercept),),
            np.zeros((len(reachable) - 1, 1), dtype=np.float64),
        )

    def _init(
        self,
        statuses: StatusFamily,
        origin: Member,
        intercept: Member,
        entries: tuple[ModelEntry, ...],
        betas: np.ndarray,
    ) -> None:
        self._statuses = statuses
        self._origin = origin
        self._intercept = intercept
        self._entries = entries
        self._reachable = statuses.reachable(origin)
        self._baseline = statuses.baseline(origin)
        self._beta_statuses = tuple(s for s in self._reachable if s != self._baseline)
        self._rows = {s: i for i, s in enumerate(self._beta_statuses)}
        betas = np.array(betas, dtype=np.float64)
        betas.setflags(write=False)
        self._betas = betas

    @classmethod
    def _derive(
        cls,
        source: ModelParameters,
        entries: tuple[ModelEntry, ...],
        betas: np.ndarray,
    ) -> ModelParameters:
        out = cls.__new__(cls)
        out._init(source._statuses, source._origin, source._intercept, entries, betas)
        return out

    # ---- Structure -----------------------------------------------

    @property
    def status_family(self) -> StatusFamily:
        return self._statuses

    @property
    def from_status(self) -> Member:
        return self._origin

    @property
    def intercept(self) -> Member:
        return self._intercept

    @property
    def intercept_index(self) -> int:
        return 0

    @property
    def reachable(self) -> tuple[Member, ...]:
        return self._reachable

    @property
    def baseline(self) -> Member:
        return self._baseline

    @property
    def baseline_index(self) -> int:
        """Position of the baseline in :attr:`reachable`."""
        return self._reachable.index(self._baseline)

    @property
    def beta_statuses(self) -> tuple[Member, ...]:
        """Reachable statuses owning a coefficient row, in row order."""
        return self._beta_statuses

    @property
    def entries(self) -> tuple[ModelEntry, ...]:
        return self._entries

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    @property
    def betas(self) -> np.ndarray:
        """Read-only ``(reachable − 1, entries)`` coefficient matrix."""
        return self._betas

    @property
    def regressors(self) -> tuple[Member, ...]:
        """Distinct regressors used by any entry, in entry order."""
        return tuple(dict.fromkeys(e.regressor for e in self._entries))

    def status_row(self, to_status: Member | str | int) -> int:
        """Coefficient row of *to_status*.

        Raises:
            ValueError: If *to_status* is the baseline or unreachable.
        """
        status = self._statuses.member(to_status)
        try:
            return self._rows[status]
        except KeyError:
            if status == self._baseline:
                msg = (
                    f"Status '{status.name}' is the baseline of "
                    f"'{self._origin.name}' and has no coefficients."
                )
            else:
                msg = (
                    f"Status '{status.name}' is not reachable from "
                    f"'{self._origin.name}'."
                )
            raise ValueError(msg) from None

    def entry(self, index: int) -> ModelEntry:
        self._check_entry_index(index)
        return self._entries[index]

    def entry_index(self, entry: ModelEntry) -> int:
        """Index of a structurally equal entry, or -1."""
        try:
            return self._entries.index(entry)
        except ValueError:
            return -1

    def entry_status_restrict(self, index: int) -> Member | None:
        return self.entry(index).to_status

    def beta(self, to_status: Member | str | int, entry: int) -> float:
        self._check_entry_index(entry)
        return float(self._betas[self.status_row(to_status), entry])

    def beta_is_frozen(self, row: int, entry: int) -> bool:
        """Whether cell ``(row, entry)`` is structurally pinned at zero."""
        restrict = self._entries[entry].to_status
        return restrict is not None and self._rows[restrict] != row

    @property
    def effective_param_count(self) -> int:
        """Free coefficient cells plus curve parameters."""
        rows = len(self._beta_statuses)
        count = 0
        for entry in self._entries:
            count += 1 if entry.to_status is not None else rows
            count += entry.curve_param_count
        return count

    def flag_set(self) -> frozenset[Member]:
        """Regressors present as plain (uncurved, unrestricted) entries."""
        return frozenset(e.regressor for e in self._entries if e.is_plain)

    def curve_is_forbidden(self, entry: ModelEntry) -> bool:
        """Whether adding *entry* would duplicate existing structure."""
        if entry.is_plain and entry.regressor in self.flag_set():
            return True
        return self.entry_index(entry) >= 0

    # ---- Structural edits ----------------------------------------

    def add_entry(
        self,
        entry: ModelEntry,
        betas: Mapping[Member, float] | None = None,
    ) -> ModelParameters:
        """Return a copy with *entry* appended.

        Args:
            entry: The new basis term.
            betas: Optional starting coefficients keyed by to-status.
                Missing statuses start at zero.

        Raises:
            ValueError: If the entry already exists, restricts to the
                baseline or an unreachable status, or *betas* sets a
                frozen cell.
        """
        if self.entry_index(entry) >= 0:
            msg = f"Entry '{entry.label}' is already part of the model."
            raise ValueError(msg)
        if entry.regressor == self._intercept:
            msg = "The intercept regressor can only appear in the intercept entry."
            raise ValueError(msg)
        if entry.to_status is not None:
            self.status_row(entry.to_status)
        column = np.zeros((len(self._beta_statuses), 1), dtype=np.float64)
        entries = (*self._entries, entry)
        expanded = ModelParameters._derive(
            self, entries, np.hstack([self._betas, column])
        )
        if not betas:
            return expanded
        builder = expanded.builder()
        for status, value in betas.items():
            builder.set_beta(len(entries) - 1, status, value)
        return builder.build()

    def add_beta(self, regressor: Member) -> ModelParameters:
        """Return a copy with a plain entry for *regressor*."""
        return self.add_entry(ModelEntry(regressor))

    def add_curve_entry(
        self,
        regressor: Member,
        curve: Curve,
        to_status: Member | str | int,
        beta: float = 0.0,
    ) -> ModelParameters:
        """Return a copy with ``curve(regressor)`` restricted to *to_status*."""
        status = self._statuses.member(to_status)
        entry = ModelEntry(regressor, curve, status)
        return self.add_entry(entry, {status: beta} if beta else None)

    def drop_entry(self, index: int) -> ModelParameters:
        """Return a copy without entry *index*.

        Raises:
            ValueError: If *index* is the intercept.
            IndexError: If *index* is out of range.
        """
        self._check_entry_index(index)
        if index == self.intercept_index:
            msg = "The intercept entry cannot be dropped."
            raise ValueError(msg)
        entries = self._entries[:index] + self._entries[index + 1 :]
        return ModelParameters._derive(
            self, entries, np.delete(self._betas, index, axis=1)
        )

    def with_curve(self, index: int, curve: Curve) -> ModelParameters:
        """Return a copy whose entry *index* uses *curve*."""
        return self.builder().set_curve(index, curve).build()

    def updated(
        self, triples: Iterable[tuple[int, Member | str | int, float]]
    ) -> ModelParameters:
        """Return a copy with ``(entry, to_status, value)`` triples applied."""
        builder = self.builder()
        for entry, to_status, value in triples:
            builder.set_beta(entry, to_status, value)
        return builder.build()

    def builder(self) -> ParametersBuilder:
        return ParametersBuilder(self)

    def _check_entry_index(self, index: int) -> None:
        if not 0 <= index < len(self._entries):
            msg = (
                f"Entry index {index} out of range for a model with "
                f"{len(self._entries)} entries."
            )
            raise IndexError(msg)

    # ---- Identity ------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModelParameters):
            return NotImplemented
        return (
            self._statuses.family_id == other._statuses.family_id
            and self._origin == other._origin
            and self._intercept == other._intercept
            and self._entries == other._entries
            and self._betas.shape == other._betas.shape
            and self._betas.tobytes() == other._betas.tobytes()
        )

    def __hash__(self) -> int:
        return hash((self._origin, self._entries, self._betas.tobytes()))

    def __repr__(self) -> str:
        labels = ", ".join(e.label for e in self._entries)
        return (
            f"ModelParameters(from={self._origin.name!r}, "
            f"entries=[{labels}], params={self.effective_param_count})"
        )

    def describe(self) -> str:
        """Multi-line table of entries and coefficients."""
        header = ["entry".ljust(28)] + [s.name.rjust(12) for s in self._beta_statuses]
        lines = [" ".join(header)]
        for i, entry in enumerate(self._entries):
            cells = []
            for row in range(len(self._beta_statuses)):
                if self.beta_is_frozen(row, i):
                    cells.append("-".rjust(12))
                else:
                    cells.append(f"{self._betas[row, i]:12.5g}")
            lines.append(" ".join([entry.label[:28].ljust(28), *cells]))
        return "\n".join(lines)

    # ---- Serialisation -------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Plain-data snapshot (JSON-serialisable)."""

        def ref(member: Member) -> dict[str, str]:
            return {"family": member.family_id, "name": member.name}

        return {
            "status_family": self._statuses.family_id,
            "from_status": self._origin.name,
            "intercept": ref(self._intercept),
            "entries": [
                {
                    "regressor": ref(e.regressor),
                    "curve": None if e.curve is None else e.curve.to_dict(),
                    "to_status": None if e.to_status is None else e.to_status.name,
                }
                for e in self._entries
            ],
            "betas": self._betas.tolist(),
        }

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], registry: FamilyRegistry
    ) -> ModelParameters:
        """Rebuild parameters from :meth:`to_dict` output.

        Raises:
            ValueError: If a family or member is unknown, the intercept
                entry is missing, or the coefficient matrix has the
                wrong shape.
        """
        statuses = registry.status_family(data["status_family"])

        def deref(ref: Mapping[str, str]) -> Member:
            return registry.member(ref["family"], ref["name"])

        base = cls(statuses, data["from_status"], deref(data["intercept"]))
        entries = []
        for raw in data["entries"]:
            curve = raw.get("curve")
            to_status = raw.get("to_status")
            entries.append(
                ModelEntry(
                    deref(raw["regressor"]),
                    None if curve is None else generate_curve(curve["type"], curve["params"]),
                    None if to_status is None else statuses.member(to_status),
                )
            )
        if not entries or entries[0] != ModelEntry(base.intercept):
            msg = "Serialised parameters must start with the intercept entry."
            raise ValueError(msg)
        betas = np.asarray(data["betas"], dtype=np.float64).reshape(
            len(base.beta_statuses), -1
        )
        if betas.shape[1] != len(entries):
            msg = (
                f"Coefficient matrix has {betas.shape[1]} columns for "
                f"{len(entries)} entries."
            )
            raise ValueError(msg)
        for entry in entries[1:]:
            if entry.regressor == base.intercept:
                msg = "The intercept regressor can only appear in the intercept entry."
                raise ValueError(msg)
            if entry.to_status is not None:
                base.status_row(entry.to_status)
        return cls._derive(base, tuple(entries), betas)

    def dumps(self) -> bytes:
        """Opaque serialised blob."""
        return gzip.compress(json.dumps(self.to_dict()).encode("utf-8"))

    @classmethod
    def loads(cls, blob: bytes, registry: FamilyRegistry) -> ModelParameters:
        """Inverse of :meth:`dumps`."""
        return cls.from_dict(json.loads(gzip.decompress(blob).decode("utf-8")), registry)


# ------------------------------------------------------------------ #
# ParametersBuilder
# ------------------------------------------------------------------ #


class ParametersBuilder:
    """Collects coefficient and curve updates for a new parameter set."""

    def __init__(self, params: ModelParameters) -> None:
        self._params = params
        self._betas = np.array(params.betas, dtype=np.float64)
        self._curves: dict[int, Curve] = {}

    def set_beta(
        self, entry: int, to_status: Member | str | int, value: float
    ) -> ParametersBuilder:
        """Set the coefficient of *entry* for *to_status*.

        Raises:
            ValueError: If the cell is frozen and *value* is non-zero,
                or the status has no coefficient row.
        """
        row = self._params.status_row(to_status)
        return self.set_cell(row, entry, value)

    def set_cell(self, row: int, entry: int, value: float) -> ParametersBuilder:
        """Set coefficient ``(row, entry)`` directly by position."""
        self._params._check_entry_index(entry)
        if not 0 <= row < self._betas.shape[0]:
            msg = f"Coefficient row {row} out of range."
            raise IndexError(msg)
        if value != 0.0 and self._params.beta_is_frozen(row, entry):
            msg = (
                f"Entry '{self._params.entries[entry].label}' is restricted; "
                f"row {row} must stay zero."
            )
            raise ValueError(msg)
        self._betas[row, entry] = value
        return self

    def set_curve(self, entry: int, curve: Curve) -> ParametersBuilder:
        """Replace the curve of *entry* (same type required)."""
        current = self._params.entry(entry).curve
        if current is None:
            msg = f"Entry {entry} has no curve to replace."
            raise ValueError(msg)
        if curve.curve_type is not current.curve_type:
            msg = (
                f"Entry {entry} uses a {current.curve_type.name} curve, "
                f"got {curve.curve_type.name}."
            )
            raise ValueError(msg)
        self._curves[entry] = curve
        return self

    def build(self) -> ModelParameters:
        entries = self._params.entries
        if self._curves:
            entries = tuple(
                ModelEntry(e.regressor, self._curves[i], e.to_status)
                if i in self._curves
                else e
                for i, e in enumerate(entries)
            )
        return ModelParameters._derive(self._params, entries, self._betas)


# ------------------------------------------------------------------ #
# Parameter filters
# ------------------------------------------------------------------ #


@runtime_checkable
class ParamFilter(Protocol):
    """Decides which coefficient cells and curves a fit may move."""

    def beta_is_frozen(self, params: ModelParameters, row: int, entry: int) -> bool:
        """``True`` when cell ``(row, entry)`` must keep its value."""
        ...

    def curve_is_frozen(self, params: ModelParameters, entry: int) -> bool:
        """``True`` when the curve parameters of *entry* must keep their values."""
        ...


class UniqueBetaFilter:
    """Freezes the cells a status restriction pins at zero."""

    def beta_is_frozen(self, params: ModelParameters, row: int, entry: int) -> bool:
        return params.beta_is_frozen(row, entry)

    def curve_is_frozen(self, params: ModelParameters, entry: int) -> bool:
        return False


class BetaOnlyFilter:
    """Freezes every curve parameter."""

    def beta_is_frozen(self, params: ModelParameters, row: int, entry: int) -> bool:
        return False

    def curve_is_frozen(self, params: ModelParameters, entry: int) -> bool:
        return True


class EntryFilter:
    """Lets only the listed entry columns move.

    Args:
        entries: Entry indices whose cells (and curves) stay free.
        include_curves: When ``False`` curve parameters are frozen too.
    """

    def __init__(self, entries: Sequence[int], include_curves: bool = True) -> None:
        self._entries = frozenset(int(e) for e in entries)
        self._include_curves = include_curves

    def beta_is_frozen(self, params: ModelParameters, row: int, entry: int) -> bool:
        return entry not in self._entries

    def curve_is_frozen(self, params: ModelParameters, entry: int) -> bool:
        return not self._include_curves or entry not in self._entries


class CurveEntryFilter:
    """Frees one entry, its curve and the intercept of its to-status row.

    Used when calibrating a freshly added curve: only the new term and
    the offset it shifts move.
    """

    def __init__(
        self, entry: int, to_status: Member, include_curve: bool = True
    ) -> None:
        self._entry = entry
        self._to_status = to_status
        self._include_curve = include_curve

    def beta_is_frozen(self, params: ModelParameters, row: int, entry: int) -> bool:
        if entry == self._entry:
            return False
        if entry == params.intercept_index:
            return row != params.status_row(self._to_status)
        return True

    def curve_is_frozen(self, params: ModelParameters, entry: int) -> bool:
        return not self._include_curve or entry != self._entry
