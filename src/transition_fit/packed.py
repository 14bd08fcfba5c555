"""Packed parameters: the optimizer-facing flat vector.

A :class:`PackedParameters` is a bijection between a subset of the
model's free quantities and positions ``0 … size-1`` of a dense
vector.  Each position is described by a :class:`ParameterSlot`:

* a **beta slot** points at coefficient cell ``(row, entry)``,
* a **curve slot** points at parameter ``curve_index`` of the curve
  on ``entry``.

Which quantities get a slot is decided by parameter filters
(:class:`~transition_fit.params.ParamFilter`).  The structural
:class:`~transition_fit.params.UniqueBetaFilter` is always applied, so
a packed vector never exposes a cell a status restriction pins at zero.
Every other quantity keeps the value it has in the source parameters.

Slots are ordered entry by entry: the entry's coefficient rows first,
then its curve parameters.  A packed instance lives for a single
optimizer invocation; :meth:`PackedParameters.reduce` narrows it to an
active subset (what the fitters call a reduced vector).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from .families import Member
from .params import ModelParameters, ParamFilter, UniqueBetaFilter


@dataclass(frozen=True)
class ParameterSlot:
    """Location of one packed value inside :class:`ModelParameters`."""

    entry: int
    row: int = -1
    curve_index: int = -1
    to_status: Member | None = None

    @property
    def is_beta(self) -> bool:
        return self.curve_index < 0


class PackedParameters:
    """Flat view over the free quantities of a :class:`ModelParameters`."""

    def __init__(self, params: ModelParameters, slots: Sequence[ParameterSlot]) -> None:
        self._params = params
        self._slots = tuple(slots)
        self._beta_index = {
            (s.row, s.entry): i for i, s in enumerate(self._slots) if s.is_beta
        }
        self._curve_slots = {
            (s.entry, s.curve_index): i
            for i, s in enumerate(self._slots)
            if not s.is_beta
        }

    @classmethod
    def generate(
        cls, params: ModelParameters, *filters: ParamFilter
    ) -> PackedParameters:
        """Pack every quantity no filter freezes."""
        active: list[ParamFilter] = [UniqueBetaFilter(), *filters]
        slots: list[ParameterSlot] = []
        statuses = params.beta_statuses
        for entry_index, entry in enumerate(params.entries):
            for row, status in enumerate(statuses):
                if any(f.beta_is_frozen(params, row, entry_index) for f in active):
                    continue
                slots.append(ParameterSlot(entry_index, row=row, to_status=status))
            if entry.curve is None:
                continue
            if any(f.curve_is_frozen(params, entry_index) for f in active):
                continue
            for k in range(entry.curve.param_count):
                slots.append(ParameterSlot(entry_index, curve_index=k))
        return cls(params, slots)

    # ---- Introspection -------------------------------------------

    @property
    def params(self) -> ModelParameters:
        """The parameters the vector was packed from."""
        return self._params

    @property
    def slots(self) -> tuple[ParameterSlot, ...]:
        return self._slots

    @property
    def size(self) -> int:
        return len(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def is_beta(self, index: int) -> bool:
        return self._slots[index].is_beta

    def find_beta_index(self, row: int, entry: int) -> int:
        """Position of cell ``(row, entry)``, or -1 when not packed."""
        return self._beta_index.get((row, entry), -1)

    def find_curve_index(self, entry: int, curve_index: int) -> int:
        """Position of curve parameter ``curve_index`` of *entry*, or -1."""
        return self._curve_slots.get((entry, curve_index), -1)

    def curve_entries(self) -> tuple[int, ...]:
        """Entries with at least one packed curve parameter."""
        return tuple(sorted({entry for entry, _ in self._curve_slots}))

    # ---- Values --------------------------------------------------

    def values(self) -> np.ndarray:
        """Current values of the packed quantities."""
        betas = self._params.betas
        entries = self._params.entries
        out = np.empty(len(self._slots), dtype=np.float64)
        for i, slot in enumerate(self._slots):
            if slot.is_beta:
                out[i] = betas[slot.row, slot.entry]
            else:
                curve = entries[slot.entry].curve
                assert curve is not None
                out[i] = curve.params[slot.curve_index]
        return out

    def generate_params(self, x: np.ndarray) -> ModelParameters:
        """Parameters with the packed quantities replaced by *x*.

        Raises:
            ValueError: If *x* does not have :attr:`size` elements.
        """
        x = np.asarray(x, dtype=np.float64)
        if x.shape != (len(self._slots),):
            msg = f"Expected a vector of length {len(self._slots)}, got shape {x.shape}."
            raise ValueError(msg)
        builder = self._params.builder()
        curve_values: dict[int, list[float]] = {}
        entries = self._params.entries
        for value, slot in zip(x, self._slots):
            if slot.is_beta:
                builder.set_cell(slot.row, slot.entry, float(value))
                continue
            if slot.entry not in curve_values:
                curve = entries[slot.entry].curve
                assert curve is not None
                curve_values[slot.entry] = list(curve.params)
            curve_values[slot.entry][slot.curve_index] = float(value)
        for entry_index, values in curve_values.items():
            curve = entries[entry_index].curve
            assert curve is not None
            builder.set_curve(entry_index, curve.with_params(values))
        return builder.build()

    def reduce(self, active: Sequence[bool] | np.ndarray) -> PackedParameters:
        """Keep only the slots flagged in *active*.

        Raises:
            ValueError: If the mask has the wrong length or selects
                nothing.
        """
        mask = np.asarray(active, dtype=bool)
        if mask.shape != (len(self._slots),):
            msg = (
                f"Active mask has shape {mask.shape}, expected "
                f"({len(self._slots)},)."
            )
            raise ValueError(msg)
        if not mask.any():
            msg = "Active mask selects no parameters."
            raise ValueError(msg)
        return PackedParameters(
            self._params, [s for s, keep in zip(self._slots, mask) if keep]
        )

    def __repr__(self) -> str:
        betas = sum(1 for s in self._slots if s.is_beta)
        return (
            f"PackedParameters(size={len(self._slots)}, betas={betas}, "
            f"curve_params={len(self._slots) - betas})"
        )
