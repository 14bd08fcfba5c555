"""Category families: statuses and regressors as closed, ordered sets.

A *family* is an ordered, name-unique set of members.  Every member
carries a dense 0-based ordinal equal to its position and a name.
Two concrete flavours exist:

* :class:`CategoryFamily` — plain named members (regressors).
* :class:`StatusFamily` — members that additionally carry a
  *reachable* successor list and an *indistinguishable* class
  (statuses that collapse to the same observable label).

Ownership model
~~~~~~~~~~~~~~~
Members never point back at their family.  A :class:`Member` stores
only ``(family_id, ordinal, name)``; resolving "the family of this
member" is a lookup on an explicit :class:`FamilyRegistry`.  The
registry is passed to every call site that rebuilds members from
plain data (deserialisation in particular), so there is no
process-wide interning cache.

Indistinguishable statuses
~~~~~~~~~~~~~~~~~~~~~~~~~~
The evaluator sums the probability mass of an indistinguishable class
before taking the log.  Classes must therefore be symmetric, contain
their own status and occupy a contiguous run of ordinals.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass

# ------------------------------------------------------------------ #
# Members
# ------------------------------------------------------------------ #


@dataclass(frozen=True, order=True)
class Member:
    """A single member of a category family.

    Equality, ordering and hashing are structural over
    ``(family_id, ordinal, name)``.
    """

    family_id: str
    ordinal: int
    name: str

    def __str__(self) -> str:
        return self.name


# ------------------------------------------------------------------ #
# CategoryFamily
# ------------------------------------------------------------------ #


class CategoryFamily:
    """Closed, ordered set of uniquely named members.

    Args:
        family_id: Identifier used by :class:`FamilyRegistry` lookups.
        names: Member names in ordinal order.

    Raises:
        ValueError: If *names* is empty or contains duplicates or
            blank names.
    """

    def __init__(self, family_id: str, names: Sequence[str]) -> None:
        if not family_id:
            msg = "family_id must be a non-empty string."
            raise ValueError(msg)
        names = list(names)
        if not names:
            msg = f"Family '{family_id}' must have at least one member."
            raise ValueError(msg)
        seen: set[str] = set()
        for name in names:
            if not isinstance(name, str) or not name:
                msg = f"Family '{family_id}' has an invalid member name {name!r}."
                raise ValueError(msg)
            if name in seen:
                msg = f"Family '{family_id}' has duplicate member '{name}'."
                raise ValueError(msg)
            seen.add(name)

        self._family_id = family_id
        self._members = tuple(
            Member(family_id, ordinal, name) for ordinal, name in enumerate(names)
        )
        self._by_name = {m.name: m for m in self._members}

    @classmethod
    def from_members(cls, members: Sequence[Member]) -> CategoryFamily:
        """Rebuild a family from members, validating their ordinals.

        Raises:
            ValueError: If the members span several families or their
                ordinals are not ``0, 1, 2, …`` in order.
        """
        if not members:
            msg = "Cannot build a family from an empty member list."
            raise ValueError(msg)
        family_id = members[0].family_id
        for position, member in enumerate(members):
            if member.family_id != family_id:
                msg = (
                    f"Member '{member.name}' belongs to family "
                    f"'{member.family_id}', expected '{family_id}'."
                )
                raise ValueError(msg)
            if member.ordinal != position:
                msg = (
                    f"Member '{member.name}' has ordinal {member.ordinal} "
                    f"at position {position}; ordinals must be contiguous "
                    "and in order."
                )
                raise ValueError(msg)
        return cls(family_id, [m.name for m in members])

    # ---- Introspection -------------------------------------------

    @property
    def family_id(self) -> str:
        return self._family_id

    @property
    def members(self) -> tuple[Member, ...]:
        return self._members

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(m.name for m in self._members)

    @property
    def size(self) -> int:
        return len(self._members)

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[Member]:
        return iter(self._members)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Member):
            return (
                item.family_id == self._family_id
                and 0 <= item.ordinal < len(self._members)
                and self._members[item.ordinal] == item
            )
        if isinstance(item, str):
            return item in self._by_name
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._family_id!r}, {list(self.names)!r})"

    # ---- Lookup --------------------------------------------------

    def member(self, key: int | str | Member) -> Member:
        """Look up a member by ordinal, name or (validated) member.

        Raises:
            ValueError: If no such member exists in this family.
        """
        if isinstance(key, Member):
            if key not in self:
                msg = f"{key!r} is not a member of family '{self._family_id}'."
                raise ValueError(msg)
            return key
        if isinstance(key, str):
            try:
                return self._by_name[key]
            except KeyError:
                msg = f"Unknown member '{key}' in family '{self._family_id}'."
                raise ValueError(msg) from None
        ordinal = int(key)
        if not 0 <= ordinal < len(self._members):
            msg = (
                f"Ordinal {ordinal} out of range for family "
                f"'{self._family_id}' of size {len(self._members)}."
            )
            raise ValueError(msg)
        return self._members[ordinal]


# ------------------------------------------------------------------ #
# StatusFamily
# ------------------------------------------------------------------ #


class StatusFamily(CategoryFamily):
    """Status family with reachable and indistinguishable structure.

    Args:
        family_id: Identifier used by registry lookups.
        names: Status names in ordinal order.
        reachable: Optional mapping ``status -> successor names``.
            Statuses that are not listed can reach every status.
        indistinguishable: Optional mapping ``status -> names`` of the
            statuses sharing its observable label.  Statuses that are
            not listed are only indistinguishable from themselves.

    Raises:
        ValueError: If a mapping names an unknown status, repeats a
            successor, or an indistinguishable class is not symmetric,
            does not contain its own status, or is not contiguous.
    """

    def __init__(
        self,
        family_id: str,
        names: Sequence[str],
        *,
        reachable: Mapping[str, Sequence[str]] | None = None,
        indistinguishable: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        super().__init__(family_id, names)
        reachable = reachable or {}
        indistinguishable = indistinguishable or {}

        for key in list(reachable) + list(indistinguishable):
            self.member(key)

        self._reachable: tuple[tuple[Member, ...], ...] = tuple(
            self._build_reachable(m, reachable.get(m.name)) for m in self.members
        )
        self._indistinguishable: tuple[tuple[Member, ...], ...] = tuple(
            self._build_indistinguishable(m, indistinguishable.get(m.name))
            for m in self.members
        )
        self._check_indistinguishable()

    def _build_reachable(
        self, status: Member, names: Sequence[str] | None
    ) -> tuple[Member, ...]:
        if names is None:
            return self.members
        members = tuple(self.member(n) for n in names)
        if not members:
            msg = f"Status '{status.name}' must reach at least one status."
            raise ValueError(msg)
        if len(set(members)) != len(members):
            msg = f"Status '{status.name}' lists a reachable status twice."
            raise ValueError(msg)
        return members

    def _build_indistinguishable(
        self, status: Member, names: Sequence[str] | None
    ) -> tuple[Member, ...]:
        if names is None:
            return (status,)
        members = tuple(sorted({self.member(n) for n in names}))
        if status not in members:
            msg = (
                f"Indistinguishable class of '{status.name}' must contain "
                "the status itself."
            )
            raise ValueError(msg)
        ordinals = [m.ordinal for m in members]
        if ordinals != list(range(ordinals[0], ordinals[0] + len(ordinals))):
            msg = (
                f"Indistinguishable class of '{status.name}' must occupy "
                f"contiguous ordinals, got {ordinals}."
            )
            raise ValueError(msg)
        return members

    def _check_indistinguishable(self) -> None:
        for status in self.members:
            group = self._indistinguishable[status.ordinal]
            for other in group:
                if self._indistinguishable[other.ordinal] != group:
                    msg = (
                        f"Indistinguishable relation is not symmetric between "
                        f"'{status.name}' and '{other.name}'."
                    )
                    raise ValueError(msg)

    # ---- Structure -----------------------------------------------

    def reachable(self, status: int | str | Member) -> tuple[Member, ...]:
        """Ordered successors of *status*."""
        return self._reachable[self.member(status).ordinal]

    def indistinguishable(self, status: int | str | Member) -> tuple[Member, ...]:
        """Statuses sharing the observable label of *status*, by ordinal."""
        return self._indistinguishable[self.member(status).ordinal]

    def baseline(self, status: int | str | Member) -> Member:
        """Reachable status whose linear predictor is pinned at zero.

        The origin itself when it is reachable, otherwise the first
        reachable status.
        """
        origin = self.member(status)
        successors = self.reachable(origin)
        return origin if origin in successors else successors[0]

    def reachable_index(
        self, status: int | str | Member, target: int | str | Member
    ) -> int:
        """Position of *target* in the reachable list of *status*, or -1."""
        target_member = self.member(target)
        try:
            return self.reachable(status).index(target_member)
        except ValueError:
            return -1


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #


class FamilyRegistry:
    """Explicit lookup table from family id to family.

    Replaces ambient interning: code that turns plain data back into
    members (e.g. :meth:`~transition_fit.params.ModelParameters.loads`)
    receives a registry and resolves members through it.
    """

    def __init__(self, families: Sequence[CategoryFamily] = ()) -> None:
        self._families: dict[str, CategoryFamily] = {}
        for family in families:
            self.register(family)

    def register(self, family: CategoryFamily) -> CategoryFamily:
        """Register *family* under its id and return it.

        Re-registering the same object is a no-op.

        Raises:
            TypeError: If *family* is not a :class:`CategoryFamily`.
            ValueError: If a different family already uses the id.
        """
        if not isinstance(family, CategoryFamily):
            msg = f"Expected a CategoryFamily, got {type(family).__name__}."
            raise TypeError(msg)
        existing = self._families.get(family.family_id)
        if existing is not None and existing is not family:
            msg = f"Family id '{family.family_id}' is already registered."
            raise ValueError(msg)
        self._families[family.family_id] = family
        return family

    def family(self, family_id: str) -> CategoryFamily:
        """Return the family registered under *family_id*."""
        try:
            return self._families[family_id]
        except KeyError:
            available = ", ".join(sorted(self._families)) or "(none registered)"
            msg = f"Unknown family {family_id!r}.  Registered families: {available}."
            raise ValueError(msg) from None

    def status_family(self, family_id: str) -> StatusFamily:
        """Like :meth:`family` but requires a :class:`StatusFamily`."""
        family = self.family(family_id)
        if not isinstance(family, StatusFamily):
            msg = f"Family {family_id!r} is not a status family."
            raise TypeError(msg)
        return family

    def member(self, family_id: str, key: int | str) -> Member:
        """Resolve a member by family id and ordinal or name."""
        return self.family(family_id).member(key)

    def family_of(self, member: Member) -> CategoryFamily:
        """Return the family owning *member* (validated)."""
        family = self.family(member.family_id)
        family.member(member)
        return family

    def __contains__(self, family_id: object) -> bool:
        return family_id in self._families

    def __iter__(self) -> Iterator[CategoryFamily]:
        return iter(self._families.values())
