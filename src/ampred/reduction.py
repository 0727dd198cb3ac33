"""Persistent, conflict-checked storage of reduction rules.

A reduction rule expresses an integral `.B` as a linear combination of other integrals,
ultimately of *master integrals*. Rules of a calculation are collected from several
sources (different families, different runs of a reduction engine, files on disk) into a
`ReductionRuleStore`. The store only grows: a key that has a rule keeps that rule, and a
new rule that disagrees with an existing one is rejected with a `RuleConflictError`.

.. autolink-preface::

    import sympy as sp
    from ampred.integrals import B
    from ampred.reduction import ReductionRuleStore
"""

from __future__ import annotations

import logging
from collections import ChainMap, abc, defaultdict
from typing import TYPE_CHECKING, Callable

import sympy as sp
from attrs import frozen

from ampred.integrals import B, linear_coefficients, sort_key

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping
    from pathlib import Path

_LOGGER = logging.getLogger(__name__)


class RuleConflictError(ValueError):
    """A rule disagrees with a rule or master integral that is already known."""


class RuleCycleError(ValueError):
    """Resolving an integral leads back to the same integral."""


class MalformedRuleError(ValueError):
    """A rule is not of the form `.B` to a linear combination of `.B` integrals."""


class UnknownMasterError(ValueError):
    """A rule refers to integrals that have not been declared as master integrals."""


@frozen
class LoadReport:
    """Number of new and of duplicate rules that were encountered in a load."""

    inserted: int
    duplicates: int


class _Resolver:
    """Substitute rules recursively, with memoization of the resolved integrals."""

    def __init__(self, rules: Mapping[B, sp.Expr]) -> None:
        self.__rules = rules
        self.__cache: dict[B, sp.Expr] = {}
        self.__dependents: dict[B, set[B]] = defaultdict(set)

    def apply(self, expr: sp.Basic) -> sp.Basic:
        substitutions = {
            key: self.resolve(key) for key in expr.atoms(B) if key in self.__rules
        }
        if not substitutions:
            return expr
        return expr.xreplace(substitutions)

    def resolve(self, key: B) -> sp.Expr:
        resolved = self.__cache.get(key)
        if resolved is not None:
            return resolved
        if key not in self.__rules:
            return key
        stack = [key]
        visiting = {key}
        while stack:
            current = stack[-1]
            value = self.__rules[current]
            pending = sorted(
                {k for k in value.atoms(B) if k in self.__rules}.difference(
                    self.__cache
                ),
                key=sort_key,
            )
            if pending:
                for k in pending:
                    if k in visiting:
                        msg = f"Cyclic reduction rules: {k} depends on itself"
                        raise RuleCycleError(msg)
                stack.append(pending[0])
                visiting.add(pending[0])
                continue
            stack.pop()
            visiting.discard(current)
            substitutions = {
                k: self.__cache[k] for k in value.atoms(B) if k in self.__rules
            }
            resolved = value.xreplace(substitutions) if substitutions else value
            self.__cache[current] = resolved
            for leaf in resolved.atoms(B):
                self.__dependents[leaf].add(current)
        return self.__cache[key]

    def invalidate(self, keys: Iterable[B]) -> None:
        """Drop cached resolutions that refer to integrals that got a new rule."""
        for key in keys:
            self.__cache.pop(key, None)
            for dependent in self.__dependents.pop(key, ()):
                self.__cache.pop(dependent, None)

    def clear(self) -> None:
        self.__cache.clear()
        self.__dependents.clear()


def _check_key(key: object) -> B:
    if not isinstance(key, B):
        msg = f"Reduction rule keys have to be integrals B(...), got {key!r}"
        raise MalformedRuleError(msg)
    return key


def _check_rule(key: object, value: object) -> tuple[B, sp.Expr]:
    key = _check_key(key)
    if isinstance(value, str):
        msg = f"Value of the rule for {key} has to be a sympy expression, not a str"
        raise MalformedRuleError(msg)
    try:
        expr = sp.sympify(value, strict=True)
    except sp.SympifyError as exc:
        msg = f"Cannot interpret value of the rule for {key}: {value!r}"
        raise MalformedRuleError(msg) from exc
    if expr.atoms(sp.Float):
        msg = f"Rule for {key} contains floating point numbers: {expr}"
        raise MalformedRuleError(msg)
    try:
        coefficients = linear_coefficients(expr)
    except ValueError as exc:
        msg = f"Rule for {key} is not a linear combination of integrals: {expr}"
        raise MalformedRuleError(msg) from exc
    remainder = coefficients.get(sp.S.One, sp.S.Zero)
    if sp.cancel(remainder) != 0:
        msg = f"Rule for {key} contains terms without integrals: {remainder}"
        raise MalformedRuleError(msg)
    return key, expr


def _are_equal(expr1: sp.Expr, expr2: sp.Expr) -> bool:
    for coefficient in linear_coefficients(expr1 - expr2).values():
        if sp.cancel(coefficient) == 0:
            continue
        if sp.simplify(coefficient) != 0:
            return False
    return True


class ReductionRuleStore(abc.Mapping):
    """Named mapping of integrals to their reduction rules.

    Rules can only be added through `load` and `set`, which check new rules against
    the existing ones. Both operations insert either all or none of the given rules.

    >>> d = sp.Symbol("d")
    >>> store = ReductionRuleStore("example")
    >>> store.load({B(1, 2, 1): (d - 3) * B(1, 1, 1), B(1, 1, 1): B(1, 1, 0)})
    LoadReport(inserted=2, duplicates=0)
    >>> store.apply(B(1, 2, 1) + B(1, 0, 1)) == (d - 3) * B(1, 1, 0) + B(1, 0, 1)
    True
    >>> store.set(B(1, 1, 1), B(1, 1, 0))
    LoadReport(inserted=0, duplicates=1)
    """

    def __init__(
        self,
        name: str = "rules",
        rules: Mapping[B, sp.Expr] | Iterable[tuple[B, sp.Expr]] | None = None,
        masters: Iterable[B] | None = None,
    ) -> None:
        self.__name = name
        self.__rules: dict[B, sp.Expr] = {}
        self.__masters: set[B] = set()
        self.__resolver = _Resolver(self.__rules)
        if masters is not None:
            self.declare_masters(masters)
        if rules is not None:
            self.load(rules)

    @property
    def name(self) -> str:
        return self.__name

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.__name!r}, rules={len(self)},"
            f" masters={len(self.__masters)})"
        )

    def __getitem__(self, key: B) -> sp.Expr:
        return self.__rules[key]

    def __iter__(self) -> Iterator[B]:
        return iter(self.__rules)

    def __len__(self) -> int:
        return len(self.__rules)

    def __contains__(self, key: object) -> bool:
        return key in self.__rules

    def rules(self) -> dict[B, sp.Expr]:
        """Copy of the stored rules, in insertion order."""
        return dict(self.__rules)

    @property
    def masters(self) -> tuple[B, ...]:
        """Integrals that have been declared as master integrals, sorted."""
        return tuple(sorted(self.__masters, key=sort_key))

    def masters_used(self) -> tuple[B, ...]:
        """Integrals that remain on the right-hand side of the resolved rules."""
        used: set[B] = set()
        for key in self.__rules:
            used |= self.__resolver.resolve(key).atoms(B)
        return tuple(sorted(used, key=sort_key))

    def resolve(self, key: B) -> sp.Expr:
        """Value of an integral after substituting all rules recursively."""
        return self.__resolver.resolve(_check_key(key))

    def apply(self, expression: sp.Basic) -> sp.Basic:
        """Substitute all integrals in an expression for which there is a rule.

        Integrals without rule are left untouched.
        """
        return self.__resolver.apply(sp.sympify(expression))

    def declare_masters(self, keys: Iterable[B]) -> None:
        """Mark integrals as master integrals.

        Once masters have been declared, the resolved rules may only refer to master
        integrals.
        """
        keys = [_check_key(key) for key in keys]
        for key in keys:
            if key in self.__rules:
                msg = (
                    f"Cannot declare {key} a master integral, because it has a rule"
                    f" {key} -> {self.__rules[key]}"
                )
                raise RuleConflictError(msg)
        masters = self.__masters | set(keys)
        self.__check_masters(self.__resolver, self.__rules, masters)
        self.__masters = masters
        _LOGGER.info(f"{self.__name} has {len(masters)} master integrals")

    def set(self, key: B, value: sp.Expr) -> LoadReport:
        return self.load([(key, value)])

    def load(
        self, rules: Mapping[B, sp.Expr] | Iterable[tuple[B, sp.Expr]]
    ) -> LoadReport:
        """Insert rules after checking them against the existing rules.

        A rule for an integral that already has a rule is a duplicate if both rules
        resolve to the same expression and a conflict otherwise.

        Raises:
            MalformedRuleError: if a rule is not a linear combination of integrals.
            RuleConflictError: if a rule contradicts an existing rule or a master.
            RuleCycleError: if a rule would make an integral depend on itself.
            UnknownMasterError: if masters have been declared and a resolved rule
                refers to an integral that is not a master.
        """
        return self._load(rules, self.__masters)

    def _load(
        self,
        rules: Mapping[B, sp.Expr] | Iterable[tuple[B, sp.Expr]],
        masters: set[B],
    ) -> LoadReport:
        if isinstance(rules, abc.Mapping):
            rules = rules.items()
        staged: dict[B, sp.Expr] = {}
        chain = ChainMap(staged, self.__rules)
        resolver = _Resolver(chain)
        duplicates = 0
        for key, value in rules:
            key, value = _check_rule(key, value)
            if key in masters:
                if value == key:
                    duplicates += 1
                    continue
                msg = f"Cannot add rule {key} -> {value}, because {key} is a master"
                raise RuleConflictError(msg)
            if value.has(key):
                msg = f"Rule {key} -> {value} makes {key} depend on itself"
                raise RuleCycleError(msg)
            new_value = resolver.apply(value)
            if key in chain:
                old_value = resolver.resolve(key)
                if not _are_equal(old_value, new_value):
                    msg = (
                        f"Conflicting rules for {key}: existing rule resolves to"
                        f" {old_value}, new rule resolves to {new_value}"
                    )
                    raise RuleConflictError(msg)
                duplicates += 1
                continue
            if new_value.has(key):
                msg = f"Rule {key} -> {value} makes {key} depend on itself"
                raise RuleCycleError(msg)
            staged[key] = value
            resolver.invalidate([key])
        if masters == self.__masters:
            self.__check_masters(resolver, staged, masters)
        else:
            self.__check_masters(resolver, chain, masters)
        self.__rules.update(staged)
        self.__masters = set(masters)
        self.__resolver.invalidate(staged)
        report = LoadReport(inserted=len(staged), duplicates=duplicates)
        _LOGGER.info(
            f"Loaded {report.inserted} rules ({report.duplicates} duplicates)"
            f" into {self.__name}"
        )
        return report

    @staticmethod
    def __check_masters(
        resolver: _Resolver, keys: Iterable[B], masters: set[B]
    ) -> None:
        if not masters:
            return
        for key in keys:
            unknown = resolver.resolve(key).atoms(B) - masters
            if unknown:
                unknown_str = ", ".join(map(str, sorted(unknown, key=sort_key)))
                msg = f"Rule for {key} refers to non-master integrals {unknown_str}"
                raise UnknownMasterError(msg)

    def map_values(
        self, function: Callable[[sp.Expr], sp.Expr], name: str | None = None
    ) -> ReductionRuleStore:
        """Create a new store with a function applied to each resolved rule.

        >>> d = sp.Symbol("d")
        >>> store = ReductionRuleStore(rules={B(1, 1, 1): (d**2 - 1) / (d - 1) * B(1, 0, 1)})
        >>> store.map_values(sp.factor)[B(1, 1, 1)] == (d + 1) * B(1, 0, 1)
        True
        """
        if name is None:
            name = self.__name
        mapped = ReductionRuleStore(name, masters=self.__masters)
        mapped.load(
            (key, function(self.__resolver.resolve(key))) for key in self.__rules
        )
        return mapped

    def map_items(
        self,
        function: Callable[[B, sp.Expr], tuple[B, sp.Expr]],
        name: str | None = None,
    ) -> ReductionRuleStore:
        """Create a new store from the pairs of each key and its resolved rule.

        The function may rename integrals, for instance to move rules to another family,
        so the new store does not inherit the declared master integrals.

        >>> d = sp.Symbol("d")
        >>> store = ReductionRuleStore(rules={B(1, 1, 1): d * B(1, 1, 0)})
        >>> moved = store.map_items(lambda k, v: (B(3, *k.powers), v.subs(d, 4)))
        >>> moved.rules() == {B(3, 1, 1): 4 * B(1, 1, 0)}
        True
        """
        if name is None:
            name = self.__name
        mapped = ReductionRuleStore(name)
        mapped.load(
            function(key, self.__resolver.resolve(key)) for key in self.__rules
        )
        return mapped

    def clear(self) -> None:
        """Remove all rules and master integrals."""
        self.__rules.clear()
        self.__masters.clear()
        self.__resolver.clear()

    def save(self, filename: str | Path) -> None:
        """Write the rules to a JSON or YAML file, see `ampred.io.write`."""
        from ampred import io  # noqa: PLC0415

        io.write(self, filename)

    @classmethod
    def from_file(cls, filename: str | Path) -> ReductionRuleStore:
        from ampred import io  # noqa: PLC0415

        return io.load(filename)

    def load_file(self, filename: str | Path) -> LoadReport:
        """Merge the rules and masters from a file into this store."""
        from ampred import io  # noqa: PLC0415

        return self._merge([io.load(filename)])

    def _merge(self, stores: Iterable[ReductionRuleStore]) -> LoadReport:
        stores = list(stores)
        rules = [item for store in stores for item in store.items()]
        ruled = set(self.__rules) | {key for key, _ in rules}
        incoming = set().union(*(s.masters for s in stores))
        return self._load(rules, self.__masters | (incoming - ruled))


def merge(
    *stores: ReductionRuleStore, into: str | ReductionRuleStore = "merged"
) -> ReductionRuleStore:
    """Combine the rules of several stores in one conflict-checked load.

    The stores are read in the given order. If :code:`into` is a `str`, the result is a
    new store with that name, otherwise the rules are added to the given store. Master
    integrals of the inputs remain masters unless one of the stores has a rule for them.
    Master integrals of a given target store always remain masters, so a rule for one of
    them raises a `RuleConflictError`.

    >>> k1, k2, k3 = B(1, 1, 1), B(1, 1, 0), B(1, 0, 1)
    >>> a = ReductionRuleStore("a", rules={k1: k2})
    >>> b = ReductionRuleStore("b", rules={k2: k3})
    >>> merge(a, b).resolve(k1)
    B(1, 0, 1)
    """
    if isinstance(into, str):
        target = ReductionRuleStore(into)
    else:
        target = into
    target._merge(stores)  # noqa: SLF001
    return target
