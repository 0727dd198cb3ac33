"""Canonical denominators and sets of denominators.

Amplitudes depend on loop momenta through propagators `Den`. Two propagators that differ
only by the sign of their momentum are physically identical, so every comparison between
denominators goes through a normal form (`normalize_denominator`). Sets of denominators are
compared with `normalize` and `is_subset`.

.. autolink-preface::

    import sympy as sp
    from ampred.denominators import Den
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import sympy as sp
from attrs import field, frozen
from frozendict import frozendict

if TYPE_CHECKING:
    from collections.abc import Hashable, Iterable, Iterator, Mapping, Sequence

    from sympy.printing.latex import LatexPrinter

_LOGGER = logging.getLogger(__name__)


class Den(sp.Function):
    r"""Propagator :math:`1/(p^2 - m^2)` with momentum :math:`p` and mass squared.

    The mass squared argument is optional; :code:`Den(p)` is a massless propagator.

    >>> l1, q, mt2 = sp.symbols("l1 q mt2")
    >>> Den(l1 - q, mt2).momentum
    l1 - q
    >>> Den(l1).mass_squared
    0
    """

    nargs = (1, 2)

    @property
    def momentum(self) -> sp.Expr:
        return self.args[0]  # type: ignore[return-value]

    @property
    def mass_squared(self) -> sp.Expr:
        if len(self.args) > 1:
            return self.args[1]  # type: ignore[return-value]
        return sp.S.Zero

    @property
    def inverse(self) -> sp.Expr:
        """The inverse propagator :math:`p^2 - m^2`, expanded in the momenta."""
        return sp.expand(self.momentum**2 - self.mass_squared)

    def _latex(self, printer: LatexPrinter, *args) -> str:
        momentum = printer._print(self.momentum)
        if self.mass_squared == 0:
            return Rf"\frac{{1}}{{\left({momentum}\right)^{{2}}}}"
        mass_squared = printer._print(self.mass_squared)
        return Rf"\frac{{1}}{{\left({momentum}\right)^{{2}} - {mass_squared}}}"


def leading_sign(expr: sp.Expr) -> int:
    """Sign of the first term of an expression in a sign-independent term order.

    Terms are ordered by their non-numeric factor, so that :code:`expr` and
    :code:`-expr` are ordered the same way.

    >>> l1, l2, q = sp.symbols("l1 l2 q")
    >>> leading_sign(l1 - q)
    1
    >>> leading_sign(q - l1)
    -1
    >>> leading_sign(sp.S.Zero)
    1
    """
    expr = sp.expand(expr)
    if expr == 0:
        return 1
    terms = sorted(
        sp.Add.make_args(expr),
        key=lambda term: sp.default_sort_key(term.as_coeff_Mul()[1]),
    )
    coefficient, _ = terms[0].as_coeff_Mul()
    if coefficient.is_negative:
        return -1
    return 1


def drop_leading_sign(expr: sp.Expr) -> sp.Expr:
    """Multiply by the `leading_sign`, so that :code:`expr` and :code:`-expr` agree.

    >>> l1, q = sp.symbols("l1 q")
    >>> drop_leading_sign(q - l1)
    l1 - q
    """
    expr = sp.expand(expr)
    return leading_sign(expr) * expr


def normalize_denominator(den: Den) -> Den:
    """Bring a `Den` into normal form.

    The momentum is expanded and its leading sign is dropped. A vanishing mass argument
    is removed.

    >>> l1, q, m2 = sp.symbols("l1 q m2")
    >>> normalize_denominator(Den(q - l1, 0))
    Den(l1 - q)
    >>> normalize_denominator(Den(-(l1 + q), m2))
    Den(l1 + q, m2)
    """
    momentum = drop_leading_sign(den.momentum)
    mass_squared = sp.expand(den.mass_squared)
    if mass_squared == 0:
        return Den(momentum)
    return Den(momentum, mass_squared)


def normalize_denominators(expr: sp.Basic) -> sp.Basic:
    """Bring every `Den` inside an expression into normal form."""
    substitutions = {den: normalize_denominator(den) for den in expr.atoms(Den)}
    return expr.xreplace(substitutions)


def set_scaleless_to_zero(expr: sp.Basic) -> sp.Basic:
    """Remove massless propagators with vanishing momentum.

    Such propagators appear when a part of a diagram is disconnected from the rest; the
    corresponding integrals are scaleless and vanish in dimensional regularization.

    >>> l1 = sp.Symbol("l1")
    >>> set_scaleless_to_zero(Den(l1) * Den(l1 - l1))
    0
    """
    substitutions = {
        den: sp.S.Zero
        for den in expr.atoms(Den)
        if den.mass_squared == 0 and sp.expand(den.momentum) == 0
    }
    return expr.xreplace(substitutions)


def _canonical_elements(elements: Iterable[Hashable]) -> tuple:
    unique_elements = {
        normalize_denominator(e) if isinstance(e, Den) else e for e in elements
    }
    return tuple(sorted(unique_elements, key=sp.default_sort_key))


@frozen
class DenominatorSet:
    """Canonical, immutable set of denominators.

    Elements are normalized (`normalize_denominator`), de-duplicated, and sorted with
    :func:`~sympy.core.sorting.default_sort_key`, so that two sets compare equal if
    they contain the same propagators. Elements that are not a `Den`, such as integer
    labels for propagators, are kept as they are.

    >>> DenominatorSet([3, 1, 2, 3])
    DenominatorSet(elements=(1, 2, 3))
    """

    elements: tuple = field(converter=_canonical_elements)
    _members: frozenset = field(init=False, eq=False, repr=False)

    @_members.default
    def _create_members(self) -> frozenset:
        return frozenset(self.elements)

    def __contains__(self, element: object) -> bool:
        if isinstance(element, Den):
            element = normalize_denominator(element)
        return element in self._members

    def __iter__(self) -> Iterator:
        return iter(self.elements)

    def __len__(self) -> int:
        return len(self.elements)

    def issubset(self, other: DenominatorSet) -> bool:
        return self._members <= other._members


def normalize(items: Iterable[Hashable]) -> DenominatorSet:
    """Create the canonical `DenominatorSet` for a collection of denominators.

    >>> l1, q = sp.symbols("l1 q")
    >>> a = normalize([Den(l1 - q), Den(q - l1), Den(l1)])
    >>> a == normalize([Den(l1), Den(l1 - q)])
    True
    >>> len(a)
    2
    """
    if isinstance(items, DenominatorSet):
        return items
    return DenominatorSet(items)


def is_subset(a: Iterable[Hashable], b: Iterable[Hashable]) -> bool:
    """Check whether all denominators of :code:`a` appear in :code:`b`.

    >>> is_subset({3}, {1, 2, 3})
    True
    >>> is_subset({1, 4}, {1, 2, 3})
    False
    """
    return normalize(a).issubset(normalize(b))


def extract_denominator_set(
    expr: sp.Basic, loop_momenta: Iterable[sp.Symbol]
) -> DenominatorSet:
    """Collect the propagators of an amplitude that depend on the loop momenta.

    >>> l1, q, mt2 = sp.symbols("l1 q mt2")
    >>> amplitude = Den(q) * Den(l1) * Den(q - l1, mt2)
    >>> extract_denominator_set(amplitude, [l1])
    DenominatorSet(elements=(Den(l1), Den(l1 - q, mt2)))
    """
    loop_momenta = set(loop_momenta)
    return normalize(
        den for den in expr.atoms(Den) if den.momentum.free_symbols & loop_momenta
    )


def _to_frozendict(mapping: Mapping[sp.Symbol, sp.Expr]) -> frozendict:
    return frozendict({k: sp.sympify(v) for k, v in mapping.items()})


@frozen
class MomentumRelabeling:
    """Substitution of loop momenta by linear combinations of momenta.

    The substitutions are applied simultaneously, so a relabeling can swap momenta. An
    empty relabeling is the identity.

    >>> l1, l2, q = sp.symbols("l1 l2 q")
    >>> relabeling = MomentumRelabeling({l1: l2, l2: l1 + q})
    >>> relabeling.apply(Den(l1 - l2)) == Den(l2 - l1 - q)
    True
    """

    substitutions: frozendict[sp.Symbol, sp.Expr] = field(
        factory=frozendict, converter=_to_frozendict
    )

    @property
    def is_identity(self) -> bool:
        return all(k == v for k, v in self.substitutions.items())

    def apply(self, expr: sp.Basic) -> sp.Basic:
        if not self.substitutions:
            return expr
        return expr.xreplace(self.substitutions)

    def apply_to_set(self, denominators: Iterable[Hashable]) -> DenominatorSet:
        return normalize(
            self.apply(e) if isinstance(e, sp.Basic) else e for e in denominators
        )


def symmetrize(
    denominator_sets: Sequence[Iterable[Hashable]],
    relabelings: Sequence[MomentumRelabeling | Mapping[sp.Symbol, sp.Expr]],
) -> list[DenominatorSet]:
    """Apply one `MomentumRelabeling` to each denominator set.

    The relabelings typically come from a symmetry finder and make symmetric
    denominator sets identical, or subsets of one another.
    """
    if len(denominator_sets) != len(relabelings):
        msg = (
            f"Got {len(relabelings)} momentum relabelings for"
            f" {len(denominator_sets)} denominator sets"
        )
        raise ValueError(msg)
    relabelings = [
        r if isinstance(r, MomentumRelabeling) else MomentumRelabeling(r)
        for r in relabelings
    ]
    symmetrized = [
        relabeling.apply_to_set(denominators)
        for denominators, relabeling in zip(denominator_sets, relabelings)
    ]
    n_relabeled = sum(not r.is_identity for r in relabelings)
    _LOGGER.info(f"Applied {n_relabeled} non-trivial momentum relabelings")
    return symmetrized
