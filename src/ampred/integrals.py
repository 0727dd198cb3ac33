"""Scalar integrals of an integral family and linear combinations thereof.

An integral is identified by a `B` expression: the ID of the integral family followed by
the powers of each of the denominators of that family (see `.FamilyBasis`).

.. autolink-preface::

    import sympy as sp
    from ampred.integrals import B
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Callable

import sympy as sp

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from sympy.printing.latex import LatexPrinter


class B(sp.Function):
    """Integral with given propagator powers in one integral family.

    >>> B(1, 1, 1, 0, -1)
    B(1, 1, 1, 0, -1)
    >>> B(1, 1, 1, 0, -1).family
    1
    >>> B(1, 1, 1, 0, -1).powers
    (1, 1, 0, -1)
    >>> sp.latex(B(2, 1, 0))
    'B_{2}(1, 0)'
    """

    @classmethod
    def eval(cls, family, *powers):  # type: ignore[override]
        for arg in (family, *powers):
            if not arg.is_Integer:
                msg = f"Arguments of {cls.__name__} must be integers, got {arg}"
                raise TypeError(msg)
        if family < 1:
            msg = f"Family ID of {cls.__name__} must be positive, got {family}"
            raise ValueError(msg)

    @property
    def family(self) -> int:
        return int(self.args[0])  # type: ignore[arg-type]

    @property
    def powers(self) -> tuple[int, ...]:
        return tuple(int(arg) for arg in self.args[1:])  # type: ignore[arg-type]

    def _latex(self, printer: LatexPrinter, *args) -> str:
        powers = ", ".join(str(power) for power in self.powers)
        return f"B_{{{self.family}}}({powers})"


def sort_key(key: B) -> tuple[int, tuple[int, ...]]:
    """Deterministic order of integrals: by family, then by powers."""
    return key.family, key.powers


def sector(key: B) -> frozenset[int]:
    """Positions (starting at 0) of the denominators with a positive power.

    >>> sorted(sector(B(1, 1, 0, 2, -1)))
    [0, 2]
    """
    return frozenset(i for i, power in enumerate(key.powers) if power > 0)


def is_linear_combination(expr: sp.Basic) -> bool:
    """Check whether an expression is linear in `B` with `B`-free coefficients.

    >>> x = sp.Symbol("x")
    >>> is_linear_combination(x * B(1, 1, 0) + B(1, 0, 1) / 3)
    True
    >>> is_linear_combination(B(1, 1, 0) ** 2)
    False
    """
    try:
        linear_coefficients(expr)
    except ValueError:
        return False
    return True


def linear_coefficients(expr: sp.Basic) -> dict[sp.Basic, sp.Expr]:
    """Split a linear combination of integrals into its coefficients.

    The `B`-free remainder of the expression is stored under :code:`sp.S.One`.

    Raises:
        ValueError: if the expression is not linear in the integrals.
    """
    coefficients: dict[sp.Basic, sp.Expr] = defaultdict(lambda: sp.S.Zero)
    for term in sp.Add.make_args(sp.expand(expr)):
        integrals = term.atoms(B)
        if not integrals:
            coefficients[sp.S.One] += term
            continue
        if len(integrals) == 1:
            key = next(iter(integrals))
            coefficient = term / key
            if not coefficient.has(B):
                coefficients[key] += coefficient
                continue
        msg = f"Expression is not a linear combination of integrals: {term}"
        raise ValueError(msg)
    return dict(coefficients)


def bracket(
    expr: sp.Basic,
    coefficient_function: Callable[[sp.Expr], sp.Expr] = sp.factor,
) -> sp.Expr:
    """Collect an expression by integrals and simplify each coefficient.

    >>> d = sp.Symbol("d")
    >>> expr = d * B(1, 1, 0) - 4 * B(1, 1, 0) + B(1, 0, 1) * (d**2 - 1) / (d - 1)
    >>> bracket(expr) == (d - 4) * B(1, 1, 0) + (d + 1) * B(1, 0, 1)
    True
    """
    terms = []
    for key, coefficient in linear_coefficients(expr).items():
        coefficient = coefficient_function(coefficient)
        if coefficient == 0:
            continue
        terms.append(coefficient * key)
    return sp.Add(*terms)


def set_zero_sectors(
    expr: sp.Basic, zero_sectors: Mapping[int, Iterable[Iterable[int]]]
) -> sp.Expr:
    """Remove integrals that lie in a zero (scaleless) sector.

    An integral vanishes if its `sector` is contained in one of the zero sectors of its
    family. The zero sectors are given per family ID as collections of denominator
    positions.

    >>> expr = B(1, 1, 0, 0) + B(1, 1, 1, 0) + B(2, 1, 0, 0)
    >>> set_zero_sectors(expr, {1: [{0, 2}]}) == B(1, 1, 1, 0) + B(2, 1, 0, 0)
    True
    """
    sectors = {
        family: [frozenset(s) for s in family_sectors]
        for family, family_sectors in zero_sectors.items()
    }
    substitutions = {}
    for key in expr.atoms(B):
        key_sector = sector(key)
        if any(key_sector <= s for s in sectors.get(key.family, [])):
            substitutions[key] = sp.S.Zero
    if not substitutions:
        return expr  # type: ignore[return-value]
    return expr.xreplace(substitutions)  # type: ignore[return-value]
