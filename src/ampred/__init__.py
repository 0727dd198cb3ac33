"""Consolidate integral families and cache reduction rules of multi-loop amplitudes.

AmpRed groups the integrals of a set of Feynman-diagram amplitudes into a small number
of integral families (`.families`) and keeps track of the rules that reduce these
integrals to master integrals (`.reduction`). The `.pipeline` module connects these
steps with external tools for symmetry finding and integration-by-parts reduction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ampred.denominators import symmetrize
from ampred.families import FamilyMapping, unique_superset_mapping

if TYPE_CHECKING:
    from collections.abc import Hashable, Iterable, Mapping, Sequence

    import sympy as sp

    from ampred.denominators import MomentumRelabeling


def consolidate(
    denominator_sets: Sequence[Iterable[Hashable]],
    relabelings: Sequence[MomentumRelabeling | Mapping[sp.Symbol, sp.Expr]]
    | None = None,
) -> FamilyMapping:
    """Group denominator sets into integral families.

    If momentum relabelings are given, they are applied to the denominator sets first
    (see `.symmetrize`).

    >>> consolidate([{1, 2}, {2}, {3}]).indices
    (1, 1, 2)
    """
    if relabelings is not None:
        denominator_sets = symmetrize(denominator_sets, relabelings)
    return unique_superset_mapping(denominator_sets)
