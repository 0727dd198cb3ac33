"""Group denominator sets into a small number of integral families.

Every amplitude of a calculation comes with a set of propagators. If the propagators of
one amplitude are a subset of the propagators of another, both amplitudes can be reduced
within the same *integral family*. The `unique_superset_mapping` finds a set of
representatives that covers all input sets, so that each family only has to be reduced
once. A `FamilyBasis` then turns a representative into a complete basis of inverse
propagators.

.. autolink-preface::

    import sympy as sp
    from ampred.denominators import Den
    from ampred.families import FamilyBasis, unique_superset_mapping
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

import sympy as sp
from attrs import field, frozen
from attrs.validators import deep_iterable, ge, instance_of
from frozendict import frozendict
from tqdm.auto import tqdm

from ampred.denominators import (
    Den,
    DenominatorSet,
    is_subset,
    normalize,
    normalize_denominator,
)
from ampred.integrals import B
from ampred.integrals import sector as _get_sector

if TYPE_CHECKING:
    from collections.abc import Hashable, Iterable, Mapping

_LOGGER = logging.getLogger(__name__)


def _to_representatives(representatives: Iterable) -> tuple[DenominatorSet, ...]:
    return tuple(normalize(r) for r in representatives)


@frozen
class FamilyMapping:
    """Representatives of the integral families and the family of each input set.

    Family IDs start at :code:`1`, so the family of input set :code:`i` is represented by
    :code:`representatives[indices[i] - 1]`.
    """

    representatives: tuple[DenominatorSet, ...] = field(
        converter=_to_representatives
    )
    indices: tuple[int, ...] = field(converter=tuple)

    @indices.validator  # type: ignore[attr-defined]
    def __check_indices(self, _: object, value: tuple[int, ...]) -> None:
        for family_id in value:
            if not 1 <= family_id <= len(self.representatives):
                msg = (
                    f"Family ID {family_id} is out of range for"
                    f" {len(self.representatives)} representatives"
                )
                raise ValueError(msg)

    def __len__(self) -> int:
        return len(self.representatives)

    @property
    def family_ids(self) -> range:
        return range(1, len(self.representatives) + 1)

    def representative(self, family_id: int) -> DenominatorSet:
        self.__assert_family_id(family_id)
        return self.representatives[family_id - 1]

    def members(self, family_id: int) -> tuple[int, ...]:
        """Positions of the input sets that are covered by a family."""
        self.__assert_family_id(family_id)
        return tuple(i for i, idx in enumerate(self.indices) if idx == family_id)

    def __assert_family_id(self, family_id: int) -> None:
        if family_id not in self.family_ids:
            msg = f"There is no family with ID {family_id}"
            raise ValueError(msg)


def unique_superset_mapping(
    sets: Iterable[Iterable[Hashable]],
    subset_test: Callable[[DenominatorSet, DenominatorSet], bool] = is_subset,
) -> FamilyMapping:
    """Find representatives such that every input set is a subset of one of them.

    Sets are visited from large to small (input order among sets of equal size). A set
    that is a subset of an existing representative is assigned to the first such
    representative, otherwise it becomes a new representative. This is a greedy
    algorithm, not a minimal set cover, but no representative is a subset of another.

    >>> mapping = unique_superset_mapping([{3}, {1, 2, 3}, {2, 3, 1}, {2}, {1, 4, 3}, {4}])
    >>> mapping.indices
    (1, 1, 1, 1, 2, 2)
    >>> [r.elements for r in mapping.representatives]
    [(1, 2, 3), (1, 3, 4)]
    """
    normalized = [normalize(s) for s in sets]
    order = sorted(range(len(normalized)), key=lambda i: -len(normalized[i]))
    representatives: list[DenominatorSet] = []
    indices: list[int] = [0] * len(normalized)
    cache: dict[DenominatorSet, int] = {}
    progress_bar = tqdm(
        total=len(order),
        desc="Finding integral families",
        disable=logging.getLogger().level > logging.WARNING,
    )
    for i in order:
        denominators = normalized[i]
        family_id = cache.get(denominators)
        if family_id is None:
            family_id = _find_superset(denominators, representatives, subset_test)
            if family_id is None:
                representatives.append(denominators)
                family_id = len(representatives)
            cache[denominators] = family_id
        indices[i] = family_id
        progress_bar.update()
    progress_bar.close()
    _LOGGER.info(
        f"Mapped {len(normalized)} denominator sets onto"
        f" {len(representatives)} integral families"
    )
    return FamilyMapping(representatives, indices)


def _find_superset(
    denominators: DenominatorSet,
    representatives: list[DenominatorSet],
    subset_test: Callable[[DenominatorSet, DenominatorSet], bool],
) -> int | None:
    for family_id, representative in enumerate(representatives, start=1):
        if subset_test(denominators, representative):
            return family_id
    return None


def _to_denominators(denominators: Iterable[Den]) -> tuple[Den, ...]:
    return tuple(normalize_denominator(den) for den in denominators)


def _to_symbols(symbols: Iterable[sp.Symbol]) -> tuple[sp.Symbol, ...]:
    return tuple(symbols)


def _to_invariants(invariants: Mapping[sp.Expr, sp.Expr] | None) -> frozendict:
    if invariants is None:
        return frozendict()
    return frozendict({
        sp.sympify(k): sp.sympify(v) for k, v in invariants.items()
    })


@frozen
class FamilyBasis:
    """Complete set of inverse propagators of one integral family.

    The positions of :attr:`all_denominators` define the positions of the powers in the
    `.B` keys of the family.

    >>> l1, q, mt2, sqrq = sp.symbols("l1 q mt2 sqrq")
    >>> basis = FamilyBasis(
    ...     family=1,
    ...     denominators=[Den(l1, mt2), Den(l1 - q, mt2)],
    ...     loop_momenta=[l1],
    ...     external_momenta=[q],
    ...     invariants={q**2: sqrq},
    ... )
    >>> basis.scalar_products
    (l1**2, l1*q)
    >>> basis.is_complete()
    True
    >>> basis.create_key(1, 1)
    B(1, 1, 1)
    """

    family: int = field(validator=[instance_of(int), ge(1)])
    denominators: tuple[Den, ...] = field(
        converter=_to_denominators,
        validator=deep_iterable(member_validator=instance_of(Den)),
    )
    loop_momenta: tuple[sp.Symbol, ...] = field(
        converter=_to_symbols,
        validator=deep_iterable(member_validator=instance_of(sp.Symbol)),
    )
    external_momenta: tuple[sp.Symbol, ...] = field(
        factory=tuple,
        converter=_to_symbols,
        validator=deep_iterable(member_validator=instance_of(sp.Symbol)),
    )
    invariants: frozendict[sp.Expr, sp.Expr] = field(
        factory=frozendict, converter=_to_invariants
    )
    """Fixed values of scalar products of external momenta, like :code:`q**2`."""
    completion: tuple[Den, ...] = field(
        factory=tuple,
        converter=_to_denominators,
        validator=deep_iterable(member_validator=instance_of(Den)),
    )
    """Auxiliary denominators that make the basis complete."""

    @classmethod
    def from_representative(
        cls,
        family: int,
        representative: Iterable[Den],
        loop_momenta: Iterable[sp.Symbol],
        external_momenta: Iterable[sp.Symbol] = (),
        invariants: Mapping[sp.Expr, sp.Expr] | None = None,
        completion: Iterable[Den] = (),
    ) -> FamilyBasis:
        return cls(
            family=family,
            denominators=tuple(normalize(representative)),
            loop_momenta=loop_momenta,
            external_momenta=external_momenta,
            invariants=invariants,
            completion=completion,
        )

    @property
    def all_denominators(self) -> tuple[Den, ...]:
        return self.denominators + self.completion

    @property
    def scalar_products(self) -> tuple[sp.Expr, ...]:
        """Scalar products that involve at least one loop momentum."""
        products = []
        for i, l_i in enumerate(self.loop_momenta):
            products.extend(l_i * l_j for l_j in self.loop_momenta[i:])
        for l_i in self.loop_momenta:
            products.extend(l_i * p for p in self.external_momenta)
        return tuple(products)

    def coefficient_matrix(self) -> sp.Matrix:
        """Express each inverse propagator in terms of the `scalar_products`.

        Row :code:`i` contains the coefficients of denominator :code:`i` of
        `all_denominators`. Terms that do not depend on loop momenta are dropped.

        Raises:
            ValueError: if a denominator is not linear in the scalar products.
        """
        momenta = (*self.loop_momenta, *self.external_momenta)
        columns = {product: i for i, product in enumerate(self.scalar_products)}
        loop_momenta = set(self.loop_momenta)
        rows = []
        for den in self.all_denominators:
            inverse = den.inverse
            if self.invariants:
                inverse = sp.expand(inverse.subs(self.invariants))
            row = [sp.S.Zero] * len(columns)
            polynomial = sp.Poly(inverse, *momenta)
            for powers, coefficient in polynomial.terms():
                product = sp.Mul(*(p**n for p, n in zip(momenta, powers)))
                if not product.free_symbols & loop_momenta:
                    continue
                if product not in columns:
                    msg = (
                        f"Denominator {den} is not linear in the scalar products of"
                        f" the loop momenta: found a term {coefficient * product}"
                    )
                    raise ValueError(msg)
                row[columns[product]] += coefficient
            rows.append(row)
        return sp.Matrix(len(rows), len(columns), [c for row in rows for c in row])

    def is_complete(self) -> bool:
        """Check whether the denominators form a basis of the `scalar_products`."""
        matrix = self.coefficient_matrix()
        if matrix.rows != matrix.cols:
            return False
        return matrix.rank() == len(self.scalar_products)

    def create_key(self, *powers: int) -> B:
        n_denominators = len(self.all_denominators)
        if len(powers) != n_denominators:
            msg = (
                f"Family {self.family} has {n_denominators} denominators, but got"
                f" {len(powers)} powers"
            )
            raise ValueError(msg)
        return B(self.family, *powers)

    def sector(self, key: B) -> frozenset[int]:
        if key.family != self.family:
            msg = f"Integral {key} does not belong to family {self.family}"
            raise ValueError(msg)
        return _get_sector(key)
