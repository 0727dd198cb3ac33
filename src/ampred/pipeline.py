"""Reduce a list of amplitudes to master integrals.

The `ReductionPipeline` strings together the steps of a multi-loop calculation:

1. remove scaleless integrals and collect the denominators of each amplitude;
2. relabel loop momenta so that symmetric denominator sets become subsets of each other;
3. group the denominator sets into integral families (`.unique_superset_mapping`);
4. complete each family to a `.FamilyBasis` and find its zero sectors;
5. rewrite the amplitudes in terms of integrals `.B` of these families;
6. reduce the integrals of each family to master integrals and cache the reduction
   rules in a `.ReductionRuleStore`;
7. substitute the rules and collect the result by master integrals.

The physics-specific steps (symmetry finding, basis completion, zero sectors, the mapping
of amplitudes onto families, the reduction itself and the evaluation of master integrals)
are done by external tools. They are inserted as callables that follow the protocols of
this module.

.. autolink-preface::

    import sympy as sp
    from ampred.pipeline import PipelineConfiguration, ReductionPipeline
"""

from __future__ import annotations

import logging
import subprocess  # noqa: S404
from multiprocessing import Pool
from typing import TYPE_CHECKING, Protocol

import sympy as sp
from attrs import define, field, frozen
from attrs.validators import deep_iterable, ge, instance_of
from frozendict import frozendict

from ampred.denominators import (
    DenominatorSet,
    MomentumRelabeling,
    extract_denominator_set,
    set_scaleless_to_zero,
    symmetrize,
)
from ampred.families import FamilyBasis, FamilyMapping, unique_superset_mapping
from ampred.integrals import B, bracket, set_zero_sectors, sort_key
from ampred.reduction import ReductionRuleStore

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

_LOGGER = logging.getLogger(__name__)


class ExternalToolError(RuntimeError):
    """An external program or collaborator reported a failure."""


class ConsistencyError(RuntimeError):
    """A result does not pass a consistency check."""


class SymmetryFinder(Protocol):
    """Find one momentum relabeling per denominator set.

    After the relabeling, symmetric denominator sets should be identical or subsets of
    one another. An empty mapping means that the set is left as it is.
    """

    def __call__(
        self,
        denominator_sets: Sequence[DenominatorSet],
        loop_momenta: Sequence[sp.Symbol],
        external_momenta: Sequence[sp.Symbol],
    ) -> Sequence[Mapping[sp.Symbol, sp.Expr]]: ...


class BasisCompleter(Protocol):
    """Turn the representative of a family into a complete `.FamilyBasis`."""

    def __call__(
        self,
        family: int,
        representative: DenominatorSet,
        loop_momenta: Sequence[sp.Symbol],
        external_momenta: Sequence[sp.Symbol],
        invariants: Mapping[sp.Expr, sp.Expr],
    ) -> FamilyBasis: ...


class ZeroSectorFinder(Protocol):
    """Determine the sectors of each family in which all integrals vanish."""

    def __call__(
        self, bases: Sequence[FamilyBasis]
    ) -> Mapping[int, Iterable[Iterable[int]]]: ...


class FamilyMapper(Protocol):
    """Rewrite a (relabeled) amplitude in terms of integrals `.B` of one family."""

    def __call__(self, amplitude: sp.Expr, basis: FamilyBasis) -> sp.Expr: ...


class ReductionEngine(Protocol):
    """Reduce integrals of one family to master integrals.

    Implementations are called in worker processes if
    `~PipelineConfiguration.number_of_processes` is larger than one, so they have to be
    picklable.
    """

    def __call__(
        self, basis: FamilyBasis, integrals: Sequence[B]
    ) -> Mapping[B, sp.Expr]: ...


class MasterEvaluator(Protocol):
    """Numerically evaluate master integrals at a kinematic point.

    Returns a value and an uncertainty for each master integral, both as an expansion up
    to a given order in the dimensional regulator.
    """

    def __call__(
        self,
        bases: Sequence[FamilyBasis],
        masters: Sequence[B],
        point: Mapping[sp.Symbol, sp.Expr],
        order: int,
    ) -> Mapping[B, tuple[sp.Expr, sp.Expr]]: ...


def _to_symbols(symbols: Iterable[sp.Symbol]) -> tuple[sp.Symbol, ...]:
    return tuple(symbols)


def _to_invariants(invariants: Mapping[sp.Expr, sp.Expr] | None) -> frozendict:
    if invariants is None:
        return frozendict()
    return frozendict({sp.sympify(k): sp.sympify(v) for k, v in invariants.items()})


@define
class PipelineConfiguration:
    """Configuration class for a `ReductionPipeline`."""

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
    number_of_processes: int = field(default=1, validator=[instance_of(int), ge(1)])
    """Number of worker processes for the reduction of the integral families."""
    forbidden_symbols: tuple[sp.Symbol, ...] = field(
        factory=tuple,
        converter=_to_symbols,
        validator=deep_iterable(member_validator=instance_of(sp.Symbol)),
    )
    """Symbols that must cancel in the final result, such as a gauge parameter."""


@frozen
class ReductionResult:
    """Output of a `ReductionPipeline`."""

    amplitude: sp.Expr
    """Sum of all amplitudes, collected by master integrals."""
    amplitudes: tuple[sp.Expr, ...] = field(converter=tuple)
    """Each input amplitude expressed in terms of master integrals."""
    relabelings: tuple[MomentumRelabeling, ...] = field(converter=tuple)
    mapping: FamilyMapping
    bases: tuple[FamilyBasis, ...] = field(converter=tuple)
    zero_sectors: frozendict = field(converter=frozendict)
    masters: tuple[B, ...] = field(converter=tuple)


def _reduce_family(
    engine: ReductionEngine, basis: FamilyBasis, integrals: Sequence[B]
) -> list[tuple[B, sp.Expr]]:
    return list(engine(basis, integrals).items())


class ReductionPipeline:
    """Reduce amplitudes to master integrals with a set of external collaborators.

    Only :code:`family_mapper` and :code:`reduction_engine` are required. Without a
    :code:`symmetry_finder`, denominator sets are not relabeled. Without a
    :code:`basis_completer`, each representative is used as a basis as it is. Without
    a :code:`zero_sector_finder`, no integrals are set to zero.

    Reduction rules are cached in the :code:`store`. Integrals that already have a rule
    are not reduced again, so a store that was filled by an earlier run (see
    `.ReductionRuleStore.from_file`) speeds up the calculation.
    """

    def __init__(  # noqa: PLR0913, PLR0917
        self,
        config: PipelineConfiguration,
        family_mapper: FamilyMapper,
        reduction_engine: ReductionEngine,
        symmetry_finder: SymmetryFinder | None = None,
        basis_completer: BasisCompleter | None = None,
        zero_sector_finder: ZeroSectorFinder | None = None,
        store: ReductionRuleStore | None = None,
    ) -> None:
        self.__config = config
        self.__family_mapper = family_mapper
        self.__reduction_engine = reduction_engine
        self.__symmetry_finder = symmetry_finder
        self.__basis_completer = basis_completer
        self.__zero_sector_finder = zero_sector_finder
        if store is None:
            store = ReductionRuleStore("reduction")
        self.__store = store

    @property
    def config(self) -> PipelineConfiguration:
        return self.__config

    @property
    def store(self) -> ReductionRuleStore:
        return self.__store

    def run(self, amplitudes: Sequence[sp.Expr]) -> ReductionResult:
        amplitudes = [set_scaleless_to_zero(sp.sympify(a)) for a in amplitudes]
        positions = [i for i, a in enumerate(amplitudes) if a != 0]
        _LOGGER.info(f"Non-zero amplitudes: {len(positions)} of {len(amplitudes)}")
        non_zero = [amplitudes[i] for i in positions]

        denominator_sets = [
            extract_denominator_set(a, self.__config.loop_momenta) for a in non_zero
        ]
        _LOGGER.info(f"Unique denominator sets: {len(set(denominator_sets))}")
        relabelings = self.__find_relabelings(denominator_sets)
        symmetrized = symmetrize(denominator_sets, relabelings)
        mapping = unique_superset_mapping(symmetrized)
        bases = self.__create_bases(mapping)
        zero_sectors = self.__find_zero_sectors(bases)

        family_amplitudes = []
        for amplitude, relabeling, family_id in zip(
            non_zero, relabelings, mapping.indices
        ):
            basis = bases[family_id - 1]
            expr = self.__family_mapper(relabeling.apply(amplitude), basis)
            family_amplitudes.append(set_zero_sectors(expr, zero_sectors))
        self.reduce(bases, family_amplitudes)

        reduced = [sp.S.Zero] * len(amplitudes)
        for i, expr in zip(positions, family_amplitudes):
            reduced[i] = bracket(self.__store.apply(expr))
        total = bracket(sp.Add(*reduced))
        self.check_consistency(total)
        masters = sorted(total.atoms(B), key=sort_key)
        _LOGGER.info(f"Master integrals: {len(masters)}")
        return ReductionResult(
            amplitude=total,
            amplitudes=reduced,
            relabelings=relabelings,
            mapping=mapping,
            bases=bases,
            zero_sectors={k: tuple(map(frozenset, v)) for k, v in zero_sectors.items()},
            masters=masters,
        )

    def reduce(
        self, bases: Sequence[FamilyBasis], expressions: Iterable[sp.Expr]
    ) -> None:
        """Reduce all integrals in the expressions that have no rule yet."""
        known = set(self.__store) | set(self.__store.masters)
        integrals: dict[int, set[B]] = {basis.family: set() for basis in bases}
        for expr in expressions:
            for key in expr.atoms(B):
                if key in known:
                    continue
                if key.family not in integrals:
                    msg = f"Integral {key} does not belong to any of the families"
                    raise ExternalToolError(msg)
                integrals[key.family].add(key)
        jobs = [
            (
                self.__reduction_engine,
                basis,
                sorted(integrals[basis.family], key=sort_key),
            )
            for basis in bases
            if integrals[basis.family]
        ]
        n_integrals = sum(len(job[2]) for job in jobs)
        _LOGGER.info(f"Reducing {n_integrals} integrals in {len(jobs)} families")
        n_processes = min(self.__config.number_of_processes, len(jobs))
        if n_processes > 1:
            with Pool(n_processes) as pool:
                results = pool.starmap(_reduce_family, jobs)
        else:
            results = [_reduce_family(*job) for job in jobs]
        for rules in results:
            self.__store.load(rules)

    def check_consistency(self, expr: sp.Basic) -> None:
        remaining = expr.free_symbols & set(self.__config.forbidden_symbols)
        if remaining:
            names = ", ".join(sorted(s.name for s in remaining))
            msg = f"Result still depends on {names}"
            raise ConsistencyError(msg)

    def evaluate(
        self,
        result: ReductionResult,
        evaluator: MasterEvaluator,
        point: Mapping[sp.Symbol, sp.Expr],
        order: int,
    ) -> tuple[sp.Expr, sp.Expr]:
        """Evaluate the reduced amplitude with numerical values of the masters."""
        master_values = evaluator(result.bases, result.masters, point, order)
        return evaluate(result.amplitude, master_values, point)

    def __find_relabelings(
        self, denominator_sets: Sequence[DenominatorSet]
    ) -> list[MomentumRelabeling]:
        if self.__symmetry_finder is None:
            return [MomentumRelabeling() for _ in denominator_sets]
        relabelings = [
            MomentumRelabeling(r)
            for r in self.__symmetry_finder(
                denominator_sets,
                self.__config.loop_momenta,
                self.__config.external_momenta,
            )
        ]
        known_symbols = {*self.__config.loop_momenta, *self.__config.external_momenta}
        for relabeling in relabelings:
            if not set(relabeling.substitutions) <= set(self.__config.loop_momenta):
                _LOGGER.warning(f"Relabeling {relabeling} replaces non-loop momenta")
            for value in relabeling.substitutions.values():
                unknown = value.free_symbols - known_symbols
                if unknown:
                    _LOGGER.warning(
                        f"Relabeling {relabeling} refers to unknown symbols {unknown}"
                    )
        _LOGGER.info(
            f"Found {sum(not r.is_identity for r in relabelings)} momentum relabelings"
        )
        return relabelings

    def __create_bases(self, mapping: FamilyMapping) -> list[FamilyBasis]:
        bases = []
        for family_id in mapping.family_ids:
            representative = mapping.representative(family_id)
            if self.__basis_completer is None:
                basis = FamilyBasis.from_representative(
                    family_id,
                    representative,
                    self.__config.loop_momenta,
                    self.__config.external_momenta,
                    self.__config.invariants,
                )
            else:
                basis = self.__basis_completer(
                    family_id,
                    representative,
                    self.__config.loop_momenta,
                    self.__config.external_momenta,
                    self.__config.invariants,
                )
            if basis.family != family_id:
                msg = (
                    f"Basis completion returned a basis for family {basis.family}"
                    f" instead of family {family_id}"
                )
                raise ExternalToolError(msg)
            if not basis.is_complete():
                _LOGGER.warning(f"Basis of family {family_id} is not complete")
            bases.append(basis)
        return bases

    def __find_zero_sectors(
        self, bases: Sequence[FamilyBasis]
    ) -> dict[int, list[frozenset[int]]]:
        if self.__zero_sector_finder is None:
            return {}
        zero_sectors = self.__zero_sector_finder(bases)
        return {
            family: [frozenset(s) for s in sectors]
            for family, sectors in zero_sectors.items()
        }


def evaluate(
    expression: sp.Expr,
    master_values: Mapping[B, tuple[sp.Expr, sp.Expr]],
    point: Mapping[sp.Symbol, sp.Expr],
) -> tuple[sp.Expr, sp.Expr]:
    """Insert a kinematic point and values of the master integrals.

    The uncertainty is obtained by inserting the uncertainties of the masters instead of
    their values.

    >>> d = sp.Symbol("d")
    >>> expr = (d - 2) * B(1, 1, 1) + B(1, 1, 0)
    >>> evaluate(expr, {B(1, 1, 1): (3, 1), B(1, 1, 0): (5, 2)}, {d: 4})
    (11, 4)
    """
    expr = sp.sympify(expression).subs(point)
    values = {key: sp.sympify(value) for key, (value, _) in master_values.items()}
    errors = {key: sp.sympify(error) for key, (_, error) in master_values.items()}
    return sp.expand(expr.xreplace(values)), sp.expand(expr.xreplace(errors))


def run_tool(command: str | Sequence[str], **kwargs) -> subprocess.CompletedProcess:
    """Run an external command and raise an `ExternalToolError` if it fails.

    Keyword arguments are passed on to :func:`subprocess.run`.
    """
    _LOGGER.info(f"Running {command}")
    process = subprocess.run(  # noqa: PLW1510, S603
        command, shell=isinstance(command, str), **kwargs
    )
    if process.returncode != 0:
        msg = f"Command {command} failed with exit code {process.returncode}"
        raise ExternalToolError(msg)
    return process
