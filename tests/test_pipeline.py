from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import attrs
import pytest
import sympy as sp

from ampred.denominators import Den, normalize_denominators
from ampred.families import FamilyBasis
from ampred.integrals import B
from ampred.pipeline import (
    ConsistencyError,
    ExternalToolError,
    PipelineConfiguration,
    ReductionPipeline,
    evaluate,
    run_tool,
)
from ampred.reduction import ReductionRuleStore

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from _pytest.logging import LogCaptureFixture

    from ampred.denominators import DenominatorSet

d, x, xi = sp.symbols("d x Xi")
l1, q, mt2, sqrq = sp.symbols("l1 q mt2 sqrq")


def map_to_family(amplitude: sp.Expr, basis: FamilyBasis) -> sp.Expr:
    result = sp.S.Zero
    for term in sp.Add.make_args(sp.expand(normalize_denominators(amplitude))):
        powers = [0] * len(basis.all_denominators)
        coefficient = sp.S.One
        for factor, power in term.as_powers_dict().items():
            if isinstance(factor, Den):
                powers[basis.all_denominators.index(factor)] += int(power)
            else:
                coefficient *= factor**power
        result += coefficient * basis.create_key(*powers)
    return result


def reduce_to_corner(basis: FamilyBasis, integrals: Sequence[B]) -> dict[B, sp.Expr]:
    rules = {}
    for key in integrals:
        if all(power in {0, 1} for power in key.powers):
            continue
        corner = [min(max(power, 0), 1) for power in key.powers]
        rules[key] = (d - sum(key.powers)) * B(key.family, *corner)
    return rules


def find_mirror_symmetry(
    denominator_sets: Sequence[DenominatorSet],
    loop_momenta: Sequence[sp.Symbol],
    external_momenta: Sequence[sp.Symbol],
) -> list[dict[sp.Symbol, sp.Expr]]:
    return [{l1: -l1} if Den(l1 + q, mt2) in s else {} for s in denominator_sets]


class RecordingEngine:
    def __init__(self) -> None:
        self.requests: list[tuple[B, ...]] = []

    def __call__(
        self, basis: FamilyBasis, integrals: Sequence[B]
    ) -> Mapping[B, sp.Expr]:
        self.requests.append(tuple(integrals))
        return reduce_to_corner(basis, integrals)


def _key(basis: FamilyBasis, powers: Mapping[Den, int]) -> B:
    return basis.create_key(*(powers.get(den, 0) for den in basis.all_denominators))


@pytest.fixture
def config() -> PipelineConfiguration:
    return PipelineConfiguration(
        loop_momenta=[l1],
        external_momenta=[q],
        invariants={q**2: sqrq},
        forbidden_symbols=[xi],
    )


@pytest.fixture
def amplitudes() -> list[sp.Expr]:
    return [
        x * Den(l1, mt2) * Den(l1 - q, mt2) ** 2,
        Den(q - l1, mt2),
        Den(l1) * Den(l1 - l1),
        Den(l1 + q, mt2) * Den(l1, mt2),
    ]


class TestPipelineConfiguration:
    def test_defaults(self):
        config = PipelineConfiguration(loop_momenta=[l1])
        assert config.loop_momenta == (l1,)
        assert config.external_momenta == ()
        assert config.number_of_processes == 1
        assert len(config.invariants) == 0

    @pytest.mark.parametrize("number_of_processes", [0, -1])
    def test_invalid_number_of_processes(self, number_of_processes: int):
        with pytest.raises(ValueError):  # noqa: PT011
            PipelineConfiguration(
                loop_momenta=[l1], number_of_processes=number_of_processes
            )

    def test_invalid_momenta(self):
        with pytest.raises(TypeError):
            PipelineConfiguration(loop_momenta=["l1"])


class TestReductionPipeline:
    def test_run(
        self,
        config: PipelineConfiguration,
        amplitudes: list[sp.Expr],
        caplog: LogCaptureFixture,
    ):
        pipeline = ReductionPipeline(
            config,
            family_mapper=map_to_family,
            reduction_engine=reduce_to_corner,
            symmetry_finder=find_mirror_symmetry,
        )
        with caplog.at_level(logging.INFO):
            result = pipeline.run(amplitudes)
        assert "Non-zero amplitudes: 3 of 4" in caplog.text
        assert "Master integrals: 2" in caplog.text

        assert len(result.mapping) == 1
        assert result.mapping.indices == (1, 1, 1)
        assert dict(result.relabelings[2].substitutions) == {l1: -l1}
        basis = result.bases[0]
        corner = _key(basis, {Den(l1, mt2): 1, Den(l1 - q, mt2): 1})
        tadpole = _key(basis, {Den(l1 - q, mt2): 1})
        assert result.amplitudes[2] == 0
        assert sp.expand(result.amplitudes[0] - x * (d - 3) * corner) == 0
        assert result.amplitudes[1] == tadpole
        assert result.amplitudes[3] == corner
        expected = (x * (d - 3) + 1) * corner + tadpole
        assert sp.expand(result.amplitude - expected) == 0
        assert set(result.masters) == {corner, tadpole}

        reduced_key = _key(basis, {Den(l1, mt2): 1, Den(l1 - q, mt2): 2})
        assert list(pipeline.store) == [reduced_key]

    def test_run_without_symmetries(
        self, config: PipelineConfiguration, amplitudes: list[sp.Expr]
    ):
        pipeline = ReductionPipeline(
            config, family_mapper=map_to_family, reduction_engine=reduce_to_corner
        )
        result = pipeline.run(amplitudes)
        assert len(result.mapping) == 2
        assert result.mapping.indices == (1, 1, 2)
        assert len(result.masters) == 3

    def test_process_pool(
        self, config: PipelineConfiguration, amplitudes: list[sp.Expr]
    ):
        sequential = ReductionPipeline(
            config, family_mapper=map_to_family, reduction_engine=reduce_to_corner
        )
        parallel = ReductionPipeline(
            attrs.evolve(config, number_of_processes=2),
            family_mapper=map_to_family,
            reduction_engine=reduce_to_corner,
        )
        amplitudes.append(Den(l1 + q, mt2) ** 3)
        result = parallel.run(amplitudes)
        expected = sequential.run(amplitudes)
        assert sp.expand(result.amplitude - expected.amplitude) == 0
        assert parallel.store.rules() == sequential.store.rules()
        assert len(parallel.store) == 2

    def test_store_is_reused(
        self, config: PipelineConfiguration, amplitudes: list[sp.Expr]
    ):
        engine = RecordingEngine()
        store = ReductionRuleStore("cache")
        pipeline = ReductionPipeline(
            config,
            family_mapper=map_to_family,
            reduction_engine=engine,
            symmetry_finder=find_mirror_symmetry,
            store=store,
        )
        pipeline.run(amplitudes)
        assert len(engine.requests) == 1
        assert len(engine.requests[0]) == 3
        pipeline.run(amplitudes)
        assert len(engine.requests) == 2
        assert len(engine.requests[1]) == 2
        assert not set(engine.requests[1]) & set(store)

    def test_forbidden_symbols_cancel(self, config: PipelineConfiguration):
        amplitude = xi * Den(l1, mt2) * Den(l1 - q, mt2) ** 2
        amplitude -= xi * (d - 3) * Den(l1, mt2) * Den(l1 - q, mt2)
        pipeline = ReductionPipeline(
            config, family_mapper=map_to_family, reduction_engine=reduce_to_corner
        )
        result = pipeline.run([amplitude])
        assert result.amplitude == 0
        assert result.masters == ()

    def test_forbidden_symbols_remain(self, config: PipelineConfiguration):
        pipeline = ReductionPipeline(
            config, family_mapper=map_to_family, reduction_engine=reduce_to_corner
        )
        with pytest.raises(ConsistencyError, match=r"Result still depends on Xi"):
            pipeline.run([xi * Den(l1, mt2) * Den(l1 - q, mt2)])

    def test_incomplete_basis_warning(self, caplog: LogCaptureFixture):
        l2 = sp.Symbol("l2")
        config = PipelineConfiguration(loop_momenta=[l1, l2], external_momenta=[q])
        pipeline = ReductionPipeline(
            config, family_mapper=map_to_family, reduction_engine=reduce_to_corner
        )
        with caplog.at_level(logging.WARNING):
            pipeline.run([Den(l1) * Den(l2) * Den(l1 - l2)])
        assert "Basis of family 1 is not complete" in caplog.text

    def test_basis_completer_and_zero_sectors(self):
        def complete_basis(family, representative, loop_momenta, external, invariants):
            return FamilyBasis.from_representative(
                family,
                representative,
                loop_momenta,
                external,
                invariants,
                completion=[Den(l1 + q)],
            )

        def find_scaleless_sectors(bases):
            return {basis.family: [set()] for basis in bases}

        pipeline = ReductionPipeline(
            PipelineConfiguration(loop_momenta=[l1], external_momenta=[q]),
            family_mapper=map_to_family,
            reduction_engine=reduce_to_corner,
            basis_completer=complete_basis,
            zero_sector_finder=find_scaleless_sectors,
        )
        result = pipeline.run([Den(l1) ** 2 + x / Den(l1)])
        basis = result.bases[0]
        assert basis.all_denominators == (Den(l1), Den(l1 + q))
        assert basis.is_complete()
        assert dict(result.zero_sectors) == {1: (frozenset(),)}
        assert result.amplitude == (d - 2) * B(1, 1, 0)

    def test_wrong_basis_family(self, config: PipelineConfiguration):
        def complete_basis(family, representative, loop_momenta, external, invariants):
            return FamilyBasis.from_representative(
                family + 1, representative, loop_momenta, external, invariants
            )

        pipeline = ReductionPipeline(
            config,
            family_mapper=map_to_family,
            reduction_engine=reduce_to_corner,
            basis_completer=complete_basis,
        )
        with pytest.raises(ExternalToolError, match=r"instead of family 1"):
            pipeline.run([Den(l1, mt2)])

    def test_collaborator_errors_propagate(self, config: PipelineConfiguration):
        def failing_engine(basis, integrals):
            msg = "IBP solver crashed"
            raise ExternalToolError(msg)

        pipeline = ReductionPipeline(
            config, family_mapper=map_to_family, reduction_engine=failing_engine
        )
        with pytest.raises(ExternalToolError, match=r"IBP solver crashed"):
            pipeline.run([Den(l1, mt2) ** 2])
        assert len(pipeline.store) == 0

    def test_evaluate(self, config: PipelineConfiguration, amplitudes: list[sp.Expr]):
        pipeline = ReductionPipeline(
            config,
            family_mapper=map_to_family,
            reduction_engine=reduce_to_corner,
            symmetry_finder=find_mirror_symmetry,
        )
        result = pipeline.run(amplitudes)
        def evaluate_masters(bases, masters, point, order):
            assert order == 2
            return {m: (sp.Integer(2), sp.Rational(1, 10)) for m in masters}

        value, uncertainty = pipeline.evaluate(
            result, evaluate_masters, {d: 4, x: 1}, order=2
        )
        assert value == 6
        assert uncertainty == sp.Rational(3, 10)


def test_evaluate_function():
    expr = (d - 2) * B(1, 1, 1) + x * B(1, 1, 0)
    masters = {B(1, 1, 1): (3, 1), B(1, 1, 0): (5, 2)}
    assert evaluate(expr, masters, {d: 4, x: 2}) == (16, 6)


def test_run_tool():
    process = run_tool([sys.executable, "-c", "print('ok')"], capture_output=True)
    assert process.stdout.strip() == b"ok"
    with pytest.raises(ExternalToolError, match=r"failed with exit code 3"):
        run_tool([sys.executable, "-c", "raise SystemExit(3)"])
