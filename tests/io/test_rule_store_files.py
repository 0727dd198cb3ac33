from __future__ import annotations

import json
from typing import TYPE_CHECKING

import jsonschema
import pytest
import sympy as sp
import yaml

from ampred import io
from ampred.integrals import B
from ampred.reduction import (
    MalformedRuleError,
    ReductionRuleStore,
    RuleConflictError,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.parametrize("extension", ["json", "yml", "yaml"])
def test_write_and_load(
    two_point_store: ReductionRuleStore, tmp_path: Path, extension: str
):
    filename = tmp_path / f"rules.{extension}"
    two_point_store.save(filename)
    imported = ReductionRuleStore.from_file(filename)
    assert imported.name == two_point_store.name
    assert imported.rules() == two_point_store.rules()
    assert imported.masters == two_point_store.masters
    assert imported.apply(B(1, 2, 2)) == two_point_store.apply(B(1, 2, 2))


@pytest.mark.parametrize(
    "symbol_name", ["d", "lambda", "m^2", "x y", "B", "x; weird-spacing\t.,"]
)
@pytest.mark.parametrize("extension", ["json", "yml"])
def test_symbol_names_survive(tmp_path: Path, symbol_name: str, extension: str):
    symbol = sp.Symbol(symbol_name, real=True)
    store = ReductionRuleStore(
        rules={B(1, 2, 1): symbol * B(1, 1, 1) + sp.Rational(-1, 2) * B(1, 1, 0)}
    )
    filename = tmp_path / f"rules.{extension}"
    store.save(filename)
    imported = ReductionRuleStore.from_file(filename)
    assert imported.rules() == store.rules()
    assert imported[B(1, 2, 1)].free_symbols == {symbol}


def test_symbol_assumptions_survive(two_point_store: ReductionRuleStore):
    definition = io.asdict(two_point_store)
    assert "positive=True" in definition["rules"][0]["value"]
    imported = io.fromdict(definition)
    d = sp.Symbol("d", positive=True)
    assert d in imported[B(1, 2, 1)].free_symbols
    assert sp.Symbol("d") not in imported[B(1, 2, 1)].free_symbols


def test_output_is_sorted(two_point_store: ReductionRuleStore, tmp_path: Path):
    filename = tmp_path / "rules.json"
    io.write(two_point_store, filename)
    with open(filename) as stream:
        definition = json.load(stream)
    keys = [rule["key"] for rule in definition["rules"]]
    assert keys == [[1, 1, 2], [1, 2, 0], [1, 2, 1], [1, 2, 2]]
    assert definition["masters"] == [[1, 1, 0], [1, 1, 1]]


def test_output_is_stable(two_point_store: ReductionRuleStore, tmp_path: Path):
    reversed_store = ReductionRuleStore(
        two_point_store.name,
        rules=reversed(list(two_point_store.items())),
        masters=two_point_store.masters,
    )
    io.write(two_point_store, tmp_path / "a.yml")
    io.write(reversed_store, tmp_path / "b.yml")
    content_a = (tmp_path / "a.yml").read_text()
    content_b = (tmp_path / "b.yml").read_text()
    assert content_a == content_b
    definition = yaml.load(content_a, Loader=yaml.SafeLoader)
    assert definition["name"] == "two-point"


def test_load_file_merges(two_point_store: ReductionRuleStore, tmp_path: Path):
    filename = tmp_path / "rules.yml"
    two_point_store.save(filename)
    d = sp.Symbol("d", positive=True)
    store = ReductionRuleStore("session", rules={B(1, 3, 0): d * B(1, 2, 0)})
    report = store.load_file(filename)
    assert report.inserted == len(two_point_store)
    assert len(store) == len(two_point_store) + 1
    assert store.masters == two_point_store.masters
    report = store.load_file(filename)
    assert report.inserted == 0
    assert report.duplicates == len(two_point_store)


def test_load_file_conflict(two_point_store: ReductionRuleStore, tmp_path: Path):
    filename = tmp_path / "rules.json"
    two_point_store.save(filename)
    store = ReductionRuleStore("session", rules={B(1, 2, 1): B(1, 1, 0)})
    with pytest.raises(RuleConflictError):
        store.load_file(filename)
    assert len(store) == 1


def test_invalid_document():
    with pytest.raises(jsonschema.ValidationError):
        io.fromdict({"name": "test", "rules": [{"key": [1, 1], "value": 3}]})
    with pytest.raises(jsonschema.ValidationError):
        io.fromdict({"name": "test", "rules": [], "unknown": True})
    with pytest.raises(NotImplementedError):
        io.fromdict({"particles": []})


def test_floats_are_rejected():
    value = "Mul(Float('0.5', precision=53), B(Integer(1), Integer(2)))"
    definition = {"name": "test", "rules": [{"key": [1, 1], "value": value}]}
    with pytest.raises(MalformedRuleError, match=r"floating point"):
        io.fromdict(definition)


@pytest.mark.parametrize(
    "value",
    [
        "B(1, 2) */ 3",
        "__import__('os')",
        "Symbol('x').evalf()",
        "Mul(Integer(2), B(Integer(1), Integer(2))) + 1",
        "open('rules.yml')",
        "Symbol(**{'name': 'x'})",
    ],
)
def test_unparsable_value(value: str):
    definition = {"name": "test", "rules": [{"key": [1, 1], "value": value}]}
    with pytest.raises(MalformedRuleError, match=r"Cannot parse"):
        io.fromdict(definition)


def test_load_file_keeps_masters(two_point_store: ReductionRuleStore, tmp_path: Path):
    filename = tmp_path / "rules.yml"
    ReductionRuleStore("other", rules={B(1, 1, 0): B(1, 0, 1)}).save(filename)
    with pytest.raises(RuleConflictError, match=r"is a master"):
        two_point_store.load_file(filename)
    assert two_point_store.masters == (B(1, 1, 0), B(1, 1, 1))
    assert B(1, 1, 0) not in two_point_store


def test_not_implemented_errors(two_point_store: ReductionRuleStore, tmp_path: Path):
    with pytest.raises(NotImplementedError):
        io.write(two_point_store, tmp_path / "rules.csv")
    with pytest.raises(NotImplementedError):
        io.load(tmp_path / "rules.csv")
    with pytest.raises(ValueError, match=r"No file extension"):
        io.write(two_point_store, tmp_path / "no_file_extension")
    with pytest.raises(NotImplementedError):
        io.asdict(666)


def test_aslatex(two_point_store: ReductionRuleStore):
    latex = io.aslatex(two_point_store)
    lines = latex.splitlines()
    assert lines[0] == R"\begin{array}{rcl}"
    assert lines[-1] == R"\end{array}"
    assert len(lines) == len(two_point_store) + 2
    assert lines[1].startswith("  B_{1}(1, 2) &=& ")
    with pytest.raises(ValueError, match=r"at least one"):
        io.aslatex(ReductionRuleStore())
