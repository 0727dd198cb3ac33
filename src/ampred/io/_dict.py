"""Serialization of a `.ReductionRuleStore` from and to a `dict`.

Values are written with :func:`sympy.srepr`, so that symbols with any name and with
their assumptions survive a round trip. They are read back without :func:`eval`, by
building only SymPy objects from the syntax tree of that representation.
"""

from __future__ import annotations

import ast
import json
from os.path import dirname, realpath
from typing import Any

import jsonschema
import sympy as sp

from ampred.integrals import B, sort_key
from ampred.reduction import MalformedRuleError, ReductionRuleStore


def from_rule_store(store: ReductionRuleStore) -> dict:
    return {
        "name": store.name,
        "masters": [from_key(key) for key in store.masters],
        "rules": [
            {"key": from_key(key), "value": sp.srepr(store[key])}
            for key in sorted(store, key=sort_key)
        ],
    }


def from_key(key: B) -> list[int]:
    return [key.family, *key.powers]


def build_rule_store(definition: dict, do_validate: bool = True) -> ReductionRuleStore:
    if do_validate:
        validate_rule_store(definition)
    rules = [
        (build_key(rule["key"]), _parse_value(rule["value"]))
        for rule in definition["rules"]
    ]
    return ReductionRuleStore(
        name=definition["name"],
        rules=rules,
        masters=[build_key(key) for key in definition.get("masters", [])],
    )


def build_key(definition: list[int]) -> B:
    return B(*definition)


def _parse_value(value: str) -> sp.Expr:
    try:
        tree = ast.parse(value, mode="eval")
        return _build_node(tree.body)
    except (SyntaxError, TypeError, ValueError) as exc:
        msg = f"Cannot parse reduction rule value {value!r}"
        raise MalformedRuleError(msg) from exc


def _build_node(node: ast.expr) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, str)):
        return node.value
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
        operand = _build_node(node.operand)
        if isinstance(operand, int) and not isinstance(operand, bool):
            return -operand
    if isinstance(node, ast.Name):
        return _get_sympy_object(node.id)
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
        function = _get_sympy_object(node.func.id)
        args = [_build_node(arg) for arg in node.args]
        kwargs = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                msg = "Keyword argument unpacking is not supported"
                raise ValueError(msg)
            kwargs[keyword.arg] = _build_node(keyword.value)
        return function(*args, **kwargs)
    msg = f"Unsupported expression {ast.dump(node)}"
    raise ValueError(msg)


def _get_sympy_object(name: str) -> Any:
    if name == B.__name__:
        return B
    obj = getattr(sp, name, None)
    if isinstance(obj, sp.Basic):
        return obj
    if isinstance(obj, type) and issubclass(obj, sp.Basic):
        return obj
    msg = f"{name!r} is not a SymPy class or constant"
    raise ValueError(msg)


def validate_rule_store(instance: dict) -> None:
    jsonschema.validate(instance=instance, schema=__SCHEMA_RULE_STORE)


__IO_PATH = dirname(realpath(__file__))
with open(f"{__IO_PATH}/rule-store.json") as __STREAM:
    __SCHEMA_RULE_STORE = json.load(__STREAM)
