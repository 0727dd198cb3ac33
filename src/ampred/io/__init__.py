"""Input-output functions for reduction rules and `sympy` objects.

The `.io` module stores a `.ReductionRuleStore` on disk, so that reductions that took
hours to compute can be reused in later calculations. Files are JSON or YAML documents
with the following layout:

.. code-block:: yaml

    name: two-point
    masters:
    - [1, 1, 1]
    rules:
    - key: [1, 2, 1]
      value: Mul(Symbol('d'), B(Integer(1), Integer(1), Integer(1)))

Values are written with :func:`sympy.srepr`, so that symbol names and assumptions are
restored exactly. Rules and masters are sorted by their key, so that files can be
compared with a diff.

.. tip:: `aslatex` is registered with :func:`functools.singledispatch` and can be
    extended as follows:

    >>> from ampred.io import aslatex
    >>> @aslatex.register(int)
    ... def _(obj: int) -> str:
    ...     return "my custom rendering"
    >>> aslatex(1)
    'my custom rendering'
"""

from __future__ import annotations

import json
from collections import abc
from functools import singledispatch
from pathlib import Path
from typing import TYPE_CHECKING

import sympy as sp
import yaml

from ampred.integrals import sort_key
from ampred.reduction import ReductionRuleStore

from . import _dict

if TYPE_CHECKING:
    from collections.abc import Mapping


def asdict(instance: object) -> dict:
    if isinstance(instance, ReductionRuleStore):
        return _dict.from_rule_store(instance)
    msg = f"No conversion for dict available for class {type(instance).__name__}"
    raise NotImplementedError(msg)


def fromdict(definition: dict) -> ReductionRuleStore:
    keys = set(definition)
    if "rules" in keys and "name" in keys:
        return _dict.build_rule_store(definition)
    msg = f"Could not determine type from keys {keys}"
    raise NotImplementedError(msg)


def load(filename: str | Path) -> ReductionRuleStore:
    file_extension = _get_file_extension(filename)
    if file_extension not in {"json", "yaml", "yml"}:
        msg = f'No loader defined for file type "{file_extension}"'
        raise NotImplementedError(msg)
    with open(filename) as stream:
        if file_extension == "json":
            definition = json.load(stream)
        else:
            definition = yaml.load(stream, Loader=yaml.SafeLoader)  # noqa: S506
    return fromdict(definition)


class _IncreasedIndent(yaml.Dumper):
    def increase_indent(self, flow=False, indentless=False):  # type: ignore[no-untyped-def]
        return super().increase_indent(flow, False)

    def write_line_break(self, data=None):  # type: ignore[no-untyped-def]
        """See https://stackoverflow.com/a/44284819."""
        super().write_line_break(data)
        if len(self.indents) == 1:
            super().write_line_break()


def write(instance: object, filename: str | Path) -> None:
    file_extension = _get_file_extension(filename)
    if file_extension not in {"json", "yaml", "yml"}:
        msg = f'No writer defined for file type "{file_extension}"'
        raise NotImplementedError(msg)
    definition = asdict(instance)
    with open(filename, "w") as stream:
        if file_extension == "json":
            json.dump(definition, stream, indent=2)
            stream.write("\n")
        else:
            yaml.dump(
                definition,
                stream,
                sort_keys=False,
                Dumper=_IncreasedIndent,
                default_flow_style=None,
            )


def _get_file_extension(filename: str | Path) -> str:
    path = Path(filename)
    extension = path.suffix.lower()
    if not extension:
        msg = f"No file extension in file {filename}"
        raise ValueError(msg)
    return extension[1:]


@singledispatch
def aslatex(obj, **kwargs) -> str:
    """Render objects as a LaTeX `str`.

    The resulting `str` can for instance be given to `IPython.display.Math`.
    """
    return str(obj)


@aslatex.register(str)
def _(obj: str, **kwargs) -> str:
    return obj


@aslatex.register(sp.Basic)
def _(obj: sp.Basic, **kwargs) -> str:
    return sp.latex(obj)


@aslatex.register(abc.Mapping)
def _(obj: Mapping, **kwargs) -> str:
    if len(obj) == 0:
        msg = "Need at least one dictionary item"
        raise ValueError(msg)
    latex = R"\begin{array}{rcl}" + "\n"
    for lhs, rhs in obj.items():
        latex += Rf"  {aslatex(lhs, **kwargs)} &=& {aslatex(rhs, **kwargs)} \\" + "\n"
    latex += R"\end{array}"
    return latex


@aslatex.register(ReductionRuleStore)
def _(obj: ReductionRuleStore, **kwargs) -> str:
    rules = {key: obj[key] for key in sorted(obj, key=sort_key)}
    return aslatex(rules, **kwargs)
