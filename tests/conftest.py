from __future__ import annotations

import logging

import pytest
import sympy as sp

from ampred.integrals import B
from ampred.reduction import ReductionRuleStore

logging.getLogger().setLevel(level=logging.ERROR)


@pytest.fixture(scope="session")
def momenta() -> tuple[sp.Symbol, ...]:
    return sp.symbols("l1 l2 q")


@pytest.fixture
def two_point_store() -> ReductionRuleStore:
    d, mt2 = sp.symbols("d mt2", positive=True)
    store = ReductionRuleStore("two-point", masters=[B(1, 1, 1), B(1, 1, 0)])
    store.load({
        B(1, 2, 1): (d - 3) / (2 * mt2) * B(1, 1, 1),
        B(1, 1, 2): (d - 3) / (2 * mt2) * B(1, 1, 1),
        B(1, 2, 0): (d - 2) / (2 * mt2) * B(1, 1, 0),
        B(1, 2, 2): (d - 4) / mt2 * B(1, 2, 1) + B(1, 2, 0) / mt2,
    })
    return store
