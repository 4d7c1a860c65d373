# backend/tests/conftest.py

"""
Shared fixtures: an in-memory data access collaborator and a small catalog

Generic units:    1 mg, 2 g, 3 mL, 4 L, 10 Drop, 20 Tablet (form 5), 40 Sachet
Generic factors:  mg->g 0.001, g->mL 1, L->mL 1000, Drop->mL 0.05, Tablet->mg 500
Product 500:      units 100 Drop, 102 Dropper; mg->g 0.002, Dropper->Drop 20
Product 501:      unit 103 Drop; mg->g 0.003
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from unit_catalog import UnitCatalog
from unit_factor_engine import FactorResolver, PathResolver, Unit, UnitConversion, UnitStore


GENERIC_UNITS = [
    Unit(unit_id=1, name="mg"),
    Unit(unit_id=2, name="g"),
    Unit(unit_id=3, name="mL"),
    Unit(unit_id=4, name="L"),
    Unit(unit_id=10, name="Drop"),
    Unit(unit_id=20, name="Tablet", form_id=5),
    Unit(unit_id=40, name="Sachet"),
]

PRODUCT_UNITS = [
    Unit(unit_id=100, name="Drop", product_id=500),
    Unit(unit_id=102, name="Dropper", product_id=500),
    Unit(unit_id=103, name="Drop", product_id=501),
]

GENERIC_CONVERSIONS = [
    UnitConversion(from_unit_id=1, to_unit_id=2, factor=0.001),
    UnitConversion(from_unit_id=2, to_unit_id=3, factor=1.0),
    UnitConversion(from_unit_id=4, to_unit_id=3, factor=1000.0),
    UnitConversion(from_unit_id=10, to_unit_id=3, factor=0.05),
    UnitConversion(from_unit_id=20, to_unit_id=1, factor=500.0),
]

PRODUCT_CONVERSIONS = [
    UnitConversion(from_unit_id=1, to_unit_id=2, factor=0.002, product_id=500),
    UnitConversion(from_unit_id=102, to_unit_id=100, factor=20.0, product_id=500),
    UnitConversion(from_unit_id=1, to_unit_id=2, factor=0.003, product_id=501),
]


class FakeUnitSource:
    """In-memory select_units / select_direct_conversions with call tracking"""

    def __init__(self, units=None, conversions=None):
        self.units = list(GENERIC_UNITS + PRODUCT_UNITS if units is None else units)
        self.conversions = list(GENERIC_CONVERSIONS + PRODUCT_CONVERSIONS if conversions is None else conversions)
        self.unit_calls = []
        self.conversion_calls = []

    async def select_units(self, product_id=None, unit_id=None):
        self.unit_calls.append({"product_id": product_id, "unit_id": unit_id})
        await asyncio.sleep(0)
        if unit_id is not None:
            return [u for u in self.units if u.unit_id == unit_id]
        return [u for u in self.units if u.product_id == product_id]

    async def select_direct_conversions(self, product_id=None):
        self.conversion_calls.append(product_id)
        await asyncio.sleep(0)
        return [c for c in self.conversions if c.product_id == product_id]


@pytest.fixture
def unit_source():
    return FakeUnitSource()


@pytest.fixture
def store(unit_source):
    return UnitStore(unit_source.select_units, unit_source.select_direct_conversions)


@pytest.fixture
def resolver(store):
    return FactorResolver(store, PathResolver())


@pytest.fixture
def catalog(unit_source):
    return UnitCatalog(unit_source.select_units, unit_source.select_direct_conversions)


@pytest.fixture
def make_unit_source():
    """Factory for sources with custom units/conversions"""
    return FakeUnitSource
