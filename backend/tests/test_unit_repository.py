# backend/tests/test_unit_repository.py

"""
Unit tests for the MongoDB unit repository

Tests cover:
- Generic / product / single-unit queries
- Generic vs product conversions
- Documents validated into models (_id excluded, extra fields ignored)
- Index creation
"""

import pytest

from unit_factor_engine import Unit, UnitConversion
from unit_repository import MongoUnitRepository


class MockCursor:
    """Mock Motor cursor"""
    def __init__(self, rows):
        self.rows = rows

    async def to_list(self, length=None):
        return list(self.rows) if length is None else list(self.rows)[:length]


class MockCollection:
    """Mock MongoDB collection; None in a query matches missing or null fields"""
    def __init__(self, data):
        self.data = data
        self.queries = []
        self.indexes = []

    def find(self, query, projection=None):
        self.queries.append((query, projection))
        rows = [
            {k: v for k, v in doc.items() if not (projection and projection.get(k) == 0)}
            for doc in self.data
            if all(doc.get(key) == value for key, value in query.items())
        ]
        return MockCursor(rows)

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name")


class MockDB:
    """Mock MongoDB database"""
    def __init__(self):
        self.units = MockCollection([
            {"_id": "a1", "unit_id": 1, "name": "mg"},
            {"_id": "a2", "unit_id": 3, "name": "mL", "form_id": 7, "product_id": None},
            {"_id": "a3", "unit_id": 100, "name": "Drop", "product_id": 500, "created_at": "2026-01-01"},
        ])
        self.unit_conversions = MockCollection([
            {"_id": "c1", "from_unit_id": 1, "to_unit_id": 3, "factor": 0.001},
            {"_id": "c2", "from_unit_id": 100, "to_unit_id": 3, "factor": 0.05, "product_id": 500},
        ])


@pytest.fixture
def mock_db():
    return MockDB()


@pytest.fixture
def repository(mock_db):
    return MongoUnitRepository(mock_db)


class TestSelectUnits:
    """Test select_units filters"""

    @pytest.mark.asyncio
    async def test_no_filter_returns_generic_units(self, repository, mock_db):
        units = await repository.select_units()

        assert units == [Unit(unit_id=1, name="mg"), Unit(unit_id=3, name="mL", form_id=7)]
        assert mock_db.units.queries == [({"product_id": None}, {"_id": 0})]

    @pytest.mark.asyncio
    async def test_product_filter(self, repository):
        units = await repository.select_units(product_id=500)

        assert units == [Unit(unit_id=100, name="Drop", product_id=500)]

    @pytest.mark.asyncio
    async def test_unit_filter_ignores_scope(self, repository, mock_db):
        assert await repository.select_units(unit_id=100) == [Unit(unit_id=100, name="Drop", product_id=500)]
        assert await repository.select_units(unit_id=999) == []
        assert mock_db.units.queries[-1] == ({"unit_id": 999}, {"_id": 0})


class TestSelectDirectConversions:
    """Test select_direct_conversions scope"""

    @pytest.mark.asyncio
    async def test_generic_conversions(self, repository):
        conversions = await repository.select_direct_conversions()

        assert conversions == [UnitConversion(from_unit_id=1, to_unit_id=3, factor=0.001)]

    @pytest.mark.asyncio
    async def test_product_conversions(self, repository, mock_db):
        conversions = await repository.select_direct_conversions(500)

        assert conversions == [UnitConversion(from_unit_id=100, to_unit_id=3, factor=0.05, product_id=500)]
        assert mock_db.unit_conversions.queries == [({"product_id": 500}, {"_id": 0})]


class TestIndexes:
    """Test index creation"""

    @pytest.mark.asyncio
    async def test_ensure_indexes(self, repository, mock_db):
        await repository.ensure_indexes()

        assert [kwargs["name"] for _, kwargs in mock_db.units.indexes] == ["unit_id_unique", "product_id_idx"]
        assert mock_db.units.indexes[0][1]["unique"] is True
        assert [kwargs["name"] for _, kwargs in mock_db.unit_conversions.indexes] == [
            "conversion_pair_idx",
            "product_id_idx",
        ]
