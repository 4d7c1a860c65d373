# backend/unit_repository.py

"""
MongoDB data access for units and unit conversions.

Pure data fetch, no business logic: documents are validated into models
and returned as-is. Factor precedence, fallbacks and caching live in the
unit factor engine.

Collections:
- units:            {unit_id, name, form_id, product_id}
- unit_conversions: {from_unit_id, to_unit_id, factor, product_id}

product_id missing or null means generic.
"""

from typing import Optional, List
import logging

from unit_factor_engine import Unit, UnitConversion

logger = logging.getLogger(__name__)


class MongoUnitRepository:
    """Data access collaborator backed by a Motor database"""

    def __init__(self, db):
        """
        Args:
            db: Motor (AsyncIOMotorDatabase) database instance
        """
        self.db = db

    async def select_units(
        self,
        product_id: Optional[int] = None,
        unit_id: Optional[int] = None
    ) -> List[Unit]:
        """
        Select units.

        unit_id -> that unit (any scope); product_id -> the product's own
        units; no filter -> all generic units.
        """
        if unit_id is not None:
            query = {"unit_id": unit_id}
        elif product_id is not None:
            query = {"product_id": product_id}
        else:
            query = {"product_id": None}

        rows = await self.db.units.find(query, {"_id": 0}).to_list(None)
        return [Unit.model_validate(row) for row in rows]

    async def select_direct_conversions(self, product_id: Optional[int] = None) -> List[UnitConversion]:
        """Product-specific conversions, or all generic conversions when no product_id"""
        query = {"product_id": product_id}

        rows = await self.db.unit_conversions.find(query, {"_id": 0}).to_list(None)
        return [UnitConversion.model_validate(row) for row in rows]

    async def ensure_indexes(self) -> None:
        await self.db.units.create_index([("unit_id", 1)], unique=True, name="unit_id_unique")
        await self.db.units.create_index([("product_id", 1)], name="product_id_idx")
        await self.db.unit_conversions.create_index(
            [("from_unit_id", 1), ("to_unit_id", 1), ("product_id", 1)],
            name="conversion_pair_idx"
        )
        await self.db.unit_conversions.create_index([("product_id", 1)], name="product_id_idx")
        logger.info("Unit indexes created")
