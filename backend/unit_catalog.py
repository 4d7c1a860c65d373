# backend/unit_catalog.py

"""
Unit Catalog - public query layer over the unit factor engine

Provides units, generic conversions, UI option lists and conversion
factors. Every record returned is a copy; callers can never reach into
the engine caches.
"""

from typing import Optional, List, Sequence
from pydantic import BaseModel, Field
import logging

from unit_factor_engine import (
    FactorResolution,
    FactorResolver,
    FactorStatus,
    PathResolver,
    PathWeighting,
    SelectDirectConversions,
    SelectUnits,
    Unit,
    UnitConversion,
    UnitStore,
)

logger = logging.getLogger(__name__)

# Common small measure volumes offered together once any of them applies
DEFAULT_SMALL_VOLUME_UNIT_IDS = [2, 13, 30, 31, 33]


# ==================== DATA MODELS ====================

class UnitOption(BaseModel):
    """Label/value pair for a unit picker"""
    label: str
    value: int


class ProductUnitProfile(BaseModel):
    """Product metadata needed to assemble unit options"""
    product_id: int
    amount_unit_id: int
    form_id: Optional[int] = None
    rec_dose_unit_id: Optional[int] = None


class UnitOptionPolicy(BaseModel):
    """Business rules for candidate units in product option lists"""
    small_volume_unit_ids: List[int] = Field(default_factory=lambda: list(DEFAULT_SMALL_VOLUME_UNIT_IDS))
    include_form_units: bool = True


# ==================== UNIT CATALOG ====================

class UnitCatalog:
    """Facade used by the API and scripts"""

    def __init__(
        self,
        select_units: SelectUnits,
        select_direct_conversions: SelectDirectConversions,
        path_weighting: PathWeighting = PathWeighting.HOPS,
        option_policy: Optional[UnitOptionPolicy] = None
    ):
        """
        Initialize catalog.

        Args:
            select_units: Data access coroutine, select_units(product_id=None, unit_id=None)
            select_direct_conversions: Data access coroutine, select_direct_conversions(product_id=None)
            path_weighting: Edge cost used by the path search
            option_policy: Candidate rules for get_unit_options_for_product
        """
        self.store = UnitStore(select_units, select_direct_conversions)
        self.resolver = FactorResolver(self.store, PathResolver(path_weighting))
        self.option_policy = option_policy or UnitOptionPolicy()

    async def get_unit(self, unit_id: int) -> Optional[Unit]:
        unit = await self.store.lookup_unit(unit_id)
        return unit.model_copy() if unit else None

    async def get_units(self, product_id: Optional[int] = None) -> List[Unit]:
        """Generic units, or only the product's own units when product_id is given"""
        await self.store.ensure_loaded()

        if product_id:
            units = await self.store.select_product_units(product_id)
        else:
            units = self.store.generic_units

        return [u.model_copy() for u in units]

    async def get_generic_direct_conversions(self) -> List[UnitConversion]:
        await self.store.ensure_loaded()
        return [c.model_copy() for c in self.store.generic_direct_conversions]

    async def get_unit_option(self, unit_id: int) -> Optional[UnitOption]:
        unit = await self.store.lookup_unit(unit_id)
        return UnitOption(label=unit.name, value=unit.unit_id) if unit else None

    async def get_unit_options_for_product(self, product: ProductUnitProfile) -> List[UnitOption]:
        """
        Unit options a product quantity can be entered in.

        Candidates are the amount unit, the recommended dose unit, generic
        units sharing the product form, the product's own units, units in
        the product's conversions and, if any of them is already present,
        the small volume units. Only candidates convertible to the amount
        unit are kept. Sorted by label.
        """
        await self.store.ensure_loaded()

        candidate_ids = [product.amount_unit_id]
        if product.rec_dose_unit_id:
            candidate_ids.append(product.rec_dose_unit_id)

        if product.form_id and self.option_policy.include_form_units:
            candidate_ids.extend(u.unit_id for u in self.store.generic_units if u.form_id == product.form_id)

        product_units = await self.store.select_product_units(product.product_id)
        candidate_ids.extend(u.unit_id for u in product_units)

        for conversion in await self.store.select_product_conversions([product.product_id]):
            candidate_ids.extend([conversion.from_unit_id, conversion.to_unit_id])

        small_volume_ids = self.option_policy.small_volume_unit_ids
        if any(unit_id in candidate_ids for unit_id in small_volume_ids):
            candidate_ids.extend(small_volume_ids)

        options: List[UnitOption] = []
        for unit_id in dict.fromkeys(candidate_ids):
            resolution = await self.resolver.resolve_factor(unit_id, product.amount_unit_id, [product.product_id])
            if resolution.status != FactorStatus.RESOLVED:
                logger.debug(
                    f"Skipping unit {unit_id} for product {product.product_id}: "
                    f"{resolution.status.value} to amount unit {product.amount_unit_id}"
                )
                continue

            option = await self.get_unit_option(unit_id)
            if option:
                options.append(option)

        return sorted(options, key=lambda o: (o.label.casefold(), o.value))

    async def get_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Optional[Sequence[int]] = None
    ) -> Optional[float]:
        return await self.resolver.get_factor(from_unit_id, to_unit_id, product_ids)

    async def resolve_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Optional[Sequence[int]] = None
    ) -> FactorResolution:
        return await self.resolver.resolve_factor(from_unit_id, to_unit_id, product_ids)
