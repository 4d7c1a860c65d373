# backend/unit_factor_engine.py

"""
Unit Factor Engine - Conversion Factor Resolution

This engine is responsible for:
- Caching generic units and generic direct conversions (UnitStore)
- Building weighted conversion graphs per scope (ConversionGraphBuilder)
- Finding a path between two units (PathResolver)
- Composing per-edge factors along a path (FactorResolver)
- Falling back to name-matched generic units when a product-specific
  unit has no direct conversion data

This engine MUST NOT:
- Persist or mutate units and conversions
- Parse or format unit strings
- Validate stored conversion data (non-positive factors are simply ignored)

GLOBAL INVARIANTS (ENFORCED):
1) Identity conversion u -> u is always 1 and never looked up
2) A factor is strictly positive; zero/negative rows never match
3) A conversion A -> B with factor f implies B -> A with factor 1/f
4) Product-specific conversions take precedence over generic ones
5) Generic caches are loaded exactly once per store
6) Returned records are copies, never references into the caches
7) A path edge without a factor is reported, never silently replaced
"""

from enum import Enum
from typing import Optional, List, Dict, Tuple, Callable, Awaitable, Iterable, Sequence
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field
import asyncio
import heapq
import logging

logger = logging.getLogger(__name__)

# ==================== ENUMS ====================

class PathWeighting(str, Enum):
    """Edge cost used when searching for a conversion path"""
    HOPS = "hops"              # Fewest conversions wins
    FACTOR_SUM = "factor_sum"  # Legacy: smallest sum of edge factors wins


class FactorStatus(str, Enum):
    """Factor resolution status"""
    RESOLVED = "RESOLVED"
    PARTIAL = "PARTIAL"
    NO_PATH = "NO_PATH"


class FactorSource(str, Enum):
    """Where a single-hop factor came from"""
    IDENTITY = "IDENTITY"
    PRODUCT = "PRODUCT"
    GENERIC = "GENERIC"
    NAME_MATCH = "NAME_MATCH"
    NEUTRAL_SUBSTITUTE = "NEUTRAL_SUBSTITUTE"


# ==================== ERROR CLASSES ====================

class ConversionError(Exception):
    """Base conversion error"""
    def __init__(self, error_code: str, message: str, field: Optional[str] = None, severity: str = "HARD_ERROR"):
        self.error_code = error_code
        self.message = message
        self.field = field
        self.severity = severity
        super().__init__(self.message)


class IncompleteConversionPathError(ConversionError):
    """A path was found but at least one of its edges has no factor"""
    def __init__(self, resolution: "FactorResolution"):
        self.resolution = resolution
        self.failed_edges = list(resolution.failed_edges)
        edges = ", ".join(f"{from_id} -> {to_id}" for from_id, to_id in self.failed_edges)
        super().__init__(
            "INCOMPLETE_CONVERSION_PATH",
            f"Conversion path {resolution.path} from unit {resolution.from_unit_id} to unit "
            f"{resolution.to_unit_id} has no direct factor for edge(s): {edges}.",
            field="path",
            severity="HARD_ERROR"
        )


# ==================== DATA MODELS ====================

class Unit(BaseModel):
    """Measurement unit. product_id None means generic (available to all products)"""
    model_config = ConfigDict(extra="ignore")
    unit_id: int
    name: str
    form_id: Optional[int] = None
    product_id: Optional[int] = None


class UnitConversion(BaseModel):
    """One from_unit equals `factor` to_units"""
    model_config = ConfigDict(extra="ignore")
    from_unit_id: int
    to_unit_id: int
    factor: float
    product_id: Optional[int] = None


class FactorStep(BaseModel):
    """Single hop in a factor audit trail"""
    step_number: int
    from_unit_id: int
    to_unit_id: int
    factor: Optional[float] = None  # None when the hop could not be resolved
    factor_applied: float
    factor_source: FactorSource


class FactorResolution(BaseModel):
    """Complete factor audit trail"""
    from_unit_id: int
    to_unit_id: int
    product_ids: List[int] = []
    status: FactorStatus
    factor: Optional[float] = None
    path: List[int] = []
    steps: List[FactorStep] = []
    failed_edges: List[Tuple[int, int]] = []
    path_weighting: PathWeighting = PathWeighting.HOPS
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


SelectUnits = Callable[..., Awaitable[List[Unit]]]
SelectDirectConversions = Callable[..., Awaitable[List[UnitConversion]]]


def factor_if_conversion_matches(
    conversion: UnitConversion,
    from_unit_id: int,
    to_unit_id: int
) -> Optional[float]:
    """
    Return the factor of `conversion` for the queried pair.

    Returns the row factor for a direct match, its inverse for a reversed
    match, otherwise None. Rows with a non-positive factor never match.
    """
    factor = conversion.factor
    if factor is None or factor <= 0:
        return None

    if conversion.from_unit_id == from_unit_id and conversion.to_unit_id == to_unit_id:
        return float(factor)
    if conversion.from_unit_id == to_unit_id and conversion.to_unit_id == from_unit_id:
        return 1.0 / factor
    return None


def _unique(ids: Iterable[int]) -> List[int]:
    seen = set()
    result = []
    for unit_id in ids:
        if unit_id not in seen:
            seen.add(unit_id)
            result.append(unit_id)
    return result


# ==================== UNIT STORE ====================

class UnitStore:
    """
    Process-wide cache of generic units and generic direct conversions.

    Loaded lazily, at most once. An explicit loaded flag is used so that an
    empty data set still counts as loaded, and a lock keeps concurrent
    callers from triggering parallel loads.
    """

    def __init__(
        self,
        select_units: SelectUnits,
        select_direct_conversions: SelectDirectConversions
    ):
        """
        Initialize store.

        Args:
            select_units: Data access coroutine, select_units(product_id=None, unit_id=None)
            select_direct_conversions: Data access coroutine, select_direct_conversions(product_id=None)
        """
        self._select_units = select_units
        self._select_direct_conversions = select_direct_conversions
        self._generic_units: Tuple[Unit, ...] = ()
        self._generic_direct_conversions: Tuple[UnitConversion, ...] = ()
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def generic_units(self) -> Tuple[Unit, ...]:
        if not self._loaded:
            raise RuntimeError("Generic units read before UnitStore.ensure_loaded()")
        return self._generic_units

    @property
    def generic_direct_conversions(self) -> Tuple[UnitConversion, ...]:
        if not self._loaded:
            raise RuntimeError("Generic conversions read before UnitStore.ensure_loaded()")
        return self._generic_direct_conversions

    async def ensure_loaded(self) -> None:
        """
        Load generic units and conversions on first call.

        Subsequent calls are no-ops. If the data access layer fails the
        store stays unloaded and the error propagates; the next call retries.
        """
        if self._loaded:
            return

        async with self._lock:
            if self._loaded:
                return

            units = await self._select_units()
            conversions = await self._select_direct_conversions()

            self._generic_units = tuple(units)
            self._generic_direct_conversions = tuple(conversions)
            self._loaded = True

            logger.info(
                f"Loaded {len(self._generic_units)} generic units and "
                f"{len(self._generic_direct_conversions)} generic direct conversions"
            )

    def find_generic_unit(self, unit_id: int) -> Optional[Unit]:
        return next((u for u in self.generic_units if u.unit_id == unit_id), None)

    async def lookup_unit(self, unit_id: int) -> Optional[Unit]:
        """Generic cache first, then the data access layer"""
        await self.ensure_loaded()

        unit = self.find_generic_unit(unit_id)
        if unit:
            return unit

        rows = await self._select_units(unit_id=unit_id)
        return rows[0] if rows else None

    async def select_product_units(self, product_id: int) -> List[Unit]:
        return list(await self._select_units(product_id=product_id))

    async def select_product_conversions(self, product_ids: Optional[Sequence[int]]) -> List[UnitConversion]:
        """Product-specific conversions for every id, concatenated in id order"""
        if not product_ids:
            return []

        batches = await asyncio.gather(*(
            self._select_direct_conversions(product_id) for product_id in product_ids
        ))
        return [conversion for batch in batches for conversion in batch]


# ==================== DIRECT FACTOR LOOKUP ====================

class DirectFactorLookup:
    """Single-hop factor resolution: product override -> generic -> name match"""

    def __init__(self, store: UnitStore):
        self.store = store

    def find_direct_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_conversions: Sequence[UnitConversion] = ()
    ) -> Tuple[Optional[float], Optional[FactorSource]]:
        if from_unit_id == to_unit_id:
            return 1.0, FactorSource.IDENTITY

        for conversion in product_conversions:
            factor = factor_if_conversion_matches(conversion, from_unit_id, to_unit_id)
            if factor is not None:
                return factor, FactorSource.PRODUCT

        for conversion in self.store.generic_direct_conversions:
            factor = factor_if_conversion_matches(conversion, from_unit_id, to_unit_id)
            if factor is not None:
                return factor, FactorSource.GENERIC

        return None, None

    async def preferred_direct_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_conversions: Sequence[UnitConversion] = (),
        unit_cache: Optional[Dict[int, Optional[Unit]]] = None
    ) -> Tuple[Optional[float], Optional[FactorSource]]:
        """
        Resolve the preferred direct factor between two units.

        Args:
            from_unit_id: Source unit
            to_unit_id: Target unit
            product_conversions: Product-specific rows searched before generic rows
            unit_cache: Optional memo for unit lookups during one graph build or resolution

        Returns:
            Tuple of (factor, source); (None, None) when nothing matches
        """
        factor, source = self.find_direct_factor(from_unit_id, to_unit_id, product_conversions)
        if factor is not None:
            return factor, source

        # Retry with generic units carrying the same name
        from_unit = await self._lookup_unit(from_unit_id, unit_cache)
        to_unit = await self._lookup_unit(to_unit_id, unit_cache)
        generic_from = self._generic_namesake(from_unit)
        generic_to = self._generic_namesake(to_unit)

        if generic_from is None and generic_to is None:
            return None, None

        factor, _ = self.find_direct_factor(
            generic_from.unit_id if generic_from else from_unit_id,
            generic_to.unit_id if generic_to else to_unit_id
        )
        if factor is None:
            return None, None
        return factor, FactorSource.NAME_MATCH

    def _generic_namesake(self, unit: Optional[Unit]) -> Optional[Unit]:
        if unit is None:
            return None
        return next(
            (u for u in self.store.generic_units if u.product_id is None and u.name == unit.name),
            None
        )

    async def _lookup_unit(
        self,
        unit_id: int,
        unit_cache: Optional[Dict[int, Optional[Unit]]]
    ) -> Optional[Unit]:
        if unit_cache is None:
            return await self.store.lookup_unit(unit_id)
        if unit_id not in unit_cache:
            unit_cache[unit_id] = await self.store.lookup_unit(unit_id)
        return unit_cache[unit_id]


# ==================== CONVERSION GRAPH ====================

class ConversionGraph:
    """Directed weighted graph over unit ids; weight = factor from -> to"""

    def __init__(self):
        self._edges: Dict[int, Dict[int, float]] = {}

    def add_node(self, unit_id: int, edges: Optional[Dict[int, float]] = None) -> None:
        self._edges[unit_id] = dict(edges or {})

    @property
    def nodes(self) -> List[int]:
        return list(self._edges)

    @property
    def edge_count(self) -> int:
        return sum(len(edges) for edges in self._edges.values())

    def neighbors(self, unit_id: int) -> Dict[int, float]:
        return self._edges.get(unit_id, {})

    def weight(self, from_unit_id: int, to_unit_id: int) -> Optional[float]:
        return self._edges.get(from_unit_id, {}).get(to_unit_id)

    def __contains__(self, unit_id: int) -> bool:
        return unit_id in self._edges

    def __len__(self) -> int:
        return len(self._edges)


class ConversionGraphBuilder:
    """Builds the generic graph or a generic + product overlay graph"""

    def __init__(self, store: UnitStore, lookup: DirectFactorLookup):
        self.store = store
        self.lookup = lookup

    async def build_generic_graph(self) -> ConversionGraph:
        await self.store.ensure_loaded()

        node_ids = _unique(u.unit_id for u in self.store.generic_units)
        return await self._build(node_ids, [])

    async def build_product_graph(
        self,
        product_ids: Sequence[int],
        product_conversions: Optional[List[UnitConversion]] = None
    ) -> ConversionGraph:
        """
        Build a graph for the given products.

        Nodes are the generic units plus every unit referenced by the
        products' conversions. A product row matching (from, to) exactly
        wins; otherwise the generic preferred direct factor is used.
        """
        await self.store.ensure_loaded()

        if product_conversions is None:
            product_conversions = await self.store.select_product_conversions(product_ids)

        node_ids = _unique(
            [u.unit_id for u in self.store.generic_units]
            + [c.from_unit_id for c in product_conversions]
            + [c.to_unit_id for c in product_conversions]
        )
        return await self._build(node_ids, product_conversions)

    async def _build(
        self,
        node_ids: List[int],
        product_conversions: Sequence[UnitConversion]
    ) -> ConversionGraph:
        graph = ConversionGraph()
        unit_cache: Dict[int, Optional[Unit]] = {}

        for from_unit_id in node_ids:
            edges: Dict[int, float] = {}

            for to_unit_id in node_ids:
                if from_unit_id == to_unit_id:
                    continue

                factor = next(
                    (c.factor for c in product_conversions
                     if c.from_unit_id == from_unit_id and c.to_unit_id == to_unit_id and c.factor > 0),
                    None
                )
                if factor is None:
                    factor, _ = await self.lookup.preferred_direct_factor(
                        from_unit_id,
                        to_unit_id,
                        unit_cache=unit_cache
                    )

                if factor is not None:
                    edges[to_unit_id] = factor

            graph.add_node(from_unit_id, edges)

        return graph


# ==================== PATH RESOLVER ====================

class PathResolver:
    """Dijkstra shortest path over a ConversionGraph"""

    def __init__(self, weighting: PathWeighting = PathWeighting.HOPS):
        self.weighting = PathWeighting(weighting)

    def edge_cost(self, factor: float) -> float:
        if self.weighting == PathWeighting.FACTOR_SUM:
            return factor
        return 1.0

    def find_path(self, graph: ConversionGraph, source: int, target: int) -> List[int]:
        """
        Find a path from source to target.

        Ties are broken by node insertion order, so results are deterministic
        for a given graph.

        Returns:
            Ordered unit ids from source to target, or [] when the units are
            equal, unknown or disconnected
        """
        if source == target or source not in graph or target not in graph:
            return []

        order = {unit_id: index for index, unit_id in enumerate(graph.nodes)}
        dist: Dict[int, float] = {source: 0.0}
        prev: Dict[int, Optional[int]] = {source: None}
        settled = set()

        pq = [(0.0, order[source], source)]
        while pq:
            d, _, u = heapq.heappop(pq)
            if u in settled:
                continue
            settled.add(u)
            if u == target:
                break

            for v, factor in graph.neighbors(u).items():
                if v == u or v in settled:
                    continue
                nd = d + self.edge_cost(factor)
                if nd < dist.get(v, float("inf")):
                    dist[v] = nd
                    prev[v] = u
                    heapq.heappush(pq, (nd, order.get(v, len(order)), v))

        if target not in prev:
            return []

        path: List[int] = []
        cur: Optional[int] = target
        while cur is not None:
            path.append(cur)
            cur = prev[cur]
        path.reverse()
        return path


# ==================== FACTOR RESOLVER ====================

class FactorResolver:
    """
    Resolves multiplicative conversion factors between units.

    Resolution order for a single hop is product override, then generic
    direct conversion, then generic units matched by name. Multi-hop
    conversions go through a graph path and every hop is re-derived in the
    request scope when composing the factor.

    The generic graph is cached after its first build; product graphs are
    rebuilt on every request.
    """

    def __init__(self, store: UnitStore, path_resolver: Optional[PathResolver] = None):
        """
        Initialize resolver.

        Args:
            store: UnitStore shared by the process
            path_resolver: PathResolver (defaults to HOPS weighting)
        """
        self.store = store
        self.path_resolver = path_resolver or PathResolver()
        self.lookup = DirectFactorLookup(store)
        self.graph_builder = ConversionGraphBuilder(store, self.lookup)
        self._generic_graph: Optional[ConversionGraph] = None
        self._graph_lock = asyncio.Lock()

    async def get_generic_graph(self) -> ConversionGraph:
        if self._generic_graph is not None:
            return self._generic_graph

        async with self._graph_lock:
            if self._generic_graph is None:
                graph = await self.graph_builder.build_generic_graph()
                logger.info(f"Built generic conversion graph: {len(graph)} units, {graph.edge_count} edges")
                self._generic_graph = graph

        return self._generic_graph

    async def get_path(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Optional[Sequence[int]] = None,
        product_conversions: Optional[List[UnitConversion]] = None
    ) -> List[int]:
        """Path between two units in the request scope; [] when there is none"""
        if from_unit_id == to_unit_id:
            return []

        if product_ids:
            graph = await self.graph_builder.build_product_graph(product_ids, product_conversions)
        else:
            graph = await self.get_generic_graph()

        path = self.path_resolver.find_path(graph, from_unit_id, to_unit_id)
        logger.debug(f"Path {from_unit_id} -> {to_unit_id} (products {list(product_ids or [])}): {path}")

        if len(path) < 2:
            return []
        return path

    async def get_preferred_direct_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Optional[Sequence[int]] = None
    ) -> Optional[float]:
        """
        Single-hop factor: product override -> generic direct -> generic name match.

        Returns:
            Factor or None when no direct conversion can be determined
        """
        if from_unit_id == to_unit_id:
            return 1.0

        await self.store.ensure_loaded()
        product_conversions = await self.store.select_product_conversions(product_ids)

        factor, _ = await self.lookup.preferred_direct_factor(from_unit_id, to_unit_id, product_conversions)
        return factor

    async def resolve_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Optional[Sequence[int]] = None
    ) -> FactorResolution:
        """
        Resolve the factor between two units with a full audit trail.

        Follows strict step-by-step process:
        1) Identity short-circuit
        2) Build (product) or reuse (generic) the conversion graph
        3) Find a path; none -> NO_PATH
        4) Re-derive the preferred direct factor for every hop
        5) Multiply hop factors; an unresolved hop is recorded as a neutral
           substitute and the result is PARTIAL

        Never raises for missing data; see get_factor.
        """
        product_ids = list(product_ids or [])
        weighting = self.path_resolver.weighting

        if from_unit_id == to_unit_id:
            return FactorResolution(
                from_unit_id=from_unit_id,
                to_unit_id=to_unit_id,
                product_ids=product_ids,
                status=FactorStatus.RESOLVED,
                factor=1.0,
                path=[from_unit_id],
                path_weighting=weighting
            )

        await self.store.ensure_loaded()
        product_conversions = await self.store.select_product_conversions(product_ids)

        path = await self.get_path(from_unit_id, to_unit_id, product_ids, product_conversions)
        if not path:
            return FactorResolution(
                from_unit_id=from_unit_id,
                to_unit_id=to_unit_id,
                product_ids=product_ids,
                status=FactorStatus.NO_PATH,
                path_weighting=weighting
            )

        steps: List[FactorStep] = []
        failed_edges: List[Tuple[int, int]] = []
        unit_cache: Dict[int, Optional[Unit]] = {}
        factor = 1.0

        for step_number, (hop_from, hop_to) in enumerate(zip(path, path[1:]), start=1):
            hop_factor, source = await self.lookup.preferred_direct_factor(
                hop_from,
                hop_to,
                product_conversions,
                unit_cache
            )

            if hop_factor is None:
                logger.warning(
                    f"No direct factor found from unit {hop_from} to unit {hop_to} "
                    f"for product ids {product_ids}. Substituting neutral factor 1."
                )
                failed_edges.append((hop_from, hop_to))
                applied = 1.0
                source = FactorSource.NEUTRAL_SUBSTITUTE
            else:
                applied = hop_factor

            factor *= applied
            steps.append(FactorStep(
                step_number=step_number,
                from_unit_id=hop_from,
                to_unit_id=hop_to,
                factor=hop_factor,
                factor_applied=applied,
                factor_source=source
            ))

        return FactorResolution(
            from_unit_id=from_unit_id,
            to_unit_id=to_unit_id,
            product_ids=product_ids,
            status=FactorStatus.PARTIAL if failed_edges else FactorStatus.RESOLVED,
            factor=factor,
            path=path,
            steps=steps,
            failed_edges=failed_edges,
            path_weighting=weighting
        )

    async def get_factor(
        self,
        from_unit_id: int,
        to_unit_id: int,
        product_ids: Optional[Sequence[int]] = None
    ) -> Optional[float]:
        """
        Conversion factor from one unit to another.

        Returns:
            Factor, or None when no path connects the units

        Raises:
            IncompleteConversionPathError: If a hop on the path has no factor
        """
        resolution = await self.resolve_factor(from_unit_id, to_unit_id, product_ids)

        if resolution.status == FactorStatus.PARTIAL:
            raise IncompleteConversionPathError(resolution)

        return resolution.factor
