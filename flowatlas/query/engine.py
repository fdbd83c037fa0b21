"""
Migration Flow Atlas - Query Engine
Lazy partition loading, compound filtering and memoized ranked results

Resolution of one query:
1. Partition keys from scope (state, else the county's state prefix); a key
   absent from index.json resolves to no rows
2. County scope uses the direction's adjacency list from summary.json when
   present, otherwise filters the partition rows
3. Demographic / year / min-value filters, then the attribution feature filter
   (sign first, then quantile of |attribution| over the remaining candidates)
4. Stable sort, descending by the chosen value
5. Truncate to top_n (None or 0 = unbounded)

Concurrency:
- Loads of one artifact key coalesce behind a single in-flight task, shielded
  so a cancelled caller does not cancel the load for other waiters
- reset() bumps a generation counter; loads finishing under an older
  generation are discarded
"""

import asyncio
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Union

import numpy as np

from flowatlas.ingest.geo_metadata import normalize_origin, normalize_state
from flowatlas.query.artifact_store import ArtifactStore, ArtifactUnavailableError
from flowatlas.query.filters import FeatureSign, FlowFilter, Metric, ValueType
from flowatlas.utils.artifact_keys import (
    BY_DEST,
    BY_DEST_ATTRIBUTION,
    BY_ORIGIN,
    DIMENSIONS_KEY,
    FEATURE_RANK_KEY,
    FEATURE_SCHEMA_KEY,
    GEO_METADATA_KEY,
    INBOUND,
    INDEX_KEY,
    OUTBOUND,
    SUMMARY_KEY,
    feature_by_county_key,
    partition_key,
    totals_key,
)
from flowatlas.utils.logging import get_logger

logger = get_logger(__name__)

FilterInput = Union[FlowFilter, Mapping[str, Any], None]


class EngineNotInitializedError(RuntimeError):
    """Raised when the engine is queried before init() (or after reset())."""


class PartitionState(str, Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"


@dataclass(frozen=True)
class FlowArc:
    """One ranked flow in a query result."""
    id: str
    origin: str
    dest: str
    observed: float
    predicted: float
    value: float
    origin_lon: Optional[float] = None
    origin_lat: Optional[float] = None
    dest_lon: Optional[float] = None
    dest_lat: Optional[float] = None
    age: Optional[str] = None
    income: Optional[str] = None
    education: Optional[str] = None
    year: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], value_type: str) -> "FlowArc":
        return cls(
            id=row["id"],
            origin=row["origin"],
            dest=row["dest"],
            observed=row["observed"],
            predicted=row["predicted"],
            value=row[value_type],
            origin_lon=row.get("origin_lon"),
            origin_lat=row.get("origin_lat"),
            dest_lon=row.get("dest_lon"),
            dest_lat=row.get("dest_lat"),
            age=row.get("age"),
            income=row.get("income"),
            education=row.get("education"),
            year=row.get("year"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


QueryResult = Tuple[FlowArc, ...]


class FlowQueryEngine:
    """
    Query engine over one artifact store.

    Usage:
        engine = FlowQueryEngine(create_artifact_store())
        await engine.init()
        arcs = await engine.query({"metric": "in", "state": "06", "topN": 50})
    """

    def __init__(self, store: ArtifactStore):
        self.store = store
        self._generation = 0
        self._clear()

    def _clear(self) -> None:
        self._initialized = False
        self._init_task: Optional[asyncio.Future] = None
        self._index: Dict[str, Dict[str, int]] = {}
        self._summary: Dict[str, Any] = {}
        self._feature_schema: List[Dict[str, Any]] = []
        self._geo_metadata: List[Dict[str, Any]] = []
        self._geo_by_id: Dict[str, Dict[str, Any]] = {}
        self._dimensions: Dict[str, Any] = {}
        self._artifacts: Dict[str, Any] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._memo: Dict[str, Tuple[QueryResult, FrozenSet[str]]] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Load index, summary, feature schema, geo metadata and dimensions. Idempotent."""
        if self._initialized:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._load_metadata(self._generation))

        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _load_metadata(self, generation: int) -> None:
        keys = (INDEX_KEY, SUMMARY_KEY, FEATURE_SCHEMA_KEY, GEO_METADATA_KEY, DIMENSIONS_KEY)
        index, summary, feature_schema, geo_metadata, dimensions = await asyncio.gather(
            *(self._read_json(key) for key in keys)
        )

        if generation != self._generation:
            logger.debug("Discarding metadata load from before reset")
            return

        self._index = index
        self._summary = summary
        self._feature_schema = feature_schema
        self._geo_metadata = geo_metadata
        self._geo_by_id = {entity["geoid"]: entity for entity in geo_metadata}
        self._dimensions = dimensions
        self._initialized = True

        logger.info(
            f"Flow query engine initialized: {len(index.get(BY_DEST, {}))} destination partitions, "
            f"{summary.get('total_rows', 0)} records, {len(feature_schema)} features"
        )

    def reset(self) -> None:
        """Drop all loaded state; in-flight loads finishing later are discarded."""
        self._generation += 1
        self._clear()
        logger.info("Flow query engine reset")

    def _require_init(self) -> None:
        if not self._initialized:
            raise EngineNotInitializedError("Flow query engine not initialized; call init() first")

    # ------------------------------------------------------------------
    # Artifact loading
    # ------------------------------------------------------------------

    async def _read_json(self, key: str) -> Any:
        content = await self.store.get(key)
        try:
            return json.loads(content)
        except ValueError as e:
            raise ArtifactUnavailableError(key, e) from e

    def partition_state(self, key: str) -> PartitionState:
        if key in self._artifacts:
            return PartitionState.LOADED
        if key in self._inflight:
            return PartitionState.LOADING
        return PartitionState.NOT_LOADED

    async def _ensure(self, key: str) -> Any:
        """Loaded payload for key, joining an in-flight load when one exists."""
        if key in self._artifacts:
            return self._artifacts[key]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load_artifact(key, self._generation))
            self._inflight[key] = task

        return await asyncio.shield(task)

    async def _load_artifact(self, key: str, generation: int) -> Any:
        try:
            logger.debug(f"Loading {key}")
            payload = await self._read_json(key)
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

        if generation != self._generation:
            logger.debug(f"Discarding {key} loaded before reset")
            return payload

        return self._artifacts.setdefault(key, payload)

    async def reload_partition(self, key: str) -> None:
        """Re-read one artifact and evict memoized results that referenced it."""
        self._require_init()
        generation = self._generation

        payload = await self._read_json(key)
        if generation != self._generation:
            return

        self._artifacts[key] = payload
        stale = [sig for sig, (_, deps) in self._memo.items() if key in deps]
        for sig in stale:
            del self._memo[sig]

        logger.info(f"Reloaded {key}, evicted {len(stale)} cached results")

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query(self, filters: FilterInput = None) -> QueryResult:
        """
        Resolve a filter to a ranked tuple of FlowArc.

        Args:
            filters: FlowFilter or mapping (snake_case or camelCase keys)

        Returns:
            Tuple of FlowArc; the same object for canonically identical filters

        Raises:
            EngineNotInitializedError: If init() has not completed
            ArtifactUnavailableError: If a needed partition cannot be read
        """
        self._require_init()
        flt = FlowFilter.coerce(filters)
        signature = flt.signature()

        cached = self._memo.get(signature)
        if cached is not None:
            return cached[0]

        generation = self._generation
        result, deps = await self._resolve(flt)

        if generation != self._generation:
            return result
        return self._memo.setdefault(signature, (result, frozenset(deps)))[0]

    async def _resolve(self, flt: FlowFilter) -> Tuple[QueryResult, Set[str]]:
        deps: Set[str] = set()
        scope = flt.scope_key
        if scope is None:
            return (), deps

        if flt.metric == Metric.IN:
            directions = (INBOUND,)
        elif flt.metric == Metric.OUT:
            directions = (OUTBOUND,)
        else:
            directions = (INBOUND, OUTBOUND)

        rows: List[Dict[str, Any]] = []
        seen: Set[str] = set()
        for direction in directions:
            for row in await self._scoped_rows(direction, scope, flt.county, deps):
                if row["id"] not in seen:
                    seen.add(row["id"])
                    rows.append(row)

        value_type = ValueType(flt.value_type).value
        rows = [
            row
            for row in rows
            if row[value_type] >= flt.min_value
            and (flt.age is None or row.get("age") == flt.age)
            and (flt.income is None or row.get("income") == flt.income)
            and (flt.education is None or row.get("education") == flt.education)
            and (flt.year is None or row.get("year") == flt.year)
        ]

        rows = await self._apply_feature_filter(rows, flt, deps)

        rows.sort(key=lambda row: -row[value_type])
        if flt.top_n:
            rows = rows[: flt.top_n]

        return tuple(FlowArc.from_row(row, value_type) for row in rows), deps

    async def _scoped_rows(
        self, direction: str, scope: str, county: Optional[str], deps: Set[str]
    ) -> List[Dict[str, Any]]:
        family = BY_DEST if direction == INBOUND else BY_ORIGIN
        if scope not in self._index.get(family, {}):
            return []

        field_name = "dest" if direction == INBOUND else "origin"

        if county:
            adjacency_name = "in_adjacency" if direction == INBOUND else "out_adjacency"
            adjacency = self._summary.get(adjacency_name, {}).get(county)
            if adjacency is not None:
                return list(adjacency)

        key = partition_key(family, scope)
        deps.add(key)
        payload = await self._ensure(key)

        if county:
            return [row for row in payload["rows"] if row[field_name] == county]
        return list(payload["rows"])

    async def _apply_feature_filter(
        self, rows: List[Dict[str, Any]], flt: FlowFilter, deps: Set[str]
    ) -> List[Dict[str, Any]]:
        if not flt.feature_filter_active:
            return rows

        index = flt.feature_index
        if not 0 <= index < len(self._feature_schema):
            logger.warning(
                f"Feature index {index} outside schema of {len(self._feature_schema)} features; "
                "feature filter ignored"
            )
            return rows

        attribution = await self._attribution_values(rows, index, deps)

        candidates = [(row, attribution.get(row["id"])) for row in rows]
        candidates = [(row, value) for row, value in candidates if value is not None]

        if flt.feature_sign == FeatureSign.POS:
            candidates = [(row, value) for row, value in candidates if value > 0]
        elif flt.feature_sign == FeatureSign.NEG:
            candidates = [(row, value) for row, value in candidates if value < 0]

        if flt.feature_quantile is not None and candidates:
            magnitudes = np.abs(np.array([value for _, value in candidates], dtype=float))
            threshold = float(np.quantile(magnitudes, flt.feature_quantile))
            candidates = [(row, value) for row, value in candidates if abs(value) >= threshold]

        return [row for row, _ in candidates]

    async def _attribution_values(
        self, rows: List[Dict[str, Any]], index: int, deps: Set[str]
    ) -> Dict[str, Optional[float]]:
        available = self._index.get(BY_DEST_ATTRIBUTION, {})
        states = sorted({row["dest"][:2] for row in rows} & set(available))

        keys = [partition_key(BY_DEST_ATTRIBUTION, state) for state in states]
        deps.update(keys)
        payloads = await asyncio.gather(*(self._ensure(key) for key in keys))

        values: Dict[str, Optional[float]] = {}
        for payload in payloads:
            for entry in payload["rows"]:
                vector = entry.get("values") or []
                values[entry["id"]] = vector[index] if index < len(vector) else None
        return values

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_geo_metadata(self) -> List[Dict[str, Any]]:
        self._require_init()
        return self._geo_metadata

    def get_summary(self) -> Dict[str, Any]:
        self._require_init()
        return self._summary

    def get_feature_schema(self) -> List[str]:
        """Ordered feature ids; position i is index i of every attribution vector."""
        self._require_init()
        return [feature["id"] for feature in self._feature_schema]

    def get_feature_descriptors(self) -> List[Dict[str, Any]]:
        """Feature schema entries with display labels: [{id, index, label}]."""
        self._require_init()
        return self._feature_schema

    def get_index(self) -> Dict[str, Dict[str, int]]:
        self._require_init()
        return self._index

    def get_dimensions(self) -> Dict[str, Any]:
        self._require_init()
        return self._dimensions

    def get_available_years(self) -> List[int]:
        self._require_init()
        return list(self._summary.get("years", []))

    def get_entity_name(self, geoid: str) -> str:
        """Display name of a county, state or region; the code itself when unknown."""
        self._require_init()
        code = normalize_origin(geoid)
        entity = self._geo_by_id.get(code)
        return entity["name"] if entity else geoid

    async def get_attribution_partition(self, state_code: str) -> Optional[Dict[str, Any]]:
        self._require_init()
        code = normalize_state(state_code)
        if code not in self._index.get(BY_DEST_ATTRIBUTION, {}):
            return None
        return await self._ensure(partition_key(BY_DEST_ATTRIBUTION, code))

    async def get_feature_rank(self) -> List[Dict[str, Any]]:
        self._require_init()
        if not self._feature_schema:
            return []
        return await self._ensure(FEATURE_RANK_KEY)

    async def get_feature_by_county(self, feature_id: str) -> Optional[Dict[str, Any]]:
        self._require_init()
        if feature_id not in {feature["id"] for feature in self._feature_schema}:
            return None
        return await self._ensure(feature_by_county_key(feature_id))

    def get_net_totals(self, geoid: str, value_type: str = "observed") -> Dict[str, Any]:
        """
        Inbound, outbound and net totals for a county, state or region.

        Args:
            geoid: 5-digit county GEOID, state code or region code
            value_type: 'observed' or 'predicted'
        """
        self._require_init()
        code = normalize_origin(geoid)
        granularity = "county" if code and code.isdigit() and len(code) == 5 else "state"

        inbound = self._summary.get(totals_key(INBOUND, granularity, value_type), {}).get(code, 0.0)
        outbound = self._summary.get(totals_key(OUTBOUND, granularity, value_type), {}).get(code, 0.0)

        return {
            "geoid": code,
            "granularity": granularity,
            "value_type": value_type,
            "inbound": inbound,
            "outbound": outbound,
            "net": inbound - outbound,
        }

    def get_net_series(self, geoid: str) -> List[Dict[str, Any]]:
        """Per-year observed inbound / outbound / net for one geography."""
        self._require_init()
        code = normalize_origin(geoid)
        yearly_in = self._summary.get("yearly_inbound_totals", {})
        yearly_out = self._summary.get("yearly_outbound_totals", {})

        series = []
        for year in self._summary.get("years", []):
            inbound = yearly_in.get(str(year), {}).get(code, 0.0)
            outbound = yearly_out.get(str(year), {}).get(code, 0.0)
            series.append({"year": year, "inbound": inbound, "outbound": outbound, "net": inbound - outbound})
        return series
