"""
Migration Flow Atlas - Partition & Aggregate Builder
Groups validated flow records into partitions and pre-computes aggregates

Per record, in one pass:
- by_dest partition (destination state) and by_origin partition (origin state / region)
- inbound / outbound totals at county and state granularity, observed and predicted
- adjacency candidates (inbound per destination county, outbound per origin)
- global min / max of observed and predicted values
- demographic and yearly inbound totals
- attribution feature aggregates

The pass is sharded by destination state across a thread pool. Every partial
is merged in one reduction step and all lists are re-ordered by descending
observed value with source order (seq) breaking ties, so the result does not
depend on the worker count.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from config.settings import get_settings
from flowatlas.ingest.flow_records import FlowRecord
from flowatlas.ingest.geo_metadata import GeoIndex
from flowatlas.processing.feature_aggregates import FeatureAccumulator
from flowatlas.utils.artifact_keys import INBOUND, OUTBOUND, totals_key
from flowatlas.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

DIRECTIONS = (INBOUND, OUTBOUND)
GRANULARITIES = ("county", "state")
VALUE_TYPES = ("observed", "predicted")

TOTALS_KEYS = tuple(
    totals_key(d, g, v) for d in DIRECTIONS for g in GRANULARITIES for v in VALUE_TYPES
)


def flow_sort_key(record: FlowRecord) -> Tuple[float, int]:
    """Descending observed value, source order on ties."""
    return -record.observed, record.seq


def _accumulate(totals: Dict[str, float], key: str, amount: float) -> None:
    totals[key] = totals.get(key, 0.0) + amount


@dataclass
class FlowCacheBuild:
    """Everything the cache writer serializes for one build."""
    feature_schema: Tuple[str, ...] = ()
    by_dest: Dict[str, List[FlowRecord]] = field(default_factory=dict)
    by_origin: Dict[str, List[FlowRecord]] = field(default_factory=dict)
    totals: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {key: {} for key in TOTALS_KEYS}
    )
    in_adjacency: Dict[str, List[FlowRecord]] = field(default_factory=dict)
    out_adjacency: Dict[str, List[FlowRecord]] = field(default_factory=dict)
    demographic_totals: Dict[str, Dict[str, Dict[str, float]]] = field(default_factory=dict)
    yearly_inbound: Dict[str, Dict[str, float]] = field(default_factory=dict)
    yearly_outbound: Dict[str, Dict[str, float]] = field(default_factory=dict)
    features: Optional[FeatureAccumulator] = None
    max_observed: Optional[float] = None
    max_predicted: Optional[float] = None
    min_observed: Optional[float] = None
    min_predicted: Optional[float] = None
    skipped_missing_geography: int = 0

    def __post_init__(self):
        if self.features is None:
            self.features = FeatureAccumulator(self.feature_schema)

    @property
    def total_rows(self) -> int:
        return sum(len(rows) for rows in self.by_dest.values())

    @property
    def years(self) -> List[int]:
        return sorted(int(year) for year in self.yearly_inbound)

    def add(self, record: FlowRecord) -> None:
        """Fold one placed record into every partition and aggregate."""
        dest_state = record.dest_state
        origin_key = record.origin_partition_key

        self.by_dest.setdefault(dest_state, []).append(record)
        self.by_origin.setdefault(origin_key, []).append(record)

        for value_type, amount in (("observed", record.observed), ("predicted", record.predicted)):
            _accumulate(self.totals[totals_key(INBOUND, "county", value_type)], record.dest, amount)
            _accumulate(self.totals[totals_key(INBOUND, "state", value_type)], dest_state, amount)
            _accumulate(self.totals[totals_key(OUTBOUND, "state", value_type)], origin_key, amount)
            if record.origin_is_county:
                _accumulate(
                    self.totals[totals_key(OUTBOUND, "county", value_type)], record.origin, amount
                )

        self.in_adjacency.setdefault(record.dest, []).append(record)
        self.out_adjacency.setdefault(record.origin, []).append(record)

        self._track_extremes(record.observed, record.predicted)

        for dimension in ("age", "income", "education"):
            bucket = getattr(record, dimension)
            if bucket:
                by_geoid = self.demographic_totals.setdefault(dimension, {})
                _accumulate(by_geoid.setdefault(record.dest, {}), bucket, record.observed)

        if record.year is not None:
            year = str(record.year)
            _accumulate(self.yearly_inbound.setdefault(year, {}), record.dest, record.observed)
            _accumulate(self.yearly_outbound.setdefault(year, {}), record.origin, record.observed)

        if self.features and record.attribution is not None:
            self.features.add(record.dest, record.attribution)

    def _track_extremes(self, observed: float, predicted: float) -> None:
        self.max_observed = observed if self.max_observed is None else max(self.max_observed, observed)
        self.min_observed = observed if self.min_observed is None else min(self.min_observed, observed)
        self.max_predicted = predicted if self.max_predicted is None else max(self.max_predicted, predicted)
        self.min_predicted = predicted if self.min_predicted is None else min(self.min_predicted, predicted)

    def merge(self, other: "FlowCacheBuild") -> None:
        """Reduce a shard partial into this build. Lists are re-sorted by finalize()."""
        for target, source in (
            (self.by_dest, other.by_dest),
            (self.by_origin, other.by_origin),
            (self.in_adjacency, other.in_adjacency),
            (self.out_adjacency, other.out_adjacency),
        ):
            for key, rows in source.items():
                target.setdefault(key, []).extend(rows)

        for key, values in other.totals.items():
            merged = self.totals.setdefault(key, {})
            for geoid, amount in values.items():
                _accumulate(merged, geoid, amount)

        for dimension, by_geoid in other.demographic_totals.items():
            merged_dimension = self.demographic_totals.setdefault(dimension, {})
            for geoid, buckets in by_geoid.items():
                merged_buckets = merged_dimension.setdefault(geoid, {})
                for bucket, amount in buckets.items():
                    _accumulate(merged_buckets, bucket, amount)

        for target, source in (
            (self.yearly_inbound, other.yearly_inbound),
            (self.yearly_outbound, other.yearly_outbound),
        ):
            for year, values in source.items():
                merged_year = target.setdefault(year, {})
                for geoid, amount in values.items():
                    _accumulate(merged_year, geoid, amount)

        if other.max_observed is not None:
            self._track_extremes(other.max_observed, other.max_predicted)
            self._track_extremes(other.min_observed, other.min_predicted)

        self.features.merge(other.features)
        self.skipped_missing_geography += other.skipped_missing_geography

    def finalize(self, top_k: int) -> "FlowCacheBuild":
        """Sort partitions, sort and truncate adjacency lists."""
        for partitions in (self.by_dest, self.by_origin):
            for key in partitions:
                partitions[key] = sorted(partitions[key], key=flow_sort_key)

        for adjacency in (self.in_adjacency, self.out_adjacency):
            for key in adjacency:
                adjacency[key] = sorted(adjacency[key], key=flow_sort_key)[:top_k]

        return self


def place_record(record: FlowRecord, geo_index: GeoIndex) -> FlowRecord:
    """Fill missing coordinates from resolved geography; row-level coordinates win."""
    origin_lon, origin_lat = record.origin_lon, record.origin_lat
    if origin_lon is None or origin_lat is None:
        origin_lon, origin_lat = geo_index.origin_position(record.origin)

    dest_lon, dest_lat = record.dest_lon, record.dest_lat
    if dest_lon is None or dest_lat is None:
        dest_lon, dest_lat = geo_index.dest_position(record.dest)

    return replace(
        record,
        origin_lon=origin_lon,
        origin_lat=origin_lat,
        dest_lon=dest_lon,
        dest_lat=dest_lat,
    )


def _build_shard(
    records: Sequence[FlowRecord], geo_index: GeoIndex, feature_schema: Tuple[str, ...]
) -> FlowCacheBuild:
    partial = FlowCacheBuild(feature_schema=feature_schema)
    for record in records:
        # Destinations without metadata cannot be placed on a map
        if not geo_index.has_county(record.dest):
            partial.skipped_missing_geography += 1
            continue
        partial.add(place_record(record, geo_index))
    return partial


def build_flow_cache(
    records: Iterable[FlowRecord],
    geo_index: GeoIndex,
    feature_schema: Sequence[str] = (),
    top_k: Optional[int] = None,
    workers: Optional[int] = None,
) -> FlowCacheBuild:
    """
    Partition and aggregate validated records.

    Args:
        records: Validated FlowRecords (source order)
        geo_index: Resolved geography for placement and the missing-geography check
        feature_schema: Attribution feature ids shared by every record
        top_k: Adjacency list bound (default: ADJACENCY_TOP_K)
        workers: Shard worker threads (default: BUILD_WORKERS)

    Returns:
        Finalized FlowCacheBuild
    """
    top_k = top_k or settings.ADJACENCY_TOP_K
    workers = max(1, workers or settings.BUILD_WORKERS)
    schema = tuple(feature_schema)

    shards: Dict[str, List[FlowRecord]] = defaultdict(list)
    for record in records:
        shards[record.dest_state].append(record)

    logger.info(f"Building partitions: {len(shards)} destination shards, {workers} workers")

    shard_keys = sorted(shards)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        partials = list(
            pool.map(lambda key: _build_shard(shards[key], geo_index, schema), shard_keys)
        )

    build = FlowCacheBuild(feature_schema=schema)
    for partial in partials:
        build.merge(partial)
    build.finalize(top_k)

    if build.skipped_missing_geography:
        logger.warning(
            f"Skipped {build.skipped_missing_geography} records with no destination geography"
        )
    logger.info(
        f"Built {len(build.by_dest)} destination and {len(build.by_origin)} origin partitions "
        f"({build.total_rows} records)"
    )

    return build
