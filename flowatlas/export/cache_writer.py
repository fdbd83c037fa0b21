"""
Migration Flow Atlas - Cache Writer / Index Builder
Serializes a FlowCacheBuild into immutable JSON artifacts

Outputs (under the cache root):
- flows/by_dest/{state}.json, flows/by_origin/{code}.json
- flows/by_dest_attribution/{state}.json (attribution builds only)
- summary.json, index.json, dimensions.json, geo-metadata.json
- feature_schema.json, feature/global_rank.json, feature/by_county/{feature_id}.json
- build.json (version, counts, rejections, per-artifact SHA-256)

Every write goes to a temp file in the target directory and is moved into
place with os.replace, so a reader never sees a partial artifact.
"""

import hashlib
import json
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config.settings import DEMOGRAPHIC_DIMENSIONS, get_settings
from flowatlas.ingest.flow_records import FlowRecord, RejectionReport
from flowatlas.ingest.geo_metadata import GeoEntity
from flowatlas.processing.feature_aggregates import prettify_feature
from flowatlas.processing.partitions import TOTALS_KEYS, FlowCacheBuild
from flowatlas.utils.artifact_keys import (
    BUILD_REPORT_KEY,
    BY_DEST,
    BY_DEST_ATTRIBUTION,
    BY_ORIGIN,
    DIMENSIONS_KEY,
    FEATURE_RANK_KEY,
    FEATURE_SCHEMA_KEY,
    GEO_METADATA_KEY,
    INDEX_KEY,
    SUMMARY_KEY,
    feature_by_county_key,
    partition_key,
)
from flowatlas.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

CACHE_FORMAT_VERSION = 1


def serialize_artifact(payload: Any, indent: Optional[int] = None) -> bytes:
    """Deterministic JSON bytes (sorted keys) for one artifact."""
    return json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False).encode("utf-8")


def calculate_checksum(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def write_artifact(out_dir: str, key: str, payload: Any, indent: Optional[int] = None) -> str:
    """
    Atomically write one artifact.

    Args:
        out_dir: Cache root
        key: Artifact key (relative path)
        payload: JSON-serializable payload
        indent: JSON indent (None = compact)

    Returns:
        SHA-256 hex digest of the written bytes

    Raises:
        ValueError: If the key resolves outside out_dir
    """
    root = os.path.abspath(out_dir)
    path = os.path.abspath(os.path.join(root, *key.split("/")))
    if os.path.commonpath([root, path]) != root:
        raise ValueError(f"Artifact key escapes cache root: {key}")
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)

    content = serialize_artifact(payload, indent)

    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    return calculate_checksum(content)


# ============================================================================
# PAYLOADS
# ============================================================================


def _rows(records: Iterable[FlowRecord]) -> List[Dict[str, Any]]:
    return [record.to_row() for record in records]


def partition_payload(build: FlowCacheBuild, family: str, code: str) -> Dict[str, Any]:
    records = build.by_dest[code] if family == BY_DEST else build.by_origin[code]
    return {
        "code": code,
        "kind": family,
        "max_observed": build.max_observed,
        "max_predicted": build.max_predicted,
        "rows": _rows(records),
    }


def attribution_payload(build: FlowCacheBuild, code: str) -> Dict[str, Any]:
    return {
        "code": code,
        "kind": BY_DEST_ATTRIBUTION,
        "rows": [record.attribution_row() for record in build.by_dest[code]],
    }


def build_summary(build: FlowCacheBuild) -> Dict[str, Any]:
    """Every aggregate map plus global extremes, adjacency, demographic and yearly totals."""
    summary: Dict[str, Any] = {key: build.totals.get(key, {}) for key in TOTALS_KEYS}
    summary.update(
        {
            "total_rows": build.total_rows,
            "max_observed": build.max_observed,
            "max_predicted": build.max_predicted,
            "min_observed": build.min_observed,
            "min_predicted": build.min_predicted,
            "in_adjacency": {k: _rows(v) for k, v in build.in_adjacency.items()},
            "out_adjacency": {k: _rows(v) for k, v in build.out_adjacency.items()},
            "years": build.years,
            "yearly_inbound_totals": build.yearly_inbound,
            "yearly_outbound_totals": build.yearly_outbound,
        }
    )
    for dimension in DEMOGRAPHIC_DIMENSIONS:
        summary[f"inbound_totals_by_{dimension}"] = build.demographic_totals.get(dimension, {})
    return summary


def build_index(build: FlowCacheBuild) -> Dict[str, Dict[str, int]]:
    index = {
        BY_DEST: {code: len(rows) for code, rows in build.by_dest.items()},
        BY_ORIGIN: {code: len(rows) for code, rows in build.by_origin.items()},
        BY_DEST_ATTRIBUTION: {},
    }
    if build.feature_schema:
        index[BY_DEST_ATTRIBUTION] = dict(index[BY_DEST])
    return index


def build_dimensions(build: FlowCacheBuild) -> Dict[str, Any]:
    dimensions: Dict[str, Any] = {
        dimension: [{"id": bucket, "label": label} for bucket, label in buckets.items()]
        for dimension, buckets in DEMOGRAPHIC_DIMENSIONS.items()
    }
    dimensions["years"] = build.years
    return dimensions


def build_feature_schema(build: FlowCacheBuild) -> List[Dict[str, Any]]:
    return [
        {"id": feature_id, "index": index, "label": prettify_feature(feature_id)}
        for index, feature_id in enumerate(build.feature_schema)
    ]


# ============================================================================
# WRITER
# ============================================================================


def _planned_artifacts(
    build: FlowCacheBuild, geo_entities: Iterable[GeoEntity]
) -> List[Tuple[str, Any]]:
    artifacts: List[Tuple[str, Any]] = []

    for code in sorted(build.by_dest):
        artifacts.append((partition_key(BY_DEST, code), partition_payload(build, BY_DEST, code)))
    for code in sorted(build.by_origin):
        artifacts.append((partition_key(BY_ORIGIN, code), partition_payload(build, BY_ORIGIN, code)))

    if build.feature_schema:
        for code in sorted(build.by_dest):
            artifacts.append(
                (partition_key(BY_DEST_ATTRIBUTION, code), attribution_payload(build, code))
            )
        artifacts.append((FEATURE_RANK_KEY, build.features.global_rank()))
        for index, feature_id in enumerate(build.feature_schema):
            artifacts.append(
                (feature_by_county_key(feature_id), build.features.county_means(index))
            )

    artifacts.extend(
        [
            (SUMMARY_KEY, build_summary(build)),
            (INDEX_KEY, build_index(build)),
            (FEATURE_SCHEMA_KEY, build_feature_schema(build)),
            (GEO_METADATA_KEY, [entity.to_dict() for entity in geo_entities]),
            (DIMENSIONS_KEY, build_dimensions(build)),
        ]
    )
    return artifacts


def write_flow_cache(
    build: FlowCacheBuild,
    geo_entities: Iterable[GeoEntity],
    out_dir: Optional[str] = None,
    workers: Optional[int] = None,
    rejections: Optional[RejectionReport] = None,
) -> Dict[str, Any]:
    """
    Write every artifact of a build, then the build report.

    Args:
        build: Finalized FlowCacheBuild
        geo_entities: Resolved entities for geo-metadata.json
        out_dir: Cache root (default: CACHE_DIR)
        workers: Parallel writers (default: BUILD_WORKERS)
        rejections: Normalizer report recorded in build.json

    Returns:
        The build report (contents of build.json)
    """
    out_dir = out_dir or settings.CACHE_DIR
    workers = max(1, workers or settings.BUILD_WORKERS)
    indent = settings.CACHE_JSON_INDENT

    logger.info(f"Writing flow cache to {out_dir}")

    try:
        artifacts = _planned_artifacts(build, geo_entities)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            checksums = list(
                pool.map(lambda item: write_artifact(out_dir, item[0], item[1], indent), artifacts)
            )

        report = {
            "version": CACHE_FORMAT_VERSION,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "counts": {
                "total_rows": build.total_rows,
                "by_dest_partitions": len(build.by_dest),
                "by_origin_partitions": len(build.by_origin),
                "features": len(build.feature_schema),
                "skipped_missing_geography": build.skipped_missing_geography,
            },
            "rejections": rejections.to_dict() if rejections is not None else None,
            "checksums": {key: checksum for (key, _), checksum in zip(artifacts, checksums)},
        }
        write_artifact(out_dir, BUILD_REPORT_KEY, report, indent=2)

    except Exception as e:
        logger.error(f"Flow cache write failed: {e}", exc_info=True)
        raise

    logger.info(f"Wrote {len(artifacts)} artifacts ({build.total_rows} records)")
    return report
