"""Artifact key layout shared by the cache writer and the query engine.

Keys are relative, slash-separated paths. The same key addresses an artifact on
the local filesystem (under CACHE_DIR) and on a static file server (under
ARTIFACT_BASE_URL).
"""

from __future__ import annotations

BY_DEST = "by_dest"
BY_ORIGIN = "by_origin"
BY_DEST_ATTRIBUTION = "by_dest_attribution"

PARTITION_FAMILIES = (BY_DEST, BY_ORIGIN, BY_DEST_ATTRIBUTION)

INDEX_KEY = "index.json"
SUMMARY_KEY = "summary.json"
FEATURE_SCHEMA_KEY = "feature_schema.json"
FEATURE_RANK_KEY = "feature/global_rank.json"
GEO_METADATA_KEY = "geo-metadata.json"
DIMENSIONS_KEY = "dimensions.json"
BUILD_REPORT_KEY = "build.json"

INBOUND = "inbound"
OUTBOUND = "outbound"


def partition_key(family: str, code: str) -> str:
    if family not in PARTITION_FAMILIES:
        raise ValueError(f"Unknown partition family: {family}")
    return f"flows/{family}/{code}.json"


def feature_by_county_key(feature_id: str) -> str:
    return f"feature/by_county/{feature_id}.json"


def totals_key(direction: str, granularity: str, value_type: str) -> str:
    """Summary key of one totals map, e.g. inbound_totals_by_county_observed."""
    return f"{direction}_totals_by_{granularity}_{value_type}"
