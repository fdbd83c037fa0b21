"""
Pytest configuration and shared fixtures for Migration Flow Atlas tests.
"""

import asyncio
from typing import Any, Dict, List

import geopandas as gpd
import pytest
from shapely.geometry import box

from flowatlas.export.cache_writer import write_flow_cache
from flowatlas.ingest.flow_records import FlowColumns, normalize_rows
from flowatlas.ingest.geo_metadata import build_geo_index
from flowatlas.processing.partitions import build_flow_cache
from flowatlas.query.artifact_store import LocalArtifactStore
from flowatlas.query.engine import FlowQueryEngine


# Sample destination counties
SAMPLE_COUNTIES = [
    ("06037", "06", "037", "Los Angeles", box(-118.5, 33.8, -118.0, 34.3)),
    ("06001", "06", "001", "Alameda", box(-122.3, 37.5, -121.8, 37.9)),
    ("36061", "36", "061", "New York", box(-74.05, 40.68, -73.9, 40.88)),
]

ATTRIBUTION_HEADER = [
    "origin_state_code",
    "dest_geoid",
    "dest_state_code",
    "dest_county_code",
    "observed_movers",
    "predicted_movers",
    "shap_base_value",
    "shap_median_rent",
    "shap_job_growth",
]

# 6 valid rows followed by 4 rows the validator drops
ATTRIBUTION_ROWS = [
    ["6", "06037", "06", "037", "100", "95", "1.0", "0.5", "-0.2"],
    ["36", "06037", "06", "037", "50", "60", "1.0", "-0.3", "0.1"],
    ["6", "06001", "06", "001", "30", "28", "1.0", "0.2", "0.4"],
    ["36", "36061", "36", "061", "200", "190", "1.0", "0.1", "-0.5"],
    ["EUR", "06001", "06", "001", "10", "12", "1.0", "0.05", "0.15"],
    ["6", "36061", "36", "061", "40", "45", "1.0", "-0.4", "0.3"],
    ["6", "06037", "36", "037", "70", "70", "1.0", "0.1", "0.1"],  # state mismatch
    ["36", "06001", "06", "001", "-5", "1", "1.0", "0.1", "0.1"],  # negative
    ["06", "06037", "06", "037", "1", "1", "1.0", "0.1", "0.1"],  # duplicate id
    ["36", "06001", "06", "001", "abc", "1", "1.0", "0.1", "0.1"],  # non-numeric
]

DEMOGRAPHIC_HEADER = ["origin", "dest", "flow", "age", "income", "education", "year"]

DEMOGRAPHIC_ROWS = [
    ["06037", "36061", "120", "age_25_34", "all", "", "2019"],
    ["06037", "36061", "80", "age_35_44", "", "", "2019"],
    ["06037", "36061", "90", "age_25_34", "", "", "2020"],
    ["36061", "06037", "60", "all", "inc_50_100k", "", "2020"],
    ["06001", "06037", "20", "", "", "edu_ba", "2020"],
    ["06001", "06037", "5", "age_99", "", "", "2020"],  # unknown tag
    ["06001", "06037", "5", "", "", "", "20x0"],  # invalid year
]


def _rows(header: List[str], values: List[List[str]]) -> List[Dict[str, Any]]:
    return [dict(zip(header, row)) for row in values]


@pytest.fixture
def county_boundaries() -> gpd.GeoDataFrame:
    """County boundaries as Census cartographic files expose them."""
    return gpd.GeoDataFrame(
        {
            "GEOID": [c[0] for c in SAMPLE_COUNTIES],
            "STATEFP": [c[1] for c in SAMPLE_COUNTIES],
            "COUNTYFP": [c[2] for c in SAMPLE_COUNTIES],
            "NAME": [c[3] for c in SAMPLE_COUNTIES],
        },
        geometry=[c[4] for c in SAMPLE_COUNTIES],
        crs="EPSG:4326",
    )


@pytest.fixture
def state_boundaries() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {"STATEFP": ["06", "36"], "NAME": ["California", "New York"]},
        geometry=[box(-124.0, 32.5, -114.0, 42.0), box(-79.8, 40.5, -71.8, 45.0)],
        crs="EPSG:4326",
    )


@pytest.fixture
def geo_index(county_boundaries, state_boundaries):
    return build_geo_index(county_boundaries, state_boundaries)


@pytest.fixture
def attribution_rows() -> List[Dict[str, Any]]:
    return _rows(ATTRIBUTION_HEADER, ATTRIBUTION_ROWS)


@pytest.fixture
def attribution_columns() -> FlowColumns:
    return FlowColumns.from_header(ATTRIBUTION_HEADER)


@pytest.fixture
def demographic_rows() -> List[Dict[str, Any]]:
    return _rows(DEMOGRAPHIC_HEADER, DEMOGRAPHIC_ROWS)


@pytest.fixture
def demographic_columns() -> FlowColumns:
    return FlowColumns.from_header(DEMOGRAPHIC_HEADER)


@pytest.fixture
def attribution_records(attribution_rows, attribution_columns):
    return normalize_rows(attribution_rows, attribution_columns)


@pytest.fixture
def attribution_build(attribution_records, attribution_columns, geo_index):
    records, _ = attribution_records
    return build_flow_cache(records, geo_index, attribution_columns.feature_schema, workers=2)


@pytest.fixture
def demographic_build(demographic_rows, demographic_columns, geo_index):
    records, _ = normalize_rows(demographic_rows, demographic_columns)
    return build_flow_cache(records, geo_index, demographic_columns.feature_schema, workers=2)


@pytest.fixture
def cache_dir(tmp_path, attribution_build, attribution_records, geo_index):
    """Attribution dataset written to a temporary cache root."""
    out_dir = tmp_path / "cache"
    _, report = attribution_records
    write_flow_cache(attribution_build, geo_index.entities(), str(out_dir), workers=2, rejections=report)
    return out_dir


@pytest.fixture
def demographic_cache_dir(tmp_path, demographic_build, geo_index):
    out_dir = tmp_path / "demographic_cache"
    write_flow_cache(demographic_build, geo_index.entities(), str(out_dir), workers=2)
    return out_dir


@pytest.fixture
def engine(cache_dir) -> FlowQueryEngine:
    """Initialized engine over the attribution cache."""
    engine = FlowQueryEngine(LocalArtifactStore(str(cache_dir)))
    asyncio.run(engine.init())
    return engine


@pytest.fixture
def demographic_engine(demographic_cache_dir) -> FlowQueryEngine:
    engine = FlowQueryEngine(LocalArtifactStore(str(demographic_cache_dir)))
    asyncio.run(engine.init())
    return engine
