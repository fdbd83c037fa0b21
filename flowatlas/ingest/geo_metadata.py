"""
Migration Flow Atlas - Geo Metadata Resolver
Resolves county, state and region entities with one representative coordinate each

Data sources:
- County / state boundaries: US Census cartographic boundary files (GeoJSON or shapefile)
- Precomputed centroids: optional CSV (GEOID, lon, lat)
- Non-US origin regions: fixed REGION_CENTROIDS table in config.settings

Coordinate resolution order (first hit wins):
1. Precomputed centroid table, matched by normalized geoid
2. Internal point attributes on the boundary feature (INTPTLON / INTPTLAT)
3. Computed centroid of a Polygon / MultiPolygon geometry
4. None (lon = lat = None)
"""

import math
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import geopandas as gpd
import pandas as pd
from shapely.errors import ShapelyError
from shapely.geometry import shape

from config.settings import FIPS_TO_STATE, REGION_CENTROIDS
from flowatlas.utils.logging import get_logger

logger = get_logger(__name__)

Coordinate = Tuple[Optional[float], Optional[float]]

COUNTY = "county"
STATE = "state"
REGION = "region"


@dataclass(frozen=True)
class GeoEntity:
    """A resolved county, state or non-US origin region."""

    geoid: str
    kind: str
    name: str
    state_code: Optional[str] = None
    state_name: Optional[str] = None
    lon: Optional[float] = None
    lat: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping) -> "GeoEntity":
        return cls(
            geoid=payload["geoid"],
            kind=payload["kind"],
            name=payload.get("name") or payload["geoid"],
            state_code=payload.get("state_code"),
            state_name=payload.get("state_name"),
            lon=to_number(payload.get("lon")),
            lat=to_number(payload.get("lat")),
        )


# ============================================================================
# IDENTIFIER NORMALIZATION
# ============================================================================


def clean_value(value: Any) -> str:
    if value is None:
        return ""
    if pd.api.types.is_scalar(value) and pd.isna(value):
        return ""
    return str(value).strip()


def normalize_county(value: Any) -> Optional[str]:
    """Left-pad numeric county codes to 5 digits; non-numeric codes pass through."""
    s = clean_value(value)
    if not s:
        return None
    return s.zfill(5) if s.isdigit() else s


def normalize_state(value: Any) -> Optional[str]:
    """Reduce numeric state codes to 2 digits ('6' / '006' -> '06'); non-numeric codes pass through."""
    s = clean_value(value)
    if not s:
        return None
    return s[-2:].zfill(2) if s.isdigit() else s


def normalize_origin(value: Any) -> Optional[str]:
    """
    Normalize an origin identifier.

    Up to 3 digits is a state FIPS code, 4+ digits a county GEOID,
    anything non-numeric a region code (unchanged).
    """
    s = clean_value(value)
    if not s:
        return None
    if not s.isdigit():
        return s
    return normalize_state(s) if len(s) <= 3 else normalize_county(s)


def normalize_geoid(value: Any) -> Optional[str]:
    """Normalize an identifier of unknown level (centroid tables mix states and counties)."""
    s = clean_value(value)
    if not s:
        return None
    if not s.isdigit():
        return s
    return s.zfill(2) if len(s) <= 2 else s.zfill(5)


def to_number(value: Any) -> Optional[float]:
    """Parse a finite float, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# ============================================================================
# SOURCES
# ============================================================================


def load_boundaries(path: str) -> gpd.GeoDataFrame:
    """
    Read a boundary file and return it in WGS84.

    Args:
        path: Any format geopandas can read (GeoJSON, shapefile, GeoPackage)

    Returns:
        GeoDataFrame in EPSG:4326
    """
    logger.info(f"Loading boundaries from {path}")

    gdf = gpd.read_file(path)

    if gdf.crs is not None and gdf.crs != "EPSG:4326":
        gdf = gdf.to_crs("EPSG:4326")

    logger.info(f"Loaded {len(gdf)} boundary features")
    return gdf


def load_centroid_table(path: Optional[str]) -> Dict[str, Tuple[float, float]]:
    """
    Load a precomputed centroid table.

    A missing file is not an error: coordinate resolution simply falls
    through to the boundary attributes.

    Returns:
        Dict mapping normalized geoid -> (lon, lat)
    """
    if not path or not os.path.exists(path):
        logger.warning(f"Centroid table not found at {path}, using boundary fallbacks")
        return {}

    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    lookup = _column_lookup(df.columns)

    table: Dict[str, Tuple[float, float]] = {}
    for record in df.to_dict(orient="records"):
        geoid = normalize_geoid(_first_value(record, lookup, "GEOID", "geoid", "id"))
        lon = to_number(_first_value(record, lookup, "lon", "longitude", "long"))
        lat = to_number(_first_value(record, lookup, "lat", "latitude"))
        if geoid and lon is not None and lat is not None:
            table[geoid] = (lon, lat)

    logger.info(f"Loaded {len(table)} precomputed centroids")
    return table


# ============================================================================
# COORDINATE RESOLUTION
# ============================================================================


def compute_centroid(geometry: Any) -> Optional[Tuple[float, float]]:
    """
    Centroid of a Polygon or MultiPolygon.

    Accepts a shapely geometry or a GeoJSON geometry mapping. Any other
    geometry type, an empty geometry, or a failed computation returns None.
    The input geometry is never modified.
    """
    if geometry is None:
        return None

    try:
        if isinstance(geometry, Mapping):
            geometry = shape(geometry)

        if geometry.geom_type not in ("Polygon", "MultiPolygon") or geometry.is_empty:
            return None

        point = geometry.centroid
        if point.is_empty:
            return None

        lon, lat = float(point.x), float(point.y)
    except (AttributeError, TypeError, ValueError, ShapelyError) as e:
        logger.debug(f"Centroid computation failed: {e}")
        return None

    if not (math.isfinite(lon) and math.isfinite(lat)):
        return None
    return lon, lat


def _resolve_coordinate(
    geoid: str,
    record: Mapping,
    lookup: Dict[str, str],
    geometry: Any,
    centroid_table: Mapping[str, Tuple[float, float]],
) -> Coordinate:
    if geoid in centroid_table:
        return centroid_table[geoid]

    lon = to_number(_first_value(record, lookup, "INTPTLON"))
    lat = to_number(_first_value(record, lookup, "INTPTLAT"))
    if lon is not None and lat is not None:
        return lon, lat

    computed = compute_centroid(geometry)
    if computed is not None:
        return computed

    return None, None


def _column_lookup(columns: Iterable[Any]) -> Dict[str, str]:
    return {str(c).lower(): c for c in columns}


def _first_value(record: Mapping, lookup: Dict[str, str], *names: str) -> Any:
    for name in names:
        column = lookup.get(name.lower())
        if column is None:
            continue
        value = record.get(column)
        if clean_value(value):
            return value
    return None


def _geometry_column(boundaries: pd.DataFrame) -> Optional[str]:
    if isinstance(boundaries, gpd.GeoDataFrame):
        return boundaries.geometry.name
    return "geometry" if "geometry" in boundaries.columns else None


# ============================================================================
# ENTITY RESOLUTION
# ============================================================================


def resolve_county_entities(
    boundaries: pd.DataFrame,
    centroid_table: Optional[Mapping[str, Tuple[float, float]]] = None,
) -> List[GeoEntity]:
    """
    Build one county GeoEntity per boundary feature.

    Args:
        boundaries: County boundaries (GEOID or STATEFP+COUNTYFP, NAME, geometry)
        centroid_table: Optional geoid -> (lon, lat)

    Returns:
        List of county GeoEntity, first feature wins on duplicate GEOIDs
    """
    centroid_table = centroid_table or {}
    lookup = _column_lookup(boundaries.columns)
    geom_col = _geometry_column(boundaries)

    entities: List[GeoEntity] = []
    seen = set()
    missing_coords = 0

    for record in boundaries.to_dict(orient="records"):
        geoid = normalize_county(_first_value(record, lookup, "GEOID", "geoid"))
        if geoid is None:
            state_fp = normalize_state(_first_value(record, lookup, "STATEFP"))
            county_fp = clean_value(_first_value(record, lookup, "COUNTYFP"))
            if not state_fp or not county_fp:
                continue
            geoid = state_fp + county_fp.zfill(3)

        if geoid in seen:
            continue
        seen.add(geoid)

        state_code = normalize_state(_first_value(record, lookup, "STATEFP")) or geoid[:2]
        name = clean_value(_first_value(record, lookup, "NAME", "name")) or geoid
        geometry = record.get(geom_col) if geom_col else None

        lon, lat = _resolve_coordinate(geoid, record, lookup, geometry, centroid_table)
        if lon is None:
            missing_coords += 1

        entities.append(
            GeoEntity(
                geoid=geoid,
                kind=COUNTY,
                name=name,
                state_code=state_code,
                state_name=FIPS_TO_STATE.get(state_code, state_code),
                lon=lon,
                lat=lat,
            )
        )

    if missing_coords:
        logger.warning(f"{missing_coords} counties have no resolvable coordinate")
    logger.info(f"Resolved {len(entities)} county entities")

    return entities


def resolve_state_entities(
    boundaries: pd.DataFrame,
    centroid_table: Optional[Mapping[str, Tuple[float, float]]] = None,
) -> List[GeoEntity]:
    """Build one state GeoEntity per boundary feature (STATEFP / STATE / GEOID)."""
    centroid_table = centroid_table or {}
    lookup = _column_lookup(boundaries.columns)
    geom_col = _geometry_column(boundaries)

    entities: List[GeoEntity] = []
    seen = set()

    for record in boundaries.to_dict(orient="records"):
        code = normalize_state(_first_value(record, lookup, "STATEFP", "STATE", "GEOID"))
        if code is None or code in seen:
            continue
        seen.add(code)

        state_name = FIPS_TO_STATE.get(code, code)
        name = clean_value(_first_value(record, lookup, "NAME", "name")) or state_name
        geometry = record.get(geom_col) if geom_col else None
        lon, lat = _resolve_coordinate(code, record, lookup, geometry, centroid_table)

        entities.append(
            GeoEntity(
                geoid=code,
                kind=STATE,
                name=name,
                state_code=code,
                state_name=state_name,
                lon=lon,
                lat=lat,
            )
        )

    logger.info(f"Resolved {len(entities)} state entities")
    return entities


def region_entities() -> List[GeoEntity]:
    """Entities for the closed set of non-US origin region codes."""
    return [
        GeoEntity(geoid=code, kind=REGION, name=name, lon=lon, lat=lat)
        for code, (name, lon, lat) in REGION_CENTROIDS.items()
    ]


class GeoIndex:
    """Lookup over resolved entities; at most one entity per geoid."""

    def __init__(self, entities: Iterable[GeoEntity]):
        self._by_geoid: Dict[str, GeoEntity] = {}
        for entity in entities:
            self._by_geoid.setdefault(entity.geoid, entity)

    def __len__(self) -> int:
        return len(self._by_geoid)

    def __contains__(self, geoid: str) -> bool:
        return geoid in self._by_geoid

    def get(self, geoid: Optional[str]) -> Optional[GeoEntity]:
        if geoid is None:
            return None
        return self._by_geoid.get(geoid)

    def has_county(self, geoid: str) -> bool:
        entity = self._by_geoid.get(geoid)
        return entity is not None and entity.kind == COUNTY

    def position(self, geoid: Optional[str]) -> Coordinate:
        entity = self.get(geoid)
        if entity is None:
            return None, None
        return entity.lon, entity.lat

    def origin_position(self, origin: Optional[str]) -> Coordinate:
        """State codes resolve to the state entity, county GEOIDs to the county, region codes to the region."""
        return self.position(normalize_origin(origin))

    def dest_position(self, geoid: Optional[str]) -> Coordinate:
        return self.position(normalize_county(geoid))

    def entities(self) -> List[GeoEntity]:
        return list(self._by_geoid.values())


def build_geo_index(
    county_boundaries: pd.DataFrame,
    state_boundaries: Optional[pd.DataFrame] = None,
    centroid_table: Optional[Mapping[str, Tuple[float, float]]] = None,
) -> GeoIndex:
    """Resolve counties, states and regions into a single GeoIndex."""
    entities = resolve_county_entities(county_boundaries, centroid_table)
    if state_boundaries is not None:
        entities.extend(resolve_state_entities(state_boundaries, centroid_table))
    entities.extend(region_entities())
    return GeoIndex(entities)
