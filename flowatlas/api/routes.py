"""
Migration Flow Atlas - API Routes
Read-only endpoints over the flow query engine
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError

from config.settings import get_settings
from flowatlas.query.artifact_store import ArtifactUnavailableError, create_artifact_store
from flowatlas.query.engine import EngineNotInitializedError, FlowQueryEngine
from flowatlas.query.filters import FlowFilter, ValueType
from flowatlas.utils.logging import get_logger

router = APIRouter()
settings = get_settings()
logger = get_logger(__name__)

_engine: Optional[FlowQueryEngine] = None


# Response models
class FlowArcResponse(BaseModel):
    """One ranked flow"""

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
    origin_name: Optional[str] = None
    dest_name: Optional[str] = None


class FlowQueryResponse(BaseModel):
    filters: Dict[str, Any]
    count: int
    flows: List[FlowArcResponse]


class NetTotals(BaseModel):
    """Inbound / outbound / net totals for one geography"""

    geoid: str
    name: str
    granularity: str  # 'county' or 'state'
    value_type: str
    inbound: float
    outbound: float
    net: float


class NetSeriesPoint(BaseModel):
    year: int
    inbound: float
    outbound: float
    net: float


async def get_engine() -> FlowQueryEngine:
    """Shared engine, created and initialized on first use."""
    global _engine

    if _engine is None:
        store = create_artifact_store(settings)
        logger.info(f"Creating flow query engine over {store!r}")
        _engine = FlowQueryEngine(store)

    try:
        await _engine.init()
    except ArtifactUnavailableError as e:
        logger.error(f"Flow cache unavailable: {e}")
        raise HTTPException(status_code=503, detail="Flow cache unavailable")

    return _engine


def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.reset()
    _engine = None


def _unavailable(e: Exception) -> HTTPException:
    logger.error(f"Flow query failed: {e}")
    return HTTPException(status_code=503, detail="Flow cache unavailable")


@router.get("/flows", response_model=FlowQueryResponse)
async def get_flows(request: Request, engine: FlowQueryEngine = Depends(get_engine)):
    """
    Ranked flows for a scope.

    Query parameters mirror FlowFilter and accept snake_case or camelCase:
    metric, state, county, valueType, minValue, topN, age, income, education,
    year, featureIndex, featureQuantile, featureSign.
    """
    try:
        flt = FlowFilter.coerce(dict(request.query_params))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    try:
        arcs = await engine.query(flt)
    except (ArtifactUnavailableError, EngineNotInitializedError) as e:
        raise _unavailable(e)

    flows = [
        FlowArcResponse(
            **arc.to_dict(),
            origin_name=engine.get_entity_name(arc.origin),
            dest_name=engine.get_entity_name(arc.dest),
        )
        for arc in arcs
    ]

    return FlowQueryResponse(filters=flt.model_dump(mode="json"), count=len(flows), flows=flows)


@router.get("/summary")
async def get_summary(engine: FlowQueryEngine = Depends(get_engine)):
    return engine.get_summary()


@router.get("/geo")
async def get_geo_metadata(engine: FlowQueryEngine = Depends(get_engine)):
    return engine.get_geo_metadata()


@router.get("/dimensions")
async def get_dimensions(engine: FlowQueryEngine = Depends(get_engine)):
    return engine.get_dimensions()


@router.get("/features/schema")
async def get_feature_schema(engine: FlowQueryEngine = Depends(get_engine)):
    return engine.get_feature_descriptors()


@router.get("/features/rank")
async def get_feature_rank(engine: FlowQueryEngine = Depends(get_engine)):
    try:
        return await engine.get_feature_rank()
    except ArtifactUnavailableError as e:
        raise _unavailable(e)


@router.get("/features/{feature_id}/counties")
async def get_feature_by_county(feature_id: str, engine: FlowQueryEngine = Depends(get_engine)):
    """Per-county mean and mean |attribution| for one feature"""
    try:
        payload = await engine.get_feature_by_county(feature_id)
    except ArtifactUnavailableError as e:
        raise _unavailable(e)

    if payload is None:
        raise HTTPException(status_code=404, detail=f"Unknown feature: {feature_id}")
    return payload


@router.get("/areas/{geoid}/totals", response_model=NetTotals)
async def get_area_totals(
    geoid: str,
    value_type: ValueType = Query(default=ValueType.OBSERVED, alias="valueType"),
    engine: FlowQueryEngine = Depends(get_engine),
):
    totals = engine.get_net_totals(geoid, value_type.value)
    return NetTotals(name=engine.get_entity_name(totals["geoid"]), **totals)


@router.get("/areas/{geoid}/series", response_model=List[NetSeriesPoint])
async def get_area_series(geoid: str, engine: FlowQueryEngine = Depends(get_engine)):
    return engine.get_net_series(geoid)


@router.get("/attribution/{state_code}")
async def get_attribution_partition(state_code: str, engine: FlowQueryEngine = Depends(get_engine)):
    try:
        payload = await engine.get_attribution_partition(state_code)
    except ArtifactUnavailableError as e:
        raise _unavailable(e)

    if payload is None:
        raise HTTPException(status_code=404, detail=f"No attribution partition for state {state_code}")
    return payload
