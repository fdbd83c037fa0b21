"""
Migration Flow Atlas - Cache Build Orchestration

Builds the partitioned flow cache from raw inputs.

Pipeline stages:
1. Geo metadata resolution (county / state boundaries, centroid table, regions)
2. Flow record validation
3. Partition & aggregate build
4. Cache write (artifacts + build.json)

Usage:
    python -m flowatlas.run_build
    python -m flowatlas.run_build --flows data/flow/flows.csv --out data/cache --workers 8
"""

import argparse
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from config.settings import get_settings
from flowatlas.export.cache_writer import write_flow_cache
from flowatlas.ingest.flow_records import FlowColumns, FlowRecord, RejectionReport, load_flow_records
from flowatlas.ingest.geo_metadata import (
    GeoIndex,
    build_geo_index,
    load_boundaries,
    load_centroid_table,
)
from flowatlas.processing.partitions import FlowCacheBuild, build_flow_cache
from flowatlas.utils.logging import setup_logging

logger = setup_logging("flow_build")
settings = get_settings()


def check_prerequisites(flows_path: str, counties_path: str) -> bool:
    """
    Check that required build inputs exist.

    Returns:
        True if all checks pass, False otherwise
    """
    logger.info("Checking prerequisites")

    for label, path in (("Flows CSV", flows_path), ("County boundaries", counties_path)):
        if not path or not os.path.exists(path):
            logger.error(f"{label} not found: {path}")
            return False

    logger.info("Prerequisites check passed")
    return True


def run_geo_resolution(
    counties_path: str,
    states_path: Optional[str] = None,
    centroids_path: Optional[str] = None,
) -> GeoIndex:
    """Resolve county, state and region entities into a GeoIndex."""
    county_boundaries = load_boundaries(counties_path)

    state_boundaries = None
    if states_path and os.path.exists(states_path):
        state_boundaries = load_boundaries(states_path)
    else:
        logger.warning(f"State boundaries not found at {states_path}, state origins will have no coordinates")

    centroid_table = load_centroid_table(centroids_path)

    geo_index = build_geo_index(county_boundaries, state_boundaries, centroid_table)
    logger.info(f"Geo index ready: {len(geo_index)} entities")
    return geo_index


def run_record_validation(flows_path: str) -> Tuple[List[FlowRecord], FlowColumns, RejectionReport]:
    records, columns, report = load_flow_records(flows_path)
    if not records:
        raise ValueError(f"No valid flow records in {flows_path}")
    return records, columns, report


def run_build(
    flows_path: str,
    counties_path: str,
    out_dir: str,
    states_path: Optional[str] = None,
    centroids_path: Optional[str] = None,
    workers: Optional[int] = None,
    top_k: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Run all build stages.

    Returns:
        The build report written to build.json
    """
    logger.info("=" * 60)
    logger.info("STAGE 1: GEO METADATA")
    logger.info("=" * 60)
    geo_index = run_geo_resolution(counties_path, states_path, centroids_path)

    logger.info("=" * 60)
    logger.info("STAGE 2: FLOW RECORD VALIDATION")
    logger.info("=" * 60)
    records, columns, report = run_record_validation(flows_path)

    logger.info("=" * 60)
    logger.info("STAGE 3: PARTITIONS & AGGREGATES")
    logger.info("=" * 60)
    build: FlowCacheBuild = build_flow_cache(
        records, geo_index, columns.feature_schema, top_k=top_k, workers=workers
    )

    logger.info("=" * 60)
    logger.info("STAGE 4: CACHE WRITE")
    logger.info("=" * 60)
    return write_flow_cache(build, geo_index.entities(), out_dir, workers=workers, rejections=report)


def main():
    """Main build orchestration"""

    parser = argparse.ArgumentParser(
        description="Migration Flow Atlas - Flow Cache Build"
    )

    parser.add_argument(
        "--flows",
        type=str,
        default=settings.FLOWS_CSV_PATH,
        help=f"Flows CSV (default: {settings.FLOWS_CSV_PATH})"
    )

    parser.add_argument(
        "--counties",
        type=str,
        default=settings.COUNTY_BOUNDARIES_PATH,
        help="County boundaries file"
    )

    parser.add_argument(
        "--states",
        type=str,
        default=settings.STATE_BOUNDARIES_PATH,
        help="State boundaries file (optional)"
    )

    parser.add_argument(
        "--centroids",
        type=str,
        default=settings.CENTROIDS_CSV_PATH,
        help="Precomputed centroid CSV (optional)"
    )

    parser.add_argument(
        "--out",
        type=str,
        default=settings.CACHE_DIR,
        help=f"Cache output directory (default: {settings.CACHE_DIR})"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=settings.BUILD_WORKERS,
        help=f"Build worker threads (default: {settings.BUILD_WORKERS})"
    )

    parser.add_argument(
        "--top-k",
        type=int,
        default=settings.ADJACENCY_TOP_K,
        help=f"Adjacency list size (default: {settings.ADJACENCY_TOP_K})"
    )

    args = parser.parse_args()

    start_time = datetime.now()
    logger.info("=" * 60)
    logger.info("Migration Flow Atlas - Cache Build Start")
    logger.info(f"Time: {start_time.isoformat()}")
    logger.info(f"Arguments: {vars(args)}")
    logger.info("=" * 60)

    if not check_prerequisites(args.flows, args.counties):
        logger.error("Prerequisites check failed, exiting")
        sys.exit(1)

    try:
        report = run_build(
            flows_path=args.flows,
            counties_path=args.counties,
            out_dir=args.out,
            states_path=args.states,
            centroids_path=args.centroids,
            workers=args.workers,
            top_k=args.top_k,
        )

        duration = (datetime.now() - start_time).total_seconds()

        logger.info("=" * 60)
        logger.info("BUILD COMPLETE")
        logger.info(f"Records: {report['counts']['total_rows']}")
        logger.info(f"Artifacts: {len(report['checksums'])}")
        logger.info(f"Duration: {duration:.1f} seconds")
        logger.info("=" * 60)

        sys.exit(0)

    except KeyboardInterrupt:
        logger.warning("Build interrupted by user")
        sys.exit(130)

    except Exception as e:
        logger.error(f"Build failed with unhandled exception: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
