"""
Migration Flow Atlas - Flow Record Normalizer & Validator
Parses raw flow rows into validated FlowRecord objects

Accepted source layouts:
- State/region -> county flows with observed + predicted movers and
  per-feature attribution columns (shap_*)
- Origin -> county flows with demographic slice tags (age, income, education)
  and an optional year column

Rows failing validation are counted by reason and dropped. A bad row never
aborts the batch.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import pandas as pd

from config.settings import DEMOGRAPHIC_DIMENSIONS, get_settings
from flowatlas.ingest.geo_metadata import (
    clean_value,
    normalize_county,
    normalize_origin,
    normalize_state,
    to_number,
)
from flowatlas.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

# Column aliases, first present wins
ORIGIN_COLUMNS = ("origin_state_code", "origin_geoid", "origin")
DEST_COLUMNS = ("dest_geoid", "dest")
OBSERVED_COLUMNS = ("observed_movers", "flow")
PREDICTED_COLUMNS = ("predicted_movers", "predicted")
DEST_STATE_COLUMN = "dest_state_code"
DEST_COUNTY_COLUMN = "dest_county_code"
YEAR_COLUMN = "year"
COORDINATE_COLUMNS = ("origin_lon", "origin_lat", "dest_lon", "dest_lat")

UNFILTERED_TAGS = {"", "all"}


class RejectReason(str, Enum):
    """Why a source row was dropped"""
    MISSING_IDENTITY = "missing_identity"  # blank origin / non-numeric destination
    GEOID_MISMATCH = "geoid_mismatch"  # dest_geoid disagrees with state/county columns
    NON_FINITE = "non_finite"  # observed or predicted not a finite number
    NEGATIVE_COUNT = "negative_count"  # observed < 0
    UNKNOWN_TAG = "unknown_tag"  # demographic tag outside its enumeration
    INVALID_YEAR = "invalid_year"
    DUPLICATE = "duplicate"  # id already produced by an earlier row


class RowRejected(Exception):
    """Raised by validate_row; caught and counted by normalize_rows."""

    def __init__(self, reason: RejectReason, detail: str = ""):
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class FlowRecord:
    """
    One observed migration slice between an origin and a destination county.

    seq is the source row position; it orders ties and is never serialized.
    """
    id: str
    origin: str
    dest: str
    observed: float
    predicted: float
    seq: int = 0
    attribution: Optional[Tuple[Optional[float], ...]] = None
    base_value: Optional[float] = None
    age: Optional[str] = None
    income: Optional[str] = None
    education: Optional[str] = None
    year: Optional[int] = None
    origin_lon: Optional[float] = None
    origin_lat: Optional[float] = None
    dest_lon: Optional[float] = None
    dest_lat: Optional[float] = None

    @property
    def dest_state(self) -> str:
        return self.dest[:2]

    @property
    def dest_county(self) -> str:
        return self.dest[2:]

    @property
    def origin_is_county(self) -> bool:
        return self.origin.isdigit() and len(self.origin) == 5

    @property
    def origin_partition_key(self) -> str:
        """State code for state/county origins, region code otherwise."""
        return self.origin[:2] if self.origin_is_county else self.origin

    def to_row(self) -> Dict[str, Any]:
        """Serialized partition row (attribution is stored separately)."""
        row = asdict(self)
        for key in ("seq", "attribution", "base_value"):
            row.pop(key)
        return row

    def attribution_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "base_value": self.base_value,
            "values": list(self.attribution or ()),
        }


@dataclass
class RejectionReport:
    """Row accounting for one normalization pass."""
    rows_read: int = 0
    accepted: int = 0
    reasons: Counter = field(default_factory=Counter)

    @property
    def rejected(self) -> int:
        return sum(self.reasons.values())

    def record(self, reason: RejectReason) -> None:
        self.reasons[reason.value] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "reasons": dict(self.reasons),
        }


@dataclass(frozen=True)
class FlowColumns:
    """Source columns resolved once from the header."""
    origin: str
    dest: str
    observed: str
    predicted: Optional[str] = None
    dest_state: Optional[str] = None
    dest_county: Optional[str] = None
    year: Optional[str] = None
    demographics: Tuple[str, ...] = ()
    coordinates: Tuple[str, ...] = ()
    feature_schema: Tuple[str, ...] = ()
    base_value: Optional[str] = None

    @classmethod
    def from_header(
        cls,
        columns: Sequence[str],
        attribution_prefix: Optional[str] = None,
        base_value_column: Optional[str] = None,
    ) -> "FlowColumns":
        """
        Resolve column roles from a header.

        Raises:
            ValueError: If origin, destination or observed columns are absent
        """
        attribution_prefix = attribution_prefix or settings.ATTRIBUTION_PREFIX
        base_value_column = base_value_column or settings.ATTRIBUTION_BASE_COLUMN
        present = list(columns)

        def pick(candidates: Sequence[str]) -> Optional[str]:
            return next((c for c in candidates if c in present), None)

        origin = pick(ORIGIN_COLUMNS)
        dest = pick(DEST_COLUMNS)
        observed = pick(OBSERVED_COLUMNS)
        missing = [
            name
            for name, col in (("origin", origin), ("destination", dest), ("observed", observed))
            if col is None
        ]
        if missing:
            raise ValueError(f"Flow source is missing required columns: {', '.join(missing)}")

        return cls(
            origin=origin,
            dest=dest,
            observed=observed,
            predicted=pick(PREDICTED_COLUMNS),
            dest_state=DEST_STATE_COLUMN if DEST_STATE_COLUMN in present else None,
            dest_county=DEST_COUNTY_COLUMN if DEST_COUNTY_COLUMN in present else None,
            year=YEAR_COLUMN if YEAR_COLUMN in present else None,
            demographics=tuple(d for d in DEMOGRAPHIC_DIMENSIONS if d in present),
            coordinates=tuple(c for c in COORDINATE_COLUMNS if c in present),
            feature_schema=tuple(
                detect_feature_schema(present, attribution_prefix, base_value_column)
            ),
            base_value=base_value_column if base_value_column in present else None,
        )


def is_safe_feature_id(feature_id: str) -> bool:
    return bool(feature_id) and not any(part in feature_id for part in ("/", "\\", ".."))


def detect_feature_schema(
    columns: Iterable[str],
    prefix: Optional[str] = None,
    base_value_column: Optional[str] = None,
) -> List[str]:
    """
    Ordered attribution feature ids for the build.

    Header order is kept so every artifact of one build shares index alignment.
    """
    prefix = prefix or settings.ATTRIBUTION_PREFIX
    base_value_column = base_value_column or settings.ATTRIBUTION_BASE_COLUMN

    schema = []
    for column in columns:
        if not column.startswith(prefix) or column == base_value_column:
            continue
        # Feature ids become artifact file names
        if not is_safe_feature_id(column):
            logger.warning(f"Skipping attribution column with unsafe feature id: {column!r}")
            continue
        schema.append(column)
    return schema


def _parse_tag(row: Mapping[str, Any], dimension: str) -> Optional[str]:
    value = clean_value(row.get(dimension))
    if value.lower() in UNFILTERED_TAGS:
        return None
    if value not in DEMOGRAPHIC_DIMENSIONS[dimension]:
        raise RowRejected(RejectReason.UNKNOWN_TAG, f"{dimension}={value}")
    return value


def _parse_year(value: Any) -> Optional[int]:
    s = clean_value(value)
    if not s:
        return None
    number = to_number(s)
    if number is None or number != int(number):
        raise RowRejected(RejectReason.INVALID_YEAR, s)
    return int(number)


def validate_row(row: Mapping[str, Any], columns: FlowColumns, seq: int = 0) -> FlowRecord:
    """
    Validate one raw row.

    Args:
        row: Column name -> raw value (string or number)
        columns: Resolved column roles
        seq: Source row position

    Returns:
        Validated FlowRecord

    Raises:
        RowRejected: If the row fails a numeric or identity rule
    """
    origin = normalize_origin(row.get(columns.origin))
    dest = normalize_county(row.get(columns.dest))
    if origin is None or dest is None or not dest.isdigit() or len(dest) != 5:
        raise RowRejected(RejectReason.MISSING_IDENTITY, f"origin={origin} dest={dest}")

    # Untrusted source: declared state/county must agree with the geoid split
    if columns.dest_state is not None:
        if normalize_state(row.get(columns.dest_state)) != dest[:2]:
            raise RowRejected(RejectReason.GEOID_MISMATCH, f"{dest} vs state {row.get(columns.dest_state)}")
    if columns.dest_county is not None:
        if clean_value(row.get(columns.dest_county)).zfill(3) != dest[2:]:
            raise RowRejected(RejectReason.GEOID_MISMATCH, f"{dest} vs county {row.get(columns.dest_county)}")

    observed = to_number(row.get(columns.observed))
    predicted = to_number(row.get(columns.predicted)) if columns.predicted else observed
    if observed is None or predicted is None:
        raise RowRejected(RejectReason.NON_FINITE, f"observed={row.get(columns.observed)}")
    if observed < 0:
        raise RowRejected(RejectReason.NEGATIVE_COUNT, str(observed))

    tags = {dimension: _parse_tag(row, dimension) for dimension in columns.demographics}
    year = _parse_year(row.get(columns.year)) if columns.year else None

    id_parts = [origin, dest]
    if year is not None:
        id_parts.append(str(year))
    if columns.demographics:
        id_parts.extend(tags.get(d) or "any" for d in DEMOGRAPHIC_DIMENSIONS)

    attribution = None
    base_value = None
    if columns.feature_schema:
        attribution = tuple(to_number(row.get(c)) for c in columns.feature_schema)
        if columns.base_value:
            base_value = to_number(row.get(columns.base_value))

    coordinates = {c: to_number(row.get(c)) for c in columns.coordinates}

    return FlowRecord(
        id="-".join(id_parts),
        origin=origin,
        dest=dest,
        observed=observed,
        predicted=predicted,
        seq=seq,
        attribution=attribution,
        base_value=base_value,
        year=year,
        **tags,
        **coordinates,
    )


def normalize_rows(
    rows: Iterable[Mapping[str, Any]], columns: FlowColumns
) -> Tuple[List[FlowRecord], RejectionReport]:
    """
    Validate a batch of rows.

    Returns:
        (validated records in source order, rejection report)
    """
    records: List[FlowRecord] = []
    report = RejectionReport()
    seen_ids: Set[str] = set()

    for seq, row in enumerate(rows):
        report.rows_read += 1
        try:
            record = validate_row(row, columns, seq=seq)
            if record.id in seen_ids:
                raise RowRejected(RejectReason.DUPLICATE, record.id)
        except RowRejected as e:
            report.record(e.reason)
            logger.debug(f"Rejected row {seq}: {e}")
            continue

        seen_ids.add(record.id)
        records.append(record)

    report.accepted = len(records)

    if report.rejected:
        logger.warning(f"Rejected {report.rejected}/{report.rows_read} rows: {dict(report.reasons)}")
    logger.info(f"Validated {report.accepted} flow records")

    return records, report


def read_flow_rows(path: str) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Read a flows CSV as raw strings.

    Returns:
        (rows, header columns)
    """
    logger.info(f"Reading flow records from {path}")

    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.columns = [str(c).strip() for c in df.columns]

    logger.info(f"Read {len(df)} rows, {len(df.columns)} columns")
    return df.to_dict(orient="records"), list(df.columns)


def load_flow_records(
    path: str,
    attribution_prefix: Optional[str] = None,
    base_value_column: Optional[str] = None,
) -> Tuple[List[FlowRecord], FlowColumns, RejectionReport]:
    """Read, resolve columns and validate a flows CSV in one call."""
    rows, header = read_flow_rows(path)
    columns = FlowColumns.from_header(header, attribution_prefix, base_value_column)

    if columns.feature_schema:
        logger.info(f"Attribution schema: {len(columns.feature_schema)} features")

    records, report = normalize_rows(rows, columns)
    return records, columns, report
