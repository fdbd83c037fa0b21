"""
Migration Flow Atlas - Query Filters
Canonical, validated form of a flow query
"""

from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from flowatlas.ingest.geo_metadata import normalize_county, normalize_state


class Metric(str, Enum):
    """Flow direction relative to the scoped geography"""
    IN = "in"
    OUT = "out"
    NET = "net"


class ValueType(str, Enum):
    OBSERVED = "observed"
    PREDICTED = "predicted"


class FeatureSign(str, Enum):
    ANY = "any"
    POS = "pos"
    NEG = "neg"


class FlowFilter(BaseModel):
    """
    Compound flow filter.

    Accepts snake_case or camelCase keys (valueType, minValue, topN, ...).
    Unknown keys are ignored. Two filters with the same canonical content
    have the same signature() regardless of key order or spelling.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
        use_enum_values=True,
        validate_default=True,
    )

    metric: Metric = Metric.IN
    state: Optional[str] = None
    county: Optional[str] = None
    value_type: ValueType = ValueType.OBSERVED
    min_value: float = 0.0
    top_n: Optional[int] = Field(default=None, ge=0)
    age: Optional[str] = None
    income: Optional[str] = None
    education: Optional[str] = None
    year: Optional[int] = None
    feature_index: Optional[int] = None
    feature_quantile: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    feature_sign: FeatureSign = FeatureSign.ANY

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, value: Any) -> Optional[str]:
        return normalize_state(value)

    @field_validator("county", mode="before")
    @classmethod
    def _normalize_county(cls, value: Any) -> Optional[str]:
        return normalize_county(value)

    @field_validator("age", "income", "education", mode="before")
    @classmethod
    def _normalize_tag(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        s = str(value).strip()
        return None if s.lower() in ("", "all") else s

    @field_validator("min_value", mode="before")
    @classmethod
    def _default_min_value(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("top_n")
    @classmethod
    def _zero_top_n_is_unbounded(cls, value: Optional[int]) -> Optional[int]:
        return value or None

    @property
    def scope_key(self) -> Optional[str]:
        """
        Partition key for the scope: state, else the county's state prefix.

        None when the county lies outside the given state.
        """
        if self.state and self.county and self.county[:2] != self.state:
            return None
        if self.state:
            return self.state
        if self.county:
            return self.county[:2]
        return None

    @property
    def unbounded(self) -> bool:
        return not self.top_n

    @property
    def feature_filter_active(self) -> bool:
        return self.feature_index is not None and (
            self.feature_quantile is not None or self.feature_sign != FeatureSign.ANY
        )

    def signature(self) -> str:
        """Canonical memo key. feature_index only counts while a feature filter is active."""
        exclude = None if self.feature_filter_active else {"feature_index"}
        return self.model_dump_json(exclude=exclude)

    @classmethod
    def coerce(cls, filters: Union["FlowFilter", Mapping[str, Any], None]) -> "FlowFilter":
        if isinstance(filters, cls):
            return filters
        return cls.model_validate(dict(filters or {}))
