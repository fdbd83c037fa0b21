"""
Migration Flow Atlas - Attribution Feature Aggregates
Global and per-destination-county statistics over attribution vectors

For every feature index in the build's schema:
- global {sum, sum_abs, count}
- per destination county {sum, sum_abs, count}, finalized to mean and mean_abs

A county with no observations for a feature is absent from that feature's
maps. Non-finite attribution entries are not observations.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from config.settings import get_settings

settings = get_settings()


def prettify_feature(feature_id: str, prefix: Optional[str] = None) -> str:
    """Human label for a feature id ('shap_median_rent' -> 'Median Rent')."""
    prefix = settings.ATTRIBUTION_PREFIX if prefix is None else prefix
    key = feature_id[len(prefix):] if prefix and feature_id.startswith(prefix) else feature_id
    return " ".join(part[:1].upper() + part[1:] for part in key.split("_") if part)


@dataclass
class FeatureStats:
    sum: float = 0.0
    sum_abs: float = 0.0
    count: int = 0

    def add(self, value: float) -> None:
        self.sum += value
        self.sum_abs += abs(value)
        self.count += 1

    def merge(self, other: "FeatureStats") -> None:
        self.sum += other.sum
        self.sum_abs += other.sum_abs
        self.count += other.count

    @property
    def mean(self) -> float:
        return self.sum / self.count if self.count else 0.0

    @property
    def mean_abs(self) -> float:
        return self.sum_abs / self.count if self.count else 0.0


class FeatureAccumulator:
    """Running attribution sums, mergeable across build shards."""

    def __init__(self, schema: Sequence[str]):
        self.schema = tuple(schema)
        self.global_stats: List[FeatureStats] = [FeatureStats() for _ in self.schema]
        self.by_county: List[Dict[str, FeatureStats]] = [{} for _ in self.schema]

    def __bool__(self) -> bool:
        return bool(self.schema)

    def add(self, geoid: str, values: Sequence[Optional[float]]) -> None:
        for index, value in enumerate(values[: len(self.schema)]):
            if value is None:
                continue
            self.global_stats[index].add(value)
            self.by_county[index].setdefault(geoid, FeatureStats()).add(value)

    def merge(self, other: "FeatureAccumulator") -> None:
        if other.schema != self.schema:
            raise ValueError("Cannot merge feature aggregates with different schemas")
        for index, stats in enumerate(other.global_stats):
            self.global_stats[index].merge(stats)
            counties = self.by_county[index]
            for geoid, county_stats in other.by_county[index].items():
                counties.setdefault(geoid, FeatureStats()).merge(county_stats)

    def global_rank(self) -> List[Dict[str, Any]]:
        """Features ordered by mean absolute attribution, schema order on ties."""
        rows = [
            {
                "id": feature_id,
                "index": index,
                "label": prettify_feature(feature_id),
                "mean": stats.mean,
                "mean_abs": stats.mean_abs,
                "count": stats.count,
            }
            for index, (feature_id, stats) in enumerate(zip(self.schema, self.global_stats))
        ]
        return sorted(rows, key=lambda row: -row["mean_abs"])

    def county_means(self, index: int) -> Dict[str, Any]:
        feature_id = self.schema[index]
        counties = self.by_county[index]
        return {
            "id": feature_id,
            "index": index,
            "label": prettify_feature(feature_id),
            "mean": {geoid: stats.mean for geoid, stats in counties.items()},
            "mean_abs": {geoid: stats.mean_abs for geoid, stats in counties.items()},
        }
