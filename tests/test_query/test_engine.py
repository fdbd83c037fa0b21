"""
Tests for the flow query engine.

Covers:
1. Scope resolution, ranking and truncation
2. Filter semantics (min value, demographic, year, attribution features)
3. Memoization, lazy partition state and reload eviction
4. Lifecycle (init / reset) and concurrent load coalescing
5. Summary-backed accessors
"""

import asyncio

import pytest

from flowatlas.query.artifact_store import ArtifactUnavailableError, LocalArtifactStore
from flowatlas.query.engine import (
    EngineNotInitializedError,
    FlowArc,
    FlowQueryEngine,
    PartitionState,
)
from flowatlas.utils.artifact_keys import BY_DEST, BY_DEST_ATTRIBUTION, partition_key


def query(engine, filters=None):
    return asyncio.run(engine.query(filters))


def ids(arcs):
    return [arc.id for arc in arcs]


class CountingStore(LocalArtifactStore):
    """Local store that records reads and yields to the loop before returning."""

    def __init__(self, root):
        super().__init__(root)
        self.reads = []

    async def get(self, key):
        self.reads.append(key)
        await asyncio.sleep(0.01)
        return await super().get(key)


class TestQueryResolution:

    def test_scenario_top_one(self, engine):
        arcs = query(engine, {"metric": "in", "state": "06", "valueType": "observed", "topN": 1})

        assert len(arcs) == 1
        arc = arcs[0]
        assert isinstance(arc, FlowArc)
        assert (arc.origin, arc.dest, arc.observed, arc.predicted) == ("06", "06037", 100, 95)
        assert arc.value == 100

    def test_inbound_state_scope_sorted(self, engine):
        arcs = query(engine, {"state": "06"})

        assert ids(arcs) == ["06-06037", "36-06037", "06-06001", "EUR-06001"]
        assert arcs[0].dest_lon == pytest.approx(-118.25)

    def test_predicted_ranking(self, engine):
        arcs = query(engine, {"state": "06", "valueType": "predicted"})

        assert ids(arcs) == ["06-06037", "36-06037", "06-06001", "EUR-06001"]
        assert [arc.value for arc in arcs] == [95, 60, 28, 12]

    def test_outbound_state_scope(self, engine):
        arcs = query(engine, {"metric": "out", "state": "6"})

        assert ids(arcs) == ["06-06037", "06-36061", "06-06001"]

    def test_county_scope_uses_adjacency(self, engine):
        arcs = query(engine, {"county": "06037"})

        assert ids(arcs) == ["06-06037", "36-06037"]
        # Served from the summary, no partition fetched
        assert engine.partition_state(partition_key(BY_DEST, "06")) == PartitionState.NOT_LOADED

    def test_county_scope_without_adjacency_filters_partition(self, engine):
        engine.get_summary()["in_adjacency"].pop("06001")

        arcs = query(engine, {"county": "06001"})

        assert ids(arcs) == ["06-06001", "EUR-06001"]
        assert engine.partition_state(partition_key(BY_DEST, "06")) == PartitionState.LOADED

    def test_net_metric_unions_directions(self, engine):
        arcs = query(engine, {"metric": "net", "state": "06"})

        assert ids(arcs) == ["06-06037", "36-06037", "06-36061", "06-06001", "EUR-06001"]
        assert len(set(ids(arcs))) == len(arcs)

    def test_no_scope_is_empty(self, engine):
        assert query(engine, {}) == ()
        assert query(engine, {"metric": "out"}) == ()

    def test_unknown_geography_is_empty(self, engine):
        assert query(engine, {"state": "48"}) == ()
        assert query(engine, {"metric": "out", "state": "ASI"}) == ()

    def test_top_n_zero_is_unbounded(self, engine):
        assert len(query(engine, {"state": "06", "topN": 0})) == 4

    def test_county_outside_state_is_empty(self, engine):
        assert query(engine, {"state": "36", "county": "06037"}) == ()
        assert query(engine, {"metric": "out", "state": "36", "county": "06037"}) == ()

    def test_county_inside_state_matches_county_scope(self, engine):
        assert ids(query(engine, {"state": "06", "county": "06037"})) == ["06-06037", "36-06037"]


class TestFilters:

    def test_min_value_inclusive(self, engine):
        arcs = query(engine, {"state": "06", "minValue": 30})
        assert ids(arcs) == ["06-06037", "36-06037", "06-06001"]

    @pytest.mark.parametrize("low,high", [(0, 30), (10, 50), (30, 100), (50, 101)])
    def test_min_value_subset_property(self, engine, low, high):
        looser = set(ids(query(engine, {"state": "06", "minValue": low})))
        stricter = set(ids(query(engine, {"state": "06", "minValue": high})))
        assert stricter <= looser

    def test_feature_sign_filter(self, engine):
        arcs = query(engine, {"state": "06", "featureIndex": 0, "featureSign": "pos"})
        assert ids(arcs) == ["06-06037", "06-06001", "EUR-06001"]

        arcs = query(engine, {"state": "06", "featureIndex": 0, "featureSign": "neg"})
        assert ids(arcs) == ["36-06037"]

    def test_feature_quantile_filter(self, engine):
        arcs = query(engine, {"state": "06", "featureIndex": 0, "featureQuantile": 0.5})
        assert ids(arcs) == ["06-06037", "36-06037"]
        assert engine.partition_state(partition_key(BY_DEST_ATTRIBUTION, "06")) == PartitionState.LOADED

    def test_feature_filter_on_outbound_rows(self, engine):
        arcs = query(engine, {"metric": "out", "state": "06", "featureIndex": 1, "featureSign": "pos"})
        assert ids(arcs) == ["06-36061", "06-06001"]

    def test_out_of_range_feature_index_ignored(self, engine, caplog):
        arcs = query(engine, {"state": "06", "featureIndex": 9, "featureSign": "pos"})

        assert len(arcs) == 4
        assert "feature filter ignored" in caplog.text

    def test_demographic_and_year_filters(self, demographic_engine):
        arcs = query(demographic_engine, {"metric": "out", "county": "06037", "age": "age_25_34"})
        assert ids(arcs) == ["06037-36061-2019-age_25_34-any-any", "06037-36061-2020-age_25_34-any-any"]

        arcs = query(demographic_engine, {"metric": "out", "county": "06037", "year": 2019})
        assert [arc.value for arc in arcs] == [120, 80]

        arcs = query(demographic_engine, {"state": "06", "education": "edu_ba"})
        assert ids(arcs) == ["06001-06037-2020-any-any-edu_ba"]

        arcs = query(demographic_engine, {"state": "06", "age": "all"})
        assert len(arcs) == 2


class TestMemoization:

    def test_same_object_across_key_order(self, engine):
        first = query(engine, {"state": "06", "topN": 2, "metric": "in"})
        second = query(engine, {"metric": "in", "topN": 2, "state": "06"})

        assert first is second

    def test_same_object_across_spelling(self, engine):
        first = query(engine, {"state": "06", "minValue": 10, "valueType": "observed"})
        second = query(engine, {"state": "06", "min_value": 10.0, "value_type": "observed"})

        assert first is second

    def test_zero_top_n_shares_unbounded_result(self, engine):
        unbounded = query(engine, {"state": "06"})

        assert query(engine, {"state": "06", "topN": 0}) is unbounded

    def test_inactive_feature_index_shares_result(self, engine):
        plain = query(engine, {"state": "06"})

        assert query(engine, {"state": "06", "featureIndex": 1}) is plain

    def test_partition_state_transitions(self, engine):
        key = partition_key(BY_DEST, "36")
        assert engine.partition_state(key) == PartitionState.NOT_LOADED

        query(engine, {"state": "36"})

        assert engine.partition_state(key) == PartitionState.LOADED

    def test_reload_partition_evicts_dependent_results(self, engine, cache_dir):
        first = query(engine, {"state": "36"})
        unrelated = query(engine, {"state": "06"})

        asyncio.run(engine.reload_partition(partition_key(BY_DEST, "36")))

        again = query(engine, {"state": "36"})
        assert again is not first
        assert again == first
        assert query(engine, {"state": "06"}) is unrelated


class TestLifecycle:

    def test_query_before_init_raises(self, cache_dir):
        engine = FlowQueryEngine(LocalArtifactStore(str(cache_dir)))

        with pytest.raises(EngineNotInitializedError, match="not initialized"):
            query(engine, {"state": "06"})

    def test_reset_then_query_raises(self, engine):
        query(engine, {"state": "06"})
        engine.reset()

        with pytest.raises(EngineNotInitializedError, match="not initialized"):
            query(engine, {"state": "06"})
        assert engine.partition_state(partition_key(BY_DEST, "06")) == PartitionState.NOT_LOADED

    def test_reinit_after_reset(self, engine):
        engine.reset()
        asyncio.run(engine.init())

        assert len(query(engine, {"state": "06"})) == 4

    def test_init_is_idempotent_and_coalesced(self, cache_dir):
        store = CountingStore(str(cache_dir))
        engine = FlowQueryEngine(store)

        async def run():
            await asyncio.gather(engine.init(), engine.init(), engine.init())
            await engine.init()

        asyncio.run(run())

        assert store.reads.count("summary.json") == 1
        assert engine.initialized

    def test_concurrent_loads_coalesce(self, cache_dir):
        store = CountingStore(str(cache_dir))
        engine = FlowQueryEngine(store)

        async def run():
            await engine.init()
            return await asyncio.gather(
                engine.query({"state": "06"}),
                engine.query({"state": "06", "topN": 1}),
                engine.query({"metric": "net", "state": "06"}),
            )

        results = asyncio.run(run())

        assert store.reads.count(partition_key(BY_DEST, "06")) == 1
        assert len(results[0]) == 4
        assert len(results[1]) == 1

    def test_load_finishing_after_reset_is_discarded(self, cache_dir):
        store = CountingStore(str(cache_dir))
        engine = FlowQueryEngine(store)
        key = partition_key(BY_DEST, "06")

        async def run():
            await engine.init()
            pending = asyncio.ensure_future(engine.query({"state": "06"}))
            await asyncio.sleep(0)
            assert engine.partition_state(key) == PartitionState.LOADING
            engine.reset()
            await pending

        asyncio.run(run())

        assert engine.partition_state(key) == PartitionState.NOT_LOADED
        assert not engine.initialized

    def test_missing_partition_propagates(self, engine, cache_dir):
        (cache_dir / "flows" / "by_dest" / "36.json").unlink()

        with pytest.raises(ArtifactUnavailableError):
            query(engine, {"state": "36"})

    def test_init_fails_without_cache(self, tmp_path):
        engine = FlowQueryEngine(LocalArtifactStore(str(tmp_path)))

        with pytest.raises(ArtifactUnavailableError):
            asyncio.run(engine.init())
        assert not engine.initialized


class TestAccessors:

    def test_metadata_accessors(self, engine):
        assert engine.get_index()["by_dest"] == {"06": 4, "36": 2}
        assert engine.get_summary()["total_rows"] == 6
        assert engine.get_feature_schema() == ["shap_median_rent", "shap_job_growth"]
        descriptors = engine.get_feature_descriptors()
        assert [(f["id"], f["index"]) for f in descriptors] == [("shap_median_rent", 0), ("shap_job_growth", 1)]
        assert any(e["geoid"] == "EUR" for e in engine.get_geo_metadata())
        assert "income" in engine.get_dimensions()

    def test_accessors_require_init(self, cache_dir):
        engine = FlowQueryEngine(LocalArtifactStore(str(cache_dir)))
        with pytest.raises(EngineNotInitializedError):
            engine.get_summary()

    def test_net_totals(self, engine):
        county = engine.get_net_totals("06037")
        assert county["granularity"] == "county"
        assert county["inbound"] == 150
        assert county["outbound"] == 0.0

        state = engine.get_net_totals("6")
        assert state["geoid"] == "06"
        assert state["inbound"] == 190
        assert state["outbound"] == 170
        assert state["net"] == 20

        predicted = engine.get_net_totals("36", value_type="predicted")
        assert predicted["inbound"] == 235
        assert predicted["outbound"] == 250

    def test_entity_names(self, engine):
        assert engine.get_entity_name("6037") == "Los Angeles"
        assert engine.get_entity_name("06") == "California"
        assert engine.get_entity_name("EUR") == "Europe"
        assert engine.get_entity_name("ZZZ") == "ZZZ"

    def test_feature_accessors(self, engine):
        rank = asyncio.run(engine.get_feature_rank())
        assert [row["id"] for row in rank] == ["shap_job_growth", "shap_median_rent"]

        by_county = asyncio.run(engine.get_feature_by_county("shap_median_rent"))
        assert by_county["mean"]["06037"] == pytest.approx(0.1)
        assert asyncio.run(engine.get_feature_by_county("shap_unknown")) is None

    def test_attribution_partition(self, engine):
        payload = asyncio.run(engine.get_attribution_partition("6"))
        assert payload["code"] == "06"
        assert len(payload["rows"]) == 4
        assert asyncio.run(engine.get_attribution_partition("48")) is None

    def test_net_series(self, demographic_engine):
        assert demographic_engine.get_available_years() == [2019, 2020]
        assert demographic_engine.get_net_series("06037") == [
            {"year": 2019, "inbound": 0.0, "outbound": 200.0, "net": -200.0},
            {"year": 2020, "inbound": 80.0, "outbound": 90.0, "net": -10.0},
        ]

    def test_feature_rank_empty_without_schema(self, demographic_engine):
        assert asyncio.run(demographic_engine.get_feature_rank()) == []
