import json
import sys

import pandas as pd
import pytest

import flowatlas.run_build as run_build


@pytest.fixture
def build_inputs(tmp_path, attribution_rows, county_boundaries, state_boundaries, monkeypatch):
    flows = tmp_path / "flows.csv"
    pd.DataFrame(attribution_rows).to_csv(flows, index=False)
    counties = tmp_path / "counties.geojson"
    states = tmp_path / "states.geojson"
    counties.write_text("{}")
    states.write_text("{}")

    boundaries = {str(counties): county_boundaries, str(states): state_boundaries}
    monkeypatch.setattr(run_build, "load_boundaries", lambda path: boundaries[path])

    return {"flows": flows, "counties": counties, "states": states, "out": tmp_path / "cache"}


def _argv(inputs, *extra):
    return [
        "prog",
        "--flows", str(inputs["flows"]),
        "--counties", str(inputs["counties"]),
        "--states", str(inputs["states"]),
        "--centroids", str(inputs["out"] / "missing.csv"),
        "--out", str(inputs["out"]),
        *extra,
    ]


def test_run_build_success(monkeypatch, build_inputs):
    monkeypatch.setattr(sys, "argv", _argv(build_inputs, "--workers", "2", "--top-k", "1"))

    with pytest.raises(SystemExit) as exc:
        run_build.main()

    assert exc.value.code == 0
    out = build_inputs["out"]
    summary = json.loads((out / "summary.json").read_text())
    assert summary["inbound_totals_by_county_observed"]["06037"] == 150
    assert len(summary["in_adjacency"]["06037"]) == 1
    report = json.loads((out / "build.json").read_text())
    assert report["rejections"]["reasons"]["geoid_mismatch"] == 1


def test_run_build_prereq_fail(monkeypatch, tmp_path):
    monkeypatch.setattr(sys, "argv", ["prog", "--flows", str(tmp_path / "nope.csv")])

    with pytest.raises(SystemExit) as exc:
        run_build.main()

    assert exc.value.code == 1


def test_run_build_unhandled_failure(monkeypatch, build_inputs):
    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(run_build, "write_flow_cache", boom)
    monkeypatch.setattr(sys, "argv", _argv(build_inputs))

    with pytest.raises(SystemExit) as exc:
        run_build.main()

    assert exc.value.code == 1


def test_run_build_interrupted(monkeypatch, build_inputs):
    def interrupt(*args, **kwargs):
        raise KeyboardInterrupt

    monkeypatch.setattr(run_build, "build_flow_cache", interrupt)
    monkeypatch.setattr(sys, "argv", _argv(build_inputs))

    with pytest.raises(SystemExit) as exc:
        run_build.main()

    assert exc.value.code == 130


def test_run_build_without_valid_records(tmp_path, build_inputs):
    empty = tmp_path / "empty.csv"
    pd.DataFrame({"origin": ["6"], "dest": ["06037"], "flow": ["-1"]}).to_csv(empty, index=False)

    with pytest.raises(ValueError, match="No valid flow records"):
        run_build.run_build(str(empty), str(build_inputs["counties"]), str(tmp_path / "out"))
