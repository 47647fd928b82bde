from pathlib import Path

import h5py
import numpy as np
import pytest

from issbuild.config.schemas import IOCfg
from issbuild.io.canonicalize import canonicalize_columns
from issbuild.io.event_store import H5EventSink, read_diagnostics, read_events
from issbuild.io.sources import H5HitSource, ListHitSource, make_source, write_hits_h5
from issbuild.physics.events import (
    ArrayEvent,
    ArrayPEvent,
    GammaRayEvent,
    PhysicsEvent,
    RecoilEvent,
    TimingSnapshot,
    ZeroDegreeEvent,
)
from issbuild.physics.hits import AsicHit, CaenHit, InfoHit, InfoKind

HITS = [
    InfoHit(InfoKind.EBIS, 5),
    AsicHit(0, 0, 5, 100.0, 10),
    CaenHit(1, 15, 300.0, 10),
    InfoHit(InfoKind.ASIC_PAUSE, 20, module=2),
    CaenHit(2, 4, 55.5, 30),
    InfoHit(InfoKind.ASIC_RESUME, 40, module=2),
    AsicHit(2, 1, 20, 80.0, 50),
]


def _drain(src):
    out = []
    while True:
        h = src.next()
        if h is None:
            return out
        out.append(h)


def test_list_source_peek_next():
    src = ListHitSource(HITS[:2])
    assert src.peek() is HITS[0]
    assert src.next() is HITS[0]
    assert src.peek() is HITS[1]
    assert src.next() is HITS[1]
    assert src.peek() is None and src.next() is None


@pytest.mark.parametrize("chunk_size", [1, 3, 1000])
def test_h5_hit_source_round_trip(tmp_path: Path, chunk_size):
    path = write_hits_h5(tmp_path / "hits.h5", HITS)
    with H5HitSource(path, chunk_size=chunk_size) as src:
        assert len(src) == len(HITS)
        assert src.peek() == HITS[0]
        assert _drain(src) == HITS
        assert src.peek() is None


def test_h5_hit_source_aliased_columns(tmp_path: Path):
    path = tmp_path / "aliased.h5"
    with h5py.File(path, "w") as f:
        g = f.create_group("raw")
        g.create_dataset("type", data=np.array([0, 1], dtype=np.uint8))
        g.create_dataset("time", data=np.array([100, 200], dtype=np.int64))
        g.create_dataset("mod", data=np.array([0, 2]))
        g.create_dataset("asic", data=np.array([1, -1]))
        g.create_dataset("ch", data=np.array([20, 3]))
        g.create_dataset("adc", data=np.array([12.0, 34.0]))

    src = make_source(IOCfg(input_path=str(path), output_path="x.h5", adapter={"group": "raw", "chunk_size": "1"}))
    assert _drain(src) == [AsicHit(0, 1, 20, 12.0, 100), CaenHit(2, 3, 34.0, 200)]
    src.close()


def test_canonicalize_requires_kind_and_time():
    with pytest.raises(KeyError):
        canonicalize_columns({"timestamp": np.arange(3)})
    with pytest.raises(ValueError):
        canonicalize_columns({"kind": np.zeros(3), "timestamp": np.arange(3), "raw": np.zeros(2)})
    cols = canonicalize_columns({"kind": [2], "t_ns": [7]})
    assert cols["info_kind"][0] == -1 and cols["module"][0] == -1


def test_missing_inputs(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        H5HitSource(tmp_path / "nope.h5")
    path = write_hits_h5(tmp_path / "hits.h5", HITS)
    with pytest.raises(KeyError):
        H5HitSource(path, group="other")


def _events():
    return [
        PhysicsEvent(
            time_min=10, time_max=30,
            array=(ArrayEvent(0, 0, 5, 1, 100.0, 90.0, 10, 15),),
            arrayp=(ArrayPEvent(0, 0, 5, 100.0, 10), ArrayPEvent(0, 1, 7, 40.0, 12, cluster=2)),
            recoil=(RecoilEvent(1, (300.0, 900.0), (0, 1), 300.0, 900.0, 20, 24),),
            gamma=(GammaRayEvent(3, 661.7, 30, 20),),
            mwpc_axis_multiplicity=(0, 1),
            timing=TimingSnapshot(ebis=5, laser=7),
        ),
        PhysicsEvent(
            time_min=5000, time_max=5000,
            zd=(ZeroDegreeEvent((0,), (123.0,), 123.0, 0.0, 5000),),
            mwpc_axis_multiplicity=(0, 0),
            timing=TimingSnapshot(ebis=5, t1=4000),
        ),
    ]


def test_event_store_round_trip(tmp_path: Path):
    out = tmp_path / "out" / "events.h5"
    events = _events()
    with H5EventSink(out, config_text="[build]\nwindow_ns = 3000\n") as sink:
        for ev in events:
            sink.emit(ev)
        sink.diagnostics = {"total": 9, "dropped": {"paused": 1}}

    assert read_events(out) == events
    assert read_diagnostics(out) == {"total": 9, "dropped": {"paused": 1}}
    with h5py.File(out, "r") as f:
        assert "window_ns" in f.attrs["config_text"]
        np.testing.assert_array_equal(f["events/arrayp/event_ptr"][()], [0, 2, 2])
        np.testing.assert_array_equal(f["events/recoil/energies_ptr"][()], [0, 2])
        assert f["events/recoil/energies"].dtype == np.float64
        assert f["events/recoil/layers"].dtype == np.int64
        assert f["events/arrayp/energy"].dtype == np.float64
        assert f["events/arrayp/pid"].dtype == np.int64


def test_event_store_empty(tmp_path: Path):
    out = tmp_path / "empty.h5"
    H5EventSink(out).close()
    assert read_events(out) == []
    assert read_diagnostics(out) == {}


def test_sink_rejects_after_close(tmp_path: Path):
    sink = H5EventSink(tmp_path / "x.h5")
    sink.close()
    with pytest.raises(RuntimeError):
        sink.emit(_events()[0])
