from pathlib import Path

import numpy as np
import pytest
from typer.testing import CliRunner

from issbuild.build.errors import TimeOrderError
from issbuild.cli.tools import app as tools_app
from issbuild.config.schemas import ArrayCfg, CaenCfg
from issbuild.config.wiring import ArrayWiring, CaenWiring
from issbuild.io.event_store import read_diagnostics, read_events
from issbuild.io.sources import write_hits_h5
from issbuild.physics.hits import AsicHit
from issbuild.pipelines.core import app, run_pipeline
from issbuild.sim.synth import SynthCfg, synth_hit_stream

CFG = """
[run]
diagnostics_level = 0

[io]
input_path = "hits.h5"
output_path = "out/events.h5"

[build]
window_ns = 3000
"""


def _synth(path: Path, n_events=200, seed=1, **kw):
    hits = synth_hit_stream(
        ArrayWiring.from_cfg(ArrayCfg()),
        CaenWiring.from_cfg(CaenCfg()),
        SynthCfg(n_events=n_events, **kw),
        rng=np.random.default_rng(seed),
    )
    write_hits_h5(path, hits)
    return hits


def _cfg(tmp_path: Path) -> Path:
    p = tmp_path / "run.toml"
    p.write_text(CFG)
    return p


def test_synth_stream_is_time_ordered():
    hits = synth_hit_stream(ArrayWiring.from_cfg(ArrayCfg()), CaenWiring.from_cfg(CaenCfg()),
                            SynthCfg(n_events=50), rng=np.random.default_rng(3))
    ts = [h.timestamp for h in hits]
    assert ts == sorted(ts)


def test_run_pipeline_end_to_end(tmp_path: Path):
    hits = _synth(tmp_path / "hits.h5")
    out = run_pipeline(str(_cfg(tmp_path)))

    assert out == tmp_path / "out" / "events.h5"
    events = read_events(out)
    assert len(events) > 0
    for ev in events:
        ev.validate()
        assert ev.time_max - ev.time_min <= 3000
        assert not ev.is_empty()

    diag = read_diagnostics(out)
    assert diag["total"] == len(hits)
    assert diag["accounted"] is True
    assert diag["events_emitted"] == len(events)
    assert diag["clocks"]["pulses"]["caen/1"]["missed"] == 0


def test_pipeline_overrides_and_pulse_loss(tmp_path: Path):
    _synth(tmp_path / "hits.h5", pulse_loss=0.2, seed=7)
    out = run_pipeline(str(_cfg(tmp_path)), window_ns=1000, addback_p=True, max_hits=500)

    diag = read_diagnostics(out)
    assert diag["total"] == 500
    assert diag["max_window_span_ns"] <= 1000
    # a lost pulse shows up as missed, or as short intervals if it hit the seeding interval
    pulser = diag["clocks"]["pulses"]["caen/1"]
    assert pulser["missed"] + pulser["short"] > 0


def test_pipeline_writes_partial_output_on_time_order_error(tmp_path: Path):
    write_hits_h5(tmp_path / "hits.h5", [AsicHit(0, 0, 5, 100.0, 1000), AsicHit(0, 0, 6, 100.0, 900)])
    with pytest.raises(TimeOrderError):
        run_pipeline(str(_cfg(tmp_path)))
    assert len(read_events(tmp_path / "out" / "events.h5")) == 1


def test_cli_run_and_tools(tmp_path: Path):
    runner = CliRunner()
    res = runner.invoke(tools_app, ["synth", str(tmp_path / "hits.h5"), "-n", "50", "--seed", "2"])
    assert res.exit_code == 0, res.output
    assert "Wrote" in res.output

    res = runner.invoke(app, [str(_cfg(tmp_path)), "--diag", "0"])
    assert res.exit_code == 0, res.output
    assert "events.h5" in res.output

    res = runner.invoke(tools_app, ["summary", str(tmp_path / "out" / "events.h5")])
    assert res.exit_code == 0, res.output
    assert "arrayp" in res.output


def test_cli_reports_build_errors(tmp_path: Path):
    write_hits_h5(tmp_path / "hits.h5", [AsicHit(0, 0, 5, 100.0, 1000), AsicHit(0, 0, 6, 100.0, 900)])
    res = CliRunner().invoke(app, [str(_cfg(tmp_path))])
    assert res.exit_code == 1


def test_progress_bar_reports_hits(tmp_path: Path, capsys):
    hits = _synth(tmp_path / "hits.h5", n_events=20)
    run_pipeline(str(_cfg(tmp_path)), progress=True)

    err = capsys.readouterr().err
    assert "build" in err
    assert f"{len(hits)}/{len(hits)}" in err
