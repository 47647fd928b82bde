from __future__ import annotations

import typer
from pathlib import Path
from typing import Optional

import numpy as np

from issbuild.config.schemas import ArrayCfg, CaenCfg
from issbuild.config.load import load_config
from issbuild.config.wiring import ArrayWiring, CaenWiring
from issbuild.io.event_store import SUB_EVENT_TYPES, read_diagnostics, read_events
from issbuild.io.sources import write_hits_h5
from issbuild.sim.synth import SynthCfg, synth_hit_stream, synth_summary

app = typer.Typer(help="ISS event builder helper tools")


@app.command("synth")
def synth(
    out: str = typer.Argument(..., help="Output HDF5 hit file"),
    cfg_path: Optional[str] = typer.Option(None, "--config", "-c", help="TOML config supplying the wiring"),
    n_events: int = typer.Option(1000, "--n-events", "-n", help="Number of physics events to generate"),
    seed: Optional[int] = typer.Option(None, "--seed", help="RNG seed"),
    pulse_loss: float = typer.Option(0.0, "--pulse-loss", help="Fraction of CAEN pulser pulses to drop"),
):
    """Write a synthetic, time-ordered hit stream for smoke runs."""
    if cfg_path is not None:
        cfg = load_config(cfg_path)
        array_cfg, caen_cfg = cfg.array, cfg.caen
    else:
        array_cfg, caen_cfg = ArrayCfg(), CaenCfg()
    hits = synth_hit_stream(
        ArrayWiring.from_cfg(array_cfg),
        CaenWiring.from_cfg(caen_cfg),
        SynthCfg(n_events=n_events, pulse_loss=pulse_loss),
        rng=np.random.default_rng(seed),
    )
    path = write_hits_h5(out, hits)
    counts = synth_summary(hits)
    typer.echo(f"Wrote {len(hits)} hits ({counts['asic']} asic, {counts['caen']} caen, "
               f"{counts['info']} info) to {path}")


@app.command("summary")
def summary(
    h5_path: str = typer.Argument(..., help="Event file written by issbuild"),
):
    """Print event and sub-event counts from an output file."""
    p = Path(h5_path)
    events = read_events(p)
    typer.echo(f"{p}: {len(events)} events")
    for name, _cls in SUB_EVENT_TYPES:
        n = sum(len(getattr(ev, name)) for ev in events)
        typer.echo(f"  {name:8s} {n}")
    diag = read_diagnostics(p)
    if diag:
        typer.echo(f"  hits={diag['total']} absorbed={diag['absorbed']} dropped={diag['dropped']}")
        missed = sum(v["missed"] for v in diag["clocks"]["pulses"].values())
        typer.echo(f"  missed pulses={missed}")


if __name__ == "__main__":
    app()
