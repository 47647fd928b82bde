from __future__ import annotations

from pathlib import Path
import signal
import threading
from typing import Any, Dict, Optional
import typer

from issbuild.build.engine import EventBuilder
from issbuild.build.errors import BuildError
from issbuild.config.load import load_config, snapshot_config_toml
from issbuild.config.schemas import Config
from issbuild.io.event_store import H5EventSink
from issbuild.io.sources import make_source
from issbuild.physics.calibration import make_calibration


def _print_summary(snap: Dict[str, Any], diag_level: int) -> None:
    print(f"[pipeline] hits: total={snap['total']} asic={snap['n_asic']} "
          f"caen={snap['n_caen']} info={snap['n_info']}")
    print(f"[pipeline] absorbed={snap['absorbed']} pulser={snap['pulser']} "
          f"dropped={snap['dropped']} accounted={snap['accounted']}")
    print(f"[pipeline] windows={snap['windows_closed']} events={snap['events_emitted']} "
          f"empty={snap['empty_windows']} max_span_ns={snap['max_window_span_ns']}")
    if diag_level < 2:
        return
    print(f"[pipeline] finders: {snap['finders']}")
    for key, pulse in snap["clocks"]["pulses"].items():
        print(f"[clocks] {key}: count={pulse['count']} missed={pulse['missed']} "
              f"short={pulse['short']} period_ns={pulse['period_ns']}")
    for mod, dead in snap["clocks"]["dead_time"].items():
        print(f"[clocks] module {mod}: dead_ns={dead['dead_ns']} pauses={dead['n_pause']}")
    for key, span in snap["clocks"]["hit_spans"].items():
        print(f"[clocks] {key}: hits from {span['first_ns']} to {span['last_ns']} ns "
              f"({span['duration_ns'] * 1e-9:.3f} s)")


def run_pipeline(
    cfg_path: str,
    *,
    window_ns: Optional[int] = None,
    addback_p: Optional[bool] = None,
    addback_n: Optional[bool] = None,
    max_hits: Optional[int] = None,
    diagnostics_level: Optional[int] = None,
    progress: Optional[bool] = None,
) -> Path:
    """
    Build events for one input file described by a TOML config.

    CLI flags override the corresponding [build]/[run] fields when not None.
    Whatever was built is written even when the run stops early (Ctrl-C or
    a time-order violation); the exception is re-raised afterwards.

    Returns
    -------
    Path to written HDF5 file.
    """
    cfg = load_config(cfg_path)

    # ---- apply CLI overrides on top of TOML ----
    if window_ns is not None:
        cfg.build.window_ns = window_ns
    if addback_p is not None:
        cfg.build.addback_p = addback_p
    if addback_n is not None:
        cfg.build.addback_n = addback_n
    if max_hits is not None:
        cfg.run.max_hits = max_hits
    if progress is not None:
        cfg.run.progress = progress
    if diagnostics_level is not None:
        cfg.run.diagnostics_level = diagnostics_level
    cfg = Config.model_validate(cfg.model_dump())

    diag_level = cfg.run.diagnostics_level
    if diag_level >= 1:
        print(f"[run] config = {cfg_path}")
        print(f"[run] window_ns={cfg.build.window_ns} addback_p={cfg.build.addback_p} "
              f"addback_n={cfg.build.addback_n}")
        print(f"[run] input={cfg.io.input_path} -> output={cfg.io.output_path}")

    calibration = make_calibration(cfg.io.calibration_path)
    if diag_level >= 1:
        print(f"[run] calibration = {cfg.io.calibration_path or 'identity'}")

    out_path = Path(cfg.io.output_path)
    sink = H5EventSink(out_path, config_text=snapshot_config_toml(cfg_path))
    builder = EventBuilder.from_config(cfg, sink, calibration=calibration)

    source = make_source(cfg.io)

    # Ctrl-C asks the builder to stop after the current window
    in_main = threading.current_thread() is threading.main_thread()
    previous = None
    if in_main:
        previous = signal.signal(signal.SIGINT, lambda *_: builder.request_stop())

    try:
        with source:
            n = builder.run(source, max_hits=cfg.run.max_hits, progress=cfg.run.progress)
        if diag_level >= 1:
            print(f"[pipeline] Processed {n} hits")
    except (BuildError, KeyboardInterrupt) as exc:
        if diag_level >= 1:
            print(f"[pipeline] Stopped early: {exc!r}")
        raise
    finally:
        if in_main:
            signal.signal(signal.SIGINT, previous)
        snap = builder.snapshot()
        sink.diagnostics = snap
        sink.close()
        if diag_level >= 1:
            _print_summary(snap, diag_level)
            print(f"[pipeline] Wrote {len(sink)} events to {out_path}")

    return out_path


# ---------------------------------------------------------------------------
# Unified CLI entry point
# ---------------------------------------------------------------------------

app = typer.Typer(help="ISS event builder (issbuild.pipelines.core)")


@app.command()
def main(
    cfg_path: str = typer.Argument(
        ...,
        help="Path to TOML config file",
    ),
    window_ns: Optional[int] = typer.Option(
        None,
        "--window-ns",
        help="Override [build].window_ns",
    ),
    addback_p: Optional[bool] = typer.Option(
        None,
        "--addback-p / --no-addback-p",
        help="Enable or disable p-side addback; overrides [build].addback_p when set",
    ),
    addback_n: Optional[bool] = typer.Option(
        None,
        "--addback-n / --no-addback-n",
        help="Enable or disable n-side addback; overrides [build].addback_n when set",
    ),
    max_hits: Optional[int] = typer.Option(
        None,
        "--max-hits",
        help="Stop after this many input hits",
    ),
    diag: Optional[int] = typer.Option(
        None,
        "--diag",
        help="Override [run].diagnostics_level (0, 1 or 2)",
    ),
    progress: Optional[bool] = typer.Option(
        None,
        "--progress / --no-progress",
        help="Show a hit progress bar; overrides [run].progress when set",
    ),
):
    """
    Build physics events from one hit file.
    """
    try:
        out_path = run_pipeline(
            cfg_path,
            window_ns=window_ns,
            addback_p=addback_p,
            addback_n=addback_n,
            max_hits=max_hits,
            diagnostics_level=diag,
            progress=progress,
        )
    except BuildError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(str(out_path))


if __name__ == "__main__":
    app()
