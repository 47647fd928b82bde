# src/issbuild/build/engine.py
"""
issbuild.build.engine

EventBuilder ties the pieces together:

    HitSource -> WindowAccumulator (+ ClockReconciler) -> finders
              -> EventAssembler -> EventSink

Everything runs on the calling thread. A stop request (see request_stop) is
honoured only between windows, so the window being built when it arrives is
still finished and emitted.
"""
from __future__ import annotations
from typing import Any, Dict, Optional, Protocol

from tqdm import tqdm

from issbuild.build.assembler import EventAssembler, EventSink
from issbuild.build.clocks import ClockReconciler
from issbuild.build.diagnostics import BuildDiagnostics
from issbuild.build.finders import FinderContext
from issbuild.build.window import State, WindowAccumulator
from issbuild.config.schemas import Config
from issbuild.config.wiring import ArrayWiring, CaenWiring, DetectorFamily
from issbuild.physics.calibration import Calibration
from issbuild.physics.hits import Hit


class HitSource(Protocol):
    def next(self) -> Optional[Hit]: ...

    def peek(self) -> Optional[Hit]: ...


class EventBuilder:
    def __init__(
        self,
        array: ArrayWiring,
        caen: CaenWiring,
        sink: EventSink,
        *,
        window_ns: int = 3000,
        addback_p: bool = False,
        addback_n: bool = False,
        pulse_tolerance: float = 0.1,
        period_alpha: float = 0.1,
        calibration: Optional[Calibration] = None,
        diagnostics_level: int = 0,
    ):
        self.array = array
        self.caen = caen
        self.sink = sink
        self.diagnostics_level = diagnostics_level

        self.diag = BuildDiagnostics()
        self.clocks = ClockReconciler(
            pulse_tolerance=pulse_tolerance,
            period_alpha=period_alpha,
            caen_module=caen.pulser[0] if caen.pulser is not None else 0,
            diagnostics_level=diagnostics_level,
        )
        mwpc_axes = sorted({ch.group for ch in caen.channels.values() if ch.family is DetectorFamily.MWPC})
        self.finder_ctx = FinderContext(
            addback_p=addback_p,
            addback_n=addback_n,
            recoil_loss_layers=caen.recoil_loss_layers,
            recoil_rest_layers=caen.recoil_rest_layers,
            zd_loss_layer=caen.zd_loss_layer,
            zd_rest_layer=caen.zd_rest_layer,
            mwpc_axes=tuple(mwpc_axes),
            counters=self.diag.finders,
        )
        self.assembler = EventAssembler(self.finder_ctx, self.clocks, self.diag, sink)
        self.accumulator = WindowAccumulator(
            window_ns=window_ns,
            array=array,
            caen=caen,
            clocks=self.clocks,
            diag=self.diag,
            on_close=self.assembler,
            calibration=calibration,
        )
        self._stop_requested = False

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        sink: EventSink,
        calibration: Optional[Calibration] = None,
    ) -> "EventBuilder":
        """Build wiring tables from the config; raises WiringError if they are inconsistent."""
        return cls(
            ArrayWiring.from_cfg(cfg.array),
            CaenWiring.from_cfg(cfg.caen),
            sink,
            window_ns=cfg.build.window_ns,
            addback_p=cfg.build.addback_p,
            addback_n=cfg.build.addback_n,
            pulse_tolerance=cfg.clocks.pulse_tolerance,
            period_alpha=cfg.clocks.period_alpha,
            calibration=calibration,
            diagnostics_level=cfg.run.diagnostics_level,
        )

    # --- control -----------------------------------------------------------

    @property
    def state(self) -> State:
        return self.accumulator.state

    def bind_calibration(self, calibration: Optional[Calibration]) -> None:
        """Swap the calibration between windows (BindingError while one is open)."""
        self.accumulator.bind_calibration(calibration)

    def request_stop(self) -> None:
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def close(self) -> None:
        """Flush the open window, if any."""
        self.accumulator.close()

    # --- main loop ---------------------------------------------------------

    def run(self, source: HitSource, max_hits: Optional[int] = None, progress: bool = False) -> int:
        """
        Consume `source` until it is exhausted (or max_hits hits were read).

        Returns the number of hits processed. Raises KeyboardInterrupt once
        the current window is finished if a stop was requested, and
        TimeOrderError on out-of-order input (after flushing the window).
        With progress=True a tqdm bar counts hits (sized from len(source)
        when the source has a length).
        """
        acc = self.accumulator
        acc.new_stream()
        n = 0
        pbar = None
        if progress:
            total = len(source) if hasattr(source, "__len__") else None
            if max_hits is not None:
                total = max_hits if total is None else min(total, max_hits)
            pbar = tqdm(total=total, desc="build", unit="hit")
        try:
            while True:
                if self._stop_requested and acc.state is State.CLOSED:
                    raise KeyboardInterrupt("event building stopped between windows")
                if max_hits is not None and n >= max_hits:
                    break
                hit = source.next()
                if hit is None:
                    break
                acc.absorb(hit, source.peek())
                n += 1
                if pbar is not None:
                    pbar.update(1)
        finally:
            acc.close()
            if pbar is not None:
                pbar.close()

        if self.diagnostics_level >= 2:
            print(f"[build] {n} hits -> {self.diag.events_emitted} events "
                  f"({self.diag.windows_closed} windows, {self.diag.empty_windows} empty)")
        return n

    # --- reporting ---------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict diagnostics: hit/window/event counters plus clock state."""
        snap = self.diag.snapshot()
        snap["accounted"] = self.diag.accounted()
        snap["clocks"] = self.clocks.snapshot()
        cal = self.accumulator.calibration
        snap["calibration"] = "identity" if cal is None else cal.name
        if cal is not None and hasattr(cal, "n_fallback"):
            snap["calibration_fallback"] = cal.n_fallback
        return snap
