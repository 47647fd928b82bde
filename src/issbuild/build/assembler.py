from __future__ import annotations
from typing import List, Protocol

from issbuild.build.clocks import ClockReconciler
from issbuild.build.diagnostics import BuildDiagnostics
from issbuild.build.finders import FinderContext, run_finders
from issbuild.build.window import Window
from issbuild.physics.events import PhysicsEvent


class EventSink(Protocol):
    def emit(self, event: PhysicsEvent) -> None: ...


class ListSink:
    """Collects emitted events in memory."""

    def __init__(self) -> None:
        self.events: List[PhysicsEvent] = []

    def emit(self, event: PhysicsEvent) -> None:
        self.events.append(event)

    def __len__(self) -> int:
        return len(self.events)


class EventAssembler:
    """
    Window-close callback: run the finders, freeze the result into a
    PhysicsEvent with the accelerator timing seen so far, hand it to the sink.

    Windows whose finders produce nothing are counted and dropped.
    """

    def __init__(
        self,
        ctx: FinderContext,
        clocks: ClockReconciler,
        diag: BuildDiagnostics,
        sink: EventSink,
    ):
        self.ctx = ctx
        self.clocks = clocks
        self.diag = diag
        self.sink = sink

    def __call__(self, window: Window) -> None:
        self.assemble(window)

    def assemble(self, window: Window) -> PhysicsEvent | None:
        fields = run_finders(self.ctx, window)
        event = PhysicsEvent(
            time_min=window.time_min,
            time_max=window.time_max,
            timing=self.clocks.timing_snapshot(),
            **fields,
        )
        if event.is_empty():
            self.diag.empty_windows += 1
            return None
        self.sink.emit(event)
        self.diag.events_emitted += 1
        return event
