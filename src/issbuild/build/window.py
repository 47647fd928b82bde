# src/issbuild/build/window.py
"""
issbuild.build.window

The build window and the accumulator that feeds it.

The accumulator is a two-state machine, CLOSED -> OPEN -> CLOSED. An
above-threshold ASIC/CAEN hit opens the window; further data hits are
absorbed while they lie within `window_ns` of the first one. Whether to close
is decided by peeking at the next hit, so a hit exactly on the boundary is
absorbed and the first one past it starts the next window. Any next hit past
the boundary closes the window, info records included, so the timing
snapshot never sees a reference from after the window.

INFO hits never open a window. They update the clock reconciler; an ASIC
pause additionally forces the open window to close, so no event spans dead
time. Info records naming a module outside the array are dropped as
unidentified.

Thresholds apply to calibrated energy. A calibration that has no threshold
for a channel leaves the cut to the configured [array]/[caen] thresholds.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Tuple, Union

from issbuild.build.clocks import ClockDomain, ClockReconciler
from issbuild.build.diagnostics import BuildDiagnostics
from issbuild.build.errors import BindingError, TimeOrderError, UnidentifiedHit
from issbuild.config.wiring import ArrayWiring, CaenWiring, DetectorFamily
from issbuild.physics.calibration import Calibrated, Calibration, IdentityCalibration
from issbuild.physics.hits import MODULE_KINDS, AsicHit, CaenHit, Hit, InfoHit, InfoKind, is_data


@dataclass(frozen=True, slots=True)
class ArrayCandidate:
    module: int
    row: int
    strip: int
    energy: float
    time: int


@dataclass(frozen=True, slots=True)
class CaenCandidate:
    """group/sub carry sector+layer, axis+tac, sector, layer or det_id depending on family."""
    group: int
    sub: int
    energy: float
    raw: float
    time: int


Candidate = Union[ArrayCandidate, CaenCandidate]


def _passes(cal: Calibrated, configured: float) -> bool:
    """Calibration's own verdict, else the configured threshold on the calibrated energy."""
    if cal.above_threshold is not None:
        return cal.above_threshold
    return cal.energy > configured


class State(Enum):
    CLOSED = auto()
    OPEN = auto()


class Decision(Enum):
    CONTINUE = auto()
    CLOSE = auto()


@dataclass
class Window:
    """
    Reused accumulation buffer. reset() clears the lists in place.
    """
    time_min: Optional[int] = None
    time_max: Optional[int] = None
    is_open: bool = False
    lists: Dict[DetectorFamily, List[Candidate]] = field(
        default_factory=lambda: {fam: [] for fam in DetectorFamily}
    )

    def open(self, t: int) -> None:
        self.time_min = t
        self.time_max = t
        self.is_open = True

    def add(self, family: DetectorFamily, cand: Candidate) -> None:
        self.lists[family].append(cand)
        if cand.time > self.time_max:
            self.time_max = cand.time

    def fits(self, t: int, width: int) -> bool:
        return self.is_open and t - self.time_min <= width

    def candidates(self, family: DetectorFamily) -> Tuple[Candidate, ...]:
        return tuple(self.lists[family])

    def n_candidates(self) -> int:
        return sum(len(v) for v in self.lists.values())

    def reset(self) -> None:
        for lst in self.lists.values():
            lst.clear()
        self.time_min = None
        self.time_max = None
        self.is_open = False


class WindowAccumulator:
    """
    Classifies each hit and buffers it into the open window.

    on_close is called with the window (still populated) every time it
    closes; the window is reset right after it returns.
    """

    def __init__(
        self,
        window_ns: int,
        array: ArrayWiring,
        caen: CaenWiring,
        clocks: ClockReconciler,
        diag: BuildDiagnostics,
        on_close: Callable[[Window], None],
        calibration: Optional[Calibration] = None,
    ):
        self.window_ns = int(window_ns)
        self.array = array
        self.caen = caen
        self.clocks = clocks
        self.diag = diag
        self.on_close = on_close
        self.window = Window()
        self._identity = IdentityCalibration(
            asic_threshold=array.threshold,
            caen_thresholds={key: caen.threshold_for(ch.family) for key, ch in caen.channels.items()},
        )
        self._calibration = calibration
        self._last_time: Optional[int] = None
        self._index = 0

    # --- state -----------------------------------------------------------

    @property
    def state(self) -> State:
        return State.OPEN if self.window.is_open else State.CLOSED

    @property
    def calibration(self) -> Optional[Calibration]:
        return self._calibration

    def bind_calibration(self, calibration: Optional[Calibration]) -> None:
        if self.window.is_open:
            raise BindingError("calibration cannot be rebound while a build window is open")
        self._calibration = calibration

    def _cal(self) -> Calibration:
        return self._calibration if self._calibration is not None else self._identity

    def new_stream(self) -> None:
        """Forget the time-order history; the next hit starts a new file."""
        self.close()
        self._last_time = None
        self._index = 0

    def close(self) -> None:
        """Finalize the open window. A no-op when nothing is open."""
        if not self.window.is_open:
            return
        span = self.window.time_max - self.window.time_min
        if span > self.diag.max_window_span_ns:
            self.diag.max_window_span_ns = span
        self.diag.windows_closed += 1
        try:
            self.on_close(self.window)
        finally:
            self.window.reset()

    def should_close(self, lookahead: Optional[Hit]) -> bool:
        if not self.window.is_open:
            return False
        if lookahead is None:
            return True
        if not self.window.fits(lookahead.timestamp, self.window_ns):
            return True
        # a pause force-closes even inside the bound
        return isinstance(lookahead, InfoHit) and lookahead.kind is InfoKind.ASIC_PAUSE

    # --- main entry ------------------------------------------------------

    def absorb(self, hit: Hit, lookahead: Optional[Hit] = None) -> Decision:
        """
        Process one hit in stream order, then decide from `lookahead` (the
        peeked next hit, None at end of stream) whether the window closes.
        """
        t = hit.timestamp
        if self._last_time is not None and t < self._last_time:
            # flush what we have before giving up on this file
            self.close()
            raise TimeOrderError(self._index, self._last_time, t)
        self._last_time = t
        self._index += 1
        self.diag.total += 1

        # a hit can only miss the window if the caller skipped a lookahead
        if self.window.is_open and not self.window.fits(t, self.window_ns):
            self.close()

        if not is_data(hit):
            self._absorb_info(hit)
        elif isinstance(hit, AsicHit):
            self._absorb_asic(hit)
        elif isinstance(hit, CaenHit):
            self._absorb_caen(hit)
        else:
            raise TypeError(f"Unsupported hit type: {type(hit)}")

        if self.should_close(lookahead):
            self.close()
            return Decision.CLOSE
        return Decision.CONTINUE

    # --- per-type handling -----------------------------------------------

    def _absorb_info(self, hit: InfoHit) -> None:
        self.diag.n_info += 1
        if hit.kind in MODULE_KINDS and not self.array.has_module(hit.module):
            self.diag.drop("unidentified")
            return
        self.diag.inc_info(hit.kind.value)
        if hit.kind is InfoKind.ASIC_PAUSE:
            self.close()
        self.clocks.observe(hit)

    def _absorb_asic(self, hit: AsicHit) -> None:
        self.diag.n_asic += 1
        try:
            strip = self.array.lookup(hit.module, hit.asic, hit.channel)
            self.clocks.observe_hit(ClockDomain.ASIC, hit.module, hit.timestamp)
            if self.clocks.is_paused(hit.module):
                self.diag.drop("paused")
                return
            cal = self._cal().calibrate((hit.module, hit.asic), hit.channel, hit.raw)
        except UnidentifiedHit:
            self.diag.drop("unidentified")
            return

        if cal.is_pulser:
            self.clocks.observe_pulse(ClockDomain.ASIC, hit.module, hit.timestamp)
            self.diag.pulser += 1
            return

        family = DetectorFamily.ARRAY_P if strip.side == 0 else DetectorFamily.ARRAY_N
        cand = ArrayCandidate(hit.module, strip.row, strip.strip, cal.energy, hit.timestamp)
        self._place(family, cand, _passes(cal, self.array.threshold))

    def _absorb_caen(self, hit: CaenHit) -> None:
        self.diag.n_caen += 1
        if self.caen.is_pulser(hit.module, hit.channel):
            self.clocks.observe_hit(ClockDomain.CAEN, hit.module, hit.timestamp)
            self.clocks.observe_pulse(ClockDomain.CAEN, hit.module, hit.timestamp)
            self.diag.pulser += 1
            return
        try:
            ch = self.caen.lookup(hit.module, hit.channel)
            self.clocks.observe_hit(ClockDomain.CAEN, hit.module, hit.timestamp)
            cal = self._cal().calibrate(hit.module, hit.channel, hit.raw)
        except UnidentifiedHit:
            self.diag.drop("unidentified")
            return

        if cal.is_pulser:
            self.clocks.observe_pulse(ClockDomain.CAEN, hit.module, hit.timestamp)
            self.diag.pulser += 1
            return

        cand = CaenCandidate(ch.group, ch.sub, cal.energy, float(hit.raw), hit.timestamp)
        self._place(ch.family, cand, _passes(cal, self.caen.threshold_for(ch.family)))

    def _place(self, family: DetectorFamily, cand: Candidate, above_threshold: bool) -> None:
        if not self.window.is_open:
            if not above_threshold:
                self.diag.drop("below_threshold")
                return
            self.window.open(cand.time)
            self.diag.windows_opened += 1
        self.window.add(family, cand)
        self.diag.absorbed += 1
