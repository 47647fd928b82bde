# src/issbuild/build/clocks.py
"""
issbuild.build.clocks

Bookkeeping for the independently clocked parts of the DAQ.

Each (domain, module) pair keeps its last pulser time and a running estimate
of the pulser period. An interval much longer than the estimate means pulses
were lost; that is only ever reported, never fatal. ASIC pause/resume
signals bound dead-time intervals during which that module's hits are
excluded from event building.

Accelerator references (EBIS, T1, SuperCycle, Laser) are tracked here too so
the assembler can snapshot them at window close.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from issbuild.physics.events import TimingSnapshot
from issbuild.physics.hits import InfoHit, InfoKind


class ClockDomain(str, Enum):
    FPGA = "fpga"
    ASIC = "asic"
    CAEN = "caen"


_REFERENCE_KINDS = (InfoKind.EBIS, InfoKind.T1, InfoKind.SUPERCYCLE, InfoKind.LASER)


@dataclass
class PulseTrack:
    """
    Pulser history of one clock.

    period stays None until two pulses have been seen. sync_offset is the
    pulse time minus the latest CAEN pulser time (None for CAEN itself).
    """
    last_time: Optional[int] = None
    count: int = 0
    period: Optional[float] = None
    missed: int = 0
    short: int = 0
    sync_offset: Optional[int] = None


@dataclass
class DeadTime:
    paused: bool = False
    pause_time: Optional[int] = None
    dead_ns: int = 0
    n_pause: int = 0
    n_resume: int = 0
    n_unmatched_resume: int = 0
    n_repeated_pause: int = 0


@dataclass
class HitSpan:
    """First and last data-hit time seen from one module."""
    first: int
    last: int

    @property
    def duration(self) -> int:
        return self.last - self.first


@dataclass
class ReferenceTrack:
    last_time: Optional[int] = None
    count: int = 0
    last_period: Optional[int] = None


@dataclass
class ClockReconciler:
    pulse_tolerance: float = 0.1
    period_alpha: float = 0.1
    caen_module: int = 0
    diagnostics_level: int = 0

    pulses: Dict[Tuple[ClockDomain, int], PulseTrack] = field(default_factory=dict)
    dead: Dict[int, DeadTime] = field(default_factory=dict)
    refs: Dict[InfoKind, ReferenceTrack] = field(default_factory=dict)
    spans: Dict[Tuple[ClockDomain, int], HitSpan] = field(default_factory=dict)
    _n_reported: int = 0

    # --- run span --------------------------------------------------------

    def observe_hit(self, domain: ClockDomain, module: int, t: int) -> None:
        span = self.spans.get((domain, module))
        if span is None:
            self.spans[(domain, module)] = HitSpan(first=t, last=t)
        else:
            span.last = t

    # --- pulsers ---------------------------------------------------------

    def track(self, domain: ClockDomain, module: int) -> PulseTrack:
        key = (domain, module)
        if key not in self.pulses:
            self.pulses[key] = PulseTrack()
        return self.pulses[key]

    def observe_pulse(self, domain: ClockDomain, module: int, t: int) -> int:
        """
        Record one pulser/sync pulse. Returns the number of pulses judged
        missing before this one (0 if the interval looks normal).
        """
        tr = self.track(domain, module)
        missed = 0
        if tr.last_time is not None:
            interval = t - tr.last_time
            if tr.period is None:
                if interval > 0:
                    tr.period = float(interval)
            else:
                ratio = interval / tr.period
                if ratio > 1.0 + self.pulse_tolerance:
                    missed = max(1, int(round(ratio)) - 1)
                    tr.missed += missed
                    if self.diagnostics_level >= 2 and self._n_reported < 5:
                        print(f"[clocks] {domain.value} module {module}: {missed} pulse(s) missing "
                              f"before t={t} (interval {interval} ns, period {tr.period:.1f} ns)")
                        self._n_reported += 1
                elif ratio < 1.0 - self.pulse_tolerance:
                    tr.short += 1
                else:
                    tr.period += self.period_alpha * (interval - tr.period)

        tr.last_time = t
        tr.count += 1

        if domain is not ClockDomain.CAEN:
            caen = self.pulses.get((ClockDomain.CAEN, self.caen_module))
            if caen is not None and caen.last_time is not None:
                tr.sync_offset = t - caen.last_time
        return missed

    # --- dead time -------------------------------------------------------

    def _dead(self, module: int) -> DeadTime:
        if module not in self.dead:
            self.dead[module] = DeadTime()
        return self.dead[module]

    def pause(self, module: int, t: int) -> None:
        d = self._dead(module)
        d.n_pause += 1
        if d.paused:
            d.n_repeated_pause += 1
            return
        d.paused = True
        d.pause_time = t

    def resume(self, module: int, t: int) -> None:
        d = self._dead(module)
        d.n_resume += 1
        if not d.paused or d.pause_time is None:
            d.n_unmatched_resume += 1
            return
        d.dead_ns += t - d.pause_time
        d.paused = False
        d.pause_time = None

    def is_paused(self, module: int) -> bool:
        d = self.dead.get(module)
        return d is not None and d.paused

    # --- accelerator references ------------------------------------------

    def observe_reference(self, kind: InfoKind, t: int) -> None:
        ref = self.refs.setdefault(kind, ReferenceTrack())
        if ref.last_time is not None:
            ref.last_period = t - ref.last_time
        ref.last_time = t
        ref.count += 1

    def timing_snapshot(self) -> TimingSnapshot:
        def _t(kind: InfoKind) -> Optional[int]:
            ref = self.refs.get(kind)
            return None if ref is None else ref.last_time

        return TimingSnapshot(
            ebis=_t(InfoKind.EBIS),
            t1=_t(InfoKind.T1),
            supercycle=_t(InfoKind.SUPERCYCLE),
            laser=_t(InfoKind.LASER),
        )

    # --- dispatch --------------------------------------------------------

    def observe(self, info: InfoHit) -> None:
        kind, t = info.kind, info.timestamp
        if kind in _REFERENCE_KINDS:
            self.observe_reference(kind, t)
        elif kind is InfoKind.FPGA_PULSE:
            self.observe_pulse(ClockDomain.FPGA, info.module, t)
        elif kind is InfoKind.ASIC_PULSE:
            self.observe_pulse(ClockDomain.ASIC, info.module, t)
        elif kind is InfoKind.CAEN_PULSER:
            self.observe_pulse(ClockDomain.CAEN, self.caen_module if info.module is None else info.module, t)
        elif kind is InfoKind.ASIC_PAUSE:
            self.pause(info.module, t)
        elif kind is InfoKind.ASIC_RESUME:
            self.resume(info.module, t)
        else:  # pragma: no cover
            raise ValueError(f"Unhandled info kind {kind!r}")

    # --- reporting -------------------------------------------------------

    def total_missed(self, domain: Optional[ClockDomain] = None) -> int:
        return sum(tr.missed for (d, _), tr in self.pulses.items() if domain is None or d is domain)

    def snapshot(self) -> Dict[str, Any]:
        caen = self.pulses.get((ClockDomain.CAEN, self.caen_module))
        n_caen = caen.count if caen is not None else 0
        pulses = {}
        for (domain, module), tr in sorted(self.pulses.items(), key=lambda kv: (kv[0][0].value, kv[0][1])):
            pulses[f"{domain.value}/{module}"] = {
                "count": tr.count,
                "period_ns": tr.period,
                "missed": tr.missed,
                "short": tr.short,
                "sync_offset_ns": tr.sync_offset,
                "count_minus_caen": tr.count - n_caen,
            }
        dead = {
            str(m): {
                "dead_ns": d.dead_ns,
                "paused": d.paused,
                "n_pause": d.n_pause,
                "n_resume": d.n_resume,
                "n_unmatched_resume": d.n_unmatched_resume,
                "n_repeated_pause": d.n_repeated_pause,
            }
            for m, d in sorted(self.dead.items())
        }
        refs = {
            kind.value: {"count": r.count, "last_ns": r.last_time, "last_period_ns": r.last_period}
            for kind, r in self.refs.items()
        }
        spans = {
            f"{domain.value}/{module}": {"first_ns": s.first, "last_ns": s.last, "duration_ns": s.duration}
            for (domain, module), s in sorted(self.spans.items(), key=lambda kv: (kv[0][0].value, kv[0][1]))
        }
        return {"pulses": pulses, "dead_time": dead, "references": refs, "hit_spans": spans}
