# src/issbuild/physics/events.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple, Union


@dataclass(frozen=True, slots=True)
class ArrayPEvent:
    """
    p-side only array hit (or addback cluster).

    pid is the strip number along the beam axis; cluster is the number of
    strips summed by addback (1 without addback).
    """
    module: int
    row: int
    pid: int
    energy: float
    time: int
    cluster: int = 1


@dataclass(frozen=True, slots=True)
class ArrayEvent:
    """
    p-side/n-side coincidence on one DSSSD wafer.

    td = n_time - p_time [ns]. Combinatorial ambiguity is kept: a window with
    two p and two n clusters on one wafer yields four ArrayEvents.
    """
    module: int
    row: int
    pid: int
    nid: int
    p_energy: float
    n_energy: float
    p_time: int
    n_time: int
    p_cluster: int = 1
    n_cluster: int = 1

    @property
    def td(self) -> int:
        return self.n_time - self.p_time

    @property
    def energy(self) -> float:
        return self.p_energy

    @property
    def time(self) -> int:
        return self.p_time


@dataclass(frozen=True, slots=True)
class RecoilEvent:
    """
    dE-E telescope event in one recoil sector.

    energies/layers are parallel and time-ordered. energy_loss and
    energy_rest are the sums over the configured layer ranges.
    """
    sector: int
    energies: Tuple[float, ...]
    layers: Tuple[int, ...]
    energy_loss: float
    energy_rest: float
    de_time: int
    e_time: int

    @property
    def td(self) -> int:
        return self.e_time - self.de_time

    @property
    def time(self) -> int:
        return self.de_time


@dataclass(frozen=True, slots=True)
class MwpcEvent:
    """Position along one MWPC axis from the difference of its two TAC signals."""
    axis: int
    position: float
    time: int


@dataclass(frozen=True, slots=True)
class ElumEvent:
    sector: int
    energy: float
    time: int


@dataclass(frozen=True, slots=True)
class ZeroDegreeEvent:
    ids: Tuple[int, ...]
    energies: Tuple[float, ...]
    energy_loss: float
    energy_rest: float
    time: int


@dataclass(frozen=True, slots=True)
class GammaRayEvent:
    """Scintillator hit; td is relative to the window start."""
    det_id: int
    energy: float
    time: int
    td: int


SubEvent = Union[ArrayPEvent, ArrayEvent, RecoilEvent, MwpcEvent, ElumEvent, ZeroDegreeEvent, GammaRayEvent]


@dataclass(frozen=True, slots=True)
class TimingSnapshot:
    """Most recent accelerator reference times (None if never seen)."""
    ebis: Optional[int] = None
    t1: Optional[int] = None
    supercycle: Optional[int] = None
    laser: Optional[int] = None


@dataclass(frozen=True, slots=True)
class PhysicsEvent:
    """
    One closed build window after all detector finders have run.

    Immutable once assembled; the sink owns it afterwards.
    """
    time_min: int
    time_max: int
    array: Tuple[ArrayEvent, ...] = ()
    arrayp: Tuple[ArrayPEvent, ...] = ()
    recoil: Tuple[RecoilEvent, ...] = ()
    mwpc: Tuple[MwpcEvent, ...] = ()
    elum: Tuple[ElumEvent, ...] = ()
    zd: Tuple[ZeroDegreeEvent, ...] = ()
    gamma: Tuple[GammaRayEvent, ...] = ()
    mwpc_axis_multiplicity: Tuple[int, ...] = ()
    timing: TimingSnapshot = TimingSnapshot()

    @property
    def ebis(self) -> Optional[int]:
        return self.timing.ebis

    @property
    def t1(self) -> Optional[int]:
        return self.timing.t1

    @property
    def supercycle(self) -> Optional[int]:
        return self.timing.supercycle

    @property
    def laser(self) -> Optional[int]:
        return self.timing.laser

    def sub_events(self) -> Iterator[SubEvent]:
        for group in (self.array, self.arrayp, self.recoil, self.mwpc, self.elum, self.zd, self.gamma):
            yield from group

    def is_empty(self) -> bool:
        return not any((self.array, self.arrayp, self.recoil, self.mwpc, self.elum, self.zd, self.gamma))

    def validate(self) -> None:
        """
        Raise ValueError if any sub-event time lies outside [time_min, time_max].
        """
        if self.time_max < self.time_min:
            raise ValueError(f"PhysicsEvent window inverted: [{self.time_min}, {self.time_max}]")
        for sub in self.sub_events():
            times = [sub.time]
            if isinstance(sub, ArrayEvent):
                times.append(sub.n_time)
            elif isinstance(sub, RecoilEvent):
                times.append(sub.e_time)
            for t in times:
                if not (self.time_min <= t <= self.time_max):
                    raise ValueError(
                        f"PhysicsEvent containment violation: {type(sub).__name__} at t={t} "
                        f"outside [{self.time_min}, {self.time_max}]"
                    )
