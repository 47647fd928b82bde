# src/issbuild/build/finders.py
"""
Detector finders: turn one closed window's candidate lists into sub-events.

Each finder sees only the candidate lists of its own detector family and
returns a dict of PhysicsEvent fields. They keep no state between windows
apart from the monotonic counters in FinderCounters.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from itertools import product
from typing import Any, Callable, Dict, List, Sequence, Tuple

from issbuild.build.diagnostics import FinderCounters
from issbuild.build.window import ArrayCandidate, CaenCandidate, Window
from issbuild.config.wiring import DetectorFamily
from issbuild.physics.events import (
    ArrayEvent,
    ArrayPEvent,
    ElumEvent,
    GammaRayEvent,
    MwpcEvent,
    RecoilEvent,
    ZeroDegreeEvent,
)


@dataclass
class FinderContext:
    """Per-run finder settings plus the window start of the current call."""
    addback_p: bool = False
    addback_n: bool = False
    recoil_loss_layers: Tuple[int, int] = (0, 0)
    recoil_rest_layers: Tuple[int, int] = (1, 1)
    zd_loss_layer: int = 0
    zd_rest_layer: int = 1
    mwpc_axes: Tuple[int, ...] = (0, 1)
    time_min: int = 0
    counters: FinderCounters = field(default_factory=FinderCounters)


# --- Array ------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class _Cluster:
    strip: int
    energy: float
    time: int
    size: int


def _single(c: ArrayCandidate) -> _Cluster:
    return _Cluster(strip=c.strip, energy=c.energy, time=c.time, size=1)


def addback_clusters(cands: Sequence[ArrayCandidate]) -> List[_Cluster]:
    """
    Merge hits on neighbouring strips (|strip difference| == 1, transitively)
    into one cluster. The cluster keeps strip and time of its most energetic
    member (earliest on ties) and the summed energy.
    """
    n = len(cands)
    parent = list(range(n))

    def root(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(n):
        for j in range(i + 1, n):
            if abs(cands[i].strip - cands[j].strip) == 1:
                ri, rj = root(i), root(j)
                if ri != rj:
                    parent[max(ri, rj)] = min(ri, rj)

    groups: Dict[int, List[ArrayCandidate]] = {}
    for i in range(n):
        groups.setdefault(root(i), []).append(cands[i])

    out: List[_Cluster] = []
    for members in groups.values():
        lead = min(members, key=lambda c: (-c.energy, c.time, c.strip))
        out.append(_Cluster(
            strip=lead.strip,
            energy=float(sum(c.energy for c in members)),
            time=lead.time,
            size=len(members),
        ))
    out.sort(key=lambda c: (c.time, c.strip))
    return out


def _by_wafer(cands: Sequence[ArrayCandidate]) -> Dict[Tuple[int, int], List[ArrayCandidate]]:
    out: Dict[Tuple[int, int], List[ArrayCandidate]] = {}
    for c in cands:
        out.setdefault((c.module, c.row), []).append(c)
    return out


def find_array(
    ctx: FinderContext,
    pside: Sequence[ArrayCandidate],
    nside: Sequence[ArrayCandidate],
) -> Dict[str, Any]:
    """
    Pair p- and n-side strips on the same (module, row) wafer.

    Every p cluster is reported as an ArrayPEvent. Every p x n combination
    on the wafer is reported as an ArrayEvent; the ambiguity is left for the
    analysis to resolve.
    """
    c = ctx.counters
    p_by = _by_wafer(pside)
    n_by = _by_wafer(nside)

    array: List[ArrayEvent] = []
    arrayp: List[ArrayPEvent] = []
    for (mod, row) in sorted(p_by):
        p_cands = p_by[(mod, row)]
        n_cands = n_by.get((mod, row), [])
        if ctx.addback_p:
            p_cl = addback_clusters(p_cands)
        else:
            p_cl = [_single(x) for x in p_cands]
        if ctx.addback_n:
            n_cl = addback_clusters(n_cands)
        else:
            n_cl = [_single(x) for x in n_cands]
        c.array_p_addback += sum(1 for x in p_cl if x.size > 1)
        c.array_n_addback += sum(1 for x in n_cl if x.size > 1)

        for p in p_cl:
            arrayp.append(ArrayPEvent(mod, row, p.strip, p.energy, p.time, p.size))
        for p, n in product(p_cl, n_cl):
            array.append(ArrayEvent(
                module=mod, row=row, pid=p.strip, nid=n.strip,
                p_energy=p.energy, n_energy=n.energy,
                p_time=p.time, n_time=n.time,
                p_cluster=p.size, n_cluster=n.size,
            ))

    c.arrayp += len(arrayp)
    c.array += len(array)
    return {"array": tuple(array), "arrayp": tuple(arrayp)}


# --- Recoil -----------------------------------------------------------------

def _in_range(layer: int, rng: Tuple[int, int]) -> bool:
    return rng[0] <= layer <= rng[1]


def find_recoil(ctx: FinderContext, hits: Sequence[CaenCandidate]) -> Dict[str, Any]:
    """
    One telescope event per sector holding both an energy-loss and a
    rest-energy layer hit. Candidates: group=sector, sub=layer.
    """
    by_sector: Dict[int, List[CaenCandidate]] = {}
    for h in hits:
        by_sector.setdefault(h.group, []).append(h)

    out: List[RecoilEvent] = []
    for sector in sorted(by_sector):
        sec_hits = sorted(by_sector[sector], key=lambda h: (h.time, h.sub))
        loss = [h for h in sec_hits if _in_range(h.sub, ctx.recoil_loss_layers)]
        rest = [h for h in sec_hits if _in_range(h.sub, ctx.recoil_rest_layers)]
        if not loss or not rest:
            ctx.counters.recoil_incomplete += 1
            continue
        out.append(RecoilEvent(
            sector=sector,
            energies=tuple(h.energy for h in sec_hits),
            layers=tuple(h.sub for h in sec_hits),
            energy_loss=float(sum(h.energy for h in loss)),
            energy_rest=float(sum(h.energy for h in rest)),
            de_time=loss[0].time,
            e_time=rest[0].time,
        ))
    ctx.counters.recoil += len(out)
    return {"recoil": tuple(out)}


# --- MWPC -------------------------------------------------------------------

def find_mwpc(ctx: FinderContext, hits: Sequence[CaenCandidate]) -> Dict[str, Any]:
    """
    Candidates: group=axis, sub=TAC id. An axis with exactly two hits from
    TAC 0 and TAC 1 gives position = TAC0 - TAC1 (raw TAC values).
    """
    by_axis: Dict[int, List[CaenCandidate]] = {}
    for h in hits:
        by_axis.setdefault(h.group, []).append(h)

    out: List[MwpcEvent] = []
    mult = []
    for axis in ctx.mwpc_axes:
        ax = by_axis.get(axis, [])
        mult.append(len(ax))
        if len(ax) != 2:
            continue
        tacs = {h.sub: h for h in ax}
        if set(tacs) != {0, 1}:
            continue
        out.append(MwpcEvent(
            axis=axis,
            position=float(tacs[0].raw - tacs[1].raw),
            time=min(h.time for h in ax),
        ))
    ctx.counters.mwpc += len(out)
    return {"mwpc": tuple(out), "mwpc_axis_multiplicity": tuple(mult)}


# --- ELUM / zero degree -----------------------------------------------------

def find_elum(ctx: FinderContext, hits: Sequence[CaenCandidate]) -> Dict[str, Any]:
    out = [ElumEvent(sector=h.group, energy=h.energy, time=h.time)
           for h in sorted(hits, key=lambda h: (h.group, h.time))]
    ctx.counters.elum += len(out)
    return {"elum": tuple(out)}


def find_zero_degree(ctx: FinderContext, hits: Sequence[CaenCandidate]) -> Dict[str, Any]:
    """All zero-degree hits form one event; group=layer."""
    if not hits:
        return {"zd": ()}
    ordered = sorted(hits, key=lambda h: (h.time, h.group))
    ev = ZeroDegreeEvent(
        ids=tuple(h.group for h in ordered),
        energies=tuple(h.energy for h in ordered),
        energy_loss=float(sum(h.energy for h in ordered if h.group == ctx.zd_loss_layer)),
        energy_rest=float(sum(h.energy for h in ordered if h.group == ctx.zd_rest_layer)),
        time=ordered[0].time,
    )
    ctx.counters.zd += 1
    return {"zd": (ev,)}


# --- Gamma rays -------------------------------------------------------------

def find_gamma(ctx: FinderContext, hits: Sequence[CaenCandidate]) -> Dict[str, Any]:
    """One GammaRayEvent per scintillator hit; no addback, no pairing."""
    out = [GammaRayEvent(det_id=h.group, energy=h.energy, time=h.time, td=h.time - ctx.time_min)
           for h in hits]
    ctx.counters.gamma += len(out)
    return {"gamma": tuple(out)}


# --- Dispatch ---------------------------------------------------------------

class FinderKind(str, Enum):
    ARRAY = "array"
    RECOIL = "recoil"
    MWPC = "mwpc"
    ELUM = "elum"
    ZERO_DEGREE = "zero_degree"
    GAMMA_RAY = "gamma_ray"


Finder = Callable[..., Dict[str, Any]]

# run order; each finder is given only the candidate lists named here
FINDERS: Tuple[Tuple[FinderKind, Finder, Tuple[DetectorFamily, ...]], ...] = (
    (FinderKind.ARRAY, find_array, (DetectorFamily.ARRAY_P, DetectorFamily.ARRAY_N)),
    (FinderKind.RECOIL, find_recoil, (DetectorFamily.RECOIL,)),
    (FinderKind.MWPC, find_mwpc, (DetectorFamily.MWPC,)),
    (FinderKind.ELUM, find_elum, (DetectorFamily.ELUM,)),
    (FinderKind.ZERO_DEGREE, find_zero_degree, (DetectorFamily.ZD,)),
    (FinderKind.GAMMA_RAY, find_gamma, (DetectorFamily.SCINT,)),
)


def run_finders(ctx: FinderContext, window: Window) -> Dict[str, Any]:
    """Run all finders on a closed window and merge their outputs."""
    ctx.time_min = window.time_min
    fields: Dict[str, Any] = {}
    for _kind, finder, families in FINDERS:
        fields.update(finder(ctx, *(window.candidates(f) for f in families)))
    return fields
