from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

from issbuild.config.wiring import ArrayWiring, CaenWiring, DetectorFamily
from issbuild.physics.hits import AsicHit, CaenHit, Hit, InfoHit, InfoKind


@dataclass
class SynthCfg:
    """Knobs for the toy hit stream. Times in ns, amplitudes in raw ADC units."""
    n_events: int = 1000
    mean_gap_ns: float = 2.0e5
    spread_ns: float = 500.0
    p_nside: float = 0.9
    p_recoil: float = 0.5
    p_gamma: float = 0.3
    pulser_period_ns: int = 1_000_000
    fpga_period_ns: int = 1_000_000
    ebis_period_ns: int = 50_000_000
    t1_period_ns: int = 1_200_000_000
    pulse_loss: float = 0.0
    noise_rate: float = 0.1  # below-threshold ASIC hits per event


def _partition_strips(array: ArrayWiring) -> Tuple[List[Tuple[int, int, int]], Dict[int, List[Tuple[int, int]]]]:
    """(asic, channel, row) for p-side; row -> [(asic, channel)] for n-side."""
    pside: List[Tuple[int, int, int]] = []
    nside: Dict[int, List[Tuple[int, int]]] = {}
    for (asic, ch), s in sorted(array.strips.items()):
        if s.side == 0:
            pside.append((asic, ch, s.row))
        else:
            nside.setdefault(s.row, []).append((asic, ch))
    return pside, nside


def _caen_channels(caen: CaenWiring, family: DetectorFamily) -> List[Tuple[Tuple[int, int], int, int]]:
    return [(key, ch.group, ch.sub) for key, ch in sorted(caen.channels.items()) if ch.family is family]


def synth_hit_stream(
    array: ArrayWiring,
    caen: CaenWiring,
    cfg: SynthCfg | None = None,
    rng: np.random.Generator | None = None,
) -> List[Hit]:
    """
    Generate a time-ordered hit stream for the given wiring.

    Each physics event is a p-side strip hit (plus usually an n-side hit on
    the same wafer row), optionally a recoil dE/E pair in one sector and a
    scintillator hit. Periodic CAEN pulser, FPGA sync, EBIS and T1 records
    are interleaved; `pulse_loss` drops that fraction of pulser pulses.
    """
    cfg = cfg or SynthCfg()
    rng = rng or np.random.default_rng()
    pside, nside = _partition_strips(array)
    if not pside:
        raise ValueError("array wiring has no p-side strips to generate hits on")

    recoil = _caen_channels(caen, DetectorFamily.RECOIL)
    loss_lo, loss_hi = caen.recoil_loss_layers
    rest_lo, rest_hi = caen.recoil_rest_layers
    sectors: Dict[int, Dict[str, List[Tuple[int, int]]]] = {}
    for key, sector, layer in recoil:
        entry = sectors.setdefault(sector, {"loss": [], "rest": []})
        if loss_lo <= layer <= loss_hi:
            entry["loss"].append(key)
        elif rest_lo <= layer <= rest_hi:
            entry["rest"].append(key)
    full_sectors = sorted(s for s, e in sectors.items() if e["loss"] and e["rest"])
    scint = _caen_channels(caen, DetectorFamily.SCINT)

    hits: List[Hit] = []
    t0 = 1000.0
    for _ in range(cfg.n_events):
        t0 += rng.exponential(cfg.mean_gap_ns)
        base = int(t0)

        def jitter() -> int:
            return base + int(rng.uniform(0.0, cfg.spread_ns))

        mod = int(rng.integers(array.n_modules))
        asic, ch, row = pside[int(rng.integers(len(pside)))]
        e_p = float(rng.uniform(500.0, 5000.0))
        hits.append(AsicHit(mod, asic, ch, e_p, base))

        if row in nside and rng.random() < cfg.p_nside:
            n_asic, n_ch = nside[row][int(rng.integers(len(nside[row])))]
            hits.append(AsicHit(mod, n_asic, n_ch, e_p * float(rng.normal(1.0, 0.02)), jitter()))

        if full_sectors and rng.random() < cfg.p_recoil:
            sec = sectors[full_sectors[int(rng.integers(len(full_sectors)))]]
            (m_de, c_de) = sec["loss"][0]
            (m_e, c_e) = sec["rest"][0]
            hits.append(CaenHit(m_de, c_de, float(rng.uniform(200.0, 2000.0)), jitter()))
            hits.append(CaenHit(m_e, c_e, float(rng.uniform(1000.0, 8000.0)), jitter()))

        if scint and rng.random() < cfg.p_gamma:
            (m_g, c_g), _, _ = scint[int(rng.integers(len(scint)))]
            hits.append(CaenHit(m_g, c_g, float(rng.uniform(100.0, 3000.0)), jitter()))

        if rng.random() < cfg.noise_rate:
            asic, ch, _ = pside[int(rng.integers(len(pside)))]
            hits.append(AsicHit(mod, asic, ch, 0.0, jitter()))

    t_end = int(t0) + 10 * int(cfg.spread_ns)

    if caen.pulser is not None:
        pm, pc = caen.pulser
        for t in range(0, t_end, cfg.pulser_period_ns):
            if cfg.pulse_loss > 0.0 and rng.random() < cfg.pulse_loss:
                continue
            hits.append(CaenHit(pm, pc, 1000.0, t))
    for m in range(array.n_modules):
        for t in range(0, t_end, cfg.fpga_period_ns):
            hits.append(InfoHit(InfoKind.FPGA_PULSE, t + 1, m))
    for t in range(0, t_end, cfg.ebis_period_ns):
        hits.append(InfoHit(InfoKind.EBIS, t))
    for t in range(0, t_end, cfg.t1_period_ns):
        hits.append(InfoHit(InfoKind.T1, t))

    # stable: hits sharing a timestamp keep generation order
    hits.sort(key=lambda h: h.timestamp)
    return hits


def synth_summary(hits: List[Hit]) -> Dict[str, int]:
    out = {"asic": 0, "caen": 0, "info": 0}
    for h in hits:
        if isinstance(h, AsicHit):
            out["asic"] += 1
        elif isinstance(h, CaenHit):
            out["caen"] += 1
        else:
            out["info"] += 1
    return out
