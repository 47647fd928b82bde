from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple

from issbuild.config.schemas import GatesCfg
from issbuild.physics.events import PhysicsEvent, SubEvent


@dataclass(frozen=True)
class BeamGates:
    """
    Timing gates used by downstream analysis (all times in ns).

    on_beam/off_beam compare a sub-event time with the last EBIS pulse;
    t1_cut with the last T1 (proton) pulse. Coincidence gates take the
    difference second.time - first.time. Gates that need a reference time
    the event never saw return False.
    """
    ebis_on_ns: float = 1.2e6
    ebis_off_ns: float = 2.52e7
    t1_min_ns: float = 0.0
    t1_max_ns: float = 1.2e9
    prompt_window_ns: Tuple[float, float] = (-300.0, 300.0)
    random_window_ns: Tuple[float, float] = (600.0, 1200.0)

    @classmethod
    def from_cfg(cls, cfg: GatesCfg) -> "BeamGates":
        return cls(
            ebis_on_ns=cfg.ebis_on_ns,
            ebis_off_ns=cfg.ebis_off_ns,
            t1_min_ns=cfg.t1_min_ns,
            t1_max_ns=cfg.t1_max_ns,
            prompt_window_ns=tuple(cfg.prompt_window_ns),
            random_window_ns=tuple(cfg.random_window_ns),
        )

    # --- beam structure -------------------------------------------------

    @staticmethod
    def _since(sub: SubEvent, ref: Optional[int]) -> Optional[float]:
        if ref is None:
            return None
        return float(sub.time) - float(ref)

    def on_beam(self, sub: SubEvent, event: PhysicsEvent) -> bool:
        dt = self._since(sub, event.ebis)
        return dt is not None and 0.0 <= dt < self.ebis_on_ns

    def off_beam(self, sub: SubEvent, event: PhysicsEvent) -> bool:
        dt = self._since(sub, event.ebis)
        return dt is not None and self.ebis_on_ns <= dt < self.ebis_off_ns

    def t1_cut(self, sub: SubEvent, event: PhysicsEvent) -> bool:
        dt = self._since(sub, event.t1)
        return dt is not None and self.t1_min_ns <= dt <= self.t1_max_ns

    # --- coincidences ---------------------------------------------------

    def prompt_coincidence(self, first: SubEvent, second: SubEvent) -> bool:
        lo, hi = self.prompt_window_ns
        return lo <= float(second.time) - float(first.time) <= hi

    def random_coincidence(self, first: SubEvent, second: SubEvent) -> bool:
        lo, hi = self.random_window_ns
        return lo <= float(second.time) - float(first.time) <= hi

    # --- background-subtraction weights ---------------------------------

    def ebis_time_ratio(self) -> float:
        """On-beam window length over off-beam window length."""
        return self.ebis_on_ns / (self.ebis_off_ns - self.ebis_on_ns)

    def coincidence_time_ratio(self) -> float:
        """Prompt window length over random window length."""
        p_lo, p_hi = self.prompt_window_ns
        r_lo, r_hi = self.random_window_ns
        return (p_hi - p_lo) / (r_hi - r_lo)
