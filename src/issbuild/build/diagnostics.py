from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict

DROP_REASONS = ("below_threshold", "unidentified", "paused")


@dataclass
class FinderCounters:
    """Monotonic per-detector tallies kept by the finders."""
    array: int = 0          # p+n coincidences
    arrayp: int = 0         # p-side clusters
    array_p_addback: int = 0
    array_n_addback: int = 0
    recoil: int = 0
    recoil_incomplete: int = 0
    mwpc: int = 0
    elum: int = 0
    zd: int = 0
    gamma: int = 0


@dataclass
class BuildDiagnostics:
    """
    Per-file hit/window/event tallies.

    Every input hit ends up in exactly one of: absorbed, info, pulser, or
    dropped[reason]. `accounted()` checks that.
    """
    total: int = 0
    n_asic: int = 0
    n_caen: int = 0
    n_info: int = 0

    absorbed: int = 0
    info: int = 0
    pulser: int = 0
    dropped: Dict[str, int] = field(default_factory=lambda: {r: 0 for r in DROP_REASONS})
    info_by_kind: Dict[str, int] = field(default_factory=dict)

    windows_opened: int = 0
    windows_closed: int = 0
    events_emitted: int = 0
    empty_windows: int = 0
    max_window_span_ns: int = 0

    finders: FinderCounters = field(default_factory=FinderCounters)

    def drop(self, reason: str) -> None:
        if reason not in self.dropped:
            raise KeyError(f"unknown drop reason {reason!r}")
        self.dropped[reason] += 1

    def inc_info(self, kind: str) -> None:
        self.info += 1
        self.info_by_kind[kind] = self.info_by_kind.get(kind, 0) + 1

    def n_dropped(self) -> int:
        return sum(self.dropped.values())

    def accounted(self) -> bool:
        return self.absorbed + self.info + self.pulser + self.n_dropped() == self.total

    def snapshot(self) -> Dict[str, Any]:
        snap = asdict(self)
        snap["info_by_kind"] = dict(sorted(self.info_by_kind.items()))
        return snap
