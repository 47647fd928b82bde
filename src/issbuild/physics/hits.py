from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class InfoKind(str, Enum):
    """
    Bookkeeping/timing record types carried by INFO packets.

    EBIS/T1/SUPERCYCLE/LASER are accelerator references; the remaining kinds
    drive clock reconciliation and dead-time tracking.
    """
    EBIS = "ebis"
    T1 = "t1"
    SUPERCYCLE = "supercycle"
    LASER = "laser"
    FPGA_PULSE = "fpga_pulse"
    ASIC_PULSE = "asic_pulse"
    ASIC_PAUSE = "asic_pause"
    ASIC_RESUME = "asic_resume"
    CAEN_PULSER = "caen_pulser"


# kinds that refer to a specific array module
MODULE_KINDS = frozenset({
    InfoKind.FPGA_PULSE,
    InfoKind.ASIC_PULSE,
    InfoKind.ASIC_PAUSE,
    InfoKind.ASIC_RESUME,
})


@dataclass(frozen=True, slots=True)
class AsicHit:
    """
    Raw hit from an array ASIC.

    timestamp: absolute time [ns]
    raw: ADC value before calibration
    """
    module: int
    asic: int
    channel: int
    raw: float
    timestamp: int


@dataclass(frozen=True, slots=True)
class CaenHit:
    """
    Raw hit from a CAEN digitiser channel (recoil, MWPC, ELUM, zero-degree
    or scintillator, depending on the configured channel map).
    """
    module: int
    channel: int
    raw: float
    timestamp: int


@dataclass(frozen=True, slots=True)
class InfoHit:
    """Timing/bookkeeping record. `module` is only meaningful for MODULE_KINDS."""
    kind: InfoKind
    timestamp: int
    module: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind in MODULE_KINDS and self.module is None:
            raise ValueError(f"InfoHit of kind {self.kind.value!r} requires a module number")


Hit = Union[AsicHit, CaenHit, InfoHit]


def is_data(hit: Hit) -> bool:
    """True for amplitude-carrying hits (ASIC/CAEN) that may open a window."""
    return not isinstance(hit, InfoHit)
