from __future__ import annotations
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Dict, List, Literal, Optional, Tuple


class RunCfg(BaseModel):
    """
    Global run controls.
    """

    # Diagnostics
    diagnostics_level: int = 1  # 0=off, 1=minimal, 2=verbose
    progress: bool = False

    # Limits
    max_hits: Optional[int] = None

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v


class IOCfg(BaseModel):
    """
    I/O paths.

    TOML:

    [io]
    input_path       = "run42_sorted.h5"
    output_path      = "run42_events.h5"
    calibration_path = "cal/run42.csv"   # optional; identity calibration if absent
    """

    input_path: str
    input_format: Literal["hdf5_hits"] = "hdf5_hits"
    output_path: str
    calibration_path: Optional[str] = None

    # Adapter-specific sub-config, e.g. [io.adapter]
    adapter: Dict[str, str] = Field(default_factory=dict)


class BuildCfg(BaseModel):
    """
    Event-window controls.

    window_ns is an empirical choice (3 us works for ISS-like setups); it is
    measured from the first hit of the window.
    """

    window_ns: int = 3000
    addback_p: bool = False
    addback_n: bool = False

    @field_validator("window_ns")
    def _positive_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("window_ns must be positive")
        return v


class NSideBlock(BaseModel):
    """Contiguous n-side ASIC channels feeding one wafer row."""
    first_channel: int
    last_channel: int
    row_offset: int = 0
    reverse: bool = False


def _default_nside_blocks() -> List[NSideBlock]:
    return [
        NSideBlock(first_channel=11, last_channel=21, row_offset=0, reverse=True),
        NSideBlock(first_channel=28, last_channel=38, row_offset=1, reverse=False),
    ]


class ArrayCfg(BaseModel):
    """
    Silicon array wiring.

    asic_side[i] is 0 for p-side and 1 for n-side; asic_row[i] is the first
    wafer row read by ASIC i. p-side channels map 1:1 onto strips, n-side
    channels only inside the configured blocks.

    [array]
    n_modules  = 3
    asic_side  = [0, 1, 0, 0, 1, 0]
    asic_row   = [0, 0, 1, 2, 2, 3]
    """

    n_modules: int = 3
    n_asics: int = 6
    n_channels: int = 128
    n_rows: int = 4
    asic_side: List[int] = Field(default_factory=lambda: [0, 1, 0, 0, 1, 0])
    asic_row: List[int] = Field(default_factory=lambda: [0, 0, 1, 2, 2, 3])
    nside_blocks: List[NSideBlock] = Field(default_factory=_default_nside_blocks)
    threshold: float = 0.0  # energy threshold for channels the calibration does not cut

    @model_validator(mode="after")
    def _check_tables(self) -> "ArrayCfg":
        if len(self.asic_side) != self.n_asics or len(self.asic_row) != self.n_asics:
            raise ValueError(
                f"asic_side/asic_row must have n_asics={self.n_asics} entries "
                f"(got {len(self.asic_side)}/{len(self.asic_row)})"
            )
        if any(s not in (0, 1) for s in self.asic_side):
            raise ValueError("asic_side entries must be 0 (p-side) or 1 (n-side)")
        return self


class RecoilChannel(BaseModel):
    module: int
    channel: int
    sector: int
    layer: int


class MwpcChannel(BaseModel):
    module: int
    channel: int
    axis: int
    tac: int


class ElumChannel(BaseModel):
    module: int
    channel: int
    sector: int


class ZeroDegreeChannel(BaseModel):
    module: int
    channel: int
    layer: int


class ScintChannel(BaseModel):
    module: int
    channel: int
    det_id: int


def _default_recoil() -> List[RecoilChannel]:
    return [RecoilChannel(module=0, channel=ch, sector=ch // 2, layer=ch % 2) for ch in range(8)]


def _default_mwpc() -> List[MwpcChannel]:
    return [MwpcChannel(module=1, channel=ch, axis=ch // 2, tac=ch % 2) for ch in range(4)]


def _default_elum() -> List[ElumChannel]:
    return [ElumChannel(module=1, channel=4 + s, sector=s) for s in range(4)]


def _default_zd() -> List[ZeroDegreeChannel]:
    return [ZeroDegreeChannel(module=1, channel=8, layer=0), ZeroDegreeChannel(module=1, channel=9, layer=1)]


def _default_scint() -> List[ScintChannel]:
    return [ScintChannel(module=2, channel=ch, det_id=ch) for ch in range(8)]


class CaenCfg(BaseModel):
    """
    CAEN channel map and detector-level selections.

    [[caen.recoil]]
    module = 0
    channel = 0
    sector = 0
    layer = 0
    ...
    [caen.thresholds]
    recoil = 50.0
    """

    recoil: List[RecoilChannel] = Field(default_factory=_default_recoil)
    mwpc: List[MwpcChannel] = Field(default_factory=_default_mwpc)
    elum: List[ElumChannel] = Field(default_factory=_default_elum)
    zd: List[ZeroDegreeChannel] = Field(default_factory=_default_zd)
    scint: List[ScintChannel] = Field(default_factory=_default_scint)

    pulser_module: Optional[int] = 1
    pulser_channel: Optional[int] = 15

    # energy thresholds per family, for channels the calibration does not cut
    thresholds: Dict[str, float] = Field(default_factory=dict)

    # recoil telescope layer ranges [start, stop] (inclusive)
    recoil_loss_layers: Tuple[int, int] = (0, 0)
    recoil_rest_layers: Tuple[int, int] = (1, 1)

    zd_loss_layer: int = 0
    zd_rest_layer: int = 1

    @field_validator("thresholds")
    def _known_families(cls, v: Dict[str, float]) -> Dict[str, float]:
        known = {"recoil", "mwpc", "elum", "zd", "scint"}
        unknown = set(v) - known
        if unknown:
            raise ValueError(f"unknown CAEN threshold families: {sorted(unknown)}")
        return v


class ClocksCfg(BaseModel):
    """
    Pulser bookkeeping.

    An inter-pulse interval whose ratio to the running period estimate leaves
    [1 - pulse_tolerance, 1 + pulse_tolerance] is flagged.
    """

    pulse_tolerance: float = 0.1
    period_alpha: float = 0.1

    @field_validator("pulse_tolerance", "period_alpha")
    def _unit_interval(cls, v: float) -> float:
        if not (0.0 < v < 1.0):
            raise ValueError("must lie in (0, 1)")
        return v


class GatesCfg(BaseModel):
    """
    Downstream analysis gates (times in ns).
    """

    ebis_on_ns: float = 1.2e6    # slow extraction
    ebis_off_ns: float = 2.52e7  # off window ~20x on window
    t1_min_ns: float = 0.0
    t1_max_ns: float = 1.2e9
    prompt_window_ns: Tuple[float, float] = (-300.0, 300.0)
    random_window_ns: Tuple[float, float] = (600.0, 1200.0)


class Config(BaseModel):
    """
    Top-level TOML configuration.
    """

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg
    build: BuildCfg = Field(default_factory=BuildCfg)
    array: ArrayCfg = Field(default_factory=ArrayCfg)
    caen: CaenCfg = Field(default_factory=CaenCfg)
    clocks: ClocksCfg = Field(default_factory=ClocksCfg)
    gates: GatesCfg = Field(default_factory=GatesCfg)
