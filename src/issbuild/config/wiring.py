# src/issbuild/config/wiring.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple

from issbuild.build.errors import UnidentifiedHit, WiringError
from issbuild.config.schemas import ArrayCfg, CaenCfg


class DetectorFamily(str, Enum):
    """Candidate-list families, in finder order."""
    ARRAY_P = "array_p"
    ARRAY_N = "array_n"
    RECOIL = "recoil"
    MWPC = "mwpc"
    ELUM = "elum"
    ZD = "zd"
    SCINT = "scint"


@dataclass(frozen=True, slots=True)
class StripId:
    """Where an array ASIC channel lands: side 0=p, 1=n."""
    side: int
    row: int
    strip: int


@dataclass(frozen=True, slots=True)
class CaenChannel:
    """
    Resolved CAEN channel. `group` is sector (recoil/elum), axis (mwpc),
    layer (zd) or detector id (scint); `sub` is layer (recoil) or TAC id (mwpc).
    """
    family: DetectorFamily
    group: int
    sub: int = 0


@dataclass
class ArrayWiring:
    """
    Static (module, asic, channel) -> strip lookup built once per run.

    Out-of-range or unused channels raise UnidentifiedHit rather than
    indexing blindly.
    """
    n_modules: int
    n_asics: int
    n_channels: int
    strips: Dict[Tuple[int, int], StripId] = field(default_factory=dict)  # (asic, channel) -> strip
    threshold: float = 0.0

    @classmethod
    def from_cfg(cls, cfg: ArrayCfg) -> "ArrayWiring":
        if cfg.n_modules <= 0 or cfg.n_asics <= 0 or cfg.n_channels <= 0:
            raise WiringError("array wiring needs positive n_modules/n_asics/n_channels")
        strips: Dict[Tuple[int, int], StripId] = {}
        for asic, (side, row0) in enumerate(zip(cfg.asic_side, cfg.asic_row)):
            if side == 0:
                for ch in range(cfg.n_channels):
                    strips[(asic, ch)] = StripId(side=0, row=row0, strip=ch)
                continue
            for block in cfg.nside_blocks:
                if block.first_channel > block.last_channel or block.last_channel >= cfg.n_channels:
                    raise WiringError(
                        f"n-side block [{block.first_channel}, {block.last_channel}] "
                        f"does not fit in {cfg.n_channels} channels"
                    )
                for ch in range(block.first_channel, block.last_channel + 1):
                    if (asic, ch) in strips:
                        raise WiringError(f"n-side channel {ch} of asic {asic} mapped twice")
                    nid = block.last_channel - ch if block.reverse else ch - block.first_channel
                    strips[(asic, ch)] = StripId(side=1, row=row0 + block.row_offset, strip=nid)
        bad_rows = {s.row for s in strips.values() if not (0 <= s.row < cfg.n_rows)}
        if bad_rows:
            raise WiringError(f"array wiring produces rows {sorted(bad_rows)} outside 0..{cfg.n_rows - 1}")
        return cls(cfg.n_modules, cfg.n_asics, cfg.n_channels, strips, cfg.threshold)

    def has_module(self, module: int) -> bool:
        return 0 <= module < self.n_modules

    def lookup(self, module: int, asic: int, channel: int) -> StripId:
        if not self.has_module(module):
            raise UnidentifiedHit(f"array module {module} not in 0..{self.n_modules - 1}")
        try:
            return self.strips[(asic, channel)]
        except KeyError:
            raise UnidentifiedHit(f"array asic {asic} channel {channel} is not wired") from None


@dataclass
class CaenWiring:
    """(module, channel) -> detector family and sector/layer/axis."""
    channels: Dict[Tuple[int, int], CaenChannel] = field(default_factory=dict)
    thresholds: Dict[DetectorFamily, float] = field(default_factory=dict)
    pulser: Tuple[int, int] | None = None
    recoil_loss_layers: Tuple[int, int] = (0, 0)
    recoil_rest_layers: Tuple[int, int] = (1, 1)
    zd_loss_layer: int = 0
    zd_rest_layer: int = 1

    @classmethod
    def from_cfg(cls, cfg: CaenCfg) -> "CaenWiring":
        channels: Dict[Tuple[int, int], CaenChannel] = {}

        def _add(module: int, channel: int, entry: CaenChannel) -> None:
            key = (module, channel)
            if key in channels:
                raise WiringError(
                    f"CAEN module {module} channel {channel} assigned to both "
                    f"{channels[key].family.value} and {entry.family.value}"
                )
            channels[key] = entry

        for c in cfg.recoil:
            _add(c.module, c.channel, CaenChannel(DetectorFamily.RECOIL, c.sector, c.layer))
        for c in cfg.mwpc:
            _add(c.module, c.channel, CaenChannel(DetectorFamily.MWPC, c.axis, c.tac))
        for c in cfg.elum:
            _add(c.module, c.channel, CaenChannel(DetectorFamily.ELUM, c.sector))
        for c in cfg.zd:
            _add(c.module, c.channel, CaenChannel(DetectorFamily.ZD, c.layer))
        for c in cfg.scint:
            _add(c.module, c.channel, CaenChannel(DetectorFamily.SCINT, c.det_id))

        pulser = None
        if cfg.pulser_module is not None and cfg.pulser_channel is not None:
            pulser = (cfg.pulser_module, cfg.pulser_channel)
            if pulser in channels:
                raise WiringError(f"CAEN pulser channel {pulser} is also a detector channel")

        thresholds = {DetectorFamily(k): float(v) for k, v in cfg.thresholds.items()}
        return cls(
            channels=channels,
            thresholds=thresholds,
            pulser=pulser,
            recoil_loss_layers=tuple(cfg.recoil_loss_layers),
            recoil_rest_layers=tuple(cfg.recoil_rest_layers),
            zd_loss_layer=cfg.zd_loss_layer,
            zd_rest_layer=cfg.zd_rest_layer,
        )

    def is_pulser(self, module: int, channel: int) -> bool:
        return self.pulser == (module, channel)

    def lookup(self, module: int, channel: int) -> CaenChannel:
        try:
            return self.channels[(module, channel)]
        except KeyError:
            raise UnidentifiedHit(f"CAEN module {module} channel {channel} is not mapped") from None

    def threshold_for(self, family: DetectorFamily) -> float:
        return self.thresholds.get(family, 0.0)
