from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import pandas as pd

from issbuild.build.errors import UnidentifiedHit

# ASIC hits are keyed by (module, asic), CAEN hits by module
CalKey = Union[Tuple[int, int], int]


@dataclass(frozen=True, slots=True)
class Calibrated:
    """
    above_threshold is None when the calibration has no threshold for the
    channel; the event builder then cuts `energy` at the configured one.
    """
    energy: float
    above_threshold: Optional[bool]
    is_pulser: bool = False


# --- Interfaces -------------------------------------------------------------

class Calibration:
    """
    Base protocol: turn a raw amplitude into an energy plus threshold/pulser flags.
    Thresholds are compared with the calibrated energy.

    Implementations may raise UnidentifiedHit for channels they cannot place;
    the event builder counts and drops such hits.
    """
    name: str

    def calibrate(self, key: CalKey, channel: int, raw: float) -> Calibrated:
        raise NotImplementedError


# --- Implementations --------------------------------------------------------

class IdentityCalibration(Calibration):
    """Raw amplitude passes through; thresholds are raw-value cuts."""
    name = "identity"

    def __init__(
        self,
        asic_threshold: float = 0.0,
        caen_thresholds: Optional[Dict[Tuple[int, int], float]] = None,
    ):
        self.asic_threshold = float(asic_threshold)
        self.caen_thresholds = dict(caen_thresholds or {})

    def calibrate(self, key, channel, raw):
        if isinstance(key, tuple):
            thr = self.asic_threshold
        else:
            thr = self.caen_thresholds.get((key, channel), 0.0)
        return Calibrated(energy=float(raw), above_threshold=raw > thr)


@dataclass(frozen=True, slots=True)
class _Coeffs:
    offset: float = 0.0
    gain: float = 1.0
    quad: float = 0.0
    threshold: Optional[float] = None  # energy units; None -> configured threshold
    pulser: bool = False

    def energy(self, raw: float) -> float:
        return self.offset + self.gain * raw + self.quad * raw * raw


class LinearCalibration(Calibration):
    """
    E = offset + gain*raw + quad*raw^2, threshold applied to E.

    Channels missing from the tables fall back to raw amplitude (degraded,
    not dropped) unless strict=True, in which case they are unidentified.
    Fallback channels and rows without a threshold are cut at the
    configured [array]/[caen] thresholds by the event builder.
    """
    name = "linear"

    def __init__(
        self,
        asic: Optional[Dict[Tuple[int, int, int], _Coeffs]] = None,
        caen: Optional[Dict[Tuple[int, int], _Coeffs]] = None,
        strict: bool = False,
    ):
        self.asic = dict(asic or {})
        self.caen = dict(caen or {})
        self.strict = strict
        self.n_fallback = 0

    def _coeffs(self, key: CalKey, channel: int) -> Optional[_Coeffs]:
        if isinstance(key, tuple):
            return self.asic.get((key[0], key[1], channel))
        return self.caen.get((key, channel))

    def calibrate(self, key, channel, raw):
        c = self._coeffs(key, channel)
        if c is None:
            if self.strict:
                raise UnidentifiedHit(f"no calibration for {key!r} channel {channel}")
            self.n_fallback += 1
            return Calibrated(energy=float(raw), above_threshold=None)
        energy = c.energy(raw)
        above = None if c.threshold is None else energy > c.threshold
        return Calibrated(energy=energy, above_threshold=above, is_pulser=c.pulser)

    @classmethod
    def from_frame(cls, df: pd.DataFrame, strict: bool = False) -> "LinearCalibration":
        """
        Build from a table with columns
          kind ("asic"|"caen"), module, [asic], channel, gain, offset, [quad], [threshold], [pulser]
        """
        missing = {"kind", "module", "channel", "gain", "offset"} - set(df.columns)
        if missing:
            raise KeyError(f"calibration table lacks columns {sorted(missing)}")
        df = df.copy()
        for col, default in (("quad", 0.0), ("threshold", float("nan")), ("pulser", False), ("asic", -1)):
            if col not in df.columns:
                df[col] = default
        df["asic"] = df["asic"].fillna(-1)
        df["quad"] = df["quad"].fillna(0.0)
        df["pulser"] = df["pulser"].fillna(False).astype(bool)

        asic: Dict[Tuple[int, int, int], _Coeffs] = {}
        caen: Dict[Tuple[int, int], _Coeffs] = {}
        for r in df.itertuples(index=False):
            c = _Coeffs(
                offset=float(r.offset),
                gain=float(r.gain),
                quad=float(r.quad),
                threshold=None if pd.isna(r.threshold) else float(r.threshold),
                pulser=bool(r.pulser),
            )
            kind = str(r.kind).strip().lower()
            if kind == "asic":
                if int(r.asic) < 0:
                    raise ValueError(f"asic calibration row for module {r.module} channel {r.channel} has no asic")
                asic[(int(r.module), int(r.asic), int(r.channel))] = c
            elif kind == "caen":
                caen[(int(r.module), int(r.channel))] = c
            else:
                raise ValueError(f"Unknown calibration kind {r.kind!r}")
        return cls(asic=asic, caen=caen, strict=strict)

    def to_frame(self) -> pd.DataFrame:
        def _thr(c: _Coeffs) -> float:
            return float("nan") if c.threshold is None else c.threshold

        rows = []
        for (m, a, ch), c in sorted(self.asic.items()):
            rows.append(("asic", m, a, ch, c.gain, c.offset, c.quad, _thr(c), c.pulser))
        for (m, ch), c in sorted(self.caen.items()):
            rows.append(("caen", m, -1, ch, c.gain, c.offset, c.quad, _thr(c), c.pulser))
        return pd.DataFrame(
            rows,
            columns=["kind", "module", "asic", "channel", "gain", "offset", "quad", "threshold", "pulser"],
        )


def load_calibration_csv(path: str | Path, strict: bool = False) -> LinearCalibration:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Calibration file not found: {p}")
    df = pd.read_csv(p, comment="#", skipinitialspace=True)
    df.columns = [c.strip().lower() for c in df.columns]
    return LinearCalibration.from_frame(df, strict=strict)


# --- Factory ----------------------------------------------------------------

def make_calibration(path: str | Path | None, strict: bool = False) -> Optional[Calibration]:
    """
    Return a Calibration for the given file, or None (identity) when no file is configured.
    """
    if path is None:
        return None
    suffix = Path(path).suffix.lower()
    if suffix in {".csv", ".txt"}:
        return load_calibration_csv(path, strict=strict)
    raise ValueError(f"Unrecognized calibration file: {Path(path).name} (expected .csv)")
