"""
issbuild.io.sources

Hit sources: objects with next()/peek() that hand the event builder one
time-ordered hit at a time.

Entry points
------------
- class ListHitSource: wraps an in-memory sequence of hits.
- class H5HitSource: streams a flat HDF5 hit table in chunks.
- function make_source(io_cfg): factory from the [io] TOML section.
- function write_hits_h5(path, hits): write the table H5HitSource reads.

HDF5 hit table (group "/hits" by default, one row per hit)
---------------------------------------------------------
kind       uint8   0=ASIC, 1=CAEN, 2=INFO
timestamp  int64   ns
module     int32   -1 where not applicable
asic       int32   -1 for CAEN/INFO
channel    int32   -1 for INFO
raw        float64 ADC value (0 for INFO)
info_kind  int16   index into the group attribute "info_kinds", -1 for data hits

Config (example)
----------------
[io]
input_path = "run42_hits.h5"
input_format = "hdf5_hits"

[io.adapter]
group = "hits"
chunk_size = "65536"
"""
from __future__ import annotations
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Sequence

import h5py
import numpy as np

from issbuild.config.schemas import IOCfg
from issbuild.io.canonicalize import canonicalize_columns
from issbuild.physics.hits import AsicHit, CaenHit, Hit, InfoHit, InfoKind

KIND_ASIC = 0
KIND_CAEN = 1
KIND_INFO = 2

INFO_KINDS: List[InfoKind] = list(InfoKind)


# ---------------------------------------------------------------------------
# Base source API
# ---------------------------------------------------------------------------

class BaseHitSource:
    """
    Abstract hit source.

    next() returns the next hit (None when exhausted); peek() returns the
    hit next() would return, without consuming it.
    """

    def next(self) -> Optional[Hit]:
        raise NotImplementedError

    def peek(self) -> Optional[Hit]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ListHitSource(BaseHitSource):
    def __init__(self, hits: Iterable[Hit]):
        self._hits: Sequence[Hit] = list(hits)
        self._pos = 0

    def next(self) -> Optional[Hit]:
        if self._pos >= len(self._hits):
            return None
        hit = self._hits[self._pos]
        self._pos += 1
        return hit

    def peek(self) -> Optional[Hit]:
        if self._pos >= len(self._hits):
            return None
        return self._hits[self._pos]

    def __len__(self) -> int:
        return len(self._hits)


# ---------------------------------------------------------------------------
# Column <-> Hit conversion
# ---------------------------------------------------------------------------

def hits_to_columns(hits: Sequence[Hit]) -> Dict[str, np.ndarray]:
    n = len(hits)
    kind = np.empty(n, dtype=np.uint8)
    ts = np.empty(n, dtype=np.int64)
    module = np.full(n, -1, dtype=np.int32)
    asic = np.full(n, -1, dtype=np.int32)
    channel = np.full(n, -1, dtype=np.int32)
    raw = np.zeros(n, dtype=np.float64)
    info_kind = np.full(n, -1, dtype=np.int16)

    for i, h in enumerate(hits):
        ts[i] = int(h.timestamp)
        if isinstance(h, AsicHit):
            kind[i] = KIND_ASIC
            module[i], asic[i], channel[i], raw[i] = h.module, h.asic, h.channel, h.raw
        elif isinstance(h, CaenHit):
            kind[i] = KIND_CAEN
            module[i], channel[i], raw[i] = h.module, h.channel, h.raw
        elif isinstance(h, InfoHit):
            kind[i] = KIND_INFO
            info_kind[i] = INFO_KINDS.index(h.kind)
            if h.module is not None:
                module[i] = h.module
        else:
            raise TypeError(f"Unsupported hit type: {type(h)}")

    return {
        "kind": kind, "timestamp": ts, "module": module, "asic": asic,
        "channel": channel, "raw": raw, "info_kind": info_kind,
    }


def columns_to_hits(cols: Dict[str, np.ndarray], info_kinds: Sequence[InfoKind] = INFO_KINDS) -> List[Hit]:
    """Inverse of hits_to_columns for canonical columns."""
    out: List[Hit] = []
    kind = cols["kind"]
    ts = cols["timestamp"]
    module = cols["module"]
    asic = cols["asic"]
    channel = cols["channel"]
    raw = cols["raw"]
    info_kind = cols["info_kind"]
    for i in range(len(kind)):
        k = int(kind[i])
        t = int(ts[i])
        if k == KIND_ASIC:
            out.append(AsicHit(int(module[i]), int(asic[i]), int(channel[i]), float(raw[i]), t))
        elif k == KIND_CAEN:
            out.append(CaenHit(int(module[i]), int(channel[i]), float(raw[i]), t))
        elif k == KIND_INFO:
            code = int(info_kind[i])
            if not (0 <= code < len(info_kinds)):
                raise ValueError(f"row {i}: info_kind code {code} out of range")
            mod = int(module[i])
            out.append(InfoHit(info_kinds[code], t, None if mod < 0 else mod))
        else:
            raise ValueError(f"row {i}: unknown hit kind {k}")
    return out


# ---------------------------------------------------------------------------
# HDF5 source
# ---------------------------------------------------------------------------

class H5HitSource(BaseHitSource):
    """
    Stream hits from an HDF5 hit table without loading it all into RAM.

    Rows are read `chunk_size` at a time and converted to Hit objects;
    source column names are mapped through canonicalize_columns.
    """

    def __init__(self, path: str | Path, group: str = "hits", chunk_size: int = 65536):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Hit file not found: {self.path}")
        self._f = h5py.File(self.path, "r")
        if group not in self._f:
            self._f.close()
            raise KeyError(f"{group!r} not found in {self.path}")
        self._g = self._f[group]
        names = self._g.attrs.get("info_kinds")
        if names is None:
            self.info_kinds = INFO_KINDS
        else:
            self.info_kinds = [InfoKind(str(n.decode() if isinstance(n, bytes) else n)) for n in names]
        self._datasets = {k: v for k, v in self._g.items() if isinstance(v, h5py.Dataset)}
        lengths = {len(ds) for ds in self._datasets.values()}
        if len(lengths) > 1:
            self._f.close()
            raise ValueError(f"hit table {group!r} in {self.path} has columns of unequal length")
        self.n_rows = lengths.pop() if lengths else 0
        self.chunk_size = int(chunk_size)
        self._row = 0
        self._buf: Deque[Hit] = deque()

    def _fill(self) -> None:
        if self._buf or self._row >= self.n_rows:
            return
        lo, hi = self._row, min(self._row + self.chunk_size, self.n_rows)
        cols = canonicalize_columns({k: ds[lo:hi] for k, ds in self._datasets.items()})
        self._buf.extend(columns_to_hits(cols, self.info_kinds))
        self._row = hi

    def next(self) -> Optional[Hit]:
        self._fill()
        return self._buf.popleft() if self._buf else None

    def peek(self) -> Optional[Hit]:
        self._fill()
        return self._buf[0] if self._buf else None

    def __len__(self) -> int:
        return self.n_rows

    def close(self) -> None:
        if self._f.id.valid:
            self._f.close()


def write_hits_h5(path: str | Path, hits: Sequence[Hit], *, group: str = "hits") -> Path:
    """Write hits as the flat table read by H5HitSource."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    cols = hits_to_columns(hits)
    with h5py.File(p, "w") as f:
        g = f.require_group(group)
        g.attrs["info_kinds"] = np.array([k.value for k in INFO_KINDS], dtype=h5py.string_dtype())
        for key, arr in cols.items():
            if arr.size:
                g.create_dataset(key, data=arr, compression="gzip")
            else:
                g.create_dataset(key, data=arr)
    return p


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_source(io: IOCfg) -> BaseHitSource:
    """
    Create a hit source from the [io] section.

    Keys under [io.adapter] (all optional):
      group: HDF5 group holding the hit table (default "hits")
      chunk_size: rows per read (default 65536)
    """
    fmt = (io.input_format or "hdf5_hits").lower()
    if fmt == "hdf5_hits":
        return H5HitSource(
            io.input_path,
            group=io.adapter.get("group", "hits"),
            chunk_size=int(io.adapter.get("chunk_size", 65536)),
        )
    raise ValueError(f"Unknown input format: {fmt}")
