# src/issbuild/io/canonicalize.py
from __future__ import annotations
from typing import Any, Dict, Iterable, Mapping

import numpy as np

_CANON_KEYS = {
    # canonical_key: tuple of fallback source keys
    "kind":      ("kind", "type", "hit_type"),
    "timestamp": ("timestamp", "time", "t_ns", "time_ns"),
    "module":    ("module", "mod", "sfp"),
    "asic":      ("asic", "asic_id"),
    "channel":   ("channel", "ch", "chan"),
    "raw":       ("raw", "adc", "adc_value", "qlong", "energy"),
    "info_kind": ("info_kind", "info_code", "code"),
}

# filled in when the source has no such column
_DEFAULTS = {
    "module": -1,
    "asic": -1,
    "channel": -1,
    "raw": 0.0,
    "info_kind": -1,
}

_DTYPES = {
    "kind": np.uint8,
    "timestamp": np.int64,
    "module": np.int32,
    "asic": np.int32,
    "channel": np.int32,
    "raw": np.float64,
    "info_kind": np.int16,
}


def _first(cols: Mapping[str, Any], names: Iterable[str]):
    for k in names:
        if k in cols:
            return cols[k]
    return None


def canonicalize_columns(cols: Mapping[str, Any]) -> Dict[str, np.ndarray]:
    """
    Map a column table (dict of equal-length arrays, or an HDF5 group) onto
    the canonical hit columns:
        kind, timestamp, module, asic, channel, raw, info_kind
    `kind` and `timestamp` are required; the rest default per _DEFAULTS.
    """
    out: Dict[str, np.ndarray] = {}
    n = None
    for key in ("kind", "timestamp"):
        arr = _first(cols, _CANON_KEYS[key])
        if arr is None:
            raise KeyError(f"hit table has no {key!r} column (tried {', '.join(_CANON_KEYS[key])})")
        out[key] = np.asarray(arr, dtype=_DTYPES[key])
        n = len(out[key]) if n is None else n
        if len(out[key]) != n:
            raise ValueError(f"hit column {key!r} has {len(out[key])} rows, expected {n}")

    for key, default in _DEFAULTS.items():
        arr = _first(cols, _CANON_KEYS[key])
        if arr is None:
            out[key] = np.full(n, default, dtype=_DTYPES[key])
            continue
        out[key] = np.asarray(arr, dtype=_DTYPES[key])
        if len(out[key]) != n:
            raise ValueError(f"hit column {key!r} has {len(out[key])} rows, expected {n}")
    return out
