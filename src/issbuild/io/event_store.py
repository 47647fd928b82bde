"""
HDF5 event output.

Layout
------
/ (attrs)          format_version, created_utc, software, config_text, diagnostics_json
/events/time_min   (N,) int64
/events/time_max   (N,) int64
/events/ebis, t1, supercycle, laser
                   (N,) int64, -1 where the reference was never seen
/events/mwpc_mult  CSR: event_ptr (N+1,) int64 + values
/events/<family>   one group per sub-event type (array, arrayp, recoil, mwpc,
                   elum, zd, gamma):
                     event_ptr (N+1,) int64 : rows [event_ptr[i], event_ptr[i+1]) belong to event i
                     <field>   (M,)         : one column per scalar field
                     <field>_ptr (M+1,) + <field> : nested CSR for tuple fields
"""
from __future__ import annotations
from dataclasses import fields
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, get_args, get_origin, get_type_hints

import h5py
import numpy as np

from issbuild.config.load import json_dumps
from issbuild.physics.events import (
    ArrayEvent,
    ArrayPEvent,
    ElumEvent,
    GammaRayEvent,
    MwpcEvent,
    PhysicsEvent,
    RecoilEvent,
    TimingSnapshot,
    ZeroDegreeEvent,
)

FORMAT_VERSION = "1.0"
SOFTWARE = "issbuild 0.1.0"

# PhysicsEvent attribute -> sub-event class, in output order
SUB_EVENT_TYPES: Tuple[Tuple[str, Type], ...] = (
    ("array", ArrayEvent),
    ("arrayp", ArrayPEvent),
    ("recoil", RecoilEvent),
    ("mwpc", MwpcEvent),
    ("elum", ElumEvent),
    ("zd", ZeroDegreeEvent),
    ("gamma", GammaRayEvent),
)

_TIMING_KEYS = ("ebis", "t1", "supercycle", "laser")


def _ptr_from_lengths(lengths: Sequence[int]) -> np.ndarray:
    ptr = np.zeros(len(lengths) + 1, dtype=np.int64)
    if lengths:
        np.cumsum(np.asarray(lengths, dtype=np.int64), out=ptr[1:])
    return ptr


def _replace_or_create(g: h5py.Group, name: str, data: np.ndarray) -> None:
    if name in g:
        del g[name]
    if data.size:
        g.create_dataset(name, data=data, compression="gzip")
    else:
        g.create_dataset(name, data=data)


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def write_init(path: str | Path, config_text: Optional[str] = None) -> h5py.File:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    f = h5py.File(p, "w")
    f.attrs["format_version"] = FORMAT_VERSION
    f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
    f.attrs["software"] = SOFTWARE
    if config_text is not None:
        f.attrs["config_text"] = config_text
    return f


def _column_layout(annotation: Any) -> Tuple[bool, type]:
    """(ragged, dtype) for a sub-event field: tuples get a nested CSR, floats float64, the rest int64."""
    if get_origin(annotation) is tuple:
        return True, np.float64 if get_args(annotation)[0] is float else np.int64
    return False, np.float64 if annotation is float else np.int64


def _write_sub_events(g: h5py.Group, cls: Type, per_event: Sequence[Sequence[Any]]) -> None:
    flat = [sub for subs in per_event for sub in subs]
    _replace_or_create(g, "event_ptr", _ptr_from_lengths([len(s) for s in per_event]))
    hints = get_type_hints(cls)
    for fld in fields(cls):
        vals = [getattr(s, fld.name) for s in flat]
        ragged, dtype = _column_layout(hints[fld.name])
        if ragged:
            inner = [v for tup in vals for v in tup]
            _replace_or_create(g, f"{fld.name}_ptr", _ptr_from_lengths([len(t) for t in vals]))
            _replace_or_create(g, fld.name, np.asarray(inner, dtype=dtype))
        else:
            _replace_or_create(g, fld.name, np.asarray(vals, dtype=dtype))


def write_events(f: h5py.File, events: Sequence[PhysicsEvent], *, group: str = "events") -> None:
    """Write events into the ragged layout described in the module docstring."""
    g = f.require_group(group)
    _replace_or_create(g, "time_min", np.asarray([e.time_min for e in events], dtype=np.int64))
    _replace_or_create(g, "time_max", np.asarray([e.time_max for e in events], dtype=np.int64))
    for key in _TIMING_KEYS:
        vals = [getattr(e.timing, key) for e in events]
        _replace_or_create(g, key, np.asarray([-1 if v is None else v for v in vals], dtype=np.int64))

    mm = g.require_group("mwpc_mult")
    _replace_or_create(mm, "event_ptr", _ptr_from_lengths([len(e.mwpc_axis_multiplicity) for e in events]))
    _replace_or_create(mm, "values", np.asarray(
        [m for e in events for m in e.mwpc_axis_multiplicity], dtype=np.int64))

    for name, cls in SUB_EVENT_TYPES:
        _write_sub_events(g.require_group(name), cls, [getattr(e, name) for e in events])
    g.attrs["n_events"] = len(events)


def write_diagnostics(f: h5py.File, snapshot: Dict[str, Any]) -> None:
    f.attrs["diagnostics_json"] = json_dumps(snapshot)


class H5EventSink:
    """
    Event sink that buffers events and writes them on close().

        with H5EventSink("out.h5", config_text=...) as sink:
            builder = EventBuilder.from_config(cfg, sink)
            ...
            sink.diagnostics = builder.snapshot()
    """

    def __init__(self, path: str | Path, config_text: Optional[str] = None):
        self.path = Path(path)
        self.config_text = config_text
        self.events: List[PhysicsEvent] = []
        self.diagnostics: Optional[Dict[str, Any]] = None
        self._closed = False

    def emit(self, event: PhysicsEvent) -> None:
        if self._closed:
            raise RuntimeError(f"H5EventSink for {self.path} is already closed")
        self.events.append(event)

    def __len__(self) -> int:
        return len(self.events)

    def close(self) -> Path:
        if self._closed:
            return self.path
        f = write_init(self.path, self.config_text)
        try:
            write_events(f, self.events)
            if self.diagnostics is not None:
                write_diagnostics(f, self.diagnostics)
        finally:
            f.close()
        self._closed = True
        return self.path

    def __enter__(self) -> "H5EventSink":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def _read_sub_events(g: h5py.Group, cls: Type, n_events: int) -> List[Tuple[Any, ...]]:
    ptr = np.asarray(g["event_ptr"], dtype=np.int64)
    if len(ptr) != n_events + 1:
        raise ValueError(f"{g.name}/event_ptr has {len(ptr)} entries, expected {n_events + 1}")
    cols: Dict[str, Any] = {}
    for fld in fields(cls):
        if f"{fld.name}_ptr" in g:
            inner_ptr = np.asarray(g[f"{fld.name}_ptr"], dtype=np.int64)
            inner = np.asarray(g[fld.name])
            cols[fld.name] = [tuple(inner[inner_ptr[j]:inner_ptr[j + 1]].tolist())
                              for j in range(len(inner_ptr) - 1)]
        else:
            cols[fld.name] = np.asarray(g[fld.name]).tolist()

    flat = [cls(**{k: v[j] for k, v in cols.items()}) for j in range(int(ptr[-1]))]
    return [tuple(flat[ptr[i]:ptr[i + 1]]) for i in range(n_events)]


def read_events(path: str | Path, *, group: str = "events") -> List[PhysicsEvent]:
    with h5py.File(path, "r") as f:
        if group not in f:
            raise KeyError(f"{group!r} not found in {path}")
        g = f[group]
        tmin = np.asarray(g["time_min"], dtype=np.int64)
        tmax = np.asarray(g["time_max"], dtype=np.int64)
        n = len(tmin)
        timing = {k: np.asarray(g[k], dtype=np.int64) for k in _TIMING_KEYS}
        mm_ptr = np.asarray(g["mwpc_mult/event_ptr"], dtype=np.int64)
        mm_val = np.asarray(g["mwpc_mult/values"], dtype=np.int64)
        subs = {name: _read_sub_events(g[name], cls, n) for name, cls in SUB_EVENT_TYPES}

    events: List[PhysicsEvent] = []
    for i in range(n):
        snap = TimingSnapshot(**{k: (None if timing[k][i] < 0 else int(timing[k][i])) for k in _TIMING_KEYS})
        events.append(PhysicsEvent(
            time_min=int(tmin[i]),
            time_max=int(tmax[i]),
            mwpc_axis_multiplicity=tuple(int(m) for m in mm_val[mm_ptr[i]:mm_ptr[i + 1]]),
            timing=snap,
            **{name: subs[name][i] for name, _ in SUB_EVENT_TYPES},
        ))
    return events


def read_diagnostics(path: str | Path) -> Dict[str, Any]:
    with h5py.File(path, "r") as f:
        text = f.attrs.get("diagnostics_json")
    if text is None:
        return {}
    return json.loads(text)
