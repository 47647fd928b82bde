from __future__ import annotations


class BuildError(Exception):
    """Base class for event-builder failures."""


class TimeOrderError(BuildError):
    """Input hits are not in non-decreasing timestamp order. Fatal for the current file."""

    def __init__(self, index: int, previous: int, current: int):
        super().__init__(
            f"time ordering violated at hit {index}: t={current} after t={previous}"
        )
        self.index = index
        self.previous = previous
        self.current = current


class WiringError(BuildError):
    """Mandatory wiring tables are missing or inconsistent. Fatal at construction."""


class BindingError(BuildError):
    """Calibration rebound while a build window is open."""


class UnidentifiedHit(BuildError):
    """
    A hit references a module/asic/channel that the wiring or calibration does
    not know. Recoverable: the accumulator counts and drops the hit.
    """
