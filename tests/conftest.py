import pytest

from issbuild.build.assembler import ListSink
from issbuild.build.engine import EventBuilder
from issbuild.config.schemas import Config


def default_config(**sections) -> Config:
    data = {"run": {"diagnostics_level": 0}, "io": {"input_path": "in.h5", "output_path": "out.h5"}}
    data.update(sections)
    return Config(**data)


@pytest.fixture
def make_builder():
    """
    Factory for an EventBuilder on the default wiring, collecting into a ListSink.

    Default wiring used throughout the tests:
      array  asic 0 = p-side row 0, asic 1 = n-side rows 0 (ch 11..21, reversed) and 1 (ch 28..38)
      caen   module 0 ch 0..7 recoil (sector ch//2, layer ch%2)
             module 1 ch 0..3 mwpc, ch 4..7 elum, ch 8/9 zero degree, ch 15 pulser
             module 2 ch 0..7 scintillators
    """
    def _make(calibration=None, **sections):
        sink = ListSink()
        builder = EventBuilder.from_config(default_config(**sections), sink, calibration=calibration)
        return builder, sink

    return _make
