from pathlib import Path

import pytest
from pydantic import ValidationError

from issbuild.build.errors import UnidentifiedHit, WiringError
from issbuild.config.load import load_config
from issbuild.config.schemas import ArrayCfg, CaenCfg, Config
from issbuild.config.wiring import ArrayWiring, CaenWiring, DetectorFamily, StripId

TOML = """
[run]
diagnostics_level = 0

[io]
input_path = "data/hits.h5"
output_path = "out/events.h5"
calibration_path = "cal.csv"

[build]
window_ns = 2500
addback_p = true

[caen]
pulser_module = 1
pulser_channel = 14

[caen.thresholds]
recoil = 25.0
"""


def test_load_config_resolves_relative_paths(tmp_path: Path):
    cfg_file = tmp_path / "run.toml"
    cfg_file.write_text(TOML)
    cfg = load_config(cfg_file)

    assert cfg.build.window_ns == 2500
    assert cfg.build.addback_p is True and cfg.build.addback_n is False
    assert Path(cfg.io.input_path) == tmp_path / "data" / "hits.h5"
    assert Path(cfg.io.calibration_path) == tmp_path / "cal.csv"
    assert cfg.caen.thresholds == {"recoil": 25.0}
    assert cfg.array.n_modules == 3


def test_config_requires_io():
    with pytest.raises(ValidationError):
        Config()


@pytest.mark.parametrize("section", [
    {"run": {"diagnostics_level": 3}},
    {"build": {"window_ns": 0}},
    {"clocks": {"pulse_tolerance": 1.5}},
    {"caen": {"thresholds": {"tapes": 1.0}}},
    {"array": {"n_asics": 2}},
    {"array": {"asic_side": [0, 2, 0, 0, 1, 0]}},
])
def test_invalid_sections_rejected(section):
    with pytest.raises(ValidationError):
        Config(io={"input_path": "a", "output_path": "b"}, **section)


def test_default_array_wiring():
    w = ArrayWiring.from_cfg(ArrayCfg())
    assert w.lookup(0, 0, 5) == StripId(side=0, row=0, strip=5)
    assert w.lookup(2, 1, 11) == StripId(side=1, row=0, strip=10)
    assert w.lookup(2, 1, 21) == StripId(side=1, row=0, strip=0)
    assert w.lookup(1, 1, 28) == StripId(side=1, row=1, strip=0)
    assert w.lookup(0, 4, 30) == StripId(side=1, row=3, strip=2)
    assert w.lookup(0, 5, 127) == StripId(side=0, row=3, strip=127)


@pytest.mark.parametrize("module,asic,channel", [(3, 0, 0), (-1, 0, 0), (0, 1, 0), (0, 1, 25), (0, 6, 0)])
def test_unwired_array_channels(module, asic, channel):
    w = ArrayWiring.from_cfg(ArrayCfg())
    with pytest.raises(UnidentifiedHit):
        w.lookup(module, asic, channel)


def test_array_wiring_errors():
    with pytest.raises(WiringError):
        ArrayWiring.from_cfg(ArrayCfg(nside_blocks=[{"first_channel": 120, "last_channel": 130}]))
    with pytest.raises(WiringError):
        ArrayWiring.from_cfg(ArrayCfg(nside_blocks=[
            {"first_channel": 0, "last_channel": 10},
            {"first_channel": 5, "last_channel": 15, "row_offset": 1},
        ]))
    with pytest.raises(WiringError):
        ArrayWiring.from_cfg(ArrayCfg(asic_row=[0, 3, 1, 2, 2, 3]))  # n-side block row 4


def test_default_caen_wiring():
    w = CaenWiring.from_cfg(CaenCfg())
    assert w.lookup(0, 5).family is DetectorFamily.RECOIL
    assert (w.lookup(0, 5).group, w.lookup(0, 5).sub) == (2, 1)
    assert (w.lookup(1, 3).family, w.lookup(1, 3).group, w.lookup(1, 3).sub) == (DetectorFamily.MWPC, 1, 1)
    assert w.lookup(1, 6).family is DetectorFamily.ELUM
    assert (w.lookup(1, 9).family, w.lookup(1, 9).group) == (DetectorFamily.ZD, 1)
    assert (w.lookup(2, 7).family, w.lookup(2, 7).group) == (DetectorFamily.SCINT, 7)
    assert w.is_pulser(1, 15)
    with pytest.raises(UnidentifiedHit):
        w.lookup(1, 15)


def test_caen_wiring_errors():
    with pytest.raises(WiringError):
        CaenWiring.from_cfg(CaenCfg(elum=[{"module": 0, "channel": 1, "sector": 0}]))
    with pytest.raises(WiringError):
        CaenWiring.from_cfg(CaenCfg(pulser_module=2, pulser_channel=3))


def test_caen_thresholds_by_family():
    w = CaenWiring.from_cfg(CaenCfg(thresholds={"zd": 12.5}))
    assert w.threshold_for(DetectorFamily.ZD) == 12.5
    assert w.threshold_for(DetectorFamily.RECOIL) == 0.0
