import pytest

from issbuild.build.errors import BindingError, TimeOrderError
from issbuild.build.window import Decision, State
from issbuild.io.sources import ListHitSource
from issbuild.physics.calibration import IdentityCalibration
from issbuild.physics.hits import AsicHit, CaenHit, InfoHit, InfoKind


def p_hit(t, strip=5, raw=100.0, module=0):
    return AsicHit(module, 0, strip, raw, t)


def n_hit(t, channel=20, raw=90.0, module=0):
    # asic 1 channel 20 -> n-side row 0, strip 1
    return AsicHit(module, 1, channel, raw, t)


def test_array_pairing_td(make_builder):
    builder, sink = make_builder()
    builder.run(ListHitSource([p_hit(1000), n_hit(1005)]))

    assert len(sink) == 1
    ev = sink.events[0]
    assert len(ev.array) == 1 and len(ev.arrayp) == 1
    pair = ev.array[0]
    assert (pair.module, pair.row, pair.pid, pair.nid) == (0, 0, 5, 1)
    assert pair.td == 5
    assert (ev.time_min, ev.time_max) == (1000, 1005)


def test_window_containment_and_boundary(make_builder):
    builder, sink = make_builder()
    hits = [p_hit(1000), p_hit(4000, strip=6), p_hit(4001, strip=7), p_hit(9000, strip=8)]
    builder.run(ListHitSource(hits))

    # 4000 is exactly window_ns after the opener and still belongs to it
    assert [len(ev.arrayp) for ev in sink.events] == [2, 1, 1]
    assert [(ev.time_min, ev.time_max) for ev in sink.events] == [(1000, 4000), (4001, 4001), (9000, 9000)]
    for ev in sink.events:
        ev.validate()
        assert ev.time_max - ev.time_min <= 3000


def test_next_window_starts_past_boundary(make_builder):
    builder, sink = make_builder(build={"window_ns": 100})
    builder.run(ListHitSource([p_hit(1000), p_hit(1100), p_hit(1101), p_hit(1300)]))

    assert [(ev.time_min, ev.time_max) for ev in sink.events] == [(1000, 1100), (1101, 1101), (1300, 1300)]
    for ev in sink.events:
        assert ev.time_max - ev.time_min <= 100


def test_no_hit_loss(make_builder):
    builder, _sink = make_builder()
    hits = [
        InfoHit(InfoKind.EBIS, 10),
        p_hit(100, raw=0.0),              # below threshold, no window -> dropped
        AsicHit(7, 0, 5, 100.0, 110),     # module not wired -> unidentified
        CaenHit(1, 15, 500.0, 120),       # pulser
        p_hit(130),
        p_hit(140, raw=0.0),              # below threshold inside a window -> absorbed
        CaenHit(0, 40, 100.0, 150),       # unmapped CAEN channel
        InfoHit(InfoKind.ASIC_PAUSE, 5000, module=1),
        AsicHit(1, 0, 5, 100.0, 5100),    # paused module
        InfoHit(InfoKind.ASIC_RESUME, 6000, module=1),
        CaenHit(2, 3, 700.0, 7000),
    ]
    builder.run(ListHitSource(hits))
    d = builder.diag

    assert d.total == len(hits)
    assert d.accounted()
    assert d.absorbed == 3
    assert d.info == 3
    assert d.pulser == 1
    assert d.dropped == {"below_threshold": 1, "unidentified": 2, "paused": 1}


def test_window_without_sub_events_is_not_emitted(make_builder):
    builder, sink = make_builder()
    # a lone dE hit opens a window but the recoil finder needs both layers
    builder.run(ListHitSource([CaenHit(0, 0, 300.0, 1000), p_hit(9000)]))

    assert len(sink) == 1
    assert sink.events[0].time_min == 9000
    assert builder.diag.windows_closed == 2
    assert builder.diag.empty_windows == 1
    assert builder.diag.finders.recoil_incomplete == 1


def test_determinism(make_builder):
    hits = [p_hit(1000), n_hit(1002), CaenHit(0, 0, 300.0, 1010), CaenHit(0, 1, 900.0, 1020),
            InfoHit(InfoKind.T1, 2000), p_hit(8000, strip=9), CaenHit(2, 1, 50.0, 8001)]
    runs = []
    for _ in range(2):
        builder, sink = make_builder()
        builder.run(ListHitSource(hits))
        runs.append((sink.events, builder.snapshot()))
    assert runs[0] == runs[1]


def test_closing_twice_is_noop(make_builder):
    builder, sink = make_builder()
    acc = builder.accumulator
    assert acc.absorb(p_hit(1000), lookahead=p_hit(1001)) is Decision.CONTINUE
    assert acc.state is State.OPEN

    acc.close()
    acc.close()
    builder.close()
    assert builder.diag.windows_closed == 1
    assert len(sink) == 1
    assert acc.state is State.CLOSED


def test_dead_time_exclusion(make_builder):
    builder, sink = make_builder()
    hits = [
        p_hit(900),
        InfoHit(InfoKind.ASIC_PAUSE, 1000, module=2),
        p_hit(1100, strip=7),
        p_hit(1500, module=2),
        InfoHit(InfoKind.ASIC_RESUME, 2000, module=2),
        p_hit(2100, strip=9, module=2),
    ]
    builder.run(ListHitSource(hits))

    assert builder.diag.dropped["paused"] == 1
    assert builder.clocks.dead[2].dead_ns == 1000
    # the pause closes the first window; the paused hit never appears
    assert len(sink) == 2
    assert [(a.module, a.pid) for a in sink.events[0].arrayp] == [(0, 5)]
    assert [(a.module, a.pid) for a in sink.events[1].arrayp] == [(0, 7), (2, 9)]


def test_pause_without_lookahead_closes_open_window(make_builder):
    builder, sink = make_builder()
    acc = builder.accumulator
    acc.absorb(p_hit(1000), lookahead=p_hit(1001))
    acc.absorb(InfoHit(InfoKind.ASIC_PAUSE, 1001, module=0), lookahead=None)
    assert len(sink) == 1
    assert acc.state is State.CLOSED


def test_info_hits_do_not_close_window(make_builder):
    builder, sink = make_builder()
    builder.run(ListHitSource([p_hit(1000), InfoHit(InfoKind.EBIS, 1001), n_hit(1002)]))

    assert len(sink) == 1
    ev = sink.events[0]
    assert len(ev.array) == 1
    assert ev.ebis == 1001
    assert ev.t1 is None


def test_info_hit_past_window_closes_it_first(make_builder):
    builder, sink = make_builder()
    builder.run(ListHitSource([p_hit(1000), InfoHit(InfoKind.EBIS, 10000), p_hit(20000, strip=6)]))

    assert [(ev.time_min, ev.time_max) for ev in sink.events] == [(1000, 1000), (20000, 20000)]
    assert sink.events[0].ebis is None
    assert sink.events[1].ebis == 10000


def test_info_hit_past_window_without_lookahead(make_builder):
    builder, sink = make_builder()
    acc = builder.accumulator
    acc.absorb(p_hit(1000), lookahead=p_hit(1001))
    acc.absorb(InfoHit(InfoKind.T1, 9000), lookahead=None)

    assert len(sink) == 1
    assert sink.events[0].t1 is None
    assert builder.clocks.timing_snapshot().t1 == 9000


def test_info_for_unknown_module_is_unidentified(make_builder):
    builder, sink = make_builder()
    hits = [
        InfoHit(InfoKind.ASIC_PAUSE, 100, module=99),
        InfoHit(InfoKind.FPGA_PULSE, 200, module=7),
        p_hit(300),
    ]
    builder.run(ListHitSource(hits))
    d = builder.diag

    assert d.dropped["unidentified"] == 2
    assert d.info == 0 and d.n_info == 2
    assert d.accounted()
    assert 99 not in builder.clocks.dead
    assert builder.clocks.pulses == {}
    assert len(sink) == 1


def test_threshold_gating(make_builder):
    builder, sink = make_builder(array={"threshold": 50.0})
    builder.run(ListHitSource([p_hit(1000, raw=40.0), p_hit(1010, strip=6, raw=60.0),
                               p_hit(1020, strip=7, raw=10.0)]))

    assert builder.diag.dropped["below_threshold"] == 1
    assert len(sink) == 1
    assert [a.pid for a in sink.events[0].arrayp] == [6, 7]
    assert sink.events[0].time_min == 1010


def test_caen_threshold_per_family(make_builder):
    builder, sink = make_builder(caen={"thresholds": {"scint": 100.0}})
    builder.run(ListHitSource([CaenHit(2, 0, 80.0, 1000), CaenHit(2, 1, 120.0, 1010)]))

    assert builder.diag.dropped["below_threshold"] == 1
    assert [g.det_id for g in sink.events[0].gamma] == [1]


def test_pulser_never_opens_window(make_builder):
    builder, sink = make_builder()
    builder.run(ListHitSource([CaenHit(1, 15, 500.0, 1000), CaenHit(1, 15, 500.0, 2000)]))
    assert len(sink) == 0
    assert builder.diag.pulser == 2
    assert builder.diag.windows_opened == 0


def test_time_order_violation_flushes_then_raises(make_builder):
    builder, sink = make_builder()
    with pytest.raises(TimeOrderError) as exc:
        builder.run(ListHitSource([p_hit(1000), p_hit(900)]))
    assert exc.value.index == 1
    assert (exc.value.previous, exc.value.current) == (1000, 900)
    assert len(sink) == 1


def test_rebinding_mid_window_raises(make_builder):
    builder, sink = make_builder()
    acc = builder.accumulator
    acc.absorb(p_hit(1000), lookahead=p_hit(1001))
    with pytest.raises(BindingError):
        builder.bind_calibration(IdentityCalibration())

    acc.close()
    cal = IdentityCalibration(asic_threshold=10.0)
    builder.bind_calibration(cal)
    assert acc.calibration is cal


def test_stop_request_finishes_current_window(make_builder):
    builder, sink = make_builder()

    class StoppingSource(ListHitSource):
        def next(self):
            hit = super().next()
            if hit is not None and hit.timestamp == 1001:
                builder.request_stop()
            return hit

    hits = [p_hit(1000), p_hit(1001, strip=6), p_hit(1002, strip=7), p_hit(10000), p_hit(20000)]
    with pytest.raises(KeyboardInterrupt):
        builder.run(StoppingSource(hits))

    assert len(sink) == 1
    assert len(sink.events[0].arrayp) == 3
    assert builder.diag.total == 3


def test_max_hits_flushes_open_window(make_builder):
    builder, sink = make_builder()
    n = builder.run(ListHitSource([p_hit(1000), p_hit(1001), p_hit(1002)]), max_hits=2)
    assert n == 2
    assert len(sink) == 1
    assert len(sink.events[0].arrayp) == 2
