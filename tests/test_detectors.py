import pytest

from incidentdesk.config import AppConfig
from incidentdesk.detectors import FractureDetector, StallMonitor, is_zombie, is_analysis_signature
from incidentdesk.models import FractureEdge, TelemetrySample


def _s(cpu, ram, ts=0.0):
    return TelemetrySample(ts=ts, cpu=cpu, ram=ram, threads=100, io_wait=0.0)


GOOD = _s(45, 32)
BAD = _s(1, 95)


def _edges(det, samples):
    return [det.observe(s) for s in samples]


def test_no_edge_on_healthy_telemetry():
    det = FractureDetector(AppConfig())
    assert _edges(det, [GOOD] * 20) == [None] * 20
    assert det.count == 0


def test_confirmation_fires_on_third_bad_sample_only_once():
    det = FractureDetector(AppConfig())
    edges = _edges(det, [BAD] * 6)
    assert edges[:2] == [None, None]
    assert edges[2] is FractureEdge.CONFIRMED
    assert edges[3:] == [FractureEdge.PERSISTENT] * 3
    assert edges.count(FractureEdge.CONFIRMED) == 1
    assert det.active


@pytest.mark.parametrize("run", [1, 2])
def test_short_runs_never_confirm(run):
    det = FractureDetector(AppConfig())
    seq = ([BAD] * run + [GOOD]) * 5
    assert FractureEdge.CONFIRMED not in _edges(det, seq)


def test_interrupted_run_restarts_the_count():
    det = FractureDetector(AppConfig())
    edges = _edges(det, [BAD, BAD, _s(3, 85), BAD, BAD])
    assert FractureEdge.CONFIRMED not in edges
    assert det.observe(BAD) is FractureEdge.CONFIRMED


def test_recovery_clears_active_incident():
    det = FractureDetector(AppConfig())
    _edges(det, [BAD] * 3)
    # neither bad nor healthy enough: stays active
    assert det.observe(_s(10, 85)) is None
    assert det.active
    assert det.observe(GOOD) is FractureEdge.RECOVERED
    assert not det.active
    assert det.count == 0
    assert det.observe(GOOD) is None


def test_second_incident_confirms_again_after_reset():
    det = FractureDetector(AppConfig())
    _edges(det, [BAD] * 4)
    det.reset()
    assert _edges(det, [BAD] * 3)[-1] is FractureEdge.CONFIRMED


def test_mark_active_suppresses_confirmation():
    det = FractureDetector(AppConfig())
    det.mark_active()
    edges = _edges(det, [BAD] * 4)
    assert FractureEdge.CONFIRMED not in edges
    assert edges[3] is FractureEdge.PERSISTENT


def test_stress_signature_only_when_enabled():
    hot = _s(97, 50)
    det = FractureDetector(AppConfig())
    assert _edges(det, [hot] * 5) == [None] * 5

    det = FractureDetector(AppConfig(stress_detection_enabled=True))
    assert _edges(det, [hot] * 3)[-1] is FractureEdge.CONFIRMED


def test_signature_predicates():
    cfg = AppConfig()
    assert is_zombie(_s(4.9, 90.1), cfg)
    assert not is_zombie(_s(5, 95), cfg)
    assert not is_zombie(_s(1, 90), cfg)
    assert is_analysis_signature(_s(1, 85), cfg)
    assert not is_analysis_signature(_s(1, 80), cfg)


def test_stall_needs_more_than_threshold_flat_ticks():
    mon = StallMonitor(AppConfig(stall_ticks=60))
    results = [mon.observe(_s(40, 60.0)) for _ in range(61)]
    assert set(results) == {None}
    assert not mon.stalled
    assert mon.observe(_s(40, 60.05)) is True
    assert mon.stalled
    assert mon.observe(_s(40, 62.0)) is False
    assert not mon.stalled


def test_stall_ignores_low_memory():
    mon = StallMonitor(AppConfig(stall_ticks=3))
    assert [mon.observe(_s(40, 30.0)) for _ in range(10)] == [None] * 10


def test_recovery_can_be_held_while_a_reset_is_in_flight():
    det = FractureDetector(AppConfig())
    _edges(det, [BAD] * 3)
    assert det.observe(GOOD, allow_recovery=False) is None
    assert det.active
    assert det.count == 0
    assert det.observe(GOOD) is FractureEdge.RECOVERED
    assert not det.active
