"""Pytest configuration for incidentdesk."""
import os
import tempfile

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
os.environ.setdefault("INCIDENTDESK_HOME", tempfile.mkdtemp(prefix="incidentdesk-test-"))

import pytest

from incidentdesk.classifier import HeuristicClassifier
from incidentdesk.config import AppConfig
from incidentdesk.coordinator import IncidentCoordinator
from incidentdesk.executor import RemediationExecutor
from incidentdesk.models import ChannelResult, TelemetrySample
from incidentdesk.notifications import AlertBroadcaster
from incidentdesk.store import Store
from incidentdesk.workers import InlineRunner


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, ts: float) -> float:
        self.now = ts
        return self.now


class DeferredRunner:
    """Holds jobs until the test releases them, like I/O still in flight."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, callback=None):
        self.jobs.append((fn, callback))

    def release_all(self):
        while self.jobs:
            fn, callback = self.jobs.pop(0)
            try:
                result, error = fn(), None
            except Exception as e:
                result, error = None, e
            if callback is not None:
                callback(result, error)


class RecordingChannel:
    name = "recording"

    def __init__(self, success: bool = True, simulated: bool = True):
        self.sent = []
        self.success = success
        self.simulated = simulated

    def send(self, msg):
        self.sent.append(msg)
        return ChannelResult(channel=self.name, success=self.success, simulated=self.simulated)


class ResetAction:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        return self.ok


@pytest.fixture(autouse=True)
def _qt_app(qapp):
    return qapp


@pytest.fixture
def cfg():
    return AppConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / "incidentdesk.db"))
    yield s
    s.close()


@pytest.fixture
def make_coordinator(cfg, store, clock):
    """Factory: coordinator with heuristic classifier, recording alert channel and stub reset."""
    def _make(runner=None, reset=None, channel=None, shift="1ST_SHIFT", alert_channel=None, **kw):
        runner = runner or InlineRunner()
        reset = reset or ResetAction()
        alert_channel = alert_channel or RecordingChannel()
        co = IncidentCoordinator(
            cfg, store,
            classifier=HeuristicClassifier(cfg),
            broadcaster=AlertBroadcaster(cfg, [alert_channel]),
            executor=RemediationExecutor(reset, store, runner, clock=clock),
            runner=runner,
            channel=channel,
            clock=clock,
            shift_fn=lambda _ts=None: shift,
            **kw,
        )
        co.reset_action = reset
        co.alert_channel = alert_channel
        return co
    return _make


def feed(co, clock, cpu: float, ram: float, n: int = 1, mode: str = "NOMINAL"):
    """Advance the clock one second per sample and observe it."""
    for _ in range(n):
        clock.advance(1)
        co.observe(TelemetrySample(ts=clock(), cpu=cpu, ram=ram, threads=150, io_wait=1.0, mode=mode))
