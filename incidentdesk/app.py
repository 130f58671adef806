from __future__ import annotations
from PySide6 import QtCore
import argparse
import logging
import sys
import time
import uuid
from typing import Optional, Sequence

from .channel import StoreChannel, TOPIC_TRIGGERED, make_message
from .classifier import GeminiClassifier
from .config import load_config, AppConfig, Secrets, DB_PATH
from .coordinator import IncidentCoordinator
from .executor import SimulatedCloudReset, GitLabActuation, RemediationExecutor
from .models import SourceTag
from .notifications import AlertBroadcaster, EmailChannel
from .reports import HandoverReporter
from .store import Store
from .telemetry import SimulatedTelemetry, HostTelemetry
from .workers import TaskRunner

logger = logging.getLogger(__name__)


class _SampleRunnable(QtCore.QRunnable):
    """Takes one psutil sample on a pool thread."""
    def __init__(self, stream: HostTelemetry):
        super().__init__()
        self._stream = stream
        self.setAutoDelete(True)

    def run(self):
        self._stream.tick()


def build_coordinator(cfg: AppConfig, store: Store, secrets: Secrets, runner,
                      channel: Optional[StoreChannel] = None,
                      accept_remote_triggers: bool = True) -> IncidentCoordinator:
    """Wire the real collaborators; each one degrades to simulation without credentials."""
    actuation = GitLabActuation(cfg, secrets)
    executor = RemediationExecutor(SimulatedCloudReset(cfg), store, runner, actuation=actuation)
    return IncidentCoordinator(
        cfg, store,
        classifier=GeminiClassifier(cfg, secrets.gemini_api_key),
        broadcaster=AlertBroadcaster.from_secrets(cfg, secrets),
        executor=executor,
        runner=runner,
        channel=channel,
        accept_remote_triggers=accept_remote_triggers,
    )


def build_reporter(cfg: AppConfig, store: Store, secrets: Secrets, runner) -> HandoverReporter:
    return HandoverReporter(
        cfg, store,
        email=EmailChannel(secrets, cfg.http_timeout_seconds),
        runner=runner,
        writer=GeminiClassifier(cfg, secrets.gemini_api_key),
    )


class Controller(QtCore.QObject):
    """
    Drives the coordinator:
    - telemetry tick every sample_interval_ms (pool thread for host sampling)
    - coordinator tick every 1s
    - channel poll every channel_poll_ms, prune every 5 min
    - drill scheduler and handover report check every 30s
    """
    def __init__(self, cfg: AppConfig, coordinator: IncidentCoordinator, stream,
                 channel: Optional[StoreChannel] = None,
                 reporter: Optional[HandoverReporter] = None):
        super().__init__()
        self.cfg = cfg
        self.coordinator = coordinator
        self.stream = stream
        self.channel = channel
        self.reporter = reporter
        self._pool = QtCore.QThreadPool.globalInstance()

        stream.sample_ready.connect(coordinator.observe)
        stream.log_line.connect(coordinator.note_log)
        stream.notice.connect(coordinator.note_event)
        coordinator.strike_dispatched.connect(stream.start_drill)
        coordinator.strike_cleared.connect(stream.reset)

        self._timers = []
        self._every(cfg.sample_interval_ms, self._schedule_sample)
        self._every(1000, self._tick)
        self._every(30_000, self.coordinator.run_scheduled_drills)
        if reporter is not None:
            self._every(30_000, reporter.check)
        if channel is not None:
            self._every(cfg.channel_poll_ms, channel.poll)
            self._every(300_000, channel.prune)

        logger.info("[Controller] Initialized - %s telemetry every %dms, context %s",
                    type(stream).__name__, cfg.sample_interval_ms, coordinator.context_id)

    def _every(self, interval_ms: int, slot) -> None:
        timer = QtCore.QTimer(self)
        timer.setInterval(interval_ms)
        timer.timeout.connect(slot)
        timer.start()
        self._timers.append(timer)

    def _schedule_sample(self):
        if isinstance(self.stream, HostTelemetry):
            self._pool.start(_SampleRunnable(self.stream))
        else:
            self.stream.tick()

    def _tick(self):
        self.coordinator.tick()

    def stop(self):
        for timer in self._timers:
            timer.stop()
        self._pool.waitForDone(5000)


# ──────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="incidentdesk", description="Zombie-kernel incident desk")
    p.add_argument("--headless", action="store_true", help="run without a window")
    p.add_argument("--host", action="store_true", help="sample this machine with psutil instead of the simulator")
    p.add_argument("--no-remote", action="store_true", help="ignore strike requests from other consoles")
    p.add_argument("--db", default=str(DB_PATH), help="SQLite database path")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = p.add_subparsers(dest="command")

    strike = sub.add_parser("strike", help="ask running dashboards to start a drill")
    strike.add_argument("--source", default=SourceTag.ADMIN_REMOTE_STRIKE.value)

    export = sub.add_parser("export", help="write the audit log as CSV")
    export.add_argument("--out", required=True)
    export.add_argument("--shift", type=int, action="append", choices=[1, 2, 3])

    summary = sub.add_parser("summary", help="print the audit summary")
    summary.add_argument("--hours", type=float, default=24.0)
    return p


def cmd_strike(store: Store, source: str) -> int:
    origin = f"cli-{uuid.uuid4().hex[:8]}"
    store.add_channel_message(make_message(TOPIC_TRIGGERED, source, origin))
    print(f"Strike request {source} published from {origin}")
    return 0


def cmd_export(store: Store, out: str, shifts: Optional[Sequence[int]]) -> int:
    n = store.export_audit_csv(out, shifts)
    print(f"Wrote {n} audit row(s) to {out}")
    return 0


def cmd_summary(store: Store, hours: float) -> int:
    s = store.audit_summary(since=time.time() - hours * 3600)
    print(f"Window:            last {hours:g}h")
    print(f"Total fractures:   {s['total_fractures']}")
    print(f"Avg TTR:           {s['avg_ttr']}s")
    print(f"Human / Sentinel:  {s['human_count']} / {s['agent_count']}")
    print(f"Efficiency ratio:  {s['efficiency_ratio']}")
    print(f"Failed:            {s['failed']}")
    return 0


def main(argv: Optional[Sequence[str]] = None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    cfg = load_config()
    store = Store(args.db)

    if args.command == "strike":
        code = cmd_strike(store, args.source)
    elif args.command == "export":
        code = cmd_export(store, args.out, args.shift)
    elif args.command == "summary":
        code = cmd_summary(store, args.hours)
    else:
        code = run_app(cfg, store, headless=args.headless, host=args.host,
                       accept_remote=not args.no_remote)

    store.close()
    sys.exit(code)


def run_app(cfg: AppConfig, store: Store, headless: bool, host: bool, accept_remote: bool) -> int:
    if headless:
        app = QtCore.QCoreApplication(sys.argv)
    else:
        from PySide6 import QtWidgets
        app = QtWidgets.QApplication(sys.argv)

    runner = TaskRunner()
    channel = StoreChannel(store, cfg.channel_retention_seconds)
    secrets = Secrets.from_env()
    coordinator = build_coordinator(cfg, store, secrets, runner, channel, accept_remote)
    stream = HostTelemetry(cfg) if host else SimulatedTelemetry(cfg)
    controller = Controller(cfg, coordinator, stream, channel,
                            reporter=build_reporter(cfg, store, secrets, runner))

    win = None
    if not headless:
        from .ui.main_window import MainWindow
        win = MainWindow(coordinator, store, cfg)
        stream.sample_ready.connect(win.update_sample)
        win.show()

    code = app.exec()

    controller.stop()
    return code
