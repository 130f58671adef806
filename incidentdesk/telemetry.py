from __future__ import annotations
import logging
import random
import time
from collections import deque
from typing import Callable, Deque, List, Optional

import psutil
from PySide6 import QtCore

from .config import AppConfig
from .models import TelemetrySample, SimMode, SourceTag, source_value

logger = logging.getLogger(__name__)

MOCK_LOGS_NOMINAL = [
    "[INFO] kernel: [41234.12] task scheduler: nominal",
    "[INFO] systemd[1]: Started User Manager for UID 1000.",
    "[DEBUG] networking: packet flow steady at 4500 pps",
]

MOCK_LOGS_ZOMBIE = [
    "[WARN] kernel: [41240.55] rcu: INFO: rcu_sched self-detected stall on CPU",
    "[CRIT] vmem: allocation failed: out of memory",
    "[WARN] watchdog: BUG: soft lockup - CPU#0 stuck for 22s!",
    "[INFO] tasks: 2045 blocked processes detected",
]

MOCK_LOGS_STRIKE = [
    "[INFO] auth: ADMIN_OVERRIDE detected for user: red_team_lead",
    "[WARN] stress-ng: dispatching hogs: 64 cpu, 32 io, 16 vm, 8 hdd",
    "[INFO] kernel: [TEST_MODE] ADVERSARY EMULATION SEQUENCE INITIATED",
    "[WARN] thermal: CPU0: Package temperature above threshold, cpu clock throttled",
]

_SEED_POINTS = 20


class SimulatedTelemetry(QtCore.QObject):
    """
    Random-walk telemetry for one synthetic target.

    Modes:
      NOMINAL     cpu 40-60 %, ram 30-35 %
      ZOMBIE      cpu ~0-2 %, ram climbing to 99 %, threads piling up
      CPU_STRIKE  red-team stress drill, cpu 95-100 %, reverts on its own

    An ADMIN_REMOTE_STRIKE drill pins exact zombie metrics for a short pulse.
    """

    sample_ready = QtCore.Signal(object)   # TelemetrySample
    log_line     = QtCore.Signal(str)
    mode_changed = QtCore.Signal(str)
    notice       = QtCore.Signal(str)      # operator-visible stream event

    def __init__(self, cfg: AppConfig, clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None):
        super().__init__()
        self.cfg = cfg
        self.clock = clock
        self._rng = rng or random.Random()
        self.mode = SimMode.NOMINAL
        self.source = SourceTag.UNKNOWN.value
        self._mode_until: Optional[float] = None
        self.history: Deque[TelemetrySample] = deque(maxlen=cfg.history_points)
        self.logs: Deque[str] = deque(maxlen=cfg.log_lines_max)

        now = self.clock()
        for i in range(_SEED_POINTS):
            self.history.append(self._nominal(now - (_SEED_POINTS - i)))

    # ── drills ────────────────────────────────
    def start_drill(self, source) -> None:
        src = source_value(source)
        now = self.clock()
        self.source = src
        if src == SourceTag.RED_TEAM.value:
            self._set_mode(SimMode.CPU_STRIKE)
            self._mode_until = now + self.cfg.red_team_seconds
            self._push_logs(MOCK_LOGS_STRIKE)
            logger.info("[Telemetry] Red team CPU strike for %ss", self.cfg.red_team_seconds)
        elif src == SourceTag.ADMIN_REMOTE_STRIKE.value:
            self._set_mode(SimMode.ZOMBIE)
            self._mode_until = now + self.cfg.admin_pulse_seconds
            logger.info("[Telemetry] Remote strike pulse for %ss", self.cfg.admin_pulse_seconds)
        else:
            self._set_mode(SimMode.ZOMBIE)
            self._mode_until = None
            logger.info("[Telemetry] Zombie drill started by %s", src)

    def reset(self) -> None:
        if self.mode != SimMode.NOMINAL:
            logger.info("[Telemetry] Reverting to nominal")
        self.source = SourceTag.UNKNOWN.value
        self._mode_until = None
        self._set_mode(SimMode.NOMINAL)

    def _set_mode(self, mode: SimMode) -> None:
        if mode != self.mode:
            self.mode = mode
            self.mode_changed.emit(mode.value)

    # ── sampling ──────────────────────────────
    @QtCore.Slot()
    def tick(self) -> None:
        self.sample_ready.emit(self.next_sample())

    def next_sample(self, now: Optional[float] = None) -> TelemetrySample:
        now = self.clock() if now is None else now
        if self._mode_until is not None and now >= self._mode_until:
            if self.source == SourceTag.ADMIN_REMOTE_STRIKE.value:
                self._push_logs(["[INFO]: REMOTE_STRIKE_PULSE_ENDED. TELEMETRY_NORMALIZING."])
                self.notice.emit("[INFO]: REMOTE_STRIKE_PULSE_ENDED. TELEMETRY_NORMALIZING.")
            self.reset()

        if self.mode == SimMode.ZOMBIE:
            s = self._zombie(now)
        elif self.mode == SimMode.CPU_STRIKE:
            s = self._strike(now)
        else:
            s = self._nominal(now)
            self._push_logs(MOCK_LOGS_NOMINAL[:1])
        self.history.append(s)
        return s

    def recent_logs(self, n: int = 10) -> List[str]:
        return list(self.logs)[-n:]

    def _last(self) -> TelemetrySample:
        return self.history[-1]

    def _nominal(self, ts: float) -> TelemetrySample:
        r = self._rng
        return TelemetrySample(
            ts=ts,
            cpu=40 + r.random() * 20,
            ram=30 + r.random() * 5,
            threads=150 + r.randint(-5, 4),
            io_wait=2 + r.random() * 5,
            mode=SimMode.NOMINAL.value,
        )

    def _zombie(self, ts: float) -> TelemetrySample:
        prev = self._last()
        if self.source == SourceTag.ADMIN_REMOTE_STRIKE.value:
            if self._rng.random() > 0.8:
                self._push_logs(MOCK_LOGS_ZOMBIE[:1])
            return TelemetrySample(ts=ts, cpu=0.01, ram=98.0, threads=prev.threads,
                                   io_wait=0.0, mode=SimMode.ZOMBIE.value)
        self._push_logs(MOCK_LOGS_ZOMBIE[:1])
        return TelemetrySample(
            ts=ts,
            cpu=self._rng.random() * 2,
            ram=min(99.0, prev.ram + 2),
            threads=prev.threads + 5,
            io_wait=0.5,
            mode=SimMode.ZOMBIE.value,
        )

    def _strike(self, ts: float) -> TelemetrySample:
        r = self._rng
        if r.random() > 0.7:
            self._push_logs([r.choice(MOCK_LOGS_STRIKE)])
        return TelemetrySample(
            ts=ts,
            cpu=95 + r.random() * 5,
            ram=50 + r.random() * 10,
            threads=300 + r.randrange(20),
            io_wait=8 + r.random() * 4,
            mode=SimMode.CPU_STRIKE.value,
        )

    def _push_logs(self, lines: List[str]) -> None:
        for line in lines:
            self.logs.append(line)
            self.log_line.emit(line)


class HostTelemetry(QtCore.QObject):
    """Samples the real host with psutil. tick() runs on a pool thread."""

    sample_ready = QtCore.Signal(object)   # TelemetrySample
    log_line     = QtCore.Signal(str)
    mode_changed = QtCore.Signal(str)
    notice       = QtCore.Signal(str)      # operator-visible stream event

    def __init__(self, cfg: AppConfig, clock: Callable[[], float] = time.time):
        super().__init__()
        self.cfg = cfg
        self.clock = clock
        self.mode = SimMode.NOMINAL
        self.source = SourceTag.UNKNOWN.value
        self.history: Deque[TelemetrySample] = deque(maxlen=cfg.history_points)
        self.logs: Deque[str] = deque(maxlen=cfg.log_lines_max)
        # Warmup: first cpu_percent(None) call always returns 0.0
        psutil.cpu_percent(interval=None)

    def start_drill(self, source) -> None:
        # Drills cannot be injected into a real host
        src = source_value(source)
        logger.warning("[Telemetry] Drill %s not injected: sampling a live host", src)
        self.notice.emit(f"[WARN]: LIVE_HOST_TELEMETRY. DRILL_NOT_INJECTED ({src})")

    def reset(self) -> None:
        pass

    @QtCore.Slot()
    def tick(self) -> None:
        self.sample_ready.emit(self.next_sample())

    def next_sample(self, now: Optional[float] = None) -> TelemetrySample:
        now = self.clock() if now is None else now
        cpu = float(psutil.cpu_percent(interval=None))
        ram = float(psutil.virtual_memory().percent)
        times = psutil.cpu_times_percent(interval=None)
        s = TelemetrySample(
            ts=now,
            cpu=cpu,
            ram=ram,
            threads=_thread_count(),
            io_wait=float(getattr(times, "iowait", 0.0)),
        )
        self.history.append(s)
        return s

    def recent_logs(self, n: int = 10) -> List[str]:
        return list(self.logs)[-n:]


def _thread_count() -> int:
    total = 0
    for p in psutil.process_iter(["num_threads"]):
        total += p.info.get("num_threads") or 0
    return total
