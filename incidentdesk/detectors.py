from __future__ import annotations
from typing import Optional

from .config import AppConfig
from .models import TelemetrySample, FractureEdge


# ──────────────────────────────────────────────
# Signature predicates (shared with the classifier)
# ──────────────────────────────────────────────
def is_zombie(s: TelemetrySample, cfg: AppConfig) -> bool:
    """Idle CPU with nearly exhausted memory: the process is wedged."""
    return s.cpu < cfg.zombie_cpu_max_pct and s.ram > cfg.zombie_ram_min_pct


def is_stressed(s: TelemetrySample, cfg: AppConfig) -> bool:
    return s.cpu > cfg.stress_cpu_min_pct


def is_analysis_signature(s: TelemetrySample, cfg: AppConfig) -> bool:
    """Looser zombie shape used to start classification before confirmation."""
    return s.cpu < cfg.zombie_cpu_max_pct and s.ram > cfg.analysis_ram_min_pct


class FractureDetector:
    """
    Consecutive-tick fracture detector.

    Feed one sample per tick to observe(). It returns at most one edge:
      CONFIRMED   bad-tick counter just reached confirm_ticks (once per incident)
      PERSISTENT  counter is past confirm_ticks (every tick while still bad)
      RECOVERED   an active incident sees healthy telemetry again
    """

    def __init__(self, cfg: AppConfig):
        self.cfg = cfg
        self.count = 0
        self.active = False

    def is_bad(self, s: TelemetrySample) -> bool:
        if is_zombie(s, self.cfg):
            return True
        return self.cfg.stress_detection_enabled and is_stressed(s, self.cfg)

    def observe(self, s: TelemetrySample, allow_recovery: bool = True) -> Optional[FractureEdge]:
        """allow_recovery=False keeps an active incident open through healthy samples."""
        bad = self.is_bad(s)
        self.count = self.count + 1 if bad else 0

        if bad:
            if self.count == self.cfg.confirm_ticks and not self.active:
                self.active = True
                return FractureEdge.CONFIRMED
            if self.count > self.cfg.confirm_ticks:
                return FractureEdge.PERSISTENT
            return None

        if (self.active and allow_recovery
                and s.cpu > self.cfg.recovery_cpu_min_pct
                and s.ram < self.cfg.recovery_ram_max_pct):
            self.active = False
            return FractureEdge.RECOVERED
        return None

    def mark_active(self) -> None:
        # Incident opened by hand before telemetry confirmed it
        self.active = True

    def reset(self) -> None:
        self.count = 0
        self.active = False


class StallMonitor:
    """
    Flags a "hiccup": memory pinned high and flat for more than stall_ticks samples.

    observe() returns True when the stall begins, False when it ends,
    and None when nothing changed.
    """

    def __init__(self, cfg: AppConfig):
        self.cfg = cfg
        self._last_ram: Optional[float] = None
        self._flat_ticks = 0
        self.stalled = False

    def observe(self, s: TelemetrySample) -> Optional[bool]:
        flat = (
            self._last_ram is not None
            and s.ram > self.cfg.stall_ram_min_pct
            and abs(s.ram - self._last_ram) < self.cfg.stall_ram_delta_pct
        )
        self._last_ram = s.ram
        self._flat_ticks = self._flat_ticks + 1 if flat else 0

        if not self.stalled and self._flat_ticks > self.cfg.stall_ticks:
            self.stalled = True
            return True
        if self.stalled and not flat:
            self.stalled = False
            return False
        return None
