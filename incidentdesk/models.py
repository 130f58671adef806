from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SourceTag(str, Enum):
    """Who initiated (or resolved) an incident.

    Sources arriving over the channel may carry arbitrary strings, so every
    API that takes a source accepts a plain ``str`` as well.
    """
    UNKNOWN             = "UNKNOWN"
    DASHBOARD_MANUAL    = "DASHBOARD_MANUAL"
    DASHBOARD_CONSOLE   = "DASHBOARD_CONSOLE"
    ADMIN_CONSOLE       = "ADMIN_CONSOLE_MANUAL"
    ADMIN_REMOTE_STRIKE = "ADMIN_REMOTE_STRIKE"
    RED_TEAM            = "RED_TEAM_MANUAL"
    AUTO_SCHEDULER      = "AUTO_SCHEDULER"
    BLUE_TEAM_OOB_LINK  = "BLUE_TEAM_OOB_LINK"
    HEURISTIC           = "AUTOMATED_HEURISTIC_TRIGGER"
    AUTO_FAILSAFE       = "AUTO_SENTINEL_FAILSAFE"
    AUTO_SCHEDULED      = "AUTO_SENTINEL_SCHEDULED"
    AUTO_THIRD_SHIFT    = "AUTO_REMEDIATION_3RD_SHIFT"


def source_value(source) -> str:
    return source.value if isinstance(source, SourceTag) else str(source)


def is_adversary_source(source) -> bool:
    src = source_value(source).upper()
    return "ADMIN" in src or "RED_TEAM" in src or "STRIKE" in src


def trigger_type(source) -> str:
    """AUTO or MANUAL, following the audit log's classification rules."""
    src = source_value(source).upper()
    if "AUTO_SCHEDULER" in src:
        return "AUTO"
    if is_adversary_source(src):
        return "MANUAL"
    if "SENTINEL" in src or "AUTONOMOUS" in src or "AUTO_REMEDIATION" in src:
        return "AUTO"
    return "MANUAL"


class SimMode(str, Enum):
    NOMINAL    = "NOMINAL"
    ZOMBIE     = "ZOMBIE"
    CPU_STRIKE = "CPU_STRIKE"


class RemediationPhase(str, Enum):
    IDLE      = "IDLE"
    HOLD      = "HOLD"
    FAILSAFE  = "FAILSAFE"
    EXECUTING = "EXECUTING"


class FractureEdge(str, Enum):
    CONFIRMED  = "CONFIRMED"     # fires once per incident
    PERSISTENT = "PERSISTENT"    # self-heal trigger, repeats while bad
    RECOVERED  = "RECOVERED"     # active incident cleared by telemetry


class SystemStatus(str, Enum):
    NOMINAL              = "NOMINAL"
    WARNING              = "WARNING"
    CRITICAL             = "CRITICAL"
    ZOMBIE_KERNEL        = "ZOMBIE_KERNEL"
    C2_FRACTURE_DETECTED = "C2_FRACTURE_DETECTED"
    UPLINK_FAILURE       = "UPLINK_FAILURE"
    UPLINK_RECONNECTING  = "UPLINK_RECONNECTING"
    UPLINK_SIMULATION    = "UPLINK_SIMULATION"
    SCHEDULED_PROTOCOL   = "EXECUTING_SCHEDULED_SENTINEL_PROTOCOL"
    ADVERSARY_EMULATION  = "EMERGENCY_ADVERSARY_EMULATION_IN_PROGRESS"


UPLINK_STATUSES = (
    SystemStatus.UPLINK_FAILURE,
    SystemStatus.UPLINK_RECONNECTING,
    SystemStatus.UPLINK_SIMULATION,
)


class DixonStage(str, Enum):
    NONE     = "NONE"
    WIPEOUT  = "WIPEOUT"
    UNDERTOW = "UNDERTOW"
    RECOVERY = "RECOVERY"


@dataclass(frozen=True)
class TelemetrySample:
    ts: float
    cpu: float
    ram: float
    threads: int
    io_wait: float
    mode: str = SimMode.NOMINAL.value


@dataclass
class IncidentState:
    active: bool = False
    detected_at: Optional[float] = None
    source: str = SourceTag.UNKNOWN.value
    consecutive_bad_ticks: int = 0
    last_reset_at: Optional[float] = None
    incident_id: str = ""
    queue_delay_s: float = 0.0
    remediation_failed: bool = False
    cooldown_rejected: bool = False


@dataclass(frozen=True)
class StrikeQueueEntry:
    enqueued_at: float
    source: str


@dataclass(frozen=True)
class DispatchResult:
    dispatched: bool
    depth: int
    entry: StrikeQueueEntry


@dataclass(frozen=True)
class Intervention:
    protocol: str
    action: str
    cli_command: str = ""
    confidence: str = "LOW"   # HIGH|LOW
    description: str = ""


@dataclass(frozen=True)
class Classification:
    status: str
    stage: str
    confidence: int           # 0..100
    analysis: str
    interventions: List[Intervention] = field(default_factory=list)
    fallback: bool = False
    ts: float = 0.0

    @property
    def suggested_commands(self) -> List[str]:
        return [i.cli_command for i in self.interventions if i.cli_command]


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    simulated: bool
    status: str = ""


@dataclass(frozen=True)
class AuditRecord:
    incident_id: str
    detected_at: float
    resolved_at: float
    trigger_source: str
    remediation_source: str
    manual: bool
    outcome: str              # REMEDIATED|FAILED|REJECTED_COOLDOWN
    cpu: float
    ram: float
    recovery_seconds: int
    human_latency_seconds: int
    shift_id: int
    drill_id: str
    classifier_match: bool
    confidence: int
    cognitive_load: int
    stalled: bool
    queue_delay_seconds: int
    queue_depth: int
    adversary: bool
    alert_success: bool

    @property
    def trigger_type(self) -> str:
        if self.manual:
            return "MANUAL"
        return trigger_type(self.remediation_source)

    @property
    def remediation_type(self) -> str:
        return "MANUAL_OPERATOR" if self.trigger_type == "MANUAL" else "SENTINEL_AI"


@dataclass(frozen=True)
class IncidentMessage:
    topic: str
    source: str
    origin: str
    sent_at: float
    message_id: str
    incident_id: Optional[str] = None
