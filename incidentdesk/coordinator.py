from __future__ import annotations
import dataclasses
import logging
import math
import sqlite3
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from PySide6 import QtCore

from .channel import TOPIC_TRIGGERED, TOPIC_CLEARED, make_message
from .classifier import heuristic_confidence, HeuristicClassifier
from .config import AppConfig
from .detectors import FractureDetector, StallMonitor, is_analysis_signature, is_stressed, is_zombie
from .executor import RemediationExecutor, ExecutionRequest, ExecutionOutcome, DEFAULT_COMMAND
from .models import (
    TelemetrySample, IncidentState, IncidentMessage, Classification, StrikeQueueEntry,
    DispatchResult, RemediationPhase, FractureEdge, SystemStatus, SimMode, SourceTag,
    UPLINK_STATUSES, source_value, is_adversary_source,
)
from .notifications import AlertBroadcaster, uplink_status, alert_success
from .scheduler import current_shift, shift_id, DrillScheduler
from .store import Store
from .traffic import StrikeTrafficController

logger = logging.getLogger(__name__)

SHIFT_COUNTER_KEY = "shift_remediation_count"
SHIFT_KEY = "current_shift"
_SEEN_MAX = 1024


class IncidentCoordinator(QtCore.QObject):
    """
    Owns the one incident this process is watching.

    Telemetry goes in through observe(); time advances through tick(now).
    Operator actions are trigger_incident(), commit_remediation(),
    cancel_incident() and resync_uplink(). Everything else (executor,
    classifier, broadcaster, channel) is a collaborator whose completions
    come back through the runner on this object's thread.

    Lifecycle: IDLE -> HOLD -> FAILSAFE -> EXECUTING -> IDLE. EXECUTING is
    the in-flight guard; nothing starts a second remediation while it holds.
    """

    phase_changed        = QtCore.Signal(str)
    status_changed       = QtCore.Signal(str)
    queue_changed        = QtCore.Signal(int)
    incident_changed     = QtCore.Signal(object)   # IncidentState (copy)
    classification_ready = QtCore.Signal(object)   # Classification
    alerts_sent          = QtCore.Signal(list)     # List[ChannelResult]
    remediation_finished = QtCore.Signal(object)   # ExecutionOutcome
    command_failed       = QtCore.Signal(str)
    log_line             = QtCore.Signal(str)
    strike_dispatched    = QtCore.Signal(str)      # source
    strike_cleared       = QtCore.Signal()
    stall_changed        = QtCore.Signal(bool)

    def __init__(self, cfg: AppConfig, store: Store, *,
                 classifier,
                 broadcaster: AlertBroadcaster,
                 executor: RemediationExecutor,
                 runner,
                 channel=None,
                 clock: Callable[[], float] = time.time,
                 shift_fn: Callable[[Optional[float]], str] = current_shift,
                 scheduler: Optional[DrillScheduler] = None,
                 context_id: Optional[str] = None,
                 accept_remote_triggers: bool = False):
        super().__init__()
        self.cfg = cfg
        self.store = store
        self.classifier = classifier
        self.broadcaster = broadcaster
        self.executor = executor
        self.runner = runner
        self.channel = channel
        self.clock = clock
        self.shift_fn = shift_fn
        self.scheduler = scheduler or DrillScheduler()
        self.context_id = context_id or uuid.uuid4().hex[:12]
        self.accept_remote_triggers = accept_remote_triggers

        self.detector = FractureDetector(cfg)
        self.stall = StallMonitor(cfg)
        self.traffic = StrikeTrafficController(
            cfg.settle_delay_seconds,
            is_busy=lambda: self.busy,
            dispatch=self._dispatch,
            on_change=self.queue_changed.emit,
        )
        self._fallback = HeuristicClassifier(cfg)

        self._state = IncidentState()
        self._phase = RemediationPhase.IDLE
        self._deadline: Optional[float] = None
        self._mode = SimMode.NOMINAL.value
        self._strike_pending = False
        self._drill_id = "NONE"
        self._last_sample: Optional[TelemetrySample] = None
        self._classification: Optional[Classification] = None
        self._analyses = 0
        self._generation = 0
        self._last_analysis_at: Optional[float] = None
        self._alert_success = True
        self._uplink: Optional[SystemStatus] = None
        self._uplink_outstanding = False
        self._last_heartbeat = 0.0
        self._status = SystemStatus.NOMINAL
        self._logs: Deque[str] = deque(maxlen=cfg.log_lines_max)

        # cross-context view: origin -> (sent_at, active, source)
        self._remote: Dict[str, Tuple[float, bool, str]] = {}
        self._seen: Set[str] = set()
        self._seen_order: Deque[str] = deque()

        self._shift = self.shift_fn(self.clock())
        self.store.set_meta(SHIFT_KEY, self._shift)

        if self.channel is not None:
            self.channel.subscribe(self.handle_message)

    # ══════════════════════════════════════════
    # Read-only view
    # ══════════════════════════════════════════
    @property
    def phase(self) -> RemediationPhase:
        return self._phase

    @property
    def state(self) -> IncidentState:
        return dataclasses.replace(self._state)

    @property
    def status(self) -> SystemStatus:
        return self._status

    @property
    def classification(self) -> Optional[Classification]:
        return self._classification

    @property
    def queue_depth(self) -> int:
        return self.traffic.depth

    @property
    def shift(self) -> str:
        return self._shift

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def recent_logs(self) -> List[str]:
        return list(self._logs)

    @property
    def remote_active(self) -> bool:
        return any(active for _, active, _ in self._remote.values())

    @property
    def global_active(self) -> bool:
        return self._state.active or self.remote_active

    @property
    def busy(self) -> bool:
        return (self._strike_pending
                or self._mode != SimMode.NOMINAL.value
                or self._state.active
                or self._analyses > 0
                or self._phase != RemediationPhase.IDLE
                or self.remote_active)

    def remaining_seconds(self, now: Optional[float] = None) -> Optional[int]:
        if self._deadline is None:
            return None
        now = self.clock() if now is None else now
        return max(0, math.ceil(self._deadline - now))

    def shift_remediation_count(self) -> int:
        raw = self.store.get_meta(SHIFT_COUNTER_KEY)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    # ══════════════════════════════════════════
    # Inputs
    # ══════════════════════════════════════════
    @QtCore.Slot(object)
    def observe(self, sample: TelemetrySample) -> None:
        """Feed one telemetry sample. Called once per stream tick."""
        self._last_sample = sample
        self._strike_pending = False
        prev_mode, self._mode = self._mode, sample.mode
        if prev_mode != sample.mode:
            if sample.mode == SimMode.NOMINAL.value:
                self._drill_ended()
            self._refresh_status()

        stall = self.stall.observe(sample)
        if stall is True:
            self._log("[ADVISORY]: NOMINAL_STALL_DETECTED // OBSERVING_RECOVERY_POTENTIAL")
            self.stall_changed.emit(True)
        elif stall is False:
            self._log("[INFO]: SYSTEM_STALL_CLEARED. MEMORY_FLUX_RETURNED.")
            self.stall_changed.emit(False)

        # A reset in flight must not consume the recovery edge
        edge = self.detector.observe(sample, allow_recovery=self._phase != RemediationPhase.EXECUTING)
        self._state.consecutive_bad_ticks = self.detector.count
        if edge is FractureEdge.CONFIRMED:
            self._on_confirmed(sample)
        elif edge is FractureEdge.PERSISTENT:
            self._on_persistent(sample)
        elif edge is FractureEdge.RECOVERED:
            self._on_recovered()

        self._maybe_analyze(sample)

    @QtCore.Slot(str)
    def note_log(self, line: str) -> None:
        """Kernel/stream log line; becomes classifier context."""
        self._logs.append(line)

    @QtCore.Slot(str)
    def note_event(self, line: str) -> None:
        """Stream event the operator should see (timeline and log panel)."""
        self._log(line, kind="system")

    @QtCore.Slot()
    def tick(self, now: Optional[float] = None) -> None:
        """Advance timers. Deadlines are compared, never decremented."""
        now = self.clock() if now is None else now
        self._check_shift(now)

        if self._phase == RemediationPhase.HOLD and now >= self._deadline:
            self._set_phase(RemediationPhase.FAILSAFE, deadline=now + self.cfg.failsafe_seconds)
            self._log("[WARNING]: FORENSIC_WINDOW_CLOSED. OPERATOR_INACTIVITY_DETECTED. "
                      f"EXTENDING_GRACE_PERIOD_{self.cfg.failsafe_seconds}S.", level=logging.WARNING)
        elif self._phase == RemediationPhase.FAILSAFE and now >= self._deadline:
            self._log("[SENTINEL]: FAILSAFE_TIMER_EXPIRED. HUMAN_UNRESPONSIVE. EXECUTING_FORCED_REBOOT.",
                      level=logging.WARNING)
            sample = self._snapshot(now)
            self.runner.submit(lambda: self.broadcaster.broadcast_failsafe(sample))
            self._execute(sample, manual=False, source=SourceTag.AUTO_FAILSAFE.value, now=now)

        if (self._uplink == SystemStatus.UPLINK_FAILURE
                and not self._uplink_outstanding
                and now - self._last_heartbeat >= self.cfg.heartbeat_seconds):
            self._ping("Heartbeat: Auto-Reconnection Successful")

        self.traffic.poll(now)

    def run_scheduled_drills(self, now: Optional[float] = None) -> Optional[DispatchResult]:
        if not self.cfg.scheduled_drills_enabled:
            return None
        now = self.clock() if now is None else now
        if self.scheduler.due(now):
            return self.trigger_incident(SourceTag.AUTO_SCHEDULER)
        return None

    # ══════════════════════════════════════════
    # Operator actions
    # ══════════════════════════════════════════
    def trigger_incident(self, source=SourceTag.DASHBOARD_MANUAL) -> DispatchResult:
        result = self.traffic.request(source, self.clock())
        if not result.dispatched:
            self._log(f"[TRAFFIC]: AGENT_BUSY. STRIKE_QUEUED ({source_value(source)}) "
                      f"QUEUE_DEPTH: {result.depth}", kind="traffic")
        return result

    def commit_remediation(self, source=SourceTag.DASHBOARD_CONSOLE) -> bool:
        """Human override: remediate now, whatever the phase."""
        src = source_value(source)
        if self._phase == RemediationPhase.EXECUTING:
            logger.info("[Coordinator] Commit from %s ignored: remediation already in flight", src)
            return False
        now = self.clock()
        sample = self._snapshot(now)

        if self._phase in (RemediationPhase.HOLD, RemediationPhase.FAILSAFE):
            self._log(f"[CMD]: FORENSIC_HOLD_OVERRIDDEN_BY_USER ({src}).")
        else:
            self._log("[CMD]: MANUAL_REMEDIATION_TRIGGERED...")
            if not self._state.active:
                self._open_incident(now, default_source=src)
                self.detector.mark_active()
                self._publish(TOPIC_TRIGGERED)
            self._enter_hold(now)
            self._broadcast(sample, "MANUAL_RESET_TRIGGERED")
        return self._execute(sample, manual=True, source=src, now=now)

    def cancel_incident(self) -> bool:
        if self._phase == RemediationPhase.EXECUTING:
            logger.info("[Coordinator] Cancel ignored: remediation in flight")
            return False
        was_active = self._state.active
        if was_active:
            self._publish(TOPIC_CLEARED)
        self._log("[CMD]: INCIDENT_CANCELLED_BY_OPERATOR. NO_REMEDIATION_RECORDED.")
        self._close_incident()
        self._set_phase(RemediationPhase.IDLE)
        self.strike_cleared.emit()
        self._emit_incident()
        return True

    def resync_uplink(self) -> bool:
        if self._uplink_outstanding:
            return False
        self._log("[CMD]: INITIATING_MANUAL_HANDSHAKE...", kind="uplink")
        self._ping("Manual Resync: Connection Verified")
        return True

    # ══════════════════════════════════════════
    # Cross-context channel
    # ══════════════════════════════════════════
    def handle_message(self, msg: IncidentMessage) -> None:
        if msg.origin == self.context_id or msg.message_id in self._seen:
            return
        self._remember(msg.message_id)

        if msg.topic == TOPIC_TRIGGERED and not msg.incident_id:
            if self.accept_remote_triggers:
                self._log(f"[ALERT]: REMOTE_C2_COMMAND_RECEIVED from {msg.origin} ({msg.source})")
                self.trigger_incident(msg.source)
            else:
                logger.debug("[Coordinator] Ignoring remote strike request from %s", msg.origin)
            return

        active = msg.topic == TOPIC_TRIGGERED
        prev = self._remote.get(msg.origin)
        if prev is not None:
            prev_ts, prev_active, _ = prev
            # last write wins; on a tie "cleared" wins
            if msg.sent_at < prev_ts or (msg.sent_at == prev_ts and not prev_active):
                return
        self._remote[msg.origin] = (msg.sent_at, active, msg.source)
        logger.info("[Coordinator] Context %s reports incident %s (%s)",
                    msg.origin, "active" if active else "cleared", msg.source)
        self._emit_incident()

    def _remember(self, message_id: str) -> None:
        self._seen.add(message_id)
        self._seen_order.append(message_id)
        if len(self._seen_order) > _SEEN_MAX:
            self._seen.discard(self._seen_order.popleft())

    def _publish(self, topic: str) -> None:
        if self.channel is None:
            return
        incident_id = self._state.incident_id or self._new_incident_id()
        try:
            self.channel.publish(make_message(
                topic, self._state.source, self.context_id,
                sent_at=self.clock(), incident_id=incident_id,
            ))
        except sqlite3.Error as e:
            logger.error("[Coordinator] Could not publish %s for %s: %s", topic, incident_id, e)

    # ══════════════════════════════════════════
    # Detector edges
    # ══════════════════════════════════════════
    def _on_confirmed(self, sample: TelemetrySample) -> None:
        if self._phase == RemediationPhase.EXECUTING:
            logger.debug("[Coordinator] Confirmation ignored: remediation in flight")
            return
        now = self.clock()
        self._open_incident(now, default_source=SourceTag.HEURISTIC.value)
        logger.warning("[Coordinator] C2 fracture confirmed (%s, source=%s)",
                       self._state.incident_id, self._state.source)
        self._log("[SYSTEM]: FRACTURE_CONFIRMED. BROADCASTING_ON_ALL_CHANNELS.")
        self._broadcast(sample, "ZOMBIE_KERNEL_DETECTED")
        self._classify(sample)
        self._publish(TOPIC_TRIGGERED)
        if self._phase == RemediationPhase.IDLE:
            self._request_automated_hold(sample, now)
        self._emit_incident()

    def _on_persistent(self, sample: TelemetrySample) -> None:
        if self._phase == RemediationPhase.IDLE and self._state.active:
            self._request_automated_hold(sample, self.clock())

    def _on_recovered(self) -> None:
        if self._phase == RemediationPhase.EXECUTING or not self._state.active:
            return
        logger.warning("[Coordinator] Telemetry recovered; incident %s closed without remediation "
                       "(no audit record written)", self._state.incident_id)
        self._log("[INFO]: TELEMETRY_RECOVERED. INCIDENT_CLOSED_WITHOUT_REMEDIATION.")
        self._publish(TOPIC_CLEARED)
        self._close_incident()
        self._set_phase(RemediationPhase.IDLE)
        self._emit_incident()

    def _request_automated_hold(self, sample: TelemetrySample, now: float) -> bool:
        st = self._state
        if st.remediation_failed:
            logger.debug("[Coordinator] Automated retry blocked after failed remediation")
            return False

        if st.last_reset_at is not None and now - st.last_reset_at < self.cfg.cooldown_seconds:
            remaining = math.ceil(self.cfg.cooldown_seconds - (now - st.last_reset_at))
            if st.cooldown_rejected:
                logger.debug("[Coordinator] Cooldown still active (%ss)", remaining)
                return False
            st.cooldown_rejected = True
            self._log(f"[WARN]: AUTO_RESET_BLOCKED. COOL_DOWN_ACTIVE ({remaining}s remaining)",
                      level=logging.WARNING)
            self.executor.record_rejection(
                self._request(sample, now, manual=False, source=SourceTag.HEURISTIC.value))
            return False

        if st.source == SourceTag.AUTO_SCHEDULER.value and self.cfg.scheduled_bypass_enabled:
            self._log("[SENTINEL]: SCHEDULED_AUTOMATION_PROTOCOL_ACTIVE. BYPASSING_HUMAN_GATE.")
            return self._execute(sample, manual=False, source=SourceTag.AUTO_SCHEDULED.value, now=now)

        if self._shift in self.cfg.autonomous_shifts:
            self._log(f"[AUTONOMOUS]: {self._shift} Sentinel has bypassed the human gate.")
            return self._execute(sample, manual=False, source=SourceTag.AUTO_THIRD_SHIFT.value, now=now)

        self._enter_hold(now)
        return True

    # ══════════════════════════════════════════
    # Phase / execution
    # ══════════════════════════════════════════
    def _enter_hold(self, now: float) -> None:
        self._set_phase(RemediationPhase.HOLD, deadline=now + self.cfg.hold_seconds)
        self._log(f"[CMD]: INITIATING FORENSIC HOLD ({self.cfg.hold_seconds}s)...")

    def _set_phase(self, phase: RemediationPhase, deadline: Optional[float] = None) -> None:
        self._deadline = deadline
        if phase != self._phase:
            logger.info("[Coordinator] Phase %s -> %s", self._phase.value, phase.value)
            self._phase = phase
            self.phase_changed.emit(phase.value)

    def _execute(self, sample: TelemetrySample, manual: bool, source: str,
                 now: Optional[float] = None) -> bool:
        if self._phase == RemediationPhase.EXECUTING:
            return False
        now = self.clock() if now is None else now
        req = self._request(sample, now, manual, source)
        self._set_phase(RemediationPhase.EXECUTING)
        self._log(f"[CMD]: gcloud compute instances reset {self.cfg.instance_id} "
                  f"--zone {self.cfg.zone} ... EXECUTING")
        self.executor.execute(req, self._on_executed)
        return True

    def _on_executed(self, outcome: ExecutionOutcome) -> None:
        now = self.clock()
        st = self._state
        st.last_reset_at = now
        # Release the in-flight guard before anything touches the shared database
        self._set_phase(RemediationPhase.IDLE)

        if outcome.success:
            rec = outcome.record
            self._publish(TOPIC_CLEARED)
            self._close_incident()
            self.strike_cleared.emit()
            self._log(f"[SYSTEM]: RECOVERY_COMPLETE. SOURCE: {rec.remediation_source}. "
                      f"TTR: {rec.recovery_seconds}s")
        else:
            st.remediation_failed = True
            self.command_failed.emit("[ERROR]: CLOUD_API_FAILURE. RESET ABORTED.")
            self._log("[CRITICAL]: RESET_FAILED. MANUAL INTERVENTION REQUIRED. ENFORCING_COOLDOWN_PROTOCOL.",
                      level=logging.ERROR)

        self._bump_shift_counter()
        self.remediation_finished.emit(outcome)
        self._emit_incident()

    def _request(self, sample: TelemetrySample, now: float, manual: bool, source: str) -> ExecutionRequest:
        st = self._state
        c = self._classification
        commands = c.suggested_commands if c is not None else []
        return ExecutionRequest(
            incident_id=st.incident_id or self._new_incident_id(),
            snapshot=sample,
            manual=manual,
            source=source,
            trigger_source=st.source,
            detected_at=st.detected_at if st.detected_at is not None else now,
            started_at=now,
            shift_id=shift_id(self._shift),
            drill_id=self._drill_id,
            classifier_match=self._classifier_match(sample),
            confidence=c.confidence if c is not None else heuristic_confidence(sample.cpu, sample.ram),
            stalled=self.stall.stalled,
            queue_delay_seconds=st.queue_delay_s,
            queue_depth=self.traffic.depth,
            alert_success=self._alert_success,
            command=commands[0] if commands else DEFAULT_COMMAND,
        )

    # ══════════════════════════════════════════
    # Traffic dispatch
    # ══════════════════════════════════════════
    def _dispatch(self, entry: StrikeQueueEntry, now: float) -> None:
        st = self._state
        self._strike_pending = True
        st.source = entry.source
        st.queue_delay_s = now - entry.enqueued_at
        st.incident_id = self._new_incident_id()
        self._drill_id = st.incident_id
        self._log(f"[ALERT]: SIGNAL_SOURCE_IDENTIFIED: {entry.source}", kind="traffic")
        self._publish(TOPIC_TRIGGERED)
        self.strike_dispatched.emit(entry.source)

    def _drill_ended(self) -> None:
        # Drill reverted to nominal without ever becoming an incident
        if self._state.active or self._phase != RemediationPhase.IDLE:
            return
        st = self._state
        st.source = SourceTag.UNKNOWN.value
        st.incident_id = ""
        st.queue_delay_s = 0.0
        self._drill_id = "NONE"
        self._classification = None
        self._generation += 1

    # ══════════════════════════════════════════
    # Classifier / broadcaster plumbing
    # ══════════════════════════════════════════
    def _maybe_analyze(self, sample: TelemetrySample) -> None:
        if self.detector.active:
            return
        now = self.clock()
        if (self._last_analysis_at is not None
                and now - self._last_analysis_at < self.cfg.analysis_debounce_seconds):
            return
        if is_analysis_signature(sample, self.cfg) or is_stressed(sample, self.cfg):
            self._last_analysis_at = now
            self._classify(sample)

    def _classify(self, sample: TelemetrySample) -> None:
        logs = list(self._logs)[-10:]
        generation = self._generation
        self._analyses += 1
        self.runner.submit(lambda: self.classifier.classify(sample, logs),
                           lambda result, error: self._on_classified(sample, logs, result, error, generation))

    def _on_classified(self, sample: TelemetrySample, logs: List[str],
                       result: Optional[Classification], error, generation: int) -> None:
        self._analyses = max(0, self._analyses - 1)
        if generation != self._generation:
            logger.info("[Coordinator] Dropping classification for a closed incident")
            return
        if error is not None or result is None:
            result = self._fallback.classify(sample, logs, note="Classifier error. Fallback Heuristics Engaged.")
        self._classification = result
        self.classification_ready.emit(result)
        self._refresh_status()

    def _classifier_match(self, sample: TelemetrySample) -> bool:
        c = self._classification
        if c is None:
            return False
        if sample.mode == SimMode.CPU_STRIKE.value:
            return c.status in (SystemStatus.WARNING.value, SystemStatus.CRITICAL.value)
        if sample.mode == SimMode.ZOMBIE.value or is_zombie(sample, self.cfg):
            return c.status == SystemStatus.ZOMBIE_KERNEL.value
        return False

    def _broadcast(self, sample: TelemetrySample, label: str) -> None:
        match = self._classifier_match(sample)
        self.runner.submit(lambda: self.broadcaster.broadcast(sample, label, None, match),
                           self._on_broadcast)

    def _on_broadcast(self, results, error) -> None:
        results = results if error is None and results is not None else []
        self._alert_success = alert_success(results)
        self._uplink = uplink_status(results)
        if self._uplink == SystemStatus.UPLINK_FAILURE:
            self._last_heartbeat = self.clock()
            self._log("[CRITICAL_FAILURE]: SATELLITE UPLINK LOST. NOTIFICATION DROPPED.",
                      level=logging.WARNING, kind="uplink")
        elif self._uplink == SystemStatus.UPLINK_SIMULATION:
            self._log("[UPLINK_SIM]: Link degradation detected. Local simulation mode. "
                      "ALERT_DISPATCHED_TO_ADMIN_ENCRYPTED_NODE", kind="uplink")
        else:
            self._log("[CRITICAL]: UPLINK_ESTABLISHED. ALERT_DISPATCHED_TO_SRE_NODE", kind="uplink")
        self.alerts_sent.emit(results)
        self._refresh_status()

    def _ping(self, message: str) -> None:
        self._uplink_outstanding = True
        self._uplink = SystemStatus.UPLINK_RECONNECTING
        self._refresh_status()
        self.runner.submit(lambda: self.broadcaster.ping(message), self._on_ping)

    def _on_ping(self, result, error) -> None:
        self._uplink_outstanding = False
        self._last_heartbeat = self.clock()
        if error is None and result is not None and result.success:
            self._uplink = None
            self._log("[SUCCESS]: HANDSHAKE_ACCEPTED. LINK_SECURE.", kind="uplink")
        else:
            self._uplink = SystemStatus.UPLINK_FAILURE
            self._log("[FAILURE]: HANDSHAKE_REJECTED. GATEWAY_TIMEOUT.", level=logging.WARNING, kind="uplink")
        self._refresh_status()

    # ══════════════════════════════════════════
    # Incident record helpers
    # ══════════════════════════════════════════
    def _open_incident(self, now: float, default_source: str) -> None:
        st = self._state
        st.active = True
        if st.detected_at is None:
            st.detected_at = now
        if not st.incident_id:
            st.incident_id = self._new_incident_id()
        if st.source == SourceTag.UNKNOWN.value:
            st.source = default_source
        self._refresh_status()

    def _close_incident(self) -> None:
        last_reset = self._state.last_reset_at
        self._state = IncidentState(last_reset_at=last_reset)
        self._generation += 1
        self.detector.reset()
        self._deadline = None
        self._classification = None
        self._drill_id = "NONE"
        if self._uplink not in (SystemStatus.UPLINK_FAILURE, SystemStatus.UPLINK_RECONNECTING):
            self._uplink = None
        self._refresh_status()

    def _snapshot(self, now: float) -> TelemetrySample:
        if self._last_sample is not None:
            return self._last_sample
        return TelemetrySample(ts=now, cpu=0.0, ram=0.0, threads=0, io_wait=0.0)

    def _new_incident_id(self) -> str:
        return f"Z-{uuid.uuid4().hex[:8].upper()}"

    def _check_shift(self, now: float) -> None:
        shift = self.shift_fn(now)
        if shift == self._shift:
            return
        self._log(f"[SYSTEM]: SHIFT_ROTATION_COMPLETE // NEW_WATCH: {shift}", kind="system")
        self._shift = shift
        self.store.set_meta(SHIFT_KEY, shift)
        self.store.set_meta(SHIFT_COUNTER_KEY, "0")

    def _bump_shift_counter(self) -> None:
        # Last write wins across processes
        try:
            self.store.set_meta(SHIFT_COUNTER_KEY, str(self.shift_remediation_count() + 1))
        except sqlite3.Error as e:
            logger.error("[Coordinator] Shift counter update failed: %s", e)

    def _refresh_status(self) -> None:
        st = self._state
        if st.active:
            if st.source == SourceTag.AUTO_SCHEDULER.value:
                status = SystemStatus.SCHEDULED_PROTOCOL
            elif is_adversary_source(st.source):
                status = SystemStatus.ADVERSARY_EMULATION
            elif self._uplink in UPLINK_STATUSES:
                status = self._uplink
            else:
                status = SystemStatus.C2_FRACTURE_DETECTED
        elif self._uplink in (SystemStatus.UPLINK_FAILURE, SystemStatus.UPLINK_RECONNECTING):
            status = self._uplink
        elif self._mode == SimMode.CPU_STRIKE.value:
            status = SystemStatus.WARNING
        elif self._classification is not None:
            status = SystemStatus(self._classification.status)
        else:
            status = SystemStatus.NOMINAL
        if status != self._status:
            self._status = status
            self.status_changed.emit(status.value)

    def _emit_incident(self) -> None:
        self.incident_changed.emit(self.state)

    def _log(self, line: str, level: int = logging.INFO, kind: str = "incident") -> None:
        logger.log(level, "[Coordinator] %s", line)
        self._logs.append(line)
        self.log_line.emit(line)
        try:
            self.store.add_timeline(int(self.clock()), kind, line)
        except sqlite3.Error as e:
            logger.error("[Coordinator] Timeline write failed: %s", e)
