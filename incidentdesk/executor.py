from __future__ import annotations
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from .config import AppConfig, Secrets
from .models import AuditRecord, TelemetrySample, is_adversary_source
from .store import Store

logger = logging.getLogger(__name__)

GITLAB_TRIGGER_URL = "https://gitlab.com/api/v4/projects/{project}/trigger/pipeline"
DEFAULT_COMMAND = "gcloud compute instances reset --all"


class SimulatedCloudReset:
    """
    Stand-in for the compute API `instances.reset` call.

    Blocks for the configured latency and reports success; `fail=True`
    makes every call report failure.
    """

    def __init__(self, cfg: AppConfig, sleep: Callable[[float], None] = time.sleep, fail: bool = False):
        self.cfg = cfg
        self._sleep = sleep
        self.fail = fail

    @property
    def endpoint(self) -> str:
        c = self.cfg
        return (f"https://compute.googleapis.com/compute/v1/projects/{c.project_id}"
                f"/zones/{c.zone}/instances/{c.instance_id}/reset")

    def __call__(self) -> bool:
        logger.info("[Executor] POST %s", self.endpoint)
        self._sleep(self.cfg.reset_latency_seconds)
        if self.fail:
            logger.error("[Executor] Cloud API failure for %s", self.cfg.instance_id)
            return False
        logger.info("[Executor] 200 OK - reset completed for %s", self.cfg.instance_id)
        return True


class GitLabActuation:
    """Triggers the remediation pipeline. Simulated when no token is set."""

    def __init__(self, cfg: AppConfig, secrets: Secrets, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.secrets = secrets
        self.session = session or requests.Session()

    def trigger(self, command: str) -> bool:
        if not self.secrets.gitlab_project_id or not self.secrets.gitlab_trigger_token:
            logger.info("[Executor] GitLab actuation simulated: %s", command)
            return True
        try:
            resp = self.session.post(
                GITLAB_TRIGGER_URL.format(project=self.secrets.gitlab_project_id),
                json={
                    "token": self.secrets.gitlab_trigger_token,
                    "ref": "main",
                    "variables": {"REMEDIATION_CMD": command},
                },
                timeout=self.cfg.http_timeout_seconds,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("[Executor] Actuation link severed: %s", e)
            return False
        logger.info("[Executor] Actuation signal received by GitLab agent")
        return True


@dataclass(frozen=True)
class ExecutionRequest:
    incident_id: str
    snapshot: TelemetrySample
    manual: bool
    source: str                  # remediation source
    trigger_source: str          # who opened the incident
    detected_at: float
    started_at: float
    shift_id: int
    drill_id: str = "NONE"
    classifier_match: bool = False
    confidence: int = 0
    stalled: bool = False
    queue_delay_seconds: float = 0.0
    queue_depth: int = 0
    alert_success: bool = True
    command: str = DEFAULT_COMMAND


@dataclass(frozen=True)
class ExecutionOutcome:
    success: bool
    duration_ms: int
    record: AuditRecord


def cognitive_load(source: str, recovery_seconds: float) -> int:
    if "AUTO_SENTINEL" in source:
        return 10
    if 0 < recovery_seconds < 60:
        return 1
    return 5


def build_record(req: ExecutionRequest, resolved_at: float, outcome: str) -> AuditRecord:
    remediation_source = req.source
    recovery = max(0.0, resolved_at - req.detected_at)
    latency = max(0.0, req.started_at - req.detected_at)
    return AuditRecord(
        incident_id=req.incident_id,
        detected_at=req.detected_at,
        resolved_at=resolved_at,
        trigger_source=req.trigger_source,
        remediation_source=remediation_source,
        manual=req.manual,
        outcome=outcome,
        cpu=req.snapshot.cpu,
        ram=req.snapshot.ram,
        recovery_seconds=int(recovery),
        human_latency_seconds=int(latency),
        shift_id=req.shift_id,
        drill_id=req.drill_id,
        classifier_match=req.classifier_match,
        confidence=req.confidence,
        cognitive_load=cognitive_load(remediation_source, recovery),
        stalled=req.stalled,
        queue_delay_seconds=int(req.queue_delay_seconds),
        queue_depth=req.queue_depth,
        adversary=is_adversary_source(req.trigger_source) or is_adversary_source(remediation_source),
        alert_success=req.alert_success,
    )


class RemediationExecutor:
    """
    Performs the terminal reset and writes exactly one audit record.

    The reset runs through `runner` (thread pool in the app, inline in
    tests); `on_done` receives an ExecutionOutcome on the runner's
    callback thread. Guarding against a second concurrent call is the
    caller's job.
    """

    def __init__(self, reset_action: Callable[[], bool], store: Store, runner,
                 clock: Callable[[], float] = time.time,
                 actuation: Optional[GitLabActuation] = None):
        self.reset_action = reset_action
        self.store = store
        self.runner = runner
        self.clock = clock
        self.actuation = actuation

    def execute(self, req: ExecutionRequest, on_done: Callable[[ExecutionOutcome], None]) -> None:
        logger.info("[Executor] Executing remediation for %s (source=%s, manual=%s)",
                    req.incident_id, req.source, req.manual)
        if not req.manual and self.actuation is not None:
            self.runner.submit(lambda: self.actuation.trigger(req.command))

        def _done(result, error):
            ok = bool(result) and error is None
            if error is not None:
                logger.error("[Executor] Reset action raised: %s", error)
            resolved = self.clock()
            record = build_record(req, resolved, "REMEDIATED" if ok else "FAILED")
            self._append(record)
            on_done(ExecutionOutcome(
                success=ok,
                duration_ms=int((resolved - req.started_at) * 1000),
                record=record,
            ))

        self.runner.submit(self.reset_action, _done)

    def record_rejection(self, req: ExecutionRequest) -> AuditRecord:
        """Cooldown rejections are audited too, never silently dropped."""
        record = build_record(req, req.started_at, "REJECTED_COOLDOWN")
        self._append(record)
        return record

    def _append(self, record: AuditRecord) -> None:
        # The caller still gets its outcome when the shared database is busy
        try:
            self.store.append_audit(record)
        except sqlite3.Error as e:
            logger.error("[Executor] Audit write for %s failed (%s outcome lost): %s",
                         record.incident_id, record.outcome, e)
