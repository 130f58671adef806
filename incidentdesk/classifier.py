from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from .config import AppConfig
from .detectors import is_zombie
from .models import (
    TelemetrySample, Classification, Intervention, SystemStatus, DixonStage, AuditRecord,
)

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

SYSTEM_INSTRUCTION = """\
You are the King-HUD Agent, a cognitive-aware SRE tool that identifies
"Spatial Disorientation" in distributed systems.

1. Look for "Zombie" patterns: near 0% CPU with high RAM residency (>80%) and
   stalled execution threads (the "C2 Fracture" pattern).
2. Classify the incident into Dixon stages: WIPEOUT (sudden loss of control),
   UNDERTOW (slow-burning failure such as leaks or zombie processes),
   RECOVERY (stabilizing).
3. If a Zombie Kernel pattern is detected, suggest the "Safe-Restart" protocol.
4. If logs contain "[TEST_MODE]" or "RED TEAM", classify as WARNING, note that
   this is a PLANNED ADVERSARY EMULATION and do not recommend a restart.
"""

_STAGES = [s.value for s in DixonStage]

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "status": {"type": "STRING", "enum": ["NOMINAL", "WARNING", "CRITICAL", "ZOMBIE_KERNEL"]},
        "analysis": {"type": "STRING"},
        "dixonStage": {"type": "STRING", "enum": _STAGES},
        "interventions": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "confidence": {"type": "STRING", "enum": ["HIGH", "LOW"]},
                    "protocol": {"type": "STRING"},
                    "action": {"type": "STRING"},
                    "cliCommand": {"type": "STRING"},
                    "description": {"type": "STRING"},
                },
            },
        },
    },
    "required": ["status", "analysis"],
}

HANDOVER_INSTRUCTION = """\
You are the Senior Forensic Lead overseeing the King-HUD SRE console.
Synthesize the last 24 hours of remediation records into a Shift Handover
report. Tone: authoritative, brief, tactical. Output HTML only: <h3> for
sections, <ul> for lists, <strong> for emphasis.
"""

_HANDOVER_MAX_RECORDS = 50

_ADVERSARY_MARKERS = ("[TEST_MODE]", "RED TEAM")


def heuristic_confidence(cpu: float, ram: float) -> int:
    """Static-threshold confidence score (percent) for the forensic record."""
    score = 15
    if cpu < 5 and ram > 80:
        score = 75
    if cpu < 2 and ram > 90:
        score = 95
    if cpu > 90:
        score = 80
    return score


def confidence_label(score: int) -> str:
    if score <= 30:
        return f"SPECULATIVE_FRAGMENTS ({score}%)"
    if score <= 70:
        return f"CORRELATED_ANOMALY ({score}%)"
    return f"VERIFIED_C2_FRACTURE ({score}%)"


class HeuristicClassifier:
    """Local, synchronous classifier. Never fails."""

    def __init__(self, cfg: AppConfig):
        self.cfg = cfg

    def classify(self, sample: TelemetrySample, log_lines: Sequence[str],
                 note: str = "Local heuristics engaged.") -> Classification:
        score = heuristic_confidence(sample.cpu, sample.ram)

        if is_zombie(sample, self.cfg):
            reset_cmd = (f"gcloud compute instances reset {self.cfg.instance_id} "
                         f"--zone {self.cfg.zone}")
            return Classification(
                status=SystemStatus.ZOMBIE_KERNEL.value,
                stage=DixonStage.UNDERTOW.value,
                confidence=score,
                analysis=f"{note} Pattern match indicates Zombie Kernel (Type 1 SD).",
                interventions=[Intervention(
                    protocol="Safe-Restart",
                    action="Initiate Hard Reboot",
                    cli_command=reset_cmd,
                    confidence="HIGH",
                    description="Heuristic detected Zombie Kernel signature.",
                )],
                fallback=True,
                ts=sample.ts,
            )

        if any(m in line for line in log_lines for m in _ADVERSARY_MARKERS):
            return Classification(
                status=SystemStatus.WARNING.value,
                stage=DixonStage.NONE.value,
                confidence=score,
                analysis=f"{note} PLANNED ADVERSARY EMULATION in progress. No restart advised.",
                fallback=True,
                ts=sample.ts,
            )

        if sample.cpu > self.cfg.stress_cpu_min_pct:
            return Classification(
                status=SystemStatus.WARNING.value,
                stage=DixonStage.NONE.value,
                confidence=score,
                analysis=f"{note} Sustained CPU saturation.",
                fallback=True,
                ts=sample.ts,
            )

        return Classification(
            status=SystemStatus.NOMINAL.value,
            stage=DixonStage.NONE.value,
            confidence=score,
            analysis=f"{note} No anomaly signature.",
            fallback=True,
            ts=sample.ts,
        )


class GeminiClassifier:
    """
    Remote classifier over the Gemini REST API.

    Any transport or payload problem degrades to the heuristic classifier;
    classify() never raises.
    """

    def __init__(self, cfg: AppConfig, api_key: str,
                 session: Optional[requests.Session] = None,
                 fallback: Optional[HeuristicClassifier] = None):
        self.cfg = cfg
        self.api_key = api_key
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.fallback = fallback or HeuristicClassifier(cfg)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def classify(self, sample: TelemetrySample, log_lines: Sequence[str]) -> Classification:
        if not self.configured:
            return self.fallback.classify(sample, log_lines, note="Classifier offline. Local heuristics engaged.")
        try:
            return self._remote(sample, log_lines)
        except requests.RequestException as e:
            logger.warning("[Classifier] Gemini unreachable (%s); using fallback heuristics", e)
        except (ValueError, KeyError, TypeError, IndexError) as e:
            logger.warning("[Classifier] Malformed Gemini response (%s); using fallback heuristics", e)
        return self.fallback.classify(sample, log_lines, note="AI Link Failure. Fallback Heuristics Engaged.")

    def _remote(self, sample: TelemetrySample, log_lines: Sequence[str]) -> Classification:
        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [{"role": "user", "parts": [{"text": build_prompt(sample, log_lines)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }
        resp = self.session.post(
            GEMINI_URL.format(model=self.cfg.classifier_model),
            params={"key": self.api_key},
            json=body,
            timeout=self.cfg.http_timeout_seconds,
        )
        resp.raise_for_status()
        text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
        return parse_classification(json.loads(text), sample)

    def handover(self, records: Sequence[AuditRecord], summary: Dict[str, Any]) -> Optional[str]:
        """HTML shift-handover narrative, or None when offline or the call fails."""
        if not self.configured:
            return None
        body = {
            "systemInstruction": {"parts": [{"text": HANDOVER_INSTRUCTION}]},
            "contents": [{"role": "user", "parts": [{"text": build_handover_prompt(records, summary)}]}],
        }
        try:
            resp = self.session.post(
                GEMINI_URL.format(model=self.cfg.classifier_model),
                params={"key": self.api_key},
                json=body,
                timeout=self.cfg.http_timeout_seconds,
            )
            resp.raise_for_status()
            text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
        except requests.RequestException as e:
            logger.warning("[Classifier] Handover narrative unavailable (%s)", e)
            return None
        except (ValueError, KeyError, TypeError, IndexError) as e:
            logger.warning("[Classifier] Malformed handover response (%s)", e)
            return None
        return str(text).replace("```html", "").replace("```", "").strip() or None


def build_prompt(sample: TelemetrySample, log_lines: Sequence[str]) -> str:
    logs = "\n".join(list(log_lines)[-5:])
    return (
        "CURRENT TELEMETRY:\n"
        f"CPU: {sample.cpu:.2f}%\n"
        f"RAM: {sample.ram:.2f}%\n"
        f"Active Threads: {sample.threads}\n"
        f"IO Wait: {sample.io_wait}%\n\n"
        f"RECENT LOGS:\n{logs}\n\n"
        "Analyze this state. If CPU is < 5% and RAM > 80%, identify as ZOMBIE_KERNEL. "
        "Otherwise, assess as NOMINAL, WARNING, or CRITICAL based on standard SRE metrics."
    )


def parse_classification(data: Dict[str, Any], sample: TelemetrySample) -> Classification:
    status = str(data["status"])
    if status not in ("NOMINAL", "WARNING", "CRITICAL", "ZOMBIE_KERNEL"):
        raise ValueError(f"unexpected status {status!r}")
    stage = str(data.get("dixonStage") or DixonStage.NONE.value)
    if stage not in _STAGES:
        stage = DixonStage.NONE.value
    interventions: List[Intervention] = []
    for item in data.get("interventions") or []:
        interventions.append(Intervention(
            protocol=str(item.get("protocol", "")),
            action=str(item.get("action", "")),
            cli_command=str(item.get("cliCommand", "")),
            confidence=str(item.get("confidence", "LOW")),
            description=str(item.get("description", "")),
        ))
    return Classification(
        status=status,
        stage=stage,
        confidence=heuristic_confidence(sample.cpu, sample.ram),
        analysis=str(data["analysis"]),
        interventions=interventions,
        fallback=False,
        ts=sample.ts,
    )


def build_handover_prompt(records: Sequence[AuditRecord], summary: Dict[str, Any]) -> str:
    rows = [
        f"{r.incident_id},{r.trigger_type},{r.remediation_type},{r.recovery_seconds},"
        f"{r.shift_id},{r.outcome},{int(r.adversary)}"
        for r in list(records)[:_HANDOVER_MAX_RECORDS]
    ]
    return (
        "[SHIFT_DATA_INGEST] incident,trigger,remediation,ttr_sec,shift,outcome,adversary\n"
        + "\n".join(rows)
        + "\n\n[CALCULATED_METRICS_24H]\n"
        f"- TOTAL_FRACTURES: {summary['total_fractures']}\n"
        f"- AVG_TTR: {summary['avg_ttr']}s\n"
        f"- HUMAN_INTERVENTIONS: {summary['human_count']}\n"
        f"- AGENT_INTERVENTIONS: {summary['agent_count']}\n"
        f"- EFFICIENCY_RATIO: {summary['efficiency_ratio']}\n"
    )
