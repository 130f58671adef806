from __future__ import annotations
import html
import logging
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from .config import AppConfig
from .models import AuditRecord, ChannelResult
from .notifications import AlertMessage
from .scheduler import report_due
from .store import Store

logger = logging.getLogger(__name__)

LAST_REPORT_KEY = "last_handover_report"
REPORT_SUBJECT = "KING-HUD | EOD_DEEP_ANALYSIS_REPORT"
REPORT_WINDOW_SECONDS = 24 * 3600


class HandoverReporter:
    """
    End-of-3rd-shift deep analysis e-mail.

    check() is polled with the drill scheduler. Inside the 08:00 CST hour it
    summarizes the last 24h of the audit log and mails it through `email`.
    `writer` (the remote classifier) may add a narrative; without one the
    body is the plain metrics table. The last send time lives in `meta`, so
    every dashboard on the same database sees it (last write wins).
    """

    def __init__(self, cfg: AppConfig, store: Store, email, runner,
                 writer=None, clock: Callable[[], float] = time.time):
        self.cfg = cfg
        self.store = store
        self.email = email
        self.runner = runner
        self.writer = writer
        self.clock = clock
        self._in_flight = False

    def last_sent(self) -> Optional[float]:
        raw = self.store.get_meta(LAST_REPORT_KEY)
        try:
            return float(raw) if raw is not None else None
        except ValueError:
            return None

    def check(self, now: Optional[float] = None) -> bool:
        """Start a report if one is due. Returns True when a send was submitted."""
        if not self.cfg.handover_report_enabled or self._in_flight:
            return False
        now = self.clock() if now is None else now
        if not report_due(now, self.last_sent()):
            return False

        since = now - REPORT_WINDOW_SECONDS
        summary = self.store.audit_summary(since=since)
        if summary["total_fractures"] == 0:
            logger.info("[Report] No activity in the last 24h to report")
            self.store.set_meta(LAST_REPORT_KEY, str(now))
            return False

        records = [r for r in self.store.list_audit(limit=1000, since=since)
                   if r.outcome != "REJECTED_COOLDOWN"]
        logger.info("[Report] 08:00 CST handover: analysing %d incident(s)", len(records))
        self._in_flight = True
        self.runner.submit(lambda: self._send(records, summary),
                           lambda result, error: self._on_sent(now, result, error))
        return True

    def _send(self, records: List[AuditRecord], summary: Dict[str, Any]) -> ChannelResult:
        narrative = self.writer.handover(records, summary) if self.writer is not None else None
        return self.email.send(AlertMessage(
            subject=REPORT_SUBJECT,
            short=(f"EOD: {summary['total_fractures']} fracture(s), avg TTR {summary['avg_ttr']}s, "
                   f"efficiency {summary['efficiency_ratio']}"),
            html=render_report(self.cfg, summary, records, narrative),
            priority=3,
        ))

    def _on_sent(self, started: float, result: Optional[ChannelResult], error) -> None:
        self._in_flight = False
        if error is not None or result is None or not result.success:
            # Not recorded as sent: the next check inside the window retries
            logger.error("[Report] Handover e-mail failed: %s", error or result)
            return
        try:
            self.store.set_meta(LAST_REPORT_KEY, str(started))
            self.store.add_timeline(int(started), "audit",
                                    f"EOD handover report dispatched ({'SIM' if result.simulated else 'SENT'})")
        except sqlite3.Error as e:
            logger.error("[Report] Could not record handover send: %s", e)
            return
        logger.info("[Report] Handover report dispatched via %s", result.channel)


def render_report(cfg: AppConfig, summary: Dict[str, Any], records: List[AuditRecord],
                  narrative: Optional[str] = None) -> str:
    metrics = [
        ("Total fractures", summary["total_fractures"]),
        ("Avg TTR", f"{summary['avg_ttr']}s"),
        ("Human interventions", summary["human_count"]),
        ("Agent interventions", summary["agent_count"]),
        ("Efficiency ratio", summary["efficiency_ratio"]),
        ("Failed", summary["failed"]),
    ]
    parts = [
        "<div style=\"font-family: monospace;\">",
        f"<h2>SHIFT HANDOVER // {html.escape(cfg.instance_id)}</h2>",
        "<table>",
    ]
    parts += [f"<tr><td>{name}</td><td><strong>{html.escape(str(value))}</strong></td></tr>"
              for name, value in metrics]
    parts.append("</table>")
    if narrative:
        # Generated HTML is embedded as-is
        parts.append(f"<div>{narrative}</div>")
    else:
        parts.append("<h3>Incidents</h3><ul>")
        parts += [
            f"<li>{html.escape(r.incident_id)}: {r.trigger_type} / {r.remediation_type}, "
            f"TTR {r.recovery_seconds}s, {r.outcome}</li>"
            for r in records[:20]
        ]
        parts.append("</ul>")
    parts.append("</div>")
    return "\n".join(parts)
