from __future__ import annotations
import html
import logging
import secrets as _tokens
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence
from urllib.parse import urlencode

import requests

from .config import AppConfig, Secrets
from .models import ChannelResult, SystemStatus, TelemetrySample, SourceTag

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
NTFY_URL = "https://ntfy.sh/{topic}"

SIMULATED_FAILOVER = "SIMULATED_FAILOVER"


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    short: str        # push / SMS body
    html: str         # e-mail body
    priority: int = 5


def _simulated(channel: str) -> ChannelResult:
    return ChannelResult(channel=channel, success=True, simulated=True, status=SIMULATED_FAILOVER)


# ──────────────────────────────────────────────
# Channels: unconfigured or failing → simulated success
# ──────────────────────────────────────────────
class NtfyChannel:
    name = "ntfy"

    def __init__(self, topic: str, timeout: float, session: Optional[requests.Session] = None):
        self.topic = topic
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, msg: AlertMessage) -> ChannelResult:
        if not self.topic:
            return _simulated(self.name)
        try:
            resp = self.session.post(
                NTFY_URL.format(topic=self.topic),
                data=msg.short.encode("utf-8"),
                headers={"Title": "King-HUD", "Priority": str(msg.priority)},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("[Uplink] ntfy failed (%s); switching to simulation", e)
            return _simulated(self.name)
        return ChannelResult(channel=self.name, success=True, simulated=False, status=str(resp.status_code))


class EmailChannel:
    name = "email"

    def __init__(self, secrets: Secrets, timeout: float, session: Optional[requests.Session] = None):
        self.secrets = secrets
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, msg: AlertMessage) -> ChannelResult:
        if not self.secrets.sendgrid_api_key:
            logger.info("[Uplink] SENDGRID_API_KEY not set; e-mail simulated")
            return _simulated(self.name)
        try:
            resp = self.session.post(
                SENDGRID_URL,
                json={
                    "personalizations": [{"to": [{"email": self.secrets.sendgrid_recipient}]}],
                    "from": {"email": self.secrets.sendgrid_sender},
                    "subject": msg.subject,
                    "content": [{"type": "text/html", "value": msg.html}],
                },
                headers={"Authorization": f"Bearer {self.secrets.sendgrid_api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("[Uplink] SendGrid unreachable (%s); switching to simulation", e)
            return _simulated(self.name)
        if resp.status_code != 202:
            logger.warning("[Uplink] SendGrid returned %s; switching to simulation", resp.status_code)
            return _simulated(self.name)
        return ChannelResult(channel=self.name, success=True, simulated=False, status="202")


class SmsChannel:
    name = "sms"

    def __init__(self, secrets: Secrets, timeout: float, session: Optional[requests.Session] = None):
        self.secrets = secrets
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, msg: AlertMessage) -> ChannelResult:
        s = self.secrets
        if not s.twilio_account_sid or not s.twilio_auth_token:
            logger.info("[Uplink] Twilio credentials not set; SMS simulated")
            return _simulated(self.name)
        try:
            resp = self.session.post(
                TWILIO_URL.format(sid=s.twilio_account_sid),
                data={"To": s.twilio_to_number, "From": s.twilio_from_number, "Body": msg.short},
                auth=(s.twilio_account_sid, s.twilio_auth_token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("[Uplink] Twilio unreachable (%s); switching to simulation", e)
            return _simulated(self.name)
        if not resp.ok:
            logger.warning("[Uplink] Twilio returned %s; switching to simulation", resp.status_code)
            return _simulated(self.name)
        return ChannelResult(channel=self.name, success=True, simulated=False, status=str(resp.status_code))


# ──────────────────────────────────────────────
# Broadcaster
# ──────────────────────────────────────────────
class AlertBroadcaster:
    """
    Fans an incident alert out to every channel in parallel.

    broadcast() never raises: a channel that blows up is reported as a
    failed ChannelResult and the rest still go out.
    """

    def __init__(self, cfg: AppConfig, channels: Sequence, link_base: str = "incidentdesk://remediate"):
        self.cfg = cfg
        self.channels = list(channels)
        self.link_base = link_base

    @classmethod
    def from_secrets(cls, cfg: AppConfig, secrets: Secrets) -> "AlertBroadcaster":
        session = requests.Session()
        t = cfg.http_timeout_seconds
        return cls(cfg, [
            NtfyChannel(secrets.ntfy_topic, t, session),
            EmailChannel(secrets, t, session),
            SmsChannel(secrets, t, session),
        ])

    def broadcast(self, sample: TelemetrySample, status_label: str,
                  hypothesis: Optional[str] = None, classifier_match: bool = False) -> List[ChannelResult]:
        msg = self.compose(sample, status_label, hypothesis, classifier_match)
        logger.info("[Uplink] Broadcasting %s on %d channel(s)", status_label, len(self.channels))
        return self._fan_out(msg)

    def broadcast_failsafe(self, sample: TelemetrySample) -> List[ChannelResult]:
        short = (f"Fail-safe engaged on {self.cfg.instance_id}: operator unresponsive, "
                 f"forcing autonomous reset. CPU {sample.cpu:.1f}% RAM {sample.ram:.1f}%")
        msg = AlertMessage(
            subject=f"[FAILSAFE]: KING-HUD_{self.cfg.instance_id}_AUTONOMOUS_REMEDIATION",
            short=short,
            html=f"<p>{html.escape(short)}</p>",
        )
        return self._fan_out(msg)

    def ping(self, message: str) -> ChannelResult:
        """Low-priority handshake on the first channel (heartbeat / resync)."""
        if not self.channels:
            return _simulated("none")
        ch = self.channels[0]
        try:
            return ch.send(AlertMessage(subject=message, short=message, html=message, priority=1))
        except Exception as e:
            logger.warning("[Uplink] Handshake on %s failed: %s", getattr(ch, "name", ch), e)
            return ChannelResult(channel=getattr(ch, "name", "?"), success=False, simulated=False, status=str(e))

    def remediation_link(self) -> str:
        query = urlencode({
            "instance": self.cfg.instance_id,
            "token": _tokens.token_urlsafe(16),
            "source": SourceTag.BLUE_TEAM_OOB_LINK.value,
        })
        return f"{self.link_base}?{query}"

    def compose(self, sample: TelemetrySample, status_label: str,
                hypothesis: Optional[str] = None, classifier_match: bool = False) -> AlertMessage:
        inst = self.cfg.instance_id
        subject = ("[UNSCHEDULED_STRIKE_DETECTED]: PURPLE_TEAM_FORENSIC_REQUIRED"
                   if hypothesis else f"[CRITICAL]: KING-HUD_{inst}_ALERT")
        short = (f"{status_label} detected on {inst}. CPU: {sample.cpu:.1f}%. "
                 f"Initiating auto-recovery.")
        link = self.remediation_link()
        body = [
            "<div style=\"font-family: monospace;\">",
            "<h2>CRITICAL INFRASTRUCTURE EVENT</h2>",
            f"<p><strong>INSTANCE:</strong> {html.escape(inst)}</p>",
            f"<p><strong>ZONE:</strong> {html.escape(self.cfg.zone)}</p>",
            f"<p><strong>STATUS:</strong> {html.escape(status_label)}</p>",
            f"<p>CPU: <strong>{sample.cpu:.1f}%</strong> RAM: <strong>{sample.ram:.1f}%</strong></p>",
            f"<p>Classifier match: {str(classifier_match).lower()}</p>",
            f"<p><a href=\"{html.escape(link)}\">EXECUTE EMERGENCY REBOOT</a></p>",
        ]
        if hypothesis:
            body.append("<div><strong>[FORENSIC_HYPOTHESIS]:</strong><br/>"
                        f"{html.escape(hypothesis).replace(chr(10), '<br/>')}</div>")
        body.append("</div>")
        return AlertMessage(subject=subject, short=short, html="\n".join(body))

    def _fan_out(self, msg: AlertMessage) -> List[ChannelResult]:
        if not self.channels:
            return []
        results: List[ChannelResult] = []
        with ThreadPoolExecutor(max_workers=len(self.channels)) as pool:
            futures = [(ch, pool.submit(ch.send, msg)) for ch in self.channels]
            for ch, fut in futures:
                name = getattr(ch, "name", type(ch).__name__)
                try:
                    results.append(fut.result())
                except Exception as e:
                    logger.error("[Uplink] Channel %s crashed: %s", name, e)
                    results.append(ChannelResult(channel=name, success=False, simulated=False, status=str(e)))
        return results


def uplink_status(results: Sequence[ChannelResult]) -> SystemStatus:
    """Status label for the incident panel after a broadcast."""
    if not results or not any(r.success for r in results):
        return SystemStatus.UPLINK_FAILURE
    if any(r.success and not r.simulated for r in results):
        return SystemStatus.C2_FRACTURE_DETECTED
    return SystemStatus.UPLINK_SIMULATION


def alert_success(results: Sequence[ChannelResult]) -> bool:
    return any(r.success for r in results)
