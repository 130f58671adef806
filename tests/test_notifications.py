from urllib.parse import parse_qs, urlparse

import requests

from incidentdesk.config import AppConfig, Secrets
from incidentdesk.models import ChannelResult, SystemStatus, TelemetrySample
from incidentdesk.notifications import (
    AlertBroadcaster, EmailChannel, NtfyChannel, SmsChannel, alert_success, uplink_status,
)

SAMPLE = TelemetrySample(ts=0.0, cpu=1.0, ram=95.0, threads=300, io_wait=0.5)


class _Resp:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.ok = status_code < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(str(self.status_code))


class _Session:
    def __init__(self, resp=None, exc=None):
        self.resp = resp or _Resp()
        self.exc = exc
        self.posts = []

    def post(self, url, **kw):
        self.posts.append((url, kw))
        if self.exc is not None:
            raise self.exc
        return self.resp


class _Exploding:
    name = "exploding"

    def send(self, msg):
        raise RuntimeError("boom")


def test_unconfigured_channels_simulate_success():
    b = AlertBroadcaster.from_secrets(AppConfig(), Secrets())
    results = b.broadcast(SAMPLE, "ZOMBIE_KERNEL_DETECTED")
    assert [r.channel for r in results] == ["ntfy", "email", "sms"]
    assert all(r.success and r.simulated for r in results)
    assert uplink_status(results) == SystemStatus.UPLINK_SIMULATION
    assert alert_success(results)


def test_ntfy_failure_degrades_to_simulation():
    ch = NtfyChannel("topic", 1.0, session=_Session(exc=requests.Timeout("slow")))
    r = ch.send(AlertBroadcaster(AppConfig(), []).compose(SAMPLE, "X"))
    assert r.success and r.simulated


def test_ntfy_real_delivery():
    session = _Session(_Resp(200))
    r = NtfyChannel("king-hud", 1.0, session=session).send(
        AlertBroadcaster(AppConfig(), []).compose(SAMPLE, "X"))
    assert r.success and not r.simulated
    url, kw = session.posts[0]
    assert url == "https://ntfy.sh/king-hud"
    assert kw["headers"]["Priority"] == "5"


def test_email_non_202_is_simulated_and_202_is_real():
    secrets = Secrets(sendgrid_api_key="SG.x")
    msg = AlertBroadcaster(AppConfig(), []).compose(SAMPLE, "X")
    assert EmailChannel(secrets, 1.0, session=_Session(_Resp(401))).send(msg).simulated
    real = EmailChannel(secrets, 1.0, session=_Session(_Resp(202))).send(msg)
    assert real.success and not real.simulated


def test_sms_uses_basic_auth():
    secrets = Secrets(twilio_account_sid="AC1", twilio_auth_token="tok",
                      twilio_from_number="+1", twilio_to_number="+2")
    session = _Session(_Resp(201))
    r = SmsChannel(secrets, 1.0, session=session).send(
        AlertBroadcaster(AppConfig(), []).compose(SAMPLE, "X"))
    assert not r.simulated
    url, kw = session.posts[0]
    assert "/Accounts/AC1/Messages.json" in url
    assert kw["auth"] == ("AC1", "tok")


def test_crashing_channel_does_not_stop_the_others():
    ok = NtfyChannel("", 1.0)
    results = AlertBroadcaster(AppConfig(), [_Exploding(), ok]).broadcast(SAMPLE, "X")
    assert results[0].channel == "exploding" and not results[0].success
    assert results[1].success


def test_uplink_status_rules():
    real = ChannelResult("a", success=True, simulated=False)
    sim = ChannelResult("b", success=True, simulated=True)
    dead = ChannelResult("c", success=False, simulated=False)
    assert uplink_status([real, sim]) == SystemStatus.C2_FRACTURE_DETECTED
    assert uplink_status([sim, dead]) == SystemStatus.UPLINK_SIMULATION
    assert uplink_status([dead]) == SystemStatus.UPLINK_FAILURE
    assert uplink_status([]) == SystemStatus.UPLINK_FAILURE
    assert not alert_success([dead])


def test_compose_includes_hypothesis_and_oob_link():
    b = AlertBroadcaster(AppConfig(), [])
    msg = b.compose(SAMPLE, "ZOMBIE_KERNEL_DETECTED", hypothesis="heap leak\n<script>")
    assert msg.subject.startswith("[UNSCHEDULED_STRIKE_DETECTED]")
    assert "&lt;script&gt;" in msg.html
    assert "CPU: 1.0%" in msg.short

    query = parse_qs(urlparse(b.remediation_link()).query)
    assert query["source"] == ["BLUE_TEAM_OOB_LINK"]
    assert query["instance"] == ["gcp-p100-node-04"]
    assert len(query["token"][0]) >= 16


def test_ping_reports_failure_instead_of_raising():
    r = AlertBroadcaster(AppConfig(), [_Exploding()]).ping("Heartbeat")
    assert not r.success
    assert AlertBroadcaster(AppConfig(), []).ping("Heartbeat").simulated
