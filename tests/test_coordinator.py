import logging
import sqlite3

from conftest import DeferredRunner, ResetAction, feed

from incidentdesk.channel import LocalChannel, TOPIC_CLEARED, TOPIC_TRIGGERED, make_message
from incidentdesk.models import RemediationPhase, SourceTag


def _confirm(co, clock):
    """20 healthy samples, then 4 zombie samples. Returns the detection time."""
    feed(co, clock, 45, 32, n=20)
    feed(co, clock, 1, 95, n=3)
    detected = co.state.detected_at
    feed(co, clock, 1, 95, n=1)
    return detected


def test_manual_override_during_hold(make_coordinator, clock, store):
    co = make_coordinator()
    phases = []
    co.phase_changed.connect(phases.append)

    feed(co, clock, 45, 32, n=20)
    assert phases == []
    assert not co.state.active

    feed(co, clock, 1, 95, n=2)
    assert phases == []
    feed(co, clock, 1, 95, n=1)
    detected = clock()
    assert phases == ["HOLD"]
    assert co.state.detected_at == detected
    assert co.deadline == detected + 180
    feed(co, clock, 1, 95, n=1)
    assert co.phase == RemediationPhase.HOLD

    clock.set(detected + 10)
    assert co.commit_remediation() is True
    assert phases == ["HOLD", "EXECUTING", "IDLE"]
    assert not co.state.active
    assert co.reset_action.calls == 1

    [rec] = store.list_audit()
    assert rec.manual is True
    assert rec.outcome == "REMEDIATED"
    assert rec.recovery_seconds == 10
    assert rec.human_latency_seconds == 10
    assert rec.remediation_source == SourceTag.DASHBOARD_CONSOLE.value
    assert rec.trigger_source == SourceTag.HEURISTIC.value
    assert co.shift_remediation_count() == 1


def test_hold_escalates_to_failsafe_then_forced_reset(make_coordinator, clock, store, caplog):
    co = make_coordinator()
    phases = []
    co.phase_changed.connect(phases.append)
    detected = _confirm(co, clock)

    caplog.set_level(logging.WARNING, logger="incidentdesk.coordinator")
    co.tick(detected + 179.9)
    assert co.phase == RemediationPhase.HOLD

    co.tick(detected + 180)
    assert co.phase == RemediationPhase.FAILSAFE
    assert co.deadline == detected + 300
    for t in range(181, 300):
        co.tick(detected + t)
    assert co.phase == RemediationPhase.FAILSAFE
    closed = [r for r in caplog.records if "FORENSIC_WINDOW_CLOSED" in r.getMessage()]
    assert len(closed) == 1
    assert co.reset_action.calls == 0

    clock.set(detected + 300)
    co.tick(detected + 300)
    assert phases == ["HOLD", "FAILSAFE", "EXECUTING", "IDLE"]
    [rec] = store.list_audit()
    assert rec.manual is False
    assert rec.remediation_source == SourceTag.AUTO_FAILSAFE.value
    assert rec.recovery_seconds == 300
    assert rec.cognitive_load == 10
    assert any("FAILSAFE" in m.subject for m in co.alert_channel.sent)


def test_missed_ticks_do_not_skip_failsafe(make_coordinator, clock):
    co = make_coordinator()
    detected = _confirm(co, clock)
    # one very late tick only moves HOLD -> FAILSAFE, with a fresh deadline
    co.tick(detected + 1000)
    assert co.phase == RemediationPhase.FAILSAFE
    assert co.deadline == detected + 1000 + 120
    assert co.reset_action.calls == 0


def test_recovery_clears_incident_without_executor(make_coordinator, clock, store, caplog):
    co = make_coordinator()
    _confirm(co, clock)
    assert co.phase == RemediationPhase.HOLD

    caplog.set_level(logging.WARNING, logger="incidentdesk.coordinator")
    feed(co, clock, 45, 32)
    assert co.phase == RemediationPhase.IDLE
    assert not co.state.active
    assert co.state.detected_at is None
    assert co.deadline is None
    assert co.reset_action.calls == 0
    assert store.list_audit() == []
    assert any("no audit record" in r.getMessage() for r in caplog.records)


def test_cooldown_rejects_automated_trigger_once(make_coordinator, clock, store, caplog):
    co = make_coordinator()
    detected = _confirm(co, clock)
    clock.set(detected + 10)
    co.commit_remediation()
    reset_at = co.state.last_reset_at
    assert reset_at == detected + 10

    caplog.set_level(logging.WARNING, logger="incidentdesk.coordinator")
    clock.set(reset_at + 97)
    feed(co, clock, 1, 95, n=3)
    assert co.state.active
    assert co.phase == RemediationPhase.IDLE
    records = store.list_audit()
    assert [r.outcome for r in records] == ["REJECTED_COOLDOWN", "REMEDIATED"]

    feed(co, clock, 1, 95, n=5)
    assert len(store.list_audit()) == 2
    blocked = [r for r in caplog.records if "COOL_DOWN_ACTIVE" in r.getMessage()]
    assert len(blocked) == 1

    clock.set(reset_at + 299)
    feed(co, clock, 1, 95)
    assert co.phase == RemediationPhase.HOLD


def test_manual_commit_ignores_cooldown(make_coordinator, clock, store):
    co = make_coordinator()
    detected = _confirm(co, clock)
    clock.set(detected + 5)
    co.commit_remediation()

    clock.advance(30)
    assert co.commit_remediation(SourceTag.BLUE_TEAM_OOB_LINK) is True
    latest = store.list_audit()[0]
    assert latest.outcome == "REMEDIATED"
    assert latest.remediation_source == SourceTag.BLUE_TEAM_OOB_LINK.value
    assert latest.manual is True


def test_in_flight_guard_blocks_second_remediation(make_coordinator, clock, store):
    runner = DeferredRunner()
    co = make_coordinator(runner=runner)
    detected = _confirm(co, clock)
    assert co.phase == RemediationPhase.HOLD

    assert co.commit_remediation() is True
    assert co.phase == RemediationPhase.EXECUTING
    assert co.busy
    assert co.commit_remediation() is False
    assert co.cancel_incident() is False

    feed(co, clock, 1, 95, n=3)
    co.tick(detected + 1000)
    assert co.phase == RemediationPhase.EXECUTING
    assert store.list_audit() == []

    runner.release_all()
    assert co.phase == RemediationPhase.IDLE
    assert co.reset_action.calls == 1
    assert len(store.list_audit()) == 1


def test_executor_failure_keeps_incident_and_blocks_auto_retry(make_coordinator, clock, store, caplog):
    co = make_coordinator(reset=ResetAction(ok=False))
    failures = []
    co.command_failed.connect(failures.append)
    detected = _confirm(co, clock)

    caplog.set_level(logging.ERROR, logger="incidentdesk.coordinator")
    clock.set(detected + 20)
    co.commit_remediation()
    assert co.phase == RemediationPhase.IDLE
    assert co.state.active
    assert co.state.remediation_failed
    assert co.state.last_reset_at == detected + 20
    assert len(failures) == 1
    assert any("RESET_FAILED" in r.getMessage() for r in caplog.records)
    assert store.list_audit()[0].outcome == "FAILED"

    clock.set(detected + 1000)
    feed(co, clock, 1, 95, n=3)
    assert co.phase == RemediationPhase.IDLE
    assert co.reset_action.calls == 1

    co.reset_action.ok = True
    assert co.commit_remediation() is True
    assert not co.state.active
    assert store.list_audit()[0].outcome == "REMEDIATED"


def test_cancel_closes_incident_without_audit(make_coordinator, clock, store):
    co = make_coordinator()
    cleared = []
    co.strike_cleared.connect(lambda: cleared.append(True))
    _confirm(co, clock)
    assert co.cancel_incident() is True
    assert co.phase == RemediationPhase.IDLE
    assert not co.state.active
    assert cleared == [True]
    assert store.list_audit() == []


def test_scheduled_drill_bypasses_human_gate(make_coordinator, clock, store):
    co = make_coordinator()
    dispatched = []
    co.strike_dispatched.connect(dispatched.append)
    result = co.trigger_incident(SourceTag.AUTO_SCHEDULER)
    assert result.dispatched
    assert dispatched == [SourceTag.AUTO_SCHEDULER.value]

    feed(co, clock, 1, 95, n=3, mode="ZOMBIE")
    assert co.phase == RemediationPhase.IDLE
    [rec] = store.list_audit()
    assert rec.remediation_source == SourceTag.AUTO_SCHEDULED.value
    assert rec.trigger_source == SourceTag.AUTO_SCHEDULER.value
    assert rec.drill_id.startswith("Z-")
    assert rec.trigger_type == "AUTO"


def test_autonomous_shift_bypasses_human_gate(make_coordinator, clock, store):
    co = make_coordinator(shift="3RD_SHIFT")
    _confirm(co, clock)
    [rec] = store.list_audit()
    assert rec.remediation_source == SourceTag.AUTO_THIRD_SHIFT.value
    assert rec.shift_id == 3
    assert rec.manual is False


def test_queued_strike_dispatches_after_settle_delay(make_coordinator, clock):
    co = make_coordinator()
    dispatched, depths = [], []
    co.strike_dispatched.connect(dispatched.append)
    co.queue_changed.connect(depths.append)
    detected = _confirm(co, clock)

    result = co.trigger_incident("X")
    assert not result.dispatched
    assert result.depth == 1
    assert co.queue_depth == 1

    clock.set(detected + 30)
    co.commit_remediation()
    assert not co.busy

    free_at = clock()
    co.tick(free_at)
    co.tick(free_at + 9.9)
    assert dispatched == []
    co.tick(free_at + 10)
    assert dispatched == ["X"]
    assert co.queue_depth == 0
    assert depths == [1, 0]
    assert co.state.source == "X"


def test_pre_confirmation_analysis_is_debounced(make_coordinator, clock):
    co = make_coordinator()
    ready = []
    co.classification_ready.connect(ready.append)
    # cpu<5 and ram>80 starts analysis, but ram<=90 never confirms a fracture
    feed(co, clock, 2, 85, n=10)
    assert len(ready) == 1
    assert ready[0].status == "NOMINAL"
    assert not co.state.active
    feed(co, clock, 2, 85, n=1)
    assert len(ready) == 2


def test_stall_flag_reaches_audit_record(make_coordinator, clock, store, cfg):
    cfg.stall_ticks = 3
    co = make_coordinator()
    stalls = []
    co.stall_changed.connect(stalls.append)
    feed(co, clock, 1, 95, n=5)
    assert co.phase == RemediationPhase.HOLD
    assert stalls == [True]

    clock.advance(5)
    co.commit_remediation()
    assert store.list_audit()[0].stalled is True

    feed(co, clock, 45, 32)
    assert stalls == [True, False]


def test_contexts_converge_over_channel(make_coordinator, clock):
    bus = LocalChannel()
    a = make_coordinator(channel=bus, context_id="ctx-a")
    b = make_coordinator(channel=bus, context_id="ctx-b")

    detected = _confirm(a, clock)
    assert a.state.active
    assert b.remote_active
    assert b.global_active
    assert not b.state.active
    assert not b.trigger_incident(SourceTag.DASHBOARD_MANUAL).dispatched

    clock.set(detected + 10)
    a.commit_remediation()
    assert not b.remote_active


def test_clear_and_trigger_converge_in_any_order(make_coordinator, clock):
    trig = make_message(TOPIC_TRIGGERED, "X", "ctx-a", sent_at=100.0, incident_id="Z-1")
    clear = make_message(TOPIC_CLEARED, "X", "ctx-a", sent_at=101.0, incident_id="Z-1")

    for order in ([trig, clear], [clear, trig], [trig, clear, trig, clear]):
        co = make_coordinator(context_id="observer")
        for msg in order:
            co.handle_message(msg)
        assert not co.remote_active

    retrig = make_message(TOPIC_TRIGGERED, "X", "ctx-a", sent_at=102.0, incident_id="Z-2")
    for order in ([clear, retrig], [retrig, clear]):
        co = make_coordinator(context_id="observer")
        for msg in order:
            co.handle_message(msg)
        assert co.remote_active


def test_same_timestamp_tie_resolves_to_cleared(make_coordinator):
    trig = make_message(TOPIC_TRIGGERED, "X", "ctx-a", sent_at=100.0, incident_id="Z-1")
    clear = make_message(TOPIC_CLEARED, "X", "ctx-a", sent_at=100.0, incident_id="Z-1")
    for order in ([trig, clear], [clear, trig]):
        co = make_coordinator(context_id="observer")
        for msg in order:
            co.handle_message(msg)
        assert not co.remote_active


def test_remote_strike_request_only_when_accepted(make_coordinator):
    request = make_message(TOPIC_TRIGGERED, SourceTag.ADMIN_REMOTE_STRIKE, "admin-console")

    deaf = make_coordinator(context_id="deaf")
    seen = []
    deaf.strike_dispatched.connect(seen.append)
    deaf.handle_message(request)
    assert seen == []

    co = make_coordinator(context_id="listener", accept_remote_triggers=True)
    co.strike_dispatched.connect(seen.append)
    co.handle_message(request)
    co.handle_message(request)
    assert seen == [SourceTag.ADMIN_REMOTE_STRIKE.value]


def test_uplink_failure_starts_heartbeat(make_coordinator, clock):
    from conftest import RecordingChannel
    channel = RecordingChannel(success=False)
    co = make_coordinator(alert_channel=channel)
    statuses = []
    co.status_changed.connect(statuses.append)
    detected = _confirm(co, clock)
    assert "UPLINK_FAILURE" in statuses

    sent = len(channel.sent)
    co.tick(detected + 16)
    assert len(channel.sent) == sent + 1
    assert channel.sent[-1].priority == 1

    channel.success = True
    co.tick(detected + 40)
    assert co.status.value == "C2_FRACTURE_DETECTED"
    assert co.resync_uplink() is True


def test_shift_rotation_resets_counter(make_coordinator, clock, store):
    shifts = {"current": "1ST_SHIFT"}
    co = make_coordinator()
    co.shift_fn = lambda _ts=None: shifts["current"]
    detected = _confirm(co, clock)
    clock.set(detected + 10)
    co.commit_remediation()
    assert co.shift_remediation_count() == 1

    shifts["current"] = "2ND_SHIFT"
    co.tick(clock())
    assert co.shift == "2ND_SHIFT"
    assert co.shift_remediation_count() == 0
    assert store.get_meta("current_shift") == "2ND_SHIFT"


def _locked(*a, **kw):
    raise sqlite3.OperationalError("database is locked")


def _run_jobs_for(runner, fn):
    """Complete only the queued jobs whose callable is `fn`."""
    for job in [j for j in runner.jobs if j[0] is fn]:
        runner.jobs.remove(job)
        target, callback = job
        callback(target(), None)


def test_locked_database_does_not_strand_the_guard(make_coordinator, clock, store, monkeypatch):
    co = make_coordinator()
    detected = _confirm(co, clock)
    monkeypatch.setattr(store, "append_audit", _locked)
    monkeypatch.setattr(store, "add_timeline", _locked)
    monkeypatch.setattr(store, "set_meta", _locked)

    clock.set(detected + 10)
    assert co.commit_remediation() is True
    assert co.phase == RemediationPhase.IDLE
    assert not co.state.active
    assert not co.busy

    assert co.commit_remediation() is True
    assert co.phase == RemediationPhase.IDLE
    assert co.reset_action.calls == 2


def test_failed_reset_with_locked_database_accepts_manual_retry(make_coordinator, clock, store, monkeypatch):
    co = make_coordinator(reset=ResetAction(ok=False))
    detected = _confirm(co, clock)
    monkeypatch.setattr(store, "append_audit", _locked)

    clock.set(detected + 10)
    assert co.commit_remediation() is True
    assert co.phase == RemediationPhase.IDLE
    assert co.state.active
    assert co.state.remediation_failed

    co.reset_action.ok = True
    assert co.commit_remediation() is True
    assert not co.state.active
    assert co.phase == RemediationPhase.IDLE


def test_late_classification_is_dropped_after_close(make_coordinator, clock):
    runner = DeferredRunner()
    co = make_coordinator(runner=runner)
    ready = []
    co.classification_ready.connect(ready.append)
    detected = _confirm(co, clock)

    clock.set(detected + 10)
    assert co.commit_remediation() is True
    _run_jobs_for(runner, co.reset_action)
    assert not co.state.active

    runner.release_all()
    assert ready == []
    assert co.classification is None

    feed(co, clock, 45, 32, n=5)
    assert co.status.value == "NOMINAL"
    assert co.classification is None
    assert not co.busy


def test_healthy_sample_during_reset_keeps_failed_incident_open(make_coordinator, clock):
    runner = DeferredRunner()
    co = make_coordinator(runner=runner, reset=ResetAction(ok=False))
    detected = _confirm(co, clock)

    clock.set(detected + 10)
    assert co.commit_remediation() is True
    assert co.phase == RemediationPhase.EXECUTING
    feed(co, clock, 45, 32, n=1)
    assert co.state.active
    assert co.detector.active

    runner.release_all()
    assert co.phase == RemediationPhase.IDLE
    assert co.state.active
    assert co.state.remediation_failed

    feed(co, clock, 45, 32, n=1)
    assert not co.state.active
    assert not co.detector.active
