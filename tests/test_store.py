import csv
import dataclasses

import pytest

from incidentdesk.models import AuditRecord
from incidentdesk.store import CSV_HEADER, Store


def _record(**kw):
    base = dict(
        incident_id="Z-0001", detected_at=1_700_000_000.25, resolved_at=1_700_000_010.5,
        trigger_source="AUTOMATED_HEURISTIC_TRIGGER", remediation_source="DASHBOARD_CONSOLE",
        manual=True, outcome="REMEDIATED", cpu=1.234, ram=95.678,
        recovery_seconds=10, human_latency_seconds=10, shift_id=1, drill_id="NONE",
        classifier_match=True, confidence=95, cognitive_load=1, stalled=False,
        queue_delay_seconds=0, queue_depth=0, adversary=False, alert_success=True,
    )
    base.update(kw)
    return AuditRecord(**base)


def test_audit_round_trip_preserves_types(store):
    rec = _record()
    store.append_audit(rec)
    [back] = store.list_audit()
    assert back == rec
    assert back.manual is True and back.stalled is False


def test_audit_log_is_append_only(store):
    for name in dir(Store):
        assert not name.startswith(("update_audit", "delete_audit", "remove_audit"))
    store.append_audit(_record(incident_id="Z-A"))
    store.append_audit(_record(incident_id="Z-B"))
    assert [r.incident_id for r in store.list_audit()] == ["Z-B", "Z-A"]


def test_append_writes_timeline_entry(store):
    store.append_audit(_record(outcome="FAILED"))
    ts, kind, summary, _ = store.list_timeline()[0]
    assert kind == "audit"
    assert "[FAILED]" in summary


def test_csv_export_format(store, tmp_path):
    store.append_audit(_record())
    out = tmp_path / "audit.csv"
    assert store.export_audit_csv(str(out)) == 1

    with open(out, newline="", encoding="utf-8") as fh:
        rows = list(csv.reader(fh))
    assert rows[0] == CSV_HEADER
    row = dict(zip(CSV_HEADER, rows[1]))
    assert row["UTC_DATE"] == "2023-11-14"
    assert row["UTC_TIME_PRECISION"] == "22:13:20.250"
    assert row["UNIX_EPOCH"] == "1700000000250"
    assert row["TRIGGER_TYPE"] == "MANUAL"
    assert row["REMEDIATION_TYPE"] == "MANUAL_OPERATOR"
    assert row["CPU_PEAK"] == "1.23"
    assert row["RAM_PEAK"] == "95.68"
    assert row["GEMINI_HYPOTHESIS_MATCH"] == "true"
    assert row["STALL_DETECTED"] == "false"
    assert row["OUTCOME"] == "REMEDIATED"


def test_csv_export_filters_by_shift(store, tmp_path):
    for shift in (1, 2, 3, 3):
        store.append_audit(_record(shift_id=shift))
    out = tmp_path / "third.csv"
    assert store.export_audit_csv(str(out), shifts=[3]) == 2
    assert store.export_audit_csv(str(tmp_path / "all.csv")) == 4


@pytest.mark.parametrize("human,agent,ratio", [
    (2, 1, "2.00"),
    (1, 0, "INFINITE"),
    (0, 0, "0.00"),
    (0, 3, "0.00"),
])
def test_summary_efficiency_ratio(store, human, agent, ratio):
    for _ in range(human):
        store.append_audit(_record())
    for _ in range(agent):
        store.append_audit(_record(manual=False, remediation_source="AUTO_SENTINEL_FAILSAFE",
                                   recovery_seconds=300))
    s = store.audit_summary(since=0)
    assert s["efficiency_ratio"] == ratio
    assert s["human_count"] == human
    assert s["agent_count"] == agent


def test_summary_excludes_cooldown_rejections_and_counts_failures(store):
    store.append_audit(_record(recovery_seconds=10))
    store.append_audit(_record(recovery_seconds=30, outcome="FAILED"))
    store.append_audit(_record(outcome="REJECTED_COOLDOWN", manual=False,
                               remediation_source="AUTOMATED_HEURISTIC_TRIGGER"))
    s = store.audit_summary(since=0)
    assert s["total_fractures"] == 2
    assert s["avg_ttr"] == 20.0
    assert s["failed"] == 1


def test_summary_window(store):
    store.append_audit(_record(resolved_at=100.0))
    store.append_audit(dataclasses.replace(_record(), resolved_at=5000.0))
    assert store.audit_summary(since=1000.0)["total_fractures"] == 1


def test_meta_last_write_wins(store):
    assert store.get_meta("k") is None
    store.set_meta("k", "1")
    store.set_meta("k", "2")
    assert store.get_meta("k") == "2"
