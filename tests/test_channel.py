import pytest

from incidentdesk.channel import (
    LocalChannel, StoreChannel, TOPIC_CLEARED, TOPIC_TRIGGERED, make_message,
)
from incidentdesk.models import SourceTag
from incidentdesk.store import Store


def test_make_message_rejects_unknown_topic():
    with pytest.raises(ValueError):
        make_message("incident.exploded", "X", "ctx")


def test_make_message_normalises_source_and_ids():
    a = make_message(TOPIC_TRIGGERED, SourceTag.RED_TEAM, "ctx", sent_at=5.0)
    b = make_message(TOPIC_TRIGGERED, SourceTag.RED_TEAM, "ctx", sent_at=5.0)
    assert a.source == "RED_TEAM_MANUAL"
    assert a.incident_id is None
    assert a.message_id != b.message_id


def test_local_channel_delivers_to_every_subscriber():
    bus = LocalChannel()
    got_a, got_b = [], []
    bus.subscribe(got_a.append)
    bus.subscribe(got_b.append)
    msg = make_message(TOPIC_CLEARED, "X", "ctx")
    bus.publish(msg)
    assert got_a == [msg] and got_b == [msg]
    assert bus.poll() == 0


def test_store_channel_crosses_connections(tmp_path):
    path = str(tmp_path / "shared.db")
    writer_store, reader_store = Store(path), Store(path)
    try:
        writer = StoreChannel(writer_store)
        reader = StoreChannel(reader_store)
        got = []
        reader.subscribe(got.append)

        sent = make_message(TOPIC_TRIGGERED, "X", "ctx-a", sent_at=10.0, incident_id="Z-1")
        writer.publish(sent)
        assert reader.poll() == 1
        assert got[0].message_id == sent.message_id
        assert got[0].incident_id == "Z-1"
        assert got[0].sent_at == 10.0
        assert reader.poll() == 0
    finally:
        writer_store.close()
        reader_store.close()


def test_store_channel_skips_history_from_before_it_started(store):
    store.add_channel_message(make_message(TOPIC_TRIGGERED, "OLD", "ctx-a"))
    ch = StoreChannel(store)
    got = []
    ch.subscribe(got.append)
    assert ch.poll() == 0
    ch.publish(make_message(TOPIC_CLEARED, "NEW", "ctx-a"))
    assert ch.poll() == 1
    assert [m.source for m in got] == ["NEW"]


def test_malformed_rows_are_dropped(store, caplog):
    ch = StoreChannel(store)
    got = []
    ch.subscribe(got.append)
    store._conn.execute(
        "INSERT INTO channel_messages(topic,origin,sent_at,payload) VALUES(?,?,?,?)",
        (TOPIC_TRIGGERED, "ctx-x", 1.0, "{not json"),
    )
    store._conn.commit()
    ch.publish(make_message(TOPIC_CLEARED, "X", "ctx-a"))
    assert ch.poll() == 1
    assert len(got) == 1
    assert "Dropping malformed message" in caplog.text


def test_prune_removes_expired_rows(store, clock):
    ch = StoreChannel(store, retention_seconds=60, clock=clock)
    ch.publish(make_message(TOPIC_TRIGGERED, "X", "ctx", sent_at=clock() - 120))
    ch.publish(make_message(TOPIC_CLEARED, "X", "ctx", sent_at=clock() - 5))
    ch.prune()
    rows = store.channel_messages_after(0)
    assert [r[1] for r in rows] == [TOPIC_CLEARED]
