import os

from ddr import db
from ddr import events as ev
from ddr.events import EventSink


def test_events_are_kept_newest_first():
    sink = EventSink(persist=False, buffer=3)
    for i in range(4):
        sink.emit(ev.REPLICA_CREATED, f"created {i}", workload="web" if i % 2 else "db", replica=f"r{i}")

    recent = sink.recent()
    assert [e.message for e in recent] == ["created 3", "created 2", "created 1"]
    assert [e.message for e in sink.recent(workload="web")] == ["created 3", "created 1"]
    assert sink.recent(limit=1)[0].data == {"replica": "r3"}
    assert sink.recent(kind=ev.BINDING_FAILED) == []


def test_events_are_persisted(tmp_path):
    path = str(tmp_path / "events.db")
    sink = EventSink(persist=True, db_path=path)
    sink.emit(ev.BINDING_SUCCEEDED, "Bound claim 'c' to volume 'v'", claim="c", volume="v")
    sink.emit(ev.WORKLOAD_FAILED, "budget exhausted", workload="web", level="error")

    rows = db.latest_events(db_path=path)
    assert [r["kind"] for r in rows] == [ev.WORKLOAD_FAILED, ev.BINDING_SUCCEEDED]
    assert rows[0]["level"] == "ERROR"
    assert rows[0]["workload"] == "web"
    assert rows[1]["data"] == {"claim": "c", "volume": "v"}
    assert [r["kind"] for r in db.latest_events(workload="web", db_path=path)] == [ev.WORKLOAD_FAILED]


def test_db_path_may_be_a_directory(tmp_path):
    # Docker creates a directory when the bind-mounted file does not exist yet.
    db.init_db(str(tmp_path))
    assert os.path.exists(tmp_path / "ddr.db")
