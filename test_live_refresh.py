from collections import namedtuple

import psycopg2
import psycopg2.extensions

import live_refresh
from live_refresh import ChangeListener, PerformanceRefresher, REFRESH_CHANNELS

Notify = namedtuple("Notify", ["pid", "channel", "payload"])


def snapshot_source(snapshots):
    calls = []

    def fetch(student_id):
        calls.append(student_id)
        return snapshots[min(len(calls), len(snapshots)) - 1]

    return fetch, calls


def test_refresh_aggregates_snapshot_and_notifies():
    fetch, calls = snapshot_source([
        ([{"score": 80, "max_score": 100, "subject_id": "math", "duration_seconds": 60}], [{"progress": 30}], 5),
    ])
    delivered = []
    refresher = PerformanceRefresher("S1", fetch, lambda sid, summary: delivered.append((sid, summary)))

    summary = refresher.refresh()

    assert calls == ["S1"]
    assert summary["average_score_percent"] == 80
    assert summary["overall_progress_percent"] == 30.0
    assert refresher.latest is summary
    assert delivered == [("S1", summary)]


def test_notification_for_other_student_is_ignored():
    fetch, calls = snapshot_source([([], [], 1)])
    refresher = PerformanceRefresher("S1", fetch)

    assert refresher.handle_notification("quiz_attempts_changed", "S2") is False
    assert refresher.handle_notification("unrelated_channel", "S1") is False
    assert calls == []
    assert refresher.latest is None


def test_notification_for_student_refreshes_with_latest_snapshot():
    fetch, calls = snapshot_source([
        ([], [], 3),
        ([{"score": 5, "max_score": 10, "subject_id": "bio"}], [], 3),
    ])
    refresher = PerformanceRefresher("S1", fetch)
    refresher.refresh()
    assert refresher.latest["quizzes_taken"] == 0

    assert refresher.handle_notification("quiz_attempts_changed", " S1 ") is True
    assert refresher.latest["quizzes_taken"] == 1
    assert refresher.latest["average_score_percent"] == 50
    assert len(calls) == 2


def test_fetch_failure_keeps_previous_summary():
    state = {"fail": False}

    def fetch(student_id):
        if state["fail"]:
            raise psycopg2.OperationalError("server closed the connection")
        return ([], [{"progress": 70}], 2)

    delivered = []
    refresher = PerformanceRefresher("S1", fetch, lambda sid, summary: delivered.append(summary))
    first = refresher.refresh()
    state["fail"] = True

    assert refresher.handle_notification("student_courses_changed", "S1") is True
    assert refresher.latest is first
    assert len(delivered) == 1


class FakeCursor:
    def __init__(self, executed):
        self.executed = executed

    def execute(self, query):
        self.executed.append(query)


class FakeListenConnection:
    def __init__(self, queued=None):
        self.notifies = []
        self.queued = list(queued or [])
        self.executed = []
        self.isolation_level = None
        self.polls = 0

    def set_isolation_level(self, level):
        self.isolation_level = level

    def cursor(self):
        return FakeCursor(self.executed)

    def poll(self):
        self.polls += 1
        self.notifies.extend(self.queued)
        self.queued = []


def test_subscribe_listens_on_every_channel_in_autocommit():
    conn = FakeListenConnection()
    ChangeListener(conn, []).subscribe()

    assert conn.isolation_level == psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT
    assert conn.executed == [f"LISTEN {channel};" for channel in REFRESH_CHANNELS]


def test_dispatch_pending_routes_each_notification():
    conn = FakeListenConnection([
        Notify(1, "quiz_attempts_changed", "S1"),
        Notify(1, "student_courses_changed", "S2"),
        Notify(1, "quiz_attempts_changed", "S3"),
    ])
    fetch, calls = snapshot_source([([], [], 1)])
    refreshers = [PerformanceRefresher("S1", fetch), PerformanceRefresher("S2", fetch)]

    handled = ChangeListener(conn, refreshers).dispatch_pending()

    assert handled == 2
    assert calls == ["S1", "S2"]
    assert conn.notifies == []


def test_run_stops_after_stop_is_called(monkeypatch):
    conn = FakeListenConnection([Notify(1, "quiz_attempts_changed", "S1")])
    fetch, calls = snapshot_source([([], [], 1)])
    listener = ChangeListener(conn, [PerformanceRefresher("S1", fetch)], timeout=0.01)

    def fake_select(readable, writable, errors, timeout):
        if conn.polls:
            listener.stop()
            return [], [], []
        return readable, [], []

    monkeypatch.setattr(live_refresh.select, "select", fake_select)

    listener.run()

    assert calls == ["S1"]
    assert conn.polls == 1


class FakeSnapshotCursor:
    def __init__(self, results):
        self.results = results
        self.executed = []
        self._rows = []

    def execute(self, query, params=None):
        self.executed.append((query, params))
        self._rows = self.results.pop(0)

    def fetchall(self):
        return self._rows

    def fetchone(self):
        return self._rows[0] if self._rows else None


class FakeSnapshotConnection:
    def __init__(self, cursor):
        self._cursor = cursor
        self.closed = False

    def cursor(self):
        return self._cursor

    def close(self):
        self.closed = True


def test_snapshot_fetcher_reads_attempts_enrollments_and_subject_count(monkeypatch):
    cursor = FakeSnapshotCursor([
        [(8, 10, "SUB1", 90), (5, 10, "SUB2", None)],
        [("SUB1", 40)],
        [(6,)],
    ])
    conn = FakeSnapshotConnection(cursor)
    connected = []

    def fake_connect(url, **kwargs):
        connected.append(url)
        return conn

    monkeypatch.setattr(live_refresh.psycopg2, "connect", fake_connect)

    attempts, enrollments, total = live_refresh.snapshot_fetcher("postgresql://x@localhost/db")("S1")

    assert connected == ["postgresql://x@localhost/db"]
    assert attempts == [
        {"score": 8, "max_score": 10, "subject_id": "SUB1", "duration_seconds": 90},
        {"score": 5, "max_score": 10, "subject_id": "SUB2", "duration_seconds": None},
    ]
    assert enrollments == [{"subject_id": "SUB1", "progress": 40}]
    assert total == 6
    assert [params for _query, params in cursor.executed] == [("S1",), ("S1",), None]
    assert conn.closed is True


def test_main_runs_without_web_app_settings(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql://x@localhost/db")
    monkeypatch.setattr(live_refresh, "load_dotenv", lambda *args, **kwargs: False)
    monkeypatch.setattr(live_refresh.sys, "argv", ["live_refresh.py", "S1"])
    monkeypatch.setattr(live_refresh, "snapshot_fetcher", lambda url: lambda sid: ([], [], 0))

    listen_conn = FakeListenConnection()
    closed = []
    listen_conn.close = lambda: closed.append(True)
    monkeypatch.setattr(live_refresh.psycopg2, "connect", lambda url, **kwargs: listen_conn)

    def fake_run(self):
        raise KeyboardInterrupt

    monkeypatch.setattr(ChangeListener, "run", fake_run)

    live_refresh.main()

    assert closed == [True]
