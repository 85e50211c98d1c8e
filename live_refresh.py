"""
Re-aggregate learner performance when the database reports a change.

The migrations install triggers that NOTIFY the affected student_id on the
channels below whenever a quiz attempt or course enrollment changes. A
PerformanceRefresher re-fetches that learner's snapshot and re-runs
compute_summary; it never subscribes to anything itself.

Usage:
  python live_refresh.py <student_id>

Only DATABASE_URL is read; SECRET_KEY and the other web settings are not needed.
"""

import logging
import os
import select
import sys

import psycopg2
import psycopg2.extensions
from dotenv import load_dotenv

from performance import compute_summary

REFRESH_CHANNELS = ('quiz_attempts_changed', 'student_courses_changed')


class PerformanceRefresher:
    """Holds the latest summary for one student; last write wins."""

    def __init__(self, student_id, fetch_snapshot, on_summary=None):
        self.student_id = str(student_id)
        self.fetch_snapshot = fetch_snapshot
        self.on_summary = on_summary
        self.latest = None

    def refresh(self):
        """Fetch a fresh snapshot and aggregate it. Keeps the old summary on fetch errors."""
        try:
            attempts, enrollments, total_subjects = self.fetch_snapshot(self.student_id)
        except psycopg2.Error:
            logging.exception("Snapshot fetch failed for student %s; keeping previous summary", self.student_id)
            return self.latest
        self.latest = compute_summary(attempts, enrollments, total_subjects)
        if self.on_summary is not None:
            self.on_summary(self.student_id, self.latest)
        return self.latest

    def handle_notification(self, channel, payload):
        if channel not in REFRESH_CHANNELS:
            return False
        if (payload or '').strip() != self.student_id:
            return False
        logging.info("Change on %s for student %s; refreshing", channel, self.student_id)
        self.refresh()
        return True


class ChangeListener:
    """LISTEN on the refresh channels and dispatch notifications to refreshers."""

    def __init__(self, connection, refreshers, timeout=5.0):
        self.connection = connection
        self.refreshers = list(refreshers)
        self.timeout = timeout
        self._running = False

    def subscribe(self):
        self.connection.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
        cursor = self.connection.cursor()
        for channel in REFRESH_CHANNELS:
            cursor.execute(f'LISTEN {channel};')
        logging.info("Listening on %s", ', '.join(REFRESH_CHANNELS))

    def dispatch_pending(self):
        """Drain queued notifications; returns how many refreshes ran."""
        self.connection.poll()
        handled = 0
        while self.connection.notifies:
            notify = self.connection.notifies.pop(0)
            for refresher in self.refreshers:
                if refresher.handle_notification(notify.channel, notify.payload):
                    handled += 1
        return handled

    def run(self):
        self.subscribe()
        self._running = True
        while self._running:
            readable, _, _ = select.select([self.connection], [], [], self.timeout)
            if readable:
                self.dispatch_pending()

    def stop(self):
        self._running = False


SNAPSHOT_QUERIES = {
    'attempts': '''SELECT qa.score, qa.max_score, q.subject_id, qa.duration_seconds
                   FROM quiz_attempts qa
                   JOIN quizzes q ON q.id = qa.quiz_id
                   WHERE qa.student_id = %s''',
    'enrollments': 'SELECT subject_id, progress FROM student_courses WHERE student_id = %s',
    'subjects': 'SELECT COUNT(*) FROM subjects',
}


def snapshot_fetcher(database_url):
    """Build a fetch_snapshot callable that reads straight from PostgreSQL.

    Only needs DATABASE_URL, so the listener runs without the web app's config.
    """
    def fetch_snapshot(student_id):
        conn = psycopg2.connect(database_url, connect_timeout=10)
        try:
            c = conn.cursor()
            c.execute(SNAPSHOT_QUERIES['attempts'], (student_id,))
            attempts = [
                {'score': row[0], 'max_score': row[1], 'subject_id': str(row[2]), 'duration_seconds': row[3]}
                for row in c.fetchall()
            ]
            c.execute(SNAPSHOT_QUERIES['enrollments'], (student_id,))
            enrollments = [{'subject_id': str(row[0]), 'progress': row[1]} for row in c.fetchall()]
            c.execute(SNAPSHOT_QUERIES['subjects'])
            row = c.fetchone()
            return attempts, enrollments, int(row[0] or 0) if row else 0
        finally:
            conn.close()

    return fetch_snapshot


def main():
    load_dotenv()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if len(sys.argv) != 2:
        print("Usage: python live_refresh.py <student_id>", file=sys.stderr)
        sys.exit(2)

    def print_summary(student_id, summary):
        print(f"{student_id}: {summary}")

    refresher = PerformanceRefresher(sys.argv[1], snapshot_fetcher(database_url), print_summary)
    refresher.refresh()
    listener = ChangeListener(psycopg2.connect(database_url), [refresher])
    try:
        listener.run()
    except KeyboardInterrupt:
        listener.stop()
    finally:
        listener.connection.close()


if __name__ == "__main__":
    main()
