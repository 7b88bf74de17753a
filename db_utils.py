import sqlite3
import logging
from collections import namedtuple
from datetime import datetime

import pytz

utc_timezone = pytz.utc

ActivityRecord = namedtuple("ActivityRecord", ["user_id", "last_activity"])


def to_unix_seconds(value):
    # Accepts an aware datetime or a unix timestamp; stored with seconds resolution.
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = utc_timezone.localize(value)
        return int(value.timestamp())
    return int(value)


def format_timedelta(timedelta_obj):
    total_seconds = int(timedelta_obj.total_seconds())

    # Display as seconds if less than a minute
    if total_seconds < 60:
        return f"{total_seconds} sec"

    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    # Display in the format [Nd ]HH:MM:SS
    if days:
        return f"{days}d {hours:02}:{minutes:02}:{seconds:02}"
    return f"{hours:02}:{minutes:02}:{seconds:02}"


class ActivityStore:
    """Last-activity table shared by the recorder and the eviction scanner.

    Every call opens its own connection and commits on exit, so each operation
    is atomic on its own and the two loops never share a connection.
    """

    def __init__(self, database_path):
        self.database_path = database_path

    def _connect(self):
        return sqlite3.connect(self.database_path)

    # ********* INITIALIZE DATABASE *********

    def initialize_db(self):
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_activity (
                    user_id INTEGER PRIMARY KEY,
                    last_activity INTEGER NOT NULL
                )
            """
            )

            # Stale and active lookups are range scans on last_activity
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS user_activity_last_activity_index ON user_activity (last_activity);
                """
            )
            conn.commit()
        return

    # ********* RECORDING *********

    def upsert(self, user_id, timestamp):
        last_activity = to_unix_seconds(timestamp)
        with self._connect() as conn:
            cursor = conn.cursor()

            # Never move last_activity backwards
            cursor.execute(
                """
                INSERT INTO user_activity (user_id, last_activity)
                VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_activity = MAX(last_activity, excluded.last_activity)
                """,
                (user_id, last_activity),
            )
            conn.commit()
        return

    def remove(self, user_id):
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM user_activity WHERE user_id = ?",
                (user_id,),
            )
            conn.commit()
            deleted = cursor.rowcount > 0
        if not deleted:
            logging.debug(f"remove() - user {user_id} was not in user_activity.")
        return deleted

    # ********* LOOKUPS *********

    def find_stale(self, threshold):
        cutoff = to_unix_seconds(threshold)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT user_id, last_activity FROM user_activity
                WHERE last_activity < ?
                ORDER BY last_activity ASC
                """,
                (cutoff,),
            )
            return [ActivityRecord(*row) for row in cursor.fetchall()]

    def count_active(self, threshold):
        cutoff = to_unix_seconds(threshold)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) FROM user_activity WHERE last_activity >= ?",
                (cutoff,),
            )
            return cursor.fetchone()[0]

    def list_all_sorted_by_activity(self):
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT user_id, last_activity FROM user_activity ORDER BY last_activity ASC"
            )
            return [ActivityRecord(*row) for row in cursor.fetchall()]
