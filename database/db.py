import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Literal, TypedDict

from backend.config import DB_BUSY_TIMEOUT_SECONDS, DB_PATH
from backend.errors import TransientIOError

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"

DecisionCode = Literal[
    "TIME_IN_SET",
    "TIME_OUT_SET",
    "DUPLICATE_TIME_IN",
    "NO_ACTIVE_SESSION",
]


class StudentIdentity(TypedDict):
    learner_reference_number: str
    rfid_tag: str | None
    first_name: str
    last_name: str
    grade_level: str | None
    school_year: str | None
    guardian_contact_number: str | None
    parent_email: str | None


class TransitionResult(TypedDict):
    decision_code: DecisionCode
    message: str
    learner_reference_number: str
    date: str
    session_number: int | None
    time_in: str | None
    time_out: str | None
    duration_hours: float | None


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_SECONDS, check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """
    Run a check-and-mutate block under SQLite's write lock.

    `BEGIN IMMEDIATE` takes the RESERVED lock up front, so two writers can
    never both read "no open session" before either one inserts. Everything
    inside commits together or is rolled back.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        raise TransientIOError(f"Could not acquire attendance write lock: {exc}") from exc

    try:
        yield conn.cursor()
    except sqlite3.OperationalError as exc:
        conn.rollback()
        raise TransientIOError(f"Attendance write failed: {exc}") from exc
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    # WAL lets readers keep going while a scan holds the write lock.
    cursor.execute("PRAGMA journal_mode = WAL;")

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        learner_reference_number TEXT PRIMARY KEY,
        rfid_tag TEXT UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        grade_level TEXT,
        school_year TEXT,
        guardian_contact_number TEXT,
        parent_email TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        learner_reference_number TEXT NOT NULL,
        date TEXT NOT NULL,              -- YYYY-MM-DD of time_in
        session_number INTEGER NOT NULL,
        time_in TEXT NOT NULL,           -- YYYY-MM-DD HH:MM:SS
        time_out TEXT,                   -- YYYY-MM-DD HH:MM:SS
        rfid_tag TEXT,
        grade_level TEXT,
        school_year TEXT,
        notes TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (learner_reference_number) REFERENCES students(learner_reference_number),
        UNIQUE(learner_reference_number, date, session_number)
    )
    """)

    # At most one open session per learner per day.
    cursor.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_attendance_sessions_open
    ON attendance_sessions (learner_reference_number, date)
    WHERE time_out IS NULL
    """)

    cursor.execute("""
    CREATE INDEX IF NOT EXISTS ix_attendance_sessions_date
    ON attendance_sessions (date, time_in)
    """)

    conn.commit()
    conn.close()


# -----------------------------
# Students (roster is owned elsewhere; read-mostly here)
# -----------------------------
_STUDENT_COLUMNS = """
    learner_reference_number,
    rfid_tag,
    first_name,
    last_name,
    grade_level,
    school_year,
    guardian_contact_number,
    parent_email
"""


def _student_from_row(row: tuple) -> StudentIdentity:
    return {
        "learner_reference_number": str(row[0]),
        "rfid_tag": row[1],
        "first_name": str(row[2]),
        "last_name": str(row[3]),
        "grade_level": row[4],
        "school_year": row[5],
        "guardian_contact_number": row[6],
        "parent_email": row[7],
    }


def add_student(
    *,
    learner_reference_number: str,
    first_name: str,
    last_name: str,
    rfid_tag: str | None = None,
    grade_level: str | None = None,
    school_year: str | None = None,
    guardian_contact_number: str | None = None,
    parent_email: str | None = None,
) -> str:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        INSERT INTO students ({_STUDENT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        learner_reference_number,
        rfid_tag,
        first_name,
        last_name,
        grade_level,
        school_year,
        guardian_contact_number,
        parent_email,
    ))
    conn.commit()
    conn.close()
    return learner_reference_number


def get_student_by_rfid(rfid_tag: str) -> StudentIdentity | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {_STUDENT_COLUMNS}
        FROM students
        WHERE rfid_tag = ?
    """, (rfid_tag,))
    row = cur.fetchone()
    conn.close()
    return _student_from_row(row) if row else None


def get_student(learner_reference_number: str) -> StudentIdentity | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {_STUDENT_COLUMNS}
        FROM students
        WHERE learner_reference_number = ?
    """, (learner_reference_number,))
    row = cur.fetchone()
    conn.close()
    return _student_from_row(row) if row else None


# -----------------------------
# Session state machine
# -----------------------------
def _stamp(value: datetime) -> str:
    return value.strftime(STAMP_FORMAT)


def duration_hours(time_in: str, time_out: str) -> float:
    start = datetime.strptime(time_in, STAMP_FORMAT)
    end = datetime.strptime(time_out, STAMP_FORMAT)
    return round((end - start).total_seconds() / 3600, 2)


def _open_session(cur: sqlite3.Cursor, learner_reference_number: str, date: str):
    cur.execute(
        """
        SELECT id, session_number, time_in
        FROM attendance_sessions
        WHERE learner_reference_number = ?
          AND date = ?
          AND time_out IS NULL
        ORDER BY time_in DESC, session_number DESC
        LIMIT 1
        """,
        (learner_reference_number, date),
    )
    return cur.fetchone()


def _duplicate_time_in(learner_reference_number: str, date: str, session_number: int, time_in: str) -> TransitionResult:
    return {
        "decision_code": "DUPLICATE_TIME_IN",
        "message": (
            f"Time-in already recorded for session {session_number}. "
            "The student can time out."
        ),
        "learner_reference_number": learner_reference_number,
        "date": date,
        "session_number": session_number,
        "time_in": time_in,
        "time_out": None,
        "duration_hours": None,
    }


def record_time_in(
    identity: StudentIdentity,
    *,
    now: datetime | None = None,
    notes: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> TransitionResult:
    """
    Open a new session for the learner unless one is already open today.

    Returns TIME_IN_SET with the new session number, or DUPLICATE_TIME_IN
    pointing at the session that is still open.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    stamp = now or datetime.now()
    date = stamp.strftime(DATE_FORMAT)
    time_in = _stamp(stamp)
    lrn = identity["learner_reference_number"]

    try:
        try:
            with immediate_transaction(active_conn) as cur:
                row = _open_session(cur, lrn, date)
                if row:
                    return _duplicate_time_in(lrn, date, int(row[1]), str(row[2]))

                cur.execute(
                    """
                    SELECT COALESCE(MAX(session_number), 0)
                    FROM attendance_sessions
                    WHERE learner_reference_number = ? AND date = ?
                    """,
                    (lrn, date),
                )
                next_session = int(cur.fetchone()[0]) + 1

                cur.execute(
                    """
                    INSERT INTO attendance_sessions (
                        learner_reference_number,
                        date,
                        session_number,
                        time_in,
                        time_out,
                        rfid_tag,
                        grade_level,
                        school_year,
                        notes
                    )
                    VALUES (?, ?, ?, ?, NULL, ?, ?, ?, ?)
                    """,
                    (
                        lrn,
                        date,
                        next_session,
                        time_in,
                        identity.get("rfid_tag"),
                        identity.get("grade_level"),
                        identity.get("school_year"),
                        notes,
                    ),
                )
        except sqlite3.IntegrityError:
            # Lost a race the write lock should have prevented (e.g. another
            # process skipped BEGIN IMMEDIATE). The open-session index caught it.
            cur = active_conn.cursor()
            row = _open_session(cur, lrn, date)
            if not row:
                raise
            logger.warning("time-in for %s rejected by open-session index", lrn)
            return _duplicate_time_in(lrn, date, int(row[1]), str(row[2]))

        return {
            "decision_code": "TIME_IN_SET",
            "message": f"Time-in recorded for session {next_session}.",
            "learner_reference_number": lrn,
            "date": date,
            "session_number": next_session,
            "time_in": time_in,
            "time_out": None,
            "duration_hours": None,
        }
    finally:
        if owns_conn:
            active_conn.close()


def record_time_out(
    learner_reference_number: str,
    *,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> TransitionResult:
    """
    Close the learner's most recent open session for today.

    Returns TIME_OUT_SET with the duration, or NO_ACTIVE_SESSION when there
    is nothing to close (in which case nothing is written).
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    stamp = now or datetime.now()
    date = stamp.strftime(DATE_FORMAT)
    time_out = _stamp(stamp)

    try:
        with immediate_transaction(active_conn) as cur:
            row = _open_session(cur, learner_reference_number, date)
            if not row:
                return {
                    "decision_code": "NO_ACTIVE_SESSION",
                    "message": "No active time-in found for today. The student may have already timed out.",
                    "learner_reference_number": learner_reference_number,
                    "date": date,
                    "session_number": None,
                    "time_in": None,
                    "time_out": None,
                    "duration_hours": None,
                }

            session_id, session_number, time_in = int(row[0]), int(row[1]), str(row[2])
            cur.execute(
                """
                UPDATE attendance_sessions
                SET time_out = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                  AND time_out IS NULL
                """,
                (time_out, session_id),
            )
            if cur.rowcount != 1:
                raise sqlite3.DatabaseError(f"Session {session_id} changed during time-out.")

        hours = duration_hours(time_in, time_out)
        return {
            "decision_code": "TIME_OUT_SET",
            "message": f"Time-out recorded for session {session_number} ({hours:.2f} hours).",
            "learner_reference_number": learner_reference_number,
            "date": date,
            "session_number": session_number,
            "time_in": time_in,
            "time_out": time_out,
            "duration_hours": hours,
        }
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Session reads
# -----------------------------
def _session_from_row(row: tuple) -> dict[str, Any]:
    time_in = str(row[3])
    time_out = str(row[4]) if row[4] else None
    return {
        "learner_reference_number": row[0],
        "date": row[1],
        "session_number": int(row[2]),
        "time_in": time_in,
        "time_out": time_out,
        "duration_hours": duration_hours(time_in, time_out) if time_out else None,
        "rfid_tag": row[5],
        "grade_level": row[6],
        "school_year": row[7],
        "notes": row[8],
    }


def get_sessions_for_day(learner_reference_number: str, date: str) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT learner_reference_number, date, session_number, time_in, time_out,
               rfid_tag, grade_level, school_year, notes
        FROM attendance_sessions
        WHERE learner_reference_number = ? AND date = ?
        ORDER BY session_number
    """, (learner_reference_number, date))
    rows = cur.fetchall()
    conn.close()
    return [_session_from_row(r) for r in rows]


def get_recent_sessions(date: str, limit: int = 5) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT a.learner_reference_number, a.date, a.session_number, a.time_in, a.time_out,
               a.rfid_tag, a.grade_level, a.school_year, a.notes,
               s.first_name, s.last_name
        FROM attendance_sessions a
        LEFT JOIN students s ON s.learner_reference_number = a.learner_reference_number
        WHERE a.date = ?
        ORDER BY COALESCE(a.time_out, a.time_in) DESC, a.id DESC
        LIMIT ?
    """, (date, max(1, int(limit))))
    rows = cur.fetchall()
    conn.close()

    out: list[dict[str, Any]] = []
    for r in rows:
        item = _session_from_row(r)
        item["first_name"] = r[9]
        item["last_name"] = r[10]
        out.append(item)
    return out


def has_attendance_today(learner_reference_number: str, *, now: datetime | None = None) -> bool:
    date = (now or datetime.now()).strftime(DATE_FORMAT)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT 1
        FROM attendance_sessions
        WHERE learner_reference_number = ? AND date = ?
        LIMIT 1
    """, (learner_reference_number, date))
    row = cur.fetchone()
    conn.close()
    return row is not None
