"""
database.py — SQLite schema init and CRUD operations.

Single-file database with WAL mode for concurrent reads. Holds events,
competitors, special stages, stage times, communications and the audit log.
The standings engine only reads through get_competitors / get_stages /
get_times; everything else here serves the admin endpoints.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

DB_DIR = Path(__file__).parent.parent.parent / "data"
DB_NAME = "endurotiming.db"

STAGE_STATUSES = ("not_started", "in_progress", "completed")


def get_db_path() -> Path:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    return DB_DIR / DB_NAME


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
    id                          INTEGER PRIMARY KEY AUTOINCREMENT,
    code                        TEXT NOT NULL UNIQUE,
    name                        TEXT NOT NULL,
    date                        TEXT,
    location                    TEXT,
    description                 TEXT,
    stage_rank_includes_penalty INTEGER NOT NULL DEFAULT 0,
    created_at                  TEXT DEFAULT (datetime('now')),
    updated_at                  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS competitors (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    INTEGER NOT NULL REFERENCES events(id),
    race_number INTEGER NOT NULL,
    first_name  TEXT NOT NULL,
    last_name   TEXT NOT NULL,
    class_name  TEXT,
    motorcycle  TEXT,
    team        TEXT,
    UNIQUE(event_id, race_number)
);

CREATE TABLE IF NOT EXISTS stages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    INTEGER NOT NULL REFERENCES events(id),
    ordinal     INTEGER NOT NULL,
    name        TEXT NOT NULL,
    status      TEXT NOT NULL DEFAULT 'not_started'
                CHECK (status IN ('not_started', 'in_progress', 'completed')),
    UNIQUE(event_id, ordinal)
);

CREATE TABLE IF NOT EXISTS times (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    competitor_id   INTEGER NOT NULL REFERENCES competitors(id),
    stage_id        INTEGER NOT NULL REFERENCES stages(id),
    elapsed_seconds REAL NOT NULL,
    penalty_seconds REAL NOT NULL DEFAULT 0,
    recorded_at     TEXT DEFAULT (datetime('now')),
    updated_at      TEXT DEFAULT (datetime('now')),
    UNIQUE(competitor_id, stage_id)
);

CREATE TABLE IF NOT EXISTS communications (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_code  TEXT NOT NULL,
    number      INTEGER NOT NULL,
    text        TEXT NOT NULL,
    date        TEXT NOT NULL DEFAULT (date('now')),
    time        TEXT NOT NULL DEFAULT (time('now')),
    created_at  TEXT DEFAULT (datetime('now')),
    UNIQUE(event_code, number)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    INTEGER,
    action      TEXT NOT NULL,
    entity_type TEXT,
    entity_id   INTEGER,
    details     TEXT,
    source      TEXT DEFAULT 'admin',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_competitors_number ON competitors(event_id, race_number);
CREATE INDEX IF NOT EXISTS idx_stages_ordinal ON stages(event_id, ordinal);
CREATE INDEX IF NOT EXISTS idx_times_stage ON times(stage_id);
CREATE INDEX IF NOT EXISTS idx_communications_code ON communications(event_code, number);
CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_log(event_id, created_at);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


# ======================================================================
# EVENTS
# ======================================================================

def create_event(conn: sqlite3.Connection, code: str, name: str,
                 date: str = "", location: str = "", description: str = "",
                 stage_rank_includes_penalty: bool = False) -> int:
    """Insert a new event and return its id. Event codes are unique."""
    cur = conn.execute(
        """INSERT INTO events (code, name, date, location, description,
           stage_rank_includes_penalty)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (code, name, date, location, description, int(stage_rank_includes_penalty))
    )
    conn.commit()
    return cur.lastrowid


def get_all_events(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    return conn.execute("SELECT * FROM events ORDER BY id DESC").fetchall()


def get_event(conn: sqlite3.Connection, event_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()


def get_event_by_code(conn: sqlite3.Connection, code: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM events WHERE code=?", (code,)).fetchone()


def update_event(conn: sqlite3.Connection, event_id: int, **kwargs) -> None:
    """Update event fields. Pass field=value pairs."""
    if not kwargs:
        return
    if "stage_rank_includes_penalty" in kwargs:
        kwargs["stage_rank_includes_penalty"] = int(kwargs["stage_rank_includes_penalty"])
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [event_id]
    conn.execute(f"UPDATE events SET {sets}, updated_at=datetime('now') WHERE id=?", vals)
    conn.commit()


def delete_event(conn: sqlite3.Connection, event_id: int) -> None:
    """Delete an event and everything it owns.

    Children first: times (via stages), competitors, stages,
    communications (via event code), audit log, then the event.
    """
    event = get_event(conn, event_id)
    if event is None:
        return

    conn.execute(
        "DELETE FROM times WHERE stage_id IN "
        "(SELECT id FROM stages WHERE event_id=?)", (event_id,)
    )
    conn.execute("DELETE FROM competitors WHERE event_id=?", (event_id,))
    conn.execute("DELETE FROM stages WHERE event_id=?", (event_id,))
    conn.execute("DELETE FROM communications WHERE event_code=?", (event["code"],))
    conn.execute("DELETE FROM audit_log WHERE event_id=?", (event_id,))
    conn.execute("DELETE FROM events WHERE id=?", (event_id,))
    conn.commit()


# ======================================================================
# COMPETITORS
# ======================================================================

def create_competitor(conn: sqlite3.Connection, event_id: int, race_number: int,
                      first_name: str, last_name: str, class_name: str = "",
                      motorcycle: str = "", team: str = "") -> int:
    cur = conn.execute(
        """INSERT INTO competitors (event_id, race_number, first_name, last_name,
           class_name, motorcycle, team)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (event_id, race_number, first_name, last_name, class_name, motorcycle, team)
    )
    conn.commit()
    return cur.lastrowid


def get_competitors(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    """All competitors of an event, ordered by race number."""
    return conn.execute(
        "SELECT * FROM competitors WHERE event_id=? ORDER BY race_number, id",
        (event_id,)
    ).fetchall()


def get_competitor(conn: sqlite3.Connection, competitor_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM competitors WHERE id=?", (competitor_id,)
    ).fetchone()


def get_competitor_by_number(conn: sqlite3.Connection, event_id: int,
                             race_number: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM competitors WHERE event_id=? AND race_number=?",
        (event_id, race_number)
    ).fetchone()


def update_competitor(conn: sqlite3.Connection, competitor_id: int, **kwargs) -> None:
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [competitor_id]
    conn.execute(f"UPDATE competitors SET {sets} WHERE id=?", vals)
    conn.commit()


def upsert_competitor(conn: sqlite3.Connection, event_id: int, race_number: int,
                      first_name: str, last_name: str, class_name: str = "",
                      motorcycle: str = "", team: str = "") -> tuple[int, bool]:
    """Insert or update a competitor by race number. Returns (id, created)."""
    existing = get_competitor_by_number(conn, event_id, race_number)
    if existing:
        conn.execute(
            """UPDATE competitors SET first_name=?, last_name=?, class_name=?,
               motorcycle=?, team=? WHERE id=?""",
            (first_name, last_name, class_name, motorcycle, team, existing["id"])
        )
        conn.commit()
        return existing["id"], False
    return create_competitor(conn, event_id, race_number, first_name, last_name,
                             class_name, motorcycle, team), True


def delete_competitor(conn: sqlite3.Connection, competitor_id: int) -> None:
    """Delete a competitor together with its stage times."""
    conn.execute("DELETE FROM times WHERE competitor_id=?", (competitor_id,))
    conn.execute("DELETE FROM competitors WHERE id=?", (competitor_id,))
    conn.commit()


def get_classes(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    """Distinct class labels in an event with their competitor counts."""
    return conn.execute(
        """SELECT class_name, COUNT(*) AS competitors
           FROM competitors WHERE event_id=?
           GROUP BY class_name ORDER BY class_name""",
        (event_id,)
    ).fetchall()


# ======================================================================
# STAGES
# ======================================================================

def create_stage(conn: sqlite3.Connection, event_id: int, ordinal: int,
                 name: str, status: str = "not_started") -> int:
    cur = conn.execute(
        "INSERT INTO stages (event_id, ordinal, name, status) VALUES (?, ?, ?, ?)",
        (event_id, ordinal, name, status)
    )
    conn.commit()
    return cur.lastrowid


def get_stages(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    """All stages of an event in running order (ascending ordinal)."""
    return conn.execute(
        "SELECT * FROM stages WHERE event_id=? ORDER BY ordinal", (event_id,)
    ).fetchall()


def get_stage(conn: sqlite3.Connection, stage_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM stages WHERE id=?", (stage_id,)).fetchone()


def get_stage_by_ordinal(conn: sqlite3.Connection, event_id: int,
                         ordinal: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM stages WHERE event_id=? AND ordinal=?", (event_id, ordinal)
    ).fetchone()


def update_stage(conn: sqlite3.Connection, stage_id: int, **kwargs) -> None:
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [stage_id]
    conn.execute(f"UPDATE stages SET {sets} WHERE id=?", vals)
    conn.commit()


def delete_stage(conn: sqlite3.Connection, stage_id: int) -> tuple[bool, str]:
    """Delete a single stage. Refuses if times are recorded against it."""
    ref = conn.execute(
        "SELECT id FROM times WHERE stage_id=? LIMIT 1", (stage_id,)
    ).fetchone()
    if ref:
        return False, "Stage has recorded times and cannot be deleted"
    conn.execute("DELETE FROM stages WHERE id=?", (stage_id,))
    conn.commit()
    return True, ""


# ======================================================================
# TIMES
# ======================================================================

def record_time(conn: sqlite3.Connection, competitor_id: int, stage_id: int,
                elapsed_seconds: float,
                penalty_seconds: Optional[float] = None) -> int:
    """Store the time of one competitor on one stage. Returns the time id.

    At most one time exists per (competitor, stage): recording again
    overwrites the elapsed time. The penalty is kept unless a new one is
    passed explicitly.
    """
    elapsed = round(float(elapsed_seconds), 2)
    existing = conn.execute(
        "SELECT id FROM times WHERE competitor_id=? AND stage_id=?",
        (competitor_id, stage_id)
    ).fetchone()

    if existing:
        if penalty_seconds is None:
            conn.execute(
                """UPDATE times SET elapsed_seconds=?, updated_at=datetime('now')
                   WHERE id=?""",
                (elapsed, existing["id"])
            )
        else:
            conn.execute(
                """UPDATE times SET elapsed_seconds=?, penalty_seconds=?,
                   updated_at=datetime('now') WHERE id=?""",
                (elapsed, round(float(penalty_seconds), 2), existing["id"])
            )
        conn.commit()
        return existing["id"]

    cur = conn.execute(
        """INSERT INTO times (competitor_id, stage_id, elapsed_seconds, penalty_seconds)
           VALUES (?, ?, ?, ?)""",
        (competitor_id, stage_id, elapsed, round(float(penalty_seconds or 0), 2))
    )
    conn.commit()
    return cur.lastrowid


def get_time(conn: sqlite3.Connection, time_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM times WHERE id=?", (time_id,)).fetchone()


def set_penalty(conn: sqlite3.Connection, time_id: int, penalty_seconds: float) -> None:
    conn.execute(
        "UPDATE times SET penalty_seconds=?, updated_at=datetime('now') WHERE id=?",
        (round(float(penalty_seconds), 2), time_id)
    )
    conn.commit()


def delete_time(conn: sqlite3.Connection, time_id: int) -> None:
    conn.execute("DELETE FROM times WHERE id=?", (time_id,))
    conn.commit()


def get_times(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    """All times of an event keyed for reconstruction.

    Columns: id, competitor_id, stage_id, stage_ordinal,
    elapsed_seconds, penalty_seconds.
    """
    return conn.execute(
        """SELECT t.id, t.competitor_id, t.stage_id, s.ordinal AS stage_ordinal,
                  t.elapsed_seconds, t.penalty_seconds
           FROM times t
           JOIN stages s ON t.stage_id = s.id
           WHERE s.event_id=?
           ORDER BY s.ordinal, t.competitor_id""",
        (event_id,)
    ).fetchall()


def get_times_with_details(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    """All times of an event joined with competitor and stage display data."""
    return conn.execute(
        """SELECT t.id, t.competitor_id, t.stage_id, t.elapsed_seconds,
                  t.penalty_seconds,
                  c.race_number, c.first_name, c.last_name, c.class_name,
                  s.ordinal AS stage_ordinal, s.name AS stage_name
           FROM times t
           JOIN competitors c ON t.competitor_id = c.id
           JOIN stages s ON t.stage_id = s.id
           WHERE s.event_id=?
           ORDER BY s.ordinal, t.elapsed_seconds""",
        (event_id,)
    ).fetchall()


def count_times(conn: sqlite3.Connection, event_id: int) -> int:
    return conn.execute(
        """SELECT COUNT(*) AS cnt FROM times t
           JOIN stages s ON t.stage_id = s.id WHERE s.event_id=?""",
        (event_id,)
    ).fetchone()["cnt"]


# ======================================================================
# COMMUNICATIONS (race direction notices, numbered per event code)
# ======================================================================

def create_communication(conn: sqlite3.Connection, event_code: str, text: str,
                         date: Optional[str] = None,
                         time: Optional[str] = None) -> tuple[int, int]:
    """Publish a numbered notice. Returns (id, number).

    Numbers run 1, 2, 3 ... per event code.
    """
    row = conn.execute(
        "SELECT COALESCE(MAX(number), 0) + 1 AS next_num FROM communications WHERE event_code=?",
        (event_code,)
    ).fetchone()
    number = row["next_num"]
    cur = conn.execute(
        """INSERT INTO communications (event_code, number, text, date, time)
           VALUES (?, ?, ?, COALESCE(?, date('now')), COALESCE(?, time('now')))""",
        (event_code, number, text, date, time)
    )
    conn.commit()
    return cur.lastrowid, number


def get_communications(conn: sqlite3.Connection, event_code: str) -> list[sqlite3.Row]:
    """Notices for an event, newest first."""
    return conn.execute(
        "SELECT * FROM communications WHERE event_code=? ORDER BY number DESC",
        (event_code,)
    ).fetchall()


def delete_communication(conn: sqlite3.Connection, communication_id: int) -> None:
    conn.execute("DELETE FROM communications WHERE id=?", (communication_id,))
    conn.commit()


# ======================================================================
# AUDIT LOG
# ======================================================================

def log_audit(conn: sqlite3.Connection, event_id: Optional[int],
              action: str, entity_type: str = "",
              entity_id: Optional[int] = None,
              details: str = "", source: str = "admin") -> int:
    """Log an admin action for audit trail."""
    cur = conn.execute(
        """INSERT INTO audit_log (event_id, action, entity_type, entity_id,
           details, source)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (event_id, action, entity_type, entity_id, details, source)
    )
    conn.commit()
    return cur.lastrowid


def get_audit_log(conn: sqlite3.Connection, event_id: Optional[int] = None,
                  limit: int = 100) -> list[sqlite3.Row]:
    """Get audit log entries, newest first."""
    if event_id:
        return conn.execute(
            "SELECT * FROM audit_log WHERE event_id=? ORDER BY id DESC LIMIT ?",
            (event_id, limit)
        ).fetchall()
    return conn.execute(
        "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()
