"""
SpeakCoach SQLite record store.

Stores everything the coaching engine needs between requests:
- Recordings (one row per analyzed session, immutable)
- User analytics (one row per user, running aggregates)
- Badge catalog and unlocked user badges
- Generated coaching insights

Each public method opens its own connection unless an existing one is
passed in via ``conn``; ``transaction()`` yields a connection holding the
SQLite write lock so a read-modify-write sequence is atomic.
"""

import json
import sqlite3
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union, List, Iterator

from exceptions import StoreUnavailableError

logger = logging.getLogger("speechcoach.db")

DB_PATH = Path(__file__).parent / "speechcoach.db"

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recordings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    duration_sec REAL NOT NULL,
    transcript TEXT NOT NULL,
    confidence REAL NOT NULL,
    speaking_pace REAL NOT NULL,
    clarity_score REAL NOT NULL,
    sentiment_score REAL NOT NULL,
    filler_word_count INTEGER NOT NULL,
    pause_count INTEGER NOT NULL,
    average_pause REAL NOT NULL,
    primary_insight TEXT,
    improvement_tips TEXT,   -- JSON array, ordered
    strengths TEXT,          -- JSON array
    weaknesses TEXT          -- JSON array
);

CREATE TABLE IF NOT EXISTS user_analytics (
    user_id TEXT PRIMARY KEY,
    total_recordings INTEGER NOT NULL DEFAULT 0,
    total_practice_time REAL NOT NULL DEFAULT 0,
    average_confidence REAL NOT NULL DEFAULT 0,
    average_pace REAL NOT NULL DEFAULT 0,
    average_clarity REAL NOT NULL DEFAULT 0,
    average_fillers REAL NOT NULL DEFAULT 0,   -- filler words per minute
    current_streak INTEGER NOT NULL DEFAULT 0,
    longest_streak INTEGER NOT NULL DEFAULT 0,
    last_practice_date TEXT,
    confidence_change REAL NOT NULL DEFAULT 0,
    pace_change REAL NOT NULL DEFAULT 0,
    clarity_change REAL NOT NULL DEFAULT 0,
    filler_change REAL NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS badges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL,
    category TEXT NOT NULL,   -- milestone / consistency / improvement / special
    icon_name TEXT NOT NULL,
    criteria TEXT NOT NULL,   -- JSON object of thresholds
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS user_badges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    badge_id INTEGER NOT NULL REFERENCES badges(id) ON DELETE CASCADE,
    unlocked_at TEXT NOT NULL,
    UNIQUE (user_id, badge_id)
);

CREATE TABLE IF NOT EXISTS coaching_insights (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    source TEXT NOT NULL,     -- generated / fallback / onboarding
    payload TEXT NOT NULL     -- JSON: insight + practice ideas
);

CREATE INDEX IF NOT EXISTS idx_recordings_user_created ON recordings(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_user_badges_user_id ON user_badges(user_id);
CREATE INDEX IF NOT EXISTS idx_coaching_insights_user ON coaching_insights(user_id, created_at);
"""

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _rollback(conn: sqlite3.Connection):
    if not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error:
        logger.warning("Rollback failed", exc_info=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime. Naive values are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db_time(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    return as_utc(dt).strftime(_TS_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class Recording:
    id: Optional[int]
    user_id: str
    created_at: datetime
    duration: float
    transcript: str
    confidence: float
    speaking_pace: float
    clarity_score: float
    sentiment_score: float
    filler_word_count: int
    pause_count: int
    average_pause: float
    primary_insight: str = ""
    improvement_tips: List[str] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "Recording":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            created_at=from_db_time(row["created_at"]),
            duration=row["duration_sec"],
            transcript=row["transcript"],
            confidence=row["confidence"],
            speaking_pace=row["speaking_pace"],
            clarity_score=row["clarity_score"],
            sentiment_score=row["sentiment_score"],
            filler_word_count=row["filler_word_count"],
            pause_count=row["pause_count"],
            average_pause=row["average_pause"],
            primary_insight=row["primary_insight"] or "",
            improvement_tips=json.loads(row["improvement_tips"] or "[]"),
            strengths=json.loads(row["strengths"] or "[]"),
            weaknesses=json.loads(row["weaknesses"] or "[]"),
        )


@dataclass
class UserAnalytics:
    user_id: str
    total_recordings: int = 0
    total_practice_time: float = 0.0
    average_confidence: float = 0.0
    average_pace: float = 0.0
    average_clarity: float = 0.0
    average_fillers: float = 0.0
    current_streak: int = 0
    longest_streak: int = 0
    last_practice_date: Optional[datetime] = None
    confidence_change: float = 0.0
    pace_change: float = 0.0
    clarity_change: float = 0.0
    filler_change: float = 0.0
    version: int = 0

    @classmethod
    def from_row(cls, row) -> "UserAnalytics":
        return cls(
            user_id=row["user_id"],
            total_recordings=row["total_recordings"],
            total_practice_time=row["total_practice_time"],
            average_confidence=row["average_confidence"],
            average_pace=row["average_pace"],
            average_clarity=row["average_clarity"],
            average_fillers=row["average_fillers"],
            current_streak=row["current_streak"],
            longest_streak=row["longest_streak"],
            last_practice_date=from_db_time(row["last_practice_date"]),
            confidence_change=row["confidence_change"],
            pace_change=row["pace_change"],
            clarity_change=row["clarity_change"],
            filler_change=row["filler_change"],
            version=row["version"],
        )


class CoachDB:
    """SQLite store for recordings, analytics, badges and coaching insights."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None, timeout: float = 30.0):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.timeout = timeout
        self._ensure_schema()

    # -- Connections --

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout,
                                   isolation_level=None, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Could not open database: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self):
        """Create tables if they don't exist."""
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
            existing = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if not existing:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, to_db_time(utcnow())),
                )
        finally:
            conn.close()
        logger.info("CoachDB ready at %s", self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the first statement.

        Usage:
            with db.transaction() as conn:
                row = db.get_user_analytics(user_id, conn=conn)
                ...
                db.save_user_analytics(analytics, conn=conn)
        """
        conn = self._connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Could not start transaction: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                _rollback(conn)
                raise StoreUnavailableError(f"Database write failed: {e}") from e
            except BaseException:
                _rollback(conn)
                raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Database read failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _writer(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as conn:
            yield conn

    # -- Recordings --

    def add_recording(self, recording: Recording, conn: Optional[sqlite3.Connection] = None) -> int:
        """Append a recording row. Returns the new id."""
        with self._writer(conn) as c:
            cur = c.execute(
                """
                INSERT INTO recordings (
                    user_id, created_at, duration_sec, transcript, confidence,
                    speaking_pace, clarity_score, sentiment_score, filler_word_count,
                    pause_count, average_pause, primary_insight, improvement_tips,
                    strengths, weaknesses
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    recording.user_id, to_db_time(recording.created_at), recording.duration,
                    recording.transcript, recording.confidence, recording.speaking_pace,
                    recording.clarity_score, recording.sentiment_score,
                    recording.filler_word_count, recording.pause_count, recording.average_pause,
                    recording.primary_insight, json.dumps(recording.improvement_tips),
                    json.dumps(recording.strengths), json.dumps(recording.weaknesses),
                ),
            )
            return cur.lastrowid

    def get_recording(self, recording_id: int) -> Optional[Recording]:
        with self._reader() as c:
            row = c.execute("SELECT * FROM recordings WHERE id = ?", (recording_id,)).fetchone()
        return Recording.from_row(row) if row else None

    def list_recordings(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = True,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Recording]:
        """Recordings for a user, optionally restricted to [since, until)."""
        query = "SELECT * FROM recordings WHERE user_id = ?"
        params: list = [user_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_db_time(since))
        if until is not None:
            query += " AND created_at < ?"
            params.append(to_db_time(until))
        query += " ORDER BY created_at DESC, id DESC" if newest_first else " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._reader(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [Recording.from_row(r) for r in rows]

    def count_recordings(self, user_id: str, since: Optional[datetime] = None,
                         conn: Optional[sqlite3.Connection] = None) -> int:
        query = "SELECT COUNT(*) FROM recordings WHERE user_id = ?"
        params: list = [user_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_db_time(since))
        with self._reader(conn) as c:
            return c.execute(query, params).fetchone()[0]

    def recording_times(self, user_id: str, since: Optional[datetime] = None,
                        conn: Optional[sqlite3.Connection] = None) -> List[datetime]:
        """Creation times only, oldest first."""
        query = "SELECT created_at FROM recordings WHERE user_id = ?"
        params: list = [user_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_db_time(since))
        query += " ORDER BY created_at ASC"
        with self._reader(conn) as c:
            return [from_db_time(r[0]) for r in c.execute(query, params).fetchall()]

    # -- User analytics --

    def get_user_analytics(self, user_id: str,
                           conn: Optional[sqlite3.Connection] = None) -> Optional[UserAnalytics]:
        with self._reader(conn) as c:
            row = c.execute("SELECT * FROM user_analytics WHERE user_id = ?", (user_id,)).fetchone()
        return UserAnalytics.from_row(row) if row else None

    def save_user_analytics(self, analytics: UserAnalytics,
                            conn: Optional[sqlite3.Connection] = None) -> UserAnalytics:
        """Upsert by user_id. Returns a copy carrying the bumped row version; the argument is not modified."""
        analytics = replace(analytics, version=analytics.version + 1)
        with self._writer(conn) as c:
            c.execute(
                """
                INSERT INTO user_analytics (
                    user_id, total_recordings, total_practice_time,
                    average_confidence, average_pace, average_clarity, average_fillers,
                    current_streak, longest_streak, last_practice_date,
                    confidence_change, pace_change, clarity_change, filler_change,
                    version, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    total_recordings = excluded.total_recordings,
                    total_practice_time = excluded.total_practice_time,
                    average_confidence = excluded.average_confidence,
                    average_pace = excluded.average_pace,
                    average_clarity = excluded.average_clarity,
                    average_fillers = excluded.average_fillers,
                    current_streak = excluded.current_streak,
                    longest_streak = excluded.longest_streak,
                    last_practice_date = excluded.last_practice_date,
                    confidence_change = excluded.confidence_change,
                    pace_change = excluded.pace_change,
                    clarity_change = excluded.clarity_change,
                    filler_change = excluded.filler_change,
                    version = excluded.version,
                    updated_at = excluded.updated_at
                """,
                (
                    analytics.user_id, analytics.total_recordings, analytics.total_practice_time,
                    analytics.average_confidence, analytics.average_pace,
                    analytics.average_clarity, analytics.average_fillers,
                    analytics.current_streak, analytics.longest_streak,
                    to_db_time(analytics.last_practice_date) if analytics.last_practice_date else None,
                    analytics.confidence_change, analytics.pace_change,
                    analytics.clarity_change, analytics.filler_change,
                    analytics.version, to_db_time(utcnow()),
                ),
            )
        return analytics

    # -- Badges --

    def upsert_badge(self, name: str, description: str, category: str, icon_name: str,
                     criteria: dict, update_existing: bool = False) -> int:
        """Insert a catalog badge keyed by name. Existing rows are left alone unless update_existing."""
        with self._writer() as c:
            if update_existing:
                c.execute(
                    """
                    INSERT INTO badges (name, description, category, icon_name, criteria)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (name) DO UPDATE SET
                        description = excluded.description,
                        category = excluded.category,
                        icon_name = excluded.icon_name,
                        criteria = excluded.criteria
                    """,
                    (name, description, category, icon_name, json.dumps(criteria)),
                )
            else:
                c.execute(
                    """
                    INSERT INTO badges (name, description, category, icon_name, criteria)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (name) DO NOTHING
                    """,
                    (name, description, category, icon_name, json.dumps(criteria)),
                )
            return c.execute("SELECT id FROM badges WHERE name = ?", (name,)).fetchone()[0]

    def list_badges(self, active_only: bool = True) -> List[dict]:
        """Badge catalog rows in catalog (insertion) order, criteria decoded."""
        query = "SELECT * FROM badges"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY id"
        with self._reader() as c:
            rows = c.execute(query).fetchall()
        badges = []
        for r in rows:
            d = dict(r)
            d["criteria"] = json.loads(d["criteria"])
            d["is_active"] = bool(d["is_active"])
            badges.append(d)
        return badges

    def set_badge_active(self, badge_id: int, active: bool) -> None:
        with self._writer() as c:
            c.execute("UPDATE badges SET is_active = ? WHERE id = ?", (1 if active else 0, badge_id))

    def get_user_badges(self, user_id: str,
                        conn: Optional[sqlite3.Connection] = None) -> dict:
        """Map of badge_id -> unlocked_at for a user."""
        with self._reader(conn) as c:
            rows = c.execute(
                "SELECT badge_id, unlocked_at FROM user_badges WHERE user_id = ?", (user_id,)
            ).fetchall()
        return {r["badge_id"]: from_db_time(r["unlocked_at"]) for r in rows}

    def add_user_badge(self, user_id: str, badge_id: int, unlocked_at: datetime,
                       conn: Optional[sqlite3.Connection] = None) -> bool:
        """Insert-once. Returns False when the pair already existed."""
        with self._writer(conn) as c:
            cur = c.execute(
                "INSERT OR IGNORE INTO user_badges (user_id, badge_id, unlocked_at) VALUES (?, ?, ?)",
                (user_id, badge_id, to_db_time(unlocked_at)),
            )
            return cur.rowcount == 1

    # -- Coaching insights --

    def save_coaching_insight(self, user_id: str, source: str, payload: dict,
                              created_at: Optional[datetime] = None) -> int:
        with self._writer() as c:
            cur = c.execute(
                "INSERT INTO coaching_insights (user_id, created_at, source, payload) VALUES (?, ?, ?, ?)",
                (user_id, to_db_time(created_at or utcnow()), source, json.dumps(payload)),
            )
            return cur.lastrowid

    def get_latest_coaching_insight(self, user_id: str) -> Optional[dict]:
        with self._reader() as c:
            row = c.execute(
                """
                SELECT * FROM coaching_insights WHERE user_id = ?
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "created_at": from_db_time(row["created_at"]),
            "source": row["source"],
            "payload": json.loads(row["payload"]),
        }

    def stats(self) -> dict:
        """Row counts per table."""
        with self._reader() as c:
            return {
                table: c.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("recordings", "user_analytics", "badges", "user_badges", "coaching_insights")
            }
