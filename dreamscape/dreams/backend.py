from __future__ import annotations

import json
import os
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence
from uuid import uuid4

from dreamscape.utils.logging_setup import get_logger

logger = get_logger(__name__)


class RemoteOperationFailed(Exception):
    """The single failure kind a record store call reports."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class DreamBackend(Protocol):
    """
    A remote record store holding one collection of dream rows.

    Rows are plain dicts. Implementations raise RemoteOperationFailed on any failure.
    Methods may be plain functions or coroutine functions.
    """

    def fetch_all(self) -> List[Dict[str, Any]]: ...

    def insert(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]: ...

    def update(self, dream_id: str, fields: Mapping[str, Any]) -> List[Dict[str, Any]]: ...

    def delete(self, dream_id: str) -> None: ...

    def close(self) -> None: ...


def _repo_root() -> Path:
    # dreamscape/dreams/backend.py -> dreamscape/dreams -> dreamscape -> repo root
    return Path(__file__).resolve().parents[2]


def default_db_path() -> Path:
    return _repo_root() / "data" / "dreams.db"


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS dreams (
  id TEXT PRIMARY KEY,
  user_title TEXT,
  ai_title TEXT NOT NULL DEFAULT '',
  ai_description TEXT NOT NULL DEFAULT '',
  transcript_raw TEXT NOT NULL DEFAULT '',
  transcript_json TEXT,              -- JSON, opaque
  video_url TEXT NOT NULL DEFAULT '',
  video_thumbnail TEXT,
  created_at TEXT NOT NULL,          -- UTC ISO-8601
  emojis_json TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_dreams_created ON dreams(created_at);
"""

_COLUMNS = (
    "user_title",
    "ai_title",
    "ai_description",
    "transcript_raw",
    "transcript_json",
    "video_url",
    "video_thumbnail",
    "emojis",
)
_JSON_COLUMNS = {"transcript_json": "transcript_json", "emojis": "emojis_json"}


class SQLiteDreamBackend:
    def __init__(self, db_path: Path, conn: sqlite3.Connection):
        self.db_path = db_path
        self.conn = conn
        self._lock = threading.Lock()
        self._last_created: Optional[datetime] = None

    @classmethod
    def open(cls, db_path: Optional[os.PathLike] = None) -> "SQLiteDreamBackend":
        path = Path(db_path) if db_path is not None else default_db_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        # Calls arrive from worker threads; the lock below serializes them.
        conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")

        backend = cls(db_path=path, conn=conn)
        backend._ensure_schema()
        return backend

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except sqlite3.Error as e:
                logger.warning("Closing %s failed: %s", self.db_path, e)

    def _ensure_schema(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute("INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?)", ("schema_version", "1"))

    def _now(self) -> datetime:
        # Strictly increasing so back-to-back inserts never share a timestamp.
        now = datetime.now(timezone.utc)
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    def _j(self, obj: Any) -> Optional[str]:
        if obj is None:
            return None
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))

    def _ju(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except ValueError:
            return s

    def _row(self, row: sqlite3.Row) -> Dict[str, Any]:
        d = dict(row)
        d["transcript_json"] = self._ju(d.get("transcript_json"))
        d["emojis"] = self._ju(d.pop("emojis_json", None)) or []
        return d

    def _column_values(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in fields.items():
            if key not in _COLUMNS:
                raise RemoteOperationFailed(f"Could not find the '{key}' column of 'dreams'")
            if key in _JSON_COLUMNS:
                out[_JSON_COLUMNS[key]] = self._j(value)
            else:
                out[key] = value
        return out

    def _select(self, ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        qmarks = ",".join(["?"] * len(ids))
        cur = self.conn.execute(f"SELECT * FROM dreams WHERE id IN ({qmarks})", list(ids))
        by_id = {r["id"]: self._row(r) for r in cur.fetchall()}
        return [by_id[i] for i in ids if i in by_id]

    def fetch_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                cur = self.conn.execute("SELECT * FROM dreams ORDER BY created_at DESC, rowid DESC")
                return [self._row(r) for r in cur.fetchall()]
            except sqlite3.Error as e:
                raise RemoteOperationFailed(str(e)) from e

    def insert(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        with self._lock:
            ids: List[str] = []
            try:
                self.conn.execute("BEGIN")
                for row in rows:
                    values = self._column_values(row)
                    values["id"] = str(uuid4())
                    values["created_at"] = self._now().isoformat(timespec="microseconds")
                    cols = ",".join(values)
                    qmarks = ",".join(["?"] * len(values))
                    self.conn.execute(f"INSERT INTO dreams({cols}) VALUES({qmarks})", list(values.values()))
                    ids.append(values["id"])
                self.conn.execute("COMMIT")
            except (sqlite3.Error, RemoteOperationFailed) as e:
                self.conn.execute("ROLLBACK")
                if isinstance(e, RemoteOperationFailed):
                    raise
                raise RemoteOperationFailed(str(e)) from e
            logger.debug("Inserted %d dream(s) into %s", len(ids), self.db_path)
            return self._select(ids)

    def update(self, dream_id: str, fields: Mapping[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            values = self._column_values(fields)
            if not values:
                return self._select([dream_id])
            assignments = ", ".join(f"{col}=?" for col in values)
            try:
                cur = self.conn.execute(
                    f"UPDATE dreams SET {assignments} WHERE id=?",
                    [*values.values(), dream_id],
                )
            except sqlite3.Error as e:
                raise RemoteOperationFailed(str(e)) from e
            if cur.rowcount == 0:
                return []
            return self._select([dream_id])

    def delete(self, dream_id: str) -> None:
        with self._lock:
            try:
                self.conn.execute("DELETE FROM dreams WHERE id=?", (dream_id,))
            except sqlite3.Error as e:
                raise RemoteOperationFailed(str(e)) from e


def create_backend(config: Mapping[str, Any]) -> DreamBackend:
    kind = config.get("backend", "sqlite")
    if kind == "sqlite":
        return SQLiteDreamBackend.open(db_path=config.get("db_path") or None)
    if kind == "rest":
        from .rest_backend import RestDreamBackend

        return RestDreamBackend(
            base_url=config["supabase_url"],
            api_key=config.get("supabase_key", ""),
            table=config.get("table", "dreams"),
            timeout_sec=config.get("request_timeout_sec", 30),
        )
    raise ValueError(f"Unknown backend: {kind!r}")
