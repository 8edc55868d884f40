"""SQLite persistence for knowledge-base entries and the error notebook."""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

DB_PATH = Path(__file__).parent / "studio.db"


def configure(path: Union[str, Path]) -> None:
    """Point the module at another database file (tests, per-deployment data dirs)."""
    global DB_PATH
    DB_PATH = Path(path)


def _conn() -> sqlite3.Connection:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(str(DB_PATH))
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL")
    return con


def init_db() -> None:
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS kb_entries (
                id               TEXT PRIMARY KEY,
                user_id          TEXT NOT NULL,
                created_at       DATETIME DEFAULT (datetime('now')),
                category         TEXT NOT NULL,
                prompt_fragment  TEXT NOT NULL,
                source_image     TEXT,
                usage_count      INTEGER DEFAULT 0,
                full_prompt      TEXT,   -- JSON  {consistent_prompt, variable_prompt}
                learning_context TEXT,
                group_id         TEXT,
                deleted_at       REAL    -- epoch seconds; NULL while active
            )
            """
        )
        con.execute("CREATE INDEX IF NOT EXISTS kb_entries_user ON kb_entries (user_id)")
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS error_notebook (
                id         TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                issue      TEXT NOT NULL,
                solution   TEXT NOT NULL,
                tags       TEXT    -- JSON list
            )
            """
        )


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

def insert_entries(user_id: str, entries: Iterable[Dict]) -> None:
    with _conn() as con:
        con.executemany(
            "INSERT INTO kb_entries (id, user_id, category, prompt_fragment, source_image, "
            "usage_count, full_prompt, learning_context, group_id, deleted_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    e["id"],
                    user_id,
                    e["category"],
                    e["prompt_fragment"],
                    e.get("source_image_preview") or "",
                    int(e.get("usage_count") or 0),
                    json.dumps(e["full_prompt"]) if e.get("full_prompt") else None,
                    e.get("learning_context"),
                    e.get("group_id"),
                    e.get("deleted_at"),
                )
                for e in entries
            ],
        )


def list_entries(user_id: str, include_deleted: bool = False) -> List[Dict]:
    sql = "SELECT * FROM kb_entries WHERE user_id=?"
    if not include_deleted:
        sql += " AND deleted_at IS NULL"
    sql += " ORDER BY created_at DESC, rowid DESC"
    with _conn() as con:
        rows = con.execute(sql, (user_id,)).fetchall()
    return [_deserialise(dict(r)) for r in rows]


def list_deleted(user_id: str) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM kb_entries WHERE user_id=? AND deleted_at IS NOT NULL "
            "ORDER BY deleted_at DESC",
            (user_id,),
        ).fetchall()
    return [_deserialise(dict(r)) for r in rows]


def get_entry(user_id: str, entry_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute(
            "SELECT * FROM kb_entries WHERE user_id=? AND id=?", (user_id, entry_id)
        ).fetchone()
    if not row:
        return None
    return _deserialise(dict(row))


def increment_usage(user_id: str, entry_id: str) -> bool:
    with _conn() as con:
        cur = con.execute(
            "UPDATE kb_entries SET usage_count = usage_count + 1 WHERE user_id=? AND id=?",
            (user_id, entry_id),
        )
    return cur.rowcount > 0


def set_deleted_at(user_id: str, ids: List[str], deleted_at: Optional[float]) -> int:
    if not ids:
        return 0
    marks = ",".join("?" for _ in ids)
    with _conn() as con:
        cur = con.execute(
            f"UPDATE kb_entries SET deleted_at=? WHERE user_id=? AND id IN ({marks})",
            (deleted_at, user_id, *ids),
        )
    return cur.rowcount


def delete_entries(user_id: str, ids: List[str]) -> int:
    if not ids:
        return 0
    marks = ",".join("?" for _ in ids)
    with _conn() as con:
        cur = con.execute(
            f"DELETE FROM kb_entries WHERE user_id=? AND id IN ({marks})", (user_id, *ids)
        )
    return cur.rowcount


def expired_ids(user_id: str, cutoff: float) -> List[str]:
    with _conn() as con:
        rows = con.execute(
            "SELECT id FROM kb_entries WHERE user_id=? AND deleted_at IS NOT NULL AND deleted_at < ?",
            (user_id, cutoff),
        ).fetchall()
    return [r["id"] for r in rows]


def image_in_use(user_id: str, source_image: str) -> bool:
    with _conn() as con:
        row = con.execute(
            "SELECT 1 FROM kb_entries WHERE user_id=? AND source_image=? LIMIT 1",
            (user_id, source_image),
        ).fetchone()
    return row is not None


def _deserialise(row: Dict) -> Dict:
    raw = row.get("full_prompt")
    if raw:
        try:
            row["full_prompt"] = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            row["full_prompt"] = None
    row["source_image_preview"] = row.pop("source_image", "") or ""
    return row


# ---------------------------------------------------------------------------
# Error notebook
# ---------------------------------------------------------------------------

def add_notebook_entry(issue: str, solution: str, tags: Optional[List[str]] = None) -> Dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "issue": issue,
        "solution": solution,
        "tags": list(tags or []),
    }
    with _conn() as con:
        con.execute(
            "INSERT INTO error_notebook (id, created_at, issue, solution, tags) VALUES (?, ?, ?, ?, ?)",
            (entry["id"], entry["timestamp"], issue, solution, json.dumps(entry["tags"])),
        )
    return entry


def list_notebook_entries(limit: int = 200) -> List[Dict[str, Any]]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM error_notebook ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
    result = []
    for r in rows:
        try:
            tags = json.loads(r["tags"] or "[]")
        except (json.JSONDecodeError, TypeError):
            tags = []
        result.append({
            "id": r["id"],
            "timestamp": r["created_at"],
            "issue": r["issue"],
            "solution": r["solution"],
            "tags": tags,
        })
    return result
