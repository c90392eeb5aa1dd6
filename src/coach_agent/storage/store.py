"""Storage collaborator: tool catalog rows, session state and telemetry."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol


class CoachStore(Protocol):
    """Async storage contract consumed by the pipeline."""

    async def fetch_tool_rows(self) -> list[dict[str, Any]]:
        """Return raw tool catalog rows in whatever column shape they were stored."""

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        """Return persisted session state, or None when unknown."""

    async def save_session(self, session_id: str, state: dict[str, Any]) -> None:
        """Persist session state (last write wins)."""

    async def append_transcript(
        self, conversation_id: str, user_text: str, assistant_text: str
    ) -> None:
        """Append one user+assistant pair to a conversation transcript."""

    async def record_event(self, event: dict[str, Any]) -> None:
        """Append one telemetry event row."""

    async def list_events(self, limit: int = 50) -> list[dict[str, Any]]:
        """Return the most recent telemetry events, newest first."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStore:
    """Process-local store used for tests and offline runs."""

    def __init__(self, tool_rows: list[dict[str, Any]] | None = None) -> None:
        self.tool_rows: list[dict[str, Any]] = [dict(row) for row in tool_rows or []]
        self.sessions: dict[str, dict[str, Any]] = {}
        self.transcripts: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []

    async def fetch_tool_rows(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self.tool_rows]

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        state = self.sessions.get(session_id)
        return json.loads(json.dumps(state)) if state is not None else None

    async def save_session(self, session_id: str, state: dict[str, Any]) -> None:
        self.sessions[session_id] = json.loads(json.dumps(state))

    async def append_transcript(
        self, conversation_id: str, user_text: str, assistant_text: str
    ) -> None:
        row = self.transcripts.setdefault(
            conversation_id,
            {"label": "conversation", "conversation_id": conversation_id, "conversation_history": []},
        )
        row["conversation_history"].append({"role": "user", "content": user_text})
        row["conversation_history"].append({"role": "assistant", "content": assistant_text})
        row["updated_at"] = _now()

    async def record_event(self, event: dict[str, Any]) -> None:
        self.events.append({"id": len(self.events) + 1, **event})

    async def list_events(self, limit: int = 50) -> list[dict[str, Any]]:
        return list(reversed(self.events))[:limit]


class SqliteStore:
    """SQLite-backed store; tool rows are kept as JSON documents.

    Blocking sqlite calls run on a worker thread so the event loop is never
    held by disk I/O.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        _ensure_tables(self.db_path)

    async def fetch_tool_rows(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_tool_rows)

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._load_session, session_id)

    async def save_session(self, session_id: str, state: dict[str, Any]) -> None:
        await asyncio.to_thread(self._save_session, session_id, state)

    async def append_transcript(
        self, conversation_id: str, user_text: str, assistant_text: str
    ) -> None:
        await asyncio.to_thread(self._append_transcript, conversation_id, user_text, assistant_text)

    async def record_event(self, event: dict[str, Any]) -> None:
        await asyncio.to_thread(self._record_event, event)

    async def list_events(self, limit: int = 50) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._list_events, limit)

    def add_tool_row(self, row: dict[str, Any]) -> None:
        """Seed helper; the catalog is otherwise edited out-of-band."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("INSERT INTO tool_docs(row_json) VALUES(?)", (json.dumps(row),))
            conn.commit()

    def _fetch_tool_rows(self) -> list[dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("SELECT row_json FROM tool_docs ORDER BY id").fetchall()
        out: list[dict[str, Any]] = []
        for (raw,) in rows:
            data = json.loads(raw)
            if isinstance(data, dict):
                out.append(data)
        return out

    def _load_session(self, session_id: str) -> dict[str, Any] | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT state_json FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def _save_session(self, session_id: str, state: dict[str, Any]) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO sessions(session_id, state_json, updated_at) VALUES(?, ?, ?) "
                "ON CONFLICT(session_id) DO UPDATE SET state_json=excluded.state_json, "
                "updated_at=excluded.updated_at",
                (session_id, json.dumps(state), _now()),
            )
            conn.commit()

    def _append_transcript(self, conversation_id: str, user_text: str, assistant_text: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT conversation_history FROM debug_logs WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            history = json.loads(row[0]) if row else []
            history.append({"role": "user", "content": user_text})
            history.append({"role": "assistant", "content": assistant_text})
            conn.execute(
                "INSERT INTO debug_logs(conversation_id, label, conversation_history, updated_at) "
                "VALUES(?, 'conversation', ?, ?) ON CONFLICT(conversation_id) DO UPDATE SET "
                "conversation_history=excluded.conversation_history, updated_at=excluded.updated_at",
                (conversation_id, json.dumps(history), _now()),
            )
            conn.commit()

    def _record_event(self, event: dict[str, Any]) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO events(ts, q, route, rag_count, rag_mode, model, reco_slug, "
                "duration_ms, ok, err) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.get("ts") or _now(),
                    event.get("q"),
                    event.get("route"),
                    int(event.get("rag_count") or 0),
                    event.get("rag_mode"),
                    event.get("model"),
                    event.get("reco_slug"),
                    float(event.get("duration_ms") or 0.0),
                    1 if event.get("ok", True) else 0,
                    event.get("err"),
                ),
            )
            conn.commit()

    def _list_events(self, limit: int) -> list[dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT id, ts, q, route, rag_count, rag_mode, model, reco_slug, duration_ms, ok, err "
                "FROM events ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [{**dict(row), "ok": bool(row["ok"])} for row in rows]


def _ensure_tables(db_path: Path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS tool_docs (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "row_json TEXT NOT NULL)"
        )
        conn.execute(
            "CREATE TABLE IF NOT EXISTS sessions (session_id TEXT PRIMARY KEY, "
            "state_json TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        conn.execute(
            "CREATE TABLE IF NOT EXISTS debug_logs (conversation_id TEXT PRIMARY KEY, "
            "label TEXT NOT NULL, conversation_history TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        conn.execute(
            "CREATE TABLE IF NOT EXISTS events (id INTEGER PRIMARY KEY AUTOINCREMENT, ts TEXT, "
            "q TEXT, route TEXT, rag_count INTEGER, rag_mode TEXT, model TEXT, reco_slug TEXT, "
            "duration_ms REAL, ok INTEGER, err TEXT)"
        )
        conn.commit()
