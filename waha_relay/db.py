import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


DB_PATH = Path(os.getenv("DB_PATH", "storage/app.db"))

# Keys persisted in the settings table for the relay configuration
CONFIG_KEYS = (
    "gemini_api_key",
    "ai_model",
    "system_prompt",
    "products",
    "waha_base_url",
    "webhook_url",
    "session_name",
    "log_level",
)

MAX_MESSAGES_PER_CHAT = 50
MAX_ERRORS = 10


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class Database:
    def __init__(self, path: Path = DB_PATH):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def init(self):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id TEXT,
                    msg_id TEXT,
                    sender TEXT,
                    content TEXT,
                    type TEXT,
                    created_at TEXT,
                    raw_json TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS errors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    context TEXT,
                    message TEXT,
                    created_at TEXT
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id)")
            con.commit()

    @contextmanager
    def _conn(self):
        con = sqlite3.connect(self.path)
        try:
            yield con
        finally:
            con.close()

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._conn() as con:
            cur = con.cursor()
            row = cur.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
            if not row:
                return default
            return row[0]

    def set_setting(self, key: str, value: str):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute("INSERT INTO settings(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value", (key, value))
            con.commit()

    def get_config(self) -> Dict[str, Any]:
        cfg: Dict[str, Any] = {}
        for key in CONFIG_KEYS + ("last_updated",):
            val = self.get_setting(key)
            if val is None:
                continue
            if key == "products":
                try:
                    val = json.loads(val)
                except ValueError:
                    val = []
            cfg[key] = val
        return cfg

    def save_config(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Persist known config keys, ignoring anything else. Returns the merged config."""
        for key, val in updates.items():
            if key not in CONFIG_KEYS or val is None:
                continue
            if key == "products":
                val = json.dumps(val)
            self.set_setting(key, str(val))
        self.set_setting("last_updated", _now())
        return self.get_config()

    def has_message(self, msg_id: str) -> bool:
        if not msg_id:
            return False
        with self._conn() as con:
            row = con.execute("SELECT 1 FROM messages WHERE msg_id=? LIMIT 1", (msg_id,)).fetchone()
            return row is not None

    def save_message(self, chat_id: str, sender: str, content: str, msg_type: str = "text", msg_id: Optional[str] = None, raw: Optional[Dict[str, Any]] = None) -> int:
        with self._conn() as con:
            cur = con.cursor()
            cur.execute(
                "INSERT INTO messages (chat_id, msg_id, sender, content, type, created_at, raw_json) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (chat_id, msg_id, sender, content, msg_type, _now(), json.dumps(raw) if raw is not None else None),
            )
            row_id = cur.lastrowid
            # Keep only the newest messages per chat
            cur.execute(
                "DELETE FROM messages WHERE chat_id=? AND id NOT IN (SELECT id FROM messages WHERE chat_id=? ORDER BY id DESC LIMIT ?)",
                (chat_id, chat_id, MAX_MESSAGES_PER_CHAT),
            )
            con.commit()
            return int(row_id)

    def get_conversation(self, chat_id: str, limit: int = MAX_MESSAGES_PER_CHAT) -> List[Dict[str, Any]]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT id, sender, content, type, created_at FROM messages WHERE chat_id=? ORDER BY id DESC LIMIT ?",
                (chat_id, limit),
            ).fetchall()
        res = []
        for r in reversed(rows):
            res.append({"id": r[0], "sender": r[1], "content": r[2], "type": r[3], "created_at": r[4]})
        return res

    def list_conversations(self) -> List[Dict[str, Any]]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT chat_id, COUNT(*), MAX(created_at) FROM messages GROUP BY chat_id ORDER BY MAX(id) DESC"
            ).fetchall()
        return [{"chat_id": r[0], "messages": r[1], "last_message_at": r[2]} for r in rows]

    def clear_conversations(self, chat_id: Optional[str] = None) -> int:
        with self._conn() as con:
            cur = con.cursor()
            if chat_id:
                cur.execute("DELETE FROM messages WHERE chat_id=?", (chat_id,))
            else:
                cur.execute("DELETE FROM messages")
            con.commit()
            return cur.rowcount

    def record_processed(self):
        count = int(self.get_setting("messages_processed", "0") or 0) + 1
        self.set_setting("messages_processed", str(count))
        self.set_setting("last_message_at", _now())

    def add_error(self, context: str, message: str):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute("INSERT INTO errors (context, message, created_at) VALUES (?, ?, ?)", (context, message[:500], _now()))
            cur.execute("DELETE FROM errors WHERE id NOT IN (SELECT id FROM errors ORDER BY id DESC LIMIT ?)", (MAX_ERRORS,))
            con.commit()

    def recent_errors(self) -> List[Dict[str, Any]]:
        with self._conn() as con:
            rows = con.execute("SELECT context, message, created_at FROM errors ORDER BY id DESC LIMIT ?", (MAX_ERRORS,)).fetchall()
        return [{"context": r[0], "message": r[1], "at": r[2]} for r in rows]

    def get_status(self) -> Dict[str, Any]:
        return {
            "messages_processed": int(self.get_setting("messages_processed", "0") or 0),
            "last_message_at": self.get_setting("last_message_at"),
            "errors": self.recent_errors(),
        }


def get_db() -> Database:
    return Database()
