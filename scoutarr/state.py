import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """Search statistics, encrypted API-key overrides and Web UI auth."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._fernet: Fernet | None = None
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS search_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    occurred_at TEXT NOT NULL,
                    application TEXT NOT NULL,
                    instance TEXT,
                    count INTEGER NOT NULL,
                    items_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_search_history_application
                ON search_history(application);
                CREATE INDEX IF NOT EXISTS idx_search_history_instance
                ON search_history(instance);
                CREATE TABLE IF NOT EXISTS arr_credentials (
                    service_type TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    api_key_enc TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (service_type, target_id)
                );
                CREATE TABLE IF NOT EXISTS webui_auth (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    password_hash TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def get_webui_password_hash(self) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT password_hash FROM webui_auth WHERE id = 1").fetchone()
        if not row:
            return None
        value = str(row["password_hash"] or "").strip()
        return value or None

    def set_webui_password_hash(self, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO webui_auth(id, password_hash, updated_at)
                VALUES(1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET password_hash=excluded.password_hash, updated_at=excluded.updated_at
                """,
                (str(password_hash), _utc_now()),
            )

    def record_search(
        self,
        application: str,
        count: int,
        items: list[dict[str, Any]],
        instance: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO search_history(occurred_at, application, instance, count, items_json)
                VALUES(?, ?, ?, ?, ?)
                """,
                (
                    _utc_now(),
                    str(application).lower(),
                    str(instance) if instance else None,
                    int(count),
                    json.dumps(items),
                ),
            )

    def get_stats(self, limit: int = 100) -> dict[str, Any]:
        with self._connect() as conn:
            total_row = conn.execute("SELECT COALESCE(SUM(count), 0) AS total FROM search_history").fetchone()
            by_app = conn.execute(
                "SELECT application, SUM(count) AS total FROM search_history GROUP BY application"
            ).fetchall()
            # Rows without an instance roll up under the bare application name.
            by_instance = conn.execute(
                """
                SELECT COALESCE(instance, application) AS instance_key, SUM(count) AS total
                FROM search_history
                GROUP BY instance_key
                """
            ).fetchall()
            recent = conn.execute(
                """
                SELECT occurred_at, application, instance, count, items_json
                FROM search_history
                ORDER BY id DESC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()

        recent_searches: list[dict[str, Any]] = []
        for r in recent:
            try:
                items = json.loads(r["items_json"] or "[]")
            except ValueError:
                items = []
            recent_searches.append(
                {
                    "timestamp": r["occurred_at"],
                    "application": r["application"],
                    "instance": r["instance"],
                    "count": int(r["count"]),
                    "items": items if isinstance(items, list) else [],
                }
            )
        return {
            "total_searches": int(total_row["total"] or 0) if total_row else 0,
            "searches_by_application": {r["application"]: int(r["total"] or 0) for r in by_app},
            "searches_by_instance": {r["instance_key"]: int(r["total"] or 0) for r in by_instance},
            "recent_searches": recent_searches,
            "last_search": recent_searches[0]["timestamp"] if recent_searches else None,
        }

    def clear_stats(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM search_history")

    def _key_path(self) -> Path:
        return self.db_path.parent / "scoutarr.masterkey"

    def _get_fernet(self) -> Fernet:
        if self._fernet is not None:
            return self._fernet
        key_path = self._key_path()
        if key_path.exists():
            key = key_path.read_text(encoding="utf-8").strip().encode("ascii", "ignore")
        else:
            key = Fernet.generate_key()
            key_path.write_text(key.decode("ascii"), encoding="utf-8")
            try:
                key_path.chmod(0o600)
            except OSError:
                pass
        self._fernet = Fernet(key)
        return self._fernet

    def has_arr_api_key(self, service_type: str, target_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM arr_credentials WHERE service_type = ? AND target_id = ?",
                (str(service_type), str(target_id)),
            ).fetchone()
        return row is not None

    def set_arr_api_key(self, service_type: str, target_id: str, api_key: str) -> None:
        token = self._get_fernet().encrypt(str(api_key).encode("utf-8")).decode("ascii")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO arr_credentials(service_type, target_id, api_key_enc, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(service_type, target_id) DO UPDATE SET
                    api_key_enc=excluded.api_key_enc,
                    updated_at=excluded.updated_at
                """,
                (str(service_type), str(target_id), token, _utc_now()),
            )

    def get_arr_api_key(self, service_type: str, target_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT api_key_enc FROM arr_credentials WHERE service_type = ? AND target_id = ?",
                (str(service_type), str(target_id)),
            ).fetchone()
        if not row:
            return None
        token = str(row["api_key_enc"] or "").strip()
        if not token:
            return None
        try:
            return self._get_fernet().decrypt(token.encode("ascii"), ttl=None).decode("utf-8", "ignore").strip() or None
        except (InvalidToken, ValueError):
            return None

    def clear_arr_api_key(self, service_type: str, target_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM arr_credentials WHERE service_type = ? AND target_id = ?",
                (str(service_type), str(target_id)),
            )
