"""SQLite-backed persistence layer for alerts, users and price history."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from alerts.models import Alert, AlertKind, NewAlert, POSITION_KINDS, validate_new_alert
from services.lnmarkets_client import Credentials
from storage.credentials_cipher import CredentialCipher
from storage.models import UserRecord

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

logger = logging.getLogger(__name__)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def _row_to_alert(row: sqlite3.Row) -> Optional[Alert]:
    try:
        kind = AlertKind(row["kind"])
    except ValueError:
        logger.warning("Skipping alert %s with unknown kind %r", row["id"], row["kind"])
        return None
    return Alert(
        id=row["id"],
        owner=row["owner"],
        kind=kind,
        target_value=row["target_value"],
        time_window=row["time_window"],
        repeating=bool(row["repeating"]),
        active=bool(row["active"]),
        last_triggered_at=_from_text(row["last_triggered_at"]),
        created_at=_from_text(row["created_at"]),
    )


class SQLiteRepository:
    """Provides async-friendly helpers for persisting alerts, users and price samples.

    API credentials are Fernet-encrypted with ``encryption_key`` before they are
    written and only decrypted when a ``Credentials`` value is built.
    """

    def __init__(self, db_path: Path | str, encryption_key: bytes | str) -> None:
        self.db_path = Path(db_path)
        self._cipher = CredentialCipher(encryption_key)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS users (
                owner INTEGER PRIMARY KEY,
                username TEXT,
                api_key TEXT,
                api_secret TEXT,
                passphrase TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner INTEGER NOT NULL,
                kind TEXT NOT NULL,
                target_value REAL NOT NULL,
                time_window INTEGER,
                repeating INTEGER NOT NULL DEFAULT 0,
                active INTEGER NOT NULL DEFAULT 1,
                last_triggered_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (owner) REFERENCES users(owner) ON DELETE CASCADE
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS price_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                price REAL NOT NULL,
                recorded_at TEXT NOT NULL
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_alerts_owner
                ON alerts(owner);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_alerts_active_kind
                ON alerts(active, kind);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_price_history_time
                ON price_history(recorded_at);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _execute(self, query: str, params: tuple = ()) -> tuple[int, int]:
        """Runs a write statement and returns (lastrowid, rowcount)."""
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            self._connection.commit()
            result = (cursor.lastrowid, cursor.rowcount)
            cursor.close()
        return result

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
            cursor.close()
        return rows

    # --- Users ---

    async def ensure_user(self, owner: int, username: Optional[str] = None) -> UserRecord:
        return await self._run(self._ensure_user_sync, owner, username)

    def _ensure_user_sync(self, owner: int, username: Optional[str]) -> UserRecord:
        now = _to_text(datetime.now(timezone.utc))
        self._execute(
            """
            INSERT INTO users (owner, username, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(owner) DO UPDATE SET username = COALESCE(excluded.username, users.username)
            """,
            (owner, username, now, now),
        )
        return self._get_user_sync(owner)

    async def get_user(self, owner: int) -> Optional[UserRecord]:
        return await self._run(self._get_user_sync, owner)

    def _get_user_sync(self, owner: int) -> Optional[UserRecord]:
        rows = self._fetchall("SELECT * FROM users WHERE owner = ?", (owner,))
        if not rows:
            return None
        row = rows[0]
        return UserRecord(
            owner=row["owner"],
            username=row["username"],
            credentials=self._cipher.decrypt(row["api_key"], row["api_secret"], row["passphrase"]),
            created_at=_from_text(row["created_at"]),
            updated_at=_from_text(row["updated_at"]),
        )

    async def set_credentials(self, owner: int, credentials: Optional[Credentials]) -> None:
        await self._run(self._set_credentials_sync, owner, credentials)

    def _set_credentials_sync(self, owner: int, credentials: Optional[Credentials]) -> None:
        self._ensure_user_sync(owner, None)
        values = (
            self._cipher.encrypt(credentials)
            if credentials else (None, None, None)
        )
        self._execute(
            """
            UPDATE users
            SET api_key = ?, api_secret = ?, passphrase = ?, updated_at = ?
            WHERE owner = ?
            """,
            (*values, _to_text(datetime.now(timezone.utc)), owner),
        )

    # --- Alerts ---

    async def insert_alert(self, alert: NewAlert) -> Alert:
        validate_new_alert(alert)
        return await self._run(self._insert_alert_sync, alert)

    def _insert_alert_sync(self, alert: NewAlert) -> Alert:
        self._ensure_user_sync(alert.owner, None)
        created_at = datetime.now(timezone.utc)
        alert_id, _ = self._execute(
            """
            INSERT INTO alerts (owner, kind, target_value, time_window, repeating, active, created_at)
            VALUES (?, ?, ?, ?, ?, 1, ?)
            """,
            (
                alert.owner,
                alert.kind.value,
                alert.target_value,
                alert.time_window,
                1 if alert.repeating else 0,
                _to_text(created_at),
            ),
        )
        return self._get_alert_sync(alert_id)

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        return await self._run(self._get_alert_sync, alert_id)

    def _get_alert_sync(self, alert_id: int) -> Optional[Alert]:
        rows = self._fetchall("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return _row_to_alert(rows[0]) if rows else None

    async def list_active_alerts(
        self,
        owner: Optional[int] = None,
        kinds: Optional[Iterable[AlertKind]] = None,
    ) -> list[Alert]:
        kind_values = sorted(kind.value for kind in kinds) if kinds is not None else None
        return await self._run(self._list_active_alerts_sync, owner, kind_values)

    def _list_active_alerts_sync(self, owner: Optional[int], kinds: Optional[list[str]]) -> list[Alert]:
        query = "SELECT * FROM alerts WHERE active = 1 AND (? IS NULL OR owner = ?)"
        params: list[Any] = [owner, owner]
        if kinds is not None:
            if not kinds:
                return []
            query += f" AND kind IN ({', '.join('?' for _ in kinds)})"
            params.extend(kinds)
        query += " ORDER BY id"
        alerts = [_row_to_alert(row) for row in self._fetchall(query, tuple(params))]
        return [alert for alert in alerts if alert is not None]

    async def list_position_alerts_with_credentials(self) -> list[tuple[Alert, Credentials]]:
        return await self._run(self._list_position_alerts_with_credentials_sync)

    def _list_position_alerts_with_credentials_sync(self) -> list[tuple[Alert, Credentials]]:
        kinds = sorted(kind.value for kind in POSITION_KINDS)
        rows = self._fetchall(
            f"""
            SELECT a.*, u.api_key, u.api_secret, u.passphrase
            FROM alerts a
            JOIN users u ON u.owner = a.owner
            WHERE a.active = 1
              AND a.kind IN ({', '.join('?' for _ in kinds)})
              AND u.api_key IS NOT NULL
              AND u.api_secret IS NOT NULL
              AND u.passphrase IS NOT NULL
            ORDER BY a.owner, a.id
            """,
            tuple(kinds),
        )
        results: list[tuple[Alert, Credentials]] = []
        for row in rows:
            alert = _row_to_alert(row)
            if alert is None:
                continue
            credentials = self._cipher.decrypt(row["api_key"], row["api_secret"], row["passphrase"])
            if credentials is None:
                logger.warning("Skipping alert %s: credentials for user %s are unreadable", alert.id, alert.owner)
                continue
            results.append((alert, credentials))
        return results

    async def update_alert(
        self,
        alert_id: int,
        *,
        active: Optional[bool] = None,
        last_triggered_at: Optional[datetime] = None,
    ) -> Optional[Alert]:
        return await self._run(self._update_alert_sync, alert_id, active, last_triggered_at)

    def _update_alert_sync(
        self,
        alert_id: int,
        active: Optional[bool],
        last_triggered_at: Optional[datetime],
    ) -> Optional[Alert]:
        assignments: list[str] = []
        params: list[Any] = []
        if active is not None:
            assignments.append("active = ?")
            params.append(1 if active else 0)
        if last_triggered_at is not None:
            assignments.append("last_triggered_at = ?")
            params.append(_to_text(last_triggered_at))
        if assignments:
            self._execute(
                f"UPDATE alerts SET {', '.join(assignments)} WHERE id = ?",
                (*params, alert_id),
            )
        return self._get_alert_sync(alert_id)

    async def mark_triggered(self, alert_id: int, triggered_at: datetime, *, deactivate: bool) -> Optional[Alert]:
        return await self.update_alert(
            alert_id,
            active=False if deactivate else None,
            last_triggered_at=triggered_at,
        )

    async def deactivate_alert(self, owner: int, alert_id: int) -> bool:
        return await self._run(self._deactivate_alert_sync, owner, alert_id)

    def _deactivate_alert_sync(self, owner: int, alert_id: int) -> bool:
        _, rowcount = self._execute(
            "UPDATE alerts SET active = 0 WHERE id = ? AND owner = ? AND active = 1",
            (alert_id, owner),
        )
        return rowcount > 0

    async def deactivate_all(self, owner: int) -> int:
        return await self._run(self._deactivate_all_sync, owner)

    def _deactivate_all_sync(self, owner: int) -> int:
        _, rowcount = self._execute(
            "UPDATE alerts SET active = 0 WHERE owner = ? AND active = 1",
            (owner,),
        )
        return rowcount

    # --- Price history ---

    async def record_price(self, price: float, recorded_at: datetime) -> None:
        await self._run(self._record_price_sync, price, recorded_at)

    def _record_price_sync(self, price: float, recorded_at: datetime) -> None:
        self._execute(
            "INSERT INTO price_history (price, recorded_at) VALUES (?, ?)",
            (price, _to_text(recorded_at)),
        )

    async def get_price_at(self, cutoff: datetime) -> Optional[float]:
        """Most recent stored price at or before ``cutoff``."""
        return await self._run(self._get_price_at_sync, cutoff)

    def _get_price_at_sync(self, cutoff: datetime) -> Optional[float]:
        rows = self._fetchall(
            """
            SELECT price FROM price_history
            WHERE recorded_at <= ?
            ORDER BY recorded_at DESC
            LIMIT 1
            """,
            (_to_text(cutoff),),
        )
        return rows[0]["price"] if rows else None

    async def prune_price_history(self, older_than: datetime) -> int:
        return await self._run(self._prune_price_history_sync, older_than)

    def _prune_price_history_sync(self, older_than: datetime) -> int:
        _, rowcount = self._execute(
            "DELETE FROM price_history WHERE recorded_at < ?",
            (_to_text(older_than),),
        )
        return rowcount

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()


__all__ = ["SQLiteRepository", "UserRecord", "ISO_FORMAT"]
