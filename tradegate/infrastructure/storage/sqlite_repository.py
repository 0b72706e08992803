"""SQLite Store: transactional rows, survives restarts.

Every operation opens its own short-lived connection. Multi-statement
changes run inside BEGIN IMMEDIATE, which takes the database write lock up
front; two pollers therefore cannot both see the same QUEUED row, and the
expiry sweep, claim and DISPATCHED mark commit together.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from tradegate.infrastructure.logging.logging import get_logger
from tradegate.infrastructure.storage.store import DEFAULT_EVENT_LIMIT, EXPIRED_BEFORE_DISPATCH
from tradegate.infrastructure.utils.timeutils import Clock, ensure_utc, from_iso, to_iso, utc_now
from tradegate.models.errors import (
    DuplicateCommandError,
    InvalidTransitionError,
    NotFoundError,
    SessionExpiredError,
)
from tradegate.models.trade_models import (
    Command,
    CommandResult,
    CommandStatus,
    CommandType,
    EASession,
    Event,
    EventType,
    OAuthState,
    ProviderConnection,
    with_defaults,
)


JsonDict = Dict[str, Any]

PAUSED_KEY = "global_paused"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ea_sessions (
      token_hash TEXT PRIMARY KEY,
      account_id TEXT NOT NULL,
      device_id TEXT NOT NULL,
      expires_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ea_devices (
      device_id TEXT PRIMARY KEY,
      last_seen_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS position_snapshots (
      account_id TEXT PRIMARY KEY,
      snapshot_json TEXT NOT NULL,
      updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS commands (
      seq INTEGER PRIMARY KEY AUTOINCREMENT,
      id TEXT NOT NULL UNIQUE,
      account_id TEXT NOT NULL,
      device_id TEXT NOT NULL DEFAULT '',
      type TEXT NOT NULL,
      symbol TEXT NOT NULL DEFAULT '',
      side TEXT NOT NULL DEFAULT '',
      volume REAL NOT NULL DEFAULT 0,
      sl REAL NOT NULL DEFAULT 0,
      tp REAL NOT NULL DEFAULT 0,
      reason TEXT NOT NULL DEFAULT '',
      status TEXT NOT NULL,
      expires_at TEXT NOT NULL,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      broker_ticket TEXT NOT NULL DEFAULT '',
      error_code TEXT NOT NULL DEFAULT '',
      error_message TEXT NOT NULL DEFAULT '',
      executed_at TEXT NOT NULL DEFAULT ''
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_commands_account_status ON commands(account_id, status, seq);",
    """
    CREATE TABLE IF NOT EXISTS app_state (
      key TEXT PRIMARY KEY,
      value_json TEXT NOT NULL,
      updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
      seq INTEGER PRIMARY KEY AUTOINCREMENT,
      id TEXT NOT NULL UNIQUE,
      account_id TEXT NOT NULL DEFAULT '',
      event_type TEXT NOT NULL,
      payload_json TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_risk_state (
      account_id TEXT PRIMARY KEY,
      daily_loss_pct REAL NOT NULL DEFAULT 0,
      open_positions INTEGER NOT NULL DEFAULT 0,
      updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_states (
      state TEXT PRIMARY KEY,
      provider TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_provider_connections (
      provider TEXT PRIMARY KEY,
      access_token TEXT NOT NULL,
      refresh_token TEXT NOT NULL,
      scopes_json TEXT NOT NULL,
      expires_at TEXT NOT NULL,
      connected_at TEXT NOT NULL
    );
    """,
)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _row_to_command(r: sqlite3.Row) -> Command:
    return Command(
        id=r["id"],
        account_id=r["account_id"],
        device_id=r["device_id"],
        type=CommandType(r["type"]),
        symbol=r["symbol"],
        side=r["side"],
        volume=float(r["volume"]),
        sl=float(r["sl"]),
        tp=float(r["tp"]),
        reason=r["reason"],
        status=CommandStatus(r["status"]),
        expires_at=from_iso(r["expires_at"]),
        created_at=from_iso(r["created_at"]),
        broker_ticket=r["broker_ticket"],
        error_code=r["error_code"],
        error_message=r["error_message"],
        executed_at=r["executed_at"],
    )


def _row_to_event(r: sqlite3.Row) -> Event:
    return Event(
        id=r["id"],
        account_id=r["account_id"],
        type=EventType(r["event_type"]),
        payload=json.loads(r["payload_json"] or "{}"),
        created_at=from_iso(r["created_at"]),
    )


class SQLiteStore:
    def __init__(
        self,
        db_path: Path,
        *,
        token_ttl: timedelta = timedelta(hours=24),
        clock: Clock = utc_now,
        busy_timeout_sec: float = 30.0,
    ) -> None:
        self._path = db_path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._token_ttl = token_ttl
        self._now = clock
        self._busy_timeout = busy_timeout_sec
        self._log = get_logger("sqlite_store", path=self._path.as_posix())
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(self._path.as_posix(), timeout=self._busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._read() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
        with self._tx() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    def close(self) -> None:
        # connections are per operation
        return None

    # ---------- sessions ----------
    def issue_session(self, account_id: str, device_id: str) -> EASession:
        token = str(uuid.uuid4())
        now = self._now()
        session = EASession(token=token, account_id=account_id, device_id=device_id, expires_at=now + self._token_ttl)
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO ea_sessions(token_hash, account_id, device_id, expires_at) VALUES(?,?,?,?)",
                (hash_token(token), account_id, device_id, to_iso(session.expires_at)),
            )
            conn.execute(
                """
                INSERT INTO ea_devices(device_id, last_seen_at) VALUES(?, ?)
                ON CONFLICT(device_id) DO UPDATE SET last_seen_at = excluded.last_seen_at
                """,
                (device_id, to_iso(now)),
            )
            conn.execute(
                """
                INSERT INTO daily_risk_state(account_id, daily_loss_pct, open_positions, updated_at)
                VALUES(?, 0, 0, ?) ON CONFLICT(account_id) DO NOTHING
                """,
                (account_id, to_iso(now)),
            )
        return session

    def validate_session(self, token: str) -> EASession:
        with self._read() as conn:
            row = conn.execute(
                "SELECT account_id, device_id, expires_at FROM ea_sessions WHERE token_hash = ?",
                (hash_token(token),),
            ).fetchone()
        if row is None:
            raise NotFoundError("ea session not found")
        expires_at = from_iso(row["expires_at"])
        if expires_at < self._now():
            raise SessionExpiredError("ea token expired")
        return EASession(token=token, account_id=row["account_id"], device_id=row["device_id"], expires_at=expires_at)

    def touch_device(self, device_id: str) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO ea_devices(device_id, last_seen_at) VALUES(?, ?)
                ON CONFLICT(device_id) DO UPDATE SET last_seen_at = excluded.last_seen_at
                """,
                (device_id, to_iso(self._now())),
            )

    # ---------- snapshots ----------
    def save_position_snapshot(self, account_id: str, snapshot: JsonDict) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO position_snapshots(account_id, snapshot_json, updated_at) VALUES(?,?,?)
                ON CONFLICT(account_id) DO UPDATE
                SET snapshot_json = excluded.snapshot_json, updated_at = excluded.updated_at
                """,
                (account_id, json.dumps(snapshot), to_iso(self._now())),
            )

    def get_position_snapshot(self, account_id: str) -> Optional[JsonDict]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT snapshot_json FROM position_snapshots WHERE account_id = ?", (account_id,)
            ).fetchone()
        return json.loads(row["snapshot_json"]) if row else None

    # ---------- commands ----------
    def enqueue_command(self, cmd: Command) -> Command:
        now = self._now()
        cmd = with_defaults(cmd, command_id=str(uuid.uuid4()), now=now)
        try:
            self._insert_command(cmd, now)
        except sqlite3.IntegrityError as e:
            raise DuplicateCommandError(cmd.id) from e
        return cmd

    def _insert_command(self, cmd: Command, now: datetime) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO commands(
                  id, account_id, device_id, type, symbol, side, volume, sl, tp, reason,
                  status, expires_at, created_at, updated_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    cmd.id,
                    cmd.account_id,
                    cmd.device_id,
                    cmd.type.value,
                    cmd.symbol,
                    cmd.side,
                    cmd.volume,
                    cmd.sl,
                    cmd.tp,
                    cmd.reason,
                    cmd.status.value,
                    to_iso(cmd.expires_at),
                    to_iso(cmd.created_at),
                    to_iso(now),
                ),
            )

    def next_queued_command(self, account_id: str) -> Command:
        with self._tx() as conn:
            now = self._now()
            rows = conn.execute(
                "SELECT * FROM commands WHERE account_id = ? AND status = ? ORDER BY seq ASC",
                (account_id, CommandStatus.QUEUED.value),
            ).fetchall()

            claimed: Optional[Command] = None
            expired: List[str] = []
            for r in rows:
                cmd = _row_to_command(r)
                if now > ensure_utc(cmd.expires_at):
                    expired.append(cmd.id)
                    continue
                claimed = cmd
                break

            for cmd_id in expired:
                conn.execute(
                    "UPDATE commands SET status = ?, reason = ?, updated_at = ? WHERE id = ?",
                    (CommandStatus.FAILED.value, EXPIRED_BEFORE_DISPATCH, to_iso(now), cmd_id),
                )
            if expired:
                self._log.info("commands_expired", account_id=account_id, count=len(expired))

            # the write lock is held, so the row cannot have changed since the SELECT
            if claimed is not None:
                conn.execute(
                    "UPDATE commands SET status = ?, updated_at = ? WHERE id = ?",
                    (CommandStatus.DISPATCHED.value, to_iso(now), claimed.id),
                )

        # raised after COMMIT so the expiry sweep is kept
        if claimed is None:
            raise NotFoundError(f"no queued command for account {account_id}")
        claimed.status = CommandStatus.DISPATCHED
        return claimed

    def mark_command_result(self, result: CommandResult) -> Command:
        target = CommandStatus.SUCCESS if result.succeeded else CommandStatus.FAILED
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM commands WHERE id = ?", (result.command_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"command {result.command_id} not found")
            if row["status"] != CommandStatus.DISPATCHED.value:
                raise InvalidTransitionError(result.command_id, row["status"], target.value)
            conn.execute(
                """
                UPDATE commands
                SET status = ?, broker_ticket = ?, error_code = ?, error_message = ?,
                    executed_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    target.value,
                    result.broker_ticket,
                    result.error_code,
                    result.error_message,
                    result.executed_at,
                    to_iso(self._now()),
                    result.command_id,
                ),
            )
            updated = conn.execute("SELECT * FROM commands WHERE id = ?", (result.command_id,)).fetchone()
        return _row_to_command(updated)

    def get_command(self, command_id: str) -> Command:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"command {command_id} not found")
        return _row_to_command(row)

    # ---------- pause ----------
    def set_paused(self, paused: bool) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO app_state(key, value_json, updated_at) VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                """,
                (PAUSED_KEY, json.dumps({"paused": bool(paused)}), to_iso(self._now())),
            )

    def is_paused(self) -> bool:
        with self._read() as conn:
            row = conn.execute("SELECT value_json FROM app_state WHERE key = ?", (PAUSED_KEY,)).fetchone()
        if row is None:
            return False
        return bool(json.loads(row["value_json"]).get("paused", False))

    # ---------- events ----------
    def append_event(self, event_type: EventType, account_id: str, payload: JsonDict) -> Event:
        event = Event(
            id=str(uuid.uuid4()),
            type=event_type,
            payload=json.loads(json.dumps(payload, default=str)),
            created_at=self._now(),
            account_id=account_id,
        )
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO events(id, account_id, event_type, payload_json, created_at) VALUES(?,?,?,?,?)",
                (event.id, account_id, event_type.value, json.dumps(event.payload), to_iso(event.created_at)),
            )
        return event

    def list_events(self, limit: int = DEFAULT_EVENT_LIMIT) -> List[Event]:
        if limit <= 0:
            limit = DEFAULT_EVENT_LIMIT
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY seq DESC LIMIT ?", (limit,)).fetchall()
        return [_row_to_event(r) for r in rows]

    # ---------- risk counters ----------
    def open_positions(self, account_id: str) -> int:
        with self._read() as conn:
            row = conn.execute(
                "SELECT open_positions FROM daily_risk_state WHERE account_id = ?", (account_id,)
            ).fetchone()
        return int(row["open_positions"]) if row else 0

    def set_open_positions(self, account_id: str, count: int) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO daily_risk_state(account_id, daily_loss_pct, open_positions, updated_at)
                VALUES(?, 0, ?, ?)
                ON CONFLICT(account_id) DO UPDATE
                SET open_positions = excluded.open_positions, updated_at = excluded.updated_at
                """,
                (account_id, max(0, int(count)), to_iso(self._now())),
            )

    def adjust_open_positions(self, account_id: str, delta: int) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO daily_risk_state(account_id, daily_loss_pct, open_positions, updated_at)
                VALUES(?, 0, MAX(?, 0), ?)
                ON CONFLICT(account_id) DO UPDATE
                SET open_positions = MAX(daily_risk_state.open_positions + ?, 0),
                    updated_at = excluded.updated_at
                """,
                (account_id, int(delta), to_iso(self._now()), int(delta)),
            )

    def daily_loss(self, account_id: str) -> float:
        with self._read() as conn:
            row = conn.execute(
                "SELECT daily_loss_pct FROM daily_risk_state WHERE account_id = ?", (account_id,)
            ).fetchone()
        return float(row["daily_loss_pct"]) if row else 0.0

    def set_daily_loss(self, account_id: str, loss_pct: float) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO daily_risk_state(account_id, daily_loss_pct, open_positions, updated_at)
                VALUES(?, ?, 0, ?)
                ON CONFLICT(account_id) DO UPDATE
                SET daily_loss_pct = excluded.daily_loss_pct, updated_at = excluded.updated_at
                """,
                (account_id, float(loss_pct), to_iso(self._now())),
            )

    # ---------- oauth ----------
    def save_oauth_state(self, state: OAuthState) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO oauth_states(state, provider, created_at) VALUES(?,?,?)",
                (state.state, state.provider, to_iso(state.created_at)),
            )

    def consume_oauth_state(self, state: str) -> OAuthState:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM oauth_states WHERE state = ?", (state,)).fetchone()
            if row is None:
                raise NotFoundError("oauth state not found")
            conn.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
        return OAuthState(state=row["state"], provider=row["provider"], created_at=from_iso(row["created_at"]))

    def save_provider_connection(self, conn_: ProviderConnection) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO oauth_provider_connections(
                  provider, access_token, refresh_token, scopes_json, expires_at, connected_at
                ) VALUES(?,?,?,?,?,?)
                ON CONFLICT(provider) DO UPDATE
                SET access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    scopes_json = excluded.scopes_json,
                    expires_at = excluded.expires_at,
                    connected_at = excluded.connected_at
                """,
                (
                    conn_.provider,
                    conn_.access_token,
                    conn_.refresh_token,
                    json.dumps(list(conn_.scopes)),
                    to_iso(conn_.expires_at),
                    to_iso(conn_.connected_at),
                ),
            )

    def get_provider_connection(self, provider: str) -> Optional[ProviderConnection]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_provider_connections WHERE provider = ?", (provider,)
            ).fetchone()
        if row is None:
            return None
        return ProviderConnection(
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            scopes=list(json.loads(row["scopes_json"] or "[]")),
            expires_at=from_iso(row["expires_at"]),
            connected_at=from_iso(row["connected_at"]),
        )

    def clear_provider_connection(self, provider: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM oauth_provider_connections WHERE provider = ?", (provider,))
