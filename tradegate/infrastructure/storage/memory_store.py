"""In-memory Store: one re-entrant lock around plain dicts.

Used for paper mode and tests. Nothing survives a restart.
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from tradegate.infrastructure.storage.store import DEFAULT_EVENT_LIMIT, EXPIRED_BEFORE_DISPATCH, JsonDict
from tradegate.infrastructure.utils.timeutils import Clock, ensure_utc, utc_now
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
    EASession,
    Event,
    EventType,
    OAuthState,
    ProviderConnection,
    with_defaults,
)


class MemoryStore:
    def __init__(self, *, token_ttl: timedelta = timedelta(hours=24), clock: Clock = utc_now) -> None:
        self._lock = threading.RLock()
        self._token_ttl = token_ttl
        self._now = clock

        self._paused = False
        self._sessions: Dict[str, EASession] = {}
        self._last_seen: Dict[str, datetime] = {}
        self._snapshots: Dict[str, JsonDict] = {}

        self._commands: Dict[str, Command] = {}
        self._order: List[str] = []

        self._events: List[Event] = []

        self._open_positions: Dict[str, int] = {}
        self._daily_loss: Dict[str, float] = {}

        self._oauth_states: Dict[str, OAuthState] = {}
        self._connections: Dict[str, ProviderConnection] = {}

    # ---------- sessions ----------
    def issue_session(self, account_id: str, device_id: str) -> EASession:
        session = EASession(
            token=str(uuid.uuid4()),
            account_id=account_id,
            device_id=device_id,
            expires_at=self._now() + self._token_ttl,
        )
        with self._lock:
            self._sessions[session.token] = session
        return session

    def validate_session(self, token: str) -> EASession:
        with self._lock:
            session = self._sessions.get(token)
        if session is None:
            raise NotFoundError("ea session not found")
        if session.expires_at < self._now():
            raise SessionExpiredError("ea token expired")
        return session

    def touch_device(self, device_id: str) -> None:
        with self._lock:
            self._last_seen[device_id] = self._now()

    # ---------- snapshots ----------
    def save_position_snapshot(self, account_id: str, snapshot: JsonDict) -> None:
        with self._lock:
            self._snapshots[account_id] = copy.deepcopy(snapshot)

    def get_position_snapshot(self, account_id: str) -> Optional[JsonDict]:
        with self._lock:
            snap = self._snapshots.get(account_id)
            return copy.deepcopy(snap) if snap is not None else None

    # ---------- commands ----------
    def enqueue_command(self, cmd: Command) -> Command:
        cmd = with_defaults(cmd, command_id=str(uuid.uuid4()), now=self._now())
        with self._lock:
            if cmd.id in self._commands:
                raise DuplicateCommandError(cmd.id)
            self._commands[cmd.id] = cmd
            self._order.append(cmd.id)
        return cmd

    def next_queued_command(self, account_id: str) -> Command:
        with self._lock:
            now = self._now()
            for cmd_id in self._order:
                cmd = self._commands[cmd_id]
                if cmd.account_id != account_id or cmd.status != CommandStatus.QUEUED:
                    continue
                if now > ensure_utc(cmd.expires_at):
                    self._commands[cmd_id] = replace(
                        cmd, status=CommandStatus.FAILED, reason=EXPIRED_BEFORE_DISPATCH
                    )
                    continue
                claimed = replace(cmd, status=CommandStatus.DISPATCHED)
                self._commands[cmd_id] = claimed
                return claimed
        raise NotFoundError(f"no queued command for account {account_id}")

    def mark_command_result(self, result: CommandResult) -> Command:
        target = CommandStatus.SUCCESS if result.succeeded else CommandStatus.FAILED
        with self._lock:
            cmd = self._commands.get(result.command_id)
            if cmd is None:
                raise NotFoundError(f"command {result.command_id} not found")
            if cmd.status != CommandStatus.DISPATCHED:
                raise InvalidTransitionError(cmd.id, cmd.status.value if cmd.status else "", target.value)
            updated = replace(
                cmd,
                status=target,
                broker_ticket=result.broker_ticket,
                error_code=result.error_code,
                error_message=result.error_message,
                executed_at=result.executed_at,
            )
            self._commands[cmd.id] = updated
            return updated

    def get_command(self, command_id: str) -> Command:
        with self._lock:
            cmd = self._commands.get(command_id)
        if cmd is None:
            raise NotFoundError(f"command {command_id} not found")
        return cmd

    # ---------- pause ----------
    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._paused = bool(paused)

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    # ---------- events ----------
    def append_event(self, event_type: EventType, account_id: str, payload: JsonDict) -> Event:
        event = Event(
            id=str(uuid.uuid4()),
            type=event_type,
            payload=copy.deepcopy(payload),
            created_at=self._now(),
            account_id=account_id,
        )
        with self._lock:
            self._events.append(event)
        return event

    def list_events(self, limit: int = DEFAULT_EVENT_LIMIT) -> List[Event]:
        if limit <= 0:
            limit = DEFAULT_EVENT_LIMIT
        with self._lock:
            return list(reversed(self._events[-limit:]))

    # ---------- risk counters ----------
    def open_positions(self, account_id: str) -> int:
        with self._lock:
            return self._open_positions.get(account_id, 0)

    def set_open_positions(self, account_id: str, count: int) -> None:
        with self._lock:
            self._open_positions[account_id] = max(0, int(count))

    def adjust_open_positions(self, account_id: str, delta: int) -> None:
        with self._lock:
            current = self._open_positions.get(account_id, 0)
            self._open_positions[account_id] = max(0, current + int(delta))

    def daily_loss(self, account_id: str) -> float:
        with self._lock:
            return self._daily_loss.get(account_id, 0.0)

    def set_daily_loss(self, account_id: str, loss_pct: float) -> None:
        with self._lock:
            self._daily_loss[account_id] = float(loss_pct)

    # ---------- oauth ----------
    def save_oauth_state(self, state: OAuthState) -> None:
        with self._lock:
            self._oauth_states[state.state] = state

    def consume_oauth_state(self, state: str) -> OAuthState:
        with self._lock:
            found = self._oauth_states.pop(state, None)
        if found is None:
            raise NotFoundError("oauth state not found")
        return found

    def save_provider_connection(self, conn: ProviderConnection) -> None:
        with self._lock:
            self._connections[conn.provider] = conn

    def get_provider_connection(self, provider: str) -> Optional[ProviderConnection]:
        with self._lock:
            return self._connections.get(provider)

    def clear_provider_connection(self, provider: str) -> None:
        with self._lock:
            self._connections.pop(provider, None)

    def close(self) -> None:
        return None
