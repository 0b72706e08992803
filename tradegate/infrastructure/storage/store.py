"""Persistence contract used by the services and the API layer.

Two implementations exist: MemoryStore (one lock over plain dicts) and
SQLiteStore (transactional rows). Callers cannot tell them apart.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from tradegate.models.trade_models import (
    Command,
    CommandResult,
    EASession,
    Event,
    EventType,
    OAuthState,
    ProviderConnection,
)

JsonDict = Dict[str, Any]

DEFAULT_EVENT_LIMIT = 20
EXPIRED_BEFORE_DISPATCH = "expired before dispatch"


class Store(Protocol):
    # Agent sessions
    def issue_session(self, account_id: str, device_id: str) -> EASession: ...

    def validate_session(self, token: str) -> EASession:
        """Raises NotFoundError for unknown tokens, SessionExpiredError once past expiry."""
        ...

    def touch_device(self, device_id: str) -> None: ...

    # Snapshots
    def save_position_snapshot(self, account_id: str, snapshot: JsonDict) -> None: ...

    def get_position_snapshot(self, account_id: str) -> Optional[JsonDict]: ...

    # Commands
    def enqueue_command(self, cmd: Command) -> Command:
        """Fill id/created_at/status when absent. DuplicateCommandError on a reused id."""
        ...

    def next_queued_command(self, account_id: str) -> Command:
        """Expire stale QUEUED rows, claim the oldest valid one as DISPATCHED.

        Raises NotFoundError when nothing qualifies. A command is returned to
        at most one caller.
        """
        ...

    def mark_command_result(self, result: CommandResult) -> Command:
        """DISPATCHED -> SUCCESS/FAILED. NotFoundError / InvalidTransitionError."""
        ...

    def get_command(self, command_id: str) -> Command: ...

    # Global pause
    def set_paused(self, paused: bool) -> None: ...

    def is_paused(self) -> bool: ...

    # Events
    def append_event(self, event_type: EventType, account_id: str, payload: JsonDict) -> Event: ...

    def list_events(self, limit: int = DEFAULT_EVENT_LIMIT) -> List[Event]:
        """Newest first."""
        ...

    # Per-account risk counters
    def open_positions(self, account_id: str) -> int: ...

    def set_open_positions(self, account_id: str, count: int) -> None: ...

    def adjust_open_positions(self, account_id: str, delta: int) -> None: ...

    def daily_loss(self, account_id: str) -> float: ...

    def set_daily_loss(self, account_id: str, loss_pct: float) -> None: ...

    # OAuth
    def save_oauth_state(self, state: OAuthState) -> None: ...

    def consume_oauth_state(self, state: str) -> OAuthState:
        """Single use: a second call for the same state raises NotFoundError."""
        ...

    def save_provider_connection(self, conn: ProviderConnection) -> None: ...

    def get_provider_connection(self, provider: str) -> Optional[ProviderConnection]: ...

    def clear_provider_connection(self, provider: str) -> None: ...

    def close(self) -> None: ...
