from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from tradegate.infrastructure.utils.timeutils import to_iso


JsonDict = Dict[str, Any]

EA_SCOPES = ["trade:execute", "trade:read", "account:read"]


class CommandType(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    MOVE_SL = "MOVE_SL"
    SET_TP = "SET_TP"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    NOOP = "NOOP"


class CommandStatus(str, Enum):
    QUEUED = "QUEUED"
    DISPATCHED = "DISPATCHED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class EventType(str, Enum):
    SIGNAL_PROPOSED = "SignalProposed"
    TRADE_EXECUTED = "TradeExecuted"
    TRADE_MODIFIED = "TradeModified"
    RISK_TRIGGERED = "RiskTriggered"
    BOT_PAUSED = "BotPaused"


@dataclass
class Command:
    account_id: str
    type: CommandType
    expires_at: datetime
    id: str = ""
    device_id: str = ""
    symbol: str = ""
    side: str = ""              # "BUY" | "SELL"
    volume: float = 0.0
    sl: float = 0.0             # pips
    tp: float = 0.0             # pips
    reason: str = ""
    status: Optional[CommandStatus] = None
    created_at: Optional[datetime] = None

    # Filled from the agent's CommandResult
    broker_ticket: str = ""
    error_code: str = ""
    error_message: str = ""
    executed_at: str = ""

    def to_dict(self) -> JsonDict:
        return {
            "command_id": self.id,
            "account_id": self.account_id,
            "device_id": self.device_id,
            "type": self.type.value,
            "symbol": self.symbol,
            "side": self.side,
            "volume": self.volume,
            "sl": self.sl,
            "tp": self.tp,
            "reason": self.reason,
            "status": self.status.value if self.status else None,
            "expires_at": to_iso(self.expires_at),
            "created_at": to_iso(self.created_at),
            "broker_ticket": self.broker_ticket,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "executed_at": self.executed_at,
        }

    def to_agent_payload(self) -> JsonDict:
        """Shape served to the polling agent."""
        return {
            "command_id": self.id,
            "type": self.type.value,
            "symbol": self.symbol,
            "side": self.side,
            "volume": self.volume,
            "sl": self.sl,
            "tp": self.tp,
            "reason": self.reason,
            "expires_at": to_iso(self.expires_at),
        }


@dataclass(frozen=True)
class CommandResult:
    command_id: str
    status: str                 # "SUCCESS" | anything else is a failure
    broker_ticket: str = ""
    error_code: str = ""
    error_message: str = ""
    executed_at: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status.strip().upper() == CommandStatus.SUCCESS.value


@dataclass(frozen=True)
class Event:
    id: str
    type: EventType
    payload: JsonDict
    created_at: datetime
    account_id: str = ""

    def to_dict(self) -> JsonDict:
        return {
            "event_id": self.id,
            "account_id": self.account_id,
            "event_type": self.type.value,
            "payload": self.payload,
            "created_at": to_iso(self.created_at),
        }


@dataclass(frozen=True)
class EASession:
    token: str
    account_id: str
    device_id: str
    expires_at: datetime
    scopes: List[str] = field(default_factory=lambda: list(EA_SCOPES))


@dataclass(frozen=True)
class OAuthState:
    state: str
    provider: str
    created_at: datetime


@dataclass(frozen=True)
class ProviderConnection:
    provider: str
    access_token: str
    refresh_token: str
    scopes: List[str]
    expires_at: datetime
    connected_at: datetime

    def public_view(self) -> JsonDict:
        return {
            "provider": self.provider,
            "scopes": list(self.scopes),
            "expires_at": to_iso(self.expires_at),
            "connected_at": to_iso(self.connected_at),
        }


@dataclass(frozen=True)
class SignalInput:
    account_id: str
    symbol: str
    side: str
    confidence: float
    spread_pips: float = 0.0
    stop_loss_pips: float = 0.0
    take_profit_pips: float = 0.0
    reason: str = ""

    def to_dict(self) -> JsonDict:
        return {
            "account_id": self.account_id,
            "symbol": self.symbol,
            "side": self.side,
            "confidence": self.confidence,
            "reason": self.reason,
            "spread_pips": self.spread_pips,
            "stop_loss_pips": self.stop_loss_pips,
            "take_profit_pips": self.take_profit_pips,
        }


@dataclass(frozen=True)
class AccountRiskState:
    paused: bool = False
    open_positions: int = 0
    daily_loss_pct: float = 0.0


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    deny_reason: str = ""


def with_defaults(cmd: Command, *, command_id: str, now: datetime) -> Command:
    """Copy of cmd with id/created_at/status filled where absent."""
    return replace(
        cmd,
        id=cmd.id or command_id,
        created_at=cmd.created_at or now,
        status=cmd.status or CommandStatus.QUEUED,
    )
