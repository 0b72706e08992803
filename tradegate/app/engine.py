"""Dispatch gateway: signal -> risk -> command queue -> agent -> result -> events.

`DispatchGateway` wires the services together and is the only object the HTTP
layer talks to. `build_gateway(config)` assembles it from configuration.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from tradegate.infrastructure.logging.logging import get_logger
from tradegate.infrastructure.notify.notifier import Notifier
from tradegate.infrastructure.oauth.token_client import OAuthClient
from tradegate.infrastructure.storage.memory_store import MemoryStore
from tradegate.infrastructure.storage.sqlite_repository import SQLiteStore
from tradegate.infrastructure.storage.store import DEFAULT_EVENT_LIMIT, Store
from tradegate.infrastructure.utils.config import GatewayConfig
from tradegate.infrastructure.utils.timeutils import Clock, ensure_utc, to_iso, utc_now
from tradegate.infrastructure.webhook.event_publisher import EventPublisher
from tradegate.models.errors import AuthorizationError, NotFoundError, SignalValidationError
from tradegate.models.market_models import Candle, TrendSignal
from tradegate.models.trade_models import (
    AccountRiskState,
    Command,
    CommandResult,
    CommandStatus,
    CommandType,
    EASession,
    Event,
    EventType,
    JsonDict,
    ProviderConnection,
    SignalInput,
)
from tradegate.services.events.event_recorder import EventRecorder
from tradegate.services.execution.command_queue import CommandQueue
from tradegate.services.oauth.token_manager import OAuthTokenManager
from tradegate.services.risk.circuit_breaker import CircuitBreaker, SyncOutcome
from tradegate.services.risk.risk_engine import PROVIDER_UNAVAILABLE, RiskEngine
from tradegate.services.strategy.trend_signal import TrendSignalEngine

DEFAULT_ACCOUNT_ID = "paper-1"
MODE = "paper"


@dataclass(frozen=True)
class DispatchOutcome:
    allowed: bool
    deny_reason: str = ""
    command: Optional[Command] = None
    signal: Optional[TrendSignal] = None

    def to_dict(self) -> JsonDict:
        out: JsonDict = {"allowed": self.allowed}
        if self.allowed and self.command is not None:
            out["command"] = self.command.to_dict()
        else:
            out["deny_reason"] = self.deny_reason
        if self.signal is not None:
            out["has_signal"] = self.signal.has_signal
            if self.signal.has_signal:
                out["strategy_signal"] = self.signal.to_dict()
            else:
                out["reason"] = self.signal.reason
        return out


class DispatchGateway:
    def __init__(
        self,
        *,
        store: Store,
        queue: CommandQueue,
        risk: RiskEngine,
        trend: TrendSignalEngine,
        breaker: CircuitBreaker,
        recorder: EventRecorder,
        oauth: OAuthTokenManager,
        connect_code: str,
        fixed_volume: float = 0.01,
        command_ttl: timedelta = timedelta(seconds=30),
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.risk = risk
        self.trend = trend
        self.breaker = breaker
        self.recorder = recorder
        self.oauth = oauth
        self._connect_code = connect_code
        self.fixed_volume = fixed_volume
        self.command_ttl = command_ttl
        self._now = clock
        self._log = get_logger("gateway")

    # ---------- agent sessions ----------
    def register_agent(self, connect_code: str, account_id: str, device_id: str) -> EASession:
        if connect_code != self._connect_code:
            self._log.warning("ea_register_rejected", account_id=account_id, device_id=device_id)
            raise AuthorizationError("invalid connect code")
        if not account_id.strip() or not device_id.strip():
            raise SignalValidationError("account_id and device_id are required")
        session = self.store.issue_session(account_id, device_id)
        self._log.info("ea_registered", account_id=account_id, device_id=device_id)
        return session

    def authenticate(self, token: str) -> EASession:
        if not token:
            raise AuthorizationError("missing ea session")
        try:
            return self.store.validate_session(token)
        except NotFoundError as e:
            raise AuthorizationError("invalid ea token") from e

    def heartbeat(self, session: EASession) -> JsonDict:
        self.store.touch_device(session.device_id)
        return {"ok": True, "server_time": to_iso(self._now()), "paused": self.store.is_paused()}

    # ---------- agent protocol ----------
    def sync(self, session: EASession, snapshot: Mapping[str, Any]) -> SyncOutcome:
        return self.breaker.ingest_snapshot(session.account_id, snapshot)

    def poll(self, session: EASession) -> Command:
        return self.queue.poll(session.account_id)

    def report_result(self, session: EASession, result: CommandResult) -> Event:
        current = self.store.get_command(result.command_id)
        if current.account_id != session.account_id:
            raise NotFoundError(f"command {result.command_id} not found")

        cmd = self.queue.mark_result(result)
        succeeded = cmd.status == CommandStatus.SUCCESS
        if succeeded:
            if cmd.type == CommandType.OPEN:
                self.store.adjust_open_positions(cmd.account_id, 1)
            elif cmd.type == CommandType.CLOSE:
                self.store.adjust_open_positions(cmd.account_id, -1)

        event_type = EventType.TRADE_EXECUTED
        if cmd.type in (CommandType.MOVE_SL, CommandType.SET_TP):
            event_type = EventType.TRADE_MODIFIED
        event = self.recorder.emit(
            event_type,
            cmd.account_id,
            {
                "command_id": cmd.id,
                "status": result.status,
                "broker_ticket": result.broker_ticket,
                "error_code": result.error_code,
                "error_message": result.error_message,
                "command_type": cmd.type.value,
                "symbol": cmd.symbol,
            },
        )
        if succeeded:
            self.recorder.notify(f"[{cmd.type.value}] {cmd.side} {cmd.symbol} {cmd.volume:.2f}")
        return event

    # ---------- signals ----------
    async def evaluate_signal(self, signal: SignalInput) -> DispatchOutcome:
        """Fail closed on provider trouble, then run the risk rules, then enqueue."""
        conn = await self.oauth.ensure_fresh()
        self.recorder.attach(asyncio.get_running_loop())
        # store reads and the enqueue may wait on the SQLite write lock
        return await asyncio.to_thread(self.decide, signal, conn)

    def decide(self, signal: SignalInput, conn: Optional[ProviderConnection]) -> DispatchOutcome:
        if conn is None or ensure_utc(conn.expires_at) < self._now():
            self._log.warning("signal_denied", account_id=signal.account_id, reason=PROVIDER_UNAVAILABLE)
            self.recorder.emit(
                EventType.RISK_TRIGGERED,
                signal.account_id,
                {"reason": PROVIDER_UNAVAILABLE, "input": signal.to_dict()},
            )
            return DispatchOutcome(allowed=False, deny_reason=PROVIDER_UNAVAILABLE)

        state = AccountRiskState(
            paused=self.store.is_paused(),
            open_positions=self.store.open_positions(signal.account_id),
            daily_loss_pct=self.store.daily_loss(signal.account_id),
        )
        decision = self.risk.evaluate(signal, state)

        self.recorder.emit(
            EventType.SIGNAL_PROPOSED,
            signal.account_id,
            {
                "symbol": signal.symbol,
                "side": signal.side,
                "confidence": signal.confidence,
                "allowed": decision.allowed,
                "reason": signal.reason,
                "source": "strategy",
            },
        )

        if not decision.allowed:
            self._log.info("signal_denied", account_id=signal.account_id, reason=decision.deny_reason)
            self.recorder.emit(
                EventType.RISK_TRIGGERED,
                signal.account_id,
                {"reason": decision.deny_reason, "symbol": signal.symbol, "side": signal.side},
            )
            self.recorder.notify(f"Risk trigger: {decision.deny_reason} ({signal.side} {signal.symbol})")
            return DispatchOutcome(allowed=False, deny_reason=decision.deny_reason)

        cmd = self.queue.enqueue(
            Command(
                account_id=signal.account_id,
                type=CommandType.OPEN,
                symbol=signal.symbol,
                side=signal.side.upper(),
                volume=self.fixed_volume,
                sl=signal.stop_loss_pips,
                tp=signal.take_profit_pips,
                reason=signal.reason,
                expires_at=self._now() + self.command_ttl,
            )
        )
        return DispatchOutcome(allowed=True, command=cmd)

    async def evaluate_trend(
        self,
        account_id: str,
        symbol: str,
        candles: Sequence[Candle],
        spread_pips: float = 0.0,
    ) -> DispatchOutcome:
        sig = self.trend.evaluate(symbol, candles, spread_pips)
        if not sig.has_signal:
            return DispatchOutcome(allowed=False, signal=sig)

        outcome = await self.evaluate_signal(
            SignalInput(
                account_id=account_id or DEFAULT_ACCOUNT_ID,
                symbol=symbol,
                side=sig.side,
                confidence=sig.confidence,
                spread_pips=spread_pips,
                stop_loss_pips=sig.stop_loss_pips,
                take_profit_pips=sig.take_profit_pips,
                reason=sig.reason,
            )
        )
        return DispatchOutcome(
            allowed=outcome.allowed,
            deny_reason=outcome.deny_reason,
            command=outcome.command,
            signal=sig,
        )

    # ---------- admin ----------
    def pause(self) -> Event:
        return self.breaker.pause()

    def resume(self) -> Event:
        return self.breaker.resume()

    def list_events(self, limit: int = DEFAULT_EVENT_LIMIT) -> List[Event]:
        return self.store.list_events(limit)

    async def dashboard_summary(self, account_id: str = "") -> JsonDict:
        account_id = account_id or DEFAULT_ACCOUNT_ID
        conn = await self.oauth.ensure_fresh()
        return {
            "account_id": account_id,
            "mode": MODE,
            "paused": self.store.is_paused(),
            "open_positions": self.store.open_positions(account_id),
            "daily_loss_pct": self.store.daily_loss(account_id),
            "ai_provider_connected": self.oauth.is_connected(conn),
            "last_events": [e.to_dict() for e in self.store.list_events(DEFAULT_EVENT_LIMIT)],
        }

    async def aclose(self) -> None:
        await self.recorder.aclose()
        await self.oauth.aclose()
        self.store.close()


def build_store(config: GatewayConfig, clock: Clock = utc_now) -> Store:
    ttl = timedelta(hours=config.store.ea_token_ttl_hours)
    if config.store.type == "sqlite":
        return SQLiteStore(Path(config.store.sqlite.path), token_ttl=ttl, clock=clock)
    return MemoryStore(token_ttl=ttl, clock=clock)


def build_gateway(config: GatewayConfig, *, store: Optional[Store] = None, clock: Clock = utc_now) -> DispatchGateway:
    store = store or build_store(config, clock)
    log = get_logger("gateway")
    log.info("gateway_building", store=config.store.type, webhook_enabled=bool(config.webhook.url))

    publisher = EventPublisher(
        config.webhook.url,
        timeout=config.webhook.timeout_seconds,
        max_retries=config.webhook.max_retries,
        retry_base=config.webhook.retry_base_seconds,
        retry_max=config.webhook.retry_max_seconds,
    )
    notifier = Notifier(config.telegram.bot_token, config.telegram.chat_id)
    recorder = EventRecorder(store, publisher, notifier)

    oauth_client = OAuthClient(
        client_id=config.oauth.client_id,
        client_secret=config.oauth.client_secret,
        auth_url=config.oauth.auth_url,
        token_url=config.oauth.token_url,
        redirect_uri=config.oauth.redirect_uri,
        scopes=config.oauth.scopes,
        timeout=config.oauth.request_timeout_seconds,
    )
    oauth = OAuthTokenManager(
        store,
        oauth_client,
        provider=config.oauth.provider,
        refresh_skew=timedelta(seconds=config.oauth.refresh_skew_seconds),
        clock=clock,
    )

    return DispatchGateway(
        store=store,
        queue=CommandQueue(store, clock=clock),
        risk=RiskEngine(
            max_open_positions=config.risk.max_open_positions,
            max_daily_loss_pct=config.risk.max_daily_loss_pct,
            min_confidence=config.risk.min_confidence,
            max_spread_pips=config.risk.max_spread_pips,
        ),
        trend=TrendSignalEngine(
            fast_period=config.strategy.fast_period,
            slow_period=config.strategy.slow_period,
            atr_period=config.strategy.atr_period,
        ),
        breaker=CircuitBreaker(store, recorder, max_daily_loss_pct=config.risk.max_daily_loss_pct),
        recorder=recorder,
        oauth=oauth,
        connect_code=config.ea.connect_code,
        fixed_volume=config.risk.fixed_volume,
        command_ttl=timedelta(seconds=config.risk.command_ttl_seconds),
        clock=clock,
    )
