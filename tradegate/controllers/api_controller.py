from __future__ import annotations

import asyncio
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from tradegate.api.state import AppState, get_state, set_state
from tradegate.app.engine import DEFAULT_ACCOUNT_ID, DispatchGateway, build_gateway
from tradegate.infrastructure.logging.logging import bind_request_context, clear_request_context, get_logger
from tradegate.infrastructure.utils.config import GatewayConfig, load_config
from tradegate.infrastructure.utils.timeutils import to_iso, utc_now
from tradegate.models.errors import (
    AuthorizationError,
    DuplicateCommandError,
    InvalidTransitionError,
    NotFoundError,
    OAuthNotConfiguredError,
    SignalValidationError,
    TokenExchangeError,
    TradeGateError,
)
from tradegate.models.market_models import Candle
from tradegate.models.trade_models import CommandResult, EASession, SignalInput


JsonDict = Dict[str, Any]

log = get_logger("api")

# First match wins; subclasses must precede their bases.
_ERROR_STATUS = (
    (SignalValidationError, 400),
    (AuthorizationError, 401),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (DuplicateCommandError, 409),
    (TokenExchangeError, 502),
    (OAuthNotConfiguredError, 503),
)


def _status_for(exc: TradeGateError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


# --------- Schemas ---------
class RegisterPayload(BaseModel):
    connect_code: str = ""
    account_id: str = ""
    device_id: str = ""


class ResultPayload(BaseModel):
    command_id: str
    status: str
    broker_ticket: str = ""
    error_code: str = ""
    error_message: str = ""
    executed_at: str = ""


class SignalPayload(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    account_id: str = ""
    symbol: str = ""
    side: str = ""
    confidence: float = 0.0
    reason: str = ""
    spread_pips: float = 0.0
    stop_loss_pips: float = 0.0
    take_profit_pips: float = 0.0


class CandlePayload(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    time: Optional[datetime] = None
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class TrendPayload(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    account_id: str = ""
    symbol: str = ""
    spread_pips: float = 0.0
    candles: List[CandlePayload] = Field(default_factory=list)


# --------- Auth dependencies ---------
def _bearer_token(header: Optional[str]) -> str:
    if not header:
        return ""
    parts = header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def gateway_dep(state: AppState = Depends(get_state)) -> DispatchGateway:
    return state.gateway


def require_admin(
    state: AppState = Depends(get_state),
    authorization: Optional[str] = Header(default=None),
) -> None:
    token = _bearer_token(authorization)
    if not token:
        raise AuthorizationError("missing bearer token")
    expected = state.config.admin.api_key
    if not expected or not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise AuthorizationError("invalid admin token")


def require_agent(
    gateway: DispatchGateway = Depends(gateway_dep),
    authorization: Optional[str] = Header(default=None),
) -> EASession:
    session = gateway.authenticate(_bearer_token(authorization))
    bind_request_context(account_id=session.account_id, device_id=session.device_id)
    return session


# --------- App factory ---------
def create_app(config: Optional[GatewayConfig] = None, gateway: Optional[DispatchGateway] = None) -> FastAPI:
    config = config or load_config()
    gateway = gateway or build_gateway(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        gateway.recorder.attach(asyncio.get_running_loop())
        log.info("api_started", store=config.store.type)
        yield
        await gateway.aclose()
        log.info("api_stopped")

    app = FastAPI(title="TradeGate API", version="0.1.0", lifespan=lifespan)
    set_state(app.state, AppState(config=config, gateway=gateway))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        clear_request_context()
        bind_request_context(request_id=request.headers.get("X-Request-ID") or str(uuid.uuid4()), path=request.url.path)
        try:
            return await call_next(request)
        finally:
            clear_request_context()

    @app.exception_handler(TradeGateError)
    async def _domain_error(request: Request, exc: TradeGateError) -> JSONResponse:
        status = _status_for(exc)
        log.info("request_rejected", status_code=status, error=type(exc).__name__, detail=str(exc))
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # --------- Public ---------
    @app.get("/health")
    def health() -> JsonDict:
        return {"ok": True, "status": "ok", "time": to_iso(utc_now())}

    @app.post("/ea/register")
    def ea_register(payload: RegisterPayload, gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        session = gateway.register_agent(payload.connect_code, payload.account_id, payload.device_id)
        return {"token": session.token, "expires_at": to_iso(session.expires_at), "scopes": list(session.scopes)}

    @app.get("/oauth/openai/start")
    def oauth_start(gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        state, auth_url = gateway.oauth.start_authorization()
        return {"provider": gateway.oauth.provider, "state": state, "auth_url": auth_url}

    @app.get("/oauth/openai/callback")
    async def oauth_callback(
        state: str = "",
        code: str = "",
        gateway: DispatchGateway = Depends(gateway_dep),
    ) -> JsonDict:
        if not state or not code:
            raise HTTPException(status_code=400, detail="state and code are required")
        try:
            conn = await gateway.oauth.complete_authorization(state, code)
        except NotFoundError:
            raise HTTPException(status_code=400, detail="invalid oauth state")
        return {"connected": True, "provider": conn.provider}

    # --------- Agent ---------
    @app.post("/ea/heartbeat")
    def ea_heartbeat(
        session: EASession = Depends(require_agent),
        gateway: DispatchGateway = Depends(gateway_dep),
    ) -> JsonDict:
        return gateway.heartbeat(session)

    @app.post("/ea/sync")
    async def ea_sync(
        snapshot: Dict[str, Any] = Body(...),
        session: EASession = Depends(require_agent),
        gateway: DispatchGateway = Depends(gateway_dep),
    ) -> JsonDict:
        outcome = await asyncio.to_thread(gateway.sync, session, snapshot)
        return outcome.to_dict()

    @app.post("/ea/execute")
    def ea_execute(
        session: EASession = Depends(require_agent),
        gateway: DispatchGateway = Depends(gateway_dep),
    ) -> JsonDict:
        return gateway.poll(session).to_agent_payload()

    @app.post("/ea/result")
    async def ea_result(
        payload: ResultPayload,
        session: EASession = Depends(require_agent),
        gateway: DispatchGateway = Depends(gateway_dep),
    ) -> JsonDict:
        event = await asyncio.to_thread(gateway.report_result, session, CommandResult(**payload.model_dump()))
        return {"ok": True, "event_id": event.id}

    # --------- Admin ---------
    @app.post("/bot/pause", dependencies=[Depends(require_admin)])
    async def bot_pause(gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        event = await asyncio.to_thread(gateway.pause)
        return {"ok": True, "event_id": event.id}

    @app.post("/bot/resume", dependencies=[Depends(require_admin)])
    async def bot_resume(gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        event = await asyncio.to_thread(gateway.resume)
        return {"ok": True, "event_id": event.id}

    @app.get("/dashboard/summary", dependencies=[Depends(require_admin)])
    async def dashboard_summary(account_id: str = "", gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        return await gateway.dashboard_summary(account_id)

    @app.get("/events", dependencies=[Depends(require_admin)])
    def events(limit: int = 20, gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        items = [e.to_dict() for e in gateway.list_events(limit)]
        return {"events": items, "count": len(items)}

    @app.get("/oauth/openai/status", dependencies=[Depends(require_admin)])
    async def oauth_status(gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        return await gateway.oauth.status()

    @app.post("/oauth/openai/disconnect", dependencies=[Depends(require_admin)])
    def oauth_disconnect(gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        gateway.oauth.disconnect()
        return {"ok": True}

    @app.post("/admin/signals/evaluate", dependencies=[Depends(require_admin)])
    async def evaluate_signal(payload: SignalPayload, gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        data = payload.model_dump()
        data["account_id"] = data["account_id"] or DEFAULT_ACCOUNT_ID
        outcome = await gateway.evaluate_signal(SignalInput(**data))
        return outcome.to_dict()

    @app.post("/admin/strategy/evaluate", dependencies=[Depends(require_admin)])
    async def evaluate_trend(payload: TrendPayload, gateway: DispatchGateway = Depends(gateway_dep)) -> JsonDict:
        candles = [Candle(**c.model_dump()) for c in payload.candles]
        outcome = await gateway.evaluate_trend(
            payload.account_id or DEFAULT_ACCOUNT_ID,
            payload.symbol,
            candles,
            payload.spread_pips,
        )
        return outcome.to_dict()
