# tradegate/api/state.py
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from tradegate.app.engine import DispatchGateway
from tradegate.infrastructure.utils.config import GatewayConfig


@dataclass
class AppState:
    config: GatewayConfig
    gateway: DispatchGateway


def set_state(app_state: object, state: AppState) -> None:
    """Attach to a FastAPI app's `app.state`."""
    setattr(app_state, "tradegate", state)


def get_state(request: Request) -> AppState:
    state = getattr(request.app.state, "tradegate", None)
    if state is None:
        raise RuntimeError("API state not initialized. Build the app with create_app().")
    return state
