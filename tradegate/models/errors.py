"""Error hierarchy shared by services, stores and the API layer."""

from __future__ import annotations


class TradeGateError(Exception):
    """Base error."""


class SignalValidationError(TradeGateError):
    """Signal or candle input rejected before any evaluation."""


class InsufficientDataError(SignalValidationError):
    def __init__(self, required: int, got: int) -> None:
        self.required = required
        self.got = got
        super().__init__(f"at least {required} candles required, got {got}")


class InvalidCandleError(SignalValidationError):
    def __init__(self, index: int) -> None:
        self.index = index
        super().__init__(f"candles must have positive prices (index={index})")


class AuthorizationError(TradeGateError):
    """Invalid connect code, session token or admin key."""


class NotFoundError(TradeGateError):
    """Unknown command, session or OAuth state."""


class SessionExpiredError(AuthorizationError):
    pass


class InvalidTransitionError(TradeGateError):
    def __init__(self, command_id: str, current: str, target: str) -> None:
        self.command_id = command_id
        self.current = current
        self.target = target
        super().__init__(f"command {command_id}: {current} -> {target} is not allowed")


class TokenExchangeError(TradeGateError):
    """Token endpoint failed, answered non-2xx, or returned no access token."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(message)


class OAuthNotConfiguredError(TradeGateError):
    pass


class DuplicateCommandError(TradeGateError):
    def __init__(self, command_id: str) -> None:
        self.command_id = command_id
        super().__init__(f"command {command_id} already exists")
