from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from helpers import FakeClock, connected, rising_candles
from tradegate.app.engine import build_gateway
from tradegate.controllers.api_controller import create_app
from tradegate.infrastructure.storage.memory_store import MemoryStore
from tradegate.infrastructure.utils.config import GatewayConfig
from tradegate.services.risk.risk_engine import PROVIDER_UNAVAILABLE

CODE = "CONNECT-1"
ADMIN = {"Authorization": "Bearer admin-key"}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def client(store, clock):
    config = GatewayConfig.from_mapping(
        {
            "store": {"type": "memory"},
            "ea": {"connect_code": CODE},
            "admin": {"api_key": "admin-key"},
            "risk": {"min_confidence": 0.5},
        }
    )
    gateway = build_gateway(config, store=store, clock=clock)
    with TestClient(create_app(config, gateway)) as c:
        yield c


def register(client, account_id="acc-1", device_id="dev-1") -> dict:
    resp = client.post(
        "/ea/register",
        json={"connect_code": CODE, "account_id": account_id, "device_id": device_id},
    )
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}


SIGNAL = {
    "account_id": "acc-1",
    "symbol": "EURUSD",
    "side": "BUY",
    "confidence": 0.9,
    "spread_pips": 0.5,
    "stop_loss_pips": 12,
    "take_profit_pips": 24,
    "reason": "breakout",
}


# ═══════════════════════════════════════════════════════════════
# PUBLIC
# ═══════════════════════════════════════════════════════════════

class TestPublic:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["ok"] is True
        assert body["status"] == "ok"

    def test_register_rejects_wrong_code(self, client):
        resp = client.post("/ea/register", json={"connect_code": "x", "account_id": "a", "device_id": "d"})
        assert resp.status_code == 401

    def test_register_requires_ids(self, client):
        resp = client.post("/ea/register", json={"connect_code": CODE, "account_id": "", "device_id": "d"})
        assert resp.status_code == 400

    def test_register_returns_scopes(self, client):
        resp = client.post("/ea/register", json={"connect_code": CODE, "account_id": "a", "device_id": "d"})
        assert resp.json()["scopes"] == ["trade:execute", "trade:read", "account:read"]

    def test_oauth_start_unconfigured(self, client):
        assert client.get("/oauth/openai/start").status_code == 503

    def test_oauth_callback_unknown_state(self, client):
        resp = client.get("/oauth/openai/callback", params={"state": "nope", "code": "c"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "invalid oauth state"

    def test_oauth_callback_requires_params(self, client):
        assert client.get("/oauth/openai/callback").status_code == 400


# ═══════════════════════════════════════════════════════════════
# AGENT
# ═══════════════════════════════════════════════════════════════

class TestAgent:

    def test_requires_session(self, client):
        assert client.post("/ea/execute").status_code == 401
        assert client.post("/ea/execute", headers={"Authorization": "Bearer bogus"}).status_code == 401

    def test_execute_returns_noop(self, client):
        headers = register(client)
        body = client.post("/ea/execute", headers=headers).json()
        assert body["type"] == "NOOP"
        assert body["command_id"]

    def test_heartbeat(self, client):
        body = client.post("/ea/heartbeat", headers=register(client)).json()
        assert body["ok"] is True
        assert body["paused"] is False

    def test_sync_triggers_breaker(self, client, store):
        headers = register(client)
        body = client.post(
            "/ea/sync",
            headers=headers,
            json={"equity": 5000, "daily_pnl": -150, "positions": [{"ticket": 1}, {"ticket": 2}]},
        ).json()

        assert body == {
            "ok": True,
            "open_positions": 2,
            "daily_loss_pct": pytest.approx(3.0),
            "triggered_circuit_breaker": True,
        }
        assert store.is_paused() is True
        assert client.post("/ea/heartbeat", headers=headers).json()["paused"] is True

    def test_result_for_unknown_command(self, client):
        resp = client.post("/ea/result", headers=register(client), json={"command_id": "nope", "status": "SUCCESS"})
        assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════════
# ADMIN
# ═══════════════════════════════════════════════════════════════

class TestAdmin:

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "admin-key"}])
    def test_rejects_bad_credentials(self, client, headers):
        assert client.post("/bot/pause", headers=headers).status_code == 401
        assert client.get("/events", headers=headers).status_code == 401

    def test_empty_admin_key_rejects_everything(self, store, clock):
        config = GatewayConfig.from_mapping({"admin": {"api_key": ""}})
        with TestClient(create_app(config, build_gateway(config, store=store, clock=clock))) as c:
            assert c.get("/events", headers={"Authorization": "Bearer "}).status_code == 401
            assert c.get("/events", headers={"Authorization": "Bearer anything"}).status_code == 401

    def test_pause_resume(self, client, store):
        assert client.post("/bot/pause", headers=ADMIN).json()["ok"] is True
        assert store.is_paused() is True
        client.post("/bot/resume", headers=ADMIN)
        assert store.is_paused() is False

        body = client.get("/events", headers=ADMIN, params={"limit": 1}).json()
        assert body["count"] == 1
        assert body["events"][0]["payload"] == {"paused": False, "source": "admin"}

    def test_non_ascii_admin_token_is_unauthorized(self, client):
        token = "Bearer cl\u00e9-\u043a\u043b\u044e\u0447".encode("utf-8")
        resp = client.get("/events", headers={"Authorization": token})
        assert resp.status_code == 401

    @pytest.mark.parametrize("field", ["confidence", "spread_pips", "stop_loss_pips"])
    def test_non_finite_signal_numbers_rejected(self, client, store, clock, field):
        store.save_provider_connection(connected(clock))
        body = json.dumps({**SIGNAL, field: float("nan")})
        assert "NaN" in body

        resp = client.post(
            "/admin/signals/evaluate",
            headers={**ADMIN, "Content-Type": "application/json"},
            content=body,
        )

        assert resp.status_code == 422
        assert client.post("/ea/execute", headers=register(client)).json()["type"] == "NOOP"

    def test_signal_fails_closed_without_provider(self, client):
        body = client.post("/admin/signals/evaluate", headers=ADMIN, json=SIGNAL).json()
        assert body == {"allowed": False, "deny_reason": PROVIDER_UNAVAILABLE}

    def test_oauth_status_and_disconnect(self, client, store, clock):
        assert client.get("/oauth/openai/status", headers=ADMIN).json()["connected"] is False
        store.save_provider_connection(connected(clock))
        assert client.get("/oauth/openai/status", headers=ADMIN).json()["connected"] is True
        assert client.post("/oauth/openai/disconnect", headers=ADMIN).json() == {"ok": True}
        assert store.get_provider_connection("openai") is None

    def test_dashboard_summary(self, client):
        body = client.get("/dashboard/summary", headers=ADMIN).json()
        assert body["account_id"] == "paper-1"
        assert body["mode"] == "paper"
        assert body["ai_provider_connected"] is False
        assert body["last_events"] == []


# ═══════════════════════════════════════════════════════════════
# END TO END
# ═══════════════════════════════════════════════════════════════

class TestFlow:

    def test_signal_to_execution(self, client, store, clock):
        store.save_provider_connection(connected(clock))
        headers = register(client)

        decision = client.post("/admin/signals/evaluate", headers=ADMIN, json=SIGNAL).json()
        assert decision["allowed"] is True
        command_id = decision["command"]["command_id"]

        cmd = client.post("/ea/execute", headers=headers).json()
        assert cmd["command_id"] == command_id
        assert cmd["type"] == "OPEN"
        assert cmd["side"] == "BUY"
        assert cmd["volume"] == 0.01
        assert cmd["sl"] == 12

        # dispatched once only
        assert client.post("/ea/execute", headers=headers).json()["type"] == "NOOP"

        resp = client.post(
            "/ea/result",
            headers=headers,
            json={"command_id": command_id, "status": "SUCCESS", "broker_ticket": "1001"},
        )
        assert resp.status_code == 200
        assert store.open_positions("acc-1") == 1

        again = client.post("/ea/result", headers=headers, json={"command_id": command_id, "status": "SUCCESS"})
        assert again.status_code == 409

        types = [e["event_type"] for e in client.get("/events", headers=ADMIN).json()["events"]]
        assert types == ["TradeExecuted", "SignalProposed"]

    def test_other_account_cannot_poll_command(self, client, store, clock):
        store.save_provider_connection(connected(clock))
        client.post("/admin/signals/evaluate", headers=ADMIN, json=SIGNAL)
        other = register(client, account_id="acc-2", device_id="dev-2")
        assert client.post("/ea/execute", headers=other).json()["type"] == "NOOP"

    def test_strategy_evaluation_queues_command(self, client, store, clock):
        store.save_provider_connection(connected(clock))
        candles = [
            {"time": c.time.isoformat(), "open": c.open, "high": c.high, "low": c.low, "close": c.close}
            for c in rising_candles()
        ]
        body = client.post(
            "/admin/strategy/evaluate",
            headers=ADMIN,
            json={"account_id": "acc-1", "symbol": "EURUSD", "candles": candles},
        ).json()

        assert body["allowed"] is True
        assert body["has_signal"] is True
        assert body["strategy_signal"]["side"] == "BUY"
        assert body["command"]["account_id"] == "acc-1"

    def test_strategy_evaluation_rejects_short_history(self, client):
        candles = [
            {"time": c.time.isoformat(), "open": c.open, "high": c.high, "low": c.low, "close": c.close}
            for c in rising_candles(10)
        ]
        resp = client.post("/admin/strategy/evaluate", headers=ADMIN, json={"symbol": "EURUSD", "candles": candles})
        assert resp.status_code == 400
