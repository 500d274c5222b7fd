"""HTTP/WebSocket surface tests with FastAPI's TestClient."""

from __future__ import annotations

import json
import time

import pytest
from fastapi.testclient import TestClient

from analysis_hub.bus.memory import InMemoryBus
from analysis_hub.config import Settings, settings
from analysis_hub.main import create_app
from analysis_hub.services.application import Application


@pytest.fixture
def client(make_processor, tmp_path):
    config = Settings()
    config.AGGREGATION_TIMEOUT_MS = 200
    config.USER_CONFIG_DIR = tmp_path
    config.USER_CONFIG_PATH = tmp_path / "orchestrator.json"
    processors = [
        make_processor("StockDataAgent", settings.STOCK_DATA_TOPIC, delay=0.05),
        make_processor("NewsSentimentAgent", settings.NEWS_TOPIC, delay=0.05),
    ]
    hub = Application(config, bus=InMemoryBus(), processors=processors, start_mode="all")
    with TestClient(create_app(hub)) as test_client:
        yield test_client


def _wait_for_state(client: TestClient, cid: str, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/status/{cid}").json()
        if status["state"] != "pending":
            return status
        time.sleep(0.02)
    raise AssertionError(f"{cid} still pending after {timeout}s")


class TestAnalyze:

    def test_accepted(self, client) -> None:
        resp = client.post("/analyze/aapl")
        assert resp.status_code == 202
        body = resp.json()
        assert body["subjectKey"] == "AAPL"
        assert body["correlationId"]

    def test_invalid_subject(self, client) -> None:
        resp = client.post("/analyze/NOT_A_TICKER")
        assert resp.status_code == 400
        assert "Invalid symbol" in resp.json()["detail"]

    def test_transport_failure(self, client) -> None:
        client.app.state.hub.bus._connected = False
        resp = client.post("/analyze/AAPL")
        assert resp.status_code == 503
        client.app.state.hub.bus._connected = True

    def test_status_and_history(self, client) -> None:
        assert client.get("/history/AAPL").status_code == 404

        cid = client.post("/analyze/AAPL").json()["correlationId"]
        status = _wait_for_state(client, cid)
        assert status["state"] == "completed"
        assert status["subjectKey"] == "AAPL"
        assert status["elapsedMs"] >= 0

        history = client.get("/history/aapl")
        assert history.status_code == 200
        assert history.json()["coverage"] == 1.0

    def test_unknown_status(self, client) -> None:
        assert client.get("/status/does-not-exist").status_code == 404


class TestHealth:

    def test_health(self, client) -> None:
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["mode"] == "all"
        assert body["bus"]["connected"] is True

    def test_agents_status(self, client) -> None:
        body = client.get("/agents/status").json()
        assert set(body) == {"Aggregator", "StockDataAgent", "NewsSentimentAgent"}
        assert all(agent["status"] == "running" for agent in body.values())


class TestConfig:

    def test_get_config(self, client) -> None:
        body = client.get("/config").json()
        assert body["aggregation_timeout_ms"] == 200
        assert "yfinance" in body["rate_limits"]

    def test_update_config(self, client, tmp_path) -> None:
        resp = client.put("/config", json={"aggregation_timeout_ms": 500})
        assert resp.status_code == 200
        assert resp.json()["aggregation_timeout_ms"] == 500
        assert client.app.state.hub.aggregator.timeout_secs == 0.5
        saved = json.loads((tmp_path / "orchestrator.json").read_text(encoding="utf-8"))
        assert saved == {"aggregation_timeout_ms": 500}

    def test_empty_update_rejected(self, client) -> None:
        assert client.put("/config", json={}).status_code == 400


class TestLiveProgress:

    def test_websocket_stream(self, client) -> None:
        cid = client.post("/analyze/MSFT").json()["correlationId"]
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_json({"action": "subscribe", "correlationId": cid})
            assert ws.receive_json() == {"type": "subscribed", "correlationId": cid}

            events = []
            while True:
                event = ws.receive_json()
                events.append(event)
                if event["type"] in ("completed", "error"):
                    break

            assert events[-1]["type"] == "completed"
            assert events[-1]["subjectKey"] == "MSFT"
            assert all(e["correlationId"] == cid for e in events)

            ws.send_json({"action": "unsubscribe", "correlationId": cid})
            assert ws.receive_json()["type"] == "unsubscribed"

    def test_websocket_greets_on_connect(self, client) -> None:
        with client.websocket_connect("/ws") as ws:
            greeting = ws.receive_json()
        assert greeting["type"] == "connected"
        assert greeting["message"]

    def test_websocket_unknown_id_and_bad_action(self, client) -> None:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_json({"action": "subscribe", "correlationId": "ghost"})
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"action": "dance"})
            assert "Unknown action" in ws.receive_json()["error"]

    def test_sse_stream(self, client) -> None:
        cid = client.post("/analyze/NVDA").json()["correlationId"]
        events = []
        with client.stream("GET", f"/stream/{cid}") as resp:
            assert resp.status_code == 200
            assert resp.headers["content-type"].startswith("text/event-stream")
            for line in resp.iter_lines():
                if line.startswith("data: "):
                    events.append(json.loads(line[len("data: "):]))
        assert events[-1]["type"] == "completed"

    def test_sse_unknown_id(self, client) -> None:
        assert client.get("/stream/ghost").status_code == 404
