import asyncio

import pytest
import requests

from helpers import ctx
from opsrouter import remote_provider
from opsrouter.remote_provider import RemoteCapabilityProvider, RemoteConfig, is_valid_decision


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeServer:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, method, url, json=None, headers=None, timeout=None, verify=None):
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers})
        path = url.split("://", 1)[1].split("/", 1)[1]
        handler = self.routes.get(f"{method} /{path}")
        if handler is None:
            return FakeResponse(404, {"error": "not found"})
        if isinstance(handler, Exception):
            raise handler
        return handler


def _provider(**cfg):
    config = RemoteConfig(url="http://weather.local", api_key="k-123", headers={"X-Service-Type": "weather"}, **cfg)
    return RemoteCapabilityProvider("weather-mcp-service", "Weather", config, priority=5)


@pytest.fixture
def server(monkeypatch):
    srv = FakeServer({
        "GET /api/status": FakeResponse(200, {"status": "online", "version": "1.0.0"}),
        "POST /api/can-handle": FakeResponse(200, {"score": 0.95}),
        "POST /api/process": FakeResponse(200, {"type": "weather", "content": "Sunny, 21C", "success": True}),
        "POST /api/handle-confirmation": FakeResponse(200, {"type": "info", "content": "ok", "success": True}),
    })
    monkeypatch.setattr(remote_provider.requests, "request", srv)
    return srv


def test_can_handle_uses_remote_score_and_headers(server):
    provider = _provider()
    score = asyncio.run(provider.can_handle(ctx("weather in Rome")))
    assert score == 0.95
    call = server.calls[-1]
    assert call["url"] == "http://weather.local/api/can-handle"
    assert call["headers"]["X-API-Key"] == "k-123"
    assert call["headers"]["X-Service-Type"] == "weather"
    assert call["json"]["context"]["sessionId"] == "s1"
    assert call["json"]["context"]["input"] == "weather in Rome"


def test_process_returns_remote_decision(server):
    decision = asyncio.run(_provider().process(ctx("weather in Rome")))
    assert decision.type == "weather"
    assert decision.content == "Sunny, 21C"


def test_handle_confirmation_sends_flag(server):
    decision = asyncio.run(_provider().handle_confirmation(ctx("weather"), False))
    assert decision.content == "ok"
    assert server.calls[-1]["json"]["isConfirmed"] is False


def test_invalid_remote_response_is_rejected(server):
    server.routes["POST /api/process"] = FakeResponse(200, {"type": "weather", "content": 42, "success": True})
    decision = asyncio.run(_provider().process(ctx("weather")))
    assert decision.type == "error"
    assert "invalid response" in decision.content


def test_unavailable_server_scores_zero(server):
    server.routes["GET /api/status"] = requests.ConnectionError("refused")
    provider = _provider()
    assert asyncio.run(provider.can_handle(ctx("weather"))) == 0.0
    decision = asyncio.run(provider.process(ctx("weather")))
    assert decision.success is False
    assert decision.content.startswith("Remote provider unavailable")
    assert "refused" in decision.content


def test_status_is_cached(server):
    provider = _provider()

    async def run():
        await provider.get_status()
        await provider.get_status()

    asyncio.run(run())
    assert sum(1 for c in server.calls if c["url"].endswith("/api/status")) == 1
    assert provider.status.available
    assert provider.status.version == "1.0.0"


def test_process_error_marks_unavailable(server):
    server.routes["POST /api/process"] = FakeResponse(500, {"error": "boom"})
    provider = _provider()
    decision = asyncio.run(provider.process(ctx("weather")))
    assert decision.success is False
    assert not provider.status.available


def test_update_config_merges_headers(server):
    provider = _provider()
    asyncio.run(provider.update_config(url="http://other.local/", headers={"Accept-Language": "en-US"}))
    assert provider.config.url == "http://other.local"
    assert provider.config.headers == {"X-Service-Type": "weather", "Accept-Language": "en-US"}
    assert server.calls[-1]["url"] == "http://other.local/api/status"
    with pytest.raises(ValueError):
        asyncio.run(provider.update_config(colour="blue"))


def test_from_config_and_validation():
    provider = RemoteCapabilityProvider.from_config({
        "id": "coinmarket-mcp-service",
        "name": "CoinMarket",
        "url": "https://coins.local/",
        "priority": 5,
    })
    assert provider.priority == 5
    assert provider.config.url == "https://coins.local"
    assert provider.config.secure
    assert is_valid_decision({"type": "t", "content": "c", "success": False})
    assert not is_valid_decision({"type": "t", "content": "c"})
