"""
Pytest configuration and fixtures for the Slack MCP server tests.

Provides:
- A controllable clock for TTL tests
- Settings built without reading the environment
- A scripted Slack Web API transport for httpx
"""

import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from slack_mcp.config.settings import Settings, load_settings
from slack_mcp.infrastructure import create_infrastructure


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SlackAPIStub:
    """
    Scripted Slack Web API

    Handlers are registered per method name ("conversations.list") and get
    the request params; every request is recorded for assertions.
    """

    def __init__(self):
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def on(self, method: str, handler: Any) -> None:
        if callable(handler):
            self.handlers[method] = handler
        else:
            self.handlers[method] = lambda params, payload=handler: payload

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call["method"] == method)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        params: Dict[str, Any] = dict(request.url.params)
        if request.method == "POST" and request.content:
            params.update(json.loads(request.content))
        self.calls.append({
            "method": method,
            "params": params,
            "http_method": request.method,
            "token": request.headers.get("Authorization", "").replace("Bearer ", ""),
        })

        handler = self.handlers.get(method)
        if handler is None:
            return httpx.Response(200, json={"ok": False, "error": "unknown_method"})

        result = handler(params)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return load_settings(
        slack_bot_token="xoxb-test",
        slack_user_token="xoxp-test",
        slack_requests_per_minute=6000,
        slack_rate_limit_burst=1000,
        _env_file=None,
    )


@pytest.fixture
def slack_api() -> SlackAPIStub:
    return SlackAPIStub()


@pytest.fixture
async def infra(settings: Settings, slack_api: SlackAPIStub):
    infrastructure = create_infrastructure(settings, transport=httpx.MockTransport(slack_api))
    yield infrastructure
    await infrastructure.aclose()
