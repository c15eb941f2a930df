"""
Pytest configuration and shared fixtures.

Provides:
- Fresh tool registries and recording handlers
- A fake forecast collaborator
- Environment isolation for settings
"""

from datetime import date
from typing import Any, Dict, List

import pytest

from weathercast.core.config import get_settings
from weathercast.mcp.base import Handler
from weathercast.mcp.protocol import ParameterSpec, ParameterType, ToolDescriptor
from weathercast.mcp.registry import ToolRegistry


class RecordingHandler(Handler):
    """Handler that remembers every call and echoes a fixed reply."""

    def __init__(self, reply: str = "ok") -> None:
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    async def handle(self, arguments):
        self.calls.append(dict(arguments))
        return self.reply


class FakeForecaster:
    """Stands in for ForecastClient."""

    def __init__(self, text: str = "2025-05-02: 18°C, partly cloudy") -> None:
        self.text = text
        self.requests: List[tuple] = []

    async def generate(self, city: str, country: str, from_date: date, to_date: date) -> str:
        self.requests.append((city, country, from_date, to_date))
        return self.text


ECHO_TOOL = ToolDescriptor(
    name="echo",
    description="Echo a message",
    parameters=(
        ParameterSpec(name="message", type=ParameterType.STRING, required=True, description="Text to echo"),
        ParameterSpec(name="times", type=ParameterType.NUMBER, description="Repeat count"),
        ParameterSpec(name="loud", type=ParameterType.BOOLEAN, description="Upper-case the reply"),
    ),
)


@pytest.fixture
def registry():
    """Create a fresh registry for each test."""
    return ToolRegistry()


@pytest.fixture
def recording_handler():
    return RecordingHandler()


@pytest.fixture
def fake_forecaster():
    return FakeForecaster()


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep real credentials and .env files out of tests."""
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def echo_tool():
    return ECHO_TOOL
