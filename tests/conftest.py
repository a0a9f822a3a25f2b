"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.errors import UpstreamInferenceError  # noqa: E402
from chat_relay.inference import InferenceClient  # noqa: E402
from chat_relay.models import ChatMessage  # noqa: E402


class SpyInference(InferenceClient):
    """Records every message list it receives and replies with a fixed text."""

    def __init__(self, reply: str = "ok") -> None:
        self.reply = reply
        self.calls: List[List[ChatMessage]] = []

    async def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str:
        self.calls.append(list(messages))
        return self.reply


class FailingInference(InferenceClient):
    async def complete(self, messages: Sequence[ChatMessage], max_tokens: int) -> str:
        raise UpstreamInferenceError("upstream down")


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for session state during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var.startswith("CHAT_RELAY"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def spy() -> SpyInference:
    return SpyInference()
