"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from ollama_gateway.client import OllamaClient  # noqa: E402
from ollama_gateway.db import Database  # noqa: E402


class TrackingStream(httpx.SyncByteStream):
    """Response body that records whether the client closed it."""

    def __init__(self, chunks: Iterable[bytes], error: Optional[Exception] = None):
        self.chunks = list(chunks)
        self.error = error
        self.served = 0
        self.closed = False

    def __iter__(self):
        for chunk in self.chunks:
            self.served += 1
            yield chunk
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.closed = True


class FakeOllama:
    """In-process stand-in for the Ollama HTTP API."""

    def __init__(self) -> None:
        self.requests: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.status = 200
        self.reply: Dict[str, Any] = {"model": "llama3.2", "response": "ok", "done": True}
        self.models: Dict[str, Any] = {"models": [{"name": "llama3.2"}, {"name": "mistral"}]}
        self.lines: List[str] = [
            '{"response":"Hel","done":false}',
            '{"response":"lo","done":false}',
            '{"done":true}',
        ]
        self.stream_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self.last_stream: Optional[TrackingStream] = None

    @property
    def last_body(self) -> Optional[Dict[str, Any]]:
        return self.requests[-1][2] if self.requests else None

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if self.connect_error is not None:
            raise self.connect_error
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "model runner crashed"})
        if request.url.path == "/api/tags":
            return httpx.Response(200, json=self.models)
        if body and body.get("stream"):
            self.last_stream = TrackingStream(
                [(line + "\n").encode("utf-8") for line in self.lines],
                error=self.stream_error,
            )
            return httpx.Response(200, stream=self.last_stream)
        return httpx.Response(200, json=self.reply)

    def client(self, **kwargs: Any) -> OllamaClient:
        return OllamaClient(transport=httpx.MockTransport(self.handler), **kwargs)


@pytest.fixture(scope="function")
def backend() -> FakeOllama:
    return FakeOllama()


@pytest.fixture(scope="function")
def db(tmp_path: Path):
    """A fresh SQLite database in a temp directory."""
    database = Database(f"sqlite:///{tmp_path / 'gateway.db'}")
    database.init()
    yield database
    database.dispose()


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in list(os.environ):
        if var.startswith("OLLAMA_GATEWAY"):
            monkeypatch.delenv(var, raising=False)
    yield
