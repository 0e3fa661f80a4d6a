from unittest.mock import MagicMock
from typing import Any, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from llm_gateway.app import create_app
from llm_gateway.config import GatewayConfig
from llm_gateway.diagnostics import Diagnostics
from llm_gateway.gateway import Gateway
from llm_gateway.inference import InferenceService
from llm_gateway.kv import InMemoryKeyValueStore


class ScriptedInference(InferenceService):
    """Inference double that answers from fixed scripts and records every call."""

    def __init__(self, config: GatewayConfig):
        super().__init__(metrics=MagicMock(), config=config)
        self.reply = "hello there"
        self.chunks: List[str] = ["hel", "lo ", "there"]
        self.image: Any = {"data": [{"b64_json": "AAAA"}]}
        self.embedding: Any = {"data": [{"embedding": [0.1, 0.2, 0.3]}]}
        self.error: Optional[Exception] = None
        self.calls: List[tuple] = []

    def _check(self):
        if self.error is not None:
            raise self.error

    async def chat(self, messages, max_tokens):
        self.calls.append(("chat", messages, max_tokens))
        self._check()
        return self.reply

    async def stream_chat(self, messages, max_tokens):
        self.calls.append(("stream_chat", messages, max_tokens))
        self._check()
        return self._stream()

    async def _stream(self):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    async def generate_image(self, prompt, size):
        self.calls.append(("generate_image", prompt, size))
        self._check()
        return self.image

    async def embed(self, text):
        self.calls.append(("embed", text))
        self._check()
        return self.embedding


class RecordingFetcher:
    def __init__(self, content: bytes = None, error: Exception = None):
        self.content = content
        self.error = error
        self.urls: List[str] = []

    def __call__(self, url, timeout):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.content


@pytest.fixture
def config(tmp_path):
    (tmp_path / "index.html").write_text("<h1>gateway</h1>")
    return GatewayConfig(assets_dir=str(tmp_path))


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def metrics():
    return MagicMock()


@pytest.fixture
def diagnostics(metrics):
    return Diagnostics(metrics)


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def inference(config):
    return ScriptedInference(config)


@pytest.fixture
def fetcher():
    return RecordingFetcher(error=ConnectionError("offline"))


@pytest.fixture
def gateway(config, inference, kv, engine, metrics, diagnostics, fetcher):
    return Gateway(
        config=config,
        inference=inference,
        kv=kv,
        engine=engine,
        metrics=metrics,
        diagnostics=diagnostics,
        fetcher=fetcher,
    )


@pytest.fixture
def client(gateway):
    with TestClient(create_app(gateway)) as client:
        yield client
