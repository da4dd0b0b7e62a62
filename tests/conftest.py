"""
Shared pytest fixtures for mindclone tests.

Provides a scripted inference provider so no test talks to a hosted model.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest
import pytest_asyncio

from mindclone.gateway import InferenceGateway
from mindclone.memory_store import MemoryStore
from mindclone.providers.base import Completion
from mindclone.repository import MemoryRepository
from mindclone.types import GroundingSource, Memory, MemoryType
from mindclone.workspace import Workspace

Reply = Union[str, dict, Completion, Exception, Callable[..., Any]]


class MockInferenceProvider:
    """
    Scripted inference provider.

    Replies are chosen by the first matching rule: a substring of the
    prompt or system instruction. Dict replies are returned as JSON text,
    exceptions are raised. Every call is recorded in ``calls``.
    """

    def __init__(self, default: Reply = ""):
        self.default = default
        self.rules: list[tuple[str, Reply]] = []
        self.calls: list[dict[str, Any]] = []
        self.delay = 0.0

    def on(self, needle: str, reply: Reply) -> "MockInferenceProvider":
        self.rules.append((needle, reply))
        return self

    def calls_matching(self, needle: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if needle in c["prompt"] or needle in (c["system"] or "")]

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        images=(),
        history=(),
        json_schema=None,
        web_search: bool = False,
    ) -> Completion:
        self.calls.append({
            "prompt": prompt,
            "system": system,
            "images": list(images),
            "history": list(history),
            "json_schema": json_schema,
            "web_search": web_search,
        })
        if self.delay:
            await asyncio.sleep(self.delay)

        reply = self.default
        for needle, candidate in self.rules:
            if needle in prompt or needle in (system or ""):
                reply = candidate
                break

        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(prompt)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, Completion):
            return reply
        if isinstance(reply, dict):
            return Completion(text=json.dumps(reply))
        return Completion(text=reply)


def make_memory(
    id: str,
    content: str = "note",
    *,
    type: MemoryType = MemoryType.TEXT,
    created_at: Optional[int] = None,
    tags: Optional[list[str]] = None,
    **kwargs: Any,
) -> Memory:
    """Build a Memory with a creation time derived from its id."""
    if created_at is None:
        created_at = int(id.rsplit("_", 1)[-1]) if id.rsplit("_", 1)[-1].isdigit() else 1_700_000_000_000
    return Memory(
        id=id,
        type=type,
        content=content,
        created_at=created_at,
        tags=list(tags or []),
        **kwargs,
    )


SOURCE = GroundingSource(uri="https://example.com/milk", title="Milk facts")


@pytest.fixture
def provider():
    return MockInferenceProvider()


@pytest.fixture
def gateway(provider):
    return InferenceGateway(provider, timeout=2)


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "memories.db"


@pytest.fixture
def store(db_path):
    s = MemoryStore(db_path)
    yield s
    s.close()


@pytest_asyncio.fixture
async def repository(db_path):
    repo = MemoryRepository(db_path)
    await repo.open()
    yield repo
    await repo.close()


@pytest_asyncio.fixture
async def workspace(repository, gateway):
    ws = Workspace(repository, gateway)
    yield ws
    ws.close()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Remove provider keys and point the default store at a temp dir."""
    for var in (
        "GEMINI_API_KEY", "GOOGLE_API_KEY", "GOOGLE_CLOUD_PROJECT",
        "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "MINDCLONE_OPENAI_API_KEY",
        "MINDCLONE_PROVIDER", "MINDCLONE_MODEL", "MINDCLONE_TIMEOUT",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("MINDCLONE_STORE_PATH", str(tmp_path / "store"))
    return tmp_path / "store"
