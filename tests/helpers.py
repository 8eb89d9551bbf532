"""Test doubles shared across test modules."""

import asyncio
import json
from typing import Any

from be.corpus import Corpus
from be.errors import CorpusFatal


class FakeClock:
    """Controllable clock for TTL tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Completion provider returning canned content or raising."""

    def __init__(self, name: str = "fake", content: Any = None, error: Exception | None = None, delay: float = 0.0):
        self._name = name
        self.content = content
        self.error = error
        self.delay = delay
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    async def complete(self, system: str, user: str, *, timeout: float) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.content):
            return self.content(user)
        if isinstance(self.content, dict):
            return json.dumps(self.content)
        return self.content


class StaticCorpusProvider:
    """Corpus provider serving an in-memory corpus; ``fail`` simulates a broken reload."""

    def __init__(self, corpus: Corpus):
        self.corpus = corpus
        self.fail = False
        self.loads = 0

    def load(self) -> Corpus:
        self.loads += 1
        if self.fail:
            raise CorpusFatal("corpus source unavailable")
        return self.corpus
