"""Shared pytest configuration and fixtures."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Callable

import httpx
import openai
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from docbot.db import Base
from docbot import models  # noqa: F401
from docbot.schemas import Credentials
from docbot.services.context import ContextAssembler
from docbot.services.embedding import EmbeddingGateway
from docbot.services.llm import CompletionClient
from docbot.services.messaging import DeliveryResult
from docbot.services.ratelimit import IntervalRateLimiter

KEYWORDS = ("price", "hours", "refund")


def keyword_vector(text: str) -> list[float]:
    """3-d vector counting a few keywords, plus a small constant so it is never all-zero."""
    lowered = text.lower()
    return [lowered.count(k) + 0.01 for k in KEYWORDS]


def rate_limit_error() -> openai.RateLimitError:
    request = httpx.Request("POST", "https://embed.test/v1/embeddings")
    return openai.RateLimitError("rate limited", response=httpx.Response(429, request=request), body=None)


def server_error() -> openai.InternalServerError:
    request = httpx.Request("POST", "https://embed.test/v1/embeddings")
    return openai.InternalServerError("boom", response=httpx.Response(500, request=request), body=None)


def connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", "https://embed.test/v1/embeddings"))


# ── Fake SDK clients ────────────────────────────────────────────────────


class FakeEmbeddingsAPI:
    """Stands in for ``AsyncOpenAI().embeddings``.

    ``failures`` maps an input text to a list of exceptions raised on its
    first calls, in order.
    """

    def __init__(self, vector_fn: Callable[[str], Any] = keyword_vector) -> None:
        self.vector_fn = vector_fn
        self.calls: list[str] = []
        self.failures: dict[str, list[Exception]] = {}

    async def create(self, *, model: str, input: list[str]) -> Any:
        text = input[0]
        self.calls.append(text)
        pending = self.failures.get(text)
        if pending:
            raise pending.pop(0)
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.vector_fn(text))])


class FakeEmbeddingClient:
    def __init__(self, vector_fn: Callable[[str], Any] = keyword_vector) -> None:
        self.embeddings = FakeEmbeddingsAPI(vector_fn)


class FakeCompletions:
    def __init__(self, reply: str = "Our opening hours are 9 to 5.") -> None:
        self.reply = reply
        self.error: Exception | None = None
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], model="fake-llm")


class FakeChatClient:
    def __init__(self, reply: str = "Our opening hours are 9 to 5.") -> None:
        self.chat = SimpleNamespace(completions=FakeCompletions(reply))

    @property
    def completions(self) -> FakeCompletions:
        return self.chat.completions


class FakeSender:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.sent: list[tuple[str, str, Credentials | None]] = []

    async def send_text(self, recipient: str, text: str, credentials: Credentials | None) -> DeliveryResult:
        self.sent.append((recipient, text, credentials))
        if self.success:
            return DeliveryResult(success=True, response={"status": "queued"})
        return DeliveryResult(success=False, error="WhatsApp API returned 500")


class FakeClock:
    """Simulated monotonic clock; ``sleep`` advances it instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture()
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture()
def embedder(embedding_client: FakeEmbeddingClient, clock: FakeClock) -> EmbeddingGateway:
    return EmbeddingGateway(
        embedding_client,  # type: ignore[arg-type]
        model="fake-embed",
        dimensions=3,
        batch_size=2,
        limiter=IntervalRateLimiter(61.0, clock=clock, sleep=clock.sleep),
        sleep=clock.sleep,
    )


@pytest.fixture()
def chat_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture()
def completion(chat_client: FakeChatClient) -> CompletionClient:
    return CompletionClient(chat_client, model="fake-llm", temperature=0.2, max_tokens=500)  # type: ignore[arg-type]


@pytest.fixture()
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture()
def assembler() -> ContextAssembler:
    return ContextAssembler(history_turns=10)


@pytest.fixture()
def credentials() -> Credentials:
    return Credentials(auth_token="tok-123", origin="https://shop.example")
