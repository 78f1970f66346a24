import asyncio
from typing import List, Optional, Sequence, Tuple, Type

import openai
import structlog
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import settings
from .ratelimit import GroupRateLimiter, IntervalRateLimiter, UnlimitedRateLimiter

logger = structlog.get_logger(__name__)


class EmbeddingServiceError(Exception):
    """Embedding provider failed for a reason other than throttling."""


class EmbeddingRateLimitError(EmbeddingServiceError):
    """Provider kept throttling after every allowed retry."""


class InvalidEmbeddingError(EmbeddingServiceError):
    """Provider answered, but the vector is missing, empty or the wrong size."""


def build_embedding_client() -> AsyncOpenAI:
    # SDK retries are off: retry policy lives in EmbeddingGateway
    return AsyncOpenAI(
        api_key=settings.EMBED_API_KEY or "missing",
        base_url=settings.EMBED_BASE_URL or None,
        timeout=settings.EMBED_TIMEOUT,
        max_retries=0,
    )


def retryable_errors(include_network: bool = False) -> Tuple[Type[BaseException], ...]:
    errors: Tuple[Type[BaseException], ...] = (openai.RateLimitError,)
    if include_network:
        errors += (openai.APIConnectionError, openai.APITimeoutError)
    return errors


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "embedding_retry",
        attempt=state.attempt_number,
        wait_seconds=state.next_action.sleep if state.next_action else None,
        error=str(exc),
    )


class EmbeddingGateway:
    """Text → vector, with retry on throttling and paced batch embedding.

    ``embed`` retries only the errors in ``retry_on`` (rate limiting by
    default) with a 2**attempt second backoff, up to ``max_retries`` retries.
    Anything else propagates on the first failure.

    ``embed_batch`` splits the input into groups of ``batch_size``. Requests
    inside a group run concurrently; groups run one after another through
    ``limiter``. The result is index-aligned with the input, and a single
    bad vector fails the whole call.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str,
        dimensions: Optional[int] = None,
        max_retries: int = 3,
        retry_on: Sequence[Type[BaseException]] = (openai.RateLimitError,),
        batch_size: int = 55,
        limiter: Optional[GroupRateLimiter] = None,
        sleep=asyncio.sleep,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.max_retries = max_retries
        self.retry_on = tuple(retry_on)
        self.batch_size = batch_size
        self._limiter = limiter or UnlimitedRateLimiter()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, client: Optional[AsyncOpenAI] = None) -> "EmbeddingGateway":
        return cls(
            client or build_embedding_client(),
            model=settings.EMBED_MODEL,
            dimensions=settings.EMBED_DIM or None,
            max_retries=settings.EMBED_MAX_RETRIES,
            retry_on=retryable_errors(settings.EMBED_RETRY_NETWORK_ERRORS),
            batch_size=settings.EMBED_BATCH_SIZE,
            limiter=IntervalRateLimiter(settings.EMBED_BATCH_DELAY_SECONDS),
        )

    async def embed(self, text: str) -> List[float]:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(self.retry_on),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=2, exp_base=2),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    resp = await self._client.embeddings.create(model=self.model, input=[text])
        except openai.RateLimitError as e:
            raise EmbeddingRateLimitError(f"Embedding provider rate limit persisted after {self.max_retries} retries") from e
        except openai.APIError as e:
            raise EmbeddingServiceError(f"Embedding provider error: {e}") from e

        data = getattr(resp, "data", None) or []
        vector = data[0].embedding if data else None
        return self._validate(vector)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        total_groups = (len(texts) + self.batch_size - 1) // self.batch_size
        for number, start in enumerate(range(0, len(texts), self.batch_size), start=1):
            group = texts[start:start + self.batch_size]
            async with self._limiter.group():
                logger.info("embedding_group_started", group=number, total_groups=total_groups, size=len(group))
                tasks = [asyncio.ensure_future(self.embed(t)) for t in group]
                try:
                    results = await asyncio.gather(*tasks)
                except BaseException:
                    # The group ends here: no sibling call may outlive it
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                    logger.warning("embedding_group_failed", group=number, total_groups=total_groups)
                    raise
            for offset, vector in enumerate(results):
                if not vector:
                    raise InvalidEmbeddingError(f"Failed to generate embedding for chunk {start + offset + 1}")
            vectors.extend(results)
        return vectors

    def _validate(self, vector) -> List[float]:
        if not isinstance(vector, (list, tuple)) or len(vector) == 0:
            raise InvalidEmbeddingError("Embedding provider returned an empty vector")
        if self.dimensions and len(vector) != self.dimensions:
            raise InvalidEmbeddingError(
                f"Embedding has {len(vector)} dimensions, expected {self.dimensions}"
            )
        return [float(x) for x in vector]
