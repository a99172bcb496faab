"""
Embedding Client

Turns telemetry text into vectors through an OpenAI-compatible
`/v1/embeddings` endpoint.

Features:
- Redaction and head+tail truncation of every input
- Fixed-size batches behind a polling concurrency gate (backpressure)
- Retry with exponential backoff and jitter (4xx responses fail immediately)
- Shared circuit breaker per client
- Micro-batch queue for single-text callers
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from mcp_telemetry.config import Settings
from mcp_telemetry.events.envelope import EnvelopeNormalizer
from mcp_telemetry.kernel.errors import EmbeddingQueueClosedError, ServiceUnavailableError, UpstreamError
from mcp_telemetry.monitoring.metrics import Metrics, get_metrics
from mcp_telemetry.search.circuit_breaker import CircuitBreaker

if TYPE_CHECKING:
    from mcp_telemetry.streaming.streams import StreamTransport

logger = structlog.get_logger()

TRUNCATION_MARKER = "\n... [TRUNCATED] ...\n"
CONCURRENCY_POLL_SECONDS = 0.05
DIMENSION_SAMPLE_TEXT = "dimension sample"
EMBEDDINGS_PATH = "/v1/embeddings"


@dataclass
class EmbeddingResult:
    embedding: list[float]
    index: int
    dimension: int


def truncate_text(text: str, max_length: int) -> str:
    """Keep the head and tail halves of an over-long text around a marker."""
    if len(text) <= max_length:
        return text
    keep = max_length - len(TRUNCATION_MARKER)
    if keep <= 1:
        return text[:max_length]
    head = keep // 2
    tail = keep - head
    return text[:head] + TRUNCATION_MARKER + text[-tail:]


class MicroBatchQueue:
    """
    Collects single-text requests and flushes them together.

    A flush happens when `batch_size` entries are waiting or `flush_interval`
    seconds after the first entry arrived, whichever comes first. Every
    caller in a flush gets its own vector, or the flush's shared error.
    """

    def __init__(
        self,
        flush: Callable[[list[str]], Awaitable[list[list[float]]]],
        *,
        batch_size: int = 64,
        flush_interval: float = 0.1,
    ):
        self._flush_fn = flush
        self.batch_size = max(1, batch_size)
        self.flush_interval = flush_interval
        self._pending: list[tuple[str, asyncio.Future[list[float]]]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self.flush_count = 0

    @property
    def size(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(self, text: str) -> list[float]:
        if self._closed:
            raise EmbeddingQueueClosedError("Embedding queue is closed")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[list[float]] = loop.create_future()
        self._pending.append((text, future))

        if len(self._pending) >= self.batch_size:
            self._flush_now()
        elif self._timer is None:
            self._timer = loop.call_later(self.flush_interval, self._flush_now)

        return await future

    def _flush_now(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        while self._pending:
            batch = self._pending[: self.batch_size]
            self._pending = self._pending[self.batch_size :]
            task = asyncio.create_task(self._flush(batch))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _flush(self, batch: list[tuple[str, asyncio.Future[list[float]]]]) -> None:
        self.flush_count += 1
        texts = [text for text, _ in batch]
        try:
            vectors = await self._flush_fn(texts)
        except Exception as exc:
            for _, future in batch:
                if not future.done():
                    future.set_exception(exc)
            return

        for position, (_, future) in enumerate(batch):
            if future.done():
                continue
            if position < len(vectors):
                future.set_result(vectors[position])
            else:
                future.set_exception(UpstreamError("Embedding response missing vectors"))

    async def flush(self) -> None:
        """Flush everything waiting now and wait for in-flight flushes."""
        self._flush_now()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Reject waiting callers and stop accepting new ones."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        pending, self._pending = self._pending, []
        for _, future in pending:
            if not future.done():
                future.set_exception(EmbeddingQueueClosedError("Embedding queue closed before flush"))
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class EmbeddingClient:
    """Client for an OpenAI-compatible embedding service."""

    def __init__(
        self,
        base_url: str = "http://localhost:1234",
        model: str = "nomic-ai/nomic-embed-text-v1.5-GGUF",
        *,
        batch_size: int = 64,
        concurrency: int = 2,
        timeout_ms: int = 30_000,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        max_text_length: int = 8192,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_cooldown_ms: int = 60_000,
        flush_interval_ms: int = 100,
        normalizer: EnvelopeNormalizer | None = None,
        dimension_cache: "StreamTransport | None" = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Metrics | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.timeout = timeout_ms / 1000
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay_ms / 1000
        self.max_text_length = max_text_length
        self._normalizer = normalizer or EnvelopeNormalizer()
        self._dimension_cache = dimension_cache
        self._http_transport = http_transport
        self._metrics = metrics or get_metrics()
        self.breaker = CircuitBreaker(
            circuit_breaker_threshold,
            circuit_breaker_cooldown_ms / 1000,
            name="embeddings",
            clock=clock,
            on_state_change=lambda name, state: self._metrics.set_circuit_state(name, state.value),
        )
        self.queue = MicroBatchQueue(
            self._embed_prepared,
            batch_size=self.batch_size,
            flush_interval=flush_interval_ms / 1000,
        )
        self._client: httpx.AsyncClient | None = None
        self._dimension: int | None = None
        self._in_flight = 0
        self._stats = {
            "requests": 0,
            "texts": 0,
            "failures": 0,
            "retries": 0,
            "rejected": 0,
        }

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "EmbeddingClient":
        return cls(
            settings.embedding_base_url,
            settings.embedding_model,
            batch_size=settings.embedding_batch_size,
            concurrency=settings.embedding_concurrency,
            timeout_ms=settings.embedding_timeout_ms,
            retry_attempts=settings.embedding_retry_attempts,
            retry_delay_ms=settings.embedding_retry_delay_ms,
            max_text_length=settings.embedding_max_text_length,
            circuit_breaker_threshold=settings.embedding_circuit_breaker_threshold,
            circuit_breaker_cooldown_ms=settings.embedding_circuit_breaker_cooldown_ms,
            flush_interval_ms=settings.embedding_flush_interval_ms,
            **kwargs,
        )

    @property
    def dimension(self) -> int | None:
        return self._dimension

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._http_transport,
            )
        return self._client

    async def initialize(self) -> int:
        """Connect and resolve the model's vector dimension."""
        self._get_client()
        dimension = await self.get_dimension()
        logger.info(
            "Embedding client initialized",
            base_url=self.base_url,
            model=self.model,
            dimension=dimension,
        )
        return dimension

    async def get_dimension(self) -> int:
        """Discover the dimension once per model; memory first, then the shared cache."""
        if self._dimension is not None:
            return self._dimension

        if self._dimension_cache is not None:
            cached = await self._dimension_cache.get_cached_dimension(self.model)
            if cached:
                self._dimension = cached
                logger.debug("Embedding dimension loaded from cache", model=self.model, dimension=cached)
                return cached

        vectors = await self._post_batch([DIMENSION_SAMPLE_TEXT])
        self._dimension = len(vectors[0])
        if self._dimension_cache is not None:
            await self._dimension_cache.cache_dimension(self.model, self._dimension)
        return self._dimension

    def prepare_text(self, text: str, skip_redaction: bool = False) -> str:
        if not skip_redaction:
            text = self._normalizer.redact_string(text)
        return truncate_text(text, self.max_text_length)

    async def embed(self, texts: list[str], skip_redaction: bool = False) -> list[EmbeddingResult]:
        """
        Embed texts in input order.

        Raises:
            ServiceUnavailableError: the circuit is open (no request was sent).
            UpstreamError: the service failed after retries, or returned 4xx.
        """
        if not texts:
            return []

        prepared = [self.prepare_text(text or "", skip_redaction) for text in texts]
        batches = [
            (offset, prepared[offset : offset + self.batch_size])
            for offset in range(0, len(prepared), self.batch_size)
        ]
        batch_vectors = await asyncio.gather(*(self._embed_gated(batch) for _, batch in batches))

        results: list[EmbeddingResult] = []
        for (offset, _), vectors in zip(batches, batch_vectors):
            for position, vector in enumerate(vectors):
                results.append(EmbeddingResult(embedding=vector, index=offset + position, dimension=len(vector)))
        return results

    async def embed_one(self, text: str, skip_redaction: bool = False) -> list[float]:
        """Embed a single text through the micro-batch queue."""
        return await self.queue.submit(self.prepare_text(text or "", skip_redaction))

    async def embed_fields(self, fields: Mapping[str, str | None]) -> dict[str, list[float]]:
        """Embed the non-empty named fields, e.g. `input_text`/`output_text`/`error_text`."""
        names = [name for name, text in fields.items() if text and text.strip()]
        if not names:
            return {}
        results = await self.embed([fields[name] for name in names])
        return {names[result.index]: result.embedding for result in results}

    async def _embed_prepared(self, texts: list[str]) -> list[list[float]]:
        return await self._embed_gated(texts)

    async def _embed_gated(self, texts: list[str]) -> list[list[float]]:
        while self._in_flight >= self.concurrency:
            await asyncio.sleep(CONCURRENCY_POLL_SECONDS)
        self._in_flight += 1
        try:
            return await self._post_batch(texts)
        finally:
            self._in_flight -= 1

    async def _post_batch(self, texts: list[str]) -> list[list[float]]:
        if not self.breaker.allow_request():
            self._stats["rejected"] += 1
            raise ServiceUnavailableError(
                "Embedding service circuit is open",
                meta=self.breaker.snapshot(),
            )

        start = time.perf_counter()
        try:
            vectors = await self._request_with_retry(texts)
        except Exception:
            self.breaker.record_failure()
            self._stats["failures"] += 1
            self._metrics.track_embeddings("error", len(texts), time.perf_counter() - start)
            raise
        except BaseException:
            # Cancelled mid-request says nothing about the service.
            self.breaker.release_trial()
            raise

        self.breaker.record_success()
        self._stats["texts"] += len(texts)
        self._metrics.track_embeddings("success", len(texts), time.perf_counter() - start)
        if self._dimension is None and vectors:
            self._dimension = len(vectors[0])
        return vectors

    async def _request_with_retry(self, texts: list[str]) -> list[list[float]]:
        client = self._get_client()
        body = {"input": texts, "model": self.model, "encoding_format": "float"}
        last_error: UpstreamError | None = None

        for attempt in range(self.retry_attempts):
            self._stats["requests"] += 1
            try:
                response = await client.post(EMBEDDINGS_PATH, json=body)
                if response.status_code >= 400:
                    raise UpstreamError(
                        f"Embedding request failed with HTTP {response.status_code}",
                        status_code=response.status_code,
                        code="embedding.http_error",
                        meta={"body": response.text[:200]},
                    )
                return self._parse_vectors(response.json(), len(texts))
            except UpstreamError as exc:
                if exc.is_client_error:
                    raise
                last_error = exc
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                last_error = UpstreamError(
                    f"Embedding request failed: {exc}",
                    code="embedding.request_failed",
                )

            if attempt < self.retry_attempts - 1:
                self._stats["retries"] += 1
                delay = self.retry_delay * (2**attempt)
                delay = delay + random.uniform(0, delay / 2)
                logger.warning(
                    "Embedding request failed, retrying",
                    attempt=attempt + 1,
                    delay_s=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    @staticmethod
    def _parse_vectors(payload: dict[str, Any], expected: int) -> list[list[float]]:
        data = sorted(payload["data"], key=lambda item: item.get("index", 0))
        if len(data) != expected:
            raise UpstreamError(
                f"Embedding response has {len(data)} vectors for {expected} inputs",
                code="embedding.bad_response",
            )
        return [[float(value) for value in item["embedding"]] for item in data]

    def get_stats(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "dimension": self._dimension,
            "batch_size": self.batch_size,
            "concurrency": self.concurrency,
            "in_flight": self._in_flight,
            "queue_size": self.queue.size,
            "circuit": self.breaker.snapshot(),
            **self._stats,
        }

    async def close(self) -> None:
        await self.queue.close()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Embedding client closed", model=self.model)
