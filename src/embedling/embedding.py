"""
Pooled access to the text embedding endpoint.

For best results, do not await embedding results until they are needed:
``await embedder.embed(documents)`` and ``asyncio.gather`` over many
``embedder.embed(document)`` calls are both split or merged into medium-sized
requests, while awaiting each call inside a loop produces one small request
per document.
"""

from __future__ import annotations

import typing as t

import structlog

from embedling.client import AtlasClient
from embedling.config import load_settings
from embedling.core import DEFAULT_BATCH_SIZE, Batcher, BatchResponse
from embedling.models import (
    EMBEDDING_MODELS,
    TASK_TYPES,
    Embedding,
    EmbeddingModel,
    EmbeddingRequest,
    EmbeddingResponse,
    TaskType,
)
from embedling.utils.logging import logging_context

log = structlog.get_logger(__name__)

EMBEDDING_PATH = "/v1/embedding/text"
DEFAULT_MODEL: EmbeddingModel = "nomic-embed-text-v1.5"
DEFAULT_TASK_TYPE: TaskType = "search_document"


class Embedder:
    """
    Pool embedding requests into batched API calls with backoff.

    Parameters
    ----------
    api_key : str | None, optional
        API key. Falls back to ``ATLAS_API_KEY`` when neither this nor
        ``client`` is given.
    client : AtlasClient | None, optional
        Preconfigured API client.
    model : EmbeddingModel, optional
        Embedding model name.
    task_type : TaskType, optional
        Task the embeddings are used for.
    batch_size : int, optional
        Maximum number of texts per API call.
    **batcher_kwargs : typing.Any
        Extra tuning forwarded to :class:`embedling.core.Batcher`
        (``flush_window_seconds``, ``max_queue_size``, ``backoff_seed_seconds``,
        ``backoff_ceiling_seconds``, ``item_timeout_seconds``).
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: AtlasClient | None = None,
        model: EmbeddingModel = DEFAULT_MODEL,
        task_type: TaskType = DEFAULT_TASK_TYPE,
        batch_size: int = DEFAULT_BATCH_SIZE,
        **batcher_kwargs: t.Any,
    ) -> None:
        if model not in EMBEDDING_MODELS:
            raise ValueError(
                f"Unknown embedding model {model!r}, expected one of {EMBEDDING_MODELS}"
            )
        if task_type not in TASK_TYPES:
            raise ValueError(f"Unknown task type {task_type!r}, expected one of {TASK_TYPES}")

        if client is None:
            settings = load_settings(api_key=api_key)
            settings.require_api_key()
            client = AtlasClient(settings=settings)
        self._client = client
        self.model: EmbeddingModel = model
        self.task_type: TaskType = task_type
        self._batcher: Batcher[str, Embedding] = Batcher(
            self._embed_batch,
            batch_size=batch_size,
            name=f"embedder:{model}:{task_type}",
            **batcher_kwargs,
        )

    @property
    def tokens_used(self) -> int:
        return self._batcher.usage_total

    @property
    def batcher(self) -> Batcher[str, Embedding]:
        return self._batcher

    async def _embed_batch(self, texts: list[str]) -> BatchResponse[Embedding]:
        request = EmbeddingRequest(model=self.model, task_type=self.task_type, texts=texts)
        payload = await self._client.post_json(path=EMBEDDING_PATH, payload=request.model_dump())
        response = EmbeddingResponse.model_validate(payload)
        return BatchResponse(results=response.embeddings, usage=response.usage.total_tokens)

    @t.overload
    async def embed(self, value: str) -> Embedding: ...

    @t.overload
    async def embed(self, value: t.Sequence[str]) -> list[Embedding]: ...

    async def embed(self, value: str | t.Sequence[str]) -> Embedding | list[Embedding]:
        """
        Embed one text or a list of texts.

        Parameters
        ----------
        value : str | typing.Sequence[str]
            A single text, or texts to embed.

        Returns
        -------
        Embedding | list[Embedding]
            One embedding for a single text, otherwise one per text in input order.
        """
        is_single = isinstance(value, str)
        texts = [value] if is_single else list(value)
        with logging_context(model=self.model, task_type=self.task_type):
            log.debug(event="Embedding texts", text_count=len(texts))
            embeddings = await self._batcher.submit_many(texts)
        return embeddings[0] if is_single else embeddings

    async def close(self) -> None:
        await self._batcher.close()

    async def __aenter__(self) -> Embedder:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        await self.close()


@t.overload
async def embed(
    value: str,
    *,
    model: EmbeddingModel = DEFAULT_MODEL,
    task_type: TaskType = DEFAULT_TASK_TYPE,
    api_key: str | None = None,
) -> Embedding: ...


@t.overload
async def embed(
    value: t.Sequence[str],
    *,
    model: EmbeddingModel = DEFAULT_MODEL,
    task_type: TaskType = DEFAULT_TASK_TYPE,
    api_key: str | None = None,
) -> list[Embedding]: ...


async def embed(
    value: str | t.Sequence[str],
    *,
    model: EmbeddingModel = DEFAULT_MODEL,
    task_type: TaskType = DEFAULT_TASK_TYPE,
    api_key: str | None = None,
) -> Embedding | list[Embedding]:
    """
    Embed texts with a one-shot :class:`Embedder`.

    Parameters
    ----------
    value : str | typing.Sequence[str]
        A single text, or texts to embed.
    model : EmbeddingModel, optional
        Embedding model name.
    task_type : TaskType, optional
        Task the embeddings are used for.
    api_key : str | None, optional
        API key; read from ``ATLAS_API_KEY`` when omitted.

    Returns
    -------
    Embedding | list[Embedding]
        Same shape rules as :meth:`Embedder.embed`.
    """
    async with Embedder(api_key, model=model, task_type=task_type) as embedder:
        return await embedder.embed(value)
