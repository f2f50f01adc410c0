"""
Embedding backends and the token-aware batcher in front of them.

A backend turns a list of texts into one vector per text in the same order.
The batcher groups texts so that no request carries more tokens than the
configured budget, sends the groups one after another and puts every vector
back at the index of the text it came from.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

import tiktoken
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from .config import Settings
from .llm_client import build_openai_client


logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS_PER_BATCH = 7000
FALLBACK_ENCODING = "cl100k_base"

TokenCounter = Callable[[str], int]


class EmbeddingBackend(Protocol):
    def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class OpenAIEmbeddingBackend:
    """Remote embeddings through an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(self, client: OpenAI, model: str = "text-embedding-3-small"):
        self._client = client
        self.model = model
        self._encoding: tiktoken.Encoding | None = None

    def _get_encoding(self) -> tiktoken.Encoding:
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                logger.info(
                    "No tiktoken encoding registered for %s; using %s",
                    self.model,
                    FALLBACK_ENCODING,
                )
                self._encoding = tiktoken.get_encoding(FALLBACK_ENCODING)
        return self._encoding

    def count_tokens(self, text: str) -> int:
        return len(self._get_encoding().encode(text))

    def embed(self, texts: List[str]) -> List[List[float]]:
        response = self._client.embeddings.create(model=self.model, input=texts)
        # The API may return items out of order; ``index`` is authoritative.
        data = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in data]


class SentenceTransformerBackend:
    """Local embeddings with a sentence-transformers model (e.g. bge-m3)."""

    def __init__(self, model_path: Path | str, device: str = "cpu"):
        self.model_path = str(model_path)
        self.device = device
        self._model: SentenceTransformer | None = None

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info("Loading sentence-transformers model from %s", self.model_path)
            self._model = SentenceTransformer(self.model_path, device=self.device)
        return self._model

    def count_tokens(self, text: str) -> int:
        tokenizer = self._get_model().tokenizer
        return len(tokenizer.encode(text, add_special_tokens=True))

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        embeddings = self._get_model().encode(texts, convert_to_numpy=True)
        return embeddings.tolist()


def build_embedding_backend(settings: Settings) -> EmbeddingBackend:
    if settings.uses_local_embedder:
        return SentenceTransformerBackend(
            settings.embedder_model_path, device=settings.embedder_device
        )
    client = build_openai_client(
        settings.embedding_base_url,
        settings.embedding_api_key,
        settings.llm_max_retries,
    )
    return OpenAIEmbeddingBackend(client, model=settings.embedding_model_name)


def estimate_tokens(text: str) -> int:
    """Roughly four characters per token for English-like text, never below 1."""
    return max(1, math.ceil(len(text) / 4))


@dataclass
class TokenBatch:
    indices: List[int] = field(default_factory=list)
    inputs: List[str] = field(default_factory=list)
    tokens: int = 0


def build_batches(
    texts: Sequence[str],
    token_counts: Sequence[int],
    max_tokens: int,
) -> List[TokenBatch]:
    """
    Greedily pack texts into batches of at most ``max_tokens`` tokens.

    A text that alone exceeds the budget is sent in a batch of its own and is
    never split.
    """
    batches: List[TokenBatch] = []
    current = TokenBatch()

    for index, (text, tokens) in enumerate(zip(texts, token_counts)):
        if tokens > max_tokens:
            if current.indices:
                batches.append(current)
                current = TokenBatch()
            batches.append(TokenBatch(indices=[index], inputs=[text], tokens=tokens))
            continue
        if current.tokens + tokens > max_tokens:
            batches.append(current)
            current = TokenBatch()
        current.indices.append(index)
        current.inputs.append(text)
        current.tokens += tokens

    if current.indices:
        batches.append(current)
    return batches


class EmbeddingBatcher:
    """Turn N texts into N vectors while respecting a per-request token budget."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        max_tokens_per_batch: int = DEFAULT_MAX_TOKENS_PER_BATCH,
        tokenizer: Optional[TokenCounter] = None,
    ):
        self.backend = backend
        self.max_tokens_per_batch = max_tokens_per_batch
        self._tokenizer = tokenizer or getattr(backend, "count_tokens", None)

    def count_tokens(self, text: str) -> int:
        if self._tokenizer is not None:
            try:
                return max(1, int(self._tokenizer(text)))
            except Exception as exc:  # tokenizer hiccup, fall back to heuristic
                logger.warning("Tokenizer failed (%s); using length heuristic", exc)
        return estimate_tokens(text)

    def plan(self, texts: Sequence[str]) -> List[TokenBatch]:
        token_counts = [self.count_tokens(t or "") for t in texts]
        return build_batches(
            [t or "" for t in texts], token_counts, self.max_tokens_per_batch
        )

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed ``texts`` and return vectors in input order.

        Batches are sent sequentially. A failing batch aborts the whole call;
        nothing is retried and no partial result is returned.
        """
        if not texts:
            return []

        batches = self.plan(texts)
        logger.info(
            "Embedding %d text(s) in %d batch(es) (budget=%d tokens)",
            len(texts),
            len(batches),
            self.max_tokens_per_batch,
        )

        vectors: List[Optional[List[float]]] = [None] * len(texts)
        for number, batch in enumerate(batches, start=1):
            result = await asyncio.to_thread(self.backend.embed, batch.inputs)
            if len(result) != len(batch.inputs):
                raise RuntimeError(
                    f"Embedding batch {number} returned {len(result)} vector(s) "
                    f"for {len(batch.inputs)} input(s)"
                )
            for original_index, vector in zip(batch.indices, result):
                vectors[original_index] = vector
            logger.debug(
                "Batch %d/%d done (%d text(s), %d tokens)",
                number,
                len(batches),
                len(batch.inputs),
                batch.tokens,
            )
        return vectors  # type: ignore[return-value]

    async def embed_one(self, text: str) -> List[float]:
        [vector] = await self.embed([text])
        return vector


__all__ = [
    "DEFAULT_MAX_TOKENS_PER_BATCH",
    "EmbeddingBackend",
    "EmbeddingBatcher",
    "OpenAIEmbeddingBackend",
    "SentenceTransformerBackend",
    "TokenBatch",
    "build_batches",
    "build_embedding_backend",
    "estimate_tokens",
]
