from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.providers.base import AIProvider, ProviderError

EMBEDDING_BATCH_SIZE = 64


@dataclass(frozen=True)
class EmbeddingResult:
    vectors: list[list[float]]
    prompt_tokens: int | None


class EmbeddingProxy:
    """Sends chunks to the embeddings API in sequential, bounded batches."""

    def __init__(
        self,
        provider: AIProvider,
        model: str,
        batch_size: int = EMBEDDING_BATCH_SIZE,
    ):
        if not 1 <= batch_size <= EMBEDDING_BATCH_SIZE:
            raise ValueError(f"batch_size must be in [1, {EMBEDDING_BATCH_SIZE}]")
        self._provider = provider
        self._model = model
        self._batch_size = batch_size

    async def embed_texts(self, texts: list[str]) -> EmbeddingResult:
        vectors: list[list[float]] = []
        reported_tokens: int | None = None
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            payload = await self._provider.create_embeddings(self._model, batch)
            vectors.extend(self._parse_vectors(payload, expected=len(batch)))

            usage = payload.get("usage")
            if isinstance(usage, dict) and isinstance(usage.get("prompt_tokens"), int):
                reported_tokens = (reported_tokens or 0) + usage["prompt_tokens"]

        if len(vectors) != len(texts):
            raise ProviderError(
                status_code=502,
                code="embedding_count_mismatch",
                message=f"Embedding count mismatch: {len(vectors)} vectors for {len(texts)} chunks",
            )
        return EmbeddingResult(vectors=vectors, prompt_tokens=reported_tokens)

    @staticmethod
    def _parse_vectors(payload: dict[str, Any], expected: int) -> list[list[float]]:
        data = payload.get("data")
        if not isinstance(data, list):
            raise ProviderError(
                status_code=502,
                code="embedding_payload_invalid",
                message="Embeddings response missing data array",
                payload=payload,
            )

        entries: list[tuple[int, list[float]]] = []
        for position, item in enumerate(data):
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list):
                raise ProviderError(
                    status_code=502,
                    code="embedding_payload_invalid",
                    message="Invalid embedding payload: missing embedding array",
                )
            index = item.get("index")
            order = index if isinstance(index, int) else position
            entries.append((order, [float(value) for value in embedding]))

        if len(entries) != expected:
            raise ProviderError(
                status_code=502,
                code="embedding_count_mismatch",
                message=f"Embedding count mismatch: {len(entries)} vectors for {expected} chunks",
            )
        return [vector for _, vector in sorted(entries, key=lambda entry: entry[0])]


def vector_literal(values: list[float]) -> str:
    return "[" + ",".join(repr(float(value)) for value in values) + "]"
