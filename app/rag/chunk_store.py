import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.budget.ledger import estimate_tokens
from app.store.base import DataStore
from app.store.types import DocumentChunk


@dataclass(frozen=True)
class SourceChunks:
    source_table: str
    source_id: str
    chunks: list[str]
    source_version: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    replace_existing: bool = True


class ChunkUpsertStore:
    """Persists embedded chunks with replace-by-default semantics.

    With ``replace_existing`` every prior row for the source is deleted before
    the new rows land. Without it rows are upserted by chunk index, so a
    shorter re-ingestion leaves stale higher-index rows behind.
    """

    def __init__(self, store: DataStore):
        self._store = store

    async def write_source(
        self,
        company_id: str,
        source: SourceChunks,
        vectors: list[list[float]],
        embedding_model: str,
    ) -> int:
        if len(vectors) != len(source.chunks):
            raise ValueError("vector count must match chunk count")

        if source.replace_existing:
            await asyncio.to_thread(
                self._store.delete_chunks, company_id, source.source_table, source.source_id
            )
        if not source.chunks:
            return 0

        embedded_at = datetime.now(UTC)
        rows = [
            DocumentChunk(
                company_id=company_id,
                source_table=source.source_table,
                source_id=source.source_id,
                source_version=source.source_version,
                chunk_index=index,
                content=chunk,
                token_count=estimate_tokens(chunk),
                metadata=dict(source.metadata),
                embedding=vector,
                embedding_model=embedding_model,
                embedded_at=embedded_at,
            )
            for index, (chunk, vector) in enumerate(zip(source.chunks, vectors, strict=True))
        ]
        return await asyncio.to_thread(self._store.upsert_chunks, rows)
