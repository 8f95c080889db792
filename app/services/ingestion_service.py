import logging

from fastapi import Request

from app.audit.usage_logger import UsageLogger
from app.auth.access import AccessResolver
from app.auth.identity import IdentityProvider
from app.budget.ledger import BudgetLedger, estimate_tokens
from app.config.settings import Settings
from app.core.errors import (
    AppError,
    BudgetExceededError,
    InternalError,
    UpstreamError,
    ValidationError,
)
from app.features.gate import EMBEDDING_FEATURE_KEY, FeatureGate
from app.models.gateway import (
    EmbeddingRequest,
    EmbeddingResponse,
    EmbeddingUsage,
    EmbedSource,
    read_body,
)
from app.prompts.assembler import resolve_model
from app.providers.base import AIProviderFactory, ProviderError
from app.rag.chunk_store import ChunkUpsertStore, SourceChunks
from app.rag.chunking import chunk_text, clamp_chunk_params
from app.rag.embeddings import EmbeddingProxy
from app.services.attempt import Attempt, fail, finish
from app.services.credentials import CredentialResolver

logger = logging.getLogger("opsai.ingestion")

ENDPOINT = "/v1/ai/embeddings"
MAX_SOURCES_PER_REQUEST = 25


def _validate_sources(sources: list[EmbedSource]) -> list[EmbedSource]:
    if not sources:
        raise ValidationError("sources must not be empty")
    if len(sources) > MAX_SOURCES_PER_REQUEST:
        raise ValidationError(
            f"sources length cannot exceed {MAX_SOURCES_PER_REQUEST} per request",
            code="too_many_sources",
        )
    cleaned: list[EmbedSource] = []
    for index, source in enumerate(sources):
        table = source.source_table.strip()
        source_id = source.source_id.strip()
        if not table or not source_id:
            raise ValidationError(f"sources[{index}] requires sourceTable and sourceId")
        cleaned.append(source.model_copy(update={"source_table": table, "source_id": source_id}))
    return cleaned


class IngestionService:
    def __init__(
        self,
        settings: Settings,
        identity: IdentityProvider,
        access: AccessResolver,
        gate: FeatureGate,
        credentials: CredentialResolver,
        budget: BudgetLedger,
        chunk_store: ChunkUpsertStore,
        provider_factory: AIProviderFactory,
        usage_logger: UsageLogger,
    ):
        self._settings = settings
        self._identity = identity
        self._access = access
        self._gate = gate
        self._credentials = credentials
        self._budget = budget
        self._chunk_store = chunk_store
        self._provider_factory = provider_factory
        self._usage_logger = usage_logger

    async def handle_embeddings(self, request: Request) -> EmbeddingResponse:
        attempt = Attempt(
            request_id=request.state.request_id,
            provider_key=self._settings.provider_key,
            model=self._settings.default_embedding_model,
            feature_key=EMBEDDING_FEATURE_KEY,
        )
        try:
            return await self._run(request, attempt)
        except AppError as exc:
            await fail(self._usage_logger, attempt, ENDPOINT, exc)
            raise
        except Exception as exc:
            logger.exception(
                "embedding_ingestion_failed",
                extra={"request_id": attempt.request_id, "company_id": attempt.company_id},
            )
            internal = InternalError(code="embedding_ingestion_failed")
            attempt.metadata = {
                **attempt.metadata,
                "message": f"{type(exc).__name__}: {exc}",
            }
            await fail(self._usage_logger, attempt, ENDPOINT, internal)
            raise internal from exc

    async def _run(self, request: Request, attempt: Attempt) -> EmbeddingResponse:
        identity = await self._identity.authenticate(request.headers.get("authorization"))
        attempt.user_id = identity.user_id

        payload = await read_body(request, EmbeddingRequest)
        attempt.company_id = payload.company_id
        sources = _validate_sources(payload.sources)

        company = await self._access.authorize_company(identity.user_id, payload.company_id)
        ai_settings = await self._gate.require(company.id)
        integration = await self._credentials.require_integration(company)
        attempt.model = resolve_model(
            payload.embedding_model,
            integration.config_json,
            self._settings.default_embedding_model,
            config_key="embedding_model",
        )

        chunk_size, overlap = clamp_chunk_params(
            payload.chunk_size_chars, payload.chunk_overlap_chars
        )
        planned = [
            SourceChunks(
                source_table=source.source_table,
                source_id=source.source_id,
                source_version=source.source_version,
                chunks=chunk_text(source.content, chunk_size, overlap),
                metadata=source.metadata,
                replace_existing=source.replace_existing,
            )
            for source in sources
        ]
        if not any(source.chunks for source in planned):
            raise ValidationError("No non-empty content to embed", code="no_content")

        estimated_tokens = sum(
            estimate_tokens(chunk) for source in planned for chunk in source.chunks
        )
        try:
            budget = await self._budget.admit(company.id, ai_settings, estimated_tokens)
        except BudgetExceededError as exc:
            attempt.set_tokens(estimated_tokens, None, estimated_tokens)
            attempt.metadata = exc.ledger_metadata()
            raise

        credential = await self._credentials.resolve_key(company, integration)
        proxy = EmbeddingProxy(self._provider_factory(credential.api_key), attempt.model)
        reported_tokens = 0
        embedded_chunks = 0
        completed: list[str] = []
        for source in planned:
            attempt.metadata = {"completed_sources": list(completed)}
            vectors: list[list[float]] = []
            if source.chunks:
                try:
                    result = await proxy.embed_texts(source.chunks)
                except ProviderError as exc:
                    raise self._upstream_failure(attempt, source, completed, exc) from exc
                vectors = result.vectors
                reported_tokens += result.prompt_tokens or 0
            embedded_chunks += await self._chunk_store.write_source(
                company.id, source, vectors, attempt.model
            )
            completed.append(f"{source.source_table}:{source.source_id}")

        total_tokens = reported_tokens if reported_tokens > 0 else estimated_tokens
        attempt.set_tokens(total_tokens, None, total_tokens)
        attempt.metadata = {
            "source_count": len(sources),
            "embedded_chunk_count": embedded_chunks,
            "chunk_size_chars": chunk_size,
            "chunk_overlap_chars": overlap,
            "budget": budget.as_dict(),
        }
        await finish(self._usage_logger, attempt, ENDPOINT, "success", 200)
        logger.info(
            "embedding_ingestion_completed",
            extra={
                "request_id": attempt.request_id,
                "company_id": attempt.company_id,
                "model": attempt.model,
                "total_tokens": total_tokens,
                "latency_ms": attempt.latency_ms,
            },
        )
        return EmbeddingResponse(
            request_id=attempt.request_id,
            model=attempt.model,
            source_count=len(sources),
            embedded_chunk_count=embedded_chunks,
            usage=EmbeddingUsage(prompt_tokens=total_tokens, total_tokens=total_tokens),
        )

    def _upstream_failure(
        self,
        attempt: Attempt,
        source: SourceChunks,
        completed: list[str],
        exc: ProviderError,
    ) -> UpstreamError:
        attempt.metadata = {
            "completed_sources": list(completed),
            "failed_source": f"{source.source_table}:{source.source_id}",
            "response_status": exc.status_code,
            "response_body": exc.payload,
        }
        logger.warning(
            "embedding_upstream_failed",
            extra={
                "request_id": attempt.request_id,
                "company_id": attempt.company_id,
                "model": attempt.model,
                "upstream_status": exc.status_code,
                "error_code": exc.code,
            },
        )
        return UpstreamError(
            exc.message,
            code=exc.code,
            upstream_status=exc.status_code,
            payload=exc.payload,
        )
