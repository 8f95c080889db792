from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.routes import router
from app.audit.usage_logger import UsageLogger
from app.auth.access import AccessResolver
from app.auth.identity import HTTPIdentityProvider, IdentityProvider, StaticTokenIdentityProvider
from app.budget.ledger import BudgetLedger
from app.config.settings import Settings, get_settings
from app.core.errors import (
    AppError,
    UpstreamError,
    app_error_response,
    request_id_from_request,
)
from app.core.logging import configure_logging
from app.crypto.envelope import EnvelopeCodec
from app.features.gate import FeatureGate
from app.metrics import metrics_router
from app.middleware.request_id import RequestIDMiddleware
from app.prompts.cache import PromptCache, file_loader
from app.providers.base import AIProviderFactory
from app.providers.openai_http import OpenAIProviderFactory
from app.rag.chunk_store import ChunkUpsertStore
from app.services.completion_service import CompletionService
from app.services.credentials import CredentialResolver
from app.services.ingestion_service import IngestionService
from app.services.secret_service import SecretService
from app.store.base import DataStore
from app.store.memory import InMemoryDataStore
from app.store.postgres import PostgresDataStore


def _build_store(settings: Settings) -> DataStore:
    backend = settings.store_backend_normalized
    if backend == "memory":
        return InMemoryDataStore()
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise RuntimeError("OPSAI_POSTGRES_DSN is required when store_backend=postgres")
        return PostgresDataStore(
            dsn=settings.postgres_dsn,
            chunk_table=settings.chunk_table,
            usage_log_table=settings.usage_log_table,
        )
    raise RuntimeError(f"Unsupported OPSAI_STORE_BACKEND value: {backend}")


def _build_identity_provider(settings: Settings) -> IdentityProvider:
    backend = settings.identity_backend_normalized
    if backend == "static":
        return StaticTokenIdentityProvider(settings.identity_token_map)
    if backend == "http":
        if not settings.identity_url:
            raise RuntimeError("OPSAI_IDENTITY_URL is required when identity_backend=http")
        return HTTPIdentityProvider(
            url=settings.identity_url,
            api_key=settings.identity_api_key,
            timeout_s=settings.identity_timeout_s,
        )
    raise RuntimeError(f"Unsupported OPSAI_IDENTITY_BACKEND value: {backend}")


def create_app(
    settings: Settings | None = None,
    store: DataStore | None = None,
    provider_factory: AIProviderFactory | None = None,
    identity_provider: IdentityProvider | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="OpsAI Gateway", version="0.1.0")
    app.add_middleware(RequestIDMiddleware)

    store = store or _build_store(settings)
    identity = identity_provider or _build_identity_provider(settings)
    provider_factory = provider_factory or OpenAIProviderFactory(
        base_url=settings.openai_base_url,
        timeout_s=settings.upstream_timeout_s,
    )
    codec = EnvelopeCodec(settings.secret_master_key, settings.secret_min_master_key_length)
    access = AccessResolver(store)
    gate = FeatureGate(store)
    credentials = CredentialResolver(store, codec, settings.provider_key)
    budget = BudgetLedger(store)
    usage_logger = UsageLogger(store, settings.contracts_dir)

    app.state.settings = settings
    app.state.store = store
    app.state.codec = codec
    app.state.completion_service = CompletionService(
        settings=settings,
        identity=identity,
        access=access,
        gate=gate,
        credentials=credentials,
        budget=budget,
        prompts=PromptCache(file_loader(settings.prompt_templates_dir)),
        provider_factory=provider_factory,
        usage_logger=usage_logger,
    )
    app.state.ingestion_service = IngestionService(
        settings=settings,
        identity=identity,
        access=access,
        gate=gate,
        credentials=credentials,
        budget=budget,
        chunk_store=ChunkUpsertStore(store),
        provider_factory=provider_factory,
        usage_logger=usage_logger,
    )
    app.state.secret_service = SecretService(
        identity=identity,
        access=access,
        codec=codec,
        store=store,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        request_id = request_id_from_request(request)
        details = None
        if isinstance(exc, UpstreamError) and settings.expose_upstream_errors:
            details = exc.payload
        return app_error_response(
            exc.status_code, exc.code, exc.error_type, exc.message, request_id, details
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            400, "request_validation_failed", "validation", str(exc), request_id
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            500, "internal_error", "internal", "Internal server error", request_id
        )

    app.include_router(router)
    if settings.metrics_enabled:
        app.include_router(metrics_router)
    return app


app = create_app()
