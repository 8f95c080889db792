from fastapi import APIRouter, Request

from app.crypto.envelope import SecretConfigurationError
from app.models.gateway import (
    CompletionResponse,
    EmbeddingResponse,
    ReadinessResponse,
    SecretMutationResponse,
    SecretStatusResponse,
)
from app.services.completion_service import CompletionService
from app.services.ingestion_service import IngestionService
from app.services.secret_service import SecretService

router = APIRouter()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request) -> dict[str, object]:
    settings = request.app.state.settings
    dependencies: dict[str, str] = {}

    schema_path = settings.contracts_dir / "usage-log-entry.schema.json"
    dependencies["usage_log_contract"] = "ok" if schema_path.exists() else "missing"

    try:
        request.app.state.codec.ensure_configured()
        dependencies["secret_master_key"] = "ok"
    except SecretConfigurationError:
        dependencies["secret_master_key"] = "missing"

    try:
        dependencies["store"] = request.app.state.store.ping().get("status", "degraded")
    except Exception:
        dependencies["store"] = "unreachable"

    status = "ready" if all(value == "ok" for value in dependencies.values()) else "degraded"
    return {"status": status, "dependencies": dependencies}


@router.post(
    "/v1/ai/completions",
    response_model=CompletionResponse | ReadinessResponse,
)
async def completions(request: Request) -> CompletionResponse | ReadinessResponse:
    service: CompletionService = request.app.state.completion_service
    return await service.handle_completion(request)


@router.post("/v1/ai/embeddings", response_model=EmbeddingResponse)
async def embeddings(request: Request) -> EmbeddingResponse:
    service: IngestionService = request.app.state.ingestion_service
    return await service.handle_embeddings(request)


@router.post(
    "/v1/integrations/secrets",
    response_model=SecretMutationResponse | SecretStatusResponse,
)
async def integration_secrets(
    request: Request,
) -> SecretMutationResponse | SecretStatusResponse:
    service: SecretService = request.app.state.secret_service
    return await service.handle_secret(request)
