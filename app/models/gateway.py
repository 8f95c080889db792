from datetime import datetime
from typing import Any, Literal, TypeVar

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.core.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False
    )


class CompletionRequest(CamelModel):
    company_id: str = Field(min_length=1)
    task_type: str = Field(min_length=1)
    user_prompt: str
    context: dict[str, Any] | None = None
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    check_only: bool = False


class CompletionUsage(CamelModel):
    prompt_tokens: int
    completion_tokens: int | None
    total_tokens: int


class CompletionResponse(CamelModel):
    request_id: str
    model: str
    output_text: str
    output_json: dict[str, Any]
    usage: CompletionUsage


class Readiness(CamelModel):
    available: bool
    reason: str | None = None


class ReadinessResponse(CamelModel):
    request_id: str
    model: str
    readiness: Readiness


class EmbedSource(CamelModel):
    source_table: str
    source_id: str
    source_version: str | None = None
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    replace_existing: bool = True


class EmbeddingRequest(CamelModel):
    company_id: str = Field(min_length=1)
    sources: list[EmbedSource]
    embedding_model: str | None = None
    chunk_size_chars: float | None = None
    chunk_overlap_chars: float | None = None


class EmbeddingUsage(CamelModel):
    prompt_tokens: int
    total_tokens: int


class EmbeddingResponse(CamelModel):
    request_id: str
    model: str
    source_count: int
    embedded_chunk_count: int
    usage: EmbeddingUsage


class SecretRequest(CamelModel):
    action: Literal["set", "check", "delete"]
    scope: Literal["company", "site"]
    scope_id: str = Field(min_length=1)
    provider_key: str = Field(min_length=1)
    secrets: dict[str, str] | None = None


class SecretMutationResponse(CamelModel):
    success: bool


class SecretStatusResponse(CamelModel):
    configured: bool
    secret_keys: list[str]
    last_updated: datetime | None


def parse_body(model_cls: type[ModelT], raw: Any) -> ModelT:
    """Validate a decoded JSON body, raising the API's 400 error on failure."""
    if not isinstance(raw, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model_cls.model_validate(raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first['msg']}" if location else first["msg"]
        raise ValidationError(message) from exc


async def read_body(request: Request, model_cls: type[ModelT]) -> ModelT:
    try:
        raw = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON") from exc
    return parse_body(model_cls, raw)
