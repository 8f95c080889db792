import asyncio
import logging

from fastapi import Request

from app.audit.usage_logger import UsageLogger
from app.auth.access import AccessResolver
from app.auth.identity import IdentityProvider
from app.budget.ledger import BudgetLedger
from app.config.settings import Settings
from app.core.errors import (
    AppError,
    BudgetExceededError,
    FeatureDisabledError,
    IntegrationError,
    InternalError,
    UpstreamError,
    ValidationError,
)
from app.features.gate import FeatureGate, TaskType
from app.models.gateway import (
    CompletionRequest,
    CompletionResponse,
    CompletionUsage,
    Readiness,
    ReadinessResponse,
    read_body,
)
from app.prompts.assembler import CompletionPlan, build_plan, resolve_model, truncate_text
from app.prompts.cache import PromptCache
from app.prompts.output_schemas import OutputValidationError, validate_output
from app.providers.base import AIProviderFactory, ProviderError, UsageReport, parse_response_text
from app.services.attempt import Attempt, fail, finish
from app.services.credentials import CredentialResolver
from app.store.types import Company

logger = logging.getLogger("opsai.completions")

ENDPOINT = "/v1/ai/completions"
OUTPUT_PREVIEW_CHARS = 1200


class CompletionService:
    def __init__(
        self,
        settings: Settings,
        identity: IdentityProvider,
        access: AccessResolver,
        gate: FeatureGate,
        credentials: CredentialResolver,
        budget: BudgetLedger,
        prompts: PromptCache,
        provider_factory: AIProviderFactory,
        usage_logger: UsageLogger,
    ):
        self._settings = settings
        self._identity = identity
        self._access = access
        self._gate = gate
        self._credentials = credentials
        self._budget = budget
        self._prompts = prompts
        self._provider_factory = provider_factory
        self._usage_logger = usage_logger

    async def handle_completion(
        self, request: Request
    ) -> CompletionResponse | ReadinessResponse:
        attempt = Attempt(
            request_id=request.state.request_id,
            provider_key=self._settings.provider_key,
            model=self._settings.default_completion_model,
        )
        try:
            response = await self._run(request, attempt)
        except AppError as exc:
            await fail(self._usage_logger, attempt, ENDPOINT, exc)
            raise
        except Exception as exc:
            logger.exception(
                "completion_failed",
                extra={"request_id": attempt.request_id, "company_id": attempt.company_id},
            )
            internal = InternalError()
            attempt.metadata = {"message": f"{type(exc).__name__}: {exc}"}
            await fail(self._usage_logger, attempt, ENDPOINT, internal)
            raise internal from exc
        return response

    async def _run(
        self, request: Request, attempt: Attempt
    ) -> CompletionResponse | ReadinessResponse:
        identity = await self._identity.authenticate(request.headers.get("authorization"))
        attempt.user_id = identity.user_id

        payload = await read_body(request, CompletionRequest)
        attempt.company_id = payload.company_id
        task_type = _parse_task_type(payload.task_type)
        attempt.feature_key = task_type.value
        if not payload.user_prompt.strip():
            raise ValidationError("userPrompt is required")

        company = await self._access.authorize_company(identity.user_id, payload.company_id)

        if payload.check_only:
            return await self._readiness(attempt, company, task_type, payload.model)

        ai_settings = await self._gate.require(company.id, task_type)
        integration = await self._credentials.require_integration(company)
        attempt.model = resolve_model(
            payload.model, integration.config_json, self._settings.default_completion_model
        )

        system_prompt = await asyncio.to_thread(self._prompts.get, task_type.value)
        plan = build_plan(
            system_prompt=system_prompt,
            user_prompt=payload.user_prompt,
            context=payload.context,
            settings=ai_settings,
            model=attempt.model,
            temperature=payload.temperature,
            requested_output_tokens=payload.max_output_tokens,
        )

        try:
            budget = await self._budget.admit(
                company.id, ai_settings, plan.projected_total_tokens
            )
        except BudgetExceededError as exc:
            attempt.set_tokens(
                plan.estimated_input_tokens,
                plan.max_output_tokens,
                plan.projected_total_tokens,
            )
            attempt.metadata = exc.ledger_metadata()
            raise

        credential = await self._credentials.resolve_key(company, integration)
        provider = self._provider_factory(credential.api_key)
        try:
            upstream = await provider.create_response(plan.request_body())
        except ProviderError as exc:
            raise self._upstream_failure(attempt, plan, exc) from exc

        attempt.set_tokens(*UsageReport.from_payload(upstream).resolve(plan.estimated_input_tokens))
        output_text = parse_response_text(upstream).text
        try:
            validated = validate_output(task_type.value, output_text)
        except OutputValidationError as exc:
            attempt.metadata = {
                "validation_error": str(exc),
                "output_preview": truncate_text(output_text, OUTPUT_PREVIEW_CHARS),
            }
            raise UpstreamError(
                "Model output failed schema validation",
                code="invalid_output_schema",
                payload=str(exc),
            ) from exc

        attempt.metadata = {
            "temperature": plan.temperature,
            "max_output_tokens": plan.max_output_tokens,
            "secret_scope": credential.scope,
            "budget": budget.as_dict(),
        }
        await finish(self._usage_logger, attempt, ENDPOINT, "success", 200)
        logger.info(
            "completion_completed",
            extra={
                "request_id": attempt.request_id,
                "company_id": attempt.company_id,
                "feature_key": attempt.feature_key,
                "model": attempt.model,
                "prompt_tokens": attempt.prompt_tokens,
                "completion_tokens": attempt.completion_tokens,
                "total_tokens": attempt.total_tokens,
                "latency_ms": attempt.latency_ms,
            },
        )
        return CompletionResponse(
            request_id=attempt.request_id,
            model=attempt.model,
            output_text=output_text,
            output_json=validated.data,
            usage=CompletionUsage(
                prompt_tokens=attempt.prompt_tokens or 0,
                completion_tokens=attempt.completion_tokens,
                total_tokens=attempt.total_tokens or 0,
            ),
        )

    async def _readiness(
        self,
        attempt: Attempt,
        company: Company,
        task_type: TaskType,
        requested_model: str | None,
    ) -> ReadinessResponse:
        """Run every pre-flight gate without budgeting or calling upstream."""
        attempt.set_tokens(0, 0, 0)
        attempt.metadata = {"check_only": True}
        try:
            await self._gate.require(company.id, task_type)
            credential = await self._credentials.resolve(company)
        except (FeatureDisabledError, IntegrationError) as exc:
            attempt.metadata["reason"] = exc.code
            await finish(self._usage_logger, attempt, ENDPOINT, "blocked", 200, exc.code)
            return ReadinessResponse(
                request_id=attempt.request_id,
                model=attempt.model,
                readiness=Readiness(available=False, reason=exc.code),
            )

        attempt.model = resolve_model(
            requested_model,
            credential.integration.config_json,
            self._settings.default_completion_model,
        )
        await finish(self._usage_logger, attempt, ENDPOINT, "success", 200)
        return ReadinessResponse(
            request_id=attempt.request_id,
            model=attempt.model,
            readiness=Readiness(available=True),
        )

    def _upstream_failure(
        self, attempt: Attempt, plan: CompletionPlan, exc: ProviderError
    ) -> UpstreamError:
        body = exc.payload if isinstance(exc.payload, dict) else {}
        attempt.set_tokens(*UsageReport.from_payload(body).resolve(plan.estimated_input_tokens))
        attempt.metadata = {
            "response_status": exc.status_code,
            "response_body": exc.payload,
        }
        logger.warning(
            "upstream_failed",
            extra={
                "request_id": attempt.request_id,
                "company_id": attempt.company_id,
                "model": attempt.model,
                "upstream_status": exc.status_code,
                "error_code": exc.code,
            },
        )
        return UpstreamError(
            "Upstream completion request failed",
            code=exc.code,
            upstream_status=exc.status_code,
            payload=exc.payload,
        )


def _parse_task_type(value: str) -> TaskType:
    try:
        return TaskType(value)
    except ValueError as exc:
        raise ValidationError(
            f"Unsupported task type: {value}", code="unsupported_task_type"
        ) from exc
