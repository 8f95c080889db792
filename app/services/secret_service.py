import asyncio
import logging
from datetime import UTC, datetime

from fastapi import Request

from app.auth.access import AccessResolver
from app.auth.identity import IdentityProvider
from app.core.errors import InternalError, ValidationError
from app.crypto.envelope import EnvelopeCodec, SecretConfigurationError
from app.models.gateway import (
    SecretMutationResponse,
    SecretRequest,
    SecretStatusResponse,
    read_body,
)
from app.store.base import DataStore
from app.store.types import EncryptedSecret

logger = logging.getLogger("opsai.secrets")


class SecretService:
    """Write-only vault for provider credentials.

    ``set`` encrypts and stamps the integration's ``secret_ref``; ``check``
    reports key names and freshness only; ``delete`` removes every key for
    the integration and clears the stamp.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        access: AccessResolver,
        codec: EnvelopeCodec,
        store: DataStore,
    ):
        self._identity = identity
        self._access = access
        self._codec = codec
        self._store = store

    async def handle_secret(
        self, request: Request
    ) -> SecretMutationResponse | SecretStatusResponse:
        identity = await self._identity.authenticate(request.headers.get("authorization"))
        payload = await read_body(request, SecretRequest)
        await self._access.authorize_secret_management(
            identity.user_id, payload.scope, payload.scope_id
        )

        log_extra = {
            "request_id": request.state.request_id,
            "user_id": identity.user_id,
            "status": payload.action,
        }
        if payload.action == "set":
            await self._set(payload)
            logger.info("secret_set", extra=log_extra)
            return SecretMutationResponse(success=True)
        if payload.action == "delete":
            await self._delete(payload)
            logger.info("secret_deleted", extra=log_extra)
            return SecretMutationResponse(success=True)
        return await self._check(payload)

    async def _set(self, payload: SecretRequest) -> None:
        if not payload.secrets:
            raise ValidationError("secrets are required for set")

        now = datetime.now(UTC)
        try:
            rows = [
                EncryptedSecret(
                    scope=payload.scope,
                    scope_id=payload.scope_id,
                    provider_key=payload.provider_key,
                    secret_key=secret_key,
                    encrypted_value=self._codec.encrypt(value),
                    updated_at=now,
                )
                for secret_key, value in payload.secrets.items()
            ]
        except SecretConfigurationError as exc:
            raise InternalError(
                "Secret vault is not configured", code="secret_vault_unconfigured"
            ) from exc

        for row in rows:
            await asyncio.to_thread(self._store.upsert_secret, row)
        await asyncio.to_thread(
            self._store.stamp_integration_secret,
            payload.scope,
            payload.scope_id,
            payload.provider_key,
            now,
        )

    async def _check(self, payload: SecretRequest) -> SecretStatusResponse:
        secrets = await asyncio.to_thread(
            self._store.list_secrets, payload.scope, payload.scope_id, payload.provider_key
        )
        return SecretStatusResponse(
            configured=bool(secrets),
            secret_keys=[secret.secret_key for secret in secrets],
            last_updated=max((secret.updated_at for secret in secrets), default=None),
        )

    async def _delete(self, payload: SecretRequest) -> None:
        await asyncio.to_thread(
            self._store.delete_secrets, payload.scope, payload.scope_id, payload.provider_key
        )
        await asyncio.to_thread(
            self._store.clear_integration_secret,
            payload.scope,
            payload.scope_id,
            payload.provider_key,
        )
