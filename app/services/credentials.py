import asyncio
import logging
from dataclasses import dataclass

from app.core.errors import IntegrationError, InternalError
from app.crypto.envelope import EnvelopeCodec, SecretConfigurationError, SecretDecryptionError
from app.store.base import DataStore
from app.store.types import Company, Integration

logger = logging.getLogger("opsai.credentials")

API_KEY_SECRET = "api_key"


@dataclass(frozen=True)
class ProviderCredential:
    integration: Integration
    api_key: str
    scope: str


class CredentialResolver:
    """Finds a company's enabled integration and decrypts its API key.

    The company-scoped key wins; the parent site's key is the fallback.
    """

    def __init__(self, store: DataStore, codec: EnvelopeCodec, provider_key: str):
        self._store = store
        self._codec = codec
        self._provider_key = provider_key

    async def resolve(self, company: Company) -> ProviderCredential:
        integration = await self.require_integration(company)
        return await self.resolve_key(company, integration)

    async def require_integration(self, company: Company) -> Integration:
        integration = await asyncio.to_thread(
            self._store.get_integration, "company", company.id, self._provider_key
        )
        if integration is None or not integration.is_enabled:
            raise IntegrationError(
                f"{self._provider_key} integration is not enabled for this company",
                code="integration_disabled",
            )
        return integration

    async def resolve_key(self, company: Company, integration: Integration) -> ProviderCredential:
        scope = "company"
        secret = await asyncio.to_thread(
            self._store.get_secret, "company", company.id, self._provider_key, API_KEY_SECRET
        )
        if secret is None:
            scope = "site"
            secret = await asyncio.to_thread(
                self._store.get_secret, "site", company.site_id, self._provider_key, API_KEY_SECRET
            )
        if secret is None:
            raise IntegrationError(
                f"{self._provider_key} API key is not configured", code="secret_missing"
            )

        try:
            api_key = self._codec.decrypt(secret.encrypted_value)
        except SecretConfigurationError as exc:
            raise InternalError(
                "Secret vault is not configured", code="secret_vault_unconfigured"
            ) from exc
        except SecretDecryptionError as exc:
            logger.error(
                "secret_decryption_failed",
                extra={"company_id": company.id, "error": str(exc)},
            )
            raise InternalError(
                "Stored secret could not be decrypted", code="secret_decryption_failed"
            ) from exc
        return ProviderCredential(integration=integration, api_key=api_key, scope=scope)
