import asyncio
import logging

from app.core.errors import AuthorizationError, NotFoundError
from app.store.base import DataStore
from app.store.types import SITE_ADMIN_ROLES, Company, Scope

logger = logging.getLogger("opsai.access")

COMPANY_ADMIN_ROLE = "company_admin"


class AccessResolver:
    def __init__(self, store: DataStore):
        self._store = store

    async def authorize_company(self, user_id: str, company_id: str) -> Company:
        """Allow active company members and admins of the company's parent site."""
        try:
            company = await asyncio.to_thread(self._store.get_company, company_id)
        except Exception as exc:
            logger.warning(
                "company_lookup_failed",
                extra={"company_id": company_id, "user_id": user_id, "error": str(exc)},
            )
            raise AuthorizationError() from exc
        if company is None:
            raise NotFoundError("Company not found", code="company_not_found")

        try:
            membership, site_membership = await asyncio.gather(
                asyncio.to_thread(self._store.get_active_membership, user_id, company_id),
                asyncio.to_thread(
                    self._store.get_site_admin_membership, user_id, company.site_id
                ),
            )
        except Exception as exc:
            logger.warning(
                "membership_lookup_failed",
                extra={"company_id": company_id, "user_id": user_id, "error": str(exc)},
            )
            raise AuthorizationError() from exc

        if membership is None and site_membership is None:
            raise AuthorizationError()
        return company

    async def authorize_secret_management(
        self, user_id: str, scope: Scope, scope_id: str
    ) -> None:
        """Company secrets: company admins or any site admin. Site secrets: site admins."""
        site_memberships = await asyncio.to_thread(self._store.list_site_memberships, user_id)
        if any(item.role in SITE_ADMIN_ROLES for item in site_memberships):
            return

        if scope == "company":
            membership = await asyncio.to_thread(
                self._store.get_active_membership, user_id, scope_id
            )
            if membership is not None and membership.role == COMPANY_ADMIN_ROLE:
                return
        raise AuthorizationError()
