import asyncio
from enum import Enum

from app.core.errors import FeatureDisabledError
from app.store.base import DataStore
from app.store.types import CompanyAiSettings


class TaskType(str, Enum):
    WORKFLOW_COPILOT = "workflow_copilot"
    TEMPLATE_COPILOT = "template_copilot"
    INSIGHT_SUMMARY = "insight_summary"


EMBEDDING_FEATURE_KEY = "embedding_ingestion"


def capability_enabled(task_type: TaskType, settings: CompanyAiSettings) -> bool:
    if not settings.ai_enabled:
        return False
    if task_type is TaskType.WORKFLOW_COPILOT:
        return settings.workflow_copilot_enabled
    if task_type is TaskType.TEMPLATE_COPILOT:
        return settings.template_copilot_enabled
    if task_type is TaskType.INSIGHT_SUMMARY:
        return settings.insights_enabled
    return False


class FeatureGate:
    def __init__(self, store: DataStore):
        self._store = store

    async def load(self, company_id: str) -> CompanyAiSettings | None:
        return await asyncio.to_thread(self._store.get_ai_settings, company_id)

    async def require(
        self, company_id: str, task_type: TaskType | None = None
    ) -> CompanyAiSettings:
        """Return the settings row, or raise when AI (or the capability) is off.

        ``task_type=None`` checks only the company-wide switch.
        """
        settings = await self.load(company_id)
        if settings is None or not settings.ai_enabled:
            raise FeatureDisabledError()
        if task_type is not None and not capability_enabled(task_type, settings):
            raise FeatureDisabledError()
        return settings
