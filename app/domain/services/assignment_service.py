"""
Assignment store service.

Maps (tenant, flow) to one template. Plain upsert/lookup, no versioning.
"""

import logging
from typing import List

from app.core.cache import PromptCache, config_cache_key, prompt_cache_key
from app.domain.prompt.errors import (
    NotFoundError,
    PromptStoreError,
    TransactionError,
    ValidationError,
)
from app.domain.repositories.prompt_repository import AssignmentRecord, PromptRepository

logger = logging.getLogger(__name__)


class AssignmentService:
    """Flow template assignments. Commits after each write."""

    def __init__(self, repo: PromptRepository, cache: PromptCache):
        self.repo = repo
        self.cache = cache

    async def get_assignment(self, tenant_id: str, flow_key: str) -> AssignmentRecord:
        self._validate_target(tenant_id, flow_key)
        assignment = await self.repo.get_assignment(tenant_id, flow_key)
        if assignment is None:
            raise NotFoundError("Assignment", f"{tenant_id}/{flow_key}")
        return assignment

    async def list_assignments(self, tenant_id: str) -> List[AssignmentRecord]:
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        return await self.repo.list_assignments(tenant_id)

    async def list_assignments_for_template(self, template_id: int) -> List[AssignmentRecord]:
        return await self.repo.list_assignments_for_template(template_id)

    async def upsert_assignment(
        self, tenant_id: str, flow_key: str, template_id: int
    ) -> AssignmentRecord:
        """Point (tenant, flow) at a template, replacing any previous binding."""
        self._validate_target(tenant_id, flow_key)
        if not isinstance(template_id, int) or isinstance(template_id, bool):
            raise ValidationError("template_id must be an integer")

        try:
            if await self.repo.get_template(template_id) is None:
                raise NotFoundError("Template", template_id)
            assignment = await self.repo.upsert_assignment(tenant_id, flow_key, template_id)
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to assign template {template_id} to {tenant_id}/{flow_key}: {e}")
            raise TransactionError(f"Failed to save assignment: {e}") from e

        logger.info(f"[ASSIGNMENT] {tenant_id}/{flow_key} -> template {template_id}")
        self._invalidate(tenant_id, flow_key)
        return assignment

    async def delete_assignment(self, tenant_id: str, flow_key: str) -> None:
        self._validate_target(tenant_id, flow_key)

        try:
            deleted = await self.repo.delete_assignment(tenant_id, flow_key)
            if not deleted:
                raise NotFoundError("Assignment", f"{tenant_id}/{flow_key}")
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to delete assignment {tenant_id}/{flow_key}: {e}")
            raise TransactionError(f"Failed to delete assignment: {e}") from e

        logger.info(f"[ASSIGNMENT] Removed {tenant_id}/{flow_key}")
        self._invalidate(tenant_id, flow_key)

    @staticmethod
    def _validate_target(tenant_id: str, flow_key: str) -> None:
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        if not flow_key:
            raise ValidationError("flow_key is required")

    def _invalidate(self, tenant_id: str, flow_key: str) -> None:
        self.cache.delete(prompt_cache_key(tenant_id, flow_key))
        self.cache.delete(config_cache_key(tenant_id))
