"""
Override store service.

Per (tenant, flow, section) customizations layered over the assigned
template, with a single-step undo for 'modify' overrides.

History policy:
- Only an override whose current action is 'modify' is snapshotted before
  it is replaced.
- Revert consumes the most recent snapshot (LIFO) and snapshots the state
  it replaces first, so a second revert restores what the first one
  overwrote.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from app.core.cache import PromptCache, config_cache_key, prompt_cache_key
from app.core.config import OVERRIDE_HISTORY_DEFAULT_LIMIT
from app.domain.prompt.content import ModuleSection, OverrideContent, PlainText
from app.domain.prompt.errors import (
    NotFoundError,
    PromptStoreError,
    TransactionError,
    ValidationError,
)
from app.domain.repositories.prompt_repository import (
    OverrideHistoryRecord,
    OverrideRecord,
    PromptRepository,
)
from app.domain.services.prompt_composer_pure import ACTION_MODIFY, VALID_ACTIONS

logger = logging.getLogger(__name__)


@dataclass
class RevertResult:
    """Restored override text plus where it came from."""
    override: OverrideRecord
    content: str
    is_module_section: bool
    restored_from_history_id: int
    restored_saved_at: datetime
    restored_saved_by: Optional[str]


async def save_override_with_history(
    repo: PromptRepository, record: OverrideRecord
) -> OverrideRecord:
    """
    Upsert an override, snapshotting the existing one if it is a 'modify'.

    Does NOT commit. Shared with section insertion so propagated overrides
    follow the same history rule.
    """
    existing = await repo.get_override(record.tenant_id, record.flow_key, record.section_key)
    if existing is not None and existing.action == ACTION_MODIFY:
        await repo.insert_override_history(
            OverrideHistoryRecord(
                override_id=existing.id,
                tenant_id=existing.tenant_id,
                flow_key=existing.flow_key,
                section_key=existing.section_key,
                action=existing.action,
                content=existing.content,
                saved_by=existing.modified_by,
            )
        )
    return await repo.save_override(record)


class OverrideService:
    """
    Tenant override store.

    Transaction boundaries:
    - upsert_override: history snapshot (if modify) + upsert, one commit
    - delete_override: commits after delete
    - revert_override: snapshot + restore + consume history, one commit
    """

    def __init__(self, repo: PromptRepository, cache: PromptCache):
        self.repo = repo
        self.cache = cache

    async def list_overrides(self, tenant_id: str, flow_key: str) -> List[OverrideRecord]:
        return await self.repo.list_overrides(tenant_id, flow_key)

    async def get_override(self, tenant_id: str, flow_key: str, section_key: int) -> OverrideRecord:
        override = await self.repo.get_override(tenant_id, flow_key, section_key)
        if override is None:
            raise NotFoundError("Override", f"{tenant_id}/{flow_key}/{section_key}")
        return override

    async def upsert_override(
        self,
        tenant_id: str,
        flow_key: str,
        section_key: int,
        action: str,
        content: Optional[OverrideContent] = None,
        modified_by: Optional[str] = None,
    ) -> OverrideRecord:
        """Create or replace the override for a section."""
        self._validate_target(tenant_id, flow_key, section_key)
        if action not in VALID_ACTIONS:
            raise ValidationError(
                f"Invalid action '{action}'. Must be one of: {sorted(VALID_ACTIONS)}"
            )
        if content is None:
            content = PlainText("")
        elif not isinstance(content, (PlainText, ModuleSection)):
            raise ValidationError("content must be PlainText or ModuleSection")

        try:
            saved = await save_override_with_history(
                self.repo,
                OverrideRecord(
                    tenant_id=tenant_id,
                    flow_key=flow_key,
                    section_key=section_key,
                    action=action,
                    content=content,
                    modified_by=modified_by,
                ),
            )
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to save override {tenant_id}/{flow_key}/{section_key}: {e}")
            raise TransactionError(f"Failed to save override: {e}") from e

        logger.info(
            f"[OVERRIDE] Saved {action} override for {tenant_id}/{flow_key} "
            f"section {section_key}"
        )
        self._invalidate(tenant_id, flow_key)
        return saved

    async def delete_override(self, override_id: int) -> None:
        try:
            existing = await self.repo.get_override_by_id(override_id)
            if existing is None:
                raise NotFoundError("Override", override_id)
            await self.repo.delete_override(override_id)
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to delete override {override_id}: {e}")
            raise TransactionError(f"Failed to delete override {override_id}: {e}") from e

        logger.info(
            f"[OVERRIDE] Deleted override {override_id} for "
            f"{existing.tenant_id}/{existing.flow_key} section {existing.section_key}"
        )
        self._invalidate(existing.tenant_id, existing.flow_key)

    async def get_override_history(
        self,
        tenant_id: str,
        flow_key: str,
        section_key: int,
        limit: int = OVERRIDE_HISTORY_DEFAULT_LIMIT,
    ) -> List[OverrideHistoryRecord]:
        """Snapshots for a section, newest first."""
        self._validate_target(tenant_id, flow_key, section_key)
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        return await self.repo.list_override_history(tenant_id, flow_key, section_key, limit)

    async def revert_override(
        self,
        tenant_id: str,
        flow_key: str,
        section_key: int,
        reverted_by: Optional[str] = None,
    ) -> RevertResult:
        """
        Restore the most recent snapshot of a 'modify' override.

        Raises:
            NotFoundError: No override, or no history to revert to
            ValidationError: The override is not a 'modify'
        """
        self._validate_target(tenant_id, flow_key, section_key)

        try:
            current = await self.repo.get_override(tenant_id, flow_key, section_key)
            if current is None:
                raise NotFoundError("Override", f"{tenant_id}/{flow_key}/{section_key}")
            if current.action != ACTION_MODIFY:
                raise ValidationError(
                    f"Only 'modify' overrides can be reverted (current action: '{current.action}')"
                )

            history = await self.repo.list_override_history(tenant_id, flow_key, section_key, 1)
            if not history:
                raise NotFoundError(
                    "OverrideHistory",
                    f"{tenant_id}/{flow_key}/{section_key}",
                    message="No history available to revert to",
                )
            snapshot = history[0]

            await self.repo.insert_override_history(
                OverrideHistoryRecord(
                    override_id=current.id,
                    tenant_id=tenant_id,
                    flow_key=flow_key,
                    section_key=section_key,
                    action=current.action,
                    content=current.content,
                    saved_by=reverted_by,
                )
            )
            restored = await self.repo.save_override(
                OverrideRecord(
                    tenant_id=tenant_id,
                    flow_key=flow_key,
                    section_key=section_key,
                    action=current.action,
                    content=snapshot.content,
                    modified_by=snapshot.saved_by,
                )
            )
            await self.repo.delete_override_history(snapshot.id)
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to revert override {tenant_id}/{flow_key}/{section_key}: {e}")
            raise TransactionError(f"Failed to revert override: {e}") from e

        logger.info(
            f"[OVERRIDE] Reverted {tenant_id}/{flow_key} section {section_key} "
            f"to snapshot {snapshot.id}"
        )
        self._invalidate(tenant_id, flow_key)
        return RevertResult(
            override=restored,
            content=restored.content.raw_text,
            is_module_section=isinstance(restored.content, ModuleSection),
            restored_from_history_id=snapshot.id,
            restored_saved_at=snapshot.saved_at,
            restored_saved_by=snapshot.saved_by,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _validate_target(tenant_id: str, flow_key: str, section_key: int) -> None:
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        if not flow_key:
            raise ValidationError("flow_key is required")
        if not isinstance(section_key, int) or isinstance(section_key, bool):
            raise ValidationError("section_key must be an integer")

    def _invalidate(self, tenant_id: str, flow_key: str) -> None:
        self.cache.delete(prompt_cache_key(tenant_id, flow_key))
        self.cache.delete(config_cache_key(tenant_id))
