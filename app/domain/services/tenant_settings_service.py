"""
Tenant settings service.

Per-flow retrieval depth (top_k) and the tenant's conversation language.
Both are merged into the tenant configuration, so every write evicts
config:{tenant_id}. Composed prompts do not depend on them and stay cached.
"""

import logging
from typing import List

from app.core.cache import PromptCache, config_cache_key
from app.domain.prompt.errors import (
    NotFoundError,
    PromptStoreError,
    TransactionError,
    ValidationError,
)
from app.domain.repositories.prompt_repository import (
    LanguageSettingRecord,
    PromptRepository,
    TopKSettingRecord,
)

logger = logging.getLogger(__name__)


DEFAULT_LANGUAGE = "danish"

SUPPORTED_LANGUAGES = (
    "danish",
    "english",
    "swedish",
    "norwegian",
    "german",
    "dutch",
    "french",
    "italian",
    "finnish",
)


def parse_top_k(value: object) -> int:
    """Accept a positive integer, or a string holding one."""
    if isinstance(value, bool):
        raise ValidationError("top_k must be a positive integer")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise ValidationError("top_k must be a positive integer") from None
    if not isinstance(value, int) or value < 1:
        raise ValidationError("top_k must be a positive integer")
    return value


class TenantSettingsService:
    """Top-k and language settings. Commits after each write."""

    def __init__(self, repo: PromptRepository, cache: PromptCache):
        self.repo = repo
        self.cache = cache

    # =========================================================================
    # Top-k
    # =========================================================================

    async def list_topk_settings(self, tenant_id: str) -> List[TopKSettingRecord]:
        self._validate_tenant(tenant_id)
        return await self.repo.list_topk_settings(tenant_id)

    async def set_topk(self, tenant_id: str, flow_key: str, top_k: object) -> TopKSettingRecord:
        self._validate_tenant(tenant_id)
        if not flow_key:
            raise ValidationError("flow_key is required")
        value = parse_top_k(top_k)

        try:
            setting = await self.repo.upsert_topk_setting(tenant_id, flow_key, value)
            await self.repo.commit()
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to save top_k for {tenant_id}/{flow_key}: {e}")
            raise TransactionError(f"Failed to save top_k setting: {e}") from e

        logger.info(f"[SETTINGS] {tenant_id}/{flow_key} top_k={value}")
        self.cache.delete(config_cache_key(tenant_id))
        return setting

    async def delete_topk(self, tenant_id: str, flow_key: str) -> None:
        self._validate_tenant(tenant_id)
        if not flow_key:
            raise ValidationError("flow_key is required")

        try:
            if not await self.repo.delete_topk_setting(tenant_id, flow_key):
                raise NotFoundError("TopKSetting", f"{tenant_id}/{flow_key}")
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to delete top_k for {tenant_id}/{flow_key}: {e}")
            raise TransactionError(f"Failed to delete top_k setting: {e}") from e

        logger.info(f"[SETTINGS] Removed top_k for {tenant_id}/{flow_key}")
        self.cache.delete(config_cache_key(tenant_id))

    # =========================================================================
    # Language
    # =========================================================================

    async def get_language(self, tenant_id: str) -> LanguageSettingRecord:
        """The stored language; NotFoundError if the tenant never set one."""
        self._validate_tenant(tenant_id)
        setting = await self.repo.get_language_setting(tenant_id)
        if setting is None:
            raise NotFoundError(
                "LanguageSetting", tenant_id, f"No language setting found for {tenant_id}"
            )
        return setting

    async def set_language(self, tenant_id: str, language: str) -> LanguageSettingRecord:
        self._validate_tenant(tenant_id)
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError(
                f"language must be one of: {', '.join(SUPPORTED_LANGUAGES)}"
            )

        try:
            setting = await self.repo.upsert_language_setting(tenant_id, language)
            await self.repo.commit()
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to save language for {tenant_id}: {e}")
            raise TransactionError(f"Failed to save language setting: {e}") from e

        logger.info(f"[SETTINGS] {tenant_id} language={language}")
        self.cache.delete(config_cache_key(tenant_id))
        return setting

    @staticmethod
    def _validate_tenant(tenant_id: str) -> None:
        if not tenant_id:
            raise ValidationError("tenant_id is required")
