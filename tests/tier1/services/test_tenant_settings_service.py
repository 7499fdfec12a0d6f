"""
Tenant settings - Tier 1 Verification

Criteria:
1. top_k is a positive integer per (tenant, flow), upserted
2. Language is one of the supported languages, one per tenant
3. Every settings write evicts the tenant configuration, not the prompts
4. Store failures are rolled back
"""

import pytest

from app.core.cache import config_cache_key, prompt_cache_key
from app.domain.prompt.errors import NotFoundError, TransactionError, ValidationError
from app.domain.repositories.in_memory_prompt_repository import InMemoryPromptRepository
from app.domain.services.tenant_config_service import TenantConfigService
from app.domain.services.tenant_settings_service import (
    SUPPORTED_LANGUAGES,
    TenantSettingsService,
    parse_top_k,
)


class FailingSettingsRepository(InMemoryPromptRepository):
    """Fails on every settings write."""

    async def upsert_topk_setting(self, tenant_id, flow_key, top_k):
        raise RuntimeError("connection lost")

    async def upsert_language_setting(self, tenant_id, language):
        raise RuntimeError("connection lost")


@pytest.fixture
def service(repo, cache):
    return TenantSettingsService(repo, cache)


# =============================================================================
# Criterion 1: top_k
# =============================================================================

class TestCriterion1TopK:

    def test_parse_accepts_numeric_strings(self):
        assert parse_top_k(" 7 ") == 7
        assert parse_top_k(3) == 3

    @pytest.mark.parametrize("value", [0, -1, "abc", "", None, True, 2.5])
    def test_parse_rejects(self, value):
        with pytest.raises(ValidationError):
            parse_top_k(value)

    @pytest.mark.asyncio
    async def test_set_and_list(self, service, repo):
        await service.set_topk("C", "main", 5)
        await service.set_topk("C", "apiflow", "8")
        await service.set_topk("D", "main", 2)

        settings = await service.list_topk_settings("C")
        assert [(s.flow_key, s.top_k) for s in settings] == [("apiflow", 8), ("main", 5)]
        assert repo.commits == 3

    @pytest.mark.asyncio
    async def test_set_replaces_existing(self, service, repo):
        await service.set_topk("C", "main", 5)
        await service.set_topk("C", "main", 10)

        settings = await repo.list_topk_settings("C")
        assert [(s.flow_key, s.top_k) for s in settings] == [("main", 10)]

    @pytest.mark.asyncio
    async def test_invalid_top_k_rejected_before_store(self, service, repo):
        with pytest.raises(ValidationError):
            await service.set_topk("C", "main", 0)
        assert repo.commits == 0
        assert await repo.list_topk_settings("C") == []

    @pytest.mark.asyncio
    async def test_flow_required(self, service):
        with pytest.raises(ValidationError):
            await service.set_topk("C", "", 5)

    @pytest.mark.asyncio
    async def test_delete(self, service, repo):
        await service.set_topk("C", "main", 5)
        await service.delete_topk("C", "main")
        assert await repo.list_topk_settings("C") == []

        with pytest.raises(NotFoundError):
            await service.delete_topk("C", "main")
        assert repo.rollbacks == 1


# =============================================================================
# Criterion 2: Language
# =============================================================================

class TestCriterion2Language:

    @pytest.mark.asyncio
    async def test_set_and_get(self, service):
        await service.set_language("C", "english")
        await service.set_language("C", "swedish")
        assert (await service.get_language("C")).language == "swedish"

    @pytest.mark.asyncio
    async def test_unset_language_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_language("C")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("language", ["klingon", "English", ""])
    async def test_unsupported_language_rejected(self, service, repo, language):
        with pytest.raises(ValidationError) as exc_info:
            await service.set_language("C", language)
        assert "danish" in str(exc_info.value)
        assert await repo.get_language_setting("C") is None

    def test_supported_list(self):
        assert len(SUPPORTED_LANGUAGES) == 9
        assert "finnish" in SUPPORTED_LANGUAGES


# =============================================================================
# Criterion 3: Invalidation
# =============================================================================

class TestCriterion3Invalidation:

    @pytest.mark.asyncio
    async def test_writes_evict_config_only(self, service, repo, cache):
        config = TenantConfigService(repo, cache)
        await config.get_configuration("C")
        cache.set(prompt_cache_key("C", "main"), "prompt", 600)

        await service.set_topk("C", "main", 4)
        assert cache.get(config_cache_key("C")) is None
        assert cache.get(prompt_cache_key("C", "main")) == "prompt"
        assert (await config.get_configuration("C"))["top_k_settings"] == {"main": 4}

        await service.set_language("C", "german")
        assert cache.get(config_cache_key("C")) is None
        assert (await config.get_configuration("C"))["language"] == "german"

        await service.delete_topk("C", "main")
        assert (await config.get_configuration("C"))["top_k_settings"] == {}


# =============================================================================
# Criterion 4: Failures
# =============================================================================

class TestCriterion4Failures:

    @pytest.mark.asyncio
    async def test_store_failure_rolled_back(self, cache):
        repo = FailingSettingsRepository()
        service = TenantSettingsService(repo, cache)
        cache.set(config_cache_key("C"), {"cached": True}, 120)

        with pytest.raises(TransactionError):
            await service.set_topk("C", "main", 5)
        with pytest.raises(TransactionError):
            await service.set_language("C", "dutch")

        assert repo.rollbacks == 2
        assert cache.get(config_cache_key("C")) == {"cached": True}
