"""
Override store - Tier 1 Verification

Criteria:
1. Upsert validates the action before touching the store
2. Only a replaced 'modify' override is snapshotted
3. Revert restores the most recent snapshot and consumes it
4. Revert of the revert restores the replaced state (redo)
5. Every write evicts the flow's prompt and the tenant's configuration
"""

import pytest

from app.core.cache import config_cache_key, prompt_cache_key
from app.domain.prompt.content import ModuleSection, PlainText
from app.domain.prompt.errors import NotFoundError, TransactionError, ValidationError
from app.domain.repositories.in_memory_prompt_repository import InMemoryPromptRepository
from app.domain.services.override_service import OverrideService


class FailingDeleteRepository(InMemoryPromptRepository):
    """Fails on the last step of a revert."""

    async def delete_override_history(self, history_id):
        raise RuntimeError("lock timeout")


@pytest.fixture
def service(repo, cache):
    return OverrideService(repo, cache)


# =============================================================================
# Criterion 1: Validation
# =============================================================================

class TestCriterion1Validation:

    @pytest.mark.asyncio
    async def test_invalid_action_rejected_before_store_access(self, service, repo):
        with pytest.raises(ValidationError):
            await service.upsert_override("C", "main", 1, "replace", PlainText("x"))
        assert repo.commits == 0
        assert repo.rollbacks == 0

    @pytest.mark.asyncio
    async def test_section_key_must_be_int(self, service):
        with pytest.raises(ValidationError):
            await service.upsert_override("C", "main", "1", "add", PlainText("x"))

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates_in_place(self, service):
        first = await service.upsert_override("C", "main", 1, "add", PlainText("a"), modified_by="u1")
        second = await service.upsert_override("C", "main", 1, "modify", PlainText("b"), modified_by="u2")

        assert first.id == second.id
        overrides = await service.list_overrides("C", "main")
        assert len(overrides) == 1
        assert overrides[0].content == PlainText("b")
        assert overrides[0].modified_by == "u2"

    @pytest.mark.asyncio
    async def test_remove_without_content(self, service):
        override = await service.upsert_override("C", "main", 3, "remove")
        assert override.content == PlainText("")

    @pytest.mark.asyncio
    async def test_list_ordered_by_section(self, service):
        await service.upsert_override("C", "main", 30, "add", PlainText("c"))
        await service.upsert_override("C", "main", 10, "add", PlainText("a"))
        await service.upsert_override("C", "other", 20, "add", PlainText("b"))
        assert [o.section_key for o in await service.list_overrides("C", "main")] == [10, 30]

    @pytest.mark.asyncio
    async def test_delete(self, service):
        override = await service.upsert_override("C", "main", 1, "add", PlainText("a"))
        await service.delete_override(override.id)
        assert await service.list_overrides("C", "main") == []
        with pytest.raises(NotFoundError):
            await service.delete_override(override.id)


# =============================================================================
# Criterion 2: History policy
# =============================================================================

class TestCriterion2History:

    @pytest.mark.asyncio
    async def test_replacing_modify_snapshots(self, service):
        await service.upsert_override("C", "main", 1, "modify", PlainText("v1"), modified_by="ann")
        await service.upsert_override("C", "main", 1, "modify", PlainText("v2"), modified_by="bob")

        history = await service.get_override_history("C", "main", 1)
        assert len(history) == 1
        assert history[0].content == PlainText("v1")
        assert history[0].saved_by == "ann"
        assert history[0].action == "modify"

    @pytest.mark.asyncio
    async def test_replacing_add_or_remove_does_not_snapshot(self, service):
        await service.upsert_override("C", "main", 1, "add", PlainText("a"))
        await service.upsert_override("C", "main", 1, "remove")
        await service.upsert_override("C", "main", 1, "modify", PlainText("m"))
        assert await service.get_override_history("C", "main", 1) == []

    @pytest.mark.asyncio
    async def test_history_newest_first_and_limited(self, service):
        for i in range(15):
            await service.upsert_override("C", "main", 1, "modify", PlainText(f"v{i}"))

        history = await service.get_override_history("C", "main", 1)
        assert len(history) == 10
        assert history[0].content == PlainText("v13")
        assert len(await service.get_override_history("C", "main", 1, limit=3)) == 3

    @pytest.mark.asyncio
    async def test_module_envelope_survives_history(self, service):
        module_text = ModuleSection(content="From module", module_id=4, module_name="Tone")
        await service.upsert_override("C", "main", 1, "modify", module_text)
        await service.upsert_override("C", "main", 1, "modify", PlainText("plain"))

        history = await service.get_override_history("C", "main", 1)
        assert history[0].content == module_text


# =============================================================================
# Criterion 3 + 4: Revert
# =============================================================================

class TestCriterion3Revert:

    @pytest.mark.asyncio
    async def test_revert_without_override(self, service):
        with pytest.raises(NotFoundError):
            await service.revert_override("C", "main", 1)

    @pytest.mark.asyncio
    async def test_revert_without_history(self, service):
        await service.upsert_override("C", "main", 1, "modify", PlainText("only"))
        with pytest.raises(NotFoundError, match="No history"):
            await service.revert_override("C", "main", 1)

    @pytest.mark.asyncio
    async def test_revert_non_modify(self, service):
        await service.upsert_override("C", "main", 1, "add", PlainText("a"))
        with pytest.raises(ValidationError):
            await service.revert_override("C", "main", 1)

    @pytest.mark.asyncio
    async def test_revert_restores_most_recent_snapshot(self, service, repo):
        await service.upsert_override("C", "main", 1, "modify", PlainText("v1"), modified_by="ann")
        await service.upsert_override("C", "main", 1, "modify", PlainText("v2"), modified_by="bob")
        await service.upsert_override("C", "main", 1, "modify", PlainText("v3"), modified_by="cy")
        consumed_id = (await service.get_override_history("C", "main", 1))[0].id

        result = await service.revert_override("C", "main", 1, reverted_by="dee")

        assert result.content == "v2"
        assert result.restored_saved_by == "bob"
        assert result.restored_from_history_id == consumed_id
        current = await repo.get_override("C", "main", 1)
        assert current.content == PlainText("v2")
        assert current.modified_by == "bob"

        history = await service.get_override_history("C", "main", 1)
        assert consumed_id not in [h.id for h in history]
        assert [h.content for h in history] == [PlainText("v3"), PlainText("v1")]

    @pytest.mark.asyncio
    async def test_second_revert_is_redo(self, service, repo):
        await service.upsert_override("C", "main", 1, "modify", PlainText("v1"))
        await service.upsert_override("C", "main", 1, "modify", PlainText("v2"))

        await service.revert_override("C", "main", 1)
        assert (await repo.get_override("C", "main", 1)).content == PlainText("v1")

        await service.revert_override("C", "main", 1)
        assert (await repo.get_override("C", "main", 1)).content == PlainText("v2")

    @pytest.mark.asyncio
    async def test_revert_unwraps_module_envelope(self, service):
        await service.upsert_override(
            "C", "main", 1, "modify", ModuleSection(content="module text", module_id=9)
        )
        await service.upsert_override("C", "main", 1, "modify", PlainText("edited"))

        result = await service.revert_override("C", "main", 1)

        assert result.content == "module text"
        assert result.is_module_section is True

    @pytest.mark.asyncio
    async def test_failed_revert_rolls_back(self, cache):
        repo = FailingDeleteRepository()
        service = OverrideService(repo, cache)
        await service.upsert_override("C", "main", 1, "modify", PlainText("v1"))
        await service.upsert_override("C", "main", 1, "modify", PlainText("v2"))

        with pytest.raises(TransactionError):
            await service.revert_override("C", "main", 1)

        assert (await repo.get_override("C", "main", 1)).content == PlainText("v2")
        assert len(await repo.list_override_history("C", "main", 1)) == 1


# =============================================================================
# Criterion 5: Cache invalidation
# =============================================================================

class TestCriterion5Invalidation:

    @pytest.mark.asyncio
    async def test_upsert_evicts(self, service, cache):
        cache.set(prompt_cache_key("C", "main"), "stale", 600)
        cache.set(config_cache_key("C"), {}, 120)
        cache.set(prompt_cache_key("C", "image"), "other flow", 600)

        await service.upsert_override("C", "main", 1, "add", PlainText("x"))

        assert cache.get(prompt_cache_key("C", "main")) is None
        assert cache.get(config_cache_key("C")) is None
        assert cache.get(prompt_cache_key("C", "image")) == "other flow"

    @pytest.mark.asyncio
    async def test_delete_and_revert_evict(self, service, cache):
        await service.upsert_override("C", "main", 1, "modify", PlainText("v1"))
        override = await service.upsert_override("C", "main", 1, "modify", PlainText("v2"))

        cache.set(prompt_cache_key("C", "main"), "stale", 600)
        await service.revert_override("C", "main", 1)
        assert cache.get(prompt_cache_key("C", "main")) is None

        cache.set(prompt_cache_key("C", "main"), "stale", 600)
        await service.delete_override(override.id)
        assert cache.get(prompt_cache_key("C", "main")) is None
