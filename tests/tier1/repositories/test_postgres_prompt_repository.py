"""
Tier-1 tests for the SQLAlchemy prompt repository.

Runs against async in-memory SQLite; the ORM mapping, content encoding and
ordering are what is under test, not PostgreSQL itself.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.cache import InMemoryPromptCache
from app.domain.models.prompt_templates import PromptOverride
from app.domain.prompt.content import ModuleSection, PlainText
from app.domain.prompt.errors import ConflictError
from app.domain.repositories.postgres_prompt_repository import PostgresPromptRepository
from app.domain.repositories.prompt_repository import (
    OverrideHistoryRecord,
    OverrideRecord,
    TemplateRecord,
)
from app.domain.services.assignment_service import AssignmentService
from app.domain.services.override_service import OverrideService
from app.domain.services.prompt_build_service import PromptBuildService
from app.domain.services.template_service import TemplateService


@pytest.fixture
def db_repo(async_db_session):
    return PostgresPromptRepository(async_db_session)


class InterleavingRepository(PostgresPromptRepository):
    """Runs another session's write right after this session's first template read."""

    def __init__(self, db, interleave):
        super().__init__(db)
        self.interleave = interleave

    async def get_template(self, template_id):
        record = await super().get_template(template_id)
        if self.interleave is not None:
            interleave, self.interleave = self.interleave, None
            await interleave()
        return record


class TestTemplates:

    @pytest.mark.asyncio
    async def test_insert_and_get(self, db_repo):
        sections = [{"key": 10, "content": "Intro"}]
        created = await db_repo.insert_template(TemplateRecord(name="T", sections=sections))
        await db_repo.commit()

        fetched = await db_repo.get_template(created.id)
        assert fetched.name == "T"
        assert fetched.sections == sections
        assert fetched.kind == "standard"
        assert fetched.version == 1

    @pytest.mark.asyncio
    async def test_modules_by_ids_filters_kind(self, db_repo):
        module = await db_repo.insert_template(TemplateRecord(name="M", sections=[], kind="module"))
        standard = await db_repo.insert_template(TemplateRecord(name="S", sections=[]))
        await db_repo.commit()

        found = await db_repo.get_templates_by_ids([module.id, standard.id], kind="module")
        assert [t.id for t in found] == [module.id]
        assert await db_repo.get_templates_by_ids([]) == []

    @pytest.mark.asyncio
    async def test_single_system_default_enforced_by_index(self, db_repo):
        await db_repo.insert_template(TemplateRecord(name="A", sections=[], kind="system-default"))
        with pytest.raises(IntegrityError):
            await db_repo.insert_template(TemplateRecord(name="B", sections=[], kind="system-default"))
        await db_repo.rollback()

    @pytest.mark.asyncio
    async def test_update_and_history(self, db_repo):
        service = TemplateService(db_repo, InMemoryPromptCache())
        template = await service.create_template(name="T", sections=[{"key": 1, "content": "a"}])
        await service.update_template(template.id, sections=[{"key": 1, "content": "b"}])
        await service.update_template(template.id, sections=[{"key": 1, "content": "c"}])

        stored = await db_repo.get_template(template.id)
        assert stored.version == 3
        history = await db_repo.list_template_history(template.id)
        assert [h.version for h in history] == [2, 1]
        assert history[1].sections == [{"key": 1, "content": "a"}]


class TestConcurrentTemplateWrites:
    """Two sessions update the same template; the second read happens before the first commit."""

    @staticmethod
    async def _create(file_db_sessions, cache):
        async with file_db_sessions() as session:
            return await TemplateService(PostgresPromptRepository(session), cache).create_template(
                name="T", sections=[{"key": 1, "content": "a"}]
            )

    @pytest.mark.asyncio
    async def test_stale_writer_conflicts(self, file_db_sessions):
        cache = InMemoryPromptCache()
        template = await self._create(file_db_sessions, cache)

        async with file_db_sessions() as first, file_db_sessions() as second:

            async def first_writer():
                await TemplateService(PostgresPromptRepository(first), cache).update_template(
                    template.id, sections=[{"key": 1, "content": "first"}], expected_version=1
                )

            service = TemplateService(InterleavingRepository(second, first_writer), cache)
            with pytest.raises(ConflictError) as exc_info:
                await service.update_template(
                    template.id, sections=[{"key": 1, "content": "second"}], expected_version=1
                )

        assert exc_info.value.actual_version == 2
        async with file_db_sessions() as session:
            repo = PostgresPromptRepository(session)
            stored = await repo.get_template(template.id)
            assert stored.version == 2
            assert stored.sections == [{"key": 1, "content": "first"}]
            history = await repo.list_template_history(template.id)
            assert [h.version for h in history] == [1]

    @pytest.mark.asyncio
    async def test_unversioned_writers_both_land(self, file_db_sessions):
        cache = InMemoryPromptCache()
        template = await self._create(file_db_sessions, cache)

        async with file_db_sessions() as first, file_db_sessions() as second:

            async def first_writer():
                await TemplateService(PostgresPromptRepository(first), cache).update_template(
                    template.id, sections=[{"key": 1, "content": "first"}]
                )

            service = TemplateService(InterleavingRepository(second, first_writer), cache)
            updated = await service.update_template(
                template.id, sections=[{"key": 1, "content": "second"}]
            )

        assert updated.version == 3
        async with file_db_sessions() as session:
            repo = PostgresPromptRepository(session)
            stored = await repo.get_template(template.id)
            assert stored.sections == [{"key": 1, "content": "second"}]
            history = await repo.list_template_history(template.id)
            assert [h.version for h in history] == [2, 1]
            assert history[0].sections == [{"key": 1, "content": "first"}]

    @pytest.mark.asyncio
    async def test_conditional_update_reports_missed_row(self, db_repo):
        created = await db_repo.insert_template(TemplateRecord(name="T", sections=[]))
        await db_repo.commit()

        assert await db_repo.update_template(created.id, expected_version=2, name="x") is False
        assert await db_repo.update_template(created.id, expected_version=1, version=2) is True
        await db_repo.commit()

        stored = await db_repo.get_template(created.id)
        assert (stored.name, stored.version) == ("T", 2)


class TestOverrides:

    @pytest.mark.asyncio
    async def test_upsert_is_unique_per_section(self, db_repo, async_db_session):
        await db_repo.save_override(OverrideRecord("C", "main", 1, "add", PlainText("a")))
        await db_repo.save_override(OverrideRecord("C", "main", 1, "modify", PlainText("b")))
        await db_repo.commit()

        rows = (await async_db_session.execute(select(PromptOverride))).scalars().all()
        assert len(rows) == 1
        assert rows[0].action == "modify"
        assert rows[0].content_kind == "plain"

    @pytest.mark.asyncio
    async def test_module_envelope_round_trip(self, db_repo):
        content = ModuleSection(
            content="text", module_id=3, module_name="Tone",
            original_section_key=2, parent_section_key=7,
        )
        await db_repo.save_override(OverrideRecord("C", "main", 7, "modify", content))
        await db_repo.commit()

        fetched = await db_repo.get_override("C", "main", 7)
        assert fetched.content == content

    @pytest.mark.asyncio
    async def test_history_newest_first(self, db_repo):
        for text in ("v1", "v2", "v3"):
            await db_repo.insert_override_history(
                OverrideHistoryRecord("C", "main", 1, "modify", PlainText(text))
            )
        await db_repo.commit()

        history = await db_repo.list_override_history("C", "main", 1)
        assert [h.content.text for h in history] == ["v3", "v2", "v1"]
        assert len(await db_repo.list_override_history("C", "main", 1, limit=2)) == 2

        assert await db_repo.delete_override_history(history[0].id) is True
        assert await db_repo.delete_override_history(history[0].id) is False

    @pytest.mark.asyncio
    async def test_revert_through_sql(self, db_repo):
        service = OverrideService(db_repo, InMemoryPromptCache())
        await service.upsert_override("C", "main", 1, "modify", PlainText("v1"), modified_by="ann")
        await service.upsert_override("C", "main", 1, "modify", PlainText("v2"), modified_by="bob")

        result = await service.revert_override("C", "main", 1, reverted_by="cy")

        assert result.content == "v1"
        current = await db_repo.get_override("C", "main", 1)
        assert current.content == PlainText("v1")
        history = await db_repo.list_override_history("C", "main", 1)
        assert [h.content.text for h in history] == ["v2"]
        assert history[0].saved_by == "cy"


class TestTenantSettings:

    @pytest.mark.asyncio
    async def test_topk_upsert_list_delete(self, db_repo):
        await db_repo.upsert_topk_setting("C", "main", 5)
        await db_repo.upsert_topk_setting("C", "main", 9)
        await db_repo.upsert_topk_setting("C", "apiflow", 2)
        await db_repo.upsert_topk_setting("D", "main", 1)
        await db_repo.commit()

        settings = await db_repo.list_topk_settings("C")
        assert [(s.flow_key, s.top_k) for s in settings] == [("apiflow", 2), ("main", 9)]

        assert await db_repo.delete_topk_setting("C", "main") is True
        assert await db_repo.delete_topk_setting("C", "main") is False
        await db_repo.commit()
        assert [s.flow_key for s in await db_repo.list_topk_settings("C")] == ["apiflow"]

    @pytest.mark.asyncio
    async def test_top_k_must_be_positive(self, db_repo):
        with pytest.raises(IntegrityError):
            await db_repo.upsert_topk_setting("C", "main", 0)
        await db_repo.rollback()

    @pytest.mark.asyncio
    async def test_language_one_per_tenant(self, db_repo):
        assert await db_repo.get_language_setting("C") is None
        await db_repo.upsert_language_setting("C", "english")
        await db_repo.upsert_language_setting("C", "german")
        await db_repo.commit()

        setting = await db_repo.get_language_setting("C")
        assert (setting.tenant_id, setting.language) == ("C", "german")


class TestComposition:

    @pytest.mark.asyncio
    async def test_end_to_end(self, db_repo, fixed_clock):
        cache = InMemoryPromptCache()
        templates = TemplateService(db_repo, cache)
        module = await templates.create_template(
            name="Tone", sections=[{"key": 1, "content": "Be kind."}], kind="module"
        )
        template = await templates.create_template(
            name="T",
            sections=[
                {"key": 20, "content": f"{{{{module:{module.id}:Tone}}}}"},
                {"key": 10, "content": "Intro"},
            ],
        )
        await AssignmentService(db_repo, cache).upsert_assignment("C", "main", template.id)
        await OverrideService(db_repo, cache).upsert_override("C", "main", 30, "add", PlainText("Outro"))

        builder = PromptBuildService(db_repo, cache, clock=fixed_clock)
        prompt = await builder.build_prompt("C", "main")

        assert prompt == "Intro\n\nBe kind.\n\nOutro\n\nIt is currently monday the 18th of october 14:05"
