"""
Template store service.

Business logic for:
- Creating, reading, updating and deleting prompt templates
- Snapshotting the pre-write state of a template before every overwrite
- Inserting a section and insulating existing assignments from it

Key design:
- Service commits at safe boundaries
- Repository handles storage (no commits)
- Validation happens in service, before any store access
- Cache entries are evicted after commit, inside the write path
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.core.cache import ALL_PROMPTS_PATTERN, PromptCache, config_cache_key, prompt_cache_key
from app.domain.prompt.content import PlainText
from app.domain.prompt.errors import (
    ConflictError,
    NotFoundError,
    PromptStoreError,
    TransactionError,
    ValidationError,
)
from app.domain.repositories.prompt_repository import (
    KIND_MODULE,
    KIND_STANDARD,
    KIND_SYSTEM_DEFAULT,
    VALID_KINDS,
    OverrideRecord,
    PromptRepository,
    TemplateHistoryRecord,
    TemplateRecord,
)
from app.domain.services.prompt_composer_pure import (
    ACTION_REMOVE,
    allocate_section_key,
    normalize_sections,
    sort_sections,
    validate_sections,
)
from app.domain.services.override_service import save_override_with_history

logger = logging.getLogger(__name__)

# Conditional writes retried when no expected_version was given
MAX_UPDATE_ATTEMPTS = 3


@dataclass
class SectionInsertResult:
    """Outcome of inserting a section into a template."""
    template_id: int
    section_key: int
    version: int
    affected_assignments: int


class TemplateService:
    """
    Versioned template store.

    Transaction boundaries:
    - create_template: commits after insert
    - update_template: history snapshot + overwrite + version bump, one commit
    - delete_template: commits after delete
    - insert_section: history snapshot + overwrite + propagated remove
      overrides on every assignment, one commit
    """

    def __init__(self, repo: PromptRepository, cache: PromptCache):
        self.repo = repo
        self.cache = cache

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_template(self, template_id: int) -> TemplateRecord:
        template = await self.repo.get_template(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    async def list_templates(self, kind: Optional[str] = None) -> List[TemplateRecord]:
        if kind is not None and kind not in VALID_KINDS:
            raise ValidationError(f"Invalid kind '{kind}'. Must be one of: {sorted(VALID_KINDS)}")
        return await self.repo.list_templates(kind)

    async def get_modules(self) -> List[TemplateRecord]:
        """Templates of kind 'module', by name."""
        return await self.repo.list_templates(KIND_MODULE)

    async def get_system_default_template(self) -> Optional[TemplateRecord]:
        return await self.repo.get_system_default_template()

    async def list_template_history(
        self, template_id: int, limit: Optional[int] = None
    ) -> List[TemplateHistoryRecord]:
        """Snapshots of a template, newest first."""
        if limit is not None and limit < 1:
            raise ValidationError("limit must be a positive integer")
        await self.get_template(template_id)
        return await self.repo.list_template_history(template_id, limit)

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_template(
        self,
        name: str,
        sections: Optional[List[Dict[str, Any]]] = None,
        description: Optional[str] = None,
        kind: str = KIND_STANDARD,
        created_by: Optional[str] = None,
    ) -> TemplateRecord:
        if not name or not str(name).strip():
            raise ValidationError("Template name is required")
        self._validate_kind(kind)
        cleaned = validate_sections(sections if sections is not None else [])

        try:
            if kind == KIND_SYSTEM_DEFAULT:
                await self._ensure_single_system_default(None)

            template = await self.repo.insert_template(
                TemplateRecord(
                    name=name.strip(),
                    description=description,
                    sections=cleaned,
                    kind=kind,
                    created_by=created_by,
                )
            )
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to create template '{name}': {e}")
            raise TransactionError(f"Failed to create template: {e}") from e

        logger.info(f"[TEMPLATE] Created {kind} template {template.id} '{template.name}'")
        if kind != KIND_STANDARD:
            self._invalidate_all()
        return template

    async def update_template(
        self,
        template_id: int,
        sections: Optional[List[Dict[str, Any]]] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        kind: Optional[str] = None,
        modified_by: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> TemplateRecord:
        """
        Overwrite a template and bump its version.

        The pre-update version and sections are written to history in the
        same transaction. The write is conditional on the version read, so
        two concurrent updaters can never both commit on top of the same
        version. When expected_version is given and the stored version
        differs, ConflictError is raised and nothing is written. Without it,
        a writer that lost the race re-reads and reapplies its change
        (last-write-wins), up to MAX_UPDATE_ATTEMPTS times.
        """
        if name is not None and not name.strip():
            raise ValidationError("Template name cannot be empty")
        if kind is not None:
            self._validate_kind(kind)
        cleaned = validate_sections(sections) if sections is not None else None

        try:
            current = await self.repo.get_template(template_id)
            if current is None:
                raise NotFoundError("Template", template_id)
            if expected_version is not None and expected_version != current.version:
                raise ConflictError(template_id, expected_version, current.version)
            if kind == KIND_SYSTEM_DEFAULT and current.kind != KIND_SYSTEM_DEFAULT:
                await self._ensure_single_system_default(template_id)

            fields: Dict[str, Any] = {}
            if cleaned is not None:
                fields["sections"] = cleaned
            if name is not None:
                fields["name"] = name.strip()
            if description is not None:
                fields["description"] = description
            if kind is not None:
                fields["kind"] = kind

            attempts = 1
            while not await self.repo.update_template(
                template_id,
                expected_version=current.version,
                version=current.version + 1,
                **fields,
            ):
                # Another writer committed since our read
                latest = await self.repo.get_template(template_id)
                if latest is None:
                    raise NotFoundError("Template", template_id)
                if expected_version is not None or attempts >= MAX_UPDATE_ATTEMPTS:
                    raise ConflictError(template_id, current.version, latest.version)
                logger.info(
                    f"[TEMPLATE] Template {template_id} moved to v{latest.version} "
                    f"during update, retrying"
                )
                current = latest
                attempts += 1

            await self.repo.insert_template_history(
                TemplateHistoryRecord(
                    template_id=template_id,
                    version=current.version,
                    sections=current.sections,
                    modified_by=modified_by,
                )
            )
            updated = await self.repo.get_template(template_id)
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to update template {template_id}: {e}")
            raise TransactionError(f"Failed to update template {template_id}: {e}") from e

        logger.info(
            f"[TEMPLATE] Updated template {template_id}: "
            f"v{current.version} -> v{updated.version}"
        )
        await self._invalidate_for_template(template_id, {current.kind, updated.kind})
        return updated

    async def delete_template(self, template_id: int) -> None:
        """
        Delete a template.

        Assignments referencing it are left in place; composing such a
        flow raises EmptyCompositionError until it is reassigned.
        """
        try:
            current = await self.repo.get_template(template_id)
            if current is None:
                raise NotFoundError("Template", template_id)
            await self.repo.delete_template(template_id)
            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to delete template {template_id}: {e}")
            raise TransactionError(f"Failed to delete template {template_id}: {e}") from e

        referencing = await self.repo.list_assignments_for_template(template_id)
        if referencing:
            logger.warning(
                f"[TEMPLATE] Deleted template {template_id} is still assigned to "
                f"{len(referencing)} flow(s)"
            )
        logger.info(f"[TEMPLATE] Deleted template {template_id} '{current.name}'")
        await self._invalidate_for_template(template_id, {current.kind})

    async def insert_section(
        self,
        template_id: int,
        content: str,
        insert_after_key: Optional[int] = None,
        section_key: Optional[int] = None,
        modified_by: Optional[str] = None,
    ) -> SectionInsertResult:
        """
        Insert a section and hide it from every existing assignment.

        Existing tenants opt in to new template content: a 'remove' override
        for the new key is created on each assignment of the template, in
        the same transaction as the template write.
        """
        if not isinstance(content, str):
            raise ValidationError("content must be a string")

        try:
            current = await self.repo.get_template(template_id)
            if current is None:
                raise NotFoundError("Template", template_id)

            existing = [{"key": key, "content": text} for key, text in normalize_sections(current.sections)]
            new_key = allocate_section_key(
                [section["key"] for section in existing],
                insert_after_key=insert_after_key,
                section_key=section_key,
            )
            sections = sort_sections(existing + [{"key": new_key, "content": content}])

            await self.repo.insert_template_history(
                TemplateHistoryRecord(
                    template_id=template_id,
                    version=current.version,
                    sections=current.sections,
                    modified_by=modified_by,
                )
            )
            new_version = current.version + 1
            written = await self.repo.update_template(
                template_id,
                expected_version=current.version,
                sections=sections,
                version=new_version,
            )
            if not written:
                latest = await self.repo.get_template(template_id)
                raise ConflictError(
                    template_id, current.version, latest.version if latest else current.version
                )

            assignments = await self.repo.list_assignments_for_template(template_id)
            for assignment in assignments:
                await save_override_with_history(
                    self.repo,
                    OverrideRecord(
                        tenant_id=assignment.tenant_id,
                        flow_key=assignment.flow_key,
                        section_key=new_key,
                        action=ACTION_REMOVE,
                        content=PlainText(""),
                        modified_by=modified_by,
                    ),
                )

            await self.repo.commit()
        except PromptStoreError:
            await self.repo.rollback()
            raise
        except Exception as e:
            await self.repo.rollback()
            logger.error(f"Failed to insert section into template {template_id}: {e}")
            raise TransactionError(
                f"Failed to insert section into template {template_id}: {e}"
            ) from e

        logger.info(
            f"[TEMPLATE] Inserted section {new_key} into template {template_id} "
            f"(v{new_version}), hidden from {len(assignments)} assignment(s)"
        )
        await self._invalidate_for_template(template_id, {current.kind})
        return SectionInsertResult(
            template_id=template_id,
            section_key=new_key,
            version=new_version,
            affected_assignments=len(assignments),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _validate_kind(kind: str) -> None:
        if kind not in VALID_KINDS:
            raise ValidationError(f"Invalid kind '{kind}'. Must be one of: {sorted(VALID_KINDS)}")

    async def _ensure_single_system_default(self, template_id: Optional[int]) -> None:
        existing = await self.repo.get_system_default_template()
        if existing is not None and existing.id != template_id:
            raise ValidationError(
                f"A system-default template already exists (id {existing.id})"
            )

    def _invalidate_all(self) -> None:
        self.cache.delete_pattern(ALL_PROMPTS_PATTERN)
        self.cache.delete_pattern(config_cache_key("*"))

    async def _invalidate_for_template(self, template_id: int, kinds: set) -> None:
        """
        Evict cached output that may embed this template.

        Modules are inlined anywhere and the system default serves every
        tenant's statistics flow, so those evict all prompts.
        """
        if kinds & {KIND_MODULE, KIND_SYSTEM_DEFAULT}:
            self._invalidate_all()
            return

        assignments = await self.repo.list_assignments_for_template(template_id)
        tenants = set()
        for assignment in assignments:
            self.cache.delete(prompt_cache_key(assignment.tenant_id, assignment.flow_key))
            tenants.add(assignment.tenant_id)
        for tenant_id in tenants:
            self.cache.delete(config_cache_key(tenant_id))
        logger.debug(
            f"[CACHE] Invalidated {len(assignments)} prompt(s) for template {template_id}"
        )
