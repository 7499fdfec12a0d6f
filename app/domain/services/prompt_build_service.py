"""
Prompt build service.

Orchestrates composition for a (tenant, flow) pair:
1. Check the cache
2. Resolve base sections (system default, image fallback, or assignment)
3. Layer the tenant's overrides, order and join (pure)
4. Inline referenced modules (batch fetch, pure replace)
5. Append the current local time
6. Cache and return

All store reads happen in one snapshot so the multi-table lookup sees a
consistent state. Pure logic lives in prompt_composer_pure.
"""

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from app.core.cache import PromptCache, prompt_cache_key
from app.core.config import PROMPT_CACHE_TTL_SECONDS, PROMPT_TIMEZONE
from app.core.logging import LogContext
from app.domain.prompt.errors import EmptyCompositionError, ValidationError
from app.domain.repositories.prompt_repository import KIND_MODULE, PromptRepository
from app.domain.services.prompt_composer_pure import (
    IMAGE_FALLBACK_SECTION,
    append_time_context,
    compose_sections,
    distinct_module_ids,
    render_module_content,
    resolve_module_references,
    scan_module_references,
)

logger = logging.getLogger(__name__)

STATISTICS_FLOW = "statistics"
IMAGE_FLOW = "image"
REPHRASE_SUFFIX = "_rephrase"


class PromptBuildService:
    """
    Composes the final prompt text for a tenant and flow.

    Usage:
        service = PromptBuildService(repo, cache)
        prompt = await service.build_prompt("475", "main")
    """

    def __init__(
        self,
        repo: PromptRepository,
        cache: PromptCache,
        clock: Optional[Callable[[], datetime]] = None,
        timezone: str = PROMPT_TIMEZONE,
        ttl_seconds: int = PROMPT_CACHE_TTL_SECONDS,
    ):
        self.repo = repo
        self.cache = cache
        self.timezone = ZoneInfo(timezone)
        self.clock = clock or (lambda: datetime.now(self.timezone))
        self.ttl_seconds = ttl_seconds

    async def build_prompt(self, tenant_id: str, flow_key: str) -> str:
        """
        Build the prompt for a tenant and flow.

        Raises:
            ValidationError: Missing tenant or flow
            EmptyCompositionError: Nothing to compose for this flow
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        if not flow_key:
            raise ValidationError("flow_key is required")

        cache_key = prompt_cache_key(tenant_id, flow_key)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"[PROMPT] Cache hit for {cache_key}")
            return cached
        generation = self.cache.generation(cache_key)

        with LogContext(tenant_id=tenant_id, flow_key=flow_key):
            await self.repo.begin_snapshot()
            try:
                raw_sections = await self._resolve_base_sections(tenant_id, flow_key)
                overrides = await self.repo.list_overrides(tenant_id, flow_key)
                prompt = compose_sections(
                    raw_sections,
                    [(o.section_key, o.action, o.content.raw_text) for o in overrides],
                    flow_key,
                )
                prompt = await self._inline_modules(prompt)
            finally:
                # Read-only: end the snapshot without writing
                await self.repo.rollback()

            prompt = append_time_context(prompt, self._now())
            # Not stored if a write invalidated the key while composing
            self.cache.set(cache_key, prompt, self.ttl_seconds, generation=generation)
            logger.info(
                f"[PROMPT] Built prompt for {tenant_id}/{flow_key} "
                f"({len(overrides)} override(s), {len(prompt)} chars)"
            )
            return prompt

    async def build_rephrase_prompt(self, tenant_id: str, flow_key: str) -> Optional[str]:
        """
        Build the optional rephrase variant of a flow.

        Returns None when the variant is not configured; many flows have none.
        """
        try:
            return await self.build_prompt(tenant_id, f"{flow_key}{REPHRASE_SUFFIX}")
        except EmptyCompositionError:
            logger.debug(f"[PROMPT] No rephrase prompt configured for {tenant_id}/{flow_key}")
            return None

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _resolve_base_sections(self, tenant_id: str, flow_key: str) -> Sequence[Any]:
        if flow_key == STATISTICS_FLOW:
            template = await self.repo.get_system_default_template()
            return template.sections if template else []

        sections: List[Any] = []
        assignment = await self.repo.get_assignment(tenant_id, flow_key)
        if assignment is not None:
            template = await self.repo.get_template(assignment.template_id)
            if template is None:
                logger.warning(
                    f"[PROMPT] Assignment {tenant_id}/{flow_key} references missing "
                    f"template {assignment.template_id}"
                )
            else:
                sections = template.sections

        if flow_key == IMAGE_FLOW and not sections:
            return [{"key": 1, "content": IMAGE_FALLBACK_SECTION}]
        return sections

    async def _inline_modules(self, prompt: str) -> str:
        references = scan_module_references(prompt)
        if not references:
            return prompt

        modules = await self.repo.get_templates_by_ids(
            distinct_module_ids(references), kind=KIND_MODULE
        )
        contents = {module.id: render_module_content(module.sections) for module in modules}

        resolved, unresolved = resolve_module_references(prompt, contents)
        for reference in unresolved:
            logger.warning(
                f"[PROMPT] Module not found: {reference.module_name} "
                f"(ID: {reference.module_id})"
            )
        return resolved

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is not None:
            return now.astimezone(self.timezone)
        return now
