"""
Tenant configuration service.

Merges a tenant's prompt configuration (assignments, overrides, the flow
flags derived from them, per-flow top_k and the conversation language) into
one dict for the conversation frontend.
Cached under config:{tenant_id}; every assignment, override, template and
settings write evicts it.
"""

import copy
import logging
from typing import Any, Dict, Iterable

from app.core.cache import PromptCache, config_cache_key
from app.core.config import CONFIG_CACHE_TTL_SECONDS
from app.domain.prompt.content import content_to_dict
from app.domain.prompt.errors import ValidationError
from app.domain.repositories.prompt_repository import PromptRepository
from app.domain.services.tenant_settings_service import DEFAULT_LANGUAGE

logger = logging.getLogger(__name__)


# flow_key -> configuration field naming that flow
FLOW_KEY_FIELDS: Dict[str, str] = {
    "apiflow": "api_flow_key",
    "metadata": "meta_data_key",
    "metadata2": "meta_data2_key",
    "flow2": "flow2_key",
    "flow3": "flow3_key",
    "flow4": "flow4_key",
}

# flow_key -> prompt-enabled flags switched on by an assignment
PROMPT_FLAG_FIELDS: Dict[str, tuple] = {
    "main": ("main_prompt_enabled",),
    "apiflow": ("api_flow_prompt_enabled", "api_var_flow_prompt_enabled"),
    "metadata": ("meta_data_prompt_enabled",),
    "metadata2": ("meta_data2_prompt_enabled",),
    "flow2": ("flow2_prompt_enabled",),
    "flow3": ("flow3_prompt_enabled",),
    "flow4": ("flow4_prompt_enabled",),
    "image": ("image_prompt_enabled",),
    "statistics": ("statistics_prompt_enabled",),
}

# Enabled regardless of assignments
ALWAYS_ENABLED_FLAGS = ("main_prompt_enabled", "statistics_prompt_enabled")


def extract_flow_keys(flow_keys: Iterable[str]) -> Dict[str, str]:
    return {FLOW_KEY_FIELDS[key]: key for key in flow_keys if key in FLOW_KEY_FIELDS}


def extract_prompt_flags(flow_keys: Iterable[str]) -> Dict[str, bool]:
    flags: Dict[str, bool] = {}
    for key in flow_keys:
        for flag in PROMPT_FLAG_FIELDS.get(key, ()):
            flags[flag] = True
    for flag in ALWAYS_ENABLED_FLAGS:
        flags[flag] = True
    return flags


class TenantConfigService:
    """Read-only merged view of a tenant's prompt configuration."""

    def __init__(
        self,
        repo: PromptRepository,
        cache: PromptCache,
        ttl_seconds: int = CONFIG_CACHE_TTL_SECONDS,
    ):
        self.repo = repo
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get_configuration(self, tenant_id: str) -> Dict[str, Any]:
        if not tenant_id:
            raise ValidationError("tenant_id is required")

        cache_key = config_cache_key(tenant_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return copy.deepcopy(cached)
        generation = self.cache.generation(cache_key)

        assignments = await self.repo.list_assignments(tenant_id)
        overrides = await self.repo.list_tenant_overrides(tenant_id)
        topk_settings = await self.repo.list_topk_settings(tenant_id)
        language_setting = await self.repo.get_language_setting(tenant_id)
        language = language_setting.language if language_setting else DEFAULT_LANGUAGE

        template_assignments = {a.flow_key: a.template_id for a in assignments}
        prompt_overrides: Dict[str, Dict[int, Dict[str, Any]]] = {}
        for override in overrides:
            prompt_overrides.setdefault(override.flow_key, {})[override.section_key] = {
                "action": override.action,
                **content_to_dict(override.content),
            }

        configuration: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "template_assignments": template_assignments,
            "prompt_overrides": prompt_overrides,
            "top_k_settings": {s.flow_key: s.top_k for s in topk_settings},
            "language": language,
            "ui_language": language,
            **extract_flow_keys(template_assignments),
            **extract_prompt_flags(template_assignments),
        }

        self.cache.set(cache_key, configuration, self.ttl_seconds, generation=generation)
        logger.info(
            f"[CONFIG] Loaded configuration for {tenant_id}: "
            f"{len(assignments)} assignment(s), {len(overrides)} override(s)"
        )
        return copy.deepcopy(configuration)
