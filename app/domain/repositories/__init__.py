"""
Prompt Repositories.

Provides storage implementations for templates, assignments and overrides.
"""

from app.domain.repositories.prompt_repository import (
    PromptRepository,
    TemplateRecord,
    TemplateHistoryRecord,
    AssignmentRecord,
    OverrideRecord,
    OverrideHistoryRecord,
    TopKSettingRecord,
    LanguageSettingRecord,
)
from app.domain.repositories.in_memory_prompt_repository import InMemoryPromptRepository
from app.domain.repositories.postgres_prompt_repository import PostgresPromptRepository

__all__ = [
    "PromptRepository",
    "TemplateRecord",
    "TemplateHistoryRecord",
    "AssignmentRecord",
    "OverrideRecord",
    "OverrideHistoryRecord",
    "TopKSettingRecord",
    "LanguageSettingRecord",
    "InMemoryPromptRepository",
    "PostgresPromptRepository",
]
