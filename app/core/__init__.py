"""
Core infrastructure for the Prompt Composer.

Shared components used across all modules:
- Configuration management
- Database connections and sessions (app.core.database)
- Composition cache
- Logging
"""

from app.core.config import settings
from app.core.cache import (
    PromptCache,
    InMemoryPromptCache,
    prompt_cache_key,
    config_cache_key,
)

__all__ = [
    'settings',
    'PromptCache',
    'InMemoryPromptCache',
    'prompt_cache_key',
    'config_cache_key',
]
