"""Domain models for the Prompt Composer."""

from .prompt_templates import (
    PromptTemplate,
    PromptTemplateHistory,
    FlowTemplateAssignment,
    PromptOverride,
    PromptOverrideHistory,
    FlowTopKSetting,
    TenantLanguageSetting,
)

__all__ = [
    "PromptTemplate",
    "PromptTemplateHistory",
    "FlowTemplateAssignment",
    "PromptOverride",
    "PromptOverrideHistory",
    "FlowTopKSetting",
    "TenantLanguageSetting",
]
