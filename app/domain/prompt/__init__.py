"""
Prompt composition domain module.

Typed errors and override content variants shared by the prompt stores and
the composition engine.
"""

from app.domain.prompt.content import (
    OverrideContent,
    PlainText,
    ModuleSection,
    raw_text,
    encode_content,
    decode_content,
)
from app.domain.prompt.errors import (
    PromptStoreError,
    ValidationError,
    NotFoundError,
    EmptyCompositionError,
    ConflictError,
    TransactionError,
)

__all__ = [
    "OverrideContent",
    "PlainText",
    "ModuleSection",
    "raw_text",
    "encode_content",
    "decode_content",
    "PromptStoreError",
    "ValidationError",
    "NotFoundError",
    "EmptyCompositionError",
    "ConflictError",
    "TransactionError",
]
