"""Prompt store and composition error types.

All failure modes produce explicit, typed errors so callers can tell a
configuration problem from a system fault.
"""

from typing import Optional


class PromptStoreError(Exception):
    """Base class for prompt store and composition errors."""

    pass


class ValidationError(PromptStoreError, ValueError):
    """Missing or invalid input. Raised before any store access."""

    pass


class NotFoundError(PromptStoreError):
    """A referenced template, assignment, override or history row is absent."""

    def __init__(self, entity: str, identifier: object, message: Optional[str] = None):
        self.entity = entity
        self.identifier = identifier
        super().__init__(message or f"{entity} not found: {identifier}")


class EmptyCompositionError(PromptStoreError):
    """Composed prompt has no sections, or trims to empty text.

    This is a configuration error: a template must be assigned or populated
    for the tenant and flow.
    """

    def __init__(self, flow_key: str, message: str):
        self.flow_key = flow_key
        super().__init__(message)


class ConflictError(PromptStoreError):
    """Optimistic version check failed on a template update."""

    def __init__(self, template_id: int, expected_version: int, actual_version: int):
        self.template_id = template_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Template {template_id} is at version {actual_version}, "
            f"expected {expected_version}"
        )


class TransactionError(PromptStoreError):
    """Underlying store failure during a multi-step write. Rolled back, not retried."""

    pass
