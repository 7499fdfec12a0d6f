"""
Repository protocol for prompt templates, assignments and overrides.

Key design rules:
- Repository does NOT commit (caller owns transaction)
- DTOs are dataclasses (no ORM dependency)
- One repository spans all tables so a multi-table write
  (section insertion + propagated overrides) is one transaction
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from app.domain.prompt.content import OverrideContent, PlainText


# =============================================================================
# PINNED ENUMS
# =============================================================================

KIND_STANDARD = "standard"
KIND_MODULE = "module"
KIND_SYSTEM_DEFAULT = "system-default"
VALID_KINDS = {KIND_STANDARD, KIND_MODULE, KIND_SYSTEM_DEFAULT}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================

@dataclass
class TemplateRecord:
    """Versioned prompt template. Sections are kept in their stored JSON shape."""
    name: str
    sections: List[Dict[str, Any]]
    kind: str = KIND_STANDARD
    description: Optional[str] = None
    version: int = 1
    created_by: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TemplateHistoryRecord:
    """Immutable snapshot of a template before an overwrite."""
    template_id: int
    version: int
    sections: List[Dict[str, Any]]
    modified_by: Optional[str] = None
    id: Optional[int] = None
    snapshotted_at: datetime = field(default_factory=utcnow)


@dataclass
class AssignmentRecord:
    """Binding of a template to a (tenant, flow) pair."""
    tenant_id: str
    flow_key: str
    template_id: int
    id: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OverrideRecord:
    """Tenant customization of one section of the assigned template."""
    tenant_id: str
    flow_key: str
    section_key: int
    action: str
    content: OverrideContent = field(default_factory=PlainText)
    modified_by: Optional[str] = None
    id: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OverrideHistoryRecord:
    """Snapshot of a 'modify' override taken before it was replaced."""
    tenant_id: str
    flow_key: str
    section_key: int
    action: str
    content: OverrideContent
    override_id: Optional[int] = None
    saved_by: Optional[str] = None
    id: Optional[int] = None
    saved_at: datetime = field(default_factory=utcnow)


@dataclass
class TopKSettingRecord:
    """Retrieval depth for one (tenant, flow)."""
    tenant_id: str
    flow_key: str
    top_k: int
    id: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class LanguageSettingRecord:
    """Conversation language of a tenant."""
    tenant_id: str
    language: str
    updated_at: datetime = field(default_factory=utcnow)


# =============================================================================
# REPOSITORY PROTOCOL
# =============================================================================

class PromptRepository(Protocol):
    """
    Repository interface for prompt composition data.

    IMPORTANT: Repository does NOT commit. Caller owns transaction boundaries.
    """

    # --- transaction control ---

    async def begin_snapshot(self) -> None:
        """Start a read transaction with a repeatable-read view, if supported."""
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...

    # --- templates ---

    async def insert_template(self, record: TemplateRecord) -> TemplateRecord:
        ...

    async def get_template(self, template_id: int) -> Optional[TemplateRecord]:
        ...

    async def list_templates(self, kind: Optional[str] = None) -> List[TemplateRecord]:
        """Newest first; modules are listed by name."""
        ...

    async def get_templates_by_ids(
        self, template_ids: Sequence[int], kind: Optional[str] = None
    ) -> List[TemplateRecord]:
        ...

    async def get_system_default_template(self) -> Optional[TemplateRecord]:
        ...

    async def update_template(
        self, template_id: int, expected_version: Optional[int] = None, **fields: Any
    ) -> bool:
        """
        Overwrite fields of a template.

        With expected_version the write is conditional on the stored version
        still matching, checked in the same statement. Returns True if a row
        was written.
        """
        ...

    async def delete_template(self, template_id: int) -> bool:
        ...

    async def insert_template_history(self, record: TemplateHistoryRecord) -> None:
        ...

    async def list_template_history(
        self, template_id: int, limit: Optional[int] = None
    ) -> List[TemplateHistoryRecord]:
        """Newest first."""
        ...

    # --- assignments ---

    async def upsert_assignment(
        self, tenant_id: str, flow_key: str, template_id: int
    ) -> AssignmentRecord:
        ...

    async def get_assignment(self, tenant_id: str, flow_key: str) -> Optional[AssignmentRecord]:
        ...

    async def list_assignments(self, tenant_id: str) -> List[AssignmentRecord]:
        ...

    async def list_assignments_for_template(self, template_id: int) -> List[AssignmentRecord]:
        ...

    async def delete_assignment(self, tenant_id: str, flow_key: str) -> bool:
        ...

    # --- overrides ---

    async def get_override(
        self, tenant_id: str, flow_key: str, section_key: int
    ) -> Optional[OverrideRecord]:
        ...

    async def get_override_by_id(self, override_id: int) -> Optional[OverrideRecord]:
        ...

    async def list_overrides(self, tenant_id: str, flow_key: str) -> List[OverrideRecord]:
        """Ordered by section key."""
        ...

    async def list_tenant_overrides(self, tenant_id: str) -> List[OverrideRecord]:
        ...

    async def save_override(self, record: OverrideRecord) -> OverrideRecord:
        """Insert, or update the row with the same (tenant, flow, section)."""
        ...

    async def delete_override(self, override_id: int) -> bool:
        ...

    async def insert_override_history(self, record: OverrideHistoryRecord) -> None:
        ...

    async def list_override_history(
        self, tenant_id: str, flow_key: str, section_key: int, limit: Optional[int] = None
    ) -> List[OverrideHistoryRecord]:
        """Newest first."""
        ...

    async def delete_override_history(self, history_id: int) -> bool:
        ...

    # --- tenant settings ---

    async def list_topk_settings(self, tenant_id: str) -> List[TopKSettingRecord]:
        """Ordered by flow key."""
        ...

    async def upsert_topk_setting(
        self, tenant_id: str, flow_key: str, top_k: int
    ) -> TopKSettingRecord:
        ...

    async def delete_topk_setting(self, tenant_id: str, flow_key: str) -> bool:
        ...

    async def get_language_setting(self, tenant_id: str) -> Optional[LanguageSettingRecord]:
        ...

    async def upsert_language_setting(
        self, tenant_id: str, language: str
    ) -> LanguageSettingRecord:
        ...
