"""
SQLAlchemy models for prompt templates, assignments, overrides and tenant
settings.

These models mirror the tables created by the Alembic migrations
20261018_001_create_prompt_composition_tables and
20261018_002_create_tenant_settings_tables.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, CheckConstraint, DateTime, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func, text

from app.core.database import Base


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class PromptTemplate(Base):
    """
    Versioned prompt template.

    kind:
    - 'standard': assigned to (tenant, flow) pairs
    - 'module': inlined into other prompts via {{module:<id>:<name>}}
    - 'system-default': used by the statistics flow (at most one)
    """

    __tablename__ = "prompt_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    sections: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        doc="Ordered list of {key, content} objects",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="standard",
        server_default="standard",
    )

    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "kind IN ('standard', 'module', 'system-default')",
            name="ck_prompt_templates_kind",
        ),
        Index("ix_prompt_templates_kind", "kind"),
        Index(
            "ix_prompt_templates_single_system_default",
            "kind",
            unique=True,
            postgresql_where=text("kind = 'system-default'"),
            sqlite_where=text("kind = 'system-default'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<PromptTemplate {self.id} '{self.name}' v{self.version} ({self.kind})>"


class PromptTemplateHistory(Base):
    """Append-only snapshot of a template taken before each overwrite."""

    __tablename__ = "prompt_template_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    sections: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    snapshotted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    modified_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_prompt_template_history_template_id", "template_id"),
    )


class FlowTemplateAssignment(Base):
    """
    Binding of a template to a (tenant, flow) pair.

    template_id is a weak reference: deleting the template does not cascade.
    """

    __tablename__ = "flow_template_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    flow_key: Mapped[str] = mapped_column(String(100), nullable=False)
    template_id: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "flow_key", name="uq_flow_template_assignments_tenant_flow"),
        Index("ix_flow_template_assignments_template_id", "template_id"),
    )


class PromptOverride(Base):
    """Tenant customization of one section key of the assigned template."""

    __tablename__ = "prompt_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    flow_key: Mapped[str] = mapped_column(String(100), nullable=False)
    section_key: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="plain",
        server_default="plain",
        doc="Decoder for content: 'plain' text or 'module' JSON envelope",
    )
    modified_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "flow_key", "section_key",
            name="uq_prompt_overrides_tenant_flow_section",
        ),
        CheckConstraint(
            "action IN ('add', 'modify', 'remove')",
            name="ck_prompt_overrides_action",
        ),
    )


class PromptOverrideHistory(Base):
    """Snapshot of a 'modify' override taken before it was replaced."""

    __tablename__ = "prompt_overrides_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    override_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    flow_key: Mapped[str] = mapped_column(String(100), nullable=False)
    section_key: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="plain",
        server_default="plain",
    )
    saved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    saved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "action IN ('add', 'modify', 'remove')",
            name="ck_prompt_overrides_history_action",
        ),
        Index("ix_prompt_overrides_history_override_id", "override_id"),
        Index("ix_prompt_overrides_history_section", "tenant_id", "flow_key", "section_key"),
        Index("ix_prompt_overrides_history_saved_at", "saved_at"),
    )


class FlowTopKSetting(Base):
    """Number of retrieved context chunks a (tenant, flow) asks for."""

    __tablename__ = "flow_topk_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    flow_key: Mapped[str] = mapped_column(String(100), nullable=False)
    top_k: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "flow_key", name="uq_flow_topk_settings_tenant_flow"),
        CheckConstraint("top_k >= 1", name="ck_flow_topk_settings_top_k_positive"),
    )


class TenantLanguageSetting(Base):
    """Conversation language of a tenant."""

    __tablename__ = "tenant_language_settings"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    language: Mapped[str] = mapped_column(String(20), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
