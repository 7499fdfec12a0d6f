"""
PostgreSQL implementation of the prompt repository.

IMPORTANT: Does NOT commit. Caller owns transaction.
Override content is (de)serialized here, at the store boundary.
"""

from typing import Any, List, Optional, Sequence

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.domain.models.prompt_templates import (
    FlowTemplateAssignment,
    FlowTopKSetting,
    PromptOverride,
    PromptOverrideHistory,
    PromptTemplate,
    PromptTemplateHistory,
    TenantLanguageSetting,
)
from app.domain.prompt.content import decode_content, encode_content
from app.domain.repositories.prompt_repository import (
    KIND_MODULE,
    KIND_SYSTEM_DEFAULT,
    AssignmentRecord,
    LanguageSettingRecord,
    OverrideHistoryRecord,
    OverrideRecord,
    TemplateHistoryRecord,
    TemplateRecord,
    TopKSettingRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


class PostgresPromptRepository:
    """PostgreSQL repository via ORM. Does NOT commit internally."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def begin_snapshot(self) -> None:
        """
        Pin a repeatable-read view for the multi-table composition reads.

        Only possible before the session has started a transaction; SQLite
        (tests) is serializable already.
        """
        if self.db.in_transaction():
            return
        if self.db.bind is not None and self.db.bind.dialect.name == "postgresql":
            await self.db.connection(
                execution_options={"isolation_level": "REPEATABLE READ"}
            )

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    # =========================================================================
    # Templates
    # =========================================================================

    async def insert_template(self, record: TemplateRecord) -> TemplateRecord:
        row = PromptTemplate(
            name=record.name,
            description=record.description,
            sections=list(record.sections),
            version=record.version,
            kind=record.kind,
            created_by=record.created_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        self.db.add(row)
        await self.db.flush()
        return self._row_to_template(row)

    async def get_template(self, template_id: int) -> Optional[TemplateRecord]:
        result = await self.db.execute(
            select(PromptTemplate).where(PromptTemplate.id == template_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return self._row_to_template(row) if row else None

    async def list_templates(self, kind: Optional[str] = None) -> List[TemplateRecord]:
        query = select(PromptTemplate)
        if kind is not None:
            query = query.where(PromptTemplate.kind == kind)
        if kind == KIND_MODULE:
            query = query.order_by(PromptTemplate.name)
        else:
            query = query.order_by(PromptTemplate.id.desc())

        result = await self.db.execute(query)
        return [self._row_to_template(r) for r in result.scalars().all()]

    async def get_templates_by_ids(
        self, template_ids: Sequence[int], kind: Optional[str] = None
    ) -> List[TemplateRecord]:
        if not template_ids:
            return []
        query = select(PromptTemplate).where(PromptTemplate.id.in_(list(template_ids)))
        if kind is not None:
            query = query.where(PromptTemplate.kind == kind)

        result = await self.db.execute(query)
        return [self._row_to_template(r) for r in result.scalars().all()]

    async def get_system_default_template(self) -> Optional[TemplateRecord]:
        result = await self.db.execute(
            select(PromptTemplate)
            .where(PromptTemplate.kind == KIND_SYSTEM_DEFAULT)
            .order_by(PromptTemplate.id)
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return self._row_to_template(row) if row else None

    async def update_template(
        self, template_id: int, expected_version: Optional[int] = None, **fields: Any
    ) -> bool:
        fields.setdefault("updated_at", utcnow())
        query = update(PromptTemplate).where(PromptTemplate.id == template_id)
        if expected_version is not None:
            # Compare-and-set on the version the caller read
            query = query.where(PromptTemplate.version == expected_version)

        result = await self.db.execute(
            query.values(**fields).execution_options(synchronize_session="evaluate")
        )
        return result.rowcount > 0

    async def delete_template(self, template_id: int) -> bool:
        result = await self.db.execute(
            delete(PromptTemplate).where(PromptTemplate.id == template_id)
        )
        return result.rowcount > 0

    async def insert_template_history(self, record: TemplateHistoryRecord) -> None:
        self.db.add(
            PromptTemplateHistory(
                template_id=record.template_id,
                version=record.version,
                sections=list(record.sections),
                snapshotted_at=record.snapshotted_at,
                modified_by=record.modified_by,
            )
        )
        await self.db.flush()

    async def list_template_history(
        self, template_id: int, limit: Optional[int] = None
    ) -> List[TemplateHistoryRecord]:
        query = (
            select(PromptTemplateHistory)
            .where(PromptTemplateHistory.template_id == template_id)
            .order_by(PromptTemplateHistory.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return [
            TemplateHistoryRecord(
                id=r.id,
                template_id=r.template_id,
                version=r.version,
                sections=list(r.sections or []),
                snapshotted_at=r.snapshotted_at,
                modified_by=r.modified_by,
            )
            for r in result.scalars().all()
        ]

    # =========================================================================
    # Assignments
    # =========================================================================

    async def _assignment_row(self, tenant_id: str, flow_key: str) -> Optional[FlowTemplateAssignment]:
        result = await self.db.execute(
            select(FlowTemplateAssignment).where(
                and_(
                    FlowTemplateAssignment.tenant_id == tenant_id,
                    FlowTemplateAssignment.flow_key == flow_key,
                )
            )
        )
        return result.scalar_one_or_none()

    async def upsert_assignment(
        self, tenant_id: str, flow_key: str, template_id: int
    ) -> AssignmentRecord:
        row = await self._assignment_row(tenant_id, flow_key)
        if row:
            row.template_id = template_id
            row.updated_at = utcnow()
        else:
            row = FlowTemplateAssignment(
                tenant_id=tenant_id,
                flow_key=flow_key,
                template_id=template_id,
                updated_at=utcnow(),
            )
            self.db.add(row)
        await self.db.flush()
        return self._row_to_assignment(row)

    async def get_assignment(self, tenant_id: str, flow_key: str) -> Optional[AssignmentRecord]:
        row = await self._assignment_row(tenant_id, flow_key)
        return self._row_to_assignment(row) if row else None

    async def list_assignments(self, tenant_id: str) -> List[AssignmentRecord]:
        result = await self.db.execute(
            select(FlowTemplateAssignment)
            .where(FlowTemplateAssignment.tenant_id == tenant_id)
            .order_by(FlowTemplateAssignment.flow_key)
        )
        return [self._row_to_assignment(r) for r in result.scalars().all()]

    async def list_assignments_for_template(self, template_id: int) -> List[AssignmentRecord]:
        result = await self.db.execute(
            select(FlowTemplateAssignment)
            .where(FlowTemplateAssignment.template_id == template_id)
            .order_by(FlowTemplateAssignment.tenant_id, FlowTemplateAssignment.flow_key)
        )
        return [self._row_to_assignment(r) for r in result.scalars().all()]

    async def delete_assignment(self, tenant_id: str, flow_key: str) -> bool:
        result = await self.db.execute(
            delete(FlowTemplateAssignment).where(
                and_(
                    FlowTemplateAssignment.tenant_id == tenant_id,
                    FlowTemplateAssignment.flow_key == flow_key,
                )
            )
        )
        return result.rowcount > 0

    # =========================================================================
    # Overrides
    # =========================================================================

    async def _override_row(
        self, tenant_id: str, flow_key: str, section_key: int
    ) -> Optional[PromptOverride]:
        result = await self.db.execute(
            select(PromptOverride).where(
                and_(
                    PromptOverride.tenant_id == tenant_id,
                    PromptOverride.flow_key == flow_key,
                    PromptOverride.section_key == section_key,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_override(
        self, tenant_id: str, flow_key: str, section_key: int
    ) -> Optional[OverrideRecord]:
        row = await self._override_row(tenant_id, flow_key, section_key)
        return self._row_to_override(row) if row else None

    async def get_override_by_id(self, override_id: int) -> Optional[OverrideRecord]:
        row = await self.db.get(PromptOverride, override_id)
        return self._row_to_override(row) if row else None

    async def list_overrides(self, tenant_id: str, flow_key: str) -> List[OverrideRecord]:
        result = await self.db.execute(
            select(PromptOverride)
            .where(
                and_(
                    PromptOverride.tenant_id == tenant_id,
                    PromptOverride.flow_key == flow_key,
                )
            )
            .order_by(PromptOverride.section_key)
        )
        return [self._row_to_override(r) for r in result.scalars().all()]

    async def list_tenant_overrides(self, tenant_id: str) -> List[OverrideRecord]:
        result = await self.db.execute(
            select(PromptOverride)
            .where(PromptOverride.tenant_id == tenant_id)
            .order_by(PromptOverride.flow_key, PromptOverride.section_key)
        )
        return [self._row_to_override(r) for r in result.scalars().all()]

    async def save_override(self, record: OverrideRecord) -> OverrideRecord:
        content_kind, stored = encode_content(record.content)
        row = await self._override_row(record.tenant_id, record.flow_key, record.section_key)
        if row is None:
            row = PromptOverride(
                tenant_id=record.tenant_id,
                flow_key=record.flow_key,
                section_key=record.section_key,
            )
            self.db.add(row)

        row.action = record.action
        row.content = stored
        row.content_kind = content_kind
        row.modified_by = record.modified_by
        row.updated_at = utcnow()
        await self.db.flush()
        return self._row_to_override(row)

    async def delete_override(self, override_id: int) -> bool:
        result = await self.db.execute(
            delete(PromptOverride).where(PromptOverride.id == override_id)
        )
        return result.rowcount > 0

    async def insert_override_history(self, record: OverrideHistoryRecord) -> None:
        content_kind, stored = encode_content(record.content)
        self.db.add(
            PromptOverrideHistory(
                override_id=record.override_id,
                tenant_id=record.tenant_id,
                flow_key=record.flow_key,
                section_key=record.section_key,
                action=record.action,
                content=stored,
                content_kind=content_kind,
                saved_at=record.saved_at,
                saved_by=record.saved_by,
            )
        )
        await self.db.flush()

    async def list_override_history(
        self, tenant_id: str, flow_key: str, section_key: int, limit: Optional[int] = None
    ) -> List[OverrideHistoryRecord]:
        query = (
            select(PromptOverrideHistory)
            .where(
                and_(
                    PromptOverrideHistory.tenant_id == tenant_id,
                    PromptOverrideHistory.flow_key == flow_key,
                    PromptOverrideHistory.section_key == section_key,
                )
            )
            .order_by(PromptOverrideHistory.saved_at.desc(), PromptOverrideHistory.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return [self._row_to_override_history(r) for r in result.scalars().all()]

    async def delete_override_history(self, history_id: int) -> bool:
        result = await self.db.execute(
            delete(PromptOverrideHistory).where(PromptOverrideHistory.id == history_id)
        )
        return result.rowcount > 0

    # =========================================================================
    # Tenant settings
    # =========================================================================

    async def _topk_row(self, tenant_id: str, flow_key: str) -> Optional[FlowTopKSetting]:
        result = await self.db.execute(
            select(FlowTopKSetting).where(
                and_(
                    FlowTopKSetting.tenant_id == tenant_id,
                    FlowTopKSetting.flow_key == flow_key,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_topk_settings(self, tenant_id: str) -> List[TopKSettingRecord]:
        result = await self.db.execute(
            select(FlowTopKSetting)
            .where(FlowTopKSetting.tenant_id == tenant_id)
            .order_by(FlowTopKSetting.flow_key)
        )
        return [self._row_to_topk(r) for r in result.scalars().all()]

    async def upsert_topk_setting(
        self, tenant_id: str, flow_key: str, top_k: int
    ) -> TopKSettingRecord:
        row = await self._topk_row(tenant_id, flow_key)
        if row is None:
            row = FlowTopKSetting(tenant_id=tenant_id, flow_key=flow_key)
            self.db.add(row)
        row.top_k = top_k
        row.updated_at = utcnow()
        await self.db.flush()
        return self._row_to_topk(row)

    async def delete_topk_setting(self, tenant_id: str, flow_key: str) -> bool:
        result = await self.db.execute(
            delete(FlowTopKSetting).where(
                and_(
                    FlowTopKSetting.tenant_id == tenant_id,
                    FlowTopKSetting.flow_key == flow_key,
                )
            )
        )
        return result.rowcount > 0

    async def get_language_setting(self, tenant_id: str) -> Optional[LanguageSettingRecord]:
        row = await self.db.get(TenantLanguageSetting, tenant_id)
        return self._row_to_language(row) if row else None

    async def upsert_language_setting(
        self, tenant_id: str, language: str
    ) -> LanguageSettingRecord:
        row = await self.db.get(TenantLanguageSetting, tenant_id)
        if row is None:
            row = TenantLanguageSetting(tenant_id=tenant_id)
            self.db.add(row)
        row.language = language
        row.updated_at = utcnow()
        await self.db.flush()
        return self._row_to_language(row)

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _row_to_template(row: PromptTemplate) -> TemplateRecord:
        return TemplateRecord(
            id=row.id,
            name=row.name,
            description=row.description,
            sections=list(row.sections or []),
            version=row.version,
            kind=row.kind,
            created_by=row.created_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_assignment(row: FlowTemplateAssignment) -> AssignmentRecord:
        return AssignmentRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            flow_key=row.flow_key,
            template_id=row.template_id,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_override(row: PromptOverride) -> OverrideRecord:
        return OverrideRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            flow_key=row.flow_key,
            section_key=row.section_key,
            action=row.action,
            content=decode_content(row.content_kind, row.content),
            modified_by=row.modified_by,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_override_history(row: PromptOverrideHistory) -> OverrideHistoryRecord:
        return OverrideHistoryRecord(
            id=row.id,
            override_id=row.override_id,
            tenant_id=row.tenant_id,
            flow_key=row.flow_key,
            section_key=row.section_key,
            action=row.action,
            content=decode_content(row.content_kind, row.content),
            saved_at=row.saved_at,
            saved_by=row.saved_by,
        )

    @staticmethod
    def _row_to_topk(row: FlowTopKSetting) -> TopKSettingRecord:
        return TopKSettingRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            flow_key=row.flow_key,
            top_k=row.top_k,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_language(row: TenantLanguageSetting) -> LanguageSettingRecord:
        return LanguageSettingRecord(
            tenant_id=row.tenant_id,
            language=row.language,
            updated_at=row.updated_at,
        )
