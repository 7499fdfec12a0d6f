"""
In-memory implementation for Tier-1 tests.

Real storage semantics, queryable, no DB dependency. Writes are staged in a
working copy and only become visible to other transactions on commit;
rollback discards them, so partial multi-step writes can be tested.
"""

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

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


@dataclass
class _State:
    templates: Dict[int, TemplateRecord] = field(default_factory=dict)
    template_history: Dict[int, TemplateHistoryRecord] = field(default_factory=dict)
    assignments: Dict[int, AssignmentRecord] = field(default_factory=dict)
    overrides: Dict[int, OverrideRecord] = field(default_factory=dict)
    override_history: Dict[int, OverrideHistoryRecord] = field(default_factory=dict)
    topk_settings: Dict[int, TopKSettingRecord] = field(default_factory=dict)
    language_settings: Dict[str, LanguageSettingRecord] = field(default_factory=dict)
    sequences: Dict[str, int] = field(default_factory=dict)

    def next_id(self, table: str) -> int:
        self.sequences[table] = self.sequences.get(table, 0) + 1
        return self.sequences[table]


class InMemoryPromptRepository:
    """
    In-memory repository with real storage semantics.

    For Tier-1 tests: verifies persisted, queryable data.
    """

    def __init__(self):
        self._committed = _State()
        self._working: Optional[_State] = None
        self.commits = 0
        self.rollbacks = 0

    # =========================================================================
    # Transaction control
    # =========================================================================

    @property
    def _read(self) -> _State:
        return self._working if self._working is not None else self._committed

    @property
    def _write(self) -> _State:
        if self._working is None:
            self._working = copy.deepcopy(self._committed)
        return self._working

    async def begin_snapshot(self) -> None:
        return None

    async def commit(self) -> None:
        if self._working is not None:
            self._committed = self._working
            self._working = None
        self.commits += 1

    async def rollback(self) -> None:
        self._working = None
        self.rollbacks += 1

    # =========================================================================
    # Templates
    # =========================================================================

    async def insert_template(self, record: TemplateRecord) -> TemplateRecord:
        state = self._write
        stored = replace(copy.deepcopy(record), id=state.next_id("templates"))
        state.templates[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_template(self, template_id: int) -> Optional[TemplateRecord]:
        record = self._read.templates.get(template_id)
        return copy.deepcopy(record) if record else None

    async def list_templates(self, kind: Optional[str] = None) -> List[TemplateRecord]:
        records = list(self._read.templates.values())
        if kind is not None:
            records = [r for r in records if r.kind == kind]
        if kind == KIND_MODULE:
            records.sort(key=lambda r: r.name)
        else:
            records.sort(key=lambda r: r.id, reverse=True)
        return copy.deepcopy(records)

    async def get_templates_by_ids(
        self, template_ids: Sequence[int], kind: Optional[str] = None
    ) -> List[TemplateRecord]:
        wanted = set(template_ids)
        records = [
            r for r in self._read.templates.values()
            if r.id in wanted and (kind is None or r.kind == kind)
        ]
        return copy.deepcopy(records)

    async def get_system_default_template(self) -> Optional[TemplateRecord]:
        for record in sorted(self._read.templates.values(), key=lambda r: r.id):
            if record.kind == KIND_SYSTEM_DEFAULT:
                return copy.deepcopy(record)
        return None

    async def update_template(
        self, template_id: int, expected_version: Optional[int] = None, **fields: Any
    ) -> bool:
        current = self._read.templates.get(template_id)
        if current is None:
            return False
        if expected_version is not None and current.version != expected_version:
            return False

        state = self._write
        fields.setdefault("updated_at", utcnow())
        state.templates[template_id] = replace(
            state.templates[template_id], **copy.deepcopy(fields)
        )
        return True

    async def delete_template(self, template_id: int) -> bool:
        if template_id not in self._read.templates:
            return False
        del self._write.templates[template_id]
        return True

    async def insert_template_history(self, record: TemplateHistoryRecord) -> None:
        state = self._write
        stored = replace(copy.deepcopy(record), id=state.next_id("template_history"))
        state.template_history[stored.id] = stored

    async def list_template_history(
        self, template_id: int, limit: Optional[int] = None
    ) -> List[TemplateHistoryRecord]:
        records = [
            r for r in self._read.template_history.values() if r.template_id == template_id
        ]
        records.sort(key=lambda r: r.id, reverse=True)
        if limit is not None:
            records = records[:limit]
        return copy.deepcopy(records)

    # =========================================================================
    # Assignments
    # =========================================================================

    def _find_assignment(self, state: _State, tenant_id: str, flow_key: str) -> Optional[AssignmentRecord]:
        for record in state.assignments.values():
            if record.tenant_id == tenant_id and record.flow_key == flow_key:
                return record
        return None

    async def upsert_assignment(
        self, tenant_id: str, flow_key: str, template_id: int
    ) -> AssignmentRecord:
        state = self._write
        existing = self._find_assignment(state, tenant_id, flow_key)
        if existing:
            existing.template_id = template_id
            existing.updated_at = utcnow()
            return copy.deepcopy(existing)

        record = AssignmentRecord(
            tenant_id=tenant_id,
            flow_key=flow_key,
            template_id=template_id,
            id=state.next_id("assignments"),
        )
        state.assignments[record.id] = record
        return copy.deepcopy(record)

    async def get_assignment(self, tenant_id: str, flow_key: str) -> Optional[AssignmentRecord]:
        record = self._find_assignment(self._read, tenant_id, flow_key)
        return copy.deepcopy(record) if record else None

    async def list_assignments(self, tenant_id: str) -> List[AssignmentRecord]:
        records = [r for r in self._read.assignments.values() if r.tenant_id == tenant_id]
        records.sort(key=lambda r: r.flow_key)
        return copy.deepcopy(records)

    async def list_assignments_for_template(self, template_id: int) -> List[AssignmentRecord]:
        records = [r for r in self._read.assignments.values() if r.template_id == template_id]
        records.sort(key=lambda r: (r.tenant_id, r.flow_key))
        return copy.deepcopy(records)

    async def delete_assignment(self, tenant_id: str, flow_key: str) -> bool:
        existing = self._find_assignment(self._read, tenant_id, flow_key)
        if existing is None:
            return False
        del self._write.assignments[existing.id]
        return True

    # =========================================================================
    # Overrides
    # =========================================================================

    def _find_override(
        self, state: _State, tenant_id: str, flow_key: str, section_key: int
    ) -> Optional[OverrideRecord]:
        for record in state.overrides.values():
            if (
                record.tenant_id == tenant_id
                and record.flow_key == flow_key
                and record.section_key == section_key
            ):
                return record
        return None

    async def get_override(
        self, tenant_id: str, flow_key: str, section_key: int
    ) -> Optional[OverrideRecord]:
        record = self._find_override(self._read, tenant_id, flow_key, section_key)
        return copy.deepcopy(record) if record else None

    async def get_override_by_id(self, override_id: int) -> Optional[OverrideRecord]:
        record = self._read.overrides.get(override_id)
        return copy.deepcopy(record) if record else None

    async def list_overrides(self, tenant_id: str, flow_key: str) -> List[OverrideRecord]:
        records = [
            r for r in self._read.overrides.values()
            if r.tenant_id == tenant_id and r.flow_key == flow_key
        ]
        records.sort(key=lambda r: r.section_key)
        return copy.deepcopy(records)

    async def list_tenant_overrides(self, tenant_id: str) -> List[OverrideRecord]:
        records = [r for r in self._read.overrides.values() if r.tenant_id == tenant_id]
        records.sort(key=lambda r: (r.flow_key, r.section_key))
        return copy.deepcopy(records)

    async def save_override(self, record: OverrideRecord) -> OverrideRecord:
        state = self._write
        existing = self._find_override(state, record.tenant_id, record.flow_key, record.section_key)
        if existing:
            stored = replace(copy.deepcopy(record), id=existing.id, updated_at=utcnow())
        else:
            stored = replace(copy.deepcopy(record), id=state.next_id("overrides"), updated_at=utcnow())
        state.overrides[stored.id] = stored
        return copy.deepcopy(stored)

    async def delete_override(self, override_id: int) -> bool:
        if override_id not in self._read.overrides:
            return False
        del self._write.overrides[override_id]
        return True

    async def insert_override_history(self, record: OverrideHistoryRecord) -> None:
        state = self._write
        stored = replace(copy.deepcopy(record), id=state.next_id("override_history"))
        state.override_history[stored.id] = stored

    async def list_override_history(
        self, tenant_id: str, flow_key: str, section_key: int, limit: Optional[int] = None
    ) -> List[OverrideHistoryRecord]:
        records = [
            r for r in self._read.override_history.values()
            if r.tenant_id == tenant_id and r.flow_key == flow_key and r.section_key == section_key
        ]
        records.sort(key=lambda r: r.id, reverse=True)
        if limit is not None:
            records = records[:limit]
        return copy.deepcopy(records)

    async def delete_override_history(self, history_id: int) -> bool:
        if history_id not in self._read.override_history:
            return False
        del self._write.override_history[history_id]
        return True

    # =========================================================================
    # Tenant settings
    # =========================================================================

    def _find_topk(self, state: _State, tenant_id: str, flow_key: str) -> Optional[TopKSettingRecord]:
        for record in state.topk_settings.values():
            if record.tenant_id == tenant_id and record.flow_key == flow_key:
                return record
        return None

    async def list_topk_settings(self, tenant_id: str) -> List[TopKSettingRecord]:
        records = [r for r in self._read.topk_settings.values() if r.tenant_id == tenant_id]
        records.sort(key=lambda r: r.flow_key)
        return copy.deepcopy(records)

    async def upsert_topk_setting(
        self, tenant_id: str, flow_key: str, top_k: int
    ) -> TopKSettingRecord:
        state = self._write
        existing = self._find_topk(state, tenant_id, flow_key)
        if existing:
            existing.top_k = top_k
            existing.updated_at = utcnow()
            return copy.deepcopy(existing)

        record = TopKSettingRecord(
            tenant_id=tenant_id,
            flow_key=flow_key,
            top_k=top_k,
            id=state.next_id("topk_settings"),
        )
        state.topk_settings[record.id] = record
        return copy.deepcopy(record)

    async def delete_topk_setting(self, tenant_id: str, flow_key: str) -> bool:
        existing = self._find_topk(self._read, tenant_id, flow_key)
        if existing is None:
            return False
        del self._write.topk_settings[existing.id]
        return True

    async def get_language_setting(self, tenant_id: str) -> Optional[LanguageSettingRecord]:
        record = self._read.language_settings.get(tenant_id)
        return copy.deepcopy(record) if record else None

    async def upsert_language_setting(
        self, tenant_id: str, language: str
    ) -> LanguageSettingRecord:
        record = LanguageSettingRecord(tenant_id=tenant_id, language=language)
        self._write.language_settings[tenant_id] = record
        return copy.deepcopy(record)
