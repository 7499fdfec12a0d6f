"""
Override content variants.

An override's value is either plain text or a section pulled in from a module
in the tenant's editing UI. The module variant carries provenance so the UI
can show where the text came from; composition only ever uses the text.

Storage encoding (explicit, selected by the row's content_kind):
- "plain":  the text as-is
- "module": JSON envelope {content, isModuleSection, moduleId, moduleName,
            originalModuleSectionKey, parentSectionKey}
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from app.domain.prompt.errors import ValidationError


CONTENT_KIND_PLAIN = "plain"
CONTENT_KIND_MODULE = "module"


@dataclass(frozen=True)
class PlainText:
    text: str = ""

    @property
    def raw_text(self) -> str:
        return self.text


@dataclass(frozen=True)
class ModuleSection:
    """Override text that originated from a module section."""
    content: str
    module_id: Optional[int] = None
    module_name: Optional[str] = None
    original_section_key: Optional[int] = None
    parent_section_key: Optional[int] = None

    @property
    def raw_text(self) -> str:
        return self.content


OverrideContent = Union[PlainText, ModuleSection]


def raw_text(content: OverrideContent) -> str:
    """Text used at composition time, unwrapped from any module envelope."""
    return content.raw_text


def encode_content(content: OverrideContent) -> Tuple[str, str]:
    """Serialize content for storage. Returns (content_kind, stored_text)."""
    if isinstance(content, ModuleSection):
        envelope = {
            "content": content.content,
            "isModuleSection": True,
            "moduleId": content.module_id,
            "moduleName": content.module_name,
            "originalModuleSectionKey": content.original_section_key,
            "parentSectionKey": content.parent_section_key,
        }
        return CONTENT_KIND_MODULE, json.dumps(envelope)
    return CONTENT_KIND_PLAIN, content.text


def decode_content(content_kind: Optional[str], stored: Optional[str]) -> OverrideContent:
    """Deserialize stored content according to its kind."""
    if content_kind == CONTENT_KIND_MODULE:
        envelope = json.loads(stored or "{}")
        return ModuleSection(
            content=envelope.get("content") or "",
            module_id=envelope.get("moduleId"),
            module_name=envelope.get("moduleName"),
            original_section_key=envelope.get("originalModuleSectionKey"),
            parent_section_key=envelope.get("parentSectionKey"),
        )
    return PlainText(stored or "")


def content_from_payload(
    content: Optional[str],
    is_module_section: bool = False,
    module_id: Optional[int] = None,
    module_name: Optional[str] = None,
    original_section_key: Optional[int] = None,
    parent_section_key: Optional[int] = None,
) -> OverrideContent:
    """Build a content variant from flat request fields."""
    if content is not None and not isinstance(content, str):
        raise ValidationError("content must be a string")
    if is_module_section:
        return ModuleSection(
            content=content or "",
            module_id=module_id,
            module_name=module_name,
            original_section_key=original_section_key,
            parent_section_key=parent_section_key,
        )
    return PlainText(content or "")


def content_to_dict(content: OverrideContent) -> Dict[str, Any]:
    """Flat representation for API responses."""
    if isinstance(content, ModuleSection):
        return {
            "content": content.content,
            "is_module_section": True,
            "module_id": content.module_id,
            "module_name": content.module_name,
            "original_module_section_key": content.original_section_key,
            "parent_section_key": content.parent_section_key,
        }
    return {"content": content.text, "is_module_section": False}
