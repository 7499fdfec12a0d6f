"""
Pure data transformation functions for prompt composition.

These functions contain NO I/O, NO database access, NO logging.
They are deterministic, testable transformations of in-memory data;
the only time-dependent function takes the current time as an argument.

Used by PromptBuildService (composition) and TemplateService (section
validation and key allocation).
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from app.domain.prompt.errors import EmptyCompositionError, ValidationError


# Placeholder syntax: {{module:<id>:<name>}}
MODULE_REFERENCE_PATTERN = re.compile(r"\{\{module:(\d+):([^}]+)\}\}")

SECTION_SEPARATOR = "\n\n"

ACTION_ADD = "add"
ACTION_MODIFY = "modify"
ACTION_REMOVE = "remove"
VALID_ACTIONS = {ACTION_ADD, ACTION_MODIFY, ACTION_REMOVE}

IMAGE_FALLBACK_SECTION = (
    "You are an AI assistant that analyzes images and provides detailed "
    "descriptions. When a user uploads an image, describe what you see in "
    "detail, including objects, people, text, colors, and any other relevant "
    "information. Be specific and helpful in your description."
)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)


@dataclass(frozen=True)
class ModuleReference:
    """One occurrence of a module placeholder in composed text."""
    full_match: str
    module_id: int
    module_name: str


# ---------------------------------------------------------------------------
# normalize_sections  (composition step 1)
# ---------------------------------------------------------------------------

def _is_int_key(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_sections(raw_sections: Optional[Sequence[Any]]) -> List[Tuple[int, str]]:
    """
    Normalize stored sections to (key, content) pairs.

    Legacy rows may hold bare strings or dicts without an integer key. If any
    section lacks one, the whole list is keyed by position so keys never
    collide; bare strings become the content.

    Args:
        raw_sections: Sections as stored (list of dicts or strings)

    Returns:
        List of (key, content) pairs in stored order
    """
    if not raw_sections:
        return []

    def _content(section: Any) -> str:
        if isinstance(section, dict):
            value = section.get("content")
            return "" if value is None else str(value)
        return "" if section is None else str(section)

    all_keyed = all(
        isinstance(section, dict) and _is_int_key(section.get("key"))
        for section in raw_sections
    )
    if all_keyed:
        return [(section["key"], _content(section)) for section in raw_sections]

    return [(index, _content(section)) for index, section in enumerate(raw_sections)]


# ---------------------------------------------------------------------------
# apply_overrides  (composition steps 2-3)
# ---------------------------------------------------------------------------

def apply_overrides(
    base_sections: Iterable[Tuple[int, str]],
    overrides: Iterable[Tuple[int, str, str]],
) -> Dict[int, str]:
    """
    Layer overrides over base sections.

    Args:
        base_sections: (key, content) pairs from the base template
        overrides: (section_key, action, text) triples; text is already
            unwrapped from any module envelope

    Returns:
        Ordered map of key -> content (insertion order from the base)
    """
    section_map: Dict[int, str] = dict(base_sections)

    for section_key, action, text in overrides:
        if action == ACTION_REMOVE:
            section_map.pop(section_key, None)
        elif action in (ACTION_ADD, ACTION_MODIFY):
            section_map[section_key] = text

    return section_map


# ---------------------------------------------------------------------------
# join_sections  (composition step 4)
# ---------------------------------------------------------------------------

def join_sections(section_map: Dict[int, str], flow_key: str) -> str:
    """
    Sort by key, trim each section and join with a blank line.

    Raises:
        EmptyCompositionError: If there are no sections, or the joined text
            is empty after trimming
    """
    ordered = sorted(section_map.items(), key=lambda item: item[0])

    if not ordered:
        raise EmptyCompositionError(
            flow_key,
            f"No template content available for flow '{flow_key}'. "
            "Please configure a template for this tenant and flow.",
        )

    prompt = SECTION_SEPARATOR.join(content.strip() for _, content in ordered).strip()

    if not prompt:
        raise EmptyCompositionError(
            flow_key,
            f"Template content is empty for flow '{flow_key}'. "
            "Please configure proper template content for this flow.",
        )

    return prompt


def compose_sections(
    raw_sections: Optional[Sequence[Any]],
    overrides: Iterable[Tuple[int, str, str]],
    flow_key: str,
) -> str:
    """Steps 1-4: normalize, override, order and join."""
    return join_sections(apply_overrides(normalize_sections(raw_sections), overrides), flow_key)


# ---------------------------------------------------------------------------
# module references  (composition step 5)
# ---------------------------------------------------------------------------

def scan_module_references(text: str) -> List[ModuleReference]:
    """Find module placeholders in lexical order."""
    return [
        ModuleReference(
            full_match=match.group(0),
            module_id=int(match.group(1)),
            module_name=match.group(2),
        )
        for match in MODULE_REFERENCE_PATTERN.finditer(text)
    ]


def distinct_module_ids(references: Iterable[ModuleReference]) -> List[int]:
    """Distinct module ids, first occurrence wins."""
    seen: set[int] = set()
    result: list[int] = []
    for reference in references:
        if reference.module_id not in seen:
            seen.add(reference.module_id)
            result.append(reference.module_id)
    return result


def render_module_content(raw_sections: Optional[Sequence[Any]]) -> str:
    """
    Render a module's own text: sections sorted by key, trimmed, empty
    sections dropped, joined with a blank line. No overrides apply.
    """
    ordered = sorted(normalize_sections(raw_sections), key=lambda item: item[0])
    parts = [content.strip() for _, content in ordered]
    return SECTION_SEPARATOR.join(part for part in parts if part)


def resolve_module_references(
    text: str,
    module_contents: Dict[int, str],
) -> Tuple[str, List[ModuleReference]]:
    """
    Replace module placeholders with module content.

    Single level: inlined module text is not scanned again. Placeholders
    whose module is unknown, or renders to empty text, stay literal.

    Args:
        text: Composed prompt text
        module_contents: Map of module id -> rendered module content

    Returns:
        (resolved text, unresolved references)
    """
    references = scan_module_references(text)
    if not references:
        return text, []

    # Replacements are computed against the original text so that module
    # content is never re-scanned.
    replacements: Dict[str, str] = {}
    unresolved: List[ModuleReference] = []
    for reference in references:
        if reference.full_match in replacements:
            continue
        content = module_contents.get(reference.module_id)
        if content:
            replacements[reference.full_match] = content
        elif reference not in unresolved:
            unresolved.append(reference)

    if not replacements:
        return text, unresolved

    pattern = re.compile("|".join(re.escape(token) for token in replacements))
    resolved = pattern.sub(lambda match: replacements[match.group(0)], text)
    return resolved, unresolved


# ---------------------------------------------------------------------------
# time context  (composition step 6)
# ---------------------------------------------------------------------------

def ordinal_suffix(day: int) -> str:
    if 3 < day < 21:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")


def format_time_context(now: datetime) -> str:
    """
    Describe the given local time in a fixed English form.

    Example: "It is currently monday the 18th of october 14:05"
    """
    weekday = _WEEKDAYS[now.weekday()]
    month = _MONTHS[now.month - 1]
    return (
        f"It is currently {weekday} the {now.day}{ordinal_suffix(now.day)} "
        f"of {month} {now.hour:02d}:{now.minute:02d}"
    )


def append_time_context(prompt: str, now: datetime) -> str:
    """Append the time paragraph, only if the prompt is non-empty."""
    if not prompt.strip():
        return prompt
    return f"{prompt}{SECTION_SEPARATOR}{format_time_context(now)}"


# ---------------------------------------------------------------------------
# section validation and key allocation  (template writes)
# ---------------------------------------------------------------------------

def validate_sections(sections: Any) -> List[Dict[str, Any]]:
    """
    Validate sections submitted for a template write.

    Returns:
        Sections as plain {key, content} dicts, in submitted order

    Raises:
        ValidationError: If sections is not a list of {key:int, content:str}
            with unique keys
    """
    if not isinstance(sections, list):
        raise ValidationError("sections must be a list")

    cleaned: List[Dict[str, Any]] = []
    seen: set[int] = set()
    for index, section in enumerate(sections):
        if not isinstance(section, dict):
            raise ValidationError(f"section {index} must be an object with key and content")
        key = section.get("key")
        if not _is_int_key(key):
            raise ValidationError(f"section {index} key must be an integer")
        content = section.get("content", "")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ValidationError(f"section {key} content must be a string")
        if key in seen:
            raise ValidationError(f"duplicate section key {key}")
        seen.add(key)
        cleaned.append({"key": key, "content": content})

    return cleaned


def allocate_section_key(
    existing_keys: Iterable[int],
    insert_after_key: Optional[int] = None,
    section_key: Optional[int] = None,
) -> int:
    """
    Choose the key for a section inserted into a template.

    With insert_after_key present in the template:
    - a following section exists and the gap is >= 2: midpoint of the gap
    - a following section exists and the gap is 1: prev * 10 + 5
    - collisions are resolved by incrementing
    - no following section: prev + 1

    With insert_after_key absent from the template: section_key, or 1000.
    Without insert_after_key: section_key is required and must be free.

    Raises:
        ValidationError: If no key can be determined or it is taken
    """
    keys = sorted(set(existing_keys))
    taken = set(keys)

    if insert_after_key is None:
        if section_key is None:
            raise ValidationError("section_key is required when insert_after_key is not given")
        if section_key in taken:
            raise ValidationError(f"section key {section_key} already exists")
        return section_key

    if insert_after_key not in taken:
        key = section_key if section_key is not None else 1000
        if key in taken:
            raise ValidationError(f"section key {key} already exists")
        return key

    position = keys.index(insert_after_key)
    if position + 1 >= len(keys):
        return insert_after_key + 1

    following = keys[position + 1]
    gap = following - insert_after_key
    if gap >= 2:
        key = insert_after_key + gap // 2
    else:
        key = insert_after_key * 10 + 5

    while key in taken:
        key += 1
    return key


def sort_sections(sections: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(sections, key=lambda section: section["key"])
