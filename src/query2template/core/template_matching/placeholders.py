"""
Placeholder / slot normalization

Keeps the `{placeholder}` tokens inside a SQL pattern and the structured
placeholdersSpec slot list in agreement. Nothing here raises: malformed
slot entries are dropped.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional

from .models import PlaceholderSlot, PlaceholdersSpec

PLACEHOLDER_PATTERN = re.compile(r"\{([a-zA-Z0-9_\[\]\?]+)\}")


def normalize_placeholder(name: str) -> str:
    """Matching key for a placeholder: one trailing '[]' then one '?' removed, lowercased"""
    key = name.strip()
    if key.endswith("[]"):
        key = key[:-2]
    if key.endswith("?"):
        key = key[:-1]
    return key.lower()


def extract_placeholders(sql_pattern: Optional[str]) -> List[str]:
    """
    Raw placeholder tokens referenced in SQL, in order of first appearance

    Args:
        sql_pattern: SQL text containing `{name}` tokens

    Returns:
        Distinct raw token texts (decorations kept)
    """
    if not isinstance(sql_pattern, str):
        return []

    tokens: List[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(sql_pattern):
        token = match.group(1).strip()
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def normalize_string_list(values: Any) -> List[str]:
    """Trim, drop empties and non-strings, dedupe preserving first-seen order"""
    if not isinstance(values, (list, tuple)):
        return []

    result: List[str] = []
    seen = set()
    for value in values:
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        result.append(trimmed)
    return result


def _coerce_validators(validators: Iterable[Any]) -> List[str]:
    coerced = []
    for rule in validators:
        if isinstance(rule, str):
            coerced.append(rule)
        elif isinstance(rule, (int, float, bool)):
            coerced.append(str(rule))
    return normalize_string_list(coerced)


def _normalize_slot(raw: Any) -> Optional[PlaceholderSlot]:
    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        return None

    slot: PlaceholderSlot = {"name": name.strip()}
    if isinstance(raw.get("type"), str) and raw["type"].strip():
        slot["type"] = raw["type"].strip()
    if isinstance(raw.get("semantic"), str) and raw["semantic"].strip():
        slot["semantic"] = raw["semantic"].strip()
    if isinstance(raw.get("required"), bool):
        slot["required"] = raw["required"]
    if "default" in raw and raw["default"] is not None:
        slot["default"] = raw["default"]
    if isinstance(raw.get("validators"), (list, tuple)):
        slot["validators"] = _coerce_validators(raw["validators"])
    return slot


def derive_slots(spec: Any) -> Optional[PlaceholdersSpec]:
    """
    Normalize a raw placeholdersSpec into well-formed slots

    Args:
        spec: Anything; expected shape is {"slots": [{"name": ...}, ...]}

    Returns:
        PlaceholdersSpec with only named slots, or None if none survive
    """
    if not isinstance(spec, dict) or not isinstance(spec.get("slots"), (list, tuple)):
        return None

    slots = [slot for slot in (_normalize_slot(raw) for raw in spec["slots"]) if slot]
    if not slots:
        return None
    return {"slots": slots}


def ensure_coverage(spec: Optional[PlaceholdersSpec], sql_pattern: str) -> Optional[PlaceholdersSpec]:
    """
    Append a minimal slot for every SQL placeholder the spec does not declare

    The appended slot uses the raw token text as its name. Existing slots are
    kept in order and are not modified.
    """
    slots: List[PlaceholderSlot] = list(spec["slots"]) if spec and spec.get("slots") else []
    existing = {normalize_placeholder(slot["name"]) for slot in slots}

    for token in extract_placeholders(sql_pattern):
        key = normalize_placeholder(token)
        if key in existing:
            continue
        slots.append({"name": token})
        existing.add(key)

    return {"slots": slots} if slots else None


def derive_placeholder_list(spec: Optional[PlaceholdersSpec], sql_pattern: str) -> List[str]:
    """Normalized union of declared slot names and SQL tokens, slot names first"""
    placeholders: List[str] = []

    def add(name: Any) -> None:
        if not isinstance(name, str) or not name.strip():
            return
        key = normalize_placeholder(name)
        if key not in placeholders:
            placeholders.append(key)

    if spec and isinstance(spec.get("slots"), list):
        for slot in spec["slots"]:
            if isinstance(slot, dict):
                add(slot.get("name"))

    for token in extract_placeholders(sql_pattern):
        add(token)

    return placeholders
