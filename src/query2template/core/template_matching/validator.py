"""
Template validation rules

Each rule returns a ValidationResult and owns one `code` namespace
(placeholder.*, sql.*, spec.*). validate_template runs every rule and
concatenates the results; it is the entry point for gating persistence
and publish. Rules never raise.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import ALLOWED_SLOT_TYPES
from .placeholders import PLACEHOLDER_PATTERN, normalize_placeholder

DANGEROUS_KEYWORDS = (
    "DROP",
    "DELETE",
    "UPDATE",
    "INSERT",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "EXEC",
    "EXECUTE",
    " SP_",
    " XP_",
)

_SLOT_TYPE_LIST = ", ".join(sorted(ALLOWED_SLOT_TYPES))

_STEP_RESULTS_TOKEN = re.compile(r"\bSTEP\d+_RESULTS\b", re.IGNORECASE)
_WITH_STEP_CTE = re.compile(r"\bWITH\s+STEP\d+\s+AS\b", re.IGNORECASE)
_FROM_OR_JOIN = re.compile(r"\b(FROM|JOIN)\b", re.IGNORECASE)
_RPT_PREFIX = re.compile(r"\brpt\.", re.IGNORECASE)


@dataclass
class ValidationIssue:
    code: str
    message: str
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.meta is not None:
            data["meta"] = dict(self.meta)
        return data


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def extend(self, other: "ValidationResult") -> "ValidationResult":
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        return self

    def codes(self) -> List[str]:
        return [issue.code for issue in self.errors + self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


def _format_message(template_name: Optional[str], message: str) -> str:
    if not template_name:
        return message
    return f"Template '{template_name}': {message}"


# ============================================================================
# Placeholder coverage
# ============================================================================

def validate_placeholders(
    sql_pattern: str,
    placeholders: Optional[List[str]] = None,
    placeholders_spec: Optional[Dict[str, Any]] = None,
    template_name: Optional[str] = None,
) -> ValidationResult:
    """
    Cross-check SQL tokens against declared placeholders and spec slots.

    Matching is done on normalize_placeholder keys, so `{patientId}`,
    `{patientid}` and `{patientId?}` all satisfy a slot named patientId.

    Args:
        sql_pattern: SQL text with `{name}` tokens
        placeholders: Flat list of declared placeholder names, if any
        placeholders_spec: Structured spec whose slot names also count as declared
        template_name: Prefix for messages

    Returns:
        ValidationResult with missingDeclaration errors and unused warnings
    """
    result = ValidationResult()
    declared: Dict[str, str] = {}

    for placeholder in placeholders or []:
        if not isinstance(placeholder, str) or not placeholder.strip():
            continue
        declared.setdefault(normalize_placeholder(placeholder), placeholder.strip())

    slots = placeholders_spec.get("slots") if isinstance(placeholders_spec, dict) else None
    if isinstance(slots, list):
        for slot in slots:
            name = slot.get("name") if isinstance(slot, dict) else None
            if not isinstance(name, str) or not name.strip():
                continue
            declared.setdefault(normalize_placeholder(name), name.strip())

    referenced: Dict[str, str] = {}
    for match in PLACEHOLDER_PATTERN.finditer(sql_pattern or ""):
        token = match.group(1).strip()
        referenced.setdefault(normalize_placeholder(token), token)

    for key, token in referenced.items():
        if key not in declared:
            result.errors.append(ValidationIssue(
                code="placeholder.missingDeclaration",
                message=_format_message(
                    template_name,
                    f"Placeholder '{{{token}}}' is used in SQL but not declared in placeholders or spec.",
                ),
                meta={"placeholder": token},
            ))

    for key, original in declared.items():
        if key not in referenced:
            result.warnings.append(ValidationIssue(
                code="placeholder.unused",
                message=_format_message(
                    template_name,
                    f"Placeholder '{{{original}}}' is declared but not used in sqlPattern.",
                ),
                meta={"placeholder": original},
            ))

    return result


# ============================================================================
# SQL safety and conventions
# ============================================================================

def validate_safety(sql_pattern: str, template_name: Optional[str] = None) -> ValidationResult:
    """Substring scan for write/DDL/procedure keywords plus a SELECT/WITH start check"""
    result = ValidationResult()
    upper = (sql_pattern or "").strip().upper()

    for keyword in DANGEROUS_KEYWORDS:
        if keyword in upper:
            result.errors.append(ValidationIssue(
                code="sql.dangerousKeyword",
                message=_format_message(
                    template_name,
                    f"sqlPattern contains potentially dangerous keyword '{keyword.strip()}'.",
                ),
                meta={"keyword": keyword.strip()},
            ))

    if not (upper.startswith("SELECT") or upper.startswith("WITH")):
        result.warnings.append(ValidationIssue(
            code="sql.nonSelectStart",
            message=_format_message(
                template_name,
                "sqlPattern does not start with SELECT or WITH; it will be treated as a fragment.",
            ),
        ))

    return result


def validate_schema_prefix(sql_pattern: str, template_name: Optional[str] = None) -> ValidationResult:
    result = ValidationResult()
    sql_pattern = sql_pattern or ""

    if _FROM_OR_JOIN.search(sql_pattern) and not _RPT_PREFIX.search(sql_pattern):
        result.warnings.append(ValidationIssue(
            code="sql.schemaPrefixMissing",
            message=_format_message(
                template_name,
                "Tables referenced in sqlPattern are missing the 'rpt.' schema prefix.",
            ),
        ))

    return result


# ============================================================================
# placeholdersSpec shape
# ============================================================================

def validate_placeholders_spec(spec: Any, template_name: Optional[str] = None) -> ValidationResult:
    """
    Check the structure of a placeholdersSpec.

    A missing spec is only a warning (legacy templates omit it). Slot names
    are compared after trimming, without any other normalization.
    """
    result = ValidationResult()

    if not spec:
        result.warnings.append(ValidationIssue(
            code="spec.missing",
            message=_format_message(
                template_name,
                "placeholdersSpec missing; authoring UI will not have structured metadata.",
            ),
        ))
        return result

    slots = spec.get("slots") if isinstance(spec, dict) else None
    if not isinstance(slots, list):
        result.errors.append(ValidationIssue(
            code="spec.invalidShape",
            message=_format_message(template_name, "placeholdersSpec.slots must be an array."),
        ))
        return result

    seen = set()
    for index, slot in enumerate(slots):
        prefix = f"Slot #{index + 1}"
        raw_name = slot.get("name") if isinstance(slot, dict) else None
        name = raw_name.strip() if isinstance(raw_name, str) else ""

        if not name:
            result.errors.append(ValidationIssue(
                code="spec.slot.missingName",
                message=_format_message(
                    template_name, f"{prefix}: name is required for each placeholder slot."
                ),
                meta={"index": index},
            ))
            continue

        if name in seen:
            result.errors.append(ValidationIssue(
                code="spec.slot.duplicateName",
                message=_format_message(template_name, f"{prefix}: duplicate slot name '{name}'."),
                meta={"index": index, "name": name},
            ))
        seen.add(name)

        slot_type = slot.get("type")
        if slot_type and (not isinstance(slot_type, str) or slot_type not in ALLOWED_SLOT_TYPES):
            result.warnings.append(ValidationIssue(
                code="spec.slot.unknownType",
                message=_format_message(
                    template_name,
                    f"{prefix}: type '{slot_type}' is not in the allowed set ({_SLOT_TYPE_LIST}).",
                ),
                meta={"index": index, "type": slot_type},
            ))

        validators = slot.get("validators")
        if isinstance(validators, list) and any(not isinstance(rule, str) for rule in validators):
            result.warnings.append(ValidationIssue(
                code="spec.slot.invalidValidator",
                message=_format_message(template_name, f"{prefix}: validator entries must be strings."),
                meta={"index": index},
            ))

    return result


# ============================================================================
# Funnel scaffold residue
# ============================================================================

def detect_funnel_scaffold(sql_pattern: str, template_name: Optional[str] = None) -> ValidationResult:
    """
    Warn when SQL still carries funnel step CTEs.

    Step<N>_Results tokens are reported with their distinct (uppercased)
    identifiers and total occurrence count. A bare `WITH Step<N> AS` is only
    reported when no Step<N>_Results token was found.
    """
    result = ValidationResult()
    sql_pattern = sql_pattern or ""

    occurrences = [match.group(0).upper() for match in _STEP_RESULTS_TOKEN.finditer(sql_pattern)]
    if occurrences:
        identifiers = list(dict.fromkeys(occurrences))
        result.warnings.append(ValidationIssue(
            code="sql.funnelScaffold",
            message=_format_message(
                template_name,
                "sqlPattern contains funnel scaffolding CTEs "
                f"({', '.join(identifiers)}). Templates should be simplified to a single "
                "query without Step*_Results references.",
            ),
            meta={"scaffold_identifiers": identifiers, "count": len(occurrences)},
        ))
        return result

    step_cte = _WITH_STEP_CTE.search(sql_pattern)
    if step_cte:
        matched = re.sub(r"\s+", " ", step_cte.group(0))
        result.warnings.append(ValidationIssue(
            code="sql.funnelScaffold",
            message=_format_message(
                template_name,
                f"sqlPattern contains funnel step CTE '{matched}'. "
                "Templates should be simplified to a single query.",
            ),
            meta={"pattern": "WITH Step<N> AS"},
        ))

    return result


# ============================================================================
# Composite
# ============================================================================

def validate_template(
    sql_pattern: str,
    name: Optional[str] = None,
    placeholders: Optional[List[str]] = None,
    placeholders_spec: Any = None,
) -> ValidationResult:
    """
    Run every rule and concatenate their errors and warnings.

    Args:
        sql_pattern: Template SQL
        name: Template name used as message prefix
        placeholders: Declared placeholder names (in addition to spec slots)
        placeholders_spec: Structured slot spec

    Returns:
        Aggregate ValidationResult; valid when no rule produced an error
    """
    result = ValidationResult()
    result.extend(validate_placeholders(sql_pattern, placeholders, placeholders_spec, name))
    result.extend(validate_safety(sql_pattern, name))
    result.extend(validate_schema_prefix(sql_pattern, name))
    result.extend(validate_placeholders_spec(placeholders_spec, name))
    result.extend(detect_funnel_scaffold(sql_pattern, name))
    return result


def join_validation_messages(result: ValidationResult) -> Dict[str, List[str]]:
    return {
        "errors": [issue.message for issue in result.errors],
        "warnings": [issue.message for issue in result.warnings],
    }
