from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional
from typing_extensions import NotRequired, TypedDict

TemplateStatus = Literal["Draft", "Approved", "Deprecated"]
TEMPLATE_STATUSES = ("Draft", "Approved", "Deprecated")

TEMPLATE_INTENTS = (
    "aggregation_by_category",
    "time_series_trend",
    "top_k",
    "latest_per_entity",
    "as_of_state",
    "pivot",
    "unpivot",
    "note_collection",
    "join_analysis",
    "legacy_unknown",
)
DEFAULT_INTENT = "legacy_unknown"

ALLOWED_SLOT_TYPES = frozenset({"guid", "int", "string", "date", "boolean", "float", "decimal"})


class PlaceholderSlot(TypedDict):
    """One named parameter of a template, as stored in placeholdersSpec JSON."""

    name: str
    type: NotRequired[str]
    semantic: NotRequired[Optional[str]]
    required: NotRequired[bool]
    default: NotRequired[Any]
    validators: NotRequired[List[str]]


class PlaceholdersSpec(TypedDict):
    slots: List[PlaceholderSlot]


class RawTemplateDraft(TypedDict, total=False):
    """Draft as returned by an AI provider. Every field may be missing or mistyped."""

    name: Any
    intent: Any
    description: Any
    sqlPattern: Any
    placeholdersSpec: Any
    keywords: Any
    tags: Any
    examples: Any


@dataclass
class TemplateDraft:
    """Normalized template candidate, ready for validation and persistence."""

    name: str
    intent: str
    sql_pattern: str
    description: Optional[str] = None
    placeholders_spec: Optional[PlaceholdersSpec] = None
    keywords: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    examples: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "intent": self.intent,
            "description": self.description,
            "sqlPattern": self.sql_pattern,
            "placeholdersSpec": self.placeholders_spec,
            "keywords": list(self.keywords),
            "tags": list(self.tags),
            "examples": list(self.examples),
        }


@dataclass
class QueryTemplate:
    """A template as seen by the catalog and returned by the lifecycle service."""

    name: str
    sql_pattern: str
    version: int = 1
    description: Optional[str] = None
    intent: Optional[str] = None
    status: Optional[str] = None
    template_id: Optional[int] = None
    template_version_id: Optional[int] = None
    placeholders: Optional[List[str]] = None
    placeholders_spec: Optional[PlaceholdersSpec] = None
    keywords: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    question_examples: List[str] = field(default_factory=list)
    success_count: int = 0
    usage_count: int = 0
    # None until the template has usage rows
    success_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "templateId": self.template_id,
            "templateVersionId": self.template_version_id,
            "name": self.name,
            "description": self.description,
            "intent": self.intent,
            "status": self.status,
            "version": self.version,
            "sqlPattern": self.sql_pattern,
            "placeholders": self.placeholders,
            "placeholdersSpec": self.placeholders_spec,
            "keywords": list(self.keywords),
            "tags": list(self.tags),
            "questionExamples": list(self.question_examples),
            "successCount": self.success_count,
            "usageCount": self.usage_count,
            "successRate": self.success_rate,
        }


@dataclass
class TemplateMatch:
    template: QueryTemplate
    score: float
    base_score: float
    matched_keywords: List[str] = field(default_factory=list)
    matched_example: Optional[str] = None
    success_rate: Optional[float] = None


@dataclass
class SimilarTemplateWarning:
    name: str
    intent: str
    similarity: float
    message: str
    template_id: Optional[int] = None
    success_rate: Optional[float] = None
    usage_count: Optional[int] = None


@dataclass
class TemplateListFilters:
    status: Optional[List[str]] = None
    intent: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    search: Optional[str] = None
    limit: int = 50
    offset: int = 0
