"""
Template catalog - cached Approved templates for matching and duplicate checks

Templates come from the database when the template system is enabled, and
from the packaged YAML seed catalog otherwise (or when the database has
nothing usable).
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ...config import TemplateSystemConfig
from ...exceptions import ConfigurationError
from ...utils.helpers import clamp01, compute_success_rate, jaccard_similarity, tokenize
from .models import QueryTemplate, SimilarTemplateWarning, TemplateDraft, TemplateMatch
from .placeholders import normalize_string_list
from .validator import validate_template

logger = logging.getLogger(__name__)

# Token -> intent, first hit in this order wins
_INTENT_HINTS = (
    (("trend", "time", "series"), "time_series_trend"),
    (("aggregate", "aggregation", "count"), "aggregation_by_category"),
    (("top", "ranking"), "top_k"),
    (("latest", "earliest"), "latest_per_entity"),
    (("current", "state"), "as_of_state"),
    (("pivot",), "pivot"),
    (("unpivot",), "unpivot"),
    (("note", "notes"), "note_collection"),
    (("join", "combine"), "join_analysis"),
)

KEYWORD_WEIGHT = 3
TOKEN_WEIGHT = 1
EXAMPLE_WEIGHT = 4


def infer_intent(template: QueryTemplate) -> str:
    """Guess an intent for a seed template that does not declare one"""
    tokens = set()
    for value in list(template.keywords) + list(template.tags) + [template.name]:
        tokens |= tokenize(value)
    for hints, intent in _INTENT_HINTS:
        if any(hint in tokens for hint in hints):
            return intent
    return "legacy_unknown"


def template_from_catalog_entry(entry: Dict[str, Any]) -> QueryTemplate:
    """Build a QueryTemplate from one (already validated) YAML entry"""
    spec = entry.get("placeholdersSpec")
    placeholders = entry.get("placeholders")
    template = QueryTemplate(
        name=entry["name"].strip(),
        version=int(entry["version"]),
        description=entry.get("description"),
        intent=entry.get("intent"),
        status=entry.get("status") or "Approved",
        sql_pattern=entry["sqlPattern"],
        placeholders=normalize_string_list(placeholders) if placeholders is not None else None,
        placeholders_spec=spec if isinstance(spec, dict) else None,
        keywords=normalize_string_list(entry.get("keywords")),
        tags=normalize_string_list(entry.get("tags")),
        question_examples=normalize_string_list(entry.get("questionExamples")),
    )
    if not template.intent:
        template.intent = infer_intent(template)
    return template


def validate_catalog(entries: Any) -> List[QueryTemplate]:
    """
    Validate raw catalog entries and convert them to templates

    Args:
        entries: The `templates` list of the YAML document

    Returns:
        Templates, in catalog order

    Raises:
        ConfigurationError: When any entry has validation errors
    """
    if not isinstance(entries, list):
        raise ConfigurationError("Template catalog must contain a 'templates' list")

    errors: List[str] = []
    warnings: List[str] = []
    templates: List[QueryTemplate] = []

    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"Template[{index}] is not an object.")
            continue

        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append(f"Template[{index}] missing valid 'name'.")
            continue

        version = entry.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            errors.append(f"Template '{name}' missing valid 'version'.")

        sql_pattern = entry.get("sqlPattern")
        if not isinstance(sql_pattern, str) or not sql_pattern.strip():
            errors.append(f"Template '{name}' missing valid 'sqlPattern'.")
            continue

        placeholders = entry.get("placeholders")
        result = validate_template(
            sql_pattern,
            name=name,
            placeholders=normalize_string_list(placeholders) if placeholders is not None else None,
            placeholders_spec=entry.get("placeholdersSpec"),
        )
        errors.extend(issue.message for issue in result.errors)
        warnings.extend(issue.message for issue in result.warnings)

        if not errors:
            templates.append(template_from_catalog_entry(entry))

    for message in warnings:
        logger.warning(message)

    if errors:
        raise ConfigurationError("Invalid template catalog:\n" + "\n".join(errors))

    return templates


def load_catalog_file(path: Path) -> List[QueryTemplate]:
    if not path.exists():
        raise ConfigurationError(f"Template catalog not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in template catalog {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Template catalog {path} must be a mapping with a 'templates' list")
    return validate_catalog(data.get("templates"))


def _template_tokens(name: Optional[str], description: Optional[str], keywords, tags) -> set:
    tokens = tokenize(name) | tokenize(description)
    for value in list(keywords or []) + list(tags or []):
        tokens |= tokenize(value)
    return tokens


def _similarity_message(name: str, similarity: float, success_rate: Optional[float], usage_count: int) -> str:
    message = f'Template "{name}" is {round(similarity * 100)}% similar'
    if success_rate is not None:
        message += f" ({round(success_rate * 100)}% success rate)"
    if usage_count > 0:
        message += f" with {usage_count} uses"
    return message + ". Consider reviewing before creating a duplicate."


class TemplateCatalog:
    """Lazily loaded, explicitly invalidated cache of Approved templates"""

    def __init__(self, config: TemplateSystemConfig, repository: Optional[Any] = None):
        """
        Args:
            config: Template system settings
            repository: TemplateRepository used when the template system is enabled
        """
        self.config = config
        self.repository = repository
        self._templates: Optional[List[QueryTemplate]] = None
        self._lock: Optional[asyncio.Lock] = None
        self._fallback_warned = False

    async def get_templates(self, force_reload: bool = False) -> List[QueryTemplate]:
        if self._templates is not None and not force_reload:
            return self._templates

        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._templates is None or force_reload:
                self._templates = await self._load()
                logger.info(f"Template catalog loaded with {len(self._templates)} templates")
            return self._templates

    def invalidate(self) -> None:
        """Drop cached templates; the next read loads them again"""
        self._templates = None

    async def reload(self) -> List[QueryTemplate]:
        self.invalidate()
        return await self.get_templates(force_reload=True)

    async def _load(self) -> List[QueryTemplate]:
        if self.config.is_template_system_enabled() and self.repository is not None:
            try:
                async with self.repository.connection() as conn:
                    templates = await self.repository.fetch_approved_templates(conn)
                if templates:
                    return templates
                self._warn_fallback("no approved templates found in DB (seed may not have been run yet)")
            except Exception as e:
                self._warn_fallback(f"failed to load templates from DB: {e}")

        return load_catalog_file(self.config.catalog_path)

    def _warn_fallback(self, reason: str) -> None:
        if self._fallback_warned:
            return
        self._fallback_warned = True
        logger.warning(
            f"AI_TEMPLATES_ENABLED is true, but {reason}. Falling back to YAML catalog."
        )

    # ============================================================================
    # Matching
    # ============================================================================

    async def match_templates(self, question: str, k: int = 2) -> List[TemplateMatch]:
        """
        Rank catalog templates against a natural language question

        Args:
            question: User question
            k: Number of matches to return

        Returns:
            Up to k matches, best first
        """
        question_tokens = tokenize(question)
        if not question_tokens or k <= 0:
            return []

        matches: List[TemplateMatch] = []
        for template in await self.get_templates():
            matched_keywords = [
                keyword.lower() for keyword in template.keywords if keyword.lower() in question_tokens
            ]
            token_hits = len(question_tokens & (tokenize(template.name) | tokenize(template.description)))

            best_example: Optional[str] = None
            best_similarity = 0.0
            for example in template.question_examples:
                similarity = jaccard_similarity(question_tokens, tokenize(example))
                if similarity > best_similarity:
                    best_similarity = similarity
                    best_example = example

            base_score = (
                KEYWORD_WEIGHT * len(matched_keywords)
                + TOKEN_WEIGHT * token_hits
                + EXAMPLE_WEIGHT * best_similarity
            )
            success_rate = clamp01(template.success_rate) if template.success_rate is not None else None
            score = base_score * (1 + success_rate) if success_rate is not None else base_score
            matches.append(TemplateMatch(
                template=template,
                score=score,
                base_score=base_score,
                matched_keywords=matched_keywords,
                matched_example=best_example,
                success_rate=success_rate,
            ))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:k]

    async def check_similar_templates(self, draft: TemplateDraft) -> List[SimilarTemplateWarning]:
        """Near-duplicates of a draft among non-Deprecated templates with the same intent"""
        if not (draft.name or "").strip() or not (draft.intent or "").strip():
            return []

        draft_tokens = _template_tokens(draft.name, draft.description, draft.keywords, draft.tags)
        if not draft_tokens:
            return []

        threshold = self.config.similarity_threshold
        warnings: List[SimilarTemplateWarning] = []
        for template in await self.get_templates():
            if template.intent != draft.intent or template.status == "Deprecated":
                continue
            similarity = jaccard_similarity(
                draft_tokens,
                _template_tokens(template.name, template.description, template.keywords, template.tags),
            )
            if similarity < threshold:
                continue

            success_rate = template.success_rate
            if success_rate is None:
                success_rate = compute_success_rate(template.success_count, template.usage_count)
            warnings.append(SimilarTemplateWarning(
                template_id=template.template_id,
                name=template.name,
                intent=template.intent,
                similarity=similarity,
                success_rate=success_rate,
                usage_count=template.usage_count,
                message=_similarity_message(template.name, similarity, success_rate, template.usage_count),
            ))

        # Similarity first; near-equal similarities are ordered by success rate
        def sort_key(warning: SimilarTemplateWarning):
            return (-round(warning.similarity / 0.001), -(warning.success_rate or 0.0))

        warnings.sort(key=sort_key)
        return warnings
