"""Template extraction - turns an AI-drafted (question, SQL) mapping into a template candidate"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...config import TemplateSystemConfig
from ...exceptions import TemplateServiceError
from ...llm.providers import ProviderRegistry, TemplateDraftRequest
from ...utils.helpers import first_non_blank
from .models import DEFAULT_INTENT, TEMPLATE_INTENTS, SimilarTemplateWarning, TemplateDraft
from .placeholders import derive_placeholder_list, derive_slots, ensure_coverage, normalize_string_list
from .scaffold import simplify_funnel_sql
from .validator import ValidationResult, validate_template

logger = logging.getLogger(__name__)

SCAFFOLD_REMOVAL_WARNING = (
    "Removed funnel scaffolding (Step*_Results CTEs) from extracted SQL pattern for cleaner templates."
)


@dataclass
class TemplateExtractionResult:
    draft: TemplateDraft
    validation: ValidationResult
    warnings: List[str]
    model_id: str
    similar_templates: List[SimilarTemplateWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft": self.draft.to_dict(),
            "validation": self.validation.to_dict(),
            "warnings": list(self.warnings),
            "modelId": self.model_id,
            "similarTemplates": [
                {
                    "templateId": w.template_id,
                    "name": w.name,
                    "intent": w.intent,
                    "similarity": w.similarity,
                    "successRate": w.success_rate,
                    "usageCount": w.usage_count,
                    "message": w.message,
                }
                for w in self.similar_templates
            ],
        }


class TemplateExtractionService:
    """Runs an AI draft through simplification, slot coverage and validation.

    No SQL is executed and nothing is persisted here; the result is a
    structurally checked candidate for the lifecycle service.
    """

    def __init__(
        self,
        config: TemplateSystemConfig,
        providers: ProviderRegistry,
        catalog: Optional[Any] = None,
    ):
        """
        Args:
            config: Template system settings (feature flag, default model)
            providers: Model id -> TemplateDraftProvider
            catalog: Optional TemplateCatalog; when given, near-duplicate
                templates are reported with the result
        """
        self.config = config
        self.providers = providers
        self.catalog = catalog

    async def extract_template_draft(
        self,
        question_text: str,
        sql_query: str,
        schema_context: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> TemplateExtractionResult:
        """
        Draft a template from a question and the SQL that answered it

        Raises:
            TemplateServiceError: 404 when the template system is disabled,
                400 when questionText or sqlQuery is blank
            ConfigurationError: unknown model id
        """
        if not self.config.is_template_system_enabled():
            raise TemplateServiceError("Template system is disabled", status=404)

        question = first_non_blank([question_text])
        sql = first_non_blank([sql_query])
        if not question:
            raise TemplateServiceError("'questionText' is required", status=400)
        if not sql:
            raise TemplateServiceError("'sqlQuery' is required", status=400)

        resolved_model_id = first_non_blank([model_id, self.config.default_model_id])
        provider = self.providers.get(resolved_model_id)

        response = await provider.extract_template_draft(
            TemplateDraftRequest(question_text=question, sql_query=sql, schema_context=schema_context)
        )

        warnings = normalize_string_list(response.warnings)
        draft = self._normalize_draft(response.draft, question, sql, warnings)

        placeholders = derive_placeholder_list(draft.placeholders_spec, draft.sql_pattern)
        validation = validate_template(
            draft.sql_pattern,
            name=draft.name,
            placeholders=placeholders,
            placeholders_spec=draft.placeholders_spec,
        )

        similar: List[SimilarTemplateWarning] = []
        if self.catalog is not None:
            similar = await self.catalog.check_similar_templates(draft)

        logger.info(
            f"Extracted template draft '{draft.name}' ({draft.intent}) with model {resolved_model_id}: "
            f"valid={validation.valid}, {len(validation.errors)} errors, {len(validation.warnings)} warnings"
        )
        return TemplateExtractionResult(
            draft=draft,
            validation=validation,
            warnings=normalize_string_list(warnings),
            model_id=response.model_id or resolved_model_id,
            similar_templates=similar,
        )

    def _normalize_draft(
        self,
        raw: Any,
        question: str,
        fallback_sql: str,
        warnings: List[str],
    ) -> TemplateDraft:
        raw = raw if isinstance(raw, dict) else {}

        sql_pattern = first_non_blank([raw.get("sqlPattern")]) or fallback_sql
        simplification = simplify_funnel_sql(sql_pattern)
        if simplification.changed:
            sql_pattern = simplification.sql
            warnings.append(SCAFFOLD_REMOVAL_WARNING)

        intent = first_non_blank([raw.get("intent")]) or DEFAULT_INTENT
        if intent not in TEMPLATE_INTENTS:
            logger.warning(f"Model returned intent outside the taxonomy: {intent}")
            warnings.append(
                f"Intent '{intent}' is not in the template intent taxonomy; review before saving."
            )

        return TemplateDraft(
            name=first_non_blank([raw.get("name"), question]),
            intent=intent,
            description=first_non_blank([raw.get("description")]),
            sql_pattern=sql_pattern,
            placeholders_spec=ensure_coverage(derive_slots(raw.get("placeholdersSpec")), sql_pattern),
            keywords=normalize_string_list(raw.get("keywords")),
            tags=normalize_string_list(raw.get("tags")),
            examples=normalize_string_list(raw.get("examples")),
        )
