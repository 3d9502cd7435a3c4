"""
Template matching: SQL scaffold simplification, placeholder normalization
and template validation.

The services built on top of these (extraction, lifecycle, catalog, usage)
live in their own modules and are imported from there.
"""

from .models import (
    TEMPLATE_INTENTS,
    TEMPLATE_STATUSES,
    QueryTemplate,
    SimilarTemplateWarning,
    TemplateDraft,
    TemplateListFilters,
    TemplateMatch,
)
from .scaffold import SimplificationResult, parse_with_clause, simplify_funnel_sql
from .placeholders import (
    derive_placeholder_list,
    derive_slots,
    ensure_coverage,
    extract_placeholders,
    normalize_placeholder,
    normalize_string_list,
)
from .validator import ValidationIssue, ValidationResult, validate_template

__all__ = [
    "TEMPLATE_INTENTS",
    "TEMPLATE_STATUSES",
    "QueryTemplate",
    "SimilarTemplateWarning",
    "TemplateDraft",
    "TemplateListFilters",
    "TemplateMatch",
    "SimplificationResult",
    "parse_with_clause",
    "simplify_funnel_sql",
    "derive_placeholder_list",
    "derive_slots",
    "ensure_coverage",
    "extract_placeholders",
    "normalize_placeholder",
    "normalize_string_list",
    "ValidationIssue",
    "ValidationResult",
    "validate_template",
]
