"""LLM module for query2template."""

from .prompt_builder import PromptBuilder
from .providers import (
    ChatModelProvider,
    ProviderRegistry,
    SubQuestionItem,
    SubQuestionPlan,
    SubQuestionProvider,
    SubQuestionRequest,
    TemplateDraftProvider,
    TemplateDraftRequest,
    TemplateDraftResponse,
)

__all__ = [
    "PromptBuilder",
    "ChatModelProvider",
    "ProviderRegistry",
    "SubQuestionItem",
    "SubQuestionPlan",
    "SubQuestionProvider",
    "SubQuestionRequest",
    "TemplateDraftProvider",
    "TemplateDraftRequest",
    "TemplateDraftResponse",
]
