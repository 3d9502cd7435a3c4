"""
AI provider interfaces and the chat-model implementation

Two capabilities are consumed by the template system:
    - TemplateDraftProvider: question + SQL -> raw template draft
    - SubQuestionProvider: complex question -> ordered sub-questions

ChatModelProvider implements both against an OpenAI / Ollama / Groq style
chat endpoint. ProviderRegistry maps model ids to providers.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.template_matching.models import RawTemplateDraft
from ..core.utils.model_configs import ModelConfig
from ..core.utils.models import agenerate_chat
from ..exceptions import ConfigurationError, ProviderResponseError
from ..utils.json_utils import extract_json_object
from .prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)


# ============================================================================
# Request / response types
# ============================================================================

@dataclass
class TemplateDraftRequest:
    question_text: str
    sql_query: str
    schema_context: Optional[str] = None


@dataclass
class TemplateDraftResponse:
    model_id: str
    # Untrusted: any key may be missing or mistyped
    draft: RawTemplateDraft = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


@dataclass
class SubQuestionRequest:
    original_question: str
    assessment_form_version_fk: Optional[str] = None
    form_definition: Optional[Any] = None
    database_schema_context: Optional[Any] = None


@dataclass
class SubQuestionItem:
    question_text: str
    order: int
    depends_on: Optional[Any] = None


@dataclass
class SubQuestionPlan:
    sub_questions: List[SubQuestionItem] = field(default_factory=list)
    matched_template: Optional[str] = None


# ============================================================================
# Interfaces
# ============================================================================

class TemplateDraftProvider(ABC):
    """Turns a (question, SQL) pair into a template draft"""

    @abstractmethod
    async def extract_template_draft(self, request: TemplateDraftRequest) -> TemplateDraftResponse:
        pass


class SubQuestionProvider(ABC):
    """Decomposes a complex question into ordered sub-questions"""

    @abstractmethod
    async def generate_sub_questions(self, request: SubQuestionRequest) -> SubQuestionPlan:
        pass


# ============================================================================
# Chat model implementation
# ============================================================================

class ChatModelProvider(TemplateDraftProvider, SubQuestionProvider):
    """Both AI capabilities backed by one chat-completion endpoint"""

    def __init__(
        self,
        model_id: str,
        config: ModelConfig,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        self.model_id = model_id
        self.config = config
        self.prompt_builder = prompt_builder or PromptBuilder()

    async def _ask_json(self, prompt: str) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": "You answer with a single JSON object and nothing else."},
            {"role": "user", "content": prompt},
        ]
        content = await agenerate_chat(self.config, messages)
        data = extract_json_object(content)
        if data is None:
            raise ProviderResponseError(
                f"Model '{self.model_id}' did not return a JSON object"
            )
        return data

    async def extract_template_draft(self, request: TemplateDraftRequest) -> TemplateDraftResponse:
        prompt = self.prompt_builder.build_template_extraction_prompt(
            request.question_text, request.sql_query, request.schema_context
        )
        data = await self._ask_json(prompt)

        raw_warnings = data.pop("warnings", None)
        warnings = [w.strip() for w in raw_warnings or [] if isinstance(w, str) and w.strip()] \
            if isinstance(raw_warnings, list) else []

        logger.debug(f"Model '{self.model_id}' returned template draft keys: {sorted(data)}")
        return TemplateDraftResponse(model_id=self.model_id, draft=data, warnings=warnings)

    async def generate_sub_questions(self, request: SubQuestionRequest) -> SubQuestionPlan:
        prompt = self.prompt_builder.build_sub_question_prompt(
            request.original_question,
            request.form_definition,
            request.database_schema_context,
        )
        data = await self._ask_json(prompt)

        raw_items = data.get("sub_questions")
        if not isinstance(raw_items, list):
            raise ProviderResponseError(f"Model '{self.model_id}' returned no sub_questions list")

        items: List[SubQuestionItem] = []
        for index, raw in enumerate(raw_items, 1):
            if not isinstance(raw, dict):
                continue
            question = raw.get("question")
            if not isinstance(question, str) or not question.strip():
                continue
            try:
                order = int(raw.get("step", index))
            except (TypeError, ValueError):
                order = index
            items.append(SubQuestionItem(
                question_text=question.strip(),
                order=order,
                depends_on=raw.get("depends_on"),
            ))

        if not items:
            raise ProviderResponseError(f"Model '{self.model_id}' returned no usable sub-questions")

        matched = data.get("matched_template")
        if not isinstance(matched, str) or matched.strip().lower() in ("", "none"):
            matched = None
        return SubQuestionPlan(sub_questions=items, matched_template=matched)


# ============================================================================
# Registry
# ============================================================================

class ProviderRegistry:
    """Resolves a model id to its provider"""

    def __init__(self, providers: Optional[Dict[str, Any]] = None):
        self._providers: Dict[str, Any] = dict(providers or {})

    @classmethod
    def from_model_configs(
        cls,
        model_configs: Dict[str, ModelConfig],
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> "ProviderRegistry":
        return cls({
            model_id: ChatModelProvider(model_id, config, prompt_builder)
            for model_id, config in model_configs.items()
        })

    def register(self, model_id: str, provider: Any) -> None:
        self._providers[model_id] = provider

    def get(self, model_id: str) -> Any:
        try:
            return self._providers[model_id]
        except KeyError:
            available = ", ".join(sorted(self._providers)) or "none"
            raise ConfigurationError(
                f"Unknown model id '{model_id}' (available: {available})"
            ) from None

    def model_ids(self) -> List[str]:
        return sorted(self._providers)
