"""Funnel cache - reuse sub-question decompositions for repeated questions"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ...exceptions import FunnelConflictError
from ...llm.providers import SubQuestionProvider, SubQuestionRequest
from .models import CachedSubQuestionResult, NewSubQuestion
from .store import FunnelStore

logger = logging.getLogger(__name__)


class FunnelCache:
    """Looks up an active funnel by exact question text, generating one on a miss.

    The key is (assessment_form_version_fk, original_question) compared
    verbatim; rephrasing a question is a miss. Two concurrent misses for the
    same key may both call the provider; the loser of the insert race re-reads
    the winner's funnel.
    """

    def __init__(self, store: FunnelStore, provider: SubQuestionProvider):
        self.store = store
        self.provider = provider

    async def get_or_generate_sub_questions(
        self,
        assessment_form_version_fk: str,
        original_question: str,
        form_definition: Optional[Any] = None,
        database_schema_context: Optional[Any] = None,
    ) -> CachedSubQuestionResult:
        cached = await self._read_cached(assessment_form_version_fk, original_question)
        if cached is not None:
            logger.info(f"Found existing funnel {cached.funnel_id} for question: {original_question}")
            return cached

        logger.info(f"No cache found, generating new sub-questions for: {original_question}")
        plan = await self.provider.generate_sub_questions(SubQuestionRequest(
            original_question=original_question,
            assessment_form_version_fk=assessment_form_version_fk,
            form_definition=form_definition,
            database_schema_context=database_schema_context,
        ))

        to_store = [
            NewSubQuestion(question_text=item.question_text, order=item.order)
            for item in sorted(plan.sub_questions, key=lambda item: item.order)
        ]

        try:
            funnel, stored = await self.store.create_funnel_with_sub_questions(
                assessment_form_version_fk, original_question, to_store
            )
        except FunnelConflictError:
            logger.info("Another request created this funnel first; re-reading")
            cached = await self._read_cached(assessment_form_version_fk, original_question)
            if cached is None:
                raise
            return cached

        return CachedSubQuestionResult(funnel_id=funnel.id, sub_questions=stored, was_cached=False)

    async def _read_cached(
        self, assessment_form_version_fk: str, original_question: str
    ) -> Optional[CachedSubQuestionResult]:
        funnel = await self.store.find_funnel_by_question(assessment_form_version_fk, original_question)
        if funnel is None:
            return None
        sub_questions = await self.store.get_sub_questions(funnel.id)
        return CachedSubQuestionResult(funnel_id=funnel.id, sub_questions=sub_questions, was_cached=True)
