"""Template usage logging - one TemplateUsage row per template match"""

from __future__ import annotations

import logging
from typing import List, Optional

from .repository import TemplateRepository

logger = logging.getLogger(__name__)

TEMPLATE_DIRECT_MODE = "template_direct"


class TemplateUsageLogger:
    """Records template matches and their outcomes

    Rows written here feed the success/usage counts the catalog uses to
    weight matches.
    """

    def __init__(self, repository: TemplateRepository):
        self.repository = repository

    async def log_usage_start(
        self,
        template_version_id: Optional[int],
        question_text: Optional[str] = None,
        mode: Optional[str] = None,
        sub_question_id: Optional[int] = None,
        matched_keywords: Optional[List[str]] = None,
        matched_example: Optional[str] = None,
    ) -> int:
        """
        Insert a usage row when a template is matched

        Args:
            template_version_id: Version that was matched
            question_text: Question being answered
            mode: Execution mode; "template_direct" marks the template as chosen
            sub_question_id: Funnel sub-question being answered, if any
            matched_keywords: Keywords that contributed to the match
            matched_example: Closest question example

        Returns:
            Id of the new TemplateUsage row
        """
        async with self.repository.transaction() as conn:
            usage_id = await self.repository.insert_usage(
                conn,
                template_version_id=template_version_id,
                sub_question_id=sub_question_id,
                question_text=question_text,
                chosen=mode == TEMPLATE_DIRECT_MODE,
                matched_keywords=list(matched_keywords or []),
                matched_example=matched_example,
            )
        logger.debug(f"Logged template usage {usage_id} for version {template_version_id} (mode={mode})")
        return usage_id

    async def log_usage_outcome(
        self,
        usage_id: int,
        success: bool,
        error_type: Optional[str] = None,
        latency_ms: Optional[int] = None,
    ) -> None:
        """Record whether the SQL built from the template succeeded

        Without latency_ms the time elapsed since the match is stored.
        """
        if latency_ms is not None:
            latency_ms = max(0, int(latency_ms))
        async with self.repository.transaction() as conn:
            await self.repository.update_usage_outcome(
                conn,
                usage_id=usage_id,
                success=bool(success),
                error_type=error_type,
                latency_ms=latency_ms,
            )
        if not success:
            logger.info(f"Template usage {usage_id} failed: {error_type or 'unknown error'}")
