from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional

QueryFunnelStatus = Literal["active", "archived"]
SubQuestionStatus = Literal["pending", "running", "completed", "failed"]


@dataclass
class QueryFunnel:
    """One decomposition run, keyed by (form version, exact question text)."""

    id: int
    assessment_form_version_fk: str
    original_question: str
    status: str = "active"
    created_date: Optional[str] = None
    last_modified_date: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueryFunnel":
        return cls(
            id=int(row["id"]),
            assessment_form_version_fk=row["assessmentFormVersionFk"],
            original_question=row["originalQuestion"],
            status=row.get("status") or "active",
            created_date=row.get("createdDate"),
            last_modified_date=row.get("lastModifiedDate"),
        )


@dataclass
class SubQuestion:
    id: int
    funnel_id: int
    question_text: str
    order: int
    sql_query: Optional[str] = None
    status: str = "pending"
    sql_explanation: Optional[str] = None
    sql_validation_notes: Optional[str] = None
    sql_matched_template: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SubQuestion":
        return cls(
            id=int(row["id"]),
            funnel_id=int(row["funnelId"]),
            question_text=row["questionText"],
            order=int(row["order"]),
            sql_query=row.get("sqlQuery"),
            status=row.get("status") or "pending",
            sql_explanation=row.get("sqlExplanation"),
            sql_validation_notes=row.get("sqlValidationNotes"),
            sql_matched_template=row.get("sqlMatchedTemplate"),
        )


@dataclass
class NewSubQuestion:
    question_text: str
    order: int
    sql_query: Optional[str] = None


@dataclass
class SqlAnnotations:
    """Structured notes stored next to a sub-question's generated SQL"""

    explanation: Optional[str] = None
    validation_notes: Optional[str] = None
    matched_template: Optional[str] = None


@dataclass
class CachedSubQuestionResult:
    funnel_id: int
    sub_questions: List[SubQuestion] = field(default_factory=list)
    was_cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "funnelId": self.funnel_id,
            "wasCached": self.was_cached,
            "subQuestions": [
                {
                    "id": sq.id,
                    "questionText": sq.question_text,
                    "order": sq.order,
                    "sqlQuery": sq.sql_query,
                    "status": sq.status,
                }
                for sq in self.sub_questions
            ],
        }
