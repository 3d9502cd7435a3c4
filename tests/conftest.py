"""Pytest configuration and fixtures for query2template tests."""

import copy
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from query2template.config import TemplateSystemConfig
from query2template.core.template_matching.models import QueryTemplate, TemplateDraft, TemplateListFilters
from query2template.core.template_matching.repository import template_from_row
from query2template.llm.providers import (
    SubQuestionItem,
    SubQuestionPlan,
    SubQuestionProvider,
    TemplateDraftProvider,
    TemplateDraftResponse,
)


# =============================================================================
# SAMPLE SQL FIXTURES
# =============================================================================

TWO_STEP_FUNNEL_SQL = """
WITH Step1_Results AS (
    SELECT A.patientFk, COUNT(*) AS assessmentCount
    FROM rpt.Assessment A
    WHERE A.patientFk = {patientId}
      AND A.assessmentDate >= DATEADD(day, -180, GETDATE())
    GROUP BY A.patientFk
),
Step2_Results AS (
    SELECT s1.patientFk, s1.assessmentCount
    FROM Step1_Results s1
    WHERE s1.assessmentCount >= {minimumAssessments}
)
SELECT s2.patientFk, s2.assessmentCount
FROM Step2_Results s2
"""


@pytest.fixture
def two_step_funnel_sql() -> str:
    """Funnel SQL with a Step1_Results -> Step2_Results chain."""
    return TWO_STEP_FUNNEL_SQL


@pytest.fixture
def single_step_funnel_sql() -> str:
    return (
        "WITH Step1_Results AS (SELECT patientFk, COUNT(*) c FROM rpt.Assessment "
        "WHERE patientFk={patientId} GROUP BY patientFk) SELECT * FROM Step1_Results"
    )


@pytest.fixture
def clean_template_sql() -> str:
    """SQL that passes every validation rule without warnings."""
    return "SELECT COUNT(*) AS total FROM rpt.Assessment WHERE patientFk = {patientId}"


@pytest.fixture
def patient_spec() -> Dict[str, Any]:
    return {"slots": [{"name": "patientId", "type": "guid", "semantic": "patient_id", "required": True}]}


# =============================================================================
# CONFIG FIXTURES
# =============================================================================

@pytest.fixture
def enabled_config() -> TemplateSystemConfig:
    return TemplateSystemConfig(templates_enabled=True, default_model_id="test-model")


@pytest.fixture
def disabled_config() -> TemplateSystemConfig:
    return TemplateSystemConfig(templates_enabled=False, default_model_id="test-model")


@pytest.fixture
def catalog_file(tmp_path: Path) -> Path:
    """A small valid YAML catalog."""
    path = tmp_path / "catalog.yaml"
    path.write_text(
        """
templates:
  - name: Patient Assessment Count
    version: 1
    intent: aggregation_by_category
    description: Count assessments for a patient
    keywords: [assessments, count, patient]
    tags: [assessment]
    questionExamples:
      - How many assessments does this patient have?
    placeholders: [patientId]
    placeholdersSpec:
      slots:
        - name: patientId
          type: guid
    sqlPattern: SELECT COUNT(*) FROM rpt.Assessment WHERE patientFk = {patientId}
  - name: Wound Area Trend
    version: 2
    description: Wound area over time
    keywords: [trend, area, wound]
    tags: [wound]
    questionExamples:
      - How has the wound area changed over time?
    placeholdersSpec:
      slots:
        - name: woundId
    sqlPattern: SELECT M.measurementDate, M.area FROM rpt.Measurement M WHERE M.woundFk = {woundId}
""",
        encoding="utf-8",
    )
    return path


# =============================================================================
# FAKE REPOSITORY
# =============================================================================

class FakeConnection:
    """Stand-in for an asyncpg connection; the fake repository ignores it."""


class FakeTemplateRepository:
    """In-memory TemplateRepository with snapshot/rollback transactions."""

    def __init__(self):
        self.templates: Dict[int, Dict[str, Any]] = {}
        self.versions: Dict[int, Dict[str, Any]] = {}
        self.usage: Dict[int, Dict[str, Any]] = {}
        self.commits = 0
        self.rollbacks = 0
        self.approved_error: Optional[Exception] = None
        self.fail_on_status_update: Optional[Exception] = None
        self._next_id = 1

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy((self.templates, self.versions, self.usage))
        try:
            yield FakeConnection()
        except BaseException:
            self.templates, self.versions, self.usage = snapshot
            self.rollbacks += 1
            raise
        else:
            self.commits += 1

    @asynccontextmanager
    async def connection(self):
        yield FakeConnection()

    # ---- helpers used by tests -------------------------------------------------

    def add_template(
        self,
        name: str,
        intent: str,
        sql_pattern: str,
        status: str = "Draft",
        spec: Optional[Dict[str, Any]] = None,
        keywords: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
    ) -> int:
        template_id = self._new_id()
        version_id = self._new_id()
        self.templates[template_id] = {
            "id": template_id,
            "name": name,
            "intent": intent,
            "description": None,
            "status": status,
            "activeVersionId": version_id,
            "createdBy": "test",
        }
        self.versions[version_id] = {
            "id": version_id,
            "templateId": template_id,
            "version": 1,
            "sqlPattern": sql_pattern,
            "placeholdersSpec": spec,
            "keywords": list(keywords or []),
            "tags": list(tags or []),
            "examples": [],
            "validationRules": None,
        }
        return template_id

    def _row(self, template_id: int) -> Dict[str, Any]:
        template = self.templates[template_id]
        version = self.versions[template["activeVersionId"]]
        rows = [u for u in self.usage.values() if u["templateVersionId"] == version["id"]]
        return {
            "templateId": template_id,
            "templateVersionId": version["id"],
            "name": template["name"],
            "description": template["description"],
            "intent": template["intent"],
            "status": template["status"],
            "version": version["version"],
            "sqlPattern": version["sqlPattern"],
            "placeholdersSpec": version["placeholdersSpec"],
            "keywords": version["keywords"],
            "tags": version["tags"],
            "examples": version["examples"],
            "successCount": sum(1 for u in rows if u["success"] is True),
            "usageCount": len(rows),
        }

    # ---- repository interface --------------------------------------------------

    async def fetch_template_detail(self, conn, template_id: int) -> Optional[QueryTemplate]:
        if template_id not in self.templates:
            return None
        return template_from_row(self._row(template_id))

    async def fetch_approved_templates(self, conn) -> List[QueryTemplate]:
        if self.approved_error is not None:
            raise self.approved_error
        return [
            template_from_row(self._row(template_id))
            for template_id, template in self.templates.items()
            if template["status"] == "Approved"
        ]

    async def list_templates(self, conn, filters: TemplateListFilters) -> List[QueryTemplate]:
        templates = [template_from_row(self._row(template_id)) for template_id in self.templates]
        if filters.status:
            templates = [t for t in templates if t.status in filters.status]
        return templates[filters.offset:filters.offset + filters.limit]

    async def find_active_by_name_intent(self, conn, name, intent, exclude_id=None) -> Optional[int]:
        for template_id, template in self.templates.items():
            if (
                template["name"] == name
                and template["intent"] == intent
                and template["status"] in ("Draft", "Approved")
                and template_id != exclude_id
            ):
                return template_id
        return None

    async def insert_template(self, conn, name, intent, description, created_by) -> int:
        template_id = self._new_id()
        self.templates[template_id] = {
            "id": template_id,
            "name": name,
            "intent": intent,
            "description": description,
            "status": "Draft",
            "activeVersionId": None,
            "createdBy": created_by,
        }
        return template_id

    async def insert_version(self, conn, template_id, version, draft: TemplateDraft, validation_rules=None) -> int:
        version_id = self._new_id()
        self.versions[version_id] = {
            "id": version_id,
            "templateId": template_id,
            "version": version,
            "sqlPattern": draft.sql_pattern,
            "placeholdersSpec": copy.deepcopy(draft.placeholders_spec),
            "keywords": list(draft.keywords),
            "tags": list(draft.tags),
            "examples": list(draft.examples),
            "validationRules": validation_rules,
        }
        return version_id

    async def set_active_version(self, conn, template_id, version_id) -> None:
        self.templates[template_id]["activeVersionId"] = version_id

    async def lock_template(self, conn, template_id) -> Optional[Dict[str, Any]]:
        template = self.templates.get(template_id)
        return dict(template) if template else None

    async def fetch_version(self, conn, template) -> Optional[Dict[str, Any]]:
        version = self.versions.get(template.get("activeVersionId"))
        return copy.deepcopy(version) if version else None

    async def update_template_meta(self, conn, template_id, name, intent, description) -> None:
        self.templates[template_id].update({"name": name, "intent": intent, "description": description})

    async def update_version_content(self, conn, version_id, draft: TemplateDraft, validation_rules=None) -> None:
        self.versions[version_id].update({
            "sqlPattern": draft.sql_pattern,
            "placeholdersSpec": copy.deepcopy(draft.placeholders_spec),
            "keywords": list(draft.keywords),
            "tags": list(draft.tags),
            "examples": list(draft.examples),
            "validationRules": validation_rules,
        })

    async def update_status(self, conn, template_id, status) -> None:
        if self.fail_on_status_update is not None:
            raise self.fail_on_status_update
        self.templates[template_id]["status"] = status

    async def insert_usage(self, conn, template_version_id, sub_question_id, question_text,
                           chosen, matched_keywords, matched_example) -> int:
        usage_id = self._new_id()
        self.usage[usage_id] = {
            "templateVersionId": template_version_id,
            "subQuestionId": sub_question_id,
            "questionText": question_text,
            "chosen": chosen,
            "matchedKeywords": matched_keywords,
            "matchedExample": matched_example,
            "success": None,
            "errorType": None,
            "latencyMs": None,
        }
        return usage_id

    async def update_usage_outcome(self, conn, usage_id, success, error_type, latency_ms) -> None:
        self.usage[usage_id].update({"success": success, "errorType": error_type, "latencyMs": latency_ms})


@pytest.fixture
def fake_repository() -> FakeTemplateRepository:
    return FakeTemplateRepository()


# =============================================================================
# FAKE PROVIDERS
# =============================================================================

class FakeDraftProvider(TemplateDraftProvider):
    """Returns a canned draft and records requests."""

    def __init__(self, draft: Optional[Dict[str, Any]] = None, warnings: Optional[List[str]] = None,
                 model_id: str = "test-model"):
        self.draft = draft or {}
        self.warnings = warnings or []
        self.model_id = model_id
        self.requests = []

    async def extract_template_draft(self, request):
        self.requests.append(request)
        return TemplateDraftResponse(
            model_id=self.model_id, draft=copy.deepcopy(self.draft), warnings=list(self.warnings)
        )


class FakeSubQuestionProvider(SubQuestionProvider):
    def __init__(self, questions: Optional[List[str]] = None):
        self.questions = questions or ["List the patient's assessments", "Count them by month"]
        self.calls = 0

    async def generate_sub_questions(self, request):
        self.calls += 1
        # Reverse order on purpose; callers must sort by order
        items = [
            SubQuestionItem(question_text=text, order=index)
            for index, text in enumerate(self.questions, 1)
        ]
        return SubQuestionPlan(sub_questions=list(reversed(items)))


@pytest.fixture
def fake_sub_question_provider() -> FakeSubQuestionProvider:
    return FakeSubQuestionProvider()
