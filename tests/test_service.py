"""Tests for the template lifecycle service."""

import asyncpg
import pytest
from unittest.mock import AsyncMock, MagicMock

from query2template.core.template_matching.catalog import TemplateCatalog
from query2template.core.template_matching.models import QueryTemplate, TemplateListFilters
from query2template.core.template_matching.service import TemplateService, draft_from_payload
from query2template.exceptions import (
    TemplateConflictError,
    TemplateNotFoundError,
    TemplateServiceError,
    TemplateStateError,
    TemplateValidationError,
)


@pytest.fixture
def payload(clean_template_sql, patient_spec):
    return {
        "name": "Patient Assessment Count",
        "intent": "aggregation_by_category",
        "description": "  Count of assessments for one patient  ",
        "sqlPattern": clean_template_sql,
        "placeholdersSpec": patient_spec,
        "keywords": ["count", "count", "assessments"],
        "tags": ["assessment"],
        "examples": ["How many assessments does this patient have?"],
    }


@pytest.fixture
def catalog():
    catalog = MagicMock()
    catalog.reload = AsyncMock(return_value=[])
    return catalog


@pytest.fixture
def service(enabled_config, fake_repository, catalog):
    return TemplateService(enabled_config, fake_repository, catalog)


class TestDraftFromPayload:

    @pytest.mark.parametrize("missing", ["name", "intent", "sqlPattern"])
    def test_required_fields(self, payload, missing):
        payload[missing] = "  "
        with pytest.raises(TemplateServiceError) as exc_info:
            draft_from_payload(payload)
        assert exc_info.value.status == 400

    def test_normalizes_fields(self, payload):
        draft = draft_from_payload(payload)
        assert draft.description == "Count of assessments for one patient"
        assert draft.keywords == ["count", "assessments"]


class TestCreateDraft:

    @pytest.mark.asyncio
    async def test_creates_draft_version_one(self, service, fake_repository, payload):
        result = await service.create_draft(payload, created_by="analyst")

        template = result.template
        assert template.status == "Draft"
        assert template.version == 1
        assert template.name == "Patient Assessment Count"
        assert template.placeholders == ["patientId"]
        assert template.success_rate is None
        assert result.warnings == []
        assert fake_repository.commits == 1
        assert fake_repository.templates[template.template_id]["createdBy"] == "analyst"

    @pytest.mark.asyncio
    async def test_invalid_draft_rejected(self, service, fake_repository, payload):
        payload["placeholdersSpec"] = {"slots": []}

        with pytest.raises(TemplateValidationError) as exc_info:
            await service.create_draft(payload)

        error = exc_info.value
        assert error.status == 400
        assert [issue.code for issue in error.validation.errors] == ["placeholder.missingDeclaration"]
        assert fake_repository.templates == {}

    @pytest.mark.asyncio
    async def test_duplicate_name_intent_conflict(self, service, fake_repository, payload):
        await service.create_draft(payload)

        with pytest.raises(TemplateConflictError) as exc_info:
            await service.create_draft(payload)

        assert exc_info.value.status == 409
        assert len(fake_repository.templates) == 1
        assert fake_repository.rollbacks == 1

    @pytest.mark.asyncio
    async def test_unique_violation_maps_to_conflict(self, service, fake_repository, payload):
        fake_repository.insert_template = AsyncMock(side_effect=asyncpg.UniqueViolationError("duplicate"))

        with pytest.raises(TemplateConflictError):
            await service.create_draft(payload)

    @pytest.mark.asyncio
    async def test_unexpected_failure_wrapped(self, service, fake_repository, payload):
        fake_repository.insert_version = AsyncMock(side_effect=RuntimeError("connection lost"))

        with pytest.raises(TemplateServiceError) as exc_info:
            await service.create_draft(payload)

        assert exc_info.value.status == 500
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert fake_repository.templates == {}
        assert fake_repository.rollbacks == 1

    @pytest.mark.asyncio
    async def test_disabled(self, disabled_config, fake_repository, payload):
        service = TemplateService(disabled_config, fake_repository)
        with pytest.raises(TemplateServiceError) as exc_info:
            await service.create_draft(payload)
        assert exc_info.value.status == 404


class TestUpdateDraft:

    @pytest.mark.asyncio
    async def test_replaces_content_in_place(self, service, fake_repository, payload):
        created = await service.create_draft(payload)
        template_id = created.template.template_id

        result = await service.update_draft(template_id, {
            "sqlPattern": "SELECT COUNT(*) FROM rpt.Assessment WHERE patientFk = {patientId} AND typeFk = {typeId}",
            "placeholdersSpec": {"slots": [{"name": "patientId"}, {"name": "typeId", "type": "guid"}]},
            "keywords": ["count"],
        })

        assert result.template.version == 1
        assert result.template.template_version_id == created.template.template_version_id
        assert result.template.placeholders == ["patientId", "typeId"]
        assert result.template.keywords == ["count"]
        # Untouched fields keep their stored values
        assert result.template.tags == ["assessment"]
        assert result.template.name == payload["name"]

    @pytest.mark.asyncio
    async def test_invalid_update_rolls_back(self, service, fake_repository, payload):
        created = await service.create_draft(payload)
        template_id = created.template.template_id

        with pytest.raises(TemplateValidationError):
            await service.update_draft(template_id, {"sqlPattern": "SELECT {undeclared} FROM rpt.Assessment"})

        stored = await service.get_by_id(template_id)
        assert stored.sql_pattern == payload["sqlPattern"]
        assert fake_repository.rollbacks == 1

    @pytest.mark.asyncio
    async def test_only_drafts_are_editable(self, service, fake_repository, payload):
        created = await service.create_draft(payload)
        await service.publish(created.template.template_id)

        with pytest.raises(TemplateStateError) as exc_info:
            await service.update_draft(created.template.template_id, {"description": "new"})

        assert exc_info.value.status == 409
        assert exc_info.value.current_status == "Approved"

    @pytest.mark.asyncio
    async def test_rename_onto_existing_conflicts(self, service, payload):
        first = await service.create_draft(payload)
        second = await service.create_draft(dict(payload, name="Other Name"))

        with pytest.raises(TemplateConflictError):
            await service.update_draft(second.template.template_id, {"name": first.template.name})

    @pytest.mark.asyncio
    async def test_rename_losing_race_conflicts(self, service, fake_repository, payload):
        created = await service.create_draft(payload)
        fake_repository.update_template_meta = AsyncMock(
            side_effect=asyncpg.UniqueViolationError("UX_Template_Name_Intent_Active")
        )

        with pytest.raises(TemplateConflictError) as exc_info:
            await service.update_draft(created.template.template_id, {"name": "Renamed Elsewhere"})

        assert exc_info.value.status == 409
        assert fake_repository.rollbacks == 1
        stored = await service.get_by_id(created.template.template_id)
        assert stored.name == payload["name"]

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            await service.update_draft(999, {"description": "x"})
        assert exc_info.value.status == 404


class TestPublish:

    @pytest.mark.asyncio
    async def test_publish_approves_and_reloads_catalog(self, service, catalog, payload):
        created = await service.create_draft(payload)

        result = await service.publish(created.template.template_id)

        assert result.template.status == "Approved"
        catalog.reload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_publish_revalidates_stored_content(self, service, fake_repository, catalog):
        template_id = fake_repository.add_template(
            "Broken", "top_k", "SELECT {missing} FROM rpt.Wound", spec={"slots": []}
        )

        with pytest.raises(TemplateValidationError):
            await service.publish(template_id)

        assert fake_repository.templates[template_id]["status"] == "Draft"
        catalog.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_twice_is_state_error(self, service, payload):
        created = await service.create_draft(payload)
        await service.publish(created.template.template_id)

        with pytest.raises(TemplateStateError):
            await service.publish(created.template.template_id)

    @pytest.mark.asyncio
    async def test_catalog_reload_failure_does_not_fail_publish(self, service, catalog, payload):
        catalog.reload = AsyncMock(side_effect=RuntimeError("catalog down"))
        created = await service.create_draft(payload)

        result = await service.publish(created.template.template_id)

        assert result.template.status == "Approved"
        catalog.invalidate.assert_called_once()

    @pytest.mark.asyncio
    async def test_status_update_failure_wrapped(self, service, fake_repository, payload):
        created = await service.create_draft(payload)
        fake_repository.fail_on_status_update = RuntimeError("deadlock")

        with pytest.raises(TemplateServiceError) as exc_info:
            await service.publish(created.template.template_id)

        assert exc_info.value.status == 500
        assert fake_repository.templates[created.template.template_id]["status"] == "Draft"


class TestDeprecate:

    @pytest.mark.asyncio
    async def test_from_draft_and_approved(self, service, payload):
        draft = await service.create_draft(payload)
        approved = await service.create_draft(dict(payload, name="Second"))
        await service.publish(approved.template.template_id)

        assert (await service.deprecate(draft.template.template_id)).template.status == "Deprecated"
        assert (await service.deprecate(approved.template.template_id)).template.status == "Deprecated"

    @pytest.mark.asyncio
    async def test_idempotent(self, service, catalog, payload):
        created = await service.create_draft(payload)
        await service.deprecate(created.template.template_id)

        result = await service.deprecate(created.template.template_id)

        assert result.template.status == "Deprecated"
        assert catalog.reload.await_count == 1

    @pytest.mark.asyncio
    async def test_deprecated_cannot_be_published(self, service, payload):
        created = await service.create_draft(payload)
        await service.deprecate(created.template.template_id)

        with pytest.raises(TemplateStateError):
            await service.publish(created.template.template_id)

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        with pytest.raises(TemplateNotFoundError):
            await service.deprecate(42)


class TestReads:

    @pytest.mark.asyncio
    async def test_get_by_id_success_rate(self, service, fake_repository, payload):
        created = await service.create_draft(payload)
        version_id = created.template.template_version_id
        for success in (True, True, False, None):
            usage_id = await fake_repository.insert_usage(None, version_id, None, "q", True, [], None)
            fake_repository.usage[usage_id]["success"] = success

        template = await service.get_by_id(created.template.template_id)

        assert template.usage_count == 4
        assert template.success_count == 2
        assert template.success_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_get_by_id_not_found(self, service):
        with pytest.raises(TemplateNotFoundError):
            await service.get_by_id(7)

    @pytest.mark.asyncio
    async def test_list_from_database(self, service, payload):
        await service.create_draft(payload)
        created = await service.create_draft(dict(payload, name="Second"))
        await service.publish(created.template.template_id)

        approved = await service.list_templates(TemplateListFilters(status=["Approved"]))

        assert [t.name for t in approved] == ["Second"]

    @pytest.mark.asyncio
    async def test_list_from_catalog_when_disabled(self, disabled_config, fake_repository, catalog_file):
        disabled_config.catalog_path = catalog_file
        service = TemplateService(disabled_config, fake_repository, TemplateCatalog(disabled_config))

        everything = await service.list_templates()
        trends = await service.list_templates(TemplateListFilters(intent=["time_series_trend"]))
        searched = await service.list_templates(TemplateListFilters(search="ASSESSMENTS"))
        tagged = await service.list_templates(TemplateListFilters(tags=["wound"]))
        drafts = await service.list_templates(TemplateListFilters(status=["Draft"]))
        paged = await service.list_templates(TemplateListFilters(limit=1, offset=1))

        assert [t.name for t in everything] == ["Patient Assessment Count", "Wound Area Trend"]
        assert [t.name for t in trends] == ["Wound Area Trend"]
        assert [t.name for t in searched] == ["Patient Assessment Count"]
        assert [t.name for t in tagged] == ["Wound Area Trend"]
        assert drafts == []
        assert [t.name for t in paged] == ["Wound Area Trend"]

    @pytest.mark.asyncio
    async def test_get_by_id_from_catalog_when_disabled(self, disabled_config, fake_repository):
        catalog = MagicMock()
        catalog.get_templates = AsyncMock(return_value=[
            QueryTemplate(name="Seeded", sql_pattern="SELECT 1", template_id=5),
        ])
        service = TemplateService(disabled_config, fake_repository, catalog)

        assert (await service.get_by_id(5)).name == "Seeded"
        with pytest.raises(TemplateNotFoundError):
            await service.get_by_id(6)
