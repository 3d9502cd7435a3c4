"""
Template lifecycle service

Draft --publish--> Approved --deprecate--> Deprecated, and Draft --deprecate--> Deprecated.
Every mutation runs in one transaction; the store never holds a template
whose content fails validation.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import asyncpg

from ...config import TemplateSystemConfig
from ...exceptions import (
    TemplateConflictError,
    TemplateNotFoundError,
    TemplateServiceError,
    TemplateStateError,
    TemplateValidationError,
)
from ...utils.helpers import first_non_blank
from .catalog import TemplateCatalog, infer_intent
from .models import QueryTemplate, TemplateDraft, TemplateListFilters
from .placeholders import derive_slots, normalize_string_list
from .repository import TemplateRepository
from .validator import ValidationResult, validate_template

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("name", "intent", "sqlPattern")


@dataclass
class TemplateOperationResult:
    template: QueryTemplate
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"template": self.template.to_dict(), "warnings": list(self.warnings)}


def draft_from_payload(payload: Mapping[str, Any]) -> TemplateDraft:
    """
    Normalize a create/update payload (camelCase keys) into a TemplateDraft

    Raises:
        TemplateServiceError: 400 when name, intent or sqlPattern is missing
    """
    for key in _REQUIRED_FIELDS:
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            raise TemplateServiceError(f"'{key}' is required", status=400)

    return TemplateDraft(
        name=payload["name"].strip(),
        intent=payload["intent"].strip(),
        sql_pattern=payload["sqlPattern"].strip(),
        description=first_non_blank([payload.get("description")]),
        placeholders_spec=derive_slots(payload.get("placeholdersSpec")),
        keywords=normalize_string_list(payload.get("keywords")),
        tags=normalize_string_list(payload.get("tags")),
        examples=normalize_string_list(payload.get("examples")),
    )


def validate_draft(draft: TemplateDraft) -> ValidationResult:
    # Manually authored templates must declare every placeholder themselves
    return validate_template(
        draft.sql_pattern,
        name=draft.name,
        placeholders=None,
        placeholders_spec=draft.placeholders_spec,
    )


def _validation_failure(validation: ValidationResult) -> TemplateValidationError:
    messages = "; ".join(issue.message for issue in validation.errors)
    return TemplateValidationError(f"Template validation failed: {messages}", validation)


class TemplateService:
    """Create, edit, publish, deprecate and read templates

    Usage:
        repo = await TemplateRepository.initialize(postgres_config=pg_config)
        catalog = TemplateCatalog(config, repo)
        service = TemplateService(config, repo, catalog)

        result = await service.create_draft(extraction.draft.to_dict())
        await service.publish(result.template.template_id)
    """

    def __init__(
        self,
        config: TemplateSystemConfig,
        repository: TemplateRepository,
        catalog: Optional[TemplateCatalog] = None,
    ):
        self.config = config
        self.repository = repository
        self.catalog = catalog

    def _require_enabled(self) -> None:
        if not self.config.is_template_system_enabled():
            raise TemplateServiceError("Template system is disabled", status=404)

    @asynccontextmanager
    async def _mutation(
        self, action: str, conflict: Optional[Tuple[str, str]] = None
    ) -> AsyncIterator[Any]:
        """Transaction scope that maps driver failures onto the service error taxonomy"""
        try:
            async with self.repository.transaction() as conn:
                yield conn
        except TemplateServiceError:
            raise
        except asyncpg.UniqueViolationError as e:
            if conflict is not None:
                raise TemplateConflictError(*conflict) from e
            logger.exception(f"Unique violation while trying to {action} template")
            raise TemplateServiceError(f"Failed to {action} template: {e}") from e
        except Exception as e:
            logger.exception(f"Failed to {action} template")
            raise TemplateServiceError(f"Failed to {action} template: {e}") from e

    async def _reload_catalog(self) -> None:
        if self.catalog is None:
            return
        try:
            await self.catalog.reload()
        except Exception as e:
            # The transition is committed; a stale catalog only delays matching
            logger.warning(f"Template catalog reload failed: {e}")
            self.catalog.invalidate()

    # ============================================================================
    # Mutations
    # ============================================================================

    async def create_draft(
        self, payload: Mapping[str, Any], created_by: Optional[str] = None
    ) -> TemplateOperationResult:
        """
        Persist a new Draft template with version 1

        Args:
            payload: name, intent, sqlPattern and optional description,
                placeholdersSpec, keywords, tags, examples
            created_by: Author recorded on the template

        Returns:
            The stored template and its validation warnings

        Raises:
            TemplateServiceError: 400 on missing fields, 404 when disabled
            TemplateValidationError: Draft fails validation
            TemplateConflictError: Active template with the same name and intent exists
        """
        self._require_enabled()
        draft = draft_from_payload(payload)
        validation = validate_draft(draft)
        if not validation.valid:
            raise _validation_failure(validation)

        async with self._mutation("create", conflict=(draft.name, draft.intent)) as conn:
            if await self.repository.find_active_by_name_intent(conn, draft.name, draft.intent):
                raise TemplateConflictError(draft.name, draft.intent)

            template_id = await self.repository.insert_template(
                conn, draft.name, draft.intent, draft.description, created_by
            )
            version_id = await self.repository.insert_version(
                conn, template_id, 1, draft, validation.to_dict()
            )
            await self.repository.set_active_version(conn, template_id, version_id)
            template = await self.repository.fetch_template_detail(conn, template_id)

        logger.info(f"Created draft template {template_id} '{draft.name}' ({draft.intent})")
        return TemplateOperationResult(template, [w.message for w in validation.warnings])

    async def update_draft(self, template_id: int, payload: Mapping[str, Any]) -> TemplateOperationResult:
        """Replace the content of a Draft template; the version number is kept

        Fields missing from payload keep their stored values.
        """
        self._require_enabled()

        async with self._mutation("update") as conn:
            row = await self.repository.lock_template(conn, template_id)
            if row is None:
                raise TemplateNotFoundError(template_id)
            if row["status"] != "Draft":
                raise TemplateStateError(
                    f"Only Draft templates can be edited (current status: {row['status']})",
                    current_status=row["status"],
                )

            version = await self.repository.fetch_version(conn, row)
            if version is None:
                raise TemplateServiceError(f"Template {template_id} has no version", status=500)

            merged: Dict[str, Any] = {
                "name": row["name"],
                "intent": row["intent"],
                "description": row.get("description"),
                "sqlPattern": version["sqlPattern"],
                "placeholdersSpec": version.get("placeholdersSpec"),
                "keywords": version.get("keywords"),
                "tags": version.get("tags"),
                "examples": version.get("examples"),
            }
            merged.update({key: value for key, value in payload.items() if key in merged})

            draft = draft_from_payload(merged)
            validation = validate_draft(draft)
            if not validation.valid:
                raise _validation_failure(validation)

            if await self.repository.find_active_by_name_intent(
                conn, draft.name, draft.intent, exclude_id=template_id
            ):
                raise TemplateConflictError(draft.name, draft.intent)

            try:
                await self.repository.update_template_meta(
                    conn, template_id, draft.name, draft.intent, draft.description
                )
            except asyncpg.UniqueViolationError as e:
                # Another transaction took the name after the check above
                raise TemplateConflictError(draft.name, draft.intent) from e
            await self.repository.update_version_content(conn, version["id"], draft, validation.to_dict())
            template = await self.repository.fetch_template_detail(conn, template_id)

        logger.info(f"Updated draft template {template_id} '{draft.name}'")
        return TemplateOperationResult(template, [w.message for w in validation.warnings])

    async def publish(self, template_id: int) -> TemplateOperationResult:
        """Approve a Draft after re-validating its stored content"""
        self._require_enabled()

        async with self._mutation("publish") as conn:
            row = await self.repository.lock_template(conn, template_id)
            if row is None:
                raise TemplateNotFoundError(template_id)
            if row["status"] != "Draft":
                raise TemplateStateError(
                    f"Only Draft templates can be published (current status: {row['status']})",
                    current_status=row["status"],
                )

            version = await self.repository.fetch_version(conn, row)
            if version is None:
                raise TemplateServiceError(f"Template {template_id} has no version", status=500)

            validation = validate_template(
                version["sqlPattern"],
                name=row["name"],
                placeholders=None,
                placeholders_spec=version.get("placeholdersSpec"),
            )
            if not validation.valid:
                raise _validation_failure(validation)

            if row.get("activeVersionId") != version["id"]:
                await self.repository.set_active_version(conn, template_id, version["id"])
            await self.repository.update_status(conn, template_id, "Approved")
            template = await self.repository.fetch_template_detail(conn, template_id)

        logger.info(f"Published template {template_id} '{row['name']}'")
        await self._reload_catalog()
        return TemplateOperationResult(template, [w.message for w in validation.warnings])

    async def deprecate(self, template_id: int) -> TemplateOperationResult:
        """Retire a template; deprecating a Deprecated template is a no-op"""
        self._require_enabled()

        async with self._mutation("deprecate") as conn:
            row = await self.repository.lock_template(conn, template_id)
            if row is None:
                raise TemplateNotFoundError(template_id)
            changed = row["status"] != "Deprecated"
            if changed:
                await self.repository.update_status(conn, template_id, "Deprecated")
            template = await self.repository.fetch_template_detail(conn, template_id)

        if changed:
            logger.info(f"Deprecated template {template_id} '{row['name']}'")
            await self._reload_catalog()
        return TemplateOperationResult(template)

    # ============================================================================
    # Reads
    # ============================================================================

    async def get_by_id(self, template_id: int) -> QueryTemplate:
        if not self.config.is_template_system_enabled():
            if self.catalog is not None:
                for template in await self.catalog.get_templates():
                    if template.template_id == template_id:
                        return template
            raise TemplateNotFoundError(template_id)

        try:
            async with self.repository.connection() as conn:
                template = await self.repository.fetch_template_detail(conn, template_id)
        except Exception as e:
            logger.exception(f"Failed to load template {template_id}")
            raise TemplateServiceError(f"Failed to load template {template_id}: {e}") from e

        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def list_templates(self, filters: Optional[TemplateListFilters] = None) -> List[QueryTemplate]:
        """
        List templates, newest first

        With the template system disabled the catalog is filtered in memory
        instead; its templates count as Approved.
        """
        filters = filters or TemplateListFilters()
        filters = replace(filters, limit=max(0, int(filters.limit)), offset=max(0, int(filters.offset)))

        if self.config.is_template_system_enabled():
            try:
                async with self.repository.connection() as conn:
                    return await self.repository.list_templates(conn, filters)
            except Exception as e:
                logger.exception("Failed to list templates")
                raise TemplateServiceError(f"Failed to list templates: {e}") from e

        if self.catalog is None:
            return []
        return self._filter_catalog(await self.catalog.get_templates(), filters)

    def _filter_catalog(self, templates: List[QueryTemplate], filters: TemplateListFilters) -> List[QueryTemplate]:
        search = (filters.search or "").strip().lower()
        tags = set(filters.tags or [])

        selected: List[QueryTemplate] = []
        for template in templates:
            status = template.status or "Approved"
            intent = template.intent or infer_intent(template)
            if filters.status and status not in filters.status:
                continue
            if filters.intent and intent not in filters.intent:
                continue
            if tags and not tags & set(template.tags):
                continue
            if search:
                haystack = [template.name, template.description or ""] + list(template.keywords)
                if not any(search in value.lower() for value in haystack):
                    continue
            selected.append(template)

        return selected[filters.offset:filters.offset + filters.limit]
