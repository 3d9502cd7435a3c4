"""Template Repository - SQL access to Template / TemplateVersion / TemplateUsage"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
import logging
import json

from ..connections.postgresql import PostgreSQLConfig
from ...utils.helpers import compute_success_rate
from .models import QueryTemplate, TemplateDraft, TemplateListFilters
from .schema import get_template_ddl


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _text_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return []


def template_from_row(row: Dict[str, Any]) -> QueryTemplate:
    """Build a QueryTemplate from a joined Template/TemplateVersion/usage row"""
    spec = _load_json(row.get("placeholdersSpec"))
    slot_names = []
    if isinstance(spec, dict) and isinstance(spec.get("slots"), list):
        for slot in spec["slots"]:
            name = slot.get("name") if isinstance(slot, dict) else None
            if isinstance(name, str) and name.strip():
                slot_names.append(name.strip())

    success_count = int(row.get("successCount") or 0)
    usage_count = int(row.get("usageCount") or 0)

    return QueryTemplate(
        template_id=row.get("templateId"),
        template_version_id=row.get("templateVersionId"),
        name=row["name"],
        description=row.get("description"),
        intent=row.get("intent"),
        status=row.get("status"),
        version=int(row.get("version") or 1),
        sql_pattern=row.get("sqlPattern") or "",
        placeholders=slot_names or None,
        placeholders_spec=spec if isinstance(spec, dict) else None,
        keywords=_text_list(row.get("keywords")),
        tags=_text_list(row.get("tags")),
        question_examples=_text_list(row.get("examples")),
        success_count=success_count,
        usage_count=usage_count,
        success_rate=compute_success_rate(success_count, usage_count),
    )


class TemplateRepository:
    """Statements behind the template lifecycle and catalog

    Mutating methods take the connection of an open transaction so the
    caller controls commit and rollback.

    Usage:
        repo = await TemplateRepository.initialize(
            postgres_config=PostgreSQLConfig(...),
            template_schema="public",
        )
    """

    def __init__(
        self,
        postgres_config: Optional[PostgreSQLConfig] = None,
        template_schema: str = "public",
        adapter: Optional[Any] = None,
    ):
        if postgres_config is None and adapter is None:
            raise ValueError("TemplateRepository needs a postgres_config or an adapter")
        self.postgres_config = postgres_config
        self.template_schema = template_schema
        self.logger = logging.getLogger(__name__)
        self._adapter = adapter

    @classmethod
    async def initialize(
        cls,
        postgres_config: Optional[PostgreSQLConfig] = None,
        template_schema: str = "public",
        adapter: Optional[Any] = None,
        auto_init_tables: bool = True,
    ) -> "TemplateRepository":
        """Create a repository and make sure the template tables exist"""
        repo = cls(postgres_config, template_schema, adapter)

        if auto_init_tables:
            if not await repo.check_table_exists():
                repo.logger.info(f"Creating template tables in schema '{template_schema}'...")
                if await repo.init_template_tables():
                    repo.logger.info(f"Template tables initialized successfully in schema '{template_schema}'")
                else:
                    repo.logger.warning("Failed to initialize template tables")
            else:
                repo.logger.info(f"Template tables already exist in schema '{template_schema}'")

        return repo

    def _get_adapter(self):
        """Get or create PostgreSQL adapter"""
        if self._adapter is None:
            from ...adapters.postgresql import PostgreSQLAdapter

            self._adapter = PostgreSQLAdapter(self.postgres_config)
        return self._adapter

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with self._get_adapter().transaction() as conn:
            yield conn

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        async with self._get_adapter().connection() as conn:
            yield conn

    async def close(self):
        if self._adapter:
            await self._adapter.close_pool()

    @property
    def _t_template(self) -> str:
        return f'{self.template_schema}."Template"'

    @property
    def _t_version(self) -> str:
        return f'{self.template_schema}."TemplateVersion"'

    @property
    def _t_usage(self) -> str:
        return f'{self.template_schema}."TemplateUsage"'

    # ============================================================================
    # Initialization methods
    # ============================================================================

    async def init_template_tables(self) -> bool:
        adapter = self._get_adapter()
        ddl_statements = get_template_ddl(schema_name=self.template_schema)
        for idx, ddl in enumerate(ddl_statements, 1):
            self.logger.debug(f"Executing DDL statement {idx}/{len(ddl_statements)}")
            result = await adapter.sql_execution(ddl, safe=False, limit=None)
            if not result.get("success"):
                self.logger.error(f"Failed to execute DDL statement {idx}: {result.get('error', 'Unknown error')}")
                return False
        return True

    async def check_table_exists(self) -> bool:
        adapter = self._get_adapter()
        result = await adapter.sql_execution(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1 AND table_name = 'Template'
            """,
            params=(self.template_schema,),
            safe=False,
            limit=None,
        )
        return bool(result.get("success") and result.get("result"))

    # ============================================================================
    # Reads
    # ============================================================================

    def _select_templates(self, where: str = "") -> str:
        # Active version first, else the newest version
        return f"""
            SELECT
                t.id AS "templateId",
                tv.id AS "templateVersionId",
                t.name,
                t.description,
                t.intent,
                t.status,
                tv.version,
                tv."sqlPattern",
                tv."placeholdersSpec",
                tv.keywords,
                tv.tags,
                tv.examples,
                usage.success_count AS "successCount",
                usage.total_count AS "usageCount"
            FROM {self._t_template} t
            JOIN LATERAL (
                SELECT v.*
                FROM {self._t_version} v
                WHERE v."templateId" = t.id
                ORDER BY (v.id = t."activeVersionId") DESC, v.version DESC
                LIMIT 1
            ) tv ON TRUE
            LEFT JOIN LATERAL (
                SELECT
                    COUNT(*) FILTER (WHERE tu.success IS TRUE) AS success_count,
                    COUNT(*) AS total_count
                FROM {self._t_usage} tu
                WHERE tu."templateVersionId" = tv.id
            ) usage ON TRUE
            {where}
        """

    async def fetch_template_detail(self, conn, template_id: int) -> Optional[QueryTemplate]:
        row = await conn.fetchrow(self._select_templates("WHERE t.id = $1"), template_id)
        return template_from_row(dict(row)) if row else None

    async def fetch_approved_templates(self, conn) -> List[QueryTemplate]:
        rows = await conn.fetch(self._select_templates("WHERE t.status = 'Approved'"))
        return [template_from_row(dict(row)) for row in rows]

    async def list_templates(self, conn, filters: TemplateListFilters) -> List[QueryTemplate]:
        conditions: List[str] = []
        params: List[Any] = []

        if filters.status:
            params.append(list(filters.status))
            conditions.append(f"t.status = ANY(${len(params)})")
        if filters.intent:
            params.append(list(filters.intent))
            conditions.append(f"t.intent = ANY(${len(params)})")
        if filters.tags:
            params.append(list(filters.tags))
            conditions.append(f"tv.tags && ${len(params)}::text[]")
        if filters.search and filters.search.strip():
            params.append(f"%{filters.search.strip().lower()}%")
            n = len(params)
            conditions.append(
                f"""(
                    LOWER(t.name) LIKE ${n}
                    OR LOWER(COALESCE(t.description, '')) LIKE ${n}
                    OR EXISTS (
                        SELECT 1 FROM unnest(COALESCE(tv.keywords, '{{}}')) AS kw
                        WHERE LOWER(kw) LIKE ${n}
                    )
                )"""
            )

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([filters.limit, filters.offset])
        sql = (
            self._select_templates(where)
            + f' ORDER BY t."updatedAt" DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}'
        )
        rows = await conn.fetch(sql, *params)
        return [template_from_row(dict(row)) for row in rows]

    # ============================================================================
    # Writes (inside a caller-owned transaction)
    # ============================================================================

    async def find_active_by_name_intent(
        self, conn, name: str, intent: str, exclude_id: Optional[int] = None
    ) -> Optional[int]:
        row = await conn.fetchrow(
            f"""
            SELECT id FROM {self._t_template}
            WHERE name = $1 AND intent = $2
              AND status IN ('Draft', 'Approved')
              AND ($3::integer IS NULL OR id <> $3)
            LIMIT 1
            """,
            name,
            intent,
            exclude_id,
        )
        return int(row["id"]) if row else None

    async def insert_template(
        self, conn, name: str, intent: str, description: Optional[str], created_by: Optional[str]
    ) -> int:
        return await conn.fetchval(
            f"""
            INSERT INTO {self._t_template} (name, intent, description, status, "createdBy")
            VALUES ($1, $2, $3, 'Draft', $4)
            RETURNING id
            """,
            name,
            intent,
            description,
            created_by,
        )

    async def insert_version(
        self,
        conn,
        template_id: int,
        version: int,
        draft: TemplateDraft,
        validation_rules: Optional[Dict[str, Any]] = None,
    ) -> int:
        return await conn.fetchval(
            f"""
            INSERT INTO {self._t_version}
                ("templateId", version, "sqlPattern", "placeholdersSpec", keywords, tags, examples, "validationRules")
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8::jsonb)
            RETURNING id
            """,
            template_id,
            version,
            draft.sql_pattern,
            json.dumps(draft.placeholders_spec) if draft.placeholders_spec is not None else None,
            list(draft.keywords),
            list(draft.tags),
            list(draft.examples),
            json.dumps(validation_rules) if validation_rules is not None else None,
        )

    async def set_active_version(self, conn, template_id: int, version_id: int) -> None:
        await conn.execute(
            f'UPDATE {self._t_template} SET "activeVersionId" = $1, "updatedAt" = now() WHERE id = $2',
            version_id,
            template_id,
        )

    async def lock_template(self, conn, template_id: int) -> Optional[Dict[str, Any]]:
        """Read the template row with FOR UPDATE so concurrent transitions serialize"""
        row = await conn.fetchrow(
            f"""
            SELECT id, name, intent, description, status, "activeVersionId"
            FROM {self._t_template}
            WHERE id = $1
            FOR UPDATE
            """,
            template_id,
        )
        return dict(row) if row else None

    async def fetch_version(self, conn, template: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """The active version of a locked template row (newest version when none is active)"""
        row = await conn.fetchrow(
            f"""
            SELECT id, version, "sqlPattern", "placeholdersSpec", keywords, tags, examples
            FROM {self._t_version}
            WHERE "templateId" = $1
            ORDER BY (id = $2) DESC, version DESC
            LIMIT 1
            """,
            template["id"],
            template.get("activeVersionId"),
        )
        if not row:
            return None
        version = dict(row)
        version["placeholdersSpec"] = _load_json(version.get("placeholdersSpec"))
        version["keywords"] = _text_list(version.get("keywords"))
        version["tags"] = _text_list(version.get("tags"))
        version["examples"] = _text_list(version.get("examples"))
        return version

    async def update_template_meta(
        self, conn, template_id: int, name: str, intent: str, description: Optional[str]
    ) -> None:
        await conn.execute(
            f"""
            UPDATE {self._t_template}
            SET name = $1, intent = $2, description = $3, "updatedAt" = now()
            WHERE id = $4
            """,
            name,
            intent,
            description,
            template_id,
        )

    async def update_version_content(
        self,
        conn,
        version_id: int,
        draft: TemplateDraft,
        validation_rules: Optional[Dict[str, Any]] = None,
    ) -> None:
        await conn.execute(
            f"""
            UPDATE {self._t_version}
            SET "sqlPattern" = $1,
                "placeholdersSpec" = $2::jsonb,
                keywords = $3,
                tags = $4,
                examples = $5,
                "validationRules" = $6::jsonb
            WHERE id = $7
            """,
            draft.sql_pattern,
            json.dumps(draft.placeholders_spec) if draft.placeholders_spec is not None else None,
            list(draft.keywords),
            list(draft.tags),
            list(draft.examples),
            json.dumps(validation_rules) if validation_rules is not None else None,
            version_id,
        )

    async def update_status(self, conn, template_id: int, status: str) -> None:
        await conn.execute(
            f'UPDATE {self._t_template} SET status = $1, "updatedAt" = now() WHERE id = $2',
            status,
            template_id,
        )

    # ============================================================================
    # Usage log
    # ============================================================================

    async def insert_usage(
        self,
        conn,
        template_version_id: Optional[int],
        sub_question_id: Optional[int],
        question_text: Optional[str],
        chosen: bool,
        matched_keywords: List[str],
        matched_example: Optional[str],
    ) -> int:
        return await conn.fetchval(
            f"""
            INSERT INTO {self._t_usage}
                ("templateVersionId", "subQuestionId", "questionText", chosen, "matchedKeywords", "matchedExample")
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
            """,
            template_version_id,
            sub_question_id,
            question_text,
            chosen,
            list(matched_keywords),
            matched_example,
        )

    async def update_usage_outcome(
        self,
        conn,
        usage_id: int,
        success: bool,
        error_type: Optional[str],
        latency_ms: Optional[int],
    ) -> None:
        # Without an explicit latency, record the time elapsed since the match
        await conn.execute(
            f"""
            UPDATE {self._t_usage}
            SET success = $1,
                "errorType" = $2,
                "latencyMs" = COALESCE(
                    $3::integer,
                    GREATEST(0, (EXTRACT(EPOCH FROM (now() - "matchedAt")) * 1000)::integer)
                )
            WHERE id = $4
            """,
            success,
            error_type,
            latency_ms,
            usage_id,
        )
