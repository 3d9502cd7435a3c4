"""Funnel Store - persistence for query funnels, sub-questions and their results"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import json

import asyncpg

from ..connections.postgresql import PostgreSQLConfig
from ...adapters.postgresql import PostgreSQLAdapter
from ...exceptions import FunnelConflictError
from .schema import get_funnel_ddl
from .models import NewSubQuestion, QueryFunnel, SqlAnnotations, SubQuestion


class FunnelStore:
    """CRUD over QueryFunnel / SubQuestions / QueryResults

    Usage:
        store = await FunnelStore.initialize(
            postgres_config=PostgreSQLConfig(...),
            funnel_schema="rpt",
        )
    """

    def __init__(
        self,
        postgres_config: Optional[PostgreSQLConfig] = None,
        funnel_schema: str = "rpt",
        adapter: Optional[PostgreSQLAdapter] = None,
    ):
        """Initialize FunnelStore

        Args:
            postgres_config: PostgreSQL connection configuration
            funnel_schema: Schema name for funnel tables (default: "rpt")
            adapter: Pre-built adapter to share a pool with other stores
        """
        if postgres_config is None and adapter is None:
            raise ValueError("FunnelStore needs a postgres_config or an adapter")
        self.postgres_config = postgres_config
        self.funnel_schema = funnel_schema
        self.logger = logging.getLogger(__name__)
        self._adapter: Optional[PostgreSQLAdapter] = adapter

    @classmethod
    async def initialize(
        cls,
        postgres_config: Optional[PostgreSQLConfig] = None,
        funnel_schema: str = "rpt",
        adapter: Optional[PostgreSQLAdapter] = None,
        auto_init_tables: bool = True,
    ) -> "FunnelStore":
        """Create a FunnelStore and make sure its tables exist"""
        store = cls(postgres_config, funnel_schema, adapter)

        if auto_init_tables:
            if not await store.check_table_exists():
                store.logger.info(f"Creating funnel tables in schema '{funnel_schema}'...")
                if await store.init_funnel_tables():
                    store.logger.info(f"Funnel tables initialized successfully in schema '{funnel_schema}'")
                else:
                    store.logger.warning("Failed to initialize funnel tables")
            else:
                store.logger.info(f"Funnel tables already exist in schema '{funnel_schema}'")

        return store

    def _get_adapter(self) -> PostgreSQLAdapter:
        """Get or create PostgreSQL adapter"""
        if self._adapter is None:
            self._adapter = PostgreSQLAdapter(self.postgres_config)
        return self._adapter

    @property
    def _t_funnel(self) -> str:
        return f'{self.funnel_schema}."QueryFunnel"'

    @property
    def _t_sub(self) -> str:
        return f'{self.funnel_schema}."SubQuestions"'

    @property
    def _t_results(self) -> str:
        return f'{self.funnel_schema}."QueryResults"'

    async def _run(self, sql: str, params: Sequence[Any] = ()) -> Optional[List[Dict[str, Any]]]:
        """Execute one statement; rows as dicts, or None when the statement failed"""
        adapter = self._get_adapter()
        result = await adapter.sql_execution(sql, params=params, safe=False, limit=None)
        if not result.get("success"):
            self.logger.error(f"Funnel store query failed: {result.get('error', 'Unknown error')}")
            return None
        return adapter.rows_to_dicts(result)

    # ============================================================================
    # Initialization methods
    # ============================================================================

    async def init_funnel_tables(self) -> bool:
        ddl_statements = get_funnel_ddl(schema_name=self.funnel_schema)
        for idx, ddl in enumerate(ddl_statements, 1):
            self.logger.debug(f"Executing DDL statement {idx}/{len(ddl_statements)}")
            if await self._run(ddl) is None:
                ddl_preview = ddl.strip()[:200].replace('\n', ' ')
                self.logger.error(f"Failed DDL: {ddl_preview}...")
                return False
        return True

    async def check_table_exists(self) -> bool:
        rows = await self._run(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1 AND table_name = 'QueryFunnel'
            """,
            (self.funnel_schema,),
        )
        return bool(rows)

    # ============================================================================
    # QueryFunnel
    # ============================================================================

    async def create_funnel(self, assessment_form_version_fk: str, original_question: str) -> QueryFunnel:
        """Insert an active funnel

        Raises:
            FunnelConflictError: an active funnel for this exact question already exists
        """
        funnel, _ = await self.create_funnel_with_sub_questions(
            assessment_form_version_fk, original_question, []
        )
        return funnel

    async def create_funnel_with_sub_questions(
        self,
        assessment_form_version_fk: str,
        original_question: str,
        sub_questions: Sequence[NewSubQuestion],
    ) -> Tuple[QueryFunnel, List[SubQuestion]]:
        """Insert a funnel and its sub-questions in one transaction

        Readers never observe a cached funnel without its sub-questions.

        Raises:
            FunnelConflictError: an active funnel for this exact question already exists
        """
        adapter = self._get_adapter()
        try:
            async with adapter.transaction() as conn:
                funnel_row = await conn.fetchrow(
                    f"""
                    INSERT INTO {self._t_funnel}
                        ("assessmentFormVersionFk", "originalQuestion", status, "createdDate", "lastModifiedDate")
                    VALUES ($1, $2, 'active', now(), now())
                    RETURNING *
                    """,
                    assessment_form_version_fk,
                    original_question,
                )
                funnel = QueryFunnel.from_row(adapter.record_to_dict(funnel_row))

                stored: List[SubQuestion] = []
                for sq in sub_questions:
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO {self._t_sub} ("funnelId", "questionText", "order", "sqlQuery", status)
                        VALUES ($1, $2, $3, $4, 'pending')
                        RETURNING *
                        """,
                        funnel.id,
                        sq.question_text,
                        sq.order,
                        sq.sql_query,
                    )
                    stored.append(SubQuestion.from_row(adapter.record_to_dict(row)))
        except asyncpg.UniqueViolationError as e:
            raise FunnelConflictError(
                f"Active funnel already exists for form version {assessment_form_version_fk}"
            ) from e

        self.logger.info(f"Created funnel {funnel.id} with {len(stored)} sub-questions")
        return funnel, stored

    async def get_funnel_by_id(self, funnel_id: int) -> Optional[QueryFunnel]:
        rows = await self._run(f"SELECT * FROM {self._t_funnel} WHERE id = $1", (funnel_id,))
        return QueryFunnel.from_row(rows[0]) if rows else None

    async def find_funnel_by_question(
        self, assessment_form_version_fk: str, original_question: str
    ) -> Optional[QueryFunnel]:
        """Exact-text lookup of the active funnel for a question"""
        rows = await self._run(
            f"""
            SELECT * FROM {self._t_funnel}
            WHERE "assessmentFormVersionFk" = $1
              AND "originalQuestion" = $2
              AND status = 'active'
            ORDER BY "createdDate" DESC
            LIMIT 1
            """,
            (assessment_form_version_fk, original_question),
        )
        return QueryFunnel.from_row(rows[0]) if rows else None

    async def list_funnels(self) -> List[QueryFunnel]:
        rows = await self._run(f'SELECT * FROM {self._t_funnel} ORDER BY "createdDate" DESC')
        return [QueryFunnel.from_row(row) for row in rows or []]

    async def update_funnel_status(self, funnel_id: int, status: str) -> bool:
        rows = await self._run(
            f'UPDATE {self._t_funnel} SET status = $1, "lastModifiedDate" = now() WHERE id = $2',
            (status, funnel_id),
        )
        return rows is not None

    # ============================================================================
    # SubQuestions
    # ============================================================================

    async def add_sub_question(self, funnel_id: int, sub_question: NewSubQuestion) -> Optional[SubQuestion]:
        rows = await self._run(
            f"""
            INSERT INTO {self._t_sub} ("funnelId", "questionText", "order", "sqlQuery", status)
            VALUES ($1, $2, $3, $4, 'pending')
            RETURNING *
            """,
            (funnel_id, sub_question.question_text, sub_question.order, sub_question.sql_query),
        )
        return SubQuestion.from_row(rows[0]) if rows else None

    async def add_sub_questions(
        self, funnel_id: int, sub_questions: Sequence[NewSubQuestion]
    ) -> List[SubQuestion]:
        stored = []
        for sub_question in sub_questions:
            row = await self.add_sub_question(funnel_id, sub_question)
            if row is not None:
                stored.append(row)
        return stored

    async def get_sub_questions(self, funnel_id: int) -> List[SubQuestion]:
        rows = await self._run(
            f'SELECT * FROM {self._t_sub} WHERE "funnelId" = $1 ORDER BY "order"',
            (funnel_id,),
        )
        return [SubQuestion.from_row(row) for row in rows or []]

    async def update_sub_question_status(self, sub_question_id: int, status: str) -> bool:
        rows = await self._run(
            f"UPDATE {self._t_sub} SET status = $1 WHERE id = $2",
            (status, sub_question_id),
        )
        return rows is not None

    async def update_sub_question_text(self, sub_question_id: int, question_text: str) -> bool:
        rows = await self._run(
            f'UPDATE {self._t_sub} SET "questionText" = $1 WHERE id = $2',
            (question_text, sub_question_id),
        )
        return rows is not None

    async def update_sub_question_sql(
        self,
        sub_question_id: int,
        sql_query: str,
        annotations: Optional[SqlAnnotations] = None,
    ) -> bool:
        """Store generated SQL together with its explanation, validation notes and matched template"""
        annotations = annotations or SqlAnnotations()
        rows = await self._run(
            f"""
            UPDATE {self._t_sub}
            SET "sqlQuery" = $1,
                "sqlExplanation" = $2,
                "sqlValidationNotes" = $3,
                "sqlMatchedTemplate" = $4
            WHERE id = $5
            """,
            (
                sql_query,
                annotations.explanation,
                annotations.validation_notes,
                annotations.matched_template,
                sub_question_id,
            ),
        )
        return rows is not None

    # ============================================================================
    # QueryResults
    # ============================================================================

    async def store_query_result(self, sub_question_id: int, result_data: Any) -> bool:
        rows = await self._run(
            f"""
            INSERT INTO {self._t_results} ("subQuestionId", "resultData")
            VALUES ($1, $2::jsonb)
            """,
            (sub_question_id, json.dumps(result_data, ensure_ascii=False, default=str)),
        )
        if rows is not None:
            await self._run(
                f'UPDATE {self._t_sub} SET "lastExecutionDate" = now() WHERE id = $1',
                (sub_question_id,),
            )
        return rows is not None

    async def get_query_result(self, sub_question_id: int) -> Optional[Any]:
        """Latest stored result for a sub-question"""
        rows = await self._run(
            f"""
            SELECT "resultData" FROM {self._t_results}
            WHERE "subQuestionId" = $1
            ORDER BY "executionDate" DESC
            LIMIT 1
            """,
            (sub_question_id,),
        )
        if not rows:
            return None
        data = rows[0].get("resultData")
        if isinstance(data, str):
            try:
                return json.loads(data)
            except ValueError:
                return data
        return data

    async def cleanup_old_results(self, older_than_hours: int = 24) -> Optional[int]:
        """Delete results older than the given age; returns the number of rows removed"""
        adapter = self._get_adapter()
        result = await adapter.sql_execution(
            f"""
            DELETE FROM {self._t_results}
            WHERE "executionDate" < now() - make_interval(hours => $1)
            """,
            params=(int(older_than_hours),),
            safe=False,
            limit=None,
        )
        if not result.get("success"):
            self.logger.error(f"Failed to clean up query results: {result.get('error')}")
            return None
        removed = result.get("metadata", {}).get("rows_affected")
        self.logger.info(f"Removed {removed} query results older than {older_than_hours}h")
        return removed

    # ============================================================================
    # Connection management
    # ============================================================================

    async def close(self):
        """Close database connection"""
        if self._adapter:
            await self._adapter.close_pool()
            self.logger.debug("FunnelStore connection closed")
