"""Query funnel tables schema definitions"""

from typing import List


def get_funnel_ddl(schema_name: str = "rpt") -> List[str]:
    """Return DDL statements for the funnel tables.

    Args:
        schema_name: Schema name (default: "rpt")

    Returns:
        List[str]: List of DDL statements
    """
    s = schema_name
    return [
        f"CREATE SCHEMA IF NOT EXISTS {s}",

        f"""
        CREATE TABLE IF NOT EXISTS {s}."QueryFunnel" (
            id serial PRIMARY KEY,
            "assessmentFormVersionFk" text NOT NULL,
            "originalQuestion" text NOT NULL,
            status varchar(20) NOT NULL DEFAULT 'active',
            "createdDate" timestamptz NOT NULL DEFAULT now(),
            "lastModifiedDate" timestamptz NOT NULL DEFAULT now()
        )
        """,

        # Exact-text cache key; concurrent creators lose with a unique violation
        f'CREATE UNIQUE INDEX IF NOT EXISTS "UX_QueryFunnel_Active_Question" '
        f'ON {s}."QueryFunnel" ("assessmentFormVersionFk", "originalQuestion") '
        f"WHERE status = 'active'",

        f"""
        CREATE TABLE IF NOT EXISTS {s}."SubQuestions" (
            id serial PRIMARY KEY,
            "funnelId" integer NOT NULL REFERENCES {s}."QueryFunnel"(id) ON DELETE CASCADE,
            "questionText" text NOT NULL,
            "order" integer NOT NULL,
            "sqlQuery" text,
            status varchar(20) NOT NULL DEFAULT 'pending',
            "sqlExplanation" text,
            "sqlValidationNotes" text,
            "sqlMatchedTemplate" text,
            "lastExecutionDate" timestamptz
        )
        """,

        f'CREATE INDEX IF NOT EXISTS "IX_SubQuestions_FunnelId" '
        f'ON {s}."SubQuestions" ("funnelId", "order")',

        f"""
        CREATE TABLE IF NOT EXISTS {s}."QueryResults" (
            id serial PRIMARY KEY,
            "subQuestionId" integer NOT NULL REFERENCES {s}."SubQuestions"(id) ON DELETE CASCADE,
            "resultData" jsonb,
            "executionDate" timestamptz NOT NULL DEFAULT now()
        )
        """,

        f'CREATE INDEX IF NOT EXISTS "IX_QueryResults_SubQuestion" '
        f'ON {s}."QueryResults" ("subQuestionId", "executionDate" DESC)',
    ]
