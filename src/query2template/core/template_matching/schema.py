"""Template catalog tables schema definitions"""

from typing import List


def get_template_ddl(schema_name: str = "public") -> List[str]:
    """Return DDL statements for the template catalog tables.

    Tables: "Template" (one row per template, status + active version),
    "TemplateVersion" (sqlPattern and placeholdersSpec snapshots) and
    "TemplateUsage" (per-match runtime log feeding success statistics).

    Args:
        schema_name: Schema name (default: "public")

    Returns:
        List[str]: List of DDL statements
    """
    s = schema_name
    return [
        f"CREATE SCHEMA IF NOT EXISTS {s}",

        f"""
        CREATE TABLE IF NOT EXISTS {s}."Template" (
            id serial PRIMARY KEY,
            name text NOT NULL,
            intent text NOT NULL,
            description text,
            status varchar(20) NOT NULL DEFAULT 'Draft',
            "activeVersionId" integer,
            "createdBy" text,
            "createdAt" timestamptz NOT NULL DEFAULT now(),
            "updatedAt" timestamptz NOT NULL DEFAULT now(),
            CONSTRAINT "CHK_Template_Status" CHECK (status IN ('Draft', 'Approved', 'Deprecated'))
        )
        """,

        # Deprecated templates keep their names; only live ones must be unique
        f'CREATE UNIQUE INDEX IF NOT EXISTS "UX_Template_Name_Intent_Active" '
        f"ON {s}.\"Template\" (name, intent) WHERE status IN ('Draft', 'Approved')",

        f'CREATE INDEX IF NOT EXISTS "IX_Template_Status" ON {s}."Template" (status)',

        f"""
        CREATE TABLE IF NOT EXISTS {s}."TemplateVersion" (
            id serial PRIMARY KEY,
            "templateId" integer NOT NULL REFERENCES {s}."Template"(id) ON DELETE CASCADE,
            version integer NOT NULL,
            "sqlPattern" text NOT NULL,
            "placeholdersSpec" jsonb,
            keywords text[] DEFAULT '{{}}',
            tags text[] DEFAULT '{{}}',
            examples text[] DEFAULT '{{}}',
            "validationRules" jsonb,
            "createdAt" timestamptz NOT NULL DEFAULT now(),
            CONSTRAINT "UQ_TemplateVersion_templateId_version" UNIQUE ("templateId", version),
            CONSTRAINT "CHK_TemplateVersion_Version_Positive" CHECK (version > 0)
        )
        """,

        f'CREATE INDEX IF NOT EXISTS "IX_TemplateVersion_VersionDesc" '
        f'ON {s}."TemplateVersion" ("templateId", version DESC)',

        f"""
        DO $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1 FROM pg_constraint WHERE conname = 'FK_Template_ActiveVersion'
            ) THEN
                ALTER TABLE {s}."Template"
                ADD CONSTRAINT "FK_Template_ActiveVersion"
                FOREIGN KEY ("activeVersionId") REFERENCES {s}."TemplateVersion"(id) ON DELETE SET NULL;
            END IF;
        END
        $$
        """,

        f"""
        CREATE TABLE IF NOT EXISTS {s}."TemplateUsage" (
            id serial PRIMARY KEY,
            "templateVersionId" integer REFERENCES {s}."TemplateVersion"(id) ON DELETE SET NULL,
            "subQuestionId" integer,
            "questionText" text,
            chosen boolean NOT NULL DEFAULT true,
            success boolean,
            "errorType" text,
            "latencyMs" integer CHECK ("latencyMs" IS NULL OR "latencyMs" >= 0),
            "matchedKeywords" text[] DEFAULT '{{}}',
            "matchedExample" text,
            "matchedAt" timestamptz NOT NULL DEFAULT now()
        )
        """,

        f'CREATE INDEX IF NOT EXISTS "IX_TemplateUsage_TemplateVersionId" '
        f'ON {s}."TemplateUsage" ("templateVersionId")',

        f'CREATE INDEX IF NOT EXISTS "IX_TemplateUsage_Success" '
        f'ON {s}."TemplateUsage" ("templateVersionId", success) WHERE success IS NOT NULL',
    ]
