"""
Prompt builder for template extraction and funnel decomposition
"""

import json
import re
from typing import Any, Dict, Optional

from ..core.template_matching.models import TEMPLATE_INTENTS


def _sanitize(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip())


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


class PromptBuilder:
    """Build prompts for the template-draft and sub-question model calls"""

    TEMPLATE_EXTRACTION_TEMPLATE = """You are a template curator. Convert a successful SQL query into a reusable, parameterized query template.

Return ONLY a JSON object with this exact shape:
{{
  "name": string,
  "intent": string,
  "description": string,
  "sqlPattern": string,
  "placeholdersSpec": {{
    "slots": [
      {{
        "name": string,
        "type": "guid" | "int" | "string" | "date" | "boolean" | "float" | "decimal" | null,
        "semantic": string | null,
        "required": boolean,
        "default": any | null,
        "validators": string[] | null
      }}
    ]
  }} | null,
  "keywords": string[],
  "tags": string[],
  "examples": string[],
  "warnings": string[]
}}

Guidelines:
1. Rewrite literal filter values in sqlPattern as {{camelCase}} placeholders and declare one slot per placeholder.
2. Remove funnel scaffolding: CTE chains named Step1_Results, Step2_Results, ... must be folded into a single query. Keep CTEs that carry real analytical logic (date ranges, window functions, multi-level aggregation).
3. Keep the rpt. schema prefix on every table.
4. intent must be one of: {intents}.
5. keywords: 5-10 lower-case matching tokens, no duplicates. examples: 3 natural language questions this template answers.
6. Use warnings for caveats a reviewer should see; return an empty array if there are none.

Question:
{question}

SQL:
{sql}

Schema context:
{schema_context}"""

    SUB_QUESTIONS_TEMPLATE = """You are a clinical data analyst assistant. Break the complex analytical question below into smaller, incremental sub-questions, each answerable with one straightforward SQL query.

Respond with ONLY a valid JSON object:
{{
  "original_question": string,
  "matched_template": string,
  "sub_questions": [
    {{"step": 1, "question": string, "depends_on": null}},
    {{"step": 2, "question": string, "depends_on": 1}}
  ]
}}

Every sub-question after the first must explicitly reference the output of the step(s) it depends on, so each step narrows, aggregates or compares the data of the previous one until the original question is answered.

Original question:
{question}

Form definition:
{form_definition}

Database schema:
{schema_context}"""

    def __init__(self, custom_templates: Optional[Dict[str, str]] = None):
        """
        Initialize prompt builder

        Args:
            custom_templates: Overrides keyed by "template_extraction" / "sub_questions"
        """
        self.templates = {
            "template_extraction": self.TEMPLATE_EXTRACTION_TEMPLATE,
            "sub_questions": self.SUB_QUESTIONS_TEMPLATE,
        }

        if custom_templates:
            self.templates.update(custom_templates)

    def build_template_extraction_prompt(
        self,
        question: str,
        sql_query: str,
        schema_context: Optional[str] = None,
    ) -> str:
        """
        Build the prompt asking a model to turn question + SQL into a template draft

        Args:
            question: The natural language question the SQL answered
            sql_query: SQL that answered it
            schema_context: Optional schema description

        Returns:
            Formatted prompt string
        """
        return self.templates["template_extraction"].format(
            intents=", ".join(intent for intent in TEMPLATE_INTENTS if intent != "legacy_unknown"),
            question=_sanitize(question),
            sql=sql_query.strip(),
            schema_context=_as_text(schema_context) or "(not provided)",
        )

    def build_sub_question_prompt(
        self,
        original_question: str,
        form_definition: Optional[Any] = None,
        schema_context: Optional[Any] = None,
    ) -> str:
        return self.templates["sub_questions"].format(
            question=_sanitize(original_question),
            form_definition=_as_text(form_definition) or "(not provided)",
            schema_context=_as_text(schema_context) or "(not provided)",
        )

    def set_template(self, name: str, template: str) -> None:
        """
        Replace one of the prompt templates

        Args:
            name: "template_extraction" or "sub_questions"
            template: Template string using the same format fields
        """
        if name not in self.templates:
            raise ValueError(f"Unknown prompt template: {name}")
        self.templates[name] = template

    def get_template(self, name: str) -> str:
        if name not in self.templates:
            raise ValueError(f"Unknown prompt template: {name}")
        return self.templates[name]
