"""Funnel scaffold simplifier - collapses Step<N>_Results CTE chains into flat SQL"""

from __future__ import annotations

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ...utils.helpers import normalize_whitespace

logger = logging.getLogger(__name__)

STEP_CTE_NAME = re.compile(r"^STEP\d+(_RESULTS)?$", re.IGNORECASE)

_WITH_KEYWORD = re.compile(r"WITH\b", re.IGNORECASE)
_CTE_HEAD = re.compile(r"\s*([A-Za-z_][A-Za-z0-9_]*)\s+AS\s*\(", re.IGNORECASE)
_CTE_SEPARATOR = re.compile(r"\s*,")

# FROM / JOIN / APPLY followed by a bare (unqualified, non-call) table name
_TABLE_REFERENCE = re.compile(
    r"\b(?P<keyword>FROM"
    r"|(?:(?:INNER|CROSS|(?:LEFT|RIGHT|FULL)(?:\s+OUTER)?)\s+)?JOIN"
    r"|CROSS\s+APPLY|OUTER\s+APPLY)"
    r"\s+(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?![A-Za-z0-9_.(])",
    re.IGNORECASE,
)
_ALIAS = re.compile(r"\s+(?:AS\s+)?([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)
_NOT_AN_ALIAS = frozenset({
    "WHERE", "GROUP", "ORDER", "HAVING", "JOIN", "INNER", "LEFT", "RIGHT", "FULL",
    "OUTER", "CROSS", "ON", "USING", "UNION", "EXCEPT", "INTERSECT", "LIMIT",
    "OFFSET", "FETCH", "FOR", "OPTION", "WITH", "SELECT", "AS", "PIVOT", "UNPIVOT",
    "WINDOW", "NATURAL", "APPLY", "INTO", "WHEN", "THEN", "ELSE", "END", "AND",
    "OR", "NOT", "QUALIFY",
})
_RESIDUAL_EXISTS = re.compile(
    r"WHERE\s+EXISTS\s*\(\s*SELECT\b[\s\S]*?\bSTEP\d+_RESULTS\b", re.IGNORECASE
)


@dataclass
class CteDefinition:
    name: str
    body: str
    raw: str


@dataclass
class ParsedWithClause:
    ctes: List[CteDefinition]
    main_query: str


@dataclass
class SimplificationResult:
    sql: str
    changed: bool
    removed_ctes: List[str] = field(default_factory=list)
    reason: Optional[str] = None


def find_matching_paren(text: str, open_index: int) -> Optional[int]:
    """Return the index of the ')' closing the '(' at open_index.

    Parentheses inside single- or double-quoted spans are ignored; a backslash
    inside a quoted span escapes the next character. Returns None when the
    parenthesis is never closed.
    """
    if open_index < 0 or open_index >= len(text) or text[open_index] != "(":
        return None

    depth = 0
    quote: Optional[str] = None
    i = open_index
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 2
                continue
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return None


def parse_with_clause(sql: str) -> Optional[ParsedWithClause]:
    """Split `WITH a AS (...), b AS (...) <main>` into CTE records and the main query.

    Returns None when the statement is not a WITH statement or its structure
    is not understood (unbalanced parentheses, column lists, RECURSIVE, no
    main query).
    """
    text = sql.strip()
    head = _WITH_KEYWORD.match(text)
    if not head:
        return None

    ctes: List[CteDefinition] = []
    position = head.end()
    while True:
        match = _CTE_HEAD.match(text, position)
        if not match:
            return None
        open_index = match.end() - 1
        close_index = find_matching_paren(text, open_index)
        if close_index is None:
            return None

        ctes.append(CteDefinition(
            name=match.group(1),
            body=text[open_index + 1:close_index].strip(),
            raw=text[match.start(1):close_index + 1],
        ))
        position = close_index + 1

        separator = _CTE_SEPARATOR.match(text, position)
        if not separator:
            break
        position = separator.end()

    main_query = text[position:].strip()
    if not main_query:
        return None
    return ParsedWithClause(ctes=ctes, main_query=main_query)


def is_step_cte(name: str) -> bool:
    return bool(STEP_CTE_NAME.match(name or ""))


def _synthesized_alias(name: str) -> str:
    # Step2_Results -> step2; keeps the inlined SQL free of scaffold identifiers
    return re.sub(r"_RESULTS$", "", name, flags=re.IGNORECASE).lower()


def _explicit_alias(text: str, end: int) -> Optional[str]:
    match = _ALIAS.match(text, end)
    if not match:
        return None
    alias = match.group(1)
    if alias.upper() in _NOT_AN_ALIAS:
        return None
    return alias


def _references_to(text: str, name: str) -> List[re.Match]:
    key = name.upper()
    return [m for m in _TABLE_REFERENCE.finditer(text) if m.group("name").upper() == key]


def _inline_one(text: str, name: str, body: str) -> str:
    references = _references_to(text, name)
    if not references:
        return text

    alias = _synthesized_alias(name)
    if any(_explicit_alias(text, m.end()) is None for m in references):
        text = re.sub(
            rf"(?<![\w.]){re.escape(name)}\s*\.(?=\s*[A-Za-z_\[\"*])",
            f"{alias}.",
            text,
            flags=re.IGNORECASE,
        )

    key = name.upper()

    def replace(match: re.Match) -> str:
        if match.group("name").upper() != key:
            return match.group(0)
        subquery = f"{match.group('keyword')} (\n{body}\n)"
        if _explicit_alias(match.string, match.end()) is None:
            subquery += f" AS {alias}"
        return subquery

    return _TABLE_REFERENCE.sub(replace, text)


def _inline_step_references(text: str, resolved: Dict[str, Tuple[str, str]]) -> str:
    for name, body in resolved.values():
        text = _inline_one(text, name, body)
    return text


def _has_unresolved_scaffold(text: str, resolved: Dict[str, Tuple[str, str]]) -> bool:
    if _RESIDUAL_EXISTS.search(text):
        return True

    for key, (name, _) in resolved.items():
        if not re.search(rf"(?<![\w.]){re.escape(name)}(?!\w)", text, re.IGNORECASE):
            continue
        if key.endswith("_RESULTS"):
            return True
        # Step<N> names collide with their own synthesized alias; only table references count
        if _references_to(text, name):
            return True
    return False


def simplify_funnel_sql(sql: str) -> SimplificationResult:
    """Inline funnel step CTEs (Step<N> / Step<N>_Results) into a single statement.

    Non-step CTEs are kept in a leading WITH clause. The transform is purely
    textual and conservative: whenever the statement cannot be parsed, or a
    step reference survives inlining, the original SQL is returned with
    changed=False.
    """
    if not isinstance(sql, str) or not sql.strip():
        return SimplificationResult(sql=sql if isinstance(sql, str) else "", changed=False)

    text = sql.strip()
    if not text.upper().startswith("WITH"):
        return SimplificationResult(sql=sql, changed=False)

    parsed = parse_with_clause(text)
    if parsed is None:
        logger.debug("WITH clause could not be parsed; leaving SQL unchanged")
        return SimplificationResult(sql=sql, changed=False, reason="unparseable")

    if not any(is_step_cte(cte.name) for cte in parsed.ctes):
        return SimplificationResult(sql=sql, changed=False)

    resolved: Dict[str, Tuple[str, str]] = {}
    kept: List[CteDefinition] = []
    for cte in parsed.ctes:
        body = _inline_step_references(cte.body, resolved)
        if is_step_cte(cte.name):
            resolved[cte.name.upper()] = (cte.name, body)
        elif body == cte.body:
            kept.append(cte)
        else:
            kept.append(CteDefinition(name=cte.name, body=body, raw=f"{cte.name} AS (\n{body}\n)"))

    main_query = _inline_step_references(parsed.main_query, resolved)

    remaining = "\n".join([cte.body for cte in kept] + [main_query])
    if _has_unresolved_scaffold(remaining, resolved):
        logger.info("Funnel scaffold could not be fully inlined; keeping original SQL")
        return SimplificationResult(sql=sql, changed=False, reason="unresolved")

    if kept:
        rebuilt = "WITH " + ",\n".join(cte.raw for cte in kept) + "\n" + main_query
    else:
        rebuilt = main_query

    if normalize_whitespace(rebuilt) == normalize_whitespace(text):
        return SimplificationResult(sql=sql, changed=False)

    removed = [name for name, _ in resolved.values()]
    logger.debug(f"Inlined funnel scaffold CTEs: {', '.join(removed)}")
    return SimplificationResult(sql=rebuilt, changed=True, removed_ctes=removed)
