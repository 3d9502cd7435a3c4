"""JSON parsing utilities for handling LLM responses."""

from __future__ import annotations

import ast
import json
import re
import logging
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

_JSON_PATTERNS = [
    r'```json\s*([\s\S]*?)```',
    r'```\s*([\{\[][\s\S]*?[\]\}])\s*```',
    r'([\{\[][\s\S]*[\]\}])',
]


def _strip_line_comment(line: str) -> str:
    in_string = False
    escape_next = False

    for i, char in enumerate(line):
        if escape_next:
            escape_next = False
            continue
        if char == '\\':
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if not in_string and line[i:i + 2] == '//':
            return line[:i].rstrip()

    return line


def clean_json_string(json_str: str) -> str:
    """
    Clean JSON string by removing comments and fixing common issues.

    Args:
        json_str: Raw JSON string that may contain comments or formatting issues

    Returns:
        Cleaned JSON string
    """
    lines = [_strip_line_comment(line) for line in json_str.split('\n')]
    json_str = '\n'.join(line for line in lines if line.strip())

    # Multi-line comments
    json_str = re.sub(r'/\*[\s\S]*?\*/', '', json_str)

    # Trailing commas
    json_str = re.sub(r',\s*([}\]])', r'\1', json_str)

    json_str = json_str.replace('\ufeff', '').replace('\u200b', '')

    return json_str.strip()


def extract_json_from_string(resp_content: Optional[str]) -> Optional[Union[Dict, List]]:
    """
    Extract JSON from a model response, tolerating code fences and comments.

    Args:
        resp_content: Response content that may contain JSON

    Returns:
        Parsed JSON as dict or list, or None if parsing fails
    """
    if not resp_content:
        return None

    match_str = ''
    for pattern in _JSON_PATTERNS:
        match = re.search(pattern, resp_content, re.DOTALL)
        if match:
            match_str = match.group(1)
            break

    if not match_str:
        match_str = resp_content

    candidates = [clean_json_string(match_str)]
    if candidates[0] != match_str:
        candidates.append(match_str)

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except (ValueError, TypeError):
            pass
        try:
            # Models sometimes answer with Python literals (True/None, single quotes)
            return ast.literal_eval(candidate)
        except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
            pass

    logger.warning("Could not parse JSON from model response (%d chars)", len(resp_content))
    return None


def extract_json_object(resp_content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Like extract_json_from_string, but only accepts a top-level object."""
    parsed = extract_json_from_string(resp_content)
    return parsed if isinstance(parsed, dict) else None
