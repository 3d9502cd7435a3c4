"""
Helper utility functions
"""

import re
import logging
from typing import Iterable, Optional, Set


def normalize_whitespace(text: str) -> str:
    """
    Collapse every whitespace run to a single space and trim

    Args:
        text: Text (usually SQL) to normalize

    Returns:
        Normalized text, "" for non-strings
    """
    if not isinstance(text, str):
        return ""
    return re.sub(r'\s+', ' ', text).strip()


def tokenize(text: Optional[str]) -> Set[str]:
    """
    Split text into lower-case word tokens

    Args:
        text: Input text

    Returns:
        Set of tokens made of [a-z0-9_]
    """
    if not isinstance(text, str):
        return set()
    return {token for token in re.split(r'[^a-z0-9_]+', text.lower()) if token}


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    """|A ∩ B| / |A ∪ B|, 0.0 when either set is empty"""
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    return intersection / union if union > 0 else 0.0


def clamp01(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value or value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return value


def compute_success_rate(success_count: Optional[int], usage_count: Optional[int]) -> Optional[float]:
    """
    Success ratio of a template version

    Returns:
        successCount / usageCount clamped to [0, 1], or None when the
        template has never been used
    """
    usage = usage_count or 0
    if usage <= 0:
        return None
    return clamp01((success_count or 0) / usage)


def first_non_blank(values: Iterable[Optional[str]]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def get_logger(name: str = "query2template", level: int = logging.INFO) -> logging.Logger:
    """
    Get configured logger instance

    Args:
        name: Logger name
        level: Logging level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        # Configure logger if not already configured
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(level)

    return logger
