"""
Utility functions for query2template
"""

from .helpers import (
    normalize_whitespace,
    tokenize,
    jaccard_similarity,
    clamp01,
    compute_success_rate,
    first_non_blank,
    get_logger,
)
from .json_utils import clean_json_string, extract_json_from_string, extract_json_object

__all__ = [
    # helpers
    "normalize_whitespace",
    "tokenize",
    "jaccard_similarity",
    "clamp01",
    "compute_success_rate",
    "first_non_blank",
    "get_logger",
    # json_utils
    "clean_json_string",
    "extract_json_from_string",
    "extract_json_object",
]
