"""
Query funnels: cached decompositions of complex questions into sub-questions
"""

from .cache import FunnelCache
from .models import CachedSubQuestionResult, NewSubQuestion, QueryFunnel, SqlAnnotations, SubQuestion
from .store import FunnelStore

__all__ = [
    "FunnelCache",
    "FunnelStore",
    "CachedSubQuestionResult",
    "NewSubQuestion",
    "QueryFunnel",
    "SqlAnnotations",
    "SubQuestion",
]
