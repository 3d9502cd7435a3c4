"""
Database adapters
"""

from .postgresql import PostgreSQLAdapter

__all__ = ["PostgreSQLAdapter"]
