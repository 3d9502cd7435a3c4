"""
Database connection configurations
"""

from .postgresql import PostgreSQLConfig
from .factory import load_config_from_dict, load_config_from_url

__all__ = [
    "PostgreSQLConfig",
    "load_config_from_dict",
    "load_config_from_url",
]
