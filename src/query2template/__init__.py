"""
query2template: Reusable, validated SQL query templates extracted from answered questions
"""

__version__ = "0.1.0"

from .config import TemplateSystemConfig, load_template_config
from .exceptions import (
    Query2TemplateError,
    ConfigurationError,
    ProviderResponseError,
    TemplateServiceError,
    TemplateNotFoundError,
    TemplateStateError,
    TemplateConflictError,
    TemplateValidationError,
    FunnelConflictError,
)

# Template services
from .core.template_matching.extraction import TemplateExtractionService
from .core.template_matching.catalog import TemplateCatalog
from .core.template_matching.repository import TemplateRepository
from .core.template_matching.service import TemplateService
from .core.template_matching.usage import TemplateUsageLogger

# Funnel
from .core.funnel import FunnelCache, FunnelStore

# Connection utilities
from .core.connections import PostgreSQLConfig, load_config_from_url, load_config_from_dict

# AI providers
from .core.utils import ModelConfig, load_model_configs
from .llm import ChatModelProvider, ProviderRegistry

__all__ = [
    # Config
    "TemplateSystemConfig",
    "load_template_config",
    # Exceptions
    "Query2TemplateError",
    "ConfigurationError",
    "ProviderResponseError",
    "TemplateServiceError",
    "TemplateNotFoundError",
    "TemplateStateError",
    "TemplateConflictError",
    "TemplateValidationError",
    "FunnelConflictError",
    # Template services
    "TemplateExtractionService",
    "TemplateCatalog",
    "TemplateRepository",
    "TemplateService",
    "TemplateUsageLogger",
    # Funnel
    "FunnelCache",
    "FunnelStore",
    # Connection utilities
    "PostgreSQLConfig",
    "load_config_from_url",
    "load_config_from_dict",
    # AI providers
    "ModelConfig",
    "load_model_configs",
    "ChatModelProvider",
    "ProviderRegistry",
]
