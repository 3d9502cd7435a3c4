"""
Template system configuration
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .exceptions import ConfigurationError

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "query_templates.yaml"
DEFAULT_MODEL_ID = "gpt-4o-mini"

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off", "")


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"'{name}' must be a boolean, got {value!r}")


@dataclass
class TemplateSystemConfig:
    """Settings shared by the extraction, lifecycle, catalog and funnel services

    Attributes:
        templates_enabled: Feature flag; when off the lifecycle service refuses
            mutations and reads come from the YAML seed catalog
        default_model_id: Model used when a caller does not name one
        catalog_path: YAML seed catalog
        template_schema: Schema holding Template / TemplateVersion / TemplateUsage
        funnel_schema: Schema holding QueryFunnel / SubQuestions / QueryResults
        similarity_threshold: Minimum Jaccard similarity for duplicate warnings
    """

    templates_enabled: bool = True
    default_model_id: str = DEFAULT_MODEL_ID
    catalog_path: Path = field(default_factory=lambda: DEFAULT_CATALOG_PATH)
    template_schema: str = "public"
    funnel_schema: str = "rpt"
    similarity_threshold: float = 0.7

    def __post_init__(self):
        self.templates_enabled = _parse_bool(self.templates_enabled, "templates_enabled")
        self.catalog_path = Path(self.catalog_path)
        try:
            self.similarity_threshold = float(self.similarity_threshold)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"'similarity_threshold' must be a number: {e}") from e
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError("'similarity_threshold' must be between 0 and 1")
        if not self.default_model_id or not str(self.default_model_id).strip():
            raise ConfigurationError("'default_model_id' must be a non-empty string")

    def is_template_system_enabled(self) -> bool:
        return self.templates_enabled

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TemplateSystemConfig":
        """
        Build configuration from environment variables

        Reads AI_TEMPLATES_ENABLED, AI_DEFAULT_MODEL_ID and TEMPLATE_CATALOG_PATH;
        unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        params: Dict[str, Any] = {}
        if "AI_TEMPLATES_ENABLED" in env:
            params["templates_enabled"] = env["AI_TEMPLATES_ENABLED"]
        if env.get("AI_DEFAULT_MODEL_ID"):
            params["default_model_id"] = env["AI_DEFAULT_MODEL_ID"].strip()
        if env.get("TEMPLATE_CATALOG_PATH"):
            params["catalog_path"] = env["TEMPLATE_CATALOG_PATH"]
        return cls(**params)


def load_template_config(source: Union[str, Path, Mapping[str, Any]]) -> TemplateSystemConfig:
    """
    Load TemplateSystemConfig from a dict or a YAML file

    Args:
        source: Mapping of field values, or path to a YAML file whose top level
            (or a `templates` section) holds them

    Returns:
        TemplateSystemConfig instance
    """
    if isinstance(source, Mapping):
        data: Any = dict(source)
    else:
        path = Path(source)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError("Template configuration must be a mapping")
    if isinstance(data.get("templates"), dict):
        data = data["templates"]

    known = {f.name for f in fields(TemplateSystemConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown template configuration keys: {', '.join(unknown)}")

    return TemplateSystemConfig(**data)
