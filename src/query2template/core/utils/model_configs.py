from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Literal, Mapping, Optional

from ...exceptions import ConfigurationError

Provider = Literal["openai", "ollama", "groq"]
PROVIDERS = ("openai", "ollama", "groq")


@dataclass
class ModelConfig:
    """One chat-completion endpoint"""

    base_url: str
    endpoint: str
    api_key: str
    model_name: str

    provider: Provider = "openai"

    max_tokens: Optional[int] = None
    temperature: Optional[float] = 0.2
    timeout: int = 30


def load_model_configs(
    source: Mapping[str, Mapping[str, Any]],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, ModelConfig]:
    """
    Build ModelConfig entries keyed by model id

    Args:
        source: {model_id: {base_url, endpoint, model_name, ...}}; an
            `api_key_env` entry names the environment variable holding the key
        environ: Environment used for `api_key_env` (default: os.environ)

    Returns:
        Dict of model id -> ModelConfig
    """
    env = os.environ if environ is None else environ
    known = {f.name for f in fields(ModelConfig)}
    configs: Dict[str, ModelConfig] = {}

    for model_id, raw in source.items():
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"Model '{model_id}' must be a mapping")
        params = dict(raw)
        key_var = params.pop("api_key_env", None)
        if key_var:
            params["api_key"] = env.get(key_var, "")
        params.setdefault("api_key", "")

        unknown = sorted(set(params) - known)
        if unknown:
            raise ConfigurationError(f"Model '{model_id}' has unknown keys: {', '.join(unknown)}")
        if params.get("provider", "openai") not in PROVIDERS:
            raise ConfigurationError(
                f"Model '{model_id}' uses unsupported provider '{params['provider']}'"
            )
        try:
            configs[model_id] = ModelConfig(**params)
        except TypeError as e:
            raise ConfigurationError(f"Model '{model_id}' is incomplete: {e}") from e

    return configs
