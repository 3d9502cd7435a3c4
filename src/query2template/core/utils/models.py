from .model_configs import ModelConfig
import requests
from typing import List, Dict, Any
import asyncio

from ...exceptions import ProviderResponseError


def build_url(config: ModelConfig) -> str:
    return f"{config.base_url.rstrip('/')}/{config.endpoint.lstrip('/')}"


def build_header(config: ModelConfig) -> Dict[str, str]:
    header: Dict[str, str] = {
        "Content-Type": "application/json",
    }
    # Groq and OpenAI both use Bearer token authentication
    if config.provider in ("openai", "groq"):
        header["Authorization"] = f"Bearer {config.api_key}"
    return header


def parse_response(config: ModelConfig, data: Dict[str, Any]) -> str:
    # Groq uses OpenAI-compatible response format
    if config.provider in ("openai", "groq"):
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderResponseError(f"Unexpected {config.provider} chat response format: {data}") from e

    if config.provider == "ollama":
        try:
            return data["message"]["content"]
        except (KeyError, TypeError) as e:
            raise ProviderResponseError(f"Unexpected Ollama chat response format: {data}") from e

    raise ValueError(f"Unsupported provider in parse_response: {config.provider}")


def generate_chat(config: ModelConfig, messages: List[Dict[str, Any]]) -> str:
    """
    Generate a chat response from a model
    """
    url = build_url(config)
    header = build_header(config)
    payload: Dict[str, Any] = {
        "model": config.model_name,
        "messages": messages,
    }
    if config.max_tokens:
        payload["max_tokens"] = config.max_tokens
    if config.temperature:
        payload["temperature"] = config.temperature
    if config.provider == "ollama":
        payload["stream"] = False

    response = requests.post(url, headers=header, timeout=config.timeout, json=payload)
    response.raise_for_status()
    data = response.json()

    return parse_response(config, data)


async def agenerate_chat(config: ModelConfig, messages: List[Dict[str, str]]) -> str:
    return await asyncio.to_thread(generate_chat, config, messages)
