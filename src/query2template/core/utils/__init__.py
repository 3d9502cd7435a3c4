from .model_configs import ModelConfig, load_model_configs
from .models import agenerate_chat, generate_chat

__all__ = ["ModelConfig", "load_model_configs", "generate_chat", "agenerate_chat"]
