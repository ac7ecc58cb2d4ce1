"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 默认地址与采样参数 (registry)。
- 提供各后端的具体实现 (ollama_client 本地推理、groq_client 云端推理)。
"""

from typing import Dict, Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ProviderAdapter
from chat_core.providers.groq_client import GroqClient
from chat_core.providers.ollama_client import OllamaClient
from chat_core.providers.registry import PROVIDER_REGISTRY, get_provider_config


def create_provider(name: Optional[str] = None) -> ProviderAdapter:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    provider_name = get_provider_config(name or getattr(settings, "default_provider", "ollama")).name
    if provider_name == "groq":
        return GroqClient(settings)
    if provider_name == "ollama":
        return OllamaClient(settings)
    raise KeyError(f"Unknown provider: {provider_name!r}")


def create_providers() -> Dict[str, ProviderAdapter]:
    """创建全部已知 Provider，供引擎按会话绑定选择。"""

    return {name: create_provider(name) for name in PROVIDER_REGISTRY}
