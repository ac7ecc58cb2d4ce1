"""Provider 配置。

集中维护每个后端的默认地址与采样参数，适配器只从这里读取，
便于后续调整参数或接入新后端。"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    options: Dict[str, Any] = field(default_factory=dict)


# Ollama：本地推理，/api/chat 逐行 JSON
OLLAMA_CONFIG = ProviderConfig(
    name="ollama",
    base_url="http://127.0.0.1:11434",
    options={
        "num_ctx": 4096,
        "temperature": 0.7,
        "top_p": 0.9,
        "top_k": 40,
        "repeat_penalty": 1.1,
        "num_predict": -1,
    },
)

# Groq：OpenAI 兼容的 chat/completions，SSE 流
GROQ_CONFIG = ProviderConfig(
    name="groq",
    base_url="https://api.groq.com/openai/v1",
    options={
        "temperature": 0.7,
        "max_tokens": 4096,
        "top_p": 0.9,
        "frequency_penalty": 0,
        "presence_penalty": 0,
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "ollama": OLLAMA_CONFIG,
    "groq": GROQ_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
