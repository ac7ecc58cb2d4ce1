"""Ollama Provider 适配器（本地推理）。

- 模型列表 / 健康检查: GET {base_url}/api/tags
- 对话: POST {base_url}/api/chat，stream=true 时响应体为逐行 JSON：

    {"message": {"role": "assistant", "content": "Hi"}, "done": false}
    ...
    {"done": true, ...}

出错时 Ollama 会返回 {"error": "..."} 行。无法解析的行记录日志后跳过。
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BackendConnectionError, RequestError, StreamParseError
from chat_core.domain.models import ChatTurn, ModelDescriptor
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.registry import OLLAMA_CONFIG


class OllamaClient:
    """Ollama 客户端实现。"""

    name = "ollama"

    def __init__(self, cfg=settings):
        self._settings = cfg

    @property
    def base_url(self) -> str:
        return (getattr(self._settings, "ollama_base_url", None) or OLLAMA_CONFIG.base_url).rstrip("/")

    async def check_availability(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def list_models(self) -> List[ModelDescriptor]:
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
        except httpx.RequestError as e:
            raise BackendConnectionError(
                code="NETWORK_ERROR",
                message=f"Failed to connect to Ollama. Make sure Ollama is running on {self.base_url}",
                provider=self.name,
                reason=str(e),
            )
        if resp.status_code >= 400:
            raise RequestError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        data = resp.json()
        return [self._to_descriptor(m) for m in data.get("models", [])]

    async def stream_completion(self, model: str, turns: Sequence[ChatTurn]) -> AsyncIterator[str]:
        if not model:
            raise RequestError(code="MODEL_REQUIRED", message="No model selected")
        payload = self._build_payload(model, turns)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", f"{self.base_url}/api/chat", json=payload) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise RequestError(
                            code="API_ERROR",
                            message=f"Chat request failed: {self._error_text(body)}",
                            http_status=resp.status_code,
                        )
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            frame = self._parse_frame(line)
                        except StreamParseError as exc:
                            log_event(logging.WARNING, "Skipped malformed stream frame", provider=self.name, error=exc.message)
                            continue
                        if frame.get("error"):
                            raise RequestError(code="API_ERROR", message=str(frame["error"]))
                        content = (frame.get("message") or {}).get("content")
                        if content:
                            yield content
                        if frame.get("done"):
                            return
        except httpx.RequestError as e:
            raise BackendConnectionError(
                code="NETWORK_ERROR",
                message=f"Failed to stream chat response from Ollama: {e}",
                provider=self.name,
            )

    # ---- 辅助方法 ----

    def _build_payload(self, model: str, turns: Sequence[ChatTurn]) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [t.to_payload() for t in turns],
            "stream": True,
            "options": dict(OLLAMA_CONFIG.options),
        }

    @staticmethod
    def _parse_frame(line: str) -> Dict[str, Any]:
        try:
            frame = json.loads(line)
        except json.JSONDecodeError as e:
            raise StreamParseError(code="STREAM_PARSE_ERROR", message=f"{e}: {line[:80]!r}")
        if not isinstance(frame, dict):
            raise StreamParseError(code="STREAM_PARSE_ERROR", message=f"unexpected frame: {line[:80]!r}")
        return frame

    @staticmethod
    def _error_text(body: str) -> str:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return body
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return body

    def _to_descriptor(self, raw: Dict[str, Any]) -> ModelDescriptor:
        return ModelDescriptor(
            name=raw.get("name") or raw.get("model") or "",
            provider=self.name,
            size=raw.get("size"),
            details=raw.get("details") or {},
        )
