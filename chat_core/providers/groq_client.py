"""Groq Provider 适配器（云端推理）。

接口风格与 OpenAI 一致，使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式响应为 SSE：每帧 ``data: {...}``，以 ``data: [DONE]`` 结束。

本实现只依赖公共字段：model/messages/temperature/max_tokens/top_p/stream。
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    AuthError,
    BackendConnectionError,
    BusinessError,
    RateLimitError,
    RequestError,
    StreamParseError,
)
from chat_core.domain.models import ChatTurn, ModelDescriptor
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.registry import GROQ_CONFIG


class GroqClient:
    """Groq Provider 客户端实现。"""

    name = "groq"

    def __init__(self, cfg=settings):
        self._settings = cfg

    @property
    def base_url(self) -> str:
        return (getattr(self._settings, "groq_base_url", None) or GROQ_CONFIG.base_url).rstrip("/")

    @property
    def api_key(self) -> Optional[str]:
        return getattr(self._settings, "groq_api_key", None)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise AuthError(
                code="MISSING_API_KEY",
                message="Groq API key not found. Please set your API key in settings.",
            )
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # ---- 模型 / 健康检查 ----

    async def check_availability(self) -> bool:
        if not self.api_key:
            return False
        try:
            await self.list_models()
        except BusinessError:
            return False
        return True

    async def list_models(self) -> List[ModelDescriptor]:
        headers = self._headers()
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.get(f"{self.base_url}/models", headers=headers)
        except httpx.RequestError as e:
            raise BackendConnectionError(code="NETWORK_ERROR", message=str(e), provider=self.name)
        self._raise_for_status(resp.status_code, resp.text)
        data = resp.json()
        return [self._to_descriptor(m) for m in data.get("data", []) if m.get("active", True)]

    # ---- 流式 ----

    async def stream_completion(self, model: str, turns: Sequence[ChatTurn]) -> AsyncIterator[str]:
        if not model:
            raise RequestError(code="MODEL_REQUIRED", message="No model selected")
        headers = self._headers()
        payload = self._build_payload(model, turns)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=headers,
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        self._raise_for_status(resp.status_code, body)
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            content = self._parse_stream_chunk(data_str)
                        except StreamParseError as exc:
                            log_event(logging.WARNING, "Skipped malformed stream frame", provider=self.name, error=exc.message)
                            continue
                        if content:
                            yield content
        except httpx.RequestError as e:
            raise BackendConnectionError(
                code="NETWORK_ERROR",
                message=f"Failed to stream chat response from Groq: {e}",
                provider=self.name,
            )

    # ---- 辅助方法 ----

    def _build_payload(self, model: str, turns: Sequence[ChatTurn]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [t.to_payload() for t in turns],
            "stream": True,
        }
        payload.update(GROQ_CONFIG.options)
        return payload

    @staticmethod
    def _parse_stream_chunk(data_str: str) -> str:
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError as e:
            raise StreamParseError(code="STREAM_PARSE_ERROR", message=f"{e}: {data_str[:80]!r}")
        if not isinstance(data, dict):
            raise StreamParseError(code="STREAM_PARSE_ERROR", message=f"unexpected frame: {data_str[:80]!r}")
        if data.get("error"):
            err = data["error"]
            raise RequestError(code="API_ERROR", message=str(err.get("message") if isinstance(err, dict) else err))
        choices = data.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or ""

    def _raise_for_status(self, status: int, body: str) -> None:
        if status < 400:
            return
        if status in (401, 403):
            raise AuthError(
                code="INVALID_API_KEY",
                message="Invalid Groq API key. Please check your API key in settings.",
                http_status=status,
            )
        if status == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Groq rate limit", http_status=status)
        raise RequestError(code="API_ERROR", message=body, http_status=status)

    def _to_descriptor(self, raw: Dict[str, Any]) -> ModelDescriptor:
        details = {k: raw[k] for k in ("owned_by", "created", "object") if k in raw}
        return ModelDescriptor(
            name=raw.get("id") or "",
            provider=self.name,
            context_window=raw.get("context_window"),
            details=details,
        )
