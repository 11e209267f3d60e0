"""OpenAI 兼容对话模型客户端。

三种调用形态，全部返回 (结果, 用量)：
- call_json：非流式 + JSON 模式
- call_json_streaming：流式 + JSON 模式，增量文本实时回调，结束后整体解析
- call_markdown_streaming：流式 + 纯文本模式，仅用于最终报告渲染

非 2xx 抛 BackendHttpError(status, body)；网络错误与超时抛 status=0 的 BackendHttpError。
传入 CancellationToken 时请求以任务形式与取消信号竞速，取消会直接关闭底层 HTTP 流。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from core.abstractions import DeltaCallback, ModelClient
from core.cancellation import CancellationToken
from core.errors import BackendHttpError, InvalidModelOutput
from generation.sse_parser import ChatStreamAccumulator
from models.schemas import ModelConfig, TokenUsage

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)


def extract_json(text: str) -> Any:
    """依次尝试：整体解析、```json 代码块、最外层 {...}、最外层 [...]。"""
    content = (text or "").strip()
    if not content:
        raise InvalidModelOutput("模型返回为空")

    candidates = [content]
    fenced = _FENCED_JSON_RE.search(content)
    if fenced and fenced.group(1).strip():
        candidates.append(fenced.group(1).strip())
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        first, last = content.find(open_ch), content.rfind(close_ch)
        if first >= 0 and last > first:
            candidates.append(content[first : last + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    raise InvalidModelOutput(f"模型返回的 JSON 无法解析: {content[:200]}")


class OpenAIChatClient(ModelClient):
    def __init__(self, config: ModelConfig, http_client: httpx.AsyncClient):
        self.config = config
        self.http_client = http_client

    @property
    def url(self) -> str:
        return f"{self.config.base_url}/chat/completions"

    def _headers(self, stream: bool) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    def _payload(self, messages: list[dict], json_mode: bool, stream: bool) -> dict:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "messages": messages,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    # ---- 对外接口 ----

    async def call_json(
        self, messages: list[dict], cancel: CancellationToken | None = None
    ) -> tuple[Any, TokenUsage | None]:
        request = self._complete(self._payload(messages, json_mode=True, stream=False))
        content, usage = await (cancel.run(request) if cancel else request)
        return extract_json(content), usage

    async def call_json_streaming(
        self,
        messages: list[dict],
        on_delta: DeltaCallback,
        cancel: CancellationToken | None = None,
    ) -> tuple[Any, TokenUsage | None]:
        request = self._stream(self._payload(messages, json_mode=True, stream=True), on_delta)
        text, usage = await (cancel.run(request) if cancel else request)
        return extract_json(text), usage

    async def call_markdown_streaming(
        self,
        messages: list[dict],
        on_delta: DeltaCallback,
        cancel: CancellationToken | None = None,
    ) -> tuple[str, TokenUsage | None]:
        request = self._stream(self._payload(messages, json_mode=False, stream=True), on_delta)
        text, usage = await (cancel.run(request) if cancel else request)
        text = text.strip()
        if not text:
            raise InvalidModelOutput("模型返回为空")
        return text, usage

    # ---- HTTP ----

    async def _complete(self, payload: dict) -> tuple[str, TokenUsage | None]:
        try:
            response = await self.http_client.post(
                self.url, json=payload, headers=self._headers(stream=False)
            )
        except httpx.HTTPError as e:
            raise BackendHttpError(0, f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise BackendHttpError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidModelOutput("模型响应不是合法 JSON") from e

        content = ""
        choices = data.get("choices") if isinstance(data, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            if isinstance(message.get("content"), str):
                content = message["content"].strip()
        if not content:
            raise InvalidModelOutput("模型返回为空")

        usage = TokenUsage.from_payload(data.get("usage"))
        logger.debug("[LLM] 非流式调用完成: %d chars", len(content))
        return content, usage

    async def _stream(
        self, payload: dict, on_delta: DeltaCallback
    ) -> tuple[str, TokenUsage | None]:
        accumulator = ChatStreamAccumulator()
        try:
            async with self.http_client.stream(
                "POST", self.url, json=payload, headers=self._headers(stream=True)
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendHttpError(response.status_code, body)
                async for chunk in response.aiter_bytes():
                    for item in accumulator.feed(chunk):
                        if item.delta:
                            on_delta(item.delta)
        except httpx.HTTPError as e:
            raise BackendHttpError(0, f"{type(e).__name__}: {e}") from e

        for item in accumulator.close():
            if item.delta:
                on_delta(item.delta)

        logger.debug("[LLM] 流式调用完成: %d chars", len(accumulator.text))
        return accumulator.text, accumulator.usage
