"""SSE 流式解析：把任意切分的字节流还原为 data 负载，再还原为文本增量与用量。

网络读边界与帧边界不对齐，所以解析器是 (行缓冲, 待合并 data 行) 上的小状态机：
- UTF-8 增量解码（多字节字符可被切在两次读之间）
- 行结束符兼容 LF / CRLF / CR，CR 落在读边界末尾时等待下一段再判定
- 空行结束一帧；event:/id:/retry: 以及 ":" 注释行忽略
- 多行 data: 以 "\\n" 合并；[DONE] 为无操作结束标记
- 非 SSE 的裸 JSON 行（以 "{" 开头）直接作为一个负载
- close() 时冲刷未以空行结束的尾帧
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass

from models.schemas import TokenUsage

logger = logging.getLogger(__name__)

_IGNORED_FIELDS = ("event:", "id:", "retry:")


class SSEStreamParser:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._data_lines: list[str] = []

    def feed(self, chunk: bytes) -> list[str]:
        """喂入一段字节，返回本次完整解析出的负载（可能为空）。"""
        self._line_buffer += self._decoder.decode(chunk)
        return self._drain(final=False)

    def close(self) -> list[str]:
        """流结束：冲刷解码器、残留行与尾帧。"""
        self._line_buffer += self._decoder.decode(b"", final=True)
        payloads = self._drain(final=True)
        if self._line_buffer:
            payloads.extend(self._handle_line(self._line_buffer))
            self._line_buffer = ""
        payloads.extend(self._flush_frame())
        return payloads

    def _drain(self, final: bool) -> list[str]:
        payloads: list[str] = []
        buf = self._line_buffer
        pos = 0
        while True:
            cr = buf.find("\r", pos)
            lf = buf.find("\n", pos)
            if cr == -1 and lf == -1:
                break
            if cr != -1 and (lf == -1 or cr < lf):
                # CR 在缓冲末尾：可能是被切开的 CRLF，等下一段
                if cr == len(buf) - 1 and not final:
                    break
                line = buf[pos:cr]
                pos = cr + 2 if buf.startswith("\n", cr + 1) else cr + 1
            else:
                line = buf[pos:lf]
                pos = lf + 1
            payloads.extend(self._handle_line(line))
        self._line_buffer = buf[pos:]
        return payloads

    def _handle_line(self, raw_line: str) -> list[str]:
        line = raw_line.strip()
        if not line:
            return self._flush_frame()
        if line.startswith(":") or line.startswith(_IGNORED_FIELDS):
            return []
        if line.startswith("data:"):
            self._data_lines.append(line[5:].strip())
            return []
        if line.startswith("{"):
            return [line]
        return []

    def _flush_frame(self) -> list[str]:
        if not self._data_lines:
            return []
        data = "\n".join(self._data_lines).strip()
        self._data_lines = []
        if not data or data == "[DONE]":
            return []
        return [data]


@dataclass
class StreamChunk:
    delta: str = ""
    usage: TokenUsage | None = None


def parse_chat_payload(payload: str) -> StreamChunk | None:
    """解析 chat/completions 的单个流式负载；无法解析时返回 None。"""
    try:
        parsed = json.loads(payload)
    except ValueError:
        logger.debug("[SSE] 忽略无法解析的负载: %s", payload[:80])
        return None
    if not isinstance(parsed, dict):
        return None

    delta = ""
    choices = parsed.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        for key in ("delta", "message"):
            part = first.get(key)
            if isinstance(part, dict) and isinstance(part.get("content"), str):
                delta = part["content"]
                break
    return StreamChunk(delta=delta, usage=TokenUsage.from_payload(parsed.get("usage")))


class ChatStreamAccumulator:
    """在 SSEStreamParser 之上累积全文与最新用量（后到的 usage 覆盖先到的）。"""

    def __init__(self) -> None:
        self.parser = SSEStreamParser()
        self.text = ""
        self.usage: TokenUsage | None = None

    def feed(self, chunk: bytes) -> list[StreamChunk]:
        return self._apply(self.parser.feed(chunk))

    def close(self) -> list[StreamChunk]:
        return self._apply(self.parser.close())

    def _apply(self, payloads: list[str]) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        for payload in payloads:
            chunk = parse_chat_payload(payload)
            if chunk is None:
                continue
            if chunk.delta:
                self.text += chunk.delta
            if chunk.usage is not None:
                self.usage = chunk.usage
            if chunk.delta or chunk.usage is not None:
                chunks.append(chunk)
        return chunks
