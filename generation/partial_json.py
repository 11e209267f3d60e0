"""流式 JSON 的实时预览：对尚未完结的缓冲区补齐括号后尝试解析。

增量扫描器只维护 (是否在字符串内, 转义状态, 括号栈)，每个增量只扫描新字符。
同时记录最近几个"安全截断点"（逗号之前、左括号之后），
补齐整段失败时（例如末尾是半个键名或悬空的冒号）回退到这些截断点。

只用于界面预览，不影响最终结构化结果的解析与校验。
"""

from __future__ import annotations

import json
from collections import deque
from typing import Any

_CLOSERS = {"{": "}", "[": "]"}
_MAX_CHECKPOINTS = 8


class PartialJsonDraft:
    def __init__(self, interval_chars: int = 240):
        self.interval_chars = max(1, interval_chars)
        self.buffer = ""
        self._scanned = 0
        self._start = -1
        self._in_string = False
        self._escape = False
        self._stack: list[str] = []
        self._checkpoints: deque[tuple[int, tuple[str, ...]]] = deque(maxlen=_MAX_CHECKPOINTS)
        self._last_emit = 0

    def feed(self, delta: str) -> Any | None:
        """追加增量；距上次预览累计满 interval_chars 个字符时返回一次预览，否则 None。"""
        if not delta:
            return None
        self.buffer += delta
        self._scan()
        if len(self.buffer) - self._last_emit < self.interval_chars:
            return None
        draft = self.snapshot()
        if draft is not None:
            self._last_emit = len(self.buffer)
        return draft

    def snapshot(self) -> Any | None:
        """补齐当前缓冲区并解析；无法得到任何 JSON 值时返回 None。"""
        if self._start < 0:
            return None

        text = self.buffer[self._start :]
        if self._escape:
            text = text[:-1]
        if self._in_string:
            text += '"'
        parsed = self._try_close(text, tuple(self._stack))
        if parsed is not None:
            return parsed

        for end, stack in reversed(self._checkpoints):
            parsed = self._try_close(self.buffer[self._start : end], stack)
            if parsed is not None:
                return parsed
        return None

    def _try_close(self, text: str, stack: tuple[str, ...]) -> Any | None:
        text = text.rstrip()
        while text.endswith(","):
            text = text[:-1].rstrip()
        candidate = text + "".join(_CLOSERS[c] for c in reversed(stack))
        try:
            return json.loads(candidate)
        except ValueError:
            return None

    def _scan(self) -> None:
        buf = self.buffer
        for i in range(self._scanned, len(buf)):
            ch = buf[i]
            if self._start < 0:
                if ch in _CLOSERS:
                    self._start = i
                    self._stack.append(ch)
                    self._checkpoints.append((i + 1, tuple(self._stack)))
                continue
            if self._in_string:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
                continue
            if ch == '"':
                self._in_string = True
            elif ch in _CLOSERS:
                self._stack.append(ch)
                self._checkpoints.append((i + 1, tuple(self._stack)))
            elif ch in "}]":
                if self._stack:
                    self._stack.pop()
                self._checkpoints.append((i + 1, tuple(self._stack)))
            elif ch == ",":
                self._checkpoints.append((i, tuple(self._stack)))
        self._scanned = len(buf)
