"""流式解析测试：SSE 任意切分还原、部分 JSON 预览。"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import pytest

from generation.partial_json import PartialJsonDraft
from generation.sse_parser import ChatStreamAccumulator, SSEStreamParser, parse_chat_payload


def _frame(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}, ensure_ascii=False)


DELTAS = ["## 1. 概述\n", "洁净区温湿度", "监控 ℃ 😀", "，结论：可接受。"]
USAGE = {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150}

STREAM = (
    ": keep-alive\r\n\r\n"
    + "event: message\r\nid: 1\r\n"
    + _frame(DELTAS[0])
    + "\r\n\r\n"
    + _frame(DELTAS[1])
    + "\n\n"
    + _frame(DELTAS[2])
    + "\r\r"
    + _frame(DELTAS[3])
    + "\n\n"
    + "data: "
    + json.dumps({"choices": [], "usage": USAGE})
    + "\n\n"
    + "data: [DONE]\n\n"
).encode("utf-8")


def _split(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestSSEParser:
    @pytest.mark.parametrize("size", [1, 3, 17, len(STREAM)])
    def test_reconstruction_independent_of_split(self, size):
        acc = ChatStreamAccumulator()
        deltas = []
        for part in _split(STREAM, size):
            deltas.extend(c.delta for c in acc.feed(part) if c.delta)
        deltas.extend(c.delta for c in acc.close() if c.delta)
        assert "".join(deltas) == "".join(DELTAS)
        assert acc.text == "".join(DELTAS)
        assert acc.usage is not None
        assert acc.usage.total_tokens == 150

    def test_multiline_data_joined(self):
        parser = SSEStreamParser()
        payloads = parser.feed(b"data: line1\ndata: line2\n\n")
        assert payloads == ["line1\nline2"]

    def test_done_is_noop(self):
        parser = SSEStreamParser()
        assert parser.feed(b"data: [DONE]\n\n") == []

    def test_tail_frame_flushed_on_close(self):
        parser = SSEStreamParser()
        assert parser.feed(b'data: {"a": 1}') == []
        assert parser.close() == ['{"a": 1}']

    def test_bare_json_line(self):
        parser = SSEStreamParser()
        assert parser.feed(b'{"choices": []}\n') == ['{"choices": []}']

    def test_trailing_cr_waits_for_next_chunk(self):
        parser = SSEStreamParser()
        assert parser.feed(b"data: x\r") == []
        assert parser.feed(b"\n\r\n") == ["x"]

    def test_latest_usage_wins(self):
        acc = ChatStreamAccumulator()
        acc.feed(b'data: {"usage": {"total_tokens": 1}}\n\n')
        acc.feed(b'data: {"usage": {"total_tokens": 7}}\n\n')
        assert acc.usage.total_tokens == 7

    def test_unparseable_payload_ignored(self):
        assert parse_chat_payload("not json") is None


class TestPartialJson:
    def _draft(self, text: str):
        draft = PartialJsonDraft(interval_chars=1)
        draft.feed(text)
        return draft.snapshot()

    def test_open_string_closed(self):
        result = self._draft('{"items": [{"a": 1}, {"b": "hel')
        assert result == {"items": [{"a": 1}, {"b": "hel"}]}

    def test_dangling_key_falls_back(self):
        result = self._draft('{"items": [{"a": 1}, {"b')
        assert result["items"][0] == {"a": 1}

    def test_dangling_colon_falls_back(self):
        assert self._draft('{"a": 1, "b":') == {"a": 1}

    def test_escaped_quote(self):
        assert self._draft('{"a": "x\\"y') == {"a": 'x"y'}

    def test_leading_prose_skipped(self):
        assert self._draft('好的，结果如下：{"rows": [') == {"rows": []}

    def test_no_json_yet(self):
        assert self._draft("思考中") is None

    def test_throttled(self):
        draft = PartialJsonDraft(interval_chars=10)
        assert draft.feed('{"a"') is None
        assert draft.feed(": 1") is None
        assert draft.feed(', "bb": 2') == {"a": 1, "bb": 2}
        assert draft.feed(",") is None

    def test_complete_document(self):
        text = json.dumps({"rows": [{"risk_id": "r1", "s": 9}]})
        assert self._draft(text) == {"rows": [{"risk_id": "r1", "s": 9}]}
