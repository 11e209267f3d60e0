"""文本清洗：面向 PDF/OCR 抽取文本的规范化流水线。

步骤（顺序敏感，后一步假定前一步已执行）：
1. NFKC 兼容字符折叠 + CJK 部首补充区手工映射（中文全角标点保持不变）
2. 去除零宽字符/软连字符，压缩水平空白
3. 剔除页码/版权横幅等页眉页脚行
4. 合并跨行断开的英文连字符单词（包括被页脚隔开的），合并连续重复行（OCR 页脚重复）
5. 项目符号统一为 "- "
6. 去除汉字之间、汉字与字母数字之间、汉字与中文标点之间的多余空格
7. 修复英文标点空格（不破坏 12.7、v1.2、3.1.4 这类编号）
8. 连续 3 个以上换行压缩为一个空行，整体 trim
"""

from __future__ import annotations

import re
import unicodedata

from core.charsets import CJK_PUNCT, HAN

# NFKC 已覆盖康熙部首（U+2F00 起），这里补充 OCR 常见的部首补充区简化字形
_RADICAL_SUPPLEMENT_MAP = str.maketrans(
    {
        "⺟": "母",
        "⺠": "民",
        "⻄": "西",
        "⻅": "见",
        "⻆": "角",
        "⻉": "贝",
        "⻋": "车",
        "⻓": "长",
        "⻔": "门",
        "⻘": "青",
        "⻚": "页",
        "⻛": "风",
        "⻜": "飞",
        "⻝": "食",
        "⻢": "马",
        "⻤": "鬼",
        "⻥": "鱼",
        "⻦": "鸟",
        "⻨": "麦",
        "⻩": "黄",
        "⻬": "齐",
        "⻮": "齿",
        "⻰": "龙",
        "⻳": "龟",
    }
)

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_INVISIBLE_RE = re.compile(r"[\u200b\u200c\u200d\u2060\ufeff\u00ad]")
_HSPACE_RE = re.compile(r"[ \t\u00a0\u3000\u2002-\u200a\u202f\u205f]+")
_NFKC_SEGMENT_RE = re.compile(f"[^{CJK_PUNCT}]+")
_HYPHEN_BREAK_RE = re.compile(r"([A-Za-z])-[ ]*\n[ ]*([a-z])")

_PAGE_MARKER_RES = [
    re.compile(r"^\d{1,4}$"),
    re.compile(r"^[-–—]\s*\d{1,4}\s*[-–—]$"),
    re.compile(r"^(?:page|p\.)\s*\d{1,4}(?:\s*(?:of|/)\s*\d{1,4})?$", re.IGNORECASE),
    re.compile(r"^\d{1,4}\s*/\s*\d{1,4}$"),
    re.compile(r"^第\s*\d{1,4}\s*页(?:\s*[,，/]?\s*共\s*\d{1,4}\s*页)?$"),
    re.compile(r"^共\s*\d{1,4}\s*页\s*[,，/]?\s*第\s*\d{1,4}\s*页$"),
]
_BANNER_RE = re.compile(
    r"^(?:©|\(c\)|copyright\b|confidential\b|all rights reserved|版权所有|保密|机密|内部资料)",
    re.IGNORECASE,
)
_BANNER_MAX_LEN = 60

_BULLET_RE = re.compile(r"^(?:[•●○◦▪▫■□◆◇►▶➢➤✓✔∙·‣⁃]\s*|[-*+]\s+)")

_HAN_HAN_SPACE_RE = re.compile(f"(?<=[{HAN}]) +(?=[{HAN}])")
_HAN_ALNUM_SPACE_RE = re.compile(f"(?<=[{HAN}]) +(?=[A-Za-z0-9])|(?<=[A-Za-z0-9]) +(?=[{HAN}])")
_HAN_PUNCT_SPACE_RE = re.compile(
    f"(?<=[{HAN}{CJK_PUNCT}]) +(?=[{CJK_PUNCT}])|(?<=[{CJK_PUNCT}]) +(?=[{HAN}])"
)

_SPACE_BEFORE_PUNCT_RE = re.compile(r" +(?=[,;:!?]|\.(?!\d))")
_SPACE_AFTER_PUNCT_RE = re.compile(r"([,;:!?])(?=[A-Za-z])")
_SENTENCE_DOT_RE = re.compile(r"(?<=[a-z]{2})\.(?=[A-Z])")
_MULTI_SPACE_RE = re.compile(r" {2,}")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class TextNormalizer:
    """抽取文本规范化。纯函数、全定义域（空输入返回空串），且幂等。"""

    def normalize(self, raw: str) -> str:
        if not raw or not raw.strip():
            return ""

        # 1. 兼容字符折叠
        text = self._fold_compat(raw)

        # 2. 不可见字符与水平空白
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = _CONTROL_RE.sub("", text)
        text = _INVISIBLE_RE.sub("", text)
        text = _HSPACE_RE.sub(" ", text)

        # 3. 页眉页脚
        kept = [line.strip() for line in text.split("\n")]
        text = "\n".join(line for line in kept if not self._is_page_artifact(line))

        # 4. 跨行连字符
        text = _HYPHEN_BREAK_RE.sub(r"\1\2", text)

        # 5-7. 逐行处理
        lines: list[str] = []
        for raw_line in text.split("\n"):
            line = self._normalize_line(raw_line.strip())
            if self._is_page_artifact(line):
                continue
            if line and lines and lines[-1] == line:
                continue
            lines.append(line)

        # 8. 空行压缩
        text = "\n".join(lines)
        text = _BLANK_LINES_RE.sub("\n\n", text)
        return text.strip()

    def _fold_compat(self, text: str) -> str:
        folded = _NFKC_SEGMENT_RE.sub(
            lambda m: unicodedata.normalize("NFKC", m.group(0)), text
        )
        return folded.translate(_RADICAL_SUPPLEMENT_MAP)

    def _is_page_artifact(self, line: str) -> bool:
        if not line:
            return False
        if any(p.match(line) for p in _PAGE_MARKER_RES):
            return True
        return len(line) <= _BANNER_MAX_LEN and bool(_BANNER_RE.match(line))

    def _normalize_line(self, line: str) -> str:
        if not line:
            return ""
        # 5. 项目符号
        line = _BULLET_RE.sub("- ", line).rstrip()
        # 6. 汉字相关空格
        line = _HAN_HAN_SPACE_RE.sub("", line)
        line = _HAN_ALNUM_SPACE_RE.sub("", line)
        line = _HAN_PUNCT_SPACE_RE.sub("", line)
        # 7. 英文标点空格
        line = _SPACE_BEFORE_PUNCT_RE.sub("", line)
        line = _SPACE_AFTER_PUNCT_RE.sub(r"\1 ", line)
        line = _SENTENCE_DOT_RE.sub(". ", line)
        line = _MULTI_SPACE_RE.sub(" ", line)
        return line.strip()


_default_normalizer = TextNormalizer()


def normalize(raw: str) -> str:
    """模块级便捷入口。"""
    return _default_normalizer.normalize(raw)
