"""按 Unicode 文字（Script）划分的字符类，供清洗、分词与检索共用。

HAN 覆盖 Han 文字的全部区块（基本区、扩展 A-H、兼容表意文字、部首），
不依赖某一份具体字表，因此对简体/繁体/日文汉字同样有效。
"""

from __future__ import annotations

HAN = (
    "⺀-⻿"  # CJK 部首补充
    "⼀-⿟"  # 康熙部首
    "々〇〡-〩〸-〻"
    "㐀-䶿"  # 扩展 A
    "一-鿿"  # 基本区
    "豈-﫿"  # 兼容表意文字
    "\U00020000-\U0002a6df"  # 扩展 B
    "\U0002a700-\U0002ebef"  # 扩展 C-F
    "\U0002f800-\U0002fa1f"  # 兼容表意文字补充
    "\U00030000-\U000323af"  # 扩展 G-H
)

# 中文全角标点：清洗时保持原样（不做 NFKC 半角化），并参与空格修复
CJK_PUNCT = (
    "，。！？；：、（）"
    "《》〈〉“”‘’"
    "【】「」『』…"
)

LATIN_ALNUM = "A-Za-z0-9"
