"""文本规范化测试：页眉页脚、全角折叠、中英空格、幂等性。"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from data.sample_documents import SAMPLE_LITERATURE, SAMPLE_SOPS
from ingestion.data_cleaner import TextNormalizer, normalize


@pytest.fixture
def normalizer():
    return TextNormalizer()


class TestNormalizeSteps:
    def test_empty(self, normalizer):
        assert normalizer.normalize("") == ""
        assert normalizer.normalize("   \n\t ") == ""

    def test_page_markers_removed(self, normalizer):
        raw = "第 1 页 共 3 页\n正文内容\n- 2 -\nPage 3 of 10\n12"
        assert normalizer.normalize(raw) == "正文内容"

    def test_banner_removed(self, normalizer):
        raw = "版权所有 某某药业\n正文"
        assert normalizer.normalize(raw) == "正文"

    def test_fullwidth_folded(self, normalizer):
        assert normalizer.normalize("ＥＭＳ１２３") == "EMS123"

    def test_chinese_punctuation_kept(self, normalizer):
        assert normalizer.normalize("温度，湿度。") == "温度，湿度。"

    def test_invisible_chars_removed(self, normalizer):
        assert normalizer.normalize("温\u200b度\ufeff") == "温度"

    def test_han_spacing(self, normalizer):
        assert normalizer.normalize("温度 控制 使用 EMS 系统") == "温度控制使用EMS系统"

    def test_hyphen_break_joined(self, normalizer):
        assert normalizer.normalize("manu-\nfacturing") == "manufacturing"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("opera-\n12\ntion", "operation"),
            ("opera-\n第 3 页\ntion", "operation"),
            ("quali-\nConfidential\nfication", "qualification"),
        ],
    )
    def test_hyphen_break_across_page_footer(self, normalizer, raw, expected):
        assert normalizer.normalize(raw) == expected

    def test_bullets_unified(self, normalizer):
        assert normalizer.normalize("• 第一项\n● 第二项") == "- 第一项\n- 第二项"

    def test_consecutive_duplicates_merged(self, normalizer):
        assert normalizer.normalize("页脚文字\n页脚文字\n正文") == "页脚文字\n正文"

    def test_decimals_preserved(self, normalizer):
        text = "version 1.2 uses 12.7 mm tubing"
        assert normalizer.normalize(text) == text

    def test_blank_lines_collapsed(self, normalizer):
        assert normalizer.normalize("第一段\n\n\n\n第二段") == "第一段\n\n第二段"


class TestIdempotence:
    """normalize(normalize(x)) == normalize(x)。"""

    @pytest.mark.parametrize(
        "raw",
        [doc["text"] for doc in SAMPLE_SOPS + SAMPLE_LITERATURE]
        + [
            "Ａ　Ｂ , c ;d\n\n\n• 项 目",
            "第 2 页\n- 项目一\n  * 项目二\nversion 3.1.4.Next sentence",
            "opera-\n12\ntion",
            "opera-\n第 3 页\ntion",
            "quali-\nConfidential\nfication",
        ],
    )
    def test_idempotent(self, raw):
        once = normalize(raw)
        assert normalize(once) == once
