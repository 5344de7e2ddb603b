"""Keyword extraction for chat text — segmenting, stop-words, importance weighting.

Deterministic and pure: the same text and limits always produce the same
ordered keyword list. Segmentation is punctuation/whitespace based, which
is coarse for CJK text (a whole clause becomes one segment) but needs no
dictionary and is fast enough to run on every keystroke debounce.
"""

from __future__ import annotations

import os
import re
import sys
from collections import Counter

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from recall_types import Keyword, KeywordType

__all__ = [
    "IMPORTANCE_MULTIPLIER",
    "IMPORTANT_MARKERS",
    "STOP_WORDS",
    "classify_keyword_type",
    "extract",
    "extract_weighted",
    "split_segments",
]

# Full- and half-width punctuation plus whitespace
_SEGMENT_SPLIT = re.compile(r"[，。！？；：、“”‘’\"'（）()《》【】\[\]\s,.!?;:]+")

STOP_WORDS = frozenset({
    "的", "了", "在", "是", "我", "有", "和", "就", "不", "人", "都", "一", "一个",
    "上", "也", "很", "到", "说", "要", "去", "你", "会", "着", "没有", "看", "好",
    "自己", "这", "那", "里", "就是", "什么", "吗", "呢", "啊", "哦", "嗯", "吧",
    "而", "及", "与", "或", "我们", "你们", "他们", "她们", "它们", "这个", "那个",
    "怎么", "为什么", "因为", "所以", "但是", "然后", "如果", "虽然", "不过",
    "可以", "应该", "需要", "能够", "必须", "可能", "也许", "大概", "好像",
})

IMPORTANT_MARKERS = (
    "重要", "关键", "决定", "转折", "突然", "发现", "意外", "惊讶",
    "秘密", "危险", "机会", "冲突", "矛盾", "解决", "改变", "影响",
)

IMPORTANCE_MULTIPLIER = 1.5

# Checked in order; first match wins.
_TYPE_INDICATORS: tuple[tuple[KeywordType, tuple[str, ...]], ...] = (
    (KeywordType.PERSON, ("名字", "人", "角色", "他", "她", "我")),
    (KeywordType.LOCATION, ("在", "到", "去", "地方", "处")),
    (KeywordType.EVENT, ("发生", "事", "做", "进行")),
    (KeywordType.EMOTION, ("感觉", "心情", "情绪", "开心", "难过", "愤怒")),
    (KeywordType.OBJECT, ("东西", "物品", "道具", "装备")),
)


def split_segments(text: str) -> list[str]:
    """Split text on punctuation and whitespace, dropping empty pieces."""
    if not text:
        return []
    return [seg for seg in _SEGMENT_SPLIT.split(text) if seg]


def classify_keyword_type(keyword: str) -> KeywordType:
    """Heuristic keyword category; informational only."""
    for kind, indicators in _TYPE_INDICATORS:
        if any(ind in keyword for ind in indicators):
            return kind
    return KeywordType.DEFAULT


def _importance(term: str) -> float:
    for marker in IMPORTANT_MARKERS:
        if marker in term:
            return IMPORTANCE_MULTIPLIER
    return 1.0


def extract_weighted(text: str, max_keywords: int = 5, min_length: int = 2) -> list[Keyword]:
    """Extract weighted, typed keywords from *text*.

    Args:
        text: Free text (chat turn, in-progress input, or a combination).
        max_keywords: Maximum number of keywords returned.
        min_length: Segments shorter than this are discarded.

    Returns:
        Keywords ordered by descending weight. Ties keep first-seen order.
    """
    if max_keywords <= 0:
        return []
    terms = [
        seg for seg in split_segments(text)
        if len(seg) >= min_length and seg not in STOP_WORDS
    ]
    if not terms:
        return []

    # Counter preserves first-insertion order, and sorted() is stable.
    freq = Counter(terms)
    weighted = [
        Keyword(text=term, weight=count * _importance(term), type=classify_keyword_type(term))
        for term, count in freq.items()
    ]
    weighted.sort(key=lambda k: k.weight, reverse=True)
    return weighted[:max_keywords]


def extract(text: str, max_keywords: int = 5, min_length: int = 2) -> list[str]:
    """Return the top keyword strings of *text*. See :func:`extract_weighted`."""
    return [k.text for k in extract_weighted(text, max_keywords, min_length)]
