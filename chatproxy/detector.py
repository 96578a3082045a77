"""Keyword/regex heuristics deciding which tools a user message needs.

Rules are evaluated in list order. A rule fires when any of its keywords is a
substring of the lower-cased message or its pattern matches. A rule that names
``suppressed_by`` categories does not fire when one of those fired earlier.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

WEB_FETCH = "web_fetch"
IMAGE = "image"
SEARCH = "search"

# RFC 3986 characters only, so CJK text glued to a URL ends the match.
URL_PATTERN = re.compile(r"https?://[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=%]+")
_URL_TRAILING = ".,;:!?)]'"

WEB_FETCH_KEYWORDS = (
    "网页", "网址", "链接", "这篇文章", "这个页面", "打开这个", "读一下", "读取",
    "webpage", "web page", "this page", "this link", "this article", "read this",
)
IMAGE_KEYWORDS = (
    "图片", "照片", "图像", "配图", "壁纸", "插图",
    "image", "photo", "picture", "wallpaper",
)
SEARCH_KEYWORDS = (
    "搜索一下", "搜一下", "搜索", "搜", "查一下", "查询", "查找", "最新", "新闻", "今天", "最近",
    "search", "look up", "google", "latest", "news", "today",
)

COURTESY_PREFIXES = (
    "请帮我", "帮我", "请你", "请", "麻烦你", "麻烦", "能不能", "可以",
    "please", "can you", "could you", "help me", "would you",
)
_EDGE_PUNCTUATION = " \t\r\n,，。.!！?？:：;；、"


@dataclass(frozen=True)
class DetectionRule:
    category: str
    keywords: Tuple[str, ...] = ()
    pattern: Optional[Pattern[str]] = None
    suppressed_by: Tuple[str, ...] = ()

    def matched_keywords(self, lowered: str) -> List[str]:
        return [kw for kw in self.keywords if kw.lower() in lowered]


DEFAULT_RULES: Tuple[DetectionRule, ...] = (
    DetectionRule(WEB_FETCH, WEB_FETCH_KEYWORDS, pattern=URL_PATTERN),
    DetectionRule(IMAGE, IMAGE_KEYWORDS),
    # "搜一些猫的图片" asks for pictures, not a web search
    DetectionRule(SEARCH, SEARCH_KEYWORDS, suppressed_by=(IMAGE,)),
)


@dataclass(frozen=True)
class ToolDetectionResult:
    needs_search: bool = False
    needs_images: bool = False
    needs_web_fetch: bool = False
    search_query: str = ""
    web_url: str = ""
    matched: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def any(self) -> bool:
        return self.needs_search or self.needs_images or self.needs_web_fetch


def extract_url(message: str) -> str:
    match = URL_PATTERN.search(message)
    if not match:
        return ""
    return match.group(0).rstrip(_URL_TRAILING)


class ToolDetector:
    def __init__(
        self,
        rules: Sequence[DetectionRule] = DEFAULT_RULES,
        courtesy_prefixes: Sequence[str] = COURTESY_PREFIXES,
    ) -> None:
        self._rules = tuple(rules)
        # Longest first so "请帮我" wins over "请"
        self._prefixes = tuple(sorted(courtesy_prefixes, key=len, reverse=True))

    def detect(self, message: str) -> ToolDetectionResult:
        lowered = message.lower()
        fired: Dict[str, Tuple[str, ...]] = {}
        # Suppressed rules still contribute keywords to strip from the query
        matched_keywords: List[str] = []
        for rule in self._rules:
            keywords = rule.matched_keywords(lowered)
            matched_keywords.extend(keywords)
            if any(category in fired for category in rule.suppressed_by):
                continue
            pattern_hit = bool(rule.pattern and rule.pattern.search(message))
            if keywords or pattern_hit:
                fired[rule.category] = tuple(keywords)

        return ToolDetectionResult(
            needs_search=SEARCH in fired,
            needs_images=IMAGE in fired,
            needs_web_fetch=WEB_FETCH in fired,
            search_query=self.extract_query(message, matched_keywords),
            web_url=extract_url(message),
            matched=fired,
        )

    def extract_query(self, message: str, keywords: Sequence[str]) -> str:
        """Strip tool keywords, URLs and leading courtesy phrases from ``message``.

        Falls back to the untouched message when nothing would be left.
        """
        text = message
        for kw in sorted(set(keywords), key=len, reverse=True):
            text = re.sub(re.escape(kw), " ", text, flags=re.IGNORECASE)
        text = URL_PATTERN.sub(" ", text)
        text = " ".join(text.split()).strip(_EDGE_PUNCTUATION)

        stripped = True
        while stripped and text:
            stripped = False
            lowered = text.lower()
            for prefix in self._prefixes:
                if lowered.startswith(prefix):
                    text = text[len(prefix):].strip(_EDGE_PUNCTUATION)
                    stripped = True
                    break

        return text or message


_default_detector = ToolDetector()


def detect_tools(message: str) -> ToolDetectionResult:
    return _default_detector.detect(message)
