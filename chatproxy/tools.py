from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from semantic_kernel.functions import kernel_function

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
UNSPLASH_SEARCH_URL = "https://api.unsplash.com/search/photos"
READER_PROXY_URL = "https://r.jina.ai/"
FIRECRAWL_SCRAPE_URL = "https://api.firecrawl.dev/v1/scrape"

DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True)
class ToolCall:
    tool: str  # 'search' | 'image'
    args: str


@dataclass(frozen=True)
class VisionResult:
    text: str
    ok: bool = True


@dataclass(frozen=True)
class VisionProvider:
    url: str
    model: str
    prompt: str


VISION_PROVIDERS: Dict[str, VisionProvider] = {
    "qwen": VisionProvider(
        url="https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions",
        model="qwen-vl-plus",
        prompt="请详细描述这张图片的内容，包括主要物体、场景、文字等细节。",
    ),
    "doubao": VisionProvider(
        url="https://ark.cn-beijing.volces.com/api/v3/chat/completions",
        model="doubao-vision",
        prompt="请详细描述这张图片的内容。",
    ),
}

_MARKER_PATTERNS = (
    ("search", re.compile(r"\[搜索[:：](.*?)\]")),
    ("image", re.compile(r"\[图片[:：](.*?)\]")),
)


def parse_tool_calls(content: str) -> List[ToolCall]:
    """Collect ``[搜索:...]`` and ``[图片:...]`` markers from model output."""
    calls: List[ToolCall] = []
    for tool, pattern in _MARKER_PATTERNS:
        for match in pattern.finditer(content):
            calls.append(ToolCall(tool=tool, args=match.group(1).strip()))
    return calls


def strip_tool_markers(content: str) -> str:
    for _, pattern in _MARKER_PATTERNS:
        content = pattern.sub("", content)
    return content.strip()


class HttpTool:
    """Base for adapters that make one outbound call per attempt.

    An injected ``httpx.AsyncClient`` is reused as-is (tests pass one built on
    ``httpx.MockTransport``); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = DEFAULT_TIMEOUT
    ) -> None:
        self._http_client = http_client
        self._timeout = timeout

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            yield client


class WebSearch(HttpTool):
    def __init__(
        self,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        endpoint: str = TAVILY_SEARCH_URL,
    ) -> None:
        super().__init__(http_client, timeout)
        self._api_key = api_key
        self._endpoint = endpoint

    @kernel_function(
        description="Searches the web and returns a short answer plus the top links.",
        name="search",
    )
    async def search(
        self, query: Annotated[str, "The search query."]
    ) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    self._endpoint,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={
                        "api_key": self._api_key,
                        "query": query,
                        "search_depth": "basic",
                        "max_results": 5,
                        "include_images": False,
                        "include_answer": True,
                    },
                )
            if response.is_error:
                logger.warning("Web search failed with HTTP %s", response.status_code)
                return f"搜索失败: {response.status_code} {response.reason_phrase}"
            return self._format(response.json())
        except Exception as e:
            logger.warning("Web search error: %s", e)
            return f"搜索出错: {e}"

    @staticmethod
    def _format(data: Dict) -> str:
        lines = ["网络搜索结果:", ""]
        if data.get("answer"):
            lines += [f"简要回答: {data['answer']}", ""]
        results = data.get("results") or []
        if not results:
            lines.append("未找到相关结果。")
            return "\n".join(lines)
        lines.append("相关链接:")
        for i, item in enumerate(results, start=1):
            snippet = item.get("content") or item.get("snippet") or ""
            lines += [
                f"{i}. {item.get('title', '')}",
                f"   {snippet}",
                f"   {item.get('url', '')}",
            ]
        return "\n".join(lines)


class ImageSearch(HttpTool):
    def __init__(
        self,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        endpoint: str = UNSPLASH_SEARCH_URL,
    ) -> None:
        super().__init__(http_client, timeout)
        self._api_key = api_key
        self._endpoint = endpoint

    @kernel_function(
        description="Searches a stock photo library and returns image links with credits.",
        name="image",
    )
    async def search(
        self, query: Annotated[str, "What the pictures should show."]
    ) -> str:
        try:
            async with self._client() as client:
                response = await client.get(
                    self._endpoint,
                    params={"query": query, "per_page": 6},
                    headers={"Authorization": f"Client-ID {self._api_key}"},
                )
            if response.is_error:
                logger.warning("Image search failed with HTTP %s", response.status_code)
                return f"图片搜索失败: {response.status_code} {response.reason_phrase}"
            return self._format(query, response.json())
        except Exception as e:
            logger.warning("Image search error: %s", e)
            return f"图片搜索出错: {e}"

    @staticmethod
    def _format(query: str, data: Dict) -> str:
        results = data.get("results") or []
        if not results:
            return f'未找到关于"{query}"的图片。'

        lines = [f'图片搜索结果: "{query}"', ""]
        for i, img in enumerate(results, start=1):
            description = img.get("description") or img.get("alt_description") or "无描述"
            url = (img.get("urls") or {}).get("regular") or img.get("url", "")
            author = (img.get("user") or {}).get("name") or "未知"
            lines += [f"{i}. {description}", f"   {url}", f"   摄影师: {author}", ""]
        return "\n".join(lines).rstrip()


Strategy = Callable[[httpx.AsyncClient, str], Awaitable[str]]


class PageFetcher(HttpTool):
    """Reads a web page as markdown, trying each extraction strategy in order."""

    def __init__(
        self,
        scraper_api_key: str = "",
        char_budget: int = 8000,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        reader_url: str = READER_PROXY_URL,
        scraper_url: str = FIRECRAWL_SCRAPE_URL,
    ) -> None:
        super().__init__(http_client, timeout)
        self._scraper_api_key = scraper_api_key
        self._char_budget = char_budget
        self._reader_url = reader_url
        self._scraper_url = scraper_url

    def strategies(self) -> List[Tuple[str, Strategy]]:
        strategies: List[Tuple[str, Strategy]] = [("reader", self._read_with_proxy)]
        if self._scraper_api_key:
            strategies.append(("scraper", self._read_with_scraper))
        return strategies

    async def _read_with_proxy(self, client: httpx.AsyncClient, url: str) -> str:
        response = await client.get(
            f"{self._reader_url}{url}", headers={"Accept": "text/plain"}
        )
        response.raise_for_status()
        return response.text

    async def _read_with_scraper(self, client: httpx.AsyncClient, url: str) -> str:
        response = await client.post(
            self._scraper_url,
            headers={"Authorization": f"Bearer {self._scraper_api_key}"},
            json={"url": url, "formats": ["markdown"], "onlyMainContent": True},
        )
        response.raise_for_status()
        data = response.json().get("data") or {}
        return data.get("markdown") or ""

    @kernel_function(
        description="Fetches a web page and returns its main content as markdown.",
        name="fetch",
    )
    async def fetch(self, url: Annotated[str, "Absolute http(s) URL of the page."]) -> str:
        failures: List[str] = []
        async with self._client() as client:
            for name, strategy in self.strategies():
                try:
                    content = (await strategy(client, url)).strip()
                except Exception as e:
                    logger.warning("Page fetch via %s failed for %s: %s", name, url, e)
                    failures.append(f"{name}: {e}")
                    continue
                if content:
                    return self._format(url, content)
                failures.append(f"{name}: empty content")
        return f"网页读取失败: {url} ({'; '.join(failures)})"

    def _format(self, url: str, content: str) -> str:
        truncated = len(content) > self._char_budget
        if truncated:
            content = content[: self._char_budget]
        text = f"网页内容 ({url}):\n\n{content}"
        if truncated:
            text += "\n\n...(内容已截断)"
        return text


class VisionRecognizer(HttpTool):
    def __init__(
        self,
        api_key: str,
        provider: str = "qwen",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(http_client, timeout)
        if provider not in VISION_PROVIDERS:
            raise ValueError(f"Unknown vision provider: {provider}")
        self._api_key = api_key
        self._provider = VISION_PROVIDERS[provider]

    async def describe(self, image_data_url: str) -> VisionResult:
        provider = self._provider
        try:
            async with self._client() as client:
                response = await client.post(
                    provider.url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={
                        "model": provider.model,
                        "messages": [
                            {
                                "role": "user",
                                "content": [
                                    {"type": "image_url", "image_url": {"url": image_data_url}},
                                    {"type": "text", "text": provider.prompt},
                                ],
                            }
                        ],
                        "max_tokens": 500,
                    },
                )
            if response.is_error:
                logger.warning("Vision API error %s: %s", response.status_code, response.text[:300])
                return VisionResult(f"图片识别失败 ({response.status_code}): {response.text}", ok=False)
            data = response.json()
        except Exception as e:
            logger.warning("Vision API error: %s", e)
            return VisionResult(f"图片识别出错: {e}", ok=False)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = ""
        # List-of-parts replies carry no plain description
        if not isinstance(content, str):
            content = ""
        return VisionResult(content or "无法识别图片内容")
