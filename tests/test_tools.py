from __future__ import annotations

import json
import unittest

import httpx

from chatproxy.tools import (
    ImageSearch,
    PageFetcher,
    ToolCall,
    VisionRecognizer,
    WebSearch,
    parse_tool_calls,
    strip_tool_markers,
)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestWebSearch(unittest.IsolatedAsyncioTestCase):
    async def test_formats_answer_and_results(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "answer": "AI advanced quickly.",
                    "results": [
                        {"title": "Report", "content": "Summary text", "url": "https://a.example"},
                        {"title": "News", "content": "More text", "url": "https://b.example"},
                    ],
                },
            )

        async with mock_client(handler) as client:
            text = await WebSearch("tv-key", http_client=client).search("AI 2024")

        self.assertEqual(seen["auth"], "Bearer tv-key")
        self.assertEqual(seen["body"]["query"], "AI 2024")
        self.assertEqual(seen["body"]["max_results"], 5)
        self.assertTrue(text.startswith("网络搜索结果:"))
        self.assertIn("简要回答: AI advanced quickly.", text)
        self.assertIn("1. Report", text)
        self.assertIn("   https://b.example", text)

    async def test_no_results(self):
        async with mock_client(lambda r: httpx.Response(200, json={"results": []})) as client:
            text = await WebSearch("k", http_client=client).search("nothing")
        self.assertIn("未找到相关结果。", text)

    async def test_http_error_becomes_text(self):
        async with mock_client(lambda r: httpx.Response(500)) as client:
            text = await WebSearch("k", http_client=client).search("q")
        self.assertEqual(text, "搜索失败: 500 Internal Server Error")

    async def test_network_error_becomes_text(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client(handler) as client:
            text = await WebSearch("k", http_client=client).search("q")
        self.assertTrue(text.startswith("搜索出错:"))
        self.assertIn("connection refused", text)

    async def test_unexpected_payload_becomes_text(self):
        async with mock_client(lambda r: httpx.Response(200, json={"results": ["x"]})) as client:
            text = await WebSearch("k", http_client=client).search("q")
        self.assertTrue(text.startswith("搜索出错:"))


class TestImageSearch(unittest.IsolatedAsyncioTestCase):
    async def test_formats_results(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["query"] = request.url.params["query"]
            seen["per_page"] = request.url.params["per_page"]
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "description": "Satellite view",
                            "urls": {"regular": "https://img.example/1.jpg"},
                            "user": {"name": "Ann"},
                        },
                        {"alt_description": None, "urls": {}, "url": "https://img.example/2.jpg"},
                    ]
                },
            )

        async with mock_client(handler) as client:
            text = await ImageSearch("un-key", http_client=client).search("卫星图像")

        self.assertEqual(seen, {"auth": "Client-ID un-key", "query": "卫星图像", "per_page": "6"})
        self.assertTrue(text.startswith('图片搜索结果: "卫星图像"'))
        self.assertIn("1. Satellite view", text)
        self.assertIn("摄影师: Ann", text)
        self.assertIn("2. 无描述", text)
        self.assertIn("https://img.example/2.jpg", text)
        self.assertIn("摄影师: 未知", text)

    async def test_no_results(self):
        async with mock_client(lambda r: httpx.Response(200, json={"results": []})) as client:
            text = await ImageSearch("k", http_client=client).search("猫")
        self.assertEqual(text, '未找到关于"猫"的图片。')

    async def test_http_error_becomes_text(self):
        async with mock_client(lambda r: httpx.Response(401)) as client:
            text = await ImageSearch("k", http_client=client).search("猫")
        self.assertEqual(text, "图片搜索失败: 401 Unauthorized")

    async def test_unexpected_payload_becomes_text(self):
        payload = {"results": [{"urls": "u"}]}
        async with mock_client(lambda r: httpx.Response(200, json=payload)) as client:
            text = await ImageSearch("k", http_client=client).search("猫")
        self.assertTrue(text.startswith("图片搜索出错:"))


class TestPageFetcher(unittest.IsolatedAsyncioTestCase):
    async def test_reader_proxy_succeeds(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "r.jina.ai"
            assert str(request.url).endswith("https://example.com")
            return httpx.Response(200, text="# Example Domain\n\nBody")

        async with mock_client(handler) as client:
            text = await PageFetcher(http_client=client).fetch("https://example.com")
        self.assertEqual(text, "网页内容 (https://example.com):\n\n# Example Domain\n\nBody")

    async def test_falls_back_to_scraper_when_reader_is_empty(self):
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "r.jina.ai":
                return httpx.Response(200, text="   ")
            assert request.headers["authorization"] == "Bearer fc-key"
            assert json.loads(request.content)["url"] == "https://example.com"
            return httpx.Response(200, json={"success": True, "data": {"markdown": "Scraped"}})

        async with mock_client(handler) as client:
            text = await PageFetcher("fc-key", http_client=client).fetch("https://example.com")
        self.assertEqual(hosts, ["r.jina.ai", "api.firecrawl.dev"])
        self.assertTrue(text.endswith("Scraped"))

    async def test_falls_back_to_scraper_when_reader_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "r.jina.ai":
                return httpx.Response(502)
            return httpx.Response(200, json={"data": {"markdown": "From scraper"}})

        async with mock_client(handler) as client:
            text = await PageFetcher("fc-key", http_client=client).fetch("https://example.com")
        self.assertIn("From scraper", text)

    async def test_without_scraper_key_only_reader_is_tried(self):
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(503)

        async with mock_client(handler) as client:
            fetcher = PageFetcher(http_client=client)
            text = await fetcher.fetch("https://example.com")
        self.assertEqual([name for name, _ in fetcher.strategies()], ["reader"])
        self.assertEqual(hosts, ["r.jina.ai"])
        self.assertTrue(text.startswith("网页读取失败: https://example.com"))
        self.assertIn("reader:", text)

    async def test_all_strategies_failing_lists_each_reason(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "r.jina.ai":
                return httpx.Response(200, text="")
            return httpx.Response(402)

        async with mock_client(handler) as client:
            text = await PageFetcher("fc-key", http_client=client).fetch("https://example.com")
        self.assertIn("reader: empty content", text)
        self.assertIn("scraper:", text)

    async def test_content_is_truncated_to_budget(self):
        async with mock_client(lambda r: httpx.Response(200, text="x" * 50)) as client:
            text = await PageFetcher(char_budget=10, http_client=client).fetch("https://e.com")
        self.assertIn("x" * 10, text)
        self.assertNotIn("x" * 11, text)
        self.assertTrue(text.endswith("...(内容已截断)"))


class TestVisionRecognizer(unittest.IsolatedAsyncioTestCase):
    async def test_describes_image(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["host"] = request.url.host
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "一只猫坐在窗台上"}}]}
            )

        async with mock_client(handler) as client:
            result = await VisionRecognizer("vk", http_client=client).describe(
                "data:image/png;base64,AAAA"
            )
        self.assertTrue(result.ok)
        self.assertEqual(result.text, "一只猫坐在窗台上")
        self.assertEqual(seen["host"], "dashscope.aliyuncs.com")
        self.assertEqual(seen["body"]["model"], "qwen-vl-plus")
        parts = seen["body"]["messages"][0]["content"]
        self.assertEqual(parts[0]["image_url"]["url"], "data:image/png;base64,AAAA")

    async def test_doubao_provider(self):
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        async with mock_client(handler) as client:
            await VisionRecognizer("vk", "doubao", http_client=client).describe("data:,")
        self.assertEqual(hosts, ["ark.cn-beijing.volces.com"])

    async def test_upstream_error_is_reported(self):
        async with mock_client(lambda r: httpx.Response(400, text="bad image")) as client:
            result = await VisionRecognizer("vk", http_client=client).describe("data:,")
        self.assertFalse(result.ok)
        self.assertEqual(result.text, "图片识别失败 (400): bad image")

    async def test_empty_choice_falls_back_to_notice(self):
        async with mock_client(lambda r: httpx.Response(200, json={"choices": []})) as client:
            result = await VisionRecognizer("vk", http_client=client).describe("data:,")
        self.assertTrue(result.ok)
        self.assertEqual(result.text, "无法识别图片内容")

    async def test_list_content_falls_back_to_notice(self):
        parts = {"choices": [{"message": {"content": [{"type": "text", "text": "猫"}]}}]}
        async with mock_client(lambda r: httpx.Response(200, json=parts)) as client:
            result = await VisionRecognizer("vk", http_client=client).describe("data:,")
        self.assertTrue(result.ok)
        self.assertEqual(result.text, "无法识别图片内容")

    def test_unknown_provider_is_rejected(self):
        with self.assertRaises(ValueError):
            VisionRecognizer("vk", "nope")


class TestToolMarkers(unittest.TestCase):
    def test_parse_collects_search_then_image_markers(self):
        calls = parse_tool_calls("先看[图片:卫星图像 北京]，再查[搜索: 2024年遥感技术 ]和[搜索：天气]")
        self.assertEqual(
            calls,
            [
                ToolCall("search", "2024年遥感技术"),
                ToolCall("search", "天气"),
                ToolCall("image", "卫星图像 北京"),
            ],
        )

    def test_no_markers(self):
        self.assertEqual(parse_tool_calls("普通回答 [not a marker]"), [])

    def test_strip_markers(self):
        self.assertEqual(strip_tool_markers("结果如下[搜索:天气]"), "结果如下")
