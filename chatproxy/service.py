from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from openai import APIStatusError, AsyncOpenAI
from semantic_kernel.connectors.ai.open_ai import (
    OpenAIChatCompletion,
    OpenAIChatPromptExecutionSettings,
)
from semantic_kernel.contents import ChatHistory

from .config import Settings, get_settings
from .detector import ToolDetectionResult, ToolDetector, detect_tools
from .models import Message
from .repository import SessionRepository, create_store
from .tools import (
    ImageSearch,
    PageFetcher,
    VisionRecognizer,
    WebSearch,
    parse_tool_calls,
    strip_tool_markers,
)

logger = logging.getLogger(__name__)

MARKER_INSTRUCTIONS = """

【工具使用能力】
你可以使用以下工具来获取信息：

1. 网络搜索：使用格式 [搜索:关键词] 来搜索网络信息
   示例：[搜索:2024年遥感技术最新进展]

2. 图片搜索：使用格式 [图片:关键词] 来搜索相关图片
   示例：[图片:卫星图像 北京]

当你需要获取最新信息或图片时，请在回答中嵌入这些工具调用格式。"""

TOOL_CONTEXT_HEADER = "【工具结果】\n以下是为回答用户问题实时获取的信息，请结合这些信息作答：\n\n"
VISION_CONTEXT_HEADER = "【图片识别】\n"
VISION_DESCRIBED = "用户上传了一张图片，图片内容描述如下：\n"
VISION_NOT_CONFIGURED = "用户上传了一张图片，但图片识别服务未配置，无法查看图片内容。请如实告知用户。"
VISION_FAILED = "用户上传了一张图片，但图片识别失败，请如实告知用户。"
FOLLOW_UP_PROMPT = "请基于以上工具搜索结果，给用户一个完整的回答。"


class ConfigurationError(RuntimeError):
    pass


class CompletionError(RuntimeError):
    """Non-2xx answer from the completion endpoint."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Completion API error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


def _find_status_error(exc: BaseException) -> Optional[APIStatusError]:
    # semantic-kernel wraps the SDK error; walk the chain to get the HTTP status back
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, APIStatusError):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


class ChatCompletionClient:
    """OpenAI-compatible chat completion through semantic-kernel."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        async_client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            http_client=http_client,
        )
        self._service = OpenAIChatCompletion(
            ai_model_id=model, api_key=api_key, async_client=async_client
        )
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def complete(self, messages: Sequence[Dict[str, str]]) -> str:
        history = ChatHistory()
        for m in messages:
            if m["role"] == "system":
                history.add_system_message(m["content"])
            elif m["role"] == "assistant":
                history.add_assistant_message(m["content"])
            else:
                history.add_user_message(m["content"])

        # Fresh settings per call: the connector stores the request messages on them
        prompt_settings = OpenAIChatPromptExecutionSettings(
            temperature=self._temperature, max_tokens=self._max_tokens
        )
        try:
            response = await self._service.get_chat_message_content(history, prompt_settings)
        except Exception as e:
            status_error = _find_status_error(e)
            if status_error is None:
                raise
            raise CompletionError(status_error.status_code, status_error.response.text) from e
        content = getattr(response, "content", None)
        return content if isinstance(content, str) else ""


Completion = Callable[[Sequence[Dict[str, str]]], Awaitable[str]]


def _kernel_functions(*plugins: object) -> Dict[str, Callable[[str], Awaitable[str]]]:
    registry: Dict[str, Callable[[str], Awaitable[str]]] = {}
    for plugin in plugins:
        for attr in dir(plugin):
            if attr.startswith("_"):
                continue
            member = getattr(plugin, attr)
            if callable(member) and getattr(member, "__kernel_function__", False):
                registry[member.__kernel_function_name__] = member
    return registry


class ChatService:
    """Singleton-style chat service: detects tools, runs them, then asks the model."""

    _instance: Optional["ChatService"] = None

    def __init__(
        self,
        settings: Settings,
        completion: Optional[Completion] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        detector: Optional[ToolDetector] = None,
    ) -> None:
        self._settings = settings
        self._completion = completion
        self._http_client = http_client
        self._detect: Callable[[str], ToolDetectionResult] = (
            detector.detect if detector is not None else detect_tools
        )
        self._repo: Optional[SessionRepository] = None
        timeout = settings.http_timeout

        self._search = (
            WebSearch(settings.search_api_key, http_client, timeout)
            if settings.search_api_key
            else None
        )
        self._images = (
            ImageSearch(settings.image_api_key, http_client, timeout)
            if settings.image_api_key
            else None
        )
        self._fetcher = PageFetcher(
            settings.page_fetch_api_key,
            char_budget=settings.page_char_budget,
            http_client=http_client,
            timeout=timeout,
        )
        self._vision = (
            VisionRecognizer(
                settings.vision_api_key, settings.vision_provider, http_client, timeout
            )
            if settings.vision_api_key
            else None
        )
        plugins = [p for p in (self._search, self._images, self._fetcher) if p is not None]
        self._tools = _kernel_functions(*plugins)

    @classmethod
    def instance(cls) -> "ChatService":
        if cls._instance is None:
            cls._instance = ChatService(get_settings())
        return cls._instance

    @property
    def settings(self) -> Settings:
        return self._settings

    def repository(self) -> SessionRepository:
        if self._repo is None:
            self._repo = SessionRepository(
                create_store(self._settings.store_path),
                max_sessions=self._settings.max_sessions,
            )
        return self._repo

    def _complete(self) -> Completion:
        if self._completion is None:
            s = self._settings
            client = ChatCompletionClient(
                api_key=s.completion_api_key,
                base_url=s.completion_base_url,
                model=s.completion_model,
                temperature=s.completion_temperature,
                max_tokens=s.completion_max_tokens,
                http_client=self._http_client,
            )
            self._completion = client.complete
        return self._completion

    def ensure_configured(self) -> None:
        if not self._settings.completion_api_key:
            raise ConfigurationError("API key not configured")

    async def reply(self, messages: Sequence[Message], image: Optional[str] = None) -> str:
        self.ensure_configured()

        history = [{"role": m.role, "content": m.content} for m in messages]
        latest = next((m.content for m in reversed(messages) if m.role == "user"), "")
        markers_mode = self._settings.tool_mode == "markers"

        tool_results: List[str] = []
        if not markers_mode:
            tool_results = await self._run_detected_tools(latest)
        vision_context = await self._describe_image(image) if image else ""

        system_prompt = self.compose_system_prompt(tool_results, vision_context)
        api_messages = [{"role": "system", "content": system_prompt}, *history]
        complete = self._complete()
        answer = await complete(api_messages)

        if markers_mode:
            answer, tool_results = await self._run_marked_tools(answer)
            if not tool_results:
                return answer
            annotated = answer
        elif tool_results:
            annotated = answer + "\n\n" + "\n\n".join(tool_results)
        else:
            return answer

        follow_up = [
            *api_messages,
            {"role": "assistant", "content": annotated},
            {"role": "user", "content": FOLLOW_UP_PROMPT},
        ]
        try:
            final = await complete(follow_up)
        except Exception as e:
            logger.warning("Follow-up completion failed, returning tool output: %s", e)
            return annotated
        return final or annotated

    def compose_system_prompt(self, tool_results: Sequence[str], vision_context: str) -> str:
        s = self._settings
        prompt = s.system_prompt
        if s.tool_mode == "markers" and (s.search_api_key or s.image_api_key):
            prompt += MARKER_INSTRUCTIONS
        if tool_results and s.tool_mode != "markers":
            prompt += "\n\n" + TOOL_CONTEXT_HEADER + "\n\n".join(tool_results)
        if vision_context:
            prompt += "\n\n" + VISION_CONTEXT_HEADER + vision_context
        return prompt

    async def _run_detected_tools(self, latest: str) -> List[str]:
        detection = self._detect(latest)
        results: List[str] = []
        if detection.any:
            logger.info("Detected tools %s for message %r", detection.matched, latest[:60])
        if detection.needs_search and self._search is not None:
            results.append(await self._search.search(detection.search_query))
        if detection.needs_images and self._images is not None:
            results.append(await self._images.search(detection.search_query))
        if detection.needs_web_fetch and detection.web_url:
            results.append(await self._fetcher.fetch(detection.web_url))
        return results

    async def _run_marked_tools(self, answer: str) -> Tuple[str, List[str]]:
        calls = parse_tool_calls(answer)
        if not calls:
            return answer, []
        logger.info("Executing %d tool markers from model output", len(calls))
        results: List[str] = []
        for call in calls:
            tool = self._tools.get(call.tool)
            # Markers for tools without a key are dropped without output
            if tool is not None:
                results.append(await tool(call.args))
        processed = "\n\n".join(part for part in (strip_tool_markers(answer), *results) if part)
        return processed, results

    async def _describe_image(self, image: str) -> str:
        if self._vision is None:
            return VISION_NOT_CONFIGURED
        result = await self._vision.describe(image)
        if result.ok:
            return VISION_DESCRIBED + result.text
        return f"{VISION_FAILED}\n{result.text}"


async def warmup() -> Dict[str, Any]:
    """Report which tools are active; nothing is called over the network."""
    s = ChatService.instance().settings
    return {
        "completion": bool(s.completion_api_key),
        "search": bool(s.search_api_key),
        "images": bool(s.image_api_key),
        "page_fetch_fallback": bool(s.page_fetch_api_key),
        "vision": bool(s.vision_api_key),
        "tool_mode": s.tool_mode,
    }
