from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


# Load environment variables from a local .env if present (harmless in containers)
load_dotenv()

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
TOOL_MODES = ("detect", "markers")
VISION_PROVIDER_NAMES = ("qwen", "doubao")


@dataclass(frozen=True)
class Settings:
    completion_api_key: str = ""
    completion_base_url: str = "https://api.deepseek.com/v1"
    completion_model: str = "deepseek-chat"
    completion_temperature: float = 0.7
    completion_max_tokens: int = 2000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    # Tools are only active when their key is present
    search_api_key: str = ""
    image_api_key: str = ""
    page_fetch_api_key: str = ""  # paid scraper fallback; the free reader needs no key
    vision_api_key: str = ""
    vision_provider: str = "qwen"
    tool_mode: str = "detect"
    store_path: str = "./data/chat_kv.db"
    max_sessions: int = 50
    page_char_budget: int = 8000
    http_timeout: float = 60.0
    log_level: str = "INFO"


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _first_env(*names: str, default: str = "") -> str:
    for name in names:
        value: Optional[str] = os.getenv(name)
        if value:
            return value
    return default


def get_settings() -> Settings:
    tool_mode = os.getenv("TOOL_MODE", "detect").strip().lower()
    vision_provider = os.getenv("VISION_PROVIDER", "qwen").strip().lower()
    if vision_provider not in VISION_PROVIDER_NAMES:
        vision_provider = "qwen"
    if tool_mode not in TOOL_MODES:
        tool_mode = "detect"

    return Settings(
        completion_api_key=_first_env("DEEPSEEK_API_KEY", "COMPLETION_API_KEY"),
        completion_base_url=_first_env(
            "COMPLETION_BASE_URL", default="https://api.deepseek.com/v1"
        ),
        completion_model=_first_env("COMPLETION_MODEL", default="deepseek-chat"),
        completion_temperature=_float_env("COMPLETION_TEMPERATURE", 0.7),
        completion_max_tokens=_int_env("COMPLETION_MAX_TOKENS", 2000),
        system_prompt=_first_env(
            "DEEPSEEK_SYSTEM_PROMPT", "SYSTEM_PROMPT", default=DEFAULT_SYSTEM_PROMPT
        ),
        search_api_key=_first_env("TAVILY_API_KEY"),
        image_api_key=_first_env("UNSPLASH_ACCESS_KEY"),
        page_fetch_api_key=_first_env("FIRECRAWL_API_KEY"),
        vision_api_key=_first_env("VISION_API_KEY", "DASHSCOPE_API_KEY"),
        vision_provider=vision_provider,
        tool_mode=tool_mode,
        store_path=os.getenv("CHAT_STORE_PATH", "./data/chat_kv.db"),
        max_sessions=_int_env("MAX_SESSIONS", 50),
        page_char_budget=_int_env("PAGE_CHAR_BUDGET", 8000),
        http_timeout=_float_env("HTTP_TIMEOUT", 60.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
