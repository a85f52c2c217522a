"""Runtime configuration read from the environment (and a local .env file)."""

from typing import Dict, List, Optional
import os
from dotenv import load_dotenv
from pydantic import BaseModel, Field

TOOL_NAMES = ("search", "translate", "vision", "booking", "voice_token", "url_context", "document")

DEFAULT_TOOL_LIMITS = {
    "search": 10,
    "translate": 10,
    "vision": 5,
    "booking": 5,
    "voice_token": 5,
    "url_context": 10,
    "document": 5,
}


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


class Settings(BaseModel):
    service_name: str = "session-core"
    log_level: str = "INFO"
    log_format: str = "json"

    admin_secret: Optional[str] = None

    llm_provider: str = "google_genai"
    llm_api_key: Optional[str] = None
    model_fast: str = "gemini-2.5-flash-lite"
    model_standard: str = "gemini-2.5-flash"
    model_pro: str = "gemini-2.5-pro"

    budget_daily_tokens: int = 50_000
    budget_daily_requests: int = 50
    budget_daily_cost_usd: Optional[float] = None
    budget_window_seconds: int = 86_400

    chat_rate_limit: int = 20
    chat_rate_window_seconds: int = 60
    stream_idle_timeout_seconds: float = 60.0

    tool_rate_limits: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TOOL_LIMITS))
    tool_rate_window_seconds: int = 60
    idempotency_ttl_seconds: int = 300

    multimodal_history_limit: int = 20
    voice_token_ttl_seconds: int = 1800

    url_context_allowed_domains: List[str] = Field(default_factory=list)
    url_fetch_timeout_seconds: float = 10.0

    @property
    def use_mock_provider(self) -> bool:
        return not self.llm_api_key

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)

        tool_limits = {
            name: _int(f"TOOL_RATE_LIMIT_{name.upper()}", DEFAULT_TOOL_LIMITS[name])
            for name in TOOL_NAMES
        }

        return cls(
            service_name=os.getenv("SERVICE_NAME", "session-core"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            admin_secret=os.getenv("ADMIN_SECRET") or None,
            llm_provider=os.getenv("LLM_PROVIDER", "google_genai"),
            llm_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("LLM_API_KEY") or None,
            model_fast=os.getenv("MODEL_FAST", "gemini-2.5-flash-lite"),
            model_standard=os.getenv("MODEL_STANDARD", "gemini-2.5-flash"),
            model_pro=os.getenv("MODEL_PRO", "gemini-2.5-pro"),
            budget_daily_tokens=_int("BUDGET_DAILY_TOKENS", 50_000),
            budget_daily_requests=_int("BUDGET_DAILY_REQUESTS", 50),
            budget_daily_cost_usd=_float("BUDGET_DAILY_COST_USD", None),
            budget_window_seconds=_int("BUDGET_WINDOW_SECONDS", 86_400),
            chat_rate_limit=_int("CHAT_RATE_LIMIT", 20),
            chat_rate_window_seconds=_int("CHAT_RATE_WINDOW_SECONDS", 60),
            stream_idle_timeout_seconds=_float("STREAM_IDLE_TIMEOUT_SECONDS", 60.0),
            tool_rate_limits=tool_limits,
            tool_rate_window_seconds=_int("TOOL_RATE_WINDOW_SECONDS", 60),
            idempotency_ttl_seconds=_int("IDEMPOTENCY_TTL_SECONDS", 300),
            multimodal_history_limit=_int("MULTIMODAL_HISTORY_LIMIT", 20),
            voice_token_ttl_seconds=_int("VOICE_TOKEN_TTL_SECONDS", 1800),
            url_context_allowed_domains=_list("URL_CONTEXT_ALLOWED_DOMAINS"),
            url_fetch_timeout_seconds=_float("URL_FETCH_TIMEOUT_SECONDS", 10.0),
        )
