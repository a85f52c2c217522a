from typing import Optional
from dataclasses import dataclass
import structlog

from session_core.domain.budget.ledger import BudgetLedger, BudgetPolicy
from session_core.domain.budget.model_selector import ModelCatalog
from session_core.domain.context.facts_repository import FactsRepository, InMemoryFactsRepository
from session_core.domain.context.memory.clock import Clock, SystemClock
from session_core.domain.context.memory.expiring_store import InMemoryExpiringStore
from session_core.domain.context.session_store import SessionContextStore
from session_core.domain.guard.idempotency import IdempotencyCache
from session_core.domain.guard.rate_limiter import RateLimiter
from session_core.domain.streaming.turn_orchestrator import TurnLimits, TurnOrchestrator
from session_core.domain.tool.adapters import build_tool_registry
from session_core.domain.tool.tool_executor import ToolGateway
from session_core.infrastructure.backends.meeting_scheduler import MeetingScheduler
from session_core.infrastructure.backends.page_fetcher import PageFetcher
from session_core.infrastructure.backends.voice_tokens import VoiceTokenIssuer
from session_core.infrastructure.config.settings import Settings
from session_core.infrastructure.llm.provider import (
    LLMProvider, LangChainChatProvider, MockProvider, build_chat_model_factory
)
from session_core.infrastructure.observability.logging import MetricsCollector

logger = structlog.get_logger(__name__)


@dataclass
class CoreServices:
    """Process-wide shared structures, built once per application"""
    settings: Settings
    store: SessionContextStore
    rate_limiter: RateLimiter
    idempotency: IdempotencyCache
    ledger: BudgetLedger
    orchestrator: TurnOrchestrator
    tools: ToolGateway
    scheduler: MeetingScheduler
    voice_tokens: VoiceTokenIssuer
    metrics: MetricsCollector


def build_provider(settings: Settings) -> LLMProvider:
    if settings.use_mock_provider:
        logger.warning("No LLM API key configured, using the offline mock provider")
        return MockProvider()
    return LangChainChatProvider(build_chat_model_factory(settings.llm_provider, settings.llm_api_key))


def build_services(
    settings: Settings,
    provider: Optional[LLMProvider] = None,
    clock: Optional[Clock] = None,
    facts_repository: Optional[FactsRepository] = None,
    scheduler: Optional[MeetingScheduler] = None,
    metrics: Optional[MetricsCollector] = None,
) -> CoreServices:
    """Wire every component from settings; collaborators can be injected"""

    clock = clock or SystemClock()
    provider = provider or build_provider(settings)
    metrics = metrics or MetricsCollector()
    catalog = ModelCatalog(
        fast=settings.model_fast,
        standard=settings.model_standard,
        pro=settings.model_pro,
    )

    store = SessionContextStore(
        facts_repository=facts_repository or InMemoryFactsRepository(),
        multimodal_limit=settings.multimodal_history_limit,
    )
    rate_limiter = RateLimiter(InMemoryExpiringStore(clock))
    idempotency = IdempotencyCache(InMemoryExpiringStore(clock))
    ledger = BudgetLedger(
        BudgetPolicy(
            max_tokens=settings.budget_daily_tokens,
            max_requests=settings.budget_daily_requests,
            max_cost=settings.budget_daily_cost_usd,
            window_seconds=settings.budget_window_seconds,
            fallback_model=settings.model_fast,
        ),
        clock=clock,
    )

    orchestrator = TurnOrchestrator(
        store=store,
        rate_limiter=rate_limiter,
        ledger=ledger,
        provider=provider,
        limits=TurnLimits(
            max_calls=settings.chat_rate_limit,
            window_ms=settings.chat_rate_window_seconds * 1000,
            idle_timeout_seconds=settings.stream_idle_timeout_seconds,
        ),
        catalog=catalog,
        metrics=metrics,
    )

    scheduler = scheduler or MeetingScheduler()
    voice_tokens = VoiceTokenIssuer(ttl_seconds=settings.voice_token_ttl_seconds, clock=clock)
    registry = build_tool_registry(
        provider=provider,
        scheduler=scheduler,
        voice_tokens=voice_tokens,
        page_fetcher=PageFetcher(
            allowed_domains=settings.url_context_allowed_domains,
            timeout_seconds=settings.url_fetch_timeout_seconds,
        ),
        limits=settings.tool_rate_limits,
        window_ms=settings.tool_rate_window_seconds * 1000,
        idempotency_ttl_ms=settings.idempotency_ttl_seconds * 1000,
    )
    tools = ToolGateway(
        registry=registry,
        store=store,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        ledger=ledger,
        catalog=catalog,
        metrics=metrics,
    )

    return CoreServices(
        settings=settings,
        store=store,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        ledger=ledger,
        orchestrator=orchestrator,
        tools=tools,
        scheduler=scheduler,
        voice_tokens=voice_tokens,
        metrics=metrics,
    )
