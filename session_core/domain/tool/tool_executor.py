from typing import Any, Dict, Optional
from dataclasses import dataclass
import json
import time
import structlog

from session_core.domain.budget.ledger import BudgetLedger
from session_core.domain.budget.model_selector import (
    DEFAULT_CATALOG, ModelCatalog, cost_of_usage, estimate_tokens, select_model
)
from session_core.domain.context.session_store import SessionContextStore
from session_core.domain.guard.idempotency import IdempotencyCache
from session_core.domain.guard.rate_limiter import RateLimiter
from session_core.domain.models.errors import BudgetExceeded, CoreError, ProviderError, RateLimited, ValidationError
from session_core.domain.models.session_context import CapabilityUsage, SessionPatch
from session_core.domain.models.tool_models import ToolResult
from session_core.infrastructure.observability.logging import MetricsCollector, core_logger, metrics as default_metrics
from .tool_registry import ToolCall, ToolOutput, ToolRegistry, ToolSpec
from .tool_validator import validate_tool_call

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolOutcome:
    result: ToolResult
    body: bytes
    replayed: bool = False


class ToolGateway:
    """Single entry point for tool calls.

    Every tool goes through the same policy: payload validation, idempotent
    replay, per-session rate limiting, optional budget enforcement, then the
    handler, with capability usage written back to the session context.
    Failures leave as taxonomy errors only.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        store: SessionContextStore,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyCache,
        ledger: BudgetLedger,
        catalog: ModelCatalog = DEFAULT_CATALOG,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.registry = registry
        self.store = store
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency
        self.ledger = ledger
        self.catalog = catalog
        self.metrics = metrics or default_metrics

    async def call_tool(
        self,
        session_key: Optional[str],
        idempotency_key: Optional[str],
        tool_name: str,
        payload: Any,
    ) -> ToolOutcome:
        spec = self.registry.get_tool(tool_name)
        if spec is None:
            raise ValidationError(f"Unknown tool '{tool_name}'")

        validated = validate_tool_call(spec, payload)
        dedupe = bool(session_key and idempotency_key)
        # keys are scoped per tool so a reused key never replays another tool's result
        scoped_key = f"{spec.name}:{idempotency_key}" if dedupe else None

        if dedupe:
            cached = self.idempotency.lookup(session_key, scoped_key)
            if cached is not None:
                self.metrics.increment_counter("tools.replayed", tags={"tool": tool_name})
                core_logger.log_tool_execution(tool_name, session_key, payload, success=True, replayed=True)
                return ToolOutcome(result=ToolResult.model_validate_json(cached), body=cached, replayed=True)

        async def action() -> bytes:
            # only the executing caller is admitted; in-flight duplicates wait on its result
            try:
                self.rate_limiter.enforce(spec.name, session_key, spec.max_calls, spec.window_ms)
            except RateLimited:
                self.metrics.increment_counter("tools.rate_limited", tags={"tool": tool_name})
                raise
            return await self._execute(spec, session_key, validated, payload)

        if dedupe:
            body, replayed = await self.idempotency.run_once(
                session_key, scoped_key, spec.idempotency_ttl_ms, action
            )
        else:
            body, replayed = await action(), False

        return ToolOutcome(result=ToolResult.model_validate_json(body), body=body, replayed=replayed)

    async def _execute(self, spec: ToolSpec, session_key: Optional[str], validated, raw_payload: Dict[str, Any]) -> bytes:
        started = time.monotonic()
        context = await self.store.get_or_none(session_key) if session_key else None
        call = ToolCall(tool_name=spec.name, session_key=session_key, payload=validated, context=context)

        identity_key = (context.identity.email if context and context.identity else None) or session_key
        estimated = 0
        if spec.feature is not None:
            estimated = estimate_tokens(json.dumps(raw_payload, default=str))
            call.model = select_model(spec.feature, estimated, context is not None, self.catalog)
            try:
                self.ledger.ensure_allowed(
                    identity_key,
                    session_key,
                    spec.feature,
                    call.model.model,
                    estimated,
                    call.model.estimated_cost,
                    persist=True
                )
            except BudgetExceeded:
                self.metrics.increment_counter("tools.budget_rejected", tags={"tool": spec.name})
                raise

        try:
            output = await spec.handler(call)
        except CoreError as e:
            self._log_failure(spec, session_key, raw_payload, started, e)
            raise
        except Exception as e:
            self._log_failure(spec, session_key, raw_payload, started, e)
            raise ProviderError(f"Tool '{spec.name}' failed: {type(e).__name__}") from e

        duration_ms = (time.monotonic() - started) * 1000
        self.metrics.record_latency(f"tool.{spec.name}", duration_ms)
        self.metrics.increment_counter("tools.executed", tags={"tool": spec.name})
        core_logger.log_tool_execution(spec.name, session_key, raw_payload, duration_ms=duration_ms, success=True)

        if call.model is not None and output.usage is not None:
            self.ledger.record_usage(
                identity_key,
                session_key,
                spec.feature,
                call.model.model,
                estimated,
                call.model.estimated_cost,
                output.usage.total_tokens,
                cost_of_usage(call.model.model, output.usage.input_tokens, output.usage.output_tokens, self.catalog)
            )

        if session_key:
            await self._write_back(spec, session_key, output, call)

        result = ToolResult(ok=True, tool=spec.name, output=output.output)
        return result.model_dump_json().encode("utf-8")

    async def _write_back(self, spec: ToolSpec, session_key: str, output: ToolOutput, call: ToolCall):
        """Record capability usage and tool side effects; failures are only logged"""

        metadata: Dict[str, Any] = {"tool": spec.name}
        if call.model is not None:
            metadata["model"] = call.model.model

        patch = output.patch
        capability = CapabilityUsage(capability=spec.capability, metadata=metadata)
        try:
            if patch is not None:
                merged = patch.model_copy(update={"capabilities": [*patch.capabilities, capability]})
                await self.store.update(session_key, merged)
            else:
                await self.store.update(session_key, SessionPatch(capabilities=[capability]))
        except Exception as e:
            logger.error("Tool write-back failed", session_id=session_key, tool=spec.name, error=str(e))
            if patch is not None:
                # keep the capability log complete even if the tool patch was rejected
                try:
                    await self.store.update(session_key, SessionPatch(capabilities=[capability]))
                except Exception as retry_error:
                    logger.error("Capability write-back failed", session_id=session_key, error=str(retry_error))

    def _log_failure(self, spec: ToolSpec, session_key: Optional[str], payload: Dict[str, Any], started: float, error: Exception):
        self.metrics.increment_counter("tools.failed", tags={"tool": spec.name})
        core_logger.log_tool_execution(
            spec.name,
            session_key,
            payload,
            duration_ms=(time.monotonic() - started) * 1000,
            success=False,
            error=str(error)
        )
