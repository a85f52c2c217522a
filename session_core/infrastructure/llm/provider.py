"""
Language-model provider seam.

The orchestrator and the LLM-backed tools only see ``LLMProvider``: a single
"generate, optionally streamed" call taking a message list and a system
preamble. ``LangChainChatProvider`` backs it with any LangChain chat model;
``MockProvider`` answers offline when no API key is configured.
"""

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple
import asyncio
import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from session_core.domain.models.errors import ProviderError
from session_core.domain.models.turn_state import Usage

logger = structlog.get_logger(__name__)


class ProviderChunk(BaseModel):
    """Incremental text; the last chunk of a stream may carry only usage"""
    text: str = ""
    usage: Optional[Usage] = None


class LLMProvider(Protocol):

    def stream(self, messages: List[BaseMessage], system: str, model: str) -> AsyncIterator[ProviderChunk]:
        ...

    async def complete(self, messages: List[BaseMessage], system: str, model: str) -> Tuple[str, Usage]:
        ...


async def collect(provider: "LLMProvider", messages: List[BaseMessage], system: str, model: str) -> Tuple[str, Usage]:
    """Drain a provider stream into (text, usage)"""

    parts: List[str] = []
    usage = Usage()
    async for chunk in provider.stream(messages, system, model):
        if chunk.text:
            parts.append(chunk.text)
        if chunk.usage is not None:
            usage = chunk.usage
    return "".join(parts), usage


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return ""


class LangChainChatProvider:
    """Adapts a LangChain chat model to the provider seam"""

    def __init__(self, model_factory: Callable[[str], BaseChatModel]):
        self.model_factory = model_factory
        self._models: Dict[str, BaseChatModel] = {}

    def _model(self, model: str) -> BaseChatModel:
        if model not in self._models:
            self._models[model] = self.model_factory(model)
        return self._models[model]

    async def stream(self, messages: List[BaseMessage], system: str, model: str) -> AsyncIterator[ProviderChunk]:
        chat_model = self._model(model)
        aggregate = None

        try:
            async for chunk in chat_model.astream([SystemMessage(content=system), *messages]):
                aggregate = chunk if aggregate is None else aggregate + chunk
                text = _chunk_text(chunk.content)
                if text:
                    yield ProviderChunk(text=text)
        except ProviderError:
            raise
        except Exception as e:
            logger.error("Provider stream failed", model=model, error=str(e))
            raise ProviderError(f"Language model call failed: {type(e).__name__}") from e

        usage_metadata = getattr(aggregate, "usage_metadata", None) if aggregate is not None else None
        if usage_metadata:
            yield ProviderChunk(usage=Usage(
                input_tokens=usage_metadata.get("input_tokens", 0),
                output_tokens=usage_metadata.get("output_tokens", 0),
            ))

    async def complete(self, messages: List[BaseMessage], system: str, model: str) -> Tuple[str, Usage]:
        return await collect(self, messages, system, model)


def build_chat_model_factory(provider_name: str, api_key: Optional[str] = None, **model_kwargs) -> Callable[[str], BaseChatModel]:
    """Factory creating chat models through ``init_chat_model``"""

    from langchain.chat_models import init_chat_model

    def factory(model: str) -> BaseChatModel:
        kwargs = dict(model_kwargs)
        if api_key and provider_name == "google_genai":
            kwargs["google_api_key"] = api_key
        elif api_key:
            kwargs["api_key"] = api_key
        return init_chat_model(model, model_provider=provider_name, **kwargs)

    return factory


class MockProvider:
    """Offline provider that streams a canned reply word by word"""

    def __init__(
        self,
        responder: Optional[Callable[[List[BaseMessage], str], str]] = None,
        delay_seconds: float = 0.0
    ):
        self.responder = responder or self._default_reply
        self.delay_seconds = delay_seconds
        self.calls: List[Dict[str, Any]] = []

    @staticmethod
    def _default_reply(messages: List[BaseMessage], model: str) -> str:
        last_user = next(
            (m for m in reversed(messages) if isinstance(m, HumanMessage)),
            None
        )
        text = _chunk_text(last_user.content) if last_user else ""
        return f"[mock:{model}] {text}".strip()

    async def stream(self, messages: List[BaseMessage], system: str, model: str) -> AsyncIterator[ProviderChunk]:
        self.calls.append({"model": model, "system": system, "messages": list(messages)})
        reply = self.responder(messages, model)

        words = reply.split(" ")
        for index, word in enumerate(words):
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield ProviderChunk(text=word if index == len(words) - 1 else word + " ")

        prompt_chars = len(system) + sum(len(_chunk_text(m.content)) for m in messages)
        yield ProviderChunk(usage=Usage(
            input_tokens=max(1, prompt_chars // 4),
            output_tokens=max(1, len(reply) // 4),
        ))

    async def complete(self, messages: List[BaseMessage], system: str, model: str) -> Tuple[str, Usage]:
        return await collect(self, messages, system, model)


def to_langchain_messages(history: List[Dict[str, str]], message: str) -> List[BaseMessage]:
    """Caller history plus the new user message as LangChain messages"""

    converted: List[BaseMessage] = []
    for item in history:
        if item["role"] == "assistant":
            converted.append(AIMessage(content=item["content"]))
        else:
            converted.append(HumanMessage(content=item["content"]))
    converted.append(HumanMessage(content=message))
    return converted
