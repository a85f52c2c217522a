"""
Tool gateway adapters: search, translation, vision analysis, URL context,
document analysis, meeting booking and realtime-voice token issuance.

Each adapter is a thin handler over one back-end; rate limiting, idempotency,
budget and context write-back are applied by ``ToolGateway``.
"""

from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import unquote
import base64
import binascii
from langchain_core.messages import HumanMessage

from session_core.domain.models.errors import ValidationError
from session_core.domain.models.session_context import Identity, MultimodalEntry, SessionPatch
from session_core.domain.models.tool_models import (
    BookingPayload, DocumentPayload, SearchPayload, TranslatePayload, UrlContextPayload, VisionPayload,
    VoiceTokenPayload
)
from session_core.domain.models.turn_state import Usage
from session_core.infrastructure.backends.meeting_scheduler import MeetingScheduler
from session_core.infrastructure.backends.page_fetcher import PageFetcher, describe_text
from session_core.infrastructure.backends.voice_tokens import VoiceTokenIssuer
from session_core.infrastructure.llm.provider import LLMProvider
from .tool_registry import ToolCall, ToolOutput, ToolRegistry, ToolSpec

LANGUAGE_NAMES = {
    "en": "English", "no": "Norwegian", "sv": "Swedish", "da": "Danish",
    "de": "German", "fr": "French", "es": "Spanish", "it": "Italian",
    "pt": "Portuguese", "nl": "Dutch",
}

PRESERVED_TERMS = "AI, API, ROI, CRM, SaaS, OAuth, JWT, SQL, NoSQL, MLOps"


class SearchBackend(Protocol):
    async def search(self, query: str, limit: int, model: str) -> Tuple[Dict[str, Any], Optional[Usage]]:
        ...


class TranslationBackend(Protocol):
    async def translate(
        self, text: str, target_lang: str, source_lang: Optional[str], model: str
    ) -> Tuple[str, Optional[Usage]]:
        ...


class VisionBackend(Protocol):
    async def analyze(self, image_url: str, prompt: str, model: str) -> Tuple[str, Optional[Usage]]:
        ...


class LLMSearchBackend:
    """Grounded answer produced by the language model"""

    system = (
        "You answer web research questions for a sales assistant. "
        "Reply with a short factual summary followed by up to {limit} bullet points."
    )

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def search(self, query: str, limit: int, model: str) -> Tuple[Dict[str, Any], Optional[Usage]]:
        answer, usage = await self.provider.complete(
            [HumanMessage(content=query)],
            self.system.format(limit=limit),
            model
        )
        bullets = [line.lstrip("-* ").strip() for line in answer.splitlines() if line.strip().startswith(("-", "*"))]
        return {"query": query, "answer": answer.strip(), "results": bullets[:limit]}, usage


class LLMTranslator:
    """Business-tone translation that keeps technical terms"""

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    @staticmethod
    def language_name(code: Optional[str]) -> Optional[str]:
        if code is None:
            return None
        return LANGUAGE_NAMES.get(code.lower(), code)

    async def translate(
        self, text: str, target_lang: str, source_lang: Optional[str], model: str
    ) -> Tuple[str, Optional[Usage]]:
        target = self.language_name(target_lang)
        source = self.language_name(source_lang)
        system = (
            "You are a professional translator for an AI consulting business. "
            f"Translate the user's text{f' from {source}' if source else ''} to {target}. "
            f"Keep a professional tone, keep formatting, and do not translate these terms: {PRESERVED_TERMS}. "
            "Return only the translated text."
        )
        translated, usage = await self.provider.complete([HumanMessage(content=text)], system, model)
        return translated.strip(), usage


class LLMVisionAnalyzer:
    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def analyze(self, image_url: str, prompt: str, model: str) -> Tuple[str, Optional[Usage]]:
        message = HumanMessage(content=[
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_url}},
        ])
        analysis, usage = await self.provider.complete(
            [message],
            "Describe business-relevant details in the image in at most five sentences.",
            model
        )
        return analysis.strip(), usage


def search_handler(backend: SearchBackend):
    async def handle(call: ToolCall) -> ToolOutput:
        payload: SearchPayload = call.payload
        output, usage = await backend.search(payload.query, payload.limit, call.model.model)
        return ToolOutput(output=output, usage=usage)
    return handle


def translate_handler(backend: TranslationBackend):
    async def handle(call: ToolCall) -> ToolOutput:
        payload: TranslatePayload = call.payload
        translated, usage = await backend.translate(
            payload.text, payload.target_lang, payload.source_lang, call.model.model
        )
        return ToolOutput(
            output={"translated": translated, "target_lang": payload.target_lang},
            usage=usage
        )
    return handle


def vision_handler(backend: VisionBackend):
    async def handle(call: ToolCall) -> ToolOutput:
        payload: VisionPayload = call.payload
        image_url = payload.image_url or f"data:{payload.mime_type};base64,{payload.image_base64}"
        prompt = payload.prompt or "What is shown here, and what does it say about the visitor's business?"
        analysis, usage = await backend.analyze(image_url, prompt, call.model.model)

        entry = MultimodalEntry(
            kind="image",
            source=payload.source,
            analysis=analysis,
            metadata={"mime_type": payload.mime_type, "model": call.model.model}
        )
        return ToolOutput(
            output={"analysis": analysis, "entry_id": entry.id},
            patch=SessionPatch(multimodal=[entry]),
            usage=usage
        )
    return handle


def booking_handler(scheduler: MeetingScheduler):
    async def handle(call: ToolCall) -> ToolOutput:
        payload: BookingPayload = call.payload
        meeting = await scheduler.book(
            name=payload.name,
            email=payload.email,
            preferred_date=payload.preferred_date,
            preferred_time=payload.preferred_time,
            time_zone=payload.time_zone,
            company=payload.company,
            notes=payload.message,
            lead_id=call.session_key,
        )

        patch = None
        if call.session_key and (call.context is None or call.context.identity is None):
            # booking is the visitor's consent to store who they are
            patch = SessionPatch(identity=Identity(
                name=payload.name,
                email=payload.email,
                company_domain=payload.email.split("@", 1)[1].lower(),
            ))
        return ToolOutput(output={"meeting": meeting}, patch=patch)
    return handle


def voice_token_handler(issuer: VoiceTokenIssuer):
    async def handle(call: ToolCall) -> ToolOutput:
        payload: VoiceTokenPayload = call.payload
        grant = issuer.mint(call.session_key or "anon", voice=payload.voice, language=payload.language)
        return ToolOutput(output=grant)
    return handle


class UrlContextBackend(Protocol):
    async def fetch(self, url: str) -> Dict[str, Any]:
        ...


class DocumentBackend(Protocol):
    async def analyze(
        self, document: Dict[str, Any], analysis_type: Optional[str], url_context: Optional[str], model: str
    ) -> Tuple[str, Optional[Usage]]:
        ...


TEXT_DOCUMENT_TYPES = ("text/", "application/json", "application/xml", "application/csv")


def decode_data_url(data_url: str) -> Tuple[str, Optional[str]]:
    """Mime type of a data URL plus its decoded text for text documents"""

    header, body = data_url.split(",", 1)
    mime_type = header[len("data:"):].split(";", 1)[0] or "application/octet-stream"
    if not mime_type.startswith(TEXT_DOCUMENT_TYPES):
        return mime_type, None
    try:
        raw = base64.b64decode(body, validate=True) if ";base64" in header else unquote(body).encode()
    except (binascii.Error, ValueError):
        raise ValidationError("data_url does not carry valid base64 content")
    return mime_type, raw.decode("utf-8", errors="replace")


class LLMDocumentAnalyzer:
    """Business analysis of a document"""

    system = (
        "Analyze this document for business insights. Provide:\n"
        "1. **Executive Summary** (2-3 sentences)\n"
        "2. **Key Points & Insights** (bullet points)\n"
        "3. **Business Risks & Opportunities**\n"
        "4. **Actionable Recommendations**\n"
        "Format with clear headings and bullet points."
    )

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def analyze(
        self, document: Dict[str, Any], analysis_type: Optional[str], url_context: Optional[str], model: str
    ) -> Tuple[str, Optional[Usage]]:
        system = self.system
        if analysis_type:
            system += f"\n\nSPECIAL FOCUS: {analysis_type}"
        if url_context:
            system += f"\n\nURL CONTEXT: Also consider information from {url_context}"

        if document.get("text") is not None:
            content: Any = f"DOCUMENT ({document['mime_type']}):\n{document['text']}"
        else:
            content = [
                {"type": "text", "text": f"Analyze the attached {document['mime_type']} document."},
                {"type": "image_url", "image_url": {"url": document["data_url"]}},
            ]

        analysis, usage = await self.provider.complete([HumanMessage(content=content)], system, model)
        return analysis.strip(), usage


def url_context_handler(fetcher: UrlContextBackend):
    async def handle(call: ToolCall) -> ToolOutput:
        payload: UrlContextPayload = call.payload
        if payload.url:
            context = await fetcher.fetch(payload.url)
            source = "url"
        else:
            context = describe_text(payload.text)
            # pasted text is kept short in the session history
            context["extracted_text"] = payload.text[:4000]
            source = "text"

        entry = MultimodalEntry(
            kind="document",
            source=source,
            analysis=(context.get("description") or context["extracted_text"])[:500],
            metadata={
                "url": context.get("url"),
                "title": context.get("title"),
                "word_count": context["word_count"],
            }
        )
        return ToolOutput(
            output={**context, "entry_id": entry.id},
            patch=SessionPatch(multimodal=[entry]),
        )
    return handle


def document_handler(backend: DocumentBackend):
    async def handle(call: ToolCall) -> ToolOutput:
        payload: DocumentPayload = call.payload
        if payload.data_url is not None:
            mime_type, text = decode_data_url(payload.data_url)
            document = {"mime_type": mime_type, "text": text, "data_url": payload.data_url}
            source, size = "upload", len(payload.data_url)
        else:
            document = {"mime_type": "text/plain", "text": payload.document_text, "data_url": None}
            source, size = "text", len(payload.document_text)

        analysis, usage = await backend.analyze(
            document, payload.analysis_type, payload.url_context, call.model.model
        )

        entry = MultimodalEntry(
            kind="document",
            source=source,
            analysis=analysis,
            metadata={
                "mime_type": document["mime_type"],
                "filename": payload.filename,
                "size": size,
                "model": call.model.model,
            }
        )
        return ToolOutput(
            output={
                "analysis": analysis,
                "type": document["mime_type"],
                "source": source,
                "filename": payload.filename,
                "size": size,
                "has_url_context": payload.url_context is not None,
                "entry_id": entry.id,
            },
            patch=SessionPatch(multimodal=[entry]),
            usage=usage
        )
    return handle


def build_tool_registry(
    provider: LLMProvider,
    scheduler: MeetingScheduler,
    voice_tokens: VoiceTokenIssuer,
    limits: Optional[Dict[str, int]] = None,
    window_ms: int = 60_000,
    idempotency_ttl_ms: int = 300_000,
    search_backend: Optional[SearchBackend] = None,
    translation_backend: Optional[TranslationBackend] = None,
    vision_backend: Optional[VisionBackend] = None,
    page_fetcher: Optional[UrlContextBackend] = None,
    document_backend: Optional[DocumentBackend] = None,
) -> ToolRegistry:
    """Registry with the seven built-in tools"""

    limits = {
        "search": 10, "translate": 10, "vision": 5, "booking": 5, "voice_token": 5,
        "url_context": 10, "document": 5,
        **(limits or {})
    }
    registry = ToolRegistry()

    registry.register_tool(ToolSpec(
        name="search",
        description="Search the web and summarize the findings",
        category="research",
        payload_model=SearchPayload,
        handler=search_handler(search_backend or LLMSearchBackend(provider)),
        capability="search",
        max_calls=limits["search"],
        window_ms=window_ms,
        idempotency_ttl_ms=idempotency_ttl_ms,
        feature="search",
    ))
    registry.register_tool(ToolSpec(
        name="translate",
        description="Translate text while preserving technical terms",
        category="language",
        payload_model=TranslatePayload,
        handler=translate_handler(translation_backend or LLMTranslator(provider)),
        capability="translate",
        max_calls=limits["translate"],
        window_ms=window_ms,
        idempotency_ttl_ms=idempotency_ttl_ms,
        feature="translation",
    ))
    registry.register_tool(ToolSpec(
        name="vision",
        description="Analyze a webcam, screen or uploaded image",
        category="multimodal",
        payload_model=VisionPayload,
        handler=vision_handler(vision_backend or LLMVisionAnalyzer(provider)),
        capability="image",
        max_calls=limits["vision"],
        window_ms=window_ms,
        idempotency_ttl_ms=idempotency_ttl_ms,
        feature="image_analysis",
    ))
    registry.register_tool(ToolSpec(
        name="url_context",
        description="Read a web page or pasted text into the session context",
        category="research",
        payload_model=UrlContextPayload,
        handler=url_context_handler(page_fetcher or PageFetcher()),
        capability="urlContext",
        max_calls=limits["url_context"],
        window_ms=window_ms,
        idempotency_ttl_ms=idempotency_ttl_ms,
    ))
    registry.register_tool(ToolSpec(
        name="document",
        description="Analyze an uploaded or pasted business document",
        category="multimodal",
        payload_model=DocumentPayload,
        handler=document_handler(document_backend or LLMDocumentAnalyzer(provider)),
        capability="doc",
        max_calls=limits["document"],
        window_ms=window_ms,
        idempotency_ttl_ms=idempotency_ttl_ms,
        feature="document_analysis",
    ))
    registry.register_tool(ToolSpec(
        name="booking",
        description="Book a 30-minute consultation",
        category="scheduling",
        payload_model=BookingPayload,
        handler=booking_handler(scheduler),
        capability="meeting",
        max_calls=limits["booking"],
        window_ms=window_ms,
        idempotency_ttl_ms=idempotency_ttl_ms,
    ))
    registry.register_tool(ToolSpec(
        name="voice_token",
        description="Issue an ephemeral token for the realtime voice channel",
        category="voice",
        payload_model=VoiceTokenPayload,
        handler=voice_token_handler(voice_tokens),
        capability="voice",
        max_calls=limits["voice_token"],
        window_ms=window_ms,
        idempotency_ttl_ms=idempotency_ttl_ms,
    ))

    return registry
