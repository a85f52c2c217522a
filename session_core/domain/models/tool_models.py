from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, model_validator


class ToolResult(BaseModel):
    """Result body returned by every tool adapter"""
    ok: bool = True
    tool: str
    output: Dict[str, Any] = Field(default_factory=dict)


class SearchPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1, max_length=500)
    limit: int = Field(default=5, ge=1, le=10)


class TranslatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(min_length=1, max_length=10000)
    target_lang: str = Field(min_length=2, max_length=10)
    source_lang: Optional[str] = Field(None, min_length=2, max_length=10)


class VisionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image_base64: Optional[str] = None
    image_url: Optional[str] = None
    mime_type: str = "image/jpeg"
    source: Literal["webcam", "screen", "upload"] = "upload"
    prompt: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _one_image(self) -> "VisionPayload":
        if not (self.image_base64 or self.image_url):
            raise ValueError("provide image_base64 or image_url")
        return self


class BookingPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    company: Optional[str] = None
    preferred_date: str = Field(description="ISO date, YYYY-MM-DD")
    preferred_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    time_zone: str = "UTC"
    message: Optional[str] = Field(None, max_length=2000)


class VoiceTokenPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    voice: Optional[str] = None
    language: str = "en-US"


class UrlContextPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: Optional[str] = Field(None, max_length=2048)
    text: Optional[str] = Field(None, max_length=100_000)

    @model_validator(mode="after")
    def _url_or_text(self) -> "UrlContextPayload":
        if not (self.url or (self.text and self.text.strip())):
            raise ValueError("provide url or text")
        return self


class DocumentPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_text: Optional[str] = Field(None, max_length=200_000)
    data_url: Optional[str] = None
    filename: Optional[str] = Field(None, max_length=255)
    analysis_type: Optional[str] = Field(None, max_length=200)
    url_context: Optional[str] = Field(None, max_length=2048)

    @model_validator(mode="after")
    def _one_document(self) -> "DocumentPayload":
        if self.data_url is not None:
            if not self.data_url.startswith("data:") or "," not in self.data_url:
                raise ValueError("data_url must be a data: URL")
        elif not (self.document_text and self.document_text.strip()):
            raise ValueError("provide document_text or data_url")
        return self
