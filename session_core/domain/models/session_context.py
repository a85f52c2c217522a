from typing import Dict, Any, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
import uuid


class Identity(BaseModel):
    """Visitor identity captured on consent"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    email: Optional[str] = None
    company_domain: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.name or self.email or self.company_domain)


class CompanyFacts(BaseModel):
    """Structured company research results"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    domain: Optional[str] = None
    industry: Optional[str] = None
    size: Optional[str] = None
    summary: Optional[str] = None


class PersonFacts(BaseModel):
    """Structured person research results"""
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = None
    role: Optional[str] = None
    seniority: Optional[str] = None
    interests: Optional[List[str]] = None
    pain_points: Optional[List[str]] = None


class RoleClassification(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class CapabilityUsage(BaseModel):
    """One entry of the append-only capability log"""
    capability: str = Field(min_length=1, description="Tool or mode name")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MultimodalEntry(BaseModel):
    """Non-text artifact analysis kept in the bounded multimodal history"""
    id: str = Field(default_factory=lambda: f"mm_{uuid.uuid4().hex[:12]}")
    kind: Literal["image", "voice", "document"]
    source: Optional[str] = Field(None, description="webcam, screen, upload, microphone")
    analysis: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionContext(BaseModel):
    """Merged, versioned state for one session key"""
    session_key: str
    identity: Optional[Identity] = None
    company_facts: CompanyFacts = Field(default_factory=CompanyFacts)
    person_facts: PersonFacts = Field(default_factory=PersonFacts)
    inferred_role: Optional[str] = None
    role_confidence: float = 0.0
    capabilities_used: List[CapabilityUsage] = Field(default_factory=list)
    multimodal_history: List[MultimodalEntry] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def has_research(self) -> bool:
        return bool(
            self.company_facts.model_dump(exclude_none=True)
            or self.person_facts.model_dump(exclude_none=True)
        )

    def get_summary(self) -> Dict[str, Any]:
        """Get a compact summary for logs and the admin surface"""
        return {
            "session_key": self.session_key,
            "version": self.version,
            "has_identity": self.identity is not None,
            "inferred_role": self.inferred_role,
            "role_confidence": self.role_confidence,
            "capabilities_used": len(self.capabilities_used),
            "multimodal_entries": len(self.multimodal_history),
            "updated_at": self.updated_at.isoformat(),
        }


class SessionPatch(BaseModel):
    """Partial update applied atomically by the session store"""
    model_config = ConfigDict(extra="forbid")

    identity: Optional[Identity] = None
    identity_correction: bool = False
    company_facts: Optional[CompanyFacts] = None
    person_facts: Optional[PersonFacts] = None
    role: Optional[RoleClassification] = None
    capabilities: List[CapabilityUsage] = Field(default_factory=list)
    multimodal: List[MultimodalEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _not_empty(self) -> "SessionPatch":
        if not (
            self.identity is not None
            or self.company_facts is not None
            or self.person_facts is not None
            or self.role is not None
            or self.capabilities
            or self.multimodal
        ):
            raise ValueError("patch contains no fields to change")
        if self.identity is not None and self.identity.is_empty():
            raise ValueError("identity must contain at least one of name, email, company_domain")
        return self

    def touches_research(self) -> bool:
        return self.company_facts is not None or self.person_facts is not None
