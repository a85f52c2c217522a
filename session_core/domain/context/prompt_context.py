from typing import List, Optional

from session_core.domain.models.session_context import SessionContext

BASE_PREAMBLE = (
    "You are the sales assistant for an AI consulting practice. "
    "Answer concisely, stay factual, and suggest booking a consultation when it helps the visitor."
)

FEATURE_GUIDANCE = {
    "chat": "Keep replies conversational and short.",
    "research": "Use the research facts below and be explicit about uncertainty.",
    "analysis": "Structure the answer with short headings.",
    "voice": "Reply in one or two spoken-style sentences.",
}

RECENT_CAPABILITIES = 5
RECENT_MULTIMODAL = 3


def build_system_preamble(context: Optional[SessionContext], feature_mode: str) -> str:
    """Assemble the system preamble from the merged session context"""

    lines: List[str] = [BASE_PREAMBLE]
    guidance = FEATURE_GUIDANCE.get(feature_mode)
    if guidance:
        lines.append(guidance)

    if context is None:
        return "\n".join(lines)

    if context.identity is not None:
        identity = context.identity.model_dump(exclude_none=True)
        lines.append("Visitor: " + ", ".join(f"{k}={v}" for k, v in identity.items()))

    company = context.company_facts.model_dump(exclude_none=True)
    if company:
        lines.append("Company facts: " + "; ".join(f"{k}: {v}" for k, v in company.items()))

    person = context.person_facts.model_dump(exclude_none=True)
    if person:
        lines.append("Person facts: " + "; ".join(
            f"{k}: {', '.join(v) if isinstance(v, list) else v}" for k, v in person.items()
        ))

    if context.inferred_role:
        lines.append(f"Likely role: {context.inferred_role} (confidence {context.role_confidence:.2f})")

    if context.capabilities_used:
        recent = [entry.capability for entry in context.capabilities_used[-RECENT_CAPABILITIES:]]
        lines.append("Capabilities already shown: " + ", ".join(dict.fromkeys(recent)))

    for entry in context.multimodal_history[-RECENT_MULTIMODAL:]:
        lines.append(f"Earlier {entry.kind} ({entry.source or 'unknown source'}): {entry.analysis[:300]}")

    return "\n".join(lines)
