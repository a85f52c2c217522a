from typing import Any
from pydantic import BaseModel
import pydantic

from session_core.domain.models.errors import ValidationError
from .tool_registry import ToolSpec


def validate_tool_call(spec: ToolSpec, payload: Any) -> BaseModel:
    """Validate a raw payload against the tool's parameter model"""

    if not isinstance(payload, dict):
        raise ValidationError(f"Payload for '{spec.name}' must be an object")

    try:
        return spec.payload_model.model_validate(payload)
    except pydantic.ValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors(include_url=False)
        ]
        raise ValidationError(f"Invalid payload for '{spec.name}'", details={"errors": errors})
