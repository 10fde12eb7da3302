"""
Odontoplan Protocol Service - Prompt Registry

Prompt text is opaque configuration keyed by identifier. A registry instance is
built by the caller and injected into the pipeline; tests register fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Optional

from models import InferenceMode, ToolSchema

logger = logging.getLogger(__name__)

CASE_ANALYSIS = "case_analysis"
PROTOCOL_RECOMMENDATION = "protocol_recommendation"
SMILE_SIMULATION = "smile_simulation"
LIP_POSITION_CHECK = "lip_position_check"


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass(frozen=True)
class PromptDefinition:
    prompt_id: str
    system: str
    user_template: str
    mode: InferenceMode = InferenceMode.TEXT
    temperature: float = 0.0
    max_tokens: int = 4000
    tool: Optional[ToolSchema] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def render_user(self, **variables: Any) -> str:
        values = {k: ("" if v is None else v) for k, v in variables.items()}
        return self.user_template.format_map(_KeepMissing(values))


class PromptRegistry:
    def __init__(self, definitions: Optional[Iterable[PromptDefinition]] = None) -> None:
        self._definitions: Dict[str, PromptDefinition] = {}
        for definition in definitions or ():
            self.register(definition)

    def register(self, definition: PromptDefinition) -> None:
        if definition.prompt_id in self._definitions:
            logger.info("Replacing prompt definition %s.", definition.prompt_id)
        self._definitions[definition.prompt_id] = definition

    def get(self, prompt_id: str) -> PromptDefinition:
        definition = self._definitions.get(prompt_id)
        if definition is None:
            raise KeyError(f"Prompt not registered: {prompt_id}")
        return definition

    def override(self, prompt_id: str, **changes: Any) -> PromptDefinition:
        updated = replace(self.get(prompt_id), **changes)
        self._definitions[prompt_id] = updated
        return updated

    def ids(self) -> list:
        return sorted(self._definitions)


# =============================================================================
# DEFAULT TOOL SCHEMAS
# =============================================================================

_FINDING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "tooth": {"type": "string", "description": "FDI tooth number"},
        "region": {"type": "string", "enum": ["anterior", "posterior"]},
        "defect_class": {"type": "string"},
        "size": {"type": "string"},
        "substrate": {"type": "string"},
        "substrate_condition": {"type": "string"},
        "enamel_condition": {"type": "string"},
        "depth": {"type": "string"},
        "priority": {"type": "string", "enum": ["high", "medium", "low"]},
        "notes": {"type": "string"},
        "treatment_indication": {"type": "string"},
        "indication_reason": {"type": "string"},
        "bounds": {
            "type": "object",
            "properties": {
                "x": {"type": "number"},
                "y": {"type": "number"},
                "width": {"type": "number"},
                "height": {"type": "number"},
            },
        },
    },
    "required": ["tooth", "priority"],
}

CASE_ANALYSIS_TOOL = ToolSchema(
    name="analyze_dental_photo",
    description="Report every tooth needing treatment in the photo.",
    parameters={
        "type": "object",
        "properties": {
            "detected": {"type": "boolean"},
            "confidence": {"type": "number", "description": "0-100"},
            "findings": {"type": "array", "items": _FINDING_SCHEMA},
            "primary": {"type": "string"},
            "treatment_indication": {"type": "string"},
            "smile_line": {"type": "string", "enum": ["low", "medium", "high"]},
            "vita_shade": {"type": "string"},
            "observations": {"type": "array", "items": {"type": "string"}},
            "warnings": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["detected", "confidence", "findings"],
        "additionalProperties": True,
    },
)

PROTOCOL_TOOL = ToolSchema(
    name="generate_protocol",
    description="Stratification protocol for the selected tooth.",
    parameters={
        "type": "object",
        "properties": {
            "layers": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "order": {"type": "integer"},
                        "name": {"type": "string"},
                        "resin_brand": {"type": "string", "description": "Manufacturer - Product line"},
                        "shade": {"type": "string"},
                        "thickness": {"type": "string"},
                        "purpose": {"type": "string"},
                        "technique": {"type": "string"},
                        "optional": {"type": "boolean"},
                    },
                    "required": ["order", "name", "resin_brand", "shade"],
                },
            },
            "checklist": {"type": "array", "items": {"type": "string"}},
            "alerts": {"type": "array", "items": {"type": "string"}},
            "warnings": {"type": "array", "items": {"type": "string"}},
            "confidence": {"type": "string"},
            "alternative": {"type": "object"},
        },
        "required": ["layers", "checklist"],
    },
)


def default_registry() -> PromptRegistry:
    return PromptRegistry(
        [
            PromptDefinition(
                prompt_id=CASE_ANALYSIS,
                mode=InferenceMode.VISION_TOOL,
                system=(
                    "You are an aesthetic and restorative dentistry assistant. "
                    "Inspect the photo and report findings with the analyze_dental_photo tool."
                ),
                user_template="Image kind: {image_kind}. Report every tooth that needs treatment.",
                temperature=0.1,
                max_tokens=4000,
                tool=CASE_ANALYSIS_TOOL,
            ),
            PromptDefinition(
                prompt_id=PROTOCOL_RECOMMENDATION,
                mode=InferenceMode.VISION_TOOL,
                system=(
                    "You are a composite stratification specialist. "
                    "Produce a layered protocol with the generate_protocol tool."
                ),
                user_template=(
                    "Tooth: {tooth}. Classification: {defect_class}. Substrate: {substrate}. "
                    "VITA shade: {vita_shade}. Aesthetic goals: {aesthetic_goals}."
                ),
                temperature=0.2,
                max_tokens=6000,
                tool=PROTOCOL_TOOL,
            ),
            PromptDefinition(
                prompt_id=SMILE_SIMULATION,
                mode=InferenceMode.IMAGE_EDIT,
                system="Edit only the teeth. Keep lips, skin and gingiva exactly as they are.",
                user_template="Apply the planned treatment: {instructions}",
                temperature=0.4,
                max_tokens=8192,
            ),
            PromptDefinition(
                prompt_id=LIP_POSITION_CHECK,
                mode=InferenceMode.TEXT,
                system="You compare two photos of the same smile. Answer with one word.",
                user_template=(
                    "Image 1 is the original, image 2 is the simulation. "
                    "Did the lips change position or shape between them? Answer YES or NO."
                ),
                temperature=0.0,
                max_tokens=10,
            ),
        ]
    )
