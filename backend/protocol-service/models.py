"""
Odontoplan Protocol Service - Data Models

Pydantic contracts for:
- Inference requests/results exchanged with providers
- Case analysis findings produced from a smile photo
- Restoration protocols and reference catalog rows
- Metered operations and pipeline request/response payloads
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vocabulary import PRIORITY_RANK, lookup, normalize_vita_shade


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clamp_percent(value: Any) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0.0
    if numeric != numeric:  # NaN
        return 0.0
    return max(0.0, min(100.0, numeric))


# =============================================================================
# ENUMS
# =============================================================================


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.value]


class TreatmentIndication(str, Enum):
    RESIN = "resin"
    PORCELAIN = "porcelain"
    CROWN = "crown"
    IMPLANT = "implant"
    ENDODONTICS = "endodontics"
    REFERRAL = "referral"
    GINGIVOPLASTY = "gingivoplasty"
    ROOT_COVERAGE = "root_coverage"


class InferenceMode(str, Enum):
    VISION_TOOL = "vision_tool"
    TEXT = "text"
    IMAGE_EDIT = "image_edit"


class ImageKind(str, Enum):
    INTRAORAL = "intraoral"
    SMILE = "smile"
    FACE = "face"


class MeteredOperationType(str, Enum):
    CASE_ANALYSIS = "case_analysis"
    DSD_SIMULATION = "dsd_simulation"


# =============================================================================
# INFERENCE CONTRACTS
# =============================================================================


class InferenceImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    media_type: str = "image/jpeg"


class ToolSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class InferenceRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    mode: InferenceMode = InferenceMode.TEXT
    prompt_id: Optional[str] = None
    system_prompt: str = ""
    user_prompt: str = ""
    images: Tuple[InferenceImage, ...] = ()
    tool: Optional[ToolSchema] = None
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, ge=1)
    deadline_seconds: float = Field(default=30.0, gt=0.0)


class StructuredCall(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class InferenceResult(BaseModel):
    provider: str
    model: str
    text: Optional[str] = None
    structured_call: Optional[StructuredCall] = None
    finish_reason: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    images: List[InferenceImage] = Field(default_factory=list)


# =============================================================================
# CASE ANALYSIS MODELS
# =============================================================================


class BoundingRegion(BaseModel):
    """Percent coordinates over the source photo."""

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @field_validator("x", "y", "width", "height", mode="before")
    @classmethod
    def clamp_coordinates(cls, v):
        return _clamp_percent(v)


class Finding(BaseModel):
    model_config = ConfigDict(extra="allow")

    tooth: str = "unknown"
    region: Optional[str] = None
    defect_class: Optional[str] = None
    size: Optional[str] = None
    substrate: Optional[str] = None
    substrate_condition: Optional[str] = None
    enamel_condition: Optional[str] = None
    depth: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    notes: Optional[str] = None
    treatment_indication: Optional[TreatmentIndication] = None
    indication_reason: Optional[str] = None
    bounds: Optional[BoundingRegion] = None

    @field_validator("tooth", mode="before")
    @classmethod
    def coerce_tooth(cls, v):
        if v is None:
            return "unknown"
        text = str(v).strip()
        return text or "unknown"

    @field_validator("priority", mode="before")
    @classmethod
    def coerce_priority(cls, v):
        return lookup("priority", v) or Priority.MEDIUM.value

    @field_validator("treatment_indication", mode="before")
    @classmethod
    def coerce_treatment(cls, v):
        return lookup("treatment_indication", v)

    @property
    def tooth_number(self) -> Optional[int]:
        digits = "".join(ch for ch in self.tooth if ch.isdigit())
        if len(digits) != 2:
            return None
        return int(digits)

    def rationale_text(self) -> str:
        return " ".join(x for x in (self.notes, self.indication_reason) if x)


class CaseAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow")

    detected: bool = True
    confidence: float = 0.0
    findings: List[Finding] = Field(default_factory=list)
    primary: Optional[str] = None
    treatment_indication: TreatmentIndication = TreatmentIndication.RESIN
    smile_line: Optional[str] = None
    vita_shade: Optional[str] = None
    observations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        return _clamp_percent(v)

    @field_validator("treatment_indication", mode="before")
    @classmethod
    def coerce_treatment(cls, v):
        return lookup("treatment_indication", v) or TreatmentIndication.RESIN.value

    @field_validator("vita_shade", mode="before")
    @classmethod
    def coerce_vita_shade(cls, v):
        return normalize_vita_shade(v)

    @field_validator("primary", mode="before")
    @classmethod
    def coerce_primary(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("observations", "warnings", mode="before")
    @classmethod
    def drop_empty_text(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(x).strip() for x in v if x is not None and str(x).strip()]

    @model_validator(mode="after")
    def inherit_treatment_indication(self) -> "CaseAnalysis":
        for finding in self.findings:
            if finding.treatment_indication is None:
                finding.treatment_indication = self.treatment_indication
        return self

    def teeth(self) -> List[str]:
        return [f.tooth for f in self.findings]

    def primary_finding(self) -> Optional[Finding]:
        for finding in self.findings:
            if finding.tooth == self.primary:
                return finding
        return None


# =============================================================================
# PROTOCOL + CATALOG MODELS
# =============================================================================


class CatalogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_line: str
    shade: str
    layer_type: str


class ProtocolLayer(BaseModel):
    model_config = ConfigDict(extra="allow")

    order: int = 0
    name: str
    resin_brand: str = ""
    shade: str = ""
    thickness: Optional[str] = None
    purpose: Optional[str] = None
    technique: Optional[str] = None
    optional: bool = False

    @property
    def product_line(self) -> str:
        _, sep, line = self.resin_brand.partition(" - ")
        return (line if sep else self.resin_brand).strip()


class ProtocolContext(BaseModel):
    tooth: Optional[str] = None
    defect_class: Optional[str] = None
    aesthetic_goals: Optional[str] = None


class Protocol(BaseModel):
    model_config = ConfigDict(extra="allow")

    layers: List[ProtocolLayer] = Field(default_factory=list)
    checklist: List[str] = Field(default_factory=list)
    alerts: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    confidence: Optional[str] = None
    alternative: Optional[Dict[str, Any]] = None

    @field_validator("checklist", "alerts", "warnings", mode="before")
    @classmethod
    def drop_empty_text(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(x) for x in v if x is not None and str(x).strip()]


# =============================================================================
# METERING + PIPELINE PAYLOADS
# =============================================================================


class MeteredOperation(BaseModel):
    tenant_id: str
    operation: MeteredOperationType
    idempotency_key: str
    consumed: bool = False
    refunded: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ImageAcceptance(BaseModel):
    accepted: bool
    invariant: str
    answer: Optional[str] = None
    reason: Optional[str] = None


class CaseRequest(BaseModel):
    tenant_id: str
    idempotency_key: str
    image: InferenceImage
    image_kind: ImageKind = ImageKind.INTRAORAL
    prior_analysis: Optional[CaseAnalysis] = None
    protocol_context: ProtocolContext = Field(default_factory=ProtocolContext)
    analysis_only: bool = False
    regenerate_image_only: bool = False
    generate_simulation: bool = False
    simulation_instructions: Optional[str] = None

    @model_validator(mode="after")
    def check_modes(self) -> "CaseRequest":
        if self.regenerate_image_only and self.prior_analysis is None:
            raise ValueError("regenerate_image_only requires prior_analysis.")
        if self.analysis_only and self.regenerate_image_only:
            raise ValueError("analysis_only and regenerate_image_only are mutually exclusive.")
        return self


class CaseResponse(BaseModel):
    tenant_id: str
    idempotency_key: str
    analysis: CaseAnalysis
    protocol: Optional[Protocol] = None
    simulation_key: Optional[str] = None
    image_acceptance: Optional[ImageAcceptance] = None
    charged: bool = False
    providers_used: Dict[str, str] = Field(default_factory=dict)


def validate_structured_output(model_cls: Any, payload: Dict[str, Any]) -> Any:
    """
    Schema gate used after any provider tool/JSON output.
    Raises pydantic ValidationError on mismatches.
    """
    return model_cls.model_validate(payload)
