"""
Odontoplan Protocol Service - Structured Output Validation

Turns a provider InferenceResult into typed models:
1. Extract a JSON object (tool-call arguments, then fenced block, then brace match)
2. Validate permissively (extra fields kept, absent optionals defaulted, scores clamped)
3. Fold cross-locale enum tokens back to the canonical vocabulary
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from errors import MalformedOutputError, SchemaIssue, ValidationFailed
from models import CaseAnalysis, InferenceResult, Protocol, validate_structured_output
from vocabulary import lookup

logger = logging.getLogger(__name__)

RAW_SNAPSHOT_CHARS = 1000
FINDING_ENUM_FIELDS = (
    "region",
    "defect_class",
    "size",
    "substrate",
    "substrate_condition",
    "enamel_condition",
    "depth",
)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


@dataclass
class NormalizationReport:
    mapped: List[Tuple[str, str, str]] = field(default_factory=list)
    unmapped: List[Tuple[str, str]] = field(default_factory=list)


def _extract_balanced_segment(text: str, start_idx: int) -> Optional[str]:
    if start_idx >= len(text) or text[start_idx] != "{":
        return None
    close_for = {"{": "}", "[": "]"}
    stack: List[str] = ["}"]
    in_string = False
    escaped = False
    for idx in range(start_idx + 1, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(close_for[ch])
        elif ch in "}]":
            if not stack or ch != stack[-1]:
                continue
            stack.pop()
            if not stack:
                return text[start_idx : idx + 1]
    return None


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(candidate)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    cleaned = (text or "").strip()
    if not cleaned:
        return None

    for match in _FENCE_RE.finditer(cleaned):
        parsed = _loads_object(match.group(1).strip())
        if parsed is not None:
            return parsed

    idx = 0
    while True:
        brace_idx = cleaned.find("{", idx)
        if brace_idx == -1:
            return None
        segment = _extract_balanced_segment(cleaned, brace_idx)
        if segment is not None:
            parsed = _loads_object(segment)
            if parsed is not None:
                return parsed
        idx = brace_idx + 1


def extract_payload(result: InferenceResult) -> Dict[str, Any]:
    if result.structured_call is not None and result.structured_call.arguments:
        return dict(result.structured_call.arguments)
    parsed = extract_json_object(result.text or "")
    if parsed is None:
        raise MalformedOutputError(
            f"{result.provider}:{result.model} returned no structured call and no JSON object."
        )
    return parsed


def _issues_from(exc: ValidationError) -> List[SchemaIssue]:
    issues = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        issues.append(SchemaIssue(path=path, code=str(err.get("type", "invalid")), message=str(err.get("msg", ""))))
    return issues


def validate_payload(model_cls: Any, payload: Dict[str, Any], *, source: str = "provider") -> Any:
    try:
        return validate_structured_output(model_cls, payload)
    except ValidationError as exc:
        issues = _issues_from(exc)
        logger.error(
            "%s schema validation failed for %s: %s",
            source,
            model_cls.__name__,
            "; ".join(issue.describe() for issue in issues),
        )
        try:
            snapshot = json.dumps(payload, default=str)[:RAW_SNAPSHOT_CHARS]
        except (TypeError, ValueError):
            snapshot = repr(payload)[:RAW_SNAPSHOT_CHARS]
        logger.error("Raw payload snapshot: %s", snapshot)
        raise ValidationFailed(f"{model_cls.__name__} failed schema validation.", issues) from exc


def normalize_enums(analysis: CaseAnalysis) -> Tuple[CaseAnalysis, NormalizationReport]:
    """Rewrite known synonyms to canonical tokens; unknown tokens stay as-is and are reported."""
    normalized = analysis.model_copy(deep=True)
    report = NormalizationReport()

    def _fold(path: str, field_name: str, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        canonical = lookup(field_name, value)
        if canonical is None:
            report.unmapped.append((path, value))
            return value
        if canonical != value:
            report.mapped.append((path, value, canonical))
        return canonical

    for idx, finding in enumerate(normalized.findings):
        for field_name in FINDING_ENUM_FIELDS:
            current = getattr(finding, field_name)
            setattr(finding, field_name, _fold(f"findings.{idx}.{field_name}", field_name, current))
    normalized.smile_line = _fold("smile_line", "smile_line", normalized.smile_line)

    if report.unmapped:
        logger.warning(
            "Unmapped enum values left untouched: %s",
            ", ".join(f"{path}={value!r}" for path, value in report.unmapped),
        )
    return normalized, report


def parse_case_analysis(result: InferenceResult) -> CaseAnalysis:
    payload = extract_payload(result)
    analysis = validate_payload(CaseAnalysis, payload, source=f"{result.provider}:{result.model}")
    normalized, _ = normalize_enums(analysis)
    return normalized


def parse_protocol(result: InferenceResult) -> Protocol:
    payload = extract_payload(result)
    if "layers" not in payload and isinstance(payload.get("protocol"), dict):
        payload = payload["protocol"]
    protocol = validate_payload(Protocol, payload, source=f"{result.provider}:{result.model}")
    if not protocol.layers:
        issue = SchemaIssue(path="layers", code="too_short", message="Protocol has no layers")
        logger.error("%s:%s protocol rejected: %s", result.provider, result.model, issue.describe())
        raise ValidationFailed("Protocol failed schema validation.", [issue])
    return protocol
