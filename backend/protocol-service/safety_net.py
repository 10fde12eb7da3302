"""
Odontoplan Protocol Service - Clinical Safety Net

Deterministic corrections applied to every validated CaseAnalysis before a
clinician sees it. Each rule is a pure `CaseAnalysis -> CaseAnalysis` function;
SafetyNetEngine composes them in a fixed order:

1. dedupe_findings
2. gate_low_reliability_findings
3. enforce_cross_field_consistency
4. gate_gingival_procedures
5. filter_minority_arch
6. condition_restorative_class
7. resort_and_reanchor
8. synthesize_warnings

Later rules depend on earlier ones (e.g. an escalated smile line protects a
gingivoplasty finding), so the order is part of the contract.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

from models import CaseAnalysis, Finding, TreatmentIndication
from settings import PipelineSettings

logger = logging.getLogger(__name__)

GATED_DEFECT_CLASSES = {"Diastema Closure"}
GATED_KEYWORDS = ("diastema", "spacing", "espaçamento")
BILATERAL_CENTRAL_PAIRS = ({11, 21}, {31, 41})
UPPER_ARCH = range(11, 29)
LOWER_ARCH = range(31, 49)

BLACK_CLASS_RE = re.compile(r"^Class\s+(I|II|III|IV|V|VI)$", re.IGNORECASE)
AESTHETIC_TREATMENTS = {
    TreatmentIndication.PORCELAIN,
    TreatmentIndication.REFERRAL,
    TreatmentIndication.GINGIVOPLASTY,
    TreatmentIndication.ROOT_COVERAGE,
}
AESTHETIC_KEYWORDS = (
    "faceta", "veneer", "lente", "laminado", "laminate",
    "recontorno", "recontour", "acréscimo", "acrescimo", "incisal addition",
    "diastema", "microdontia", "conoide", "peg lateral", "harmoniz", "volume",
    "reanatomiz", "reshap", "gengivoplastia", "gingivoplasty", "recobrimento",
    "root coverage", "desgaste seletivo", "selective grinding", "ortodont", "orthodont",
)
GINGIVAL_EVIDENCE = (
    ("assimetria gengival",),
    ("gingival asymmetry",),
    ("coroa clínica curta",),
    ("coroa clinica curta",),
    ("short clinical crown",),
    ("gengiva", "visível"),
    ("gengiva", "visivel"),
    ("gingiva", "visible"),
)

SMILE_LINE_RANK = {"low": 0, "medium": 1, "high": 2}
DEPTH_RANK = {"shallow": 0, "medium": 1, "deep": 2}

AUTO_PREFIX = "[auto]"


@dataclass(frozen=True)
class SafetyNetConfig:
    gated_confidence_threshold: float = 65.0
    multi_signal_count: int = 3
    recapture_confidence: float = 85.0

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "SafetyNetConfig":
        return cls(
            gated_confidence_threshold=settings.gated_confidence_threshold,
            multi_signal_count=settings.multi_signal_count,
            recapture_confidence=settings.recapture_confidence,
        )


@dataclass(frozen=True)
class ConsistencyRule:
    """Escalates `target` to `value` when any keyword appears in the evidence text."""

    target: str
    value: str
    keywords: Tuple[str, ...]


SMILE_LINE_RULES = (
    ConsistencyRule(
        "smile_line",
        "high",
        (
            "gummy smile", "sorriso gengival", "excessive gingival display",
            "exposição gengival excessiva", "exposicao gengival excessiva",
        ),
    ),
    ConsistencyRule(
        "smile_line",
        "medium",
        ("visible gingiva", "gingival exposure", "gengiva visível", "gengiva visivel", "exposição gengival"),
    ),
)
DEPTH_RULES = (
    ConsistencyRule(
        "depth",
        "deep",
        ("pulp", "polpa", "pulpar", "deep caries", "cárie profunda", "carie profunda"),
    ),
)


def _lower(text: Optional[str]) -> str:
    return (text or "").lower()


def _tooth_numbers(findings: Iterable[Finding]) -> List[str]:
    return [f.tooth for f in findings]


def _is_gated(finding: Finding) -> bool:
    if finding.defect_class in GATED_DEFECT_CLASSES:
        return True
    rationale = _lower(finding.rationale_text())
    return any(keyword in rationale for keyword in GATED_KEYWORDS)


def _forms_pair(a: int, b: int) -> bool:
    if {a, b} in BILATERAL_CENTRAL_PAIRS:
        return True
    return a // 10 == b // 10 and abs(a - b) == 1


def _contralateral_central(number: Optional[int]) -> Optional[int]:
    for pair in BILATERAL_CENTRAL_PAIRS:
        if number in pair:
            return next(iter(pair - {number}))
    return None


# =============================================================================
# RULES
# =============================================================================


def dedupe_findings(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    seen: Set[str] = set()
    kept: List[Finding] = []
    for finding in result.findings:
        if finding.tooth in seen:
            continue
        seen.add(finding.tooth)
        kept.append(finding)
    if len(kept) != len(result.findings):
        logger.info("Dropped %d duplicate finding(s).", len(result.findings) - len(kept))
    result.findings = kept
    return result


def gate_low_reliability_findings(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    gated = [f for f in result.findings if _is_gated(f)]
    if not gated or len(gated) >= config.multi_signal_count:
        return result

    gated_numbers = {f.tooth_number for f in gated if f.tooth_number is not None}
    removed_unilateral: List[str] = []
    removed_low_confidence: List[str] = []

    survivors: List[Finding] = []
    for finding in gated:
        partner = _contralateral_central(finding.tooth_number)
        if partner is not None and partner not in gated_numbers:
            removed_unilateral.append(finding.tooth)
        else:
            survivors.append(finding)

    if result.confidence < config.gated_confidence_threshold:
        survivor_numbers = [f.tooth_number for f in survivors if f.tooth_number is not None]
        for finding in list(survivors):
            number = finding.tooth_number
            paired = number is not None and any(
                other != number and _forms_pair(number, other) for other in survivor_numbers
            )
            if not paired:
                survivors.remove(finding)
                removed_low_confidence.append(finding.tooth)

    removed = set(removed_unilateral) | set(removed_low_confidence)
    if not removed:
        return result

    result.findings = [f for f in result.findings if not (_is_gated(f) and f.tooth in removed)]
    if removed_unilateral:
        result.warnings.append(
            f"Diastema finding on {', '.join(removed_unilateral)} removed: spacing on a single "
            "central incisor without its contralateral partner is unreliable. Confirm clinically."
        )
    if removed_low_confidence:
        result.warnings.append(
            f"Diastema finding on {', '.join(removed_low_confidence)} removed: analysis confidence "
            f"{result.confidence:.0f}% is below {config.gated_confidence_threshold:.0f}%. Confirm clinically."
        )
    logger.info(
        "Low-reliability gate removed %s (confidence=%.0f).",
        ", ".join(sorted(removed)),
        result.confidence,
    )
    return result


def _first_trigger(rule: ConsistencyRule, evidence: str) -> Optional[str]:
    for keyword in rule.keywords:
        if keyword in evidence:
            return keyword
    return None


def enforce_cross_field_consistency(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    notes: List[str] = []

    evidence = " ".join(_lower(x) for x in result.observations)
    for rule in SMILE_LINE_RULES:
        trigger = _first_trigger(rule, evidence)
        if trigger is None:
            continue
        current = result.smile_line
        if current is not None and SMILE_LINE_RANK.get(current, -1) >= SMILE_LINE_RANK[rule.value]:
            break
        result.smile_line = rule.value
        notes.append(
            f"{AUTO_PREFIX} Smile line escalated from {current or 'unset'} to {rule.value}: "
            f"observations mention '{trigger}'."
        )
        break

    for finding in result.findings:
        rationale = _lower(finding.rationale_text())
        for rule in DEPTH_RULES:
            trigger = _first_trigger(rule, rationale)
            if trigger is None:
                continue
            current = finding.depth
            if current is not None and DEPTH_RANK.get(current, -1) >= DEPTH_RANK[rule.value]:
                continue
            finding.depth = rule.value
            notes.append(
                f"{AUTO_PREFIX} Depth of {finding.tooth} escalated from {current or 'unset'} to "
                f"{rule.value}: rationale mentions '{trigger}'."
            )

    for note in notes:
        logger.info("Consistency override: %s", note)
    result.observations.extend(notes)
    return result


def _has_gingival_evidence(observations: Sequence[str]) -> bool:
    text = " ".join(_lower(x) for x in observations)
    return any(all(term in text for term in terms) for terms in GINGIVAL_EVIDENCE)


def gate_gingival_procedures(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    smile_line = result.smile_line
    if smile_line == "low":
        reason = "the smile line is low, so the gingiva is not displayed"
    elif smile_line == "medium" and not _has_gingival_evidence(result.observations):
        reason = "the smile line is medium and no visible gingival problem was observed"
    else:
        return result

    removed = [
        f.tooth for f in result.findings if f.treatment_indication == TreatmentIndication.GINGIVOPLASTY
    ]
    if not removed:
        return result
    result.findings = [
        f for f in result.findings if f.treatment_indication != TreatmentIndication.GINGIVOPLASTY
    ]
    result.warnings.append(f"Gingivoplasty on {', '.join(removed)} removed: {reason}.")
    logger.info("Gingival gate removed %s (smile_line=%s).", ", ".join(removed), smile_line)
    return result


def filter_minority_arch(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    upper = [f for f in result.findings if f.tooth_number in UPPER_ARCH]
    lower = [f for f in result.findings if f.tooth_number in LOWER_ARCH]
    if not upper or not lower or len(upper) == len(lower):
        return result

    if len(upper) > len(lower):
        removed, majority, minority_name, majority_name = lower, upper, "Lower", "upper"
    else:
        removed, majority, minority_name, majority_name = upper, lower, "Upper", "lower"
    removed_ids = {id(f) for f in removed}
    result.findings = [f for f in result.findings if id(f) not in removed_ids]
    teeth = ", ".join(_tooth_numbers(removed))
    result.warnings.append(
        f"{minority_name}-arch units ({teeth}) removed: the photo predominantly shows the "
        f"{majority_name} arch ({len(majority)} vs {len(removed)})."
    )
    logger.info("Minority-arch filter removed %s.", teeth)
    return result


def _is_aesthetic(finding: Finding) -> bool:
    if finding.treatment_indication in AESTHETIC_TREATMENTS:
        return True
    rationale = _lower(finding.rationale_text())
    return any(keyword in rationale for keyword in AESTHETIC_KEYWORDS)


def condition_restorative_class(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    for finding in result.findings:
        if not finding.defect_class or not BLACK_CLASS_RE.match(finding.defect_class):
            continue
        if _is_aesthetic(finding):
            logger.info(
                "Cleared restorative class %s on aesthetic finding %s.",
                finding.defect_class,
                finding.tooth,
            )
            finding.defect_class = None
    return result


def resort_and_reanchor(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    result.findings = sorted(result.findings, key=lambda f: f.priority.rank)
    teeth = _tooth_numbers(result.findings)
    if result.primary not in teeth:
        previous = result.primary
        result.primary = teeth[0] if teeth else None
        if previous is not None:
            logger.info("Primary finding reassigned from %s to %s.", previous, result.primary)
    return result


def synthesize_warnings(analysis: CaseAnalysis, config: SafetyNetConfig) -> CaseAnalysis:
    result = analysis.model_copy(deep=True)
    count = len(result.findings)
    if count > 1:
        summary = f"{count} units require attention. Select which one to treat first."
        if summary not in result.warnings:
            result.warnings.insert(0, summary)
    elif count == 1 and result.confidence < config.recapture_confidence:
        advisory = (
            "Only 1 unit detected. If other teeth need treatment, recapture the photo "
            "or add them manually."
        )
        if advisory not in result.warnings:
            result.warnings.append(advisory)
    return result


Rule = Callable[[CaseAnalysis, SafetyNetConfig], CaseAnalysis]

RULES: Tuple[Tuple[str, Rule], ...] = (
    ("dedupe", dedupe_findings),
    ("low_reliability_gate", gate_low_reliability_findings),
    ("cross_field_consistency", enforce_cross_field_consistency),
    ("gingival_gate", gate_gingival_procedures),
    ("minority_arch", filter_minority_arch),
    ("restorative_class", condition_restorative_class),
    ("resort", resort_and_reanchor),
    ("warnings", synthesize_warnings),
)


class SafetyNetEngine:
    def __init__(self, config: Optional[SafetyNetConfig] = None) -> None:
        self.config = config or SafetyNetConfig()

    def apply(self, analysis: CaseAnalysis) -> CaseAnalysis:
        current = analysis
        for name, rule in RULES:
            before = len(current.findings)
            current = rule(current, self.config)
            if len(current.findings) != before:
                logger.debug("Rule %s: %d -> %d findings.", name, before, len(current.findings))
        logger.info(
            "Safety net complete: %d finding(s), primary=%s, confidence=%.0f.",
            len(current.findings),
            current.primary,
            current.confidence,
        )
        return current
