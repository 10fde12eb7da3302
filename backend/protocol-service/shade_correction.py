"""
Odontoplan Protocol Service - Catalog Correction Engine

Repairs materially invalid shade choices in a generated stratification
protocol against the request-scoped CatalogIndex, then keeps the derived
checklist/warnings text in sync with every substitution.

Never removes clinical intent: layers are only repaired, and an optional
incisal effects layer may be added for anterior aesthetic work.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from catalog import CatalogIndex, product_line_of
from errors import CatalogMissingError
from models import CatalogEntry, Protocol, ProtocolContext, ProtocolLayer
from settings import PipelineSettings
from vocabulary import fold_token, lookup

logger = logging.getLogger(__name__)


class LayerKind(str, Enum):
    EFFECTS = "effects"
    OPAQUE = "opaque"
    PROXIMAL_RIDGE = "proximal_ridge"
    INCISAL = "incisal"
    FINAL = "final"
    ENAMEL = "enamel"
    BODY = "body"
    UNKNOWN = "unknown"


# Order matters: "Efeitos Incisais" is effects, "Esmalte Vestibular Final" is final.
LAYER_KIND_KEYWORDS: Tuple[Tuple[LayerKind, Tuple[str, ...]], ...] = (
    (LayerKind.EFFECTS, ("efeito", "effect", "corante", "stain", "caracteriza", "tint")),
    (LayerKind.OPAQUE, ("opaco", "opaque", "mascaramento", "masking")),
    (LayerKind.PROXIMAL_RIDGE, ("crista", "proxima", "marginal ridge")),
    (LayerKind.INCISAL, ("incisal", "halo", "translucidez", "translucid", "translucen")),
    (LayerKind.FINAL, ("final", "vestibular", "outer")),
    (LayerKind.ENAMEL, ("esmalte", "enamel")),
    (LayerKind.BODY, ("dentina", "dentin", "corpo", "body")),
)

COMPATIBLE_ROW_TYPES: Dict[LayerKind, Tuple[str, ...]] = {
    LayerKind.OPAQUE: ("opaque", "dentin"),
    LayerKind.PROXIMAL_RIDGE: ("enamel",),
    LayerKind.INCISAL: ("translucent",),
    LayerKind.FINAL: ("enamel",),
    LayerKind.ENAMEL: ("enamel",),
    LayerKind.BODY: ("body", "dentin", "universal"),
}

PREFERRED_SHADES: Dict[LayerKind, Tuple[str, ...]] = {
    LayerKind.OPAQUE: ("OA2", "OA1", "OA3"),
    LayerKind.PROXIMAL_RIDGE: ("XLE", "BL-L", "WE"),
    LayerKind.INCISAL: ("CT", "TN", "CE", "Trans 20"),
    LayerKind.FINAL: ("WE", "A1E", "CE", "JE"),
    LayerKind.ENAMEL: ("WE", "A1E", "CE", "JE"),
    LayerKind.BODY: ("WB",),
}

SAFE_DEFAULTS: Dict[LayerKind, str] = {
    LayerKind.OPAQUE: "OA2",
    LayerKind.PROXIMAL_RIDGE: "WE",
    LayerKind.INCISAL: "CT",
    LayerKind.FINAL: "WE",
    LayerKind.ENAMEL: "WE",
    LayerKind.BODY: "WB",
    LayerKind.UNKNOWN: "A2",
}

# Known provider slips fixed before any lookup: (product line keyword, wrong, right).
SHADE_ALIASES: Tuple[Tuple[str, str, str], ...] = (("z350", "WT", "CT"),)

ENAMEL_KINDS = {LayerKind.ENAMEL, LayerKind.FINAL}
ENAMEL_UPGRADE_ORDER = ("WE", "CE", "JE", "CT", "TRANS")

# Lines missing a shade family: (line keyword, missing shades, enamel choice, other choice).
LINE_REPLACEMENT_PREFERENCES: Tuple[Tuple[str, "re.Pattern[str]", str, str], ...] = (
    ("z350", re.compile(r"^BL\d?$"), "A1E", "A1"),
)

ENAMEL_ONLY_RE = re.compile(
    r"^(BL\d?|BL-?[LX]|[A-D]\d(\.\d)?E|WE|CE|JE|XLE|MW|CT|WT|TN|IT|TRANS.*|OPAL.*|INC.*)$"
)
BODY_ONLY_RE = re.compile(r"^(WB|XLB|D[A-D]\d(\.\d)?|O[A-D]\d(\.\d)?|[A-D]\d(\.\d)?[DO])$")
TRANSLUCENT_RE = re.compile(r"^(CT|WT|TN|IT|CE|BT|GT|YT|CLEAR|T\d*|TRANS.*|OPAL.*|INC.*)$")
OVERLY_TRANSLUCENT_RE = re.compile(r"^(CT|WT|TN|IT|CLEAR|T\d*|TRANS.*|OPAL.*|INC.*)$")

RIDGE_ALLOWED_LINES = ("harmonize", "empress")
RIDGE_SUBSTITUTES = (("Harmonize", "XLE"), ("Empress Direct", "BL-L"))

ANTERIOR_AESTHETIC_CLASSES = {"Class III", "Class IV", "Direct Veneer", "Diastema Closure"}
WHITENING_KEYWORDS = ("hollywood", "bl1", "bl2", "bl3", "bleach", "whitening", "clareamento", "intenso", "intense")

ALERT_TOPICS: Dict[str, "re.Pattern[str]"] = {
    "bleach": re.compile(r"\bbl\d\b|bleach|whiten", re.IGNORECASE),
    "proximal_ridge": re.compile(r"proximal ridge|crista", re.IGNORECASE),
    "incisal_effects": re.compile(r"incisal effects|efeitos incisais", re.IGNORECASE),
}

INCISAL_EFFECTS_NAME = "Incisal Effects"


def _shade_key(shade: str) -> str:
    return re.sub(r"\s+", "", shade or "").upper()


def is_enamel_only(shade: str) -> bool:
    return bool(ENAMEL_ONLY_RE.match(_shade_key(shade)))


def is_body_only(shade: str) -> bool:
    return bool(BODY_ONLY_RE.match(_shade_key(shade)))


def is_translucent(shade: str) -> bool:
    return bool(TRANSLUCENT_RE.match(_shade_key(shade)))


def is_overly_translucent(shade: str) -> bool:
    return bool(OVERLY_TRANSLUCENT_RE.match(_shade_key(shade)))


def classify_layer(name: str) -> LayerKind:
    folded = fold_token(name or "")
    for kind, keywords in LAYER_KIND_KEYWORDS:
        if any(fold_token(k) in folded for k in keywords):
            return kind
    return LayerKind.UNKNOWN


def _tooth_position(tooth: Optional[str]) -> Optional[int]:
    digits = "".join(ch for ch in (tooth or "") if ch.isdigit())
    if len(digits) != 2:
        return None
    return int(digits[1])


def is_anterior_aesthetic(context: ProtocolContext) -> bool:
    position = _tooth_position(context.tooth)
    if position is None or position > 3:
        return False
    defect_class = lookup("defect_class", context.defect_class) or context.defect_class
    return defect_class in ANTERIOR_AESTHETIC_CLASSES


def minimum_layer_warning(
    layers: Optional[Sequence[ProtocolLayer]],
    context: ProtocolContext,
    *,
    anterior_minimum: int = 3,
    default_minimum: int = 2,
) -> Optional[str]:
    if layers is None:
        return None
    count = len(layers)
    if is_anterior_aesthetic(context):
        if count < anterior_minimum:
            return (
                f"Anterior aesthetic protocol has only {count} layer(s); at least {anterior_minimum} "
                "are recommended (body, translucency and enamel)."
            )
        return None
    if count < default_minimum:
        return f"Protocol has only {count} layer(s); at least {default_minimum} are recommended."
    return None


def rewrite_tokens(texts: Sequence[str], substitutions: Dict[str, str]) -> List[str]:
    """Whole-token, single-pass, case-insensitive rewrite: 'A1' never matches inside 'DA1', 'A1E' or 'A1.5'."""
    if not substitutions:
        return list(texts)
    by_key = {k.upper(): v for k, v in substitutions.items()}
    alternatives = "|".join(re.escape(k) for k in sorted(substitutions, key=len, reverse=True))
    pattern = re.compile(rf"(?<![A-Za-z0-9])({alternatives})(?![A-Za-z0-9]|\.\d)", re.IGNORECASE)
    return [pattern.sub(lambda m: by_key[m.group(1).upper()], text) for text in texts]


def _topics(text: str) -> set:
    return {name for name, pattern in ALERT_TOPICS.items() if pattern.search(text)}


def merge_alerts(existing: Sequence[str], new_alerts: Sequence[str]) -> List[str]:
    merged = list(existing)
    existing_topics = set()
    for alert in existing:
        existing_topics |= _topics(alert)
    for alert in new_alerts:
        if alert in merged:
            continue
        if _topics(alert) & existing_topics:
            logger.debug("Suppressed alert already covered by provider text: %s", alert)
            continue
        merged.append(alert)
    return merged


@dataclass
class ShadeChange:
    position: int
    original: str
    final: str


@dataclass
class CorrectionReport:
    changes: List[ShadeChange] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)
    injected_effects_layer: bool = False

    def record(self, position: int, original: str, replacement: str) -> None:
        if original == replacement:
            return
        # Chains collapse per layer only: A -> B then B -> C on one layer is A -> C.
        for change in self.changes:
            if change.position == position:
                change.final = replacement
                break
        else:
            self.changes.append(ShadeChange(position, original, replacement))
        self.changes = [c for c in self.changes if c.original != c.final]

    @property
    def substitutions(self) -> Dict[str, str]:
        return {change.original: change.final for change in self.changes}

    def rewrite_map(self, original_shades: Sequence[str]) -> Dict[str, str]:
        """Map each replaced token to its final shade for the derived text.

        A token is left alone when an unchanged layer still carries it, or when
        layers that shared it were moved to different shades.
        """
        changed = {change.position for change in self.changes}
        protected = {shade for i, shade in enumerate(original_shades) if i not in changed}
        finals: Dict[str, set] = {}
        for change in self.changes:
            finals.setdefault(change.original, set()).add(change.final)
        mapping = {}
        for original, targets in finals.items():
            if original in protected:
                continue
            if len(targets) > 1:
                logger.warning("Leaving %s in text: replaced by %s on different layers.", original, sorted(targets))
                continue
            mapping[original] = next(iter(targets))
        return mapping


class CatalogCorrectionEngine:
    def __init__(
        self,
        *,
        anterior_minimum_layers: int = 3,
        default_minimum_layers: int = 2,
    ) -> None:
        self.anterior_minimum_layers = anterior_minimum_layers
        self.default_minimum_layers = default_minimum_layers

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "CatalogCorrectionEngine":
        return cls(
            anterior_minimum_layers=settings.min_layers_anterior_aesthetic,
            default_minimum_layers=settings.min_layers_default,
        )

    def correct(
        self,
        protocol: Protocol,
        index: CatalogIndex,
        context: Optional[ProtocolContext] = None,
    ) -> Tuple[Protocol, CorrectionReport]:
        context = context or ProtocolContext()
        result = protocol.model_copy(deep=True)
        report = CorrectionReport()

        original_shades = [layer.shade for layer in result.layers]
        for position, layer in enumerate(result.layers):
            self._correct_layer(position, layer, index, report)

        self._check_whitening(result, index, context, report)

        if self._inject_incisal_effects(result, context):
            report.injected_effects_layer = True
            report.alerts.append(
                f"{INCISAL_EFFECTS_NAME} layer (optional) added before the final enamel "
                "for anterior aesthetic characterization."
            )

        rewrite_map = report.rewrite_map(original_shades)
        if rewrite_map:
            logger.info("Applying %d shade replacement(s) to derived text: %s", len(rewrite_map), rewrite_map)
            result.checklist = rewrite_tokens(result.checklist, rewrite_map)
            result.warnings = rewrite_tokens(result.warnings, rewrite_map)

        result.alerts = merge_alerts(result.alerts, report.alerts)

        warning = minimum_layer_warning(
            result.layers,
            context,
            anterior_minimum=self.anterior_minimum_layers,
            default_minimum=self.default_minimum_layers,
        )
        if warning and warning not in result.warnings:
            result.warnings.append(warning)
        return result, report

    # -------------------------------------------------------------------------
    # Per-layer repair
    # -------------------------------------------------------------------------

    def _correct_layer(
        self,
        position: int,
        layer: ProtocolLayer,
        index: CatalogIndex,
        report: CorrectionReport,
    ) -> None:
        kind = classify_layer(layer.name)
        if kind == LayerKind.EFFECTS or not layer.shade:
            return
        line = product_line_of(layer.resin_brand)

        for keyword, wrong, right in SHADE_ALIASES:
            if keyword in line.lower() and layer.shade == wrong:
                self._apply(position, layer, right, report)
                logger.warning("Alias fix on %s: %s -> %s", line, wrong, right)

        # Layer-type constraints hold whether or not the shade is catalogued.
        if kind == LayerKind.BODY and is_enamel_only(layer.shade):
            self._substitute(
                position,
                layer,
                index,
                kind,
                report,
                lambda row: not is_enamel_only(row.shade),
                f"Shade {layer.shade} is an enamel-only shade and cannot be used on the body layer '{layer.name}'",
            )
        elif kind in {LayerKind.ENAMEL, LayerKind.FINAL, LayerKind.PROXIMAL_RIDGE} and is_body_only(layer.shade):
            self._substitute(
                position,
                layer,
                index,
                kind,
                report,
                lambda row: not is_body_only(row.shade),
                f"Shade {layer.shade} is a body/dentin shade and cannot be used on the enamel layer '{layer.name}'",
            )
        elif kind == LayerKind.INCISAL and not is_translucent(layer.shade):
            self._substitute(
                position,
                layer,
                index,
                kind,
                report,
                lambda row: is_translucent(row.shade),
                f"Incisal layer '{layer.name}' needs a translucent shade, not {layer.shade}",
            )
        elif kind == LayerKind.FINAL and is_overly_translucent(layer.shade):
            self._substitute(
                position,
                layer,
                index,
                kind,
                report,
                lambda row: not is_overly_translucent(row.shade) and not is_body_only(row.shade),
                f"Final layer '{layer.name}' cannot use the overly translucent shade {layer.shade}",
            )

        if index.find(line, layer.shade) is None and layer.shade != SAFE_DEFAULTS[kind]:
            self._substitute(
                position,
                layer,
                index,
                kind,
                report,
                lambda row: True,
                f"Shade {layer.shade} is not available in {line or 'the selected line'}",
                preferred=self._line_preference(line, kind, layer.shade),
            )

        if kind in ENAMEL_KINDS:
            self._optimize_enamel(position, layer, index, report)

        if kind == LayerKind.PROXIMAL_RIDGE:
            self._enforce_ridge_line(position, layer, index, report)

    @staticmethod
    def _line_preference(line: str, kind: LayerKind, shade: str) -> Tuple[str, ...]:
        for keyword, pattern, enamel_choice, other_choice in LINE_REPLACEMENT_PREFERENCES:
            if keyword in line.lower() and pattern.match(_shade_key(shade)):
                return (enamel_choice,) if kind in ENAMEL_KINDS else (other_choice,)
        return ()

    def _optimize_enamel(
        self,
        position: int,
        layer: ProtocolLayer,
        index: CatalogIndex,
        report: CorrectionReport,
    ) -> None:
        """Move a universal shade on an enamel layer to the line's dedicated enamel shade."""
        if is_enamel_only(layer.shade) or is_translucent(layer.shade) or is_body_only(layer.shade):
            return
        line = product_line_of(layer.resin_brand)
        enamel_rows = [row for row in index.rows_for_line(line) if row.layer_type == "enamel"]
        if not enamel_rows:
            return
        best = enamel_rows[0]
        for preferred in ENAMEL_UPGRADE_ORDER:
            found = next((row for row in enamel_rows if preferred in _shade_key(row.shade)), None)
            if found is not None:
                best = found
                break
        original = layer.shade
        self._apply(
            position,
            layer,
            best.shade,
            report,
            f"Enamel layer optimized: {original} -> {best.shade} for maximum incisal translucency.",
        )

    def _substitute(
        self,
        position: int,
        layer: ProtocolLayer,
        index: CatalogIndex,
        kind: LayerKind,
        report: CorrectionReport,
        allowed: Callable[[CatalogEntry], bool],
        reason: str,
        preferred: Sequence[str] = (),
    ) -> None:
        line = product_line_of(layer.resin_brand)
        try:
            row = self._pick_substitute(index, line, kind, layer.shade, allowed, preferred)
        except CatalogMissingError as exc:
            default = SAFE_DEFAULTS[kind]
            logger.warning("%s Using safe default %s.", exc, default)
            self._apply(
                position,
                layer,
                default,
                report,
                f"{reason}; no usable catalog rows for {line or 'the selected line'}, "
                f"replaced by safe default {default}.",
            )
            return
        self._apply(position, layer, row.shade, report, f"{reason}; replaced by {row.shade}.")

    def _apply(
        self,
        position: int,
        layer: ProtocolLayer,
        replacement: str,
        report: CorrectionReport,
        alert: Optional[str] = None,
    ) -> None:
        original = layer.shade
        if original == replacement:
            return
        layer.shade = replacement
        report.record(position, original, replacement)
        if alert:
            report.alerts.append(alert)
        logger.warning("Shade correction on '%s': %s -> %s", layer.name, original, replacement)

    def _pick_substitute(
        self,
        index: CatalogIndex,
        line: str,
        kind: LayerKind,
        original: str,
        allowed: Callable[[CatalogEntry], bool],
        preferred: Sequence[str] = (),
    ) -> CatalogEntry:
        types = COMPATIBLE_ROW_TYPES.get(kind)
        candidates = [
            row
            for row in index.rows_for_line(line)
            if (types is None or row.layer_type in types) and allowed(row) and row.shade != original
        ]
        if not candidates:
            raise CatalogMissingError(line, kind.value)

        for shade in preferred:
            for row in candidates:
                if _shade_key(row.shade) == _shade_key(shade):
                    return row
        base = re.sub(r"[DEO]$", "", re.sub(r"^[OD]", "", _shade_key(original)))
        if base and not base.startswith("BL"):
            for row in candidates:
                if _shade_key(row.shade) == base:
                    return row
            for row in candidates:
                if base in _shade_key(row.shade):
                    return row
        for shade in PREFERRED_SHADES.get(kind, ()):
            for row in candidates:
                if _shade_key(row.shade) == _shade_key(shade):
                    return row
        return candidates[0]

    def _enforce_ridge_line(
        self,
        position: int,
        layer: ProtocolLayer,
        index: CatalogIndex,
        report: CorrectionReport,
    ) -> None:
        line = product_line_of(layer.resin_brand)
        lowered = line.lower()
        if any(x in lowered for x in RIDGE_ALLOWED_LINES) or ("z350" in lowered and layer.shade == "WE"):
            return
        for substitute_line, substitute_shade in RIDGE_SUBSTITUTES:
            row = index.find(substitute_line, substitute_shade)
            if row is None:
                continue
            original = f"{line} ({layer.shade})"
            layer.resin_brand = row.product_line
            self._apply(
                position,
                layer,
                row.shade,
                report,
                f"Proximal ridge: {original} replaced by {product_line_of(row.product_line)} "
                f"({row.shade}); ridges need a high-value enamel from Harmonize or Empress Direct.",
            )
            return
        report.alerts.append(
            f"Proximal ridge: {line} ({layer.shade}) is not ideal. Recommended: XLE (Harmonize) "
            "or BL-L (Empress Direct)."
        )
        logger.warning("Proximal ridge on %s %s flagged; no allowed substitute loaded.", line, layer.shade)

    # -------------------------------------------------------------------------
    # Protocol-level policies
    # -------------------------------------------------------------------------

    def _check_whitening(
        self,
        protocol: Protocol,
        index: CatalogIndex,
        context: ProtocolContext,
        report: CorrectionReport,
    ) -> None:
        goals = (context.aesthetic_goals or "").lower()
        if not any(keyword in goals for keyword in WHITENING_KEYWORDS):
            return
        for layer in protocol.layers:
            if classify_layer(layer.name) == LayerKind.EFFECTS:
                continue
            line = product_line_of(layer.resin_brand)
            if line and not index.has_bleach_shades(line):
                report.alerts.append(
                    f"The {line} line has no BL (bleach) shades. For a Hollywood-level whitening "
                    "result consider Palfique LX5, Forma (Ultradent) or Estelite Bianco."
                )
                logger.warning("Whitening requested but %s has no BL shades.", line)
                return

    def _inject_incisal_effects(self, protocol: Protocol, context: ProtocolContext) -> bool:
        if len(protocol.layers) < 3 or not is_anterior_aesthetic(context):
            return False
        kinds = [classify_layer(layer.name) for layer in protocol.layers]
        if LayerKind.EFFECTS in kinds:
            return False

        insert_at = len(protocol.layers) - 1
        for kind in (LayerKind.FINAL, LayerKind.ENAMEL):
            positions = [i for i, k in enumerate(kinds) if k == kind]
            if positions:
                insert_at = positions[-1]
                break

        protocol.layers.insert(
            insert_at,
            ProtocolLayer(
                name=INCISAL_EFFECTS_NAME,
                resin_brand="Ivoclar - IPS Empress Direct Color",
                shade="White/Blue",
                thickness="0.1mm",
                purpose="Incisal halo and opalescence characterization",
                technique="Fine brush tint lines over the translucency layer",
                optional=True,
            ),
        )
        for order, layer in enumerate(protocol.layers, start=1):
            layer.order = order
        logger.info("Injected %s layer at position %d.", INCISAL_EFFECTS_NAME, insert_at + 1)
        return True
