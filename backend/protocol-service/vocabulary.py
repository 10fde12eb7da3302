"""
Odontoplan Protocol Service - Canonical Vocabulary

Static lookup tables that fold provider enum tokens (Portuguese, English,
abbreviations, mixed case, accents) back to the canonical vocabulary.
"""

from __future__ import annotations

import re
import unicodedata
from enum import Enum
from typing import Dict, Optional, Tuple

PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}


def fold_token(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[\s_\-]+", " ", stripped.strip().lower())


def _table(groups: Dict[str, Tuple[str, ...]]) -> Dict[str, str]:
    table: Dict[str, str] = {}
    for canonical, variants in groups.items():
        table[fold_token(canonical)] = canonical
        for variant in variants:
            table[fold_token(variant)] = canonical
    return table


ENUM_MAPPINGS: Dict[str, Dict[str, str]] = {
    "priority": _table(
        {
            "high": ("alta", "urgente", "urgent", "critical"),
            "medium": ("média", "moderada", "moderate", "normal"),
            "low": ("baixa", "minor"),
        }
    ),
    "treatment_indication": _table(
        {
            "resin": ("resina", "resina composta", "composite", "direct resin"),
            "porcelain": ("porcelana", "ceramic", "cerâmica", "faceta de porcelana", "porcelain veneer"),
            "crown": ("coroa", "coroa total", "full crown"),
            "implant": ("implante",),
            "endodontics": ("endodontia", "root canal", "tratamento de canal"),
            "referral": ("encaminhamento", "refer", "specialist referral"),
            "gingivoplasty": ("gengivoplastia", "gingival contouring"),
            "root_coverage": ("recobrimento radicular", "recobrimento", "root coverage graft"),
        }
    ),
    "defect_class": _table(
        {
            "Class I": ("classe i",),
            "Class II": ("classe ii",),
            "Class III": ("classe iii",),
            "Class IV": ("classe iv",),
            "Class V": ("classe v",),
            "Class VI": ("classe vi",),
            "Direct Veneer": ("faceta direta", "faceta em resina"),
            "Diastema Closure": ("fechamento de diastema", "diastema"),
            "Aesthetic Recontouring": ("recontorno estético", "recontorno", "recontouring"),
            "Contact Lens Veneer": ("lente de contato", "lentes de contato"),
            "Restoration Repair": ("reparo de restauração", "reparo"),
        }
    ),
    "region": _table(
        {
            "anterior": ("anteriores", "front"),
            "posterior": ("posteriores", "back"),
        }
    ),
    "size": _table(
        {
            "small": ("pequena", "pequeno"),
            "medium": ("média", "medio"),
            "large": ("grande",),
            "extensive": ("extensa", "extenso"),
        }
    ),
    "substrate": _table(
        {
            "enamel": ("esmalte",),
            "dentin": ("dentina", "dentine"),
            "enamel_dentin": ("esmalte e dentina", "enamel and dentin"),
            "deep_dentin": ("dentina profunda", "deep dentin"),
        }
    ),
    "substrate_condition": _table(
        {
            "healthy": ("saudável", "sound"),
            "sclerotic": ("esclerótico", "esclerosado"),
            "stained": ("manchado", "pigmentado"),
            "carious": ("cariado", "caries"),
            "dehydrated": ("desidratado",),
        }
    ),
    "enamel_condition": _table(
        {
            "intact": ("íntegro", "integro"),
            "fractured": ("fraturado", "fratura"),
            "hypoplastic": ("hipoplásico", "hipoplasia"),
            "fluorosis": ("fluorose",),
            "erosion": ("erosão", "erosao", "eroded"),
        }
    ),
    "depth": _table(
        {
            "shallow": ("superficial",),
            "medium": ("média", "moderate"),
            "deep": ("profunda", "profundo"),
        }
    ),
    "smile_line": _table(
        {
            "low": ("baixa",),
            "medium": ("média", "average", "normal"),
            "high": ("alta", "gummy", "sorriso gengival"),
        }
    ),
}

VITA_SHADES = frozenset(
    {
        "A1", "A2", "A3", "A3.5", "A4",
        "B1", "B2", "B3", "B4",
        "C1", "C2", "C3", "C4",
        "D2", "D3", "D4",
        "BL1", "BL2", "BL3", "BL4",
        "OM1", "OM2", "OM3",
    }
)


def lookup(field_name: str, value: object) -> Optional[str]:
    """Canonical token for `value`, or None when the table has no entry."""
    if isinstance(value, Enum):
        value = value.value
    if value is None or not isinstance(value, str):
        return None
    table = ENUM_MAPPINGS.get(field_name, {})
    return table.get(fold_token(value))


def normalize_vita_shade(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    candidate = re.sub(r"\s+", "", value).upper().replace(",", ".")
    return candidate if candidate in VITA_SHADES else None
