"""
Odontoplan Protocol Service - Runtime Settings

Every tunable threshold, timeout, provider route and storage path is read once
from `ODP_*` environment variables into an immutable PipelineSettings object
that callers construct and pass into the pipeline.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from env_loader import load_service_env

logger = logging.getLogger(__name__)

_DEFAULT_DATA_DIR = Path(tempfile.gettempdir()) / "odontoplan-protocol-service"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class ProviderRoute:
    provider: str
    model: str

    @classmethod
    def parse(cls, raw: str) -> "ProviderRoute":
        provider, sep, model = (raw or "").strip().partition(":")
        if not sep or not provider.strip() or not model.strip():
            raise ValueError(f"Provider route must look like 'provider:model', got {raw!r}.")
        return cls(provider=provider.strip().lower(), model=model.strip())

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.model}"


def _env_routes(name: str, default: str) -> Tuple[ProviderRoute, ...]:
    raw = os.getenv(name, default)
    routes = tuple(ProviderRoute.parse(part) for part in raw.split(",") if part.strip())
    if not routes:
        raise ValueError(f"{name} must list at least one provider route.")
    return routes


@dataclass(frozen=True)
class PipelineSettings:
    # Safety net thresholds (confidence on the 0-100 scale).
    gated_confidence_threshold: float = 65.0
    multi_signal_count: int = 3
    recapture_confidence: float = 85.0

    # Protocol layer policy.
    min_layers_anterior_aesthetic: int = 3
    min_layers_default: int = 2

    # Deadlines, in seconds.
    case_budget_seconds: float = 55.0
    call_timeout_cap_seconds: float = 50.0
    call_safety_margin_seconds: float = 1.0
    image_min_budget_seconds: float = 15.0
    acceptance_timeout_seconds: float = 15.0
    acceptance_max_tokens: int = 10

    # Provider chains, highest priority first.
    vision_chain: Tuple[ProviderRoute, ...] = (
        ProviderRoute("gemini", "gemini-2.5-flash"),
        ProviderRoute("anthropic", "claude-sonnet-4-5"),
    )
    protocol_chain: Tuple[ProviderRoute, ...] = (
        ProviderRoute("anthropic", "claude-sonnet-4-5"),
        ProviderRoute("gemini", "gemini-2.5-pro"),
    )
    image_chain: Tuple[ProviderRoute, ...] = (
        ProviderRoute("gemini", "gemini-2.5-flash-image"),
        ProviderRoute("gemini", "gemini-3-pro-image-preview"),
    )
    acceptance_route: ProviderRoute = ProviderRoute("anthropic", "claude-haiku-4-5")
    abort_on_policy_failure: bool = True

    gemini_api_key: Optional[str] = field(default=None, repr=False)
    anthropic_api_key: Optional[str] = field(default=None, repr=False)
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    anthropic_base_url: str = "https://api.anthropic.com/v1"

    ledger_db_path: str = str(_DEFAULT_DATA_DIR / "ledger.sqlite3")
    catalog_db_path: str = ""
    storage_root: str = str(_DEFAULT_DATA_DIR / "objects")
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.multi_signal_count < 2:
            raise ValueError("multi_signal_count must be at least 2.")
        if self.min_layers_default < 1 or self.min_layers_anterior_aesthetic < 1:
            raise ValueError("Minimum layer counts must be positive.")
        if not self.vision_chain or not self.protocol_chain or not self.image_chain:
            raise ValueError("Every provider chain needs at least one route.")
        if self.call_timeout_cap_seconds >= self.case_budget_seconds:
            raise ValueError("Per-call timeout cap must stay below the case budget.")

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        load_service_env()
        defaults = cls()
        budget = max(5.0, _env_float("ODP_CASE_BUDGET_SECONDS", defaults.case_budget_seconds))
        cap = _clamp(
            _env_float("ODP_CALL_TIMEOUT_CAP_SECONDS", defaults.call_timeout_cap_seconds),
            1.0,
            budget - 1.0,
        )
        return cls(
            gated_confidence_threshold=_clamp(
                _env_float("ODP_GATED_CONFIDENCE_THRESHOLD", defaults.gated_confidence_threshold),
                0.0,
                100.0,
            ),
            multi_signal_count=max(2, _env_int("ODP_MULTI_SIGNAL_COUNT", defaults.multi_signal_count)),
            recapture_confidence=_clamp(
                _env_float("ODP_RECAPTURE_CONFIDENCE", defaults.recapture_confidence),
                0.0,
                100.0,
            ),
            min_layers_anterior_aesthetic=max(
                1, _env_int("ODP_MIN_LAYERS_ANTERIOR", defaults.min_layers_anterior_aesthetic)
            ),
            min_layers_default=max(1, _env_int("ODP_MIN_LAYERS_DEFAULT", defaults.min_layers_default)),
            case_budget_seconds=budget,
            call_timeout_cap_seconds=cap,
            call_safety_margin_seconds=_clamp(
                _env_float("ODP_CALL_SAFETY_MARGIN_SECONDS", defaults.call_safety_margin_seconds),
                0.0,
                5.0,
            ),
            image_min_budget_seconds=max(
                1.0, _env_float("ODP_IMAGE_MIN_BUDGET_SECONDS", defaults.image_min_budget_seconds)
            ),
            acceptance_timeout_seconds=max(
                1.0, _env_float("ODP_ACCEPTANCE_TIMEOUT_SECONDS", defaults.acceptance_timeout_seconds)
            ),
            acceptance_max_tokens=max(
                1, _env_int("ODP_ACCEPTANCE_MAX_TOKENS", defaults.acceptance_max_tokens)
            ),
            vision_chain=_env_routes(
                "ODP_VISION_CHAIN", ",".join(r.label for r in defaults.vision_chain)
            ),
            protocol_chain=_env_routes(
                "ODP_PROTOCOL_CHAIN", ",".join(r.label for r in defaults.protocol_chain)
            ),
            image_chain=_env_routes(
                "ODP_IMAGE_CHAIN", ",".join(r.label for r in defaults.image_chain)
            ),
            acceptance_route=ProviderRoute.parse(
                os.getenv("ODP_ACCEPTANCE_ROUTE", defaults.acceptance_route.label)
            ),
            abort_on_policy_failure=_env_bool(
                "ODP_ABORT_ON_POLICY_FAILURE", defaults.abort_on_policy_failure
            ),
            gemini_api_key=(os.getenv("ODP_GEMINI_API_KEY") or "").strip() or None,
            anthropic_api_key=(os.getenv("ODP_ANTHROPIC_API_KEY") or "").strip() or None,
            gemini_base_url=os.getenv("ODP_GEMINI_BASE_URL", defaults.gemini_base_url).rstrip("/"),
            anthropic_base_url=os.getenv("ODP_ANTHROPIC_BASE_URL", defaults.anthropic_base_url).rstrip("/"),
            ledger_db_path=os.getenv("ODP_LEDGER_DB_PATH", defaults.ledger_db_path),
            catalog_db_path=os.getenv("ODP_CATALOG_DB_PATH", defaults.catalog_db_path),
            storage_root=os.getenv("ODP_STORAGE_ROOT", defaults.storage_root),
            log_level=(os.getenv("ODP_LOG_LEVEL", defaults.log_level) or "INFO").strip().upper(),
        )


def configure_logging(settings: Optional[PipelineSettings] = None) -> None:
    level_name = (settings.log_level if settings else os.getenv("ODP_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        logger.warning("Unknown ODP_LOG_LEVEL %r; falling back to INFO.", level_name)
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
