"""
Odontoplan Protocol Service - Case Pipeline

Metered transaction around one case:
1. Consume one ledger unit (skipped for regenerate-image-only follow-ups)
2. Vision provider chain -> validated CaseAnalysis -> safety net
3. Protocol provider chain -> catalog correction (unless analysis_only)
4. Image-edit provider chain -> acceptance check -> storage (when requested)
5. Refund on any terminal failure after a successful consume
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, Iterable, Optional, Tuple

from catalog import (
    CatalogIndex,
    CatalogRepository,
    InMemoryCatalogRepository,
    SqliteCatalogRepository,
)
from errors import (
    InsufficientCredits,
    LedgerError,
    MalformedOutputError,
    PipelineExhausted,
    ProviderAttempt,
    StorageWriteError,
)
from fallback import FallbackOrchestrator, RequestBuilder
from image_acceptance import LIP_POSITION, ImageAcceptanceValidator
from inference_client import InferenceClient, build_clients
from ledger import MeteredLedger, SqliteMeteredLedger
from models import (
    CaseAnalysis,
    CaseRequest,
    CaseResponse,
    ImageAcceptance,
    InferenceImage,
    InferenceRequest,
    InferenceResult,
    MeteredOperationType,
    Protocol,
    ProtocolContext,
)
from object_storage import LocalObjectStorage, ObjectStorage
from prompts import (
    CASE_ANALYSIS,
    PROTOCOL_RECOMMENDATION,
    SMILE_SIMULATION,
    PromptRegistry,
    default_registry,
)
from safety_net import SafetyNetConfig, SafetyNetEngine
from settings import PipelineSettings, ProviderRoute
from shade_correction import CatalogCorrectionEngine
from structured_output import parse_case_analysis, parse_protocol

logger = logging.getLogger(__name__)


def first_generated_image(result: InferenceResult) -> InferenceImage:
    if not result.images:
        raise MalformedOutputError(f"{result.provider}:{result.model} returned no image.")
    return result.images[0]


class CasePipeline:
    def __init__(
        self,
        *,
        settings: PipelineSettings,
        clients: Dict[str, InferenceClient],
        ledger: MeteredLedger,
        catalog: CatalogRepository,
        storage: ObjectStorage,
        prompts: Optional[PromptRegistry] = None,
        safety_net: Optional[SafetyNetEngine] = None,
        correction: Optional[CatalogCorrectionEngine] = None,
        acceptance: Optional[ImageAcceptanceValidator] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.catalog = catalog
        self.storage = storage
        self.prompts = prompts or default_registry()
        self.safety_net = safety_net or SafetyNetEngine(SafetyNetConfig.from_settings(settings))
        self.correction = correction or CatalogCorrectionEngine.from_settings(settings)
        self.orchestrator = FallbackOrchestrator(
            clients,
            call_timeout_cap_seconds=settings.call_timeout_cap_seconds,
            safety_margin_seconds=settings.call_safety_margin_seconds,
            clock=clock,
        )
        self.acceptance = acceptance or ImageAcceptanceValidator(
            clients.get(settings.acceptance_route.provider),
            settings.acceptance_route,
            self.prompts,
            timeout_seconds=settings.acceptance_timeout_seconds,
            max_tokens=settings.acceptance_max_tokens,
        )
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Optional[PipelineSettings] = None) -> "CasePipeline":
        settings = settings or PipelineSettings.from_env()
        if settings.catalog_db_path:
            catalog = SqliteCatalogRepository(settings.catalog_db_path)
            catalog.seed_if_empty()
        else:
            catalog = InMemoryCatalogRepository.from_seed()
        return cls(
            settings=settings,
            clients=build_clients(settings),
            ledger=SqliteMeteredLedger(settings.ledger_db_path),
            catalog=catalog,
            storage=LocalObjectStorage(settings.storage_root),
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def process(self, request: CaseRequest) -> CaseResponse:
        operation = (
            MeteredOperationType.DSD_SIMULATION
            if request.generate_simulation
            else MeteredOperationType.CASE_ANALYSIS
        )
        charged = False
        if not request.regenerate_image_only:
            result = self.ledger.consume(request.tenant_id, operation, request.idempotency_key)
            if not result.allowed:
                raise InsufficientCredits(request.tenant_id, operation.value, result.credits_remaining)
            # A replayed key belongs to the run that charged it; only that run may refund.
            charged = not result.already_consumed
            if result.already_consumed:
                logger.info("Case %s reuses an already charged key.", request.idempotency_key)

        deadline = self._clock() + self.settings.case_budget_seconds
        try:
            response = await asyncio.wait_for(
                self._run(request, deadline),
                timeout=self.settings.case_budget_seconds,
            )
        except asyncio.TimeoutError as exc:
            self._refund(request, operation, charged, "case deadline reached")
            raise PipelineExhausted(
                "case",
                [
                    ProviderAttempt(
                        "pipeline",
                        "-",
                        "timeout",
                        f"case exceeded {self.settings.case_budget_seconds:.0f}s budget",
                    )
                ],
            ) from exc
        except asyncio.CancelledError:
            logger.info("Case %s cancelled.", request.idempotency_key)
            self._refund(request, operation, charged, "cancelled")
            raise
        except Exception as exc:
            logger.warning("Case %s failed: %s", request.idempotency_key, exc)
            self._refund(request, operation, charged, type(exc).__name__)
            raise

        response.charged = charged
        return response

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _run(self, request: CaseRequest, deadline: float) -> CaseResponse:
        providers_used: Dict[str, str] = {}

        if request.regenerate_image_only:
            analysis = CaseAnalysis.model_validate(request.prior_analysis.model_dump())
        else:
            analysis = await self._analyze(request, deadline, providers_used)

        protocol: Optional[Protocol] = None
        if not request.analysis_only and not request.regenerate_image_only and analysis.findings:
            protocol = await self._recommend(request, analysis, deadline, providers_used)

        simulation_key: Optional[str] = None
        acceptance: Optional[ImageAcceptance] = None
        wants_image = request.generate_simulation or request.regenerate_image_only
        if wants_image and not request.analysis_only:
            simulation_key, acceptance = await self._simulate(request, analysis, deadline, providers_used)

        return CaseResponse(
            tenant_id=request.tenant_id,
            idempotency_key=request.idempotency_key,
            analysis=analysis,
            protocol=protocol,
            simulation_key=simulation_key,
            image_acceptance=acceptance,
            providers_used=providers_used,
        )

    async def _analyze(
        self,
        request: CaseRequest,
        deadline: float,
        providers_used: Dict[str, str],
    ) -> CaseAnalysis:
        outcome = await self.orchestrator.run(
            "vision",
            self.settings.vision_chain,
            self._request_builder(CASE_ANALYSIS, [request.image], image_kind=request.image_kind.value),
            parse_case_analysis,
            budget_seconds=self._remaining(deadline),
            abort_on_policy_failure=self.settings.abort_on_policy_failure,
        )
        providers_used["vision"] = outcome.route.label
        return self.safety_net.apply(outcome.value)

    async def _recommend(
        self,
        request: CaseRequest,
        analysis: CaseAnalysis,
        deadline: float,
        providers_used: Dict[str, str],
    ) -> Protocol:
        primary = analysis.primary_finding()
        context = ProtocolContext(
            tooth=request.protocol_context.tooth or (primary.tooth if primary else None),
            defect_class=request.protocol_context.defect_class or (primary.defect_class if primary else None),
            aesthetic_goals=request.protocol_context.aesthetic_goals,
        )
        outcome = await self.orchestrator.run(
            "protocol",
            self.settings.protocol_chain,
            self._request_builder(
                PROTOCOL_RECOMMENDATION,
                [request.image],
                tooth=context.tooth,
                defect_class=context.defect_class,
                substrate=primary.substrate if primary else None,
                vita_shade=analysis.vita_shade,
                aesthetic_goals=context.aesthetic_goals,
            ),
            parse_protocol,
            budget_seconds=self._remaining(deadline),
            abort_on_policy_failure=self.settings.abort_on_policy_failure,
        )
        providers_used["protocol"] = outcome.route.label

        product_lines = {layer.product_line for layer in outcome.value.layers}
        index = await asyncio.to_thread(CatalogIndex.load, self.catalog, product_lines)
        protocol, report = self.correction.correct(outcome.value, index, context)
        if report.substitutions:
            logger.info("Catalog corrections for %s: %s", request.idempotency_key, report.substitutions)
        return protocol

    async def _simulate(
        self,
        request: CaseRequest,
        analysis: CaseAnalysis,
        deadline: float,
        providers_used: Dict[str, str],
    ) -> Tuple[str, ImageAcceptance]:
        remaining = self._remaining(deadline)
        if remaining < self.settings.image_min_budget_seconds:
            raise PipelineExhausted(
                "image",
                [ProviderAttempt("pipeline", "-", "skipped", f"only {remaining:.1f}s left for image generation")],
            )
        instructions = request.simulation_instructions or self._simulation_summary(analysis)
        outcome = await self.orchestrator.run(
            "image",
            self.settings.image_chain,
            self._request_builder(SMILE_SIMULATION, [request.image], instructions=instructions),
            first_generated_image,
            budget_seconds=remaining,
            abort_on_policy_failure=self.settings.abort_on_policy_failure,
        )
        providers_used["image"] = outcome.route.label
        candidate = outcome.value

        acceptance = await self.acceptance.check(
            request.image,
            candidate,
            LIP_POSITION,
            timeout_seconds=self._remaining(deadline),
        )
        name = f"dsd_{request.idempotency_key}"
        if request.regenerate_image_only:
            name = f"{name}_{uuid.uuid4().hex[:8]}"
        try:
            key = await asyncio.to_thread(
                self.storage.write,
                request.tenant_id,
                name,
                candidate.data,
                candidate.media_type,
            )
        except StorageWriteError as exc:
            raise PipelineExhausted(
                "storage",
                [ProviderAttempt("storage", "-", "write_failed", str(exc))],
            ) from exc
        return key, acceptance

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _remaining(self, deadline: float) -> float:
        return max(0.0, deadline - self._clock() - self.settings.call_safety_margin_seconds)

    def _request_builder(
        self,
        prompt_id: str,
        images: Iterable[InferenceImage],
        **variables,
    ) -> RequestBuilder:
        definition = self.prompts.get(prompt_id)
        user_prompt = definition.render_user(**variables)
        frozen_images = tuple(images)

        def build(route: ProviderRoute, timeout: float) -> InferenceRequest:
            return InferenceRequest(
                provider=route.provider,
                model=route.model,
                mode=definition.mode,
                prompt_id=definition.prompt_id,
                system_prompt=definition.system,
                user_prompt=user_prompt,
                images=frozen_images,
                tool=definition.tool,
                temperature=definition.temperature,
                max_tokens=definition.max_tokens,
                deadline_seconds=timeout,
            )

        return build

    @staticmethod
    def _simulation_summary(analysis: CaseAnalysis) -> str:
        if not analysis.findings:
            return "Harmonize the smile without changing tooth count or lip position."
        parts = []
        for finding in analysis.findings:
            label = finding.defect_class or (finding.treatment_indication.value if finding.treatment_indication else "")
            parts.append(f"{finding.tooth}: {label}".strip(": "))
        return "; ".join(parts)

    def _refund(self, request: CaseRequest, operation: MeteredOperationType, charged: bool, reason: str) -> None:
        if not charged:
            return
        try:
            refunded = self.ledger.refund(request.tenant_id, operation, request.idempotency_key)
        except LedgerError as exc:
            logger.error("Refund failed for %s (%s): %s", request.idempotency_key, reason, exc)
            return
        if refunded:
            logger.info("Refunded %s for %s (%s).", operation.value, request.idempotency_key, reason)
