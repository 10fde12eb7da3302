"""
Odontoplan Protocol Service - Fallback Orchestrator

Tries providers strictly in priority order under one shared time budget.
The first result that survives the caller's acceptance check wins; later
providers are never contacted and no provider is retried within a case.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from errors import (
    MalformedOutputError,
    PipelineExhausted,
    ProviderAttempt,
    TransientProviderError,
    ValidationFailed,
)
from inference_client import InferenceClient
from models import InferenceRequest, InferenceResult
from settings import ProviderRoute

logger = logging.getLogger(__name__)

T = TypeVar("T")

RequestBuilder = Callable[[ProviderRoute, float], InferenceRequest]

MIN_CALL_SECONDS = 1.0


@dataclass
class FallbackOutcome(Generic[T]):
    value: T
    result: InferenceResult
    route: ProviderRoute
    attempts: List[ProviderAttempt] = field(default_factory=list)


class FallbackOrchestrator:
    """
    Linear state machine: Pending -> Trying(i) -> Success | Trying(i+1) | Exhausted.

    Policy failures (HTTP 429/402) propagate unchanged when
    `abort_on_policy_failure` is set or when nothing is left to fall back to.
    """

    def __init__(
        self,
        clients: Dict[str, InferenceClient],
        *,
        call_timeout_cap_seconds: float = 50.0,
        safety_margin_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.clients = dict(clients)
        self.call_timeout_cap_seconds = call_timeout_cap_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock

    async def run(
        self,
        capability: str,
        routes: Sequence[ProviderRoute],
        build_request: RequestBuilder,
        accept: Callable[[InferenceResult], T],
        *,
        budget_seconds: float,
        abort_on_policy_failure: bool = True,
    ) -> FallbackOutcome[T]:
        deadline = self._clock() + budget_seconds
        attempts: List[ProviderAttempt] = []

        for idx, route in enumerate(routes):
            is_last = idx == len(routes) - 1
            remaining = deadline - self._clock() - self.safety_margin_seconds
            if remaining < MIN_CALL_SECONDS:
                attempts.append(
                    ProviderAttempt(route.provider, route.model, "skipped", "case budget exhausted")
                )
                logger.warning("%s: budget exhausted before %s.", capability, route.label)
                break

            client = self.clients.get(route.provider)
            if client is None:
                attempts.append(
                    ProviderAttempt(route.provider, route.model, "unconfigured", "no client registered")
                )
                continue

            timeout = min(self.call_timeout_cap_seconds, remaining)
            started = self._clock()
            try:
                request = build_request(route, timeout)
                result = await self._invoke_with_deadline(client, request, timeout)
                value = accept(result)
            except ValidationFailed as exc:
                attempts.append(self._attempt(route, "invalid", exc.describe() or str(exc), started))
                logger.warning("%s: %s output failed validation.", capability, route.label)
                continue
            except MalformedOutputError as exc:
                attempts.append(self._attempt(route, "malformed", str(exc), started))
                logger.warning("%s: %s returned malformed output: %s", capability, route.label, exc)
                continue
            except TransientProviderError as exc:
                attempts.append(
                    self._attempt(route, "transient", str(exc), started, http_status=exc.http_status)
                )
                if exc.is_policy_failure:
                    out_of_budget = deadline - self._clock() - self.safety_margin_seconds < MIN_CALL_SECONDS
                    if abort_on_policy_failure or is_last or out_of_budget:
                        logger.warning(
                            "%s: %s policy failure (HTTP %s); not falling back.",
                            capability,
                            route.label,
                            exc.http_status,
                        )
                        raise
                logger.warning("%s: %s transient failure: %s", capability, route.label, exc)
                continue
            except Exception as exc:
                attempts.append(self._attempt(route, "error", repr(exc), started))
                logger.warning("%s: %s failed: %s", capability, route.label, exc)
                continue

            attempts.append(self._attempt(route, "success", "accepted", started))
            logger.info(
                "%s: accepted result from %s after %d attempt(s).",
                capability,
                route.label,
                len(attempts),
            )
            return FallbackOutcome(value=value, result=result, route=route, attempts=attempts)

        raise PipelineExhausted(capability, attempts)

    async def _invoke_with_deadline(
        self,
        client: InferenceClient,
        request: InferenceRequest,
        timeout: float,
    ) -> InferenceResult:
        try:
            return await asyncio.wait_for(client.invoke(request), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(
                f"{request.provider}:{request.model} exceeded {timeout:.1f}s deadline.",
                retryable=True,
                http_status=408,
                provider=request.provider,
            ) from exc

    def _attempt(
        self,
        route: ProviderRoute,
        outcome: str,
        reason: str,
        started: float,
        http_status: Optional[int] = None,
    ) -> ProviderAttempt:
        return ProviderAttempt(
            provider=route.provider,
            model=route.model,
            outcome=outcome,
            reason=reason[:500],
            http_status=http_status,
            elapsed_seconds=round(self._clock() - started, 3),
        )
