"""
Odontoplan Protocol Service - Image Acceptance Validator

Compares the source photo with a generated simulation through one narrow,
binary-answer inference call. Fail-closed: a timeout, provider failure or
unparseable answer rejects the candidate.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from inference_client import InferenceClient
from models import ImageAcceptance, InferenceImage, InferenceMode, InferenceRequest
from prompts import LIP_POSITION_CHECK, PromptRegistry
from settings import ProviderRoute

logger = logging.getLogger(__name__)

LIP_POSITION = "lip_position"

AFFIRMATIVE = {"YES", "Y", "SIM", "S"}
NEGATIVE = {"NO", "N", "NAO", "NÃO"}


@dataclass(frozen=True)
class AcceptanceInvariant:
    invariant_id: str
    prompt_id: str
    # True when a YES answer means the invariant was broken ("did the lips move?").
    yes_means_violation: bool = True


DEFAULT_INVARIANTS = (AcceptanceInvariant(LIP_POSITION, LIP_POSITION_CHECK, yes_means_violation=True),)


def parse_binary_answer(text: Optional[str]) -> Optional[bool]:
    cleaned = re.sub(r"[^\wÃã\s]", " ", text or "").strip().upper()
    if not cleaned:
        return None
    tokens = cleaned.split()
    if len(tokens) != 1:
        return None
    token = tokens[0]
    if token in AFFIRMATIVE:
        return True
    if token in NEGATIVE:
        return False
    return None


class ImageAcceptanceValidator:
    def __init__(
        self,
        client: Optional[InferenceClient],
        route: ProviderRoute,
        prompts: PromptRegistry,
        *,
        timeout_seconds: float = 15.0,
        max_tokens: int = 10,
        invariants: Optional[Iterable[AcceptanceInvariant]] = None,
    ) -> None:
        self.client = client
        self.route = route
        self.prompts = prompts
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self._invariants: Dict[str, AcceptanceInvariant] = {}
        for invariant in invariants or DEFAULT_INVARIANTS:
            self.register(invariant)

    def register(self, invariant: AcceptanceInvariant) -> None:
        self._invariants[invariant.invariant_id] = invariant

    def _reject(self, invariant_id: str, reason: str, answer: Optional[str] = None) -> ImageAcceptance:
        logger.warning("Image rejected on %s: %s", invariant_id, reason)
        return ImageAcceptance(accepted=False, invariant=invariant_id, answer=answer, reason=reason)

    async def check(
        self,
        original: InferenceImage,
        candidate: InferenceImage,
        invariant_id: str = LIP_POSITION,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> ImageAcceptance:
        invariant = self._invariants.get(invariant_id)
        if invariant is None:
            return self._reject(invariant_id, "unknown invariant")
        if self.client is None:
            return self._reject(invariant_id, f"no client for {self.route.label}")

        timeout = self.timeout_seconds if timeout_seconds is None else min(self.timeout_seconds, timeout_seconds)
        if timeout <= 0:
            return self._reject(invariant_id, "no time left for the acceptance check")

        try:
            definition = self.prompts.get(invariant.prompt_id)
            request = InferenceRequest(
                provider=self.route.provider,
                model=self.route.model,
                mode=InferenceMode.TEXT,
                prompt_id=definition.prompt_id,
                system_prompt=definition.system,
                user_prompt=definition.render_user(),
                images=(original, candidate),
                temperature=0.0,
                max_tokens=self.max_tokens,
                deadline_seconds=timeout,
            )
            result = await asyncio.wait_for(self.client.invoke(request), timeout=timeout)
        except asyncio.TimeoutError:
            return self._reject(invariant_id, f"acceptance check timed out after {timeout:.1f}s")
        except Exception as exc:
            return self._reject(invariant_id, f"acceptance check failed: {exc}")

        answer = (result.text or "").strip()
        verdict = parse_binary_answer(answer)
        if verdict is None:
            return self._reject(invariant_id, "malformed answer", answer=answer[:50])

        violated = verdict if invariant.yes_means_violation else not verdict
        if violated:
            return self._reject(invariant_id, "invariant violated", answer=answer)
        logger.info("Image accepted on %s (answer=%s).", invariant_id, answer)
        return ImageAcceptance(accepted=True, invariant=invariant_id, answer=answer)
