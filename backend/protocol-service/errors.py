"""
Odontoplan Protocol Service - Failure Taxonomy

Every provider, validation, catalog, ledger and storage failure raised inside
the pipeline derives from PipelineError. Only PipelineExhausted, LedgerError
and policy-class TransientProviderError escape CasePipeline.process();
storage failures surface as PipelineExhausted("storage").
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class ProviderAttempt:
    provider: str
    model: str
    outcome: str
    reason: str
    http_status: Optional[int] = None
    elapsed_seconds: float = 0.0

    def describe(self) -> str:
        status = f" http={self.http_status}" if self.http_status is not None else ""
        return f"{self.provider}/{self.model}: {self.outcome}{status} ({self.reason})"


@dataclass(frozen=True)
class SchemaIssue:
    path: str
    code: str
    message: str

    def describe(self) -> str:
        return f"{self.path}: {self.message} ({self.code})"


class PipelineError(Exception):
    """Base class for typed pipeline failures."""


class TransientProviderError(PipelineError):
    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        http_status: Optional[int] = None,
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.http_status = http_status
        self.provider = provider

    @property
    def is_policy_failure(self) -> bool:
        # Rate limit and payment/quota responses are caller-actionable.
        return self.http_status in {402, 429}


class MalformedOutputError(PipelineError):
    """Provider answered, but the structured output is truncated or unusable."""


class ValidationFailed(MalformedOutputError):
    def __init__(self, message: str, diagnostics: List[SchemaIssue]) -> None:
        super().__init__(message)
        self.diagnostics = list(diagnostics)

    def describe(self) -> str:
        return "; ".join(issue.describe() for issue in self.diagnostics)


class CatalogMissingError(PipelineError):
    def __init__(self, product_line: str, layer_type: str) -> None:
        super().__init__(f"No usable catalog rows for {product_line!r} ({layer_type}).")
        self.product_line = product_line
        self.layer_type = layer_type


class LedgerError(PipelineError):
    """Metered ledger refused or failed the operation."""


class InsufficientCredits(LedgerError):
    def __init__(self, tenant_id: str, operation: str, credits_remaining: int = 0) -> None:
        super().__init__(
            f"Insufficient credits for {operation} (tenant={tenant_id}, remaining={credits_remaining})."
        )
        self.tenant_id = tenant_id
        self.operation = operation
        self.credits_remaining = credits_remaining


class StorageWriteError(PipelineError):
    pass


class PipelineExhausted(PipelineError):
    def __init__(self, capability: str, attempts: List[ProviderAttempt]) -> None:
        self.capability = capability
        self.attempts = list(attempts)
        detail = " | ".join(a.describe() for a in self.attempts) or "no provider attempted"
        super().__init__(f"All {capability} providers failed: {detail}")
