"""
Odontoplan Protocol Service - Inference Client Adapters

One async contract over heterogeneous multimodal providers:
- GeminiClient (vision + forced tool call, text, image edit)
- AnthropicClient (vision + forced tool call, text)

Adapters never retry. Failures are classified into TransientProviderError or
MalformedOutputError so the fallback orchestrator can decide what to do next.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from errors import MalformedOutputError, TransientProviderError
from models import (
    InferenceImage,
    InferenceMode,
    InferenceRequest,
    InferenceResult,
    StructuredCall,
    TokenUsage,
)
from settings import PipelineSettings

logger = logging.getLogger(__name__)

UsageRecorder = Callable[[InferenceRequest, InferenceResult], None]

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504, 529}
GEMINI_UNSUPPORTED_SCHEMA_KEYS = {"additionalProperties", "nullable", "$schema", "default"}


def log_token_usage(request: InferenceRequest, result: InferenceResult) -> None:
    logger.info(
        "provider_tokens provider=%s model=%s prompt=%s input=%s output=%s finish=%s",
        result.provider,
        result.model,
        request.prompt_id or "-",
        result.usage.input_tokens,
        result.usage.output_tokens,
        result.finish_reason or "-",
    )


def classify_http_status(provider: str, status: int, body: str) -> TransientProviderError:
    snippet = (body or "")[:300]
    if status == 429:
        return TransientProviderError(
            f"{provider} rate limited: {snippet}", retryable=True, http_status=429, provider=provider
        )
    if status == 402:
        return TransientProviderError(
            f"{provider} quota or payment required: {snippet}",
            retryable=False,
            http_status=402,
            provider=provider,
        )
    return TransientProviderError(
        f"{provider} returned HTTP {status}: {snippet}",
        retryable=status in RETRYABLE_STATUS,
        http_status=status,
        provider=provider,
    )


class InferenceClient:
    provider = "base"

    async def invoke(self, request: InferenceRequest) -> InferenceResult:
        raise NotImplementedError


class _HttpInferenceClient(InferenceClient):
    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        usage_recorder: Optional[UsageRecorder] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._usage_recorder = usage_recorder or log_token_usage

    def _endpoint(self, request: InferenceRequest) -> str:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def _build_body(self, request: InferenceRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def _parse_body(self, request: InferenceRequest, payload: Dict[str, Any]) -> InferenceResult:
        raise NotImplementedError

    async def invoke(self, request: InferenceRequest) -> InferenceResult:
        if not self.api_key:
            raise TransientProviderError(
                f"{self.provider} API key is not configured.",
                retryable=False,
                provider=self.provider,
            )
        body = self._build_body(request)
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=request.deadline_seconds,
            ) as client:
                resp = await client.post(self._endpoint(request), headers=self._headers(), json=body)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                f"{self.provider} timed out after {request.deadline_seconds:.1f}s: {exc}",
                retryable=True,
                http_status=408,
                provider=self.provider,
            ) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(
                f"{self.provider} transport failure: {exc}",
                retryable=True,
                provider=self.provider,
            ) from exc

        if resp.status_code >= 400:
            raise classify_http_status(self.provider, resp.status_code, resp.text)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise MalformedOutputError(f"{self.provider} returned a non-JSON body.") from exc
        if not isinstance(payload, dict):
            raise MalformedOutputError(f"{self.provider} returned a non-object body.")

        result = self._parse_body(request, payload)
        try:
            self._usage_recorder(request, result)
        except Exception as exc:
            logger.warning("Usage recorder failed for %s: %s", self.provider, exc)
        return result


def _clean_gemini_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {
            k: _clean_gemini_schema(v)
            for k, v in schema.items()
            if k not in GEMINI_UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [_clean_gemini_schema(x) for x in schema]
    return schema


def _decode_inline_image(raw: Dict[str, Any]) -> Optional[InferenceImage]:
    data = raw.get("data")
    if not data:
        return None
    try:
        decoded = base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError):
        return None
    media_type = raw.get("mimeType") or raw.get("mime_type") or "image/png"
    return InferenceImage(data=decoded, media_type=media_type)


class GeminiClient(_HttpInferenceClient):
    provider = "gemini"

    def _endpoint(self, request: InferenceRequest) -> str:
        return f"{self.base_url}/models/{request.model}:generateContent"

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"}

    def _build_body(self, request: InferenceRequest) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        for image in request.images:
            parts.append(
                {
                    "inlineData": {
                        "mimeType": image.media_type,
                        "data": base64.b64encode(image.data).decode("ascii"),
                    }
                }
            )
        parts.append({"text": request.user_prompt})

        generation_config: Dict[str, Any] = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
        }
        if request.mode == InferenceMode.IMAGE_EDIT:
            generation_config["responseModalities"] = ["TEXT", "IMAGE"]

        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        if request.tool is not None and request.mode == InferenceMode.VISION_TOOL:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": request.tool.name,
                            "description": request.tool.description,
                            "parameters": _clean_gemini_schema(request.tool.parameters),
                        }
                    ]
                }
            ]
            body["toolConfig"] = {
                "functionCallingConfig": {
                    "mode": "ANY",
                    "allowedFunctionNames": [request.tool.name],
                }
            }
        return body

    def _parse_body(self, request: InferenceRequest, payload: Dict[str, Any]) -> InferenceResult:
        candidates = payload.get("candidates") or []
        candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
        finish_reason = candidate.get("finishReason")
        if finish_reason == "MALFORMED_FUNCTION_CALL":
            raise MalformedOutputError(f"gemini {request.model} reported MALFORMED_FUNCTION_CALL.")

        texts: List[str] = []
        call: Optional[StructuredCall] = None
        images: List[InferenceImage] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                texts.append(part["text"])
            function_call = part.get("functionCall")
            if isinstance(function_call, dict) and call is None:
                args = function_call.get("args") or {}
                if not isinstance(args, dict):
                    raise MalformedOutputError("gemini function call arguments are not an object.")
                call = StructuredCall(name=str(function_call.get("name") or ""), arguments=args)
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict):
                image = _decode_inline_image(inline)
                if image is not None:
                    images.append(image)

        usage_meta = payload.get("usageMetadata") or {}
        return InferenceResult(
            provider=self.provider,
            model=request.model,
            text="".join(texts) or None,
            structured_call=call,
            finish_reason=finish_reason,
            usage=TokenUsage(
                input_tokens=int(usage_meta.get("promptTokenCount") or 0),
                output_tokens=int(usage_meta.get("candidatesTokenCount") or 0),
            ),
            images=images,
        )


class AnthropicClient(_HttpInferenceClient):
    provider = "anthropic"
    api_version = "2023-06-01"

    def _endpoint(self, request: InferenceRequest) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

    def _build_body(self, request: InferenceRequest) -> Dict[str, Any]:
        if request.mode == InferenceMode.IMAGE_EDIT:
            raise TransientProviderError(
                "anthropic does not support image edit requests.",
                retryable=False,
                provider=self.provider,
            )
        content: List[Dict[str, Any]] = []
        for image in request.images:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.media_type,
                        "data": base64.b64encode(image.data).decode("ascii"),
                    },
                }
            )
        content.append({"type": "text", "text": request.user_prompt})
        body: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        if request.tool is not None and request.mode == InferenceMode.VISION_TOOL:
            body["tools"] = [
                {
                    "name": request.tool.name,
                    "description": request.tool.description,
                    "input_schema": request.tool.parameters,
                }
            ]
            body["tool_choice"] = {"type": "tool", "name": request.tool.name}
        return body

    def _parse_body(self, request: InferenceRequest, payload: Dict[str, Any]) -> InferenceResult:
        texts: List[str] = []
        call: Optional[StructuredCall] = None
        for block in payload.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif block.get("type") == "tool_use" and call is None:
                args = block.get("input")
                if not isinstance(args, dict):
                    raise MalformedOutputError("anthropic tool_use input is not an object.")
                call = StructuredCall(name=str(block.get("name") or ""), arguments=args)

        stop_reason = payload.get("stop_reason")
        if stop_reason == "max_tokens" and call is not None:
            raise MalformedOutputError(
                f"anthropic {request.model} tool call truncated at max_tokens={request.max_tokens}."
            )

        usage = payload.get("usage") or {}
        return InferenceResult(
            provider=self.provider,
            model=request.model,
            text="".join(texts) or None,
            structured_call=call,
            finish_reason=stop_reason,
            usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
            ),
        )


def build_clients(
    settings: PipelineSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    usage_recorder: Optional[UsageRecorder] = None,
) -> Dict[str, InferenceClient]:
    return {
        "gemini": GeminiClient(
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            transport=transport,
            usage_recorder=usage_recorder,
        ),
        "anthropic": AnthropicClient(
            api_key=settings.anthropic_api_key,
            base_url=settings.anthropic_base_url,
            transport=transport,
            usage_recorder=usage_recorder,
        ),
    }
