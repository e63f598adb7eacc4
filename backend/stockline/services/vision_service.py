# Overview: Cloud vision extraction against BYOK providers.

"""
Cloud Vision Extractor

Sends one image plus a fixed extraction instruction to a vision model and
maps the structured reply onto CandidateRow. Providers differ in transport
and reply framing (OpenAI answers in JSON mode, Anthropic answers in free
text that usually wraps the JSON in a fenced block); both normalize to the
same rows.

FAILURES: missing key, timeout, HTTP error, malformed reply and unknown
provider all return ExtractionResult.failure with an empty row list. No
retry and no silent OCR fallback here; that is the caller's decision.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

import httpx

from .extractors import ExtractionResult, UsageSample
from .key_resolver import KeyResolver
from .normalizer import CONFIDENCE_LEVELS, CandidateRow, normalize_row


logger = logging.getLogger(__name__)

METHOD = "ai_vision"

EXTRACTION_PROMPT = """You are an inventory data extraction specialist. Extract product/inventory data from this document.

Return a JSON object with this exact structure:
{
  "products": [
    {
      "sku": "string or null if not visible",
      "name": "string (required - product name/description)",
      "cost": number or null,
      "price": number or null,
      "quantity": number or null,
      "unit": "string (pcs, kg, etc.) or null",
      "tax_rate": number or null,
      "barcode": "string or null",
      "confidence": "high" | "medium" | "low"
    }
  ],
  "supplier_detected": "string or null",
  "document_type": "invoice" | "packing_list" | "catalog" | "purchase_order" | "unknown",
  "currency_detected": "string or null",
  "extraction_notes": "any issues or uncertainties"
}

Guidelines:
- Extract ALL products visible in the document
- Mark confidence as "low" if you had to guess or the text was unclear
- For prices, use the unit price (not total)
- If you see both cost and sell price, include both
- Preserve original SKU/item codes exactly as shown
- If a field is not visible or unclear, use null"""

MAX_OUTPUT_TOKENS = 4096

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)\s*```")


class MalformedResponse(ValueError):
    pass


def _error_message(response: httpx.Response, provider: str) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
    return message or f"{provider} API error: {response.status_code}"


def _require_object(value: Any, what: str) -> None:
    if not isinstance(value, dict):
        raise MalformedResponse(f"{what} is not a JSON object")


def _usage(body: dict[str, Any]) -> dict[str, Any]:
    usage = body.get("usage")
    return usage if isinstance(usage, dict) else {}


class OpenAIVision:
    name = "openai"
    url = "https://api.openai.com/v1/chat/completions"
    default_model = "gpt-4o-mini"

    def build_request(self, *, image_b64: str, mime: str, api_key: str, model: str) -> dict[str, Any]:
        return {
            "url": self.url,
            "headers": {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            "json": {
                "model": model,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:{mime};base64,{image_b64}", "detail": "high"},
                            },
                        ],
                    }
                ],
                "max_tokens": MAX_OUTPUT_TOKENS,
                "response_format": {"type": "json_object"},
            },
        }

    def parse(self, body: Any) -> tuple[dict[str, Any], int, int]:
        _require_object(body, "OpenAI reply")
        usage = _usage(body)
        try:
            content = body["choices"][0]["message"]["content"]
            payload = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise MalformedResponse(f"Could not read OpenAI reply: {exc}")
        _require_object(payload, "OpenAI reply content")
        return payload, int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)


class AnthropicVision:
    name = "anthropic"
    url = "https://api.anthropic.com/v1/messages"
    default_model = "claude-3-5-sonnet-20241022"
    api_version = "2023-06-01"

    def build_request(self, *, image_b64: str, mime: str, api_key: str, model: str) -> dict[str, Any]:
        return {
            "url": self.url,
            "headers": {
                "x-api-key": api_key,
                "anthropic-version": self.api_version,
                "Content-Type": "application/json",
            },
            "json": {
                "model": model,
                "max_tokens": MAX_OUTPUT_TOKENS,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "image", "source": {"type": "base64", "media_type": mime, "data": image_b64}},
                            {"type": "text", "text": EXTRACTION_PROMPT},
                        ],
                    }
                ],
            },
        }

    def parse(self, body: Any) -> tuple[dict[str, Any], int, int]:
        _require_object(body, "Anthropic reply")
        usage = _usage(body)
        try:
            text = body["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedResponse(f"Could not read Anthropic reply: {exc}")
        match = _FENCED_JSON.search(text) or _FENCED_ANY.search(text)
        candidate = match.group(1) if match else text
        try:
            payload = json.loads(candidate)
        except ValueError as exc:
            raise MalformedResponse(f"Anthropic reply is not JSON: {exc}")
        _require_object(payload, "Anthropic reply content")
        return payload, int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0)


VISION_PROVIDERS = {
    OpenAIVision.name: OpenAIVision(),
    AnthropicVision.name: AnthropicVision(),
}


def rows_from_payload(payload: dict[str, Any]) -> list[CandidateRow]:
    """Map the products[] of a provider reply onto candidate rows."""
    _require_object(payload, "Reply")
    products = payload.get("products")
    if not isinstance(products, list):
        raise MalformedResponse("Reply has no products list")
    rows = []
    for item in products:
        if not isinstance(item, dict):
            continue
        confidence = str(item.get("confidence") or "medium").lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = "medium"
        raw = {
            "name": item.get("name"),
            "sku": item.get("sku"),
            "barcode": item.get("barcode"),
            "cost_price": item.get("cost"),
            "unit_price": item.get("price"),
            "quantity": item.get("quantity"),
            "tax_rate": item.get("tax_rate"),
        }
        if item.get("unit"):
            raw["attributes"] = {"unit": item["unit"]}
        row = normalize_row(raw, source=METHOD, confidence=confidence)
        if not row.is_blank():
            rows.append(row)
    return rows


class CloudVisionExtractor:
    method = METHOD

    def __init__(
        self,
        key_resolver: KeyResolver,
        *,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.key_resolver = key_resolver
        self.timeout = timeout
        self.transport = transport

    def _resolve(self, provider: str | None, api_key: str | None) -> tuple[str | None, str | None, str | None]:
        """(provider, key, error message)."""
        if api_key:
            return (provider or "openai").lower(), api_key, None
        if provider:
            provider = provider.lower()
            key = self.key_resolver.get_api_key(provider)
            if not key:
                return provider, None, (
                    f"No API key configured for {provider}. Please add your key in Settings > API Keys."
                )
            return provider, key, None
        best = self.key_resolver.get_best_available_provider()
        if best is None:
            return None, None, (
                "No AI API keys configured. Please add your OpenAI or Anthropic key in Settings > API Keys."
            )
        return best[0], best[1], None

    def extract(
        self,
        image_b64: str,
        *,
        mime: str = "image/jpeg",
        provider: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
    ) -> ExtractionResult:
        started = time.perf_counter()
        if provider and provider.lower() not in VISION_PROVIDERS:
            return ExtractionResult.failure(METHOD, f"Unsupported AI service: {provider}", "unsupported_provider")
        provider, key, error = self._resolve(provider, api_key)
        if error:
            return ExtractionResult.failure(METHOD, error, "not_configured")

        adapter = VISION_PROVIDERS.get(provider)
        if adapter is None:
            return ExtractionResult.failure(METHOD, f"Unsupported AI service: {provider}", "unsupported_provider")

        model_used = model or adapter.default_model
        usage = UsageSample(service=provider, model=model_used)

        def _fail(message: str, code: str) -> ExtractionResult:
            usage.success = False
            usage.error_message = message
            usage.duration_ms = int((time.perf_counter() - started) * 1000)
            return ExtractionResult.failure(METHOD, message, code, usage=usage, details={"service": provider})

        request = adapter.build_request(image_b64=image_b64, mime=mime, api_key=key, model=model_used)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(request["url"], headers=request["headers"], json=request["json"])
        except httpx.TimeoutException:
            logger.warning("%s vision call timed out after %ss", provider, self.timeout)
            return _fail(f"{provider} request timed out after {self.timeout:g}s", "timeout")
        except httpx.HTTPError as exc:
            return _fail(f"{provider} request failed: {exc}", "http_error")

        if response.status_code >= 400:
            return _fail(_error_message(response, provider), "http_error")

        try:
            payload, tokens_in, tokens_out = adapter.parse(response.json())
            rows = rows_from_payload(payload)
        except (MalformedResponse, ValueError) as exc:
            return _fail(str(exc), "malformed_response")

        usage.tokens_input = tokens_in
        usage.tokens_output = tokens_out
        usage.duration_ms = int((time.perf_counter() - started) * 1000)
        usage.details = {"products_found": len(rows)}

        result = ExtractionResult(
            method=METHOD,
            rows=rows,
            details={
                "service": provider,
                "model": model_used,
                "tokens_used": tokens_in + tokens_out,
                "document_type": payload.get("document_type"),
                "supplier_detected": payload.get("supplier_detected"),
                "currency_detected": payload.get("currency_detected"),
                "extraction_notes": payload.get("extraction_notes"),
            },
            usage=usage,
        )
        if payload.get("extraction_notes"):
            result.warnings.append(str(payload["extraction_notes"]))
        return result
