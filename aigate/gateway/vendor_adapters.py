"""Vendor-Specific Adapters: protocol-level handling for each AI vendor.

Each adapter translates a CompletionInput into the vendor's HTTP protocol
and returns a VendorResult. Any failure is raised as VendorError carrying
the vendor's own error text, which the gateway classifies afterwards.

Vendor-specific behaviors:
  - OpenAI: chat completions, JSON mode via response_format, image_url parts
  - Anthropic: messages API, no strict JSON mode (system-prompt nudge)
  - Gemini: generateContent, finishReason SAFETY / promptFeedback blocks
    are raised as safety errors
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from aigate.core.config import Settings
from aigate.gateway.errors import VendorError
from aigate.gateway.types import AIProvider

logger = logging.getLogger(__name__)

JSON_ONLY_INSTRUCTION = "Return ONLY valid JSON."


@dataclass
class InlineImage:
    mime_type: str
    data: str  # base64, no data-URL prefix

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class CompletionInput:
    prompt: str = ""
    system: str = ""
    image: InlineImage | None = None


@dataclass
class GenerationConfig:
    temperature: float | None = None
    max_output_tokens: int | None = None
    json_mode: bool = False


@dataclass
class VendorResult:
    text: str
    provider: AIProvider
    model: str
    latency_ms: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


class BaseVendorAdapter(ABC):
    """Base class for all vendor adapters."""

    provider: AIProvider
    default_model: str = ""
    key_env_var: str = ""
    supports_images: bool = False

    def __init__(
        self,
        api_key: str,
        default_model: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = default_model or self.default_model
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    async def call(
        self,
        model: str | None,
        input: CompletionInput,
        config: GenerationConfig | None = None,
    ) -> VendorResult:
        """Send one completion request and return the text result."""
        ...

    async def generate_image(self, prompt: str, aspect_ratio: str = "1:1") -> dict:
        raise VendorError(
            f"Image generation is not supported for {self.provider.value} provider.",
            status_code=400,
            vendor=self.provider.value,
        )

    def _require_key(self) -> None:
        if not self.api_key:
            raise VendorError(f"{self.key_env_var} is not configured on the server.", vendor=self.provider.value)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post(self, url: str, **kwargs) -> tuple[dict, int]:
        """POST and return (json, latency_ms); vendor failures become VendorError."""
        label = self.provider.value
        start = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise VendorError(f"{label} request timed out after {self.timeout}s", vendor=label) from e
        except httpx.HTTPError as e:
            raise VendorError(f"{label} request failed: {e}", vendor=label) from e

        latency_ms = int((time.monotonic() - start) * 1000)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 400:
            raise VendorError(self._error_message(data, resp.status_code), status_code=resp.status_code, vendor=label)
        return data, latency_ms

    def _error_message(self, data: dict, status_code: int) -> str:
        err = data.get("error")
        msg = ""
        if isinstance(err, dict):
            msg = str(err.get("message") or "")
        elif isinstance(err, str):
            msg = err
        msg = msg or str(data.get("message") or "") or f"{self.provider.value} request failed ({status_code})"

        # Normalize vendor throttling whose text does not say so
        if status_code == 429 and "rate limit" not in msg.lower() and "quota" not in msg.lower():
            msg = f"Rate limit exceeded: {msg}"
        return msg


# ---------------------------------------------------------------------------
# OpenAI Adapter
# ---------------------------------------------------------------------------


class OpenAIAdapter(BaseVendorAdapter):
    """OpenAI Chat Completions adapter."""

    provider = AIProvider.OPENAI
    default_model = "gpt-4o-mini"
    key_env_var = "OPENAI_API_KEY"
    supports_images = True
    api_url = "https://api.openai.com/v1/chat/completions"
    image_url = "https://api.openai.com/v1/images/generations"

    def __init__(self, api_key: str, image_model: str = "gpt-image-1", **kwargs):
        super().__init__(api_key, **kwargs)
        self.image_model = image_model

    async def call(
        self,
        model: str | None,
        input: CompletionInput,
        config: GenerationConfig | None = None,
    ) -> VendorResult:
        self._require_key()
        config = config or GenerationConfig()
        model = model or self.model

        messages: list[dict] = []
        if input.system:
            messages.append({"role": "system", "content": input.system})
        if input.image:
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": input.prompt or "Analyze the provided image."},
                        {"type": "image_url", "image_url": {"url": input.image.data_url}},
                    ],
                }
            )
        else:
            messages.append({"role": "user", "content": input.prompt})

        payload: dict[str, Any] = {"model": model, "messages": messages}
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.max_output_tokens:
            payload["max_tokens"] = config.max_output_tokens
        if config.json_mode:
            payload["response_format"] = {"type": "json_object"}

        data, latency_ms = await self._post(
            self.api_url,
            json=payload,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        return VendorResult(
            text=text,
            provider=self.provider,
            model=data.get("model", model),
            latency_ms=latency_ms,
            raw=data,
        )

    async def generate_image(self, prompt: str, aspect_ratio: str = "1:1") -> dict:
        self._require_key()
        data, _ = await self._post(
            self.image_url,
            json={
                "model": self.image_model,
                "prompt": prompt,
                "size": "1024x1024",
                "response_format": "b64_json",
            },
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        images = [{"mimeType": "image/png", "data": item.get("b64_json", "")} for item in data.get("data", [])]
        return {"images": images}


# ---------------------------------------------------------------------------
# Anthropic Adapter
# ---------------------------------------------------------------------------


class AnthropicAdapter(BaseVendorAdapter):
    """Anthropic Messages API adapter."""

    provider = AIProvider.ANTHROPIC
    default_model = "claude-3-5-sonnet-20240620"
    key_env_var = "ANTHROPIC_API_KEY"
    api_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"
    default_max_tokens = 1024

    async def call(
        self,
        model: str | None,
        input: CompletionInput,
        config: GenerationConfig | None = None,
    ) -> VendorResult:
        self._require_key()
        config = config or GenerationConfig()
        model = model or self.model

        content: list[dict] = []
        if input.prompt:
            content.append({"type": "text", "text": input.prompt})
        if input.image:
            content.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": input.image.mime_type, "data": input.image.data},
                }
            )
        if not content:
            content.append({"type": "text", "text": ""})

        system = input.system
        if config.json_mode:
            system = f"{system}\n\n{JSON_ONLY_INSTRUCTION}" if system else JSON_ONLY_INSTRUCTION

        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": config.max_output_tokens or self.default_max_tokens,
            "messages": [{"role": "user", "content": content}],
        }
        if system:
            payload["system"] = system
        if config.temperature is not None:
            payload["temperature"] = config.temperature

        data, latency_ms = await self._post(
            self.api_url,
            json=payload,
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": self.api_version,
                "content-type": "application/json",
            },
        )

        blocks = data.get("content") if isinstance(data.get("content"), list) else []
        text = "".join(b.get("text", "") for b in blocks if isinstance(b, dict))
        return VendorResult(
            text=text,
            provider=self.provider,
            model=data.get("model", model),
            latency_ms=latency_ms,
            raw=data,
        )


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseVendorAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    provider = AIProvider.GEMINI
    default_model = "gemini-2.5-flash"
    key_env_var = "GEMINI_API_KEY"
    supports_images = True
    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
    image_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:predict"

    def __init__(self, api_key: str, image_model: str = "imagen-4.0-generate-preview-06-06", **kwargs):
        super().__init__(api_key, **kwargs)
        self.image_model = image_model

    async def call(
        self,
        model: str | None,
        input: CompletionInput,
        config: GenerationConfig | None = None,
    ) -> VendorResult:
        self._require_key()
        config = config or GenerationConfig()
        model = model or self.model

        parts: list[dict] = [{"text": input.prompt}]
        if input.image:
            parts.append({"inlineData": {"mimeType": input.image.mime_type, "data": input.image.data}})

        generation_config: dict[str, Any] = {}
        if config.temperature is not None:
            generation_config["temperature"] = config.temperature
        if config.max_output_tokens:
            generation_config["maxOutputTokens"] = config.max_output_tokens
        if config.json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if generation_config:
            payload["generationConfig"] = generation_config
        # System instruction (separate from contents in Gemini API)
        if input.system:
            payload["systemInstruction"] = {"parts": [{"text": input.system}]}

        data, latency_ms = await self._post(
            self.api_url_template.format(model=model),
            json=payload,
            params={"key": self.api_key},
            headers={"Content-Type": "application/json"},
        )

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            if block_reason:
                raise VendorError(f"Prompt blocked by safety filters: {block_reason}", status_code=400, vendor="gemini")
            return VendorResult(text="", provider=self.provider, model=model, latency_ms=latency_ms, raw=data)

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise VendorError("Response blocked by safety filters (finishReason: SAFETY)", status_code=400,
                              vendor="gemini")

        parts_out = (candidate.get("content") or {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts_out if "text" in p)
        return VendorResult(text=text, provider=self.provider, model=model, latency_ms=latency_ms, raw=data)

    async def generate_image(self, prompt: str, aspect_ratio: str = "1:1") -> dict:
        self._require_key()
        data, _ = await self._post(
            self.image_url_template.format(model=self.image_model),
            json={
                "instances": [{"prompt": prompt}],
                "parameters": {"sampleCount": 1, "aspectRatio": aspect_ratio, "outputMimeType": "image/jpeg"},
            },
            params={"key": self.api_key},
            headers={"Content-Type": "application/json"},
        )
        images = [
            {"mimeType": p.get("mimeType", "image/jpeg"), "data": p.get("bytesBase64Encoded", "")}
            for p in data.get("predictions", [])
        ]
        return {"images": images}


# ---------------------------------------------------------------------------
# Adapter wiring
# ---------------------------------------------------------------------------


def build_adapters(settings: Settings) -> dict[AIProvider, BaseVendorAdapter]:
    """Create one adapter per vendor from settings. Adapters without a key
    still exist so that a call surfaces the configuration error."""
    timeout = settings.ai_timeout_ms / 1000
    return {
        AIProvider.OPENAI: OpenAIAdapter(
            settings.openai_api_key,
            default_model=settings.openai_model,
            image_model=settings.openai_image_model,
            timeout=timeout,
        ),
        AIProvider.ANTHROPIC: AnthropicAdapter(
            settings.anthropic_api_key,
            default_model=settings.anthropic_model,
            timeout=timeout,
        ),
        AIProvider.GEMINI: GeminiAdapter(
            settings.gemini_api_key,
            default_model=settings.gemini_model,
            image_model=settings.gemini_image_model,
            timeout=timeout,
        ),
    }
