"""AI endpoints. Every route runs through the admission gateway.

Provides:
  - POST /ai/chat: free-form text completion
  - POST /ai/json: completion parsed as a JSON document
  - POST /ai/image: image generation (OpenAI, Gemini Imagen)
  - GET /ai/usage: caller's usage meter, never cached

Routes accept every method so that a wrong method is answered by the
pipeline in the public error contract.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from aigate.core.config import settings
from aigate.core.dependencies import get_adapters, get_gateway
from aigate.core.exceptions import ApiError, BadRequestError, UpstreamResponseError
from aigate.gateway.errors import preview_details
from aigate.gateway.gateway import AdmissionGateway
from aigate.gateway.types import (
    AdmissionContext,
    AIProvider,
    EndpointPolicy,
    GatewayResult,
    InboundRequest,
)
from aigate.gateway.usage_guard import Denied
from aigate.gateway.vendor_adapters import (
    BaseVendorAdapter,
    CompletionInput,
    GenerationConfig,
    InlineImage,
)
from aigate.schemas.ai import ChatRequest, ImageRequest, JsonRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"])

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

M = TypeVar("M", bound=BaseModel)

# ---------------------------------------------------------------------------
# Endpoint policies
# ---------------------------------------------------------------------------

CHAT_POLICY = EndpointPolicy(
    name="chat",
    rate_limit_max=settings.rate_limit_chat_max,
    window_ms=settings.rate_limit_window_ms,
    timeout_ms=settings.ai_timeout_ms,
)

JSON_POLICY = EndpointPolicy(
    name="json",
    rate_limit_max=settings.rate_limit_json_max,
    window_ms=settings.rate_limit_window_ms,
    timeout_ms=settings.ai_timeout_ms,
)

IMAGE_POLICY = EndpointPolicy(
    name="image",
    rate_limit_max=settings.rate_limit_image_max,
    window_ms=settings.rate_limit_window_ms,
    timeout_ms=settings.ai_timeout_ms,
    rate_limited_message="Too many image requests. Please wait and try again.",
)

USAGE_POLICY = EndpointPolicy(
    name="usage",
    rate_limit_max=settings.rate_limit_usage_max,
    window_ms=settings.rate_limit_window_ms,
    timeout_ms=settings.usage_timeout_ms,
    units=0,
    write=False,
    metered=False,
    key_prefix="AI_USAGE",
    limiter_fail_open=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _declared_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length") or 0)
    except ValueError:
        return 0


async def to_inbound(request: Request, max_body_bytes: int) -> InboundRequest:
    """Snapshot a Starlette request; an unparseable body is kept as raw bytes.

    A body whose declared Content-Length is over the cap is not read; the
    gateway answers it with 413 from the header alone.
    """
    body: Any = None
    if _declared_length(request) <= max_body_bytes:
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except (ValueError, RecursionError):
                body = raw
    return InboundRequest(
        method=request.method,
        headers=dict(request.headers),
        client_host=request.client.host if request.client else None,
        body=body,
    )


def parse_body(model: type[M], body: Any) -> M:
    if not isinstance(body, dict):
        raise BadRequestError("Invalid JSON body.")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        raise BadRequestError("Invalid request body.", details=preview_details(errors=errors)) from e


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def parse_json_reply(text: str) -> Any:
    """Parse a model reply as JSON, tolerating code fences and chatter around one object."""
    cleaned = text.strip()
    m = _FENCE_RE.match(cleaned)
    if m:
        cleaned = m.group(1)
    try:
        return json.loads(cleaned)
    except ValueError:
        pass

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except ValueError:
            pass
    raise ValueError("Reply is not valid JSON")


def _completion_input(body: ChatRequest) -> CompletionInput:
    image = InlineImage(mime_type=body.image.mime_type, data=body.image.data) if body.image else None
    return CompletionInput(prompt=body.prompt, system=body.system or "", image=image)


def _adapter_for(adapters: dict[AIProvider, BaseVendorAdapter], provider: AIProvider | None) -> BaseVendorAdapter:
    return adapters[provider or AIProvider.GEMINI]


def _respond(result: GatewayResult, extra_headers: dict[str, str] | None = None) -> JSONResponse:
    headers = {**result.headers, **(extra_headers or {})}
    return JSONResponse(status_code=result.status, content=result.body, headers=headers)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.api_route("/chat", methods=ALL_METHODS)
async def chat(
    request: Request,
    gateway: AdmissionGateway = Depends(get_gateway),
    adapters: dict[AIProvider, BaseVendorAdapter] = Depends(get_adapters),
):
    inbound = await to_inbound(request, gateway.max_body_bytes)

    async def run(ctx: AdmissionContext) -> dict:
        body = parse_body(ChatRequest, inbound.body)
        adapter = _adapter_for(adapters, ctx.provider)
        result = await adapter.call(
            body.model,
            _completion_input(body),
            GenerationConfig(temperature=body.temperature, max_output_tokens=body.max_output_tokens),
        )
        return {"text": result.text, "model": result.model}

    return _respond(await gateway.handle(inbound, CHAT_POLICY, run))


@router.api_route("/json", methods=ALL_METHODS)
async def json_completion(
    request: Request,
    gateway: AdmissionGateway = Depends(get_gateway),
    adapters: dict[AIProvider, BaseVendorAdapter] = Depends(get_adapters),
):
    inbound = await to_inbound(request, gateway.max_body_bytes)

    async def run(ctx: AdmissionContext) -> dict:
        body = parse_body(JsonRequest, inbound.body)
        adapter = _adapter_for(adapters, ctx.provider)
        result = await adapter.call(
            body.model,
            _completion_input(body),
            GenerationConfig(
                temperature=body.temperature,
                max_output_tokens=body.max_output_tokens,
                json_mode=True,
            ),
        )
        try:
            parsed = parse_json_reply(result.text)
        except ValueError:
            logger.warning("%s returned unparseable JSON (%d chars)", result.provider.value, len(result.text))
            raise UpstreamResponseError(
                "AI returned an invalid JSON response. Please retry.",
                details=preview_details(raw=result.text[:500]),
            )
        return {"json": parsed}

    return _respond(await gateway.handle(inbound, JSON_POLICY, run))


@router.api_route("/image", methods=ALL_METHODS)
async def image(
    request: Request,
    gateway: AdmissionGateway = Depends(get_gateway),
    adapters: dict[AIProvider, BaseVendorAdapter] = Depends(get_adapters),
):
    inbound = await to_inbound(request, gateway.max_body_bytes)

    async def run(ctx: AdmissionContext) -> dict:
        body = parse_body(ImageRequest, inbound.body)
        adapter = _adapter_for(adapters, ctx.provider)
        if not adapter.supports_images:
            raise BadRequestError(f"Image generation is not supported for {adapter.provider.value} provider.")
        return await adapter.generate_image(body.prompt, body.aspect_ratio)

    return _respond(await gateway.handle(inbound, IMAGE_POLICY, run))


@router.api_route("/usage", methods=ALL_METHODS)
async def usage(
    request: Request,
    gateway: AdmissionGateway = Depends(get_gateway),
):
    inbound = await to_inbound(request, gateway.max_body_bytes)

    async def run(ctx: AdmissionContext) -> dict:
        decision = await gateway.usage_guard.admit(ctx.request, units=0)
        if isinstance(decision, Denied):
            raise ApiError(decision.error, decision.headers)
        ctx.usage = decision.usage
        ctx.headers.update(decision.usage.headers())
        return decision.usage.to_dict()

    result = await gateway.handle(inbound, USAGE_POLICY, run)
    return _respond(result, {"Cache-Control": "no-store, max-age=0"})
